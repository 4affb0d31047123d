#!/usr/bin/env python3
"""
On-disk layout of a dilagent working directory

    <working_dir>/
        .dilagent/
            state.json
            timeline.json
            config.yaml          (optional)
            artifacts/
            logs/
            context-repo/
        h001-some-title/         (hypothesis worktrees)
"""

import logging
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkingDir:
    """Paths inside one working directory"""
    root: Path

    DILAGENT_DIR = ".dilagent"

    @classmethod
    def at(cls, path) -> "WorkingDir":
        return cls(Path(path).expanduser().resolve())

    @property
    def dilagent_dir(self) -> Path:
        return self.root / self.DILAGENT_DIR

    @property
    def state_file(self) -> Path:
        return self.dilagent_dir / "state.json"

    @property
    def timeline_file(self) -> Path:
        return self.dilagent_dir / "timeline.json"

    @property
    def config_file(self) -> Path:
        return self.dilagent_dir / "config.yaml"

    @property
    def artifacts_dir(self) -> Path:
        return self.dilagent_dir / "artifacts"

    @property
    def logs_dir(self) -> Path:
        return self.dilagent_dir / "logs"

    @property
    def context_repo(self) -> Path:
        return self.dilagent_dir / "context-repo"

    @property
    def reproduction_file(self) -> Path:
        return self.artifacts_dir / "reproduction.json"

    @property
    def hypotheses_file(self) -> Path:
        return self.artifacts_dir / "hypotheses.json"

    @property
    def summary_markdown(self) -> Path:
        return self.artifacts_dir / "summary.md"

    @property
    def summary_json(self) -> Path:
        return self.artifacts_dir / "summary.json"

    def repro_script(self, extension: str = "sh") -> Path:
        return self.artifacts_dir / f"repro.{extension.lstrip('.')}"

    def worktree_path(self, slug: str) -> Path:
        """Workspace directory for the hypothesis with this slug"""
        return self.root / slug

    def agent_log(self, name: str) -> Path:
        return self.logs_dir / f"{name}.log"

    def exists(self) -> bool:
        return self.dilagent_dir.is_dir()

    def initialize(self) -> None:
        """Create the .dilagent directory structure (idempotent)"""
        for directory in (self.dilagent_dir, self.artifacts_dir, self.logs_dir):
            directory.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Initialized working directory structure at {self.dilagent_dir}")
