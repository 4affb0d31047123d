#!/usr/bin/env python3
"""
Configuration for dilagent

Configuration hierarchy (highest priority first):
1. Explicit overrides (CLI flags)
2. Environment variables (DILAGENT_<SECTION>_<FIELD>)
3. YAML config file
4. Default values

Usage:
    config = DilagentConfig.from_yaml(".dilagent/config.yaml")
    config = load_config(working_dir=WorkingDir.at("."), execution={"concurrency": 8})

    config.execution.concurrency
    config.agent.command

Example YAML:
    execution:
      concurrency: 4
      hypothesis_timeout: 1800
    agent:
      command: claude
      model: sonnet
    logging:
      level: DEBUG
"""

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .utils import merge_dicts
from .working_dir import WorkingDir


# ============================================================================
# VALIDATION ERRORS
# ============================================================================

class ConfigValidationError(Exception):
    """Configuration validation failed."""
    pass


# ============================================================================
# CONFIGURATION SECTIONS
# ============================================================================

@dataclass
class ExecutionConfig:
    """Concurrency and timeouts for agent-driven phases."""

    concurrency: int = 4
    hypothesis_timeout: float = 1800.0  # seconds per hypothesis worker
    reproduction_timeout: float = 1800.0
    generation_timeout: float = 900.0
    max_repro_attempts: int = 5
    max_hypotheses: int = 0  # 0 = test every generated hypothesis

    def validate(self) -> None:
        """Validate execution settings."""
        if self.concurrency < 1:
            raise ConfigValidationError("concurrency must be >= 1")

        for name in ("hypothesis_timeout", "reproduction_timeout", "generation_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigValidationError(f"{name} must be > 0")

        if self.max_repro_attempts < 1:
            raise ConfigValidationError("max_repro_attempts must be >= 1")

        if self.max_hypotheses < 0:
            raise ConfigValidationError("max_hypotheses cannot be negative")


@dataclass
class AgentConfig:
    """External agent CLI invocation."""

    command: str = "claude"
    model: str = "sonnet"
    best_model: str = "opus"
    skip_permissions: bool = True
    extra_args: List[str] = field(default_factory=list)

    def validate(self) -> None:
        """Validate agent settings."""
        if not self.command:
            raise ConfigValidationError("command cannot be empty")

        if not self.model or not self.best_model:
            raise ConfigValidationError("model and best_model cannot be empty")

        if not isinstance(self.extra_args, list) or \
                not all(isinstance(a, str) for a in self.extra_args):
            raise ConfigValidationError("extra_args must be a list of strings")


@dataclass
class ToolsConfig:
    """Result-reporting bridge that agents call back into."""

    host: str = "127.0.0.1"
    port: int = 0  # 0 = pick a free port

    def validate(self) -> None:
        """Validate tool bridge settings."""
        if not self.host:
            raise ConfigValidationError("host cannot be empty")

        if not 0 <= self.port <= 65535:
            raise ConfigValidationError("port must be between 0 and 65535")


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "INFO"
    file: str = "dilagent.log"  # relative to .dilagent/logs
    use_colors: bool = True

    def validate(self) -> None:
        """Validate logging settings."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.level.upper() not in valid_levels:
            raise ConfigValidationError(
                f"Invalid log level '{self.level}'. Must be one of: {valid_levels}"
            )


# ============================================================================
# TOP-LEVEL CONFIGURATION
# ============================================================================

SECTION_TYPES = {
    "execution": ExecutionConfig,
    "agent": AgentConfig,
    "tools": ToolsConfig,
    "logging": LoggingConfig,
}


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {value}")


ENV_MAPPINGS = {
    "DILAGENT_EXECUTION_CONCURRENCY": ("execution", "concurrency", int),
    "DILAGENT_EXECUTION_HYPOTHESIS_TIMEOUT": ("execution", "hypothesis_timeout", float),
    "DILAGENT_EXECUTION_REPRODUCTION_TIMEOUT": ("execution", "reproduction_timeout", float),
    "DILAGENT_EXECUTION_GENERATION_TIMEOUT": ("execution", "generation_timeout", float),
    "DILAGENT_EXECUTION_MAX_REPRO_ATTEMPTS": ("execution", "max_repro_attempts", int),
    "DILAGENT_EXECUTION_MAX_HYPOTHESES": ("execution", "max_hypotheses", int),
    "DILAGENT_AGENT_COMMAND": ("agent", "command", str),
    "DILAGENT_AGENT_MODEL": ("agent", "model", str),
    "DILAGENT_AGENT_BEST_MODEL": ("agent", "best_model", str),
    "DILAGENT_AGENT_SKIP_PERMISSIONS": ("agent", "skip_permissions", _parse_bool),
    "DILAGENT_TOOLS_HOST": ("tools", "host", str),
    "DILAGENT_TOOLS_PORT": ("tools", "port", int),
    "DILAGENT_LOGGING_LEVEL": ("logging", "level", str),
}


@dataclass
class DilagentConfig:
    """
    Complete dilagent configuration.

    Each section validates itself; ``validate`` collects every section error
    into one ConfigValidationError.
    """

    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def validate(self) -> None:
        """Validate all configuration sections."""
        errors = []

        for name in SECTION_TYPES:
            try:
                getattr(self, name).validate()
            except ConfigValidationError as e:
                errors.append(f"{name}: {e}")

        if errors:
            raise ConfigValidationError(
                "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
            )

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> "DilagentConfig":
        """
        Build configuration from a nested dictionary.

        Args:
            config_dict: {section: {field: value}}

        Returns:
            Validated DilagentConfig

        Raises:
            ConfigValidationError: On unknown sections/fields or invalid values
        """
        if not isinstance(config_dict, dict):
            raise ConfigValidationError("Configuration must be a mapping of sections")

        sections = {}
        for name, values in config_dict.items():
            section_cls = SECTION_TYPES.get(name)
            if section_cls is None:
                raise ConfigValidationError(
                    f"Unknown configuration section '{name}'. "
                    f"Valid sections: {sorted(SECTION_TYPES)}"
                )
            if values is None:
                values = {}
            if not isinstance(values, dict):
                raise ConfigValidationError(f"Section '{name}' must be a mapping")

            known = {f.name for f in fields(section_cls)}
            unknown = set(values) - known
            if unknown:
                raise ConfigValidationError(
                    f"Unknown keys in section '{name}': {sorted(unknown)}"
                )
            sections[name] = section_cls(**values)

        config = cls(**sections)
        config.validate()
        return config

    @classmethod
    def from_yaml(cls, config_path, **overrides) -> "DilagentConfig":
        """
        Load configuration from YAML file with environment and explicit overrides.

        Args:
            config_path: Path to YAML configuration file
            **overrides: {section: {field: value}} overrides

        Returns:
            DilagentConfig instance

        Raises:
            ConfigValidationError: If configuration is invalid
            FileNotFoundError: If config file doesn't exist
        """
        config_path = Path(config_path)

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, 'r') as f:
            try:
                yaml_data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigValidationError(f"Invalid YAML in {config_path}: {e}") from e

        if not isinstance(yaml_data, dict):
            raise ConfigValidationError(f"{config_path} must contain a mapping of sections")

        merged = cls._deep_update(yaml_data, cls._load_from_env())
        merged = cls._deep_update(merged, overrides)
        return cls.from_dict(merged)

    @classmethod
    def _load_from_env(cls) -> Dict[str, Any]:
        """Load configuration overrides from environment variables."""
        overrides: Dict[str, Any] = {}

        for env_var, (section, field_name, type_fn) in ENV_MAPPINGS.items():
            value = os.environ.get(env_var)
            if value is not None:
                try:
                    overrides.setdefault(section, {})[field_name] = type_fn(value)
                except (ValueError, TypeError):
                    # Skip invalid environment values
                    pass

        return overrides

    @staticmethod
    def _deep_update(base: Dict, updates: Dict) -> Dict:
        """Deep merge two dictionaries."""
        return merge_dicts(base, updates)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {name: asdict(getattr(self, name)) for name in SECTION_TYPES}

    def to_yaml(self) -> str:
        """Render as YAML (e.g. to seed .dilagent/config.yaml)."""
        return yaml.safe_dump(self.to_dict(), sort_keys=False)


# ============================================================================
# CONVENIENCE FUNCTIONS
# ============================================================================

def load_config(config_path: Optional[str] = None,
                working_dir: Optional[WorkingDir] = None,
                **overrides) -> DilagentConfig:
    """
    Load configuration with smart defaults.

    Search order when config_path is not given: the working directory's
    .dilagent/config.yaml, then ./dilagent.yaml.

    Args:
        config_path: Path to YAML config file (optional)
        working_dir: Working directory to look for a config in (optional)
        **overrides: {section: {field: value}} overrides

    Returns:
        DilagentConfig instance
    """
    if config_path:
        return DilagentConfig.from_yaml(config_path, **overrides)

    default_paths = []
    if working_dir is not None:
        default_paths.append(working_dir.config_file)
    default_paths.append(Path("dilagent.yaml"))

    for path in default_paths:
        if Path(path).exists():
            return DilagentConfig.from_yaml(path, **overrides)

    # No config file found, use defaults with env and explicit overrides
    merged = DilagentConfig._deep_update(DilagentConfig._load_from_env(), overrides)
    return DilagentConfig.from_dict(merged)
