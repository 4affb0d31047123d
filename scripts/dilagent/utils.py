#!/usr/bin/env python3
"""
Shared helpers for dilagent: JSON persistence, slugs, ids, durations
"""

import json
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from ..shared.logging_utils import setup_logging as _setup_logging

HYPOTHESIS_ID_PATTERN = re.compile(r"^H\d{3,}$")


def setup_logging(log_file: Optional[Path] = None, level: int = 20,
                  use_colors: bool = True) -> None:
    """
    Setup logging configuration (delegates to shared infrastructure)

    Args:
        log_file: Optional file path for logging
        level: Logging level (default: INFO/20)
        use_colors: Color console output when attached to a terminal
    """
    _setup_logging(level=level, log_file=log_file, use_colors=use_colors)


def load_json_file(file_path: Path) -> Any:
    """
    Load JSON from file

    Args:
        file_path: Path to JSON file

    Returns:
        Parsed JSON content

    Raises:
        json.JSONDecodeError: If the file is not valid JSON
        OSError: If the file cannot be read
    """
    with open(file_path, 'r', encoding='utf-8') as f:
        return json.load(f)


def save_json_file(file_path: Path, data: Any, pretty: bool = True) -> None:
    """
    Atomically save data to a JSON file.

    Writes to a temp file in the target directory, fsyncs it and renames it
    over the target, so readers only ever see the old or the new content.

    Args:
        file_path: Path to save JSON to
        data: JSON-serializable data
        pretty: Whether to pretty-print JSON
    """
    write_text_atomic(file_path, json.dumps(data, indent=2 if pretty else None) + "\n")


def write_text_atomic(file_path: Path, content: str) -> None:
    """Atomically replace file_path with content"""
    file_path = Path(file_path)
    file_path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(dir=str(file_path.parent), prefix=f".{file_path.name}.",
                                    suffix=".tmp")
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, file_path)
    except BaseException:
        # Leave the previous file untouched
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def slugify(title: str, max_length: int = 40) -> str:
    """
    Derive a kebab-case slug from a free-text title.

    Args:
        title: Hypothesis title
        max_length: Maximum slug length

    Returns:
        Lowercase slug of [a-z0-9-], never empty
    """
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    slug = slug[:max_length].rstrip("-")
    return slug or "hypothesis"


def hypothesis_slug(hypothesis_id: str, title: str) -> str:
    """
    Slug used for workspace naming, always prefixed with the hypothesis id.

    Two similar titles collapse to the same title slug; the id prefix keeps
    worktree paths and branch names distinct.

    Example:
        hypothesis_slug("H002", "Auth token: expired?") -> "h002-auth-token-expired"
    """
    return f"{hypothesis_id.lower()}-{slugify(title)}"


def format_hypothesis_id(number: int) -> str:
    """Format a 1-based ordinal as a hypothesis id (H001, H002, ...)"""
    return f"H{number:03d}"


def next_hypothesis_id(taken: Iterable[str]) -> str:
    """
    Return the lowest unused hypothesis id above every id already taken.

    Args:
        taken: Ids already assigned in this run

    Returns:
        New id, never one of ``taken``
    """
    highest = 0
    for hid in taken:
        if HYPOTHESIS_ID_PATTERN.match(hid):
            highest = max(highest, int(hid[1:]))
    return format_hypothesis_id(highest + 1)


def format_duration(seconds: float) -> str:
    """
    Format duration in human-readable format

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string
    """
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = seconds / 60
        return f"{minutes:.1f}m"
    else:
        hours = seconds / 3600
        return f"{hours:.1f}h"


def truncate(text: str, limit: int = 80) -> str:
    """Single-line preview of text for tables and logs"""
    text = " ".join(text.split())
    return text if len(text) <= limit else text[:limit - 3] + "..."


def merge_dicts(base: Dict, updates: Dict) -> Dict:
    """Deep merge two dictionaries (updates win)"""
    result = dict(base)
    for key, value in updates.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = merge_dicts(result[key], value)
        else:
            result[key] = value
    return result
