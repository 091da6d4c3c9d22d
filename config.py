"""Process configuration for scoped-memory, read from the environment."""

from __future__ import annotations

import logging
import os
import subprocess
import uuid
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

from utils import normalize_git_url

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_HOURS = 24


@lru_cache(maxsize=1)
def detect_project_id() -> str:
    """Get current project identifier from git or cwd. Cached per session."""
    try:
        result = subprocess.run(
            ["git", "config", "--get", "remote.origin.url"],
            capture_output=True,
            text=True,
            timeout=2,
        )
        if result.returncode == 0 and result.stdout.strip():
            return normalize_git_url(result.stdout.strip())
    except (OSError, subprocess.SubprocessError):  # git may not be available
        pass
    return str(Path.cwd())


def _default_agent_id() -> str:
    agent_id = os.environ.get("SCOPED_MEMORY_AGENT_ID")
    if agent_id:
        return agent_id
    agent_id = uuid.uuid4().hex
    logger.warning(
        "No SCOPED_MEMORY_AGENT_ID set - generated ephemeral agent id %s. "
        "Set SCOPED_MEMORY_AGENT_ID to persist identity.",
        agent_id,
    )
    return agent_id


def _default_project_id() -> str:
    return os.environ.get("SCOPED_MEMORY_PROJECT_ID") or detect_project_id()


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() not in {"false", "0", "no", "off"}


@dataclass(frozen=True, slots=True)
class Config:
    """Server configuration with sensible defaults."""

    db_uri: str = field(
        default_factory=lambda: os.environ.get(
            "SCOPED_MEMORY_DB_URI", str(Path.home() / ".scoped-memory" / "lancedb")
        )
    )
    project_id: str = field(default_factory=_default_project_id)
    agent_id: str = field(default_factory=_default_agent_id)
    parent_agent_id: str | None = field(
        default_factory=lambda: os.environ.get("SCOPED_MEMORY_PARENT_AGENT_ID") or None
    )
    content_scanning: bool = field(
        default_factory=lambda: _env_flag("SCOPED_MEMORY_CONTENT_SCANNING", True)
    )
    debug: bool = field(default_factory=lambda: _env_flag("SCOPED_MEMORY_DEBUG", False))
    log_level: str = field(
        default_factory=lambda: os.environ.get("SCOPED_MEMORY_LOG_LEVEL", "INFO").upper()
    )
    cleanup_interval_hours: int = CLEANUP_INTERVAL_HOURS

    def validate(self) -> None:
        if not self.db_uri:
            raise ValueError("SCOPED_MEMORY_DB_URI is required")
        if not self.project_id:
            raise ValueError("SCOPED_MEMORY_PROJECT_ID is required")
        if not self.agent_id:
            raise ValueError("SCOPED_MEMORY_AGENT_ID is required")

    @property
    def effective_log_level(self) -> int:
        if self.debug:
            return logging.DEBUG
        return logging.getLevelNamesMapping().get(self.log_level, logging.INFO)
