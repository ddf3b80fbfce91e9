"""
statedocs Configuration — Load and validate statedocs.yaml.

Usage:
    from statedocs.engine.config import load_config, get_config
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, ValidationError, field_validator

from statedocs.engine.errors import StateDocsConfigError

CONFIG_FILE_NAME = "statedocs.yaml"


# ---------------------------------------------------------------------------
# Pydantic models for statedocs.yaml
# ---------------------------------------------------------------------------

class LocksConfig(BaseModel):
    collection_name: str = "__locks__"
    timeout_seconds: int = 3600

    @field_validator("timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"timeout_seconds must be positive, got {v}")
        return v


class UsersConfig(BaseModel):
    collection_name: str = "__users__"


class PaginationConfig(BaseModel):
    default_per_page: int = 100
    max_per_page: int = 1000


class LogAsyncQueueConfig(BaseModel):
    flush_interval_ms: int = 100
    flush_batch_size: int = 50
    max_queue_size: int = 10000


class LoggingConfig(BaseModel):
    enabled: bool = False
    level: str = "INFO"
    directory: str = ".statedocs/logs"
    async_queue: LogAsyncQueueConfig = LogAsyncQueueConfig()

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level '{v}'")
        return v


class StateDocsConfig(BaseModel):
    """Root model for statedocs.yaml."""
    locks: LocksConfig = LocksConfig()
    users: UsersConfig = UsersConfig()
    pagination: PaginationConfig = PaginationConfig()
    logging: LoggingConfig = LoggingConfig()


# ---------------------------------------------------------------------------
# Config Loading Functions
# ---------------------------------------------------------------------------

_config: Optional[StateDocsConfig] = None


def _find_config_file() -> Optional[Path]:
    """Walk up from the CWD looking for statedocs.yaml."""
    current = Path.cwd()
    for parent in [current, *current.parents]:
        candidate = parent / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate
    return None


def load_config(config_path: Optional[str] = None) -> StateDocsConfig:
    """
    Load and validate statedocs.yaml.

    Args:
        config_path: Explicit path to the file. If None, auto-discovers.

    Returns:
        Validated StateDocsConfig instance (defaults when no file exists).
    """
    global _config

    path = Path(config_path) if config_path else _find_config_file()
    if path is None or not path.exists():
        _config = StateDocsConfig()
        return _config

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    # Allow the whole file to be wrapped under a "statedocs:" key
    data = raw.get("statedocs", raw)

    try:
        _config = StateDocsConfig(**data)
    except ValidationError as e:
        raise StateDocsConfigError(
            f"Invalid configuration in {path}",
            config_path=str(path),
            validation_errors=e.errors(),
        ) from e
    return _config


def get_config() -> StateDocsConfig:
    """Get the currently loaded config, loading if necessary."""
    global _config
    if _config is None:
        _config = load_config()
    return _config
