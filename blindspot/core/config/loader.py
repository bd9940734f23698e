"""
Settings loader — where the registry, binaries and backups live.

Everything comes from environment variables with XDG defaults:

    BSPM_CONFIG        registry file      ($XDG_CONFIG_HOME/blindspot/bspm.yaml)
    BSPM_BIN_DIR       installed binaries (~/.local/bin)
    BSPM_DATA_DIR      backups + history  ($XDG_DATA_HOME/blindspot)
    BSPM_GITHUB_API    releases API base  (https://api.github.com)
    GITHUB_TOKEN       optional API token
    BSPM_HTTP_TIMEOUT  seconds per request (30)
    BSPM_MAX_WORKERS   parallel updates   (8)
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

# Default filenames
REGISTRY_FILE = "bspm.yaml"
BACKUP_DIR = "backups"
HISTORY_FILE = "history.ndjson"

DEFAULT_GITHUB_API = "https://api.github.com"


class ConfigError(Exception):
    """Raised when settings are invalid."""


class Settings(BaseModel):
    """Resolved locations and tunables for one process."""

    config_path: Path
    bin_dir: Path
    data_dir: Path

    github_api: str = DEFAULT_GITHUB_API
    github_token: str | None = Field(default=None, repr=False)
    http_timeout: float = 30.0
    max_workers: int = 8

    @field_validator("http_timeout")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("http_timeout must be positive")
        return v

    @field_validator("max_workers")
    @classmethod
    def _positive_workers(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_workers must be at least 1")
        return v

    @property
    def backup_dir(self) -> Path:
        return self.data_dir / BACKUP_DIR

    @property
    def history_path(self) -> Path:
        return self.data_dir / HISTORY_FILE

    def binary_path(self, name: str) -> Path:
        return (self.bin_dir / name).absolute()

    def backup_path(self, name: str) -> Path:
        return (self.backup_dir / name).absolute()


def _xdg(env: Mapping[str, str], var: str, fallback: str) -> Path:
    value = env.get(var)
    if value:
        return Path(value)
    return Path.home() / fallback


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Build settings from environment variables.

    Args:
        env: Mapping to read instead of ``os.environ`` (tests).

    Raises:
        ConfigError: If a value cannot be parsed or validated.
    """
    env = os.environ if env is None else env

    config_path = (
        Path(env["BSPM_CONFIG"])
        if env.get("BSPM_CONFIG")
        else _xdg(env, "XDG_CONFIG_HOME", ".config") / "blindspot" / REGISTRY_FILE
    )
    bin_dir = (
        Path(env["BSPM_BIN_DIR"])
        if env.get("BSPM_BIN_DIR")
        else Path.home() / ".local" / "bin"
    )
    data_dir = (
        Path(env["BSPM_DATA_DIR"])
        if env.get("BSPM_DATA_DIR")
        else _xdg(env, "XDG_DATA_HOME", ".local/share") / "blindspot"
    )

    raw: dict = {
        "config_path": config_path.expanduser().absolute(),
        "bin_dir": bin_dir.expanduser().absolute(),
        "data_dir": data_dir.expanduser().absolute(),
        "github_api": env.get("BSPM_GITHUB_API") or DEFAULT_GITHUB_API,
        "github_token": env.get("GITHUB_TOKEN") or None,
    }
    if env.get("BSPM_HTTP_TIMEOUT"):
        raw["http_timeout"] = env["BSPM_HTTP_TIMEOUT"]
    if env.get("BSPM_MAX_WORKERS"):
        raw["max_workers"] = env["BSPM_MAX_WORKERS"]

    try:
        settings = Settings.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid settings: {e}") from e

    logger.debug(
        "Settings: config=%s bin=%s data=%s",
        settings.config_path, settings.bin_dir, settings.data_dir,
    )
    return settings


def ensure_dirs(settings: Settings) -> None:
    """Create the config, bin, data and backup directories if missing."""
    for path in (
        settings.config_path.parent,
        settings.bin_dir,
        settings.data_dir,
        settings.backup_dir,
    ):
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigError(f"Cannot create directory {path}: {e}") from e
