"""
PackageRecord — the persisted state of one installed package.

The registry document maps package names to records.  It's serialized
to the YAML config file and re-read before every mutation.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, Field, model_validator


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class Compression(StrEnum):
    """Compression layer wrapped around a payload."""

    NONE = "none"
    GZIP = "gzip"
    BZIP2 = "bzip2"
    XZ = "xz"
    ZSTD = "zstd"


class ArchiveKind(StrEnum):
    """Container kind of a payload (after decompression)."""

    NONE = "none"
    TAR = "tar"
    ZIP = "zip"


class PackageState(StrEnum):
    """Lifecycle state of a registered package; no record means absent."""

    INSTALLED = "installed"
    UPDATED = "updated"


class FormatHint(BaseModel):
    """Explicit format overrides given at install time.

    ``None`` means "detect from magic bytes and filename".
    """

    compression: Compression | None = None
    archive: ArchiveKind | None = None

    @property
    def empty(self) -> bool:
        return self.compression is None and self.archive is None


class PackageRecord(BaseModel):
    """One installed package."""

    name: str
    source: str
    version: str
    binary_path: Path
    backup_path: Path | None = None
    backup_version: str | None = None

    # ── Re-selection memory ──────────────────────────────────────
    asset_name: str | None = None   # release asset / download filename
    member: str | None = None       # archive member path

    format_hint: FormatHint = Field(default_factory=FormatHint)

    # ── Timestamps ───────────────────────────────────────────────
    installed_at: str = Field(default_factory=_now_iso)
    updated_at: str | None = None

    @model_validator(mode="after")
    def _backup_pair(self) -> PackageRecord:
        if (self.backup_path is None) != (self.backup_version is None):
            raise ValueError("backup_path and backup_version must be set together")
        return self

    @property
    def has_backup(self) -> bool:
        return self.backup_path is not None

    @property
    def state(self) -> PackageState:
        return PackageState.UPDATED if self.has_backup else PackageState.INSTALLED

    def __str__(self) -> str:
        return f"{self.name} {self.version}"


class RegistryDocument(BaseModel):
    """Root of the registry file."""

    schema_version: int = 1
    packages: dict[str, PackageRecord] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _keys_match_names(self) -> RegistryDocument:
        for key, record in self.packages.items():
            if key != record.name:
                raise ValueError(f"registry key '{key}' does not match record name '{record.name}'")
        return self
