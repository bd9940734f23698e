"""
Container formats and extraction outcomes.

Formats form a closed set: a payload is a raw binary, a tar archive,
or a zip archive, optionally wrapped in a compression layer (zip
carries its own).  Extraction either yields exactly one executable or
asks the caller to choose among candidates.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from blindspot.core.models.package import Compression


@dataclass(frozen=True)
class RawBinary:
    compression: Compression = Compression.NONE

    def describe(self) -> str:
        if self.compression == Compression.NONE:
            return "raw binary"
        return f"{self.compression.value}-compressed binary"


@dataclass(frozen=True)
class TarArchive:
    compression: Compression = Compression.NONE

    def describe(self) -> str:
        if self.compression == Compression.NONE:
            return "tar archive"
        return f"tar archive with {self.compression.value} compression"


@dataclass(frozen=True)
class ZipArchive:
    def describe(self) -> str:
        return "zip archive"


ContainerFormat = RawBinary | TarArchive | ZipArchive


@dataclass(frozen=True)
class ArchiveMember:
    """A regular file inside a container."""

    path: str
    size: int
    executable: bool

    @property
    def basename(self) -> str:
        return self.path.rstrip("/").rsplit("/", 1)[-1]


@dataclass(frozen=True)
class Extracted:
    """Exactly one executable, ready to be written to disk."""

    name: str
    data: bytes = field(repr=False)
    member: str | None = None   # archive member path, None for raw payloads
    container: ContainerFormat = field(default_factory=RawBinary)


@dataclass(frozen=True)
class NeedsSelection:
    """Several members could be the executable; the caller must pick."""

    candidates: list[ArchiveMember]
    container: ContainerFormat

    @property
    def names(self) -> list[str]:
        return [m.path for m in self.candidates]
