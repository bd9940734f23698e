"""
Error taxonomy — every failure an operation can report.

Each class maps to a distinct user-visible outcome.  Only
``PartialUpdateError`` means the on-disk state may need manual
inspection; every other error guarantees that nothing changed for
the package in question.
"""

from __future__ import annotations

from pathlib import Path


class BlindspotError(Exception):
    """Base class for all errors raised by blindspot operations."""


# ── Source resolution / transfer ────────────────────────────────


class ResolutionError(BlindspotError):
    """A source could not be turned into a downloadable asset."""


class DownloadError(BlindspotError):
    """The payload download failed after resolution succeeded."""


class SelectionRequiredError(BlindspotError):
    """A choice between several candidates is needed but nobody can make it."""

    def __init__(self, what: str, candidates: list[str]):
        self.what = what
        self.candidates = list(candidates)
        listing = ", ".join(self.candidates[:10])
        more = f" (+{len(self.candidates) - 10} more)" if len(self.candidates) > 10 else ""
        super().__init__(f"Several {what} candidates, pick one: {listing}{more}")


# ── Archive inspection ──────────────────────────────────────────


class UnsupportedFormatError(BlindspotError):
    """The payload is neither a readable container nor an executable."""


class EmptyArchiveError(BlindspotError):
    """The container holds no regular-file members."""


# ── Registry preconditions ──────────────────────────────────────


class AlreadyInstalledError(BlindspotError):
    def __init__(self, name: str, detail: str = ""):
        self.name = name
        msg = f"Package is already installed: '{name}'"
        if detail:
            msg = f"{msg} ({detail})"
        super().__init__(msg)


class NotInstalledError(BlindspotError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Package is not installed: '{name}'")


class NoBackupError(BlindspotError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"No backup to revert to for '{name}'")


class PackageBusyError(BlindspotError):
    """Another operation on the same package is still in flight."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Another operation on '{name}' is in progress")


# ── Filesystem / persistence ────────────────────────────────────


class InstallError(BlindspotError):
    """A filesystem step failed and the previous state was restored."""


class PartialUpdateError(BlindspotError):
    """A destructive step failed and consistency could not be restored.

    ``recovery_paths`` lists the files that still hold recoverable
    binaries (held copies of the previous binary, parked backups).
    """

    def __init__(self, name: str, reason: str, recovery_paths: list[Path] | None = None):
        self.name = name
        self.reason = reason
        self.recovery_paths = [Path(p) for p in recovery_paths or []]
        super().__init__(f"Update of '{name}' left an inconsistent state: {reason}")


class RegistryIOError(BlindspotError):
    """The registry file is unreadable, corrupt, or unwritable."""
