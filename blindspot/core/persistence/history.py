"""
Operation history — append-only ledger of what happened to packages.

Every finished operation (including no-ops and failures) appends one
NDJSON line to ``<data dir>/history.ndjson``.  Entries are never
modified or deleted.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from blindspot.core.models.receipt import OperationReceipt

logger = logging.getLogger(__name__)


class HistoryEntry(BaseModel):
    """A single history line."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    operation: str = ""            # install, update, rollback, uninstall
    package: str = ""
    status: str = ""               # ok, noop, failed

    version_before: str | None = None
    version_after: str | None = None
    duration_ms: int = 0

    error: str | None = None
    error_kind: str | None = None

    @classmethod
    def from_receipt(cls, receipt: OperationReceipt) -> HistoryEntry:
        return cls(
            timestamp=receipt.ended_at,
            operation=receipt.operation,
            package=receipt.package,
            status=receipt.status,
            version_before=receipt.version_before,
            version_after=receipt.version_after,
            duration_ms=receipt.duration_ms,
            error=receipt.error,
            error_kind=receipt.error_kind,
        )


class HistoryWriter:
    """Append-only history ledger.

    Appends from parallel updates are serialized so lines never
    interleave.
    """

    def __init__(self, path: Path):
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def write(self, entry: HistoryEntry) -> None:
        """Append one entry.  Failures are logged, never raised."""
        line = json.dumps(entry.model_dump(mode="json"), ensure_ascii=False) + "\n"
        with self._lock:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with self._path.open("a", encoding="utf-8") as f:
                    f.write(line)
                logger.debug("History entry written: %s/%s", entry.operation, entry.package)
            except OSError as e:
                logger.error("Failed to write history entry: %s", e)

    def record(self, receipt: OperationReceipt) -> None:
        self.write(HistoryEntry.from_receipt(receipt))

    def read_all(self) -> list[HistoryEntry]:
        """Read all entries, oldest first."""
        if not self._path.is_file():
            return []

        entries = []
        try:
            with self._path.open("r", encoding="utf-8") as f:
                for line_num, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entries.append(HistoryEntry.model_validate(json.loads(line)))
                    except (json.JSONDecodeError, ValidationError) as e:
                        logger.warning("Skipping corrupt history entry at line %d: %s", line_num, e)
        except OSError as e:
            logger.error("Failed to read history: %s", e)

        return entries

    def read_recent(self, n: int = 20, package: str | None = None) -> list[HistoryEntry]:
        """The most recent ``n`` entries, optionally for one package."""
        entries = self.read_all()
        if package is not None:
            entries = [e for e in entries if e.package == package]
        return entries[-n:] if n > 0 else []
