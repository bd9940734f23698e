"""
Registry store — the single source of truth for what is installed.

The registry is a YAML mapping of package name → PackageRecord kept in
the config file.  Writes are atomic (write to temp file, then rename)
so the file is never seen half-written.

Concurrency:
    - Mutations are serialized by one write lock.  Each mutation
      re-reads the file, applies exactly one record change, and
      rewrites it, so parallel updates of different packages never
      clobber each other's records.
    - ``claim(name)`` marks a package as busy for the duration of an
      operation; a second claim on the same name is rejected.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import yaml
from pydantic import ValidationError

from blindspot.core.errors import NotInstalledError, PackageBusyError, RegistryIOError
from blindspot.core.models.package import PackageRecord, RegistryDocument

logger = logging.getLogger(__name__)


class RegistryStore:
    """Durable mapping of package name → PackageRecord."""

    def __init__(self, path: Path):
        self._path = Path(path)
        self._write_lock = threading.Lock()
        self._claims_lock = threading.Lock()
        self._claimed: set[str] = set()

    @property
    def path(self) -> Path:
        return self._path

    # ── Reads ────────────────────────────────────────────────────

    def load(self) -> RegistryDocument:
        """Read the registry file.

        A missing file is an empty registry.

        Raises:
            RegistryIOError: If the file is unreadable or corrupt.
        """
        if not self._path.exists():
            logger.debug("No registry at %s — empty", self._path)
            return RegistryDocument()

        try:
            raw = self._path.read_text(encoding="utf-8")
        except OSError as e:
            raise RegistryIOError(f"Cannot read registry {self._path}: {e}") from e

        try:
            data = yaml.safe_load(raw)
        except yaml.YAMLError as e:
            raise RegistryIOError(f"Invalid YAML in registry {self._path}: {e}") from e

        if data is None:
            return RegistryDocument()
        if not isinstance(data, dict):
            raise RegistryIOError(
                f"Expected a YAML mapping in {self._path}, got {type(data).__name__}"
            )

        try:
            return RegistryDocument.model_validate(data)
        except ValidationError as e:
            raise RegistryIOError(f"Corrupt registry {self._path}: {e}") from e

    def get(self, name: str) -> PackageRecord | None:
        return self.load().packages.get(name)

    def require(self, name: str) -> PackageRecord:
        """Return the record for ``name`` or raise NotInstalledError."""
        record = self.get(name)
        if record is None:
            raise NotInstalledError(name)
        return record

    def contains(self, name: str) -> bool:
        return name in self.load().packages

    def list(self) -> list[PackageRecord]:
        """All records, sorted by name."""
        packages = self.load().packages
        return [packages[k] for k in sorted(packages)]

    # ── Writes ───────────────────────────────────────────────────

    def create(self) -> bool:
        """Write an empty registry if none exists.

        Returns:
            True if a new file was created.
        """
        with self._write_lock:
            if self._path.exists():
                return False
            self._write(RegistryDocument())
            return True

    def put(self, record: PackageRecord) -> None:
        """Insert or replace one record."""
        with self._write_lock:
            doc = self.load()
            doc.packages[record.name] = record
            self._write(doc)
        logger.debug("Registry: stored %s", record)

    def delete(self, name: str) -> PackageRecord:
        """Remove one record and return it.

        Raises:
            NotInstalledError: If ``name`` is not in the registry.
        """
        with self._write_lock:
            doc = self.load()
            record = doc.packages.pop(name, None)
            if record is None:
                raise NotInstalledError(name)
            self._write(doc)
        logger.debug("Registry: deleted %s", name)
        return record

    def _write(self, doc: RegistryDocument) -> None:
        """Serialize and atomically replace the registry file."""
        data = doc.model_dump(mode="json", exclude_none=True)
        content = yaml.safe_dump(data, sort_keys=True, default_flow_style=False)

        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=self._path.parent,
                prefix=".bspm_",
                suffix=".tmp",
            )
        except OSError as e:
            raise RegistryIOError(f"Cannot write registry {self._path}: {e}") from e

        tmp = Path(tmp_path)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self._path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            logger.error("Failed to save registry to %s: %s", self._path, e)
            raise RegistryIOError(f"Cannot write registry {self._path}: {e}") from e

    # ── Per-package exclusion ────────────────────────────────────

    @contextmanager
    def claim(self, name: str) -> Iterator[None]:
        """Hold ``name`` for the duration of one operation.

        Raises:
            PackageBusyError: If another operation already holds ``name``.
        """
        with self._claims_lock:
            if name in self._claimed:
                raise PackageBusyError(name)
            self._claimed.add(name)
        try:
            yield
        finally:
            with self._claims_lock:
                self._claimed.discard(name)
