"""
Install / update / rollback engine.

Every operation claims its package name in the registry store, does
all network and archive work first (no side effects), and only then
touches the filesystem through staged files and atomic renames:

    install    stage → rename into bin dir → commit record
    update     stage → hold copy of current → rename new into place
               → park old backup → place held copy as backup → commit
    rollback   stage backup copy → hold current → rename into place
               → commit → drop backup file
    uninstall  drop record → remove binary and backup

A failure after the first rename restores from the held / parked
copies.  If that restoration is incomplete the operation raises
PartialUpdateError naming the files that still hold recoverable
binaries.  Nothing runs again automatically on the next invocation.
"""

from __future__ import annotations

import concurrent.futures
import logging
import os
import re
import shutil
import tempfile
import time
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

from blindspot.core.config.loader import Settings
from blindspot.core.errors import (
    AlreadyInstalledError,
    BlindspotError,
    DownloadError,
    InstallError,
    NoBackupError,
    NotInstalledError,
    PartialUpdateError,
    RegistryIOError,
    SelectionRequiredError,
    UnsupportedFormatError,
)
from blindspot.core.models.archive import Extracted, NeedsSelection
from blindspot.core.models.asset import DirectAsset, ResolvedAsset
from blindspot.core.models.package import FormatHint, PackageRecord
from blindspot.core.models.receipt import BatchReport, OperationReceipt
from blindspot.core.observability.logging_config import package_context
from blindspot.core.persistence.history import HistoryWriter
from blindspot.core.persistence.registry_store import RegistryStore
from blindspot.core.services.archive import inspect_and_extract
from blindspot.core.services.resolver import Chooser, SourceResolver
from blindspot.core.services.transport import HttpTransport, RetryPolicy, TransportError

logger = logging.getLogger(__name__)

EXEC_MODE = 0o755

_PACKAGE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+-]*$")


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def validate_name(name: str) -> str:
    """Package names become filenames in the bin dir."""
    if not _PACKAGE_NAME_RE.match(name) or name in (".", ".."):
        raise InstallError(f"Invalid package name: '{name}'")
    return name


class Engine:
    """Runs package operations against one registry and one set of dirs."""

    def __init__(
        self,
        settings: Settings,
        store: RegistryStore,
        resolver: SourceResolver,
        transport: HttpTransport,
        *,
        history: HistoryWriter | None = None,
    ):
        self._settings = settings
        self._store = store
        self._resolver = resolver
        self._transport = transport
        self._history = history

    @property
    def store(self) -> RegistryStore:
        return self._store

    # ── Queries ──────────────────────────────────────────────────

    def status(self, name: str) -> PackageRecord:
        """Record for ``name``; NotInstalledError if absent."""
        return self._store.require(name)

    def list(self) -> list[PackageRecord]:
        return self._store.list()

    # ── Install ──────────────────────────────────────────────────

    def install(
        self,
        source: str,
        name: str | None = None,
        *,
        force: bool = False,
        hint: FormatHint | None = None,
        select_asset: Chooser | None = None,
        select_member: Chooser | None = None,
    ) -> OperationReceipt:
        """Install ``source`` under ``name`` (default: suggested by the resolver).

        Raises:
            AlreadyInstalledError: ``name`` is in the registry (or an
                unmanaged file sits at its path) and ``force`` is off.
        """
        label = name or source

        def body() -> OperationReceipt:
            asset: ResolvedAsset | None = None
            pkg = name
            if pkg is None:
                asset = self._resolver.resolve(source, select_asset=select_asset)
                pkg = asset.suggested_name
            validate_name(pkg)

            with self._store.claim(pkg):
                existing = self._store.get(pkg)
                binary_path = self._settings.binary_path(pkg)
                if existing is not None and not force:
                    raise AlreadyInstalledError(pkg, f"version {existing.version}")
                if existing is None and binary_path.exists() and not force:
                    raise AlreadyInstalledError(pkg, f"unmanaged file at {binary_path}")

                if asset is None:
                    asset = self._resolver.resolve(source, select_asset=select_asset)
                extracted = self._extract(
                    self._fetch(asset), asset, pkg,
                    remembered=None, hint=hint, select_member=select_member,
                )

                record = PackageRecord(
                    name=pkg,
                    source=source,
                    version=asset.version,
                    binary_path=binary_path,
                    asset_name=asset.filename,
                    member=extracted.member,
                    format_hint=hint or FormatHint(),
                )
                self._place(record, self._stage_bytes(extracted.data, pkg), existing)

                logger.info("Installed %s %s → %s", pkg, asset.version, binary_path)
                return OperationReceipt(
                    package=pkg,
                    operation="install",
                    version_before=existing.version if existing else None,
                    version_after=asset.version,
                    message=f"Installed {pkg} {asset.version}",
                )

        return self._run("install", label, body)

    def _place(self, record: PackageRecord, staged: Path, existing: PackageRecord | None) -> None:
        """Rename a staged binary into place and commit a fresh record."""
        binary = record.binary_path
        hold = None
        if binary.exists():
            try:
                hold = self._copy_to_staging(binary, self._settings.bin_dir, record.name, "hold")
            except OSError as e:
                staged.unlink(missing_ok=True)
                raise InstallError(f"Cannot keep a copy of {binary}: {e}") from e

        try:
            os.replace(staged, binary)
        except OSError as e:
            staged.unlink(missing_ok=True)
            self._discard(hold)
            raise InstallError(f"Cannot move new binary into {binary}: {e}") from e

        try:
            self._store.put(record)
        except RegistryIOError as e:
            restored = self._undo_place(binary, hold)
            if not restored:
                raise PartialUpdateError(
                    record.name, f"registry write failed ({e}) and {binary} could not be restored",
                    recovery_paths=[hold] if hold else [],
                ) from e
            raise

        self._discard(hold)
        if existing is not None and existing.backup_path and existing.backup_path != binary:
            self._discard(existing.backup_path)

    def _undo_place(self, binary: Path, hold: Path | None) -> bool:
        try:
            if hold is not None:
                os.replace(hold, binary)
            else:
                binary.unlink(missing_ok=True)
            return True
        except OSError as e:
            logger.error("Cannot restore %s: %s", binary, e)
            return False

    # ── Update ───────────────────────────────────────────────────

    def update(
        self,
        name: str,
        *,
        select_asset: Chooser | None = None,
        select_member: Chooser | None = None,
    ) -> OperationReceipt:
        """Update ``name`` to the latest version of its source.

        Returns a ``noop`` receipt when the resolved version equals the
        installed one.

        Raises:
            NotInstalledError: ``name`` is not in the registry.
            PartialUpdateError: The swap failed and could not be undone.
        """

        def body() -> OperationReceipt:
            with self._store.claim(name):
                record = self._store.require(name)
                asset = self._resolver.resolve(
                    record.source,
                    previous_asset=record.asset_name,
                    previous_version=record.version,
                    select_asset=select_asset,
                )
                logger.info("%s: installed %s, latest %s", name, record.version, asset.version)

                if asset.version == record.version:
                    return OperationReceipt(
                        package=name,
                        operation="update",
                        status="noop",
                        version_before=record.version,
                        version_after=record.version,
                        message=f"{name} is already up to date ({record.version})",
                    )

                extracted = self._extract(
                    self._fetch(asset), asset, name,
                    remembered=record.member, hint=record.format_hint,
                    select_member=select_member,
                )
                staged = self._stage_bytes(extracted.data, name)
                updated = self._swap_with_backup(record, staged, asset, extracted)

                logger.info("Updated %s: %s → %s", name, record.version, updated.version)
                return OperationReceipt(
                    package=name,
                    operation="update",
                    version_before=record.version,
                    version_after=updated.version,
                    message=f"{name} updated: {record.version} → {updated.version}",
                )

        return self._run("update", name, body)

    def _swap_with_backup(
        self,
        record: PackageRecord,
        staged: Path,
        asset: ResolvedAsset,
        extracted: Extracted,
    ) -> PackageRecord:
        name = record.name
        binary = record.binary_path
        backup = record.backup_path or self._settings.backup_path(name)

        # Nothing destructive yet: failures only clean up staging files.
        try:
            hold = self._copy_to_staging(binary, self._settings.bin_dir, name, "hold")
        except OSError as e:
            staged.unlink(missing_ok=True)
            raise InstallError(f"Cannot keep a copy of {binary}: {e}") from e

        try:
            os.replace(staged, binary)
        except OSError as e:
            staged.unlink(missing_ok=True)
            self._discard(hold)
            raise InstallError(f"Cannot move new binary into {binary}: {e}") from e

        # From here on the live binary has changed; failures must restore.
        parked: Path | None = None
        backup_placed = False
        try:
            backup.parent.mkdir(parents=True, exist_ok=True)
            if backup.exists():
                parking = backup.with_name(f".{backup.name}.parked.tmp")
                os.replace(backup, parking)
                parked = parking
            backup_tmp = self._copy_to_staging(hold, backup.parent, name, "backup")
            os.replace(backup_tmp, backup)
            backup_placed = True

            updated = record.model_copy(update={
                "version": asset.version,
                "backup_path": backup,
                "backup_version": record.version,
                "asset_name": asset.filename,
                "member": extracted.member,
                "updated_at": _now_iso(),
            })
            self._store.put(updated)
        except (OSError, RegistryIOError) as e:
            logger.error("Update of %s failed after swap: %s — restoring", name, e)
            leftovers = self._restore_swap(binary, hold, backup, parked, backup_placed)
            if leftovers is not None:
                raise PartialUpdateError(name, str(e), recovery_paths=leftovers) from e
            if isinstance(e, BlindspotError):
                raise
            raise InstallError(f"Update of {name} failed, previous version restored: {e}") from e

        self._discard(hold)
        self._discard(parked)
        return updated

    def _restore_swap(
        self,
        binary: Path,
        hold: Path,
        backup: Path,
        parked: Path | None,
        backup_placed: bool,
    ) -> list[Path] | None:
        """Put binary and backup slot back as they were.

        Returns None on full restoration, else the files still holding
        recoverable binaries.
        """
        ok = True
        try:
            os.replace(hold, binary)
        except OSError as e:
            logger.error("Cannot restore %s from %s: %s", binary, hold, e)
            ok = False

        try:
            if parked is not None:
                os.replace(parked, backup)
            elif backup_placed:
                backup.unlink(missing_ok=True)
        except OSError as e:
            logger.error("Cannot restore backup slot %s: %s", backup, e)
            ok = False

        if ok:
            return None
        return [p for p in (hold, parked, backup) if p is not None and p.exists()]

    # ── Batch update ─────────────────────────────────────────────

    def update_many(self, names: list[str] | None = None) -> BatchReport:
        """Update several packages in parallel (default: all installed).

        Per-package failures are collected; none aborts the others.
        No chooser is available, so packages needing an interactive
        choice fail with SelectionRequiredError.
        """
        installed = {r.name for r in self._store.list()}
        targets = list(dict.fromkeys(names)) if names else sorted(installed)

        receipts: dict[str, OperationReceipt] = {}
        runnable = []
        for name in targets:
            if name in installed:
                runnable.append(name)
            else:
                receipts[name] = self._failed_receipt("update", name, NotInstalledError(name), time.monotonic())
                self._record(receipts[name])

        if runnable:
            workers = min(self._settings.max_workers, len(runnable))
            with concurrent.futures.ThreadPoolExecutor(
                max_workers=workers, thread_name_prefix="update",
            ) as pool:
                futures = {pool.submit(self._update_collecting, n): n for n in runnable}
                for future in concurrent.futures.as_completed(futures):
                    receipts[futures[future]] = future.result()

        report = BatchReport(receipts=[receipts[n] for n in targets])
        logger.info(
            "Batch update: %d updated, %d unchanged, %d failed",
            report.succeeded, report.unchanged, report.failed,
        )
        return report

    def _update_collecting(self, name: str) -> OperationReceipt:
        started = time.monotonic()
        try:
            return self.update(name)
        except BlindspotError as e:
            # Already recorded in history by _run.
            return self._failed_receipt("update", name, e, started)
        except Exception as e:
            logger.exception("Unexpected failure updating %s", name)
            receipt = self._failed_receipt("update", name, e, started)
            self._record(receipt)
            return receipt

    # ── Rollback ─────────────────────────────────────────────────

    def rollback(self, name: str) -> OperationReceipt:
        """Promote the backup to current and clear the backup slot.

        Raises:
            NotInstalledError: ``name`` is not in the registry.
            NoBackupError: There is no backup (never updated, or already
                rolled back once).
        """

        def body() -> OperationReceipt:
            with self._store.claim(name):
                record = self._store.require(name)
                if record.backup_path is None or record.backup_version is None:
                    raise NoBackupError(name)
                backup = record.backup_path
                binary = record.binary_path
                if not backup.is_file():
                    raise InstallError(f"Backup file of '{name}' is missing: {backup}")

                try:
                    staged = self._copy_to_staging(backup, self._settings.bin_dir, name, "revert")
                    os.chmod(staged, EXEC_MODE)
                except OSError as e:
                    raise InstallError(f"Cannot stage backup of {name}: {e}") from e

                reverted = record.model_copy(update={
                    "version": record.backup_version,
                    "backup_path": None,
                    "backup_version": None,
                    "updated_at": _now_iso(),
                })
                self._place(reverted, staged, None)
                self._discard(backup)

                logger.info("Reverted %s: %s → %s", name, record.version, reverted.version)
                return OperationReceipt(
                    package=name,
                    operation="rollback",
                    version_before=record.version,
                    version_after=reverted.version,
                    message=f"{name} reverted: {record.version} → {reverted.version}",
                )

        return self._run("rollback", name, body)

    # ── Uninstall ────────────────────────────────────────────────

    def uninstall(self, name: str) -> OperationReceipt:
        """Forget ``name`` and delete its binary and backup."""

        def body() -> OperationReceipt:
            with self._store.claim(name):
                record = self._store.delete(name)
                for path in (record.binary_path, record.backup_path):
                    if path is not None:
                        self._discard(path)
                logger.info("Uninstalled %s", name)
                return OperationReceipt(
                    package=name,
                    operation="uninstall",
                    version_before=record.version,
                    message=f"{name} removed",
                )

        return self._run("uninstall", name, body)

    # ── Download + extraction ────────────────────────────────────

    def _fetch(self, asset: ResolvedAsset) -> bytes:
        if isinstance(asset, DirectAsset) and asset.payload:
            return asset.payload
        logger.info("Fetching %s", asset.url)
        try:
            return self._transport.download(asset.url).data
        except TransportError as e:
            raise DownloadError(f"Failed to download {asset.url}: {e}") from e

    def _extract(
        self,
        payload: bytes,
        asset: ResolvedAsset,
        name: str,
        *,
        remembered: str | None,
        hint: FormatHint | None,
        select_member: Chooser | None,
    ) -> Extracted:
        """Run the archive inspector, resolving member selection."""
        choice = remembered
        while True:
            try:
                outcome = inspect_and_extract(
                    payload, asset.filename,
                    expected_name=name, choice=choice, hint=hint,
                )
            except UnsupportedFormatError:
                if choice is not None and choice == remembered:
                    logger.info("Member %s not found in new release, detecting again", remembered)
                    choice = remembered = None
                    continue
                raise

            if isinstance(outcome, Extracted):
                return outcome

            assert isinstance(outcome, NeedsSelection)
            if select_member is None:
                raise SelectionRequiredError("archive member", outcome.names)
            choice = select_member(outcome.names)
            if choice not in outcome.names:
                raise UnsupportedFormatError(f"Unknown member selected: {choice}")

    # ── Filesystem helpers ───────────────────────────────────────

    def _stage_bytes(self, data: bytes, name: str) -> Path:
        """Write ``data`` to an executable temp file inside the bin dir."""
        bin_dir = self._settings.bin_dir
        try:
            bin_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=bin_dir, prefix=f".{name}.", suffix=".tmp")
        except OSError as e:
            raise InstallError(f"Cannot stage {name} in {bin_dir}: {e}") from e

        path = Path(tmp)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(path, EXEC_MODE)
        except OSError as e:
            path.unlink(missing_ok=True)
            raise InstallError(f"Cannot stage {name} in {bin_dir}: {e}") from e
        return path

    @staticmethod
    def _copy_to_staging(src: Path, directory: Path, name: str, tag: str) -> Path:
        """Copy ``src`` to a fresh temp file in ``directory``."""
        fd, tmp = tempfile.mkstemp(dir=directory, prefix=f".{name}.{tag}.", suffix=".tmp")
        os.close(fd)
        path = Path(tmp)
        try:
            shutil.copy2(src, path)
        except OSError:
            path.unlink(missing_ok=True)
            raise
        return path

    @staticmethod
    def _discard(path: Path | None) -> None:
        if path is None:
            return
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Cannot remove %s: %s", path, e)

    # ── Receipts + history ───────────────────────────────────────

    def _run(
        self,
        operation: str,
        name: str,
        body: Callable[[], OperationReceipt],
    ) -> OperationReceipt:
        started_at = _now_iso()
        started = time.monotonic()
        try:
            with package_context(name):
                receipt = body()
        except BlindspotError as e:
            self._record(self._failed_receipt(operation, name, e, started, started_at))
            raise

        receipt.started_at = started_at
        receipt.ended_at = _now_iso()
        receipt.duration_ms = int((time.monotonic() - started) * 1000)
        self._record(receipt)
        return receipt

    @staticmethod
    def _failed_receipt(
        operation: str,
        name: str,
        error: Exception,
        started: float,
        started_at: str | None = None,
    ) -> OperationReceipt:
        receipt = OperationReceipt(
            package=name,
            operation=operation,
            status="failed",
            error=str(error),
            error_kind=type(error).__name__,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        if started_at:
            receipt.started_at = started_at
        if isinstance(error, PartialUpdateError):
            receipt.recovery_paths = [str(p) for p in error.recovery_paths]
        return receipt

    def _record(self, receipt: OperationReceipt) -> None:
        if self._history is not None:
            self._history.record(receipt)


def build_engine(settings: Settings, *, transport: HttpTransport | None = None) -> Engine:
    """Wire an Engine from settings."""
    transport = transport or HttpTransport(
        timeout=settings.http_timeout,
        token=settings.github_token,
        retry=RetryPolicy(),
    )
    return Engine(
        settings,
        RegistryStore(settings.config_path),
        SourceResolver(transport, settings.github_api),
        transport,
        history=HistoryWriter(settings.history_path),
    )
