"""
Tests for persistence — registry store and history ledger.
"""

import threading
from pathlib import Path

import pytest
import yaml

from blindspot.core.errors import NotInstalledError, PackageBusyError, RegistryIOError
from blindspot.core.models.package import PackageRecord
from blindspot.core.models.receipt import OperationReceipt
from blindspot.core.persistence.history import HistoryEntry, HistoryWriter
from blindspot.core.persistence.registry_store import RegistryStore


def _record(name: str, tmp_path: Path, version: str = "v1", **kwargs) -> PackageRecord:
    return PackageRecord(
        name=name,
        source=f"owner/{name}",
        version=version,
        binary_path=tmp_path / "bin" / name,
        **kwargs,
    )


class TestRegistryStore:
    """Tests for the registry file."""

    def test_put_and_get(self, tmp_path: Path):
        store = RegistryStore(tmp_path / "bspm.yaml")
        store.put(_record("rg", tmp_path))

        loaded = store.get("rg")
        assert loaded is not None
        assert loaded.version == "v1"
        assert loaded.backup_path is None

    def test_missing_file_is_empty(self, tmp_path: Path):
        store = RegistryStore(tmp_path / "nope.yaml")
        assert store.list() == []
        assert store.get("rg") is None

    def test_require_missing_raises(self, tmp_path: Path):
        store = RegistryStore(tmp_path / "bspm.yaml")
        with pytest.raises(NotInstalledError):
            store.require("rg")

    def test_delete(self, tmp_path: Path):
        store = RegistryStore(tmp_path / "bspm.yaml")
        store.put(_record("rg", tmp_path))
        removed = store.delete("rg")
        assert removed.name == "rg"
        assert not store.contains("rg")

    def test_delete_missing_raises(self, tmp_path: Path):
        store = RegistryStore(tmp_path / "bspm.yaml")
        with pytest.raises(NotInstalledError):
            store.delete("rg")

    def test_file_is_keyed_yaml(self, tmp_path: Path):
        path = tmp_path / "bspm.yaml"
        store = RegistryStore(path)
        store.put(_record("fd", tmp_path, backup_path=tmp_path / "b" / "fd", backup_version="v0"))

        data = yaml.safe_load(path.read_text())
        assert data["schema_version"] == 1
        assert data["packages"]["fd"]["version"] == "v1"
        assert data["packages"]["fd"]["backup_version"] == "v0"

    def test_corrupt_yaml_raises(self, tmp_path: Path):
        path = tmp_path / "bspm.yaml"
        path.write_text("packages: [unclosed\n")
        with pytest.raises(RegistryIOError):
            RegistryStore(path).list()

    def test_invalid_record_raises(self, tmp_path: Path):
        path = tmp_path / "bspm.yaml"
        path.write_text("packages:\n  rg:\n    name: rg\n")
        with pytest.raises(RegistryIOError):
            RegistryStore(path).list()

    def test_no_temp_files_left(self, tmp_path: Path):
        store = RegistryStore(tmp_path / "bspm.yaml")
        store.put(_record("rg", tmp_path))
        store.put(_record("rg", tmp_path, version="v2"))
        assert list(tmp_path.glob(".bspm_*.tmp")) == []

    def test_unwritable_raises(self, tmp_path: Path):
        blocker = tmp_path / "blocker"
        blocker.write_text("a file, not a directory")
        store = RegistryStore(blocker / "bspm.yaml")
        with pytest.raises(RegistryIOError):
            store.put(_record("rg", tmp_path))

    def test_create_does_not_overwrite(self, tmp_path: Path):
        store = RegistryStore(tmp_path / "bspm.yaml")
        assert store.create() is True
        store.put(_record("rg", tmp_path))
        assert store.create() is False
        assert store.contains("rg")

    def test_parallel_puts_keep_every_record(self, tmp_path: Path):
        """Concurrent single-record writes never clobber each other."""
        store = RegistryStore(tmp_path / "bspm.yaml")
        names = [f"pkg{i}" for i in range(20)]
        threads = [
            threading.Thread(target=store.put, args=(_record(n, tmp_path),))
            for n in names
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(r.name for r in store.list()) == sorted(names)

    def test_claim_rejects_second_claim(self, tmp_path: Path):
        store = RegistryStore(tmp_path / "bspm.yaml")
        with store.claim("rg"):
            with pytest.raises(PackageBusyError):
                with store.claim("rg"):
                    pass
            with store.claim("fd"):
                pass
        with store.claim("rg"):
            pass

    def test_claim_released_on_error(self, tmp_path: Path):
        store = RegistryStore(tmp_path / "bspm.yaml")
        with pytest.raises(RuntimeError):
            with store.claim("rg"):
                raise RuntimeError("boom")
        with store.claim("rg"):
            pass


class TestHistoryWriter:
    """Tests for the operation history ledger."""

    def test_write_and_read(self, tmp_path: Path):
        writer = HistoryWriter(tmp_path / "history.ndjson")
        writer.write(HistoryEntry(operation="install", package="rg", status="ok", version_after="v1"))

        entries = writer.read_all()
        assert len(entries) == 1
        assert entries[0].package == "rg"
        assert entries[0].version_after == "v1"

    def test_record_receipt(self, tmp_path: Path):
        writer = HistoryWriter(tmp_path / "history.ndjson")
        writer.record(OperationReceipt(
            package="fd", operation="update", status="failed",
            error="boom", error_kind="DownloadError",
        ))
        entry = writer.read_all()[0]
        assert entry.status == "failed"
        assert entry.error_kind == "DownloadError"

    def test_skips_corrupt_lines(self, tmp_path: Path):
        path = tmp_path / "history.ndjson"
        writer = HistoryWriter(path)
        writer.write(HistoryEntry(operation="install", package="a", status="ok"))
        with path.open("a") as f:
            f.write("not json\n")
        writer.write(HistoryEntry(operation="install", package="b", status="ok"))

        assert [e.package for e in writer.read_all()] == ["a", "b"]

    def test_read_recent_filters_package(self, tmp_path: Path):
        writer = HistoryWriter(tmp_path / "history.ndjson")
        for i in range(5):
            writer.write(HistoryEntry(operation="update", package="a" if i % 2 else "b", status="ok"))

        assert len(writer.read_recent(2)) == 2
        assert all(e.package == "a" for e in writer.read_recent(10, package="a"))
        assert writer.read_recent(0) == []

    def test_missing_file_is_empty(self, tmp_path: Path):
        assert HistoryWriter(tmp_path / "none.ndjson").read_all() == []
