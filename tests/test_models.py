"""
Tests for domain models — records, receipts, reports.
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from blindspot.core.models import (
    BatchReport,
    OperationReceipt,
    PackageRecord,
    PackageState,
    RegistryDocument,
)


class TestPackageRecord:
    def test_defaults(self):
        r = PackageRecord(name="rg", source="BurntSushi/ripgrep", version="14.1.0", binary_path=Path("/b/rg"))
        assert r.backup_path is None
        assert r.backup_version is None
        assert r.state == PackageState.INSTALLED
        assert r.format_hint.empty
        assert r.installed_at

    def test_backup_pair_required(self):
        with pytest.raises(ValidationError):
            PackageRecord(
                name="rg", source="s", version="2", binary_path=Path("/b/rg"),
                backup_path=Path("/d/rg"),
            )
        with pytest.raises(ValidationError):
            PackageRecord(
                name="rg", source="s", version="2", binary_path=Path("/b/rg"),
                backup_version="1",
            )

    def test_updated_state(self):
        r = PackageRecord(
            name="rg", source="s", version="2", binary_path=Path("/b/rg"),
            backup_path=Path("/d/rg"), backup_version="1",
        )
        assert r.has_backup
        assert r.state == PackageState.UPDATED

    def test_json_roundtrip(self):
        r = PackageRecord(name="fd", source="s", version="v9", binary_path=Path("/b/fd"), member="fd-v9/fd")
        again = PackageRecord.model_validate(r.model_dump(mode="json"))
        assert again == r


class TestRegistryDocument:
    def test_key_must_match_name(self):
        record = {"name": "fd", "source": "s", "version": "1", "binary_path": "/b/fd"}
        with pytest.raises(ValidationError):
            RegistryDocument.model_validate({"packages": {"rg": record}})

    def test_empty(self):
        doc = RegistryDocument()
        assert doc.schema_version == 1
        assert doc.packages == {}


class TestBatchReport:
    def _receipt(self, name: str, status: str) -> OperationReceipt:
        return OperationReceipt(package=name, operation="update", status=status)

    def test_all_ok(self):
        report = BatchReport([self._receipt("a", "ok"), self._receipt("b", "noop")])
        assert report.status == "ok"
        assert report.succeeded == 1
        assert report.unchanged == 1

    def test_partial(self):
        report = BatchReport([self._receipt("a", "ok"), self._receipt("b", "failed")])
        assert report.status == "partial"
        assert report.failed == 1

    def test_all_failed(self):
        report = BatchReport([self._receipt("a", "failed")])
        assert report.status == "failed"

    def test_receipt_for(self):
        report = BatchReport([self._receipt("a", "ok")])
        assert report.receipt_for("a").ok
        assert report.receipt_for("zzz") is None

    def test_to_dict(self):
        d = BatchReport([self._receipt("a", "ok")]).to_dict()
        assert d["total"] == 1
        assert d["receipts"][0]["package"] == "a"

    def test_inconsistent_flag(self):
        r = OperationReceipt(package="a", operation="update", status="failed", error_kind="PartialUpdateError")
        assert r.inconsistent
        assert not self._receipt("b", "failed").inconsistent
