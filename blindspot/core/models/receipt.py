"""
OperationReceipt and BatchReport — what an operation reports back.

Receipts capture the outcome of a single operation on a single
package: ``ok`` (state changed), ``noop`` (already up to date), or
``failed`` (with the error kind and message).  The CLI renders them;
the history ledger stores them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class OperationReceipt(BaseModel):
    """Result of one install/update/rollback/uninstall."""

    package: str
    operation: Literal["install", "update", "rollback", "uninstall"]
    status: Literal["ok", "noop", "failed"] = "ok"

    started_at: str = Field(default_factory=_now_iso)
    ended_at: str = Field(default_factory=_now_iso)
    duration_ms: int = 0

    version_before: str | None = None
    version_after: str | None = None
    message: str = ""

    error: str | None = None
    error_kind: str | None = None   # exception class name
    recovery_paths: list[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    @property
    def noop(self) -> bool:
        return self.status == "noop"

    @property
    def failed(self) -> bool:
        return self.status == "failed"

    @property
    def inconsistent(self) -> bool:
        """True when the failure may have left state needing manual inspection."""
        return self.error_kind == "PartialUpdateError"


@dataclass
class BatchReport:
    """Per-package receipts of a batch update."""

    receipts: list[OperationReceipt] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.receipts)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.receipts if r.ok)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.receipts if r.failed)

    @property
    def unchanged(self) -> int:
        return sum(1 for r in self.receipts if r.noop)

    @property
    def status(self) -> str:
        if self.failed == 0:
            return "ok"
        if self.succeeded + self.unchanged > 0:
            return "partial"
        return "failed"

    def receipt_for(self, name: str) -> OperationReceipt | None:
        for r in self.receipts:
            if r.package == name:
                return r
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "total": self.total,
            "succeeded": self.succeeded,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "receipts": [r.model_dump(mode="json") for r in self.receipts],
        }
