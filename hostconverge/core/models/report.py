"""
ExecutionRecord and RunReport — the only externally consumed artifact of a run.

Records are created once per plan entry and never edited. The report
aggregates them in plan order and derives the overall status:

    success          every executed entry ended ``applied``
    aborted          the run was halted (halt policy, timeout, cancellation)
    partial_failure  anything else that is not a success, including a
                     run that was never halted but applied nothing
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from hostconverge.core.models.action import ActionKind, Severity
from hostconverge.core.models.policy import ExecutionPolicy


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class Outcome(StrEnum):
    SKIPPED = "skipped"      # precondition already satisfied
    APPLIED = "applied"
    FAILED = "failed"
    ABORTED = "aborted"      # never dispatched


class RunStatus(StrEnum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    ABORTED = "aborted"


_MARKERS = {
    Outcome.SKIPPED: "⊘",
    Outcome.APPLIED: "✓",
    Outcome.FAILED: "✗",
    Outcome.ABORTED: "–",
}


class ExecutionRecord(BaseModel):
    """Per-action result, keyed by identifier."""

    model_config = ConfigDict(frozen=True)

    identifier: str
    kind: ActionKind
    outcome: Outcome
    detail: str = ""
    severity: Severity = Severity.REQUIRED
    attempts: int = 0
    duration_ms: int = 0
    started_at: str = Field(default_factory=_now_iso)
    ended_at: str = Field(default_factory=_now_iso)

    @property
    def executed(self) -> bool:
        """Whether this entry was marked for execution by the plan."""
        return self.outcome != Outcome.SKIPPED

    @property
    def marker(self) -> str:
        return _MARKERS[self.outcome]


class RunReport(BaseModel):
    """Ordered records plus the derived run status."""

    run_id: str = ""
    document: str = ""
    policy: ExecutionPolicy = Field(default_factory=ExecutionPolicy)
    records: list[ExecutionRecord] = Field(default_factory=list)
    halted: bool = False
    halt_reason: str = ""
    started_at: str = Field(default_factory=_now_iso)
    ended_at: str = ""

    # ── Counts ───────────────────────────────────────────────────

    def count(self, outcome: Outcome) -> int:
        return sum(1 for r in self.records if r.outcome == outcome)

    @property
    def applied(self) -> int:
        return self.count(Outcome.APPLIED)

    @property
    def failed(self) -> int:
        return self.count(Outcome.FAILED)

    @property
    def skipped(self) -> int:
        return self.count(Outcome.SKIPPED)

    @property
    def aborted(self) -> int:
        return self.count(Outcome.ABORTED)

    @property
    def executed(self) -> int:
        return sum(1 for r in self.records if r.executed)

    @property
    def status(self) -> RunStatus:
        if self.halted:
            return RunStatus.ABORTED
        if all(r.outcome == Outcome.APPLIED for r in self.records if r.executed):
            return RunStatus.SUCCESS
        return RunStatus.PARTIAL_FAILURE

    @property
    def ok(self) -> bool:
        return self.status == RunStatus.SUCCESS

    def record_for(self, identifier: str) -> ExecutionRecord | None:
        for record in self.records:
            if record.identifier == identifier:
                return record
        return None

    # ── Rendering ────────────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "document": self.document,
            "status": self.status.value,
            "halted": self.halted,
            "halt_reason": self.halt_reason,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "policy": self.policy.model_dump(mode="json"),
            "totals": {
                "records": len(self.records),
                "executed": self.executed,
                "applied": self.applied,
                "failed": self.failed,
                "skipped": self.skipped,
                "aborted": self.aborted,
            },
            "records": [r.model_dump(mode="json") for r in self.records],
        }

    def summary_lines(self) -> list[str]:
        """Human-readable ordered summary, one line per record plus totals."""
        lines = []
        for record in self.records:
            timing = f" ({record.duration_ms}ms)" if record.duration_ms else ""
            retry = f" [attempts: {record.attempts}]" if record.attempts > 1 else ""
            line = f"{record.marker} {record.identifier} [{record.outcome.value}]{timing}{retry}"
            if record.detail:
                line += f" — {record.detail}"
            lines.append(line)
        lines.append(
            f"Result: {self.status.value} — "
            f"{self.applied} applied, {self.failed} failed, "
            f"{self.skipped} skipped, {self.aborted} aborted"
        )
        if self.halt_reason:
            lines.append(f"Halted: {self.halt_reason}")
        return lines
