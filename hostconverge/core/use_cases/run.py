"""
Run use cases — plan and apply a desired-state document.

This is the full vertical slice:

    load document → build graph → probe facts → plan → execute → audit

The graph is built before anything touches the host, so a duplicate,
dangling or cyclic document fails with zero probes and zero changes.
Use cases never raise for expected failures: they return a RunResult
whose ``error`` explains what went wrong.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from hostconverge.adapters.registry import AdapterRegistry
from hostconverge.core.config.loader import ConfigError, load_document
from hostconverge.core.engine.executor import Executor
from hostconverge.core.engine.graph import DependencyGraph, build_graph
from hostconverge.core.engine.planner import Plan, plan, required_queries
from hostconverge.core.engine.probe import FactProbe
from hostconverge.core.errors import GraphBuildError
from hostconverge.core.models.document import DesiredState
from hostconverge.core.models.facts import FactSnapshot
from hostconverge.core.models.policy import ExecutionPolicy
from hostconverge.core.models.report import Outcome, RunReport
from hostconverge.core.persistence.audit import AuditEntry, AuditWriter
from hostconverge.core.persistence.backups import BackupStore
from hostconverge.core.redaction import Redactor, register_secrets
from hostconverge.core.reliability.retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    document: DesiredState | None = None
    graph: DependencyGraph | None = None
    snapshot: FactSnapshot | None = None
    plan: Plan | None = None
    report: RunReport | None = None
    redactor: Redactor = field(default_factory=Redactor)
    error: str | None = None
    error_identifiers: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        if self.error:
            return {"error": self.error, "identifiers": list(self.error_identifiers)}
        result: dict[str, Any] = {
            "document": str(self.document.source) if self.document else "",
            "name": self.document.name if self.document else "",
        }
        if self.plan is not None:
            result["plan"] = self.plan.to_dict()
        if self.snapshot is not None:
            result["facts"] = self.snapshot.to_dict()
        if self.report is not None:
            result["report"] = self.report.to_dict()
        return self.redactor.redact_obj(result)


def build_registry(mock: bool = False) -> AdapterRegistry:
    if mock:
        return AdapterRegistry.fake()
    return AdapterRegistry.for_host()


def plan_run(
    config_path: Path | None = None,
    overrides: dict[str, str] | None = None,
    mock: bool = False,
    registry: AdapterRegistry | None = None,
) -> RunResult:
    """Load, build, probe and plan. Changes nothing on the host."""
    result = RunResult()

    # ── Load document ────────────────────────────────────────────
    try:
        document = load_document(config_path, overrides)
    except ConfigError as e:
        result.error = str(e)
        return result
    result.document = document
    result.redactor = register_secrets(document.secret_values())

    # ── Build graph (no host access yet) ─────────────────────────
    try:
        result.graph = build_graph(document.actions)
    except GraphBuildError as e:
        result.error = str(e)
        result.error_identifiers = e.identifiers
        return result

    # ── Probe and plan ───────────────────────────────────────────
    if registry is None:
        registry = build_registry(mock)
    queries = required_queries(result.graph, document.values)
    result.snapshot = FactProbe(registry, timeout=document.policy.probe_timeout).snapshot(queries)
    result.plan = plan(result.graph, result.snapshot, document.values)

    logger.info(
        "Plan: %d to execute, %d satisfied",
        len(result.plan.to_execute),
        len(result.plan.entries) - len(result.plan.to_execute),
    )
    return result


def apply_run(
    config_path: Path | None = None,
    overrides: dict[str, str] | None = None,
    mock: bool = False,
    registry: AdapterRegistry | None = None,
    policy_overrides: dict[str, Any] | None = None,
    cancel: threading.Event | None = None,
    sleep: Callable[[float], None] | None = None,
    audit: bool = True,
) -> RunResult:
    """Plan, then execute the plan and record the run in the audit ledger."""
    if registry is None:
        registry = build_registry(mock)
    result = plan_run(config_path, overrides, registry=registry)
    if result.error or result.plan is None:
        return result

    document = result.document
    assert document is not None
    policy = _effective_policy(document.policy, policy_overrides)

    run_id = _run_id()
    backups = None if registry.mock_mode else BackupStore.for_document(document.base_dir)
    executor = Executor(
        registry,
        policy,
        retry=RetryPolicy.from_policy(policy, sleep=sleep),
        backups=backups,
        redactor=result.redactor,
        cancel=cancel,
        run_id=run_id,
    )

    start = time.monotonic()
    result.report = executor.execute(result.plan, document=str(document.source or ""))
    duration_ms = int((time.monotonic() - start) * 1000)

    if audit:
        _write_audit(result.report, document, registry.mock_mode, duration_ms, result.redactor)
    return result


def _effective_policy(policy: ExecutionPolicy, overrides: dict[str, Any] | None) -> ExecutionPolicy:
    if not overrides:
        return policy
    changes = {k: v for k, v in overrides.items() if v is not None}
    return ExecutionPolicy.model_validate({**policy.model_dump(), **changes})


def _run_id() -> str:
    return f"{time.strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:6]}"


def _write_audit(
    report: RunReport,
    document: DesiredState,
    mock: bool,
    duration_ms: int,
    redactor: Redactor,
) -> None:
    by_outcome: dict[Outcome, list[str]] = {o: [] for o in Outcome}
    for record in report.records:
        by_outcome[record.outcome].append(record.identifier)

    entry = AuditEntry(
        run_id=report.run_id,
        operation="apply",
        document=str(document.source or ""),
        mock=mock,
        status=report.status.value,
        applied=by_outcome[Outcome.APPLIED],
        failed=by_outcome[Outcome.FAILED],
        aborted=by_outcome[Outcome.ABORTED],
        skipped=len(by_outcome[Outcome.SKIPPED]),
        duration_ms=duration_ms,
        errors=[
            redactor.redact(f"{r.identifier}: {r.detail}")
            for r in report.records
            if r.outcome == Outcome.FAILED
        ],
        context={"halt_reason": report.halt_reason} if report.halt_reason else {},
    )
    AuditWriter(base_dir=document.base_dir).write(entry)
