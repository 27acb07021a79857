"""
Planner — desired state versus the fact snapshot.

For each action, in graph order, the planner evaluates the effective
precondition (explicit, or the kind's implied one) against the
snapshot:

    all checks hold          → skip
    any check is false       → execute ("needs change")
    a fact is unavailable    → execute ("cannot confirm")
    no precondition at all   → execute ("always runs")

A service with ``restart_on`` whose own state holds is still scheduled
when one of its triggers executes. Such an entry is ``restart_only``:
the executor restarts the service if a trigger ended ``applied`` and
records it skipped otherwise.

The planner is pure: same graph, same snapshot, same values, same plan.
It reads nothing from the host itself.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from hostconverge.core.engine.graph import DependencyGraph
from hostconverge.core.engine.handlers import effective_checks
from hostconverge.core.errors import ActionApplyError
from hostconverge.core.models.action import ActionKind, Severity
from hostconverge.core.models.facts import FactQuery, FactSnapshot
from hostconverge.core.redaction import Redactor


@dataclass(frozen=True)
class PlanEntry:
    identifier: str
    kind: ActionKind
    execute: bool
    reason: str
    depends_on: tuple[str, ...] = ()
    severity: Severity = Severity.REQUIRED
    description: str = ""
    checks: tuple[str, ...] = ()
    restart_on: tuple[str, ...] = ()    # triggers scheduled to execute in this plan
    restart_only: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.identifier,
            "kind": self.kind.value,
            "execute": self.execute,
            "reason": self.reason,
            "depends_on": list(self.depends_on),
            "severity": self.severity.value,
            "description": self.description,
            "checks": list(self.checks),
            "restart_on": list(self.restart_on),
            "restart_only": self.restart_only,
        }


@dataclass
class Plan:
    entries: list[PlanEntry] = field(default_factory=list)
    graph: DependencyGraph | None = None
    values: dict[str, str] = field(default_factory=dict)

    @property
    def is_converged(self) -> bool:
        return not any(e.execute for e in self.entries)

    @property
    def to_execute(self) -> list[PlanEntry]:
        return [e for e in self.entries if e.execute]

    def entry(self, identifier: str) -> PlanEntry | None:
        for e in self.entries:
            if e.identifier == identifier:
                return e
        return None

    def to_dict(self, redactor: Redactor | None = None) -> dict[str, Any]:
        data = {
            "converged": self.is_converged,
            "execute": len(self.to_execute),
            "skip": len(self.entries) - len(self.to_execute),
            "entries": [e.to_dict() for e in self.entries],
        }
        return redactor.redact_obj(data) if redactor else data

    def render_lines(self, redactor: Redactor | None = None) -> list[str]:
        lines = []
        for e in self.entries:
            marker = "→" if e.execute else "⊘"
            verb = "execute" if e.execute else "skip"
            advisory = " (advisory)" if e.severity == Severity.ADVISORY else ""
            lines.append(f"{marker} {e.identifier} [{e.kind.value}] {verb}{advisory}: {e.reason}")
        lines.append(
            f"Plan: {len(self.to_execute)} to execute, "
            f"{len(self.entries) - len(self.to_execute)} already satisfied"
        )
        if redactor:
            lines = [redactor.redact(line) for line in lines]
        return lines


def required_queries(graph: DependencyGraph, values: dict[str, str]) -> set[FactQuery]:
    """Every fact any action's precondition will look at."""
    queries: set[FactQuery] = set()
    for action in graph.ordered_actions():
        try:
            checks = effective_checks(action, values)
        except ActionApplyError:
            continue  # reported by plan()
        queries.update(c.query() for c in checks)
    return queries


def plan(graph: DependencyGraph, snapshot: FactSnapshot, values: dict[str, str]) -> Plan:
    entries = []
    scheduled: set[str] = set()
    for action in graph.ordered_actions():
        execute, reason, described = _decide(action, snapshot, values)
        triggers = tuple(t for t in action.restart_triggers if t in scheduled)
        restart_only = bool(triggers) and not execute
        if restart_only:
            execute = True
            reason = f"restart if {', '.join(repr(t) for t in triggers)} applied; {reason}"
        if execute:
            scheduled.add(action.identifier)
        entries.append(
            PlanEntry(
                identifier=action.identifier,
                kind=action.kind,
                execute=execute,
                reason=reason,
                depends_on=graph.dependencies[action.identifier],
                severity=action.severity,
                description=action.description,
                checks=described,
                restart_on=triggers,
                restart_only=restart_only,
            )
        )
    return Plan(entries=entries, graph=graph, values=dict(values))


def _decide(action, snapshot: FactSnapshot, values: dict[str, str]) -> tuple[bool, str, tuple[str, ...]]:
    try:
        checks = effective_checks(action, values)
    except ActionApplyError as e:
        return True, f"cannot evaluate precondition: {e}", ()

    described = tuple(c.describe() for c in checks)
    if not checks:
        return True, "no precondition, always runs", described

    unmet: list[str] = []
    unknown: list[str] = []
    for check in checks:
        result = snapshot.lookup(check.query())
        if result is None:
            unknown.append(f"{check.describe()} (not probed)")
        elif isinstance(result, Exception):
            unknown.append(f"{check.describe()} ({result})")
        elif not check.holds(result):
            unmet.append(check.describe())

    if unmet:
        return True, "needs change: " + "; ".join(unmet), described
    if unknown:
        return True, "cannot confirm: " + "; ".join(unknown), described
    return False, "satisfied: " + "; ".join(described), described
