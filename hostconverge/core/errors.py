"""
Error taxonomy for the convergence engine.

    GraphBuildError     — the declared graph is unusable (fatal, pre-execution)
        DuplicateIdentifier
        DanglingReference
        CycleDetected
    ProbeUnavailable    — a fact could not be determined
    ActionApplyError    — an action's effect could not be produced
        TransientApplyError   (retryable)
        StructuralApplyError  (never retried)
    PolicyAbort         — engine-level stop (halt, timeout, cancellation)

Only GraphBuildError and ConfigError ever reach the caller as exceptions.
Apply errors are caught at the action boundary and turned into
ExecutionRecords; probe errors are stored in the fact snapshot.
"""

from __future__ import annotations

from collections.abc import Iterable


class GraphBuildError(Exception):
    """The action graph cannot be built. Nothing has been probed or applied."""

    def __init__(self, message: str, identifiers: Iterable[str] = ()):
        super().__init__(message)
        self.identifiers: tuple[str, ...] = tuple(sorted(set(identifiers)))


class DuplicateIdentifier(GraphBuildError):
    """Two actions share an identifier."""


class DanglingReference(GraphBuildError):
    """An action depends on an identifier that is not declared."""


class CycleDetected(GraphBuildError):
    """The dependency edges form at least one cycle."""


class ProbeUnavailable(Exception):
    """The subsystem behind a fact query could not be reached.

    Distinct from "the fact is false": the planner treats it as
    "cannot confirm satisfied" and schedules the action.
    """


class ActionApplyError(Exception):
    """An action's apply operation failed."""

    retryable = False


class TransientApplyError(ActionApplyError):
    """Infrastructure hiccup (lock contention, network fetch). Retried."""

    retryable = True


class StructuralApplyError(ActionApplyError):
    """Malformed input, permission denied, contradictory config. Not retried."""


class PolicyAbort(Exception):
    """Raised inside the executor when the policy stops further dispatch."""
