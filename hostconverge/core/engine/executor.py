"""
Executor — runs a plan in dependency order under an execution policy.

Flow per entry:
    skip entry                → record ``skipped``
    dependency failed/blocked → record ``aborted`` (never dispatched)
    run halted                → record ``aborted``
    restart-only, no trigger  → record ``skipped`` (never dispatched)
    otherwise                 → dispatch, apply with retries, record
                                ``applied`` or ``failed``

Dispatch goes through a ThreadPoolExecutor sized by
``policy.parallelism``. With one worker, entries run strictly in plan
order. With more, any entry whose dependencies are done is started as
soon as a worker and its resource-class lock are free; the lock keeps
two apt runs (or two writes to one path) from overlapping.

Apply errors never escape: they become records. A halt, the run
timeout or the cancellation event stops new dispatch; work already in
flight finishes, and everything not yet started is ``aborted``.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import UTC, datetime

from hostconverge.adapters.registry import AdapterRegistry
from hostconverge.core.engine.handlers import ApplyContext, handler_for
from hostconverge.core.engine.planner import Plan, PlanEntry
from hostconverge.core.errors import ActionApplyError, PolicyAbort
from hostconverge.core.models.action import Action, Severity
from hostconverge.core.models.policy import ExecutionPolicy
from hostconverge.core.models.report import ExecutionRecord, Outcome, RunReport
from hostconverge.core.persistence.backups import BackupStore
from hostconverge.core.redaction import Redactor
from hostconverge.core.reliability.retry import RetryPolicy

logger = logging.getLogger(__name__)

# Slack given to a worker past its own deadline before the dispatcher
# declares it timed out.
_TIMEOUT_GRACE = 0.5
_POLL_INTERVAL = 0.5


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class _Attempt:
    outcome: Outcome
    detail: str
    attempts: int
    started_at: str
    started: float


class ResourceLocks:
    """One non-reentrant lock per resource class, created on demand."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def try_acquire(self, resource: str) -> bool:
        with self._guard:
            lock = self._locks.setdefault(resource, threading.Lock())
        return lock.acquire(blocking=False)

    def release(self, resource: str) -> None:
        self._locks[resource].release()


class Executor:
    def __init__(
        self,
        adapters: AdapterRegistry,
        policy: ExecutionPolicy | None = None,
        *,
        retry: RetryPolicy | None = None,
        backups: BackupStore | None = None,
        redactor: Redactor | None = None,
        cancel: threading.Event | None = None,
        run_id: str = "",
    ):
        self._adapters = adapters
        self._policy = policy or ExecutionPolicy()
        self._retry = retry or RetryPolicy.from_policy(self._policy)
        self._backups = backups
        self._redactor = redactor or Redactor()
        self._cancel = cancel or threading.Event()
        self._run_id = run_id or uuid.uuid4().hex[:12]
        self._locks = ResourceLocks()
        self._plan = Plan()
        self._values: dict[str, str] = {}
        self._expired: list[Future] = []

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel

    def execute(self, plan: Plan, document: str = "") -> RunReport:
        policy = self._policy
        self._plan = plan
        self._values = plan.values
        self._expired = []
        report = RunReport(run_id=self._run_id, document=document, policy=policy)
        records: dict[str, ExecutionRecord] = {}
        unsuccessful: set[str] = set()      # failed, or aborted because of a dependency
        deadline = (time.monotonic() + policy.run_timeout) if policy.run_timeout else None

        pending = [e for e in plan.entries if e.execute]
        for e in plan.entries:
            if not e.execute:
                records[e.identifier] = self._record(e, Outcome.SKIPPED, e.reason)

        logger.info(
            "Run %s: %d to execute, %d skipped (parallelism=%d, on_failure=%s)",
            self._run_id, len(pending), len(records), policy.parallelism, policy.on_failure.value,
        )

        running: dict[Future, tuple[PlanEntry, str, float]] = {}
        pool = ThreadPoolExecutor(max_workers=policy.parallelism, thread_name_prefix="hc-apply")
        try:
            while pending or running:
                try:
                    if not report.halted:
                        self._check_stop(deadline)
                except PolicyAbort as e:
                    report.halted, report.halt_reason = True, str(e)
                    logger.warning("Run halted: %s", e)

                if report.halted:
                    for entry in pending:
                        records[entry.identifier] = self._record(
                            entry, Outcome.ABORTED, f"not dispatched: {report.halt_reason}"
                        )
                    pending = []
                else:
                    pending = self._dispatch(pool, pending, running, records, unsuccessful, deadline)

                if not running:
                    if pending:
                        # Nothing in flight and nothing could start: a timed-out
                        # worker still holds the resource class
                        for entry in pending:
                            records[entry.identifier] = self._record(
                                entry, Outcome.ABORTED,
                                "not dispatched: resource held by a timed-out action",
                            )
                            unsuccessful.add(entry.identifier)
                        pending = []
                    break

                try:
                    done, _ = wait(list(running), timeout=self._wait_timeout(running, deadline),
                                   return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    logger.warning("Interrupted, finishing in-flight actions")
                    self._cancel.set()
                    continue

                for future in done:
                    entry, _resource, _ = running.pop(future)
                    record = self._finish(entry, future)
                    records[entry.identifier] = record
                    if record.outcome == Outcome.FAILED:
                        unsuccessful.add(entry.identifier)
                        self._on_failure(entry, report)

                self._expire(running, records, unsuccessful, report)
        finally:
            # Timed-out workers may still be running; do not block on them
            hung = any(not f.done() for f in self._expired) or bool(running)
            pool.shutdown(wait=not hung, cancel_futures=True)

        report.records = [records[e.identifier] for e in plan.entries if e.identifier in records]
        report.ended_at = _now_iso()
        logger.info("Run %s finished: %s", self._run_id, report.status.value)
        return report

    # ── Dispatch ─────────────────────────────────────────────────

    def _dispatch(self, pool, pending, running, records, unsuccessful, deadline) -> list[PlanEntry]:
        still_pending = []
        waiting_on = {e.identifier for e in pending} | {e.identifier for e, _, _ in running.values()}
        for entry in pending:
            blocked = [d for d in entry.depends_on if d in unsuccessful]
            if blocked:
                records[entry.identifier] = self._record(
                    entry, Outcome.ABORTED, f"not dispatched: dependency '{blocked[0]}' did not succeed"
                )
                unsuccessful.add(entry.identifier)
                waiting_on.discard(entry.identifier)
                continue
            if len(running) >= self._policy.parallelism or any(d in waiting_on for d in entry.depends_on):
                still_pending.append(entry)
                continue

            triggered = tuple(
                t for t in entry.restart_on
                if t in records and records[t].outcome == Outcome.APPLIED
            )
            if entry.restart_only and not triggered:
                records[entry.identifier] = self._record(
                    entry, Outcome.SKIPPED,
                    f"no restart needed: {', '.join(repr(t) for t in entry.restart_on)} not applied",
                )
                waiting_on.discard(entry.identifier)
                continue

            action = self._action(entry)
            resource = handler_for(action).resource_class(action, self._adapters)
            if not self._locks.try_acquire(resource):
                still_pending.append(entry)
                if self._policy.parallelism == 1:
                    # Serial mode never overtakes an entry it cannot start
                    still_pending.extend(pending[pending.index(entry) + 1:])
                    break
                continue

            logger.info("▶ %s [%s] %s", entry.identifier, entry.kind.value, entry.reason)
            future = pool.submit(self._run_entry, entry, resource, deadline, triggered)
            running[future] = (entry, resource, time.monotonic())

            # Serial mode keeps strict plan order
            if self._policy.parallelism == 1:
                still_pending.extend(
                    e for e in pending[pending.index(entry) + 1:]
                )
                break
        return still_pending

    def _run_entry(self, entry: PlanEntry, resource: str, deadline: float | None,
                   triggered: tuple[str, ...] = ()) -> _Attempt:
        """Worker: apply with retries. Never raises."""
        started = time.monotonic()
        started_at = _now_iso()
        try:
            return self._apply_with_retries(entry, started, started_at, deadline, triggered)
        finally:
            self._locks.release(resource)

    def _apply_with_retries(self, entry, started, started_at, deadline, triggered=()) -> _Attempt:
        action = self._action(entry)
        handler = handler_for(action)
        action_deadline = started + self._policy.action_timeout if self._policy.action_timeout else None
        attempt = 0
        while True:
            attempt += 1
            ctx = ApplyContext(
                adapters=self._adapters,
                values=self._values,
                timeout=self._remaining(action_deadline),
                backups=self._backups,
                run_id=self._run_id,
                triggered=triggered,
                restart_only=entry.restart_only,
            )
            try:
                detail = handler.apply(action, ctx)
                return _Attempt(Outcome.APPLIED, detail, attempt, started_at, started)
            except ActionApplyError as e:
                if not e.retryable or attempt >= self._retry.max_attempts:
                    return _Attempt(Outcome.FAILED, str(e), attempt, started_at, started)
                logger.warning("%s: transient failure (attempt %d/%d): %s",
                               entry.identifier, attempt, self._retry.max_attempts, e)
                if self._out_of_time(action_deadline, deadline):
                    return _Attempt(Outcome.FAILED, f"{e} (no time left to retry)", attempt,
                                    started_at, started)
                if not self._retry.wait(attempt, self._cancel):
                    return _Attempt(Outcome.FAILED, f"{e} (retry cancelled)", attempt,
                                    started_at, started)
            except Exception as e:
                logger.exception("Unexpected error applying %s", entry.identifier)
                return _Attempt(Outcome.FAILED, f"unexpected error: {type(e).__name__}: {e}",
                                attempt, started_at, started)

    def _finish(self, entry: PlanEntry, future: Future) -> ExecutionRecord:
        result: _Attempt = future.result()
        duration_ms = int((time.monotonic() - result.started) * 1000)
        record = self._record(
            entry,
            result.outcome,
            result.detail,
            attempts=result.attempts,
            duration_ms=duration_ms,
            started_at=result.started_at,
        )
        log = logger.info if record.outcome == Outcome.APPLIED else logger.error
        log("%s %s: %s", record.marker, entry.identifier, record.detail)
        return record

    def _expire(self, running, records, unsuccessful, report) -> None:
        """Fail entries whose worker overran the per-action timeout."""
        limit = self._policy.action_timeout
        if not limit:
            return
        now = time.monotonic()
        for future, (entry, _resource, started) in list(running.items()):
            if now - started < limit + _TIMEOUT_GRACE:
                continue
            running.pop(future)
            future.cancel()
            self._expired.append(future)
            records[entry.identifier] = self._record(
                entry, Outcome.FAILED, f"timed out after {limit:g}s",
                attempts=1, duration_ms=int((now - started) * 1000),
            )
            unsuccessful.add(entry.identifier)
            logger.error("✗ %s: timed out after %gs", entry.identifier, limit)
            self._on_failure(entry, report)

    # ── Policy ───────────────────────────────────────────────────

    def _on_failure(self, entry: PlanEntry, report: RunReport) -> None:
        if entry.severity == Severity.ADVISORY:
            logger.warning("Advisory action %s failed, continuing", entry.identifier)
            return
        if self._policy.continues_on_failure or report.halted:
            return
        report.halted = True
        report.halt_reason = f"'{entry.identifier}' failed (on_failure=halt_remaining)"
        logger.warning("Run halted: %s", report.halt_reason)

    def _check_stop(self, deadline: float | None) -> None:
        if self._cancel.is_set():
            raise PolicyAbort("run cancelled")
        if deadline is not None and time.monotonic() >= deadline:
            raise PolicyAbort(f"run timeout of {self._policy.run_timeout:g}s exceeded")

    def _wait_timeout(self, running, deadline: float | None) -> float:
        now = time.monotonic()
        timeouts = [_POLL_INTERVAL]
        if self._policy.action_timeout:
            for _entry, _resource, started in running.values():
                timeouts.append(started + self._policy.action_timeout + _TIMEOUT_GRACE - now)
        if deadline is not None:
            timeouts.append(deadline - now)
        return max(0.01, min(timeouts))

    @staticmethod
    def _remaining(deadline: float | None) -> float | None:
        if deadline is None:
            return None
        return max(0.1, deadline - time.monotonic())

    def _out_of_time(self, action_deadline: float | None, run_deadline: float | None) -> bool:
        now = time.monotonic()
        next_delay = self._retry.base_delay
        return any(d is not None and now + next_delay >= d for d in (action_deadline, run_deadline))

    # ── Records ──────────────────────────────────────────────────

    def _record(
        self,
        entry: PlanEntry,
        outcome: Outcome,
        detail: str,
        attempts: int = 0,
        duration_ms: int = 0,
        started_at: str | None = None,
    ) -> ExecutionRecord:
        now = _now_iso()
        return ExecutionRecord(
            identifier=entry.identifier,
            kind=entry.kind,
            outcome=outcome,
            detail=self._redactor.redact(detail),
            severity=entry.severity,
            attempts=attempts,
            duration_ms=duration_ms,
            started_at=started_at or now,
            ended_at=now,
        )

    def _action(self, entry: PlanEntry) -> Action:
        return self._plan.graph.action(entry.identifier)


def execute(
    plan: Plan,
    adapters: AdapterRegistry,
    policy: ExecutionPolicy | None = None,
    **kwargs,
) -> RunReport:
    """Run ``plan`` and return its report. Keyword arguments go to Executor."""
    document = kwargs.pop("document", "")
    return Executor(adapters, policy, **kwargs).execute(plan, document=document)
