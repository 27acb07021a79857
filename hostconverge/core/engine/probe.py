"""
Fact probe — answers every fact query once, before planning.

The probe is the only part of a run that reads host state for
decision-making. Each distinct FactQuery is dispatched exactly once
to the adapter for its capability; the answer (or the ProbeUnavailable
that prevented one) lands in an immutable FactSnapshot.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from hostconverge.adapters.registry import AdapterRegistry
from hostconverge.core.errors import ProbeUnavailable
from hostconverge.core.models.facts import (
    CommandStatus,
    FactQuery,
    FactResult,
    FactSnapshot,
)

logger = logging.getLogger(__name__)


class FactProbe:
    def __init__(self, adapters: AdapterRegistry, timeout: float = 15.0):
        self._adapters = adapters
        self._timeout = timeout

    def snapshot(self, queries: Iterable[FactQuery]) -> FactSnapshot:
        entries: dict[FactQuery, FactResult | Exception] = {}
        for query in sorted(set(queries)):
            try:
                entries[query] = self.read(query)
            except ProbeUnavailable as e:
                logger.warning("Fact %s unavailable: %s", query, e)
                entries[query] = e
        unavailable = sum(1 for v in entries.values() if isinstance(v, Exception))
        logger.info("Probed %d fact(s), %d unavailable", len(entries), unavailable)
        return FactSnapshot(entries)

    def read(self, query: FactQuery) -> FactResult:
        """One pure read. Raises ProbeUnavailable."""
        reader = self._readers().get(query.capability)
        if reader is None:
            raise ProbeUnavailable(f"No probe for capability '{query.capability}'")
        return reader(query)

    def _readers(self) -> dict[str, Callable[[FactQuery], FactResult]]:
        a = self._adapters
        t = self._timeout
        return {
            "package": lambda q: a.packages.query(q.subject, timeout=t),
            "file": lambda q: a.files.stat(q.subject),
            "service": lambda q: a.services.query(q.subject, timeout=t),
            "database": lambda q: a.databases.database_exists(q.subject, timeout=t),
            "database_user": lambda q: a.databases.user_exists(q.subject, q.qualifier, timeout=t),
            "user": lambda q: a.accounts.query(q.subject),
            "command": self._run_check,
        }

    def _run_check(self, query: FactQuery) -> CommandStatus:
        result = self._adapters.commands.run(query.subject, timeout=self._timeout)
        if result.timed_out:
            raise ProbeUnavailable(f"check `{query.subject}` timed out after {self._timeout}s")
        return CommandStatus(exit_code=result.returncode)
