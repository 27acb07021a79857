"""
Health checker — can this host be converged from here?

Reports each adapter's availability, whether the process has the
privileges package and service changes need, and whether the state
directory (audit ledger, backups) is writable. Used by the CLI
``health`` command.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from hostconverge.adapters.registry import AdapterRegistry

logger = logging.getLogger(__name__)


@dataclass
class ComponentHealth:
    name: str
    status: str = "unknown"  # healthy, degraded, unhealthy, unknown
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "message": self.message,
            "details": self.details,
        }


@dataclass
class SystemHealth:
    status: str = "healthy"
    timestamp: str = ""
    components: list[ComponentHealth] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.timestamp:
            self.timestamp = datetime.now(UTC).isoformat()

    def add(self, component: ComponentHealth) -> None:
        self.components.append(component)
        self._recalculate()

    def _recalculate(self) -> None:
        statuses = [c.status for c in self.components]
        if any(s == "unhealthy" for s in statuses):
            self.status = "unhealthy"
        elif any(s == "degraded" for s in statuses):
            self.status = "degraded"
        elif all(s == "healthy" for s in statuses):
            self.status = "healthy"
        else:
            self.status = "unknown"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "timestamp": self.timestamp,
            "components": [c.to_dict() for c in self.components],
        }


def check_adapters(registry: AdapterRegistry) -> ComponentHealth:
    """A missing tool is degraded, not fatal: documents may not need it."""
    status_data = registry.adapter_status()
    missing = sorted(port for port, s in status_data.items() if not s["available"])
    if missing:
        return ComponentHealth(
            name="adapters",
            status="degraded",
            message=f"Unavailable: {', '.join(missing)}",
            details=status_data,
        )
    return ComponentHealth(
        name="adapters",
        status="healthy",
        message=f"All {len(status_data)} adapters available",
        details=status_data,
    )


def check_privileges(registry: AdapterRegistry) -> ComponentHealth:
    if registry.mock_mode:
        return ComponentHealth(name="privileges", status="healthy", message="Mock host")
    if os.geteuid() == 0:
        return ComponentHealth(name="privileges", status="healthy", message="Running as root")
    return ComponentHealth(
        name="privileges",
        status="degraded",
        message="Not root: package, service and account changes will fail",
        details={"euid": os.geteuid()},
    )


def check_state_dir(state_dir: Path) -> ComponentHealth:
    """The nearest existing ancestor must be writable."""
    probe = state_dir
    while not probe.exists() and probe != probe.parent:
        probe = probe.parent
    if os.access(probe, os.W_OK):
        return ComponentHealth(
            name="state_dir",
            status="healthy",
            message=f"{state_dir} writable",
        )
    return ComponentHealth(
        name="state_dir",
        status="unhealthy",
        message=f"{state_dir} not writable: audit and backups would be lost",
    )


def check_system_health(
    registry: AdapterRegistry,
    state_dir: Path | None = None,
) -> SystemHealth:
    health = SystemHealth()
    health.add(check_adapters(registry))
    health.add(check_privileges(registry))
    if state_dir is not None:
        health.add(check_state_dir(state_dir))
    logger.debug("Health: %s", health.status)
    return health
