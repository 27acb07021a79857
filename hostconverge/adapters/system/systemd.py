"""
systemd service manager adapter.

Read-only probes use ``systemctl show``; lifecycle changes use the
matching ``systemctl`` verb.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from hostconverge.adapters.base import CommandRunner, ServiceManager
from hostconverge.adapters.shell.command import ShellCommandRunner, raise_for_result
from hostconverge.core.errors import ProbeUnavailable
from hostconverge.core.models.facts import ServiceStatus

logger = logging.getLogger(__name__)

# Unit file states that start at boot without an explicit ``enable``
_ENABLED_STATES = {"enabled", "enabled-runtime", "static", "indirect", "generated", "alias"}

_BUS_ERRORS = ("Failed to connect to bus", "System has not been booted with systemd")


class SystemdServiceManager(ServiceManager):
    def __init__(self, runner: CommandRunner | None = None):
        self._runner = runner or ShellCommandRunner()

    @property
    def name(self) -> str:
        return "systemd"

    def is_available(self) -> bool:
        return shutil.which("systemctl") is not None and Path("/run/systemd/system").exists()

    def query(self, name: str, timeout: float | None = None) -> ServiceStatus:
        result = self._runner.run(
            ["systemctl", "show", name, "--property=ActiveState,UnitFileState,LoadState"],
            timeout=timeout or 10,
        )
        if result.timed_out:
            raise ProbeUnavailable(f"systemctl show timed out for {name}")
        if result.returncode == 127:
            raise ProbeUnavailable("systemctl not found")
        if result.returncode != 0 or any(e in result.stderr for e in _BUS_ERRORS):
            raise ProbeUnavailable(f"systemctl show {name}: {result.stderr.strip()}")

        props: dict[str, str] = {}
        for line in result.stdout.splitlines():
            key, _, value = line.partition("=")
            props[key.strip()] = value.strip()

        return ServiceStatus(
            active=props.get("ActiveState") == "active",
            enabled=props.get("UnitFileState", "") in _ENABLED_STATES,
            loaded=props.get("LoadState") == "loaded",
        )

    def _systemctl(self, verb: str, name: str, timeout: float | None) -> None:
        logger.info("systemctl %s %s", verb, name)
        result = self._runner.run(["systemctl", verb, name], timeout=timeout)
        raise_for_result(result, f"systemctl {verb} {name}")

    def start(self, name: str, timeout: float | None = None) -> None:
        self._systemctl("start", name, timeout)

    def stop(self, name: str, timeout: float | None = None) -> None:
        self._systemctl("stop", name, timeout)

    def restart(self, name: str, timeout: float | None = None) -> None:
        self._systemctl("restart", name, timeout)

    def set_enabled(self, name: str, enabled: bool, timeout: float | None = None) -> None:
        self._systemctl("enable" if enabled else "disable", name, timeout)
