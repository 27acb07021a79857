"""
Shell command runner — the single place where host commands are spawned.

Every system adapter (apt, systemd, mariadb, accounts) and every shell
step goes through ShellCommandRunner.run(), so timeouts, user switching
and output capture behave the same everywhere.

Failures are classified here too: a non-zero exit whose stderr matches
a known transient pattern (lock contention, network fetch) becomes a
TransientApplyError; anything else is structural.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import time

from hostconverge.adapters.base import CommandResult, CommandRunner
from hostconverge.core.errors import StructuralApplyError, TransientApplyError

logger = logging.getLogger(__name__)

# ── Failure classification ──────────────────────────────────────

TRANSIENT_PATTERNS: tuple[str, ...] = (
    # package manager lock contention
    r"Could not get lock",
    r"Unable to acquire the dpkg frontend lock",
    r"Waiting for cache lock",
    # network
    r"Could not resolve",
    r"Temporary failure (?:in name resolution|resolving)",
    r"Failed to fetch",
    r"Connection timed out",
    r"Network is unreachable",
    r"Failed to connect",
)

_OUTPUT_TAIL = 2000


def is_transient(stderr: str, extra_patterns: tuple[str, ...] = ()) -> bool:
    """Whether a failure's stderr looks like an infrastructure hiccup."""
    for pattern in TRANSIENT_PATTERNS + extra_patterns:
        if re.search(pattern, stderr, re.IGNORECASE):
            return True
    return False


def raise_for_result(
    result: CommandResult,
    what: str,
    extra_patterns: tuple[str, ...] = (),
) -> None:
    """Turn a failed CommandResult into the matching apply error."""
    if result.ok:
        return
    if result.timed_out:
        raise TransientApplyError(f"{what}: timed out")
    message = (result.stderr or result.stdout).strip()
    detail = message.splitlines()[-1] if message else f"exit code {result.returncode}"
    text = f"{what}: {detail}"
    if is_transient(result.stderr, extra_patterns):
        raise TransientApplyError(text)
    raise StructuralApplyError(text)


# ── Runner ──────────────────────────────────────────────────────


class ShellCommandRunner(CommandRunner):
    """Execute commands and capture output.

    Strings run through ``sh -c``; lists run as argv directly.
    ``run_as`` switches user with ``runuser`` when root, ``sudo -u``
    otherwise.
    """

    def __init__(self, default_timeout: float = 300.0):
        self._default_timeout = default_timeout

    @property
    def name(self) -> str:
        return "shell"

    def is_available(self) -> bool:
        return shutil.which("sh") is not None

    def run(
        self,
        command: str | list[str],
        timeout: float | None = None,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        run_as: str | None = None,
        input: str | None = None,
    ) -> CommandResult:
        argv = ["sh", "-c", command] if isinstance(command, str) else list(command)
        if run_as:
            if os.geteuid() == 0:
                argv = ["runuser", "-u", run_as, "--", *argv]
            else:
                argv = ["sudo", "-n", "-u", run_as, "--", *argv]

        full_env = os.environ.copy()
        if env:
            full_env.update(env)
        timeout = timeout or self._default_timeout

        logger.debug("Executing: %s (cwd=%s)", argv, cwd)
        start = time.monotonic()
        try:
            proc = subprocess.run(
                argv,
                cwd=cwd,
                env=full_env,
                capture_output=True,
                text=True,
                timeout=timeout,
                input=input,
            )
        except subprocess.TimeoutExpired:
            return CommandResult(
                returncode=-1,
                stderr=f"Command timed out after {timeout}s",
                elapsed_ms=int((time.monotonic() - start) * 1000),
                timed_out=True,
                argv=argv,
            )
        except FileNotFoundError as e:
            return CommandResult(returncode=127, stderr=str(e), argv=argv)
        except OSError as e:
            return CommandResult(returncode=126, stderr=f"Command execution error: {e}", argv=argv)

        return CommandResult(
            returncode=proc.returncode,
            stdout=proc.stdout[-_OUTPUT_TAIL:] if proc.stdout else "",
            stderr=proc.stderr[-_OUTPUT_TAIL:] if proc.stderr else "",
            elapsed_ms=int((time.monotonic() - start) * 1000),
            argv=argv,
        )
