"""
Local account adapter — passwd lookups and ``useradd``.
"""

from __future__ import annotations

import logging
import pwd
import shutil

from hostconverge.adapters.base import AccountManager, CommandRunner
from hostconverge.adapters.shell.command import ShellCommandRunner, raise_for_result
from hostconverge.core.models.action import UserAccountParams
from hostconverge.core.models.facts import UserStatus

logger = logging.getLogger(__name__)


class LocalAccountManager(AccountManager):
    def __init__(self, runner: CommandRunner | None = None):
        self._runner = runner or ShellCommandRunner()

    @property
    def name(self) -> str:
        return "accounts"

    def is_available(self) -> bool:
        return shutil.which("useradd") is not None

    def query(self, name: str) -> UserStatus:
        try:
            entry = pwd.getpwnam(name)
        except KeyError:
            return UserStatus(exists=False)
        return UserStatus(exists=True, uid=entry.pw_uid, home=entry.pw_dir)

    def create(self, params: UserAccountParams, timeout: float | None = None) -> None:
        argv = ["useradd"]
        if params.system:
            argv.append("--system")
        if params.home:
            argv += ["--home-dir", params.home, "--create-home"]
        if params.shell:
            argv += ["--shell", params.shell]
        if params.groups:
            argv += ["--groups", ",".join(params.groups)]
        argv.append(params.name)

        logger.info("Creating user %s", params.name)
        result = self._runner.run(argv, timeout=timeout)
        raise_for_result(result, f"useradd {params.name}")
