"""
APT package manager adapter (Debian / Ubuntu).

Queries go through ``dpkg-query``; installs through ``apt-get`` in
non-interactive mode. dpkg holds a global lock, which is why the
executor serializes everything in the ``package-manager`` resource class.
"""

from __future__ import annotations

import logging
import shutil

from hostconverge.adapters.base import CommandRunner, PackageManager
from hostconverge.adapters.shell.command import ShellCommandRunner, raise_for_result
from hostconverge.core.errors import ProbeUnavailable, StructuralApplyError
from hostconverge.core.models.action import PackageSpec
from hostconverge.core.models.facts import PackageStatus, version_at_least

logger = logging.getLogger(__name__)

_APT_ENV = {"DEBIAN_FRONTEND": "noninteractive", "NEEDRESTART_MODE": "a"}


class AptPackageManager(PackageManager):
    def __init__(self, runner: CommandRunner | None = None):
        self._runner = runner or ShellCommandRunner()

    @property
    def name(self) -> str:
        return "apt"

    def is_available(self) -> bool:
        return shutil.which("dpkg-query") is not None and shutil.which("apt-get") is not None

    def query(self, name: str, timeout: float | None = None) -> PackageStatus:
        result = self._runner.run(
            ["dpkg-query", "-W", "-f=${Status}\t${Version}", name],
            timeout=timeout or 10,
        )
        if result.timed_out:
            raise ProbeUnavailable(f"dpkg-query timed out for {name}")
        if result.returncode == 127:
            raise ProbeUnavailable("dpkg-query not found")
        if result.returncode != 0:
            # "no packages found matching": unknown to dpkg, not installed
            return PackageStatus(installed=False)

        status, _, version = result.stdout.strip().partition("\t")
        if not status.endswith("install ok installed"):
            return PackageStatus(installed=False)
        return PackageStatus(installed=True, version=version or None)

    def install(
        self,
        packages: list[PackageSpec],
        update_cache: bool = False,
        timeout: float | None = None,
    ) -> None:
        if update_cache:
            logger.info("Refreshing package index")
            result = self._runner.run(["apt-get", "update"], timeout=timeout, env=_APT_ENV)
            raise_for_result(result, "apt-get update")

        names = [p.name for p in packages]
        logger.info("Installing packages: %s", " ".join(names))
        result = self._runner.run(
            ["apt-get", "install", "-y", "-q", *names],
            timeout=timeout,
            env=_APT_ENV,
        )
        raise_for_result(result, "apt-get install")

        # apt has no ">=" syntax; verify what actually landed
        for spec in packages:
            if not spec.min_version:
                continue
            status = self.query(spec.name)
            if not version_at_least(status.version, spec.min_version):
                raise StructuralApplyError(
                    f"{spec.name} {status.version or '(none)'} installed, "
                    f"need >= {spec.min_version}"
                )
