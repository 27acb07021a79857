"""
Adapter registry — the set of ports one run talks to.

The engine never constructs adapters itself. A registry is built once
per command, either against the real host (``for_host``) or against an
in-memory FakeHost (``fake``), and handed to the probe and executor.
"""

from __future__ import annotations

import logging
from typing import Any

from hostconverge.adapters.base import (
    AccountManager,
    Adapter,
    CommandRunner,
    DatabaseAdmin,
    FileStore,
    PackageManager,
    ServiceManager,
)
from hostconverge.adapters.mock import FakeHost

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """One adapter per port, plus availability reporting."""

    def __init__(
        self,
        packages: PackageManager,
        services: ServiceManager,
        databases: DatabaseAdmin,
        files: FileStore,
        accounts: AccountManager,
        commands: CommandRunner,
        mock_mode: bool = False,
    ):
        self.packages = packages
        self.services = services
        self.databases = databases
        self.files = files
        self.accounts = accounts
        self.commands = commands
        self.mock_mode = mock_mode

    @classmethod
    def for_host(cls, mysql_defaults_file: str | None = None) -> AdapterRegistry:
        """Adapters for the local Debian/Ubuntu host."""
        from hostconverge.adapters.shell.command import ShellCommandRunner
        from hostconverge.adapters.shell.filesystem import LocalFileStore
        from hostconverge.adapters.system.accounts import LocalAccountManager
        from hostconverge.adapters.system.apt import AptPackageManager
        from hostconverge.adapters.system.mariadb import MariaDBAdmin
        from hostconverge.adapters.system.systemd import SystemdServiceManager

        runner = ShellCommandRunner()
        return cls(
            packages=AptPackageManager(runner),
            services=SystemdServiceManager(runner),
            databases=MariaDBAdmin(runner, defaults_file=mysql_defaults_file),
            files=LocalFileStore(),
            accounts=LocalAccountManager(runner),
            commands=runner,
        )

    @classmethod
    def fake(cls, host: FakeHost | None = None) -> AdapterRegistry:
        """Adapters backed by an in-memory host."""
        host = host or FakeHost()
        return cls(
            packages=host.package_manager,
            services=host.service_manager,
            databases=host.database_admin,
            files=host.file_store,
            accounts=host.account_manager,
            commands=host.command_runner,
            mock_mode=True,
        )

    def all(self) -> dict[str, Adapter]:
        return {
            "packages": self.packages,
            "services": self.services,
            "databases": self.databases,
            "files": self.files,
            "accounts": self.accounts,
            "commands": self.commands,
        }

    def adapter_status(self) -> dict[str, dict[str, Any]]:
        """Availability of every port's adapter."""
        status = {}
        for port, adapter in self.all().items():
            try:
                available = adapter.is_available()
            except Exception as e:
                logger.debug("is_available() raised for %s: %s", adapter.name, e)
                available = False
            status[port] = {
                "name": adapter.name,
                "available": available,
                "type": adapter.__class__.__name__,
            }
        return status
