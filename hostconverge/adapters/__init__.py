"""Adapters — the engine's view of packages, services, databases, files,
accounts and commands on the host.

Public re-exports for convenient access.
"""

from hostconverge.adapters.base import (
    AccountManager,
    Adapter,
    CommandResult,
    CommandRunner,
    DatabaseAdmin,
    FileStore,
    PackageManager,
    ServiceManager,
)
from hostconverge.adapters.mock import FakeHost
from hostconverge.adapters.registry import AdapterRegistry

__all__ = [
    "AccountManager",
    "Adapter",
    "AdapterRegistry",
    "CommandResult",
    "CommandRunner",
    "DatabaseAdmin",
    "FakeHost",
    "FileStore",
    "PackageManager",
    "ServiceManager",
]
