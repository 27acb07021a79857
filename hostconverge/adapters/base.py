"""
Adapter base — the collaborator contracts between engine and host tools.

The engine never shells out or touches the filesystem directly. It talks
to six narrow ports, one per resource class:

    PackageManager   install / query packages
    ServiceManager   enable / start / stop / restart / query services
    DatabaseAdmin    create schema, user, grants / query existence
    FileStore        stat, read, write-with-owner-and-mode, mkdir
    AccountManager   create / query local user accounts
    CommandRunner    run an arbitrary command (shell steps, checks)

Query methods are pure reads and raise ProbeUnavailable when the
subsystem cannot be reached. Mutating methods raise TransientApplyError
or StructuralApplyError. Every port can be replaced by the in-memory
FakeHost for tests.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from hostconverge.core.models.action import PackageSpec, UserAccountParams
from hostconverge.core.models.facts import (
    DatabaseObjectStatus,
    FileStatus,
    PackageStatus,
    ServiceStatus,
    UserStatus,
)


@dataclass
class CommandResult:
    """Outcome of one command invocation."""

    returncode: int
    stdout: str = ""
    stderr: str = ""
    elapsed_ms: int = 0
    timed_out: bool = False
    argv: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


class Adapter(ABC):
    """Abstract base class for all adapters."""

    @property
    @abstractmethod
    def name(self) -> str:
        """The adapter identifier (e.g., 'apt', 'systemd', 'mariadb')."""

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this adapter's underlying tool is available.

        Should be fast and never raise.
        """

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"


class PackageManager(Adapter):
    @abstractmethod
    def query(self, name: str, timeout: float | None = None) -> PackageStatus:
        """Installed state and version of one package."""

    @abstractmethod
    def install(
        self,
        packages: list[PackageSpec],
        update_cache: bool = False,
        timeout: float | None = None,
    ) -> None:
        """Install (or upgrade to satisfy) the given packages."""


class ServiceManager(Adapter):
    @abstractmethod
    def query(self, name: str, timeout: float | None = None) -> ServiceStatus:
        """Active / enabled / loaded state of one service unit."""

    @abstractmethod
    def start(self, name: str, timeout: float | None = None) -> None: ...

    @abstractmethod
    def stop(self, name: str, timeout: float | None = None) -> None: ...

    @abstractmethod
    def restart(self, name: str, timeout: float | None = None) -> None: ...

    @abstractmethod
    def set_enabled(self, name: str, enabled: bool, timeout: float | None = None) -> None: ...


class DatabaseAdmin(Adapter):
    @property
    def endpoint(self) -> str:
        """Which server this client talks to; one lock per endpoint."""
        return "localhost"

    @abstractmethod
    def database_exists(self, name: str, timeout: float | None = None) -> DatabaseObjectStatus: ...

    @abstractmethod
    def user_exists(
        self, user: str, host: str, timeout: float | None = None
    ) -> DatabaseObjectStatus: ...

    @abstractmethod
    def create_database(
        self, name: str, charset: str, collation: str, timeout: float | None = None
    ) -> None: ...

    @abstractmethod
    def create_user(
        self, user: str, host: str, password: str, timeout: float | None = None
    ) -> None: ...

    @abstractmethod
    def grant(
        self,
        privileges: list[str],
        database: str,
        user: str,
        host: str,
        timeout: float | None = None,
    ) -> None: ...


class FileStore(Adapter):
    @abstractmethod
    def stat(self, path: str) -> FileStatus:
        """Existence, type, content hash and ownership of a path."""

    @abstractmethod
    def read_bytes(self, path: str) -> bytes | None:
        """Current content of a regular file, or None if absent."""

    @abstractmethod
    def write(
        self,
        path: str,
        data: bytes,
        mode: int | None = None,
        owner: str | None = None,
        group: str | None = None,
    ) -> None:
        """Atomically replace ``path`` with ``data`` and apply attributes."""

    @abstractmethod
    def make_dir(
        self,
        path: str,
        mode: int | None = None,
        owner: str | None = None,
        group: str | None = None,
    ) -> None: ...

    @abstractmethod
    def remove(self, path: str) -> None: ...


class AccountManager(Adapter):
    @abstractmethod
    def query(self, name: str) -> UserStatus: ...

    @abstractmethod
    def create(self, params: UserAccountParams, timeout: float | None = None) -> None: ...


class CommandRunner(Adapter):
    @abstractmethod
    def run(
        self,
        command: str | list[str],
        timeout: float | None = None,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        run_as: str | None = None,
        input: str | None = None,
    ) -> CommandResult:
        """Run a command and capture its output. Never raises on non-zero exit.

        ``input`` is fed to stdin; secrets travel this way, never as argv.
        """
