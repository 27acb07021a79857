"""
FakeHost — an in-memory host implementing every adapter port.

Used by ``--mock`` runs and by the test suite. Every port call is
recorded in ``calls`` as ``(operation, key)`` so tests can assert how
often the engine probed or mutated something. Failures, unavailable
subsystems and slow operations can be injected per operation.

Operations are named ``<port>.<method>``, e.g. ``package.install``,
``service.query``, ``file.write``, ``command.run``.
"""

from __future__ import annotations

import shlex
import threading
import time
from dataclasses import dataclass, field

from hostconverge.adapters.base import (
    AccountManager,
    CommandResult,
    CommandRunner,
    DatabaseAdmin,
    FileStore,
    PackageManager,
    ServiceManager,
)
from hostconverge.adapters.shell.filesystem import sha256_bytes
from hostconverge.core.errors import (
    ProbeUnavailable,
    StructuralApplyError,
    TransientApplyError,
)
from hostconverge.core.models.action import PackageSpec, UserAccountParams
from hostconverge.core.models.facts import (
    DatabaseObjectStatus,
    FileStatus,
    PackageStatus,
    ServiceStatus,
    UserStatus,
    version_at_least,
)


@dataclass
class FakeFile:
    data: bytes = b""
    mode: int = 0o644
    owner: str = "root"
    group: str = "root"
    is_dir: bool = False


@dataclass
class _Fault:
    message: str
    transient: bool
    remaining: int | None     # None = forever


@dataclass
class _FakeCommand:
    returncode: int = 0
    stdout: str = ""
    stderr: str = ""
    creates: str | None = None


@dataclass
class FakeHost:
    """Host state plus an operation log. Thread-safe."""

    packages: dict[str, str] = field(default_factory=dict)            # name -> version
    available_versions: dict[str, str] = field(default_factory=dict)  # what "install" yields
    services: dict[str, ServiceStatus] = field(default_factory=dict)
    databases: set[str] = field(default_factory=set)
    database_users: set[tuple[str, str]] = field(default_factory=set)
    grants: list[tuple[str, str, str, str]] = field(default_factory=list)
    files: dict[str, FakeFile] = field(default_factory=dict)
    users: dict[str, UserStatus] = field(default_factory=dict)
    calls: list[tuple[str, str]] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._lock = threading.RLock()
        self._faults: dict[tuple[str, str], _Fault] = {}
        self._unavailable: set[str] = set()
        self._delays: dict[str, float] = {}
        self._commands: dict[str, _FakeCommand] = {}
        self._read_ops: set[str] = {"file.read"}

        self.package_manager = _FakePackages(self)
        self.service_manager = _FakeServices(self)
        self.database_admin = _FakeDatabase(self)
        self.file_store = _FakeFiles(self)
        self.account_manager = _FakeAccounts(self)
        self.command_runner = _FakeCommands(self)

    # ── Configuration ────────────────────────────────────────────

    def fail(
        self,
        operation: str,
        key: str = "*",
        message: str = "injected failure",
        transient: bool = False,
        times: int | None = None,
    ) -> None:
        """Make ``operation`` on ``key`` (or any key) raise.

        ``times`` limits how many calls fail before the operation
        starts succeeding again.
        """
        with self._lock:
            self._faults[(operation, key)] = _Fault(message, transient, times)

    def set_unavailable(self, port: str, unavailable: bool = True) -> None:
        """Make every ``<port>.query``-style read raise ProbeUnavailable."""
        with self._lock:
            if unavailable:
                self._unavailable.add(port)
            else:
                self._unavailable.discard(port)

    def set_delay(self, operation: str, seconds: float) -> None:
        self._delays[operation] = seconds

    def set_command(
        self,
        command: str | list[str],
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        creates: str | None = None,
    ) -> None:
        """Script the result of a command. ``creates`` appears on success."""
        self._commands[_command_key(command)] = _FakeCommand(returncode, stdout, stderr, creates)

    def add_file(self, path: str, data: bytes | str, mode: int = 0o644,
                 owner: str = "root", group: str = "root") -> None:
        if isinstance(data, str):
            data = data.encode()
        self.files[path] = FakeFile(data, mode, owner, group)

    # ── Call log ─────────────────────────────────────────────────

    def count(self, operation: str, key: str | None = None) -> int:
        with self._lock:
            return sum(
                1 for op, k in self.calls
                if op == operation and (key is None or k == key)
            )

    def mutations(self) -> list[tuple[str, str]]:
        """Every call that is not a read."""
        with self._lock:
            return [c for c in self.calls if c[0] not in self._read_ops]

    def reset_calls(self) -> None:
        with self._lock:
            self.calls.clear()

    # ── Internal ─────────────────────────────────────────────────

    def _enter(self, operation: str, key: str, read: bool = False) -> None:
        with self._lock:
            self.calls.append((operation, key))
            if read:
                self._read_ops.add(operation)
            port = operation.split(".", 1)[0]
            if read and port in self._unavailable:
                raise ProbeUnavailable(f"{port} subsystem unavailable")
            fault = self._faults.get((operation, key)) or self._faults.get((operation, "*"))
            if fault is not None and fault.remaining is not None:
                if fault.remaining <= 0:
                    fault = None
                else:
                    fault.remaining -= 1
        delay = self._delays.get(operation)
        if delay:
            time.sleep(delay)
        if fault is None:
            return
        if read:
            raise ProbeUnavailable(fault.message)
        if fault.transient:
            raise TransientApplyError(f"{operation} {key}: {fault.message}")
        raise StructuralApplyError(f"{operation} {key}: {fault.message}")


def _command_key(command: str | list[str]) -> str:
    return command if isinstance(command, str) else shlex.join(command)


# ── Ports ───────────────────────────────────────────────────────


class _FakePort:
    def __init__(self, host: FakeHost):
        self.host = host

    def is_available(self) -> bool:
        return True


class _FakePackages(_FakePort, PackageManager):
    @property
    def name(self) -> str:
        return "fake-packages"

    def query(self, name: str, timeout: float | None = None) -> PackageStatus:
        self.host._enter("package.query", name, read=True)
        version = self.host.packages.get(name)
        return PackageStatus(installed=version is not None, version=version)

    def install(self, packages: list[PackageSpec], update_cache: bool = False,
                timeout: float | None = None) -> None:
        names = " ".join(p.name for p in packages)
        self.host._enter("package.install", names)
        with self.host._lock:
            for spec in packages:
                version = self.host.available_versions.get(spec.name, "1.0")
                if spec.min_version and not version_at_least(version, spec.min_version):
                    raise StructuralApplyError(
                        f"{spec.name} {version} available, need >= {spec.min_version}"
                    )
                self.host.packages[spec.name] = version


class _FakeServices(_FakePort, ServiceManager):
    @property
    def name(self) -> str:
        return "fake-services"

    def query(self, name: str, timeout: float | None = None) -> ServiceStatus:
        self.host._enter("service.query", name, read=True)
        return self.host.services.get(name, ServiceStatus())

    def _update(self, name: str, **changes: bool) -> None:
        with self.host._lock:
            current = self.host.services.get(name, ServiceStatus(loaded=True))
            self.host.services[name] = current.model_copy(update={"loaded": True, **changes})

    def start(self, name: str, timeout: float | None = None) -> None:
        self.host._enter("service.start", name)
        self._update(name, active=True)

    def stop(self, name: str, timeout: float | None = None) -> None:
        self.host._enter("service.stop", name)
        self._update(name, active=False)

    def restart(self, name: str, timeout: float | None = None) -> None:
        self.host._enter("service.restart", name)
        self._update(name, active=True)

    def set_enabled(self, name: str, enabled: bool, timeout: float | None = None) -> None:
        self.host._enter("service.enable" if enabled else "service.disable", name)
        self._update(name, enabled=enabled)


class _FakeDatabase(_FakePort, DatabaseAdmin):
    @property
    def name(self) -> str:
        return "fake-database"

    def database_exists(self, name: str, timeout: float | None = None) -> DatabaseObjectStatus:
        self.host._enter("database.exists", name, read=True)
        return DatabaseObjectStatus(exists=name in self.host.databases)

    def user_exists(self, user: str, host: str, timeout: float | None = None) -> DatabaseObjectStatus:
        self.host._enter("database.user_exists", f"{user}@{host}", read=True)
        return DatabaseObjectStatus(exists=(user, host) in self.host.database_users)

    def create_database(self, name: str, charset: str, collation: str,
                        timeout: float | None = None) -> None:
        self.host._enter("database.create", name)
        with self.host._lock:
            self.host.databases.add(name)

    def create_user(self, user: str, host: str, password: str,
                    timeout: float | None = None) -> None:
        self.host._enter("database.create_user", f"{user}@{host}")
        with self.host._lock:
            self.host.database_users.add((user, host))

    def grant(self, privileges: list[str], database: str, user: str, host: str,
              timeout: float | None = None) -> None:
        self.host._enter("database.grant", f"{database}:{user}@{host}")
        with self.host._lock:
            self.host.grants.append((", ".join(privileges), database, user, host))


class _FakeFiles(_FakePort, FileStore):
    @property
    def name(self) -> str:
        return "fake-files"

    def stat(self, path: str) -> FileStatus:
        self.host._enter("file.stat", path, read=True)
        entry = self.host.files.get(path)
        if entry is None:
            return FileStatus(exists=False)
        return FileStatus(
            exists=True,
            is_dir=entry.is_dir,
            sha256=None if entry.is_dir else sha256_bytes(entry.data),
            mode=entry.mode,
            owner=entry.owner,
            group=entry.group,
        )

    def read_bytes(self, path: str) -> bytes | None:
        self.host._enter("file.read", path)
        entry = self.host.files.get(path)
        if entry is None or entry.is_dir:
            return None
        return entry.data

    def write(self, path: str, data: bytes, mode: int | None = None,
              owner: str | None = None, group: str | None = None) -> None:
        self.host._enter("file.write", path)
        with self.host._lock:
            current = self.host.files.get(path)
            if current is not None and current.is_dir:
                raise StructuralApplyError(f"{path} is a directory")
            self.host.files[path] = FakeFile(
                data=data,
                mode=mode if mode is not None else (current.mode if current else 0o644),
                owner=owner or (current.owner if current else "root"),
                group=group or (current.group if current else "root"),
            )

    def make_dir(self, path: str, mode: int | None = None,
                 owner: str | None = None, group: str | None = None) -> None:
        self.host._enter("file.mkdir", path)
        with self.host._lock:
            current = self.host.files.get(path)
            if current is not None and not current.is_dir:
                raise StructuralApplyError(f"{path} exists and is not a directory")
            self.host.files[path] = FakeFile(
                mode=mode if mode is not None else (current.mode if current else 0o755),
                owner=owner or (current.owner if current else "root"),
                group=group or (current.group if current else "root"),
                is_dir=True,
            )

    def remove(self, path: str) -> None:
        self.host._enter("file.remove", path)
        with self.host._lock:
            self.host.files.pop(path, None)


class _FakeAccounts(_FakePort, AccountManager):
    @property
    def name(self) -> str:
        return "fake-accounts"

    def query(self, name: str) -> UserStatus:
        self.host._enter("user.query", name, read=True)
        return self.host.users.get(name, UserStatus())

    def create(self, params: UserAccountParams, timeout: float | None = None) -> None:
        self.host._enter("user.create", params.name)
        with self.host._lock:
            uid = 1000 + len(self.host.users)
            self.host.users[params.name] = UserStatus(exists=True, uid=uid, home=params.home)


class _FakeCommands(_FakePort, CommandRunner):
    """Unscripted commands exit 0 with no output."""

    @property
    def name(self) -> str:
        return "fake-commands"

    def run(self, command: str | list[str], timeout: float | None = None,
            cwd: str | None = None, env: dict[str, str] | None = None,
            run_as: str | None = None, input: str | None = None) -> CommandResult:
        key = _command_key(command)
        self.host._enter("command.run", key)
        scripted = self.host._commands.get(key, _FakeCommand())
        if scripted.returncode == 0 and scripted.creates:
            with self.host._lock:
                self.host.files.setdefault(scripted.creates, FakeFile())
        return CommandResult(
            returncode=scripted.returncode,
            stdout=scripted.stdout,
            stderr=scripted.stderr,
            argv=[key],
        )
