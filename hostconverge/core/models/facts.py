"""
Fact models — typed snapshots of host state and the checks run against them.

A FactQuery names one thing to look at ("package caddy", "file
/etc/caddy/Caddyfile"). The probe answers each distinct query once per
run with a typed status model. A Check is one clause of an action's
precondition: it knows which query it needs and how to judge the answer.
"""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ── Queries ─────────────────────────────────────────────────────


@dataclass(frozen=True, order=True)
class FactQuery:
    """A hashable key for one read of host state."""

    capability: str   # package, file, service, database, database_user, user, command
    subject: str
    qualifier: str = ""

    def __str__(self) -> str:
        if self.qualifier:
            return f"{self.capability}:{self.subject}@{self.qualifier}"
        return f"{self.capability}:{self.subject}"


# ── Results ─────────────────────────────────────────────────────


class PackageStatus(BaseModel):
    installed: bool = False
    version: str | None = None


class FileStatus(BaseModel):
    exists: bool = False
    is_dir: bool = False
    sha256: str | None = None
    mode: int | None = None     # permission bits only (st_mode & 0o7777)
    owner: str | None = None
    group: str | None = None


class ServiceStatus(BaseModel):
    active: bool = False
    enabled: bool = False
    loaded: bool = False


class DatabaseObjectStatus(BaseModel):
    exists: bool = False


class UserStatus(BaseModel):
    exists: bool = False
    uid: int | None = None
    home: str | None = None


class CommandStatus(BaseModel):
    exit_code: int


FactResult = Union[
    PackageStatus,
    FileStatus,
    ServiceStatus,
    DatabaseObjectStatus,
    UserStatus,
    CommandStatus,
]


# ── Helpers ─────────────────────────────────────────────────────


def parse_mode(value: str | int | None) -> int | None:
    """Accept ``"0644"``, ``"644"``, ``0o644`` or ``420``."""
    if value is None:
        return None
    if isinstance(value, int):
        return value
    text = value.strip().lower().removeprefix("0o")
    try:
        mode = int(text, 8)
    except ValueError as e:
        raise ValueError(f"Invalid file mode {value!r}: expected an octal string") from e
    if mode > 0o7777:
        raise ValueError(f"Invalid file mode {value!r}: out of range")
    return mode


def _version_key(version: str) -> tuple[int, ...]:
    """Comparable key for Debian-style versions.

    ``[epoch:]upstream[-revision]`` — the epoch leads, then the numeric
    runs of the upstream part. Non-numeric suffixes are ignored.
    """
    epoch = 0
    if ":" in version:
        head, _, version = version.partition(":")
        if head.isdigit():
            epoch = int(head)
    upstream = version.rsplit("-", 1)[0] if "-" in version else version
    return (epoch, *(int(n) for n in re.findall(r"\d+", upstream)))


def version_at_least(installed: str | None, minimum: str) -> bool:
    """True when ``installed`` is the same as or newer than ``minimum``."""
    if not installed:
        return False
    have = _version_key(installed)
    want = _version_key(minimum)
    # Pad so "2.7" and "2.7.0" compare equal
    width = max(len(have), len(want))
    return have + (0,) * (width - len(have)) >= want + (0,) * (width - len(want))


# ── Checks ──────────────────────────────────────────────────────


class _Check(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    def query(self) -> FactQuery:
        raise NotImplementedError

    def holds(self, result: FactResult) -> bool:
        raise NotImplementedError

    def describe(self) -> str:
        return str(self.query())


class PackageCheck(_Check):
    """Package installed, optionally at or above ``min_version``."""

    fact: Literal["package"] = "package"
    name: str
    min_version: str | None = None

    def query(self) -> FactQuery:
        return FactQuery("package", self.name)

    def holds(self, result: FactResult) -> bool:
        assert isinstance(result, PackageStatus)
        if not result.installed:
            return False
        if self.min_version:
            return version_at_least(result.version, self.min_version)
        return True

    def describe(self) -> str:
        if self.min_version:
            return f"package {self.name} >= {self.min_version}"
        return f"package {self.name} installed"


class _FileAttrs(_Check):
    mode: int | None = None
    owner: str | None = None
    group: str | None = None

    @field_validator("mode", mode="before")
    @classmethod
    def _mode(cls, value: str | int | None) -> int | None:
        return parse_mode(value)

    def _attrs_match(self, status: FileStatus) -> bool:
        if self.mode is not None and status.mode != self.mode:
            return False
        if self.owner is not None and status.owner != self.owner:
            return False
        if self.group is not None and status.group != self.group:
            return False
        return True


class FileCheck(_FileAttrs):
    """Regular file present, optionally with a content hash and attributes."""

    fact: Literal["file"] = "file"
    path: str
    sha256: str | None = None

    def query(self) -> FactQuery:
        return FactQuery("file", self.path)

    def holds(self, result: FactResult) -> bool:
        assert isinstance(result, FileStatus)
        if not result.exists or result.is_dir:
            return False
        if self.sha256 is not None and result.sha256 != self.sha256:
            return False
        return self._attrs_match(result)

    def describe(self) -> str:
        return f"file {self.path} up to date"


class DirectoryCheck(_FileAttrs):
    fact: Literal["directory"] = "directory"
    path: str

    def query(self) -> FactQuery:
        return FactQuery("file", self.path)

    def holds(self, result: FactResult) -> bool:
        assert isinstance(result, FileStatus)
        return result.exists and result.is_dir and self._attrs_match(result)

    def describe(self) -> str:
        return f"directory {self.path} present"


class PathCheck(_Check):
    """Anything exists at ``path`` (``creates:`` shorthand)."""

    fact: Literal["path"] = "path"
    path: str

    def query(self) -> FactQuery:
        return FactQuery("file", self.path)

    def holds(self, result: FactResult) -> bool:
        assert isinstance(result, FileStatus)
        return result.exists

    def describe(self) -> str:
        return f"path {self.path} exists"


class ServiceCheck(_Check):
    fact: Literal["service"] = "service"
    name: str
    active: bool | None = True
    enabled: bool | None = None

    def query(self) -> FactQuery:
        return FactQuery("service", self.name)

    def holds(self, result: FactResult) -> bool:
        assert isinstance(result, ServiceStatus)
        if self.active is not None and result.active != self.active:
            return False
        if self.enabled is not None and result.enabled != self.enabled:
            return False
        return True

    def describe(self) -> str:
        parts = []
        if self.active is not None:
            parts.append("active" if self.active else "inactive")
        if self.enabled is not None:
            parts.append("enabled" if self.enabled else "disabled")
        return f"service {self.name} {'+'.join(parts) or 'known'}"


class DatabaseCheck(_Check):
    fact: Literal["database"] = "database"
    name: str

    def query(self) -> FactQuery:
        return FactQuery("database", self.name)

    def holds(self, result: FactResult) -> bool:
        assert isinstance(result, DatabaseObjectStatus)
        return result.exists

    def describe(self) -> str:
        return f"database {self.name} exists"


class DatabaseUserCheck(_Check):
    fact: Literal["database_user"] = "database_user"
    name: str
    host: str = "localhost"

    def query(self) -> FactQuery:
        return FactQuery("database_user", self.name, self.host)

    def holds(self, result: FactResult) -> bool:
        assert isinstance(result, DatabaseObjectStatus)
        return result.exists

    def describe(self) -> str:
        return f"database user {self.name}@{self.host} exists"


class UserCheck(_Check):
    fact: Literal["user"] = "user"
    name: str

    def query(self) -> FactQuery:
        return FactQuery("user", self.name)

    def holds(self, result: FactResult) -> bool:
        assert isinstance(result, UserStatus)
        return result.exists

    def describe(self) -> str:
        return f"user {self.name} exists"


class CommandCheck(_Check):
    """A read-only check command; exit code 0 means satisfied."""

    fact: Literal["command"] = "command"
    command: str

    @field_validator("command", mode="before")
    @classmethod
    def _join(cls, value: str | list[str]) -> str:
        if isinstance(value, list):
            return shlex.join(str(v) for v in value)
        return value

    def query(self) -> FactQuery:
        return FactQuery("command", self.command)

    def holds(self, result: FactResult) -> bool:
        assert isinstance(result, CommandStatus)
        return result.exit_code == 0

    def describe(self) -> str:
        return f"check `{self.command}` succeeds"


Check = Annotated[
    Union[
        PackageCheck,
        FileCheck,
        DirectoryCheck,
        PathCheck,
        ServiceCheck,
        DatabaseCheck,
        DatabaseUserCheck,
        UserCheck,
        CommandCheck,
    ],
    Field(discriminator="fact"),
]


# ── Snapshot ────────────────────────────────────────────────────


class FactSnapshot:
    """Read-only answers to every query the planner needs, taken once.

    Each entry is either a typed status or the ProbeUnavailable that
    prevented reading it.
    """

    def __init__(self, entries: dict[FactQuery, FactResult | Exception] | None = None):
        self._entries: dict[FactQuery, FactResult | Exception] = dict(entries or {})

    def __contains__(self, query: FactQuery) -> bool:
        return query in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def lookup(self, query: FactQuery) -> FactResult | Exception | None:
        """The stored answer, the stored probe error, or None if never probed."""
        return self._entries.get(query)

    def queries(self) -> list[FactQuery]:
        return sorted(self._entries)

    def unavailable(self) -> dict[FactQuery, str]:
        return {q: str(v) for q, v in self._entries.items() if isinstance(v, Exception)}

    def to_dict(self) -> dict[str, object]:
        out: dict[str, object] = {}
        for query in self.queries():
            value = self._entries[query]
            if isinstance(value, Exception):
                out[str(query)] = {"unavailable": str(value)}
            else:
                out[str(query)] = value.model_dump(mode="json")
        return out
