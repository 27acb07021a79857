"""
Action model — the unit of desired host state.

An Action says "this piece of the host should look like this." It is
built once from the desired-state document, frozen, and never touched
by the executor: outcomes live in ExecutionRecords keyed by identifier.

Each kind carries its own parameter model. The document gives the
parameters as a plain mapping under ``params``; validation picks the
model from ``kind``.
"""

from __future__ import annotations

import re
from enum import StrEnum
from typing import Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from hostconverge.core.models.facts import Check, parse_mode


class ActionKind(StrEnum):
    PACKAGE_SET = "package_set"
    USER_ACCOUNT = "user_account"
    DATABASE_SCHEMA = "database_schema"
    RENDERED_FILE = "rendered_file"
    SERVICE_STATE = "service_state"
    SHELL_STEP = "shell_step"
    DIRECTORY = "directory"


class Severity(StrEnum):
    REQUIRED = "required"
    ADVISORY = "advisory"


class _Params(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


# ── Kind parameters ─────────────────────────────────────────────

_PKG_SPEC = re.compile(r"^\s*([A-Za-z0-9][A-Za-z0-9+.:_-]*)\s*(?:>=\s*(\S+))?\s*$")


class PackageSpec(_Params):
    name: str
    min_version: str | None = None

    @classmethod
    def parse(cls, text: str) -> PackageSpec:
        """Parse ``"caddy"`` or ``"php8.3-fpm>=8.3.6"``."""
        match = _PKG_SPEC.match(text)
        if not match:
            raise ValueError(f"Invalid package spec: {text!r}")
        return cls(name=match.group(1), min_version=match.group(2))

    def __str__(self) -> str:
        if self.min_version:
            return f"{self.name}>={self.min_version}"
        return self.name


class PackageSetParams(_Params):
    packages: list[PackageSpec]
    update_cache: bool = False

    @field_validator("packages", mode="before")
    @classmethod
    def _parse_specs(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list):
            return value
        return [PackageSpec.parse(v) if isinstance(v, str) else v for v in value]

    @field_validator("packages")
    @classmethod
    def _not_empty(cls, value: list[PackageSpec]) -> list[PackageSpec]:
        if not value:
            raise ValueError("package_set needs at least one package")
        return value


class UserAccountParams(_Params):
    name: str
    system: bool = False
    home: str | None = None
    shell: str | None = None
    groups: list[str] = Field(default_factory=list)


class DatabaseSchemaParams(_Params):
    database: str
    charset: str = "utf8mb4"
    collation: str = "utf8mb4_unicode_ci"
    user: str | None = None
    host: str = "localhost"
    password: str | None = None
    privileges: list[str] = Field(default_factory=lambda: ["ALL PRIVILEGES"])

    @model_validator(mode="after")
    def _user_needs_password(self) -> DatabaseSchemaParams:
        if self.user and not self.password:
            raise ValueError(f"database user '{self.user}' needs a password")
        return self


class RenderedFileParams(_Params):
    dest: str
    template: str | None = None      # path, resolved against the document directory
    content: str | None = None       # inline template
    mode: int = 0o644
    owner: str | None = None
    group: str | None = None
    values: dict[str, str] = Field(default_factory=dict)
    backup: bool = True

    @field_validator("mode", mode="before")
    @classmethod
    def _mode(cls, value: str | int) -> int:
        return parse_mode(value)

    @field_validator("values", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items()}
        return value

    @model_validator(mode="after")
    def _one_source(self) -> RenderedFileParams:
        if (self.template is None) == (self.content is None):
            raise ValueError("rendered_file needs exactly one of 'template' or 'content'")
        return self


class ServiceStateParams(_Params):
    name: str
    state: Literal["running", "stopped"] = "running"
    enabled: bool | None = True
    # Actions whose ``applied`` outcome in this run forces a restart
    restart_on: tuple[str, ...] = ()

    @field_validator("restart_on", mode="before")
    @classmethod
    def _triggers(cls, value: Any) -> Any:
        if isinstance(value, str):
            return (value,)
        return value

    @model_validator(mode="after")
    def _restart_needs_running(self) -> ServiceStateParams:
        if self.restart_on and self.state != "running":
            raise ValueError(f"service '{self.name}': restart_on needs state 'running'")
        return self


class ShellStepParams(_Params):
    command: str | list[str]
    cwd: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    run_as: str | None = None
    timeout: float | None = None
    creates: str | None = None
    unless: str | list[str] | None = None
    transient_exit_codes: list[int] = Field(default_factory=list)


class DirectoryParams(_Params):
    path: str
    mode: int | None = None
    owner: str | None = None
    group: str | None = None

    @field_validator("mode", mode="before")
    @classmethod
    def _mode(cls, value: str | int | None) -> int | None:
        return parse_mode(value)


ActionParams = Union[
    PackageSetParams,
    UserAccountParams,
    DatabaseSchemaParams,
    RenderedFileParams,
    ServiceStateParams,
    ShellStepParams,
    DirectoryParams,
]

PARAM_MODELS: dict[ActionKind, type[BaseModel]] = {
    ActionKind.PACKAGE_SET: PackageSetParams,
    ActionKind.USER_ACCOUNT: UserAccountParams,
    ActionKind.DATABASE_SCHEMA: DatabaseSchemaParams,
    ActionKind.RENDERED_FILE: RenderedFileParams,
    ActionKind.SERVICE_STATE: ServiceStateParams,
    ActionKind.SHELL_STEP: ShellStepParams,
    ActionKind.DIRECTORY: DirectoryParams,
}

# Parameters whose values are always redacted, regardless of declaration
ALWAYS_SENSITIVE: dict[ActionKind, frozenset[str]] = {
    ActionKind.DATABASE_SCHEMA: frozenset({"password"}),
}


# ── Action ──────────────────────────────────────────────────────


class Action(BaseModel):
    """One convergeable unit of host state.

    ``precondition`` replaces the kind's implied check when given;
    when omitted, the kind decides what "already satisfied" means.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    identifier: str = Field(alias="id", min_length=1)
    kind: ActionKind
    params: ActionParams
    depends_on: tuple[str, ...] = ()
    precondition: tuple[Check, ...] | None = None
    severity: Severity = Severity.REQUIRED
    sensitive: frozenset[str] = frozenset()
    description: str = ""

    @model_validator(mode="before")
    @classmethod
    def _typed_params(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        kind = data.get("kind")
        params = data.get("params", {})
        try:
            kind = ActionKind(kind)
        except ValueError:
            return data  # field validation reports the bad kind
        if isinstance(params, dict):
            data = {**data, "params": PARAM_MODELS[kind].model_validate(params)}
        return data

    @model_validator(mode="after")
    def _params_match_kind(self) -> Action:
        expected = PARAM_MODELS[self.kind]
        if not isinstance(self.params, expected):
            raise ValueError(
                f"Action '{self.identifier}': params do not match kind '{self.kind}'"
            )
        return self

    @model_validator(mode="after")
    def _triggers_are_dependencies(self) -> Action:
        missing = [t for t in self.restart_triggers if t not in self.depends_on]
        if missing:
            raise ValueError(
                f"Action '{self.identifier}': restart_on {', '.join(repr(m) for m in missing)} "
                "must also be listed in depends_on"
            )
        return self

    @field_validator("depends_on", mode="before")
    @classmethod
    def _deps(cls, value: Any) -> Any:
        if isinstance(value, str):
            return (value,)
        return value

    @property
    def restart_triggers(self) -> tuple[str, ...]:
        return getattr(self.params, "restart_on", ())

    @property
    def sensitive_params(self) -> frozenset[str]:
        return self.sensitive | ALWAYS_SENSITIVE.get(self.kind, frozenset())

    def sensitive_values(self) -> set[str]:
        """Concrete parameter values that must never be printed."""
        found: set[str] = set()
        dumped = self.params.model_dump()
        for name in self.sensitive_params:
            value = dumped.get(name)
            if isinstance(value, str) and value:
                found.add(value)
            elif isinstance(value, dict):
                found.update(str(v) for v in value.values() if v)
            elif isinstance(value, list):
                found.update(str(v) for v in value if v)
        return found

    def label(self) -> str:
        return self.description or f"{self.kind.value} {self.identifier}"
