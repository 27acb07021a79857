"""
Kind handlers — what each action kind means on a real host.

For every ActionKind a handler answers three questions:

    implied_checks   what "already satisfied" means when the document
                     gives no explicit precondition
    resource_class   which shared resource the apply touches (the
                     executor serializes work per class)
    apply            produce the effect through the adapters and return
                     a concrete, human-readable detail

Handlers raise ActionApplyError subclasses; the executor turns them
into records. They never look at other actions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from hostconverge.adapters.registry import AdapterRegistry
from hostconverge.adapters.shell.filesystem import sha256_bytes
from hostconverge.core.errors import StructuralApplyError, TransientApplyError
from hostconverge.core.models.action import (
    Action,
    ActionKind,
    DatabaseSchemaParams,
    DirectoryParams,
    PackageSetParams,
    RenderedFileParams,
    ServiceStateParams,
    ShellStepParams,
    UserAccountParams,
)
from hostconverge.core.models.facts import (
    CommandCheck,
    DatabaseCheck,
    DatabaseUserCheck,
    DirectoryCheck,
    FileCheck,
    PackageCheck,
    PathCheck,
    ServiceCheck,
    UserCheck,
)
from hostconverge.core.persistence.backups import BackupStore
from hostconverge.core.templating import render_template

logger = logging.getLogger(__name__)


@dataclass
class ApplyContext:
    """Everything an apply may use beyond the action itself."""

    adapters: AdapterRegistry
    values: dict[str, str] = field(default_factory=dict)
    timeout: float | None = None
    backups: BackupStore | None = None
    run_id: str = ""
    # restart_on triggers that ended ``applied`` earlier in this run
    triggered: tuple[str, ...] = ()
    restart_only: bool = False


def render_file(params: RenderedFileParams, values: dict[str, str]) -> bytes:
    """Final bytes of a rendered_file: document values < per-action values."""
    if params.content is not None:
        source = params.content
    else:
        try:
            source = Path(params.template).read_text(encoding="utf-8")
        except OSError as e:
            raise StructuralApplyError(f"Cannot read template {params.template}: {e}") from e
    return render_template(source, {**values, **params.values}).encode("utf-8")


class KindHandler:
    kind: ActionKind

    def implied_checks(self, action: Action, values: dict[str, str]) -> list:
        return []

    def resource_class(self, action: Action, adapters: AdapterRegistry) -> str:
        raise NotImplementedError

    def apply(self, action: Action, ctx: ApplyContext) -> str:
        raise NotImplementedError


# ── Packages ────────────────────────────────────────────────────


class PackageSetHandler(KindHandler):
    kind = ActionKind.PACKAGE_SET

    def implied_checks(self, action: Action, values: dict[str, str]) -> list:
        params: PackageSetParams = action.params
        return [PackageCheck(name=p.name, min_version=p.min_version) for p in params.packages]

    def resource_class(self, action: Action, adapters: AdapterRegistry) -> str:
        return "package-manager"

    def apply(self, action: Action, ctx: ApplyContext) -> str:
        params: PackageSetParams = action.params
        ctx.adapters.packages.install(params.packages, params.update_cache, timeout=ctx.timeout)
        return "installed " + ", ".join(str(p) for p in params.packages)


# ── Accounts ────────────────────────────────────────────────────


class UserAccountHandler(KindHandler):
    kind = ActionKind.USER_ACCOUNT

    def implied_checks(self, action: Action, values: dict[str, str]) -> list:
        params: UserAccountParams = action.params
        return [UserCheck(name=params.name)]

    def resource_class(self, action: Action, adapters: AdapterRegistry) -> str:
        return "accounts"

    def apply(self, action: Action, ctx: ApplyContext) -> str:
        params: UserAccountParams = action.params
        if ctx.adapters.accounts.query(params.name).exists:
            return f"user {params.name} already exists"
        ctx.adapters.accounts.create(params, timeout=ctx.timeout)
        kind = "system user" if params.system else "user"
        return f"created {kind} {params.name}"


# ── Databases ───────────────────────────────────────────────────


class DatabaseSchemaHandler(KindHandler):
    """Database, plus an optional owner account with grants.

    Grants are re-issued on every apply but never probed: the implied
    precondition covers the database and the account only.
    """

    kind = ActionKind.DATABASE_SCHEMA

    def implied_checks(self, action: Action, values: dict[str, str]) -> list:
        params: DatabaseSchemaParams = action.params
        checks: list = [DatabaseCheck(name=params.database)]
        if params.user:
            checks.append(DatabaseUserCheck(name=params.user, host=params.host))
        return checks

    def resource_class(self, action: Action, adapters: AdapterRegistry) -> str:
        return f"database:{adapters.databases.endpoint}"

    def apply(self, action: Action, ctx: ApplyContext) -> str:
        params: DatabaseSchemaParams = action.params
        db = ctx.adapters.databases
        db.create_database(params.database, params.charset, params.collation, timeout=ctx.timeout)
        detail = f"database {params.database} ({params.charset})"
        if params.user:
            db.create_user(params.user, params.host, params.password, timeout=ctx.timeout)
            db.grant(params.privileges, params.database, params.user, params.host,
                     timeout=ctx.timeout)
            detail += f", {params.user}@{params.host} granted {', '.join(params.privileges)}"
        return detail


# ── Files ───────────────────────────────────────────────────────


class RenderedFileHandler(KindHandler):
    kind = ActionKind.RENDERED_FILE

    def implied_checks(self, action: Action, values: dict[str, str]) -> list:
        params: RenderedFileParams = action.params
        data = render_file(params, values)
        return [
            FileCheck(
                path=params.dest,
                sha256=sha256_bytes(data),
                mode=params.mode,
                owner=params.owner,
                group=params.group,
            )
        ]

    def resource_class(self, action: Action, adapters: AdapterRegistry) -> str:
        return f"file:{action.params.dest}"

    def apply(self, action: Action, ctx: ApplyContext) -> str:
        params: RenderedFileParams = action.params
        files = ctx.adapters.files
        data = render_file(params, ctx.values)

        if params.backup and ctx.backups is not None:
            current = files.stat(params.dest)
            if current.is_dir:
                raise StructuralApplyError(f"{params.dest} is a directory")
            previous = files.read_bytes(params.dest) if current.exists else None
            if previous != data:
                ctx.backups.save(
                    action.identifier,
                    params.dest,
                    previous,
                    mode=current.mode,
                    owner=current.owner,
                    group=current.group,
                    run_id=ctx.run_id,
                )

        files.write(params.dest, data, mode=params.mode, owner=params.owner, group=params.group)
        return f"rendered {len(data)} bytes to {params.dest}, mode {params.mode:04o}"


class DirectoryHandler(KindHandler):
    kind = ActionKind.DIRECTORY

    def implied_checks(self, action: Action, values: dict[str, str]) -> list:
        params: DirectoryParams = action.params
        return [DirectoryCheck(path=params.path, mode=params.mode,
                               owner=params.owner, group=params.group)]

    def resource_class(self, action: Action, adapters: AdapterRegistry) -> str:
        return f"file:{action.params.path}"

    def apply(self, action: Action, ctx: ApplyContext) -> str:
        params: DirectoryParams = action.params
        ctx.adapters.files.make_dir(params.path, params.mode, params.owner, params.group)
        detail = f"directory {params.path}"
        if params.owner:
            detail += f" owned by {params.owner}"
        if params.mode is not None:
            detail += f", mode {params.mode:04o}"
        return detail


# ── Services ────────────────────────────────────────────────────


class ServiceStateHandler(KindHandler):
    kind = ActionKind.SERVICE_STATE

    def implied_checks(self, action: Action, values: dict[str, str]) -> list:
        params: ServiceStateParams = action.params
        return [ServiceCheck(name=params.name, active=params.state == "running",
                             enabled=params.enabled)]

    def resource_class(self, action: Action, adapters: AdapterRegistry) -> str:
        return "service-manager"

    def apply(self, action: Action, ctx: ApplyContext) -> str:
        params: ServiceStateParams = action.params
        services = ctx.adapters.services
        after = ", ".join(repr(t) for t in ctx.triggered)
        if ctx.restart_only:
            services.restart(params.name, timeout=ctx.timeout)
            return f"service {params.name} restarted after {after} changed"

        changes = []
        if params.enabled is not None:
            services.set_enabled(params.name, params.enabled, timeout=ctx.timeout)
            changes.append("enabled" if params.enabled else "disabled")
        if params.state == "running" and ctx.triggered:
            # A package install may have started it on the old config
            services.restart(params.name, timeout=ctx.timeout)
            changes.append(f"restarted after {after} changed")
        elif params.state == "running":
            services.start(params.name, timeout=ctx.timeout)
            changes.append("running")
        else:
            services.stop(params.name, timeout=ctx.timeout)
            changes.append("stopped")
        return f"service {params.name} {', '.join(changes)}"


# ── Shell steps ─────────────────────────────────────────────────


class ShellStepHandler(KindHandler):
    """Arbitrary command. Without ``creates`` or ``unless`` it always runs."""

    kind = ActionKind.SHELL_STEP

    def implied_checks(self, action: Action, values: dict[str, str]) -> list:
        params: ShellStepParams = action.params
        checks: list = []
        if params.creates:
            checks.append(PathCheck(path=params.creates))
        if params.unless:
            checks.append(CommandCheck(command=params.unless))
        return checks

    def resource_class(self, action: Action, adapters: AdapterRegistry) -> str:
        return "shell"

    def apply(self, action: Action, ctx: ApplyContext) -> str:
        params: ShellStepParams = action.params
        timeout = params.timeout or ctx.timeout
        if params.timeout and ctx.timeout:
            timeout = min(params.timeout, ctx.timeout)
        result = ctx.adapters.commands.run(
            params.command,
            timeout=timeout,
            cwd=params.cwd,
            env=params.env or None,
            run_as=params.run_as,
        )
        shown = params.command if isinstance(params.command, str) else " ".join(params.command)
        if result.timed_out:
            raise TransientApplyError(f"`{shown}` timed out after {timeout}s")
        if result.returncode != 0:
            tail = (result.stderr or result.stdout).strip().splitlines()
            reason = tail[-1] if tail else "no output"
            message = f"`{shown}` exited {result.returncode}: {reason}"
            if result.returncode in params.transient_exit_codes:
                raise TransientApplyError(message)
            raise StructuralApplyError(message)
        return f"ran `{shown}` (exit 0, {result.elapsed_ms}ms)"


HANDLERS: dict[ActionKind, KindHandler] = {
    h.kind: h
    for h in (
        PackageSetHandler(),
        UserAccountHandler(),
        DatabaseSchemaHandler(),
        RenderedFileHandler(),
        DirectoryHandler(),
        ServiceStateHandler(),
        ShellStepHandler(),
    )
}


def handler_for(action: Action) -> KindHandler:
    return HANDLERS[action.kind]


def effective_checks(action: Action, values: dict[str, str]) -> list:
    """The explicit precondition, or else the kind's implied one."""
    if action.precondition is not None:
        return list(action.precondition)
    return handler_for(action).implied_checks(action, values)
