"""
hostconverge — CLI entrypoint.

Usage:
    hostconverge --help
    hostconverge plan
    hostconverge apply --dry-run
    hostconverge -c samples/library-lms/converge.yml check

Exit codes:
    plan     0 converged, 2 changes pending, 1 error
    apply    0 success, 1 partial failure / aborted / error
    check    0 valid, 1 invalid
"""

from __future__ import annotations

import json
import os
import signal
import sys
import threading
from pathlib import Path

import click

from hostconverge import __version__
from hostconverge.core.observability.logging_config import setup_logging

_OUTCOME_COLORS = {
    "applied": "green",
    "skipped": "yellow",
    "failed": "red",
    "aborted": "white",
}
_STATUS_COLORS = {"success": "green", "partial_failure": "yellow", "aborted": "red"}


@click.group()
@click.version_option(version=__version__, prog_name="hostconverge")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to converge.yml (default: auto-detect).",
)
@click.option(
    "--set",
    "overrides",
    multiple=True,
    metavar="KEY=VALUE",
    help="Override a substitution value (repeatable).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
    overrides: tuple[str, ...],
) -> None:
    """hostconverge — converge this host to a declared desired state."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None
    ctx.obj["overrides"] = overrides

    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    elif quiet:
        level = "ERROR"
    else:
        level = os.environ.get("HC_LOG_LEVEL", "WARNING")

    setup_logging(
        level=level,
        log_file=os.environ.get("HC_LOG_FILE"),
        log_file_level=os.environ.get("HC_LOG_FILE_LEVEL"),
    )


def _overrides(ctx: click.Context) -> dict[str, str]:
    from hostconverge.core.config.loader import ConfigError, parse_overrides

    try:
        return parse_overrides(ctx.obj.get("overrides", ()))
    except ConfigError as e:
        click.secho(f"❌ {e}", fg="red")
        sys.exit(1)


def _print_plan(result, ctx: click.Context, title: str) -> None:
    plan = result.plan
    document = result.document
    redact = result.redactor.redact

    if not ctx.obj.get("quiet"):
        click.secho(f"\n📋 {title} — {document.name or document.source}", fg="cyan", bold=True)
        click.echo()

    for entry in plan.entries:
        advisory = " (advisory)" if entry.severity.value == "advisory" else ""
        if entry.execute:
            click.secho(f"   → {entry.identifier}", fg="cyan", nl=False)
        else:
            click.secho(f"   ⊘ {entry.identifier}", fg="yellow", nl=False)
        click.echo(f" [{entry.kind.value}]{advisory}")
        if entry.description:
            click.echo(f"     {redact(entry.description)}")
        click.echo(f"     {redact(entry.reason)}")

    unavailable = result.snapshot.unavailable() if result.snapshot else {}
    if unavailable:
        click.echo()
        click.secho(f"   ⚠️  {len(unavailable)} fact(s) could not be probed", fg="yellow")

    click.echo()
    pending = len(plan.to_execute)
    if plan.is_converged:
        click.secho("   ✅ Converged: nothing to do", fg="green", bold=True)
    else:
        click.secho(
            f"   {pending} to execute, {len(plan.entries) - pending} already satisfied",
            bold=True,
        )
    click.echo()


def _fail(result, as_json: bool) -> None:
    """Print a load / graph error and exit 1."""
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        click.secho(f"❌ {result.redactor.redact(result.error)}", fg="red")
    sys.exit(1)


# ── plan ────────────────────────────────────────────────────────


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.option("--mock", is_flag=True, help="Plan against an empty in-memory host.")
@click.pass_context
def plan(ctx: click.Context, as_json: bool, mock: bool) -> None:
    """Show what apply would change. Exit 2 when changes are pending."""
    from hostconverge.core.use_cases.run import plan_run

    result = plan_run(
        config_path=ctx.obj.get("config_path"),
        overrides=_overrides(ctx),
        mock=mock,
    )
    if result.error:
        _fail(result, as_json)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        _print_plan(result, ctx, "[mock] Plan" if mock else "Plan")

    sys.exit(0 if result.plan.is_converged else 2)


# ── apply ───────────────────────────────────────────────────────


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.option("--dry-run", is_flag=True, help="Plan only (same as 'plan').")
@click.option("--mock", is_flag=True, help="Apply to an in-memory host (no real changes).")
@click.option("--parallelism", "-j", type=click.IntRange(min=1), default=None,
              help="Override policy.parallelism.")
@click.option(
    "--on-failure",
    type=click.Choice(["halt_remaining", "continue_independent_branches"]),
    default=None,
    help="Override policy.on_failure.",
)
@click.pass_context
def apply(
    ctx: click.Context,
    as_json: bool,
    dry_run: bool,
    mock: bool,
    parallelism: int | None,
    on_failure: str | None,
) -> None:
    """Converge the host to the document.

    Examples:

        hostconverge apply

        hostconverge apply --dry-run

        hostconverge --set domain=library.example.org apply -j 4
    """
    if dry_run:
        ctx.invoke(plan, as_json=as_json, mock=mock)
        return

    from hostconverge.core.use_cases.run import apply_run

    cancel = threading.Event()
    previous = signal.signal(signal.SIGTERM, lambda *_: cancel.set())
    try:
        result = apply_run(
            config_path=ctx.obj.get("config_path"),
            overrides=_overrides(ctx),
            mock=mock,
            policy_overrides={"parallelism": parallelism, "on_failure": on_failure},
            cancel=cancel,
        )
    finally:
        signal.signal(signal.SIGTERM, previous)

    if result.error:
        _fail(result, as_json)

    report = result.report
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(0 if report.ok else 1)

    document = result.document
    mode_label = "[mock] " if mock else ""
    click.secho(f"\n⚡ {mode_label}Apply — {document.name or document.source}", fg="cyan", bold=True)
    click.echo(f"   Run: {report.run_id}")
    click.echo()

    for record in report.records:
        color = _OUTCOME_COLORS.get(record.outcome.value, "white")
        timing = f" ({record.duration_ms}ms)" if record.duration_ms else ""
        retries = f" [attempts: {record.attempts}]" if record.attempts > 1 else ""
        click.secho(f"   {record.marker} {record.identifier}", fg=color, nl=False)
        click.echo(f"{timing}{retries}")
        if record.detail and (record.outcome.value != "skipped" or ctx.obj.get("verbose")):
            for line in record.detail.splitlines()[:5]:
                click.echo(f"     │ {line}")

    click.echo()
    click.secho(
        f"   Result: {report.status.value} — {report.applied} applied, {report.failed} failed, "
        f"{report.skipped} skipped, {report.aborted} aborted",
        fg=_STATUS_COLORS.get(report.status.value, "white"),
        bold=True,
    )
    if report.halt_reason:
        click.secho(f"   Halted: {report.halt_reason}", fg="red")
    click.echo()

    sys.exit(0 if report.ok else 1)


# ── check ───────────────────────────────────────────────────────


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def check(ctx: click.Context, as_json: bool) -> None:
    """Validate converge.yml without touching the host."""
    from hostconverge.core.use_cases.config_check import check_config

    result = check_config(config_path=ctx.obj.get("config_path"), overrides=_overrides(ctx))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(0 if result.valid else 1)

    if result.valid:
        document = result.document
        click.secho("✅ Document is valid", fg="green", bold=True)
        click.echo(f"   Name: {document.name or '(unnamed)'}")
        click.echo(f"   Actions: {len(document.actions)}")
        click.echo(f"   Values: {len(document.values)} ({len(document.secrets)} secret)")
    else:
        click.secho("❌ Document errors:", fg="red", bold=True)
        for err in result.errors:
            click.echo(f"   • {err}")

    if result.warnings:
        click.echo()
        click.secho("⚠️  Warnings:", fg="yellow")
        for warn in result.warnings:
            click.echo(f"   • {warn}")

    click.echo()
    if not result.valid:
        sys.exit(1)


# ── rollback ────────────────────────────────────────────────────


@cli.command()
@click.argument("identifier")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def rollback(ctx: click.Context, identifier: str, as_json: bool) -> None:
    """Restore the previous content of a rendered_file action."""
    from hostconverge.core.use_cases.rollback import rollback_file

    result = rollback_file(
        identifier,
        config_path=ctx.obj.get("config_path"),
        overrides=_overrides(ctx),
    )

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(1 if result.error else 0)

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(1)

    if result.removed:
        click.secho(f"↩️  Removed {result.dest} (it did not exist before)", fg="green")
    else:
        click.secho(f"↩️  Restored {result.dest}", fg="green")
        click.echo(f"   from backup taken {result.backup.created_at}")


# ── health ──────────────────────────────────────────────────────


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.option("--mock", is_flag=True, help="Check the in-memory host instead.")
@click.pass_context
def health(ctx: click.Context, as_json: bool, mock: bool) -> None:
    """Show whether this host can be converged: adapters, privileges, state dir."""
    from hostconverge.core.config.loader import find_document
    from hostconverge.core.observability.health import check_system_health
    from hostconverge.core.use_cases.run import build_registry

    config_path: Path | None = ctx.obj.get("config_path") or find_document()
    base_dir = config_path.parent.resolve() if config_path else Path.cwd()

    system_health = check_system_health(build_registry(mock), state_dir=base_dir / ".state")

    if as_json:
        click.echo(json.dumps(system_health.to_dict(), indent=2))
        sys.exit(1 if system_health.status == "unhealthy" else 0)

    status_icons = {
        "healthy": ("💚", "green"),
        "degraded": ("🟡", "yellow"),
        "unhealthy": ("🔴", "red"),
        "unknown": ("❔", "white"),
    }
    icon, color = status_icons.get(system_health.status, ("❔", "white"))

    click.echo()
    click.secho(f"{icon} Host Health: {system_health.status.upper()}", fg=color, bold=True)
    click.echo(f"   {system_health.timestamp}")
    click.echo()

    for component in system_health.components:
        c_icon, c_color = status_icons.get(component.status, ("❔", "white"))
        click.secho(f"   {c_icon} {component.name}", fg=c_color, bold=True)
        click.echo(f"      {component.message}")
        if ctx.obj.get("verbose") and component.details:
            for key, val in component.details.items():
                click.echo(f"      {key}: {val}")

    click.echo()
    if system_health.status == "unhealthy":
        sys.exit(1)


if __name__ == "__main__":
    cli()
