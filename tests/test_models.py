"""
Tests for domain models — actions, facts, policy, run report.
"""

import pytest
from pydantic import ValidationError

from hostconverge.core.models.action import (
    Action,
    ActionKind,
    DatabaseSchemaParams,
    PackageSetParams,
    PackageSpec,
    RenderedFileParams,
    ServiceStateParams,
    Severity,
)
from hostconverge.core.models.facts import (
    CommandCheck,
    DirectoryCheck,
    FactQuery,
    FactSnapshot,
    FileCheck,
    FileStatus,
    PackageCheck,
    PackageStatus,
    ServiceCheck,
    ServiceStatus,
    parse_mode,
    version_at_least,
)
from hostconverge.core.errors import ProbeUnavailable
from hostconverge.core.models.policy import ExecutionPolicy, OnFailure
from hostconverge.core.models.report import (
    ExecutionRecord,
    Outcome,
    RunReport,
    RunStatus,
)


def _action(identifier: str, kind: str, params: dict, **extra) -> Action:
    return Action.model_validate({"id": identifier, "kind": kind, "params": params, **extra})


# ── Package specs ────────────────────────────────────────────────────


class TestPackageSpec:
    def test_plain_name(self):
        spec = PackageSpec.parse("caddy")
        assert spec.name == "caddy"
        assert spec.min_version is None

    def test_min_version(self):
        spec = PackageSpec.parse("php8.3-fpm>=8.3.6")
        assert spec.name == "php8.3-fpm"
        assert spec.min_version == "8.3.6"
        assert str(spec) == "php8.3-fpm>=8.3.6"

    def test_invalid(self):
        with pytest.raises(ValueError):
            PackageSpec.parse("not a package!")

    def test_params_accept_strings_and_mappings(self):
        params = PackageSetParams.model_validate(
            {"packages": ["caddy", {"name": "mariadb-server", "min_version": "10.11"}]}
        )
        assert [p.name for p in params.packages] == ["caddy", "mariadb-server"]
        assert params.packages[1].min_version == "10.11"

    def test_single_string(self):
        params = PackageSetParams.model_validate({"packages": "caddy"})
        assert params.packages[0].name == "caddy"

    def test_empty_rejected(self):
        with pytest.raises(ValidationError):
            PackageSetParams.model_validate({"packages": []})


# ── Kind parameters ──────────────────────────────────────────────────


class TestKindParams:
    def test_rendered_file_needs_one_source(self):
        with pytest.raises(ValidationError):
            RenderedFileParams(dest="/etc/x", template="a", content="b")
        with pytest.raises(ValidationError):
            RenderedFileParams(dest="/etc/x")

    def test_rendered_file_mode_and_values(self):
        params = RenderedFileParams.model_validate(
            {"dest": "/etc/x", "content": "hi", "mode": "0600", "values": {"port": 8000}}
        )
        assert params.mode == 0o600
        assert params.values == {"port": "8000"}

    def test_database_user_needs_password(self):
        with pytest.raises(ValidationError):
            DatabaseSchemaParams(database="moodle", user="moodle")

    def test_database_defaults(self):
        params = DatabaseSchemaParams(database="moodle")
        assert params.charset == "utf8mb4"
        assert params.privileges == ["ALL PRIVILEGES"]

    def test_service_restart_on(self):
        params = ServiceStateParams.model_validate({"name": "caddy", "restart_on": "caddyfile"})
        assert params.restart_on == ("caddyfile",)
        with pytest.raises(ValidationError):
            ServiceStateParams(name="caddy", state="stopped", restart_on=("caddyfile",))


# ── Actions ──────────────────────────────────────────────────────────


class TestAction:
    def test_params_typed_by_kind(self):
        action = _action("caddy", "package_set", {"packages": ["caddy"]})
        assert action.identifier == "caddy"
        assert action.kind == ActionKind.PACKAGE_SET
        assert isinstance(action.params, PackageSetParams)
        assert action.severity == Severity.REQUIRED

    def test_params_must_match_kind(self):
        with pytest.raises(ValidationError):
            _action("x", "service_state", {"packages": ["caddy"]})

    def test_unknown_kind(self):
        with pytest.raises(ValidationError):
            _action("x", "cron_job", {})

    def test_empty_identifier(self):
        with pytest.raises(ValidationError):
            _action("", "package_set", {"packages": ["caddy"]})

    def test_restart_triggers(self):
        action = _action("svc", "service_state", {"name": "caddy", "restart_on": ["conf"]},
                         depends_on=["conf", "pkg"])
        assert action.restart_triggers == ("conf",)
        assert _action("pkg", "package_set", {"packages": ["caddy"]}).restart_triggers == ()

    def test_restart_trigger_must_be_a_dependency(self):
        with pytest.raises(ValidationError, match="must also be listed in depends_on"):
            _action("svc", "service_state", {"name": "caddy", "restart_on": ["conf"]})

    def test_depends_on_string(self):
        action = _action("b", "package_set", {"packages": ["caddy"]}, depends_on="a")
        assert action.depends_on == ("a",)

    def test_frozen(self):
        action = _action("caddy", "package_set", {"packages": ["caddy"]})
        with pytest.raises(ValidationError):
            action.description = "changed"

    def test_explicit_precondition_parsed(self):
        action = _action(
            "caddy",
            "package_set",
            {"packages": ["caddy"]},
            precondition=[{"fact": "command", "command": ["caddy", "version"]}],
        )
        assert len(action.precondition) == 1
        check = action.precondition[0]
        assert isinstance(check, CommandCheck)
        assert check.command == "caddy version"

    def test_database_password_always_sensitive(self):
        action = _action(
            "db", "database_schema",
            {"database": "koha", "user": "koha", "password": "s3cret"},
        )
        assert "password" in action.sensitive_params
        assert action.sensitive_values() == {"s3cret"}

    def test_declared_sensitive_mapping(self):
        action = _action(
            "step", "shell_step",
            {"command": "deploy", "env": {"TOKEN": "abc123", "EMPTY": ""}},
            sensitive=["env"],
        )
        assert action.sensitive_values() == {"abc123"}

    def test_label(self):
        action = _action("caddy", "package_set", {"packages": ["caddy"]})
        assert action.label() == "package_set caddy"


# ── Facts and checks ─────────────────────────────────────────────────


class TestParseMode:
    def test_forms(self):
        assert parse_mode("0644") == 0o644
        assert parse_mode("644") == 0o644
        assert parse_mode("0o755") == 0o755
        assert parse_mode(0o600) == 0o600
        assert parse_mode(None) is None

    def test_invalid(self):
        with pytest.raises(ValueError):
            parse_mode("rw-r--r--")
        with pytest.raises(ValueError):
            parse_mode("17777")


class TestVersionAtLeast:
    def test_debian_revision_ignored(self):
        assert version_at_least("2.7.6-1ubuntu1", "2.7")

    def test_older(self):
        assert not version_at_least("2.6.9", "2.7")

    def test_epoch_wins(self):
        assert version_at_least("1:1.0", "2.0")

    def test_padding(self):
        assert version_at_least("2.7", "2.7.0")

    def test_missing(self):
        assert not version_at_least(None, "1.0")


class TestChecks:
    def test_package_check(self):
        check = PackageCheck(name="caddy", min_version="2.7")
        assert check.query() == FactQuery("package", "caddy")
        assert check.holds(PackageStatus(installed=True, version="2.7.6-1"))
        assert not check.holds(PackageStatus(installed=True, version="2.6.0"))
        assert not check.holds(PackageStatus(installed=False))

    def test_file_check(self):
        check = FileCheck(path="/etc/x", sha256="abc", mode="0644", owner="root")
        good = FileStatus(exists=True, sha256="abc", mode=0o644, owner="root", group="root")
        assert check.holds(good)
        assert not check.holds(good.model_copy(update={"sha256": "def"}))
        assert not check.holds(good.model_copy(update={"mode": 0o600}))
        assert not check.holds(good.model_copy(update={"is_dir": True}))
        assert not check.holds(FileStatus(exists=False))

    def test_directory_check(self):
        check = DirectoryCheck(path="/srv/sites", owner="librarian")
        assert check.holds(FileStatus(exists=True, is_dir=True, owner="librarian"))
        assert not check.holds(FileStatus(exists=True, is_dir=False, owner="librarian"))

    def test_service_check(self):
        check = ServiceCheck(name="caddy", active=True, enabled=True)
        assert check.holds(ServiceStatus(active=True, enabled=True, loaded=True))
        assert not check.holds(ServiceStatus(active=True, enabled=False, loaded=True))
        assert check.describe() == "service caddy active+enabled"

    def test_command_check(self):
        check = CommandCheck(command="test -e /x")
        assert check.query() == FactQuery("command", "test -e /x")


class TestFactSnapshot:
    def test_lookup(self):
        present = FactQuery("package", "caddy")
        broken = FactQuery("service", "caddy")
        snapshot = FactSnapshot({
            present: PackageStatus(installed=True, version="2.7"),
            broken: ProbeUnavailable("systemd down"),
        })
        assert snapshot.lookup(present).installed
        assert isinstance(snapshot.lookup(broken), ProbeUnavailable)
        assert snapshot.lookup(FactQuery("user", "nobody")) is None
        assert snapshot.unavailable() == {broken: "systemd down"}

    def test_to_dict(self):
        snapshot = FactSnapshot({
            FactQuery("package", "caddy"): PackageStatus(installed=False),
            FactQuery("service", "caddy"): ProbeUnavailable("no bus"),
        })
        data = snapshot.to_dict()
        assert data["package:caddy"] == {"installed": False, "version": None}
        assert data["service:caddy"] == {"unavailable": "no bus"}

    def test_query_str(self):
        assert str(FactQuery("database_user", "koha", "localhost")) == "database_user:koha@localhost"


# ── Policy ───────────────────────────────────────────────────────────


class TestExecutionPolicy:
    def test_defaults(self):
        policy = ExecutionPolicy()
        assert policy.on_failure == OnFailure.HALT_REMAINING
        assert policy.parallelism == 1
        assert not policy.continues_on_failure

    def test_invalid_parallelism(self):
        with pytest.raises(ValidationError):
            ExecutionPolicy(parallelism=0)

    def test_continue_mode(self):
        policy = ExecutionPolicy(on_failure="continue_independent_branches")
        assert policy.continues_on_failure


# ── Run report ───────────────────────────────────────────────────────


def _record(identifier: str, outcome: Outcome, detail: str = "") -> ExecutionRecord:
    return ExecutionRecord(
        identifier=identifier, kind=ActionKind.PACKAGE_SET, outcome=outcome, detail=detail
    )


class TestRunReport:
    def test_success_when_everything_applied(self):
        report = RunReport(records=[
            _record("a", Outcome.APPLIED),
            _record("b", Outcome.SKIPPED),
        ])
        assert report.status == RunStatus.SUCCESS
        assert report.ok
        assert report.executed == 1

    def test_nothing_to_do_is_success(self):
        report = RunReport(records=[_record("a", Outcome.SKIPPED)])
        assert report.status == RunStatus.SUCCESS

    def test_partial_failure(self):
        report = RunReport(records=[
            _record("a", Outcome.APPLIED),
            _record("b", Outcome.FAILED, "boom"),
            _record("c", Outcome.ABORTED),
        ])
        assert report.status == RunStatus.PARTIAL_FAILURE
        assert (report.applied, report.failed, report.aborted) == (1, 1, 1)

    def test_halted_is_aborted(self):
        report = RunReport(halted=True, halt_reason="run cancelled", records=[
            _record("a", Outcome.APPLIED),
        ])
        assert report.status == RunStatus.ABORTED
        assert not report.ok

    def test_record_for(self):
        report = RunReport(records=[_record("a", Outcome.APPLIED)])
        assert report.record_for("a").outcome == Outcome.APPLIED
        assert report.record_for("missing") is None

    def test_to_dict(self):
        report = RunReport(run_id="r1", records=[
            _record("a", Outcome.APPLIED, "installed caddy"),
            _record("b", Outcome.SKIPPED),
        ])
        data = report.to_dict()
        assert data["status"] == "success"
        assert data["totals"]["applied"] == 1
        assert data["totals"]["skipped"] == 1
        assert [r["identifier"] for r in data["records"]] == ["a", "b"]
        assert data["records"][0]["outcome"] == "applied"

    def test_summary_lines(self):
        report = RunReport(records=[
            _record("a", Outcome.APPLIED, "installed caddy"),
            _record("b", Outcome.FAILED, "boom"),
        ])
        lines = report.summary_lines()
        assert lines[0].startswith("✓ a [applied]")
        assert "installed caddy" in lines[0]
        assert lines[1].startswith("✗ b [failed]")
        assert lines[-1].startswith("Result: partial_failure")
