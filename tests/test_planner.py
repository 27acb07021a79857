"""
Tests for the planner — execute/skip decisions against a fact snapshot.
"""

from hostconverge.core.engine.graph import build_graph
from hostconverge.core.engine.planner import plan, required_queries
from hostconverge.core.engine.probe import FactProbe
from hostconverge.core.models.action import Action
from hostconverge.core.models.facts import FactQuery, FactSnapshot, ServiceStatus
from hostconverge.core.redaction import MASK, Redactor


def _action(identifier: str, kind: str, params: dict, **extra) -> Action:
    return Action.model_validate({"id": identifier, "kind": kind, "params": params, **extra})


def _plan(registry, actions, values=None):
    values = values or {}
    graph = build_graph(actions)
    snapshot = FactProbe(registry).snapshot(required_queries(graph, values))
    return plan(graph, snapshot, values)


class TestDecisions:
    def test_unmet_precondition_executes(self, registry):
        result = _plan(registry, [_action("caddy", "package_set", {"packages": ["caddy"]})])
        entry = result.entry("caddy")
        assert entry.execute
        assert entry.reason == "needs change: package caddy installed"
        assert not result.is_converged

    def test_met_precondition_skips(self, host, registry):
        host.packages["caddy"] = "2.7.6"
        result = _plan(registry, [_action("caddy", "package_set", {"packages": ["caddy"]})])
        entry = result.entry("caddy")
        assert not entry.execute
        assert entry.reason.startswith("satisfied:")
        assert result.is_converged

    def test_unavailable_fact_executes(self, host, registry):
        host.set_unavailable("service")
        result = _plan(registry, [_action("caddy", "service_state", {"name": "caddy"})])
        entry = result.entry("caddy")
        assert entry.execute
        assert entry.reason.startswith("cannot confirm:")

    def test_unprobed_fact_executes(self):
        graph = build_graph([_action("caddy", "package_set", {"packages": ["caddy"]})])
        result = plan(graph, FactSnapshot(), {})
        assert result.entry("caddy").execute
        assert "(not probed)" in result.entry("caddy").reason

    def test_false_beats_unavailable(self, host, registry):
        host.set_unavailable("service")
        result = _plan(registry, [
            _action("caddy", "package_set", {"packages": ["caddy"]},
                    precondition=[
                        {"fact": "package", "name": "caddy"},
                        {"fact": "service", "name": "caddy"},
                    ]),
        ])
        assert result.entry("caddy").reason.startswith("needs change:")

    def test_shell_step_without_guard_always_runs(self, registry):
        result = _plan(registry, [_action("migrate", "shell_step", {"command": "migrate.sh"})])
        entry = result.entry("migrate")
        assert entry.execute
        assert entry.reason == "no precondition, always runs"

    def test_shell_step_creates(self, host, registry):
        host.add_file("/etc/koha/sites/library/koha-conf.xml", "<xml/>")
        result = _plan(registry, [
            _action("koha", "shell_step", {
                "command": "koha-create --create-db library",
                "creates": "/etc/koha/sites/library/koha-conf.xml",
            }),
        ])
        assert not result.entry("koha").execute

    def test_shell_step_unless(self, host, registry):
        host.set_command("a2query -m rewrite", returncode=1)
        result = _plan(registry, [
            _action("mods", "shell_step", {
                "command": "a2enmod rewrite", "unless": "a2query -m rewrite",
            }),
        ])
        assert result.entry("mods").execute
        assert host.count("command.run", "a2query -m rewrite") == 1
        assert host.count("command.run", "a2enmod rewrite") == 0

    def test_explicit_precondition_replaces_implied(self, host, registry):
        # caddy is not installed as a package, but the check command passes
        actions = [
            _action("caddy", "package_set", {"packages": ["caddy"]},
                    precondition=[{"fact": "command", "command": "caddy version"}]),
        ]
        graph = build_graph(actions)
        assert required_queries(graph, {}) == {FactQuery("command", "caddy version")}
        result = _plan(registry, actions)
        assert not result.entry("caddy").execute
        assert host.count("package.query") == 0

    def test_unrenderable_template_executes(self, registry, tmp_path):
        missing = tmp_path / "missing.tpl"
        actions = [_action("conf", "rendered_file", {"template": str(missing), "dest": "/etc/x"})]
        assert required_queries(build_graph(actions), {}) == set()
        entry = _plan(registry, actions).entry("conf")
        assert entry.execute
        assert entry.reason.startswith("cannot evaluate precondition:")

    def test_rendered_file_compares_content(self, host, registry):
        host.add_file("/etc/caddy/Caddyfile", "example.org {\n}\n")
        action = _action("caddyfile", "rendered_file", {
            "content": "{domain} {\n}\n", "dest": "/etc/caddy/Caddyfile",
        })
        assert not _plan(registry, [action], {"domain": "example.org"}).entry("caddyfile").execute
        assert _plan(registry, [action], {"domain": "example.net"}).entry("caddyfile").execute


class TestPlanShape:
    def test_dependents_of_executing_actions_are_not_forced(self, host, registry):
        host.services["caddy"] = ServiceStatus(active=True, enabled=True, loaded=True)
        result = _plan(registry, [
            _action("pkg", "package_set", {"packages": ["caddy"]}),
            _action("svc", "service_state", {"name": "caddy"}, depends_on=["pkg"]),
        ])
        assert result.entry("pkg").execute
        assert not result.entry("svc").execute
        assert [e.identifier for e in result.to_execute] == ["pkg"]

    def test_running_service_scheduled_when_trigger_executes(self, host, registry):
        host.services["caddy"] = ServiceStatus(active=True, enabled=True, loaded=True)
        result = _plan(registry, [
            _action("conf", "rendered_file", {"dest": "/etc/caddy/Caddyfile", "content": "x"}),
            _action("svc", "service_state", {"name": "caddy", "restart_on": ["conf"]},
                    depends_on=["conf"]),
        ])
        entry = result.entry("svc")
        assert entry.execute
        assert entry.restart_only
        assert entry.restart_on == ("conf",)
        assert entry.reason.startswith("restart if 'conf' applied; satisfied:")

    def test_unchanged_trigger_schedules_nothing(self, host, registry):
        host.add_file("/etc/caddy/Caddyfile", "x")
        host.services["caddy"] = ServiceStatus(active=True, enabled=True, loaded=True)
        result = _plan(registry, [
            _action("conf", "rendered_file", {"dest": "/etc/caddy/Caddyfile", "content": "x"}),
            _action("svc", "service_state", {"name": "caddy", "restart_on": ["conf"]},
                    depends_on=["conf"]),
        ])
        assert result.is_converged
        assert result.entry("svc").restart_on == ()

    def test_stopped_service_with_trigger_is_not_restart_only(self, registry):
        result = _plan(registry, [
            _action("conf", "rendered_file", {"dest": "/etc/caddy/Caddyfile", "content": "x"}),
            _action("svc", "service_state", {"name": "caddy", "restart_on": ["conf"]},
                    depends_on=["conf"]),
        ])
        entry = result.entry("svc")
        assert entry.execute
        assert not entry.restart_only
        assert entry.reason.startswith("needs change:")

    def test_entries_follow_graph_order(self, registry):
        result = _plan(registry, [
            _action("svc", "service_state", {"name": "caddy"}, depends_on=["pkg"]),
            _action("pkg", "package_set", {"packages": ["caddy"]}),
        ])
        assert [e.identifier for e in result.entries] == ["pkg", "svc"]
        assert result.entry("svc").depends_on == ("pkg",)

    def test_deterministic(self, host, registry):
        host.packages["git"] = "2.43"
        actions = [
            _action("web", "service_state", {"name": "caddy"}, depends_on=["pkg", "git"]),
            _action("pkg", "package_set", {"packages": ["caddy"]}),
            _action("git", "package_set", {"packages": ["git"]}),
        ]
        graph = build_graph(actions)
        snapshot = FactProbe(registry).snapshot(required_queries(graph, {}))
        first = plan(graph, snapshot, {})
        second = plan(graph, snapshot, {})
        assert first.entries == second.entries
        assert first.to_dict() == second.to_dict()

    def test_to_dict(self, registry):
        data = _plan(registry, [_action("caddy", "package_set", {"packages": ["caddy"]})]).to_dict()
        assert data["converged"] is False
        assert data["execute"] == 1
        assert data["entries"][0]["id"] == "caddy"
        assert data["entries"][0]["checks"] == ["package caddy installed"]

    def test_render_lines_redacted(self, host, registry):
        host.set_command("check-token s3cret-token", returncode=1)
        result = _plan(registry, [
            _action("deploy", "shell_step", {
                "command": "deploy", "unless": "check-token s3cret-token",
            }),
        ])
        lines = result.render_lines(Redactor(["s3cret-token"]))
        assert "s3cret-token" not in "\n".join(lines)
        assert MASK in lines[0]
        assert lines[-1] == "Plan: 1 to execute, 0 already satisfied"

        data = result.to_dict(Redactor(["s3cret-token"]))
        assert "s3cret-token" not in str(data)
