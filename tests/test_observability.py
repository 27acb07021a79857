"""
Tests for redaction, logging setup and health checks.
"""

import json
import logging
import sys

from click.testing import CliRunner

from hostconverge.adapters.mock import FakeHost
from hostconverge.adapters.registry import AdapterRegistry
from hostconverge.core.observability.health import (
    ComponentHealth,
    SystemHealth,
    check_adapters,
    check_privileges,
    check_state_dir,
    check_system_health,
)
from hostconverge.core.observability.logging_config import setup_logging
from hostconverge.core.redaction import MASK, RedactingFilter, Redactor, log_filter, register_secrets
from hostconverge.main import cli


# ── Redaction ───────────────────────────────────────────────────────


class TestRedactor:
    def test_masks_every_occurrence(self):
        redactor = Redactor(["hunter2"])
        assert redactor.redact("pw=hunter2 again hunter2") == f"pw={MASK} again {MASK}"

    def test_longest_secret_first(self):
        redactor = Redactor(["abc", "abcdef"])
        assert redactor.redact("token abcdef") == f"token {MASK}"

    def test_empty_values_ignored(self):
        redactor = Redactor(["", "x1"])
        assert len(redactor) == 1
        assert not Redactor([""])

    def test_redact_obj(self):
        redactor = Redactor(["hunter2"])
        data = {"a": ["hunter2", 3, {"b": "x hunter2"}], "c": None}
        assert redactor.redact_obj(data) == {"a": [MASK, 3, {"b": f"x {MASK}"}], "c": None}

    def test_redact_obj_keys(self):
        redactor = Redactor(["hunter2"])
        data = {"command:check -phunter2": {"exit_code": 1}, 3: "x"}
        assert redactor.redact_obj(data) == {f"command:check -p{MASK}": {"exit_code": 1}, 3: "x"}

    def test_no_secrets_is_identity(self):
        assert Redactor().redact("nothing to hide") == "nothing to hide"


class TestRedactingFilter:
    def _record(self, msg, *args):
        return logging.LogRecord("t", logging.INFO, __file__, 1, msg, args, None)

    def test_rewrites_formatted_message(self):
        flt = RedactingFilter()
        flt.add(["hunter2"])
        record = self._record("connecting with %s", "hunter2")
        assert flt.filter(record)
        assert record.getMessage() == f"connecting with {MASK}"

    def test_untouched_without_secret(self):
        flt = RedactingFilter()
        flt.add(["hunter2"])
        record = self._record("plain %s", "text")
        flt.filter(record)
        assert record.args == ("text",)

    def test_traceback_redacted(self):
        flt = RedactingFilter()
        flt.add(["s3cr3t-pw"])
        try:
            raise RuntimeError("write failed for payload s3cr3t-pw")
        except RuntimeError:
            record = logging.LogRecord("t", logging.ERROR, __file__, 1, "apply failed", (),
                                       sys.exc_info())
        record.stack_info = "Stack (most recent call last):\n  s3cr3t-pw"

        assert flt.filter(record)
        output = logging.Formatter().format(record)
        assert record.exc_info is None
        assert "RuntimeError: write failed for payload " + MASK in output
        assert "s3cr3t-pw" not in output

    def test_register_secrets_feeds_global_filter(self):
        redactor = register_secrets(["obs-global-secret"])
        assert redactor.redact("obs-global-secret") == MASK
        record = self._record("leak obs-global-secret")
        log_filter().filter(record)
        assert "obs-global-secret" not in record.getMessage()


# ── Logging ─────────────────────────────────────────────────────────


class TestSetupLogging:
    def test_console_level(self, restore_logging):
        setup_logging(level="INFO")
        assert restore_logging.level == logging.INFO
        assert len(restore_logging.handlers) == 1

    def test_invalid_level_falls_back(self, restore_logging):
        setup_logging(level="LOUD")
        assert restore_logging.level == logging.WARNING

    def test_file_output_is_redacted(self, restore_logging, tmp_path):
        log_file = tmp_path / "hc.log"
        setup_logging(level="WARNING", log_file=str(log_file), log_file_level="DEBUG")
        register_secrets(["file-log-secret"])

        assert restore_logging.level == logging.DEBUG
        logging.getLogger("hostconverge.test").debug("password is %s", "file-log-secret")
        for handler in restore_logging.handlers:
            handler.flush()

        content = log_file.read_text()
        assert "password is" in content
        assert "file-log-secret" not in content
        assert MASK in content

    def test_logged_exception_is_redacted(self, restore_logging, tmp_path):
        log_file = tmp_path / "hc.log"
        setup_logging(level="WARNING", log_file=str(log_file), log_file_level="DEBUG")
        register_secrets(["trace-log-secret"])

        try:
            raise RuntimeError("write failed for payload trace-log-secret")
        except RuntimeError:
            logging.getLogger("hostconverge.test").exception("Unexpected error applying creds")
        for handler in restore_logging.handlers:
            handler.flush()

        content = log_file.read_text()
        assert "Unexpected error applying creds" in content
        assert f"RuntimeError: write failed for payload {MASK}" in content
        assert "trace-log-secret" not in content


# ── Health ──────────────────────────────────────────────────────────


class TestHealth:
    def test_fake_host_healthy(self, registry, tmp_path):
        health = check_system_health(registry, state_dir=tmp_path / ".state")
        assert health.status == "healthy"
        assert [c.name for c in health.components] == ["adapters", "privileges", "state_dir"]

    def test_missing_adapter_degraded(self, host):
        host.command_runner.is_available = lambda: False
        component = check_adapters(AdapterRegistry.fake(host))
        assert component.status == "degraded"
        assert "commands" in component.message

    def test_mock_privileges(self, registry):
        assert check_privileges(registry).status == "healthy"

    def test_state_dir_nearest_ancestor(self, tmp_path):
        assert check_state_dir(tmp_path / "a" / "b" / ".state").status == "healthy"

    def test_aggregation(self):
        health = SystemHealth()
        health.add(ComponentHealth(name="a", status="healthy"))
        health.add(ComponentHealth(name="b", status="degraded"))
        assert health.status == "degraded"
        health.add(ComponentHealth(name="c", status="unhealthy"))
        assert health.status == "unhealthy"
        assert health.to_dict()["components"][2]["name"] == "c"

    def test_cli_health_json(self, write_document, restore_logging):
        path = write_document("""
            version: 1
            actions: []
        """)
        result = CliRunner().invoke(cli, ["-c", str(path), "health", "--mock", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["status"] == "healthy"
        assert {c["name"] for c in data["components"]} == {"adapters", "privileges", "state_dir"}

    def test_registry_status(self):
        status = AdapterRegistry.fake(FakeHost()).adapter_status()
        assert set(status) == {"packages", "services", "databases", "files", "accounts", "commands"}
        assert all(s["available"] for s in status.values())
