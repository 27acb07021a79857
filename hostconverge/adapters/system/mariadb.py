"""
MariaDB / MySQL administration adapter.

Talks to the server through the ``mysql`` command-line client. SQL is
always fed on stdin so passwords never show up in the process list.
By default it connects as root over the local unix socket, which is how
a freshly installed mariadb-server on Ubuntu authenticates root.
"""

from __future__ import annotations

import logging
import re
import shutil

from hostconverge.adapters.base import CommandRunner, DatabaseAdmin
from hostconverge.adapters.shell.command import ShellCommandRunner, raise_for_result
from hostconverge.core.errors import ProbeUnavailable, StructuralApplyError
from hostconverge.core.models.facts import DatabaseObjectStatus

logger = logging.getLogger(__name__)

_UNREACHABLE = (
    r"Can't connect to (?:local )?(?:MySQL|MariaDB)? ?server",
    r"ERROR 2002",
    r"ERROR 2003",
    r"ERROR 2013",
)
_TRANSIENT = _UNREACHABLE + (r"Lock wait timeout exceeded", r"Deadlock found")

_WORD = re.compile(r"^\w+$")
_PRIVILEGE = re.compile(r"^[A-Z][A-Z ]*$")


def quote_identifier(name: str) -> str:
    return "`" + name.replace("`", "``") + "`"


def quote_string(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


class MariaDBAdmin(DatabaseAdmin):
    def __init__(
        self,
        runner: CommandRunner | None = None,
        user: str = "root",
        defaults_file: str | None = None,
        socket: str | None = None,
    ):
        self._runner = runner or ShellCommandRunner()
        self._user = user
        self._defaults_file = defaults_file
        self._socket = socket

    @property
    def name(self) -> str:
        return "mariadb"

    @property
    def endpoint(self) -> str:
        return self._socket or "localhost"

    def is_available(self) -> bool:
        return shutil.which("mysql") is not None

    def _argv(self) -> list[str]:
        argv = ["mysql"]
        if self._defaults_file:
            argv.append(f"--defaults-extra-file={self._defaults_file}")
        argv += ["--batch", "--skip-column-names", "-u", self._user]
        if self._socket:
            argv.append(f"--socket={self._socket}")
        return argv

    def _scalar(self, sql: str, timeout: float | None) -> str:
        result = self._runner.run(self._argv(), timeout=timeout or 10, input=sql)
        if result.timed_out:
            raise ProbeUnavailable("mysql query timed out")
        if result.returncode == 127:
            raise ProbeUnavailable("mysql client not found")
        if not result.ok:
            raise ProbeUnavailable(f"mysql: {result.stderr.strip()}")
        return result.stdout.strip()

    def _execute(self, sql: str, what: str, timeout: float | None) -> None:
        result = self._runner.run(self._argv(), timeout=timeout, input=sql)
        raise_for_result(result, what, _TRANSIENT)

    # ── Queries ──────────────────────────────────────────────────

    def database_exists(self, name: str, timeout: float | None = None) -> DatabaseObjectStatus:
        count = self._scalar(
            "SELECT COUNT(*) FROM information_schema.SCHEMATA "
            f"WHERE SCHEMA_NAME = {quote_string(name)};\n",
            timeout,
        )
        return DatabaseObjectStatus(exists=count not in ("", "0"))

    def user_exists(self, user: str, host: str, timeout: float | None = None) -> DatabaseObjectStatus:
        count = self._scalar(
            "SELECT COUNT(*) FROM mysql.user "
            f"WHERE User = {quote_string(user)} AND Host = {quote_string(host)};\n",
            timeout,
        )
        return DatabaseObjectStatus(exists=count not in ("", "0"))

    # ── Changes ──────────────────────────────────────────────────

    def create_database(
        self, name: str, charset: str, collation: str, timeout: float | None = None
    ) -> None:
        if not (_WORD.match(charset) and _WORD.match(collation)):
            raise StructuralApplyError(f"Invalid charset/collation: {charset}/{collation}")
        logger.info("Creating database %s", name)
        self._execute(
            f"CREATE DATABASE IF NOT EXISTS {quote_identifier(name)} "
            f"CHARACTER SET {charset} COLLATE {collation};\n",
            f"create database {name}",
            timeout,
        )

    def create_user(
        self, user: str, host: str, password: str, timeout: float | None = None
    ) -> None:
        logger.info("Creating database user %s@%s", user, host)
        self._execute(
            f"CREATE USER IF NOT EXISTS {quote_string(user)}@{quote_string(host)} "
            f"IDENTIFIED BY {quote_string(password)};\n",
            f"create user {user}@{host}",
            timeout,
        )

    def grant(
        self,
        privileges: list[str],
        database: str,
        user: str,
        host: str,
        timeout: float | None = None,
    ) -> None:
        privs = [p.strip().upper() for p in privileges]
        bad = [p for p in privs if not _PRIVILEGE.match(p)]
        if bad:
            raise StructuralApplyError(f"Invalid privilege(s): {', '.join(bad)}")
        logger.info("Granting %s on %s to %s@%s", ", ".join(privs), database, user, host)
        self._execute(
            f"GRANT {', '.join(privs)} ON {quote_identifier(database)}.* "
            f"TO {quote_string(user)}@{quote_string(host)};\nFLUSH PRIVILEGES;\n",
            f"grant on {database} to {user}@{host}",
            timeout,
        )
