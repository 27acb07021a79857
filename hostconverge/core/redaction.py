"""
Secret redaction for every textual output.

A Redactor knows the concrete secret values of one document (declared
``secrets``, parameters flagged ``sensitive``, database passwords) and
masks them wherever they appear: plan lines, record details, JSON
reports, and, through RedactingFilter, log records and their tracebacks.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from typing import Any

MASK = "********"


class Redactor:
    def __init__(self, secrets: Iterable[str] = ()):
        self._secrets: tuple[str, ...] = ()
        self.add(secrets)

    def add(self, secrets: Iterable[str]) -> None:
        merged = set(self._secrets) | {s for s in secrets if s}
        # Longest first, so a secret containing another is masked whole
        self._secrets = tuple(sorted(merged, key=lambda s: (-len(s), s)))

    def __bool__(self) -> bool:
        return bool(self._secrets)

    def __len__(self) -> int:
        return len(self._secrets)

    def redact(self, text: str) -> str:
        for secret in self._secrets:
            if secret in text:
                text = text.replace(secret, MASK)
        return text

    def redact_obj(self, obj: Any) -> Any:
        """Redact strings inside nested dicts / lists (JSON payloads).

        String keys are redacted too: fact snapshots are keyed by query,
        and a command query can carry a secret.
        """
        if isinstance(obj, str):
            return self.redact(obj)
        if isinstance(obj, dict):
            return {
                (self.redact(k) if isinstance(k, str) else k): self.redact_obj(v)
                for k, v in obj.items()
            }
        if isinstance(obj, (list, tuple)):
            return [self.redact_obj(v) for v in obj]
        return obj


class RedactingFilter(logging.Filter):
    """Rewrites log records so no registered secret reaches a handler."""

    def __init__(self) -> None:
        super().__init__()
        self._lock = threading.Lock()
        self._redactor = Redactor()

    def add(self, secrets: Iterable[str]) -> None:
        with self._lock:
            self._redactor.add(secrets)

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._redactor:
            return True
        message = record.getMessage()
        redacted = self._redactor.redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None

        # Formatters append the traceback after the message: render it
        # here, redacted, and drop exc_info so it is not rendered again
        if record.exc_info:
            if not record.exc_text:
                record.exc_text = _traceback_formatter.formatException(record.exc_info)
            record.exc_info = None
        if record.exc_text:
            record.exc_text = self._redactor.redact(record.exc_text)
        if record.stack_info:
            record.stack_info = self._redactor.redact(record.stack_info)
        return True


_traceback_formatter = logging.Formatter()


_log_filter = RedactingFilter()


def log_filter() -> RedactingFilter:
    """The process-wide filter attached to every logging handler."""
    return _log_filter


def register_secrets(secrets: Iterable[str]) -> Redactor:
    """Mask ``secrets`` in logs from now on; return a Redactor for output."""
    secrets = list(secrets)
    _log_filter.add(secrets)
    return Redactor(secrets)
