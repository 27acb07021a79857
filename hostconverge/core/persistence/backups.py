"""
Backup store — prior contents of files the engine overwrote.

Before a rendered_file replaces an existing file, the old bytes and
attributes are saved under ``.state/backups/`` and indexed in
``index.json``. Nothing is ever restored automatically; the
``rollback`` command reads the newest backup for an action and puts
it back.

Backups may hold secrets (database passwords in config files), so
they are written 0600.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_BACKUP_DIR = ".state/backups"
INDEX_FILE = "index.json"


class BackupRecord(BaseModel):
    action_id: str
    dest: str
    existed: bool                      # False: the file was created, rollback removes it
    backup: str | None = None          # path of the saved copy
    mode: int | None = None
    owner: str | None = None
    group: str | None = None
    run_id: str = ""
    created_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())


class BackupStore:
    def __init__(self, root: Path):
        self._root = root
        self._lock = threading.Lock()

    @classmethod
    def for_document(cls, base_dir: Path) -> BackupStore:
        return cls(base_dir / DEFAULT_BACKUP_DIR)

    @property
    def root(self) -> Path:
        return self._root

    @property
    def index_path(self) -> Path:
        return self._root / INDEX_FILE

    # ── Write ────────────────────────────────────────────────────

    def save(
        self,
        action_id: str,
        dest: str,
        data: bytes | None,
        mode: int | None = None,
        owner: str | None = None,
        group: str | None = None,
        run_id: str = "",
    ) -> BackupRecord:
        """Record the state of ``dest`` before it is overwritten.

        ``data`` is None when the file did not exist yet.
        """
        record = BackupRecord(
            action_id=action_id,
            dest=dest,
            existed=data is not None,
            mode=mode,
            owner=owner,
            group=group,
            run_id=run_id,
        )
        with self._lock:
            if data is not None:
                ts = time.strftime("%Y%m%d_%H%M%S")
                folder = self._root / action_id
                folder.mkdir(parents=True, exist_ok=True)
                copy = folder / f"{Path(dest).name}.bak.{ts}.{time.monotonic_ns() % 1_000_000:06d}"
                copy.write_bytes(data)
                os.chmod(copy, 0o600)
                record = record.model_copy(update={"backup": str(copy)})
                logger.info("Backed up %s → %s", dest, copy)
            records = self._load()
            records.append(record)
            self._store(records)
        return record

    def forget(self, record: BackupRecord) -> None:
        """Drop a record after it has been restored."""
        with self._lock:
            records = [r for r in self._load() if r != record]
            self._store(records)

    # ── Read ─────────────────────────────────────────────────────

    def records(self, action_id: str | None = None) -> list[BackupRecord]:
        """Index entries, oldest first."""
        records = self._load()
        if action_id is not None:
            records = [r for r in records if r.action_id == action_id]
        return records

    def latest(self, action_id: str) -> BackupRecord | None:
        records = self.records(action_id)
        return records[-1] if records else None

    def read(self, record: BackupRecord) -> bytes | None:
        if record.backup is None:
            return None
        return Path(record.backup).read_bytes()

    # ── Internal ─────────────────────────────────────────────────

    def _load(self) -> list[BackupRecord]:
        if not self.index_path.is_file():
            return []
        try:
            raw = json.loads(self.index_path.read_text(encoding="utf-8"))
            return [BackupRecord.model_validate(r) for r in raw]
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning("Corrupt backup index %s: %s", self.index_path, e)
            return []

    def _store(self, records: list[BackupRecord]) -> None:
        self._root.mkdir(parents=True, exist_ok=True)
        content = json.dumps([r.model_dump(mode="json") for r in records], indent=2) + "\n"
        fd, tmp_path = tempfile.mkstemp(dir=self._root, prefix=".index_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            Path(tmp_path).replace(self.index_path)
        except OSError:
            Path(tmp_path).unlink(missing_ok=True)
            raise
