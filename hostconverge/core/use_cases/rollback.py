"""
Rollback use case — restore the previous content of a rendered file.

Rollback is never automatic. It is an explicit operator command that
takes the newest backup recorded for one rendered_file action and puts
it back (or removes the file, if the engine created it). The restored
backup is dropped from the index, so repeated rollbacks walk further
back in history.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from hostconverge.adapters.registry import AdapterRegistry
from hostconverge.core.config.loader import ConfigError, load_document
from hostconverge.core.errors import ActionApplyError
from hostconverge.core.models.action import ActionKind
from hostconverge.core.persistence.audit import AuditEntry, AuditWriter
from hostconverge.core.persistence.backups import BackupRecord, BackupStore

logger = logging.getLogger(__name__)


@dataclass
class RollbackResult:
    identifier: str = ""
    dest: str = ""
    restored: bool = False
    removed: bool = False
    backup: BackupRecord | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        if self.error:
            return {"identifier": self.identifier, "error": self.error}
        return {
            "identifier": self.identifier,
            "dest": self.dest,
            "restored": self.restored,
            "removed": self.removed,
            "backup_created_at": self.backup.created_at if self.backup else None,
            "backup_run_id": self.backup.run_id if self.backup else None,
        }


def rollback_file(
    identifier: str,
    config_path: Path | None = None,
    overrides: dict[str, str] | None = None,
    registry: AdapterRegistry | None = None,
) -> RollbackResult:
    result = RollbackResult(identifier=identifier)

    try:
        document = load_document(config_path, overrides)
    except ConfigError as e:
        result.error = str(e)
        return result

    action = document.get_action(identifier)
    if action is None:
        result.error = f"No action '{identifier}' in {document.source}"
        return result
    if action.kind != ActionKind.RENDERED_FILE:
        result.error = f"'{identifier}' is a {action.kind.value}; only rendered_file supports rollback"
        return result

    store = BackupStore.for_document(document.base_dir)
    record = store.latest(identifier)
    if record is None:
        result.error = f"No backup recorded for '{identifier}'"
        return result
    result.backup = record
    result.dest = record.dest

    files = (registry or AdapterRegistry.for_host()).files
    try:
        if record.existed:
            files.write(record.dest, store.read(record), mode=record.mode,
                        owner=record.owner, group=record.group)
            result.restored = True
            logger.info("Restored %s from %s", record.dest, record.backup)
        else:
            files.remove(record.dest)
            result.removed = True
            logger.info("Removed %s (created by run %s)", record.dest, record.run_id)
    except (ActionApplyError, OSError) as e:
        result.error = f"Rollback of {record.dest} failed: {e}"
        return result

    store.forget(record)
    AuditWriter(base_dir=document.base_dir).write(
        AuditEntry(
            run_id=record.run_id,
            operation="rollback",
            document=str(document.source or ""),
            status="success",
            applied=[identifier],
            context={"dest": record.dest, "removed": result.removed},
        )
    )
    return result
