"""
Local filesystem store — stat, hash, and atomic writes with ownership.

Writes go to a temp file in the destination directory, get their mode
and owner applied, then replace the target in one rename, so a crash
never leaves a half-written config behind.
"""

from __future__ import annotations

import grp
import hashlib
import logging
import os
import pwd
import shutil
import stat as stat_mod
import tempfile
from pathlib import Path

from hostconverge.adapters.base import FileStore
from hostconverge.core.errors import ProbeUnavailable, StructuralApplyError
from hostconverge.core.models.facts import FileStatus

logger = logging.getLogger(__name__)

_CHUNK = 1024 * 1024


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _owner_name(uid: int) -> str:
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return str(uid)


def _group_name(gid: int) -> str:
    try:
        return grp.getgrgid(gid).gr_name
    except KeyError:
        return str(gid)


class LocalFileStore(FileStore):
    """File and directory operations on the local host."""

    @property
    def name(self) -> str:
        return "filesystem"

    def is_available(self) -> bool:
        return True  # filesystem is always available

    def stat(self, path: str) -> FileStatus:
        target = Path(path)
        try:
            st = target.stat()
        except FileNotFoundError:
            return FileStatus(exists=False)
        except NotADirectoryError:
            return FileStatus(exists=False)
        except OSError as e:
            raise ProbeUnavailable(f"Cannot stat {path}: {e}") from e

        is_dir = stat_mod.S_ISDIR(st.st_mode)
        digest = None
        if stat_mod.S_ISREG(st.st_mode):
            try:
                digest = _sha256_file(target)
            except OSError as e:
                raise ProbeUnavailable(f"Cannot read {path}: {e}") from e

        return FileStatus(
            exists=True,
            is_dir=is_dir,
            sha256=digest,
            mode=stat_mod.S_IMODE(st.st_mode),
            owner=_owner_name(st.st_uid),
            group=_group_name(st.st_gid),
        )

    def read_bytes(self, path: str) -> bytes | None:
        target = Path(path)
        if not target.is_file():
            return None
        try:
            return target.read_bytes()
        except OSError as e:
            raise StructuralApplyError(f"Cannot read {path}: {e}") from e

    def write(
        self,
        path: str,
        data: bytes,
        mode: int | None = None,
        owner: str | None = None,
        group: str | None = None,
    ) -> None:
        target = Path(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
        except OSError as e:
            raise StructuralApplyError(f"Cannot write {path}: {e}") from e

        tmp = Path(tmp_name)
        if mode is None:
            # mkstemp creates 0600; keep the replaced file's mode instead
            mode = stat_mod.S_IMODE(target.stat().st_mode) if target.exists() else 0o644
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            self._apply_attributes(tmp, mode, owner, group)
            os.replace(tmp, target)
            logger.debug("Wrote %d bytes to %s", len(data), target)
        except StructuralApplyError:
            tmp.unlink(missing_ok=True)
            raise
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise StructuralApplyError(f"Cannot write {path}: {e}") from e

    def make_dir(
        self,
        path: str,
        mode: int | None = None,
        owner: str | None = None,
        group: str | None = None,
    ) -> None:
        target = Path(path)
        try:
            target.mkdir(parents=True, exist_ok=True)
        except FileExistsError as e:
            raise StructuralApplyError(f"{path} exists and is not a directory") from e
        except OSError as e:
            raise StructuralApplyError(f"Cannot create directory {path}: {e}") from e
        self._apply_attributes(target, mode, owner, group)

    def remove(self, path: str) -> None:
        try:
            Path(path).unlink(missing_ok=True)
        except OSError as e:
            raise StructuralApplyError(f"Cannot remove {path}: {e}") from e

    def _apply_attributes(
        self,
        target: Path,
        mode: int | None,
        owner: str | None,
        group: str | None,
    ) -> None:
        try:
            if mode is not None:
                os.chmod(target, mode)
            if owner or group:
                shutil.chown(target, user=owner, group=group)
        except LookupError as e:
            raise StructuralApplyError(f"Unknown owner/group for {target}: {e}") from e
        except OSError as e:
            raise StructuralApplyError(f"Cannot set attributes on {target}: {e}") from e
