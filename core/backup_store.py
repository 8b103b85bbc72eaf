"""
Archive Backup Store

Flat backup files named `<archive file name>_<md5(absolute path)[:8]>_<epoch ms>.backup`.
A backup is tied to the path it was taken from, not to the archive's
contents, so the newest backup for a path is the one that wins.
"""

import hashlib
import logging
import os
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from core.exceptions import AsarHookError, BackupMismatchError
from shared.constants import BACKUP_SUFFIX

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def hash_path(path: PathLike) -> str:
    """First 8 hex chars of the MD5 of the absolute, normalized path string"""
    normalized = os.path.abspath(os.fspath(path))
    return hashlib.md5(normalized.encode("utf-8")).hexdigest()[:8]


@dataclass
class BackupRecord:
    original_name: str
    content_hash8: str
    created_at_ms: int
    storage_path: Path

    @property
    def file_name(self) -> str:
        return self.storage_path.name

    @classmethod
    def from_file(cls, path: Path) -> "BackupRecord":
        """Parse a backup file name.

        Raises:
            AsarHookError: the name does not follow the backup naming scheme
        """
        if not path.name.endswith(BACKUP_SUFFIX):
            raise AsarHookError("Invalid backup file format", path=str(path))
        parts = path.name[: -len(BACKUP_SUFFIX)].split("_")
        if len(parts) < 3 or not parts[-1].isdigit() or len(parts[-2]) != 8:
            raise AsarHookError("Invalid backup file format", path=str(path))
        return cls(
            original_name="_".join(parts[:-2]),
            content_hash8=parts[-2],
            created_at_ms=int(parts[-1]),
            storage_path=path,
        )

    def to_dict(self) -> Dict[str, Any]:
        size = self.storage_path.stat().st_size if self.storage_path.exists() else 0
        return {
            "name": self.file_name,
            "path": str(self.storage_path),
            "originalName": self.original_name,
            "hash": self.content_hash8,
            "timestamp": self.created_at_ms,
            "size": size,
        }


class BackupStore:
    """Create, list, restore and delete archive backups in one directory"""

    def __init__(self, backups_dir: PathLike):
        self.backups_dir = Path(backups_dir)

    def _ensure_dir(self) -> None:
        self.backups_dir.mkdir(parents=True, exist_ok=True)

    def create(self, archive_path: PathLike, now_ms: Optional[int] = None) -> BackupRecord:
        archive_path = Path(archive_path)
        self._ensure_dir()
        created = now_ms if now_ms is not None else int(time.time() * 1000)
        name = f"{archive_path.name}_{hash_path(archive_path)}_{created}{BACKUP_SUFFIX}"
        target = self.backups_dir / name
        shutil.copy2(archive_path, target)
        logger.info(f"Backup created: {name}")
        return BackupRecord(
            original_name=archive_path.name,
            content_hash8=hash_path(archive_path),
            created_at_ms=created,
            storage_path=target,
        )

    def list(self, archive_path: Optional[PathLike] = None) -> List[BackupRecord]:
        """Parseable backups, newest first; only those taken from archive_path when given"""
        if not self.backups_dir.is_dir():
            return []
        records = []
        for path in self.backups_dir.glob(f"*{BACKUP_SUFFIX}"):
            try:
                records.append(BackupRecord.from_file(path))
            except AsarHookError:
                logger.debug(f"Skipping unrecognised file in backups directory: {path.name}")
        if archive_path is not None:
            wanted = hash_path(archive_path)
            records = [r for r in records if r.content_hash8 == wanted]
        records.sort(key=lambda r: r.created_at_ms, reverse=True)
        return records

    def latest_for(self, archive_path: PathLike) -> Optional[BackupRecord]:
        records = self.list(archive_path)
        return records[0] if records else None

    def _resolve(self, backup: PathLike) -> Path:
        path = Path(backup)
        if not path.is_absolute() and path.parent == Path("."):
            path = self.backups_dir / path
        return path

    def restore(self, backup: PathLike, archive_path: PathLike) -> BackupRecord:
        """Copy a backup over archive_path.

        Raises:
            BackupMismatchError: the backup was taken from another path
        """
        record = BackupRecord.from_file(self._resolve(backup))
        if not record.storage_path.is_file():
            raise AsarHookError(f"Backup file not found: {record.file_name}", path=str(record.storage_path))
        if record.content_hash8 != hash_path(archive_path):
            raise BackupMismatchError("Backup does not match target ASAR file", path=str(archive_path))
        shutil.copy2(record.storage_path, archive_path)
        logger.info(f"Restored {archive_path} from {record.file_name}")
        return record

    def delete(self, backup: PathLike) -> BackupRecord:
        record = BackupRecord.from_file(self._resolve(backup))
        if record.storage_path.parent.resolve() != self.backups_dir.resolve():
            raise AsarHookError("Backup is outside the backups directory", path=str(record.storage_path))
        record.storage_path.unlink()
        logger.info(f"Backup deleted: {record.file_name}")
        return record
