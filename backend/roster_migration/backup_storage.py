"""
Durable media for migration backups.

Both implementations are append-only: a key is written once and never
overwritten. They store the checksum exactly as handed in; verifying it is
the backup manager's job.

File layout (`FileBackupStorage`):
    <directory>/backup-<key>.json  ->  {"timestamp", "checksum", "data"}
    `data` is the snapshot text (UTF-8). Files are written to a temporary
    name first and renamed into place so a crash never leaves half a backup.
"""
from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Tuple

from .ports import BackupError, BackupNotFoundError, StoredBackup

logger = logging.getLogger("classboard.migration.backup_storage")

_KEY_RE = re.compile(r"^[0-9A-Za-z._-]+$")
_PREFIX = "backup-"
_SUFFIX = ".json"


def _check_key(key: str) -> None:
    if not isinstance(key, str) or not _KEY_RE.match(key):
        raise BackupError(f"invalid backup id: {key!r}")


class InMemoryBackupStorage:
    """Dict-backed `BackupStorage` for tests and the self-test harness."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: Dict[str, Tuple[bytes, str]] = {}

    def put(self, key: str, data: bytes, checksum: str) -> None:
        _check_key(key)
        with self._lock:
            if key in self._items:
                raise BackupError(f"backup {key} already exists")
            self._items[key] = (bytes(data), checksum)

    def get(self, key: str) -> StoredBackup:
        with self._lock:
            item = self._items.get(key)
        if item is None:
            raise BackupNotFoundError(f"backup {key} not found")
        data, checksum = item
        return StoredBackup(key=key, data=data, checksum=checksum)

    def list_keys(self) -> List[str]:
        with self._lock:
            return list(self._items)

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self._items

    def tamper(self, key: str, *, data: bytes | None = None, checksum: str | None = None) -> None:
        """Overwrite stored bytes or checksum in place (integrity tests only)."""
        with self._lock:
            old_data, old_checksum = self._items[key]
            self._items[key] = (
                old_data if data is None else data,
                old_checksum if checksum is None else checksum,
            )


class FileBackupStorage:
    """Filesystem `BackupStorage`: one JSON document per backup."""

    def __init__(self, directory: str | os.PathLike) -> None:
        self.directory = Path(directory)

    def path_for(self, key: str) -> Path:
        _check_key(key)
        return self.directory / f"{_PREFIX}{key}{_SUFFIX}"

    def put(self, key: str, data: bytes, checksum: str) -> None:
        path = self.path_for(key)
        try:
            text = bytes(data).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise BackupError("backup snapshot must be UTF-8 text") from exc
        payload = json.dumps({"timestamp": key, "checksum": checksum, "data": text}, ensure_ascii=False)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            if path.exists():
                raise BackupError(f"backup {key} already exists")
            fd, tmp_name = tempfile.mkstemp(prefix=".tmp-", suffix=_SUFFIX, dir=self.directory)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(payload)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                try:
                    os.unlink(tmp_name)
                except FileNotFoundError:
                    pass
                raise
        except OSError as exc:
            raise BackupError(f"could not write backup {key}: {exc}") from exc
        logger.debug("backup written key=%s bytes=%s", key, len(data))

    def get(self, key: str) -> StoredBackup:
        path = self.path_for(key)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise BackupNotFoundError(f"backup {key} not found") from None
        except OSError as exc:
            raise BackupError(f"could not read backup {key}: {exc}") from exc
        try:
            doc = json.loads(raw)
            text = doc["data"]
            checksum = doc["checksum"]
        except (ValueError, KeyError, TypeError) as exc:
            raise BackupError(f"backup {key} is malformed") from exc
        if not isinstance(text, str) or not isinstance(checksum, str):
            raise BackupError(f"backup {key} is malformed")
        return StoredBackup(key=key, data=text.encode("utf-8"), checksum=checksum)

    def list_keys(self) -> List[str]:
        if not self.directory.is_dir():
            return []
        keys = []
        for entry in self.directory.iterdir():
            name = entry.name
            if entry.is_file() and name.startswith(_PREFIX) and name.endswith(_SUFFIX):
                keys.append(name[len(_PREFIX) : -len(_SUFFIX)])
        return keys

    def exists(self, key: str) -> bool:
        return self.path_for(key).is_file()


__all__ = ["FileBackupStorage", "InMemoryBackupStorage"]
