"""
Backup manager: checksummed snapshots of the destination store.

Intent:
    Take a verifiable recovery point before any destructive write and put it
    back on demand. A backup captures the store's committed state (not the
    incoming dataset) as canonical JSON, fingerprinted with SHA-256.

Behavior:
    - `create_backup()` fails closed: any problem raises `BackupError`.
    - `restore()` recomputes the checksum first and raises
      `BackupIntegrityError` on mismatch without touching the store; otherwise
      it replaces every collection in one store transaction (clear children
      first, insert parents first).
    - `list_backups()` returns ids newest first. Ids are UTC timestamps whose
      lexical order is their chronological order.
"""
from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from .checksum import canonical_bytes, checksum
from .domain import CLEAR_ORDER, FORWARD_ORDER, Dataset, EntityKind, MigrationBackup
from .ports import (
    BackupError,
    BackupIntegrityError,
    BackupStorage,
    MigrationError,
    MigrationStore,
    StoreError,
)

logger = logging.getLogger("classboard.migration.backup")

BACKUP_ID_FORMAT = "%Y-%m-%dT%H-%M-%S-%fZ"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def list_backup_ids(storage: BackupStorage) -> List[str]:
    """Backup ids, newest first."""
    return sorted(storage.list_keys(), reverse=True)


def snapshot_store(store: MigrationStore) -> Dataset:
    """Read every collection of the store into a Dataset.

    A store without schema has nothing to back up; that is an explicit check,
    not an exception path.
    """
    if not store.is_initialized():
        return Dataset()
    return Dataset.from_collections({kind: store.read_all(kind) for kind in EntityKind})


def serialize_snapshot(dataset: Dataset) -> bytes:
    return canonical_bytes(dataset.to_dict())


def replace_contents(store: MigrationStore, dataset: Dataset) -> Dict[str, int]:
    """Swap the store's contents for `dataset` inside one transaction."""
    if not store.is_initialized():
        store.ensure_schema()
    with store.transaction() as tx:
        for kind in CLEAR_ORDER:
            tx.delete_all(kind)
        for kind in FORWARD_ORDER:
            rows = dataset.collection(kind)
            if rows:
                tx.insert_many(kind, rows)
    return dataset.counts()


class BackupManager:
    """Create, verify, list and restore store snapshots.

    Parameters:
        store: Destination store to snapshot and restore.
        storage: Durable key-value medium for backups.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        store: MigrationStore,
        storage: BackupStorage,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.storage = storage
        self._clock = clock
        self._id_lock = threading.Lock()
        self._last_moment: Optional[datetime] = None

    def _next_backup_id(self) -> str:
        with self._id_lock:
            moment = self._clock().astimezone(timezone.utc)
            if self._last_moment is not None and moment <= self._last_moment:
                moment = self._last_moment + timedelta(microseconds=1)
            key = moment.strftime(BACKUP_ID_FORMAT)
            while self.storage.exists(key):
                moment += timedelta(microseconds=1)
                key = moment.strftime(BACKUP_ID_FORMAT)
            self._last_moment = moment
            return key

    def create_backup(self) -> MigrationBackup:
        try:
            data = serialize_snapshot(snapshot_store(self.store))
            digest = checksum(data)
            key = self._next_backup_id()
            self.storage.put(key, data, digest)
        except BackupError:
            raise
        except Exception as exc:
            raise BackupError(f"backup creation failed: {exc}") from exc
        logger.info("backup created id=%s bytes=%s", key, len(data))
        return MigrationBackup(timestamp=key, data=data, checksum=digest)

    def load(self, backup_id: str) -> Tuple[MigrationBackup, Dataset]:
        """Fetch a backup and verify its checksum before decoding it."""
        stored = self.storage.get(backup_id)
        actual = checksum(stored.data)
        if actual != stored.checksum:
            logger.error("backup checksum mismatch id=%s", backup_id)
            raise BackupIntegrityError(f"backup {backup_id} failed checksum verification")
        try:
            dataset = Dataset.from_dict(json.loads(stored.data.decode("utf-8")))
        except (ValueError, TypeError, AttributeError) as exc:
            raise BackupError(f"backup {backup_id} could not be decoded") from exc
        return MigrationBackup(timestamp=stored.key, data=stored.data, checksum=stored.checksum), dataset

    def verify(self, backup_id: str) -> MigrationBackup:
        backup, _ = self.load(backup_id)
        return backup

    def restore(self, backup_id: str) -> Dict[str, int]:
        """Replace the store's contents with a verified backup; returns restored counts."""
        _, dataset = self.load(backup_id)
        try:
            counts = replace_contents(self.store, dataset)
        except MigrationError:
            raise
        except Exception as exc:
            raise StoreError(f"restore of backup {backup_id} failed: {exc}") from exc
        logger.info("backup restored id=%s", backup_id)
        return counts

    def list_backups(self) -> List[str]:
        return list_backup_ids(self.storage)


__all__ = [
    "BACKUP_ID_FORMAT",
    "BackupManager",
    "list_backup_ids",
    "replace_contents",
    "serialize_snapshot",
    "snapshot_store",
]
