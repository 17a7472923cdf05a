"""
Ports for the roster migration engine: store and backup contracts plus errors.

Intent:
    Keep the executor independent of any database product or durable medium.
    Tests substitute the in-memory implementations; production wires the
    Postgres store and the file-based backup storage.

Design:
    - Protocols: MigrationStore / StoreTransaction, BackupStorage, AuditSink
    - Value type: StoredBackup (what a backup medium hands back)
    - Error taxonomy: MigrationError and its subclasses. Validation problems
      are data (`ValidationError` records), never exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ContextManager, Iterable, List, Mapping, Protocol, Sequence

from .domain import EntityKind


# ----------------------------- Value types ----------------------------------


@dataclass(frozen=True)
class StoredBackup:
    """Raw backup as persisted: key, snapshot bytes and the checksum recorded at write time."""

    key: str
    data: bytes = field(repr=False)
    checksum: str


# ----------------------------- Protocols ------------------------------------


class StoreTransaction(Protocol):
    """Bulk writes inside one open transaction."""

    def delete_all(self, kind: EntityKind) -> int:
        ...

    def insert_many(self, kind: EntityKind, rows: Sequence[Any]) -> int:
        ...


class MigrationStore(Protocol):
    """Transactional destination of a migration.

    Behavior:
        - `transaction()` commits when the block exits normally and rolls back
          (re-raising) when it exits with an exception.
        - `is_initialized()` is an explicit existence check; callers never rely
          on "table does not exist" errors. `ensure_schema()` is idempotent.
        - `read_all`/`count` observe committed state only.
    """

    def is_initialized(self) -> bool:
        ...

    def ensure_schema(self) -> None:
        ...

    def read_all(self, kind: EntityKind) -> List[Any]:
        ...

    def count(self, kind: EntityKind) -> int:
        ...

    def transaction(self) -> ContextManager[StoreTransaction]:
        ...


class BackupStorage(Protocol):
    """Key-value medium for backups, keyed by timestamp string."""

    def put(self, key: str, data: bytes, checksum: str) -> None:
        ...

    def get(self, key: str) -> StoredBackup:
        ...

    def list_keys(self) -> Iterable[str]:
        ...

    def exists(self, key: str) -> bool:
        ...


class AuditSink(Protocol):
    """Receives one structured audit record at a time."""

    def write(self, record: Mapping[str, Any]) -> None:
        ...


# ------------------------------ Errors --------------------------------------


class MigrationError(Exception):
    """Base class for migration engine failures."""


class MigrationInProgressError(MigrationError):
    """Another migration or restore holds the lock; the call did not run."""


class BackupError(MigrationError):
    """Backup could not be created, listed or loaded."""


class BackupNotFoundError(BackupError):
    """No backup exists under the requested id."""


class BackupIntegrityError(BackupError):
    """Stored checksum does not match the backup bytes; restore refused."""


class StoreError(MigrationError):
    """Destination store failed (connectivity, statement, timeout)."""


class StoreConstraintError(StoreError):
    """A write violated a referential or uniqueness constraint."""


__all__ = [
    "AuditSink",
    "BackupError",
    "BackupIntegrityError",
    "BackupNotFoundError",
    "BackupStorage",
    "MigrationError",
    "MigrationInProgressError",
    "MigrationStore",
    "StoreConstraintError",
    "StoreError",
    "StoreTransaction",
    "StoredBackup",
]
