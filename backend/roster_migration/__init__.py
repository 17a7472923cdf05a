"""Roster migration engine: validated, backed-up, verifiable dataset migrations.

Re-export the public surface for the CLI and tests.
"""

from .audit import AuditLogger, JsonlAuditSink
from .backup import BackupManager
from .backup_storage import FileBackupStorage, InMemoryBackupStorage
from .checksum import canonical_bytes, checksum
from .config import MigrationConfig, load_migration_config
from .domain import (
    CLEAR_ORDER,
    FORWARD_ORDER,
    Dataset,
    EntityKind,
    MigrationBackup,
    MigrationPhase,
    MigrationResult,
    Recovery,
    ValidationError,
)
from .executor import MigrationExecutor, MigrationState, VerificationReport
from .ports import (
    BackupError,
    BackupIntegrityError,
    BackupNotFoundError,
    MigrationError,
    MigrationInProgressError,
    StoreConstraintError,
    StoreError,
)
from .repo_memory import InMemoryMigrationStore
from .selftest import run_self_test
from .validation import validate_dataset

__all__ = [
    "AuditLogger",
    "BackupError",
    "BackupIntegrityError",
    "BackupManager",
    "BackupNotFoundError",
    "CLEAR_ORDER",
    "Dataset",
    "EntityKind",
    "FORWARD_ORDER",
    "FileBackupStorage",
    "InMemoryBackupStorage",
    "InMemoryMigrationStore",
    "JsonlAuditSink",
    "MigrationBackup",
    "MigrationConfig",
    "MigrationError",
    "MigrationExecutor",
    "MigrationInProgressError",
    "MigrationPhase",
    "MigrationResult",
    "MigrationState",
    "Recovery",
    "StoreConstraintError",
    "StoreError",
    "ValidationError",
    "VerificationReport",
    "canonical_bytes",
    "checksum",
    "load_migration_config",
    "run_self_test",
    "validate_dataset",
]
