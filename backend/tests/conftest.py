"""
Pytest configuration for backend tests.

Why: Tests import `backend.*` from the repository root and must not pick up
a developer's migration settings (DSNs, backup directories) from the shell.
"""
import os
import sys
from pathlib import Path

import pytest

# Load .env only when the live-DB suite is explicitly enabled.
try:
    from dotenv import load_dotenv  # type: ignore
    if os.getenv("RUN_LIVE_DB", "0") == "1":
        load_dotenv()
except Exception:
    pass

REPO_ROOT = Path(__file__).resolve().parents[2]
TESTS_DIR = REPO_ROOT / "backend" / "tests"
for p in (str(REPO_ROOT), str(TESTS_DIR)):
    if p not in sys.path:
        sys.path.insert(0, p)

from backend.roster_migration.audit import AuditLogger  # noqa: E402
from backend.roster_migration.backup import BackupManager  # noqa: E402
from backend.roster_migration.backup_storage import InMemoryBackupStorage  # noqa: E402
from backend.roster_migration.executor import MigrationExecutor  # noqa: E402
from backend.roster_migration.repo_memory import InMemoryMigrationStore  # noqa: E402
from backend.roster_migration.selftest import sample_document  # noqa: E402

_MIGRATION_ENV = (
    "ROSTER_MIGRATION_DSN",
    "SERVICE_ROLE_DSN",
    "DATABASE_URL",
    "MIGRATION_BACKUP_DIR",
    "MIGRATION_AUDIT_LOG",
    "MIGRATION_SYSTEM_USER_ID",
    "MIGRATION_SYSTEM_USER_EMAIL",
    "MIGRATION_SYSTEM_USER_NAME",
)


@pytest.fixture(autouse=True)
def _clear_migration_env(monkeypatch: pytest.MonkeyPatch):
    """Start every test from default migration settings.

    Behavior:
        Removes DSN, backup and system-user overrides; tests that need them
        set them explicitly via `monkeypatch.setenv`.
    """
    for var in _MIGRATION_ENV:
        monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture
def store() -> InMemoryMigrationStore:
    return InMemoryMigrationStore()


@pytest.fixture
def backup_storage() -> InMemoryBackupStorage:
    return InMemoryBackupStorage()


@pytest.fixture
def audit() -> AuditLogger:
    return AuditLogger()


@pytest.fixture
def executor(store, backup_storage, audit) -> MigrationExecutor:
    return MigrationExecutor(store, BackupManager(store, backup_storage), audit=audit)


@pytest.fixture
def sample_doc() -> dict:
    return sample_document()
