"""
Configuration for roster migration runs.

Intent:
    Read the environment once into a frozen dataclass so the CLI and tests
    see the same defaults and validation.

Behavior:
    - DSN: `ROSTER_MIGRATION_DSN`, then `SERVICE_ROLE_DSN`, then `DATABASE_URL`.
      Absent means "no database configured" (None); callers decide.
    - `MIGRATION_BACKUP_DIR` (default `backups`).
    - `MIGRATION_AUDIT_LOG` (default `logs/migration.log`; empty disables the file sink).
    - `MIGRATION_SYSTEM_USER_ID` / `_EMAIL` / `_NAME` override the bootstrap user.
    - Invalid values raise ValueError with the variable name.
"""
from __future__ import annotations

from dataclasses import dataclass
import os
from typing import Optional

from .domain import User
from .validation import is_valid_email

DEFAULT_SYSTEM_USER_ID = "default-teacher-1"
DEFAULT_SYSTEM_USER_EMAIL = "teacher@classboard.com"
DEFAULT_SYSTEM_USER_NAME = "Default Teacher"


@dataclass(frozen=True)
class MigrationConfig:
    dsn: Optional[str] = None
    backup_dir: str = "backups"
    audit_log_path: Optional[str] = "logs/migration.log"
    system_user_id: str = DEFAULT_SYSTEM_USER_ID
    system_user_email: str = DEFAULT_SYSTEM_USER_EMAIL
    system_user_name: str = DEFAULT_SYSTEM_USER_NAME

    def system_user(self) -> User:
        return User(
            id=self.system_user_id,
            email=self.system_user_email,
            name=self.system_user_name,
            role="TEACHER",
        )


def _str_env(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip()
    if not value:
        raise ValueError(f"{name} must not be empty")
    return value


def _dsn_from_env() -> Optional[str]:
    for name in ("ROSTER_MIGRATION_DSN", "SERVICE_ROLE_DSN", "DATABASE_URL"):
        value = (os.getenv(name) or "").strip()
        if value:
            if not value.startswith(("postgresql://", "postgres://")):
                raise ValueError(f"{name} must be a postgresql:// URL")
            return value
    return None


def load_migration_config() -> MigrationConfig:
    """Parse and validate migration settings from environment variables."""
    audit_raw = os.getenv("MIGRATION_AUDIT_LOG")
    if audit_raw is None:
        audit_log_path: Optional[str] = "logs/migration.log"
    else:
        audit_log_path = audit_raw.strip() or None

    email = _str_env("MIGRATION_SYSTEM_USER_EMAIL", DEFAULT_SYSTEM_USER_EMAIL)
    if not is_valid_email(email):
        raise ValueError("MIGRATION_SYSTEM_USER_EMAIL must be a valid email address")

    return MigrationConfig(
        dsn=_dsn_from_env(),
        backup_dir=_str_env("MIGRATION_BACKUP_DIR", "backups"),
        audit_log_path=audit_log_path,
        system_user_id=_str_env("MIGRATION_SYSTEM_USER_ID", DEFAULT_SYSTEM_USER_ID),
        system_user_email=email,
        system_user_name=_str_env("MIGRATION_SYSTEM_USER_NAME", DEFAULT_SYSTEM_USER_NAME),
    )


__all__ = [
    "DEFAULT_SYSTEM_USER_EMAIL",
    "DEFAULT_SYSTEM_USER_ID",
    "DEFAULT_SYSTEM_USER_NAME",
    "MigrationConfig",
    "load_migration_config",
]
