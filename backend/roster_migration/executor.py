"""
Migration executor: validate, back up, apply, verify, recover.

Intent:
    Apply one complete dataset to the destination store atomically and leave
    the store either fully migrated or in its pre-migration state, with a
    result that says which phase ended the run and which recovery fired.

State machine:
    IDLE -> VALIDATING -> ABORTED_VALIDATION
                       -> BACKING_UP -> ABORTED_BACKUP
                                     -> APPLYING -> ABORTED_APPLY (store rolled back)
                                                 -> POST_VERIFYING -> ABORTED_POST_VERIFY (restored)
                                                                   -> COMMITTED

Behavior:
    - Validation and backup failures leave the store untouched.
    - Apply runs in one store transaction: clear in `CLEAR_ORDER`, recreate the
      system user, insert in `FORWARD_ORDER`. Any exception rolls it back.
    - Post-verification re-checks references and row counts on the committed
      state; a failure restores the backup taken for this run.
    - One migration or rollback per process at a time; a concurrent call
      raises `MigrationInProgressError` immediately.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .audit import AuditLogger
from .backup import BackupManager, snapshot_store
from .config import MigrationConfig
from .domain import (
    CLEAR_ORDER,
    FORWARD_ORDER,
    Dataset,
    EntityKind,
    MigrationBackup,
    MigrationPhase,
    MigrationResult,
    Recovery,
    User,
    ValidationError,
)
from .ports import MigrationInProgressError, MigrationStore
from .validation import check_references, validate_dataset

logger = logging.getLogger("classboard.migration.executor")

# Held for the whole of a migration or rollback.
_MIGRATION_LOCK = threading.Lock()


class MigrationState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    BACKING_UP = "backing_up"
    APPLYING = "applying"
    POST_VERIFYING = "post_verifying"
    COMMITTED = "committed"
    ABORTED_VALIDATION = "aborted_validation"
    ABORTED_BACKUP = "aborted_backup"
    ABORTED_APPLY = "aborted_apply"
    ABORTED_POST_VERIFY = "aborted_post_verify"

    @property
    def terminal(self) -> bool:
        return not TRANSITIONS[self]


TRANSITIONS: Dict[MigrationState, Tuple[MigrationState, ...]] = {
    MigrationState.IDLE: (MigrationState.VALIDATING,),
    MigrationState.VALIDATING: (MigrationState.ABORTED_VALIDATION, MigrationState.BACKING_UP),
    MigrationState.BACKING_UP: (MigrationState.ABORTED_BACKUP, MigrationState.APPLYING),
    MigrationState.APPLYING: (MigrationState.ABORTED_APPLY, MigrationState.POST_VERIFYING),
    MigrationState.POST_VERIFYING: (MigrationState.ABORTED_POST_VERIFY, MigrationState.COMMITTED),
    MigrationState.COMMITTED: (),
    MigrationState.ABORTED_VALIDATION: (),
    MigrationState.ABORTED_BACKUP: (),
    MigrationState.ABORTED_APPLY: (),
    MigrationState.ABORTED_POST_VERIFY: (),
}


@dataclass(frozen=True)
class VerificationReport:
    """Integrity report of the persisted state (`validate_migration`)."""

    ok: bool
    initialized: bool
    counts: Dict[str, int] = field(default_factory=dict)
    errors: Tuple[ValidationError, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "initialized": self.initialized,
            "counts": dict(self.counts),
            "errors": [e.to_dict() for e in self.errors],
        }


def is_migration_running() -> bool:
    return _MIGRATION_LOCK.locked()


class MigrationExecutor:
    """Orchestrates one migration per call against an injected store.

    Parameters:
        store: Transactional destination (`MigrationStore`).
        backups: Backup manager bound to the same store.
        audit: Audit trail; a private in-memory one is used when omitted.
        system_user: Bootstrap user recreated on every apply.
        clock: Monotonic clock for durations.
    """

    def __init__(
        self,
        store: MigrationStore,
        backups: BackupManager,
        *,
        audit: Optional[AuditLogger] = None,
        system_user: Optional[User] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if backups.store is not store:
            raise ValueError("backup manager must be bound to the executor's store")
        self.store = store
        self.backups = backups
        self.audit = audit if audit is not None else AuditLogger()
        self.system_user = system_user if system_user is not None else MigrationConfig().system_user()
        self._clock = clock
        self.state = MigrationState.IDLE

    # ------------------------------------------------------------------ helpers

    def _transition(self, target: MigrationState, **fields: Any) -> None:
        if target not in TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal migration transition {self.state.value} -> {target.value}")
        previous, self.state = self.state, target
        self.audit.log("phase transition", source=previous.value, target=target.value, **fields)

    def _acquire(self, operation: str) -> None:
        if not _MIGRATION_LOCK.acquire(blocking=False):
            self.audit.log("operation rejected", operation=operation, reason="migration already in progress")
            raise MigrationInProgressError("migration already in progress")

    def _finish(self, started: float, result_fields: Dict[str, Any]) -> MigrationResult:
        result = MigrationResult(duration_seconds=self._clock() - started, **result_fields)
        self.audit.log(
            "migration summary",
            success=result.success,
            phase=result.phase,
            recovery=result.recovery,
            counts=result.counts,
            error_count=len(result.errors),
            duration_seconds=round(result.duration_seconds, 6),
            backup_id=result.backup_id,
        )
        log = logger.info if result.success else logger.error
        log("migration finished success=%s phase=%s recovery=%s", result.success, result.phase.value, result.recovery.value)
        return result

    # --------------------------------------------------------------- operations

    def migrate_all_data(self, dataset: Dataset) -> MigrationResult:
        """Run one migration; raises `MigrationInProgressError` when busy."""
        self._acquire("migrate")
        try:
            self.state = MigrationState.IDLE
            return self._migrate(dataset)
        finally:
            _MIGRATION_LOCK.release()

    def _migrate(self, dataset: Dataset) -> MigrationResult:
        started = self._clock()
        self.audit.log("migration started", input_counts=dataset.counts())

        self._transition(MigrationState.VALIDATING)
        errors = validate_dataset(dataset, system_user_id=self.system_user.id)
        if errors:
            self._transition(MigrationState.ABORTED_VALIDATION, error_count=len(errors))
            return self._finish(started, dict(
                success=False,
                phase=MigrationPhase.VALIDATION,
                recovery=Recovery.NONE,
                message=f"Validation failed with {len(errors)} error(s); store untouched",
                errors=tuple(errors),
            ))

        self._transition(MigrationState.BACKING_UP)
        try:
            backup = self.backups.create_backup()
        except Exception as exc:
            logger.exception("backup failed")
            self._transition(MigrationState.ABORTED_BACKUP, error=str(exc))
            return self._finish(started, dict(
                success=False,
                phase=MigrationPhase.BACKUP,
                recovery=Recovery.NONE,
                message=f"Backup failed; store untouched: {exc}",
            ))

        self._transition(MigrationState.APPLYING, backup_id=backup.backup_id)
        try:
            counts = self._apply(dataset)
        except Exception as exc:
            logger.exception("apply failed; transaction rolled back")
            self._transition(MigrationState.ABORTED_APPLY, error=str(exc))
            return self._finish(started, dict(
                success=False,
                phase=MigrationPhase.APPLY,
                recovery=Recovery.AUTO_ROLLBACK,
                message=f"Apply failed and was rolled back: {exc}",
                backup_id=backup.backup_id,
            ))

        self._transition(MigrationState.POST_VERIFYING, counts=counts)
        problems = self._post_verify(counts)
        if problems:
            return self._recover(started, backup, problems)

        self._transition(MigrationState.COMMITTED)
        return self._finish(started, dict(
            success=True,
            phase=MigrationPhase.COMMITTED,
            recovery=Recovery.NONE,
            message="Migration committed",
            counts=counts,
            backup_id=backup.backup_id,
        ))

    def _apply(self, dataset: Dataset) -> Dict[str, int]:
        if not self.store.is_initialized():
            logger.info("store has no schema yet; creating it")
            self.store.ensure_schema()
        with self.store.transaction() as tx:
            for kind in CLEAR_ORDER:
                removed = tx.delete_all(kind)
                logger.debug("cleared %s rows=%s", kind.collection, removed)
            tx.insert_many(EntityKind.USER, [self.system_user])
            for kind in FORWARD_ORDER:
                rows = dataset.collection(kind)
                if rows:
                    tx.insert_many(kind, rows)
                logger.debug("staged %s rows=%s", kind.collection, len(rows))
        return dataset.counts()

    def _post_verify(self, counts: Dict[str, int]) -> List[ValidationError]:
        try:
            persisted = snapshot_store(self.store)
        except Exception as exc:
            logger.exception("post-verification could not read the store")
            return [ValidationError(entity="store", entity_id="", field="", message=f"Read failed: {exc}")]

        problems = list(check_references(persisted))
        actual = persisted.counts()
        for kind in FORWARD_ORDER:
            expected = counts.get(kind.collection, 0)
            if kind is EntityKind.USER:
                expected += 1
            found = actual.get(kind.collection, 0)
            if found != expected:
                problems.append(ValidationError(
                    entity=kind.value,
                    entity_id="",
                    field="count",
                    message=f"Expected {expected} persisted rows, found {found}",
                ))
        if self.system_user.id not in persisted.ids(EntityKind.USER):
            problems.append(ValidationError(
                entity=EntityKind.USER.value,
                entity_id=self.system_user.id or "",
                field="id",
                message="System user missing after apply",
            ))
        return problems

    def _recover(self, started: float, backup: MigrationBackup, problems: List[ValidationError]) -> MigrationResult:
        logger.error("post-verification failed with %s problem(s); restoring backup %s", len(problems), backup.backup_id)
        try:
            self.backups.restore(backup.backup_id)
        except Exception as exc:
            logger.exception("restore after failed post-verification failed")
            self._transition(MigrationState.ABORTED_POST_VERIFY, error_count=len(problems), restore_error=str(exc))
            return self._finish(started, dict(
                success=False,
                phase=MigrationPhase.POST_VERIFY,
                recovery=Recovery.RESTORE_FAILED,
                message=(
                    f"Post-verification failed and restoring backup {backup.backup_id} failed: {exc}; "
                    "manual recovery required"
                ),
                errors=tuple(problems),
                backup_id=backup.backup_id,
            ))
        self._transition(MigrationState.ABORTED_POST_VERIFY, error_count=len(problems))
        return self._finish(started, dict(
            success=False,
            phase=MigrationPhase.POST_VERIFY,
            recovery=Recovery.RESTORED_FROM_BACKUP,
            message=f"Post-verification failed; store restored from backup {backup.backup_id}",
            errors=tuple(problems),
            backup_id=backup.backup_id,
        ))

    def rollback(self, backup_id: str) -> Dict[str, int]:
        """Restore a named backup (operator action); takes the migration lock."""
        self._acquire("rollback")
        try:
            self.audit.log("rollback started", backup_id=backup_id)
            try:
                counts = self.backups.restore(backup_id)
            except Exception as exc:
                self.audit.log("rollback failed", backup_id=backup_id, error=str(exc), error_type=type(exc).__name__)
                raise
            self.audit.log("rollback completed", backup_id=backup_id, counts=counts)
            return counts
        finally:
            _MIGRATION_LOCK.release()

    def validate_migration(self) -> VerificationReport:
        """Count persisted rows and re-check references of the committed state."""
        if not self.store.is_initialized():
            return VerificationReport(ok=True, initialized=False, counts=Dataset().counts())
        persisted = snapshot_store(self.store)
        errors = tuple(check_references(persisted))
        report = VerificationReport(ok=not errors, initialized=True, counts=persisted.counts(), errors=errors)
        self.audit.log("verification", ok=report.ok, counts=report.counts, error_count=len(errors))
        return report


__all__ = [
    "MigrationExecutor",
    "MigrationState",
    "TRANSITIONS",
    "VerificationReport",
    "is_migration_running",
]
