"""
Migration executor: phases, recovery paths and audit trail.

Why:
    Operators must be able to tell from the result which phase ended a run and
    which recovery action fired: none, transactional rollback or restore from
    backup. Validation and backup failures must leave the store untouched.
"""
from __future__ import annotations

from contextlib import contextmanager

import pytest

from backend.roster_migration.audit import AuditLogger
from backend.roster_migration.backup import BackupManager
from backend.roster_migration.backup_storage import InMemoryBackupStorage
from backend.roster_migration.domain import (
    Dataset,
    EntityKind,
    MigrationPhase,
    Recovery,
    TestResult,
    User,
)
from backend.roster_migration.executor import (
    TRANSITIONS,
    MigrationExecutor,
    MigrationState,
)
from backend.roster_migration.ports import StoreError
from backend.roster_migration.repo_memory import InMemoryMigrationStore
from backend.roster_migration.selftest import FaultInjectingStore


def _spec_roster() -> Dataset:
    return Dataset.from_dict({
        "students": [{"id": "s1", "name": "Sam", "email": "sam@school.example"}],
        "classes": [{"id": "c1", "name": "Math", "capacity": 20, "enrolledStudents": ["s1"]}],
        "schedules": [{"id": "sch1", "classId": "c1", "dayOfWeek": 1, "startTime": "09:00", "endTime": "10:00"}],
    })


class OrphanAfterCommitStore(InMemoryMigrationStore):
    """Reports a dangling test result once a migration has committed."""

    def __init__(self, *, fail_restore: bool = False) -> None:
        super().__init__()
        self.inject = False
        self.fail_restore = fail_restore

    def read_all(self, kind):
        rows = super().read_all(kind)
        if self.inject and kind is EntityKind.TEST_RESULT:
            rows.append(TestResult(id="ghost", test_id="no-such-test", student_id="s1"))
        return rows

    @contextmanager
    def transaction(self):
        if self.inject and self.fail_restore:
            raise StoreError("connection lost during restore")
        with super().transaction() as tx:
            yield tx
        self.inject = True


def test_valid_roster_migrates_with_exact_counts(executor, store):
    result = executor.migrate_all_data(_spec_roster())

    assert result.success
    assert result.phase is MigrationPhase.COMMITTED
    assert result.recovery is Recovery.NONE
    assert {k: result.counts[k] for k in ("students", "classes", "schedules")} == {
        "students": 1,
        "classes": 1,
        "schedules": 1,
    }
    assert result.errors == ()
    assert result.backup_id
    assert result.duration_seconds >= 0
    assert store.count(EntityKind.SCHEDULE) == 1
    assert store.count(EntityKind.CLASS_ENROLLMENT) == 1


def test_counts_equal_input_sizes_for_full_sample(executor, store, sample_doc):
    dataset = Dataset.from_dict(sample_doc)
    result = executor.migrate_all_data(dataset)
    assert result.success, result.message
    assert result.counts == dataset.counts()
    for kind in EntityKind:
        expected = len(dataset.collection(kind)) + (1 if kind is EntityKind.USER else 0)
        assert store.count(kind) == expected


def test_system_user_is_recreated(executor, store):
    executor.migrate_all_data(Dataset())
    user = store.get(EntityKind.USER, "default-teacher-1")
    assert user == User(id="default-teacher-1", email="teacher@classboard.com", name="Default Teacher", role="TEACHER")


def test_custom_system_user(store, backup_storage):
    custom = User(id="sys", email="sys@school.example", name="System", role="ADMIN")
    executor = MigrationExecutor(store, BackupManager(store, backup_storage), system_user=custom)
    assert executor.migrate_all_data(Dataset()).success
    assert store.get(EntityKind.USER, "sys") == custom


def test_existing_rows_are_replaced(executor, store, sample_doc):
    executor.migrate_all_data(Dataset.from_dict(sample_doc))
    result = executor.migrate_all_data(_spec_roster())
    assert result.success
    assert store.count(EntityKind.STUDENT) == 1
    assert store.count(EntityKind.TEST_RESULT) == 0
    assert store.count(EntityKind.USER) == 1


def test_backup_holds_pre_migration_state(executor, store, backup_storage, sample_doc):
    executor.migrate_all_data(Dataset.from_dict(sample_doc))
    result = executor.migrate_all_data(_spec_roster())
    executor.rollback(result.backup_id)
    assert store.count(EntityKind.STUDENT) == 2
    assert store.count(EntityKind.HOMEWORK_SUBMISSION) == 1


def test_validation_failure_has_no_side_effects(executor, store, backup_storage, sample_doc):
    executor.migrate_all_data(Dataset.from_dict(sample_doc))
    before = store.counts()
    commits = store.commits
    backups = backup_storage.list_keys()

    doc = {
        "students": [{"id": "s1", "name": "Sam", "email": "invalid-email"}],
        "schedules": [{"id": "sch1", "classId": "missing", "dayOfWeek": 1, "startTime": "09:00", "endTime": "10:00"}],
    }
    result = executor.migrate_all_data(Dataset.from_dict(doc))

    assert not result.success
    assert result.phase is MigrationPhase.VALIDATION
    assert result.recovery is Recovery.NONE
    assert result.backup_id is None
    assert len(result.errors) == 2
    assert any(e.entity == "schedule" and e.field == "classId" and "non-existent class" in e.message
               for e in result.errors)
    assert store.counts() == before
    assert store.commits == commits
    assert backup_storage.list_keys() == backups


def test_backup_failure_aborts_before_any_write(store):
    class BrokenStorage(InMemoryBackupStorage):
        def put(self, key, data, checksum):
            raise OSError("bucket unavailable")

    executor = MigrationExecutor(store, BackupManager(store, BrokenStorage()))
    result = executor.migrate_all_data(_spec_roster())

    assert not result.success
    assert result.phase is MigrationPhase.BACKUP
    assert result.recovery is Recovery.NONE
    assert "bucket unavailable" in result.message
    assert store.commits == 0
    assert store.count(EntityKind.STUDENT) == 0


def test_apply_failure_during_test_results_rolls_back_everything(store, backup_storage, sample_doc):
    seed = MigrationExecutor(store, BackupManager(store, backup_storage))
    seed.migrate_all_data(Dataset.from_dict(sample_doc))
    before = store.counts()

    faulty = FaultInjectingStore(store, EntityKind.TEST_RESULT)
    executor = MigrationExecutor(faulty, BackupManager(faulty, backup_storage))
    changed = Dataset.from_dict({**sample_doc, "students": sample_doc["students"] + [
        {"id": "s3", "name": "New", "email": "new@school.example"}]})
    result = executor.migrate_all_data(changed)

    assert not result.success
    assert result.phase is MigrationPhase.APPLY
    assert result.recovery is Recovery.AUTO_ROLLBACK
    assert "rolled back" in result.message
    assert result.backup_id is not None
    assert store.counts() == before
    assert store.get(EntityKind.STUDENT, "s3") is None
    assert store.rollbacks >= 1


def test_apply_failure_on_fresh_store_leaves_it_empty(sample_doc):
    inner = InMemoryMigrationStore()
    faulty = FaultInjectingStore(inner, EntityKind.TEST_RESULT)
    executor = MigrationExecutor(faulty, BackupManager(faulty, InMemoryBackupStorage()))
    result = executor.migrate_all_data(Dataset.from_dict(sample_doc))
    assert result.phase is MigrationPhase.APPLY
    assert all(count == 0 for count in inner.counts().values())


def test_uninitialized_store_gets_schema_before_apply():
    store = InMemoryMigrationStore(initialized=False)
    executor = MigrationExecutor(store, BackupManager(store, InMemoryBackupStorage()))
    result = executor.migrate_all_data(_spec_roster())
    assert result.success
    assert store.is_initialized()


def test_post_verify_failure_restores_backup():
    store = OrphanAfterCommitStore()
    executor = MigrationExecutor(store, BackupManager(store, InMemoryBackupStorage()))
    result = executor.migrate_all_data(_spec_roster())

    assert not result.success
    assert result.phase is MigrationPhase.POST_VERIFY
    assert result.recovery is Recovery.RESTORED_FROM_BACKUP
    assert result.backup_id in result.message
    assert any(e.field == "testId" for e in result.errors)
    assert store.count(EntityKind.STUDENT) == 0
    assert store.count(EntityKind.USER) == 0


def test_post_verify_failure_with_failed_restore_is_reported():
    store = OrphanAfterCommitStore(fail_restore=True)
    executor = MigrationExecutor(store, BackupManager(store, InMemoryBackupStorage()))
    result = executor.migrate_all_data(_spec_roster())

    assert not result.success
    assert result.phase is MigrationPhase.POST_VERIFY
    assert result.recovery is Recovery.RESTORE_FAILED
    assert "manual recovery" in result.message


def test_post_verify_detects_count_mismatch(store, backup_storage):
    class ExtraStudentStore(InMemoryMigrationStore):
        def read_all(self, kind):
            rows = super().read_all(kind)
            if kind is EntityKind.STUDENT and self.commits:
                rows = rows + rows[:1]
            return rows

    store = ExtraStudentStore()
    executor = MigrationExecutor(store, BackupManager(store, backup_storage))
    result = executor.migrate_all_data(_spec_roster())
    assert result.recovery is Recovery.RESTORED_FROM_BACKUP
    assert any(e.field == "count" and e.entity == "student" for e in result.errors)


def test_results_are_distinguishable_across_phases():
    assert len({(p, r) for p in MigrationPhase for r in Recovery}) == len(MigrationPhase) * len(Recovery)
    assert {p.value for p in MigrationPhase} == {"committed", "validation", "backup", "apply", "post_verify"}


def test_state_machine_terminal_states():
    terminal = {s for s in MigrationState if s.terminal}
    assert terminal == {
        MigrationState.COMMITTED,
        MigrationState.ABORTED_VALIDATION,
        MigrationState.ABORTED_BACKUP,
        MigrationState.ABORTED_APPLY,
        MigrationState.ABORTED_POST_VERIFY,
    }
    assert set(TRANSITIONS) == set(MigrationState)


def test_audit_records_every_transition_and_summary(executor, audit):
    executor.migrate_all_data(_spec_roster())
    transitions = [(r["source"], r["target"]) for r in audit.records if r["message"] == "phase transition"]
    assert transitions == [
        ("idle", "validating"),
        ("validating", "backing_up"),
        ("backing_up", "applying"),
        ("applying", "post_verifying"),
        ("post_verifying", "committed"),
    ]
    summary = audit.records[-1]
    assert summary["message"] == "migration summary"
    assert summary["success"] is True
    assert summary["phase"] == "committed"
    assert executor.state is MigrationState.COMMITTED


def test_audit_for_validation_abort(executor, audit):
    executor.migrate_all_data(Dataset.from_dict({"classes": [{"id": "c1", "name": "M", "capacity": -1}]}))
    targets = [r["target"] for r in audit.records if r["message"] == "phase transition"]
    assert targets == ["validating", "aborted_validation"]
    assert audit.records[-1]["recovery"] == "none"


def test_executor_rejects_foreign_backup_manager(store):
    other = InMemoryMigrationStore()
    with pytest.raises(ValueError):
        MigrationExecutor(store, BackupManager(other, InMemoryBackupStorage()))


def test_validate_migration_reports_counts_and_integrity(executor, store, sample_doc):
    executor.migrate_all_data(Dataset.from_dict(sample_doc))
    report = executor.validate_migration()
    assert report.ok
    assert report.initialized
    assert report.counts["students"] == 2
    assert report.counts["users"] == 2


def test_validate_migration_flags_dangling_rows():
    store = OrphanAfterCommitStore()
    store.seed(EntityKind.STUDENT, [])
    executor = MigrationExecutor(store, BackupManager(store, InMemoryBackupStorage()), audit=AuditLogger())
    report = executor.validate_migration()
    assert not report.ok
    assert report.errors[0].entity == "test_result"


def test_validate_migration_on_uninitialized_store():
    store = InMemoryMigrationStore(initialized=False)
    executor = MigrationExecutor(store, BackupManager(store, InMemoryBackupStorage()))
    report = executor.validate_migration()
    assert report.ok
    assert not report.initialized
    assert set(report.counts.values()) == {0}


def test_malformed_attendance_data_aborts_in_validation(executor, store):
    doc = {
        "students": [{"id": "s1", "name": "Sam", "email": "sam@school.example"}],
        "classes": [{"id": "c1", "name": "Math", "capacity": 20}],
        "attendanceRecords": [{"id": "ar1", "classId": "c1", "date": "2024-03-04",
                               "attendanceData": {"studentId": "s1", "status": "present"}}],
    }
    result = executor.migrate_all_data(Dataset.from_dict(doc))
    assert not result.success
    assert result.phase is MigrationPhase.VALIDATION
    assert [(e.entity, e.field) for e in result.errors] == [("attendance_record", "attendanceData")]
    assert store.count(EntityKind.ATTENDANCE_RECORD) == 0


def test_non_string_id_aborts_in_validation(executor, store):
    doc = {"students": [{"id": 5, "name": "Sam", "email": "sam@school.example"}]}
    result = executor.migrate_all_data(Dataset.from_dict(doc))
    assert result.phase is MigrationPhase.VALIDATION
    assert result.recovery is Recovery.NONE
    assert result.errors[0].field == "id"
    assert store.commits == 0
