"""
Self-test harness for the migration engine.

Runs named scenarios against a throwaway in-memory store and backup storage,
so operators can check an installation without touching the real database
(`roster-migration self-test`).
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Sequence, Tuple

from .audit import AuditLogger
from .backup import BackupManager
from .backup_storage import InMemoryBackupStorage
from .domain import Dataset, EntityKind, MigrationPhase, Recovery
from .executor import MigrationExecutor
from .ports import BackupIntegrityError, MigrationStore, StoreError
from .repo_memory import InMemoryMigrationStore

logger = logging.getLogger("classboard.migration.selftest")


def sample_document() -> Dict[str, Any]:
    """A small, valid mock-data document covering every entity kind."""
    return {
        "users": [{"id": "u1", "email": "ada@school.example", "name": "Ada Admin", "role": "ADMIN"}],
        "students": [
            {"id": "s1", "name": "Sam Lee", "email": "sam@school.example", "grade": "9"},
            {"id": "s2", "name": "Kim Park", "email": "kim@school.example", "grade": "9"},
        ],
        "classes": [
            {"id": "c1", "name": "Algebra I", "subject": "Math", "room": "101", "capacity": 20,
             "enrolledStudents": ["s1", "s2"]},
        ],
        "schedules": [{"id": "sch1", "classId": "c1", "dayOfWeek": 1, "startTime": "09:00", "endTime": "09:50"}],
        "scheduleExceptions": [
            {"id": "ex1", "scheduleId": "sch1", "date": "2024-03-04", "startTime": "10:00", "endTime": "10:50",
             "cancelled": False},
        ],
        "meetings": [
            {"id": "m1", "title": "Parent night", "date": "2024-03-10", "startTime": "18:00", "endTime": "19:30",
             "participants": ["s1"], "participantType": "parents", "meetingType": "in-person", "status": "scheduled"},
        ],
        "attendanceRecords": [
            {"id": "ar1", "classId": "c1", "date": "2024-03-04", "attendanceData": [
                {"studentId": "s1", "status": "present"},
                {"studentId": "s2", "status": "late", "notes": "bus"},
            ]},
        ],
        "classNotes": [{"id": "n1", "classId": "c1", "date": "2024-03-04", "content": "Linear equations",
                        "topics": ["equations"]}],
        "tests": [{"id": "t1", "classId": "c1", "title": "Quiz 1", "testDate": "2024-03-08", "totalPoints": 20,
                   "testType": "quiz"}],
        "testResults": [{"id": "tr1", "testId": "t1", "studentId": "s1", "score": 18, "maxScore": 20}],
        "homeworkAssignments": [{"id": "h1", "classId": "c1", "title": "Worksheet 3", "dueDate": "2024-03-06",
                                 "totalPoints": 10}],
        "homeworkSubmissions": [{"id": "hs1", "assignmentId": "h1", "studentId": "s2", "status": "graded",
                                 "score": 9, "maxScore": 10}],
    }


def sample_dataset() -> Dataset:
    return Dataset.from_dict(sample_document())


class _FailingTransaction:
    def __init__(self, inner: Any, fail_on: EntityKind) -> None:
        self._inner = inner
        self._fail_on = fail_on

    def delete_all(self, kind: EntityKind) -> int:
        return self._inner.delete_all(kind)

    def insert_many(self, kind: EntityKind, rows: Sequence[Any]) -> int:
        if kind is self._fail_on:
            raise StoreError(f"injected failure while inserting {kind.collection}")
        return self._inner.insert_many(kind, rows)


class FaultInjectingStore:
    """Wraps a store and fails the insert of one entity kind inside transactions."""

    def __init__(self, inner: MigrationStore, fail_on: EntityKind) -> None:
        self.inner = inner
        self.fail_on = fail_on

    def is_initialized(self) -> bool:
        return self.inner.is_initialized()

    def ensure_schema(self) -> None:
        self.inner.ensure_schema()

    def read_all(self, kind: EntityKind) -> List[Any]:
        return self.inner.read_all(kind)

    def count(self, kind: EntityKind) -> int:
        return self.inner.count(kind)

    @contextmanager
    def transaction(self) -> Iterator[_FailingTransaction]:
        with self.inner.transaction() as tx:
            yield _FailingTransaction(tx, self.fail_on)


@dataclass(frozen=True)
class SelfTestCase:
    test: str
    passed: bool
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"test": self.test, "passed": self.passed, "detail": self.detail}


@dataclass(frozen=True)
class SelfTestReport:
    cases: Tuple[SelfTestCase, ...]

    @property
    def passed(self) -> bool:
        return all(case.passed for case in self.cases)

    def to_dict(self) -> Dict[str, Any]:
        return {"passed": self.passed, "cases": [case.to_dict() for case in self.cases]}


def _counts(store: MigrationStore) -> Dict[str, int]:
    return {kind.collection: store.count(kind) for kind in EntityKind}


def _executor(store: MigrationStore, storage: InMemoryBackupStorage | None = None) -> MigrationExecutor:
    return MigrationExecutor(store, BackupManager(store, storage or InMemoryBackupStorage()), audit=AuditLogger())


def _empty_migration() -> Tuple[bool, str]:
    result = _executor(InMemoryMigrationStore()).migrate_all_data(Dataset())
    ok = result.success and not any(result.counts.values())
    return ok, result.message


def _valid_migration() -> Tuple[bool, str]:
    dataset = sample_dataset()
    result = _executor(InMemoryMigrationStore()).migrate_all_data(dataset)
    ok = result.success and result.counts == dataset.counts()
    return ok, f"{result.message}; counts={result.counts}"


def _invalid_data() -> Tuple[bool, str]:
    store = InMemoryMigrationStore()
    before = _counts(store)
    invalid = Dataset.from_dict({
        "students": [{"id": "s1", "name": "Sam", "email": "invalid-email"}],
        "classes": [{"id": "c1", "name": "Algebra", "capacity": -1}],
        "schedules": [{"id": "sch1", "classId": "missing", "dayOfWeek": 9, "startTime": "25:00", "endTime": "10:00"}],
    })
    result = _executor(store).migrate_all_data(invalid)
    ok = (
        not result.success
        and result.phase is MigrationPhase.VALIDATION
        and len(result.errors) > 0
        and _counts(store) == before
    )
    return ok, f"{len(result.errors)} validation error(s) reported"


def _apply_failure() -> Tuple[bool, str]:
    inner = InMemoryMigrationStore()
    storage = InMemoryBackupStorage()
    _executor(inner, storage).migrate_all_data(sample_dataset())
    before = _counts(inner)
    faulty = FaultInjectingStore(inner, EntityKind.TEST_RESULT)
    result = _executor(faulty, storage).migrate_all_data(sample_dataset())
    ok = (
        not result.success
        and result.phase is MigrationPhase.APPLY
        and result.recovery is Recovery.AUTO_ROLLBACK
        and _counts(inner) == before
    )
    return ok, result.message


def _backup_integrity() -> Tuple[bool, str]:
    store = InMemoryMigrationStore()
    storage = InMemoryBackupStorage()
    _executor(store, storage).migrate_all_data(sample_dataset())
    manager = BackupManager(store, storage)
    backup = manager.create_backup()
    storage.tamper(backup.backup_id, checksum="0" * 64)
    before = _counts(store)
    try:
        manager.restore(backup.backup_id)
    except BackupIntegrityError as exc:
        return _counts(store) == before, f"restore refused: {exc}"
    return False, "tampered backup was restored"


SCENARIOS: Tuple[Tuple[str, Callable[[], Tuple[bool, str]]], ...] = (
    ("Empty data migration", _empty_migration),
    ("Valid data migration", _valid_migration),
    ("Invalid data handling", _invalid_data),
    ("Apply failure rollback", _apply_failure),
    ("Backup integrity check", _backup_integrity),
)


def run_self_test() -> SelfTestReport:
    cases = []
    for name, scenario in SCENARIOS:
        try:
            passed, detail = scenario()
        except Exception as exc:
            logger.exception("self-test scenario crashed: %s", name)
            passed, detail = False, f"{type(exc).__name__}: {exc}"
        logger.info("self-test %s passed=%s", name, passed)
        cases.append(SelfTestCase(test=name, passed=passed, detail=detail))
    return SelfTestReport(cases=tuple(cases))


__all__ = [
    "FaultInjectingStore",
    "SCENARIOS",
    "SelfTestCase",
    "SelfTestReport",
    "run_self_test",
    "sample_dataset",
    "sample_document",
]
