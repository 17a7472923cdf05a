"""
Domain model for the roster migration engine.

Intent:
    Describe the eleven classroom entity kinds (plus users) as small, frozen
    dataclasses and keep the relations between them in declarative tables.
    The executor, validator and stores iterate these tables instead of
    hard-coding statement order, so the dependency order is a first-class,
    testable artifact.

Design:
    - One dataclass per entity kind, tagged with `kind`.
    - `MODEL_BY_KIND` maps every kind to its model (exhaustiveness is
      asserted in tests).
    - `FOREIGN_KEYS` lists every reference edge; `FORWARD_ORDER` is the insert
      order and `CLEAR_ORDER` its exact reverse.
    - `Dataset` is the immutable input snapshot. It loads the legacy mock-data
      JSON shape (camelCase keys) without coercing values, so the validator
      sees exactly what the caller supplied.
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, ClassVar, Dict, Iterator, Mapping, Optional, Sequence, Tuple


class EntityKind(str, Enum):
    USER = "user"
    STUDENT = "student"
    CLASS = "class"
    CLASS_ENROLLMENT = "class_enrollment"
    SCHEDULE = "schedule"
    SCHEDULE_EXCEPTION = "schedule_exception"
    MEETING = "meeting"
    ATTENDANCE_RECORD = "attendance_record"
    CLASS_NOTE = "class_note"
    TEST = "test"
    TEST_RESULT = "test_result"
    HOMEWORK_ASSIGNMENT = "homework_assignment"
    HOMEWORK_SUBMISSION = "homework_submission"

    @property
    def collection(self) -> str:
        """Snake-case collection name used for counts and snapshots."""
        return _COLLECTIONS[self]

    @property
    def label(self) -> str:
        """Human label for messages, e.g. "homework assignment"."""
        return self.value.replace("_", " ")


_COLLECTIONS: Dict[EntityKind, str] = {
    EntityKind.USER: "users",
    EntityKind.STUDENT: "students",
    EntityKind.CLASS: "classes",
    EntityKind.CLASS_ENROLLMENT: "class_enrollments",
    EntityKind.SCHEDULE: "schedules",
    EntityKind.SCHEDULE_EXCEPTION: "schedule_exceptions",
    EntityKind.MEETING: "meetings",
    EntityKind.ATTENDANCE_RECORD: "attendance_records",
    EntityKind.CLASS_NOTE: "class_notes",
    EntityKind.TEST: "tests",
    EntityKind.TEST_RESULT: "test_results",
    EntityKind.HOMEWORK_ASSIGNMENT: "homework_assignments",
    EntityKind.HOMEWORK_SUBMISSION: "homework_submissions",
}

# JSON keys of the legacy mock-data document.
_JSON_KEYS: Dict[EntityKind, str] = {
    EntityKind.USER: "users",
    EntityKind.STUDENT: "students",
    EntityKind.CLASS: "classes",
    EntityKind.CLASS_ENROLLMENT: "classEnrollments",
    EntityKind.SCHEDULE: "schedules",
    EntityKind.SCHEDULE_EXCEPTION: "scheduleExceptions",
    EntityKind.MEETING: "meetings",
    EntityKind.ATTENDANCE_RECORD: "attendanceRecords",
    EntityKind.CLASS_NOTE: "classNotes",
    EntityKind.TEST: "tests",
    EntityKind.TEST_RESULT: "testResults",
    EntityKind.HOMEWORK_ASSIGNMENT: "homeworkAssignments",
    EntityKind.HOMEWORK_SUBMISSION: "homeworkSubmissions",
}


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


class _Entity:
    """Mixin shared by all entity dataclasses."""

    kind: ClassVar[EntityKind]
    required: ClassVar[Tuple[str, ...]] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]):
        values = {}
        for f in fields(cls):  # type: ignore[arg-type]
            key = _camel(f.name)
            if key in data:
                values[f.name] = data[key]
            elif f.name in data:
                values[f.name] = data[f.name]
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {_camel(f.name): _plain(getattr(self, f.name)) for f in fields(self)}  # type: ignore[arg-type]


def _plain(value: Any) -> Any:
    if isinstance(value, tuple):
        return [_plain(v) for v in value]
    if isinstance(value, AttendanceEntry):
        return value.to_dict()
    return value


def _as_tuple(value: Any) -> Any:
    if isinstance(value, list):
        return tuple(value)
    return value


@dataclass(frozen=True)
class User(_Entity):
    kind: ClassVar[EntityKind] = EntityKind.USER
    required: ClassVar[Tuple[str, ...]] = ("id", "email", "name")

    id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    role: Optional[str] = "TEACHER"


@dataclass(frozen=True)
class Student(_Entity):
    kind: ClassVar[EntityKind] = EntityKind.STUDENT
    required: ClassVar[Tuple[str, ...]] = ("id", "name", "email")

    id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    grade: Optional[str] = None
    parent_contact: Optional[str] = None
    enrollment_date: Optional[str] = None


@dataclass(frozen=True)
class SchoolClass(_Entity):
    kind: ClassVar[EntityKind] = EntityKind.CLASS
    required: ClassVar[Tuple[str, ...]] = ("id", "name")

    id: Optional[str] = None
    name: Optional[str] = None
    subject: Optional[str] = None
    description: Optional[str] = None
    room: Optional[str] = None
    capacity: Any = None
    color: Optional[str] = None
    created_date: Optional[str] = None
    enrolled_students: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "enrolled_students", _as_tuple(self.enrolled_students) or ())


@dataclass(frozen=True)
class ClassEnrollment(_Entity):
    kind: ClassVar[EntityKind] = EntityKind.CLASS_ENROLLMENT
    required: ClassVar[Tuple[str, ...]] = ("class_id", "student_id")

    class_id: Optional[str] = None
    student_id: Optional[str] = None
    id: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.id and self.class_id and self.student_id:
            object.__setattr__(self, "id", f"{self.class_id}:{self.student_id}")


@dataclass(frozen=True)
class Schedule(_Entity):
    kind: ClassVar[EntityKind] = EntityKind.SCHEDULE
    required: ClassVar[Tuple[str, ...]] = ("id", "class_id", "start_time", "end_time")

    id: Optional[str] = None
    class_id: Optional[str] = None
    day_of_week: Any = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None


@dataclass(frozen=True)
class ScheduleException(_Entity):
    kind: ClassVar[EntityKind] = EntityKind.SCHEDULE_EXCEPTION
    required: ClassVar[Tuple[str, ...]] = ("id", "schedule_id", "date", "start_time", "end_time")

    id: Optional[str] = None
    schedule_id: Optional[str] = None
    date: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    cancelled: Optional[bool] = False
    created_date: Optional[str] = None


@dataclass(frozen=True)
class Meeting(_Entity):
    kind: ClassVar[EntityKind] = EntityKind.MEETING
    required: ClassVar[Tuple[str, ...]] = ("id", "title", "date", "start_time", "end_time")

    id: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    date: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    participants: Tuple[str, ...] = ()
    participant_type: Optional[str] = None
    location: Optional[str] = None
    meeting_type: Optional[str] = None
    status: Optional[str] = None
    created_date: Optional[str] = None
    notes: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "participants", _as_tuple(self.participants) or ())
        # legacy mock data spells it with a hyphen; the store keeps the enum value
        if self.meeting_type == "in-person":
            object.__setattr__(self, "meeting_type", "in_person")


@dataclass(frozen=True)
class AttendanceEntry:
    """Per-student status inside an attendance record (not a top-level kind)."""

    student_id: Optional[str] = None
    status: Optional[str] = None
    notes: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AttendanceEntry":
        return cls(
            student_id=data.get("studentId", data.get("student_id")),
            status=data.get("status"),
            notes=data.get("notes"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"studentId": self.student_id, "status": self.status, "notes": self.notes}


@dataclass(frozen=True)
class AttendanceRecord(_Entity):
    kind: ClassVar[EntityKind] = EntityKind.ATTENDANCE_RECORD
    required: ClassVar[Tuple[str, ...]] = ("id", "class_id", "date")

    id: Optional[str] = None
    class_id: Optional[str] = None
    date: Optional[str] = None
    attendance_data: Tuple[AttendanceEntry, ...] = ()
    created_date: Optional[str] = None
    updated_date: Optional[str] = None

    def __post_init__(self) -> None:
        raw = self.attendance_data
        if raw is None:
            raw = ()
        if not isinstance(raw, (list, tuple)):
            # kept as given; validation rejects it
            object.__setattr__(self, "attendance_data", raw)
            return
        entries = []
        for item in raw:
            if isinstance(item, AttendanceEntry):
                entries.append(item)
            elif isinstance(item, Mapping):
                entries.append(AttendanceEntry.from_dict(item))
            else:
                entries.append(AttendanceEntry())
        object.__setattr__(self, "attendance_data", tuple(entries))


@dataclass(frozen=True)
class ClassNote(_Entity):
    kind: ClassVar[EntityKind] = EntityKind.CLASS_NOTE
    required: ClassVar[Tuple[str, ...]] = ("id", "class_id", "date", "content")

    id: Optional[str] = None
    class_id: Optional[str] = None
    date: Optional[str] = None
    content: Optional[str] = None
    topics: Tuple[str, ...] = ()
    homework: Optional[str] = None
    objectives: Optional[str] = None
    created_date: Optional[str] = None
    updated_date: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "topics", _as_tuple(self.topics) or ())


@dataclass(frozen=True)
class Test(_Entity):
    __test__ = False  # keep pytest from collecting the model

    kind: ClassVar[EntityKind] = EntityKind.TEST
    required: ClassVar[Tuple[str, ...]] = ("id", "class_id", "title", "test_date")

    id: Optional[str] = None
    class_id: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    test_date: Optional[str] = None
    total_points: Any = None
    test_type: Optional[str] = None
    file_name: Optional[str] = None
    file_url: Optional[str] = None
    created_date: Optional[str] = None
    updated_date: Optional[str] = None


@dataclass(frozen=True)
class TestResult(_Entity):
    __test__ = False

    kind: ClassVar[EntityKind] = EntityKind.TEST_RESULT
    required: ClassVar[Tuple[str, ...]] = ("id", "test_id", "student_id")

    id: Optional[str] = None
    test_id: Optional[str] = None
    student_id: Optional[str] = None
    score: Any = None
    max_score: Any = None
    percentage: Any = None
    grade: Optional[str] = None
    feedback: Optional[str] = None
    submitted_date: Optional[str] = None
    graded_date: Optional[str] = None
    created_date: Optional[str] = None
    updated_date: Optional[str] = None


@dataclass(frozen=True)
class HomeworkAssignment(_Entity):
    kind: ClassVar[EntityKind] = EntityKind.HOMEWORK_ASSIGNMENT
    required: ClassVar[Tuple[str, ...]] = ("id", "class_id", "title", "due_date")

    id: Optional[str] = None
    class_id: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    assigned_date: Optional[str] = None
    due_date: Optional[str] = None
    total_points: Any = None
    instructions: Optional[str] = None
    resources: Tuple[str, ...] = ()
    created_date: Optional[str] = None
    updated_date: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "resources", _as_tuple(self.resources) or ())


@dataclass(frozen=True)
class HomeworkSubmission(_Entity):
    kind: ClassVar[EntityKind] = EntityKind.HOMEWORK_SUBMISSION
    required: ClassVar[Tuple[str, ...]] = ("id", "assignment_id", "student_id", "status")

    id: Optional[str] = None
    assignment_id: Optional[str] = None
    student_id: Optional[str] = None
    submitted_date: Optional[str] = None
    score: Any = None
    max_score: Any = None
    grade: Optional[str] = None
    feedback: Optional[str] = None
    status: Optional[str] = None
    submission_notes: Optional[str] = None
    graded_date: Optional[str] = None
    created_date: Optional[str] = None
    updated_date: Optional[str] = None


MODEL_BY_KIND: Dict[EntityKind, type] = {
    EntityKind.USER: User,
    EntityKind.STUDENT: Student,
    EntityKind.CLASS: SchoolClass,
    EntityKind.CLASS_ENROLLMENT: ClassEnrollment,
    EntityKind.SCHEDULE: Schedule,
    EntityKind.SCHEDULE_EXCEPTION: ScheduleException,
    EntityKind.MEETING: Meeting,
    EntityKind.ATTENDANCE_RECORD: AttendanceRecord,
    EntityKind.CLASS_NOTE: ClassNote,
    EntityKind.TEST: Test,
    EntityKind.TEST_RESULT: TestResult,
    EntityKind.HOMEWORK_ASSIGNMENT: HomeworkAssignment,
    EntityKind.HOMEWORK_SUBMISSION: HomeworkSubmission,
}


# --- Dependency tables ---------------------------------------------------------


@dataclass(frozen=True)
class ForeignKey:
    """A reference edge `child.field -> parent.id`.

    `field` is the camelCase field name reported in validation errors;
    `attr` is the dataclass attribute. `per_entry` marks references that live
    inside attendance entries.
    """

    child: EntityKind
    field: str
    attr: str
    parent: EntityKind
    per_entry: bool = False


FOREIGN_KEYS: Tuple[ForeignKey, ...] = (
    ForeignKey(EntityKind.CLASS_ENROLLMENT, "classId", "class_id", EntityKind.CLASS),
    ForeignKey(EntityKind.CLASS_ENROLLMENT, "studentId", "student_id", EntityKind.STUDENT),
    ForeignKey(EntityKind.SCHEDULE, "classId", "class_id", EntityKind.CLASS),
    ForeignKey(EntityKind.SCHEDULE_EXCEPTION, "scheduleId", "schedule_id", EntityKind.SCHEDULE),
    ForeignKey(EntityKind.ATTENDANCE_RECORD, "classId", "class_id", EntityKind.CLASS),
    ForeignKey(EntityKind.ATTENDANCE_RECORD, "studentId", "student_id", EntityKind.STUDENT, per_entry=True),
    ForeignKey(EntityKind.CLASS_NOTE, "classId", "class_id", EntityKind.CLASS),
    ForeignKey(EntityKind.TEST, "classId", "class_id", EntityKind.CLASS),
    ForeignKey(EntityKind.TEST_RESULT, "testId", "test_id", EntityKind.TEST),
    ForeignKey(EntityKind.TEST_RESULT, "studentId", "student_id", EntityKind.STUDENT),
    ForeignKey(EntityKind.HOMEWORK_ASSIGNMENT, "classId", "class_id", EntityKind.CLASS),
    ForeignKey(EntityKind.HOMEWORK_SUBMISSION, "assignmentId", "assignment_id", EntityKind.HOMEWORK_ASSIGNMENT),
    ForeignKey(EntityKind.HOMEWORK_SUBMISSION, "studentId", "student_id", EntityKind.STUDENT),
)

# Parents before children.
FORWARD_ORDER: Tuple[EntityKind, ...] = (
    EntityKind.USER,
    EntityKind.STUDENT,
    EntityKind.CLASS,
    EntityKind.CLASS_ENROLLMENT,
    EntityKind.SCHEDULE,
    EntityKind.SCHEDULE_EXCEPTION,
    EntityKind.MEETING,
    EntityKind.ATTENDANCE_RECORD,
    EntityKind.CLASS_NOTE,
    EntityKind.TEST,
    EntityKind.TEST_RESULT,
    EntityKind.HOMEWORK_ASSIGNMENT,
    EntityKind.HOMEWORK_SUBMISSION,
)

# Children before parents.
CLEAR_ORDER: Tuple[EntityKind, ...] = tuple(reversed(FORWARD_ORDER))


def foreign_keys_of(kind: EntityKind) -> Tuple[ForeignKey, ...]:
    return tuple(fk for fk in FOREIGN_KEYS if fk.child is kind)


def references(entity: Any) -> Iterator[Tuple[ForeignKey, Optional[str]]]:
    """Yield `(edge, referenced_id)` for every outgoing reference of `entity`."""
    for fk in foreign_keys_of(entity.kind):
        if fk.per_entry:
            entries = getattr(entity, "attendance_data", ())
            if not isinstance(entries, tuple):
                continue
            for entry in entries:
                yield fk, getattr(entry, fk.attr)
        else:
            yield fk, getattr(entity, fk.attr)


# --- Dataset --------------------------------------------------------------------


@dataclass(frozen=True)
class Dataset:
    """Immutable input snapshot: one tuple of entities per entity kind."""

    users: Tuple[User, ...] = ()
    students: Tuple[Student, ...] = ()
    classes: Tuple[SchoolClass, ...] = ()
    class_enrollments: Tuple[ClassEnrollment, ...] = ()
    schedules: Tuple[Schedule, ...] = ()
    schedule_exceptions: Tuple[ScheduleException, ...] = ()
    meetings: Tuple[Meeting, ...] = ()
    attendance_records: Tuple[AttendanceRecord, ...] = ()
    class_notes: Tuple[ClassNote, ...] = ()
    tests: Tuple[Test, ...] = ()
    test_results: Tuple[TestResult, ...] = ()
    homework_assignments: Tuple[HomeworkAssignment, ...] = ()
    homework_submissions: Tuple[HomeworkSubmission, ...] = ()

    def __post_init__(self) -> None:
        for kind in EntityKind:
            object.__setattr__(self, kind.collection, tuple(getattr(self, kind.collection)))

    def collection(self, kind: EntityKind) -> Tuple[Any, ...]:
        return getattr(self, kind.collection)

    def counts(self) -> Dict[str, int]:
        return {kind.collection: len(self.collection(kind)) for kind in FORWARD_ORDER}

    def ids(self, kind: EntityKind) -> set[str]:
        return {e.id for e in self.collection(kind) if isinstance(e.id, str) and e.id}

    @classmethod
    def from_collections(cls, collections: Mapping[EntityKind, Sequence[Any]]) -> "Dataset":
        return cls(**{kind.collection: tuple(collections.get(kind, ())) for kind in EntityKind})

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Dataset":
        """Load the legacy mock-data document.

        Behavior:
            - Accepts camelCase (`scheduleExceptions`) or snake_case keys.
            - Missing collections load as empty tuples.
            - Without an explicit `classEnrollments` list, enrollments are
              derived from each class's `enrolledStudents`.
        """
        collections: Dict[EntityKind, list] = {}
        for kind in EntityKind:
            raw = data.get(_JSON_KEYS[kind])
            if raw is None:
                raw = data.get(kind.collection)
            model = MODEL_BY_KIND[kind]
            items = []
            for index, item in enumerate(raw or ()):
                if not isinstance(item, Mapping):
                    raise ValueError(f"{_JSON_KEYS[kind]}[{index}] must be an object")
                items.append(model.from_dict(item))
            collections[kind] = items

        has_enrollments = _JSON_KEYS[EntityKind.CLASS_ENROLLMENT] in data or "class_enrollments" in data
        if not has_enrollments:
            derived = []
            for school_class in collections[EntityKind.CLASS]:
                if not isinstance(school_class.enrolled_students, tuple):
                    continue
                for student_id in school_class.enrolled_students:
                    derived.append(ClassEnrollment(class_id=school_class.id, student_id=student_id))
            collections[EntityKind.CLASS_ENROLLMENT] = derived
        return cls.from_collections(collections)

    def to_dict(self) -> Dict[str, Any]:
        return {
            _JSON_KEYS[kind]: [entity.to_dict() for entity in self.collection(kind)]
            for kind in FORWARD_ORDER
        }


# --- Results --------------------------------------------------------------------


@dataclass(frozen=True)
class ValidationError:
    """One admissibility problem of a dataset; order-irrelevant."""

    entity: str
    entity_id: str
    field: str
    message: str

    def __str__(self) -> str:
        ident = self.entity_id or "<missing id>"
        return f"{self.entity} {ident}: {self.field}: {self.message}"

    def to_dict(self) -> Dict[str, str]:
        return {"entity": self.entity, "entityId": self.entity_id, "field": self.field, "message": self.message}


@dataclass(frozen=True)
class MigrationBackup:
    """Descriptor of a persisted, checksummed snapshot of the destination store."""

    timestamp: str
    data: bytes = field(repr=False)
    checksum: str

    @property
    def backup_id(self) -> str:
        return self.timestamp


class MigrationPhase(str, Enum):
    COMMITTED = "committed"
    VALIDATION = "validation"
    BACKUP = "backup"
    APPLY = "apply"
    POST_VERIFY = "post_verify"


class Recovery(str, Enum):
    NONE = "none"
    AUTO_ROLLBACK = "auto_rollback"
    RESTORED_FROM_BACKUP = "restored_from_backup"
    RESTORE_FAILED = "restore_failed"


@dataclass(frozen=True)
class MigrationResult:
    success: bool
    phase: MigrationPhase
    recovery: Recovery
    message: str
    counts: Dict[str, int] = field(default_factory=dict)
    errors: Tuple[ValidationError, ...] = ()
    duration_seconds: float = 0.0
    backup_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "phase": self.phase.value,
            "recovery": self.recovery.value,
            "message": self.message,
            "counts": dict(self.counts),
            "errors": [e.to_dict() for e in self.errors],
            "duration_seconds": round(self.duration_seconds, 6),
            "backup_id": self.backup_id,
        }


__all__ = [
    "AttendanceEntry",
    "AttendanceRecord",
    "CLEAR_ORDER",
    "ClassEnrollment",
    "ClassNote",
    "Dataset",
    "EntityKind",
    "FOREIGN_KEYS",
    "FORWARD_ORDER",
    "ForeignKey",
    "HomeworkAssignment",
    "HomeworkSubmission",
    "MODEL_BY_KIND",
    "Meeting",
    "MigrationBackup",
    "MigrationPhase",
    "MigrationResult",
    "Recovery",
    "Schedule",
    "ScheduleException",
    "SchoolClass",
    "Student",
    "Test",
    "TestResult",
    "User",
    "ValidationError",
    "foreign_keys_of",
    "references",
]
