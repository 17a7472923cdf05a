"""
Pre-flight validation of roster datasets.

Intent:
    Decide whether a dataset is admissible for migration without touching any
    store. Every check runs independently per entity and errors accumulate;
    nothing short-circuits, so one run reports every broken record.

Behavior:
    - Presence: one aggregated "Missing required fields" error per entity.
    - Format: email, capacity, day of week, HH:MM times, enumerations,
      numeric points/scores.
    - References: every edge of `FOREIGN_KEYS` must resolve inside the same
      dataset (`check_references` is reused for post-verification).
    - Ids must be non-empty strings; list fields must be lists.
    - Never raises on odd values (None, wrong types); it reports them.
"""
from __future__ import annotations

import re
from typing import Any, Iterable, List, Optional

from .domain import (
    FORWARD_ORDER,
    Dataset,
    EntityKind,
    ValidationError,
    references,
)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

USER_ROLES = frozenset({"TEACHER", "ADMIN"})
ATTENDANCE_STATUSES = frozenset({"present", "absent", "late", "excused"})
PARTICIPANT_TYPES = frozenset({"students", "parents", "teachers"})
MEETING_TYPES = frozenset({"in-person", "in_person", "virtual"})
MEETING_STATUSES = frozenset({"scheduled", "completed", "cancelled"})
TEST_TYPES = frozenset({"quiz", "exam", "assignment", "project"})
SUBMISSION_STATUSES = frozenset({"not_submitted", "submitted", "graded", "late"})


def is_valid_email(value: Any) -> bool:
    """Return True for local@domain.tld shaped strings."""
    return isinstance(value, str) and bool(_EMAIL_RE.match(value))


def is_valid_time(value: Any) -> bool:
    """Return True for 24-hour HH:MM strings in 00:00..23:59."""
    return isinstance(value, str) and bool(_TIME_RE.match(value))


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


class _Collector:
    def __init__(self) -> None:
        self.errors: List[ValidationError] = []

    def add(self, kind: EntityKind, entity_id: Optional[str], field: str, message: str) -> None:
        ident = entity_id if isinstance(entity_id, str) else ("" if entity_id is None else str(entity_id))
        self.errors.append(ValidationError(entity=kind.value, entity_id=ident, field=field, message=message))


def _check_presence(out: _Collector, entity: Any) -> None:
    missing = [_camel(name) for name in entity.required if _is_blank(getattr(entity, name, None))]
    if missing:
        out.add(entity.kind, entity.id, ",".join(missing), f"Missing required fields: {', '.join(missing)}")
    ident = entity.id
    if "id" in missing or ident is None:
        return
    if not isinstance(ident, str) or not ident.strip():
        out.add(entity.kind, ident, "id", "Id must be a non-empty string")


def _check_string_list(out: _Collector, entity: Any, attr: str) -> None:
    value = getattr(entity, attr)
    if not isinstance(value, tuple) or not all(isinstance(item, str) for item in value):
        out.add(entity.kind, entity.id, _camel(attr), f"{_camel(attr)} must be a list of strings")


def _check_enum(out: _Collector, entity: Any, attr: str, allowed: frozenset) -> None:
    value = getattr(entity, attr)
    if value is None:
        return
    if not isinstance(value, str) or value not in allowed:
        choices = ", ".join(sorted(allowed))
        out.add(entity.kind, entity.id, _camel(attr), f"Invalid {_camel(attr)} {value!r}; expected one of: {choices}")


def _check_times(out: _Collector, entity: Any) -> None:
    start = getattr(entity, "start_time", None)
    end = getattr(entity, "end_time", None)
    for attr, value in (("start_time", start), ("end_time", end)):
        if _is_blank(value):
            # reported by the presence check
            continue
        if not is_valid_time(value):
            out.add(entity.kind, entity.id, _camel(attr), f"Invalid time format {value!r}; expected HH:MM (00:00-23:59)")
    if is_valid_time(start) and is_valid_time(end) and end <= start:
        out.add(entity.kind, entity.id, "endTime", "End time must be after start time")


def _check_positive_int(out: _Collector, entity: Any, attr: str) -> None:
    value = getattr(entity, attr)
    if value is None:
        return
    if not _is_int(value) or value <= 0:
        out.add(entity.kind, entity.id, _camel(attr), f"{_camel(attr)} must be an integer greater than 0")


def _check_score(out: _Collector, entity: Any) -> None:
    score = entity.score
    if score is None:
        return
    if not _is_number(score) or score < 0:
        out.add(entity.kind, entity.id, "score", "Score must be a non-negative number")
        return
    max_score = entity.max_score
    if _is_int(max_score) and max_score > 0 and score > max_score:
        out.add(entity.kind, entity.id, "score", "Score cannot exceed max score")


def _check_user(out: _Collector, user: Any, system_user_id: Optional[str]) -> None:
    if not _is_blank(user.email) and not is_valid_email(user.email):
        out.add(user.kind, user.id, "email", "Invalid email format")
    _check_enum(out, user, "role", USER_ROLES)
    if system_user_id and user.id == system_user_id:
        out.add(user.kind, user.id, "id", "Id is reserved for the system user")


def _check_student(out: _Collector, student: Any) -> None:
    if not _is_blank(student.email) and not is_valid_email(student.email):
        out.add(student.kind, student.id, "email", "Invalid email format")


def _check_class(out: _Collector, school_class: Any) -> None:
    capacity = school_class.capacity
    if not _is_int(capacity) or capacity <= 0:
        out.add(school_class.kind, school_class.id, "capacity", "Capacity must be an integer greater than 0")
    _check_string_list(out, school_class, "enrolled_students")


def _check_schedule(out: _Collector, schedule: Any) -> None:
    day = schedule.day_of_week
    if not _is_int(day) or not 0 <= day <= 6:
        out.add(schedule.kind, schedule.id, "dayOfWeek", "Day of week must be between 0-6")
    _check_times(out, schedule)


def _check_meeting(out: _Collector, meeting: Any) -> None:
    _check_times(out, meeting)
    _check_enum(out, meeting, "participant_type", PARTICIPANT_TYPES)
    _check_enum(out, meeting, "meeting_type", MEETING_TYPES)
    _check_enum(out, meeting, "status", MEETING_STATUSES)
    _check_string_list(out, meeting, "participants")


def _check_attendance(out: _Collector, record: Any) -> None:
    if not isinstance(record.attendance_data, tuple):
        out.add(record.kind, record.id, "attendanceData", "Attendance data must be a list of entries")
        return
    for entry in record.attendance_data:
        if _is_blank(entry.student_id) or _is_blank(entry.status):
            out.add(record.kind, record.id, "attendanceData", "Missing required fields: studentId, status")
            continue
        if not isinstance(entry.status, str) or entry.status not in ATTENDANCE_STATUSES:
            out.add(record.kind, record.id, "attendanceData", f"Invalid attendance status {entry.status!r}")


def _check_test(out: _Collector, test: Any) -> None:
    _check_positive_int(out, test, "total_points")
    _check_enum(out, test, "test_type", TEST_TYPES)


def _check_test_result(out: _Collector, result: Any) -> None:
    _check_positive_int(out, result, "max_score")
    _check_score(out, result)


def _check_note(out: _Collector, note: Any) -> None:
    _check_string_list(out, note, "topics")


def _check_assignment(out: _Collector, assignment: Any) -> None:
    _check_positive_int(out, assignment, "total_points")
    _check_string_list(out, assignment, "resources")


def _check_submission(out: _Collector, submission: Any) -> None:
    _check_positive_int(out, submission, "max_score")
    _check_score(out, submission)
    _check_enum(out, submission, "status", SUBMISSION_STATUSES)


_FORMAT_CHECKS = {
    EntityKind.STUDENT: _check_student,
    EntityKind.CLASS: _check_class,
    EntityKind.CLASS_ENROLLMENT: None,
    EntityKind.SCHEDULE: _check_schedule,
    EntityKind.SCHEDULE_EXCEPTION: _check_times,
    EntityKind.MEETING: _check_meeting,
    EntityKind.ATTENDANCE_RECORD: _check_attendance,
    EntityKind.CLASS_NOTE: _check_note,
    EntityKind.TEST: _check_test,
    EntityKind.TEST_RESULT: _check_test_result,
    EntityKind.HOMEWORK_ASSIGNMENT: _check_assignment,
    EntityKind.HOMEWORK_SUBMISSION: _check_submission,
}


def _check_duplicates(out: _Collector, kind: EntityKind, entities: Iterable[Any]) -> None:
    seen: set[str] = set()
    reported: set[str] = set()
    for entity in entities:
        ident = entity.id
        if _is_blank(ident) or not isinstance(ident, str):
            continue
        if ident in seen and ident not in reported:
            out.add(kind, ident, "id", f"Duplicate {kind.label} id")
            reported.add(ident)
        seen.add(ident)


def _check_enrolled_students(out: _Collector, dataset: Dataset) -> None:
    """Resolve `enrolledStudents` ids not already covered by an enrollment row."""
    students = dataset.ids(EntityKind.STUDENT)
    enrolled = {
        (e.class_id, e.student_id)
        for e in dataset.class_enrollments
        if isinstance(e.class_id, str) and isinstance(e.student_id, str)
    }
    for school_class in dataset.classes:
        if not isinstance(school_class.id, str) or not isinstance(school_class.enrolled_students, tuple):
            continue
        for student_id in school_class.enrolled_students:
            if not isinstance(student_id, str) or student_id in students:
                continue
            if (school_class.id, student_id) in enrolled:
                # reported on the enrollment row
                continue
            out.add(school_class.kind, school_class.id, "enrolledStudents",
                    f"References non-existent student {student_id!r}")


def check_references(dataset: Dataset) -> List[ValidationError]:
    """Return one error per dangling reference across every edge of the model."""
    out = _Collector()
    known = {kind: dataset.ids(kind) for kind in EntityKind}
    for kind in FORWARD_ORDER:
        for entity in dataset.collection(kind):
            for fk, ref in references(entity):
                if _is_blank(ref):
                    # missing references are presence errors, not dangling ones
                    continue
                if not isinstance(ref, str) or ref not in known[fk.parent]:
                    out.add(kind, entity.id, fk.field, f"References non-existent {fk.parent.label} {ref!r}")
    return out.errors


def validate_dataset(dataset: Dataset, *, system_user_id: Optional[str] = None) -> List[ValidationError]:
    """Validate a dataset for migration; an empty list means admissible.

    Parameters:
        dataset: Caller-owned snapshot; never mutated.
        system_user_id: Id reserved for the bootstrap user; dataset users may
            not reuse it.
    """
    out = _Collector()
    for kind in FORWARD_ORDER:
        entities = dataset.collection(kind)
        for entity in entities:
            _check_presence(out, entity)
            if kind is EntityKind.USER:
                _check_user(out, entity, system_user_id)
                continue
            check = _FORMAT_CHECKS[kind]
            if check is not None:
                check(out, entity)
        _check_duplicates(out, kind, entities)
    _check_enrolled_students(out, dataset)
    out.errors.extend(check_references(dataset))
    return out.errors


__all__ = [
    "ATTENDANCE_STATUSES",
    "MEETING_STATUSES",
    "MEETING_TYPES",
    "PARTICIPANT_TYPES",
    "SUBMISSION_STATUSES",
    "TEST_TYPES",
    "USER_ROLES",
    "check_references",
    "is_valid_email",
    "is_valid_time",
    "validate_dataset",
]
