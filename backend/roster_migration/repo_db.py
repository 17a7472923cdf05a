"""
Postgres-backed migration store.

Security:
- Migrations need DDL and bulk DELETE rights; use a service-role DSN, never
  the limited application role. The DSN is never logged.

Design:
- Minimal psycopg3 usage; every operation opens a short-lived connection in
  autocommit mode and wraps writes in `conn.transaction()`.
- Table and column names follow the classroom schema (`students`,
  `class_enrollments`, ...). Attendance entries live in `attendance_entries`
  and are written and cleared together with their record.
- Identifiers come from the constant tables below, never from input.
- Schema existence is checked with `to_regclass` instead of catching
  "relation does not exist".
"""
from __future__ import annotations

import logging
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import fields
from typing import Any, Dict, Iterator, List, Sequence, Tuple

try:
    import psycopg
    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover - optional in some dev envs
    psycopg = None  # type: ignore
    HAVE_PSYCOPG = False

from .domain import FOREIGN_KEYS, FORWARD_ORDER, MODEL_BY_KIND, AttendanceEntry, EntityKind
from .ports import StoreConstraintError, StoreError

logger = logging.getLogger("classboard.migration.repo_db")

ENTRIES_TABLE = "attendance_entries"

# Attributes kept outside the entity's own table.
_NOT_STORED = {
    EntityKind.CLASS: {"enrolled_students"},
    EntityKind.ATTENDANCE_RECORD: {"attendance_data"},
}
_INT_COLUMNS = {"capacity", "day_of_week", "total_points", "max_score"}
_FLOAT_COLUMNS = {"score", "percentage"}
_ARRAY_COLUMNS = {"participants", "topics", "resources"}
_BOOL_COLUMNS = {"cancelled"}


def table_name(kind: EntityKind) -> str:
    return kind.collection


def columns(kind: EntityKind) -> Tuple[str, ...]:
    skip = _NOT_STORED.get(kind, set())
    return tuple(f.name for f in fields(MODEL_BY_KIND[kind]) if f.name not in skip)


def _column_type(name: str) -> str:
    if name in _INT_COLUMNS:
        return "integer"
    if name in _FLOAT_COLUMNS:
        return "double precision"
    if name in _ARRAY_COLUMNS:
        return "text[]"
    if name in _BOOL_COLUMNS:
        return "boolean"
    return "text"


def _q(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def create_table_sql(kind: EntityKind) -> str:
    parts = []
    for name in columns(kind):
        decl = f"{_q(name)} {_column_type(name)}"
        if name == "id":
            decl += " primary key"
        parts.append(decl)
    for fk in FOREIGN_KEYS:
        if fk.child is kind and not fk.per_entry:
            parts.append(f"foreign key ({_q(fk.attr)}) references {_q(table_name(fk.parent))} (\"id\")")
    return f"create table if not exists {_q(table_name(kind))} ({', '.join(parts)})"


def create_entries_sql() -> str:
    return (
        f"create table if not exists {_q(ENTRIES_TABLE)} ("
        '"id" text primary key, '
        f'"attendance_record_id" text not null references {_q(table_name(EntityKind.ATTENDANCE_RECORD))} ("id") on delete cascade, '
        f'"student_id" text not null references {_q(table_name(EntityKind.STUDENT))} ("id"), '
        '"status" text not null, '
        '"notes" text, '
        '"position" integer not null)'
    )


def schema_statements() -> List[str]:
    """DDL for every table in dependency order (idempotent)."""
    statements = []
    for kind in FORWARD_ORDER:
        statements.append(create_table_sql(kind))
        if kind is EntityKind.ATTENDANCE_RECORD:
            statements.append(create_entries_sql())
    return statements


def _translate(exc: Exception) -> StoreError:
    integrity = getattr(psycopg, "IntegrityError", None)
    if integrity is not None and isinstance(exc, integrity):
        return StoreConstraintError(str(exc))
    return StoreError(str(exc))


class _PgTransaction:
    def __init__(self, cur: Any) -> None:
        self._cur = cur

    def execute(self, statement: str) -> None:
        self._cur.execute(statement)

    def delete_all(self, kind: EntityKind) -> int:
        if kind is EntityKind.ATTENDANCE_RECORD:
            self._cur.execute(f"delete from {_q(ENTRIES_TABLE)}")
        self._cur.execute(f"delete from {_q(table_name(kind))}")
        return max(int(getattr(self._cur, "rowcount", 0) or 0), 0)

    def insert_many(self, kind: EntityKind, rows: Sequence[Any]) -> int:
        if not rows:
            return 0
        cols = columns(kind)
        statement = (
            f"insert into {_q(table_name(kind))} ({', '.join(_q(c) for c in cols)}) "
            f"values ({', '.join(['%s'] * len(cols))})"
        )
        params = []
        for row in rows:
            params.append(tuple(_to_db(getattr(row, c)) for c in cols))
        self._cur.executemany(statement, params)
        if kind is EntityKind.ATTENDANCE_RECORD:
            entries = []
            for row in rows:
                for position, entry in enumerate(row.attendance_data):
                    entries.append(
                        (f"{row.id}:{position}", row.id, entry.student_id, entry.status, entry.notes, position)
                    )
            if entries:
                self._cur.executemany(
                    f"insert into {_q(ENTRIES_TABLE)} "
                    '("id", "attendance_record_id", "student_id", "status", "notes", "position") '
                    "values (%s, %s, %s, %s, %s, %s)",
                    entries,
                )
        return len(rows)


def _to_db(value: Any) -> Any:
    if isinstance(value, tuple):
        return list(value)
    return value


class PostgresMigrationStore:
    """`MigrationStore` over a Postgres database reachable via `dsn`."""

    def __init__(self, dsn: str, *, connect_timeout: int = 10) -> None:
        if not HAVE_PSYCOPG:
            raise RuntimeError("psycopg3 is required for PostgresMigrationStore")
        if not dsn:
            raise ValueError("dsn must not be empty")
        self._dsn = dsn
        self._connect_timeout = connect_timeout

    def _connect(self):
        return psycopg.connect(self._dsn, autocommit=True, connect_timeout=self._connect_timeout)

    def _all_tables(self) -> List[str]:
        names = [table_name(kind) for kind in EntityKind]
        names.append(ENTRIES_TABLE)
        return names

    def is_initialized(self) -> bool:
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    for name in self._all_tables():
                        cur.execute("select to_regclass(%s)", (f"public.{name}",))
                        row = cur.fetchone()
                        if not row or row[0] is None:
                            return False
        except Exception as exc:
            raise _translate(exc) from exc
        return True

    def ensure_schema(self) -> None:
        with self.transaction() as tx:
            for statement in schema_statements():
                tx.execute(statement)
        logger.info("roster schema ensured tables=%s", len(self._all_tables()))

    def read_all(self, kind: EntityKind) -> List[Any]:
        cols = columns(kind)
        model = MODEL_BY_KIND[kind]
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"select {', '.join(_q(c) for c in cols)} from {_q(table_name(kind))} order by \"id\""
                    )
                    rows = cur.fetchall() or []
                    entries: Dict[str, List[AttendanceEntry]] = defaultdict(list)
                    if kind is EntityKind.ATTENDANCE_RECORD:
                        cur.execute(
                            f'select "attendance_record_id", "student_id", "status", "notes" '
                            f'from {_q(ENTRIES_TABLE)} order by "attendance_record_id", "position"'
                        )
                        for record_id, student_id, status, notes in cur.fetchall() or []:
                            entries[record_id].append(AttendanceEntry(student_id=student_id, status=status, notes=notes))
        except Exception as exc:
            raise _translate(exc) from exc
        result = []
        for row in rows:
            values = dict(zip(cols, row))
            if kind is EntityKind.ATTENDANCE_RECORD:
                values["attendance_data"] = tuple(entries.get(values["id"], ()))
            result.append(model(**values))
        return result

    def count(self, kind: EntityKind) -> int:
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(f"select count(*) from {_q(table_name(kind))}")
                    row = cur.fetchone()
        except Exception as exc:
            raise _translate(exc) from exc
        return int(row[0]) if row else 0

    @contextmanager
    def transaction(self) -> Iterator[_PgTransaction]:
        try:
            conn = self._connect()
        except Exception as exc:
            raise _translate(exc) from exc
        try:
            with conn.transaction():
                with conn.cursor() as cur:
                    yield _PgTransaction(cur)
        except Exception as exc:
            error_type = getattr(psycopg, "Error", None)
            if error_type is not None and isinstance(exc, error_type):
                raise _translate(exc) from exc
            raise
        finally:
            conn.close()


__all__ = [
    "ENTRIES_TABLE",
    "HAVE_PSYCOPG",
    "PostgresMigrationStore",
    "columns",
    "create_table_sql",
    "schema_statements",
    "table_name",
]
