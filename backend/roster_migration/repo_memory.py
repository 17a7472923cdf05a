"""
In-memory migration store for tests, dry runs and the self-test harness.

Design:
    - Tables are dicts keyed by entity id, one per entity kind, in insertion order.
    - `transaction()` copies the tables on begin and swaps them in on commit;
      an exception discards the copy, so readers never see partial writes.
    - Foreign keys are enforced on insert and deletes are RESTRICTed while a
      child row still references the table, so ordering bugs surface here the
      same way they would against Postgres.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence

from .domain import FOREIGN_KEYS, EntityKind, references
from .ports import StoreConstraintError, StoreError

_Tables = Dict[EntityKind, Dict[str, Any]]


def _empty_tables() -> _Tables:
    return {kind: {} for kind in EntityKind}


class _MemoryTransaction:
    def __init__(self, tables: _Tables) -> None:
        self._tables = tables

    def delete_all(self, kind: EntityKind) -> int:
        for fk in FOREIGN_KEYS:
            if fk.parent is not kind or fk.child is kind:
                continue
            for child in self._tables[fk.child].values():
                for edge, ref in references(child):
                    if edge is fk and isinstance(ref, str) and ref in self._tables[kind]:
                        raise StoreConstraintError(
                            f"delete from {kind.collection} violates foreign key "
                            f"{fk.child.collection}.{fk.field}"
                        )
        removed = len(self._tables[kind])
        self._tables[kind] = {}
        return removed

    def insert_many(self, kind: EntityKind, rows: Sequence[Any]) -> int:
        table = self._tables[kind]
        for row in rows:
            if getattr(row, "kind", None) is not kind:
                raise StoreError(f"row of type {type(row).__name__} cannot be stored in {kind.collection}")
            if not isinstance(row.id, str) or not row.id:
                raise StoreConstraintError(f"{kind.collection}.id must not be null")
            if row.id in table:
                raise StoreConstraintError(f"duplicate key {row.id!r} in {kind.collection}")
            for fk, ref in references(row):
                if ref is None:
                    continue
                if not isinstance(ref, str) or ref not in self._tables[fk.parent]:
                    raise StoreConstraintError(
                        f"insert into {kind.collection} violates foreign key {fk.field}={ref!r}"
                    )
            table[row.id] = row
        return len(rows)


class InMemoryMigrationStore:
    """Dict-backed `MigrationStore`.

    Parameters:
        initialized: False models a fresh database without tables; the first
            `ensure_schema()` call creates them.
    """

    def __init__(self, *, initialized: bool = True) -> None:
        self._lock = threading.Lock()
        self._initialized = initialized
        self._tables: _Tables = _empty_tables()
        self.commits = 0
        self.rollbacks = 0

    def is_initialized(self) -> bool:
        return self._initialized

    def ensure_schema(self) -> None:
        with self._lock:
            self._initialized = True

    def read_all(self, kind: EntityKind) -> List[Any]:
        with self._lock:
            return list(self._tables[kind].values())

    def count(self, kind: EntityKind) -> int:
        with self._lock:
            return len(self._tables[kind])

    def counts(self) -> Dict[str, int]:
        with self._lock:
            return {kind.collection: len(rows) for kind, rows in self._tables.items()}

    @contextmanager
    def transaction(self) -> Iterator[_MemoryTransaction]:
        if not self._initialized:
            raise StoreError("schema not initialized; call ensure_schema() first")
        with self._lock:
            working = {kind: dict(rows) for kind, rows in self._tables.items()}
        try:
            yield _MemoryTransaction(working)
        except BaseException:
            self.rollbacks += 1
            raise
        with self._lock:
            self._tables = working
            self.commits += 1

    def seed(self, kind: EntityKind, rows: Sequence[Any]) -> None:
        """Insert rows outside the migration path (test fixtures)."""
        with self.transaction() as tx:
            tx.insert_many(kind, rows)

    def get(self, kind: EntityKind, entity_id: str) -> Optional[Any]:
        with self._lock:
            return self._tables[kind].get(entity_id)


__all__ = ["InMemoryMigrationStore"]
