"""
Batch upsert writer.

Rows are written in fixed-size batches, one multi-row
INSERT ... ON CONFLICT DO UPDATE per batch, each batch in its own
transaction. When a batch statement fails (one row violating a constraint
is enough to reject the whole statement) the batch is re-issued row by row
so the bad row fails alone and the rest land.

The bulk statement cannot tell inserts from updates, so by default every
written row is reported as created (counts_approximate=True). With
exact_counts=True the writer first selects which keys already exist and
reports exact created/updated figures at the cost of one extra query per
batch.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Type

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import SQLModel

from lmssync.models.lms import CourseProperty, LmsCourse, LmsEnrollment, LmsGroup, LmsUser
from lmssync.timeutil import utcnow

logger = logging.getLogger(__name__)

ProgressFn = Callable[[int, int], None]


@dataclass(frozen=True)
class UpsertSpec:
    model: Type[SQLModel]
    key: str
    # Written on insert, never overwritten on conflict.
    insert_only: Tuple[str, ...] = ()


UPSERT_SPECS: Dict[str, UpsertSpec] = {
    "users": UpsertSpec(LmsUser, "id", insert_only=("created_at_lms",)),
    "groups": UpsertSpec(LmsGroup, "id"),
    "courses": UpsertSpec(LmsCourse, "id"),
    "course-properties": UpsertSpec(CourseProperty, "course_id"),
    "enrollments": UpsertSpec(
        LmsEnrollment, "id", insert_only=("user_id", "course_id", "enrolled_at", "started_at"),
    ),
}


@dataclass
class WriteResult:
    processed: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0
    counts_approximate: bool = True
    failed_keys: List[Any] = field(default_factory=list)

    def merge(self, other: "WriteResult") -> None:
        self.processed += other.processed
        self.created += other.created
        self.updated += other.updated
        self.failed += other.failed
        self.counts_approximate = self.counts_approximate and other.counts_approximate
        self.failed_keys.extend(other.failed_keys)


def build_upsert(engine, table, rows: Sequence[Dict[str, Any]], key: str, insert_only=()):
    """Build a dialect-specific multi-row upsert for rows.

    Every column present in the rows except the key and insert_only columns
    is overwritten on conflict.
    """
    dialect = engine.dialect.name
    if dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    elif dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect in ("mysql", "mariadb"):
        from sqlalchemy.dialects.mysql import insert
    else:
        raise NotImplementedError(f"Upsert not supported for dialect {dialect!r}")

    stmt = insert(table).values(list(rows))
    update_cols = [c for c in rows[0] if c != key and c not in insert_only]
    if dialect in ("mysql", "mariadb"):
        if not update_cols:
            update_cols = [key]
        return stmt.on_duplicate_key_update({c: stmt.inserted[c] for c in update_cols})
    if not update_cols:
        return stmt.on_conflict_do_nothing(index_elements=[key])
    return stmt.on_conflict_do_update(
        index_elements=[key], set_={c: stmt.excluded[c] for c in update_cols}
    )


class BatchUpsertWriter:
    """Persist normalized rows for one entity type at a time."""

    def __init__(self, engine, batch_size: int = 100, exact_counts: bool = False):
        self.engine = engine
        self.batch_size = batch_size
        self.exact_counts = exact_counts

    def write(
        self,
        entity_type: str,
        rows: Sequence[Dict[str, Any]],
        progress: Optional[ProgressFn] = None,
    ) -> WriteResult:
        """Upsert rows for entity_type.

        processed counts every row attempted; failed counts rows rejected on
        the row-by-row fallback. Never raises for row-level errors.

        Args:
            entity_type: Key into UPSERT_SPECS.
            rows: Dicts keyed by column name; all rows of one call must carry
                the same keys.
            progress: Called with (rows_done, rows_total) after each batch.
        """
        spec = UPSERT_SPECS[entity_type]
        result = WriteResult(counts_approximate=not self.exact_counts)
        total = len(rows)
        now = utcnow()
        for start in range(0, total, self.batch_size):
            batch = [dict(row, synced_at=now) for row in rows[start:start + self.batch_size]]
            result.merge(self._write_batch(entity_type, spec, batch))
            if progress is not None:
                progress(min(start + self.batch_size, total), total)
        return result

    def _existing_keys(self, conn, spec: UpsertSpec, keys: List[Any]) -> set:
        column = spec.model.__table__.c[spec.key]
        return set(conn.execute(select(column).where(column.in_(keys))).scalars())

    def _write_batch(self, entity_type: str, spec: UpsertSpec, batch: List[Dict[str, Any]]) -> WriteResult:
        table = spec.model.__table__
        try:
            with self.engine.begin() as conn:
                existing = (
                    self._existing_keys(conn, spec, [r[spec.key] for r in batch])
                    if self.exact_counts else set()
                )
                conn.execute(build_upsert(self.engine, table, batch, spec.key, spec.insert_only))
        except SQLAlchemyError as exc:
            logger.warning(
                "Batch upsert of %d %s failed, retrying row by row: %s",
                len(batch), entity_type, exc.__class__.__name__,
            )
            return self._write_rows(entity_type, spec, batch)
        return self._counts(batch, spec, existing, failed_keys=[])

    def _write_rows(self, entity_type: str, spec: UpsertSpec, batch: List[Dict[str, Any]]) -> WriteResult:
        table = spec.model.__table__
        written: List[Dict[str, Any]] = []
        existing: set = set()
        failed_keys: List[Any] = []
        for row in batch:
            try:
                with self.engine.begin() as conn:
                    if self.exact_counts and self._existing_keys(conn, spec, [row[spec.key]]):
                        existing.add(row[spec.key])
                    conn.execute(build_upsert(self.engine, table, [row], spec.key, spec.insert_only))
            except SQLAlchemyError as exc:
                logger.error("Failed to upsert %s %s: %s", entity_type, row.get(spec.key), exc)
                failed_keys.append(row.get(spec.key))
                continue
            written.append(row)
        result = self._counts(written, spec, existing, failed_keys)
        result.processed = len(batch)
        return result

    def _counts(self, written, spec: UpsertSpec, existing: set, failed_keys: List[Any]) -> WriteResult:
        if self.exact_counts:
            updated = sum(1 for r in written if r[spec.key] in existing)
            created = len(written) - updated
        else:
            created, updated = len(written), 0
        return WriteResult(
            processed=len(written) + len(failed_keys),
            created=created,
            updated=updated,
            failed=len(failed_keys),
            counts_approximate=not self.exact_counts,
            failed_keys=failed_keys,
        )
