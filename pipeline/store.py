"""
SQLite persistence for canonical records and their metadata.

Per family there are two tables::

    <family>_records    one row per (month, year, region): method, the
                        family's canonical columns, created_at
    <family>_metadata   sub-indicator rows with a record_id foreign key,
                        the family's slot columns, is_index, survey_kind

Batch writes run in a single transaction; any sqlite3.Error is re-raised
as PersistenceError with the transaction rolled back.

Usage::

    store = IndexStore("cnc_indices.sqlite")
    ids = store.save_batch(records)
    store.save_metadata("icf", ids[0], entries)
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator

from pipeline.errors import PersistenceError
from pipeline.extract import MetadataEntry
from pipeline.families import FAMILIES, FIELD_NUMBER, FamilySchema, get_family
from pipeline.periods import Period
from pipeline.records import CanonicalRecord
from utils.common import utc_now_iso
from utils.database import batch_insert, create_connection, get_table_count, table_exists

logger = logging.getLogger(__name__)


def records_table(family: str) -> str:
    return f"{family}_records"


def metadata_table(family: str) -> str:
    return f"{family}_metadata"


def _records_ddl(schema: FamilySchema) -> str:
    col_type = "REAL" if schema.field_kind == FIELD_NUMBER else "TEXT"
    value_cols = ",\n".join(f"    {name} {col_type}" for name in schema.canonical_fields)
    return f"""
CREATE TABLE IF NOT EXISTS {records_table(schema.name)} (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    month INTEGER NOT NULL,
    year INTEGER NOT NULL,
    region TEXT NOT NULL,
    method TEXT NOT NULL,
{value_cols},
    created_at TEXT NOT NULL,
    UNIQUE (month, year, region)
)"""


def _metadata_ddl(schema: FamilySchema) -> str:
    slot_cols = ",\n".join(f"    {name} TEXT" for name in schema.slots)
    return f"""
CREATE TABLE IF NOT EXISTS {metadata_table(schema.name)} (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    record_id INTEGER NOT NULL
        REFERENCES {records_table(schema.name)}(id) ON DELETE CASCADE,
    index_category TEXT NOT NULL,
    field_name TEXT NOT NULL,
{slot_cols},
    is_index INTEGER NOT NULL DEFAULT 0,
    survey_kind TEXT,
    created_at TEXT NOT NULL
)"""


class IndexStore:
    """Record and metadata storage for every index family."""

    def __init__(
        self,
        db_path: Path | str = "cnc_indices.sqlite",
        families: Iterable[FamilySchema] | None = None,
    ):
        self.db_path = db_path
        try:
            self.conn = create_connection(db_path)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Cannot open database {db_path}: {exc}") from exc
        self.families = {f.name: f for f in (families or FAMILIES.values())}
        self.ensure_schema()

    def __enter__(self) -> "IndexStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self.conn.close()

    @contextmanager
    def _transaction(self, action: str) -> Iterator[sqlite3.Connection]:
        try:
            yield self.conn
            self.conn.commit()
        except sqlite3.Error as exc:
            self.conn.rollback()
            raise PersistenceError(f"{action} failed: {exc}") from exc

    def _schema(self, family: str) -> FamilySchema:
        return self.families.get(family) or get_family(family)

    def ensure_schema(self) -> None:
        with self._transaction("Schema creation") as conn:
            for schema in self.families.values():
                conn.execute(_records_ddl(schema))
                conn.execute(_metadata_ddl(schema))
                conn.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{schema.name}_metadata_record "
                    f"ON {metadata_table(schema.name)}(record_id)"
                )

    # ── records ───────────────────────────────────────────────────────────

    def _upsert(self, conn: sqlite3.Connection, record: CanonicalRecord) -> int:
        schema = self._schema(record.family)
        fields = list(schema.canonical_fields)
        columns = ["month", "year", "region", "method", *fields, "created_at"]
        placeholders = ", ".join("?" for _ in columns)
        updates = ", ".join(f"{c} = excluded.{c}" for c in ["method", *fields])
        params = [
            record.period.month, record.period.year, record.region, record.method,
            *[record.values.get(f) for f in fields],
            utc_now_iso(),
        ]
        table = records_table(schema.name)
        conn.execute(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) "
            f"ON CONFLICT(month, year, region) DO UPDATE SET {updates}",
            params,
        )
        row = conn.execute(
            f"SELECT id FROM {table} WHERE month = ? AND year = ? AND region = ?",
            (record.period.month, record.period.year, record.region),
        ).fetchone()
        return row[0]

    def save(self, record: CanonicalRecord) -> int:
        """Insert or update one record; returns its id."""
        return self.save_batch([record])[0]

    def save_batch(self, records: list[CanonicalRecord]) -> list[int]:
        """Insert or update records in one transaction; ids in input order."""
        if not records:
            return []
        with self._transaction(f"Batch save of {len(records)} record(s)") as conn:
            ids = [self._upsert(conn, record) for record in records]
        logger.info("Saved %d record(s)", len(ids))
        return ids

    def find_by_ids(self, family: str, ids: Iterable[int]) -> list[dict]:
        id_list = list(ids)
        if not id_list:
            return []
        marks = ", ".join("?" for _ in id_list)
        try:
            rows = self.conn.execute(
                f"SELECT * FROM {records_table(family)} WHERE id IN ({marks}) ORDER BY id",
                id_list,
            ).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Lookup by id failed: {exc}") from exc
        return [dict(r) for r in rows]

    def find_by_period_region(self, family: str, period: Period, region: str) -> dict | None:
        try:
            row = self.conn.execute(
                f"SELECT * FROM {records_table(family)} "
                f"WHERE month = ? AND year = ? AND region = ?",
                (period.month, period.year, region),
            ).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Lookup by period failed: {exc}") from exc
        return dict(row) if row else None

    def persisted_keys(self, family: str) -> set[tuple[Period, str]]:
        """Every (period, region) already stored for the family."""
        try:
            rows = self.conn.execute(
                f"SELECT month, year, region FROM {records_table(family)}"
            ).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Listing stored periods failed: {exc}") from exc
        return {(Period(r["month"], r["year"]), r["region"]) for r in rows}

    def record_count(self, family: str) -> int:
        return get_table_count(self.conn, records_table(family))

    def delete_all(self, family: str) -> int:
        """Remove every record and metadata row of the family."""
        with self._transaction(f"Truncate of {family}") as conn:
            if table_exists(conn, metadata_table(family)):
                conn.execute(f"DELETE FROM {metadata_table(family)}")
            cur = conn.execute(f"DELETE FROM {records_table(family)}")
        logger.info("Deleted %d %s record(s)", cur.rowcount, family.upper())
        return cur.rowcount

    # ── metadata ──────────────────────────────────────────────────────────

    def save_metadata(self, family: str, record_id: int, entries: list[MetadataEntry]) -> int:
        """Insert metadata entries for one record in a single transaction."""
        if not entries:
            return 0
        schema = self._schema(family)
        columns = ["record_id", "index_category", "field_name", *schema.slots,
                   "is_index", "survey_kind", "created_at"]
        query = (
            f"INSERT INTO {metadata_table(family)} ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})"
        )
        now = utc_now_iso()
        rows = [
            (
                record_id, e.index_category, e.field_name,
                *[e.raw_values.get(slot, "") for slot in schema.slots],
                1 if e.is_index else 0, e.survey_kind, now,
            )
            for e in entries
        ]
        with self._transaction(f"Metadata save for {family} record {record_id}") as conn:
            inserted = batch_insert(conn, query, rows)
        return inserted

    def metadata_count(self, family: str, record_id: int) -> int:
        try:
            row = self.conn.execute(
                f"SELECT COUNT(*) FROM {metadata_table(family)} WHERE record_id = ?",
                (record_id,),
            ).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Metadata count failed: {exc}") from exc
        return row[0]

    def find_metadata(self, family: str, record_id: int) -> list[dict]:
        rows = self.conn.execute(
            f"SELECT * FROM {metadata_table(family)} WHERE record_id = ? ORDER BY id",
            (record_id,),
        ).fetchall()
        return [dict(r) for r in rows]
