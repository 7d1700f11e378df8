"""
Tests for pipeline/store.py: SQLite persistence of records and metadata.
"""
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent))

from pipeline.errors import PersistenceError
from pipeline.extract import MetadataEntry
from pipeline.periods import Period
from pipeline.records import METHOD_PRIMARY, METHOD_SECONDARY, CanonicalRecord
from pipeline.store import IndexStore, metadata_table, records_table
from utils.database import table_exists

JUL = Period(7, 2025)
AUG = Period(8, 2025)


def _columns(conn, table):
    return {row[1]: row[2] for row in conn.execute(f"PRAGMA table_info({table})")}


def _icf(period, region="BR", method=METHOD_PRIMARY, points="101,2"):
    return CanonicalRecord(
        family="icf", period=period, region=region, method=method,
        values={
            "nc_pontos": points, "ate_10_sm_pontos": "99,8", "mais_de_10_sm_pontos": "110,5",
            "nc_percentual": "0,5", "ate_10_sm_percentual": "0,3",
            "mais_de_10_sm_percentual": "1,1",
        },
    )


def _entry(name="Bom"):
    return MetadataEntry(
        index_category="Renda Atual", field_name=name,
        raw_values={"total": "30,1", "ate_10_sm": "28,0", "mais_de_10_sm": "40,2"},
    )


class TestSchema:
    def test_tables_per_family(self, store):
        for family in ("icf", "icec", "peic"):
            assert table_exists(store.conn, records_table(family))
            assert table_exists(store.conn, metadata_table(family))

    def test_column_types_follow_field_kind(self, store):
        icec = _columns(store.conn, "icec_records")
        icf = _columns(store.conn, "icf_records")
        assert icec["duraveis"] == "REAL"
        assert icf["nc_pontos"] == "TEXT"

    def test_metadata_slot_columns(self, store):
        cols = set(_columns(store.conn, "peic_metadata"))
        assert {"total", "ate_10_sm", "mais_de_10_sm", "numero_absoluto",
                "is_index", "survey_kind", "record_id"} <= cols

    def test_reopen_file_database(self, tmp_path):
        db = tmp_path / "indices.sqlite"
        with IndexStore(db) as s:
            s.save(_icf(JUL))
        with IndexStore(db) as s:
            assert s.record_count("icf") == 1


class TestRecords:
    def test_save_batch_returns_ids_in_order(self, store):
        ids = store.save_batch([_icf(JUL), _icf(AUG)])
        rows = store.find_by_ids("icf", ids)
        assert [(r["month"], r["year"]) for r in rows] == [(7, 2025), (8, 2025)]

    def test_empty_batch(self, store):
        assert store.save_batch([]) == []

    def test_upsert_keeps_one_row_per_key(self, store):
        first = store.save(_icf(JUL))
        second = store.save(_icf(JUL, method=METHOD_SECONDARY, points="102,0"))
        assert first == second
        row = store.find_by_period_region("icf", JUL, "BR")
        assert row["method"] == METHOD_SECONDARY
        assert row["nc_pontos"] == "102,0"
        assert store.record_count("icf") == 1

    def test_find_missing(self, store):
        assert store.find_by_period_region("icf", JUL, "SP") is None

    def test_persisted_keys(self, store):
        store.save_batch([_icf(JUL), _icf(JUL, region="SP")])
        assert store.persisted_keys("icf") == {(JUL, "BR"), (JUL, "SP")}

    def test_numeric_family(self, store):
        record = CanonicalRecord(
            family="icec", period=JUL, region="BR", method=METHOD_PRIMARY,
            values={"icec": 110.5, "ate_50": 108.2, "mais_de_50": 115.0,
                    "semiduraveis": 109.1, "nao_duraveis": 111.3, "duraveis": 107.4},
        )
        store.save(record)
        assert store.find_by_period_region("icec", JUL, "BR")["icec"] == pytest.approx(110.5)

    def test_created_at_is_set(self, store):
        store.save(_icf(JUL))
        assert store.find_by_period_region("icf", JUL, "BR")["created_at"].endswith("+00:00")


class TestMetadata:
    def test_save_and_count(self, store):
        record_id = store.save(_icf(JUL))
        assert store.save_metadata("icf", record_id, [_entry("Bom"), _entry("Mau")]) == 2
        assert store.metadata_count("icf", record_id) == 2
        rows = store.find_metadata("icf", record_id)
        assert rows[0]["field_name"] == "Bom"
        assert rows[0]["total"] == "30,1"

    def test_empty_entries(self, store):
        record_id = store.save(_icf(JUL))
        assert store.save_metadata("icf", record_id, []) == 0

    def test_unknown_parent_rejected(self, store):
        with pytest.raises(PersistenceError):
            store.save_metadata("icf", 999, [_entry()])
        assert store.conn.execute("SELECT COUNT(*) FROM icf_metadata").fetchone()[0] == 0

    def test_delete_all_removes_metadata(self, store):
        record_id = store.save(_icf(JUL))
        store.save_metadata("icf", record_id, [_entry()])
        store.save(_icf(JUL, region="SP"))
        assert store.delete_all("icf") == 2
        assert store.record_count("icf") == 0
        assert store.conn.execute("SELECT COUNT(*) FROM icf_metadata").fetchone()[0] == 0

    def test_delete_all_leaves_other_families(self, store):
        store.save(_icf(JUL))
        store.delete_all("peic")
        assert store.record_count("icf") == 1
