"""
Tests for pipeline/ledger.py: per-run task accounting.
"""
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent))

from pipeline.ledger import STATUS_FAILURE, STATUS_SUCCESS, TaskLedger
from pipeline.periods import Period
from pipeline.records import METHOD_PRIMARY, METHOD_SECONDARY

JUL = Period(7, 2025)
AUG = Period(8, 2025)


class TestTaskLedger:
    def test_primary_success(self):
        ledger = TaskLedger()
        task = ledger.record_success(JUL, "BR")
        assert (task.status, task.method, task.error) == (STATUS_SUCCESS, METHOD_PRIMARY, None)
        assert len(ledger) == 1

    def test_secondary_success_updates_in_place(self):
        ledger = TaskLedger()
        ledger.record_failure(JUL, "ES", "section 'points' not found")
        ledger.mark_secondary_success(JUL, "ES")
        assert len(ledger) == 1
        task = ledger.get(JUL, "ES")
        assert task.status == STATUS_SUCCESS
        assert task.method == METHOD_SECONDARY
        assert task.error is None

    def test_secondary_failure_appends_message(self):
        ledger = TaskLedger()
        ledger.record_failure(JUL, "ES", "HTTP 404")
        ledger.mark_secondary_failure(JUL, "ES", "Period JUL 25 not found")
        task = ledger.get(JUL, "ES")
        assert task.status == STATUS_FAILURE
        assert task.error == "HTTP 404 | portal: Period JUL 25 not found"
        assert task.error.index("HTTP 404") < task.error.index("portal")

    def test_duplicate_task_rejected(self):
        ledger = TaskLedger()
        ledger.record_success(JUL, "BR")
        with pytest.raises(ValueError):
            ledger.record_failure(JUL, "BR", "again")

    def test_counts(self):
        ledger = TaskLedger()
        ledger.record_success(JUL, "BR")
        ledger.record_failure(AUG, "BR", "x")
        ledger.record_failure(JUL, "SP", "y")
        ledger.mark_secondary_success(JUL, "SP")
        assert ledger.counts_by_method() == {METHOD_PRIMARY: 1, METHOD_SECONDARY: 1}
        assert ledger.success_count() == 2
        assert ledger.failure_count() == 1
        assert [t.key for t in ledger.failures()] == [(AUG, "BR")]

    def test_order_preserved(self):
        ledger = TaskLedger()
        ledger.record_success(AUG, "BR")
        ledger.record_success(JUL, "BR")
        assert [t.period for t in ledger] == [AUG, JUL]

    def test_to_dict(self):
        ledger = TaskLedger()
        task = ledger.record_failure(JUL, "BR", "boom")
        assert task.to_dict() == {
            "period": "07/2025", "region": "BR", "status": "failure",
            "method": "primary", "error": "boom",
        }
