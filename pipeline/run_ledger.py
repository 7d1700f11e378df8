"""
Append-only history of refresh runs.

``refresh_indices.py`` appends one JSON line per run to
``logs/ingest/ledger.jsonl``, whatever the outcome::

    {"run_id": "...", "exit_code": 1, "args": {...},
     "steps": {"icf_primary": {"status": "completed", ...}},
     "families": {"icf": {"success": 11, "failure": 1, ...}}}

read_ledger() returns the newest entries, e.g. for a quick look at the
last few scheduled runs.
"""

from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any

from pipeline.logging import PipelineLogger, StepReport
from utils.common import utc_now_iso

LEDGER_NAME = "ledger.jsonl"


def _step_entry(rpt: StepReport) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "status": rpt.status,
        "elapsed": round(rpt.elapsed_seconds, 1),
        "processed": rpt.items_processed,
        "skipped": rpt.items_skipped,
        "errored": rpt.items_errored,
    }
    if rpt.metrics:
        entry["metrics"] = dict(rpt.metrics)
    cats = rpt.skip_counts_by_category()
    if cats:
        entry["skip_categories"] = cats
    return entry


def _family_entry(result: dict[str, Any]) -> dict[str, Any]:
    return {
        "period_start": result.get("period_start"),
        "period_end": result.get("period_end"),
        "mode": result.get("mode"),
        "success": result.get("success_count", 0),
        "failure": result.get("failure_count", 0),
        "by_method": result.get("counts_by_method", {}),
    }


def append_to_ledger(
    pl: PipelineLogger,
    exit_code: int,
    ledger_path: Path | None = None,
) -> Path:
    """Append this run's record and return the ledger path.

    ``ledger_path`` defaults to ``<logs root>/ledger.jsonl``.
    """
    ledger_path = ledger_path or pl.logs_root / LEDGER_NAME
    record = {
        "run_id": pl.run_id,
        "timestamp": utc_now_iso(),
        "total_seconds": round(time.monotonic() - pl.run_start, 1),
        "exit_code": exit_code,
        "args": pl.args_dict,
        "steps": {name: _step_entry(rpt) for name, rpt in pl.get_reports().items()},
        "families": {name: _family_entry(res) for name, res in pl.results.items()},
    }
    ledger_path.parent.mkdir(parents=True, exist_ok=True)
    with open(ledger_path, "a", encoding="utf-8") as f:
        f.write(json.dumps(record, separators=(",", ":"), ensure_ascii=False) + "\n")
    return ledger_path


def read_ledger(ledger_path: Path | str, last: int | None = None) -> list[dict[str, Any]]:
    """Parsed ledger records, oldest first; ``last`` keeps only the newest N."""
    path = Path(ledger_path)
    if not path.exists():
        return []
    with open(path, encoding="utf-8") as f:
        records = [json.loads(line) for line in f if line.strip()]
    return records[-last:] if last else records
