"""
Per-run step logs for index ingestion.

Each coordinator run is split into three steps per family:
``<family>_primary`` (spreadsheet pass), ``<family>_secondary`` (portal
fallback) and ``<family>_metadata`` (sub-indicator reconciliation).
PipelineLogger gives every step its own log file under
``logs/ingest/<run_id>/`` and a StepReport counting the (period, region)
pairs it handled, skipped or failed.  ``summary.json`` closes the run.

    from pipeline.logging import PipelineLogger

    pl = PipelineLogger()
    with pl.step("icf_primary") as report:
        report.items_processed += 1
    pl.write_summary()

Skip categories used by the coordinator and the CLI:
    already_persisted   pair already stored, gap mode left it out
    metadata_present    record already has metadata
    file_missing        record or temp spreadsheet gone before reconciliation
    no_fallback_needed  every pair succeeded on the spreadsheet pass
    user_skipped        step disabled from the command line (--dry-run)
"""

from __future__ import annotations

import json
import logging
import time
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

LOG_FORMAT = "%(asctime)s  %(levelname)-7s  %(name)s  %(message)s"

# errors listed in a step log footer before truncating
_FOOTER_ERRORS = 20


@dataclass
class SkipRecord:
    category: str
    detail: str
    item: str = ""         # "BR 07/2025"

    def to_dict(self) -> dict[str, str]:
        d = {"category": self.category, "detail": self.detail}
        if self.item:
            d["item"] = self.item
        return d


@dataclass
class StepReport:
    """Counters and notes for one ingestion step."""

    step_name: str
    status: str = "not_started"               # started | completed | failed | skipped
    elapsed_seconds: float = 0.0
    items_processed: int = 0
    items_skipped: int = 0
    items_errored: int = 0
    skips: list[SkipRecord] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    metrics: dict[str, Any] = field(default_factory=dict)
    detail: str = ""

    def add_skip(self, category: str, detail: str, item: str = "") -> None:
        self.skips.append(SkipRecord(category, detail, item))
        self.items_skipped += 1

    def add_error(self, message: str) -> None:
        self.errors.append(message)
        self.items_errored += 1

    def skip_counts_by_category(self) -> dict[str, int]:
        return dict(Counter(s.category for s in self.skips))

    def console_summary(self) -> str:
        """e.g. ``"3 pairs | 1 skipped (1 already persisted) | 2 failed | saved: 3"``."""
        parts = [f"{self.items_processed} pairs"]
        if self.items_skipped:
            cats = ", ".join(
                f"{n} {cat.replace('_', ' ')}"
                for cat, n in sorted(self.skip_counts_by_category().items())
            )
            parts.append(f"{self.items_skipped} skipped ({cats})")
        if self.items_errored:
            parts.append(f"{self.items_errored} failed")
        parts.extend(f"{k}: {v}" for k, v in self.metrics.items())
        if self.detail:
            parts.append(self.detail)
        return " | ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "step_name": self.step_name,
            "status": self.status,
            "elapsed_seconds": round(self.elapsed_seconds, 2),
            "items_processed": self.items_processed,
            "items_skipped": self.items_skipped,
            "items_errored": self.items_errored,
            "metrics": dict(self.metrics),
        }
        if self.detail:
            d["detail"] = self.detail
        if self.skips:
            d["skips"] = [s.to_dict() for s in self.skips]
        if self.errors:
            d["errors"] = list(self.errors)
        return d


class PipelineLogger:
    """Owns ``logs/ingest/<run_id>/`` for one refresh run.

    ``results`` is filled by the CLI with each family's IngestionResult
    dict and ``args_dict`` with the resolved command line; both end up in
    ``summary.json`` and the run ledger.
    """

    def __init__(self, logs_dir: Path | str = "logs/ingest") -> None:
        self.logs_root = Path(logs_dir)
        self.run_id = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")
        self.run_dir = self.logs_root / self.run_id
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self.run_start = time.monotonic()
        self.args_dict: dict[str, Any] = {}
        self.results: dict[str, Any] = {}
        self._reports: dict[str, StepReport] = {}

    def _open_handler(self, step_name: str) -> logging.FileHandler:
        handler = logging.FileHandler(self.run_dir / f"{step_name}.log", encoding="utf-8")
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))
        logging.getLogger().addHandler(handler)
        return handler

    @staticmethod
    def _write_footer(handler: logging.FileHandler, report: StepReport) -> None:
        lines = [
            "",
            "=" * 60,
            f"{report.step_name}: {report.status} in {report.elapsed_seconds:.1f}s",
            f"  pairs processed {report.items_processed}, "
            f"skipped {report.items_skipped}, failed {report.items_errored}",
        ]
        for cat, n in sorted(report.skip_counts_by_category().items()):
            lines.append(f"  skip {cat}: {n}")
        for err in report.errors[:_FOOTER_ERRORS]:
            lines.append(f"  - {err}")
        if len(report.errors) > _FOOTER_ERRORS:
            lines.append(f"  ... and {len(report.errors) - _FOOTER_ERRORS} more")
        lines.append("=" * 60)
        handler.stream.write("\n".join(lines) + "\n")

    @contextmanager
    def step(self, step_name: str) -> Iterator[StepReport]:
        """Log a block to ``<step_name>.log``; an escaping exception marks it failed."""
        handler = self._open_handler(step_name)
        report = StepReport(step_name=step_name, status="started")
        self._reports[step_name] = report
        t0 = time.monotonic()
        try:
            yield report
        except BaseException as exc:
            report.status = "failed"
            report.detail = report.detail or f"{type(exc).__name__}: {exc}"
            raise
        finally:
            report.elapsed_seconds = time.monotonic() - t0
            if report.status == "started":
                report.status = "completed"
            if report.items_skipped or report.items_errored:
                print(f"  [{step_name}] {report.console_summary()}", flush=True)
            logging.getLogger().removeHandler(handler)
            self._write_footer(handler, report)
            handler.close()

    def record_user_skip(self, step_name: str, reason: str) -> None:
        """Record a step that never ran because of a command-line flag."""
        report = StepReport(step_name=step_name, status="skipped")
        report.add_skip("user_skipped", reason)
        self._reports[step_name] = report

    def get_reports(self) -> dict[str, StepReport]:
        return dict(self._reports)

    @property
    def summary_path(self) -> Path:
        return self.run_dir / "summary.json"

    def write_summary(self) -> Path:
        """Write ``summary.json`` for the run and return its path."""
        summary = {
            "run_id": self.run_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "total_elapsed_seconds": round(time.monotonic() - self.run_start, 2),
            "args": self.args_dict,
            "steps": {name: rpt.to_dict() for name, rpt in self._reports.items()},
            "results": self.results,
        }
        with open(self.summary_path, "w", encoding="utf-8") as f:
            json.dump(summary, f, indent=2, ensure_ascii=False)
        return self.summary_path
