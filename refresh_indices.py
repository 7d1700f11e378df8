#!/usr/bin/env python3
"""
Index Refresh Workflow

Runs the ingestion coordinator for each requested index family in turn:
1. Plan the (period, region) pairs (full range or only the gaps)
2. Download and parse the published spreadsheets
3. Retry failures through the members portal
4. Store sub-indicator metadata for spreadsheet successes

Usage:
    python refresh_indices.py                                # All families, env config
    python refresh_indices.py --families icf peic            # ICF and PEIC only
    python refresh_indices.py --mode truncate --families icec
    python refresh_indices.py --dry-run                      # Print the plan only
    python refresh_indices.py --history 5                    # Last five runs from the ledger
    python refresh_indices.py --schedule monthly --at-hour 06:00
    python refresh_indices.py --help                         # Show full options

Exit codes: 0 when every family finished without failures, 1 when any
(period, region) failed on both paths, 2 on a configuration error.
"""

import argparse
import json
import logging
import sys
import time
import urllib.request
from datetime import datetime, timedelta
from pathlib import Path
from urllib.parse import urlparse

from downloader.core import _close_session
from pipeline.coordinator import IngestionCoordinator, IngestionResult
from pipeline.errors import ConfigError, PersistenceError
from pipeline.families import get_family, validate_region
from pipeline.logging import LOG_FORMAT, PipelineLogger
from pipeline.periods import plan
from pipeline.run_ledger import LEDGER_NAME, append_to_ledger, read_ledger
from pipeline.store import IndexStore
from utils.config import FAMILY_NAMES, MODE_INCREMENTAL, MODE_TRUNCATE, IngestConfig

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_CONFIG = 2


class RefreshWorkflow:
    """Runs one coordinator per family and reports the combined outcome."""

    def __init__(self, families=None, mode=None, verbose=False, dry_run=False,
                 notify_url=None, db_path=None, config=None, logs_dir="logs/ingest"):
        """Initialize workflow state.

        Args:
            families:   Family names to run, in order (default: all three).
            mode:       "incremental" or "truncate"; overrides PROCESSING_METHOD.
            verbose:    If True, emit per-pair detail.
            dry_run:    If True, print the plan without downloading anything.
            notify_url: Optional webhook; each family's result is POSTed there.
            db_path:    SQLite database (default: INGEST_DB_PATH).
            config:     IngestConfig to use instead of reading the environment.
            logs_dir:   Root directory for per-run step logs and the ledger.
        """
        self.config = config or IngestConfig.from_env()
        self.families = [f.strip().lower() for f in (families or FAMILY_NAMES)]
        self.mode = mode
        self.verbose = verbose
        self.dry_run = dry_run
        notify_url = notify_url or self.config.notify_url
        if notify_url is not None:
            parsed = urlparse(notify_url)
            if parsed.scheme not in ("http", "https"):
                raise ValueError(
                    f"notify_url must use http or https scheme, got: {parsed.scheme!r}"
                )
        self.notify_url = notify_url
        self.db_path = Path(db_path) if db_path else self.config.db_path
        self.logs_dir = logs_dir
        self.start_time = None
        self.results: dict[str, IngestionResult] = {}

    def log(self, msg: str, level="info"):
        """Print a timestamped log message."""
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        if level == "info":
            print(f"[{timestamp}] {msg}")
        elif level == "warn":
            print(f"[{timestamp}] WARNING: {msg}")
        elif level == "error":
            print(f"[{timestamp}] ERROR: {msg}")
        elif level == "ok":
            print(f"[{timestamp}] OK: {msg}")
        elif level == "detail" and self.verbose:
            print(f"  -> {msg}")

    def _family_configs(self):
        """Resolve every FamilyConfig up front so bad settings fail before I/O."""
        configs = []
        for name in self.families:
            schema = get_family(name)
            try:
                family_config = self.config.family_config(schema.name, mode=self.mode)
            except ValueError as exc:
                raise ConfigError(str(exc)) from exc
            plan(family_config)
            for region in family_config.regions:
                validate_region(region)
            configs.append((schema, family_config))
        return configs

    # ── Stages ─────────────────────────────────────────────────────────────

    def print_plan(self, store: IndexStore, configs) -> None:
        """Dry run: show what each family would fetch."""
        for schema, family_config in configs:
            coordinator = IngestionCoordinator(schema, store, config=self.config)
            full, pairs = coordinator.plan_pairs(family_config)
            self.log(
                f"{schema.name.upper()} [{family_config.mode}] "
                f"{full[0].label()} .. {full[-1].label()}: "
                f"{len(pairs)} pair(s) to fetch for {', '.join(family_config.regions)}"
            )
            for period, region in pairs:
                self.log(f"{region} {period.label()}", "detail")

    def run_family(self, store: IndexStore, schema, family_config, pl: PipelineLogger):
        """Run one coordinator; returns its IngestionResult."""
        self.log("=" * 60)
        self.log(f"{schema.name.upper()}: {family_config.period_spec} "
                 f"({family_config.mode}, regions {', '.join(family_config.regions)})")
        self.log("=" * 60)

        coordinator = IngestionCoordinator(
            schema, store, config=self.config, pipeline_logger=pl,
        )
        result = coordinator.run(family_config)
        if result is None:
            self.log(f"{schema.name.upper()} is already running; skipped", "warn")
            return None

        self.results[schema.name] = result
        pl.results[schema.name] = result.to_dict()
        level = "ok" if result.ok else "warn"
        self.log(
            f"{result.family} {result.period_start}..{result.period_end}: "
            f"{result.success_count} success, {result.failure_count} failure(s) "
            f"in {result.duration_seconds:.1f}s",
            level,
        )
        for task in result.tasks:
            if task.error:
                self.log(f"{task.region} {task.period.label()}: {task.error}", "detail")

        if self.notify_url:
            self._send_notification(result)
        return result

    def run(self) -> int:
        """Execute the workflow for every requested family."""
        self.start_time = time.time()
        self.log("=" * 60)
        self.log("CNC INDEX REFRESH WORKFLOW")
        self.log("=" * 60)
        self.log(f"Families: {', '.join(f.upper() for f in self.families)}")
        self.log(f"Mode: {self.mode or self.config.processing_method}")
        self.log(f"Database: {self.db_path}")
        self.log(f"Dry Run: {self.dry_run}")
        self.log("")

        try:
            configs = self._family_configs()
        except ConfigError as exc:
            self.log(f"Configuration error: {exc}", "error")
            return EXIT_CONFIG

        pl = PipelineLogger(self.logs_dir)
        pl.args_dict = {
            "families": self.families,
            "mode": self.mode,
            "dry_run": self.dry_run,
            "db_path": str(self.db_path),
        }

        exit_code = EXIT_OK
        try:
            with IndexStore(self.db_path) as store:
                if self.dry_run:
                    self.print_plan(store, configs)
                    for schema, _ in configs:
                        pl.record_user_skip(f"{schema.name}_primary", "--dry-run")
                else:
                    for schema, family_config in configs:
                        result = self.run_family(store, schema, family_config, pl)
                        if result is not None and not result.ok:
                            exit_code = EXIT_FAILURES
        except ConfigError as exc:
            self.log(f"Configuration error: {exc}", "error")
            exit_code = EXIT_CONFIG
        except PersistenceError as exc:
            self.log(f"Database error: {exc}", "error")
            exit_code = EXIT_FAILURES
        finally:
            _close_session()
            pl.write_summary()
            append_to_ledger(pl, exit_code)

        elapsed = time.time() - self.start_time
        self.log("=" * 60)
        self.log("REFRESH WORKFLOW SUMMARY")
        self.log("=" * 60)
        for name, result in self.results.items():
            icon = "OK" if result.ok else "FAIL"
            methods = ", ".join(f"{k}={v}" for k, v in result.counts_by_method.items()) or "none"
            print(f"  [{icon}] {name:6s}: {result.success_count} success ({methods}), "
                  f"{result.failure_count} failure(s)")
        self.log(f"Total time: {elapsed:.1f}s")
        self.log(f"Run log: {pl.run_dir}")
        return exit_code

    def _send_notification(self, result: IngestionResult) -> None:
        """POST one family's result to the configured webhook."""
        try:
            data = json.dumps(result.to_dict()).encode("utf-8")
            req = urllib.request.Request(
                self.notify_url,
                data=data,
                headers={"Content-Type": "application/json"},
                method="POST",
            )
            with urllib.request.urlopen(req, timeout=10):
                pass
            self.log(f"Notification sent to {self.notify_url}", "ok")
        except Exception as e:
            self.log(f"Notification failed (non-fatal): {e}", "warn")


# ── Periodic scheduler ───────────────────────────────────────────────────────


def _next_run_time(at_hour: str | None, now: datetime | None = None) -> float:
    """Next 1st-of-month at *at_hour* ("HH:MM", default 00:00) as a Unix timestamp.

    Today counts when it is the 1st and the hour has not passed yet.
    """
    now = now or datetime.now()
    hh, mm = 0, 0
    if at_hour:
        try:
            hh, mm = (int(part) for part in at_hour.split(":"))
            if not (0 <= hh < 24 and 0 <= mm < 60):
                raise ValueError(at_hour)
        except ValueError:
            print(f"WARNING: Invalid --at-hour value '{at_hour}'; using 00:00.")
            hh, mm = 0, 0
    candidate = now.replace(day=1, hour=hh, minute=mm, second=0, microsecond=0)
    if candidate <= now:
        # first day of next month
        candidate = (candidate.replace(day=28) + timedelta(days=4)).replace(day=1)
    return candidate.timestamp()


def run_scheduled(args, workflow_kwargs: dict) -> None:
    """Run the refresh workflow on the 1st of every month."""
    next_run = _next_run_time(args.at_hour)
    print(f"Scheduled refresh every {args.schedule}")
    print(f"  Next run: {datetime.fromtimestamp(next_run).isoformat()}")
    print("  Press Ctrl+C to stop.")

    while True:
        wait = max(0, next_run - time.time())
        if wait > 0:
            print(f"  Sleeping {wait:.0f}s until {datetime.fromtimestamp(next_run).isoformat()}...")
            time.sleep(wait)

        print(f"\n[{datetime.now().isoformat()}] Starting scheduled run")
        workflow = RefreshWorkflow(**workflow_kwargs)
        workflow.run()

        next_run = _next_run_time(args.at_hour)
        print(f"  Next run scheduled for {datetime.fromtimestamp(next_run).isoformat()}")


def print_history(logs_dir: Path, last: int) -> None:
    """Print the newest ledger records, one line per run."""
    records = read_ledger(Path(logs_dir) / LEDGER_NAME, last=last)
    if not records:
        print(f"No runs recorded in {Path(logs_dir) / LEDGER_NAME}")
        return
    for rec in records:
        families = ", ".join(
            f"{name}={fam['success']}/{fam['success'] + fam['failure']}"
            for name, fam in rec.get("families", {}).items()
        ) or "dry run"
        print(f"{rec['run_id']}  exit={rec['exit_code']}  "
              f"{rec['total_seconds']:.1f}s  {families}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Refresh the CNC index database (ICF, ICEC, PEIC)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python refresh_indices.py
  python refresh_indices.py --families icf icec
  python refresh_indices.py --mode truncate --families peic
  python refresh_indices.py --dry-run
  python refresh_indices.py --history 5
  python refresh_indices.py --schedule monthly --at-hour 06:00
        """,
    )
    parser.add_argument(
        "--families",
        nargs="+",
        choices=list(FAMILY_NAMES),
        default=None,
        help="Index families to refresh, in order (default: all)",
    )
    parser.add_argument(
        "--mode",
        choices=[MODE_INCREMENTAL, MODE_TRUNCATE],
        default=None,
        help="Processing mode (default: PROCESSING_METHOD or incremental)",
    )
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="Path to SQLite database (default: INGEST_DB_PATH or cnc_indices.sqlite)",
    )
    parser.add_argument(
        "--notify",
        metavar="WEBHOOK_URL",
        default=None,
        help="Webhook URL to POST each family's result as JSON",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show the plan without downloading anything",
    )
    parser.add_argument(
        "--schedule",
        choices=["monthly"],
        default=None,
        help="Run the refresh on the 1st of every month",
    )
    parser.add_argument(
        "--at-hour",
        metavar="HH:MM",
        default=None,
        help="Time of day for the scheduled refresh, e.g. 06:00",
    )
    parser.add_argument(
        "--logs-dir",
        type=Path,
        default=Path("logs/ingest"),
        help="Directory for per-run step logs and the run ledger (default: logs/ingest)",
    )
    parser.add_argument(
        "--history",
        type=int,
        metavar="N",
        default=None,
        help="Print the last N runs from the run ledger (0 for all) and exit",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Verbose output with per-pair detail",
    )
    return parser


def main(argv=None):
    """Parse CLI arguments and run the refresh workflow."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
    )

    if args.history is not None:
        print_history(args.logs_dir, args.history)
        return EXIT_OK

    workflow_kwargs = {
        "families": args.families,
        "mode": args.mode,
        "verbose": args.verbose,
        "dry_run": args.dry_run,
        "notify_url": args.notify,
        "db_path": args.db,
        "logs_dir": args.logs_dir,
    }

    try:
        if args.schedule:
            # validate once before entering the loop
            RefreshWorkflow(**workflow_kwargs)
            run_scheduled(args, workflow_kwargs)
            return EXIT_OK
        workflow = RefreshWorkflow(**workflow_kwargs)
    except ValueError as exc:
        print(f"ERROR: {exc}")
        return EXIT_CONFIG
    return workflow.run()


if __name__ == "__main__":
    sys.exit(main())
