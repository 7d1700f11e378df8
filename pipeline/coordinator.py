"""
Ingestion coordinator: one run of one index family.

A run goes through four stages, strictly in order:

  1. plan      full range (truncate) or only unpersisted (period, region)
               pairs (incremental); truncate clears the family first
  2. primary   download -> classify -> extract canonical values for each
               pair; failures are queued for the fallback
  3. secondary one portal session retries every queued pair; a success
               flips the existing task to success/secondary
  4. metadata  re-extract sub-indicator rows for primary successes and
               store them only where the record has none yet

Temp spreadsheets are swept in a ``finally`` block.  At most one run per
coordinator is active at a time; a concurrent call returns None.

Usage::

    from pipeline.coordinator import IngestionCoordinator

    coordinator = IngestionCoordinator(get_family("icf"), store, config=cfg)
    result = coordinator.run(cfg.family_config("icf"))
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Iterator

import requests

from downloader.core import TempFileStore, build_url, download_to_temp
from pipeline.errors import (
    AuthenticationError,
    DownloadError,
    IngestError,
    NavigationError,
    SectionNotFoundError,
    ValidationError,
)
from pipeline.extract import (
    extract_canonical,
    extract_metadata,
    magnitude_kind,
    missing_fields,
)
from pipeline.families import FamilySchema, validate_region
from pipeline.layout import check_metadata_count, classify
from pipeline.ledger import STATUS_SUCCESS, Task, TaskLedger
from pipeline.logging import PipelineLogger, StepReport
from pipeline.periods import Period, plan, plan_gaps
from pipeline.portal import PortalSession
from pipeline.records import METHOD_PRIMARY, CanonicalRecord
from pipeline.store import IndexStore
from pipeline.workbook import load_grid
from utils.config import MODE_INCREMENTAL, MODE_TRUNCATE, FamilyConfig, IngestConfig
from utils.strings import format_decimal_comma, parse_decimal

logger = logging.getLogger(__name__)

Pair = tuple[Period, str]


@dataclass(frozen=True)
class IngestionResult:
    """Aggregate outcome of one coordinator run."""

    family: str
    period_start: str
    period_end: str
    duration_seconds: float
    mode: str
    tasks: tuple[Task, ...] = ()
    counts_by_method: dict[str, int] = field(default_factory=dict)
    success_count: int = 0
    failure_count: int = 0

    @property
    def ok(self) -> bool:
        return self.failure_count == 0

    def to_dict(self) -> dict:
        return {
            "family": self.family,
            "period_start": self.period_start,
            "period_end": self.period_end,
            "duration_seconds": round(self.duration_seconds, 2),
            "mode": self.mode,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "counts_by_method": dict(self.counts_by_method),
            "tasks": [t.to_dict() for t in self.tasks],
        }


def monthly_variation(current, previous) -> str:
    """Percent change between two point values, one decimal with a comma.

    A missing or zero previous value gives ``"0,0"``.
    """
    cur = parse_decimal(current, default=None)
    prev = parse_decimal(previous, default=None)
    if cur is None or prev is None or prev == 0:
        return "0,0"
    return format_decimal_comma((cur / prev - 1) * 100)


class IngestionCoordinator:
    """Drives the per-(period, region) loop for one family."""

    def __init__(
        self,
        schema: FamilySchema,
        store: IndexStore,
        config: IngestConfig | None = None,
        temp_store: TempFileStore | None = None,
        session: requests.Session | None = None,
        portal_factory: Callable[[], PortalSession] | None = None,
        pipeline_logger: PipelineLogger | None = None,
    ):
        self.schema = schema
        self.store = store
        self.config = config or IngestConfig.from_env()
        self.temp_store = temp_store or TempFileStore(self.config.temp_dir)
        self.session = session
        self.portal_factory = portal_factory or self._default_portal
        self.pipeline_logger = pipeline_logger

        self._lock = threading.Lock()
        self._running = False

    # ── guard ────────────────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    @contextmanager
    def _exclusive(self) -> Iterator[bool]:
        with self._lock:
            acquired = not self._running
            if acquired:
                self._running = True
        try:
            yield acquired
        finally:
            if acquired:
                with self._lock:
                    self._running = False

    @contextmanager
    def _step(self, suffix: str) -> Iterator[StepReport]:
        name = f"{self.schema.name}_{suffix}"
        if self.pipeline_logger is None:
            yield StepReport(step_name=name, status="started")
        else:
            with self.pipeline_logger.step(name) as report:
                yield report

    def _default_portal(self) -> PortalSession:
        return PortalSession(
            self.schema,
            portal_url=self.config.site_urls.get(self.schema.name, self.schema.portal_url),
            username=self.config.credentials_user,
            password=self.config.credentials_password,
            settle_ms=self.config.portal_settle_ms,
            headless=self.config.headless,
        )

    # ── planning ─────────────────────────────────────────────────────────

    def plan_pairs(self, family_config: FamilyConfig, today: date | None = None) -> tuple[list[Period], list[Pair]]:
        """Configured periods and the (period, region) pairs left to process.

        Raises ConfigError before any I/O for a bad range or region.
        """
        regions = [validate_region(r) for r in family_config.regions]
        full = plan(family_config, today=today)
        if family_config.mode == MODE_TRUNCATE:
            return full, [(p, r) for p in full for r in regions]

        persisted = self.store.persisted_keys(self.schema.name)
        complete = [p for p in full if all((p, r) in persisted for r in regions)]
        gaps = plan_gaps(full, complete)
        pairs = [(p, r) for p in gaps for r in regions if (p, r) not in persisted]
        logger.info(
            "%s gap plan: %d of %d period(s) incomplete, %d pair(s) to fetch",
            self.schema.name.upper(), len(gaps), len(full), len(pairs),
        )
        return full, pairs

    # ── run ──────────────────────────────────────────────────────────────

    def run(self, family_config: FamilyConfig, today: date | None = None) -> IngestionResult | None:
        """Run one ingestion.  Returns None if another run is in progress."""
        with self._exclusive() as acquired:
            if not acquired:
                logger.warning(
                    "%s ingestion already running; ignoring concurrent request",
                    self.schema.name.upper(),
                )
                return None
            return self._run(family_config, today)

    def _run(self, family_config: FamilyConfig, today: date | None) -> IngestionResult:
        started = time.monotonic()
        family = self.schema.name
        mode = family_config.mode if family_config.mode in (MODE_INCREMENTAL, MODE_TRUNCATE) else MODE_INCREMENTAL
        full, pairs = self.plan_pairs(family_config, today=today)
        processed_periods = [p for p, _ in pairs] or full

        ledger = TaskLedger()
        try:
            if mode == MODE_TRUNCATE:
                self.store.delete_all(family)

            retry: list[Pair] = []
            with self._step("primary") as report:
                skipped = len(full) * len(family_config.regions) - len(pairs)
                if skipped and mode == MODE_INCREMENTAL:
                    report.add_skip("already_persisted", f"{skipped} pair(s) already stored")
                records = self._primary_pass(pairs, ledger, retry, report)
                self.store.save_batch(records)
                report.metrics["saved"] = len(records)

            # primary records are already stored, so their metadata must be
            # written even if the portal pass crashes
            try:
                with self._step("secondary") as report:
                    if retry:
                        records = self._secondary_pass(retry, ledger, report)
                        self.store.save_batch(records)
                        report.metrics["saved"] = len(records)
                    else:
                        report.add_skip("no_fallback_needed", "no primary failures")
            finally:
                primary_ok = [t.key for t in ledger if t.status == STATUS_SUCCESS and t.method == METHOD_PRIMARY]
                with self._step("metadata") as report:
                    self.reconcile_metadata(primary_ok, report)
        finally:
            self.temp_store.sweep(family)

        result = IngestionResult(
            family=family.upper(),
            period_start=min(processed_periods).label(),
            period_end=max(processed_periods).label(),
            duration_seconds=time.monotonic() - started,
            mode=mode,
            tasks=ledger.tasks,
            counts_by_method=ledger.counts_by_method(),
            success_count=ledger.success_count(),
            failure_count=ledger.failure_count(),
        )
        logger.info(
            "%s done: %d success (%s), %d failure(s) in %.1fs",
            result.family, result.success_count,
            ", ".join(f"{k}={v}" for k, v in result.counts_by_method.items()),
            result.failure_count, result.duration_seconds,
        )
        return result

    # ── primary path ─────────────────────────────────────────────────────

    def _download(self, period: Period, region: str, downloads: dict[Pair, object]):
        path = self.temp_store.path_for(self.schema.name, region, period)
        url = build_url(self.config.base_url, self.schema.url_segment, period, region)
        logger.debug("Downloading %s", url)
        download_to_temp(url, path, session=self.session, timeout=self.config.download_timeout)
        downloads[(period, region)] = path
        return path

    def _primary_pass(
        self,
        pairs: list[Pair],
        ledger: TaskLedger,
        retry: list[Pair],
        report: StepReport,
    ) -> list[CanonicalRecord]:
        records: list[CanonicalRecord] = []
        downloads: dict[Pair, object] = {}
        for period, region in pairs:
            try:
                record = self.extract_primary(period, region, downloads)
            except IngestError as exc:
                logger.warning(
                    "%s %s %s primary failed: %s",
                    self.schema.name.upper(), region, period.label(), exc,
                )
                ledger.record_failure(period, region, str(exc))
                retry.append((period, region))
                report.add_error(f"{region} {period.label()}: {exc}")
                continue
            ledger.record_success(period, region)
            records.append(record)
            report.items_processed += 1
        return records

    def extract_primary(self, period: Period, region: str, downloads: dict | None = None) -> CanonicalRecord:
        """Download and parse one spreadsheet into a primary record."""
        downloads = downloads if downloads is not None else {}
        path = self._download(period, region, downloads)
        grid = load_grid(path)
        profile = classify(grid, self.schema)
        values = extract_canonical(grid, self.schema)
        warnings: list[str] = []

        if missing_fields(values):
            values = self._derive_missing(values, period, region, downloads)
            warnings.append("monthly variation computed from previous period")

        entries = extract_metadata(grid, self.schema, profile)
        count_warning = check_metadata_count(profile, self.schema, len(entries))
        if count_warning:
            warnings.append(count_warning)
        warnings.extend(self._magnitude_warnings(values))

        return CanonicalRecord(
            family=self.schema.name,
            period=period,
            region=region,
            method=METHOD_PRIMARY,
            values=values,
            warnings=warnings,
        )

    def _magnitude_warnings(self, values: dict) -> list[str]:
        notes = []
        for name, value in values.items():
            kind = magnitude_kind(value)
            if name.endswith("_percentual") and kind == "absolute":
                notes.append(f"{name} looks like an absolute count ({value})")
            elif name.endswith("_absoluto") and kind == "fraction":
                notes.append(f"{name} looks like a fraction ({value})")
        for note in notes:
            logger.debug("%s: %s", self.schema.name, note)
        return notes

    def _previous_values(self, period: Period, region: str, downloads: dict) -> dict:
        try:
            previous = period.previous()
        except IngestError as exc:
            raise ValidationError(f"previous period not found for {region} {period.label()}: {exc}") from exc

        path = downloads.get((previous, region)) or self.temp_store.find(self.schema.name, region, previous)
        try:
            if path is None:
                path = self._download(previous, region, downloads)
            return extract_canonical(load_grid(path), self.schema)
        except (DownloadError, SectionNotFoundError, ValidationError) as exc:
            raise ValidationError(
                f"previous period not found for {region} {period.label()} "
                f"({previous.label()}): {exc}"
            ) from exc

    def _derive_missing(self, values: dict, period: Period, region: str, downloads: dict) -> dict:
        """Fill optional fields that the sheet did not carry from the previous month."""
        values = dict(values)
        previous = None
        for anchor in self.schema.anchors:
            if anchor.required or any(values[f] is not None for f in anchor.fields):
                continue
            if not anchor.derive_from:
                raise ValidationError(
                    f"{self.schema.name.upper()} section {anchor.name!r} missing and not derivable"
                )
            if previous is None:
                previous = self._previous_values(period, region, downloads)
            logger.info(
                "%s %s %s: computing %s from previous period",
                self.schema.name.upper(), region, period.label(), anchor.name,
            )
            for target, source in zip(anchor.fields, anchor.derive_from):
                values[target] = monthly_variation(values[source], previous.get(source))
        return values

    # ── secondary path ───────────────────────────────────────────────────

    def _secondary_pass(self, retry: list[Pair], ledger: TaskLedger, report: StepReport) -> list[CanonicalRecord]:
        records: list[CanonicalRecord] = []
        with ExitStack() as stack:
            try:
                portal = stack.enter_context(self.portal_factory())
                portal.login()
            except (AuthenticationError, NavigationError) as exc:
                logger.error("%s portal unavailable: %s", self.schema.name.upper(), exc)
                for period, region in retry:
                    ledger.mark_secondary_failure(period, region, str(exc))
                    report.add_error(f"{region} {period.label()}: {exc}")
                return records

            for period, region in retry:
                try:
                    record = portal.extract(period, region)
                except IngestError as exc:
                    logger.warning(
                        "%s %s %s portal failed: %s",
                        self.schema.name.upper(), region, period.label(), exc,
                    )
                    ledger.mark_secondary_failure(period, region, str(exc))
                    report.add_error(f"{region} {period.label()}: {exc}")
                    continue
                ledger.mark_secondary_success(period, region)
                records.append(record)
                report.items_processed += 1
        return records

    # ── metadata ─────────────────────────────────────────────────────────

    def reconcile_metadata(self, pairs: list[Pair], report: StepReport | None = None) -> int:
        """Store metadata for records that have none yet; returns rows inserted.

        Idempotent: a record that already has metadata is left alone.
        """
        report = report or StepReport(step_name=f"{self.schema.name}_metadata")
        family = self.schema.name
        inserted = 0
        for period, region in pairs:
            item = f"{region} {period.label()}"
            row = self.store.find_by_period_region(family, period, region)
            if row is None:
                report.add_skip("file_missing", "record not stored", item)
                continue
            if self.store.metadata_count(family, row["id"]) > 0:
                report.add_skip("metadata_present", "metadata already stored", item)
                continue
            path = self.temp_store.find(family, region, period)
            if path is None:
                report.add_skip("file_missing", "temp spreadsheet not found", item)
                continue
            try:
                grid = load_grid(path)
            except ValidationError as exc:
                report.add_error(f"{item}: {exc}")
                continue
            entries = extract_metadata(grid, self.schema, classify(grid, self.schema))
            inserted += self.store.save_metadata(family, row["id"], entries)
            report.items_processed += 1
        report.metrics["metadata_rows"] = inserted
        return inserted
