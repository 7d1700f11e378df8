"""
Period planning.

A period is one monthly publication, identified by (month, year).  The
planner turns a configured range into the ordered list of periods to
ingest, either the full range ("truncate" runs) or only the periods not
yet persisted ("incremental" runs).

Range syntax (env var ``PERIOD_<FAMILY>``)::

    "MM/YYYY:END"    END is one of
        ">"          the current month
        "-NM"        N months before the current month
        "MM/YYYY"    an explicit month

All functions are pure; the current date is injected as ``today`` so
plans are reproducible.

Usage::

    from pipeline.periods import Period, plan

    plan(family_config, today=date(2025, 7, 15))
    Period(7, 2025).portal_label()     # 'JUL 25'
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Iterable

from pipeline.errors import ConfigError
from utils.patterns import MONTHS_BACK, PERIOD_MMYYYY

MIN_YEAR = 2000
MAX_YEAR = 2100

# Portal row labels use English abbreviations regardless of locale
_PORTAL_MONTHS = ("JAN", "FEB", "MAR", "APR", "MAY", "JUN",
                  "JUL", "AUG", "SEP", "OCT", "NOV", "DEC")


@dataclass(frozen=True, order=True)
class Period:
    """One monthly publication.  Field order (year, month) gives chronological ordering."""

    year: int
    month: int

    def __init__(self, month: int, year: int):
        object.__setattr__(self, "year", int(year))
        object.__setattr__(self, "month", int(month))
        if not 1 <= self.month <= 12:
            raise ConfigError(f"Invalid month {month!r}: must be between 1 and 12")
        if not MIN_YEAR <= self.year <= MAX_YEAR:
            raise ConfigError(
                f"Invalid year {year!r}: must be between {MIN_YEAR} and {MAX_YEAR}"
            )

    def label(self) -> str:
        return f"{self.month:02d}/{self.year}"

    def portal_label(self) -> str:
        return f"{_PORTAL_MONTHS[self.month - 1]} {self.year % 100:02d}"

    def previous(self) -> "Period":
        if self.month == 1:
            return Period(12, self.year - 1)
        return Period(self.month - 1, self.year)

    def next(self) -> "Period":
        if self.month == 12:
            return Period(1, self.year + 1)
        return Period(self.month + 1, self.year)

    def minus_months(self, n: int) -> "Period":
        index = self.year * 12 + (self.month - 1) - n
        return Period(index % 12 + 1, index // 12)

    def __str__(self) -> str:
        return self.label()

    def __repr__(self) -> str:
        return f"Period({self.label()})"


def parse_period(text: str) -> Period:
    """Parse ``"MM/YYYY"``; raises ConfigError when malformed or out of range."""
    m = PERIOD_MMYYYY.match((text or "").strip())
    if not m:
        raise ConfigError(f"Invalid period {text!r}: expected MM/YYYY")
    return Period(int(m.group(1)), int(m.group(2)))


def resolve_end(end_spec: str, today: date) -> Period:
    """Resolve the END half of a range against ``today``."""
    spec = (end_spec or "").strip()
    current = Period(today.month, today.year)
    if spec == ">":
        return current
    m = MONTHS_BACK.match(spec)
    if m:
        return current.minus_months(int(m.group(1)))
    if PERIOD_MMYYYY.match(spec):
        return parse_period(spec)
    raise ConfigError(
        f"Invalid period end {end_spec!r}: expected '>', '-NM' or MM/YYYY"
    )


def parse_period_setting(setting: str, today: date | None = None) -> tuple[Period, Period]:
    """Parse a full ``"MM/YYYY:END"`` setting into its (start, end) bounds."""
    today = today or date.today()
    if not setting or ":" not in setting:
        raise ConfigError(f"Invalid period setting {setting!r}: expected MM/YYYY:END")
    start_text, end_text = setting.split(":", 1)
    start = parse_period(start_text)
    end = resolve_end(end_text, today)
    if start > end:
        raise ConfigError(
            f"Invalid period setting {setting!r}: start {start} is after end {end}"
        )
    return start, end


def month_range(start: Period, end: Period) -> list[Period]:
    """Every month from start through end, inclusive."""
    periods = []
    current = start
    while current <= end:
        periods.append(current)
        current = current.next()
    return periods


def plan(family_config, today: date | None = None) -> list[Period]:
    """Full-mode plan for a FamilyConfig (or anything with ``period_spec``)."""
    start, end = parse_period_setting(family_config.period_spec, today=today)
    return month_range(start, end)


def plan_gaps(full: Iterable[Period], existing: Iterable[Period]) -> list[Period]:
    """Periods of ``full`` not in ``existing``, in ``full`` order.

    An empty result means there is nothing to do.
    """
    have = set(existing)
    return [p for p in full if p not in have]
