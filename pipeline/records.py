"""
Canonical record shape shared by the spreadsheet and portal paths.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from pipeline.periods import Period

METHOD_PRIMARY = "primary"
METHOD_SECONDARY = "secondary"


@dataclass
class CanonicalRecord:
    """Headline figures of one family for one (period, region)."""

    family: str
    period: Period
    region: str
    method: str
    values: dict
    warnings: list[str] = field(default_factory=list)

    @property
    def key(self) -> tuple[Period, str]:
        return (self.period, self.region)

    def to_dict(self) -> dict:
        return {
            "family": self.family,
            "period": self.period.label(),
            "region": self.region,
            "method": self.method,
            "values": dict(self.values),
            "warnings": list(self.warnings),
        }
