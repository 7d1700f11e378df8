"""
Pipeline package -- CNC index ingestion engine.

Re-exports the leaf types so callers can do::

    from pipeline import Period, get_family, IngestError

The coordinator, store and portal session are imported from their own
modules (``pipeline.coordinator`` etc.) since they pull in the downloader.
"""

from pipeline.errors import (
    AuthenticationError,
    ConfigError,
    DownloadError,
    IngestError,
    NavigationError,
    PersistenceError,
    RowNotFoundError,
    SectionNotFoundError,
    ValidationError,
)
from pipeline.families import FAMILIES, REGIONS, FamilySchema, get_family
from pipeline.periods import Period, plan, plan_gaps
from pipeline.records import CanonicalRecord

__all__ = [
    "AuthenticationError",
    "CanonicalRecord",
    "ConfigError",
    "DownloadError",
    "FAMILIES",
    "FamilySchema",
    "IngestError",
    "NavigationError",
    "PersistenceError",
    "Period",
    "REGIONS",
    "RowNotFoundError",
    "SectionNotFoundError",
    "ValidationError",
    "get_family",
    "plan",
    "plan_gaps",
]
