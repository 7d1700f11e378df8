"""
Ingestion error taxonomy.

Every failure the engine knows how to classify derives from IngestError so
the coordinator can isolate per-period problems with a single except clause
while letting genuinely unexpected exceptions propagate.

    ConfigError            invalid period/region configuration (fatal)
    DownloadError          primary-path HTTP/network/signature failure
    SectionNotFoundError   spreadsheet anchor rows missing
    ValidationError        anchor found but values missing / unreadable file
    AuthenticationError    portal login did not reach the search form
    NavigationError        portal step timed out or failed
    RowNotFoundError       portal table has no row for the period
    PersistenceError       SQLite batch operation failed
"""

from __future__ import annotations


class IngestError(Exception):
    """Base class for all ingestion errors."""


class ConfigError(IngestError):
    """Invalid period or region configuration."""


class DownloadError(IngestError):
    """The source spreadsheet could not be fetched."""

    def __init__(self, message: str, url: str = "", status_code: int | None = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class SectionNotFoundError(IngestError):
    """An anchor section was not found in the spreadsheet grid.

    ``strategy`` names the search passes that were attempted, e.g.
    ``"exact:['índice (em pontos)'] -> widened:['índice', 'em pontos']"``.
    """

    def __init__(self, message: str, strategy: str = ""):
        super().__init__(f"{message} (strategy: {strategy})" if strategy else message)
        self.strategy = strategy


class ValidationError(IngestError):
    """The spreadsheet was readable but did not hold the expected values."""


class AuthenticationError(IngestError):
    """Portal login failed."""


class NavigationError(IngestError):
    """A portal navigation step failed or exceeded its timeout."""


class RowNotFoundError(IngestError):
    """The portal result table has no row for the requested period."""

    def __init__(self, label: str, available_labels: list[str] | None = None):
        self.label = label
        self.available_labels = list(available_labels or [])
        shown = ", ".join(self.available_labels) if self.available_labels else "none"
        super().__init__(f"Period {label} not found in portal table (available: {shown})")


class PersistenceError(IngestError):
    """A storage operation failed."""
