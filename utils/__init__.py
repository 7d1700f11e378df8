"""Shared utilities for the CNC index ingestion tools."""

# Common utilities
from utils.common import format_bytes, utc_now_iso

# Pattern definitions
from utils.patterns import (
    PERIOD_MMYYYY,
    MONTHS_BACK,
    PORTAL_LABEL,
    TAB_RUNS,
    MULTI_SPACE,
)

# String utilities
from utils.strings import (
    parse_decimal,
    cell_text,
    normalize_whitespace,
    normalize_label,
    fold_accents,
    format_decimal_comma,
)

# Database utilities
from utils.database import (
    init_pragmas,
    create_connection,
    batch_insert,
    get_table_count,
    table_exists,
)

# Configuration
from utils.config import (
    Config,
    FamilyConfig,
    IngestConfig,
    MODE_INCREMENTAL,
    MODE_TRUNCATE,
)

__all__ = [
    # Common
    "format_bytes",
    "utc_now_iso",
    # Patterns
    "PERIOD_MMYYYY",
    "MONTHS_BACK",
    "PORTAL_LABEL",
    "TAB_RUNS",
    "MULTI_SPACE",
    # Strings
    "parse_decimal",
    "cell_text",
    "normalize_whitespace",
    "normalize_label",
    "fold_accents",
    "format_decimal_comma",
    # Database
    "init_pragmas",
    "create_connection",
    "batch_insert",
    "get_table_count",
    "table_exists",
    # Config
    "Config",
    "FamilyConfig",
    "IngestConfig",
    "MODE_INCREMENTAL",
    "MODE_TRUNCATE",
]
