"""Pre-compiled regex patterns for the CNC index ingestion tools.

All patterns are compiled once at module import; the extractor and portal
parser call them for every row of every spreadsheet.

Usage:
    from utils.patterns import PERIOD_MMYYYY, TAB_RUNS

    m = PERIOD_MMYYYY.match("07/2025")
"""

import re

# Explicit period: "07/2025"
PERIOD_MMYYYY = re.compile(r'^(\d{2})/(\d{4})$')

# Relative period end: "-1M", "-12M"
MONTHS_BACK = re.compile(r'^-(\d+)M$', re.IGNORECASE)

# Portal row label: "JUL 25", "JUL25"
PORTAL_LABEL = re.compile(r'^[A-Z]{3}\s?\d{2}$')

# Portal row splitting: runs of tabs, or 2+ whitespace characters
TAB_RUNS = re.compile(r'\t+')
MULTI_SPACE = re.compile(r'\s{2,}')

# Whitespace normalization: multiple spaces/tabs/newlines
WHITESPACE = re.compile(r'\s+')

# Currency and percent signs stripped before numeric conversion
CURRENCY_SYMBOLS = re.compile(r'(R\$|[\$€£%])')

# Spreadsheet extensions the publisher serves
SPREADSHEET_EXTENSIONS = re.compile(r'\.xlsx?$', re.IGNORECASE)
