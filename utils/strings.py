"""String processing utilities for the CNC index ingestion tools.

parse_decimal() is called for every numeric cell the extractor touches, so it
sticks to pre-compiled patterns and cheap string operations.
"""

import unicodedata

from utils.patterns import WHITESPACE, CURRENCY_SYMBOLS


def parse_decimal(val, default: float = 0.0) -> float:
    """Convert a decimal-comma-tolerant value to float with fallback default.

    Handles:
    - None, empty strings -> default
    - Numeric types -> float
    - "1.234,5" -> 1234.5 (dots are thousands separators when a comma is present)
    - "1234,5"  -> 1234.5
    - "1234.5"  -> 1234.5
    - Invalid input -> default

    Never raises: callers that need strict validation must check for
    zero-looking values themselves.

    Args:
        val: Value to convert (any type)
        default: Value to return on failure (default: 0.0)

    Returns:
        float: Parsed value or default
    """
    if val is None or val == '':
        return default
    if isinstance(val, bool):
        return default
    if isinstance(val, (int, float)):
        return float(val)

    try:
        s = CURRENCY_SYMBOLS.sub('', str(val))
        s = WHITESPACE.sub('', s)
        if ',' in s:
            s = s.replace('.', '').replace(',', '.')
        return float(s) if s else default
    except (ValueError, TypeError):
        return default


def cell_text(val) -> str:
    """Render a raw cell value as text the way the publisher's files read.

    None becomes an empty string, integral floats lose their ``.0`` so
    ``100.0`` reads ``"100"``, and everything else goes through ``str``.
    """
    if val is None:
        return ''
    if isinstance(val, float) and val.is_integer():
        return str(int(val))
    return str(val).strip()


def normalize_whitespace(s: str) -> str:
    """Normalize multiple whitespace characters to single spaces.

    Example:
        "Índice  (em\\n pontos)" -> "Índice (em pontos)"
    """
    return WHITESPACE.sub(' ', s).strip()


def normalize_label(val) -> str:
    """Lower-cased, whitespace-collapsed text for anchor matching."""
    if val is None:
        return ''
    return normalize_whitespace(str(val)).lower()


def format_decimal_comma(value: float, places: int = 1) -> str:
    """Format a float with a decimal comma: 2.345 -> "2,3"."""
    return f"{value:.{places}f}".replace('.', ',')


def fold_accents(val) -> str:
    """Normalised label with diacritics removed: "Índice Síntese" -> "indice sintese"."""
    text = unicodedata.normalize('NFKD', normalize_label(val))
    return ''.join(ch for ch in text if not unicodedata.combining(ch))
