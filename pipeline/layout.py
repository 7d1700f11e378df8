"""
Spreadsheet layout classification.

The publisher's sheets drifted over the years: the family marker moved
between column 0 and the neighbouring columns, and older files carry
legacy summary rows ("Índice (Em Pontos)", "Índice (Variação Mensal)")
that modern files do not.  classify() fingerprints a grid so the
extractor knows which variant it is reading.

    modern               marker in column 0, no legacy rows
    historical           legacy rows present
    historical_inverted  marker found mostly outside column 0

Classification is a diagnostic; it never raises.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from pipeline.families import FamilySchema
from utils.strings import normalize_label

logger = logging.getLogger(__name__)

KIND_MODERN = "modern"
KIND_HISTORICAL = "historical"
KIND_HISTORICAL_INVERTED = "historical_inverted"

SCAN_ROWS = 150
LEGACY_PHRASES = ("índice (variação mensal)", "índice (em pontos)")


@dataclass(frozen=True)
class LayoutProfile:
    kind: str
    inverted_columns: bool
    has_legacy_artifact_fields: bool
    expected_metadata_count: int

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "inverted_columns": self.inverted_columns,
            "has_legacy_artifact_fields": self.has_legacy_artifact_fields,
            "expected_metadata_count": self.expected_metadata_count,
        }


def _kind_for(inverted: bool, legacy: bool) -> str:
    if inverted:
        return KIND_HISTORICAL_INVERTED
    if legacy:
        return KIND_HISTORICAL
    return KIND_MODERN


def _scan(grid: list[list], schema: FamilySchema) -> tuple[int, int, bool]:
    marker = schema.marker
    first_col = 0
    other_cols = 0
    legacy = False
    for row in grid[:SCAN_ROWS]:
        if not row:
            continue
        if marker in normalize_label(row[0]):
            first_col += 1
        if any(marker in normalize_label(cell) for cell in row[1:6]):
            other_cols += 1
        text = " ".join(normalize_label(cell) for cell in row if cell is not None)
        if any(phrase in text for phrase in LEGACY_PHRASES):
            legacy = True
    return first_col, other_cols, legacy


def classify(grid: list[list], schema: FamilySchema) -> LayoutProfile:
    """Fingerprint a grid.  Degrades to ``modern`` on any internal error."""
    try:
        first_col, other_cols, legacy = _scan(grid, schema)
    except Exception:
        logger.exception("Layout scan failed for %s; assuming modern layout", schema.name)
        return LayoutProfile(KIND_MODERN, False, False, schema.expected_metadata_count)

    inverted = other_cols > first_col and other_cols > 0
    profile = LayoutProfile(
        kind=_kind_for(inverted, legacy),
        inverted_columns=inverted,
        has_legacy_artifact_fields=legacy,
        expected_metadata_count=schema.expected_metadata_count,
    )
    logger.debug(
        "%s layout: %s (marker col0=%d, cols1-5=%d, legacy=%s)",
        schema.name, profile.kind, first_col, other_cols, legacy,
    )
    return profile


def check_metadata_count(profile: LayoutProfile, schema: FamilySchema, actual: int) -> str | None:
    """Soft check of an extracted metadata count against the family baseline.

    Returns a warning string when the divergence exceeds the family's
    tolerance, otherwise None.
    """
    expected = profile.expected_metadata_count
    if not expected:
        return None
    if abs(actual - expected) > schema.metadata_tolerance:
        warning = (
            f"metadata count {actual} differs from expected {expected} "
            f"(tolerance {schema.metadata_tolerance}, layout {profile.kind})"
        )
        logger.warning("%s: %s", schema.name, warning)
        return warning
    return None
