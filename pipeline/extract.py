"""
Canonical-field and metadata extraction from spreadsheet grids.

Canonical extraction
--------------------
Each family declares anchors (pipeline.families.AnchorSpec).  An anchor is
located in two passes:

  1. exact: one of the historical phrases appears in column 0
  2. widened: every keyword appears somewhere in the row's joined text
     (accent-insensitive)

The last matching row wins.  A required anchor that neither pass finds
raises SectionNotFoundError; an anchor that is found but short of values
raises ValidationError.  Optional anchors that are absent leave their
fields as ``None`` for the caller to fill in.

Metadata extraction
-------------------
Rows are grouped into category blocks, each opened by a header row whose
columns 1-3 match one of the family's header signatures; the category
name is column 0 of the header.  Value rows below it become MetadataEntry
objects.  Family-specific rules (ICF historical repair, PEIC synthesis
block, ICEC survey kind) are driven by flags on the FamilySchema.

Usage::

    from pipeline.extract import extract_canonical, extract_metadata

    values = extract_canonical(grid, schema)
    entries = extract_metadata(grid, schema, profile)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from pipeline.errors import SectionNotFoundError, ValidationError
from pipeline.families import FIELD_NUMBER, AnchorSpec, FamilySchema
from pipeline.layout import LayoutProfile
from utils.strings import cell_text, fold_accents, normalize_label, parse_decimal

logger = logging.getLogger(__name__)

# Rows logged as candidates when an anchor is missing
_MAX_CANDIDATES = 5


@dataclass
class MetadataEntry:
    index_category: str
    field_name: str
    raw_values: dict[str, str]
    is_index: bool = False
    survey_kind: str | None = None

    def to_dict(self) -> dict:
        return {
            "index_category": self.index_category,
            "field_name": self.field_name,
            "raw_values": dict(self.raw_values),
            "is_index": self.is_index,
            "survey_kind": self.survey_kind,
        }


@dataclass
class _Block:
    category: str
    entries: list[MetadataEntry] = field(default_factory=list)


# ── Anchor search ────────────────────────────────────────────────────────────


def _exact_match(row: list, anchor: AnchorSpec) -> bool:
    if not row:
        return False
    first = normalize_label(row[0])
    return any(phrase in first for phrase in anchor.phrases)


def _widened_match(row: list, anchor: AnchorSpec) -> bool:
    if not row:
        return False
    text = " ".join(fold_accents(cell) for cell in row if cell is not None)
    return all(keyword in text for keyword in anchor.keywords)


def find_anchor(grid: list[list], anchor: AnchorSpec) -> int | None:
    """Index of the last row matching the anchor, or None."""
    for i in range(len(grid) - 1, -1, -1):
        if _exact_match(grid[i], anchor):
            return i
    candidates = [i for i, row in enumerate(grid) if _widened_match(row, anchor)]
    if candidates:
        logger.info(
            "Anchor %r not found by exact phrase; widened search matched rows %s",
            anchor.name, candidates[:_MAX_CANDIDATES],
        )
        return candidates[-1]
    return None


def _strategy(anchor: AnchorSpec) -> str:
    return f"exact:{list(anchor.phrases)} -> widened:{list(anchor.keywords)}"


def _anchor_cells(grid: list[list], index: int, anchor: AnchorSpec) -> list:
    n = len(anchor.fields)
    if anchor.layout == "below":
        cells = []
        for row in grid[index + 1:index + 1 + n]:
            cells.append(row[1] if len(row) > 1 else None)
        return cells
    row = grid[index]
    return list(row[1:1 + n])


def _convert(value, schema: FamilySchema):
    if schema.field_kind == FIELD_NUMBER:
        return parse_decimal(value)
    return cell_text(value)


def extract_canonical(grid: list[list], schema: FamilySchema) -> dict:
    """Headline values for one spreadsheet, keyed by canonical field name.

    Fields of an absent optional anchor are returned as ``None``.

    Raises:
        SectionNotFoundError: a required anchor row is missing.
        ValidationError: an anchor row holds fewer values than needed.
    """
    values: dict = {name: None for name in schema.canonical_fields}
    for anchor in schema.anchors:
        index = find_anchor(grid, anchor)
        if index is None:
            if anchor.required:
                logger.warning("%s: anchor %r not found", schema.name, anchor.name)
                raise SectionNotFoundError(
                    f"{schema.name.upper()} section {anchor.name!r} not found",
                    strategy=_strategy(anchor),
                )
            logger.info("%s: optional anchor %r absent", schema.name, anchor.name)
            continue

        cells = _anchor_cells(grid, index, anchor)
        present = [c for c in cells if c is not None and cell_text(c) != ""]
        if len(present) < len(anchor.fields):
            raise ValidationError(
                f"{schema.name.upper()} section {anchor.name!r} at row {index + 1} "
                f"has {len(present)} of {len(anchor.fields)} values"
            )
        for name, cell in zip(anchor.fields, cells):
            values[name] = _convert(cell, schema)
    return values


def missing_fields(values: dict) -> list[str]:
    return [name for name, value in values.items() if value is None]


def magnitude_kind(value) -> str:
    """Diagnostic guess of what a numeric value represents.

    Below 1 reads as a fraction-of-one percentage, above 1000 as an
    absolute count, anything else as a plain percentage or index.
    """
    number = abs(parse_decimal(value))
    if number == 0:
        return "zero"
    if number < 1:
        return "fraction"
    if number > 1000:
        return "absolute"
    return "percentage"


# ── Metadata ─────────────────────────────────────────────────────────────────


def _is_skip_row(row: list, schema: FamilySchema) -> bool:
    for pattern in schema.skip_rows:
        padded = list(row) + [None] * (len(pattern) - len(row))
        if all(
            (want is None and padded[i] is None) or (want is not None and padded[i] == want)
            for i, want in enumerate(pattern)
        ):
            return True
    return False


def _is_header(row: list, schema: FamilySchema) -> bool:
    return any(sig.matches(row) for sig in schema.header_signatures)


def _survey_kind(row: list, column: int, current: str | None) -> str | None:
    if len(row) <= column or not isinstance(row[column], str):
        return current
    text = row[column]
    for kind in ("ICAEC", "IEEC", "IIEC", "ICEC"):
        if kind in text:
            return kind
    return current


def _slot_values(row: list, schema: FamilySchema, category: str) -> dict[str, str]:
    slots = schema.slots
    if schema.synthesis_category and "numero_absoluto" in slots:
        if normalize_label(category) == normalize_label(schema.synthesis_category):
            raw = {name: "0" for name in slots}
            raw["numero_absoluto"] = cell_text(row[1] if len(row) > 1 else None)
            return raw
        raw = {}
        for offset, name in enumerate(s for s in slots if s != "numero_absoluto"):
            col = offset + 1
            raw[name] = cell_text(row[col] if len(row) > col else None)
        raw["numero_absoluto"] = "0"
        return raw
    return {
        name: cell_text(row[i + 1] if len(row) > i + 1 else None)
        for i, name in enumerate(slots)
    }


def _is_value_row(row: list, schema: FamilySchema) -> bool:
    if not row or row[0] is None or cell_text(row[0]) == "":
        return False
    if schema.synthesis_category:
        return isinstance(row[0], str)
    if schema.survey_kind_column is not None:
        return len(row) > 1
    return True


def _is_empty_slot(value: str) -> bool:
    if value == "":
        return True
    return parse_decimal(value, default=None) == 0.0


def _drop_legacy_artifacts(blocks: list[_Block], schema: FamilySchema) -> int:
    dropped = 0
    for block in blocks:
        kept = []
        for entry in block.entries:
            if schema.is_legacy_artifact(entry.field_name) and all(
                _is_empty_slot(v) for v in entry.raw_values.values()
            ):
                dropped += 1
                continue
            kept.append(entry)
        block.entries = kept
    return dropped


def extract_metadata(
    grid: list[list],
    schema: FamilySchema,
    profile: LayoutProfile | None = None,
) -> list[MetadataEntry]:
    """Metadata entries for one spreadsheet, in block order.

    Labels are always taken from column 0, including for column-inverted
    layouts; the profile is only used for logging.
    """
    blocks: list[_Block] = []
    current: _Block | None = None
    survey_kind: str | None = None

    for row in grid:
        if not row or all(cell is None for cell in row):
            continue
        if _is_skip_row(row, schema):
            continue
        if _is_header(row, schema):
            if schema.survey_kind_column is not None:
                survey_kind = _survey_kind(row, schema.survey_kind_column, survey_kind)
            current = _Block(category=cell_text(row[0]))
            blocks.append(current)
            continue
        if current is None or not _is_value_row(row, schema):
            continue
        label = cell_text(row[0])
        current.entries.append(MetadataEntry(
            index_category=current.category,
            field_name=label,
            raw_values=_slot_values(row, schema, current.category),
            is_index=schema.is_index_label(label),
            survey_kind=survey_kind if schema.survey_kind_column is not None else None,
        ))

    if schema.repair_durables_block:
        repair_durables_block(blocks)

    dropped = _drop_legacy_artifacts(blocks, schema)
    entries = [entry for block in blocks for entry in block.entries]
    logger.debug(
        "%s metadata: %d entries in %d blocks (%d legacy artifacts dropped, layout %s)",
        schema.name, len(entries), len(blocks), dropped,
        profile.kind if profile else "unknown",
    )
    return entries


# ── ICF historical repair ────────────────────────────────────────────────────

DURABLES_CATEGORY = "Momento para Duráveis"
ICF_POINTS_CATEGORY = "ICF (em pontos)"
ICF_VARIATION_CATEGORY = "ICF (Variação Mensal)"
VARIATION_INDEX_FIELD = "Índice (Variação Mensal)"
POINTS_INDEX_FIELD = "Índice (Em Pontos)"

# Genuine "Momento para Duráveis" answers
DURABLES_FIELDS = ("Bom", "Mau", "Não Sabe", "Não Respondeu", "Índice")

# ICF summary components that older files list under "Momento para Duráveis"
ICF_SUMMARY_FIELDS = (
    "Emprego Atual", "Perspectiva Profissional", "Renda Atual",
    "Acesso ao crédito", "Compra a Prazo (Acesso ao crédito)",
    "Nível de Consumo Atual", "Perspectiva de Consumo",
    "ICF (em pontos)", POINTS_INDEX_FIELD,
)
_MOVABLE_FIELDS = ICF_SUMMARY_FIELDS + (DURABLES_CATEGORY, VARIATION_INDEX_FIELD)


def _find_block(blocks: list[_Block], category: str) -> _Block | None:
    for block in blocks:
        if block.category == category:
            return block
    return None


def repair_durables_block(blocks: list[_Block]) -> None:
    """Split ICF summary fields out of a mixed "Momento para Duráveis" block.

    When the monthly-variation row exists anywhere, moved fields go to
    "ICF (Variação Mensal)" (its bare header row is dropped); otherwise to
    "ICF (em pontos)".  "Índice (Em Pontos)" is renamed "ICF (em pontos)"
    and the merge into an existing block skips duplicate field names.
    """
    durables = _find_block(blocks, DURABLES_CATEGORY)
    if durables is None:
        return

    has_variation = any(
        entry.field_name == VARIATION_INDEX_FIELD for b in blocks for entry in b.entries
    )
    names = [entry.field_name for entry in durables.entries]
    mixed = any(name in ICF_SUMMARY_FIELDS for name in names)
    has_variation_header = ICF_VARIATION_CATEGORY in names

    if has_variation and (mixed or has_variation_header or len(names) > 10):
        target_category = ICF_VARIATION_CATEGORY
    elif not has_variation and mixed:
        target_category = ICF_POINTS_CATEGORY
    else:
        return

    logger.info(
        "ICF historical layout: splitting %d fields of %r into %r",
        len(names), DURABLES_CATEGORY, target_category,
    )
    keep: list[MetadataEntry] = []
    moved: list[MetadataEntry] = []
    for entry in durables.entries:
        if entry.field_name in DURABLES_FIELDS:
            keep.append(entry)
        elif entry.field_name == ICF_VARIATION_CATEGORY and target_category == ICF_VARIATION_CATEGORY:
            continue
        elif entry.field_name in _MOVABLE_FIELDS and not (
            target_category == ICF_POINTS_CATEGORY and entry.field_name == VARIATION_INDEX_FIELD
        ):
            if entry.field_name == POINTS_INDEX_FIELD:
                entry.field_name = ICF_POINTS_CATEGORY
            entry.index_category = target_category
            moved.append(entry)
        else:
            logger.warning("Unidentified field %r kept in %r", entry.field_name, DURABLES_CATEGORY)
            keep.append(entry)
    durables.entries = keep

    if not moved:
        return
    target = _find_block(blocks, target_category)
    if target is None:
        blocks.append(_Block(category=target_category, entries=moved))
        return
    existing = {entry.field_name for entry in target.entries}
    for entry in moved:
        if entry.field_name not in existing:
            target.entries.append(entry)
            existing.add(entry.field_name)
