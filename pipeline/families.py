"""
Index-family schema descriptors.

The publisher releases three monthly surveys with the same distribution
mechanics (one spreadsheet per month/region, one login-protected portal
table per survey) but different sheet layouts and headline figures.  Each
family is described once here; the classifier, extractor, portal parser,
store and coordinator are all driven by the descriptor rather than by
per-family code paths.

Usage::

    from pipeline.families import get_family

    icf = get_family("icf")
    icf.canonical_fields      # ('nc_pontos', 'ate_10_sm_pontos', ...)
"""

from __future__ import annotations

from dataclasses import dataclass, field

from pipeline.errors import ConfigError
from utils.strings import normalize_label

# Whole-country aggregate first, then the 27 federative units
REGIONS = (
    "BR", "AC", "AL", "AP", "AM", "BA", "CE", "DF", "ES", "GO", "MA", "MT",
    "MS", "MG", "PA", "PB", "PR", "PE", "PI", "RJ", "RN", "RS", "RO", "RR",
    "SC", "SP", "SE", "TO",
)

FIELD_TEXT = "text"
FIELD_NUMBER = "number"


@dataclass(frozen=True)
class AnchorSpec:
    """Where a group of canonical fields lives in the sheet.

    ``layout="inline"`` reads columns 1..n of the anchor row itself;
    ``layout="below"`` reads column 1 of the n rows under the anchor.
    The last matching row wins (the headline block closes every sheet).
    """

    name: str
    phrases: tuple[str, ...]        # exact historical phrasing, matched in column 0
    keywords: tuple[str, ...]       # widened search: all must occur in the row text
    fields: tuple[str, ...]
    layout: str = "inline"
    required: bool = True
    # When an optional anchor is absent, its fields are computed as the
    # month-over-month change of these fields
    derive_from: tuple[str, ...] = ()


@dataclass(frozen=True)
class HeaderSignature:
    """Column 1-3 signature of a metadata block header row.

    ``None`` means the cell must be empty.  Comparison is case-insensitive
    and whitespace-normalised; ``col3_contains`` relaxes column 3 to a
    substring match (the publisher appends footnote marks there).
    """

    col1: str | None
    col2: str | None
    col3: str | None
    col3_contains: bool = False

    def matches(self, row: list) -> bool:
        cells = [normalize_label(row[i]) if i < len(row) else "" for i in (1, 2, 3)]
        expected = (self.col1, self.col2, self.col3)
        for pos, (got, want) in enumerate(zip(cells, expected)):
            if want is None:
                if got:
                    return False
                continue
            want = normalize_label(want)
            if pos == 2 and self.col3_contains:
                if want not in got:
                    return False
            elif got != want:
                return False
        return True


@dataclass(frozen=True)
class FamilySchema:
    """Everything the engine needs to know about one index family."""

    name: str                                   # "icf"
    url_segment: str                            # "ICF" in the download URL
    marker: str                                 # family token the classifier counts
    canonical_fields: tuple[str, ...]
    field_kind: str                             # FIELD_TEXT or FIELD_NUMBER
    anchors: tuple[AnchorSpec, ...]
    header_signatures: tuple[HeaderSignature, ...]
    slots: tuple[str, ...]                      # metadata value slot names
    index_labels: tuple[str, ...] = ()
    legacy_artifact_fields: tuple[str, ...] = ()
    expected_metadata_count: int = 0
    metadata_tolerance: int = 5
    default_period: str = "01/2010:>"
    portal_url: str = ""
    # Family-specific metadata rules
    synthesis_category: str | None = None       # PEIC: block whose only value is absolute
    survey_kind_column: int | None = None       # ICEC: header column naming the sub-survey
    repair_durables_block: bool = False         # ICF: split mixed "Momento para Duráveis"
    skip_rows: tuple[tuple, ...] = field(default_factory=tuple)

    @property
    def portal_value_count(self) -> int:
        return len(self.canonical_fields)

    def is_legacy_artifact(self, label: str) -> bool:
        return normalize_label(label) in {normalize_label(f) for f in self.legacy_artifact_fields}

    def is_index_label(self, label: str) -> bool:
        return normalize_label(label) in {normalize_label(f) for f in self.index_labels}


# ── ICF ──────────────────────────────────────────────────────────────────────

ICF_POINTS = ("nc_pontos", "ate_10_sm_pontos", "mais_de_10_sm_pontos")
ICF_PERCENT = ("nc_percentual", "ate_10_sm_percentual", "mais_de_10_sm_percentual")

ICF = FamilySchema(
    name="icf",
    url_segment="ICF",
    marker="icf",
    canonical_fields=ICF_POINTS + ICF_PERCENT,
    field_kind=FIELD_TEXT,
    anchors=(
        AnchorSpec(
            name="points",
            phrases=("índice (em pontos)", "índice(em pontos)"),
            keywords=("indice", "pontos"),
            fields=ICF_POINTS,
        ),
        AnchorSpec(
            name="monthly_variation",
            phrases=("índice (variação mensal)",),
            keywords=("indice", "variacao mensal"),
            fields=ICF_PERCENT,
            required=False,
            derive_from=ICF_POINTS,
        ),
    ),
    header_signatures=(
        HeaderSignature("TOTAL", "até 10sm - %", "mais de 10sm", col3_contains=True),
        HeaderSignature("total - %", "até 10sm - %", "mais de 10sm", col3_contains=True),
        HeaderSignature("total - % (em pontos)", "até 10sm - % (em pontos)",
                        "mais de 10sm - % (em pontos)", col3_contains=True),
    ),
    slots=("total", "ate_10_sm", "mais_de_10_sm"),
    index_labels=("Índice", "Índice (Em Pontos)"),
    legacy_artifact_fields=("Índice (Variação Mensal)", "Não Respondeu"),
    expected_metadata_count=51,
    default_period="04/2012:>",
    portal_url="https://pesquisascnc.com.br/pesquisa-icf/",
    repair_durables_block=True,
)

# ── ICEC ─────────────────────────────────────────────────────────────────────

ICEC_FIELDS = ("icec", "ate_50", "mais_de_50", "semiduraveis", "nao_duraveis", "duraveis")

ICEC = FamilySchema(
    name="icec",
    url_segment="ICEC",
    marker="icec",
    canonical_fields=ICEC_FIELDS,
    field_kind=FIELD_NUMBER,
    anchors=(
        AnchorSpec(
            name="points",
            phrases=("índice (em pontos)",),
            keywords=("indice", "pontos"),
            fields=ICEC_FIELDS,
        ),
    ),
    header_signatures=(
        HeaderSignature("total - em %", "Empresas com até 50 empregados",
                        "Empresas com mais de 50 empregados"),
        HeaderSignature("Total", "Empresas com até 50 empregados",
                        "Empresas com mais de 50 empregados"),
    ),
    slots=("total", "ate_50_empregados", "mais_de_50_empregados",
           "semiduraveis", "nao_duraveis", "duraveis"),
    index_labels=("Índice", "Índice (em Pontos)"),
    legacy_artifact_fields=("Não sabe", "Não respondeu"),
    expected_metadata_count=45,
    default_period="03/2012:>",
    portal_url="https://pesquisascnc.com.br/pesquisa-icec/",
    survey_kind_column=7,
    skip_rows=((None, None, "Porte"),),
)

# ── PEIC ─────────────────────────────────────────────────────────────────────

PEIC_PERCENT = (
    "endividados_percentual",
    "contas_em_atraso_percentual",
    "nao_terao_condicoes_de_pagar_percentual",
)
PEIC_ABSOLUTE = (
    "endividados_absoluto",
    "contas_em_atraso_absoluto",
    "nao_terao_condicoes_de_pagar_absoluto",
)

PEIC = FamilySchema(
    name="peic",
    url_segment="PEIC",
    marker="peic",
    canonical_fields=PEIC_PERCENT + PEIC_ABSOLUTE,
    field_kind=FIELD_TEXT,
    anchors=(
        AnchorSpec(
            name="percentage",
            phrases=("peic (percentual)",),
            keywords=("peic", "percentual"),
            fields=PEIC_PERCENT,
            layout="below",
        ),
        AnchorSpec(
            name="synthesis",
            phrases=("peic (sintese)", "peic (síntese)"),
            keywords=("peic", "sintese"),
            fields=PEIC_ABSOLUTE,
            layout="below",
        ),
    ),
    header_signatures=(
        HeaderSignature("total - %", "até 10sm - %", "mais de 10sm", col3_contains=True),
        HeaderSignature("total", "até 10 sm", "mais de 10 sm"),
        HeaderSignature("Numero Absoluto", None, None),
        HeaderSignature("Total (absoluto)", None, None),
    ),
    slots=("total", "ate_10_sm", "mais_de_10_sm", "numero_absoluto"),
    legacy_artifact_fields=("Não sabe", "Não respondeu"),
    expected_metadata_count=35,
    default_period="03/2012:-1M",
    portal_url="https://pesquisascnc.com.br/pesquisa-peic/",
    synthesis_category="PEIC (Sintese)",
)

FAMILIES: dict[str, FamilySchema] = {f.name: f for f in (ICF, ICEC, PEIC)}


def get_family(name: str) -> FamilySchema:
    """Look up a family descriptor by name (case-insensitive)."""
    try:
        return FAMILIES[name.strip().lower()]
    except KeyError:
        raise ConfigError(
            f"Unknown index family {name!r}; expected one of {sorted(FAMILIES)}"
        ) from None


def validate_region(code: str) -> str:
    """Normalise and check a region code."""
    region = code.strip().upper()
    if region not in REGIONS:
        raise ConfigError(f"Unknown region code {code!r}")
    return region
