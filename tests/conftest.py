"""
Pytest fixtures for the CNC index ingestion tests.

Provides grid builders that mimic the publisher's monthly sheets for each
family, a helper that writes a grid to a real OOXML workbook, an in-memory
IndexStore, and an IngestConfig pointed at ``tmp_path``.

Metadata row counts match the production baselines:
    ICF  51 entries (7 blocks x 7 answers + 2 summary rows)
    ICEC 46 entries (3 surveys x 3 blocks x 5 answers + the points row)
    PEIC 35 entries (3 percentage + 29 breakdown + 3 synthesis rows)
"""

import sys
from pathlib import Path
from types import SimpleNamespace

import openpyxl
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from pipeline.store import IndexStore  # noqa: E402
from utils.config import IngestConfig  # noqa: E402

# ── Grid builders ─────────────────────────────────────────────────────────────

ICF_HEADER = ["TOTAL", "até 10sm - %", "mais de 10sm - %"]
ICF_CATEGORIES = (
    "Emprego Atual", "Perspectiva Profissional", "Renda Atual",
    "Compra a Prazo (Acesso ao crédito)", "Nível de Consumo Atual",
    "Perspectiva de Consumo", "Momento para Duráveis",
)
ICF_ANSWERS = ("Muito bom", "Bom", "Regular", "Ruim", "Muito ruim", "Não Sabe", "Índice")


def build_icf_grid(points=("101,2", "99,8", "110,5"), variation=("0,5", "0,3", "1,1")):
    """ICF sheet; pass ``variation=None`` to omit the monthly-variation row."""
    grid = [["ICF - Intenção de Consumo das Famílias"], []]
    for category in ICF_CATEGORIES:
        grid.append([category, *ICF_HEADER])
        for answer in ICF_ANSWERS:
            grid.append([answer, "10,5", "11,2", "9,8"])
        grid.append([])
    grid.append(["ICF", *ICF_HEADER])
    grid.append(["Índice (Em Pontos)", *points])
    if variation is not None:
        grid.append(["Índice (Variação Mensal)", *variation])
    return grid


ICEC_HEADER = [
    "Total", "Empresas com até 50 empregados", "Empresas com mais de 50 empregados",
    "Semiduráveis", "Não duráveis", "Duráveis",
]
ICEC_SURVEYS = (
    ("ICAEC - Índice de Condições Atuais", ("Economia", "Setor", "Empresa")),
    ("IEEC - Índice de Expectativas", ("Economia", "Setor", "Empresa")),
    ("IIEC - Índice de Investimento", ("Contratação", "Investimento", "Estoques")),
)
ICEC_ANSWERS = ("Melhoraram muito", "Melhoraram", "Pioraram", "Pioraram muito", "Índice")
ICEC_POINTS = (110.5, 108.2, 115.0, 109.1, 111.3, 107.4)


def build_icec_grid(points=ICEC_POINTS):
    grid = [["ICEC - Índice de Confiança do Empresário do Comércio"], []]
    for survey_label, categories in ICEC_SURVEYS:
        for category in categories:
            grid.append([None, None, "Porte"])
            grid.append([category, *ICEC_HEADER, survey_label])
            for answer in ICEC_ANSWERS:
                grid.append([answer, 10.0, 20.0, 30.0, 40.0, 50.0, 60.0])
    grid.append(["Índice (em Pontos)", *points])
    return grid


PEIC_HEADER = ["Total - %", "Até 10sm - %", "Mais de 10sm - %"]
PEIC_BREAKDOWN = (
    ("Tipo de dívida", 10),
    ("Tempo de comprometimento com dívida", 8),
    ("Parcela da renda comprometida", 6),
    ("Nível de endividamento", 5),
)
PEIC_LINES = (
    "Famílias endividadas",
    "Famílias com contas em atraso",
    "Famílias que não terão condições de pagar",
)


def build_peic_grid(percent=("78,5", "29,1", "12,3"), absolute=(12850000, 4760000, 2010000)):
    grid = [["PEIC - Pesquisa de Endividamento e Inadimplência do Consumidor"], []]
    grid.append(["PEIC (Percentual)", *PEIC_HEADER])
    for line, value in zip(PEIC_LINES, percent):
        grid.append([line, value, "80,0", "70,0"])
    for category, size in PEIC_BREAKDOWN:
        grid.append([category, *PEIC_HEADER])
        for i in range(1, size + 1):
            grid.append([f"Opção {i}", "10,0", "11,0", "9,0"])
    grid.append(["PEIC (Sintese)", "Numero Absoluto"])
    for line, value in zip(PEIC_LINES, absolute):
        grid.append([line, value])
    return grid


def write_workbook(path: Path, grid: list) -> Path:
    """Write a grid to an OOXML workbook (any file name, including ``.xls``)."""
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = "Planilha1"
    for row in grid:
        ws.append(list(row) if row else [None])
    path.parent.mkdir(parents=True, exist_ok=True)
    wb.save(path)
    return path


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture()
def grid_builders():
    """Builders for custom sheets: ``grid_builders.icf(variation=None)``."""
    return SimpleNamespace(icf=build_icf_grid, icec=build_icec_grid, peic=build_peic_grid)


@pytest.fixture()
def icf_grid():
    return build_icf_grid()


@pytest.fixture()
def icec_grid():
    return build_icec_grid()


@pytest.fixture()
def peic_grid():
    return build_peic_grid()


@pytest.fixture()
def workbook_factory(tmp_path):
    """Return a callable that writes a grid to ``tmp_path/fixtures/<name>``."""
    def _make(name: str, grid: list) -> Path:
        return write_workbook(tmp_path / "fixtures" / name, grid)
    return _make


@pytest.fixture()
def store():
    s = IndexStore(":memory:")
    yield s
    s.close()


@pytest.fixture()
def ingest_config(tmp_path):
    cfg = IngestConfig()
    cfg.base_url = "https://files.example.test/upload"
    cfg.credentials_user = "analyst"
    cfg.credentials_password = "secret"
    cfg.db_path = tmp_path / "indices.sqlite"
    cfg.temp_dir = tmp_path / "temp"
    cfg.processing_method = "Incremental"
    cfg.notify_url = None
    return cfg
