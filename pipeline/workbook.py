"""
Spreadsheet reader.

The publisher serves ``.xls`` URLs, but over the years the payload has been
both legacy OLE2 workbooks and OOXML workbooks renamed to ``.xls``.  The
file signature decides the reader: openpyxl for OOXML, xlrd for OLE2.

The grid returned is the first sheet as a list of row lists, with empty
cells as ``None`` and trailing empty cells trimmed.
"""

from __future__ import annotations

import logging
from pathlib import Path

import openpyxl
import xlrd

from pipeline.errors import ValidationError

logger = logging.getLogger(__name__)

OLE2_SIGNATURE = b"\xd0\xcf\x11\xe0"
OOXML_SIGNATURE = b"PK\x03\x04"


def sniff_format(path: Path) -> str | None:
    """Return ``"ooxml"``, ``"ole2"`` or ``None`` from the file's first bytes."""
    with open(path, "rb") as fh:
        head = fh.read(8)
    if head.startswith(OOXML_SIGNATURE):
        return "ooxml"
    if head.startswith(OLE2_SIGNATURE):
        return "ole2"
    return None


def _trim(row: list) -> list:
    end = len(row)
    while end and (row[end - 1] is None or row[end - 1] == ""):
        end -= 1
    return [None if v == "" else v for v in row[:end]]


def _read_ooxml(path: Path) -> list[list]:
    # openpyxl rejects a ".xls" file name, so hand it the open file instead
    with open(path, "rb") as fh:
        wb = openpyxl.load_workbook(fh, read_only=True, data_only=True)
        try:
            ws = wb.worksheets[0]
            return [_trim(list(row)) for row in ws.iter_rows(values_only=True)]
        finally:
            wb.close()


def _read_ole2(path: Path) -> list[list]:
    book = xlrd.open_workbook(str(path), on_demand=True)
    try:
        sheet = book.sheet_by_index(0)
        return [_trim(sheet.row_values(i)) for i in range(sheet.nrows)]
    finally:
        book.release_resources()


def load_grid(path: Path | str) -> list[list]:
    """Read the first sheet of a workbook into a row grid.

    Raises:
        ValidationError: missing file, unknown signature, or a reader failure.
    """
    path = Path(path)
    if not path.exists():
        raise ValidationError(f"Workbook not found: {path}")
    kind = sniff_format(path)
    try:
        if kind == "ooxml":
            grid = _read_ooxml(path)
        elif kind == "ole2":
            grid = _read_ole2(path)
        else:
            raise ValidationError(f"Unrecognised workbook signature: {path.name}")
    except ValidationError:
        raise
    except Exception as exc:
        raise ValidationError(f"Unreadable workbook {path.name}: {exc}") from exc
    logger.debug("Loaded %d rows from %s (%s)", len(grid), path.name, kind)
    return grid
