"""
Worksheet loading and column cleanup.

The portal export pads the table with a varying number of blank spacer
columns. Every column read in the parser uses a fixed offset, so those
spacers are removed first. Rows are immutable tuples of SheetCell (or None
for a missing cell); cleanup returns new rows instead of editing in place.
"""

import logging
import os
from typing import Iterable, Optional, Sequence

import xlrd
from xlrd.biffh import (
    XL_CELL_BLANK,
    XL_CELL_DATE,
    XL_CELL_EMPTY,
    XL_CELL_TEXT,
)

from scraper.models import SheetCell

logger = logging.getLogger(__name__)

EMPTY_COLUMN_THRESHOLD = 10
FAILED_MARKER_SUFFIX = ".failed"

Row = tuple
Rows = tuple


class WorkbookError(Exception):
    """The workbook could not be opened or read."""


def is_cell_empty(cell: Optional[SheetCell]) -> bool:
    """Blank means missing, an empty/blank cell, or whitespace-only text.

    xlrd exposes a formula through its cached result, so a formula that
    evaluated to blank text is caught by the text check.
    """
    if cell is None:
        return True
    if cell.ctype in (XL_CELL_EMPTY, XL_CELL_BLANK):
        return True
    if cell.ctype == XL_CELL_TEXT:
        return not str(cell.value or "").strip()
    return cell.value is None


def find_completely_empty_columns(rows: Sequence[Row], from_row: int = 0,
                                  threshold: int = EMPTY_COLUMN_THRESHOLD) -> list[int]:
    """Return indices of columns with fewer than threshold non-blank cells.

    Scanning a column stops as soon as threshold non-blank cells are found.
    """
    max_col = max((len(row) for row in rows), default=0)
    empty_cols = []
    for col in range(max_col):
        filled = 0
        for r in range(max(from_row, 0), len(rows)):
            if filled >= threshold:
                break
            row = rows[r]
            if col < len(row) and not is_cell_empty(row[col]):
                filled += 1
        if filled < threshold:
            empty_cols.append(col)
    return empty_cols


def delete_columns(rows: Sequence[Row], cols: Iterable[int]) -> Rows:
    """Return rows with the given columns removed.

    Columns are removed right to left so earlier removals never shift the
    index of a column still waiting to be removed. Every other cell moves
    left unchanged (value, type, style, note and hyperlink travel with it).
    """
    ordered = sorted(set(cols), reverse=True)
    cleaned = []
    for row in rows:
        cells = list(row)
        for col in ordered:
            if 0 <= col < len(cells):
                del cells[col]
        cleaned.append(tuple(cells))
    return tuple(cleaned)


def normalize(rows: Sequence[Row], from_row: int = 0) -> tuple[Rows, list[int]]:
    """Drop structurally empty columns. Returns (new_rows, deleted_column_indices)."""
    empty_cols = find_completely_empty_columns(rows, from_row)
    if not empty_cols:
        return tuple(tuple(row) for row in rows), []
    logger.info(f"Removing {len(empty_cols)} empty columns: {empty_cols}")
    return delete_columns(rows, empty_cols), empty_cols


def rows_from_sheet(sheet, datemode: int) -> Rows:
    """Copy an xlrd sheet into immutable rows of SheetCell."""
    notes = getattr(sheet, "cell_note_map", None) or {}
    links = getattr(sheet, "hyperlink_map", None) or {}

    rows = []
    for r in range(sheet.nrows):
        cells = []
        for c, cell in enumerate(sheet.row(r)):
            if cell.ctype == XL_CELL_EMPTY:
                cells.append(None)
                continue
            value = cell.value
            if cell.ctype == XL_CELL_DATE:
                try:
                    value = xlrd.xldate_as_datetime(cell.value, datemode)
                except (ValueError, OverflowError):
                    logger.debug(f"Keeping raw date serial at row {r}, col {c}: {cell.value}")
            note = notes.get((r, c))
            link = links.get((r, c))
            cells.append(SheetCell(
                value=value,
                ctype=cell.ctype,
                xf_index=getattr(cell, "xf_index", None),
                note=note.text if note is not None else None,
                hyperlink=link.url_or_path if link is not None else None,
            ))
        rows.append(tuple(cells))
    return tuple(rows)


def load_worksheet(path: str) -> Rows:
    """Read the first sheet of a legacy .xls workbook."""
    try:
        book = xlrd.open_workbook(path, formatting_info=True, on_demand=True)
    except (OSError, xlrd.XLRDError) as e:
        raise WorkbookError(f"Cannot open workbook {path}: {e}") from e

    try:
        sheet = book.sheet_by_index(0)
        logger.info(f"Loaded sheet '{sheet.name}' from {path}: {sheet.nrows} rows, {sheet.ncols} columns")
        return rows_from_sheet(sheet, book.datemode)
    except xlrd.XLRDError as e:
        raise WorkbookError(f"Cannot read first sheet of {path}: {e}") from e
    finally:
        book.release_resources()


def failed_marker_path(path: str) -> str:
    return path + FAILED_MARKER_SUFFIX


def is_marked_failed(path: str) -> bool:
    return os.path.exists(failed_marker_path(path))


def mark_failed(path: str) -> None:
    """Flag an installed workbook whose parse failed.

    The fetcher treats a flagged workbook as changed, so the next download
    is parsed again even when its bytes are identical.
    """
    try:
        with open(failed_marker_path(path), "w", encoding="utf-8"):
            pass
    except OSError as e:
        logger.warning(f"Could not flag {path} for reparse: {e}")


def clear_failed(path: str) -> None:
    try:
        os.remove(failed_marker_path(path))
    except FileNotFoundError:
        pass
