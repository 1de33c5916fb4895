"""
Spreadsheet and archive generation for finished jobs.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
import zipfile
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Optional, Sequence

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font

from kabalot.schemas import ExpenseRecord

logger = logging.getLogger(__name__)

SHEET_TITLE = "Expenses"
LEDGER_NUMBER_FORMAT = "#,##0.00 ₪"
FOREIGN_NUMBER_FORMAT = "$#,##0.00"


@dataclass(frozen=True)
class _Column:
    header: str
    attribute: str
    width: int
    number_format: Optional[str] = None
    summed: bool = False


COLUMNS: tuple[_Column, ...] = (
    _Column("שם הקובץ", "file_name", 30),
    _Column("שם העסק", "business_name", 25),
    _Column("מספר עסק", "business_number", 20),
    _Column("תאריך", "date", 15),
    _Column("מספר חשבונית", "invoice_number", 20),
    _Column('סכום ללא מע"מ', "price_without_vat", 20, LEDGER_NUMBER_FORMAT, True),
    _Column('מע"מ', "vat", 15, LEDGER_NUMBER_FORMAT, True),
    _Column("סכום כולל", "total_price", 20, LEDGER_NUMBER_FORMAT, True),
    _Column("הומר מדולרים*", "original_total_foreign", 10, FOREIGN_NUMBER_FORMAT, True),
)


class ArtifactBuildError(RuntimeError):
    """Raised when the spreadsheet or archive cannot be written."""


@dataclass(frozen=True)
class BuiltArtifacts:
    spreadsheet_path: Path
    archive_path: Path


def spreadsheet_filename(
    prefix: str,
    period_start: date,
    period_end: date,
    name: Optional[str] = None,
) -> str:
    """Base file name (without de-duplication) for a period's spreadsheet."""
    base = f"{prefix}-{period_start:%d-%m-%y}-to-{period_end:%d-%m-%y}"
    if name and name.strip():
        base += "-" + re.sub(r"\s+", "_", name.strip())
    return base


def unique_path(folder: Path, base_name: str, suffix: str) -> Path:
    candidate = folder / f"{base_name}{suffix}"
    counter = 1
    while candidate.exists():
        candidate = folder / f"{base_name} ({counter}){suffix}"
        counter += 1
    return candidate


def _cell_value(expense: ExpenseRecord, column: _Column):
    value = getattr(expense, column.attribute)
    if column.attribute == "original_total_foreign":
        return value if value else None
    return value


def build_workbook(expenses: Sequence[ExpenseRecord]) -> Workbook:
    """Lay out one row per expense plus a bold totals row."""
    wb = Workbook()
    ws = wb.active
    ws.title = SHEET_TITLE
    ws.sheet_view.rightToLeft = True

    for index, column in enumerate(COLUMNS, start=1):
        cell = ws.cell(row=1, column=index, value=column.header)
        cell.font = Font(bold=True, size=12)
        cell.alignment = Alignment(horizontal="center")
        ws.column_dimensions[cell.column_letter].width = column.width

    totals = {column.attribute: 0.0 for column in COLUMNS if column.summed}
    row = 2
    for expense in expenses:
        for index, column in enumerate(COLUMNS, start=1):
            value = _cell_value(expense, column)
            cell = ws.cell(row=row, column=index, value=value)
            cell.alignment = Alignment(horizontal="right", vertical="center")
            if column.number_format:
                cell.number_format = column.number_format
            if column.summed and value:
                totals[column.attribute] += float(value)
        row += 1

    for index, column in enumerate(COLUMNS, start=1):
        if index == 1:
            value = "Total"
        elif column.summed:
            value = totals[column.attribute]
        else:
            value = None
        cell = ws.cell(row=row, column=index, value=value)
        cell.font = Font(bold=True)
        cell.alignment = Alignment(horizontal="center")
        if column.number_format:
            cell.number_format = column.number_format
    return wb


def write_archive(files: Sequence[Path], archive_path: Path) -> Path:
    """Bundle processed input files by base name."""
    with zipfile.ZipFile(
        archive_path, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9
    ) as bundle:
        written: set[str] = set()
        for path in files:
            if path.name in written or not path.exists():
                continue
            bundle.write(path, arcname=path.name)
            written.add(path.name)
    return archive_path


class ArtifactBuilder:
    """Produce the downloadable spreadsheet and archive for a job."""

    def __init__(self, prefix: str = "סיכום הוצאות") -> None:
        self._prefix = prefix

    def build_sync(
        self,
        expenses: Sequence[ExpenseRecord],
        files: Sequence[Path],
        working_dir: Path,
        period_start: date,
        period_end: date,
        name: Optional[str] = None,
        *,
        label_prefix: Optional[str] = None,
    ) -> BuiltArtifacts:
        base = spreadsheet_filename(label_prefix or self._prefix, period_start, period_end, name)
        spreadsheet_path = unique_path(working_dir, base, ".xlsx")
        workbook = build_workbook(expenses)
        try:
            workbook.save(spreadsheet_path)
        except (OSError, ValueError, TypeError) as exc:
            logger.error("Error saving Excel file %s: %s", spreadsheet_path, exc)
            raise ArtifactBuildError("Failed to save Excel file") from exc
        logger.info("Expense summary Excel file created at: %s", spreadsheet_path)

        archive_path = unique_path(
            working_dir, f"processed_files_{int(time.time() * 1000)}", ".zip"
        )
        try:
            write_archive(files, archive_path)
        except (OSError, zipfile.BadZipFile) as exc:
            raise ArtifactBuildError("Failed to create ZIP archive") from exc
        logger.info("ZIP file created at: %s", archive_path)
        return BuiltArtifacts(spreadsheet_path=spreadsheet_path, archive_path=archive_path)

    async def build(
        self,
        expenses: Sequence[ExpenseRecord],
        files: Sequence[Path],
        working_dir: Path,
        period_start: date,
        period_end: date,
        name: Optional[str] = None,
        *,
        label_prefix: Optional[str] = None,
    ) -> BuiltArtifacts:
        return await asyncio.to_thread(
            self.build_sync,
            expenses,
            files,
            working_dir,
            period_start,
            period_end,
            name,
            label_prefix=label_prefix,
        )


__all__ = [
    "ArtifactBuildError",
    "ArtifactBuilder",
    "BuiltArtifacts",
    "COLUMNS",
    "build_workbook",
    "spreadsheet_filename",
    "unique_path",
    "write_archive",
]
