"""Month-end transfer from the input workbook to the two output workbooks.

The monthly report is a copy of the work file with every fee column filled
in; the aggregated summary is a copy of the bundled template with one set of
totals per vehicle sheet. Both land in a folder named after the fiscal
period, month and reiwa year.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Callable, List, Mapping, Optional, Tuple

from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from . import data_manager, fees, log
from .constants import FIRST_DATA_ROW
from .errors import InputValidationError


@dataclass(frozen=True)
class TransferRequest:
    """Period identifiers and destination chosen for one transfer run."""

    period: int
    month: int
    r_number: int
    output_dir: Path


@dataclass(frozen=True)
class TransferProgress:
    """Progress notification handed to the caller's callback."""

    current: int
    total: int
    message: str


@dataclass(frozen=True)
class TransferResult:
    """Locations of the files produced by a transfer."""

    output_dir: Path
    report_file: Path
    summary_file: Path
    processed_sheets: Tuple[str, ...]


@dataclass(frozen=True)
class InputTotals:
    """Per-sheet sums of the clerk-entered columns."""

    days: int
    hanso: int
    yuryo_km: Decimal
    muryo_km: Decimal


ProgressCallback = Callable[[TransferProgress], None]


def validate_request(request: TransferRequest) -> None:
    """Reject period identifiers that cannot name an output folder.

    Raises:
        InputValidationError: If a number is not positive or the month is
            outside 1..12.
    """

    if request.period <= 0 or request.r_number <= 0 or not 1 <= request.month <= 12:
        log.error(
            "Invalid transfer request: period=%s month=%s r=%s",
            request.period,
            request.month,
            request.r_number,
        )
        raise InputValidationError("期、月、R番号を正しく入力してください。")


def build_output_paths(request: TransferRequest, title: str) -> Tuple[Path, Path, Path]:
    """Return the output folder, report file and summary file paths."""

    stem = f"{request.period}期 {request.month}月 R{request.r_number} {title}"
    folder = Path(request.output_dir).expanduser().resolve() / stem
    return folder, folder / f"{stem}.xlsx", folder / f"{stem}集計.xlsx"


def _amount(value: Decimal) -> object:
    return data_manager.to_cell_value(value) if value > 0 else None


def _read_row_input(sheet: Worksheet, row: int, mapping: data_manager.SheetColumnMap) -> fees.RowInput:
    def value(column: int) -> Decimal:
        return data_manager.cell_decimal(sheet.cell(row=row, column=column).value)

    return fees.RowInput(
        hanso=int(value(mapping.hanso_count)),
        yuryo_km=value(mapping.yuryo_km),
        is_koryo=value(mapping.is_koryo) == 1,
        late_fee=value(mapping.shinya_fee),
        late_minutes=value(mapping.shinya_minutes),
    )


def _write_fee_cells(
    sheet: Worksheet,
    row: int,
    mapping: data_manager.SheetColumnMap,
    kihon: Decimal,
    soko: Decimal,
    shinya: Decimal,
    total: Decimal,
) -> None:
    sheet.cell(row=row, column=mapping.kihon_fee).value = _amount(kihon)
    sheet.cell(row=row, column=mapping.soko_fee).value = _amount(soko)
    sheet.cell(row=row, column=mapping.shinya_fee).value = _amount(shinya)
    sheet.cell(row=row, column=mapping.total_fee).value = _amount(total)


def calculate_input_totals(sheet: Worksheet, total_row: int, mapping: data_manager.SheetColumnMap) -> InputTotals:
    """Count working days and sum transports and distances above ``total_row``."""

    days = 0
    hanso = 0
    yuryo_km = Decimal("0")
    muryo_km = Decimal("0")
    for row in range(FIRST_DATA_ROW, total_row):
        if sheet.cell(row=row, column=mapping.day).value is not None:
            days += 1
        hanso += int(data_manager.cell_decimal(sheet.cell(row=row, column=mapping.hanso_count).value))
        yuryo_km += data_manager.cell_decimal(sheet.cell(row=row, column=mapping.yuryo_km).value)
        muryo_km += data_manager.cell_decimal(sheet.cell(row=row, column=mapping.muryo_km).value)
    return InputTotals(days=days, hanso=hanso, yuryo_km=yuryo_km, muryo_km=muryo_km)


def process_normal_sheet(
    input_sheet: Worksheet,
    report_sheet: Worksheet,
    summary_sheet: Optional[Worksheet],
    rate: data_manager.VehicleRate,
    mapping: data_manager.ColumnMapping,
) -> Optional[fees.SheetTotals]:
    """Fill the fee columns of one report sheet and its summary tab.

    Returns:
        SheetTotals | None: The fee totals written to the totals row, or
            ``None`` when the input sheet has no totals row.
    """

    columns = mapping.normal_sheet
    total_row = data_manager.find_total_row(input_sheet)
    if total_row is None:
        log.warning("Skipping sheet '%s': no totals row", input_sheet.title)
        return None

    ootsuki = data_manager.is_ootsuki(input_sheet.title)
    totals = fees.SheetTotals()
    for row in range(FIRST_DATA_ROW, total_row):
        row_fees = fees.calculate_row_fees(_read_row_input(input_sheet, row, columns), rate, ootsuki=ootsuki)
        _write_fee_cells(report_sheet, row, columns, row_fees.kihon, row_fees.soko, row_fees.shinya, row_fees.total)
        totals.add(row_fees)

    _write_fee_cells(report_sheet, total_row, columns, totals.kihon, totals.soko, totals.shinya, totals.total)

    if summary_sheet is not None:
        inputs = calculate_input_totals(input_sheet, total_row, columns)
        cells = mapping.shukei_sheet
        summary_sheet[cells.days] = inputs.days
        summary_sheet[cells.hanso] = inputs.hanso
        summary_sheet[cells.yuryo_km] = data_manager.to_cell_value(inputs.yuryo_km)
        summary_sheet[cells.muryo_km] = data_manager.to_cell_value(inputs.muryo_km)
        summary_sheet[cells.total] = _amount(totals.total)

    return totals


def process_east_sheet(input_sheet: Worksheet, summary_sheet: Worksheet, mapping: data_manager.ColumnMapping) -> None:
    """Copy the five east aggregates into the matching summary cells."""

    east = mapping.east_sheet
    cells = mapping.shukei_sheet
    summary_sheet[cells.days] = input_sheet[east.jitsudo].value
    summary_sheet[cells.hanso] = input_sheet[east.hanso].value
    summary_sheet[cells.yuryo_km] = input_sheet[east.yuryo_km].value
    summary_sheet[cells.muryo_km] = input_sheet[east.muryo_km].value
    summary_sheet[cells.total] = input_sheet[east.unso_jisseki].value
    log.info("Copied east values of '%s'", input_sheet.title)


def stamp_header(workbook: Workbook, sheet_name: str, request: TransferRequest) -> None:
    """Write the reiwa year and month into A1/B1 of the header sheet."""

    if sheet_name not in workbook.sheetnames:
        return
    sheet = workbook[sheet_name]
    sheet["A1"] = f"R{request.r_number}"
    sheet["B1"] = request.month


def execute_transfer(
    settings: data_manager.ConfigSettings,
    rates: Mapping[str, data_manager.VehicleRate],
    request: TransferRequest,
    *,
    progress: Optional[ProgressCallback] = None,
) -> TransferResult:
    """Produce the monthly report and the aggregated summary.

    The work file must already be saved: it is copied byte-for-byte to the
    report path and read back as the source of every figure.

    Args:
        settings (ConfigSettings): Paths, titles and the column mapping.
        rates (Mapping[str, VehicleRate]): Rate table keyed by vehicle type.
        request (TransferRequest): Period identifiers and destination.
        progress (Callable | None): Receives a :class:`TransferProgress`
            before each sheet and once more before saving.

    Returns:
        TransferResult: Paths of the produced files.

    Raises:
        InputValidationError: If the request identifiers are invalid.
        FileNotFoundError: If the work file or the summary template is
            missing.
        MissingReferenceError: If a normal sheet has no applicable rate.
    """

    validate_request(request)

    def report(current: int, total: int, message: str) -> None:
        if progress is not None:
            progress(TransferProgress(current=current, total=total, message=message))

    folder, report_file, summary_file = build_output_paths(request, settings.report_title)
    for source in (settings.work_file, settings.summary_template):
        if not Path(source).exists():
            raise FileNotFoundError(f"Workbook not found: {source}")

    folder.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(settings.work_file, report_file)
    log.info("Copied monthly report to '%s'", report_file)
    shutil.copyfile(settings.summary_template, summary_file)
    log.info("Copied summary template to '%s'", summary_file)

    input_book = data_manager.open_workbook(settings.work_file)
    report_book = data_manager.open_workbook(report_file)
    summary_book = data_manager.open_workbook(summary_file)

    sheets = [name for name in input_book.sheetnames if not data_manager.is_registration_sheet(name)]
    report(0, len(sheets), "--- 全シートの転記処理を開始 ---")
    log.info("Starting transfer of %d sheets", len(sheets))

    processed: List[str] = []
    for index, name in enumerate(sheets):
        report(index, len(sheets), f"処理中: {name} ...")
        summary_sheet = summary_book[name] if name in summary_book.sheetnames else None

        if data_manager.is_normal_sheet(name):
            rate = fees.resolve_vehicle_type(name, rates)
            process_normal_sheet(input_book[name], report_book[name], summary_sheet, rate, settings.column_mapping)
        elif data_manager.is_east_sheet(name):
            if summary_sheet is None:
                log.warning("Summary template has no sheet '%s'; east values not copied", name)
            else:
                process_east_sheet(input_book[name], summary_sheet, settings.column_mapping)
        else:
            continue

        processed.append(name)
        log.info("Finished sheet '%s'", name)

    report(len(sheets), len(sheets), "最終処理中...")
    stamp_header(summary_book, settings.header_sheet, request)
    stamp_header(report_book, settings.header_sheet, request)

    data_manager.save_workbook(summary_book, summary_file)
    data_manager.save_workbook(report_book, report_file)
    log.info("Transfer finished: '%s'", folder)

    return TransferResult(
        output_dir=folder,
        report_file=report_file,
        summary_file=summary_file,
        processed_sheets=tuple(processed),
    )
