"""Utility for creating the bundled input workbook, summary template and rates.

The module doubles as a script (``hanso-setup``) and as a library used by the
tests. Every file is built with the layout the data layer expects: daily rows
from row 3, a ``合計`` row below them and the east aggregates in row 4.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence
import sys

import openpyxl
from openpyxl.styles import Font
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from . import data_manager, vehicle_sheets
from .constants import FIRST_DATA_ROW, TOTAL_ROW_MARKER

CONFIG_FILE = "config.ini"

# Workbook order of the stock vehicle sheets.
DEFAULT_VEHICLE_SHEETS: Sequence[str] = (
    "寝台車 29",
    "寝台車 30",
    "霊柩車 1",
    "CH大月 寝台車 5",
    "東日本セレモニー 1961",
)

DAYS_PER_SHEET = 31

NORMAL_HEADERS: Mapping[str, str] = {
    "day": "日",
    "hanso_count": "搬送回数",
    "yuryo_km": "有料キロ",
    "muryo_km": "無料キロ",
    "kihon_fee": "基本料金",
    "soko_fee": "走行料金",
    "shinya_fee": "深夜料金",
    "total_fee": "合計金額",
    "shinya_minutes": "深夜時間(分)",
    "is_koryo": "高療",
}

EAST_HEADERS: Sequence[str] = ("延実働車輌数", "搬送回数", "有料キロ数", "無料キロ数", "運輸実績")
SHUKEI_HEADERS: Sequence[str] = ("稼働日数", "搬送回数", "有料キロ", "無料キロ", "合計金額")

# Listed office-first so office rates win over the generic kinds.
DEFAULT_RATES: Sequence[data_manager.VehicleRate] = (
    data_manager.VehicleRate("CH大月", 7000, 400, 0, 0),
    data_manager.VehicleRate("CH東富士", 7500, 450, 1500, 800),
    data_manager.VehicleRate("霊柩車", 12000, 600, 2000, 1000),
    data_manager.VehicleRate("寝台車", 8000, 500, 1500, 800),
)


@dataclass(frozen=True)
class SetupSettings:
    """Locations of the bundled files produced by the setup script."""

    input_template: Path
    summary_template: Path
    bundled_rates_file: Path
    summary_sheet: str = data_manager.DEFAULT_SUMMARY_SHEET


def load_settings(config_path: Path) -> SetupSettings:
    """Read ``config.ini`` and produce :class:`SetupSettings`.

    Relative paths inside the config file are resolved against the config
    file's directory.
    """

    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.expanduser().resolve().parent)
    return SetupSettings(
        input_template=settings.input_template,
        summary_template=settings.summary_template,
        bundled_rates_file=settings.bundled_rates_file,
        summary_sheet=settings.summary_sheet,
    )


def _new_workbook() -> Workbook:
    workbook = openpyxl.Workbook()
    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)
    return workbook


def _guard_destination(destination: Path, overwrite: bool) -> Path:
    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing file: {destination}")
    destination.parent.mkdir(parents=True, exist_ok=True)
    return destination


def build_normal_sheet(
    worksheet: Worksheet,
    mapping: data_manager.SheetColumnMap,
    *,
    days: int = DAYS_PER_SHEET,
) -> None:
    """Lay out the header row, ``days`` blank daily rows and the totals row."""

    bold_font = Font(bold=True)
    for field_name, header in NORMAL_HEADERS.items():
        cell = worksheet.cell(row=FIRST_DATA_ROW - 1, column=getattr(mapping, field_name), value=header)
        cell.font = bold_font

    total_row = FIRST_DATA_ROW + days
    worksheet.cell(row=total_row, column=1, value=TOTAL_ROW_MARKER).font = bold_font
    data_manager.refresh_total_row_formulas(worksheet, total_row, mapping)


def build_labelled_row(worksheet: Worksheet, addresses: Sequence[str], headers: Sequence[str]) -> None:
    """Write ``headers`` in the row above each of ``addresses``."""

    bold_font = Font(bold=True)
    for address, header in zip(addresses, headers):
        label = worksheet[address].offset(row=-1)
        label.value = header
        label.font = bold_font


def create_input_workbook(
    destination: Path,
    *,
    mapping: data_manager.ColumnMapping = data_manager.ColumnMapping(),
    sheet_names: Sequence[str] = DEFAULT_VEHICLE_SHEETS,
    summary_sheet: str = data_manager.DEFAULT_SUMMARY_SHEET,
    days: int = DAYS_PER_SHEET,
    overwrite: bool = False,
) -> Path:
    """Create the bundled input workbook at ``destination``.

    Raises:
        FileExistsError: If the target exists and ``overwrite`` is ``False``.
    """

    destination = _guard_destination(destination, overwrite)
    workbook = _new_workbook()

    for sheet_name in sheet_names:
        worksheet = workbook.create_sheet(title=sheet_name)
        worksheet.cell(row=1, column=3, value=sheet_name)
        if data_manager.is_east_sheet(sheet_name):
            build_labelled_row(worksheet, mapping.east_sheet.addresses, EAST_HEADERS)
        else:
            build_normal_sheet(worksheet, mapping.normal_sheet, days=days)

    vehicle_sheets.rebuild_summary_sheet(workbook, summary_sheet, mapping)
    workbook.save(destination)
    return destination


def create_summary_template(
    destination: Path,
    *,
    mapping: data_manager.ColumnMapping = data_manager.ColumnMapping(),
    sheet_names: Sequence[str] = DEFAULT_VEHICLE_SHEETS,
    overwrite: bool = False,
) -> Path:
    """Create the summary template with one labelled tab per vehicle sheet."""

    destination = _guard_destination(destination, overwrite)
    workbook = _new_workbook()

    cells = mapping.shukei_sheet
    addresses = (cells.days, cells.hanso, cells.yuryo_km, cells.muryo_km, cells.total)
    for sheet_name in sheet_names:
        worksheet = workbook.create_sheet(title=sheet_name)
        worksheet.cell(row=1, column=3, value=sheet_name)
        build_labelled_row(worksheet, addresses, SHUKEI_HEADERS)

    workbook.save(destination)
    return destination


def create_rates_file(
    destination: Path,
    *,
    rates: Sequence[data_manager.VehicleRate] = DEFAULT_RATES,
    overwrite: bool = False,
) -> Path:
    """Write the default fee table."""

    destination = _guard_destination(destination, overwrite)
    data_manager.save_rates(destination, {rate.vehicle_type: rate for rate in rates})
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Sequence[Path]:
    """Create every bundled file named in ``config_path``."""

    settings = load_settings(config_path)
    return (
        create_input_workbook(settings.input_template, summary_sheet=settings.summary_sheet, overwrite=overwrite),
        create_summary_template(settings.summary_template, overwrite=overwrite),
        create_rates_file(settings.bundled_rates_file, overwrite=overwrite),
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Create the bundled Hanso input files")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the bundled files if they already exist.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the CLI script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Hanso Input Setup Script ---")
    print(f"Using configuration: {config_path}")

    try:
        outputs = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, KeyError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing files if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write file: {exc}")
        return 1

    for path in outputs:
        print(f"[SUCCESS] Created '{path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
