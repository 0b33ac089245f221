"""Data access layer for the Hanso input tool.

This module owns every direct read and write against the input workbook,
the configuration file and the rate table. Business rules belong elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini`` including the
   column mapping that pins every value to a fixed cell position.
2. Rate table handling: loading and saving ``rates.json``.
3. Workbook lifecycle: opening and persisting the Excel files.
4. Sheet operations: locating the totals row, reading preview rows and
   writing the daily and east-sheet values.
"""


from __future__ import annotations

import configparser
import json
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional, Tuple

from openpyxl.utils import column_index_from_string, get_column_letter
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet
import openpyxl

from . import log
from .constants import (
    EAST_MARKER,
    FIRST_DATA_ROW,
    KORYO_MARK,
    NORMAL_SHEET_MARKERS,
    OOTSUKI_MARKER,
    REGISTRATION_MARKER,
    TOTAL_ROW_MARKER,
)


CONFIG_FILE_NAME = "config.ini"

DEFAULT_REPORT_TITLE = "アルス搬送・霊柩車　実績月報"
DEFAULT_HEADER_SHEET = "寝台車 29"
DEFAULT_SUMMARY_SHEET = "登録車両集計"
DEFAULT_TEMPLATE_SHEET = "寝台車 30"
DEFAULT_EAST_TEMPLATE_SHEET = "東日本セレモニー 1961"


@dataclass(frozen=True)
class SheetColumnMap:
    """1-based column indexes of the daily rows on a normal sheet."""

    day: int = 2
    hanso_count: int = 3
    yuryo_km: int = 4
    muryo_km: int = 5
    kihon_fee: int = 6
    soko_fee: int = 7
    shinya_fee: int = 8
    total_fee: int = 9
    shinya_minutes: int = 11
    is_koryo: int = 12

    @property
    def input_columns(self) -> Tuple[int, ...]:
        """Columns a clerk fills in, in the order they are cleared."""
        return (
            self.day,
            self.hanso_count,
            self.yuryo_km,
            self.muryo_km,
            self.shinya_fee,
            self.shinya_minutes,
            self.is_koryo,
        )

    @property
    def fee_columns(self) -> Tuple[int, ...]:
        return (self.kihon_fee, self.soko_fee, self.shinya_fee, self.total_fee)


@dataclass(frozen=True)
class EastCellMap:
    """Cell addresses of the five aggregate values on an east sheet."""

    jitsudo: str = "C4"
    hanso: str = "D4"
    yuryo_km: str = "E4"
    muryo_km: str = "F4"
    unso_jisseki: str = "G4"

    @property
    def addresses(self) -> Tuple[str, ...]:
        return (self.jitsudo, self.hanso, self.yuryo_km, self.muryo_km, self.unso_jisseki)


@dataclass(frozen=True)
class ShukeiCellMap:
    """Cell addresses filled on each tab of the aggregated summary workbook."""

    days: str = "C4"
    hanso: str = "D4"
    yuryo_km: str = "E4"
    muryo_km: str = "F4"
    total: str = "G4"


@dataclass(frozen=True)
class ColumnMapping:
    """Complete cell layout shared by the input, report and summary files."""

    normal_sheet: SheetColumnMap = field(default_factory=SheetColumnMap)
    east_sheet: EastCellMap = field(default_factory=EastCellMap)
    shukei_sheet: ShukeiCellMap = field(default_factory=ShukeiCellMap)


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    work_file: Path
    input_template: Path
    summary_template: Path
    rates_file: Path
    bundled_rates_file: Path
    report_title: str = DEFAULT_REPORT_TITLE
    header_sheet: str = DEFAULT_HEADER_SHEET
    summary_sheet: str = DEFAULT_SUMMARY_SHEET
    default_template_sheet: str = DEFAULT_TEMPLATE_SHEET
    east_template_sheet: str = DEFAULT_EAST_TEMPLATE_SHEET
    column_mapping: ColumnMapping = field(default_factory=ColumnMapping)


@dataclass(frozen=True)
class VehicleRate:
    """Fee schedule for one vehicle type, in yen."""

    vehicle_type: str
    base_fee: int
    mileage_fee: int
    late_night_fixed_fee: int
    late_night_unit_fee: int


@dataclass(frozen=True)
class RowData:
    """In-memory view of a populated daily row on a normal sheet."""

    row_index: int
    day: Optional[int]
    hanso: Optional[int]
    yuryo_km: Optional[int]
    muryo_km: Optional[int]
    late_fee: Optional[int]
    late_minutes: Optional[int]
    is_koryo: Optional[int]
    late_value: Optional[int] = None

    @property
    def koryo_mark(self) -> str:
        return KORYO_MARK if self.is_koryo == 1 else ""


@dataclass(frozen=True)
class NormalEntry:
    """Values a clerk enters for one day on a normal sheet.

    ``late_value`` is a fee amount on Ootsuki sheets and a minute count
    everywhere else.
    """

    day: Decimal
    yuryo_km: Optional[Decimal] = None
    muryo_km: Optional[Decimal] = None
    late_value: Optional[Decimal] = None
    is_koryo: bool = False


@dataclass(frozen=True)
class EastEntry:
    """The five aggregate figures reported for an east sheet."""

    jitsudo: Optional[Decimal] = None
    hanso: Optional[Decimal] = None
    yuryo_km: Optional[Decimal] = None
    muryo_km: Optional[Decimal] = None
    unso_jisseki: Optional[Decimal] = None


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls the tool.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match wins.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered file.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Validation of required entries happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def _resolve_path(raw: str, base_path: Path) -> Path:
    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = (base_path / path).resolve()
    return path


def _get_option(parser: configparser.ConfigParser, section: str, option: str, fallback: Any) -> Any:
    """Read an optional entry, tolerating a missing section."""

    if not parser.has_section(section):
        return fallback
    return parser.get(section, option, fallback=fallback)


def parse_column_mapping(parser: configparser.ConfigParser) -> ColumnMapping:
    """Build a :class:`ColumnMapping` from the optional mapping sections.

    Each of ``[NormalSheet]``, ``[EastSheet]`` and ``[ShukeiSheet]`` may
    override any subset of the built-in layout. Normal-sheet entries accept
    either a column number or a column letter.

    Raises:
        ValueError: If a normal-sheet entry is neither a number nor a letter.
    """

    normal_values: Dict[str, int] = {}
    for name in SheetColumnMap.__dataclass_fields__:
        raw = _get_option(parser, "NormalSheet", _camel(name), None)
        if raw is None:
            continue
        normal_values[name] = _parse_column(raw.strip())

    east_values = {
        name: _get_option(parser, "EastSheet", _camel(name), getattr(EastCellMap(), name)).strip().upper()
        for name in EastCellMap.__dataclass_fields__
    }
    shukei_values = {
        name: _get_option(parser, "ShukeiSheet", _camel(name), getattr(ShukeiCellMap(), name)).strip().upper()
        for name in ShukeiCellMap.__dataclass_fields__
    }

    mapping = ColumnMapping(
        normal_sheet=SheetColumnMap(**normal_values),
        east_sheet=EastCellMap(**east_values),
        shukei_sheet=ShukeiCellMap(**shukei_values),
    )
    log.debug("Parsed column mapping: %s", mapping)
    return mapping


def _camel(snake: str) -> str:
    return "".join(part.capitalize() for part in snake.split("_"))


def _parse_column(raw: str) -> int:
    if raw.isdigit():
        return int(raw)
    try:
        return column_index_from_string(raw.upper())
    except ValueError as exc:
        raise ValueError(f"Invalid column reference: {raw}") from exc


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    File locations live under ``[System]`` and are mandatory. Relative paths
    are anchored to ``base_path`` (the directory holding ``config.ini``) or to
    the current working directory as a fallback. ``[Report]`` and
    ``[Templates]`` entries are optional and fall back to the stock layout.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor relative paths.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required ``[System]`` entries is missing.
    """

    try:
        work_file_raw = parser.get("System", "WorkFile")
        input_template_raw = parser.get("System", "InputTemplate")
        summary_template_raw = parser.get("System", "SummaryTemplate")
        rates_file_raw = parser.get("System", "RatesFile")
        bundled_rates_raw = parser.get("System", "BundledRatesFile")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    if base_path is None:
        base_path = Path.cwd()

    return ConfigSettings(
        work_file=_resolve_path(work_file_raw, base_path),
        input_template=_resolve_path(input_template_raw, base_path),
        summary_template=_resolve_path(summary_template_raw, base_path),
        rates_file=_resolve_path(rates_file_raw, base_path),
        bundled_rates_file=_resolve_path(bundled_rates_raw, base_path),
        report_title=_get_option(parser, "Report", "Title", DEFAULT_REPORT_TITLE),
        header_sheet=_get_option(parser, "Report", "HeaderSheet", DEFAULT_HEADER_SHEET),
        summary_sheet=_get_option(parser, "Report", "SummarySheet", DEFAULT_SUMMARY_SHEET),
        default_template_sheet=_get_option(parser, "Templates", "DefaultVehicleSheet", DEFAULT_TEMPLATE_SHEET),
        east_template_sheet=_get_option(parser, "Templates", "EastSheet", DEFAULT_EAST_TEMPLATE_SHEET),
        column_mapping=parse_column_mapping(parser),
    )


def load_rates(rates_path: Path) -> Dict[str, VehicleRate]:
    """Read the rate table keyed by vehicle type name.

    The file order of the keys is preserved because the first key contained
    in a sheet name decides which rate applies.

    Raises:
        FileNotFoundError: If ``rates_path`` does not exist.
        ValueError: If the file is not a JSON object of complete rate entries.
    """

    rates_path = Path(rates_path).expanduser().resolve()
    if not rates_path.exists():
        raise FileNotFoundError(f"Rate file not found: {rates_path}")

    try:
        raw = json.loads(rates_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Rate file is not valid JSON: {rates_path}") from exc
    if not isinstance(raw, dict):
        raise ValueError(f"Rate file must contain an object: {rates_path}")

    return {name: deserialize_rate(name, entry) for name, entry in raw.items()}


def save_rates(rates_path: Path, rates: Mapping[str, VehicleRate]) -> None:
    """Persist the rate table, keeping Japanese keys human-readable."""

    rates_path = Path(rates_path).expanduser().resolve()
    rates_path.parent.mkdir(parents=True, exist_ok=True)
    payload = {name: serialize_rate(rate) for name, rate in rates.items()}
    rates_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")


def serialize_rate(rate: VehicleRate) -> Dict[str, int]:
    return {
        "BaseFee": rate.base_fee,
        "MileageFee": rate.mileage_fee,
        "LateNightFixedFee": rate.late_night_fixed_fee,
        "LateNightUnitFee": rate.late_night_unit_fee,
    }


def deserialize_rate(name: str, entry: object) -> VehicleRate:
    """Convert one JSON rate entry into a :class:`VehicleRate`.

    Raises:
        ValueError: If a fee is missing or not an integer amount.
    """

    if not isinstance(entry, dict):
        raise ValueError(f"Rate entry for '{name}' must be an object")
    try:
        fees = [int(entry[key]) for key in ("BaseFee", "MileageFee", "LateNightFixedFee", "LateNightUnitFee")]
    except KeyError as exc:
        raise ValueError(f"Rate entry for '{name}' is missing {exc}") from exc
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Rate entry for '{name}' has a non-numeric fee") from exc
    return VehicleRate(name, *fees)


def open_workbook(data_file: Path) -> Workbook:
    """Open an Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook at ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


def cell_decimal(value: object) -> Decimal:
    """Coerce a raw cell value into a :class:`Decimal`; blanks become zero.

    Raises:
        ValueError: If the cell holds text that is not a number.
    """

    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, bool):
        return Decimal(int(value))
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Non-numeric cell value: {value!r}") from exc


def cell_optional_int(value: object) -> Optional[int]:
    """Coerce a raw cell value into an ``int`` going through ``float``."""

    if value is None or value == "":
        return None
    return int(round(float(cell_decimal(value))))


def to_cell_value(value: Optional[Decimal]) -> object:
    """Convert a decimal into the plain number stored in a cell."""

    if value is None:
        return None
    if value == value.to_integral_value():
        return int(value)
    return float(value)


def find_total_row(sheet: Optional[Worksheet]) -> Optional[int]:
    """Return the index of the totals row, scanning column A bottom-up.

    Returns:
        int | None: Row whose column A text contains ``合計``; ``None`` when
            the sheet is missing, empty or has no such row.
    """

    if sheet is None:
        return None
    for row in range(sheet.max_row, FIRST_DATA_ROW - 1, -1):
        value = sheet.cell(row=row, column=1).value
        if value is not None and TOTAL_ROW_MARKER in str(value):
            return row
    return None


def is_ootsuki(sheet_name: str) -> bool:
    return OOTSUKI_MARKER in sheet_name


def iter_row_data(sheet: Worksheet, mapping: SheetColumnMap) -> Iterator[RowData]:
    """Yield the populated daily rows of a normal sheet for preview.

    Rows whose day and paid-km cells are both blank are skipped. The late
    value shown to the clerk is the fee on Ootsuki sheets and the minute
    count elsewhere.
    """

    total_row = find_total_row(sheet)
    if total_row is None:
        return
    ootsuki = is_ootsuki(sheet.title)

    for row in range(FIRST_DATA_ROW, total_row):
        day_raw = sheet.cell(row=row, column=mapping.day).value
        yuryo_raw = sheet.cell(row=row, column=mapping.yuryo_km).value
        if day_raw is None and yuryo_raw is None:
            continue

        late_fee = cell_optional_int(sheet.cell(row=row, column=mapping.shinya_fee).value)
        late_minutes = cell_optional_int(sheet.cell(row=row, column=mapping.shinya_minutes).value)
        yield RowData(
            row_index=row,
            day=cell_optional_int(day_raw),
            hanso=cell_optional_int(sheet.cell(row=row, column=mapping.hanso_count).value),
            yuryo_km=cell_optional_int(yuryo_raw),
            muryo_km=cell_optional_int(sheet.cell(row=row, column=mapping.muryo_km).value),
            late_fee=late_fee,
            late_minutes=late_minutes,
            is_koryo=cell_optional_int(sheet.cell(row=row, column=mapping.is_koryo).value),
            late_value=late_fee if ootsuki else late_minutes,
        )


def find_target_row(sheet: Worksheet, total_row: int, mapping: SheetColumnMap) -> Tuple[int, bool]:
    """Return the first daily row with an empty day cell.

    When every row above the totals row is taken a new row is inserted at the
    totals row position, pushing the totals row down by one.

    Returns:
        tuple[int, bool]: Target row index and whether a row was inserted.
    """

    for row in range(FIRST_DATA_ROW, total_row):
        if sheet.cell(row=row, column=mapping.day).value is None:
            return row, False

    sheet.insert_rows(total_row, amount=1)
    log.info("Inserted a row above the totals row of '%s' at row %d", sheet.title, total_row)
    return total_row, True


def write_normal_row(sheet: Worksheet, row: int, entry: NormalEntry, mapping: SheetColumnMap) -> None:
    """Write one day's input values into ``row`` of a normal sheet.

    The transport count is derived: ``1`` when paid kilometres are positive,
    ``0`` otherwise. Ootsuki sheets store the late value as a fee in the late
    fee column; every other sheet stores it as minutes.
    """

    hanso = 1 if entry.yuryo_km is not None and entry.yuryo_km > 0 else 0

    late = to_cell_value(entry.late_value)
    ootsuki = is_ootsuki(sheet.title)
    values = {
        mapping.day: to_cell_value(entry.day),
        mapping.hanso_count: hanso,
        mapping.yuryo_km: to_cell_value(entry.yuryo_km),
        mapping.muryo_km: to_cell_value(entry.muryo_km),
        mapping.is_koryo: 1 if entry.is_koryo else None,
        mapping.shinya_fee: late if ootsuki else None,
        mapping.shinya_minutes: None if ootsuki else late,
    }
    # Worksheet.cell ignores value=None, so blanks go through the cell.
    for column, value in values.items():
        sheet.cell(row=row, column=column).value = value


def delete_rows(sheet: Worksheet, rows: Iterable[int]) -> None:
    """Delete whole rows, bottom-up so earlier indexes stay valid."""

    for row in sorted(set(rows), reverse=True):
        sheet.delete_rows(row, amount=1)


def refresh_total_row_formulas(sheet: Worksheet, total_row: int, mapping: SheetColumnMap) -> None:
    """Rewrite the totals-row input formulas to span rows 3..total_row-1.

    ``openpyxl`` does not shift formula references when rows are inserted or
    deleted, so the ranges are rebuilt after every structural change.
    """

    last_row = total_row - 1
    columns = (
        (mapping.day, "COUNT"),
        (mapping.hanso_count, "SUM"),
        (mapping.yuryo_km, "SUM"),
        (mapping.muryo_km, "SUM"),
        (mapping.shinya_minutes, "SUM"),
    )
    for column, function in columns:
        if last_row < FIRST_DATA_ROW:
            value: object = 0
        else:
            letter = get_column_letter(column)
            value = f"={function}({letter}{FIRST_DATA_ROW}:{letter}{last_row})"
        sheet.cell(row=total_row, column=column, value=value)


def write_east_values(sheet: Worksheet, entry: EastEntry, mapping: EastCellMap) -> None:
    sheet[mapping.jitsudo] = to_cell_value(entry.jitsudo)
    sheet[mapping.hanso] = to_cell_value(entry.hanso)
    sheet[mapping.yuryo_km] = to_cell_value(entry.yuryo_km)
    sheet[mapping.muryo_km] = to_cell_value(entry.muryo_km)
    sheet[mapping.unso_jisseki] = to_cell_value(entry.unso_jisseki)


def clear_normal_inputs(sheet: Worksheet, mapping: SheetColumnMap, *, include_fees: bool = False) -> bool:
    """Blank every input cell above the totals row.

    With ``include_fees`` the computed fee columns are blanked as well, which
    is needed when a sheet copied from a finished report becomes a new
    vehicle sheet.

    Returns:
        bool: ``False`` when the sheet has no totals row and was left alone.
    """

    total_row = find_total_row(sheet)
    if total_row is None:
        return False
    columns = set(mapping.input_columns)
    if include_fees:
        columns.update(mapping.fee_columns)
    for row in range(FIRST_DATA_ROW, total_row):
        for column in sorted(columns):
            sheet.cell(row=row, column=column).value = None
    return True


def clear_east_inputs(sheet: Worksheet, mapping: EastCellMap) -> None:
    for address in mapping.addresses:
        sheet[address] = None


def has_east_values(sheet: Worksheet, mapping: EastCellMap) -> bool:
    """Report whether any of the five aggregates has been entered."""

    return any(sheet[address].value not in (None, "") for address in mapping.addresses)


def is_normal_sheet(sheet_name: str) -> bool:
    return any(marker in sheet_name for marker in NORMAL_SHEET_MARKERS)


def is_east_sheet(sheet_name: str) -> bool:
    return EAST_MARKER in sheet_name


def is_registration_sheet(sheet_name: str) -> bool:
    return REGISTRATION_MARKER in sheet_name


def normal_sheet_names(workbook: Workbook) -> list[str]:
    return [name for name in workbook.sheetnames if is_normal_sheet(name) and not is_registration_sheet(name)]


def east_sheet_names(workbook: Workbook) -> list[str]:
    return [name for name in workbook.sheetnames if is_east_sheet(name) and not is_registration_sheet(name)]


def vehicle_sheet_names(workbook: Workbook) -> list[str]:
    """Return normal and east sheet titles in workbook order."""

    return [
        name
        for name in workbook.sheetnames
        if (is_normal_sheet(name) or is_east_sheet(name)) and not is_registration_sheet(name)
    ]
