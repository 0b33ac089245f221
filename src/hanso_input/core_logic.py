"""Business logic layer for the Hanso input tool.

This module turns clerk input into workbook edits. It consumes the Data
Access Layer (DAL) for all cell I/O while enforcing the rules of the input
workbook: where a day's row goes, which sheets accept which figures, how
vehicle sheets are added or renamed, and when the month-end transfer runs.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field, replace
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from . import data_manager, log, transfer, vehicle_sheets
from .constants import (
    EAST_REGISTERED_STATUS,
    EAST_UNREGISTERED_STATUS,
    FALLBACK_VEHICLE_TYPE,
    FIRST_DATA_ROW,
    TOTAL_ROW_MARKER,
)
from .errors import (
    BusinessRuleViolation,
    InputValidationError,
    MissingReferenceError,
    TotalRowNotFoundError,
)


__all__ = [
    "BusinessRuleViolation",
    "InputValidationError",
    "MissingReferenceError",
    "TotalRowNotFoundError",
    "RuntimeContext",
    "RegistrationResult",
]


DAY_FIELD = "日(B)"
YURYO_FIELD = "有料キロ(D)"
MURYO_FIELD = "無料キロ(E)"
LATE_FEE_FIELD = "深夜料金(H)"
LATE_MINUTES_FIELD = "深夜時間(K)"

# Worksheet cells hold doubles, exact to fifteen significant digits.
MAX_CELL_NUMBER = Decimal("1e15")

EAST_FIELDS = {
    "jitsudo": "延実働車輌数",
    "hanso": "搬送回数",
    "yuryo_km": "有料キロ数",
    "muryo_km": "無料キロ数",
    "unso_jisseki": "運輸実績",
}


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, rates and the open work workbook."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    rates: Dict[str, data_manager.VehicleRate] = field(default_factory=dict)
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class RegistrationResult:
    """Where a day's entry landed on a normal sheet."""

    sheet_name: str
    row_index: int
    inserted: bool


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name."""

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_preview(context: RuntimeContext, *sheet_names: str) -> None:
    """Evict cached preview rows; with no names every sheet is evicted."""

    bucket = _get_cache_bucket(context, "preview")
    if not sheet_names:
        bucket.clear()
        return
    log.debug("Invalidating preview cache for: %s", ", ".join(sheet_names))
    for name in sheet_names:
        bucket.pop(name, None)


def ensure_work_files(settings: data_manager.ConfigSettings) -> None:
    """Seed the per-user rate file and work workbook from the bundled copies.

    Existing files are never overwritten, so a session interrupted without
    discarding its work file resumes where it left off.

    Raises:
        FileNotFoundError: If a bundled source needed for seeding is missing.
    """

    for target, source in (
        (settings.rates_file, settings.bundled_rates_file),
        (settings.work_file, settings.input_template),
    ):
        if target.exists():
            continue
        if not source.exists():
            raise FileNotFoundError(f"Bundled file not found: {source}")
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)
        log.info("Seeded '%s' from '%s'", target, source)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration, rates and the work workbook.

    Args:
        config_path (Path | None): Optional override path for the
            configuration file. When omitted the data layer searches upward
            from the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration, a bundled file or the work
            workbook cannot be located.
        KeyError: When mandatory configuration options are missing.
        ValueError: When the rate file is malformed.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    ensure_work_files(settings)
    rates = data_manager.load_rates(settings.rates_file)
    workbook = data_manager.open_workbook(settings.work_file)
    log.info("Loaded runtime context for work file '%s'", settings.work_file)
    return RuntimeContext(settings=settings, workbook=workbook, rates=rates)


def persist_context(context: RuntimeContext) -> None:
    """Save the in-memory work workbook back to the work file."""

    data_manager.save_workbook(context.workbook, destination=context.settings.work_file)
    log.info("Persisted work file '%s'", context.settings.work_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the work file, discarding unsaved edits and cached previews."""

    workbook = data_manager.refresh_workbook(context.settings.work_file)
    log.info("Reloaded work file '%s'", context.settings.work_file)
    return RuntimeContext(
        settings=context.settings,
        workbook=workbook,
        rates=context.rates,
    )


def list_normal_sheets(context: RuntimeContext) -> List[str]:
    return data_manager.normal_sheet_names(context.workbook)


def list_east_sheets(context: RuntimeContext) -> List[str]:
    return data_manager.east_sheet_names(context.workbook)


def list_vehicle_sheets(context: RuntimeContext) -> List[str]:
    return data_manager.vehicle_sheet_names(context.workbook)


def _require_sheet(context: RuntimeContext, sheet_name: str, candidates: Sequence[str], label: str) -> Worksheet:
    if not sheet_name:
        log.warning("No %s sheet selected", label)
        raise MissingReferenceError(f"{label}シートが選択されていません。")
    if sheet_name not in candidates:
        log.warning("Sheet lookup failed for '%s'", sheet_name)
        raise MissingReferenceError(f"Unknown {label} sheet: {sheet_name}")
    return context.workbook[sheet_name]


def _require_normal_sheet(context: RuntimeContext, sheet_name: str) -> Worksheet:
    return _require_sheet(context, sheet_name, list_normal_sheets(context), "通常")


def _require_east_sheet(context: RuntimeContext, sheet_name: str) -> Worksheet:
    return _require_sheet(context, sheet_name, list_east_sheets(context), "東日本")


def _require_total_row(sheet: Worksheet) -> int:
    total_row = data_manager.find_total_row(sheet)
    if total_row is None:
        log.error("Sheet '%s' has no totals row", sheet.title)
        raise TotalRowNotFoundError(f"シート '{sheet.title}' に '{TOTAL_ROW_MARKER}' 行が見つかりません。")
    return total_row


def parse_optional_number(text: Optional[str], field_name: str) -> Optional[Decimal]:
    """Parse a numeric text field where blank means "not entered".

    Thousands separators are tolerated. NaN, infinities and values beyond
    the fifteen significant digits a worksheet cell keeps are rejected.

    Raises:
        InputValidationError: If the text is not a finite number a cell can
            hold.
    """

    if text is None or not str(text).strip():
        return None
    cleaned = str(text).strip().replace(",", "")
    try:
        value = Decimal(cleaned)
    except InvalidOperation as exc:
        log.warning("Rejected input '%s' for %s", text, field_name)
        raise InputValidationError(f"「{text}」は {field_name} の数値として認識できません。") from exc
    if not value.is_finite():
        log.warning("Rejected input '%s' for %s", text, field_name)
        raise InputValidationError(f"「{text}」は {field_name} の数値として認識できません。")
    if abs(value) >= MAX_CELL_NUMBER:
        log.warning("Rejected out-of-range input '%s' for %s", text, field_name)
        raise InputValidationError(f"「{text}」は {field_name} の値として大きすぎます。")
    return value


def round_half_away(value: Optional[Decimal]) -> Optional[Decimal]:
    if value is None:
        return None
    return value.quantize(Decimal("1"), rounding=ROUND_HALF_UP)


def build_normal_entry(
    *,
    day: Optional[str],
    yuryo_km: Optional[str] = None,
    muryo_km: Optional[str] = None,
    late_value: Optional[str] = None,
    is_koryo: bool = False,
    ootsuki: bool = False,
) -> data_manager.NormalEntry:
    """Validate the text of a normal-sheet form into a :class:`NormalEntry`.

    The day is mandatory. Distances are rounded to whole kilometres, halves
    away from zero. The late value is labelled as a fee on Ootsuki sheets
    and as minutes elsewhere.

    Raises:
        InputValidationError: If the day is blank or any field is not numeric.
    """

    if day is None or not str(day).strip():
        log.warning("Normal entry rejected: day is required")
        raise InputValidationError("日付は必須です。")
    day_value = parse_optional_number(day, DAY_FIELD)
    yuryo = round_half_away(parse_optional_number(yuryo_km, YURYO_FIELD))
    muryo = round_half_away(parse_optional_number(muryo_km, MURYO_FIELD))
    late = parse_optional_number(late_value, LATE_FEE_FIELD if ootsuki else LATE_MINUTES_FIELD)
    return data_manager.NormalEntry(
        day=day_value,
        yuryo_km=yuryo,
        muryo_km=muryo,
        late_value=late,
        is_koryo=is_koryo,
    )


def build_east_entry(
    *,
    jitsudo: Optional[str] = None,
    hanso: Optional[str] = None,
    yuryo_km: Optional[str] = None,
    muryo_km: Optional[str] = None,
    unso_jisseki: Optional[str] = None,
) -> data_manager.EastEntry:
    """Validate the text of the east-sheet form into an :class:`EastEntry`."""

    raw = {
        "jitsudo": jitsudo,
        "hanso": hanso,
        "yuryo_km": yuryo_km,
        "muryo_km": muryo_km,
        "unso_jisseki": unso_jisseki,
    }
    values = {name: parse_optional_number(text, EAST_FIELDS[name]) for name, text in raw.items()}
    return data_manager.EastEntry(**values)


def get_preview(context: RuntimeContext, sheet_name: str) -> List[data_manager.RowData]:
    """Return the populated daily rows of a normal sheet.

    Results are cached per sheet until the sheet is written to. Unknown or
    blank sheet names yield an empty list, mirroring an empty preview grid.
    """

    if not sheet_name or sheet_name not in list_normal_sheets(context):
        return []
    bucket = _get_cache_bucket(context, "preview")
    if sheet_name not in bucket:
        columns = context.settings.column_mapping.normal_sheet
        bucket[sheet_name] = list(data_manager.iter_row_data(context.workbook[sheet_name], columns))
        log.debug("Cached %d preview rows for '%s'", len(bucket[sheet_name]), sheet_name)
    return list(bucket[sheet_name])


def _refresh_structure(context: RuntimeContext, sheet: Worksheet) -> None:
    """Re-anchor formulas after rows were inserted into or removed from ``sheet``."""

    total_row = data_manager.find_total_row(sheet)
    if total_row is not None:
        data_manager.refresh_total_row_formulas(sheet, total_row, context.settings.column_mapping.normal_sheet)
    if context.settings.summary_sheet in context.workbook.sheetnames:
        vehicle_sheets.rebuild_summary_sheet(
            context.workbook,
            context.settings.summary_sheet,
            context.settings.column_mapping,
        )


def register_normal(context: RuntimeContext, sheet_name: str, entry: data_manager.NormalEntry) -> RegistrationResult:
    """Write a day's entry into the first free row of a normal sheet.

    When every daily row is taken a row is inserted above the totals row and
    the totals formulas and the summary sheet are re-anchored.

    Raises:
        MissingReferenceError: If ``sheet_name`` is not a normal sheet.
        TotalRowNotFoundError: If the sheet has no ``合計`` row.
    """

    sheet = _require_normal_sheet(context, sheet_name)
    columns = context.settings.column_mapping.normal_sheet
    total_row = _require_total_row(sheet)

    row, inserted = data_manager.find_target_row(sheet, total_row, columns)
    data_manager.write_normal_row(sheet, row, entry, columns)
    if inserted:
        _refresh_structure(context, sheet)
    _invalidate_preview(context, sheet_name)

    log.info("Registered day %s on '%s' row %d", entry.day, sheet_name, row)
    return RegistrationResult(sheet_name=sheet_name, row_index=row, inserted=inserted)


def _require_data_row(sheet: Worksheet, row_index: int) -> None:
    total_row = _require_total_row(sheet)
    if not FIRST_DATA_ROW <= row_index < total_row:
        log.error("Row %d is outside the daily rows of '%s'", row_index, sheet.title)
        raise BusinessRuleViolation(
            f"Row {row_index} is not a daily row of '{sheet.title}' ({FIRST_DATA_ROW}-{total_row - 1})"
        )


def update_normal(
    context: RuntimeContext,
    sheet_name: str,
    row_index: int,
    entry: data_manager.NormalEntry,
) -> None:
    """Overwrite an existing daily row with corrected values.

    Raises:
        MissingReferenceError: If ``sheet_name`` is not a normal sheet.
        BusinessRuleViolation: If ``row_index`` is not a daily row.
    """

    sheet = _require_normal_sheet(context, sheet_name)
    _require_data_row(sheet, row_index)
    data_manager.write_normal_row(sheet, row_index, entry, context.settings.column_mapping.normal_sheet)
    _invalidate_preview(context, sheet_name)
    log.info("Updated '%s' row %d", sheet_name, row_index)


def delete_normal_rows(context: RuntimeContext, sheet_name: str, row_indices: Iterable[int]) -> List[int]:
    """Delete daily rows, shifting the rows below them up.

    Returns:
        list[int]: The deleted row indexes in ascending order.

    Raises:
        MissingReferenceError: If ``sheet_name`` is not a normal sheet.
        BusinessRuleViolation: If any index is not a daily row; nothing is
            deleted in that case.
    """

    sheet = _require_normal_sheet(context, sheet_name)
    rows = sorted(set(row_indices))
    if not rows:
        return []
    for row in rows:
        _require_data_row(sheet, row)

    data_manager.delete_rows(sheet, rows)
    _refresh_structure(context, sheet)
    _invalidate_preview(context, sheet_name)
    log.info("Deleted rows %s from '%s'", rows, sheet_name)
    return rows


def register_east(context: RuntimeContext, sheet_name: str, entry: data_manager.EastEntry) -> None:
    """Write the five aggregate figures of an east sheet.

    Raises:
        MissingReferenceError: If ``sheet_name`` is not an east sheet.
    """

    sheet = _require_east_sheet(context, sheet_name)
    data_manager.write_east_values(sheet, entry, context.settings.column_mapping.east_sheet)
    log.info("Registered east values on '%s'", sheet_name)


def east_sheet_status(context: RuntimeContext, sheet_name: Optional[str]) -> str:
    if not sheet_name:
        return ""
    sheet = context.workbook[sheet_name] if sheet_name in list_east_sheets(context) else None
    if sheet is not None and data_manager.has_east_values(sheet, context.settings.column_mapping.east_sheet):
        return EAST_REGISTERED_STATUS
    return EAST_UNREGISTERED_STATUS


def clear_input_data(context: RuntimeContext) -> List[str]:
    """Blank every clerk-entered value in the work workbook.

    Normal sheets lose their daily inputs above the totals row; east sheets
    lose their five aggregates. Normal sheets without a totals row are left
    alone.

    Returns:
        list[str]: One message per cleared sheet, for the activity log.
    """

    mapping = context.settings.column_mapping
    messages: List[str] = []
    for name in context.workbook.sheetnames:
        if data_manager.is_registration_sheet(name):
            continue
        sheet = context.workbook[name]
        if data_manager.is_normal_sheet(name):
            if data_manager.clear_normal_inputs(sheet, mapping.normal_sheet):
                messages.append(f"[{name}] の入力値をクリアしました。")
        elif data_manager.is_east_sheet(name):
            data_manager.clear_east_inputs(sheet, mapping.east_sheet)
            messages.append(f"[{name}] のデータをクリアしました。")

    _invalidate_preview(context)
    log.info("Cleared input data on %d sheets", len(messages))
    return messages


def has_remaining_data(context: RuntimeContext) -> bool:
    """Report whether a previous session left daily entries behind."""

    day_column = context.settings.column_mapping.normal_sheet.day
    for name in list_normal_sheets(context):
        if context.workbook[name].cell(row=FIRST_DATA_ROW, column=day_column).value is not None:
            return True
    return False


def load_report_file(context: RuntimeContext, source: Path) -> RuntimeContext:
    """Replace the work file with an existing monthly report and reload it.

    Returns:
        RuntimeContext: Fresh context over the loaded file.

    Raises:
        FileNotFoundError: If ``source`` does not exist.
    """

    source = Path(source).expanduser().resolve()
    if not source.exists():
        raise FileNotFoundError(f"Workbook not found: {source}")
    shutil.copyfile(source, context.settings.work_file)
    log.info("Loaded monthly report '%s' into the work file", source.name)
    return refresh_context(context)


def discard_work_file(settings: data_manager.ConfigSettings) -> bool:
    """Delete the work file at the end of a session.

    Returns:
        bool: ``False`` when the file could not be removed; the failure is
            logged and the next session resumes from it.
    """

    if not settings.work_file.exists():
        return True
    try:
        settings.work_file.unlink()
    except OSError as exc:
        log.warning("Failed to delete work file '%s': %s", settings.work_file, exc)
        return False
    log.info("Deleted work file '%s'", settings.work_file)
    return True


def _require_fee(value: Optional[int], name: str) -> Optional[int]:
    if value is not None and value < 0:
        log.error("Fee validation failed: %s=%s", name, value)
        raise InputValidationError(f"{name} must be zero or positive")
    return value


def update_rate(
    context: RuntimeContext,
    vehicle_type: str,
    *,
    base_fee: Optional[int] = None,
    mileage_fee: Optional[int] = None,
    late_night_fixed_fee: Optional[int] = None,
    late_night_unit_fee: Optional[int] = None,
) -> data_manager.VehicleRate:
    """Create or edit a rate entry and save the rate file.

    Omitted fees keep their current value; a new vehicle type needs all
    four.

    Raises:
        InputValidationError: If a fee is negative, the type name is blank
            or a new type lacks a fee.
    """

    vehicle_type = vehicle_type.strip()
    if not vehicle_type:
        raise InputValidationError("Vehicle type name is required")
    changes = {
        "base_fee": _require_fee(base_fee, "BaseFee"),
        "mileage_fee": _require_fee(mileage_fee, "MileageFee"),
        "late_night_fixed_fee": _require_fee(late_night_fixed_fee, "LateNightFixedFee"),
        "late_night_unit_fee": _require_fee(late_night_unit_fee, "LateNightUnitFee"),
    }
    provided = {name: value for name, value in changes.items() if value is not None}

    current = context.rates.get(vehicle_type)
    if current is None:
        missing = [name for name, value in changes.items() if value is None]
        if missing:
            raise InputValidationError(f"New vehicle type '{vehicle_type}' needs {', '.join(missing)}")
        rate = data_manager.VehicleRate(vehicle_type=vehicle_type, **provided)
    else:
        rate = replace(current, **provided)

    context.rates[vehicle_type] = rate
    data_manager.save_rates(context.settings.rates_file, context.rates)
    log.info("Saved rate for '%s': %s", vehicle_type, rate)
    return rate


def remove_rate(context: RuntimeContext, vehicle_type: str) -> None:
    """Drop a rate entry and save the rate file.

    Raises:
        BusinessRuleViolation: If the fallback sleeper rate is targeted.
        MissingReferenceError: If the vehicle type is unknown.
    """

    if vehicle_type == FALLBACK_VEHICLE_TYPE:
        raise BusinessRuleViolation(f"The fallback rate '{FALLBACK_VEHICLE_TYPE}' cannot be removed")
    if vehicle_type not in context.rates:
        log.warning("Rate lookup failed for '%s'", vehicle_type)
        raise MissingReferenceError(f"Unknown vehicle type: {vehicle_type}")
    del context.rates[vehicle_type]
    data_manager.save_rates(context.settings.rates_file, context.rates)
    log.info("Removed rate for '%s'", vehicle_type)


def list_vehicle_specs(context: RuntimeContext) -> List[vehicle_sheets.VehicleSheetSpec]:
    return [vehicle_sheets.VehicleSheetSpec.from_sheet_name(name) for name in list_vehicle_sheets(context)]


def sync_vehicle_sheets(
    context: RuntimeContext,
    entries: Sequence[vehicle_sheets.VehicleSheetSpec],
) -> vehicle_sheets.SyncPlan:
    """Make the vehicle sheets match an edited vehicle list.

    Vehicles missing from ``entries`` lose their sheet, edited ones are
    renamed and new ones are copied from their template sheet. The summary
    sheet is rebuilt afterwards.

    Raises:
        InputValidationError: On blank, invalid or duplicate vehicle names.
        MissingReferenceError: If an entry or template sheet is unknown.
    """

    original = list_vehicle_sheets(context)
    reserved = [name for name in context.workbook.sheetnames if name not in original]
    plan = vehicle_sheets.plan_sync(original, entries, reserved_names=reserved)

    settings = context.settings
    vehicle_sheets.apply_sync(
        context.workbook,
        plan,
        mapping=settings.column_mapping,
        summary_sheet=settings.summary_sheet,
        default_template=settings.default_template_sheet,
        east_template=settings.east_template_sheet,
    )

    _invalidate_preview(context)

    log.info(
        "Synchronized vehicle sheets: %d deleted, %d renamed, %d added",
        len(plan.deleted),
        len(plan.renamed),
        len(plan.added),
    )
    return plan


def add_vehicle(context: RuntimeContext, spec: vehicle_sheets.VehicleSheetSpec) -> str:
    """Create the sheet for a new vehicle and return its title."""

    new_spec = replace(spec, original_name=None)
    sync_vehicle_sheets(context, [*list_vehicle_specs(context), new_spec])
    return new_spec.compose_name()


def rename_vehicle(context: RuntimeContext, sheet_name: str, spec: vehicle_sheets.VehicleSheetSpec) -> str:
    """Retitle ``sheet_name`` after ``spec`` and return the new title.

    Raises:
        MissingReferenceError: If ``sheet_name`` is not a vehicle sheet.
    """

    specs = list_vehicle_specs(context)
    if sheet_name not in [existing.original_name for existing in specs]:
        log.warning("Vehicle lookup failed for '%s'", sheet_name)
        raise MissingReferenceError(f"Unknown vehicle sheet: {sheet_name}")
    edited = replace(spec, original_name=sheet_name)
    sync_vehicle_sheets(context, [edited if s.original_name == sheet_name else s for s in specs])
    return vehicle_sheets.target_name(edited)


def delete_vehicle(context: RuntimeContext, sheet_name: str) -> None:
    """Remove a vehicle sheet.

    Raises:
        MissingReferenceError: If ``sheet_name`` is not a vehicle sheet.
    """

    specs = list_vehicle_specs(context)
    remaining = [spec for spec in specs if spec.original_name != sheet_name]
    if len(remaining) == len(specs):
        log.warning("Vehicle lookup failed for '%s'", sheet_name)
        raise MissingReferenceError(f"Unknown vehicle sheet: {sheet_name}")
    sync_vehicle_sheets(context, remaining)


def run_transfer(
    context: RuntimeContext,
    request: transfer.TransferRequest,
    *,
    progress: Optional[transfer.ProgressCallback] = None,
) -> transfer.TransferResult:
    """Save the work file, produce both output workbooks and start afresh.

    After a successful transfer the input values are cleared and the cleared
    work file is saved, ready for the next month.
    """

    persist_context(context)
    result = transfer.execute_transfer(context.settings, context.rates, request, progress=progress)
    clear_input_data(context)
    persist_context(context)
    log.info("Transfer complete; input data cleared")
    return result
