"""Vehicle sheet bookkeeping for the input workbook.

Each vehicle owns one worksheet whose name encodes its office, kind, an
optional individual name and a number, e.g. ``CH大月 寝台車 5``. This module
turns names into specs and back, works out which sheets to add, rename or
delete when the vehicle list is edited, applies that plan to the workbook
and rebuilds the summary sheet whose formulas point at every vehicle sheet.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from openpyxl.utils import get_column_letter
from openpyxl.utils.cell import quote_sheetname
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from . import data_manager, log
from .constants import FIRST_DATA_ROW, IMPLICIT_CATEGORY, TOTAL_ROW_MARKER, OfficeCategory, VehicleKind
from .errors import InputValidationError, MissingReferenceError


# Excel rejects these characters in sheet titles.
INVALID_TITLE_CHARACTERS = frozenset("[]:*?/\\")
MAX_TITLE_LENGTH = 31

SUMMARY_HEADER_ROW = 2
SUMMARY_FIRST_ROW = 3
SUMMARY_HEADERS: Tuple[str, ...] = ("車両", "稼働日数", "搬送回数", "有料キロ", "無料キロ", "合計金額")


@dataclass(frozen=True)
class VehicleSheetSpec:
    """Editable description of one vehicle sheet.

    ``original_name`` is the sheet's current title, or ``None`` for a vehicle
    that does not have a sheet yet.
    """

    category: OfficeCategory = IMPLICIT_CATEGORY
    kind: Optional[VehicleKind] = VehicleKind.SLEEPER
    individual_name: str = ""
    number: str = ""
    original_name: Optional[str] = None

    @property
    def has_kind(self) -> bool:
        return self.category is not OfficeCategory.EAST_CEREMONY

    def compose_name(self) -> str:
        parts: List[str] = []
        if self.category is not IMPLICIT_CATEGORY:
            parts.append(self.category.value)
        if self.has_kind and self.kind is not None:
            parts.append(self.kind.value)
        if self.individual_name.strip():
            parts.append(self.individual_name.strip())
        if self.number.strip():
            parts.append(self.number.strip())
        return " ".join(parts)

    @classmethod
    def from_sheet_name(cls, sheet_name: str) -> "VehicleSheetSpec":
        """Recover the spec behind an existing sheet title.

        The category is the first explicit office contained in the name, the
        kind is the first whole token naming a vehicle kind and the number is
        a trailing integer token. Whatever remains is the individual name.
        """

        parts = sheet_name.split(" ")
        category = next(
            (c for c in OfficeCategory if c is not IMPLICIT_CATEGORY and c.value in sheet_name),
            IMPLICIT_CATEGORY,
        )
        if category is not IMPLICIT_CATEGORY and category.value in parts:
            parts.remove(category.value)

        kind: Optional[VehicleKind] = None
        if category is not OfficeCategory.EAST_CEREMONY:
            kind = next((k for k in VehicleKind if k.value in parts), VehicleKind.SLEEPER)
            if kind.value in parts:
                parts.remove(kind.value)

        number = ""
        if parts and _is_integer(parts[-1]):
            number = parts.pop()

        return cls(
            category=category,
            kind=kind,
            individual_name=" ".join(parts),
            number=number,
            original_name=sheet_name,
        )


@dataclass(frozen=True)
class SyncPlan:
    """Sheet-level changes needed to match an edited vehicle list."""

    deleted: Tuple[str, ...] = ()
    renamed: Dict[str, str] = field(default_factory=dict)
    added: Tuple[Tuple[str, VehicleSheetSpec], ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.deleted or self.renamed or self.added)


def _is_integer(token: str) -> bool:
    try:
        int(token)
    except ValueError:
        return False
    return True


def validate_sheet_title(title: str) -> None:
    """Reject titles Excel would refuse.

    Raises:
        InputValidationError: If the title is blank, too long, uses a
            forbidden character or is wrapped in apostrophes.
    """

    if not title.strip():
        raise InputValidationError("車両名が空の項目があります。カテゴリ、個別名、番号などを入力してください。")
    if len(title) > MAX_TITLE_LENGTH:
        raise InputValidationError(f"車両名 '{title}' が長すぎます（{MAX_TITLE_LENGTH}文字まで）。")
    if any(char in INVALID_TITLE_CHARACTERS for char in title) or title.startswith("'") or title.endswith("'"):
        raise InputValidationError(f"車両名 '{title}' に使用できない文字が含まれています。")


def find_template_sheet(
    spec: VehicleSheetSpec,
    sheet_names: Sequence[str],
    *,
    default_template: str,
    east_template: str,
) -> Optional[str]:
    """Choose the existing sheet a new vehicle sheet is copied from.

    Ootsuki and Higashifuji vehicles copy the first sheet of their office so
    they inherit its late-night layout. East vehicles copy the east template.
    Home-office hearses copy the first hearse sheet; everything else copies
    the default sleeper template.
    """

    if spec.category in (OfficeCategory.OOTSUKI, OfficeCategory.HIGASHIFUJI):
        return next((name for name in sheet_names if spec.category.value in name), default_template)
    if spec.category is OfficeCategory.EAST_CEREMONY:
        return east_template
    if spec.kind is VehicleKind.HEARSE:
        return next((name for name in sheet_names if VehicleKind.HEARSE.value in name), None)
    return default_template


def target_name(entry: VehicleSheetSpec) -> str:
    """Return the title ``entry`` should end up with.

    An existing sheet whose spec was not edited keeps its exact title, even
    when that title does not follow the naming convention.
    """

    if entry.original_name is not None and entry == VehicleSheetSpec.from_sheet_name(entry.original_name):
        return entry.original_name
    return entry.compose_name()


def plan_sync(
    original_names: Sequence[str],
    entries: Sequence[VehicleSheetSpec],
    *,
    reserved_names: Iterable[str] = (),
) -> SyncPlan:
    """Diff the edited vehicle list against the current vehicle sheets.

    Args:
        original_names (Sequence[str]): Current vehicle sheet titles.
        entries (Sequence[VehicleSheetSpec]): The full edited list; vehicles
            absent from it are deleted.
        reserved_names (Iterable[str]): Titles of non-vehicle sheets that new
            names must not collide with.

    Raises:
        InputValidationError: On blank, invalid or duplicate names.
        MissingReferenceError: If an entry points at an unknown sheet.
    """

    names = [target_name(entry) for entry in entries]
    for name in names:
        validate_sheet_title(name)

    duplicates = [name for name, count in Counter(names).items() if count > 1]
    if duplicates:
        raise InputValidationError(f"車両名 '{duplicates[0]}' が重複しています。個別名や番号を変更してください。")

    reserved = set(reserved_names)
    clashes = [name for name in names if name in reserved]
    if clashes:
        raise InputValidationError(f"車両名 '{clashes[0]}' は既存のシート名と重複しています。")

    for entry in entries:
        if entry.original_name is not None and entry.original_name not in original_names:
            raise MissingReferenceError(f"Unknown vehicle sheet: {entry.original_name}")

    kept = {entry.original_name for entry in entries if entry.original_name is not None}
    deleted = tuple(name for name in original_names if name not in kept)
    renamed = {
        entry.original_name: name
        for entry, name in zip(entries, names)
        if entry.original_name is not None and entry.original_name != name
    }
    added = tuple((name, entry) for entry, name in zip(entries, names) if entry.original_name is None)
    return SyncPlan(deleted=deleted, renamed=renamed, added=added)


def apply_sync(
    workbook: Workbook,
    plan: SyncPlan,
    *,
    mapping: data_manager.ColumnMapping,
    summary_sheet: str,
    default_template: str,
    east_template: str,
) -> None:
    """Apply ``plan`` to ``workbook`` and rebuild the summary sheet.

    Templates are copied before anything is deleted or renamed so a vehicle
    can be cloned from a sheet that goes away in the same edit. Renames pass
    through temporary titles because ``openpyxl`` silently suffixes a title
    that is already taken.

    Raises:
        MissingReferenceError: If a template sheet cannot be found. The
            workbook is left untouched in that case.
    """

    sources: List[Tuple[str, VehicleSheetSpec, str]] = []
    for name, spec in plan.added:
        template = find_template_sheet(
            spec,
            workbook.sheetnames,
            default_template=default_template,
            east_template=east_template,
        )
        if template is None or template not in workbook.sheetnames:
            log.error("Template sheet '%s' for new vehicle '%s' not found", template, name)
            raise MissingReferenceError(
                f"カテゴリ '{spec.category.value}' のテンプレートシート '{template}' が見つかりません。"
            )
        sources.append((name, spec, template))

    copies: List[Tuple[Worksheet, str, VehicleSheetSpec]] = []
    for index, (name, spec, template) in enumerate(sources):
        copy = workbook.copy_worksheet(workbook[template])
        copy.title = f"~new{index}"
        copies.append((copy, name, spec))

    for name in plan.deleted:
        workbook.remove(workbook[name])
        log.info("Deleted vehicle sheet '%s'", name)

    staged = []
    for index, (old, new) in enumerate(plan.renamed.items()):
        sheet = workbook[old]
        sheet.title = f"~ren{index}"
        staged.append((sheet, old, new))
    for sheet, old, new in staged:
        sheet.title = new
        log.info("Renamed vehicle sheet '%s' to '%s'", old, new)

    for copy, name, spec in copies:
        copy.title = name
        if spec.category is OfficeCategory.EAST_CEREMONY:
            data_manager.clear_east_inputs(copy, mapping.east_sheet)
        else:
            data_manager.clear_normal_inputs(copy, mapping.normal_sheet, include_fees=True)
        log.info("Added vehicle sheet '%s'", name)

    rebuild_summary_sheet(workbook, summary_sheet, mapping)


def summary_formulas(sheet: Worksheet, mapping: data_manager.ColumnMapping) -> List[object]:
    """Return the five summary cells linking to ``sheet``.

    Normal sheets aggregate their daily rows; east sheets link straight to
    their aggregate cells. A normal sheet without a totals row yields blanks.
    """

    quoted = quote_sheetname(sheet.title)
    if data_manager.is_east_sheet(sheet.title):
        east = mapping.east_sheet
        return [f"={quoted}!{address}" for address in east.addresses]

    total_row = data_manager.find_total_row(sheet)
    if total_row is None:
        log.warning("Sheet '%s' has no '%s' row; summary row left blank", sheet.title, TOTAL_ROW_MARKER)
        return [None] * 5

    last_row = total_row - 1
    if last_row < FIRST_DATA_ROW:
        return [0] * 5

    columns = mapping.normal_sheet
    plan = (
        ("COUNT", columns.day),
        ("SUM", columns.hanso_count),
        ("SUM", columns.yuryo_km),
        ("SUM", columns.muryo_km),
        ("SUM", columns.total_fee),
    )
    formulas: List[object] = []
    for function, column in plan:
        letter = get_column_letter(column)
        formulas.append(f"={function}({quoted}!{letter}{FIRST_DATA_ROW}:{letter}{last_row})")
    return formulas


def rebuild_summary_sheet(workbook: Workbook, sheet_name: str, mapping: data_manager.ColumnMapping) -> Worksheet:
    """Rewrite the summary table so it lists every vehicle sheet.

    The sheet is created as the first tab when missing. Rows below the header
    are dropped and regenerated in workbook order, followed by a ``合計`` row
    summing each column.
    """

    if sheet_name in workbook.sheetnames:
        summary = workbook[sheet_name]
        if summary.max_row >= SUMMARY_FIRST_ROW:
            summary.delete_rows(SUMMARY_FIRST_ROW, summary.max_row - SUMMARY_FIRST_ROW + 1)
    else:
        summary = workbook.create_sheet(sheet_name, 0)
        log.info("Created summary sheet '%s'", sheet_name)

    summary.cell(row=1, column=1, value=sheet_name)
    for column, header in enumerate(SUMMARY_HEADERS, start=1):
        summary.cell(row=SUMMARY_HEADER_ROW, column=column, value=header)

    row = SUMMARY_FIRST_ROW
    for name in data_manager.vehicle_sheet_names(workbook):
        summary.cell(row=row, column=1, value=name)
        for column, value in enumerate(summary_formulas(workbook[name], mapping), start=2):
            summary.cell(row=row, column=column).value = value
        row += 1

    summary.cell(row=row, column=1, value=TOTAL_ROW_MARKER)
    for column in range(2, len(SUMMARY_HEADERS) + 1):
        letter = get_column_letter(column)
        value: object = f"=SUM({letter}{SUMMARY_FIRST_ROW}:{letter}{row - 1})" if row > SUMMARY_FIRST_ROW else 0
        summary.cell(row=row, column=column, value=value)

    log.info("Rebuilt summary sheet '%s' with %d vehicle rows", sheet_name, row - SUMMARY_FIRST_ROW)
    return summary
