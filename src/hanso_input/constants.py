"""Identifiers shared across the Hanso input tool modules.

The input workbook is organised entirely by sheet-name conventions, so the
markers that classify sheets and locate rows live here as the single source
of truth for the data access layer, the business logic and the transfer.
"""

from __future__ import annotations

from enum import Enum


# Daily rows on a normal sheet start below the two header rows.
FIRST_DATA_ROW = 3

# Text that marks the totals row in column A of a normal sheet.
TOTAL_ROW_MARKER = "合計"

# Sheets carrying this marker are bookkeeping tabs and are never transferred.
REGISTRATION_MARKER = "登録"

EAST_MARKER = "東日本"
OOTSUKI_MARKER = "大月"

# Rate table key used when no other vehicle type matches a sheet name.
FALLBACK_VEHICLE_TYPE = "寝台車"

KORYO_MARK = "✔"
EAST_REGISTERED_STATUS = "✅ 登録完了"
EAST_UNREGISTERED_STATUS = "（未登録）"


class VehicleKind(str, Enum):
    """Enumerate the vehicle kinds that own a normal sheet."""

    SLEEPER = "寝台車"
    HEARSE = "霊柩車"


class OfficeCategory(str, Enum):
    """Enumerate the offices a vehicle sheet can belong to."""

    FUJIYOSHIDA = "CH富士吉田"
    OOTSUKI = "CH大月"
    HIGASHIFUJI = "CH東富士"
    EAST_CEREMONY = "東日本セレモニー"


NORMAL_SHEET_MARKERS: tuple[str, ...] = tuple(kind.value for kind in VehicleKind)

# The home office is implied and never spelled out in sheet names.
IMPLICIT_CATEGORY = OfficeCategory.FUJIYOSHIDA


__all__ = [
    "FIRST_DATA_ROW",
    "TOTAL_ROW_MARKER",
    "REGISTRATION_MARKER",
    "EAST_MARKER",
    "OOTSUKI_MARKER",
    "FALLBACK_VEHICLE_TYPE",
    "KORYO_MARK",
    "EAST_REGISTERED_STATUS",
    "EAST_UNREGISTERED_STATUS",
    "VehicleKind",
    "OfficeCategory",
    "NORMAL_SHEET_MARKERS",
    "IMPLICIT_CATEGORY",
]
