"""Fee rules applied when the monthly report is produced.

Every amount is in yen. A row only earns fees when it records at least one
transport; the three components are then:

* base fee, halved (rounded down) for Koryo rows;
* mileage fee, charged per started 10 km of paid distance;
* late-night fee, either typed directly (Ootsuki sheets) or a fixed amount
  plus a unit fee per started 30 minutes.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Mapping

from . import log
from .constants import FALLBACK_VEHICLE_TYPE
from .data_manager import VehicleRate
from .errors import MissingReferenceError


ZERO = Decimal("0")
MILEAGE_BLOCK_KM = 10
LATE_NIGHT_BLOCK_MINUTES = 30


@dataclass(frozen=True)
class RowInput:
    """Raw figures read from one daily row of the input workbook."""

    hanso: int
    yuryo_km: Decimal = ZERO
    is_koryo: bool = False
    late_fee: Decimal = ZERO
    late_minutes: Decimal = ZERO


@dataclass(frozen=True)
class RowFees:
    """Computed fee columns for one daily row."""

    kihon: Decimal = ZERO
    soko: Decimal = ZERO
    shinya: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return self.kihon + self.soko + self.shinya


@dataclass
class SheetTotals:
    """Running sums written to the totals row of a report sheet."""

    kihon: Decimal = ZERO
    soko: Decimal = ZERO
    shinya: Decimal = ZERO
    total: Decimal = ZERO

    def add(self, fees: RowFees) -> None:
        self.kihon += fees.kihon
        self.soko += fees.soko
        self.shinya += fees.shinya
        self.total += fees.total


def resolve_vehicle_type(sheet_name: str, rates: Mapping[str, VehicleRate]) -> VehicleRate:
    """Pick the rate whose vehicle type name appears in ``sheet_name``.

    Keys are tried in rate-file order and the first one contained in the
    sheet name wins. Sheets matching nothing use the sleeper rate.

    Raises:
        MissingReferenceError: If no key matches and the fallback rate is
            not configured either.
    """

    for vehicle_type, rate in rates.items():
        if vehicle_type in sheet_name:
            return rate
    try:
        return rates[FALLBACK_VEHICLE_TYPE]
    except KeyError as exc:
        log.error("No rate matches sheet '%s' and no fallback rate exists", sheet_name)
        raise MissingReferenceError(
            f"No rate for sheet '{sheet_name}' and no '{FALLBACK_VEHICLE_TYPE}' fallback"
        ) from exc


def base_fee(rate: VehicleRate, is_koryo: bool) -> Decimal:
    if is_koryo:
        return Decimal(rate.base_fee // 2)
    return Decimal(rate.base_fee)


def mileage_fee(rate: VehicleRate, yuryo_km: Decimal) -> Decimal:
    if yuryo_km <= 0:
        return ZERO
    blocks = yuryo_km // MILEAGE_BLOCK_KM + 1
    return blocks * rate.mileage_fee


def late_night_fee(rate: VehicleRate, minutes: Decimal) -> Decimal:
    if minutes <= 0:
        return ZERO
    blocks = minutes // LATE_NIGHT_BLOCK_MINUTES + 1
    return blocks * rate.late_night_unit_fee + rate.late_night_fixed_fee


def calculate_row_fees(row: RowInput, rate: VehicleRate, *, ootsuki: bool) -> RowFees:
    """Compute the fee columns for one daily row.

    Args:
        row (RowInput): Figures read from the input sheet.
        rate (VehicleRate): Rate applicable to the sheet.
        ootsuki (bool): Whether the late-night figure is a typed fee rather
            than a minute count.

    Returns:
        RowFees: All-zero fees when the row records no transport.
    """

    if row.hanso <= 0:
        return RowFees()

    shinya = row.late_fee if ootsuki else late_night_fee(rate, row.late_minutes)
    return RowFees(
        kihon=base_fee(rate, row.is_koryo),
        soko=mileage_fee(rate, row.yuryo_km),
        shinya=shinya,
    )
