"""Tests for the month-end transfer into the report and summary workbooks."""

from __future__ import annotations

from decimal import Decimal
from pathlib import Path

import openpyxl
import pytest

from hanso_input import core_logic, data_manager, transfer

MAPPING = data_manager.ColumnMapping()


def _request(tmp_path: Path, **overrides) -> transfer.TransferRequest:
    values = {"period": 52, "month": 4, "r_number": 7, "output_dir": tmp_path / "out"}
    values.update(overrides)
    return transfer.TransferRequest(**values)


@pytest.mark.parametrize(
    "overrides",
    [{"period": 0}, {"r_number": -1}, {"month": 0}, {"month": 13}],
)
def test_validate_request_rejects_bad_identifiers(tmp_path, overrides):
    with pytest.raises(core_logic.InputValidationError):
        transfer.validate_request(_request(tmp_path, **overrides))


def test_build_output_paths_names_folder_and_files(tmp_path):
    folder, report_file, summary_file = transfer.build_output_paths(_request(tmp_path), "月報")

    assert folder == (tmp_path / "out" / "52期 4月 R7 月報").resolve()
    assert report_file.name == "52期 4月 R7 月報.xlsx"
    assert summary_file.name == "52期 4月 R7 月報集計.xlsx"
    assert report_file.parent == folder


# ---------------------------------------------------------------------------
# Per-sheet processing
# ---------------------------------------------------------------------------


def _fill(sheet, row, entry):
    data_manager.write_normal_row(sheet, row, entry, MAPPING.normal_sheet)


def test_process_normal_sheet_writes_fees_and_totals(sheet_factory, rates):
    input_sheet = sheet_factory("寝台車 30")
    report_sheet = sheet_factory("寝台車 30")
    summary_sheet = openpyxl.Workbook().active
    _fill(input_sheet, 3, data_manager.NormalEntry(day=Decimal("1"), yuryo_km=Decimal("23"), muryo_km=Decimal("4"), late_value=Decimal("45")))
    _fill(input_sheet, 4, data_manager.NormalEntry(day=Decimal("2"), muryo_km=Decimal("6")))

    totals = transfer.process_normal_sheet(input_sheet, report_sheet, summary_sheet, rates["寝台車"], MAPPING)

    assert [report_sheet.cell(row=3, column=column).value for column in (6, 7, 8, 9)] == [8000, 1500, 3100, 12600]
    assert [report_sheet.cell(row=4, column=column).value for column in (6, 7, 8, 9)] == [None] * 4
    assert [report_sheet.cell(row=6, column=column).value for column in (6, 7, 8, 9)] == [8000, 1500, 3100, 12600]
    assert totals.total == Decimal("12600")
    assert [summary_sheet[address].value for address in ("C4", "D4", "E4", "F4", "G4")] == [2, 1, 23, 10, 12600]


def test_process_normal_sheet_blanks_stale_amounts(sheet_factory, rates):
    """A work file loaded from last month's report carries its fee cells."""

    input_sheet = sheet_factory("寝台車 30")
    report_sheet = sheet_factory("寝台車 30")
    for row in (3, 6):
        for column in (6, 7, 8, 9):
            report_sheet.cell(row=row, column=column, value=7777)
    _fill(input_sheet, 3, data_manager.NormalEntry(day=Decimal("1"), muryo_km=Decimal("6")))

    totals = transfer.process_normal_sheet(input_sheet, report_sheet, None, rates["寝台車"], MAPPING)

    assert totals.total == 0
    assert [report_sheet.cell(row=3, column=column).value for column in (6, 7, 8, 9)] == [None] * 4
    assert [report_sheet.cell(row=6, column=column).value for column in (6, 7, 8, 9)] == [None] * 4


def test_process_normal_sheet_uses_typed_ootsuki_fee(sheet_factory, rates):
    input_sheet = sheet_factory("CH大月 寝台車 5")
    report_sheet = sheet_factory("CH大月 寝台車 5")
    _fill(
        input_sheet,
        3,
        data_manager.NormalEntry(day=Decimal("3"), yuryo_km=Decimal("12"), late_value=Decimal("2500"), is_koryo=True),
    )

    totals = transfer.process_normal_sheet(input_sheet, report_sheet, None, rates["CH大月"], MAPPING)

    assert [report_sheet.cell(row=3, column=column).value for column in (6, 7, 8, 9)] == [3500, 800, 2500, 6800]
    assert totals.shinya == Decimal("2500")


def test_process_normal_sheet_skips_sheet_without_totals(rates):
    input_sheet = openpyxl.Workbook().active
    input_sheet.title = "寝台車 9"

    assert transfer.process_normal_sheet(input_sheet, input_sheet, None, rates["寝台車"], MAPPING) is None


def test_process_east_sheet_copies_aggregates():
    input_sheet = openpyxl.Workbook().active
    summary_sheet = openpyxl.Workbook().active
    for address, value in zip(MAPPING.east_sheet.addresses, (20, 31, 420, 12, 560000)):
        input_sheet[address] = value

    transfer.process_east_sheet(input_sheet, summary_sheet, MAPPING)

    assert [summary_sheet[address].value for address in ("C4", "D4", "E4", "F4", "G4")] == [20, 31, 420, 12, 560000]


def test_calculate_input_totals_counts_days(sheet_factory):
    sheet = sheet_factory()
    _fill(sheet, 3, data_manager.NormalEntry(day=Decimal("1"), yuryo_km=Decimal("10"), muryo_km=Decimal("2")))
    _fill(sheet, 5, data_manager.NormalEntry(day=Decimal("9"), yuryo_km=Decimal("5")))

    totals = transfer.calculate_input_totals(sheet, 6, MAPPING.normal_sheet)

    assert totals == transfer.InputTotals(days=2, hanso=2, yuryo_km=Decimal("15"), muryo_km=Decimal("2"))


# ---------------------------------------------------------------------------
# Full run
# ---------------------------------------------------------------------------


def _populate(context: core_logic.RuntimeContext) -> None:
    core_logic.register_normal(
        context,
        "寝台車 30",
        core_logic.build_normal_entry(day="1", yuryo_km="23", muryo_km="4", late_value="45"),
    )
    core_logic.register_normal(
        context,
        "CH大月 寝台車 5",
        core_logic.build_normal_entry(day="3", yuryo_km="12", late_value="2500", is_koryo=True, ootsuki=True),
    )
    core_logic.register_east(
        context,
        "東日本セレモニー 1961",
        core_logic.build_east_entry(jitsudo="20", hanso="31", yuryo_km="420", muryo_km="12", unso_jisseki="560000"),
    )
    core_logic.persist_context(context)


def test_execute_transfer_produces_both_workbooks(runtime_context, tmp_path):
    _populate(runtime_context)
    updates = []

    result = transfer.execute_transfer(
        runtime_context.settings,
        runtime_context.rates,
        _request(tmp_path),
        progress=updates.append,
    )

    assert result.report_file.exists()
    assert result.summary_file.exists()
    assert result.processed_sheets == (
        "寝台車 29",
        "寝台車 30",
        "霊柩車 1",
        "CH大月 寝台車 5",
        "東日本セレモニー 1961",
    )

    report = openpyxl.load_workbook(result.report_file)
    assert report["寝台車 30"]["I3"].value == 12600
    assert report["CH大月 寝台車 5"]["I3"].value == 6800
    assert report["寝台車 29"]["A1"].value == "R7"
    assert report["寝台車 29"]["B1"].value == 4

    summary = openpyxl.load_workbook(result.summary_file)
    assert [summary["寝台車 30"][address].value for address in ("C4", "D4", "E4", "F4", "G4")] == [1, 1, 23, 4, 12600]
    assert summary["東日本セレモニー 1961"]["G4"].value == 560000
    assert summary["寝台車 29"]["A1"].value == "R7"

    assert updates[0] == transfer.TransferProgress(0, 5, "--- 全シートの転記処理を開始 ---")
    assert updates[-1] == transfer.TransferProgress(5, 5, "最終処理中...")


def test_execute_transfer_leaves_work_file_untouched(runtime_context, tmp_path):
    _populate(runtime_context)

    transfer.execute_transfer(runtime_context.settings, runtime_context.rates, _request(tmp_path))

    work = openpyxl.load_workbook(runtime_context.settings.work_file)
    assert work["寝台車 30"]["B3"].value == 1
    assert work["寝台車 30"]["F3"].value is None


def test_execute_transfer_requires_summary_template(runtime_context, tmp_path):
    runtime_context.settings.summary_template.unlink()

    with pytest.raises(FileNotFoundError):
        transfer.execute_transfer(runtime_context.settings, runtime_context.rates, _request(tmp_path))


def test_execute_transfer_validates_before_copying(runtime_context, tmp_path):
    with pytest.raises(core_logic.InputValidationError):
        transfer.execute_transfer(runtime_context.settings, runtime_context.rates, _request(tmp_path, month=13))

    assert not (tmp_path / "out").exists()
