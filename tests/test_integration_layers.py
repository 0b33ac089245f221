"""Integration tests describing the end-to-end Hanso input workflows.

These scenarios drive the command-line entry point against real workbooks so
the data access, business logic and presentation layers are exercised
together.
"""

from __future__ import annotations

import json
from pathlib import Path

import openpyxl
import pytest

from hanso_input import cli, core_logic, setup_excel


def _run(config_file: Path, *argv: str) -> int:
    return cli.main(["--config", str(config_file), *argv])


def test_monthly_cycle_flow(config_bundle, tmp_path, capsys):
    """Enter a month of data, transfer it, and start the next month empty."""

    assert _run(config_bundle.config_path, "register", "--sheet", "寝台車 30", "--day", "1", "--yuryo-km", "22.5", "--muryo-km", "4", "--late", "45") == 0
    assert _run(config_bundle.config_path, "register", "--sheet", "寝台車 30", "--day", "2", "--muryo-km", "6") == 0
    assert (
        _run(
            config_bundle.config_path,
            "register-east",
            "--sheet",
            "東日本セレモニー 1961",
            "--jitsudo",
            "20",
            "--hanso",
            "31",
            "--unso-jisseki",
            "560,000",
        )
        == 0
    )

    capsys.readouterr()
    assert _run(config_bundle.config_path, "preview", "--sheet", "寝台車 30") == 0
    preview = capsys.readouterr().out.splitlines()
    # 22.5 km rounds half away from zero.
    assert preview[1].split("\t")[:5] == ["3", "1", "1", "23", "4"]
    assert preview[2].split("\t")[:5] == ["4", "2", "0", "", "6"]

    out_dir = tmp_path / "reports"
    assert _run(config_bundle.config_path, "transfer", "--period", "52", "--month", "4", "--r-number", "7", "--output-dir", str(out_dir)) == 0

    folder = out_dir / "52期 4月 R7 テスト月報"
    report = openpyxl.load_workbook(folder / "52期 4月 R7 テスト月報.xlsx")
    assert [report["寝台車 30"].cell(row=3, column=column).value for column in (6, 7, 8, 9)] == [8000, 1500, 3100, 12600]
    summary = openpyxl.load_workbook(folder / "52期 4月 R7 テスト月報集計.xlsx")
    assert summary["東日本セレモニー 1961"]["G4"].value == 560000

    work = openpyxl.load_workbook(config_bundle.work_file)
    assert work["寝台車 30"]["B3"].value is None
    assert work["東日本セレモニー 1961"]["C4"].value is None


def test_work_file_survives_between_runs(config_bundle):
    """A second session resumes from the work file left by the first."""

    assert _run(config_bundle.config_path, "register", "--sheet", "霊柩車 1", "--day", "7") == 0

    context = core_logic.load_runtime_context(config_bundle.config_path)
    assert core_logic.has_remaining_data(context)
    assert [row.day for row in core_logic.get_preview(context, "霊柩車 1")] == [7]

    assert _run(config_bundle.config_path, "clear") == 0
    context = core_logic.load_runtime_context(config_bundle.config_path)
    assert not core_logic.has_remaining_data(context)


def test_east_status_carries_between_runs(config_bundle, capsys):
    config = config_bundle.config_path
    assert _run(config, "register-east", "--sheet", "東日本セレモニー 1961", "--jitsudo", "5") == 0
    capsys.readouterr()

    assert _run(config, "status") == 0
    assert "  東日本セレモニー 1961\t✅ 登録完了" in capsys.readouterr().out.splitlines()

    assert _run(config, "clear") == 0
    capsys.readouterr()
    assert _run(config, "status") == 0
    assert "  東日本セレモニー 1961\t（未登録）" in capsys.readouterr().out.splitlines()


def test_full_sheet_grows_and_keeps_totals(config_bundle):
    for day in ("1", "2", "3", "4"):
        assert _run(config_bundle.config_path, "register", "--sheet", "寝台車 29", "--day", day, "--yuryo-km", "10") == 0

    sheet = openpyxl.load_workbook(config_bundle.work_file)["寝台車 29"]
    assert sheet["B6"].value == 4
    assert sheet["A7"].value == "合計"
    assert sheet["D7"].value == "=SUM(D3:D6)"


def test_update_and_delete_rows_flow(config_bundle):
    config = config_bundle.config_path
    for day in ("1", "2", "3"):
        assert _run(config, "register", "--sheet", "寝台車 30", "--day", day) == 0

    assert _run(config, "update", "--sheet", "寝台車 30", "--row", "4", "--day", "12", "--koryo") == 0
    assert _run(config, "delete-rows", "--sheet", "寝台車 30", "--rows", "3") == 0

    context = core_logic.load_runtime_context(config)
    rows = core_logic.get_preview(context, "寝台車 30")
    assert [(row.row_index, row.day, row.koryo_mark) for row in rows] == [(3, 12, "✔"), (4, 3, "")]
    assert core_logic.data_manager.find_total_row(context.workbook["寝台車 30"]) == 5


def test_vehicle_maintenance_flow(config_bundle, capsys):
    """Add, rename and remove vehicles while the summary sheet follows."""

    config = config_bundle.config_path
    assert _run(config, "add-vehicle", "--category", "CH東富士", "--kind", "霊柩車", "--name", "桜", "--number", "2") == 0
    assert _run(config, "rename-vehicle", "--sheet", "寝台車 29", "--number", "31") == 0
    assert _run(config, "delete-vehicle", "--sheet", "霊柩車 1") == 0

    workbook = openpyxl.load_workbook(config_bundle.work_file)
    assert "CH東富士 霊柩車 桜 2" in workbook.sheetnames
    assert "寝台車 31" in workbook.sheetnames
    assert "霊柩車 1" not in workbook.sheetnames
    listed = [workbook["登録車両集計"].cell(row=row, column=1).value for row in range(3, 9)]
    assert "CH東富士 霊柩車 桜 2" in listed
    assert "霊柩車 1" not in listed

    capsys.readouterr()
    assert _run(config, "vehicles") == 0
    assert "CH東富士 霊柩車 桜 2\tCH東富士\t霊柩車\t桜\t2" in capsys.readouterr().out.splitlines()


def test_rate_maintenance_flow(config_bundle):
    config = config_bundle.config_path
    assert _run(config, "set-rate", "--vehicle-type", "寝台車", "--base-fee", "9000") == 0
    assert _run(config, "set-rate", "--vehicle-type", "特殊車", "--base-fee", "1", "--mileage-fee", "2", "--late-night-fixed-fee", "3", "--late-night-unit-fee", "4") == 0
    assert _run(config, "set-rate", "--vehicle-type", "CH東富士", "--remove") == 0

    stored = json.loads(config_bundle.rates_file.read_text(encoding="utf-8"))
    context = core_logic.load_runtime_context(config)
    assert context.rates["寝台車"].base_fee == 9000
    assert context.rates["特殊車"].late_night_unit_fee == 4
    assert "CH東富士" not in context.rates
    assert len(stored) == len(context.rates)


def test_load_report_replaces_work_file(config_bundle, tmp_path):
    source = tmp_path / "previous.xlsx"
    workbook = openpyxl.load_workbook(config_bundle.input_template)
    workbook["寝台車 30"]["B3"] = 15
    workbook.save(source)

    assert _run(config_bundle.config_path, "load-report", "--source", str(source)) == 0

    context = core_logic.load_runtime_context(config_bundle.config_path)
    assert [row.day for row in core_logic.get_preview(context, "寝台車 30")] == [15]


def test_discard_ends_session(config_bundle):
    assert _run(config_bundle.config_path, "status") == 0
    assert config_bundle.work_file.exists()

    assert _run(config_bundle.config_path, "discard") == 0
    assert not config_bundle.work_file.exists()


# ---------------------------------------------------------------------------
# Failure exit codes
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "argv",
    [
        ("register", "--sheet", "寝台車 30", "--day", " "),
        ("register", "--sheet", "寝台車 30", "--day", "1", "--yuryo-km", "abc"),
        ("register", "--sheet", "寝台車 30", "--day", "1", "--yuryo-km", "1e30"),
        ("update", "--sheet", "寝台車 30", "--row", "6", "--day", "1"),
        ("delete-vehicle", "--sheet", "寝台車 99"),
        ("set-rate", "--vehicle-type", "寝台車", "--remove"),
        ("transfer", "--period", "52", "--month", "13", "--r-number", "7"),
    ],
)
def test_business_rule_failures_exit_with_code_two(config_bundle, argv):
    assert _run(config_bundle.config_path, *argv) == 2


def test_missing_bundled_file_exits_with_code_three(config_bundle):
    config_bundle.input_template.unlink()

    assert _run(config_bundle.config_path, "status") == 3


def test_failed_command_does_not_save(config_bundle):
    assert _run(config_bundle.config_path, "register", "--sheet", "寝台車 30", "--day", "1") == 0
    assert _run(config_bundle.config_path, "delete-rows", "--sheet", "寝台車 30", "--rows", "3", "9") == 2

    context = core_logic.load_runtime_context(config_bundle.config_path)
    assert len(core_logic.get_preview(context, "寝台車 30")) == 1


def test_relative_config_paths_resolve_from_config_directory(config_factory):
    bundle = config_factory(make_relative=True)

    assert _run(bundle.config_path, "register", "--sheet", "寝台車 30", "--day", "1") == 0
    assert bundle.work_file.exists()
    assert bundle.rates_file.exists()


# ---------------------------------------------------------------------------
# Setup script
# ---------------------------------------------------------------------------


def _write_setup_config(directory: Path) -> Path:
    config_path = directory / "config.ini"
    config_path.write_text(
        "[System]\n"
        "WorkFile = work/Input_work.xlsx\n"
        "InputTemplate = data/Input.xlsx\n"
        "SummaryTemplate = data/Template.xlsx\n"
        "RatesFile = work/rates.json\n"
        "BundledRatesFile = data/rates.json\n",
        encoding="utf-8",
    )
    return config_path


def test_setup_script_creates_bundled_files(tmp_path, capsys):
    config_path = _write_setup_config(tmp_path)

    assert setup_excel.main(["--config", str(config_path)]) == 0

    assert "[SUCCESS]" in capsys.readouterr().out
    workbook = openpyxl.load_workbook(tmp_path / "data" / "Input.xlsx")
    assert workbook.sheetnames[0] == "登録車両集計"
    assert "東日本セレモニー 1961" in workbook.sheetnames
    assert workbook["寝台車 30"]["A34"].value == "合計"
    assert (tmp_path / "data" / "Template.xlsx").exists()
    assert list(json.loads((tmp_path / "data" / "rates.json").read_text(encoding="utf-8")))


def test_setup_script_refuses_to_overwrite(tmp_path, capsys):
    config_path = _write_setup_config(tmp_path)
    setup_excel.run_from_config(config_path)

    assert setup_excel.main(["--config", str(config_path)]) == 1
    assert "--force" in capsys.readouterr().out
    assert setup_excel.main(["--config", str(config_path), "--force"]) == 0


def test_setup_script_reports_missing_config(tmp_path):
    assert setup_excel.main(["--config", str(tmp_path / "absent.ini")]) == 1


def test_setup_output_feeds_a_session(tmp_path):
    config_path = _write_setup_config(tmp_path)
    setup_excel.run_from_config(config_path)

    context = core_logic.load_runtime_context(config_path)

    assert core_logic.list_east_sheets(context) == ["東日本セレモニー 1961"]
    assert (tmp_path / "work" / "Input_work.xlsx").exists()
    assert not core_logic.has_remaining_data(context)
