"""Shared pytest fixtures and utilities for Hanso input tool tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator
from unittest.mock import Mock

import openpyxl
import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

for candidate in (SRC_DIR, PROJECT_ROOT):
    candidate_str = str(candidate)
    if candidate_str not in sys.path:
        sys.path.insert(0, candidate_str)

from hanso_input import cli, core_logic, data_manager, setup_excel  # noqa: E402

# Three daily rows keep the "sheet is full" paths cheap to reach.
TEST_DAYS = 3

_CONFIG_TEMPLATE = (
    "[System]\n"
    "WorkFile = {work_file}\n"
    "InputTemplate = {input_template}\n"
    "SummaryTemplate = {summary_template}\n"
    "RatesFile = {rates_file}\n"
    "BundledRatesFile = {bundled_rates_file}\n\n"
    "[Report]\n"
    "Title = テスト月報\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    input_template: Path
    summary_template: Path
    bundled_rates_file: Path
    work_file: Path
    rates_file: Path


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the repository root path."""

    return PROJECT_ROOT


@pytest.fixture
def input_workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates a bundled-style input workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "Input.xlsx", days: int = TEST_DAYS) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        return setup_excel.create_input_workbook(base_dir / filename, days=days, overwrite=True)

    return _create_workbook


@pytest.fixture
def input_workbook_path(input_workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh input workbook ready for use in a test."""

    return input_workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, input_workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/bundled-file sets on demand."""

    def _create_config(*, make_relative: bool = False) -> ConfigBundle:
        bundle_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_name
        input_template = input_workbook_factory(subdir=f"{bundle_name}/data")
        summary_template = setup_excel.create_summary_template(bundle_dir / "data" / "Template.xlsx")
        bundled_rates = setup_excel.create_rates_file(bundle_dir / "data" / "rates.json")
        work_file = bundle_dir / "work" / "Input_work.xlsx"
        rates_file = bundle_dir / "work" / "rates.json"

        def entry(path: Path) -> str:
            return path.relative_to(bundle_dir).as_posix() if make_relative else str(path)

        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                work_file=entry(work_file),
                input_template=entry(input_template),
                summary_template=entry(summary_template),
                rates_file=entry(rates_file),
                bundled_rates_file=entry(bundled_rates),
            ),
            encoding="utf-8",
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            input_template=input_template,
            summary_template=summary_template,
            bundled_rates_file=bundled_rates,
            work_file=work_file,
            rates_file=rates_file,
        )

    return _create_config


@pytest.fixture
def config_bundle(config_factory: Callable[..., ConfigBundle]) -> ConfigBundle:
    return config_factory()


@pytest.fixture
def config_file(config_bundle: ConfigBundle) -> Path:
    """Convenience fixture returning only the config path."""

    return config_bundle.config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    return core_logic.load_runtime_context(config_file)


# ---------------------------------------------------------------------------
# Sheet fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def column_map() -> data_manager.SheetColumnMap:
    return data_manager.SheetColumnMap()


@pytest.fixture
def sheet_factory(column_map: data_manager.SheetColumnMap) -> Callable[..., openpyxl.worksheet.worksheet.Worksheet]:
    """Build a single normal sheet in memory with ``days`` daily rows."""

    def _create_sheet(title: str = "寝台車 30", *, days: int = TEST_DAYS):
        workbook = openpyxl.Workbook()
        sheet = workbook.active
        sheet.title = title
        setup_excel.build_normal_sheet(sheet, column_map, days=days)
        return sheet

    return _create_sheet


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="hanso-cli", description="Hanso CLI")


@pytest.fixture
def subparsers_action(cli_parser: argparse.ArgumentParser) -> argparse._SubParsersAction:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_table_entry() -> tuple[str, cli.CommandSpec]:
    """Provide a placeholder command table entry for dispatch tests."""

    def execute(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
        execute.__dict__["called"] = True
        return 0

    def register(subparsers: argparse._SubParsersAction) -> argparse.ArgumentParser:
        return subparsers.add_parser("catalog-test")

    spec = cli.CommandSpec(
        name="catalog-test",
        help_text="help",
        register=register,
        execute=execute,
    )
    return "catalog-test", spec


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        work_file=tmp_path / "work" / "Input_work.xlsx",
        input_template=tmp_path / "data" / "Input.xlsx",
        summary_template=tmp_path / "data" / "Template.xlsx",
        rates_file=tmp_path / "work" / "rates.json",
        bundled_rates_file=tmp_path / "data" / "rates.json",
    )


@pytest.fixture
def rates() -> dict[str, data_manager.VehicleRate]:
    return {rate.vehicle_type: rate for rate in setup_excel.DEFAULT_RATES}


@pytest.fixture
def workbook() -> Mock:
    """Return a mock workbook object for business logic tests."""

    return Mock(name="workbook")


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook: Mock, rates) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and workbook mocks."""

    return core_logic.RuntimeContext(settings=settings, workbook=workbook, rates=rates)
