"""Command-line entry points for the Hanso input tool.

This module is limited to argparse wiring and to translating command-line
arguments into calls on the business layer. Every sub-command is described
by a :class:`CommandSpec` so tests can build the same parser and command
table without touching a workbook.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, data_manager, log, transfer
from .constants import OfficeCategory, VehicleKind
from .vehicle_sheets import VehicleSheetSpec


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed.

    ``mutates`` marks commands whose in-memory workbook edits are saved to
    the work file after a successful run. Commands that write files on their
    own leave it unset.
    """

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="hanso-cli",
        description="Daily entry, fee calculation and monthly reports for the transport workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to the nearest config.ini).",
    )
    return parser


def configure_subcommands(parser: argparse.ArgumentParser) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    entry_specs = register_entry_commands(subparsers)
    vehicle_specs = register_vehicle_commands(subparsers)
    session_specs = register_session_commands(subparsers)
    return build_command_table([*entry_specs.values(), *vehicle_specs.values(), *session_specs.values()])


def _register_all(subparsers: argparse._SubParsersAction, specs: Dict[str, CommandSpec]) -> Dict[str, CommandSpec]:
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_entry_commands(subparsers: argparse._SubParsersAction) -> Dict[str, CommandSpec]:
    """Declare commands that read or write daily and east-sheet entries."""
    return _register_all(
        subparsers,
        {
            "preview": register_preview_command(subparsers),
            "register": register_register_command(subparsers),
            "update": register_update_command(subparsers),
            "delete-rows": register_delete_rows_command(subparsers),
            "register-east": register_register_east_command(subparsers),
        },
    )


def register_vehicle_commands(subparsers: argparse._SubParsersAction) -> Dict[str, CommandSpec]:
    """Declare commands that manage vehicle sheets and rates."""
    return _register_all(
        subparsers,
        {
            "vehicles": register_vehicles_command(subparsers),
            "add-vehicle": register_add_vehicle_command(subparsers),
            "rename-vehicle": register_rename_vehicle_command(subparsers),
            "delete-vehicle": register_delete_vehicle_command(subparsers),
            "rates": register_rates_command(subparsers),
            "set-rate": register_set_rate_command(subparsers),
        },
    )


def register_session_commands(subparsers: argparse._SubParsersAction) -> Dict[str, CommandSpec]:
    """Declare commands that manage the work file and the monthly transfer."""
    return _register_all(
        subparsers,
        {
            "status": register_status_command(subparsers),
            "clear": register_clear_command(subparsers),
            "load-report": register_load_report_command(subparsers),
            "transfer": register_transfer_command(subparsers),
            "discard": register_discard_command(subparsers),
        },
    )


def _add_normal_entry_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--day", required=True, help="Day of month (日).")
    parser.add_argument("--yuryo-km", default=None, help="Paid kilometres (有料キロ).")
    parser.add_argument("--muryo-km", default=None, help="Free kilometres (無料キロ).")
    parser.add_argument(
        "--late",
        default=None,
        help="Late-night fee on Ootsuki sheets, late-night minutes elsewhere.",
    )
    parser.add_argument("--koryo", action="store_true", help="Mark the row as Koryo (half base fee).")


def _add_vehicle_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--category",
        choices=[member.value for member in OfficeCategory],
        default=OfficeCategory.FUJIYOSHIDA.value,
    )
    parser.add_argument(
        "--kind",
        choices=[member.value for member in VehicleKind],
        default=VehicleKind.SLEEPER.value,
        help="Ignored for 東日本セレモニー vehicles.",
    )
    parser.add_argument("--name", dest="individual_name", default="", help="Individual vehicle name.")
    parser.add_argument("--number", default="", help="Vehicle number.")


def register_preview_command(subparsers: argparse._SubParsersAction) -> CommandSpec:
    """Register the parser and executor for ``preview``."""
    name = "preview"
    help_text = "List the daily rows already entered on a normal sheet."

    def registrar(action: argparse._SubParsersAction) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sheet", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_preview)


def register_register_command(subparsers: argparse._SubParsersAction) -> CommandSpec:
    """Register the parser and executor for ``register``."""
    name = "register"
    help_text = "Enter one day's figures on a normal sheet."

    def registrar(action: argparse._SubParsersAction) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sheet", required=True)
        _add_normal_entry_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_register, mutates=True)


def register_update_command(subparsers: argparse._SubParsersAction) -> CommandSpec:
    """Register the parser and executor for ``update``."""
    name = "update"
    help_text = "Correct an existing daily row on a normal sheet."

    def registrar(action: argparse._SubParsersAction) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sheet", required=True)
        parser.add_argument("--row", type=int, required=True, help="Worksheet row number.")
        _add_normal_entry_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update, mutates=True)


def register_delete_rows_command(subparsers: argparse._SubParsersAction) -> CommandSpec:
    """Register the parser and executor for ``delete-rows``."""
    name = "delete-rows"
    help_text = "Delete daily rows from a normal sheet."

    def registrar(action: argparse._SubParsersAction) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sheet", required=True)
        parser.add_argument("--rows", type=int, nargs="+", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_rows, mutates=True)


def register_register_east_command(subparsers: argparse._SubParsersAction) -> CommandSpec:
    """Register the parser and executor for ``register-east``."""
    name = "register-east"
    help_text = "Enter the monthly aggregates of a 東日本 sheet."

    def registrar(action: argparse._SubParsersAction) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sheet", required=True)
        parser.add_argument("--jitsudo", default=None, help="延実働車輌数")
        parser.add_argument("--hanso", default=None, help="搬送回数")
        parser.add_argument("--yuryo-km", default=None, help="有料キロ数")
        parser.add_argument("--muryo-km", default=None, help="無料キロ数")
        parser.add_argument("--unso-jisseki", default=None, help="運輸実績")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_register_east, mutates=True)


def register_vehicles_command(subparsers: argparse._SubParsersAction) -> CommandSpec:
    """Register the parser and executor for ``vehicles``."""
    name = "vehicles"
    help_text = "List vehicle sheets."

    def registrar(action: argparse._SubParsersAction) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_vehicles)


def register_add_vehicle_command(subparsers: argparse._SubParsersAction) -> CommandSpec:
    """Register the parser and executor for ``add-vehicle``."""
    name = "add-vehicle"
    help_text = "Create a vehicle sheet from its template."

    def registrar(action: argparse._SubParsersAction) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_vehicle_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_vehicle, mutates=True)


def register_rename_vehicle_command(subparsers: argparse._SubParsersAction) -> CommandSpec:
    """Register the parser and executor for ``rename-vehicle``."""
    name = "rename-vehicle"
    help_text = "Retitle an existing vehicle sheet."

    def registrar(action: argparse._SubParsersAction) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sheet", required=True, help="Current sheet title.")
        _add_vehicle_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_rename_vehicle, mutates=True)


def register_delete_vehicle_command(subparsers: argparse._SubParsersAction) -> CommandSpec:
    """Register the parser and executor for ``delete-vehicle``."""
    name = "delete-vehicle"
    help_text = "Remove a vehicle sheet."

    def registrar(action: argparse._SubParsersAction) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sheet", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_vehicle, mutates=True)


def register_rates_command(subparsers: argparse._SubParsersAction) -> CommandSpec:
    """Register the parser and executor for ``rates``."""
    name = "rates"
    help_text = "Display the fee table."

    def registrar(action: argparse._SubParsersAction) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_rates)


def register_set_rate_command(subparsers: argparse._SubParsersAction) -> CommandSpec:
    """Register the parser and executor for ``set-rate``."""
    name = "set-rate"
    help_text = "Create, edit or remove a fee table entry."

    def registrar(action: argparse._SubParsersAction) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--vehicle-type", required=True)
        parser.add_argument("--base-fee", type=int, default=None)
        parser.add_argument("--mileage-fee", type=int, default=None)
        parser.add_argument("--late-night-fixed-fee", type=int, default=None)
        parser.add_argument("--late-night-unit-fee", type=int, default=None)
        parser.add_argument("--remove", action="store_true", help="Remove the entry instead.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_rate)


def register_status_command(subparsers: argparse._SubParsersAction) -> CommandSpec:
    """Register the parser and executor for ``status``."""
    name = "status"
    help_text = "Show the sheets of the work file and whether data remains."

    def registrar(action: argparse._SubParsersAction) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_status)


def register_clear_command(subparsers: argparse._SubParsersAction) -> CommandSpec:
    """Register the parser and executor for ``clear``."""
    name = "clear"
    help_text = "Blank every entered value in the work file."

    def registrar(action: argparse._SubParsersAction) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_clear, mutates=True)


def register_load_report_command(subparsers: argparse._SubParsersAction) -> CommandSpec:
    """Register the parser and executor for ``load-report``."""
    name = "load-report"
    help_text = "Replace the work file with an existing monthly report."

    def registrar(action: argparse._SubParsersAction) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--source", type=Path, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_load_report)


def register_transfer_command(subparsers: argparse._SubParsersAction) -> CommandSpec:
    """Register the parser and executor for ``transfer``."""
    name = "transfer"
    help_text = "Produce the monthly report and summary, then clear the inputs."

    def registrar(action: argparse._SubParsersAction) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--period", type=int, required=True, help="Fiscal period (期).")
        parser.add_argument("--month", type=int, required=True)
        parser.add_argument("--r-number", type=int, required=True, help="Reiwa year.")
        parser.add_argument("--output-dir", type=Path, default=Path.cwd())
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_transfer)


def register_discard_command(subparsers: argparse._SubParsersAction) -> CommandSpec:
    """Register the parser and executor for ``discard``."""
    name = "discard"
    help_text = "Delete the work file to end the session."

    def registrar(action: argparse._SubParsersAction) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_discard)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(specs: Iterable[CommandSpec]) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def translate_normal_entry(args: argparse.Namespace) -> data_manager.NormalEntry:
    """Translate CLI args into a validated normal-sheet entry."""
    return core_logic.build_normal_entry(
        day=args.day,
        yuryo_km=args.yuryo_km,
        muryo_km=args.muryo_km,
        late_value=args.late,
        is_koryo=args.koryo,
        ootsuki=data_manager.is_ootsuki(args.sheet),
    )


def translate_vehicle_spec(args: argparse.Namespace) -> VehicleSheetSpec:
    """Translate CLI args into a vehicle sheet spec."""
    category = OfficeCategory(args.category)
    kind = None if category is OfficeCategory.EAST_CEREMONY else VehicleKind(args.kind)
    return VehicleSheetSpec(
        category=category,
        kind=kind,
        individual_name=args.individual_name,
        number=args.number,
    )


def _format_cell(value: object) -> str:
    return "" if value is None else str(value)


def run_preview(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the preview rows of a normal sheet."""
    rows = core_logic.get_preview(context, args.sheet)
    print("行\t日\t搬送\t有料キロ\t無料キロ\t深夜\t高療")
    for row in rows:
        print(
            "\t".join(
                _format_cell(value)
                for value in (
                    row.row_index,
                    row.day,
                    row.hanso,
                    row.yuryo_km,
                    row.muryo_km,
                    row.late_value,
                    row.koryo_mark,
                )
            )
        )
    return 0


def run_register(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the daily registration workflow in the BLL."""
    entry = translate_normal_entry(args)
    result = core_logic.register_normal(context, args.sheet, entry)
    suffix = " (行を追加しました)" if result.inserted else ""
    print(f"[{result.sheet_name}] {result.row_index}行目に登録しました。{suffix}")
    return 0


def run_update(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the row correction workflow in the BLL."""
    entry = translate_normal_entry(args)
    core_logic.update_normal(context, args.sheet, args.row, entry)
    print(f"[{args.sheet}] {args.row}行目を更新しました。")
    return 0


def run_delete_rows(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the row deletion workflow in the BLL."""
    deleted = core_logic.delete_normal_rows(context, args.sheet, args.rows)
    print(f"[{args.sheet}] {len(deleted)}行を削除しました。")
    return 0


def run_register_east(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the east-sheet registration workflow in the BLL."""
    entry = core_logic.build_east_entry(
        jitsudo=args.jitsudo,
        hanso=args.hanso,
        yuryo_km=args.yuryo_km,
        muryo_km=args.muryo_km,
        unso_jisseki=args.unso_jisseki,
    )
    core_logic.register_east(context, args.sheet, entry)
    print(f"[{args.sheet}] {core_logic.east_sheet_status(context, args.sheet)}")
    return 0


def run_vehicles(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the vehicle sheets with their parsed name parts."""
    for spec in core_logic.list_vehicle_specs(context):
        kind = spec.kind.value if spec.kind is not None else "-"
        print(f"{spec.original_name}\t{spec.category.value}\t{kind}\t{spec.individual_name}\t{spec.number}")
    return 0


def run_add_vehicle(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-vehicle workflow in the BLL."""
    title = core_logic.add_vehicle(context, translate_vehicle_spec(args))
    print(f"シート '{title}' を追加しました。")
    return 0


def run_rename_vehicle(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the rename-vehicle workflow in the BLL."""
    title = core_logic.rename_vehicle(context, args.sheet, translate_vehicle_spec(args))
    print(f"シート '{args.sheet}' を '{title}' に変更しました。")
    return 0


def run_delete_vehicle(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-vehicle workflow in the BLL."""
    core_logic.delete_vehicle(context, args.sheet)
    print(f"シート '{args.sheet}' を削除しました。")
    return 0


def run_rates(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the fee table in rate-file order."""
    print("車種\t基本料金\tキロ料金\t深夜固定\t深夜単価")
    for rate in context.rates.values():
        print(
            f"{rate.vehicle_type}\t{rate.base_fee}\t{rate.mileage_fee}\t"
            f"{rate.late_night_fixed_fee}\t{rate.late_night_unit_fee}"
        )
    return 0


def run_set_rate(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the rate maintenance workflow in the BLL."""
    if args.remove:
        core_logic.remove_rate(context, args.vehicle_type)
        return 0
    core_logic.update_rate(
        context,
        args.vehicle_type,
        base_fee=args.base_fee,
        mileage_fee=args.mileage_fee,
        late_night_fixed_fee=args.late_night_fixed_fee,
        late_night_unit_fee=args.late_night_unit_fee,
    )
    return 0


def run_status(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the sheets of the work file and any leftover data warning."""
    print(f"作業ファイル: {context.settings.work_file}")
    for name in core_logic.list_normal_sheets(context):
        print(f"  {name}\t{len(core_logic.get_preview(context, name))}件")
    for name in core_logic.list_east_sheets(context):
        print(f"  {name}\t{core_logic.east_sheet_status(context, name)}")
    if core_logic.has_remaining_data(context):
        print("前回のデータが残っています。転記するか clear で消去してください。")
    return 0


def run_clear(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the clear workflow in the BLL."""
    for message in core_logic.clear_input_data(context):
        print(message)
    return 0


def run_load_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Load an existing monthly report as the new work file."""
    core_logic.load_report_file(context, args.source)
    print(f"'{Path(args.source).name}' を読み込みました。")
    return 0


def print_progress(update: transfer.TransferProgress) -> None:
    print(f"[{update.current}/{update.total}] {update.message}")


def run_transfer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the month-end transfer in the BLL."""
    request = transfer.TransferRequest(
        period=args.period,
        month=args.month,
        r_number=args.r_number,
        output_dir=args.output_dir,
    )
    result = core_logic.run_transfer(context, request, progress=print_progress)
    print(f"転記完了: {result.output_dir}")
    return 0


def run_discard(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Delete the work file; a failed delete is reported but not fatal."""
    if not core_logic.discard_work_file(context.settings):
        print("作業ファイルを削除できませんでした。")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(f"作業ファイルを保存できません。Excelで開いていないか確認してください: {error}") from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].mutates:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
