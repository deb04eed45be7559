"""Command-line entry points for the stock ledger.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the command objects consumed by the business
layer. Keeping the CLI thin ensures the same parser configuration can be
reused by tests, scripts, or any alternative front-end that wants to expose
the package capabilities.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import UTC, date, datetime, time
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .constants import TransactionKind
from .exceptions import AllocationConsistencyError, BusinessRuleViolation
from .models import Allocation, ReceivedItem, RequestLine, cutoff_for


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def parse_date(raw: str) -> date:
    """argparse ``type`` converting ``YYYY-MM-DD`` text into a :class:`date`."""
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid date '{raw}', expected YYYY-MM-DD") from exc


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="stock-ledger",
        description="Command-line tools for the FIFO stock ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as receipts and issues."""
    specs = {
        "receive": register_receive_command(subparsers),
        "edit-receipt": register_edit_receipt_command(subparsers),
        "delete-receipt": register_delete_receipt_command(subparsers),
        "issue": register_issue_command(subparsers),
        "delete-issue": register_delete_issue_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": register_stock_command(subparsers),
        "receipts": register_receipts_command(subparsers),
        "issues": register_issues_command(subparsers),
        "report": register_report_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_item_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--item",
        dest="items",
        nargs=4,
        action="append",
        required=True,
        metavar=("NAME", "UNIT", "QUANTITY", "PRICE"),
        help="One received line; repeat for every item on the nota.",
    )


def register_receive_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``receive``."""
    name = "receive"
    help_text = "Record a goods-in nota."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--date", dest="received_on", type=parse_date, required=True)
        parser.add_argument("--supplier", required=True)
        parser.add_argument("--recorded-by", dest="recorded_by", default=None)
        _add_item_argument(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_receive)


def register_edit_receipt_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-receipt``."""
    name = "edit-receipt"
    help_text = "Replace the contents of a goods-in nota whose stock is untouched."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--record-id", dest="record_id", type=int, required=True)
        parser.add_argument("--date", dest="received_on", type=parse_date, required=True)
        parser.add_argument("--supplier", required=True)
        _add_item_argument(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit_receipt)


def register_delete_receipt_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-receipt``."""
    name = "delete-receipt"
    help_text = "Delete a goods-in nota whose stock is untouched."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--record-id", dest="record_id", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_receipt)


def register_issue_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``issue``."""
    name = "issue"
    help_text = "Record a goods-out nota, consuming stock FIFO."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--destination", required=True)
        parser.add_argument(
            "--kind",
            choices=[member.value for member in TransactionKind],
            default=TransactionKind.SALE.value,
        )
        parser.add_argument("--recorded-by", dest="recorded_by", default=None)
        parser.add_argument(
            "--line",
            dest="lines",
            nargs=3,
            action="append",
            required=True,
            metavar=("NAME", "UNIT", "QUANTITY"),
            help="One requested line; repeat for every stock key.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_issue)


def register_delete_issue_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-issue``."""
    name = "delete-issue"
    help_text = "Delete a goods-out nota and restore its stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", dest="transaction_id", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_issue)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display remaining stock per item."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--as-of",
            dest="as_of",
            type=parse_date,
            default=None,
            help="Only count activity up to the end of this day (UTC).",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_receipts_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``receipts``."""
    name = "receipts"
    help_text = "List goods-in notas and their lock state."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_receipts_report)


def register_issues_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``issues``."""
    name = "issues"
    help_text = "List goods-out notas with their FIFO allocations."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_issues_report)


def register_report_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``report``."""
    name = "report"
    help_text = "Display goods-in and goods-out activity within a date range."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--start", type=parse_date, default=None)
        parser.add_argument("--end", type=parse_date, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_period_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations.

    Without ``--config`` the data layer searches for ``config.ini`` upward
    from the working directory.
    """
    target = Path(config_path) if config_path is not None else None
    return core_logic.load_runtime_context(target)


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


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def translate_items(raw_items: Sequence[Sequence[str]]) -> List[ReceivedItem]:
    """Translate repeated ``--item NAME UNIT QUANTITY PRICE`` values."""
    return [
        ReceivedItem(name=name, unit=unit, quantity=int(quantity), unit_price=Decimal(price))
        for name, unit, quantity, price in raw_items
    ]


def translate_receive(args: argparse.Namespace) -> core_logic.ReceiveGoodsCommand:
    """Translate CLI args into a goods-in command object."""
    return core_logic.ReceiveGoodsCommand(
        received_on=args.received_on,
        supplier=args.supplier,
        items=translate_items(args.items),
        recorded_by=args.recorded_by,
    )


def translate_edit_receipt(args: argparse.Namespace) -> core_logic.EditReceiptCommand:
    """Translate CLI args into an edit-receipt command object."""
    return core_logic.EditReceiptCommand(
        record_id=args.record_id,
        received_on=args.received_on,
        supplier=args.supplier,
        items=translate_items(args.items),
    )


def translate_issue(args: argparse.Namespace) -> core_logic.IssueGoodsCommand:
    """Translate CLI args into a goods-out command object."""
    return core_logic.IssueGoodsCommand(
        destination=args.destination,
        kind=TransactionKind(args.kind),
        lines=[
            RequestLine(name=name, unit=unit, quantity=int(quantity))
            for name, unit, quantity in args.lines
        ],
        recorded_by=args.recorded_by,
    )


def translate_as_of(day: Optional[date]) -> Optional[int]:
    """Convert a report day into the identifier cutoff covering that whole day."""
    if day is None:
        return None
    return cutoff_for(datetime.combine(day, time.max, tzinfo=UTC))


def run_receive(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the goods-in workflow via the BLL."""
    record = core_logic.record_receipt(context, translate_receive(args))
    print(f"Recorded receipt {record.record_id} ({len(record.batches)} item(s), value {record.total_value})")
    return 0


def run_edit_receipt(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the edit-receipt workflow via the BLL."""
    record = core_logic.edit_receipt(context, translate_edit_receipt(args))
    print(f"Updated receipt {record.record_id} ({len(record.batches)} item(s), value {record.total_value})")
    return 0


def run_delete_receipt(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-receipt workflow via the BLL."""
    core_logic.delete_receipt(context, args.record_id)
    print(f"Deleted receipt {args.record_id}")
    return 0


def run_issue(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the goods-out workflow via the BLL."""
    transaction = core_logic.record_issue(context, translate_issue(args))
    print(f"Recorded issue {transaction.transaction_id} (cost {transaction.total_cost})")
    for allocation in transaction.allocations:
        print(f"  {render_allocation(allocation)}")
    return 0


def run_delete_issue(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-issue workflow via the BLL."""
    core_logic.delete_issue(context, args.transaction_id)
    print(f"Deleted issue {args.transaction_id}")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    summary = core_logic.calculate_stock(context, as_of=translate_as_of(getattr(args, "as_of", None)))
    for stock_key, quantity in summary.items():
        print(f"{stock_key.name}\t{quantity} {stock_key.unit}")
    return 0


def run_receipts_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the receipts listing workflow."""
    for record in core_logic.list_receipts(context):
        state = "locked" if core_logic.is_record_locked(context, record.record_id) else "editable"
        print(
            f"{record.record_id}\t{record.received_on.isoformat()}\t{record.supplier}\t"
            f"{record.total_value}\t{state}"
        )
    return 0


def run_issues_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the issues listing workflow."""
    for transaction in core_logic.list_issues(context):
        print(
            f"{transaction.transaction_id}\t{transaction.kind.value}\t{transaction.destination}\t"
            f"{transaction.total_cost}"
        )
        for allocation in transaction.allocations:
            print(f"  {render_allocation(allocation)}")
    return 0


def run_period_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the period reporting workflow."""
    for entry in core_logic.build_period_report(context, start=args.start, end=args.end):
        print(
            f"{entry.occurred_on.isoformat()}\t{entry.direction}\t{entry.description}\t"
            f"{entry.line_count}\t{entry.value}\t{entry.recorded_by}"
        )
    return 0


def render_allocation(allocation: Allocation) -> str:
    return (
        f"{allocation.quantity} {allocation.stock_key.unit} {allocation.stock_key.name} "
        f"@ {allocation.unit_price} (from receipt {allocation.source_record_id})"
    )


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, AllocationConsistencyError):
        log.critical("Internal allocation defect, please report it: %s", error)
        return 4
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
