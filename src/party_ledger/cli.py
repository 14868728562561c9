"""Command-line entry points for the party ledger engine.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into calls on :mod:`party_ledger.core_logic`, and
printing plain-text tables. Keeping the CLI thin means tests and other
front-ends can reuse the same parser configuration.
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence, TextIO

from . import core_logic, data_manager, log, set_console_level
from .constants import MovementKind
from .errors import RecordIssue, ReconciliationError, SourceUnavailable
from .resolver import PartyDirectory, ProductCatalog


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="ledger-cli",
        description="Reconcile counter-party balances from ERP transaction feeds.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to the nearest config.ini).",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Echo informational log messages to stderr.",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    specs = register_report_commands(subparsers)
    return build_command_table(specs.values())


def register_report_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare the read-only reporting commands."""
    specs = {
        "balances": register_balances_command(subparsers),
        "statement": register_statement_command(subparsers),
        "batches": register_batches_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_balances_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``balances``."""
    name = "balances"
    help_text = "Summarise balances for every party."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--merge-names",
            action="store_true",
            help="Fold name-only references into directory ids.",
        )
        parser.add_argument("--export", type=Path, default=None, help="Write the summary to an .xlsx file.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_balances)


def register_statement_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``statement``."""
    name = "statement"
    help_text = "Show the settlement ledger of one party."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--party-id", required=True)
        parser.add_argument(
            "--opening-balance",
            default=None,
            help="Override the opening balance from the party directory.",
        )
        parser.add_argument(
            "--merge-names",
            action="store_true",
            help="Fold name-only references into directory ids.",
        )
        parser.add_argument("--export", type=Path, default=None, help="Write the ledger to an .xlsx file.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_statement)


def register_batches_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``batches``."""
    name = "batches"
    help_text = "List receipts or write-offs grouped by document."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--kind",
            choices=[member.value for member in MovementKind],
            required=True,
        )
        parser.add_argument("--party-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_batches)


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


def translate_opening_balance(raw: Optional[str]) -> Optional[Decimal]:
    """Parse ``--opening-balance``; ``None`` keeps the directory value."""
    if raw is None:
        return None
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid opening balance: {raw!r}") from exc


def _fetch_directory(context: core_logic.RuntimeContext) -> Optional[PartyDirectory]:
    try:
        return core_logic.load_directory(context)
    except SourceUnavailable as exc:
        log.warning("Continuing without party directory: %s", exc)
        return None


def _fetch_catalog(context: core_logic.RuntimeContext) -> Optional[ProductCatalog]:
    try:
        return core_logic.load_catalog(context)
    except SourceUnavailable as exc:
        log.warning("Continuing without product catalog: %s", exc)
        return None


def _print_issues(issues: Sequence[RecordIssue], out: TextIO) -> None:
    if not issues:
        return
    print(f"\n{len(issues)} issue(s):", file=out)
    for issue in issues:
        print(f"  - {issue.describe()}", file=out)


def format_summary_table(summaries: Sequence[core_logic.PartySummary]) -> str:
    """Render party summaries as an aligned plain-text table."""
    header = f"{'Party':<30} {'Opening':>12} {'Paid':>12} {'Received':>12} {'Closing':>12} {'Debt':>12}"
    lines = [header, "-" * len(header)]
    for summary in summaries:
        label = f"{summary.display_name} ({summary.key})"
        lines.append(
            f"{label[:30]:<30} {summary.opening_balance:>12} {summary.incoming_total:>12} "
            f"{summary.outgoing_total:>12} {summary.closing_balance:>12} {summary.debt:>12}"
        )
    return "\n".join(lines)


def format_ledger_table(ledger: core_logic.SettlementLedger) -> str:
    """Render ledger lines newest first, followed by the totals."""
    header = f"{'Date':<25} {'Document':<12} {'Credit':>12} {'Debit':>12} {'Balance':>12}  {'Status':<10} Comment"
    lines = [header, "-" * len(header)]
    for line in ledger.lines:
        lines.append(
            f"{line.timestamp.isoformat():<25} {line.document_number:<12} {line.credit or '':>12} "
            f"{line.debit or '':>12} {line.running_balance:>12}  {line.status.value:<10} {line.comment}"
        )
    lines.append("-" * len(header))
    lines.append(
        f"Opening {ledger.opening_balance} + credit {ledger.total_credit} - debit {ledger.total_debit}"
        f" = closing {ledger.closing_balance}"
    )
    return "\n".join(lines)


def format_batch_table(batches: Sequence[core_logic.Batch]) -> str:
    """Render grouped movement batches as a plain-text table."""
    header = f"{'Document':<24} {'Date':<25} {'Items':>5} {'Units':>8} {'Value':>14}  {'Status':<10} Product"
    lines = [header, "-" * len(header)]
    for batch in batches:
        moment = batch.timestamp.isoformat() if batch.timestamp is not None else "-"
        product = f"{batch.product_name} (+{batch.size - 1})" if batch.is_grouped else batch.product_name
        lines.append(
            f"{batch.key[:24]:<24} {moment:<25} {batch.size:>5} {batch.total_quantity:>8} "
            f"{batch.total_value:>14}  {batch.status:<10} {product}"
        )
    return "\n".join(lines)


def run_balances(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the list-level balance report."""
    directory = _fetch_directory(context)
    report = core_logic.reconcile_parties(
        context.source,
        directory=directory,
        catalog=_fetch_catalog(context),
        merge_names=args.merge_names,
        max_workers=context.settings.max_workers,
    )
    print(format_summary_table(report.summaries))
    if report.is_partial:
        print(f"\nPartial result; failed sources: {', '.join(k.value for k in report.failed_sources)}")
    _print_issues(report.issues, sys.stdout)
    if args.export is not None:
        data_manager.export_summary_workbook(report.summaries, args.export)
    return 0


def run_statement(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the single-party statement report."""
    opening = translate_opening_balance(args.opening_balance)
    directory = _fetch_directory(context)
    statement = core_logic.build_party_statement(
        context.source,
        args.party_id,
        directory=directory,
        catalog=_fetch_catalog(context),
        merge_names=args.merge_names,
        opening_balance=opening,
        max_workers=context.settings.max_workers,
    )
    print(f"{statement.display_name} ({statement.party})")
    print(format_ledger_table(statement.ledger))
    print(f"Supplied {statement.supplied_units} unit(s) worth {statement.supplied_value}")
    if statement.returns:
        print(f"{len(statement.returns)} return(s) excluded from the ledger")
    _print_issues(statement.issues, sys.stdout)
    if args.export is not None:
        data_manager.export_ledger_workbook(statement.ledger, args.export)
    return 0


def run_batches(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the grouped movements report."""
    kind = MovementKind(args.kind)
    batches, ingested = core_logic.list_batches(
        context.source,
        kind,
        party=args.party_id,
        catalog=_fetch_catalog(context),
    )
    print(format_batch_table(batches))
    _print_issues(ingested.issues, sys.stdout)
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, SourceUnavailable):
        log.error("%s", error)
        return 4
    if isinstance(error, ReconciliationError):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    if getattr(args, "verbose", False):
        set_console_level(logging.INFO)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


if __name__ == "__main__":
    sys.exit(main())
