"""Command-line entry points for the point-of-sale ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into coordinator calls, and printing results. Keeping
the CLI thin means any other front-end can drive the same
:class:`~pos_ledger.core_logic.InventoryCoordinator`.
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence, TextIO, Tuple

from . import core_logic, data_manager, export, log
from .order_parser import OrderInterpreter


@dataclass
class CliSession:
    """Runtime state shared by every command executor."""

    context: core_logic.RuntimeContext
    coordinator: core_logic.InventoryCoordinator
    interpreter_factory: Callable[[data_manager.ConfigSettings], OrderInterpreter] = OrderInterpreter.from_settings
    stdin: TextIO = field(default_factory=lambda: sys.stdin)
    stdout: TextIO = field(default_factory=lambda: sys.stdout)

    def echo(self, message: str = "") -> None:
        print(message, file=self.stdout)


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[CliSession, argparse.Namespace], int]


INIT_COMMAND = "init"


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="pos-ledger",
        description="Point-of-sale inventory and sales ledger.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upwards from the working directory by default).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    register_init_command(subparsers)
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_init_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> argparse.ArgumentParser:
    """Register ``init``, which runs before any configuration exists."""
    parser = subparsers.add_parser(INIT_COMMAND, help="Write a starter config.ini.")
    parser.add_argument("--path", type=Path, default=Path(data_manager.CONFIG_FILE_NAME))
    parser.add_argument("--store-name", default="My Store")
    parser.add_argument("--force", action="store_true", help="Overwrite an existing config file.")
    return parser


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales and voids."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "edit-product": register_edit_product_command(subparsers),
        "delete-product": register_delete_product_command(subparsers),
        "sale": register_sale_command(subparsers),
        "void": register_void_command(subparsers),
        "clear-sales": register_clear_sales_command(subparsers),
        "parse-order": register_parse_order_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and reports."""
    specs = {
        "products": register_products_command(subparsers),
        "sales": register_sales_command(subparsers),
        "summary": register_summary_command(subparsers),
        "export": register_export_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_product_fields(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--name", required=True)
    parser.add_argument("--cost", required=True, help="Cost price.")
    parser.add_argument("--price", required=True, help="Selling price.")
    parser.add_argument("--stock", required=True)


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Add a product to the catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_product_fields(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_edit_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-product``."""
    name = "edit-product"
    help_text = "Replace the fields of an existing product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        _add_product_fields(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit_product)


def register_delete_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-product``."""
    name = "delete-product"
    help_text = "Delete a product that no sale references."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_product)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Record a sale from one or more PRODUCT_ID=QUANTITY items."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            required=True,
            type=parse_item_spec,
            metavar="PRODUCT_ID=QUANTITY",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_void_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``void``."""
    name = "void"
    help_text = "Void a sale and return its stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_void)


def register_clear_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``clear-sales``."""
    name = "clear-sales"
    help_text = "Delete the whole sales history (the catalog is kept)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--yes", action="store_true", help="Confirm the deletion.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_clear_sales)


def register_parse_order_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``parse-order``."""
    name = "parse-order"
    help_text = "Fill a cart from a free-text order using the AI interpreter."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        source = parser.add_mutually_exclusive_group()
        source.add_argument("--text", default=None, help="Order text (defaults to reading stdin).")
        source.add_argument("--file", type=Path, default=None, help="Read the order text from a file.")
        parser.add_argument("--commit", action="store_true", help="Record the resulting cart as a sale.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_parse_order)


def register_products_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``products``."""
    name = "products"
    help_text = "List the catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--in-stock", action="store_true", help="Only show products with stock.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_products_report)


def register_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales``."""
    name = "sales"
    help_text = "List the sales history, newest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--date", type=date.fromisoformat, default=None, help="Only sales on YYYY-MM-DD.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sales_report)


def register_summary_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``summary``."""
    name = "summary"
    help_text = "Display revenue and profit for a day (today by default)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--date", type=date.fromisoformat, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_summary_report)


def register_export_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``export``."""
    name = "export"
    help_text = "Export inventory and sales to an .xlsx report."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--output-dir", type=Path, default=None)
        parser.add_argument("--clear", action="store_true", help="Clear the sales history after exporting.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_export)


def parse_item_spec(raw: str) -> Tuple[str, int]:
    """Parse ``PRODUCT_ID=QUANTITY`` into a tuple for the ``sale`` command."""
    product_id, sep, quantity = raw.partition("=")
    if not sep or not product_id.strip():
        raise argparse.ArgumentTypeError(f"Expected PRODUCT_ID=QUANTITY, got '{raw}'")
    try:
        value = int(quantity)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Quantity must be a whole number: '{quantity}'") from exc
    return product_id.strip(), value


def load_session(config_path: Optional[Path] = None) -> CliSession:
    """Resolve the runtime context and load the coordinator for CLI use."""
    context = core_logic.load_runtime_context(config_path)
    core_logic.ensure_schema_version(context)
    return CliSession(context=context, coordinator=core_logic.load_coordinator(context))


def dispatch_command(
    session: CliSession,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(session, args)


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


def translate_sale(args: argparse.Namespace) -> list[core_logic.CartLine]:
    """Translate ``--item`` pairs into draft cart lines."""
    return [core_logic.CartLine(product_id=pid, quantity=qty) for pid, qty in args.items]


def format_product(product: data_manager.Product) -> str:
    return (
        f"{product.product_id}  {product.name}  "
        f"price={product.selling_price}  cost={product.cost_price}  stock={product.stock}"
    )


def format_sale(session: CliSession, sale: data_manager.Sale) -> str:
    items = ", ".join(session.coordinator.describe_items(sale))
    return (
        f"{sale.sale_id}  {sale.timestamp:%Y-%m-%d %H:%M}  {items}  "
        f"total={sale.total}  profit={sale.profit}"
    )


def run_init(args: argparse.Namespace) -> int:
    """Write a starter configuration file."""
    path = data_manager.write_default_config(args.path, store_name=args.store_name, overwrite=args.force)
    print(f"Created configuration at '{path}'.")
    return 0


def run_add_product(session: CliSession, args: argparse.Namespace) -> int:
    product = session.coordinator.add_product(args.name, args.cost, args.price, args.stock)
    session.echo(f"Added {format_product(product)}")
    return 0


def run_edit_product(session: CliSession, args: argparse.Namespace) -> int:
    product = session.coordinator.edit_product(args.product_id, args.name, args.cost, args.price, args.stock)
    session.echo(f"Updated {format_product(product)}")
    return 0


def run_delete_product(session: CliSession, args: argparse.Namespace) -> int:
    product = session.coordinator.remove_product(args.product_id)
    session.echo(f"Deleted {product.name}")
    return 0


def run_sale(session: CliSession, args: argparse.Namespace) -> int:
    sale = session.coordinator.commit_sale(translate_sale(args))
    session.echo(f"Sale recorded: {format_sale(session, sale)}")
    return 0


def run_void(session: CliSession, args: argparse.Namespace) -> int:
    sale = session.coordinator.void_sale(args.sale_id)
    session.echo(f"Voided {sale.sale_id}; stock returned.")
    return 0


def run_clear_sales(session: CliSession, args: argparse.Namespace) -> int:
    if not args.yes:
        session.echo("Refusing to clear the sales history without --yes.")
        return 1
    removed = session.coordinator.clear_sales()
    session.echo(f"Cleared {removed} sale(s).")
    return 0


def read_order_text(session: CliSession, args: argparse.Namespace) -> str:
    if args.text is not None:
        return args.text
    if args.file is not None:
        return Path(args.file).read_text(encoding="utf-8")
    return session.stdin.read()


def run_parse_order(session: CliSession, args: argparse.Namespace) -> int:
    """Interpret an order, show the resulting cart, and optionally commit it."""
    coordinator = session.coordinator
    text = read_order_text(session, args)
    interpreter = session.interpreter_factory(session.context.settings)
    pairs = interpreter.interpret(text, coordinator.catalog.names())

    cart = core_logic.Cart()
    for warning in coordinator.apply_parsed_order(cart, pairs):
        session.echo(f"Warning: {warning}")

    if cart.is_empty():
        session.echo("No catalog products found in the order.")
        return 0

    for line in cart.lines:
        session.echo(f"  {line.name} x{line.quantity} @ {line.unit_price}")
    session.echo(f"Cart total: {cart.total()}")

    if args.commit:
        sale = coordinator.commit_sale(cart.lines)
        session.echo(f"Sale recorded: {format_sale(session, sale)}")
    else:
        items = " ".join(f"--item {line.product_id}={line.quantity}" for line in cart.lines)
        session.echo("Review the cart, then record it exactly as shown with:")
        session.echo(f"  pos-ledger sale {items}")
    return 0


def run_products_report(session: CliSession, args: argparse.Namespace) -> int:
    catalog = session.coordinator.catalog
    products = catalog.in_stock() if args.in_stock else catalog.list_all()
    if not products:
        session.echo("No products in the catalog.")
    for product in products:
        session.echo(format_product(product))
    return 0


def run_sales_report(session: CliSession, args: argparse.Namespace) -> int:
    ledger = session.coordinator.ledger
    sales = ledger.sales_on_date(args.date) if args.date is not None else ledger.list_all()
    if not sales:
        session.echo("No sales recorded.")
    for sale in reversed(sales):
        session.echo(format_sale(session, sale))
    return 0


def run_summary_report(session: CliSession, args: argparse.Namespace) -> int:
    summary = session.coordinator.daily_summary(args.date)
    session.echo(f"Summary for {summary.day.isoformat()}")
    session.echo(f"  Sales:   {summary.sale_count}")
    session.echo(f"  Revenue: {summary.revenue}")
    session.echo(f"  Profit:  {summary.profit}")
    return 0


def run_export(session: CliSession, args: argparse.Namespace) -> int:
    destination = args.output_dir or session.context.settings.export_dir
    path = export.export_report(session.coordinator, destination)
    session.echo(f"Report written to '{path}'.")
    if args.clear:
        removed = session.coordinator.clear_sales()
        session.echo(f"Cleared {removed} sale(s) to start a new period.")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.ExternalServiceError):
        exit_code = 4
    elif isinstance(error, core_logic.InventoryError):
        exit_code = 2
    elif isinstance(error, (FileNotFoundError, FileExistsError)):
        exit_code = 3
    else:
        exit_code = 1
    log.error("%s", error)
    print(f"Error: {error}", file=sys.stderr)
    return exit_code


def report_flush_failure(session: CliSession) -> None:
    """Surface a failed flush as a non-fatal warning."""
    if session.coordinator.last_flush_error is not None:
        print(
            f"Warning: changes could not be saved ({session.coordinator.last_flush_error}); "
            "they are kept in memory only for this run.",
            file=sys.stderr,
        )


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        if args.command == INIT_COMMAND:
            return run_init(args)
        session = load_session(getattr(args, "config", None))
        exit_code = dispatch_command(session, args, command_table)
        report_flush_failure(session)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
