"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
import io
from unittest.mock import Mock

import pytest

from pos_ledger import cli, core_logic, data_manager


WRITE_COMMANDS = {
    "add-product",
    "edit-product",
    "delete-product",
    "sale",
    "void",
    "clear-sales",
    "parse-order",
}

READ_COMMANDS = {
    "products",
    "sales",
    "summary",
    "export",
}


def _registered_choices(parser: argparse.ArgumentParser) -> set[str]:
    for action in parser._actions:
        if isinstance(action, argparse._SubParsersAction):
            return set(action.choices)
    return set()


def _output(session: cli.CliSession) -> str:
    return session.stdout.getvalue()


def _parse(argv: list[str]) -> argparse.Namespace:
    parser = cli.build_parser()
    cli.configure_subcommands(parser)
    return parser.parse_args(argv)


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    parser = cli.build_parser()
    assert parser.prog == "pos-ledger"
    assert "ledger" in (parser.description or "")


def test_configure_subcommands_registers_all_commands(cli_parser):
    command_table = cli.configure_subcommands(cli_parser)

    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert _registered_choices(cli_parser) == WRITE_COMMANDS | READ_COMMANDS | {cli.INIT_COMMAND}


def test_register_write_commands_returns_command_specs(subparsers_action):
    specs = cli.register_write_commands(subparsers_action)
    assert set(specs) == WRITE_COMMANDS
    for spec in specs.values():
        assert isinstance(spec, cli.CommandSpec)
        assert spec.help_text


def test_register_read_commands_returns_command_specs(subparsers_action):
    specs = cli.register_read_commands(subparsers_action)
    assert set(specs) == READ_COMMANDS
    for name in READ_COMMANDS:
        assert name in subparsers_action.choices


def test_build_command_table_rejects_duplicates():
    spec = cli.CommandSpec("alpha", "help", lambda subparsers: subparsers.add_parser("alpha"), lambda *_: 0)
    with pytest.raises(ValueError):
        cli.build_command_table([spec, spec])


def test_dispatch_command_rejects_unknown(cli_session):
    with pytest.raises(KeyError):
        cli.dispatch_command(cli_session, argparse.Namespace(command="nope"), {})


@pytest.mark.parametrize("raw, expected", [("P1=2", ("P1", 2)), (" P1 = 3", ("P1", 3))])
def test_parse_item_spec(raw, expected):
    assert cli.parse_item_spec(raw) == expected


@pytest.mark.parametrize("raw", ["P1", "=2", "P1=two"])
def test_parse_item_spec_rejects_bad_values(raw):
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_item_spec(raw)


def test_translate_sale_builds_cart_lines():
    args = _parse(["sale", "--item", "P1=2", "--item", "P2=1"])
    assert cli.translate_sale(args) == [core_logic.CartLine("P1", 2), core_logic.CartLine("P2", 1)]


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def test_add_product_then_list(cli_session):
    args = _parse(["add-product", "--name", "Coffee", "--cost", "1", "--price", "2.5", "--stock", "4"])
    assert cli.run_add_product(cli_session, args) == 0

    assert cli.run_products_report(cli_session, _parse(["products"])) == 0
    output = _output(cli_session)
    assert "Coffee" in output
    assert "stock=4" in output


def test_sale_and_void_flow(cli_session):
    product = cli_session.coordinator.add_product("Coffee", "1", "2", "4")

    cli.run_sale(cli_session, _parse(["sale", "--item", f"{product.product_id}=3"]))
    sale = cli_session.coordinator.ledger.list_all()[0]
    assert cli_session.coordinator.catalog.get(product.product_id).stock == 1
    assert "Coffee (x3)" in _output(cli_session)

    cli.run_void(cli_session, _parse(["void", "--sale-id", sale.sale_id]))
    assert cli_session.coordinator.catalog.get(product.product_id).stock == 4


def test_clear_sales_requires_confirmation(cli_session):
    product = cli_session.coordinator.add_product("Coffee", "1", "2", "4")
    cli_session.coordinator.commit_sale([core_logic.CartLine(product.product_id, 1)])

    assert cli.run_clear_sales(cli_session, _parse(["clear-sales"])) == 1
    assert len(cli_session.coordinator.ledger) == 1
    assert cli.run_clear_sales(cli_session, _parse(["clear-sales", "--yes"])) == 0
    assert len(cli_session.coordinator.ledger) == 0


def test_parse_order_reviews_without_committing(cli_session, interpreter):
    cli_session.coordinator.add_product("Coffee", "1", "2", "2")
    interpreter.interpret.return_value = [("coffee", 3), ("Tea", 1)]

    assert cli.run_parse_order(cli_session, _parse(["parse-order", "--text", "3 coffees and a tea"])) == 0

    interpreter.interpret.assert_called_once_with("3 coffees and a tea", ["Coffee"])
    output = _output(cli_session)
    assert "Warning: Insufficient stock for Coffee. Stock: 2" in output
    assert "No catalog products found" in output
    assert len(cli_session.coordinator.ledger) == 0


def test_parse_order_review_prints_equivalent_sale_command(cli_session, interpreter):
    coffee = cli_session.coordinator.add_product("Coffee", "1", "2", "5")
    tea = cli_session.coordinator.add_product("Tea", "1", "3", "5")
    interpreter.interpret.return_value = [("Coffee", 2), ("tea", 1)]

    assert cli.run_parse_order(cli_session, _parse(["parse-order", "--text", "2 coffees and a tea"])) == 0

    expected = f"pos-ledger sale --item {coffee.product_id}=2 --item {tea.product_id}=1"
    assert expected in _output(cli_session)
    assert len(cli_session.coordinator.ledger) == 0

    args = _parse(expected.split()[1:])
    assert cli.translate_sale(args) == [
        core_logic.CartLine(coffee.product_id, 2),
        core_logic.CartLine(tea.product_id, 1),
    ]


def test_parse_order_commits_valid_lines(cli_session, interpreter):
    coffee = cli_session.coordinator.add_product("Coffee", "1", "2", "2")
    tea = cli_session.coordinator.add_product("Tea", "1", "3", "5")
    interpreter.interpret.return_value = [("Coffee", 3), ("tea", 2)]
    cli_session.stdin = io.StringIO("3 coffees, 2 teas")

    assert cli.run_parse_order(cli_session, _parse(["parse-order", "--commit"])) == 0

    interpreter.interpret.assert_called_once_with("3 coffees, 2 teas", ["Coffee", "Tea"])
    assert cli_session.coordinator.catalog.get(coffee.product_id).stock == 2
    assert cli_session.coordinator.catalog.get(tea.product_id).stock == 3
    assert cli_session.coordinator.ledger.list_all()[0].total == 6


def test_summary_reports_today(cli_session):
    product = cli_session.coordinator.add_product("Coffee", "1", "2", "4")
    cli_session.coordinator.commit_sale([core_logic.CartLine(product.product_id, 2)])

    cli.run_summary_report(cli_session, _parse(["summary"]))
    output = _output(cli_session)
    assert "Sales:   1" in output
    assert "Revenue: 4" in output
    assert "Profit:  2" in output


def test_sales_report_lists_newest_first(cli_session, fixed_moment):
    product = cli_session.coordinator.add_product("Coffee", "1", "2", "4")
    older = cli_session.coordinator.commit_sale([core_logic.CartLine(product.product_id, 1)], when=fixed_moment)
    newer = cli_session.coordinator.commit_sale([core_logic.CartLine(product.product_id, 1)])

    cli.run_sales_report(cli_session, _parse(["sales"]))
    output = _output(cli_session)
    assert output.index(newer.sale_id) < output.index(older.sale_id)


def test_export_writes_to_configured_dir_and_clears(cli_session, config_bundle):
    product = cli_session.coordinator.add_product("Coffee", "1", "2", "4")
    cli_session.coordinator.commit_sale([core_logic.CartLine(product.product_id, 1)])

    assert cli.run_export(cli_session, _parse(["export", "--clear"])) == 0

    assert list(config_bundle.export_dir.glob("report_*.xlsx"))
    assert len(cli_session.coordinator.ledger) == 0


# ---------------------------------------------------------------------------
# Error handling and main
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "error, code",
    [
        (core_logic.ExternalServiceError("down"), 4),
        (core_logic.ConflictError("in use"), 2),
        (core_logic.InsufficientStockError("Coffee", 1), 2),
        (FileNotFoundError("config.ini"), 3),
        (RuntimeError("boom"), 1),
    ],
)
def test_handle_cli_error_maps_exit_codes(error, code, capsys):
    assert cli.handle_cli_error(error) == code
    assert str(error) in capsys.readouterr().err


def test_main_init_writes_config(tmp_path):
    target = tmp_path / "config.ini"
    assert cli.main(["init", "--path", str(target), "--store-name", "Kiosk"]) == 0
    assert "StoreName = Kiosk" in target.read_text(encoding="utf-8")
    assert cli.main(["init", "--path", str(target)]) == 3


def test_main_runs_commands_against_config(config_file, capsys):
    assert cli.main(["--config", str(config_file), "add-product", "--name", "Tea", "--cost", "1", "--price", "2", "--stock", "3"]) == 0
    assert cli.main(["--config", str(config_file), "products"]) == 0
    assert "Tea" in capsys.readouterr().out


def test_main_reports_domain_errors(config_file):
    assert cli.main(["--config", str(config_file), "void", "--sale-id", "S-missing"]) == 2


def test_main_reports_missing_config(tmp_path):
    assert cli.main(["--config", str(tmp_path / "absent.ini"), "products"]) == 3


def test_main_warns_when_changes_cannot_be_saved(config_file, monkeypatch, capsys):
    monkeypatch.setattr(data_manager.JsonBlobStore, "set_many", Mock(side_effect=OSError("disk full")))

    exit_code = cli.main(["--config", str(config_file), "add-product", "--name", "Tea", "--cost", "1", "--price", "2", "--stock", "3"])

    assert exit_code == 0
    err = capsys.readouterr().err
    assert "Warning: changes could not be saved" in err
    assert "disk full" in err
