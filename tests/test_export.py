"""Tests for the spreadsheet report export."""

from __future__ import annotations

from decimal import Decimal

import openpyxl
import pytest

from pos_ledger import constants, data_manager, export
from pos_ledger.core_logic import CartLine, Catalog, ExternalServiceError, InventoryCoordinator, Ledger


def test_build_report_workbook_has_two_bold_sheets(coordinator, product_a):
    workbook = export.build_report_workbook(
        coordinator.catalog.list_all(),
        [],
        coordinator.describe_items,
    )

    assert workbook.sheetnames == [constants.SheetName.INVENTORY.value, constants.SheetName.SALES.value]
    inventory = workbook[constants.SheetName.INVENTORY.value]
    assert [cell.value for cell in inventory[1]] == ["ID", "Name", "Cost", "SellingPrice", "Stock"]
    assert inventory["A1"].font.bold
    assert inventory.max_row == 2


def test_export_report_writes_dated_file(coordinator, product_a, fixed_moment, tmp_path):
    sale = coordinator.commit_sale([CartLine(product_a.product_id, 2)], when=fixed_moment)

    path = export.export_report(coordinator, tmp_path / "out", when=fixed_moment)

    assert path.name == "report_2024-05-17.xlsx"
    workbook = openpyxl.load_workbook(path)
    inventory_rows = list(workbook[constants.SheetName.INVENTORY.value].iter_rows(min_row=2, values_only=True))
    sales_rows = list(workbook[constants.SheetName.SALES.value].iter_rows(min_row=2, values_only=True))

    assert inventory_rows == [(product_a.product_id, "A", 6, 10, 3)]
    assert sales_rows == [(sale.sale_id, "2024-05-17 14:30:00", "A (x2)", 20, 8)]


def test_export_report_uses_placeholder_for_missing_products(fixed_moment, tmp_path):
    dangling = data_manager.Sale(
        sale_id="S1",
        timestamp=fixed_moment,
        items=(data_manager.LineItem("P-gone", 1, Decimal("3")),),
        total=Decimal("3"),
        profit=Decimal("1"),
    )
    coordinator = InventoryCoordinator(Catalog(), Ledger([dangling]))

    path = export.export_report(coordinator, tmp_path, when=fixed_moment)

    row = next(openpyxl.load_workbook(path)[constants.SheetName.SALES.value].iter_rows(min_row=2, values_only=True))
    assert row[2] == f"{constants.EXPORT_MISSING_PRODUCT_LABEL} (x1)"


def test_export_does_not_mutate_state(coordinator, product_a, fixed_moment, tmp_path):
    coordinator.commit_sale([CartLine(product_a.product_id, 1)], when=fixed_moment)
    export.export_report(coordinator, tmp_path, when=fixed_moment)

    assert len(coordinator.ledger) == 1
    assert coordinator.catalog.get(product_a.product_id).stock == 4


def test_export_failure_becomes_external_service_error(coordinator, tmp_path, monkeypatch):
    def _fail(self, filename):
        raise PermissionError("read-only")

    monkeypatch.setattr(openpyxl.Workbook, "save", _fail)
    with pytest.raises(ExternalServiceError):
        export.export_report(coordinator, tmp_path)
