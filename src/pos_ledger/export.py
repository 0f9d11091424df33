"""Spreadsheet export of the catalog and the sales history.

The report is a read-only projection: one ``Inventory`` sheet with product
fields and one ``Sales`` sheet with a single row per sale. Nothing here
mutates the coordinator; clearing the ledger after a successful export is
the caller's decision.
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Iterable, List, Mapping, Optional, Sequence

import openpyxl
from openpyxl.styles import Font
from openpyxl.workbook import Workbook

from . import log
from .constants import EXPORT_MISSING_PRODUCT_LABEL, SheetName
from .core_logic import ExternalServiceError, InventoryCoordinator
from .data_manager import Product, Sale


SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.INVENTORY.value: ["ID", "Name", "Cost", "SellingPrice", "Stock"],
    SheetName.SALES.value: ["SaleID", "Timestamp", "Items", "Total", "Profit"],
}


def report_filename(when: datetime) -> str:
    return f"report_{when.strftime('%Y-%m-%d')}.xlsx"


def product_row(product: Product) -> List[object]:
    return [product.product_id, product.name, product.cost_price, product.selling_price, product.stock]


def sale_row(sale: Sale, items_summary: str) -> List[object]:
    return [
        sale.sale_id,
        sale.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
        items_summary,
        sale.total,
        sale.profit,
    ]


def build_report_workbook(
    products: Iterable[Product],
    sales: Iterable[Sale],
    describe: Callable[[Sale], Sequence[str]],
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
) -> Workbook:
    """Assemble the two-sheet report workbook in memory.

    Args:
        products (Iterable[Product]): Catalog rows in display order.
        sales (Iterable[Sale]): Ledger rows in display order.
        describe (Callable[[Sale], Sequence[str]]): Renders a sale's line
            items, e.g. ``["Coffee (x2)"]``; joined with ``", "``.
        sheet_columns (Mapping[str, Sequence[str]]): Header row per sheet.

    Returns:
        Workbook: Unsaved workbook with bold headers.
    """

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    inventory_sheet = workbook[SheetName.INVENTORY.value]
    for product in products:
        inventory_sheet.append(product_row(product))

    sales_sheet = workbook[SheetName.SALES.value]
    for sale in sales:
        sales_sheet.append(sale_row(sale, ", ".join(describe(sale))))

    return workbook


def export_report(
    coordinator: InventoryCoordinator,
    destination_dir: Path,
    *,
    when: Optional[datetime] = None,
) -> Path:
    """Write the report for ``coordinator`` into ``destination_dir``.

    Returns:
        Path: Location of the written ``report_YYYY-MM-DD.xlsx`` file.

    Raises:
        ExternalServiceError: If the workbook cannot be written.
    """

    when = when if when is not None else datetime.now(UTC)
    workbook = build_report_workbook(
        coordinator.catalog.list_all(),
        coordinator.ledger.list_all(),
        lambda sale: coordinator.describe_items(sale, placeholder=EXPORT_MISSING_PRODUCT_LABEL),
    )
    destination = Path(destination_dir).expanduser().resolve() / report_filename(when)
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        workbook.save(destination)
    except OSError as exc:
        log.error("Failed to write report '%s': %s", destination, exc)
        raise ExternalServiceError(f"Could not write the report file: {exc}") from exc

    log.info(
        "Exported %d product(s) and %d sale(s) to '%s'",
        len(coordinator.catalog),
        len(coordinator.ledger),
        destination,
    )
    return destination
