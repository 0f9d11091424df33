"""Business logic layer for the point-of-sale ledger.

This module owns the two in-memory aggregates, the product ``Catalog`` and
the sales ``Ledger``, together with the ``InventoryCoordinator`` that is the
only component allowed to mutate both in one logical step. It consumes the
Data Access Layer (DAL) for loading and flushing whole aggregates while making
sure every mutation passes through the stock and referential rules below.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, MISSING_PRODUCT_LABEL, ZERO, IdPrefix
from .data_manager import LineItem, Product, Sale


class InventoryError(Exception):
    """Base class for every user-facing inventory failure."""


class ValidationError(InventoryError):
    """Raised when user input is missing or malformed."""


class NotFoundError(InventoryError):
    """Raised when a referenced product or sale id is unknown."""


class ConflictError(InventoryError):
    """Raised when a delete would break a reference held by the ledger."""


class InsufficientStockError(InventoryError):
    """Raised when a requested quantity exceeds the available stock."""

    def __init__(self, product_name: str, available: int, requested: Optional[int] = None) -> None:
        self.product_name = product_name
        self.available = available
        self.requested = requested
        if available <= 0:
            message = f"{product_name} is out of stock"
        else:
            message = f"Insufficient stock for {product_name}. Stock: {available}"
        super().__init__(message)


class ExternalServiceError(InventoryError):
    """Raised when the order interpreter or the report export fails."""


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and the blob store used by the BLL."""

    settings: data_manager.ConfigSettings
    store: data_manager.JsonBlobStore


@dataclass
class CartLine:
    """Draft line of an unconfirmed sale.

    ``unit_price`` is captured when the line is added; ``None`` means the
    product's selling price at commit time.
    """

    product_id: str
    quantity: int
    unit_price: Optional[Decimal] = None
    name: str = ""


@dataclass(frozen=True)
class SalesSummary:
    """Aggregated revenue and profit for a set of sales."""

    sale_count: int
    revenue: Decimal
    profit: Decimal
    day: Optional[date] = None


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def generate_id(*, prefix: str, when: Optional[datetime] = None, existing: Iterable[str] = ()) -> str:
    """Generate a sortable identifier using UTC timestamps.

    Args:
        prefix (str): Designator prepended to the identifier (``P`` for
            products, ``S`` for sales).
        when (datetime | None): Timestamp used to build the identifier. When
            ``None`` the current UTC time is used.
        existing (Iterable[str]): Identifiers already in use. A ``-N`` suffix
            is appended until the candidate is unique.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}[-N]``.
    """
    when = _resolve_timestamp(when)
    base = f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"
    taken = set(existing)
    candidate = base
    counter = 1
    while candidate in taken:
        candidate = f"{base}-{counter}"
        counter += 1
    return candidate


def parse_name(raw: object) -> str:
    name = str(raw).strip() if raw is not None else ""
    if not name:
        log.warning("Rejected blank product name")
        raise ValidationError("Product name is required")
    return name


def parse_money(raw: object, field_name: str) -> Decimal:
    """Parse a non-negative, finite monetary value.

    Args:
        raw (object): User-supplied value (string, int, float, or Decimal).
        field_name (str): Name used in the error message.

    Returns:
        Decimal: Parsed amount.

    Raises:
        ValidationError: If the value is blank, unparseable, non-finite, or
            negative.
    """
    if raw is None or (isinstance(raw, str) and not raw.strip()) or isinstance(raw, bool):
        raise ValidationError(f"{field_name} is required")
    try:
        amount = Decimal(str(raw).strip())
    except InvalidOperation as exc:
        log.warning("Rejected unparseable %s: %r", field_name, raw)
        raise ValidationError(f"{field_name} must be a number") from exc
    if not amount.is_finite() or amount < ZERO:
        log.warning("Rejected %s out of range: %r", field_name, raw)
        raise ValidationError(f"{field_name} must be zero or positive")
    return amount


def parse_stock(raw: object) -> int:
    """Parse a non-negative integer stock level.

    Raises:
        ValidationError: If the value is blank, fractional, or negative.
    """
    if raw is None or (isinstance(raw, str) and not raw.strip()) or isinstance(raw, bool):
        raise ValidationError("Stock is required")
    try:
        amount = Decimal(str(raw).strip())
    except InvalidOperation as exc:
        log.warning("Rejected unparseable stock: %r", raw)
        raise ValidationError("Stock must be a whole number") from exc
    if not amount.is_finite() or amount != amount.to_integral_value():
        raise ValidationError("Stock must be a whole number")
    if amount < ZERO:
        raise ValidationError("Stock must be zero or positive")
    return int(amount)


def require_positive_quantity(quantity: object) -> int:
    """Validate that a line quantity is a strictly positive integer.

    Raises:
        ValidationError: If ``quantity`` is not an integer greater than zero.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        log.error("Quantity validation failed: %r", quantity)
        raise ValidationError("Quantity must be a whole number greater than zero")
    return quantity


def coerce_order_quantity(raw: object) -> Optional[int]:
    """Best-effort conversion of an interpreted quantity into a positive int.

    Returns ``None`` when the value is not a whole number greater than zero.
    """
    if isinstance(raw, bool) or raw is None:
        return None
    try:
        amount = Decimal(str(raw).strip())
    except InvalidOperation:
        return None
    if not amount.is_finite() or amount != amount.to_integral_value() or amount <= ZERO:
        return None
    return int(amount)


class Catalog:
    """Set of sellable products keyed by id, in insertion order."""

    def __init__(self, products: Iterable[Product] = ()) -> None:
        self._products: Dict[str, Product] = {p.product_id: p for p in products}

    def __len__(self) -> int:
        return len(self._products)

    def add_product(self, name: object, cost: object, price: object, stock: object, *, when: Optional[datetime] = None) -> Product:
        """Create a product with a fresh unique identifier.

        Raises:
            ValidationError: If the name is blank or a numeric field is not a
                parseable non-negative value.
        """
        product = Product(
            product_id=generate_id(prefix=IdPrefix.PRODUCT.value, when=when, existing=self._products),
            name=parse_name(name),
            cost_price=parse_money(cost, "Cost price"),
            selling_price=parse_money(price, "Selling price"),
            stock=parse_stock(stock),
        )
        self._products[product.product_id] = product
        log.info("Added product '%s' (%s) with stock %d", product.product_id, product.name, product.stock)
        return product

    def edit_product(self, product_id: str, name: object, cost: object, price: object, stock: object) -> Product:
        """Replace every mutable field of an existing product.

        Raises:
            NotFoundError: If ``product_id`` is unknown.
            ValidationError: On bad input.
        """
        current = self.get(product_id)
        updated = replace(
            current,
            name=parse_name(name),
            cost_price=parse_money(cost, "Cost price"),
            selling_price=parse_money(price, "Selling price"),
            stock=parse_stock(stock),
        )
        self._products[product_id] = updated
        log.info("Edited product '%s' (%s)", product_id, updated.name)
        return updated

    def adjust_stock(self, product_id: str, delta: int) -> Product:
        """Set stock to ``max(0, stock + delta)``.

        Over-subtraction is clamped to zero instead of failing; the clamp is
        logged because it means an earlier quantity check let too much through.

        Raises:
            NotFoundError: If ``product_id`` is unknown.
        """
        current = self.get(product_id)
        target = current.stock + delta
        if target < 0:
            log.warning(
                "Clamped stock of '%s' to zero (stock=%d, delta=%d)",
                product_id,
                current.stock,
                delta,
            )
        updated = replace(current, stock=max(0, target))
        self._products[product_id] = updated
        log.debug("Adjusted stock of '%s' by %d to %d", product_id, delta, updated.stock)
        return updated

    def delete_product(self, product_id: str, ledger: "Ledger") -> Product:
        """Remove a product that no sale references.

        Raises:
            NotFoundError: If ``product_id`` is unknown.
            ConflictError: If any sale in ``ledger`` references the product.
        """
        product = self.get(product_id)
        if ledger.references_product(product_id):
            log.warning("Refused to delete product '%s' referenced by sales", product_id)
            raise ConflictError(f"Cannot delete '{product.name}': it is part of a recorded sale")
        del self._products[product_id]
        log.info("Deleted product '%s' (%s)", product_id, product.name)
        return product

    def find_by_id(self, product_id: str) -> Optional[Product]:
        return self._products.get(product_id)

    def get(self, product_id: str) -> Product:
        try:
            return self._products[product_id]
        except KeyError as exc:
            log.warning("Product lookup failed for id '%s'", product_id)
            raise NotFoundError(f"Unknown product id: {product_id}") from exc

    def find_by_name(self, name: str) -> Optional[Product]:
        """Case-insensitive exact match on the product name."""
        wanted = name.strip().casefold()
        for product in self._products.values():
            if product.name.casefold() == wanted:
                return product
        return None

    def list_all(self) -> List[Product]:
        return list(self._products.values())

    def names(self) -> List[str]:
        return [p.name for p in self._products.values()]

    def in_stock(self) -> List[Product]:
        return [p for p in self._products.values() if p.stock > 0]

    def snapshot(self) -> Dict[str, Product]:
        return dict(self._products)


SaleItemInput = Union[LineItem, Tuple[str, int, Decimal]]


class Ledger:
    """Append-mostly record of completed sales."""

    def __init__(self, sales: Iterable[Sale] = ()) -> None:
        self._sales: List[Sale] = list(sales)

    def __len__(self) -> int:
        return len(self._sales)

    def record_sale(
        self,
        items: Sequence[SaleItemInput],
        catalog_snapshot: Mapping[str, Product],
        *,
        when: Optional[datetime] = None,
    ) -> Sale:
        """Append a sale whose totals are computed from snapshotted values.

        ``total`` is the sum of ``unit_price * quantity``; ``profit`` subtracts
        each product's cost price as found in ``catalog_snapshot``. Stock is
        not touched here; the coordinator adjusts it afterwards.

        Args:
            items (Sequence[LineItem | tuple]): Ordered, non-empty lines given
                as :class:`LineItem` or ``(product_id, quantity, unit_price)``.
            catalog_snapshot (Mapping[str, Product]): Products keyed by id at
                commit time.
            when (datetime | None): Sale timestamp, defaults to now (UTC).

        Returns:
            Sale: The appended record.

        Raises:
            ValidationError: If ``items`` is empty or a quantity is invalid.
            NotFoundError: If a line refers to a product absent from the
                snapshot.
        """
        if not items:
            log.warning("Rejected sale without items")
            raise ValidationError("A sale needs at least one item")

        lines: List[LineItem] = []
        total = ZERO
        cost = ZERO
        for raw in items:
            item = raw if isinstance(raw, LineItem) else LineItem(raw[0], raw[1], Decimal(str(raw[2])))
            require_positive_quantity(item.quantity)
            product = catalog_snapshot.get(item.product_id)
            if product is None:
                raise NotFoundError(f"Unknown product id: {item.product_id}")
            total += item.unit_price * item.quantity
            cost += product.cost_price * item.quantity
            lines.append(item)

        timestamp = _resolve_timestamp(when)
        sale = Sale(
            sale_id=generate_id(
                prefix=IdPrefix.SALE.value,
                when=timestamp,
                existing=(s.sale_id for s in self._sales),
            ),
            timestamp=timestamp,
            items=tuple(lines),
            total=total,
            profit=total - cost,
        )
        self._sales.append(sale)
        log.info(
            "Recorded sale '%s' with %d line(s) (total=%s, profit=%s)",
            sale.sale_id,
            len(sale.items),
            sale.total,
            sale.profit,
        )
        return sale

    def reverse_sale(self, sale_id: str) -> Sale:
        """Remove a sale and hand it back so its stock can be restored.

        Raises:
            NotFoundError: If ``sale_id`` is unknown.
        """
        for index, sale in enumerate(self._sales):
            if sale.sale_id == sale_id:
                del self._sales[index]
                log.info("Reversed sale '%s'", sale_id)
                return sale
        log.warning("Sale lookup failed for id '%s'", sale_id)
        raise NotFoundError(f"Unknown sale id: {sale_id}")

    def clear_all(self) -> int:
        removed = len(self._sales)
        self._sales.clear()
        log.info("Cleared %d sale(s) from the ledger", removed)
        return removed

    def list_all(self) -> List[Sale]:
        return list(self._sales)

    def find_by_id(self, sale_id: str) -> Optional[Sale]:
        return next((s for s in self._sales if s.sale_id == sale_id), None)

    def sales_on_date(self, day: date) -> List[Sale]:
        """Sales whose timestamp falls on ``day`` (UTC calendar date)."""
        return [s for s in self._sales if s.timestamp.astimezone(UTC).date() == day]

    def references_product(self, product_id: str) -> bool:
        return any(item.product_id == product_id for sale in self._sales for item in sale.items)

    @staticmethod
    def summarize(sales: Iterable[Sale], day: Optional[date] = None) -> SalesSummary:
        count = 0
        revenue = ZERO
        profit = ZERO
        for sale in sales:
            count += 1
            revenue += sale.total
            profit += sale.profit
        return SalesSummary(sale_count=count, revenue=revenue, profit=profit, day=day)


@dataclass
class Cart:
    """Client-local draft of a sale.

    Checks here only give early feedback; :meth:`InventoryCoordinator.commit_sale`
    validates the whole draft again against live stock.
    """

    lines: List[CartLine] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.lines)

    def is_empty(self) -> bool:
        return not self.lines

    def find_line(self, product_id: str) -> Optional[CartLine]:
        return next((line for line in self.lines if line.product_id == product_id), None)

    def add_one(self, product: Product) -> CartLine:
        return self.add_quantity(product, 1)

    def add_quantity(self, product: Product, quantity: int) -> CartLine:
        """Merge ``quantity`` units of ``product`` into the cart.

        Raises:
            ValidationError: If ``quantity`` is not a positive integer.
            InsufficientStockError: If the cumulative quantity would exceed
                the product's stock. The cart is left unchanged.
        """
        require_positive_quantity(quantity)
        line = self.find_line(product.product_id)
        already = line.quantity if line is not None else 0
        if already + quantity > product.stock:
            raise InsufficientStockError(product.name, product.stock, requested=already + quantity)
        if line is None:
            line = CartLine(
                product_id=product.product_id,
                quantity=quantity,
                unit_price=product.selling_price,
                name=product.name,
            )
            self.lines.append(line)
        else:
            line.quantity += quantity
        return line

    def remove_one(self, product_id: str) -> None:
        line = self.find_line(product_id)
        if line is None:
            return
        if line.quantity > 1:
            line.quantity -= 1
        else:
            self.lines.remove(line)

    def total(self) -> Decimal:
        return sum(
            ((line.unit_price or ZERO) * line.quantity for line in self.lines),
            ZERO,
        )

    def clear(self) -> None:
        self.lines.clear()


class InventoryCoordinator:
    """Single entry point for every mutation of the catalog and the ledger.

    Each mutating call runs to completion in memory and then flushes both
    aggregates to the store. A failed flush is logged and remembered in
    :attr:`last_flush_error`; the in-memory state stays authoritative.
    """

    def __init__(
        self,
        catalog: Optional[Catalog] = None,
        ledger: Optional[Ledger] = None,
        store: Optional[data_manager.JsonBlobStore] = None,
    ) -> None:
        self.catalog = catalog if catalog is not None else Catalog()
        self.ledger = ledger if ledger is not None else Ledger()
        self.store = store
        self.last_flush_error: Optional[OSError] = None

    @classmethod
    def load(cls, store: data_manager.JsonBlobStore) -> "InventoryCoordinator":
        """Load both aggregates from ``store``, empty when a blob is absent."""
        products = data_manager.load_products(store)
        sales = data_manager.load_sales(store)
        log.info("Loaded %d product(s) and %d sale(s) from '%s'", len(products), len(sales), store.directory)
        return cls(Catalog(products), Ledger(sales), store)

    def persist(self) -> bool:
        """Flush both aggregates; return ``False`` if the write failed."""
        if self.store is None:
            return True
        try:
            data_manager.save_store(self.store, self.catalog.list_all(), self.ledger.list_all())
        except OSError as exc:
            self.last_flush_error = exc
            log.error("Failed to persist store '%s': %s", self.store.directory, exc)
            return False
        self.last_flush_error = None
        log.debug("Persisted store '%s'", self.store.directory)
        return True

    def add_product(self, name: object, cost: object, price: object, stock: object) -> Product:
        product = self.catalog.add_product(name, cost, price, stock)
        self.persist()
        return product

    def edit_product(self, product_id: str, name: object, cost: object, price: object, stock: object) -> Product:
        product = self.catalog.edit_product(product_id, name, cost, price, stock)
        self.persist()
        return product

    def remove_product(self, product_id: str) -> Product:
        product = self.catalog.delete_product(product_id, self.ledger)
        self.persist()
        return product

    def commit_sale(self, cart_lines: Iterable[CartLine], *, when: Optional[datetime] = None) -> Sale:
        """Validate a draft against live stock and record it atomically.

        Quantities are summed per product before comparing with stock, so
        repeated lines for one product cannot jointly oversell it. If any line
        fails nothing is recorded and no stock moves.

        Args:
            cart_lines (Iterable[CartLine]): Draft lines, usually
                ``cart.lines``.
            when (datetime | None): Sale timestamp override.

        Returns:
            Sale: The recorded sale.

        Raises:
            ValidationError: If the draft is empty or a quantity is invalid.
            NotFoundError: If a line refers to an unknown product.
            InsufficientStockError: If a product's cumulative quantity exceeds
                its stock.
        """
        lines = list(cart_lines)
        if not lines:
            log.warning("Rejected commit of an empty cart")
            raise ValidationError("Cart is empty")

        requested: Dict[str, int] = {}
        items: List[LineItem] = []
        for line in lines:
            require_positive_quantity(line.quantity)
            product = self.catalog.get(line.product_id)
            requested[product.product_id] = requested.get(product.product_id, 0) + line.quantity
            if requested[product.product_id] > product.stock:
                log.warning(
                    "Rejected sale: '%s' requested %d with stock %d",
                    product.product_id,
                    requested[product.product_id],
                    product.stock,
                )
                raise InsufficientStockError(product.name, product.stock, requested=requested[product.product_id])
            unit_price = line.unit_price if line.unit_price is not None else product.selling_price
            items.append(LineItem(product.product_id, line.quantity, unit_price))

        sale = self.ledger.record_sale(items, self.catalog.snapshot(), when=when)
        for item in sale.items:
            self.catalog.adjust_stock(item.product_id, -item.quantity)
        self.persist()
        return sale

    def void_sale(self, sale_id: str) -> Sale:
        """Remove a sale and give back exactly the stock it consumed.

        Lines whose product has since disappeared cannot be restocked and are
        skipped with a warning.

        Raises:
            NotFoundError: If ``sale_id`` is unknown.
        """
        sale = self.ledger.reverse_sale(sale_id)
        for item in sale.items:
            if self.catalog.find_by_id(item.product_id) is None:
                log.warning(
                    "Voided sale '%s' references missing product '%s'; stock not restored",
                    sale_id,
                    item.product_id,
                )
                continue
            self.catalog.adjust_stock(item.product_id, item.quantity)
        self.persist()
        return sale

    def clear_sales(self) -> int:
        removed = self.ledger.clear_all()
        self.persist()
        return removed

    def apply_parsed_order(self, cart: Cart, pairs: Iterable[Tuple[object, object]]) -> List[str]:
        """Fill ``cart`` from untrusted ``(product_name, quantity)`` pairs.

        Names that match no catalog entry (case-insensitive exact match) are
        dropped silently. Invalid quantities and quantities above the
        available stock are skipped with a warning; the remaining lines are
        still added.

        Returns:
            list[str]: Warnings to show to the user.
        """
        warnings: List[str] = []
        for raw_name, raw_quantity in pairs:
            product = self.catalog.find_by_name(str(raw_name)) if raw_name is not None else None
            if product is None:
                log.info("Dropped unknown product from parsed order: %r", raw_name)
                continue
            quantity = coerce_order_quantity(raw_quantity)
            if quantity is None:
                log.warning("Skipped '%s' with invalid quantity %r", product.name, raw_quantity)
                warnings.append(f"Invalid quantity for {product.name}: {raw_quantity}")
                continue
            try:
                cart.add_quantity(product, quantity)
            except InsufficientStockError as exc:
                log.warning("Skipped parsed line: %s", exc)
                warnings.append(str(exc))
        return warnings

    def daily_summary(self, day: Optional[date] = None) -> SalesSummary:
        day = day if day is not None else _resolve_timestamp(None).date()
        return Ledger.summarize(self.ledger.sales_on_date(day), day=day)

    def describe_items(self, sale: Sale, placeholder: str = MISSING_PRODUCT_LABEL) -> List[str]:
        """Render each line as ``Name (xN)``, tolerating missing products."""
        parts = []
        for item in sale.items:
            product = self.catalog.find_by_id(item.product_id)
            name = product.name if product is not None else placeholder
            parts.append(f"{name} (x{item.quantity})")
        return parts


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and open the blob store.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Settings plus the store they point at.

    Raises:
        FileNotFoundError: If the configuration file cannot be located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    store = data_manager.open_store(settings)
    log.info("Loaded runtime context for store '%s'", settings.data_dir)
    return RuntimeContext(settings=settings, store=store)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate store compatibility before mutating state.

    Raises:
        RuntimeError: If the configured schema version does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Store schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Store schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def load_coordinator(context: RuntimeContext) -> InventoryCoordinator:
    return InventoryCoordinator.load(context.store)
