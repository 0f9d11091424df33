"""Data access layer for the point-of-sale ledger.

This module provides low-level helpers that read from and write to the
key-value blob store backing the catalog and the sales ledger. Business rules
belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding, parsing, and bootstrapping ``config.ini``.
2. Store lifecycle: reading and overwriting whole JSON blobs by key.
3. Record conversion: turning stored mappings into typed records and back.
"""


from __future__ import annotations

import configparser
import json
import os
import tempfile
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional

from . import log
from .constants import API_KEY_ENV_VAR, EXPECTED_SCHEMA_VERSION, StoreKey


CONFIG_FILE_NAME = "config.ini"
DEFAULT_MODEL = "gemini-2.5-flash"
DEFAULT_ENDPOINT = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
DEFAULT_TIMEOUT_SECONDS = 30.0

_CONFIG_TEMPLATE = (
    "[Store]\n"
    "DataDir = {data_dir}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Export]\n"
    "ExportDir = {export_dir}\n\n"
    "[OrderParser]\n"
    "ApiKey =\n"
    "Model = {model}\n"
    "Endpoint = {endpoint}\n"
    "TimeoutSeconds = {timeout}\n"
)


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_dir: Path
    store_name: str
    schema_version: str
    export_dir: Path
    api_key: Optional[str] = None
    model: str = DEFAULT_MODEL
    endpoint: str = DEFAULT_ENDPOINT
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS


@dataclass(frozen=True)
class Product:
    """A sellable catalog entry and its current stock counter."""

    product_id: str
    name: str
    cost_price: Decimal
    selling_price: Decimal
    stock: int


@dataclass(frozen=True)
class LineItem:
    """One sold line; ``product_id`` may no longer resolve in the catalog."""

    product_id: str
    quantity: int
    unit_price: Decimal


@dataclass(frozen=True)
class Sale:
    """A committed sale with totals fixed at commit time."""

    sale_id: str
    timestamp: datetime
    items: tuple[LineItem, ...]
    total: Decimal
    profit: Decimal


class JsonBlobStore:
    """Directory-backed key-value store holding one JSON document per key.

    Each key maps to ``<directory>/<key>.json``. Writes go through a temporary
    file in the same directory followed by :func:`os.replace`, so a failed
    flush never leaves a truncated blob behind.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory).expanduser().resolve()

    def path_for(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get(self, key: str) -> Optional[Any]:
        """Return the decoded document stored under ``key`` or ``None``.

        Raises:
            ValueError: If the stored blob is not valid JSON.
        """

        path = self.path_for(key)
        if not path.exists():
            return None
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)

    def set_many(self, values: Mapping[str, Any]) -> None:
        """Overwrite several blobs so that either all of them change or none do.

        Every document is written to its own temporary file first. The blobs
        are only swapped in once all temporary files exist, so a failed write
        leaves every previous blob untouched.

        Raises:
            OSError: If the directory or any temporary file cannot be written.
        """

        self.directory.mkdir(parents=True, exist_ok=True)
        staged: List[tuple[str, Path]] = []
        try:
            for key, value in values.items():
                staged.append((self._write_temp(key, value), self.path_for(key)))
        except BaseException:
            for tmp_name, _ in staged:
                Path(tmp_name).unlink(missing_ok=True)
            raise

        for tmp_name, target in staged:
            os.replace(tmp_name, target)

    def _write_temp(self, key: str, value: Any) -> str:
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(value, handle, ensure_ascii=False, indent=2)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return tmp_name


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match wins.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = Path(config_path).expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def _resolve_dir(raw: str, base_path: Optional[Path]) -> Path:
    path = Path(raw).expanduser()
    if not path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        path = (base_path / path).resolve()
    return path


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[Store]`` is mandatory. ``[Export]`` and ``[OrderParser]`` fall back to
    defaults when absent. Relative directories are anchored to ``base_path``
    (normally the config file's folder) or the current working directory. An
    empty ``ApiKey`` is replaced by the ``POS_LEDGER_API_KEY`` environment
    variable when that is set.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Anchor for relative directory entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If ``TimeoutSeconds`` is not a positive number.
    """

    try:
        data_dir_raw = parser.get("Store", "DataDir")
        store_name = parser.get("Store", "StoreName")
        schema_version = parser.get("Store", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    export_dir_raw = parser.get("Export", "ExportDir", fallback="exports")
    api_key = parser.get("OrderParser", "ApiKey", fallback="").strip()
    if not api_key:
        api_key = os.environ.get(API_KEY_ENV_VAR, "").strip()
    model = parser.get("OrderParser", "Model", fallback=DEFAULT_MODEL).strip() or DEFAULT_MODEL
    endpoint = parser.get("OrderParser", "Endpoint", fallback=DEFAULT_ENDPOINT).strip() or DEFAULT_ENDPOINT
    timeout = parser.getfloat("OrderParser", "TimeoutSeconds", fallback=DEFAULT_TIMEOUT_SECONDS)
    if timeout <= 0:
        raise ValueError("TimeoutSeconds must be greater than zero")

    return ConfigSettings(
        data_dir=_resolve_dir(data_dir_raw, base_path),
        store_name=store_name,
        schema_version=schema_version,
        export_dir=_resolve_dir(export_dir_raw, base_path),
        api_key=api_key or None,
        model=model,
        endpoint=endpoint,
        timeout_seconds=timeout,
    )


def write_default_config(
    destination: Path,
    *,
    store_name: str = "My Store",
    data_dir: str = "data",
    export_dir: str = "exports",
    overwrite: bool = False,
) -> Path:
    """Write a starter ``config.ini`` at ``destination``.

    Raises:
        FileExistsError: If the file exists and ``overwrite`` is ``False``.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing configuration: {destination}")

    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_text(
        _CONFIG_TEMPLATE.format(
            data_dir=data_dir,
            store_name=store_name,
            schema_version=EXPECTED_SCHEMA_VERSION,
            export_dir=export_dir,
            model=DEFAULT_MODEL,
            endpoint=DEFAULT_ENDPOINT,
            timeout=DEFAULT_TIMEOUT_SECONDS,
        ),
        encoding="utf-8",
    )
    log.info("Wrote default configuration to '%s'", destination)
    return destination


def open_store(settings: ConfigSettings) -> JsonBlobStore:
    return JsonBlobStore(settings.data_dir)


def load_products(store: JsonBlobStore) -> List[Product]:
    """Read the catalog blob, defaulting to an empty list when absent."""

    raw = store.get(StoreKey.PRODUCTS.value)
    if raw is None:
        return []
    return [deserialize_product(entry) for entry in raw]


def load_sales(store: JsonBlobStore) -> List[Sale]:
    """Read the ledger blob, defaulting to an empty list when absent."""

    raw = store.get(StoreKey.SALES.value)
    if raw is None:
        return []
    return [deserialize_sale(entry) for entry in raw]


def save_store(store: JsonBlobStore, products: Iterable[Product], sales: Iterable[Sale]) -> None:
    """Flush the catalog and the ledger together.

    Both blobs are replaced only after both have been written, so the stock
    levels on disk never disagree with the recorded sales.
    """

    store.set_many(
        {
            StoreKey.PRODUCTS.value: [serialize_product(p) for p in products],
            StoreKey.SALES.value: [serialize_sale(s) for s in sales],
        }
    )


def serialize_product(record: Product) -> dict[str, object]:
    """Convert a product into a JSON-ready mapping.

    Decimals are stored as strings so no precision is lost on the round trip.
    """

    return {
        "product_id": record.product_id,
        "name": record.name,
        "cost_price": str(record.cost_price),
        "selling_price": str(record.selling_price),
        "stock": record.stock,
    }


def serialize_sale(record: Sale) -> dict[str, object]:
    return {
        "sale_id": record.sale_id,
        "timestamp": record.timestamp.isoformat(),
        "items": [
            {
                "product_id": item.product_id,
                "quantity": item.quantity,
                "unit_price": str(item.unit_price),
            }
            for item in record.items
        ],
        "total": str(record.total),
        "profit": str(record.profit),
    }


def _to_decimal(raw: object, field_name: str) -> Decimal:
    try:
        return Decimal(str(raw)) if raw is not None else Decimal("0")
    except InvalidOperation as exc:
        raise ValueError(f"Invalid decimal for '{field_name}': {raw!r}") from exc


def _to_timestamp(raw: object) -> datetime:
    moment = datetime.fromisoformat(str(raw))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment


def deserialize_product(raw: Mapping[str, Any]) -> Product:
    """Convert a stored mapping into a strongly typed product record.

    Args:
        raw (Mapping[str, Any]): Decoded JSON object from the products blob.

    Returns:
        Product: Record with Decimal prices and an integer stock counter.

    Raises:
        ValueError: If a numeric field cannot be converted.
        KeyError: If the identifier or the name is missing.
    """

    return Product(
        product_id=str(raw["product_id"]),
        name=str(raw["name"]),
        cost_price=_to_decimal(raw.get("cost_price"), "cost_price"),
        selling_price=_to_decimal(raw.get("selling_price"), "selling_price"),
        stock=int(raw.get("stock") or 0),
    )


def deserialize_sale(raw: Mapping[str, Any]) -> Sale:
    """Convert a stored mapping into a strongly typed sale record.

    Line items keep their snapshotted unit price; totals are read as stored
    and never recomputed from the current catalog.
    """

    items = tuple(
        LineItem(
            product_id=str(item["product_id"]),
            quantity=int(item["quantity"]),
            unit_price=_to_decimal(item.get("unit_price"), "unit_price"),
        )
        for item in raw.get("items", [])
    )
    return Sale(
        sale_id=str(raw["sale_id"]),
        timestamp=_to_timestamp(raw["timestamp"]),
        items=items,
        total=_to_decimal(raw.get("total"), "total"),
        profit=_to_decimal(raw.get("profit"), "profit"),
    )
