"""Shared pytest fixtures and utilities for the point-of-sale ledger tests."""

from __future__ import annotations

import argparse
import io
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Iterator
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from pos_ledger import cli, constants, core_logic, data_manager  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
FIXED_MOMENT = datetime(2024, 5, 17, 14, 30, 0, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[Store]\n"
    "DataDir = {data_dir}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Export]\n"
    "ExportDir = {export_dir}\n\n"
    "[OrderParser]\n"
    "ApiKey = {api_key}\n"
    "Model = test-model\n"
    "TimeoutSeconds = 5\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    data_dir: Path
    export_dir: Path
    store_name: str
    schema_version: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def config_factory(tmp_path: Path) -> Callable[..., ConfigBundle]:
    """Provide a callable that writes config bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Test Store",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        api_key: str = "test-key",
    ) -> ConfigBundle:
        bundle_dir = tmp_path / f"bundle_{uuid.uuid4().hex}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        data_dir = bundle_dir / "data"
        export_dir = bundle_dir / "exports"
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_dir="data" if make_relative else str(data_dir),
                export_dir="exports" if make_relative else str(export_dir),
                store_name=store_name,
                schema_version=schema_version,
                api_key=api_key,
            ),
            encoding="utf-8",
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            data_dir=data_dir,
            export_dir=export_dir,
            store_name=store_name,
            schema_version=schema_version,
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

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


@pytest.fixture
def store(tmp_path: Path) -> data_manager.JsonBlobStore:
    return data_manager.JsonBlobStore(tmp_path / "store")


@pytest.fixture
def coordinator(store: data_manager.JsonBlobStore) -> core_logic.InventoryCoordinator:
    """An empty coordinator flushing into a temporary store."""

    return core_logic.InventoryCoordinator.load(store)


@pytest.fixture
def product_a(coordinator: core_logic.InventoryCoordinator) -> data_manager.Product:
    """Product A: stock 5, price 10, cost 6."""

    return coordinator.add_product("A", "6", "10", "5")


@pytest.fixture
def fixed_moment() -> datetime:
    return FIXED_MOMENT


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="pos-ledger", description="POS CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def interpreter() -> Mock:
    """A stand-in order interpreter returning no lines by default."""

    mock = Mock(name="interpreter")
    mock.interpret.return_value = []
    return mock


@pytest.fixture
def cli_session(
    runtime_context: core_logic.RuntimeContext,
    interpreter: Mock,
) -> cli.CliSession:
    """A CLI session over the temporary store with captured output."""

    return cli.CliSession(
        context=runtime_context,
        coordinator=core_logic.load_coordinator(runtime_context),
        interpreter_factory=lambda settings: interpreter,
        stdin=io.StringIO(""),
        stdout=io.StringIO(),
    )
