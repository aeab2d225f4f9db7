"""Shared pytest fixtures and utilities for stock ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from stock_ledger import core_logic, data_manager, passwords  # noqa: E402
from stock_ledger.setup_excel import create_store_workbook  # noqa: E402

ADMIN_USERNAME = "admin"
ADMIN_PASSWORD = "admin-secret"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n\n"
    "[Inventory]\n"
    "LowStockThreshold = {threshold}\n\n"
    "[Admin]\n"
    "Username = {admin_username}\n"
    "Password = {admin_password}\n"
    "LegacyUsernames = {legacy}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    store_name: str
    admin_username: str
    admin_password: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture(autouse=True)
def _fast_password_hashing(monkeypatch: pytest.MonkeyPatch) -> None:
    """Use the cheapest bcrypt cost so user-heavy tests stay quick."""

    monkeypatch.setattr(passwords, "BCRYPT_ROUNDS", 4)


def make_settings(
    data_file: Path,
    *,
    store_name: str = "Test Store",
    low_stock_threshold: int = 100,
    legacy_admin_usernames: tuple[str, ...] = (),
) -> data_manager.ConfigSettings:
    return data_manager.ConfigSettings(
        data_file=data_file,
        store_name=store_name,
        low_stock_threshold=low_stock_threshold,
        admin_username=ADMIN_USERNAME,
        admin_password=ADMIN_PASSWORD,
        legacy_admin_usernames=legacy_admin_usernames,
    )


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for in-memory contexts."""

    return make_settings(tmp_path / "inventory.xlsx")


@pytest.fixture
def memory_context(settings: data_manager.ConfigSettings) -> core_logic.RuntimeContext:
    """Runtime context over a fresh in-memory store with the admin seeded."""

    context = core_logic.RuntimeContext(settings=settings, workbook=data_manager.build_store_workbook())
    core_logic.seed_default_admin(context)
    return context


@pytest.fixture
def admin(memory_context: core_logic.RuntimeContext) -> data_manager.UserRow:
    """The seeded administrator of ``memory_context``."""

    return core_logic.authenticate(memory_context, ADMIN_USERNAME, ADMIN_PASSWORD)


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized store workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "inventory.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_store_workbook(make_settings(workbook_path), overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Test Store",
        threshold: int = 100,
        legacy: str = "",
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                store_name=store_name,
                threshold=threshold,
                admin_username=ADMIN_USERNAME,
                admin_password=ADMIN_PASSWORD,
                legacy=legacy,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            store_name=store_name,
            admin_username=ADMIN_USERNAME,
            admin_password=ADMIN_PASSWORD,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    return core_logic.load_runtime_context(config_file)


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="stock-cli", description="Stock CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")
