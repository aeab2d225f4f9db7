"""Utility for initializing an empty stock ledger store.

The module doubles as a script (``stock-setup`` / ``python -m
stock_ledger.setup_excel``) and as a library used by tests or other tooling.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Sequence

from . import core_logic, data_manager, log

CONFIG_FILE = data_manager.CONFIG_FILE_NAME


def create_store_workbook(settings: data_manager.ConfigSettings, *, overwrite: bool = False) -> Path:
    """Create the store workbook at ``settings.data_file``.

    Every sheet is created with a bold header row, the schema version is
    stamped, and the default administrator from ``settings`` is seeded.
    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists.
    """

    destination = settings.data_file.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing store workbook: {destination}"
        )

    workbook = data_manager.build_store_workbook()
    context = core_logic.RuntimeContext(settings=settings, workbook=workbook)
    core_logic.seed_default_admin(context)

    data_manager.save_workbook(workbook, destination)
    log.info("Created store workbook '%s'", destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Load ``config_path`` and create the store it points at."""

    resolved = Path(config_path).expanduser().resolve()
    parser = data_manager.read_config(resolved)
    settings = data_manager.parse_settings(parser, base_path=resolved.parent)
    return create_store_workbook(settings, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the stock ledger data file")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Stock Ledger Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, KeyError, ValueError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created store workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
