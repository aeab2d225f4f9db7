"""Read-only views over the store: dashboard, cardex, partitions, reports.

Everything here is computed from the cached records exposed by
:mod:`stock_ledger.core_logic` and filtered through the acting user's
visibility. Nothing in this module writes to the store.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import openpyxl
from openpyxl.styles import Font

from . import access_filter, audit, core_logic, data_manager, log


@dataclass(frozen=True)
class DashboardStats:
    """Aggregate counts shown on the dashboard."""

    product_count: int
    total_quantity: int
    low_stock_count: int
    out_of_stock_count: int


@dataclass(frozen=True)
class CardexEntry:
    """One transaction with the product balance before and after it."""

    transaction_id: str
    timestamp_iso: str
    transaction_type: str
    invoice_number: str
    quantity_change: int
    balance_before: int
    balance_after: int


@dataclass(frozen=True)
class Cardex:
    """Chronological balance trail for one product."""

    product: data_manager.ProductRow
    opening_balance: int
    entries: tuple[CardexEntry, ...]


def visible_products(context: core_logic.RuntimeContext, actor: data_manager.UserRow) -> List[data_manager.ProductRow]:
    """Return the products ``actor`` may see, most recently updated first."""
    return access_filter.filter_products(actor, core_logic.list_products(context), core_logic.tags_by_id(context))


def visible_transactions(
    context: core_logic.RuntimeContext,
    actor: data_manager.UserRow,
) -> List[data_manager.TransactionRow]:
    """Return the transactions ``actor`` may see, newest first.

    Entries sharing a timestamp keep the later-inserted one first.
    """
    transactions = access_filter.filter_transactions(
        actor,
        core_logic.list_transactions(context),
        core_logic.products_by_id(context),
        core_logic.tags_by_id(context),
    )
    return sorted(reversed(transactions), key=lambda transaction: transaction.timestamp_iso, reverse=True)


def is_low_stock(quantity: int, threshold: int) -> bool:
    return 0 < quantity < threshold


def partition_stock(
    products: Iterable[data_manager.ProductRow],
    threshold: int,
) -> tuple[List[data_manager.ProductRow], List[data_manager.ProductRow]]:
    """Split products into ``(low_stock, finished)``.

    Low stock means ``0 < quantity < threshold``; finished means
    ``quantity == 0``. A product is never in both lists.
    """
    low_stock: List[data_manager.ProductRow] = []
    finished: List[data_manager.ProductRow] = []
    for product in products:
        if product.quantity == 0:
            finished.append(product)
        elif is_low_stock(product.quantity, threshold):
            low_stock.append(product)
    return low_stock, finished


def dashboard(context: core_logic.RuntimeContext, actor: data_manager.UserRow) -> DashboardStats:
    """Compute dashboard aggregates over the products visible to ``actor``."""
    products = visible_products(context, actor)
    low_stock, finished = partition_stock(products, context.settings.low_stock_threshold)
    stats = DashboardStats(
        product_count=len(products),
        total_quantity=sum(product.quantity for product in products),
        low_stock_count=len(low_stock),
        out_of_stock_count=len(finished),
    )
    log.debug("Dashboard for '%s': %s", actor.username, stats)
    return stats


def build_cardex(
    current_quantity: int,
    transactions: Sequence[data_manager.TransactionRow],
) -> tuple[int, List[CardexEntry]]:
    """Reconstruct the running balance of one product.

    The opening balance is ``current_quantity`` minus the sum of every
    change; walking the transactions oldest first from there ends exactly at
    ``current_quantity``. ``transactions`` must be in insertion order, which
    breaks ties between equal timestamps.

    Returns:
        tuple[int, list[CardexEntry]]: Opening balance and the entries in
            chronological order.
    """
    ordered = sorted(transactions, key=lambda transaction: transaction.timestamp_iso)
    opening = current_quantity - sum(transaction.quantity_change for transaction in ordered)

    entries: List[CardexEntry] = []
    balance = opening
    for transaction in ordered:
        before = balance
        balance += transaction.quantity_change
        entries.append(
            CardexEntry(
                transaction_id=transaction.transaction_id,
                timestamp_iso=transaction.timestamp_iso,
                transaction_type=transaction.transaction_type,
                invoice_number=transaction.invoice_number,
                quantity_change=transaction.quantity_change,
                balance_before=before,
                balance_after=balance,
            )
        )
    return opening, entries


def product_cardex(context: core_logic.RuntimeContext, product_id: str) -> Cardex:
    """Build the cardex for ``product_id`` from the ledger.

    Raises:
        NotFoundError: If the product does not exist.
    """
    product = core_logic.get_product(context, product_id)
    history = [
        transaction
        for transaction in core_logic.list_transactions(context)
        if transaction.product_id == product_id
    ]
    opening, entries = build_cardex(product.quantity, history)
    return Cardex(product=product, opening_balance=opening, entries=tuple(entries))


def search_products(
    products: Iterable[data_manager.ProductRow],
    query: str,
    tags_by_id: Mapping[str, data_manager.TagRow],
    categories_by_id: Mapping[str, data_manager.CategoryRow],
) -> List[data_manager.ProductRow]:
    """Match ``query`` case-insensitively against product, tag, and category names."""
    needle = query.strip().casefold()
    if not needle:
        return list(products)

    matches: List[data_manager.ProductRow] = []
    for product in products:
        names = [product.name]
        names.extend(tags_by_id[tag_id].name for tag_id in product.tag_ids if tag_id in tags_by_id)
        names.extend(
            categories_by_id[category_id].name
            for category_id in product.category_ids
            if category_id in categories_by_id
        )
        if any(needle in name.casefold() for name in names):
            matches.append(product)
    return matches


def _joined_names(ids: Iterable[str], lookup: Mapping[str, object]) -> str:
    return ", ".join(sorted(getattr(lookup[record_id], "name") for record_id in ids if record_id in lookup))


def product_report_rows(
    context: core_logic.RuntimeContext,
    actor: data_manager.UserRow,
    *,
    low_stock_only: bool = False,
) -> List[Dict[str, object]]:
    """Flatten visible products with resolved tag and category names."""
    tags = core_logic.tags_by_id(context)
    categories = core_logic.categories_by_id(context)
    products = visible_products(context, actor)
    if low_stock_only:
        threshold = context.settings.low_stock_threshold
        products = [product for product in products if is_low_stock(product.quantity, threshold)]

    return [
        {
            "Product ID": product.product_id,
            "Product": product.name,
            "Quantity": product.quantity,
            "Tags": _joined_names(product.tag_ids, tags),
            "Categories": _joined_names(product.category_ids, categories),
            "Last Updated": product.last_updated,
        }
        for product in products
    ]


def transaction_report_rows(
    context: core_logic.RuntimeContext,
    actor: data_manager.UserRow,
) -> List[Dict[str, object]]:
    """Flatten visible transactions with the resolved product name.

    Orphaned transactions (deleted product) have an empty ``Product`` cell.
    """
    products = core_logic.products_by_id(context)
    rows: List[Dict[str, object]] = []
    for transaction in visible_transactions(context, actor):
        product = products.get(transaction.product_id)
        rows.append(
            {
                "Transaction ID": transaction.transaction_id,
                "Date": transaction.timestamp_iso,
                "Type": transaction.transaction_type,
                "Reference": transaction.invoice_number,
                "Product ID": transaction.product_id,
                "Product": product.name if product is not None else "",
                "Quantity Change": transaction.quantity_change,
            }
        )
    return rows


def activity_log(context: core_logic.RuntimeContext, *, limit: Optional[int] = None) -> List[data_manager.LogRow]:
    return audit.list_logs(context.workbook, limit=limit)


def write_report_workbook(
    rows: Sequence[Mapping[str, object]],
    destination: Path,
    *,
    sheet_title: str = "Report",
    columns: Optional[Sequence[str]] = None,
) -> Path:
    """Write report rows into a fresh xlsx file with a bold header row.

    Columns come from ``columns`` or, when omitted, from the first row's keys.
    An empty report with no ``columns`` produces a sheet with no header.
    """
    header = list(columns) if columns is not None else (list(rows[0].keys()) if rows else [])

    workbook = openpyxl.Workbook()
    worksheet = workbook.active
    worksheet.title = sheet_title

    bold_font = Font(bold=True)
    for column_index, column_name in enumerate(header, start=1):
        cell = worksheet.cell(row=1, column=column_index)
        cell.value = column_name
        cell.font = bold_font
    for row in rows:
        worksheet.append([row.get(column_name) for column_name in header])

    data_manager.save_workbook(workbook, destination)
    log.info("Wrote %d report row(s) to '%s'", len(rows), destination)
    return Path(destination).expanduser().resolve()
