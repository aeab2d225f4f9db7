"""Business logic layer for the stock ledger.

This module contains the ledger engine that keeps every product's on-hand
quantity equal to its opening balance plus the signed sum of its
transactions, together with the catalog, user, and backup workflows that
mutate the store. It consumes the Data Access Layer (DAL) for all I/O.

Every mutation runs inside :func:`atomic`: the workbook rows are snapshotted
first and reinstated if anything raises, so callers observe either the whole
change (including its activity log entry) or none of it.
"""

from __future__ import annotations

import random
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from openpyxl.workbook import Workbook

from . import audit, data_manager, log
from .constants import INVOICE_TYPES, LogAction, Permission, TransactionType
from .data_manager import EntityKind
from .exceptions import (
    AuthorizationDenied,
    BusinessRuleViolation,
    InsufficientStock,
    NotFoundError,
    TransactionNotFound,
)
from .passwords import hash_password, verify_password


PRODUCT_ID_PREFIX = "P"
TAG_ID_PREFIX = "TAG"
CATEGORY_ID_PREFIX = "CAT"
TRANSACTION_ID_PREFIX = "TX"
USER_ID_PREFIX = "U"

DEFAULT_INVOICE_REFERENCES = {
    TransactionType.PURCHASE: "General purchase",
    TransactionType.SALE: "General sale",
}

_CACHE_BUCKETS = ("products", "tags", "categories", "transactions", "users")


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class InvoiceLine:
    """One product and the positive number of units moved by an invoice."""

    product_id: str
    quantity: int


@dataclass(frozen=True)
class InvoiceCommand:
    """User intent for posting a purchase or sale invoice.

    Lines must already be merged by product; the engine posts them as given.
    """

    transaction_type: TransactionType
    invoice_number: str
    lines: tuple[InvoiceLine, ...]
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class RecountCommand:
    """User intent for replacing a product's quantity with a counted value."""

    product_id: str
    new_quantity: int
    notes: str
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class EditTransactionCommand:
    """User intent for correcting a posted transaction."""

    transaction_id: str
    quantity_change: int
    invoice_number: str
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class UserCommand:
    """Administrator intent for creating (``user_id=None``) or updating a user."""

    username: str
    password: Optional[str]
    permissions: frozenset[str] = frozenset()
    allowed_category_ids: frozenset[str] = frozenset()
    allowed_tag_prefixes: frozenset[str] = frozenset()
    user_id: Optional[str] = None
    profile_picture: Optional[str] = None


@dataclass(frozen=True)
class ProfileCommand:
    """A user's intent to change their own username, password, or picture."""

    current_password: str
    username: str
    new_password: Optional[str] = None
    profile_picture: Optional[str] = None


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` converted to UTC or, when ``None``, the current UTC datetime."""

    return data_manager.as_utc(candidate if candidate is not None else datetime.now(UTC))


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    The business logic layer keeps in-memory caches keyed by domain area
    (products, tags, categories, transactions, users). Buckets are plain
    dictionaries created on first use.

    Args:
        context (RuntimeContext): Runtime state carrying the shared cache
            dictionary.
        name (str): Logical bucket name to fetch or create.

    Returns:
        dict[str, Any]: Mutable mapping for the requested bucket.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state.

    Missing buckets are ignored so callers can invalidate broadly.
    """

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_bucket(context: RuntimeContext, name: str, kind: EntityKind, id_attr: str) -> Dict[str, Any]:
    """Populate a cache bucket with ``all`` records and a ``by_id`` lookup."""

    bucket = _get_cache_bucket(context, name)
    if "all" not in bucket:
        records = list(data_manager.iter_records(context.workbook, kind))
        bucket["all"] = records
        bucket["by_id"] = {getattr(record, id_attr): record for record in records}
        log.debug("Populated %s cache with %d entries", name, len(records))
    return bucket


def _ensure_products_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_bucket(context, "products", EntityKind.PRODUCT, "product_id")


def _ensure_tags_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_bucket(context, "tags", EntityKind.TAG, "tag_id")


def _ensure_categories_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_bucket(context, "categories", EntityKind.CATEGORY, "category_id")


def _ensure_transactions_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the transaction cache bucket on demand.

    Transactions are cached in sheet (insertion) order, which is also the
    tie-breaker for entries sharing one timestamp.
    """

    return _ensure_bucket(context, "transactions", EntityKind.TRANSACTION, "transaction_id")


def _ensure_users_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_bucket(context, "users", EntityKind.USER, "user_id")


@contextmanager
def atomic(context: RuntimeContext) -> Iterator[None]:
    """Run a block of store writes as one all-or-nothing unit.

    The workbook rows are snapshotted on entry. If the block raises, every
    sheet is restored from the snapshot before the exception propagates.
    Caches are invalidated on both paths.
    """

    snapshot = data_manager.snapshot_workbook(context.workbook)
    try:
        yield
    except BaseException:
        data_manager.restore_workbook(context.workbook, snapshot)
        _invalidate_cache(context, *_CACHE_BUCKETS)
        log.warning("Rolled back workbook changes after a failed operation")
        raise
    _invalidate_cache(context, *_CACHE_BUCKETS)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live, upgraded workbook.

    The helper resolves ``config.ini``, parses settings, opens the store,
    upgrades a legacy schema in place, validates every sheet header, and runs
    the default-administrator seed-or-repair routine. Schema upgrade and
    seeding only touch the in-memory workbook; callers persist them with
    :func:`persist_context`.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
        ValueError: When the workbook schema is unknown or malformed.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    data_manager.upgrade_schema(workbook)
    data_manager.validate_schema(workbook)
    context = RuntimeContext(settings=settings, workbook=workbook)
    seed_default_admin(context)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return context


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def list_products(context: RuntimeContext) -> List[data_manager.ProductRow]:
    """Return every product, most recently updated first."""
    cache = _ensure_products_cache(context)
    return sorted(cache["all"], key=lambda product: product.last_updated, reverse=True)


def list_tags(context: RuntimeContext) -> List[data_manager.TagRow]:
    return sorted(_ensure_tags_cache(context)["all"], key=lambda tag: tag.name.casefold())


def list_categories(context: RuntimeContext) -> List[data_manager.CategoryRow]:
    return sorted(_ensure_categories_cache(context)["all"], key=lambda category: category.name.casefold())


def list_transactions(context: RuntimeContext) -> List[data_manager.TransactionRow]:
    """Return the ledger in insertion order.

    The list is a copy, so callers may sort or filter it freely.
    """
    return list(_ensure_transactions_cache(context)["all"])


def list_users(context: RuntimeContext) -> List[data_manager.UserRow]:
    return sorted(_ensure_users_cache(context)["all"], key=lambda user: user.username.casefold())


def products_by_id(context: RuntimeContext) -> Dict[str, data_manager.ProductRow]:
    return dict(_ensure_products_cache(context)["by_id"])


def tags_by_id(context: RuntimeContext) -> Dict[str, data_manager.TagRow]:
    return dict(_ensure_tags_cache(context)["by_id"])


def categories_by_id(context: RuntimeContext) -> Dict[str, data_manager.CategoryRow]:
    return dict(_ensure_categories_cache(context)["by_id"])


def _lookup(cache: Dict[str, Any], kind: EntityKind, record_id: str) -> Any:
    try:
        return cache["by_id"][record_id]
    except KeyError as exc:
        log.warning("%s lookup failed for id '%s'", kind.value.capitalize(), record_id)
        raise NotFoundError(kind.value, record_id) from exc


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    """Resolve a product record by its identifier.

    Raises:
        NotFoundError: If ``product_id`` is absent from the workbook.
    """
    return _lookup(_ensure_products_cache(context), EntityKind.PRODUCT, product_id)


def get_tag(context: RuntimeContext, tag_id: str) -> data_manager.TagRow:
    return _lookup(_ensure_tags_cache(context), EntityKind.TAG, tag_id)


def get_category(context: RuntimeContext, category_id: str) -> data_manager.CategoryRow:
    return _lookup(_ensure_categories_cache(context), EntityKind.CATEGORY, category_id)


def get_user(context: RuntimeContext, user_id: str) -> data_manager.UserRow:
    return _lookup(_ensure_users_cache(context), EntityKind.USER, user_id)


def get_transaction(context: RuntimeContext, transaction_id: str) -> data_manager.TransactionRow:
    """Resolve a transaction record by its identifier.

    Raises:
        TransactionNotFound: If ``transaction_id`` is not in the ledger.
    """
    cache = _ensure_transactions_cache(context)
    try:
        return cache["by_id"][transaction_id]
    except KeyError as exc:
        log.warning("Transaction lookup failed for id '%s'", transaction_id)
        raise TransactionNotFound(transaction_id) from exc


def find_user_by_username(context: RuntimeContext, username: str) -> Optional[data_manager.UserRow]:
    """Return the user whose username matches case-insensitively, if any."""
    wanted = username.strip().casefold()
    for user in _ensure_users_cache(context)["all"]:
        if user.username.casefold() == wanted:
            return user
    return None


def authenticate(context: RuntimeContext, username: str, password: str) -> data_manager.UserRow:
    """Resolve the acting user from credentials.

    Raises:
        AuthorizationDenied: If the username is unknown or the password does
            not match. Both cases carry the same reason.
    """
    user = find_user_by_username(context, username)
    if user is None or not verify_password(password, user.password_hash):
        log.warning("Authentication failed for username '%s'", username)
        raise AuthorizationDenied(username, reason="invalid username or password")
    log.info("Authenticated user '%s'", user.username)
    return user


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def require_positive_quantity(quantity: int) -> None:
    """Validate that a quantity is a strictly positive integer.

    Raises:
        ValueError: If ``quantity`` is not an ``int`` or is zero or negative.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        log.error("Quantity must be an integer, received %r", quantity)
        raise ValueError("Quantity must be a whole number")
    if quantity <= 0:
        log.error("Quantity must be positive, received %s", quantity)
        raise ValueError("Quantity must be greater than zero")


def require_nonnegative_quantity(quantity: int) -> None:
    """Validate that a quantity is an integer greater than or equal to zero."""
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        log.error("Quantity must be an integer, received %r", quantity)
        raise ValueError("Quantity must be a whole number")
    if quantity < 0:
        log.error("Quantity must not be negative, received %s", quantity)
        raise ValueError("Quantity must not be negative")


def require_name(value: Optional[str], what: str) -> str:
    """Return ``value`` stripped, rejecting blanks with ``ValueError``."""
    cleaned = (value or "").strip()
    if not cleaned:
        log.error("%s must not be blank", what)
        raise ValueError(f"{what} must not be blank")
    return cleaned


def _require_existing(context: RuntimeContext, kind: EntityKind, ids: Iterable[str]) -> frozenset[str]:
    resolved = frozenset(ids)
    getter = get_tag if kind is EntityKind.TAG else get_category
    for record_id in resolved:
        getter(context, record_id)
    return resolved


def random_tag_color() -> str:
    return f"hsl({random.randint(0, 359)}, 70%, 80%)"


# ---------------------------------------------------------------------------
# Catalog: products, tags, categories
# ---------------------------------------------------------------------------


def create_product(
    context: RuntimeContext,
    actor: data_manager.UserRow,
    name: str,
    *,
    tag_ids: Iterable[str] = (),
    category_ids: Iterable[str] = (),
    initial_quantity: int = 0,
    timestamp: Optional[datetime] = None,
) -> data_manager.ProductRow:
    """Create a product with an opening balance.

    ``initial_quantity`` is the product's opening stock. It is not written to
    the ledger, so the product's quantity always equals this opening balance
    plus the sum of its later transactions.

    Raises:
        ValueError: If the name is blank or the opening balance is negative.
        NotFoundError: If a tag or category id does not exist.
        ConstraintViolation: If the name is already used by another product.
    """
    product_name = require_name(name, "Product name")
    require_nonnegative_quantity(initial_quantity)
    tags = _require_existing(context, EntityKind.TAG, tag_ids)
    categories = _require_existing(context, EntityKind.CATEGORY, category_ids)
    when = _resolve_timestamp(timestamp)

    product = data_manager.ProductRow(
        product_id=data_manager.generate_record_id(PRODUCT_ID_PREFIX, when=when),
        name=product_name,
        quantity=initial_quantity,
        tag_ids=tags,
        category_ids=categories,
        last_updated=when.isoformat(),
    )
    with atomic(context):
        data_manager.upsert_record(context.workbook, EntityKind.PRODUCT, product)
        audit.record(
            context.workbook,
            actor,
            LogAction.CREATE_PRODUCT,
            f"Created product '{product_name}' with quantity {initial_quantity}",
            when=when,
        )
    log.info("Created product '%s' (%s)", product.product_id, product_name)
    return product


def update_product(
    context: RuntimeContext,
    actor: data_manager.UserRow,
    product_id: str,
    *,
    name: Optional[str] = None,
    tag_ids: Optional[Iterable[str]] = None,
    category_ids: Optional[Iterable[str]] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.ProductRow:
    """Change a product's name, tags, or categories.

    Arguments left as ``None`` keep their current value. Quantity can only
    change through the ledger operations.
    """
    current = get_product(context, product_id)
    when = _resolve_timestamp(timestamp)
    updated = replace(
        current,
        name=require_name(name, "Product name") if name is not None else current.name,
        tag_ids=_require_existing(context, EntityKind.TAG, tag_ids) if tag_ids is not None else current.tag_ids,
        category_ids=(
            _require_existing(context, EntityKind.CATEGORY, category_ids)
            if category_ids is not None
            else current.category_ids
        ),
        last_updated=when.isoformat(),
    )
    with atomic(context):
        data_manager.upsert_record(context.workbook, EntityKind.PRODUCT, updated)
        audit.record(
            context.workbook,
            actor,
            LogAction.UPDATE_PRODUCT,
            f"Updated product '{updated.name}'",
            when=when,
        )
    log.info("Updated product '%s'", product_id)
    return updated


def delete_product(
    context: RuntimeContext,
    actor: data_manager.UserRow,
    product_id: str,
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.ProductRow:
    """Delete a product; its transactions stay in the ledger as orphans."""
    product = get_product(context, product_id)
    when = _resolve_timestamp(timestamp)
    with atomic(context):
        data_manager.delete_record(context.workbook, EntityKind.PRODUCT, product_id)
        audit.record(
            context.workbook,
            actor,
            LogAction.DELETE_PRODUCT,
            f"Deleted product '{product.name}'",
            when=when,
        )
    log.info("Deleted product '%s'", product_id)
    return product


def create_tag(
    context: RuntimeContext,
    actor: data_manager.UserRow,
    name: str,
    *,
    color: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.TagRow:
    tag_name = require_name(name, "Tag name")
    when = _resolve_timestamp(timestamp)
    tag = data_manager.TagRow(
        tag_id=data_manager.generate_record_id(TAG_ID_PREFIX, when=when),
        name=tag_name,
        color=color or random_tag_color(),
    )
    with atomic(context):
        data_manager.upsert_record(context.workbook, EntityKind.TAG, tag)
        audit.record(context.workbook, actor, LogAction.CREATE_TAG, f"Created tag '{tag_name}'", when=when)
    log.info("Created tag '%s' (%s)", tag.tag_id, tag_name)
    return tag


def rename_tag(
    context: RuntimeContext,
    actor: data_manager.UserRow,
    tag_id: str,
    name: str,
    *,
    color: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.TagRow:
    current = get_tag(context, tag_id)
    updated = replace(current, name=require_name(name, "Tag name"), color=color or current.color)
    when = _resolve_timestamp(timestamp)
    with atomic(context):
        data_manager.upsert_record(context.workbook, EntityKind.TAG, updated)
        audit.record(
            context.workbook,
            actor,
            LogAction.UPDATE_TAG,
            f"Renamed tag '{current.name}' to '{updated.name}'",
            when=when,
        )
    log.info("Updated tag '%s'", tag_id)
    return updated


def delete_tag(
    context: RuntimeContext,
    actor: data_manager.UserRow,
    tag_id: str,
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.TagRow:
    """Delete a tag and unlink it from every product."""
    tag = get_tag(context, tag_id)
    when = _resolve_timestamp(timestamp)
    with atomic(context):
        data_manager.delete_record(context.workbook, EntityKind.TAG, tag_id)
        audit.record(context.workbook, actor, LogAction.DELETE_TAG, f"Deleted tag '{tag.name}'", when=when)
    log.info("Deleted tag '%s'", tag_id)
    return tag


def create_category(
    context: RuntimeContext,
    actor: data_manager.UserRow,
    name: str,
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.CategoryRow:
    category_name = require_name(name, "Category name")
    when = _resolve_timestamp(timestamp)
    category = data_manager.CategoryRow(
        category_id=data_manager.generate_record_id(CATEGORY_ID_PREFIX, when=when),
        name=category_name,
    )
    with atomic(context):
        data_manager.upsert_record(context.workbook, EntityKind.CATEGORY, category)
        audit.record(
            context.workbook,
            actor,
            LogAction.CREATE_CATEGORY,
            f"Created category '{category_name}'",
            when=when,
        )
    log.info("Created category '%s' (%s)", category.category_id, category_name)
    return category


def rename_category(
    context: RuntimeContext,
    actor: data_manager.UserRow,
    category_id: str,
    name: str,
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.CategoryRow:
    current = get_category(context, category_id)
    updated = replace(current, name=require_name(name, "Category name"))
    when = _resolve_timestamp(timestamp)
    with atomic(context):
        data_manager.upsert_record(context.workbook, EntityKind.CATEGORY, updated)
        audit.record(
            context.workbook,
            actor,
            LogAction.UPDATE_CATEGORY,
            f"Renamed category '{current.name}' to '{updated.name}'",
            when=when,
        )
    log.info("Updated category '%s'", category_id)
    return updated


def delete_category(
    context: RuntimeContext,
    actor: data_manager.UserRow,
    category_id: str,
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.CategoryRow:
    """Delete a category and unlink it from every product and user scope."""
    category = get_category(context, category_id)
    when = _resolve_timestamp(timestamp)
    with atomic(context):
        data_manager.delete_record(context.workbook, EntityKind.CATEGORY, category_id)
        audit.record(
            context.workbook,
            actor,
            LogAction.DELETE_CATEGORY,
            f"Deleted category '{category.name}'",
            when=when,
        )
    log.info("Deleted category '%s'", category_id)
    return category


# ---------------------------------------------------------------------------
# Ledger engine
# ---------------------------------------------------------------------------


def post_invoice(
    context: RuntimeContext,
    actor: data_manager.UserRow,
    command: InvoiceCommand,
) -> List[data_manager.TransactionRow]:
    """Post a purchase or sale invoice as one atomic unit.

    Every line is validated before the first write: quantities must be
    positive integers, products must exist, and for sales each line must not
    exceed the stock available to it. One transaction is written per line,
    all sharing one timestamp, and each product's quantity moves by the
    line's signed change. A single activity entry summarizes the invoice.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        actor (data_manager.UserRow): User posting the invoice.
        command (InvoiceCommand): Invoice type, reference, and lines.

    Returns:
        list[data_manager.TransactionRow]: The posted transactions in line
            order.

    Raises:
        ValueError: If the type is not purchase or sale, there are no lines,
            or a quantity is not a positive integer.
        NotFoundError: If a line references an unknown product.
        InsufficientStock: If a sale line exceeds available stock. Nothing
            is posted.
    """
    try:
        transaction_type = TransactionType(command.transaction_type)
    except ValueError as exc:
        log.error("Unsupported invoice type: %s", command.transaction_type)
        raise ValueError(f"Unsupported invoice type: {command.transaction_type}") from exc
    if transaction_type not in INVOICE_TYPES:
        log.error("Unsupported invoice type: %s", transaction_type.value)
        raise ValueError(f"Invoices must be purchase or sale, not {transaction_type.value}")
    if not command.lines:
        log.error("Invoice rejected: no line items")
        raise ValueError("An invoice needs at least one line item")

    # Running balances so repeated products are checked against what earlier
    # lines of the same invoice leave behind.
    balances: Dict[str, data_manager.ProductRow] = {}
    for line in command.lines:
        require_positive_quantity(line.quantity)
        product = balances.get(line.product_id) or get_product(context, line.product_id)
        if transaction_type is TransactionType.SALE and line.quantity > product.quantity:
            log.warning(
                "Sale rejected: product '%s' requested %s, available %s",
                line.product_id,
                line.quantity,
                product.quantity,
            )
            raise InsufficientStock(line.product_id, line.quantity, product.quantity)
        change = line.quantity if transaction_type is TransactionType.PURCHASE else -line.quantity
        balances[line.product_id] = replace(product, quantity=product.quantity + change)

    reference = command.invoice_number.strip() or DEFAULT_INVOICE_REFERENCES[transaction_type]
    when = _resolve_timestamp(command.timestamp)
    stamp = when.isoformat()
    posted: List[data_manager.TransactionRow] = []
    with atomic(context):
        for line in command.lines:
            change = line.quantity if transaction_type is TransactionType.PURCHASE else -line.quantity
            transaction = data_manager.TransactionRow(
                transaction_id=data_manager.generate_record_id(TRANSACTION_ID_PREFIX, when=when),
                transaction_type=transaction_type.value,
                invoice_number=reference,
                product_id=line.product_id,
                quantity_change=change,
                timestamp_iso=stamp,
            )
            data_manager.upsert_record(context.workbook, EntityKind.TRANSACTION, transaction)
            posted.append(transaction)
        for product in balances.values():
            data_manager.upsert_record(
                context.workbook,
                EntityKind.PRODUCT,
                replace(product, last_updated=stamp),
            )
        action = (
            LogAction.CREATE_INVOICE_PURCHASE
            if transaction_type is TransactionType.PURCHASE
            else LogAction.CREATE_INVOICE_SALE
        )
        total_units = sum(line.quantity for line in command.lines)
        audit.record(
            context.workbook,
            actor,
            action,
            f"Invoice '{reference}': {len(command.lines)} item(s), {total_units} unit(s)",
            when=when,
        )
    log.info(
        "Posted %s invoice '%s' with %d line(s)",
        transaction_type.value,
        reference,
        len(posted),
    )
    return posted


def recount_stock(
    context: RuntimeContext,
    actor: data_manager.UserRow,
    command: RecountCommand,
) -> data_manager.TransactionRow:
    """Replace a product's quantity with a counted value.

    One ``recount`` transaction records the difference (which may be zero),
    with the notes as its reference, and the product's quantity is set to the
    counted value directly.

    Raises:
        ValueError: If the new quantity is negative or the notes are blank.
        NotFoundError: If the product does not exist.
    """
    require_nonnegative_quantity(command.new_quantity)
    notes = require_name(command.notes, "Recount notes")
    product = get_product(context, command.product_id)
    change = command.new_quantity - product.quantity
    when = _resolve_timestamp(command.timestamp)
    stamp = when.isoformat()

    transaction = data_manager.TransactionRow(
        transaction_id=data_manager.generate_record_id(TRANSACTION_ID_PREFIX, when=when),
        transaction_type=TransactionType.RECOUNT.value,
        invoice_number=notes,
        product_id=product.product_id,
        quantity_change=change,
        timestamp_iso=stamp,
    )
    with atomic(context):
        data_manager.upsert_record(context.workbook, EntityKind.TRANSACTION, transaction)
        data_manager.upsert_record(
            context.workbook,
            EntityKind.PRODUCT,
            replace(product, quantity=command.new_quantity, last_updated=stamp),
        )
        audit.record(
            context.workbook,
            actor,
            LogAction.RECOUNT_STOCK,
            f"Recounted '{product.name}': {product.quantity} -> {command.new_quantity} ({notes})",
            when=when,
        )
    log.info(
        "Recounted product '%s' from %s to %s",
        product.product_id,
        product.quantity,
        command.new_quantity,
    )
    return transaction


def edit_transaction(
    context: RuntimeContext,
    actor: data_manager.UserRow,
    command: EditTransactionCommand,
) -> data_manager.TransactionRow:
    """Correct a transaction's quantity change and reference.

    The product's quantity moves by ``new - old``; the transaction's type and
    product never change. Orphaned transactions are edited without touching
    any product.

    Raises:
        TransactionNotFound: If the transaction id does not resolve.
        ValueError: If the new quantity change is not an integer.
        InsufficientStock: If the edit would take the product below zero.
    """
    if isinstance(command.quantity_change, bool) or not isinstance(command.quantity_change, int):
        log.error("Quantity change must be an integer, received %r", command.quantity_change)
        raise ValueError("Quantity change must be a whole number")

    original = get_transaction(context, command.transaction_id)
    delta = command.quantity_change - original.quantity_change
    product = products_by_id(context).get(original.product_id)
    if product is not None and product.quantity + delta < 0:
        log.warning(
            "Edit of transaction '%s' rejected: product '%s' would drop to %s",
            original.transaction_id,
            product.product_id,
            product.quantity + delta,
        )
        raise InsufficientStock(product.product_id, -delta, product.quantity)

    when = _resolve_timestamp(command.timestamp)
    stamp = when.isoformat()
    updated = replace(
        original,
        quantity_change=command.quantity_change,
        invoice_number=command.invoice_number.strip(),
        timestamp_iso=stamp,
    )
    with atomic(context):
        data_manager.upsert_record(context.workbook, EntityKind.TRANSACTION, updated)
        if product is not None and delta != 0:
            data_manager.upsert_record(
                context.workbook,
                EntityKind.PRODUCT,
                replace(product, quantity=product.quantity + delta, last_updated=stamp),
            )
        audit.record(
            context.workbook,
            actor,
            LogAction.UPDATE_TRANSACTION,
            (
                f"Transaction {original.transaction_id}: quantity change "
                f"{original.quantity_change} -> {updated.quantity_change}, reference '{updated.invoice_number}'"
            ),
            when=when,
        )
    log.info(
        "Edited transaction '%s' (delta=%s)",
        original.transaction_id,
        delta,
    )
    return updated


def delete_transaction(
    context: RuntimeContext,
    actor: data_manager.UserRow,
    transaction_id: str,
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.TransactionRow:
    """Reverse a transaction's effect on its product and remove it.

    When the product no longer exists the reversal is skipped and only the
    transaction row is removed.

    Raises:
        TransactionNotFound: If the transaction id does not resolve.
        InsufficientStock: If the reversal would take the product below zero.
    """
    transaction = get_transaction(context, transaction_id)
    product = products_by_id(context).get(transaction.product_id)
    if product is not None and product.quantity - transaction.quantity_change < 0:
        log.warning(
            "Deletion of transaction '%s' rejected: product '%s' would drop to %s",
            transaction_id,
            product.product_id,
            product.quantity - transaction.quantity_change,
        )
        raise InsufficientStock(product.product_id, transaction.quantity_change, product.quantity)

    when = _resolve_timestamp(timestamp)
    with atomic(context):
        if product is not None:
            data_manager.upsert_record(
                context.workbook,
                EntityKind.PRODUCT,
                replace(
                    product,
                    quantity=product.quantity - transaction.quantity_change,
                    last_updated=when.isoformat(),
                ),
            )
        data_manager.delete_record(context.workbook, EntityKind.TRANSACTION, transaction_id)
        audit.record(
            context.workbook,
            actor,
            LogAction.DELETE_TRANSACTION,
            (
                f"Deleted {transaction.transaction_type} transaction {transaction_id} "
                f"({transaction.quantity_change:+d}, reference '{transaction.invoice_number}')"
            ),
            when=when,
        )
    log.info("Deleted transaction '%s'", transaction_id)
    return transaction


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def _require_permissions(values: Iterable[str]) -> frozenset[str]:
    resolved = set()
    for value in values:
        try:
            resolved.add(Permission(value).value)
        except ValueError as exc:
            log.error("Unknown permission '%s'", value)
            raise ValueError(f"Unknown permission: {value}") from exc
    return frozenset(resolved)


def _clean_prefixes(values: Iterable[str]) -> frozenset[str]:
    return frozenset(prefix.strip() for prefix in values if prefix and prefix.strip())


def save_user(
    context: RuntimeContext,
    actor: data_manager.UserRow,
    command: UserCommand,
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.UserRow:
    """Create a user, or update one when ``command.user_id`` is set.

    Permissions, allowed categories, and allowed prefixes are replaced
    wholesale. On update a blank password keeps the existing secret.

    Raises:
        ValueError: If the username is blank, a new user has no password, or
            a permission is unknown.
        NotFoundError: If the user or an allowed category does not exist.
        ConstraintViolation: If the username is taken.
    """
    username = require_name(command.username, "Username")
    permissions = _require_permissions(command.permissions)
    categories = _require_existing(context, EntityKind.CATEGORY, command.allowed_category_ids)
    prefixes = _clean_prefixes(command.allowed_tag_prefixes)
    when = _resolve_timestamp(timestamp)

    if command.user_id is None:
        if not command.password:
            log.error("New user '%s' rejected: password is required", username)
            raise ValueError("A password is required for new users")
        user = data_manager.UserRow(
            user_id=data_manager.generate_record_id(USER_ID_PREFIX, when=when),
            username=username,
            password_hash=hash_password(command.password),
            permissions=permissions,
            allowed_category_ids=categories,
            allowed_tag_prefixes=prefixes,
            profile_picture=command.profile_picture,
        )
        action, verb = LogAction.CREATE_USER, "Created"
    else:
        current = get_user(context, command.user_id)
        user = replace(
            current,
            username=username,
            password_hash=hash_password(command.password) if command.password else current.password_hash,
            permissions=permissions,
            allowed_category_ids=categories,
            allowed_tag_prefixes=prefixes,
            profile_picture=command.profile_picture if command.profile_picture is not None else current.profile_picture,
        )
        action, verb = LogAction.UPDATE_USER, "Updated"

    with atomic(context):
        data_manager.upsert_record(context.workbook, EntityKind.USER, user)
        audit.record(context.workbook, actor, action, f"{verb} user '{username}'", when=when)
    log.info("%s user '%s'", verb, username)
    return user


def delete_user(
    context: RuntimeContext,
    actor: data_manager.UserRow,
    user_id: str,
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.UserRow:
    """Delete another user account.

    Raises:
        BusinessRuleViolation: If ``actor`` tries to delete themselves.
        NotFoundError: If the user does not exist.
    """
    if user_id == actor.user_id:
        log.warning("User '%s' attempted to delete their own account", actor.username)
        raise BusinessRuleViolation("Users cannot delete their own account")
    user = get_user(context, user_id)
    when = _resolve_timestamp(timestamp)
    with atomic(context):
        data_manager.delete_record(context.workbook, EntityKind.USER, user_id)
        audit.record(context.workbook, actor, LogAction.DELETE_USER, f"Deleted user '{user.username}'", when=when)
    log.info("Deleted user '%s'", user.username)
    return user


def update_profile(
    context: RuntimeContext,
    actor: data_manager.UserRow,
    command: ProfileCommand,
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.UserRow:
    """Let ``actor`` change their own username, password, or picture.

    Raises:
        AuthorizationDenied: If the current password does not match.
        ConstraintViolation: If the new username is taken.
    """
    current = get_user(context, actor.user_id)
    if not verify_password(command.current_password, current.password_hash):
        log.warning("Profile update rejected for '%s': wrong current password", current.username)
        raise AuthorizationDenied(current.username, reason="current password is incorrect")

    updated = replace(
        current,
        username=require_name(command.username, "Username"),
        password_hash=hash_password(command.new_password) if command.new_password else current.password_hash,
        profile_picture=command.profile_picture if command.profile_picture is not None else current.profile_picture,
    )
    when = _resolve_timestamp(timestamp)
    with atomic(context):
        data_manager.upsert_record(context.workbook, EntityKind.USER, updated)
        audit.record(
            context.workbook,
            updated,
            LogAction.UPDATE_PROFILE,
            f"Updated own profile ('{current.username}' -> '{updated.username}')",
            when=when,
        )
    log.info("User '%s' updated their profile", updated.username)
    return updated


def seed_default_admin(context: RuntimeContext) -> data_manager.UserRow:
    """Make sure the declared administrator exists with every permission.

    1. If a user with the configured admin username exists, grant any
       permission it lacks.
    2. Otherwise, if a configured legacy username exists, rename that user
       to the admin username and grant missing permissions.
    3. Otherwise create the admin with the configured password.

    Running it again on a repaired store changes nothing.
    """
    settings = context.settings
    all_permissions = frozenset(permission.value for permission in Permission)

    admin = find_user_by_username(context, settings.admin_username)
    if admin is None:
        for legacy_name in settings.legacy_admin_usernames:
            legacy = find_user_by_username(context, legacy_name)
            if legacy is not None:
                log.info("Renaming legacy administrator '%s' to '%s'", legacy.username, settings.admin_username)
                admin = replace(legacy, username=settings.admin_username)
                break

    if admin is None:
        admin = data_manager.UserRow(
            user_id=data_manager.generate_record_id(USER_ID_PREFIX),
            username=settings.admin_username,
            password_hash=hash_password(settings.admin_password),
            permissions=all_permissions,
            allowed_category_ids=frozenset(),
            allowed_tag_prefixes=frozenset(),
        )
        log.info("Creating default administrator '%s'", settings.admin_username)
    else:
        missing = sorted(all_permissions - admin.permissions)
        admin = replace(admin, permissions=admin.permissions | all_permissions)
        if admin == get_user(context, admin.user_id):
            log.debug("Default administrator '%s' already in place", admin.username)
            return admin
        if missing:
            log.info("Granting administrator '%s' missing permissions: %s", admin.username, ", ".join(missing))

    with atomic(context):
        data_manager.upsert_record(context.workbook, EntityKind.USER, admin)
    return admin


# ---------------------------------------------------------------------------
# Backup and restore
# ---------------------------------------------------------------------------


def export_backup(
    context: RuntimeContext,
    actor: data_manager.UserRow,
    *,
    timestamp: Optional[datetime] = None,
) -> bytes:
    """Record a backup entry and return the whole store as a blob.

    The backup entry is written first so the blob contains it.
    """
    when = _resolve_timestamp(timestamp)
    with atomic(context):
        audit.record(context.workbook, actor, LogAction.DB_BACKUP, "Exported full store backup", when=when)
        blob = data_manager.export_all(context.workbook)
    log.info("Exported store backup (%d bytes)", len(blob))
    return blob


def restore_backup(
    context: RuntimeContext,
    actor: data_manager.UserRow,
    blob: bytes,
    *,
    timestamp: Optional[datetime] = None,
) -> None:
    """Replace the whole store with ``blob`` and log the restore into it.

    Callers should require the user to sign in again afterwards, since the
    restored store may hold different accounts.

    Raises:
        CorruptBlob: If the blob cannot be parsed. The store is unchanged.
    """
    when = _resolve_timestamp(timestamp)
    with atomic(context):
        data_manager.import_all(context.workbook, blob)
        audit.record(context.workbook, actor, LogAction.DB_RESTORE, "Restored store from backup", when=when)
    log.info("Restored store from backup (%d bytes)", len(blob))
