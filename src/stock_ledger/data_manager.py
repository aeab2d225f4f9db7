"""Data access layer for the stock ledger.

This module reads from and writes to the store workbook. Business rules live
in :mod:`stock_ledger.core_logic`; nothing here validates quantities or
permissions.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, upgrading, validating, and persisting the
   Excel file.
3. Entity operations: typed records per entity kind with ``get``/``upsert``/
   ``delete`` semantics, unique-name checks, and cascade rules.
4. Whole-store snapshots: in-memory snapshots used by the atomic unit, and
   export/import of the entire store as an opaque blob.
"""


from __future__ import annotations

import configparser
import io
import uuid
import zipfile
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

import openpyxl
from openpyxl.styles import Font
from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.workbook import Workbook

from . import log
from .constants import (
    DEFAULT_LOW_STOCK_THRESHOLD,
    EXPECTED_SCHEMA_VERSION,
    LEGACY_SCHEMA_VERSION,
    SheetName,
    TransactionType,
)
from .exceptions import ConstraintViolation, CorruptBlob, NotFoundError


CONFIG_FILE_NAME = "config.ini"
SCHEMA_VERSION_KEY = "SchemaVersion"

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.META.value: ("Key", "Value"),
    SheetName.PRODUCTS.value: ("ProductID", "ProductName", "Quantity", "LastUpdated"),
    SheetName.TAGS.value: ("TagID", "TagName", "Color"),
    SheetName.CATEGORIES.value: ("CategoryID", "CategoryName"),
    SheetName.TRANSACTIONS.value: (
        "TransactionID",
        "TransactionType",
        "InvoiceNumber",
        "ProductID",
        "QuantityChange",
        "Timestamp",
    ),
    SheetName.USERS.value: ("UserID", "Username", "PasswordHash", "ProfilePicture"),
    SheetName.USER_PERMISSIONS.value: ("UserID", "Permission"),
    SheetName.PRODUCT_TAGS.value: ("ProductID", "TagID"),
    SheetName.PRODUCT_CATEGORIES.value: ("ProductID", "CategoryID"),
    SheetName.USER_CATEGORIES.value: ("UserID", "CategoryID"),
    SheetName.USER_TAG_PREFIXES.value: ("UserID", "Prefix"),
    SheetName.ACTIVITY_LOG.value: ("LogID", "Timestamp", "UserID", "Username", "Action", "Details"),
}

# Snapshot of every data row (header excluded) keyed by sheet name.
StoreSnapshot = Dict[str, List[tuple]]


class EntityKind(str, Enum):
    """Enumerate the entity kinds addressable through the generic store API."""

    PRODUCT = "product"
    TAG = "tag"
    CATEGORY = "category"
    TRANSACTION = "transaction"
    USER = "user"
    LOG = "log"


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    low_stock_threshold: int
    admin_username: str
    admin_password: str
    legacy_admin_usernames: tuple[str, ...] = ()


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a product with its tag and category links."""

    product_id: str
    name: str
    quantity: int
    tag_ids: frozenset[str]
    category_ids: frozenset[str]
    last_updated: str


@dataclass(frozen=True)
class TagRow:
    """In-memory view of a row from the ``Tags`` sheet."""

    tag_id: str
    name: str
    color: str


@dataclass(frozen=True)
class CategoryRow:
    """In-memory view of a row from the ``Categories`` sheet."""

    category_id: str
    name: str


@dataclass(frozen=True)
class TransactionRow:
    """In-memory view of a row from the ``Transactions`` sheet."""

    transaction_id: str
    transaction_type: str
    invoice_number: str
    product_id: str
    quantity_change: int
    timestamp_iso: str


@dataclass(frozen=True)
class UserRow:
    """In-memory view of a user with permissions and visibility scope."""

    user_id: str
    username: str
    password_hash: str
    permissions: frozenset[str]
    allowed_category_ids: frozenset[str]
    allowed_tag_prefixes: frozenset[str]
    profile_picture: Optional[str] = None


@dataclass(frozen=True)
class LogRow:
    """In-memory view of a row from the ``ActivityLog`` sheet."""

    log_id: str
    timestamp_iso: str
    user_id: str
    username: str
    action: str
    details: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

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
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` and ``[Admin]`` entries are mandatory. ``[Inventory]
    LowStockThreshold`` falls back to :data:`DEFAULT_LOW_STOCK_THRESHOLD` and
    ``[Admin] LegacyUsernames`` to an empty tuple. Relative ``DataFile`` paths
    are anchored to ``base_path`` (or the working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor relative data files.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing.
        ValueError: If the low-stock threshold is not a positive integer.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        admin_username = parser.get("Admin", "Username")
        admin_password = parser.get("Admin", "Password")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    threshold_raw = parser.get(
        "Inventory", "LowStockThreshold", fallback=str(DEFAULT_LOW_STOCK_THRESHOLD))
    try:
        low_stock_threshold = int(threshold_raw)
    except ValueError as exc:
        raise ValueError(f"LowStockThreshold must be an integer, got '{threshold_raw}'") from exc
    if low_stock_threshold <= 0:
        raise ValueError("LowStockThreshold must be greater than zero")

    legacy_raw = parser.get("Admin", "LegacyUsernames", fallback="")
    legacy_usernames = tuple(name.strip() for name in legacy_raw.split(",") if name.strip())

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        low_stock_threshold=low_stock_threshold,
        admin_username=admin_username.strip(),
        admin_password=admin_password,
        legacy_admin_usernames=legacy_usernames,
    )


def build_store_workbook() -> Workbook:
    """Return an empty in-memory store with every sheet and header in place."""

    workbook = openpyxl.Workbook()
    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    for sheet_name, columns in SHEET_COLUMNS.items():
        ensure_sheet(workbook, sheet_name, columns)
    write_schema_version(workbook, EXPECTED_SCHEMA_VERSION)
    return workbook


def ensure_sheet(workbook: Workbook, sheet_name: str, columns: Sequence[str]) -> bool:
    """Create ``sheet_name`` with a bold header row unless it already exists.

    Returns:
        bool: ``True`` when the sheet had to be created.
    """

    if sheet_name in workbook.sheetnames:
        return False
    bold_font = Font(bold=True)
    worksheet = workbook.create_sheet(title=sheet_name)
    for column_index, column_name in enumerate(columns, start=1):
        cell = worksheet.cell(row=1, column=column_index)
        cell.value = column_name
        cell.font = bold_font
    return True


def open_workbook(data_file: Path) -> Workbook:
    """Open the store workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the store workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def read_schema_version(workbook: Workbook) -> str:
    """Return the schema version stamped in the ``Meta`` sheet.

    Stores without a ``Meta`` sheet, or without a version entry, are reported
    as :data:`LEGACY_SCHEMA_VERSION`.
    """

    if SheetName.META.value not in workbook.sheetnames:
        return LEGACY_SCHEMA_VERSION
    for key, value in _iter_raw_rows(workbook, SheetName.META.value):
        if key == SCHEMA_VERSION_KEY and value is not None:
            return str(value)
    return LEGACY_SCHEMA_VERSION


def write_schema_version(workbook: Workbook, version: str) -> None:
    """Stamp ``version`` into the ``Meta`` sheet, replacing any prior value."""

    ensure_sheet(workbook, SheetName.META.value, SHEET_COLUMNS[SheetName.META.value])
    row_index = locate_row(workbook, SheetName.META.value, "Key", SCHEMA_VERSION_KEY)
    sheet = workbook[SheetName.META.value]
    if row_index is None:
        sheet.append([SCHEMA_VERSION_KEY, version])
    else:
        sheet.cell(row=row_index, column=2, value=version)


def upgrade_schema(workbook: Workbook) -> bool:
    """Bring a legacy store up to :data:`EXPECTED_SCHEMA_VERSION` in place.

    Legacy stores kept a single ``TagID`` and ``CategoryID`` column on the
    ``Products`` sheet and had no join sheets. The upgrade creates every
    missing sheet, moves the single links into ``ProductTags`` and
    ``ProductCategories``, drops the old columns, and stamps the new version.
    Running it against a current store is a no-op.

    Returns:
        bool: ``True`` when the workbook was modified.

    Raises:
        ValueError: If the store declares a schema version this code does not
            know how to upgrade.
    """

    version = read_schema_version(workbook)
    if version == EXPECTED_SCHEMA_VERSION:
        return False
    if version != LEGACY_SCHEMA_VERSION:
        log.error("Unsupported store schema version '%s'", version)
        raise ValueError(f"Unsupported store schema version: {version}")

    for sheet_name, columns in SHEET_COLUMNS.items():
        ensure_sheet(workbook, sheet_name, columns)
    moved_tags = _split_legacy_link_column(workbook, "TagID", SheetName.PRODUCT_TAGS.value)
    moved_categories = _split_legacy_link_column(workbook, "CategoryID", SheetName.PRODUCT_CATEGORIES.value)
    write_schema_version(workbook, EXPECTED_SCHEMA_VERSION)
    log.info(
        "Upgraded store schema %s -> %s (%d tag links, %d category links migrated)",
        version,
        EXPECTED_SCHEMA_VERSION,
        moved_tags,
        moved_categories,
    )
    return True


def _split_legacy_link_column(workbook: Workbook, column_name: str, link_sheet_name: str) -> int:
    """Move a legacy single-valued product column into a join sheet."""

    sheet = workbook[SheetName.PRODUCTS.value]
    header_map = _header_map(sheet)
    if column_name not in header_map:
        return 0

    column_index = header_map[column_name]
    product_index = header_map["ProductID"]
    link_sheet = workbook[link_sheet_name]
    moved = 0
    for row in sheet.iter_rows(min_row=2, values_only=True):
        product_id = row[product_index - 1]
        linked_id = row[column_index - 1]
        if product_id is None or linked_id in (None, ""):
            continue
        link_sheet.append([str(product_id), str(linked_id)])
        moved += 1
    sheet.delete_cols(column_index)
    return moved


def validate_schema(workbook: Workbook) -> None:
    """Verify every required sheet exists with the expected header row.

    Raises:
        ValueError: If a sheet is missing or its header does not match.
    """

    for sheet_name, columns in SHEET_COLUMNS.items():
        if sheet_name not in workbook.sheetnames:
            raise ValueError(f"Missing sheet: {sheet_name}")
        header = tuple(cell.value for cell in workbook[sheet_name][1])[: len(columns)]
        if header != tuple(columns):
            raise ValueError(f"Unexpected header on sheet '{sheet_name}': {header}")


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the lookup column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


def as_utc(moment: datetime) -> datetime:
    """Return ``moment`` expressed in UTC; naive values are taken as UTC.

    Stored timestamps are ISO strings compared lexically, which only orders
    them correctly when every value carries the same offset.
    """

    if moment.tzinfo is None or moment.utcoffset() is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def generate_record_id(prefix: str, *, when: Optional[datetime] = None) -> str:
    """Generate a sortable, collision-free record identifier.

    Args:
        prefix (str): Entity designator such as ``"P"`` or ``"TX"``.
        when (datetime | None): Timestamp embedded in the identifier. Defaults
            to the current UTC time.

    Returns:
        str: Identifier formed as ``{prefix}-{YYYYMMDDHHMMSSffffff}-{8 hex}``.

    The random suffix keeps ids unique when several records share one
    timestamp, as the lines of a single invoice do.
    """

    when = as_utc(when) if when is not None else datetime.now(UTC)
    return f"{prefix}-{when.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:8]}"


def _header_map(sheet: Any) -> Dict[str, int]:
    """Map header titles to 1-based column indices."""

    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1]) if cell.value is not None}


def _iter_raw_rows(workbook: Workbook, sheet_name: str) -> Iterable[tuple]:
    """Yield the data rows of ``sheet_name``, skipping fully empty rows."""

    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield raw


def _delete_rows_where(workbook: Workbook, sheet_name: str, column: str, value: str) -> int:
    """Delete every row whose ``column`` equals ``value``; returns the count."""

    sheet = workbook[sheet_name]
    col_index = _header_map(sheet)[column]
    matches = [
        row_idx
        for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2)
        if row[col_index - 1] is not None and str(row[col_index - 1]) == value
    ]
    # Bottom-up so earlier indices stay valid.
    for row_idx in reversed(matches):
        sheet.delete_rows(row_idx)
    return len(matches)


def _load_links(workbook: Workbook, sheet_name: str) -> Dict[str, set[str]]:
    """Group a two-column join sheet by its owner column."""

    links: Dict[str, set[str]] = {}
    for raw in _iter_raw_rows(workbook, sheet_name):
        owner, value = raw[0], raw[1]
        if owner is None or value is None:
            continue
        links.setdefault(str(owner), set()).add(str(value))
    return links


def _replace_links(workbook: Workbook, sheet_name: str, owner_id: str, values: Iterable[str]) -> None:
    """Replace every join row owned by ``owner_id`` with ``values``."""

    owner_column = SHEET_COLUMNS[sheet_name][0]
    _delete_rows_where(workbook, sheet_name, owner_column, owner_id)
    sheet = workbook[sheet_name]
    for value in sorted(set(values)):
        sheet.append([owner_id, value])


def _require_text(value: object, column: str) -> str:
    """Return ``value`` as text, rejecting blanks in mandatory columns."""

    if value is None or str(value).strip() == "":
        raise ValueError(f"Column '{column}' must not be blank")
    return str(value)


def _optional_text(value: object) -> Optional[str]:
    return str(value) if value is not None else None


def _to_int(value: object, column: str) -> int:
    """Coerce a cell value into ``int`` without silently truncating."""

    if value is None or isinstance(value, bool):
        raise ValueError(f"Column '{column}' must hold an integer")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"Column '{column}' must hold an integer, got {value}")
        return int(value)
    return int(str(value).strip())


def serialize_product(record: ProductRow) -> list[object]:
    return [record.product_id, record.name, record.quantity, record.last_updated]


def serialize_tag(record: TagRow) -> list[object]:
    return [record.tag_id, record.name, record.color]


def serialize_category(record: CategoryRow) -> list[object]:
    return [record.category_id, record.name]


def serialize_transaction(record: TransactionRow) -> list[object]:
    return [
        record.transaction_id,
        record.transaction_type,
        record.invoice_number,
        record.product_id,
        record.quantity_change,
        record.timestamp_iso,
    ]


def serialize_user(record: UserRow) -> list[object]:
    return [record.user_id, record.username, record.password_hash, record.profile_picture]


def serialize_log(record: LogRow) -> list[object]:
    return [
        record.log_id,
        record.timestamp_iso,
        record.user_id,
        record.username,
        record.action,
        record.details,
    ]


def deserialize_product(
    raw_row: Sequence[object],
    *,
    tag_ids: Iterable[str] = (),
    category_ids: Iterable[str] = (),
) -> ProductRow:
    """Convert a raw worksheet row plus its links into a :class:`ProductRow`.

    Raises:
        ValueError: If the id or name is blank or the quantity is not an
            integer.
    """

    product_id, name, quantity_raw, last_updated = raw_row[:4]
    return ProductRow(
        product_id=_require_text(product_id, "ProductID"),
        name=_require_text(name, "ProductName"),
        quantity=_to_int(quantity_raw, "Quantity"),
        tag_ids=frozenset(tag_ids),
        category_ids=frozenset(category_ids),
        last_updated=str(last_updated) if last_updated is not None else "",
    )


def deserialize_tag(raw_row: Sequence[object]) -> TagRow:
    tag_id, name, color = raw_row[:3]
    return TagRow(
        tag_id=_require_text(tag_id, "TagID"),
        name=_require_text(name, "TagName"),
        color=str(color) if color is not None else "",
    )


def deserialize_category(raw_row: Sequence[object]) -> CategoryRow:
    category_id, name = raw_row[:2]
    return CategoryRow(
        category_id=_require_text(category_id, "CategoryID"),
        name=_require_text(name, "CategoryName"),
    )


def deserialize_transaction(raw_row: Sequence[object]) -> TransactionRow:
    """Convert a raw worksheet row into a strongly typed transaction record.

    The transaction type must be one of :class:`TransactionType`; the
    quantity change must be an integer. A blank invoice number becomes an
    empty string.

    Raises:
        ValueError: If any mandatory column is blank or malformed.
    """

    (
        transaction_id,
        transaction_type,
        invoice_number,
        product_id,
        quantity_change_raw,
        timestamp_iso,
    ) = raw_row[:6]

    return TransactionRow(
        transaction_id=_require_text(transaction_id, "TransactionID"),
        transaction_type=TransactionType(_require_text(transaction_type, "TransactionType")).value,
        invoice_number=str(invoice_number) if invoice_number is not None else "",
        product_id=_require_text(product_id, "ProductID"),
        quantity_change=_to_int(quantity_change_raw, "QuantityChange"),
        timestamp_iso=_require_text(timestamp_iso, "Timestamp"),
    )


def deserialize_user(
    raw_row: Sequence[object],
    *,
    permissions: Iterable[str] = (),
    allowed_category_ids: Iterable[str] = (),
    allowed_tag_prefixes: Iterable[str] = (),
) -> UserRow:
    user_id, username, password_hash, profile_picture = raw_row[:4]
    return UserRow(
        user_id=_require_text(user_id, "UserID"),
        username=_require_text(username, "Username"),
        password_hash=_require_text(password_hash, "PasswordHash"),
        permissions=frozenset(permissions),
        allowed_category_ids=frozenset(allowed_category_ids),
        allowed_tag_prefixes=frozenset(allowed_tag_prefixes),
        profile_picture=_optional_text(profile_picture),
    )


def deserialize_log(raw_row: Sequence[object]) -> LogRow:
    log_id, timestamp_iso, user_id, username, action, details = raw_row[:6]
    return LogRow(
        log_id=_require_text(log_id, "LogID"),
        timestamp_iso=_require_text(timestamp_iso, "Timestamp"),
        user_id=str(user_id) if user_id is not None else "",
        username=str(username) if username is not None else "",
        action=_require_text(action, "Action"),
        details=str(details) if details is not None else "",
    )


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over products, attaching their tag and category links."""

    tag_links = _load_links(workbook, SheetName.PRODUCT_TAGS.value)
    category_links = _load_links(workbook, SheetName.PRODUCT_CATEGORIES.value)
    for raw in _iter_raw_rows(workbook, SheetName.PRODUCTS.value):
        product_id = str(raw[0])
        yield deserialize_product(
            raw,
            tag_ids=tag_links.get(product_id, ()),
            category_ids=category_links.get(product_id, ()),
        )


def iter_tags(workbook: Workbook) -> Iterable[TagRow]:
    for raw in _iter_raw_rows(workbook, SheetName.TAGS.value):
        yield deserialize_tag(raw)


def iter_categories(workbook: Workbook) -> Iterable[CategoryRow]:
    for raw in _iter_raw_rows(workbook, SheetName.CATEGORIES.value):
        yield deserialize_category(raw)


def iter_transactions(workbook: Workbook) -> Iterable[TransactionRow]:
    """Stream transaction records in insertion (sheet) order."""

    for raw in _iter_raw_rows(workbook, SheetName.TRANSACTIONS.value):
        yield deserialize_transaction(raw)


def iter_users(workbook: Workbook) -> Iterable[UserRow]:
    """Iterate over users, attaching permissions and visibility scope."""

    permissions = _load_links(workbook, SheetName.USER_PERMISSIONS.value)
    categories = _load_links(workbook, SheetName.USER_CATEGORIES.value)
    prefixes = _load_links(workbook, SheetName.USER_TAG_PREFIXES.value)
    for raw in _iter_raw_rows(workbook, SheetName.USERS.value):
        user_id = str(raw[0])
        yield deserialize_user(
            raw,
            permissions=permissions.get(user_id, ()),
            allowed_category_ids=categories.get(user_id, ()),
            allowed_tag_prefixes=prefixes.get(user_id, ()),
        )


def iter_logs(workbook: Workbook) -> Iterable[LogRow]:
    for raw in _iter_raw_rows(workbook, SheetName.ACTIVITY_LOG.value):
        yield deserialize_log(raw)


def _write_product_links(workbook: Workbook, record: ProductRow) -> None:
    _replace_links(workbook, SheetName.PRODUCT_TAGS.value, record.product_id, record.tag_ids)
    _replace_links(workbook, SheetName.PRODUCT_CATEGORIES.value, record.product_id, record.category_ids)


def _write_user_links(workbook: Workbook, record: UserRow) -> None:
    _replace_links(workbook, SheetName.USER_PERMISSIONS.value, record.user_id, record.permissions)
    _replace_links(workbook, SheetName.USER_CATEGORIES.value, record.user_id, record.allowed_category_ids)
    _replace_links(workbook, SheetName.USER_TAG_PREFIXES.value, record.user_id, record.allowed_tag_prefixes)


@dataclass(frozen=True)
class _TableSpec:
    """Describe how one entity kind maps onto its worksheet."""

    sheet: str
    key_column: str
    id_attr: str
    iterate: Callable[[Workbook], Iterable[Any]]
    serialize: Callable[[Any], list[object]]
    unique_column: Optional[str] = None
    unique_attr: Optional[str] = None
    write_links: Optional[Callable[[Workbook, Any], None]] = None
    # (sheet, column) pairs whose rows are removed alongside the record.
    cascades: tuple[tuple[str, str], ...] = ()


_TABLES: Mapping[EntityKind, _TableSpec] = {
    EntityKind.PRODUCT: _TableSpec(
        sheet=SheetName.PRODUCTS.value,
        key_column="ProductID",
        id_attr="product_id",
        iterate=iter_products,
        serialize=serialize_product,
        unique_column="ProductName",
        unique_attr="name",
        write_links=_write_product_links,
        cascades=(
            (SheetName.PRODUCT_TAGS.value, "ProductID"),
            (SheetName.PRODUCT_CATEGORIES.value, "ProductID"),
        ),
    ),
    EntityKind.TAG: _TableSpec(
        sheet=SheetName.TAGS.value,
        key_column="TagID",
        id_attr="tag_id",
        iterate=iter_tags,
        serialize=serialize_tag,
        unique_column="TagName",
        unique_attr="name",
        cascades=((SheetName.PRODUCT_TAGS.value, "TagID"),),
    ),
    EntityKind.CATEGORY: _TableSpec(
        sheet=SheetName.CATEGORIES.value,
        key_column="CategoryID",
        id_attr="category_id",
        iterate=iter_categories,
        serialize=serialize_category,
        unique_column="CategoryName",
        unique_attr="name",
        cascades=(
            (SheetName.PRODUCT_CATEGORIES.value, "CategoryID"),
            (SheetName.USER_CATEGORIES.value, "CategoryID"),
        ),
    ),
    EntityKind.TRANSACTION: _TableSpec(
        sheet=SheetName.TRANSACTIONS.value,
        key_column="TransactionID",
        id_attr="transaction_id",
        iterate=iter_transactions,
        serialize=serialize_transaction,
    ),
    EntityKind.USER: _TableSpec(
        sheet=SheetName.USERS.value,
        key_column="UserID",
        id_attr="user_id",
        iterate=iter_users,
        serialize=serialize_user,
        unique_column="Username",
        unique_attr="username",
        write_links=_write_user_links,
        cascades=(
            (SheetName.USER_PERMISSIONS.value, "UserID"),
            (SheetName.USER_CATEGORIES.value, "UserID"),
            (SheetName.USER_TAG_PREFIXES.value, "UserID"),
        ),
    ),
    EntityKind.LOG: _TableSpec(
        sheet=SheetName.ACTIVITY_LOG.value,
        key_column="LogID",
        id_attr="log_id",
        iterate=iter_logs,
        serialize=serialize_log,
    ),
}


def iter_records(workbook: Workbook, kind: EntityKind) -> Iterable[Any]:
    """Iterate over every record of ``kind`` in sheet order."""

    return _TABLES[kind].iterate(workbook)


def get_record(workbook: Workbook, kind: EntityKind, record_id: str) -> Any:
    """Return the record of ``kind`` identified by ``record_id``.

    Raises:
        NotFoundError: If no such record exists.
    """

    spec = _TABLES[kind]
    for record in spec.iterate(workbook):
        if getattr(record, spec.id_attr) == record_id:
            return record
    raise NotFoundError(kind.value, record_id)


def find_by_name(workbook: Workbook, kind: EntityKind, name: str, *, exclude_id: Optional[str] = None) -> Optional[str]:
    """Return the id of the record whose unique name matches ``name``.

    Matching is case-insensitive. ``exclude_id`` skips the record being
    renamed so that changing only the case of a name is not a collision.
    """

    spec = _TABLES[kind]
    if spec.unique_column is None:
        raise KeyError(f"{kind.value} has no unique name column")

    sheet = workbook[spec.sheet]
    header_map = _header_map(sheet)
    key_index = header_map[spec.key_column]
    name_index = header_map[spec.unique_column]
    wanted = name.strip().casefold()
    for row in sheet.iter_rows(min_row=2, values_only=True):
        record_id = row[key_index - 1]
        value = row[name_index - 1]
        if record_id is None or value is None:
            continue
        if str(record_id) == exclude_id:
            continue
        if str(value).strip().casefold() == wanted:
            return str(record_id)
    return None


def upsert_record(workbook: Workbook, kind: EntityKind, record: Any) -> None:
    """Insert ``record`` when its id is absent, else overwrite the full row.

    Unique names are checked before any cell is written so a collision never
    leaves a half-applied record. Join rows for products and users are
    replaced wholesale. Activity log rows are append-only.

    Raises:
        ConstraintViolation: If the unique name collides, case-insensitively,
            with a different record.
        ValueError: If an existing activity log row would be overwritten.
    """

    spec = _TABLES[kind]
    record_id = getattr(record, spec.id_attr)

    if spec.unique_attr is not None:
        name = getattr(record, spec.unique_attr)
        if find_by_name(workbook, kind, name, exclude_id=record_id) is not None:
            log.warning("Unique name collision for %s '%s'", kind.value, name)
            raise ConstraintViolation(kind.value, spec.unique_attr, name)

    sheet = workbook[spec.sheet]
    values = spec.serialize(record)
    row_index = locate_row(workbook, spec.sheet, spec.key_column, record_id)
    if row_index is None:
        sheet.append(values)
    elif kind is EntityKind.LOG:
        raise ValueError("Activity log entries are append-only")
    else:
        for col, value in enumerate(values, start=1):
            sheet.cell(row=row_index, column=col, value=value)

    if spec.write_links is not None:
        spec.write_links(workbook, record)


def delete_record(workbook: Workbook, kind: EntityKind, record_id: str) -> None:
    """Delete a record and the join rows that reference it.

    Products cascade to their tag/category links only; their transactions
    stay in the ledger. Activity log rows cannot be deleted.

    Raises:
        NotFoundError: If no such record exists.
        ValueError: If ``kind`` is :attr:`EntityKind.LOG`.
    """

    if kind is EntityKind.LOG:
        raise ValueError("Activity log entries cannot be deleted")

    spec = _TABLES[kind]
    row_index = locate_row(workbook, spec.sheet, spec.key_column, record_id)
    if row_index is None:
        raise NotFoundError(kind.value, record_id)

    workbook[spec.sheet].delete_rows(row_index)
    for sheet_name, column in spec.cascades:
        removed = _delete_rows_where(workbook, sheet_name, column, record_id)
        if removed:
            log.debug("Cascaded delete of %s '%s' removed %d row(s) from %s", kind.value, record_id, removed, sheet_name)


def snapshot_workbook(workbook: Workbook) -> StoreSnapshot:
    """Capture every non-empty data row of every store sheet."""

    return {
        sheet_name: [tuple(row) for row in _iter_raw_rows(workbook, sheet_name)]
        for sheet_name in SHEET_COLUMNS
        if sheet_name in workbook.sheetnames
    }


def restore_workbook(workbook: Workbook, snapshot: StoreSnapshot) -> None:
    """Replace the data rows of each sheet in ``snapshot``; headers are kept."""

    for sheet_name, rows in snapshot.items():
        if sheet_name not in workbook.sheetnames:
            ensure_sheet(workbook, sheet_name, SHEET_COLUMNS[sheet_name])
        sheet = workbook[sheet_name]
        if sheet.max_row > 1:
            sheet.delete_rows(2, sheet.max_row - 1)
        for row in rows:
            if any(cell is not None for cell in row):
                sheet.append(list(row))


def export_all(workbook: Workbook) -> bytes:
    """Serialize the whole store as an opaque xlsx blob."""

    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def parse_blob(blob: bytes) -> StoreSnapshot:
    """Parse and validate a store blob without touching any live workbook.

    Legacy-shaped blobs are upgraded before validation. Every row of every
    entity kind must deserialize.

    Raises:
        CorruptBlob: If the blob is not a loadable workbook or does not match
            the store schema.
    """

    try:
        incoming = openpyxl.load_workbook(io.BytesIO(blob))
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError, TypeError, ValueError, EOFError) as exc:
        log.error("Backup blob is not a readable workbook: %s", exc)
        raise CorruptBlob("not a readable workbook") from exc

    try:
        upgrade_schema(incoming)
        validate_schema(incoming)
        for kind in EntityKind:
            for _ in iter_records(incoming, kind):
                pass
    except (KeyError, TypeError, ValueError) as exc:
        log.error("Backup blob does not match the store schema: %s", exc)
        raise CorruptBlob(str(exc)) from exc

    return snapshot_workbook(incoming)


def import_all(workbook: Workbook, blob: bytes) -> None:
    """Replace the entire store with the contents of ``blob``.

    Parsing and validation complete before the first row of ``workbook`` is
    touched, so a :class:`CorruptBlob` leaves the previous store intact.
    """

    snapshot = parse_blob(blob)
    restore_workbook(workbook, snapshot)
    write_schema_version(workbook, EXPECTED_SCHEMA_VERSION)
