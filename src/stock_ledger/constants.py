"""Enumerations shared across the stock ledger modules.

Keeps the store layer, the ledger engine, and the command line speaking the
same identifiers for transaction types, permissions, audit actions, and
worksheet names.
"""

from __future__ import annotations

from enum import Enum


# Version stamped into the Meta sheet of every store this code writes.
EXPECTED_SCHEMA_VERSION = "2.0.0"
# Stores without a Meta sheet predate multi-tag/multi-category products.
LEGACY_SCHEMA_VERSION = "1.0.0"

DEFAULT_LOW_STOCK_THRESHOLD = 100


class TransactionType(str, Enum):
    """Enumerate the transaction types recorded in the ledger."""

    PURCHASE = "purchase"
    SALE = "sale"
    ADJUSTMENT = "adjustment"
    RECOUNT = "recount"


INVOICE_TYPES: tuple[TransactionType, ...] = (
    TransactionType.PURCHASE,
    TransactionType.SALE,
)


class Permission(str, Enum):
    """Enumerate the closed set of permissions a user may hold."""

    MANAGE_USERS = "CAN_MANAGE_USERS"
    ADD_PRODUCTS = "CAN_ADD_PRODUCTS"
    EDIT_PRODUCTS = "CAN_EDIT_PRODUCTS"
    DELETE_PRODUCTS = "CAN_DELETE_PRODUCTS"
    PERFORM_TRANSACTIONS = "CAN_PERFORM_TRANSACTIONS"
    EDIT_TRANSACTIONS = "CAN_EDIT_TRANSACTIONS"
    DELETE_TRANSACTIONS = "CAN_DELETE_TRANSACTIONS"
    EXPORT_DATA = "CAN_EXPORT_DATA"
    BACKUP_RESTORE = "CAN_BACKUP_RESTORE"
    VIEW_LOGS = "CAN_VIEW_LOGS"
    RECOUNT_STOCK = "CAN_RECOUNT_STOCK"


class LogAction(str, Enum):
    """Enumerate the action kinds written to the activity log."""

    CREATE_PRODUCT = "CREATE_PRODUCT"
    UPDATE_PRODUCT = "UPDATE_PRODUCT"
    DELETE_PRODUCT = "DELETE_PRODUCT"
    CREATE_INVOICE_PURCHASE = "CREATE_INVOICE_PURCHASE"
    CREATE_INVOICE_SALE = "CREATE_INVOICE_SALE"
    UPDATE_TRANSACTION = "UPDATE_TRANSACTION"
    DELETE_TRANSACTION = "DELETE_TRANSACTION"
    RECOUNT_STOCK = "RECOUNT_STOCK"
    CREATE_USER = "CREATE_USER"
    UPDATE_USER = "UPDATE_USER"
    DELETE_USER = "DELETE_USER"
    UPDATE_PROFILE = "UPDATE_PROFILE"
    CREATE_TAG = "CREATE_TAG"
    UPDATE_TAG = "UPDATE_TAG"
    DELETE_TAG = "DELETE_TAG"
    CREATE_CATEGORY = "CREATE_CATEGORY"
    UPDATE_CATEGORY = "UPDATE_CATEGORY"
    DELETE_CATEGORY = "DELETE_CATEGORY"
    DB_BACKUP = "DB_BACKUP"
    DB_RESTORE = "DB_RESTORE"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the store."""

    META = "Meta"
    PRODUCTS = "Products"
    TAGS = "Tags"
    CATEGORIES = "Categories"
    TRANSACTIONS = "Transactions"
    USERS = "Users"
    USER_PERMISSIONS = "UserPermissions"
    PRODUCT_TAGS = "ProductTags"
    PRODUCT_CATEGORIES = "ProductCategories"
    USER_CATEGORIES = "UserCategories"
    USER_TAG_PREFIXES = "UserTagPrefixes"
    ACTIVITY_LOG = "ActivityLog"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "LEGACY_SCHEMA_VERSION",
    "DEFAULT_LOW_STOCK_THRESHOLD",
    "TransactionType",
    "INVOICE_TYPES",
    "Permission",
    "LogAction",
    "SheetName",
]
