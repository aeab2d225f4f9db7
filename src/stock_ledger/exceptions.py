"""Typed exceptions raised by the stock ledger.

Callers catch by type and read the structured attributes rather than
parsing messages::

    InventoryError
    +-- NotFoundError
    |   +-- TransactionNotFound
    +-- ConstraintViolation
    +-- CorruptBlob
    +-- BusinessRuleViolation
    |   +-- InsufficientStock
    +-- AuthorizationDenied
"""

from __future__ import annotations

from typing import Optional


class InventoryError(Exception):
    """Base class for every domain error raised by the package."""


class NotFoundError(InventoryError):
    """Raised when an operation references an id the store does not hold."""

    def __init__(self, entity_kind: str, entity_id: str) -> None:
        self.entity_kind = entity_kind
        self.entity_id = entity_id
        super().__init__(f"Unknown {entity_kind} id: {entity_id}")


class TransactionNotFound(NotFoundError):
    """Raised when a transaction id does not resolve."""

    def __init__(self, transaction_id: str) -> None:
        super().__init__("transaction", transaction_id)


class ConstraintViolation(InventoryError):
    """Raised when a unique name collides with a different record."""

    def __init__(self, entity_kind: str, field: str, value: str) -> None:
        self.entity_kind = entity_kind
        self.field = field
        self.value = value
        super().__init__(f"A {entity_kind} with {field} '{value}' already exists")


class CorruptBlob(InventoryError):
    """Raised when a backup blob cannot be parsed into the store schema."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Backup could not be restored: {reason}")


class BusinessRuleViolation(InventoryError):
    """Raised when a requested operation violates a domain constraint."""


class InsufficientStock(BusinessRuleViolation):
    """Raised when a change would take a product below zero on hand."""

    def __init__(self, product_id: str, requested: int, available: int) -> None:
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for product '{product_id}': "
            f"requested {requested}, available {available}"
        )


class AuthorizationDenied(InventoryError):
    """Raised by callers when the acting user may not perform an action."""

    def __init__(self, username: Optional[str], permission: Optional[str] = None, *, reason: Optional[str] = None) -> None:
        self.username = username
        self.permission = permission
        if reason is None:
            reason = f"missing permission {permission}" if permission else "access denied"
        self.reason = reason
        super().__init__(f"User '{username}' is not authorized: {reason}")


__all__ = [
    "InventoryError",
    "NotFoundError",
    "TransactionNotFound",
    "ConstraintViolation",
    "CorruptBlob",
    "BusinessRuleViolation",
    "InsufficientStock",
    "AuthorizationDenied",
]
