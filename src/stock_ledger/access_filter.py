"""Per-user visibility and permission predicates.

A user restricted by allowed categories and/or allowed tag-name prefixes sees
only the products that satisfy every configured restriction. Each restriction
is an any-match: one shared category, or one tag whose name starts with one
of the prefixes, is enough. An empty restriction means "no restriction".

Transactions inherit visibility from the product they reference. Orphaned
transactions (whose product was deleted) are hidden from restricted users.
"""

from __future__ import annotations

from typing import Iterable, List, Mapping, Optional, Union

from . import log
from .constants import Permission
from .data_manager import ProductRow, TagRow, TransactionRow, UserRow
from .exceptions import AuthorizationDenied


def is_unrestricted(user: UserRow) -> bool:
    return not user.allowed_category_ids and not user.allowed_tag_prefixes


def _matches_prefix(tag_name: str, prefixes: Iterable[str]) -> bool:
    lowered = tag_name.casefold()
    return any(lowered.startswith(prefix.casefold()) for prefix in prefixes)


def is_product_visible(user: UserRow, product: ProductRow, tags_by_id: Mapping[str, TagRow]) -> bool:
    """Decide whether ``user`` may see ``product``.

    Args:
        user (UserRow): Acting user and their visibility configuration.
        product (ProductRow): Product under consideration.
        tags_by_id (Mapping[str, TagRow]): Tag lookup used to resolve the
            product's tag names. Tag ids missing from the mapping never match
            a prefix.

    Returns:
        bool: ``True`` when every configured restriction is satisfied.
    """

    return links_in_scope(user, product.tag_ids, product.category_ids, tags_by_id)


def links_in_scope(
    user: UserRow,
    tag_ids: Iterable[str],
    category_ids: Iterable[str],
    tags_by_id: Mapping[str, TagRow],
) -> bool:
    """Return ``True`` when a product carrying these links would be visible to ``user``."""

    if is_unrestricted(user):
        return True

    if user.allowed_category_ids and not (frozenset(category_ids) & user.allowed_category_ids):
        return False

    if user.allowed_tag_prefixes:
        tag_names = [tags_by_id[tag_id].name for tag_id in tag_ids if tag_id in tags_by_id]
        if not any(_matches_prefix(name, user.allowed_tag_prefixes) for name in tag_names):
            return False

    return True


def filter_products(
    user: UserRow,
    products: Iterable[ProductRow],
    tags_by_id: Mapping[str, TagRow],
) -> List[ProductRow]:
    """Return the products visible to ``user``, preserving input order."""

    return [product for product in products if is_product_visible(user, product, tags_by_id)]


def filter_transactions(
    user: UserRow,
    transactions: Iterable[TransactionRow],
    products_by_id: Mapping[str, ProductRow],
    tags_by_id: Mapping[str, TagRow],
) -> List[TransactionRow]:
    """Return the transactions whose product is visible to ``user``.

    Unrestricted users see every transaction, including orphans. For
    restricted users a transaction whose product is absent from
    ``products_by_id`` is filtered out.
    """

    if is_unrestricted(user):
        return list(transactions)

    visible: List[TransactionRow] = []
    for transaction in transactions:
        product = products_by_id.get(transaction.product_id)
        if product is not None and is_product_visible(user, product, tags_by_id):
            visible.append(transaction)
    return visible


def has_permission(user: UserRow, permission: Union[Permission, str]) -> bool:
    value = permission.value if isinstance(permission, Permission) else permission
    return value in user.permissions


def require_permission(user: UserRow, permission: Optional[Union[Permission, str]]) -> None:
    """Raise :class:`AuthorizationDenied` unless ``user`` holds ``permission``.

    ``None`` means the action needs no permission beyond being signed in.
    """

    if permission is None or has_permission(user, permission):
        return
    value = permission.value if isinstance(permission, Permission) else permission
    log.warning("User '%s' denied: missing permission %s", user.username, value)
    raise AuthorizationDenied(user.username, value)


def require_product_access(user: UserRow, product: ProductRow, tags_by_id: Mapping[str, TagRow]) -> None:
    """Raise :class:`AuthorizationDenied` when ``product`` is outside the user's scope."""

    if not is_product_visible(user, product, tags_by_id):
        log.warning("User '%s' denied access to product '%s'", user.username, product.product_id)
        raise AuthorizationDenied(
            user.username,
            reason=f"product '{product.product_id}' is outside the allowed categories or tag prefixes",
        )


def require_links_in_scope(
    user: UserRow,
    tag_ids: Iterable[str],
    category_ids: Iterable[str],
    tags_by_id: Mapping[str, TagRow],
    *,
    existing_category_ids: Iterable[str] = (),
) -> None:
    """Raise :class:`AuthorizationDenied` unless a restricted user may assign these links.

    Every newly assigned category must be one of the user's allowed
    categories; ``existing_category_ids`` are already on the product and are
    left alone. The resulting product must stay visible to the user.
    """

    tag_ids = frozenset(tag_ids)
    category_ids = frozenset(category_ids)
    foreign = frozenset()
    if user.allowed_category_ids:
        foreign = category_ids - user.allowed_category_ids - frozenset(existing_category_ids)
    if foreign or not links_in_scope(user, tag_ids, category_ids, tags_by_id):
        log.warning("User '%s' denied: tag/category assignment outside their scope", user.username)
        raise AuthorizationDenied(
            user.username,
            reason="the assigned categories or tags are outside the allowed categories or tag prefixes",
        )


__all__ = [
    "is_unrestricted",
    "is_product_visible",
    "links_in_scope",
    "filter_products",
    "filter_transactions",
    "has_permission",
    "require_permission",
    "require_product_access",
    "require_links_in_scope",
]
