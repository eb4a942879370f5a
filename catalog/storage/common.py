"""Query rules shared between the memory and postgres product stores.

Both backends must agree on which sort fields are allowed, how paging values
are clamped, and how stats are computed, so cached results never depend on
which store produced them.
"""

from __future__ import annotations

import uuid
from typing import Any, Iterable, List, Optional, Sequence

from catalog.storage.models import (
    Product,
    ProductFilter,
    ProductStats,
    SortField,
    as_utc,
)

SORTABLE_FIELDS = frozenset({"name", "price", "stock", "created_at", "updated_at"})
DEFAULT_SORT = (SortField("created_at", "desc"),)

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

LOW_STOCK_THRESHOLD = 10


def normalize_direction(direction: Optional[str]) -> str:
    """Anything other than a case-insensitive 'desc' sorts ascending."""
    if direction and direction.strip().lower() == "desc":
        return "desc"
    return "asc"


def normalize_sort(fields: Iterable[SortField]) -> List[SortField]:
    """Drop disallowed and repeated fields; normalize directions."""
    normalized: List[SortField] = []
    seen: set[str] = set()
    for item in fields:
        name = (item.field or "").strip().lower()
        if name not in SORTABLE_FIELDS or name in seen:
            continue
        seen.add(name)
        normalized.append(SortField(name, normalize_direction(item.direction)))
    return normalized


def parse_sort(
    sort: Optional[str],
    sort_field: Optional[str] = None,
    sort_direction: Optional[str] = None,
) -> List[SortField]:
    """Parse ``name:asc,price:desc`` plus the single-field query form."""
    fields: List[SortField] = []
    if sort_field:
        fields.append(SortField(sort_field, sort_direction or "asc"))
    for part in (sort or "").split(","):
        part = part.strip()
        if not part:
            continue
        name, _, direction = part.partition(":")
        fields.append(SortField(name, direction or "asc"))
    return normalize_sort(fields)


def coerce_page(value: Any) -> int:
    try:
        page = int(value)
    except (TypeError, ValueError):
        return DEFAULT_PAGE
    return page if page >= 1 else DEFAULT_PAGE


def coerce_page_size(value: Any) -> int:
    try:
        size = int(value)
    except (TypeError, ValueError):
        return DEFAULT_PAGE_SIZE
    return size if 1 <= size <= MAX_PAGE_SIZE else DEFAULT_PAGE_SIZE


def parse_cursor(cursor: Optional[str]) -> Optional[str]:
    """Return the canonical form of a cursor id; raise ValueError if malformed."""
    if cursor is None or cursor == "":
        return None
    return str(uuid.UUID(cursor))


def matches_filter(product: Product, flt: ProductFilter) -> bool:
    if flt.name and flt.name.lower() not in product.name.lower():
        return False
    if flt.min_price is not None and product.price < flt.min_price:
        return False
    if flt.max_price is not None and product.price > flt.max_price:
        return False
    if flt.min_stock is not None and product.stock < flt.min_stock:
        return False
    if flt.max_stock is not None and product.stock > flt.max_stock:
        return False
    created = as_utc(product.created_at)
    updated = as_utc(product.updated_at)
    if flt.created_from is not None and created < as_utc(flt.created_from):
        return False
    if flt.created_to is not None and created > as_utc(flt.created_to):
        return False
    if flt.updated_from is not None and updated < as_utc(flt.updated_from):
        return False
    if flt.updated_to is not None and updated > as_utc(flt.updated_to):
        return False
    return True


def _sort_value(product: Product, name: str) -> Any:
    value = getattr(product, name)
    if name == "name":
        return value.lower()
    if name in {"created_at", "updated_at"}:
        return as_utc(value)
    return value


def sort_products(products: Sequence[Product], sort: Sequence[SortField]) -> List[Product]:
    """Order products like the SQL ORDER BY the postgres store emits."""
    order = normalize_sort(sort) or list(DEFAULT_SORT)
    # Stable sorts applied from the least significant key; id breaks ties.
    ordered = sorted(products, key=lambda p: p.id)
    for item in reversed(order):
        ordered.sort(
            key=lambda p, name=item.field: _sort_value(p, name),
            reverse=item.direction == "desc",
        )
    return ordered


def compute_stats(products: Iterable[Product]) -> ProductStats:
    stats = ProductStats()
    price_sum = 0.0
    for product in products:
        stats.total_products += 1
        price_sum += product.price
        stats.total_value += product.price * product.stock
        if product.stock == 0:
            stats.out_of_stock += 1
        if product.stock < LOW_STOCK_THRESHOLD:
            stats.low_stock += 1
    stats.total_value = round(stats.total_value, 2)
    if stats.total_products:
        stats.avg_price = round(price_sum / stats.total_products, 2)
    return stats


__all__ = [
    "DEFAULT_PAGE",
    "DEFAULT_PAGE_SIZE",
    "DEFAULT_SORT",
    "LOW_STOCK_THRESHOLD",
    "MAX_PAGE_SIZE",
    "SORTABLE_FIELDS",
    "coerce_page",
    "coerce_page_size",
    "compute_stats",
    "matches_filter",
    "normalize_direction",
    "normalize_sort",
    "parse_cursor",
    "parse_sort",
    "sort_products",
]
