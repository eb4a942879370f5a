from __future__ import annotations

import hashlib
import json
import uuid
from dataclasses import asdict, replace
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol, TypeVar, Union

from catalog.logging import get_logger
from catalog.service.errors import AuthorizationError, NotFoundError, ValidationError
from catalog.storage.common import normalize_sort, parse_cursor
from catalog.storage.errors import CacheError
from catalog.storage.models import (
    Product,
    ProductCursorPage,
    ProductCursorQuery,
    ProductPage,
    ProductQuery,
    ProductStats,
)
from catalog.storage.redis_cache import CacheStore

logger = get_logger(__name__)

T = TypeVar("T")

PRODUCT_TTL = timedelta(minutes=30)
USER_PRODUCTS_TTL = timedelta(minutes=15)
FILTERED_TTL = timedelta(minutes=5)
CURSOR_TTL = timedelta(minutes=5)
STATS_TTL = timedelta(minutes=10)

FILTERED_PREFIX = "user_products_filtered"
CURSOR_PREFIX = "user_products_cursor"


def product_key(user_id: str, product_id: str) -> str:
    return f"product:{user_id}:{product_id}"


def user_products_key(user_id: str) -> str:
    return f"user_products:{user_id}"


def user_stats_key(user_id: str) -> str:
    return f"user_stats:{user_id}"


def canonical_query(query: Union[ProductQuery, ProductCursorQuery]) -> Dict[str, Any]:
    """Normalized dict form of a query; equal meaning gives equal output."""

    body: Dict[str, Any] = {
        "filter": query.filter.to_dict(),
        "sort": [asdict(item) for item in normalize_sort(query.sort)],
        "page_size": query.page_size,
    }
    if isinstance(query, ProductCursorQuery):
        body["cursor"] = query.cursor
    else:
        body["page"] = query.page
    return body


def build_cache_key(prefix: str, user_id: str, query: Union[ProductQuery, ProductCursorQuery]) -> str:
    serialized = json.dumps(canonical_query(query), sort_keys=True, separators=(",", ":"))
    digest = hashlib.sha256(serialized.encode()).hexdigest()
    return f"{prefix}:{user_id}:{digest}"


class ProductStore(Protocol):
    def create_product(
        self, user_id: str, name: str, price: float, stock: int, description: str = ""
    ) -> Product: ...

    def get_product(self, product_id: str) -> Optional[Product]: ...

    def list_products(self, user_id: str) -> List[Product]: ...

    def update_product(self, product_id: str, **fields: Any) -> Optional[Product]: ...

    def delete_product(self, product_id: str) -> bool: ...

    def query_products(self, user_id: str, query: ProductQuery) -> ProductPage: ...

    def query_products_cursor(self, user_id: str, query: ProductCursorQuery) -> ProductCursorPage: ...

    def product_stats(self, user_id: str) -> ProductStats: ...


class ProductService:
    """Product CRUD scoped to one owner, with a read-through query cache.

    Cache errors never fail a read: the store is authoritative and is queried
    directly. Every mutation invalidates the owner's cached lists and stats.
    """

    def __init__(self, store: ProductStore, cache: CacheStore) -> None:
        self.store = store
        self.cache = cache

    async def _cached(
        self,
        key: str,
        ttl: timedelta,
        load: Callable[[], T],
        encode: Callable[[T], Any],
        decode: Callable[[Any], T],
    ) -> T:
        try:
            cached = await self.cache.get(key)
        except CacheError as exc:
            logger.warning("product_cache_read_failed", key=key, error=exc.message)
            cached = None
        if cached is not None:
            try:
                return decode(cached)
            except (KeyError, TypeError, ValueError):
                logger.warning("product_cache_entry_invalid", key=key)
        value = load()
        try:
            await self.cache.set(key, encode(value), ttl)
        except CacheError as exc:
            logger.warning("product_cache_write_failed", key=key, error=exc.message)
        return value

    async def invalidate_user_cache(self, user_id: str, product_id: Optional[str] = None) -> None:
        """Drop every cached list and stats entry for the user.

        Failures are logged; cached entries then expire on their own TTL.
        """
        try:
            keys = [user_products_key(user_id), user_stats_key(user_id)]
            if product_id:
                keys.append(product_key(user_id, product_id))
            await self.cache.delete(*keys)
            await self.cache.delete_pattern(f"{FILTERED_PREFIX}:{user_id}:*")
            await self.cache.delete_pattern(f"{CURSOR_PREFIX}:{user_id}:*")
        except CacheError as exc:
            logger.error("product_cache_invalidation_failed", user_id=user_id, error=exc.message)

    def _load_owned(self, user_id: str, product_id: str) -> Product:
        try:
            uuid.UUID(product_id)
        except ValueError:
            raise NotFoundError("product not found", detail={"product_id": product_id})
        product = self.store.get_product(product_id)
        if product is None:
            raise NotFoundError("product not found", detail={"product_id": product_id})
        if product.user_id != user_id:
            logger.warning("product_access_denied", user_id=user_id, product_id=product_id)
            raise AuthorizationError("product not found", detail={"product_id": product_id})
        return product

    async def create_product(
        self,
        user_id: str,
        *,
        name: str,
        price: float,
        stock: int,
        description: str = "",
    ) -> Product:
        product = self.store.create_product(
            user_id, name=name, price=price, stock=stock, description=description
        )
        await self.invalidate_user_cache(user_id)
        logger.info("product_created", user_id=user_id, product_id=product.id)
        return product

    async def get_product(self, user_id: str, product_id: str) -> Product:
        return await self._cached(
            product_key(user_id, product_id),
            PRODUCT_TTL,
            lambda: self._load_owned(user_id, product_id),
            Product.to_dict,
            Product.from_dict,
        )

    async def list_products(self, user_id: str) -> List[Product]:
        return await self._cached(
            user_products_key(user_id),
            USER_PRODUCTS_TTL,
            lambda: self.store.list_products(user_id),
            lambda items: [item.to_dict() for item in items],
            lambda data: [Product.from_dict(item) for item in data],
        )

    async def query_products(self, user_id: str, query: ProductQuery) -> ProductPage:
        return await self._cached(
            build_cache_key(FILTERED_PREFIX, user_id, query),
            FILTERED_TTL,
            lambda: self.store.query_products(user_id, query),
            ProductPage.to_dict,
            ProductPage.from_dict,
        )

    async def query_products_cursor(self, user_id: str, query: ProductCursorQuery) -> ProductCursorPage:
        try:
            query = replace(query, cursor=parse_cursor(query.cursor))
        except ValueError:
            raise ValidationError("invalid cursor", detail={"cursor": query.cursor})
        return await self._cached(
            build_cache_key(CURSOR_PREFIX, user_id, query),
            CURSOR_TTL,
            lambda: self.store.query_products_cursor(user_id, query),
            ProductCursorPage.to_dict,
            ProductCursorPage.from_dict,
        )

    async def stats(self, user_id: str) -> ProductStats:
        return await self._cached(
            user_stats_key(user_id),
            STATS_TTL,
            lambda: self.store.product_stats(user_id),
            ProductStats.to_dict,
            ProductStats.from_dict,
        )

    async def update_product(self, user_id: str, product_id: str, **fields: Any) -> Product:
        """Apply only the fields that are not None."""
        self._load_owned(user_id, product_id)
        changes = {key: value for key, value in fields.items() if value is not None}
        updated = self.store.update_product(product_id, **changes)
        if updated is None:
            raise NotFoundError("product not found", detail={"product_id": product_id})
        await self.invalidate_user_cache(user_id, product_id)
        logger.info("product_updated", user_id=user_id, product_id=product_id, fields=sorted(changes))
        return updated

    async def delete_product(self, user_id: str, product_id: str) -> None:
        self._load_owned(user_id, product_id)
        if not self.store.delete_product(product_id):
            raise NotFoundError("product not found", detail={"product_id": product_id})
        await self.invalidate_user_cache(user_id, product_id)
        logger.info("product_deleted", user_id=user_id, product_id=product_id)


__all__ = [
    "CURSOR_PREFIX",
    "FILTERED_PREFIX",
    "ProductService",
    "ProductStore",
    "build_cache_key",
    "canonical_query",
    "product_key",
    "user_products_key",
    "user_stats_key",
]
