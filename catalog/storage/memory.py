from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from typing import Any, Dict, List, Optional

from catalog.logging import get_logger
from catalog.storage.common import (
    compute_stats,
    matches_filter,
    sort_products,
)
from catalog.storage.errors import ConstraintViolation
from catalog.storage.models import (
    Product,
    ProductCursorPage,
    ProductCursorQuery,
    ProductPage,
    ProductQuery,
    ProductStats,
    User,
    utcnow,
)

_UPDATABLE_PRODUCT_FIELDS = frozenset({"name", "description", "price", "stock"})


class MemoryStore:
    """In-memory user and product store for tests and local development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.products: Dict[str, Product] = {}
        # Guards all dictionaries above; handlers may run in worker threads
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    # -- users ---------------------------------------------------------------

    def create_user(self, email: str, name: str) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=str(uuid.uuid4()), email=email, name=name)
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.email == email:
                    return user
        return None

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"field": "user_id"})
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            self.credentials.pop(user_id, None)
            for product_id in [p.id for p in self.products.values() if p.user_id == user_id]:
                del self.products[product_id]
            return True

    # -- products ------------------------------------------------------------

    def create_product(
        self,
        user_id: str,
        name: str,
        price: float,
        stock: int,
        description: str = "",
    ) -> Product:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("owner does not exist", {"field": "user_id"})
            now = utcnow()
            product = Product(
                id=str(uuid.uuid4()),
                user_id=user_id,
                name=name,
                description=description,
                price=price,
                stock=stock,
                created_at=now,
                updated_at=now,
            )
            self.products[product.id] = product
            return replace(product)

    def get_product(self, product_id: str) -> Optional[Product]:
        with self._data_lock:
            product = self.products.get(product_id)
            return replace(product) if product else None

    def list_products(self, user_id: str) -> List[Product]:
        with self._data_lock:
            owned = [replace(p) for p in self.products.values() if p.user_id == user_id]
        return sort_products(owned, [])

    def update_product(self, product_id: str, **fields: Any) -> Optional[Product]:
        unknown = set(fields) - _UPDATABLE_PRODUCT_FIELDS
        if unknown:
            raise ValueError(f"unsupported product fields: {sorted(unknown)}")
        with self._data_lock:
            product = self.products.get(product_id)
            if product is None:
                return None
            changes = {key: value for key, value in fields.items() if value is not None}
            updated = replace(product, **changes, updated_at=utcnow())
            self.products[product_id] = updated
            return replace(updated)

    def delete_product(self, product_id: str) -> bool:
        with self._data_lock:
            return self.products.pop(product_id, None) is not None

    def _owned_matching(self, user_id: str, query) -> List[Product]:
        with self._data_lock:
            return [
                replace(p)
                for p in self.products.values()
                if p.user_id == user_id and matches_filter(p, query.filter)
            ]

    def query_products(self, user_id: str, query: ProductQuery) -> ProductPage:
        matching = sort_products(self._owned_matching(user_id, query), query.sort)
        offset = (query.page - 1) * query.page_size
        return ProductPage(
            items=matching[offset : offset + query.page_size],
            total=len(matching),
            page=query.page,
            page_size=query.page_size,
        )

    def query_products_cursor(self, user_id: str, query: ProductCursorQuery) -> ProductCursorPage:
        # Keyset pagination walks product ids in ascending order
        matching = sorted(self._owned_matching(user_id, query), key=lambda p: p.id)
        if query.cursor:
            matching = [p for p in matching if p.id > query.cursor]
        window = matching[: query.page_size + 1]
        has_next = len(window) > query.page_size
        items = window[: query.page_size]
        return ProductCursorPage(
            items=items,
            page_size=query.page_size,
            has_next=has_next,
            has_prev=query.cursor is not None,
            next_cursor=items[-1].id if items else None,
            prev_cursor=items[0].id if query.cursor and items else None,
        )

    def product_stats(self, user_id: str) -> ProductStats:
        with self._data_lock:
            owned = [p for p in self.products.values() if p.user_id == user_id]
            return compute_stats(owned)
