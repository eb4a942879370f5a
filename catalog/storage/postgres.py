from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional, Sequence, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from catalog.logging import get_logger
from catalog.storage.common import DEFAULT_SORT, LOW_STOCK_THRESHOLD, normalize_sort
from catalog.storage.errors import ConstraintViolation
from catalog.storage.models import (
    Product,
    ProductCursorPage,
    ProductCursorQuery,
    ProductFilter,
    ProductPage,
    ProductQuery,
    ProductStats,
    SortField,
    User,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS product (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        price NUMERIC(12, 2) NOT NULL CHECK (price > 0),
        stock INTEGER NOT NULL CHECK (stock >= 0),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS product_user_id_idx ON product (user_id)",
    "CREATE INDEX IF NOT EXISTS product_user_created_idx ON product (user_id, created_at)",
)

# Allow-listed sort columns; never interpolate caller input directly.
_SORT_COLUMNS = {
    "name": "lower(name)",
    "price": "price",
    "stock": "stock",
    "created_at": "created_at",
    "updated_at": "updated_at",
}

_UPDATABLE_PRODUCT_FIELDS = ("name", "description", "price", "stock")


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def build_product_filter(user_id: str, flt: ProductFilter) -> Tuple[str, List[Any]]:
    """Return a parameterized WHERE body scoped to ``user_id``."""

    clauses = ["user_id = %s"]
    params: List[Any] = [user_id]
    if flt.name:
        clauses.append("name ILIKE %s")
        params.append(f"%{_escape_like(flt.name)}%")
    for column, op, value in (
        ("price", ">=", flt.min_price),
        ("price", "<=", flt.max_price),
        ("stock", ">=", flt.min_stock),
        ("stock", "<=", flt.max_stock),
        ("created_at", ">=", flt.created_from),
        ("created_at", "<=", flt.created_to),
        ("updated_at", ">=", flt.updated_from),
        ("updated_at", "<=", flt.updated_to),
    ):
        if value is not None:
            clauses.append(f"{column} {op} %s")
            params.append(value)
    return " AND ".join(clauses), params


def build_order_by(sort: Sequence[SortField]) -> str:
    order = normalize_sort(sort) or list(DEFAULT_SORT)
    parts = [f"{_SORT_COLUMNS[item.field]} {item.direction.upper()}" for item in order]
    parts.append("id ASC")
    return ", ".join(parts)


def _row_to_user(row: Dict[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        name=row["name"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_product(row: Dict[str, Any]) -> Product:
    return Product(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        name=row["name"],
        description=row.get("description") or "",
        price=float(row["price"]),
        stock=int(row["stock"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresStore:
    """Postgres-backed user and product store."""

    def __init__(self, dsn: str, *, statement_timeout_ms: int = 5000) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        connect_kwargs: Dict[str, Any] = {"row_factory": dict_row, "autocommit": False}
        if statement_timeout_ms:
            # Server-side bound on every statement so a stuck query releases its connection
            connect_kwargs["options"] = f"-c statement_timeout={int(statement_timeout_ms)}"
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs=connect_kwargs,
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- users ---------------------------------------------------------------

    def create_user(self, email: str, name: str) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, name)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, email, name),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return _row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return _row_to_user(row) if row else None

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"field": "user_id"})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return cur.rowcount > 0

    # -- products ------------------------------------------------------------

    def create_product(
        self,
        user_id: str,
        name: str,
        price: float,
        stock: int,
        description: str = "",
    ) -> Product:
        product_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO product (id, user_id, name, description, price, stock)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (product_id, user_id, name, description, price, stock),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("owner does not exist", {"field": "user_id"})
        return _row_to_product(row)

    def get_product(self, product_id: str) -> Optional[Product]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM product WHERE id = %s", (product_id,)
            ).fetchone()
        return _row_to_product(row) if row else None

    def list_products(self, user_id: str) -> List[Product]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM product WHERE user_id = %s ORDER BY {build_order_by([])}",
                (user_id,),
            ).fetchall()
        return [_row_to_product(row) for row in rows]

    def update_product(self, product_id: str, **fields: Any) -> Optional[Product]:
        unknown = set(fields) - set(_UPDATABLE_PRODUCT_FIELDS)
        if unknown:
            raise ValueError(f"unsupported product fields: {sorted(unknown)}")
        assignments: List[str] = []
        params: List[Any] = []
        for column in _UPDATABLE_PRODUCT_FIELDS:
            value = fields.get(column)
            if value is not None:
                assignments.append(f"{column} = %s")
                params.append(value)
        assignments.append("updated_at = now()")
        params.append(product_id)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE product SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                params,
            ).fetchone()
        return _row_to_product(row) if row else None

    def delete_product(self, product_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM product WHERE id = %s", (product_id,))
            return cur.rowcount > 0

    def query_products(self, user_id: str, query: ProductQuery) -> ProductPage:
        where, params = build_product_filter(user_id, query.filter)
        offset = (query.page - 1) * query.page_size
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM product WHERE {where}", params
            ).fetchone()
            rows = conn.execute(
                f"SELECT * FROM product WHERE {where} "
                f"ORDER BY {build_order_by(query.sort)} LIMIT %s OFFSET %s",
                [*params, query.page_size, offset],
            ).fetchall()
        return ProductPage(
            items=[_row_to_product(row) for row in rows],
            total=int(total_row["total"]) if total_row else 0,
            page=query.page,
            page_size=query.page_size,
        )

    def query_products_cursor(self, user_id: str, query: ProductCursorQuery) -> ProductCursorPage:
        where, params = build_product_filter(user_id, query.filter)
        if query.cursor:
            where = f"{where} AND id > %s"
            params.append(query.cursor)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM product WHERE {where} ORDER BY id ASC LIMIT %s",
                [*params, query.page_size + 1],
            ).fetchall()
        has_next = len(rows) > query.page_size
        items = [_row_to_product(row) for row in rows[: query.page_size]]
        return ProductCursorPage(
            items=items,
            page_size=query.page_size,
            has_next=has_next,
            has_prev=query.cursor is not None,
            next_cursor=items[-1].id if items else None,
            prev_cursor=items[0].id if query.cursor and items else None,
        )

    def product_stats(self, user_id: str) -> ProductStats:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total_products,
                       COALESCE(SUM(price * stock), 0) AS total_value,
                       COALESCE(AVG(price), 0) AS avg_price,
                       COUNT(*) FILTER (WHERE stock < %s) AS low_stock,
                       COUNT(*) FILTER (WHERE stock = 0) AS out_of_stock
                FROM product
                WHERE user_id = %s
                """,
                (LOW_STOCK_THRESHOLD, user_id),
            ).fetchone()
        if not row:
            return ProductStats()
        return ProductStats(
            total_products=int(row["total_products"]),
            total_value=round(float(row["total_value"]), 2),
            avg_price=round(float(row["avg_price"]), 2),
            low_stock=int(row["low_stock"]),
            out_of_stock=int(row["out_of_stock"]),
        )
