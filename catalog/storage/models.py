from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return as_utc(value).isoformat() if value is not None else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return as_utc(datetime.fromisoformat(value))


@dataclass
class User:
    id: str
    email: str
    name: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    id: str
    user_id: str
    email: str
    created_at: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_active: bool = True

    @classmethod
    def new(
        cls,
        user_id: str,
        email: str,
        duration: timedelta,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            email=email,
            created_at=now,
            expires_at=now + duration,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= as_utc(self.expires_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "email": self.email,
            "created_at": _iso(self.created_at),
            "expires_at": _iso(self.expires_at),
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "is_active": self.is_active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            email=data.get("email", ""),
            created_at=_parse_dt(data["created_at"]),
            expires_at=_parse_dt(data["expires_at"]),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            is_active=bool(data.get("is_active", True)),
        )


@dataclass
class Product:
    id: str
    user_id: str
    name: str
    price: float
    stock: int
    description: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "description": self.description,
            "price": self.price,
            "stock": self.stock,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Product":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            name=data["name"],
            description=data.get("description") or "",
            price=float(data["price"]),
            stock=int(data["stock"]),
            created_at=_parse_dt(data["created_at"]),
            updated_at=_parse_dt(data["updated_at"]),
        )


@dataclass
class ProductFilter:
    name: Optional[str] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    min_stock: Optional[int] = None
    max_stock: Optional[int] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    updated_from: Optional[datetime] = None
    updated_to: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Set fields only, datetimes as UTC ISO-8601."""
        out: Dict[str, Any] = {}
        for key, value in self.__dict__.items():
            if value is None:
                continue
            out[key] = _iso(value) if isinstance(value, datetime) else value
        return out


@dataclass
class SortField:
    field: str
    direction: str = "asc"


@dataclass
class ProductQuery:
    """Filtered listing with offset pagination."""

    filter: ProductFilter = field(default_factory=ProductFilter)
    sort: List[SortField] = field(default_factory=list)
    page: int = 1
    page_size: int = 20


@dataclass
class ProductCursorQuery:
    """Filtered listing with keyset pagination on product id."""

    filter: ProductFilter = field(default_factory=ProductFilter)
    sort: List[SortField] = field(default_factory=list)
    cursor: Optional[str] = None
    page_size: int = 20


@dataclass
class ProductPage:
    items: List[Product]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return (self.total + self.page_size - 1) // self.page_size

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [item.to_dict() for item in self.items],
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
            "total_pages": self.total_pages,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProductPage":
        return cls(
            items=[Product.from_dict(item) for item in data["items"]],
            total=int(data["total"]),
            page=int(data["page"]),
            page_size=int(data["page_size"]),
        )


@dataclass
class ProductCursorPage:
    items: List[Product]
    page_size: int
    has_next: bool = False
    has_prev: bool = False
    next_cursor: Optional[str] = None
    prev_cursor: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [item.to_dict() for item in self.items],
            "page_size": self.page_size,
            "has_next": self.has_next,
            "has_prev": self.has_prev,
            "next_cursor": self.next_cursor,
            "prev_cursor": self.prev_cursor,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProductCursorPage":
        return cls(
            items=[Product.from_dict(item) for item in data["items"]],
            page_size=int(data["page_size"]),
            has_next=bool(data.get("has_next")),
            has_prev=bool(data.get("has_prev")),
            next_cursor=data.get("next_cursor"),
            prev_cursor=data.get("prev_cursor"),
        )


@dataclass
class ProductStats:
    total_products: int = 0
    total_value: float = 0.0
    avg_price: float = 0.0
    low_stock: int = 0
    out_of_stock: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProductStats":
        return cls(
            total_products=int(data.get("total_products", 0)),
            total_value=float(data.get("total_value", 0.0)),
            avg_price=float(data.get("avg_price", 0.0)),
            low_stock=int(data.get("low_stock", 0)),
            out_of_stock=int(data.get("out_of_stock", 0)),
        )
