from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from catalog.storage.models import (
    Product,
    ProductCursorPage,
    ProductPage,
    ProductStats,
    Session,
    User,
)

MAX_EMAIL_LENGTH = 254
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
MIN_USER_NAME_LENGTH = 2
MAX_USER_NAME_LENGTH = 100
MIN_PRODUCT_NAME_LENGTH = 2
MAX_PRODUCT_NAME_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 1000
MIN_PRICE = 0.01
MAX_PRICE = 999999.99
MAX_STOCK = 999999


def _sanitize(value: str) -> str:
    """Strip control characters and surrounding whitespace.

    Unicode category Cc covers C0/C1 controls; tab and newline go too.
    """
    cleaned = "".join(c for c in value if unicodedata.category(c) != "Cc")
    return cleaned.strip()


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
_PASSWORD_ALLOWED = re.compile(r"^[A-Za-z\d@$!%*?&]+$")
_PASSWORD_SPECIALS = frozenset("@$!%*?&")
_USER_NAME_PATTERN = re.compile(r"^[a-zA-Z\s\-'.]+$")
_PRODUCT_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9\s\-_.,!?()&]+$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _sanitize(value).lower()
    if not normalized:
        raise ValueError("email is required")
    if len(normalized) > MAX_EMAIL_LENGTH:
        raise ValueError("email address too long")
    if not _EMAIL_PATTERN.match(normalized):
        raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Validate password length, alphabet and character classes."""
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    if not _PASSWORD_ALLOWED.match(value):
        raise ValueError("password contains unsupported characters")
    if not any(c.islower() for c in value):
        raise ValueError("password must contain a lowercase letter")
    if not any(c.isupper() for c in value):
        raise ValueError("password must contain an uppercase letter")
    if not any(c.isdigit() for c in value):
        raise ValueError("password must contain a digit")
    if not any(c in _PASSWORD_SPECIALS for c in value):
        raise ValueError("password must contain one of @$!%*?&")
    return value


def _validate_user_name(value: str) -> str:
    cleaned = _sanitize(value)
    if len(cleaned) < MIN_USER_NAME_LENGTH:
        raise ValueError(f"name must be at least {MIN_USER_NAME_LENGTH} characters")
    if len(cleaned) > MAX_USER_NAME_LENGTH:
        raise ValueError(f"name must be at most {MAX_USER_NAME_LENGTH} characters")
    if not _USER_NAME_PATTERN.match(cleaned):
        raise ValueError("name may only contain letters, spaces, hyphens, apostrophes and dots")
    return cleaned


def _validate_product_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = _sanitize(value)
    if len(cleaned) < MIN_PRODUCT_NAME_LENGTH:
        raise ValueError(f"product name must be at least {MIN_PRODUCT_NAME_LENGTH} characters")
    if len(cleaned) > MAX_PRODUCT_NAME_LENGTH:
        raise ValueError(f"product name must be at most {MAX_PRODUCT_NAME_LENGTH} characters")
    if not _PRODUCT_NAME_PATTERN.match(cleaned):
        raise ValueError("product name contains unsupported characters")
    return cleaned


def _validate_description(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = _sanitize(value)
    if len(cleaned) > MAX_DESCRIPTION_LENGTH:
        raise ValueError(f"description must be at most {MAX_DESCRIPTION_LENGTH} characters")
    return cleaned


class RegisterRequest(BaseModel):
    email: str
    password: str
    name: str

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        return _validate_user_name(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class ProductCreateRequest(BaseModel):
    name: str
    description: str = ""
    price: float = Field(..., ge=MIN_PRICE, le=MAX_PRICE)
    stock: int = Field(..., ge=0, le=MAX_STOCK)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        return _validate_product_name(value)

    @field_validator("description")
    @classmethod
    def _validate_description(cls, value: Optional[str]) -> str:
        return _validate_description(value) or ""


class ProductUpdateRequest(BaseModel):
    """Partial update; omitted fields keep their stored value."""

    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=MIN_PRICE, le=MAX_PRICE)
    stock: Optional[int] = Field(default=None, ge=0, le=MAX_STOCK)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_product_name(value)

    @field_validator("description")
    @classmethod
    def _validate_description(cls, value: Optional[str]) -> Optional[str]:
        return _validate_description(value)

    @model_validator(mode="after")
    def _require_change(self) -> "ProductUpdateRequest":
        if all(
            getattr(self, name) is None for name in ("name", "description", "price", "stock")
        ):
            raise ValueError("at least one field must be provided")
        return self


class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int


class LoginResponse(TokenResponse):
    session_id: str
    session_expires_at: datetime
    user: UserResponse


class SessionResponse(BaseModel):
    id: str
    created_at: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    current: bool = False

    @classmethod
    def from_session(cls, session: Session, current_id: Optional[str] = None) -> "SessionResponse":
        return cls(
            id=session.id,
            created_at=session.created_at,
            expires_at=session.expires_at,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            current=session.id == current_id,
        )


class SessionListResponse(BaseModel):
    active_sessions: List[SessionResponse]
    total_sessions: int


class LogoutAllResponse(BaseModel):
    revoked_sessions: int


class ProductResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    name: str
    description: str = ""
    price: float
    stock: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_product(cls, product: Product) -> "ProductResponse":
        return cls.model_validate(product)


class ProductListResponse(BaseModel):
    items: List[ProductResponse]
    total: int


class ProductPageResponse(BaseModel):
    items: List[ProductResponse]
    total: int
    page: int
    page_size: int
    total_pages: int

    @classmethod
    def from_page(cls, page: ProductPage) -> "ProductPageResponse":
        return cls(
            items=[ProductResponse.from_product(p) for p in page.items],
            total=page.total,
            page=page.page,
            page_size=page.page_size,
            total_pages=page.total_pages,
        )


class ProductCursorPageResponse(BaseModel):
    items: List[ProductResponse]
    page_size: int
    has_next: bool
    has_prev: bool
    next_cursor: Optional[str] = None
    prev_cursor: Optional[str] = None

    @classmethod
    def from_page(cls, page: ProductCursorPage) -> "ProductCursorPageResponse":
        return cls(
            items=[ProductResponse.from_product(p) for p in page.items],
            page_size=page.page_size,
            has_next=page.has_next,
            has_prev=page.has_prev,
            next_cursor=page.next_cursor,
            prev_cursor=page.prev_cursor,
        )


class ProductStatsResponse(BaseModel):
    total_products: int
    total_value: float
    avg_price: float
    low_stock: int
    out_of_stock: int

    @classmethod
    def from_stats(cls, stats: ProductStats) -> "ProductStatsResponse":
        return cls(**stats.to_dict())
