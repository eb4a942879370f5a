from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from catalog.api.schemas import (
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutAllResponse,
    ProductCreateRequest,
    ProductCursorPageResponse,
    ProductListResponse,
    ProductPageResponse,
    ProductResponse,
    ProductStatsResponse,
    ProductUpdateRequest,
    RegisterRequest,
    SessionListResponse,
    SessionResponse,
    TokenRefreshRequest,
    TokenResponse,
    UserResponse,
)
from catalog.service.gatekeeper import AuthContext
from catalog.service.runtime import get_runtime
from catalog.service.tokens import TokenPair
from catalog.storage.common import coerce_page, coerce_page_size, parse_sort
from catalog.storage.models import ProductCursorQuery, ProductFilter, ProductQuery

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.gatekeeper.authenticate(authorization)


def _parse_datetime(name: str, value: Optional[str]) -> Optional[datetime]:
    if value is None or value == "":
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise _http_error(
            "validation_error",
            f"{name} must be an ISO-8601 timestamp",
            status_code=400,
            details={name: value},
        )
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _product_filter(
    name: Optional[str],
    min_price: Optional[float],
    max_price: Optional[float],
    min_stock: Optional[int],
    max_stock: Optional[int],
    created_from: Optional[str],
    created_to: Optional[str],
    updated_from: Optional[str],
    updated_to: Optional[str],
) -> ProductFilter:
    return ProductFilter(
        name=(name.strip() or None) if name else None,
        min_price=min_price,
        max_price=max_price,
        min_stock=min_stock,
        max_stock=max_stock,
        created_from=_parse_datetime("created_from", created_from),
        created_to=_parse_datetime("created_to", created_to),
        updated_from=_parse_datetime("updated_from", updated_from),
        updated_to=_parse_datetime("updated_to", updated_to),
    )


def _token_payload(tokens: TokenPair) -> dict:
    now = int(datetime.now(timezone.utc).timestamp())
    return {
        "access_token": tokens.access_token,
        "refresh_token": tokens.refresh_token,
        "token_type": tokens.token_type,
        "expires_in": max(0, tokens.access_expires_at - now),
    }


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


# ---------------------------------------------------------------------------
# auth
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a user account.

    Raises:
        400: If email, password or name fail validation
        409: If the email is already registered
    """
    runtime = get_runtime()
    user = runtime.auth.register(body.email, body.password, body.name)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password; returns a token pair bound to a new session.

    Raises:
        401: If credentials are invalid
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email,
        body.password,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(
        status="ok",
        data=LoginResponse(
            **_token_payload(result.tokens),
            session_id=result.session.id,
            session_expires_at=result.session.expires_at,
            user=UserResponse.from_user(result.user),
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    """Exchange a refresh token for a new token pair.

    The presented refresh token cannot be used again.
    """
    runtime = get_runtime()
    tokens = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=TokenResponse(**_token_payload(tokens)))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.logout(principal)
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(get_user)):
    """Revoke every session of the caller, including the current one."""
    runtime = get_runtime()
    revoked = await runtime.auth.logout_all(principal)
    return Envelope(status="ok", data=LogoutAllResponse(revoked_sessions=revoked))


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    sessions = await runtime.auth.list_sessions(principal.user_id)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            active_sessions=[
                SessionResponse.from_session(s, current_id=principal.session_id)
                for s in sessions
            ],
            total_sessions=len(sessions),
        ),
    )


# ---------------------------------------------------------------------------
# products
# ---------------------------------------------------------------------------


@router.post("/products", response_model=Envelope, status_code=201, tags=["products"])
async def create_product(body: ProductCreateRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    product = await runtime.products.create_product(
        principal.user_id,
        name=body.name,
        price=body.price,
        stock=body.stock,
        description=body.description,
    )
    return Envelope(status="ok", data=ProductResponse.from_product(product))


@router.get("/products", response_model=Envelope, tags=["products"])
async def list_products(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    products = await runtime.products.list_products(principal.user_id)
    return Envelope(
        status="ok",
        data=ProductListResponse(
            items=[ProductResponse.from_product(p) for p in products],
            total=len(products),
        ),
    )


@router.get("/products/filtered", response_model=Envelope, tags=["products"])
async def list_products_filtered(
    principal: AuthContext = Depends(get_user),
    name: Optional[str] = Query(None, max_length=200),
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    min_stock: Optional[int] = Query(None, ge=0),
    max_stock: Optional[int] = Query(None, ge=0),
    created_from: Optional[str] = Query(None),
    created_to: Optional[str] = Query(None),
    updated_from: Optional[str] = Query(None),
    updated_to: Optional[str] = Query(None),
    sort: Optional[str] = Query(None, max_length=200, description="field[:dir],..."),
    sort_field: Optional[str] = Query(None),
    sort_direction: Optional[str] = Query(None),
    page: Optional[str] = Query(None),
    page_size: Optional[str] = Query(None),
):
    """Filtered, sorted, offset-paginated product listing.

    Invalid page or page_size values fall back to 1 and 20.
    """
    runtime = get_runtime()
    query = ProductQuery(
        filter=_product_filter(
            name, min_price, max_price, min_stock, max_stock,
            created_from, created_to, updated_from, updated_to,
        ),
        sort=parse_sort(sort, sort_field, sort_direction),
        page=coerce_page(page),
        page_size=coerce_page_size(page_size),
    )
    result = await runtime.products.query_products(principal.user_id, query)
    return Envelope(status="ok", data=ProductPageResponse.from_page(result))


@router.get("/products/cursor", response_model=Envelope, tags=["products"])
async def list_products_cursor(
    principal: AuthContext = Depends(get_user),
    name: Optional[str] = Query(None, max_length=200),
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    min_stock: Optional[int] = Query(None, ge=0),
    max_stock: Optional[int] = Query(None, ge=0),
    created_from: Optional[str] = Query(None),
    created_to: Optional[str] = Query(None),
    updated_from: Optional[str] = Query(None),
    updated_to: Optional[str] = Query(None),
    sort: Optional[str] = Query(None, max_length=200),
    sort_field: Optional[str] = Query(None),
    sort_direction: Optional[str] = Query(None),
    cursor: Optional[str] = Query(None, max_length=64),
    page_size: Optional[str] = Query(None),
):
    """Keyset pagination over product ids; pass next_cursor back to continue."""
    runtime = get_runtime()
    query = ProductCursorQuery(
        filter=_product_filter(
            name, min_price, max_price, min_stock, max_stock,
            created_from, created_to, updated_from, updated_to,
        ),
        sort=parse_sort(sort, sort_field, sort_direction),
        cursor=cursor or None,
        page_size=coerce_page_size(page_size),
    )
    result = await runtime.products.query_products_cursor(principal.user_id, query)
    return Envelope(status="ok", data=ProductCursorPageResponse.from_page(result))


@router.get("/products/stats", response_model=Envelope, tags=["products"])
async def product_stats(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    stats = await runtime.products.stats(principal.user_id)
    return Envelope(status="ok", data=ProductStatsResponse.from_stats(stats))


@router.get("/products/{product_id}", response_model=Envelope, tags=["products"])
async def get_product(product_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    product = await runtime.products.get_product(principal.user_id, product_id)
    return Envelope(status="ok", data=ProductResponse.from_product(product))


@router.put("/products/{product_id}", response_model=Envelope, tags=["products"])
async def update_product(
    product_id: str,
    body: ProductUpdateRequest,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    product = await runtime.products.update_product(
        principal.user_id,
        product_id,
        name=body.name,
        description=body.description,
        price=body.price,
        stock=body.stock,
    )
    return Envelope(status="ok", data=ProductResponse.from_product(product))


@router.delete("/products/{product_id}", response_model=Envelope, tags=["products"])
async def delete_product(product_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.products.delete_product(principal.user_id, product_id)
    return Envelope(status="ok", data={"id": product_id, "deleted": True})
