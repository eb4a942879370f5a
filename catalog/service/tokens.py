from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Any, Optional

from catalog.logging import get_logger
from catalog.service.errors import InvalidTokenError

logger = get_logger(__name__)

ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"

SIGNING_ALGORITHM = "HS256"
# Only the HMAC family is accepted; "none", RS*/ES* and anything else is
# rejected before any signature work.
_HMAC_DIGESTS = {
    "HS256": hashlib.sha256,
    "HS384": hashlib.sha384,
    "HS512": hashlib.sha512,
}


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    email: str
    session_id: str
    type: str
    exp: int
    iat: int
    jti: str


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: int
    refresh_expires_at: int
    token_type: str = "Bearer"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _require(payload: dict[str, Any], name: str, kind: type) -> Any:
    value = payload.get(name)
    # bool is an int subclass; never accept it as a timestamp
    if not isinstance(value, kind) or isinstance(value, bool):
        raise InvalidTokenError(f"claim {name} missing or malformed")
    if kind is str and not value:
        raise InvalidTokenError(f"claim {name} missing or malformed")
    return value


class TokenService:
    """Mints and verifies HMAC-signed access and refresh tokens.

    Tokens are self-contained; verification proves authenticity and freshness
    only. Session validity and blacklists are checked by the gatekeeper.
    """

    def __init__(
        self,
        secret: str,
        *,
        access_ttl: timedelta = timedelta(hours=1),
        refresh_ttl: timedelta = timedelta(days=7),
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        self._secret = secret.encode()
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    def _now(self) -> int:
        return int(time.time())

    def _sign(self, signing_input: str, alg: str) -> str:
        digest = _HMAC_DIGESTS[alg]
        return _encode_segment(hmac.new(self._secret, signing_input.encode(), digest).digest())

    def _encode(self, claims: TokenClaims) -> str:
        header = {"alg": SIGNING_ALGORITHM, "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(asdict(claims), separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, SIGNING_ALGORITHM)}"

    def _issue(self, token_type: str, user_id: str, email: str, session_id: str, ttl: timedelta) -> tuple[str, TokenClaims]:
        now = self._now()
        claims = TokenClaims(
            user_id=user_id,
            email=email,
            session_id=session_id,
            type=token_type,
            exp=now + int(ttl.total_seconds()),
            iat=now,
            jti=uuid.uuid4().hex,
        )
        return self._encode(claims), claims

    def issue_access_token(self, user_id: str, email: str, session_id: str) -> str:
        token, _ = self._issue(ACCESS_TOKEN, user_id, email, session_id, self.access_ttl)
        return token

    def issue_refresh_token(self, user_id: str, email: str, session_id: str) -> str:
        token, _ = self._issue(REFRESH_TOKEN, user_id, email, session_id, self.refresh_ttl)
        return token

    def issue_pair(self, user_id: str, email: str, session_id: str) -> TokenPair:
        access, access_claims = self._issue(
            ACCESS_TOKEN, user_id, email, session_id, self.access_ttl
        )
        refresh, refresh_claims = self._issue(
            REFRESH_TOKEN, user_id, email, session_id, self.refresh_ttl
        )
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            access_expires_at=access_claims.exp,
            refresh_expires_at=refresh_claims.exp,
        )

    def verify(self, token: str, expected_type: Optional[str] = None) -> TokenClaims:
        """Return typed claims or raise InvalidTokenError."""

        if not token or not isinstance(token, str):
            raise InvalidTokenError("token missing")
        parts = token.split(".")
        if len(parts) != 3:
            raise InvalidTokenError("token malformed")
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("token header malformed")
        alg = header.get("alg") if isinstance(header, dict) else None
        if not isinstance(alg, str) or alg not in _HMAC_DIGESTS:
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise InvalidTokenError("unexpected signing algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", alg)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8", "replace")):
            raise InvalidTokenError("signature mismatch")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("token payload malformed")
        if not isinstance(payload, dict):
            raise InvalidTokenError("token payload malformed")

        claims = TokenClaims(
            user_id=_require(payload, "user_id", str),
            email=_require(payload, "email", str),
            session_id=_require(payload, "session_id", str),
            type=_require(payload, "type", str),
            exp=_require(payload, "exp", int),
            iat=_require(payload, "iat", int),
            jti=_require(payload, "jti", str),
        )
        if claims.type not in (ACCESS_TOKEN, REFRESH_TOKEN):
            raise InvalidTokenError("unknown token type")
        if self._now() >= claims.exp:
            raise InvalidTokenError("token expired")
        if expected_type is not None and claims.type != expected_type:
            raise InvalidTokenError("wrong token type")
        return claims


__all__ = [
    "ACCESS_TOKEN",
    "REFRESH_TOKEN",
    "SIGNING_ALGORITHM",
    "TokenClaims",
    "TokenPair",
    "TokenService",
]
