from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from catalog.logging import get_logger
from catalog.service.blacklist import BlacklistManager
from catalog.service.errors import (
    AuthenticationError,
    AuthFailure,
    SessionExpiredError,
    SessionNotFoundError,
)
from catalog.service.sessions import SessionManager
from catalog.service.tokens import ACCESS_TOKEN, TokenService

logger = get_logger(__name__)

# Clients only ever see this; the reason is logged server-side.
_REJECTION_MESSAGE = "invalid or expired credentials"


@dataclass
class AuthContext:
    user_id: str
    email: str
    session_id: str
    token: str
    expires_at: int


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    if not token or " " in token:
        return None
    return token


class AuthGatekeeper:
    """Composite check run before every protected operation.

    Checks run in a fixed order and stop at the first failure:
    credentials present, token verifies, session valid, token not revoked,
    session not revoked by logout-all. Signature work happens before any
    cache access; session validity before the blacklist lookups.
    """

    def __init__(
        self,
        tokens: TokenService,
        sessions: SessionManager,
        blacklist: BlacklistManager,
    ) -> None:
        self.tokens = tokens
        self.sessions = sessions
        self.blacklist = blacklist

    def _reject(self, reason: AuthFailure, **context) -> AuthenticationError:
        logger.warning("auth_rejected", reason=reason.value, **context)
        return AuthenticationError(_REJECTION_MESSAGE, reason=reason)

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = extract_bearer(authorization)
        if token is None:
            raise self._reject(AuthFailure.MISSING_CREDENTIALS)

        try:
            claims = self.tokens.verify(token, expected_type=ACCESS_TOKEN)
        except AuthenticationError as exc:
            raise self._reject(AuthFailure.INVALID_TOKEN, detail=exc.message)

        try:
            session = await self.sessions.get_session(claims.session_id)
        except (SessionNotFoundError, SessionExpiredError):
            session = None
        if session is None or not session.is_active or session.user_id != claims.user_id:
            raise self._reject(
                AuthFailure.SESSION_INVALID,
                user_id=claims.user_id,
                session_id=claims.session_id,
            )

        if await self.blacklist.is_token_blacklisted(token):
            raise self._reject(
                AuthFailure.TOKEN_REVOKED,
                user_id=claims.user_id,
                session_id=claims.session_id,
            )

        if await self.blacklist.is_user_session_blacklisted(claims.user_id, claims.session_id):
            raise self._reject(
                AuthFailure.SESSION_REVOKED_BY_LOGOUT_ALL,
                user_id=claims.user_id,
                session_id=claims.session_id,
            )

        return AuthContext(
            user_id=claims.user_id,
            email=claims.email,
            session_id=claims.session_id,
            token=token,
            expires_at=claims.exp,
        )


__all__ = ["AuthContext", "AuthGatekeeper", "extract_bearer"]
