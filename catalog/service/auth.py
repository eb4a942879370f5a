from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from catalog.logging import get_logger
from catalog.service.blacklist import BlacklistManager
from catalog.service.errors import (
    AuthenticationError,
    AuthFailure,
    ConflictError,
    SessionExpiredError,
    SessionNotFoundError,
)
from catalog.service.gatekeeper import AuthContext
from catalog.service.sessions import SessionManager
from catalog.service.tokens import REFRESH_TOKEN, TokenPair, TokenService
from catalog.storage.errors import ConstraintViolation
from catalog.storage.models import Session, User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class UserStore(Protocol):
    def create_user(self, email: str, name: str) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def delete_user(self, user_id: str) -> bool: ...


@dataclass
class LoginResult:
    user: User
    session: Session
    tokens: TokenPair


class AuthService:
    """Registration, login, refresh and logout flows."""

    def __init__(
        self,
        store: UserStore,
        sessions: SessionManager,
        tokens: TokenService,
        blacklist: BlacklistManager,
        *,
        session_duration: timedelta = timedelta(hours=24),
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.tokens = tokens
        self.blacklist = blacklist
        self.session_duration = session_duration
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            self.logger.warning("password_verification_failed", user_id=user_id)
            return False

    def register(self, email: str, password: str, name: str) -> User:
        """Create a user; a duplicate email raises ConflictError."""
        try:
            user = self.store.create_user(email, name)
        except ConstraintViolation as exc:
            self.logger.warning("register_conflict", reason=exc.message)
            raise ConflictError("email already registered", detail=exc.detail)
        password_hash, algo = self._hash_password(password)
        self.store.save_password(user.id, password_hash, algo)
        self.logger.info("user_registered", user_id=user.id)
        return user

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        user = self.store.get_user_by_email(email)
        if not user or not self.verify_password(user.id, password):
            self.logger.warning("login_failed", email=email)
            raise AuthenticationError(
                "invalid credentials", reason=AuthFailure.INVALID_CREDENTIALS
            )
        session = await self.sessions.create_session(
            user.id,
            user.email,
            ip_address=ip_address,
            user_agent=user_agent,
            duration=self.session_duration,
        )
        tokens = self.tokens.issue_pair(user.id, user.email, session.id)
        self.logger.info("login_succeeded", user_id=user.id, session_id=session.id)
        return LoginResult(user=user, session=session, tokens=tokens)

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a new pair and extend the session.

        The presented refresh token is revoked before the new pair is issued,
        so two concurrent exchanges of one token cannot both succeed.
        """
        claims = self.tokens.verify(refresh_token, expected_type=REFRESH_TOKEN)
        try:
            session = await self.sessions.get_session(claims.session_id)
        except (SessionNotFoundError, SessionExpiredError):
            session = None
        if session is None or not session.is_active or session.user_id != claims.user_id:
            raise AuthenticationError("invalid refresh token", reason=AuthFailure.SESSION_INVALID)
        if await self.blacklist.is_user_session_blacklisted(claims.user_id, claims.session_id):
            raise AuthenticationError(
                "invalid refresh token", reason=AuthFailure.SESSION_REVOKED_BY_LOGOUT_ALL
            )
        user = self.store.get_user(claims.user_id)
        if not user:
            raise AuthenticationError("invalid refresh token", reason=AuthFailure.INVALID_TOKEN)
        if not await self.blacklist.claim_token(refresh_token, claims.exp):
            raise AuthenticationError("invalid refresh token", reason=AuthFailure.TOKEN_REVOKED)

        tokens = self.tokens.issue_pair(user.id, user.email, session.id)
        await self.sessions.refresh_session(session.id, self.session_duration)
        self.logger.info("tokens_refreshed", user_id=user.id, session_id=session.id)
        return tokens

    async def logout(self, ctx: AuthContext) -> None:
        # Blacklist first: if it fails the session must stay untouched and the
        # caller sees the error.
        await self.blacklist.blacklist_token(ctx.token, ctx.expires_at)
        await self.sessions.delete_session(ctx.session_id)
        self.logger.info("logout", user_id=ctx.user_id, session_id=ctx.session_id)

    async def logout_all(self, ctx: AuthContext) -> int:
        revoked = await self.blacklist.blacklist_all_user_sessions(ctx.user_id)
        await self.sessions.delete_user_sessions(ctx.user_id)
        self.logger.info("logout_all", user_id=ctx.user_id, count=len(revoked))
        return len(revoked)

    async def list_sessions(self, user_id: str) -> List[Session]:
        return await self.sessions.list_active_sessions(user_id)


__all__ = ["AuthService", "LoginResult", "UserStore", "PASSWORD_ALGO"]
