from __future__ import annotations

import hashlib
import time
from datetime import timedelta
from typing import List, Optional

from catalog.logging import get_logger
from catalog.service.sessions import SessionManager
from catalog.storage.redis_cache import CacheStore

logger = get_logger(__name__)

BLACKLIST_TTL = timedelta(hours=24)


def token_digest(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode()).hexdigest()


def token_blacklist_key(raw_token: str) -> str:
    return f"blacklist:{token_digest(raw_token)}"


def user_session_blacklist_key(user_id: str, session_id: str) -> str:
    return f"user_blacklist:{user_id}:{session_id}"


class BlacklistManager:
    """Revocation records for individual tokens and whole sessions.

    Only a SHA-256 digest of a token is ever written. Write failures
    propagate; a revocation that did not persist must not look successful.
    """

    def __init__(
        self,
        cache: CacheStore,
        sessions: SessionManager,
        *,
        ttl: timedelta = BLACKLIST_TTL,
    ) -> None:
        self.cache = cache
        self.sessions = sessions
        self.ttl = ttl

    def _entry_ttl(self, expires_at: Optional[int]) -> timedelta:
        if expires_at is None:
            return self.ttl
        remaining = timedelta(seconds=max(0, int(expires_at - time.time())))
        return max(self.ttl, remaining)

    async def blacklist_token(self, raw_token: str, expires_at: Optional[int] = None) -> None:
        """Revoke one token.

        ``expires_at`` is the token's own exp; when it lies beyond the default
        TTL the entry is kept until then.
        """
        await self.cache.set(token_blacklist_key(raw_token), True, self._entry_ttl(expires_at))

    async def claim_token(self, raw_token: str, expires_at: Optional[int] = None) -> bool:
        """Blacklist a single-use token; False if it was already revoked."""
        return await self.cache.set_if_absent(
            token_blacklist_key(raw_token), True, self._entry_ttl(expires_at)
        )

    async def is_token_blacklisted(self, raw_token: str) -> bool:
        return await self.cache.exists(token_blacklist_key(raw_token))

    async def blacklist_all_user_sessions(self, user_id: str) -> List[str]:
        sessions = await self.sessions.list_active_sessions(user_id)
        for session in sessions:
            await self.cache.set(
                user_session_blacklist_key(user_id, session.id), True, self.ttl
            )
        session_ids = [session.id for session in sessions]
        logger.info("user_sessions_blacklisted", user_id=user_id, count=len(session_ids))
        return session_ids

    async def is_user_session_blacklisted(self, user_id: str, session_id: str) -> bool:
        return await self.cache.exists(user_session_blacklist_key(user_id, session_id))


__all__ = [
    "BLACKLIST_TTL",
    "BlacklistManager",
    "token_blacklist_key",
    "token_digest",
    "user_session_blacklist_key",
]
