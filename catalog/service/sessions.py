from __future__ import annotations

from datetime import timedelta
from typing import List, Optional

from catalog.logging import get_logger
from catalog.service.errors import SessionExpiredError, SessionNotFoundError
from catalog.storage.errors import CacheDecodeError
from catalog.storage.models import Session, utcnow
from catalog.storage.redis_cache import CacheStore

logger = get_logger(__name__)

DEFAULT_SESSION_DURATION = timedelta(hours=24)


def session_key(session_id: str) -> str:
    return f"session:{session_id}"


def user_sessions_key(user_id: str) -> str:
    return f"user_sessions:{user_id}"


class SessionManager:
    """Server-side session records backed by the cache store.

    Each session lives under ``session:{id}`` with a TTL equal to its
    remaining lifetime. ``user_sessions:{user_id}`` is a set of that user's
    session ids; it is an index only, stale members are pruned on read.
    Cache failures propagate as CacheUnavailableError.
    """

    def __init__(
        self,
        cache: CacheStore,
        *,
        default_duration: timedelta = DEFAULT_SESSION_DURATION,
    ) -> None:
        self.cache = cache
        self.default_duration = default_duration

    def _index_ttl(self, duration: timedelta) -> timedelta:
        # The index must outlive every session it lists
        return max(duration, self.default_duration)

    async def create_session(
        self,
        user_id: str,
        email: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        duration: Optional[timedelta] = None,
    ) -> Session:
        duration = duration or self.default_duration
        session = Session.new(
            user_id,
            email,
            duration,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        await self.cache.set(session_key(session.id), session.to_dict(), duration)
        await self.cache.add_to_set(
            user_sessions_key(user_id), session.id, self._index_ttl(duration)
        )
        logger.info("session_created", user_id=user_id, session_id=session.id)
        return session

    async def get_session(self, session_id: str) -> Session:
        """Load a session, raising SessionNotFoundError or SessionExpiredError."""

        key = session_key(session_id)
        try:
            data = await self.cache.get(key)
        except CacheDecodeError:
            logger.warning("session_record_corrupt", session_id=session_id)
            await self.cache.delete(key)
            raise SessionNotFoundError()
        if data is None:
            raise SessionNotFoundError()
        try:
            session = Session.from_dict(data)
        except (KeyError, TypeError, ValueError):
            logger.warning("session_record_corrupt", session_id=session_id)
            await self.cache.delete(key)
            raise SessionNotFoundError()
        if session.is_expired():
            # TTL may not have fired yet, or clocks disagree
            await self.delete_session(session_id)
            raise SessionExpiredError()
        return session

    async def delete_session(self, session_id: str) -> None:
        """Remove a session and its index membership. Safe to repeat."""

        key = session_key(session_id)
        try:
            data = await self.cache.get(key)
        except CacheDecodeError:
            data = None
        await self.cache.delete(key)
        if isinstance(data, dict) and data.get("user_id"):
            await self.cache.remove_from_set(user_sessions_key(data["user_id"]), session_id)

    async def delete_user_sessions(self, user_id: str) -> int:
        index_key = user_sessions_key(user_id)
        session_ids = await self.cache.set_members(index_key)
        deleted = 0
        if session_ids:
            deleted = await self.cache.delete(*(session_key(sid) for sid in session_ids))
        await self.cache.delete(index_key)
        logger.info("user_sessions_deleted", user_id=user_id, count=deleted)
        return deleted

    async def refresh_session(self, session_id: str, new_duration: Optional[timedelta] = None) -> Session:
        new_duration = new_duration or self.default_duration
        session = await self.get_session(session_id)
        session.expires_at = utcnow() + new_duration
        await self.cache.set(session_key(session.id), session.to_dict(), new_duration)
        await self.cache.add_to_set(
            user_sessions_key(session.user_id), session.id, self._index_ttl(new_duration)
        )
        return session

    async def is_session_valid(self, session_id: str) -> bool:
        try:
            session = await self.get_session(session_id)
        except (SessionNotFoundError, SessionExpiredError):
            return False
        return session.is_active

    async def list_active_sessions(self, user_id: str) -> List[Session]:
        index_key = user_sessions_key(user_id)
        active: List[Session] = []
        stale: List[str] = []
        for session_id in await self.cache.set_members(index_key):
            try:
                session = await self.get_session(session_id)
            except (SessionNotFoundError, SessionExpiredError):
                stale.append(session_id)
                continue
            if session.user_id != user_id:
                stale.append(session_id)
                continue
            if session.is_active:
                active.append(session)
        if stale:
            await self.cache.remove_from_set(index_key, *stale)
        active.sort(key=lambda s: s.created_at, reverse=True)
        return active

    async def count_active_sessions(self, user_id: str) -> int:
        return len(await self.list_active_sessions(user_id))


__all__ = [
    "DEFAULT_SESSION_DURATION",
    "SessionManager",
    "session_key",
    "user_sessions_key",
]
