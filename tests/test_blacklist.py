"""Unit tests for token and user-session blacklists."""

import time
from datetime import timedelta

import pytest

from catalog.service.blacklist import (
    BlacklistManager,
    token_blacklist_key,
    token_digest,
    user_session_blacklist_key,
)
from catalog.storage.errors import CacheUnavailableError
from catalog.storage.memory_cache import MemoryCache


class TestTokenBlacklist:
    @pytest.mark.asyncio
    async def test_round_trip(self, blacklist):
        await blacklist.blacklist_token("token-a")
        assert await blacklist.is_token_blacklisted("token-a")
        assert not await blacklist.is_token_blacklisted("token-b")

    @pytest.mark.asyncio
    async def test_only_digest_is_stored(self, blacklist, cache):
        await blacklist.blacklist_token("raw-secret-token")
        key = token_blacklist_key("raw-secret-token")
        assert key == f"blacklist:{token_digest('raw-secret-token')}"
        assert "raw-secret-token" not in key
        assert await cache.exists(key)

    @pytest.mark.asyncio
    async def test_entry_expires_after_default_ttl(self, blacklist, clock):
        await blacklist.blacklist_token("token-a")
        clock.advance(24 * 3600 - 1)
        assert await blacklist.is_token_blacklisted("token-a")
        clock.advance(2)
        assert not await blacklist.is_token_blacklisted("token-a")

    @pytest.mark.asyncio
    async def test_entry_outlives_long_token(self, blacklist, clock):
        """A token valid for a week stays revoked for a week."""
        expires_at = int(time.time()) + 7 * 24 * 3600
        await blacklist.blacklist_token("refresh-token", expires_at)
        clock.advance(3 * 24 * 3600)
        assert await blacklist.is_token_blacklisted("refresh-token")

    @pytest.mark.asyncio
    async def test_expired_token_uses_default_ttl(self, blacklist, clock):
        await blacklist.blacklist_token("old-token", int(time.time()) - 10)
        clock.advance(3600)
        assert await blacklist.is_token_blacklisted("old-token")


class TestUserSessionBlacklist:
    @pytest.mark.asyncio
    async def test_sessions_active_at_call_time_are_blacklisted(self, blacklist, sessions):
        a = await sessions.create_session("u1", "a@example.com")
        b = await sessions.create_session("u1", "a@example.com")
        revoked = await blacklist.blacklist_all_user_sessions("u1")
        assert set(revoked) == {a.id, b.id}
        assert await blacklist.is_user_session_blacklisted("u1", a.id)
        assert await blacklist.is_user_session_blacklisted("u1", b.id)

        later = await sessions.create_session("u1", "a@example.com")
        assert not await blacklist.is_user_session_blacklisted("u1", later.id)

    @pytest.mark.asyncio
    async def test_other_users_untouched(self, blacklist, sessions):
        await sessions.create_session("u1", "a@example.com")
        other = await sessions.create_session("u2", "b@example.com")
        await blacklist.blacklist_all_user_sessions("u1")
        assert not await blacklist.is_user_session_blacklisted("u2", other.id)

    @pytest.mark.asyncio
    async def test_no_sessions(self, blacklist):
        assert await blacklist.blacklist_all_user_sessions("nobody") == []

    @pytest.mark.asyncio
    async def test_key_shape(self, blacklist, sessions, cache):
        session = await sessions.create_session("u1", "a@example.com")
        await blacklist.blacklist_all_user_sessions("u1")
        assert await cache.exists(user_session_blacklist_key("u1", session.id))
        assert user_session_blacklist_key("u1", session.id) == f"user_blacklist:u1:{session.id}"

    @pytest.mark.asyncio
    async def test_custom_ttl(self, cache, sessions, clock):
        manager = BlacklistManager(cache, sessions, ttl=timedelta(hours=2))
        session = await sessions.create_session("u1", "a@example.com")
        await manager.blacklist_all_user_sessions("u1")
        clock.advance(2 * 3600 + 1)
        assert not await manager.is_user_session_blacklisted("u1", session.id)


class TestWriteFailure:
    @pytest.mark.asyncio
    async def test_blacklist_token_propagates_cache_outage(self, sessions):
        class DownCache(MemoryCache):
            async def set(self, key, value, ttl=None):
                raise CacheUnavailableError("redis unavailable", key=key)

        cache = DownCache()
        manager = BlacklistManager(cache, sessions)
        with pytest.raises(CacheUnavailableError):
            await manager.blacklist_token("token-a")
        assert not await manager.is_token_blacklisted("token-a")

    @pytest.mark.asyncio
    async def test_claim_token_is_single_use(self, blacklist):
        assert await blacklist.claim_token("refresh-a")
        assert not await blacklist.claim_token("refresh-a")
        assert await blacklist.is_token_blacklisted("refresh-a")
