"""Unit tests for the ordered authentication checks."""

import pytest

from catalog.service.errors import AuthenticationError, AuthFailure
from catalog.service.gatekeeper import AuthGatekeeper, extract_bearer
from catalog.storage.errors import CacheUnavailableError
from catalog.storage.memory_cache import MemoryCache


@pytest.fixture
def gatekeeper(tokens, sessions, blacklist):
    return AuthGatekeeper(tokens, sessions, blacklist)


async def _login(sessions, tokens, user_id="u1", email="a@example.com"):
    session = await sessions.create_session(user_id, email)
    pair = tokens.issue_pair(user_id, email, session.id)
    return session, pair


class TestExtractBearer:
    @pytest.mark.parametrize(
        "header,expected",
        [
            ("Bearer abc", "abc"),
            ("bearer abc", "abc"),
            ("  Bearer   abc  ", "abc"),
            ("Basic abc", None),
            ("Bearer", None),
            ("Bearer a b", None),
            ("", None),
            (None, None),
        ],
    )
    def test_forms(self, header, expected):
        assert extract_bearer(header) == expected


class TestAuthenticate:
    @pytest.mark.asyncio
    async def test_success_returns_context(self, gatekeeper, sessions, tokens):
        session, pair = await _login(sessions, tokens)
        ctx = await gatekeeper.authenticate(f"Bearer {pair.access_token}")
        assert ctx.user_id == "u1"
        assert ctx.email == "a@example.com"
        assert ctx.session_id == session.id
        assert ctx.token == pair.access_token
        assert ctx.expires_at == pair.access_expires_at

    @pytest.mark.asyncio
    async def test_missing_header(self, gatekeeper):
        with pytest.raises(AuthenticationError) as excinfo:
            await gatekeeper.authenticate(None)
        assert excinfo.value.reason == AuthFailure.MISSING_CREDENTIALS

    @pytest.mark.asyncio
    async def test_refresh_token_not_accepted(self, gatekeeper, sessions, tokens):
        _, pair = await _login(sessions, tokens)
        with pytest.raises(AuthenticationError) as excinfo:
            await gatekeeper.authenticate(f"Bearer {pair.refresh_token}")
        assert excinfo.value.reason == AuthFailure.INVALID_TOKEN

    @pytest.mark.asyncio
    async def test_deleted_session(self, gatekeeper, sessions, tokens):
        session, pair = await _login(sessions, tokens)
        await sessions.delete_session(session.id)
        with pytest.raises(AuthenticationError) as excinfo:
            await gatekeeper.authenticate(f"Bearer {pair.access_token}")
        assert excinfo.value.reason == AuthFailure.SESSION_INVALID

    @pytest.mark.asyncio
    async def test_session_of_other_user(self, gatekeeper, sessions, tokens):
        session = await sessions.create_session("u2", "b@example.com")
        token = tokens.issue_access_token("u1", "a@example.com", session.id)
        with pytest.raises(AuthenticationError) as excinfo:
            await gatekeeper.authenticate(f"Bearer {token}")
        assert excinfo.value.reason == AuthFailure.SESSION_INVALID

    @pytest.mark.asyncio
    async def test_blacklisted_token(self, gatekeeper, sessions, tokens, blacklist):
        _, pair = await _login(sessions, tokens)
        await blacklist.blacklist_token(pair.access_token)
        with pytest.raises(AuthenticationError) as excinfo:
            await gatekeeper.authenticate(f"Bearer {pair.access_token}")
        assert excinfo.value.reason == AuthFailure.TOKEN_REVOKED

    @pytest.mark.asyncio
    async def test_logout_all_revokes_session(self, gatekeeper, sessions, tokens, blacklist):
        _, pair = await _login(sessions, tokens)
        await blacklist.blacklist_all_user_sessions("u1")
        with pytest.raises(AuthenticationError) as excinfo:
            await gatekeeper.authenticate(f"Bearer {pair.access_token}")
        assert excinfo.value.reason == AuthFailure.SESSION_REVOKED_BY_LOGOUT_ALL

    @pytest.mark.asyncio
    async def test_client_message_is_uniform(self, gatekeeper, sessions, tokens, blacklist):
        """Every rejection reason surfaces the same client-facing message."""
        _, pair = await _login(sessions, tokens)
        await blacklist.blacklist_token(pair.access_token)
        messages = set()
        for header in (None, "Bearer garbage", f"Bearer {pair.access_token}"):
            with pytest.raises(AuthenticationError) as excinfo:
                await gatekeeper.authenticate(header)
            messages.add(excinfo.value.message)
        assert messages == {"invalid or expired credentials"}

    @pytest.mark.asyncio
    async def test_invalid_signature_skips_cache(self, tokens, sessions, blacklist):
        """A bad token is rejected before any cache access."""

        class ExplodingCache(MemoryCache):
            async def get(self, key):
                raise AssertionError("cache must not be read")

            async def exists(self, key):
                raise AssertionError("cache must not be read")

        cache = ExplodingCache()
        sessions.cache = cache
        blacklist.cache = cache
        gatekeeper = AuthGatekeeper(tokens, sessions, blacklist)
        with pytest.raises(AuthenticationError):
            await gatekeeper.authenticate("Bearer not.a.token")

    @pytest.mark.asyncio
    async def test_cache_outage_propagates(self, tokens, sessions, blacklist):
        class DownCache(MemoryCache):
            async def get(self, key):
                raise CacheUnavailableError("redis unavailable", key=key)

        _, pair = await _login(sessions, tokens)
        sessions.cache = DownCache()
        gatekeeper = AuthGatekeeper(tokens, sessions, blacklist)
        with pytest.raises(CacheUnavailableError):
            await gatekeeper.authenticate(f"Bearer {pair.access_token}")
