"""Tests for login, refresh rotation, revocation, and role changes."""

import asyncio
from datetime import timedelta

import pytest

from inkwell.service.auth import AuthService
from inkwell.service.errors import AuthenticationError, NotFoundError
from inkwell.service.tokens import TokenSigner, token_digest
from inkwell.storage.models import utcnow

PASSWORD = "Str0ng!Pass"


@pytest.fixture
def signer(settings):
    return TokenSigner.from_settings(settings)


@pytest.fixture
def auth_service(memory_store, signer, hasher, settings):
    return AuthService(memory_store, signer, hasher, settings)


@pytest.fixture
def account(memory_store, hasher):
    return memory_store.create_user(
        "alice", "alice@example.com", "Alice", hasher.hash(PASSWORD), role="user"
    )


class TestLogin:
    async def test_login_by_username(self, auth_service, account, memory_store):
        result = await auth_service.login("alice", PASSWORD)
        assert result.account.id == account.id
        assert result.account.password_hash == ""
        record = memory_store.find_by_refresh_token(
            token_digest(result.tokens.refresh_token)
        )
        assert record is not None
        assert record.user_id == account.id
        assert record.expires_at == result.tokens.refresh_expires_at

    async def test_login_by_email_is_case_insensitive(self, auth_service, account):
        result = await auth_service.login("ALICE@example.com", PASSWORD)
        assert result.account.id == account.id

    async def test_wrong_password(self, auth_service, account):
        with pytest.raises(AuthenticationError) as excinfo:
            await auth_service.login("alice", "Wr0ng!Pass")
        assert excinfo.value.message == "invalid credentials"

    async def test_unknown_user_gets_same_error(self, auth_service, hasher, monkeypatch):
        """An unknown login still pays for one hash verification."""
        calls = []
        original = hasher.verify_decoy

        def tracking(password):
            calls.append(password)
            return original(password)

        monkeypatch.setattr(hasher, "verify_decoy", tracking)
        with pytest.raises(AuthenticationError) as excinfo:
            await auth_service.login("nobody", PASSWORD)
        assert excinfo.value.message == "invalid credentials"
        assert calls == [PASSWORD]

    async def test_refresh_token_never_stored_in_clear(self, auth_service, account, memory_store):
        result = await auth_service.login("alice", PASSWORD)
        assert result.tokens.refresh_token not in memory_store.sessions


class TestRefresh:
    async def test_rotation_retires_old_token(self, auth_service, account, memory_store):
        first = await auth_service.login("alice", PASSWORD)
        rotated = await auth_service.refresh(first.tokens.refresh_token)

        assert rotated.refresh_token != first.tokens.refresh_token
        assert memory_store.find_by_refresh_token(
            token_digest(first.tokens.refresh_token)
        ) is None
        assert memory_store.find_by_refresh_token(
            token_digest(rotated.refresh_token)
        ) is not None

        with pytest.raises(AuthenticationError) as excinfo:
            await auth_service.refresh(first.tokens.refresh_token)
        assert excinfo.value.message == "refresh token not recognized"

    async def test_garbage_token(self, auth_service):
        with pytest.raises(AuthenticationError) as excinfo:
            await auth_service.refresh("not-a-jwt")
        assert excinfo.value.message == "invalid or expired refresh token"

    async def test_non_ascii_token(self, auth_service, account):
        result = await auth_service.login("alice", PASSWORD)
        for token in (
            "eyJhbGciOiJIUzI1NiIsInR5cCI6IkpXVCJ9.e30.\u00e9",
            result.tokens.refresh_token[:-1] + "\u00e9",
        ):
            with pytest.raises(AuthenticationError) as excinfo:
                await auth_service.refresh(token)
            assert excinfo.value.message == "invalid or expired refresh token"

    async def test_access_token_rejected_as_refresh(self, auth_service, account):
        result = await auth_service.login("alice", PASSWORD)
        with pytest.raises(AuthenticationError) as excinfo:
            await auth_service.refresh(result.tokens.access_token)
        assert excinfo.value.message == "invalid or expired refresh token"

    async def test_record_belonging_to_other_user(self, auth_service, account, memory_store, hasher):
        other = memory_store.create_user(
            "bob", "bob@example.com", "Bob", hasher.hash(PASSWORD)
        )
        result = await auth_service.login("alice", PASSWORD)
        digest = token_digest(result.tokens.refresh_token)
        memory_store.sessions[digest].user_id = other.id
        with pytest.raises(AuthenticationError) as excinfo:
            await auth_service.refresh(result.tokens.refresh_token)
        assert excinfo.value.message == "refresh token not recognized"

    async def test_expired_record_is_deleted(self, auth_service, account, memory_store):
        result = await auth_service.login("alice", PASSWORD)
        digest = token_digest(result.tokens.refresh_token)
        memory_store.sessions[digest].expires_at = utcnow() - timedelta(seconds=1)

        with pytest.raises(AuthenticationError) as excinfo:
            await auth_service.refresh(result.tokens.refresh_token)
        assert excinfo.value.message == "refresh token expired"
        assert digest not in memory_store.sessions

    async def test_deleted_account(self, auth_service, account, memory_store):
        result = await auth_service.login("alice", PASSWORD)
        del memory_store.accounts[account.id]
        with pytest.raises(NotFoundError) as excinfo:
            await auth_service.refresh(result.tokens.refresh_token)
        assert excinfo.value.message == "user not found"

    async def test_concurrent_rotation_has_one_winner(self, auth_service, account):
        result = await auth_service.login("alice", PASSWORD)
        outcomes = await asyncio.gather(
            *(auth_service.refresh(result.tokens.refresh_token) for _ in range(5)),
            return_exceptions=True,
        )
        successes = [o for o in outcomes if not isinstance(o, Exception)]
        failures = [o for o in outcomes if isinstance(o, AuthenticationError)]
        assert len(successes) == 1
        assert len(failures) == 4


class TestLogout:
    async def test_logout_revokes_every_session(self, auth_service, account, memory_store):
        first = await auth_service.login("alice", PASSWORD)
        second = await auth_service.login("alice", PASSWORD)

        removed = await auth_service.logout(account.id)
        assert removed == 2

        for tokens in (first.tokens, second.tokens):
            with pytest.raises(AuthenticationError):
                await auth_service.refresh(tokens.refresh_token)

    async def test_logout_without_sessions(self, auth_service, account):
        assert await auth_service.logout(account.id) == 0


class TestAuthenticate:
    async def test_valid_access_token(self, auth_service, account):
        result = await auth_service.login("alice", PASSWORD)
        ctx = await auth_service.authenticate(f"Bearer {result.tokens.access_token}")
        assert ctx is not None
        assert ctx.user_id == account.id
        assert ctx.role == "user"

    @pytest.mark.parametrize(
        "header",
        [
            None,
            "",
            "Basic abc",
            "Bearer ",
            "Bearer junk",
            "Bearer eyJhbGciOiJIUzI1NiIsInR5cCI6IkpXVCJ9.e30.\u00e9",
        ],
    )
    async def test_rejects_bad_headers(self, auth_service, header):
        assert await auth_service.authenticate(header) is None

    async def test_refresh_token_is_not_an_access_token(self, auth_service, account):
        result = await auth_service.login("alice", PASSWORD)
        assert await auth_service.authenticate(f"Bearer {result.tokens.refresh_token}") is None

    async def test_required_role(self, auth_service, account):
        result = await auth_service.login("alice", PASSWORD)
        header = f"Bearer {result.tokens.access_token}"
        assert await auth_service.authenticate(header, required_role="user") is not None
        assert await auth_service.authenticate(header, required_role="admin") is None

    def test_role_allows(self, auth_service):
        assert auth_service.role_allows("admin", "user")
        assert auth_service.role_allows("admin", "admin")
        assert auth_service.role_allows("user", "user")
        assert not auth_service.role_allows("user", "admin")


class TestRoleChanges:
    async def test_promote_revokes_sessions_and_stale_tokens(self, auth_service, account):
        result = await auth_service.login("alice", PASSWORD)

        promoted = await auth_service.promote_user(account.id)
        assert promoted.role == "admin"
        assert promoted.password_hash == ""

        assert await auth_service.authenticate(f"Bearer {result.tokens.access_token}") is None
        with pytest.raises(AuthenticationError):
            await auth_service.refresh(result.tokens.refresh_token)

        fresh = await auth_service.login("alice", PASSWORD)
        ctx = await auth_service.authenticate(
            f"Bearer {fresh.tokens.access_token}", required_role="admin"
        )
        assert ctx is not None

    async def test_demote(self, auth_service, account):
        await auth_service.promote_user(account.id)
        demoted = await auth_service.demote_user(account.id)
        assert demoted.role == "user"

    async def test_unknown_user(self, auth_service):
        with pytest.raises(NotFoundError) as excinfo:
            await auth_service.promote_user("missing")
        assert excinfo.value.message == "user not found"

    async def test_get_account(self, auth_service, account):
        fetched = await auth_service.get_account(account.id)
        assert fetched.username == "alice"
        assert fetched.password_hash == ""
