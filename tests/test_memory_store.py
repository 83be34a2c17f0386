"""MemoryStore contracts and persistence across restarts."""

from datetime import timedelta

import pytest

from inkwell.storage.errors import ConstraintViolation
from inkwell.storage.memory import MemoryStore
from inkwell.storage.models import ResetChallenge, ResetGrant, SessionRecord, utcnow


def _session(user_id, token_hash, minutes=60):
    return SessionRecord.new(user_id, token_hash, utcnow() + timedelta(minutes=minutes))


class TestAccounts:
    def test_create_and_lookup(self, memory_store):
        account = memory_store.create_user("alice", "alice@example.com", "Alice", "hash")
        assert memory_store.count_users() == 1
        assert memory_store.exists_by_username("alice")
        assert memory_store.exists_by_email("alice@example.com")
        assert memory_store.get_user(account.id).username == "alice"
        assert memory_store.get_user_by_login("alice").id == account.id
        assert memory_store.get_user_by_login("Alice@Example.com").id == account.id
        assert memory_store.get_user_by_login("nobody") is None

    def test_unique_username_and_email(self, memory_store):
        memory_store.create_user("alice", "alice@example.com", "Alice", "hash")
        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.create_user("alice", "other@example.com", "A", "hash")
        assert excinfo.value.field == "username"
        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.create_user("alice2", "alice@example.com", "A", "hash")
        assert excinfo.value.field == "email"

    def test_admin_bootstrap_claimed_once(self, memory_store):
        memory_store.create_user("root", "root@example.com", "Root", "hash", role="admin")
        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.create_user("root2", "root2@example.com", "Root", "hash", role="admin")
        assert excinfo.value.field == "admin_bootstrap"
        assert memory_store.count_users() == 1

    def test_updates(self, memory_store):
        account = memory_store.create_user("alice", "alice@example.com", "Alice", "hash")
        assert memory_store.update_password_by_email("alice@example.com", "new").password_hash == "new"
        assert memory_store.update_password_by_email("ghost@example.com", "new") is None
        assert memory_store.update_user_role(account.id, "admin").role == "admin"
        assert memory_store.update_user_role("missing", "admin") is None


class TestSessions:
    def test_store_find_delete(self, memory_store):
        account = memory_store.create_user("alice", "alice@example.com", "Alice", "hash")
        memory_store.store_token(_session(account.id, "h1"))
        memory_store.store_token(_session(account.id, "h2"))
        assert memory_store.find_by_refresh_token("h1").user_id == account.id
        assert memory_store.delete_by_refresh_token("h1") is True
        assert memory_store.delete_by_refresh_token("h1") is False
        assert memory_store.delete_tokens_by_user_id(account.id) == 1
        assert memory_store.find_by_refresh_token("h2") is None

    def test_session_requires_account(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.store_token(_session("missing", "h1"))

    def test_replace_session_is_single_use(self, memory_store):
        account = memory_store.create_user("alice", "alice@example.com", "Alice", "hash")
        memory_store.store_token(_session(account.id, "old"))
        assert memory_store.replace_session("old", _session(account.id, "new")) is True
        assert memory_store.replace_session("old", _session(account.id, "other")) is False
        assert memory_store.find_by_refresh_token("new") is not None
        assert memory_store.find_by_refresh_token("other") is None

    def test_purge_expired_sessions(self, memory_store):
        account = memory_store.create_user("alice", "alice@example.com", "Alice", "hash")
        memory_store.store_token(_session(account.id, "live"))
        memory_store.store_token(_session(account.id, "dead", minutes=-1))
        assert memory_store.purge_expired_sessions() == 1
        assert memory_store.find_by_refresh_token("live") is not None


class TestResetState:
    def test_challenge_lifecycle(self, memory_store):
        memory_store.store_reset_request(ResetChallenge.new("a@example.com", "otp-hash", 10))
        assert memory_store.increment_attempt_count("a@example.com") == 1
        assert memory_store.increment_attempt_count("a@example.com") == 2
        assert memory_store.get_reset_request("a@example.com").attempt_count == 2
        assert memory_store.delete_reset_request("a@example.com") is True
        assert memory_store.increment_attempt_count("a@example.com") is None

    def test_grant_consumed_once(self, memory_store):
        grant = ResetGrant("g-hash", "a@example.com", utcnow() + timedelta(minutes=10))
        memory_store.store_reset_grant(grant)
        assert memory_store.consume_reset_grant("g-hash").email == "a@example.com"
        assert memory_store.consume_reset_grant("g-hash") is None


def test_state_survives_restart(tmp_path):
    root = str(tmp_path / "persisted")
    store = MemoryStore(fs_root=root)
    account = store.create_user("alice", "alice@example.com", "Alice", "hash", role="admin")
    store.store_token(_session(account.id, "h1"))
    store.store_reset_request(ResetChallenge.new("alice@example.com", "otp-hash", 10))

    reloaded = MemoryStore(fs_root=root)
    assert reloaded.get_user(account.id).role == "admin"
    assert reloaded.find_by_refresh_token("h1").user_id == account.id
    assert reloaded.get_reset_request("alice@example.com").otp_hash == "otp-hash"
    with pytest.raises(ConstraintViolation):
        reloaded.create_user("bob", "bob@example.com", "Bob", "hash", role="admin")
