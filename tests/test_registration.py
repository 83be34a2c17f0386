"""Tests for account registration.

Covers the ordered validation checks, first-user admin bootstrap, the
reachability gate, and conflict mapping from the store.
"""

import asyncio

import pytest

from inkwell.service.email_verifier import EmailVerificationError
from inkwell.service.errors import (
    ConflictError,
    DependencyError,
    DependencyTimeoutError,
    ValidationError,
)
from inkwell.service.passwords import PASSWORD_POLICY_MESSAGE
from inkwell.service.registration import RegistrationRequest, RegistrationService
from inkwell.storage.errors import ConstraintViolation


class FakeVerifier:
    def __init__(self, reachable=True, error=None, delay=0.0):
        self.reachable = reachable
        self.error = error
        self.delay = delay
        self.checked = []

    async def is_reachable(self, email):
        self.checked.append(email)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.reachable


def _request(**overrides):
    data = {
        "username": "alice",
        "email": "alice@example.com",
        "password": "Str0ng!Pass",
        "display_name": "Alice",
    }
    data.update(overrides)
    return RegistrationRequest(**data)


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def service(memory_store, hasher, verifier, settings):
    return RegistrationService(memory_store, hasher, verifier, settings)


class TestRegistrationValidation:
    """Checks run in a fixed order and stop at the first failure."""

    @pytest.mark.parametrize("field", ["username", "email", "password", "display_name"])
    async def test_missing_field_rejected(self, service, field):
        """Any blank field yields the same message."""
        with pytest.raises(ValidationError) as excinfo:
            await service.register(_request(**{field: "   "}))
        assert excinfo.value.message == "all fields are required"

    async def test_bad_email_format(self, service, verifier):
        with pytest.raises(ValidationError) as excinfo:
            await service.register(_request(email="not-an-email"))
        assert excinfo.value.message == "invalid email format"
        assert verifier.checked == []

    async def test_unreachable_email(self, memory_store, hasher, settings):
        service = RegistrationService(
            memory_store, hasher, FakeVerifier(reachable=False), settings
        )
        with pytest.raises(ValidationError) as excinfo:
            await service.register(_request())
        assert excinfo.value.message == "email is unreachable"
        assert memory_store.count_users() == 0

    async def test_verifier_failure_is_dependency_error(self, memory_store, hasher, settings):
        """Transport failures are surfaced with a sanitized cause."""
        failing = FakeVerifier(
            error=EmailVerificationError("request failed: secret=abc123 refused")
        )
        service = RegistrationService(memory_store, hasher, failing, settings)
        with pytest.raises(DependencyError) as excinfo:
            await service.register(_request())
        assert excinfo.value.message.startswith("failed to verify email: ")
        assert "abc123" not in excinfo.value.message
        assert not isinstance(excinfo.value, DependencyTimeoutError)

    async def test_verifier_timeout(self, memory_store, hasher, settings):
        settings.email_verify_timeout_seconds = 0.01
        slow = FakeVerifier(delay=1.0)
        service = RegistrationService(memory_store, hasher, slow, settings)
        with pytest.raises(DependencyTimeoutError):
            await service.register(_request())

    async def test_weak_password_checked_after_reachability(self, service, verifier):
        with pytest.raises(ValidationError) as excinfo:
            await service.register(_request(password="weakpass"))
        assert excinfo.value.message == PASSWORD_POLICY_MESSAGE
        assert verifier.checked == ["alice@example.com"]

    async def test_email_is_normalized(self, service):
        account = await service.register(_request(email="  Alice@Example.COM "))
        assert account.email == "alice@example.com"


class TestRegistrationOutcome:
    async def test_first_account_is_admin(self, service):
        first = await service.register(_request())
        second = await service.register(
            _request(username="bob", email="bob@example.com", display_name="Bob")
        )
        assert first.role == "admin"
        assert second.role == "user"

    async def test_returned_account_is_scrubbed(self, service, memory_store):
        account = await service.register(_request())
        assert account.password_hash == ""
        assert account.is_verified is False
        stored = memory_store.get_user(account.id)
        assert stored.password_hash.startswith("$argon2id$")

    async def test_duplicate_username(self, service):
        await service.register(_request())
        with pytest.raises(ConflictError) as excinfo:
            await service.register(_request(email="other@example.com"))
        assert excinfo.value.message == "username already taken"

    async def test_duplicate_email(self, service):
        await service.register(_request())
        with pytest.raises(ConflictError) as excinfo:
            await service.register(_request(username="alice2"))
        assert excinfo.value.message == "email already taken"

    async def test_concurrent_first_registrations_yield_one_admin(self, service, memory_store):
        """The bootstrap claim lets exactly one racer become admin."""
        accounts = await asyncio.gather(
            *(
                service.register(
                    _request(username=f"user{i}", email=f"user{i}@example.com")
                )
                for i in range(4)
            )
        )
        roles = sorted(a.role for a in accounts)
        assert roles.count("admin") == 1
        assert memory_store.count_users() == 4


class RacingStore:
    """Store that reports a free username but loses the insert race."""

    def __init__(self, inner, field):
        self.inner = inner
        self.field = field

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def create_user(self, *args, **kwargs):
        raise ConstraintViolation("duplicate", {"field": self.field})


class TestRegistrationRaces:
    @pytest.mark.parametrize(
        "field,message",
        [("username", "username already taken"), ("email", "email already taken")],
    )
    async def test_insert_race_maps_to_conflict(
        self, memory_store, hasher, verifier, settings, field, message
    ):
        service = RegistrationService(
            RacingStore(memory_store, field), hasher, verifier, settings
        )
        with pytest.raises(ConflictError) as excinfo:
            await service.register(_request())
        assert excinfo.value.message == message
