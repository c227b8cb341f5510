from __future__ import annotations

from datetime import datetime, timedelta, timezone
import hashlib

import pytest

from gwiplatform.persistence.db import SessionLocal
from gwiplatform.services.auth.lockout import MemoryLockoutStore, lockout_key
from gwiplatform.services.auth.login import (
    ACCOUNT_LOCKED,
    INVALID_CREDENTIALS,
    LoginFailure,
    LoginSuccess,
    authenticate,
)
from gwiplatform.services.auth.passwords import hash_password, is_legacy_hash, verify_password
from gwiplatform.services.auth.principals import Portal
from gwiplatform.tests.utils.factories import DEFAULT_PASSWORD, create_super_admin, create_user


def test_bcrypt_hash_round_trip() -> None:
    stored = hash_password("s3cret-passphrase")
    assert stored.startswith("$2")
    assert verify_password("s3cret-passphrase", stored) is True
    assert verify_password("wrong", stored) is False


def test_legacy_sha256_hash_is_accepted() -> None:
    legacy = hashlib.sha256(b"old-password").hexdigest()
    assert is_legacy_hash(legacy) is True
    assert verify_password("old-password", legacy) is True
    assert verify_password("other", legacy) is False


@pytest.mark.parametrize("stored", [None, "", "not-a-hash", "$2b$04$truncated"])
def test_missing_or_malformed_hash_never_matches(stored: str | None) -> None:
    assert verify_password("anything", stored) is False


def test_lockout_key_is_per_portal_and_case_insensitive() -> None:
    assert lockout_key("admin", " Ops@Example.com ") == "admin:ops@example.com"
    assert lockout_key("admin", "ops@example.com") != lockout_key("gwi", "ops@example.com")


@pytest.mark.asyncio
async def test_memory_store_locks_after_max_attempts_and_expires() -> None:
    store = MemoryLockoutStore(max_attempts=5, lockout=timedelta(minutes=30))
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    for attempt in range(1, 5):
        assert await store.record_failure("admin:a@example.com", now=start) == attempt
        assert await store.is_locked("admin:a@example.com", now=start) is False
    assert await store.record_failure("admin:a@example.com", now=start) == 5
    assert await store.is_locked("admin:a@example.com", now=start) is True
    assert await store.is_locked("admin:a@example.com", now=start + timedelta(minutes=31)) is False


@pytest.mark.asyncio
async def test_memory_store_reset_clears_failures() -> None:
    store = MemoryLockoutStore(max_attempts=2, lockout=timedelta(minutes=30))
    await store.record_failure("k")
    await store.reset("k")
    assert await store.record_failure("k") == 1


@pytest.mark.asyncio
async def test_memory_store_drops_elapsed_windows() -> None:
    store = MemoryLockoutStore(max_attempts=5, lockout=timedelta(minutes=30))
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    for index in range(50):
        await store.record_failure(f"dashboard:spray{index}@example.com", now=start)
    for _ in range(5):
        await store.record_failure("admin:locked@example.com", now=start + timedelta(minutes=10))
    assert len(store) == 51

    later = start + timedelta(minutes=31)
    await store.record_failure("dashboard:fresh@example.com", now=later)
    # Elapsed windows are gone; the active lock survives until it expires.
    assert len(store) == 2
    assert await store.is_locked("admin:locked@example.com", now=later) is True


@pytest.mark.asyncio
async def test_authenticate_succeeds_with_normalized_email() -> None:
    admin = await create_super_admin(email="Ops.Lead@Example.com".lower())
    async with SessionLocal() as session:
        result = await authenticate(
            session, portal=Portal.ADMIN, email=" OPS.LEAD@example.com ", password=DEFAULT_PASSWORD
        )
    assert isinstance(result, LoginSuccess)
    assert result.principal.id == admin.id
    assert result.token


@pytest.mark.asyncio
async def test_authenticate_accepts_legacy_hash() -> None:
    legacy = hashlib.sha256(b"legacy-password-123").hexdigest()
    admin = await create_super_admin(password_hash=legacy)
    async with SessionLocal() as session:
        result = await authenticate(
            session, portal=Portal.ADMIN, email=admin.email, password="legacy-password-123"
        )
    assert isinstance(result, LoginSuccess)


@pytest.mark.asyncio
async def test_authenticate_failures_are_indistinguishable() -> None:
    inactive = await create_user(is_active=False)
    active = await create_user()
    async with SessionLocal() as session:
        unknown = await authenticate(
            session, portal=Portal.DASHBOARD, email="nobody@example.com", password="x"
        )
        disabled = await authenticate(
            session, portal=Portal.DASHBOARD, email=inactive.email, password=DEFAULT_PASSWORD
        )
        wrong = await authenticate(
            session, portal=Portal.DASHBOARD, email=active.email, password="wrong-password"
        )
    assert unknown == disabled == wrong == LoginFailure(message=INVALID_CREDENTIALS)


@pytest.mark.asyncio
async def test_authenticate_locks_after_repeated_failures() -> None:
    admin = await create_super_admin()
    async with SessionLocal() as session:
        for _ in range(5):
            result = await authenticate(
                session, portal=Portal.ADMIN, email=admin.email, password="wrong-password"
            )
            assert result.message == INVALID_CREDENTIALS
        # The correct password is refused while the lock is active.
        locked = await authenticate(
            session, portal=Portal.ADMIN, email=admin.email, password=DEFAULT_PASSWORD
        )
        other_portal = await authenticate(
            session, portal=Portal.GWI, email=admin.email, password=DEFAULT_PASSWORD
        )
    assert locked == LoginFailure(message=ACCOUNT_LOCKED, locked=True)
    assert isinstance(other_portal, LoginSuccess)
