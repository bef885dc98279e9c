"""MemoryStore persistence and atomic counters."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from vendorportal.service.tokens import digest_token
from vendorportal.service.two_factor import hash_backup_code
from vendorportal.storage.errors import ConstraintViolation
from vendorportal.storage.memory import MemoryStore
from vendorportal.storage.models import (
    BackupCode,
    DeviceContext,
    EmailVerificationToken,
    RefreshToken,
    RoleKind,
    StaffRole,
    TwoFactorAuth,
    VendorRole,
    new_id,
)

KEY = "memory-store-test-key"
NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _run_concurrently(func, count=10):
    results = []
    lock = threading.Lock()
    barrier = threading.Barrier(count)

    def worker():
        barrier.wait()
        outcome = func()
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return results


def _enrolled(store, user_id, codes=("AAAA1111", "BBBB2222")):
    store.upsert_two_factor(
        TwoFactorAuth(
            user_id=user_id,
            secret="JBSWY3DPEHPK3PXP",
            backup_codes=tuple(BackupCode(code_hash=hash_backup_code(c)) for c in codes),
            created_at=NOW,
        )
    )
    store.set_two_factor_enabled(user_id, True, NOW)


def test_state_survives_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=KEY)
    user = store.create_user(
        "persist@vendor.example",
        "hash",
        roles=[VendorRole(RoleKind.VENDOR_ADMIN, "v-1"), StaffRole(RoleKind.DELIVERY_HEAD)],
        profile={"name": "Persist"},
        created_at=NOW,
    )
    store.create_refresh_token(
        RefreshToken(
            id=new_id(),
            token_hash="h1",
            user_id=user.id,
            expires_at=NOW + timedelta(days=7),
            created_at=NOW,
            device=DeviceContext(user_agent="ua", ip_address="10.0.0.1"),
        )
    )
    _enrolled(store, user.id)
    store.consume_backup_code(user.id, hash_backup_code("AAAA1111"), NOW)

    state_file = tmp_path / "state" / "credential_store.json"
    assert "JBSWY3DPEHPK3PXP" not in state_file.read_text()

    reloaded = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=KEY)
    again = reloaded.get_user(user.id)
    assert again.roles == user.roles
    assert again.profile == {"name": "Persist"}
    assert again.created_at == NOW
    token = reloaded.get_refresh_token("h1")
    assert token.device.ip_address == "10.0.0.1"
    record = reloaded.get_two_factor(user.id)
    assert record.secret == "JBSWY3DPEHPK3PXP"
    assert record.enabled is True
    assert record.unused_backup_codes == 1


def test_duplicate_email_is_case_insensitive():
    store = MemoryStore(mfa_encryption_key=KEY)
    store.create_user("dup@vendor.example", "hash")
    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user("DUP@Vendor.Example", "hash")
    assert exc_info.value.field == "email"


def test_returned_users_are_copies():
    store = MemoryStore(mfa_encryption_key=KEY)
    user = store.create_user("copy@vendor.example", "hash")
    fetched = store.get_user(user.id)
    fetched.login_attempts = 99
    assert store.get_user(user.id).login_attempts == 0


def test_failed_login_counter_is_atomic():
    store = MemoryStore(mfa_encryption_key=KEY)
    user = store.create_user("race@vendor.example", "hash")
    lock_until = NOW + timedelta(hours=2)

    _run_concurrently(
        lambda: store.record_failed_login(user.id, max_attempts=5, lock_until=lock_until, now=NOW),
        count=20,
    )
    updated = store.get_user(user.id)
    assert updated.login_attempts == 20
    assert updated.lock_until == lock_until


def test_expired_lock_starts_fresh_count():
    store = MemoryStore(mfa_encryption_key=KEY)
    user = store.create_user("fresh@vendor.example", "hash")
    for _ in range(5):
        store.record_failed_login(
            user.id, max_attempts=5, lock_until=NOW + timedelta(hours=2), now=NOW
        )
    later = NOW + timedelta(hours=3)
    updated = store.record_failed_login(
        user.id, max_attempts=5, lock_until=later + timedelta(hours=2), now=later
    )
    assert updated.login_attempts == 1
    assert updated.lock_until is None


def test_backup_code_consumed_once_under_contention():
    store = MemoryStore(mfa_encryption_key=KEY)
    user = store.create_user("codes@elika.example", "hash")
    _enrolled(store, user.id)
    code_hash = hash_backup_code("BBBB2222")
    results = _run_concurrently(lambda: store.consume_backup_code(user.id, code_hash, NOW))
    assert results.count(True) == 1


def test_verification_token_consumed_once_under_contention():
    store = MemoryStore(mfa_encryption_key=KEY)
    user = store.create_user("once@vendor.example", "hash")
    store.replace_email_verification_token(
        EmailVerificationToken(
            id=new_id(),
            token_hash=digest_token("t"),
            user_id=user.id,
            email=user.email,
            created_at=NOW,
            expires_at=NOW + timedelta(hours=24),
        )
    )
    results = _run_concurrently(
        lambda: store.consume_email_verification_token(digest_token("t"), NOW)
    )
    assert sum(1 for r in results if r is not None) == 1


def test_enabled_enrollment_not_replaced_without_flag():
    store = MemoryStore(mfa_encryption_key=KEY)
    user = store.create_user("keep@elika.example", "hash")
    _enrolled(store, user.id)
    replacement = TwoFactorAuth(user_id=user.id, secret="KRSXG5CTMVRXEZLU", created_at=NOW)
    assert store.upsert_two_factor(replacement) is None
    assert store.get_two_factor(user.id).secret == "JBSWY3DPEHPK3PXP"
    assert store.upsert_two_factor(replacement, replace_enabled=True) is not None
    assert store.get_two_factor(user.id).enabled is False


def test_backup_codes_need_enabled_enrollment():
    store = MemoryStore(mfa_encryption_key=KEY)
    user = store.create_user("pending@elika.example", "hash")
    store.upsert_two_factor(
        TwoFactorAuth(
            user_id=user.id,
            secret="JBSWY3DPEHPK3PXP",
            backup_codes=(BackupCode(code_hash=hash_backup_code("CCCC3333")),),
        )
    )
    assert store.consume_backup_code(user.id, hash_backup_code("CCCC3333"), NOW) is False


def test_purge_expired_tokens():
    store = MemoryStore(mfa_encryption_key=KEY)
    user = store.create_user("purge@vendor.example", "hash")
    for token_hash, expires in (("live", NOW + timedelta(days=1)), ("dead", NOW - timedelta(seconds=1))):
        store.create_refresh_token(
            RefreshToken(
                id=new_id(),
                token_hash=token_hash,
                user_id=user.id,
                expires_at=expires,
                created_at=NOW - timedelta(days=1),
            )
        )
    store.create_refresh_token(
        RefreshToken(
            id=new_id(),
            token_hash="revoked-long-ago",
            user_id=user.id,
            expires_at=NOW + timedelta(days=1),
            created_at=NOW - timedelta(days=10),
        )
    )
    store.revoke_refresh_token("revoked-long-ago", "Logout", NOW - timedelta(days=9))

    removed = store.purge_expired_tokens(
        NOW, revoked_before=NOW - timedelta(days=7), used_before=NOW - timedelta(hours=24)
    )
    assert removed["refresh_tokens"] == 2
    assert store.get_refresh_token("live") is not None
    assert store.get_refresh_token("dead") is None


def test_refresh_token_requires_existing_user():
    store = MemoryStore(mfa_encryption_key=KEY)
    with pytest.raises(ConstraintViolation):
        store.create_refresh_token(
            RefreshToken(
                id=new_id(),
                token_hash="orphan",
                user_id="missing",
                expires_at=NOW + timedelta(days=1),
                created_at=NOW,
            )
        )
