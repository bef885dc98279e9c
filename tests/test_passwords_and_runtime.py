import asyncio

from vendorportal.service.passwords import PasswordHashing, generate_password
from vendorportal.service.runtime import _mask_url_password, get_runtime, reset_runtime_for_tests
from vendorportal.storage.memory import MemoryStore


def test_argon2_round_trip(hasher):
    stored = hasher.hash("Correct-Horse-9")
    assert stored.startswith("$argon2id$")
    assert hasher.verify(stored, "Correct-Horse-9")
    assert not hasher.verify(stored, "correct-horse-9")


def test_missing_or_garbage_hash_fails_closed(hasher):
    assert hasher.verify(None, "anything") is False
    assert hasher.verify("plaintext", "plaintext") is False
    assert hasher.needs_rehash("plaintext") is True


def test_async_wrappers(hasher):
    async def _run():
        stored = await hasher.hash_async("Async-Secret-1")
        return await hasher.verify_async(stored, "Async-Secret-1"), await hasher.verify_async(
            None, "Async-Secret-1"
        )

    assert asyncio.run(_run()) == (True, False)


def test_rehash_when_cost_changes(hasher):
    stored = hasher.hash("Correct-Horse-9")
    stronger = PasswordHashing(time_cost=2, memory_cost=1024)
    assert stronger.needs_rehash(stored) is True


def test_generated_passwords():
    first, second = generate_password(), generate_password()
    assert len(first) == 16
    assert first.isalnum()
    assert first != second


def test_runtime_uses_memory_store_in_tests():
    runtime = get_runtime()
    assert isinstance(runtime.store, MemoryStore)
    assert runtime.store.fs_root is None
    assert runtime.auth.store is runtime.store
    assert reset_runtime_for_tests() is get_runtime()
    assert get_runtime() is not runtime


def test_mask_url_password():
    assert _mask_url_password("postgresql://app:s3cret@db:5432/portal") == "postgresql://app:***@db:5432/portal"
    assert _mask_url_password("postgresql://db/portal") == "postgresql://db/portal"
    assert _mask_url_password(None) is None
