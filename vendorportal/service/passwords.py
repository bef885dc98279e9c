from __future__ import annotations

import asyncio
import secrets
import string

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from vendorportal.logging import get_logger

logger = get_logger(__name__)

_GENERATED_ALPHABET = string.ascii_letters + string.digits


class PasswordHashing:
    """argon2id hashing that runs in worker threads.

    Hashing is the only CPU-heavy step in a login; the async wrappers hand it
    to ``asyncio.to_thread`` so the event loop keeps serving other requests.
    """

    def __init__(self, *, time_cost: int = 3, memory_cost: int = 65536) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost, memory_cost=memory_cost, type=Type.ID
        )
        # Compared against when no account matches so unknown emails cost the same
        self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, stored_hash: str | None, password: str) -> bool:
        try:
            return self._hasher.verify(stored_hash or self._dummy_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True

    async def hash_async(self, password: str) -> str:
        return await asyncio.to_thread(self.hash, password)

    async def verify_async(self, stored_hash: str | None, password: str) -> bool:
        """Verify in a worker thread; ``None`` runs against a dummy hash and fails."""
        if stored_hash is None:
            await asyncio.to_thread(self.verify, None, password)
            return False
        return await asyncio.to_thread(self.verify, stored_hash, password)


def generate_password(length: int = 16) -> str:
    return "".join(secrets.choice(_GENERATED_ALPHABET) for _ in range(length))
