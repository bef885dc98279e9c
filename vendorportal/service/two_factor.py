from __future__ import annotations

import base64
import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol
from urllib.parse import quote, urlencode

from vendorportal.config import Settings
from vendorportal.logging import get_logger
from vendorportal.service.errors import (
    InvalidTwoFactorTokenError,
    TwoFactorAlreadyEnabledError,
    TwoFactorNotEnabledError,
    TwoFactorNotSetupError,
    UserNotFoundError,
)
from vendorportal.service.sources import Clock, RandomSource, SystemClock, SystemRandom
from vendorportal.storage.models import BackupCode, TwoFactorAuth, User

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
SECRET_BYTES = 20
BACKUP_CODE_BYTES = 4


class TwoFactorStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def upsert_two_factor(
        self, record: TwoFactorAuth, *, replace_enabled: bool = False
    ) -> Optional[TwoFactorAuth]: ...

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorAuth]: ...

    def set_two_factor_enabled(
        self, user_id: str, enabled: bool, now: datetime
    ) -> Optional[TwoFactorAuth]: ...

    def touch_two_factor(self, user_id: str, now: datetime) -> None: ...

    def consume_backup_code(self, user_id: str, code_hash: str, now: datetime) -> bool: ...


@dataclass
class TwoFactorSetup:
    secret: str
    qr_code_payload: str
    backup_codes: List[str]
    required: bool


def normalize_backup_code(code: str) -> str:
    return "".join(ch for ch in (code or "") if ch not in " -").upper()


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(normalize_backup_code(code).encode("utf-8")).hexdigest()


def generate_totp(secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS) -> str:
    """RFC 6238 code (HMAC-SHA1) so standard authenticator apps agree with us."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except ValueError:
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (10**digits)
    return str(code_int).zfill(digits)


class TwoFactorAuthenticator:
    """TOTP enrollment with single-use backup codes.

    States run not configured -> pending (after :meth:`setup`) -> enabled
    (after :meth:`enable`). Leaving the enabled state goes through
    :meth:`disable`, which demands a valid code.
    """

    def __init__(
        self,
        store: TwoFactorStore,
        settings: Settings,
        *,
        clock: Clock | None = None,
        random: RandomSource | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock or SystemClock()
        self.random = random or SystemRandom()

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise UserNotFoundError()
        return user

    def requires_enrollment(self, user_id: str) -> bool:
        user = self.store.get_user(user_id)
        return bool(user and user.requires_two_factor)

    def is_enabled(self, user_id: str) -> bool:
        record = self.store.get_two_factor(user_id)
        return bool(record and record.enabled)

    def provisioning_uri(self, secret: str, account: str) -> str:
        issuer = self.settings.two_factor_issuer
        label = quote(f"{issuer}:{account}")
        query = urlencode(
            {
                "secret": secret,
                "issuer": issuer,
                "algorithm": "SHA1",
                "digits": TOTP_DIGITS,
                "period": TOTP_INTERVAL,
            },
            quote_via=quote,
        )
        return f"otpauth://totp/{label}?{query}"

    def setup(self, user_id: str) -> TwoFactorSetup:
        """Create a fresh pending enrollment.

        Re-running setup before enabling replaces the pending secret. Once
        enabled the caller must :meth:`disable` first.
        """
        user = self._require_user(user_id)
        secret = base64.b32encode(self.random.token_bytes(SECRET_BYTES)).decode("ascii").rstrip("=")
        backup_codes = [
            self.random.token_bytes(BACKUP_CODE_BYTES).hex().upper()
            for _ in range(self.settings.backup_code_count)
        ]
        stored = self.store.upsert_two_factor(
            TwoFactorAuth(
                user_id=user.id,
                secret=secret,
                enabled=False,
                backup_codes=tuple(BackupCode(code_hash=hash_backup_code(c)) for c in backup_codes),
                created_at=self.clock.now(),
            )
        )
        if stored is None:
            raise TwoFactorAlreadyEnabledError()
        logger.info("two_factor_setup_started", user_id=user.id)
        return TwoFactorSetup(
            secret=secret,
            qr_code_payload=self.provisioning_uri(secret, user.email),
            backup_codes=backup_codes,
            required=user.requires_two_factor,
        )

    def _totp_matches(self, secret: str, code: str) -> bool:
        candidate = (code or "").strip().replace(" ", "")
        if len(candidate) != TOTP_DIGITS or not (candidate.isascii() and candidate.isdigit()):
            return False
        now_ts = self.clock.now().timestamp()
        window = self.settings.two_factor_window
        matched = False
        for offset in range(-window, window + 1):
            generated = generate_totp(secret, now_ts + offset * TOTP_INTERVAL)
            # no early exit so every step costs the same
            if generated and hmac.compare_digest(generated, candidate):
                matched = True
        return matched

    def enable(self, user_id: str, code: str) -> None:
        record = self.store.get_two_factor(user_id)
        if not record:
            raise TwoFactorNotSetupError()
        if not self._totp_matches(record.secret, code):
            logger.warning("two_factor_enable_failed", user_id=user_id)
            raise InvalidTwoFactorTokenError()
        self.store.set_two_factor_enabled(user_id, True, self.clock.now())
        logger.info("two_factor_enabled", user_id=user_id)

    def verify(self, user_id: str, code: str) -> str:
        """Check a TOTP or backup code; returns ``"totp"`` or ``"backup_code"``."""
        record = self.store.get_two_factor(user_id)
        if not record or not record.enabled:
            raise TwoFactorNotEnabledError()
        now = self.clock.now()
        if self._totp_matches(record.secret, code):
            self.store.touch_two_factor(user_id, now)
            return "totp"
        normalized = normalize_backup_code(code)
        if normalized and self.store.consume_backup_code(user_id, hash_backup_code(normalized), now):
            logger.info(
                "two_factor_backup_code_used",
                user_id=user_id,
                remaining=max(record.unused_backup_codes - 1, 0),
            )
            return "backup_code"
        logger.warning("two_factor_verify_failed", user_id=user_id)
        raise InvalidTwoFactorTokenError()

    def disable(self, user_id: str, code: str) -> None:
        self.verify(user_id, code)
        self.store.set_two_factor_enabled(user_id, False, self.clock.now())
        logger.info("two_factor_disabled", user_id=user_id)

    def status(self, user_id: str) -> dict:
        record = self.store.get_two_factor(user_id)
        return {
            "enabled": bool(record and record.enabled),
            "pending": bool(record and not record.enabled),
            "required": self.requires_enrollment(user_id),
            "backup_codes_remaining": record.unused_backup_codes if record else 0,
            "enabled_at": record.enabled_at.isoformat() if record and record.enabled_at else None,
        }
