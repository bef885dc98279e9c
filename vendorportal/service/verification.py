from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol

from vendorportal.config import Settings
from vendorportal.logging import email_digest, get_logger
from vendorportal.service.errors import (
    InvalidResetTokenError,
    InvalidVerificationTokenError,
)
from vendorportal.service.sources import Clock, RandomSource, SystemClock, SystemRandom
from vendorportal.service.tokens import digest_token
from vendorportal.storage.models import (
    EmailVerificationToken,
    PasswordResetToken,
    User,
    new_id,
)

logger = get_logger(__name__)

ONE_TIME_TOKEN_BYTES = 32


class VerificationStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def replace_email_verification_token(
        self, token: EmailVerificationToken
    ) -> EmailVerificationToken: ...

    def consume_email_verification_token(
        self, token_hash: str, now: datetime
    ) -> Optional[EmailVerificationToken]: ...

    def replace_password_reset_token(self, token: PasswordResetToken) -> PasswordResetToken: ...

    def get_password_reset_token(self, token_hash: str) -> Optional[PasswordResetToken]: ...

    def consume_password_reset_token(
        self, token_hash: str, now: datetime
    ) -> Optional[PasswordResetToken]: ...


@dataclass
class IssuedReset:
    token: str
    user: User


class VerificationTokenManager:
    """Single-use email verification and password reset tokens.

    Issuing a token removes the user's earlier ones of the same kind, so only
    the most recent link in a mailbox works.
    """

    def __init__(
        self,
        store: VerificationStore,
        settings: Settings,
        *,
        clock: Clock | None = None,
        random: RandomSource | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock or SystemClock()
        self.random = random or SystemRandom()

    def _new_token(self) -> str:
        return self.random.token_bytes(ONE_TIME_TOKEN_BYTES).hex()

    def issue_email_verification(self, user_id: str, email: str) -> str:
        now = self.clock.now()
        token = self._new_token()
        self.store.replace_email_verification_token(
            EmailVerificationToken(
                id=new_id(),
                token_hash=digest_token(token),
                user_id=user_id,
                email=email.strip().lower(),
                created_at=now,
                expires_at=now + timedelta(hours=self.settings.email_verification_ttl_hours),
            )
        )
        logger.info("email_verification_issued", user_id=user_id)
        return token

    def consume_email_verification(self, token: str) -> str:
        """Mark the token used and return its user id."""
        record = self.store.consume_email_verification_token(
            digest_token(token or ""), self.clock.now()
        )
        if not record:
            logger.warning("email_verification_invalid_token")
            raise InvalidVerificationTokenError()
        return record.user_id

    def issue_password_reset(
        self,
        email: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[IssuedReset]:
        """Issue a reset token, or None when no account uses ``email``."""
        user = self.store.get_user_by_email(email)
        if not user:
            logger.info("password_reset_unknown_email", email_hash=email_digest(email))
            return None
        now = self.clock.now()
        token = self._new_token()
        self.store.replace_password_reset_token(
            PasswordResetToken(
                id=new_id(),
                token_hash=digest_token(token),
                user_id=user.id,
                email=user.email,
                ip_address=ip_address,
                user_agent=user_agent,
                created_at=now,
                expires_at=now + timedelta(hours=self.settings.password_reset_ttl_hours),
            )
        )
        logger.info("password_reset_issued", user_id=user.id)
        return IssuedReset(token=token, user=user)

    def check_password_reset(self, token: str) -> PasswordResetToken:
        """Validate a reset token without consuming it."""
        record = self.store.get_password_reset_token(digest_token(token or ""))
        if not record or record.used or record.expires_at <= self.clock.now():
            raise InvalidResetTokenError()
        return record

    def consume_password_reset(self, token: str) -> PasswordResetToken:
        record = self.store.consume_password_reset_token(
            digest_token(token or ""), self.clock.now()
        )
        if not record:
            logger.warning("password_reset_invalid_token")
            raise InvalidResetTokenError()
        return record
