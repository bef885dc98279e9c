from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol

from vendorportal.config import Settings
from vendorportal.logging import get_logger
from vendorportal.service.errors import (
    InvalidRefreshTokenError,
    InvalidTokenError,
    TokenExpiredError,
    UserInactiveError,
    UserNotFoundError,
)
from vendorportal.service.sources import Clock, RandomSource, SystemClock, SystemRandom
from vendorportal.storage.models import DeviceContext, RefreshToken, User, new_id

logger = get_logger(__name__)

REFRESH_TOKEN_BYTES = 64  # 512 bits


def digest_token(token: str) -> str:
    """Lookup key for opaque tokens; stores never see the raw value."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class TokenStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def increment_token_version(self, user_id: str) -> Optional[int]: ...

    def create_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]: ...

    def touch_refresh_token(self, token_hash: str, now: datetime) -> None: ...

    def revoke_refresh_token(self, token_hash: str, reason: str, now: datetime) -> bool: ...

    def revoke_user_refresh_tokens(self, user_id: str, reason: str, now: datetime) -> int: ...


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    token_version: int
    issued_at: datetime
    expires_at: datetime
    jti: Optional[str] = None


@dataclass
class RefreshResult:
    access_token: str
    refresh_token: str
    user: User
    rotated: bool = False


class TokenIssuer:
    """Mints HS256 access tokens and opaque refresh tokens.

    Access tokens are stateless and carry the user's token version; bumping
    that version through :meth:`revoke_all_for_user` invalidates every access
    token already handed out.
    """

    def __init__(
        self,
        store: TokenStore,
        settings: Settings,
        *,
        clock: Clock | None = None,
        random: RandomSource | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock or SystemClock()
        self.random = random or SystemRandom()
        self._leeway = timedelta(seconds=settings.jwt_leeway_seconds)

    # -- access tokens ---------------------------------------------------

    def issue_access_token(self, user_id: str, token_version: int) -> str:
        now = self.clock.now()
        expires_at = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        payload = {
            "sub": user_id,
            "tv": int(token_version),
            "token_type": "access",
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": self.random.token_bytes(16).hex(),
        }
        return self._encode_jwt(payload)

    def verify_access_token(self, token: str) -> AccessClaims:
        payload = self._decode_jwt(token)
        if payload.get("token_type") != "access":
            raise InvalidTokenError()
        user_id = payload.get("sub")
        token_version = payload.get("tv")
        if not isinstance(user_id, str) or not isinstance(token_version, int):
            raise InvalidTokenError()
        try:
            exp_ts = float(payload["exp"])
            iat_ts = float(payload.get("iat", 0))
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError()
        expires_at = datetime.fromtimestamp(exp_ts, tz=timezone.utc)
        if expires_at <= self.clock.now() - self._leeway:
            raise TokenExpiredError()
        return AccessClaims(
            user_id=user_id,
            token_version=token_version,
            issued_at=datetime.fromtimestamp(iat_ts, tz=timezone.utc),
            expires_at=expires_at,
            jti=payload.get("jti"),
        )

    # -- refresh tokens --------------------------------------------------

    def issue_refresh_token(self, user_id: str, device: DeviceContext | None = None) -> str:
        now = self.clock.now()
        token = self.random.token_bytes(REFRESH_TOKEN_BYTES).hex()
        self.store.create_refresh_token(
            RefreshToken(
                id=new_id(),
                token_hash=digest_token(token),
                user_id=user_id,
                device=device or DeviceContext(),
                created_at=now,
                expires_at=now + timedelta(days=self.settings.refresh_token_ttl_days),
            )
        )
        return token

    def rotate_refresh_token(
        self, token: str, device: DeviceContext | None = None
    ) -> RefreshResult:
        """Exchange a live refresh token for a new access token.

        The refresh token itself is replaced only once it is older than the
        rotation threshold; younger tokens are handed back unchanged.
        """
        now = self.clock.now()
        token_hash = digest_token(token or "")
        record = self.store.get_refresh_token(token_hash)
        if not record or not record.is_live(now):
            logger.info("refresh_token_rejected", reason="unknown_or_expired")
            raise InvalidRefreshTokenError()
        user = self.store.get_user(record.user_id)
        if not user or not user.is_active:
            logger.info("refresh_token_rejected", reason="user_inactive", user_id=record.user_id)
            raise UserInactiveError()
        self.store.touch_refresh_token(token_hash, now)
        access_token = self.issue_access_token(user.id, user.token_version)

        if now - record.created_at <= timedelta(hours=self.settings.refresh_rotation_hours):
            return RefreshResult(access_token=access_token, refresh_token=token, user=user)

        self.store.revoke_refresh_token(token_hash, "Token rotation", now)
        new_token = self.issue_refresh_token(user.id, device or record.device)
        logger.info("refresh_token_rotated", user_id=user.id)
        return RefreshResult(
            access_token=access_token, refresh_token=new_token, user=user, rotated=True
        )

    def revoke_refresh_token(self, token: str, reason: str = "Manual revocation") -> bool:
        return self.store.revoke_refresh_token(digest_token(token or ""), reason, self.clock.now())

    def revoke_all_for_user(self, user_id: str, reason: str = "Logout all devices") -> int:
        """Revoke every refresh token and bump the token version; returns the new version."""
        revoked = self.store.revoke_user_refresh_tokens(user_id, reason, self.clock.now())
        version = self.store.increment_token_version(user_id)
        if version is None:
            raise UserNotFoundError()
        logger.info(
            "user_tokens_revoked",
            user_id=user_id,
            refresh_tokens=revoked,
            token_version=version,
            reason=reason,
        )
        return version

    # -- JWT encoding ----------------------------------------------------

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        try:
            header_b64, payload_b64, sig_b64 = (token or "").split(".")
        except ValueError:
            raise InvalidTokenError()

        # Reject anything but HS256 so a forged "none" header cannot skip the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError()
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            raise InvalidTokenError()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8", "replace")):
            raise InvalidTokenError()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError()
        if not isinstance(payload, dict):
            raise InvalidTokenError()
        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise InvalidTokenError()
        return payload
