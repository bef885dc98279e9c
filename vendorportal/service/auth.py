from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from vendorportal.config import Settings
from vendorportal.logging import email_digest, get_logger
from vendorportal.service.email import Notifier
from vendorportal.service.errors import (
    AccountLockedError,
    InsufficientPermissionsError,
    InvalidCredentialsError,
    InvalidResetTokenError,
    InvalidTokenError,
    InvalidTwoFactorTokenError,
    InvalidVerificationTokenError,
    MissingTokenError,
    NoRolesError,
    TokenRevokedError,
    TwoFactorRequiredError,
    TwoFactorSetupRequiredError,
    UserExistsError,
    UserInactiveError,
    UserNotFoundError,
    ValidationError,
    VendorAccessRequiredError,
)
from vendorportal.service.passwords import PasswordHashing, generate_password
from vendorportal.service.sources import Clock, RandomSource, SystemClock, SystemRandom
from vendorportal.service.tokens import RefreshResult, TokenIssuer, TokenStore
from vendorportal.service.two_factor import (
    TwoFactorAuthenticator,
    TwoFactorSetup,
    TwoFactorStore,
)
from vendorportal.service.verification import VerificationStore, VerificationTokenManager
from vendorportal.storage.errors import ConstraintViolation
from vendorportal.storage.models import (
    DeviceContext,
    PasswordResetToken,
    RoleAssignment,
    RoleKind,
    User,
)

logger = get_logger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class AuthStore(TokenStore, VerificationStore, TwoFactorStore, Protocol):
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        roles: Iterable[RoleAssignment] = (),
        profile: Optional[Dict] = None,
        is_active: bool = True,
        email_verified: bool = False,
        created_at: Optional[datetime] = None,
    ) -> User: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def update_password(
        self, user_id: str, password_hash: str, changed_at: datetime
    ) -> Optional[User]: ...

    def set_user_roles(self, user_id: str, roles: Iterable[RoleAssignment]) -> Optional[User]: ...

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]: ...

    def mark_email_verified(self, user_id: str) -> Optional[User]: ...

    def record_failed_login(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lock_until: datetime,
        now: datetime,
    ) -> Optional[User]: ...

    def record_successful_login(self, user_id: str, now: datetime) -> Optional[User]: ...

    def purge_expired_tokens(
        self, now: datetime, *, revoked_before: datetime, used_before: datetime
    ) -> Dict[str, int]: ...


@dataclass
class AuthContext:
    """Identity attached to an authenticated request."""

    user_id: str
    email: str
    roles: Tuple[RoleAssignment, ...]
    email_verified: bool
    token_version: int
    two_factor_pending: bool = False

    @property
    def role_kinds(self) -> frozenset:
        return frozenset(role.kind for role in self.roles)

    @property
    def vendor_id(self) -> Optional[str]:
        return next((role.vendor_id for role in self.roles if role.vendor_id), None)

    def has_role(self, *kinds: RoleKind | str) -> bool:
        wanted = {RoleKind(kind) for kind in kinds}
        return bool(self.role_kinds & wanted)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


@dataclass
class LoginResult:
    user: User
    tokens: TokenPair
    two_factor_setup_required: bool = False
    two_factor_method: Optional[str] = None


def authorize_roles(context: AuthContext, allowed: Iterable[RoleKind | str]) -> None:
    """Raise unless the identity holds at least one of ``allowed``."""
    if not context.roles:
        raise NoRolesError()
    allowed_kinds = [RoleKind(kind) for kind in allowed]
    if not context.has_role(*allowed_kinds):
        raise InsufficientPermissionsError(
            detail={
                "required": [kind.value for kind in allowed_kinds],
                "current": sorted(kind.value for kind in context.role_kinds),
            }
        )


def resolve_vendor_scope(context: AuthContext) -> str:
    """Vendor the identity acts for; only vendor-scoped roles have one."""
    vendor_id = context.vendor_id
    if not vendor_id:
        raise VendorAccessRequiredError()
    return vendor_id


class AuthService:
    """Login, token lifecycle and the per-request authentication gate.

    Collaborators (store, clock, random source, notifier) are injected so the
    service keeps no per-user state of its own.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        notifier: Optional[Notifier] = None,
        clock: Optional[Clock] = None,
        random: Optional[RandomSource] = None,
        hasher: Optional[PasswordHashing] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.notifier = notifier
        self.clock = clock or SystemClock()
        self.random = random or SystemRandom()
        self.hasher = hasher or PasswordHashing(
            time_cost=settings.argon2_time_cost, memory_cost=settings.argon2_memory_cost
        )
        self.tokens = TokenIssuer(store, settings, clock=self.clock, random=self.random)
        self.verification = VerificationTokenManager(
            store, settings, clock=self.clock, random=self.random
        )
        self.two_factor = TwoFactorAuthenticator(
            store, settings, clock=self.clock, random=self.random
        )
        self.logger = logger
        # strong references; the event loop only keeps weak ones to tasks
        self._pending_notifications: set[asyncio.Task] = set()

    def _now(self) -> datetime:
        return self.clock.now()

    # -- helpers ---------------------------------------------------------

    def _validate_email(self, email: str) -> str:
        normalized = (email or "").strip().lower()
        if not _EMAIL_RE.match(normalized):
            raise ValidationError("Please provide a valid email", detail={"field": "email"})
        return normalized

    def _validate_password(self, password: str) -> None:
        if not password or len(password) < self.settings.min_password_length:
            raise ValidationError(
                f"Password must be at least {self.settings.min_password_length} characters long",
                detail={"field": "password"},
            )

    def _issue_pair(self, user: User, device: Optional[DeviceContext]) -> TokenPair:
        return TokenPair(
            access_token=self.tokens.issue_access_token(user.id, user.token_version),
            refresh_token=self.tokens.issue_refresh_token(user.id, device),
            expires_in=self.settings.access_token_ttl_minutes * 60,
        )

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise UserNotFoundError()
        return user

    def _notify(self, notification: str, send: Callable[..., bool], *args: Any) -> None:
        """Schedule a notification without waiting for delivery."""
        task = asyncio.create_task(self._deliver(notification, send, *args))
        self._pending_notifications.add(task)
        task.add_done_callback(self._pending_notifications.discard)

    async def drain_notifications(self) -> None:
        """Wait for notifications still in flight, e.g. before shutdown."""
        while self._pending_notifications:
            await asyncio.gather(*self._pending_notifications, return_exceptions=True)

    async def _deliver(self, notification: str, send: Callable[..., bool], *args: Any) -> None:
        # failures are logged and never undo the caller's work
        try:
            delivered = await asyncio.to_thread(send, *args)
        except Exception as exc:
            self.logger.warning(
                "notification_failed",
                notification=notification,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if not delivered:
            self.logger.warning("notification_not_delivered", notification=notification)

    def _record_failed_attempt(self, user: User, now: datetime, *, reason: str) -> bool:
        """Count a failed login; returns True when this attempt locked the account."""
        updated = self.store.record_failed_login(
            user.id,
            max_attempts=self.settings.max_login_attempts,
            lock_until=now + timedelta(minutes=self.settings.lockout_minutes),
            now=now,
        )
        locked = bool(updated and updated.is_locked(now))
        self.logger.warning(
            "login_failed",
            user_id=user.id,
            reason=reason,
            attempts=updated.login_attempts if updated else None,
            locked=locked,
        )
        return locked

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    # -- registration ----------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        *,
        profile: Optional[Dict] = None,
        device: Optional[DeviceContext] = None,
    ) -> LoginResult:
        """Self-service signup. The account starts with no roles and an unverified email."""
        normalized = self._validate_email(email)
        self._validate_password(password)
        password_hash = await self.hasher.hash_async(password)
        try:
            user = self.store.create_user(
                normalized, password_hash, profile=profile, created_at=self._now()
            )
        except ConstraintViolation as exc:
            if exc.field == "email":
                raise UserExistsError()
            raise
        self.logger.info("user_registered", user_id=user.id, email_hash=email_digest(user.email))
        token = self.verification.issue_email_verification(user.id, user.email)
        if self.notifier:
            self._notify(
                "email_verification", self.notifier.send_email_verification, user.email, token
            )
        return LoginResult(user=user, tokens=self._issue_pair(user, device))

    async def admin_create_user(
        self,
        *,
        email: str,
        roles: Iterable[RoleAssignment] = (),
        password: Optional[str] = None,
        profile: Optional[Dict] = None,
        email_verified: bool = True,
    ) -> tuple[User, str]:
        """Create an account on someone's behalf; returns the user and the (possibly generated) password."""
        normalized = self._validate_email(email)
        pwd = password or generate_password()
        self._validate_password(pwd)
        password_hash = await self.hasher.hash_async(pwd)
        try:
            user = self.store.create_user(
                normalized,
                password_hash,
                roles=tuple(roles),
                profile=profile,
                email_verified=email_verified,
                created_at=self._now(),
            )
        except ConstraintViolation as exc:
            if exc.field == "email":
                raise UserExistsError()
            raise
        self.logger.info(
            "user_created_by_admin",
            user_id=user.id,
            roles=[role.kind.value for role in user.roles],
        )
        return user, pwd

    # -- login and sessions ----------------------------------------------

    async def login(
        self,
        email: str,
        password: str,
        *,
        two_factor_code: Optional[str] = None,
        device: Optional[DeviceContext] = None,
    ) -> LoginResult:
        now = self._now()
        user = self.store.get_user_by_email(email or "")
        if not user or not user.is_active:
            # burn the same hashing time so unknown accounts are not distinguishable
            await self.hasher.verify_async(None, password or "")
            self.logger.warning(
                "login_failed",
                reason="unknown_or_inactive",
                email_hash=email_digest(email or ""),
            )
            raise InvalidCredentialsError()

        if user.is_locked(now):
            self.logger.warning("login_rejected_locked", user_id=user.id)
            raise AccountLockedError(detail={"locked_until": user.lock_until.isoformat()})

        if not await self.hasher.verify_async(user.password_hash, password or ""):
            if self._record_failed_attempt(user, now, reason="password"):
                raise AccountLockedError()
            raise InvalidCredentialsError()

        setup_required = False
        method: Optional[str] = None
        if user.requires_two_factor:
            if self.two_factor.is_enabled(user.id):
                if not two_factor_code:
                    raise TwoFactorRequiredError()
                try:
                    method = self.two_factor.verify(user.id, two_factor_code)
                except InvalidTwoFactorTokenError:
                    if self._record_failed_attempt(user, now, reason="two_factor"):
                        raise AccountLockedError()
                    raise
            else:
                setup_required = True

        user = self.store.record_successful_login(user.id, now) or user
        if self.hasher.needs_rehash(user.password_hash):
            # argon2 cost settings changed since this hash was made
            new_hash = await self.hasher.hash_async(password)
            user = self.store.update_password(user.id, new_hash, user.password_changed_at) or user
            self.logger.info("password_rehashed", user_id=user.id)
        tokens = self._issue_pair(user, device)
        self.logger.info(
            "login_succeeded",
            user_id=user.id,
            two_factor_method=method,
            two_factor_setup_required=setup_required,
        )
        return LoginResult(
            user=user,
            tokens=tokens,
            two_factor_setup_required=setup_required,
            two_factor_method=method,
        )

    async def refresh(
        self, refresh_token: str, device: Optional[DeviceContext] = None
    ) -> RefreshResult:
        return self.tokens.rotate_refresh_token(refresh_token, device)

    async def logout(self, refresh_token: str) -> bool:
        revoked = self.tokens.revoke_refresh_token(refresh_token, "Logout")
        self.logger.info("logout", revoked=revoked)
        return revoked

    async def logout_all(self, user_id: str) -> int:
        return self.tokens.revoke_all_for_user(user_id, "Logout all devices")

    async def authenticate(
        self,
        authorization: Optional[str],
        *,
        allow_pending_two_factor: bool = False,
    ) -> AuthContext:
        """Resolve a bearer header to an identity or raise the matching auth error."""
        token = self._extract_bearer(authorization)
        if not token:
            raise MissingTokenError()
        claims = self.tokens.verify_access_token(token)
        user = self.store.get_user(claims.user_id)
        if not user:
            raise InvalidTokenError()
        if not user.is_active:
            raise UserInactiveError()
        if claims.token_version != user.token_version:
            self.logger.info(
                "access_token_revoked",
                user_id=user.id,
                presented_version=claims.token_version,
                current_version=user.token_version,
            )
            raise TokenRevokedError()
        pending = user.requires_two_factor and not self.two_factor.is_enabled(user.id)
        if pending and not allow_pending_two_factor:
            raise TwoFactorSetupRequiredError()
        return AuthContext(
            user_id=user.id,
            email=user.email,
            roles=user.roles,
            email_verified=user.email_verified,
            token_version=user.token_version,
            two_factor_pending=pending,
        )

    # -- email verification ----------------------------------------------

    async def request_email_verification(self, user_id: str) -> str:
        user = self._require_user(user_id)
        if user.email_verified:
            raise ValidationError("Email already verified", error_code="EMAIL_ALREADY_VERIFIED")
        token = self.verification.issue_email_verification(user.id, user.email)
        if self.notifier:
            self._notify(
                "email_verification", self.notifier.send_email_verification, user.email, token
            )
        return token

    async def verify_email(self, token: str) -> User:
        user_id = self.verification.consume_email_verification(token)
        user = self.store.mark_email_verified(user_id)
        if not user:
            raise InvalidVerificationTokenError()
        self.logger.info("email_verified", user_id=user.id)
        return user

    # -- passwords -------------------------------------------------------

    async def request_password_reset(
        self,
        email: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[str]:
        """Issue and mail a reset token. Unknown emails return None without error."""
        issued = self.verification.issue_password_reset(email or "", ip_address, user_agent)
        if not issued:
            return None
        if self.notifier:
            self._notify(
                "password_reset", self.notifier.send_password_reset, issued.user.email, issued.token
            )
        return issued.token

    async def check_reset_token(self, token: str) -> PasswordResetToken:
        return self.verification.check_password_reset(token)

    async def reset_password(self, token: str, new_password: str) -> User:
        self._validate_password(new_password)
        record = self.verification.consume_password_reset(token)
        password_hash = await self.hasher.hash_async(new_password)
        user = self.store.update_password(record.user_id, password_hash, self._now())
        if not user:
            raise InvalidResetTokenError()
        self.tokens.revoke_all_for_user(user.id, "Password reset")
        self.logger.info("password_reset_completed", user_id=user.id)
        if self.notifier:
            self._notify("password_changed", self.notifier.send_password_changed, user.email)
        return self._require_user(user.id)

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        device: Optional[DeviceContext] = None,
    ) -> TokenPair:
        """Replace the password, sign out every session and hand back a fresh pair."""
        user = self._require_user(user_id)
        if not await self.hasher.verify_async(user.password_hash, current_password or ""):
            self.logger.warning("password_change_rejected", user_id=user.id)
            raise InvalidCredentialsError("Current password is incorrect")
        self._validate_password(new_password)
        password_hash = await self.hasher.hash_async(new_password)
        self.store.update_password(user.id, password_hash, self._now())
        self.tokens.revoke_all_for_user(user.id, "Password change")
        if self.notifier:
            self._notify("password_changed", self.notifier.send_password_changed, user.email)
        return self._issue_pair(self._require_user(user.id), device)

    # -- administration --------------------------------------------------

    async def set_user_roles(self, user_id: str, roles: Iterable[RoleAssignment]) -> User:
        """Replace role assignments; outstanding tokens are revoked so new claims apply at once."""
        role_list = tuple(roles)
        user = self.store.set_user_roles(user_id, role_list)
        if not user:
            raise UserNotFoundError()
        self.tokens.revoke_all_for_user(user.id, "Role change")
        self.logger.info(
            "user_roles_changed", user_id=user.id, roles=[role.kind.value for role in role_list]
        )
        return self._require_user(user.id)

    async def deactivate_user(self, user_id: str) -> User:
        user = self.store.set_user_active(user_id, False)
        if not user:
            raise UserNotFoundError()
        self.tokens.revoke_all_for_user(user.id, "Account deactivated")
        self.logger.info("user_deactivated", user_id=user.id)
        return self._require_user(user.id)

    async def reactivate_user(self, user_id: str) -> User:
        user = self.store.set_user_active(user_id, True)
        if not user:
            raise UserNotFoundError()
        self.logger.info("user_reactivated", user_id=user.id)
        return user

    def list_users(self, limit: int = 100) -> List[User]:
        return self.store.list_users(limit=limit)

    async def get_user_summary(self, user_id: str) -> dict:
        user = self._require_user(user_id)
        return {
            "id": user.id,
            "email": user.email,
            "roles": [role.as_dict() for role in user.roles],
            "profile": user.profile or {},
            "email_verified": user.email_verified,
            "two_factor_enabled": self.two_factor.is_enabled(user.id),
        }

    # -- two-factor ------------------------------------------------------

    async def setup_two_factor(self, user_id: str) -> TwoFactorSetup:
        return self.two_factor.setup(user_id)

    async def enable_two_factor(self, user_id: str, code: str) -> None:
        self.two_factor.enable(user_id, code)
        user = self.store.get_user(user_id)
        if user and self.notifier:
            self._notify("two_factor_enabled", self.notifier.send_two_factor_enabled, user.email)

    async def verify_two_factor(self, user_id: str, code: str) -> str:
        return self.two_factor.verify(user_id, code)

    async def disable_two_factor(self, user_id: str, code: str) -> None:
        self.two_factor.disable(user_id, code)

    async def two_factor_status(self, user_id: str) -> dict:
        self._require_user(user_id)
        return self.two_factor.status(user_id)

    # -- housekeeping ----------------------------------------------------

    def cleanup_expired_tokens(self) -> Dict[str, int]:
        now = self._now()
        removed = self.store.purge_expired_tokens(
            now,
            revoked_before=now - timedelta(days=self.settings.revoked_token_retention_days),
            used_before=now - timedelta(hours=self.settings.used_token_retention_hours),
        )
        if any(removed.values()):
            self.logger.info("expired_tokens_purged", **removed)
        return removed
