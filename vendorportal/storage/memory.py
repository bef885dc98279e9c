from __future__ import annotations

import copy
import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from vendorportal.logging import get_logger
from vendorportal.storage.common import (
    build_mfa_cipher,
    decrypt_secret,
    encrypt_secret,
    parse_roles,
    serialize_roles,
)
from vendorportal.storage.errors import ConstraintViolation
from vendorportal.storage.models import (
    BackupCode,
    DeviceContext,
    EmailVerificationToken,
    PasswordResetToken,
    RefreshToken,
    RoleAssignment,
    TwoFactorAuth,
    User,
    new_id,
)


class MemoryStore:
    """Thread-safe in-process credential store for development and tests.

    When ``fs_root`` is given the whole state is mirrored to a JSON file after
    every write so a dev server survives restarts.
    """

    def __init__(
        self, fs_root: str | None = None, *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.email_verifications: Dict[str, EmailVerificationToken] = {}
        self.password_resets: Dict[str, PasswordResetToken] = {}
        self.two_factor: Dict[str, TwoFactorAuth] = {}
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = build_mfa_cipher(mfa_encryption_key)

        if self.fs_root is not None and not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "credential_store.json"

    # -- users -----------------------------------------------------------

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
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation(
                    "email already exists", {"field": "email"}, field="email"
                )
            user = User(
                id=new_id(),
                email=normalized,
                password_hash=password_hash,
                roles=tuple(roles),
                is_active=is_active,
                email_verified=email_verified,
                profile=dict(profile) if profile else {},
                created_at=created_at or datetime.now(timezone.utc),
            )
            self.users[user.id] = user
            self._persist_state()
            return copy.deepcopy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = (email or "").strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return copy.deepcopy(user) if user else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            results = sorted(self.users.values(), key=lambda u: u.created_at)
            return [copy.deepcopy(u) for u in results[:limit]]

    def _update_user(self, user_id: str, **changes) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for name, value in changes.items():
                setattr(user, name, value)
            self._persist_state()
            return copy.deepcopy(user)

    def update_password(
        self, user_id: str, password_hash: str, changed_at: datetime
    ) -> Optional[User]:
        """Store a new hash and clear any lockout left over from failed attempts."""
        return self._update_user(
            user_id,
            password_hash=password_hash,
            password_changed_at=changed_at,
            login_attempts=0,
            lock_until=None,
        )

    def set_user_roles(self, user_id: str, roles: Iterable[RoleAssignment]) -> Optional[User]:
        return self._update_user(user_id, roles=tuple(roles))

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        return self._update_user(user_id, is_active=is_active)

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        return self._update_user(user_id, email_verified=True)

    def record_failed_login(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lock_until: datetime,
        now: datetime,
    ) -> Optional[User]:
        """Atomically count a failed attempt, locking the account at ``max_attempts``.

        A lock that has already expired starts a fresh count.
        """
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if user.lock_until is not None and user.lock_until <= now:
                user.login_attempts = 0
                user.lock_until = None
            user.login_attempts += 1
            if user.login_attempts >= max_attempts and user.lock_until is None:
                user.lock_until = lock_until
            self._persist_state()
            return copy.deepcopy(user)

    def record_successful_login(self, user_id: str, now: datetime) -> Optional[User]:
        return self._update_user(
            user_id, login_attempts=0, lock_until=None, last_login_at=now
        )

    def increment_token_version(self, user_id: str) -> Optional[int]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.token_version += 1
            self._persist_state()
            return user.token_version

    # -- refresh tokens --------------------------------------------------

    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
            if token.token_hash in self.refresh_tokens:
                raise ConstraintViolation(
                    "refresh token already exists", {"field": "token_hash"}, field="token_hash"
                )
            self.refresh_tokens[token.token_hash] = copy.deepcopy(token)
            self._persist_state()
            return token

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token = self.refresh_tokens.get(token_hash)
            return copy.deepcopy(token) if token else None

    def touch_refresh_token(self, token_hash: str, now: datetime) -> None:
        with self._data_lock:
            token = self.refresh_tokens.get(token_hash)
            if token:
                token.last_used_at = now
                self._persist_state()

    def revoke_refresh_token(self, token_hash: str, reason: str, now: datetime) -> bool:
        with self._data_lock:
            token = self.refresh_tokens.get(token_hash)
            if not token or token.revoked:
                return False
            token.revoked = True
            token.revoked_at = now
            token.revoked_reason = reason
            self._persist_state()
            return True

    def revoke_user_refresh_tokens(self, user_id: str, reason: str, now: datetime) -> int:
        with self._data_lock:
            revoked = 0
            for token in self.refresh_tokens.values():
                if token.user_id == user_id and not token.revoked:
                    token.revoked = True
                    token.revoked_at = now
                    token.revoked_reason = reason
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    # -- verification and reset tokens ----------------------------------

    def replace_email_verification_token(
        self, token: EmailVerificationToken
    ) -> EmailVerificationToken:
        """Drop every earlier verification token for the user and store ``token``."""
        with self._data_lock:
            stale = [h for h, t in self.email_verifications.items() if t.user_id == token.user_id]
            for token_hash in stale:
                del self.email_verifications[token_hash]
            self.email_verifications[token.token_hash] = copy.deepcopy(token)
            self._persist_state()
            return token

    def consume_email_verification_token(
        self, token_hash: str, now: datetime
    ) -> Optional[EmailVerificationToken]:
        with self._data_lock:
            token = self.email_verifications.get(token_hash)
            if not token or token.used or token.expires_at <= now:
                return None
            token.used = True
            token.used_at = now
            self._persist_state()
            return copy.deepcopy(token)

    def replace_password_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        with self._data_lock:
            stale = [h for h, t in self.password_resets.items() if t.user_id == token.user_id]
            for token_hash in stale:
                del self.password_resets[token_hash]
            self.password_resets[token.token_hash] = copy.deepcopy(token)
            self._persist_state()
            return token

    def get_password_reset_token(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            token = self.password_resets.get(token_hash)
            return copy.deepcopy(token) if token else None

    def consume_password_reset_token(
        self, token_hash: str, now: datetime
    ) -> Optional[PasswordResetToken]:
        with self._data_lock:
            token = self.password_resets.get(token_hash)
            if not token or token.used or token.expires_at <= now:
                return None
            token.used = True
            token.used_at = now
            self._persist_state()
            return copy.deepcopy(token)

    # -- two-factor ------------------------------------------------------

    def _clear_two_factor(self, record: TwoFactorAuth) -> TwoFactorAuth:
        clear = copy.deepcopy(record)
        clear.secret = decrypt_secret(self._mfa_cipher, record.secret)
        return clear

    def upsert_two_factor(
        self, record: TwoFactorAuth, *, replace_enabled: bool = False
    ) -> Optional[TwoFactorAuth]:
        """Insert or replace a user's enrollment.

        Returns None without writing when an enabled enrollment exists and
        ``replace_enabled`` is False.
        """
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for two-factor", {"user_id": record.user_id}
                )
            existing = self.two_factor.get(record.user_id)
            if existing and existing.enabled and not replace_enabled:
                return None
            stored = copy.deepcopy(record)
            stored.secret = encrypt_secret(self._mfa_cipher, record.secret)
            self.two_factor[record.user_id] = stored
            self._persist_state()
            return copy.deepcopy(record)

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorAuth]:
        with self._data_lock:
            record = self.two_factor.get(user_id)
            return self._clear_two_factor(record) if record else None

    def set_two_factor_enabled(
        self, user_id: str, enabled: bool, now: datetime
    ) -> Optional[TwoFactorAuth]:
        with self._data_lock:
            record = self.two_factor.get(user_id)
            if not record:
                return None
            record.enabled = enabled
            record.enabled_at = now if enabled else None
            self._persist_state()
            return self._clear_two_factor(record)

    def touch_two_factor(self, user_id: str, now: datetime) -> None:
        with self._data_lock:
            record = self.two_factor.get(user_id)
            if record:
                record.last_used_at = now
                self._persist_state()

    def consume_backup_code(self, user_id: str, code_hash: str, now: datetime) -> bool:
        """Mark the first unused matching backup code as used; False if none matched."""
        with self._data_lock:
            record = self.two_factor.get(user_id)
            if not record or not record.enabled:
                return False
            codes = list(record.backup_codes)
            for idx, code in enumerate(codes):
                if not code.used and code.code_hash == code_hash:
                    codes[idx] = code.mark_used(now)
                    record.backup_codes = tuple(codes)
                    record.last_used_at = now
                    self._persist_state()
                    return True
            return False

    # -- housekeeping ----------------------------------------------------

    def purge_expired_tokens(
        self,
        now: datetime,
        *,
        revoked_before: datetime,
        used_before: datetime,
    ) -> Dict[str, int]:
        with self._data_lock:
            refresh = [
                h
                for h, t in self.refresh_tokens.items()
                if t.expires_at <= now
                or (t.revoked and t.revoked_at is not None and t.revoked_at < revoked_before)
            ]
            for token_hash in refresh:
                del self.refresh_tokens[token_hash]

            def _stale(token) -> bool:
                return token.expires_at <= now or (
                    token.used and token.used_at is not None and token.used_at < used_before
                )

            verifications = [h for h, t in self.email_verifications.items() if _stale(t)]
            for token_hash in verifications:
                del self.email_verifications[token_hash]
            resets = [h for h, t in self.password_resets.items() if _stale(t)]
            for token_hash in resets:
                del self.password_resets[token_hash]
            if refresh or verifications or resets:
                self._persist_state()
            return {
                "refresh_tokens": len(refresh),
                "email_verifications": len(verifications),
                "password_resets": len(resets),
            }

    # -- persistence -----------------------------------------------------

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(t) for t in self.refresh_tokens.values()
            ],
            "email_verifications": [
                self._serialize_one_time_token(t) for t in self.email_verifications.values()
            ],
            "password_resets": [
                self._serialize_one_time_token(t) for t in self.password_resets.values()
            ],
            "two_factor": [self._serialize_two_factor(r) for r in self.two_factor.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.refresh_tokens = {
            t["token_hash"]: self._deserialize_refresh_token(t)
            for t in data.get("refresh_tokens", [])
        }
        self.email_verifications = {
            t["token_hash"]: EmailVerificationToken(**self._one_time_token_fields(t))
            for t in data.get("email_verifications", [])
        }
        self.password_resets = {
            t["token_hash"]: PasswordResetToken(
                **self._one_time_token_fields(t),
                ip_address=t.get("ip_address"),
                user_agent=t.get("user_agent"),
            )
            for t in data.get("password_resets", [])
        }
        self.two_factor = {
            r["user_id"]: self._deserialize_two_factor(r) for r in data.get("two_factor", [])
        }
        self.logger.info("memory_store_state_loaded", users=len(self.users), path=str(path))
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "password_hash": user.password_hash,
            "roles": serialize_roles(user.roles),
            "is_active": user.is_active,
            "email_verified": user.email_verified,
            "token_version": user.token_version,
            "login_attempts": user.login_attempts,
            "lock_until": self._serialize_datetime(user.lock_until),
            "password_changed_at": self._serialize_datetime(user.password_changed_at),
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "created_at": self._serialize_datetime(user.created_at),
            "profile": user.profile,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            password_hash=data["password_hash"],
            roles=parse_roles(data.get("roles")),
            is_active=data.get("is_active", True),
            email_verified=data.get("email_verified", False),
            token_version=int(data.get("token_version", 0)),
            login_attempts=int(data.get("login_attempts", 0)),
            lock_until=self._deserialize_datetime(data.get("lock_until")),
            password_changed_at=self._deserialize_datetime(data.get("password_changed_at")),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            created_at=self._deserialize_datetime(data["created_at"]),
            profile=data.get("profile") or {},
        )

    def _serialize_refresh_token(self, token: RefreshToken) -> dict:
        return {
            "id": token.id,
            "token_hash": token.token_hash,
            "user_id": token.user_id,
            "expires_at": self._serialize_datetime(token.expires_at),
            "created_at": self._serialize_datetime(token.created_at),
            "user_agent": token.device.user_agent,
            "ip_address": token.device.ip_address,
            "device_id": token.device.device_id,
            "revoked": token.revoked,
            "revoked_at": self._serialize_datetime(token.revoked_at),
            "revoked_reason": token.revoked_reason,
            "last_used_at": self._serialize_datetime(token.last_used_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=data["id"],
            token_hash=data["token_hash"],
            user_id=data["user_id"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            device=DeviceContext(
                user_agent=data.get("user_agent"),
                ip_address=data.get("ip_address"),
                device_id=data.get("device_id"),
            ),
            revoked=data.get("revoked", False),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            revoked_reason=data.get("revoked_reason"),
            last_used_at=self._deserialize_datetime(data.get("last_used_at")),
        )

    def _serialize_one_time_token(self, token) -> dict:
        payload = {
            "id": token.id,
            "token_hash": token.token_hash,
            "user_id": token.user_id,
            "email": token.email,
            "expires_at": self._serialize_datetime(token.expires_at),
            "created_at": self._serialize_datetime(token.created_at),
            "used": token.used,
            "used_at": self._serialize_datetime(token.used_at),
        }
        if isinstance(token, PasswordResetToken):
            payload["ip_address"] = token.ip_address
            payload["user_agent"] = token.user_agent
        return payload

    def _one_time_token_fields(self, data: dict) -> dict:
        return {
            "id": data["id"],
            "token_hash": data["token_hash"],
            "user_id": data["user_id"],
            "email": data["email"],
            "expires_at": self._deserialize_datetime(data["expires_at"]),
            "created_at": self._deserialize_datetime(data["created_at"]),
            "used": data.get("used", False),
            "used_at": self._deserialize_datetime(data.get("used_at")),
        }

    def _serialize_two_factor(self, record: TwoFactorAuth) -> dict:
        # secret is already encrypted in memory
        return {
            "user_id": record.user_id,
            "secret": record.secret,
            "enabled": record.enabled,
            "backup_codes": [
                {
                    "code_hash": code.code_hash,
                    "used": code.used,
                    "used_at": self._serialize_datetime(code.used_at),
                }
                for code in record.backup_codes
            ],
            "created_at": self._serialize_datetime(record.created_at),
            "last_used_at": self._serialize_datetime(record.last_used_at),
            "enabled_at": self._serialize_datetime(record.enabled_at),
        }

    def _deserialize_two_factor(self, data: dict) -> TwoFactorAuth:
        return TwoFactorAuth(
            user_id=data["user_id"],
            secret=data["secret"],
            enabled=data.get("enabled", False),
            backup_codes=tuple(
                BackupCode(
                    code_hash=code["code_hash"],
                    used=code.get("used", False),
                    used_at=self._deserialize_datetime(code.get("used_at")),
                )
                for code in data.get("backup_codes", [])
            ),
            created_at=self._deserialize_datetime(data["created_at"]),
            last_used_at=self._deserialize_datetime(data.get("last_used_at")),
            enabled_at=self._deserialize_datetime(data.get("enabled_at")),
        )
