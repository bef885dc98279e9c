from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Tuple, Union


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class RoleKind(str, Enum):
    VENDOR_ADMIN = "vendor_admin"
    VENDOR_RECRUITER = "vendor_recruiter"
    ELIKA_ADMIN = "elika_admin"
    DELIVERY_HEAD = "delivery_head"
    FINANCE_TEAM = "finance_team"

    @property
    def vendor_scoped(self) -> bool:
        return self in VENDOR_ROLE_KINDS

    @property
    def privileged(self) -> bool:
        return self in PRIVILEGED_ROLE_KINDS


VENDOR_ROLE_KINDS = frozenset({RoleKind.VENDOR_ADMIN, RoleKind.VENDOR_RECRUITER})
# Accounts holding any of these must enroll in two-factor authentication
PRIVILEGED_ROLE_KINDS = frozenset({RoleKind.ELIKA_ADMIN, RoleKind.FINANCE_TEAM})


@dataclass(frozen=True)
class VendorRole:
    """Role scoped to a single vendor organisation."""

    kind: RoleKind
    vendor_id: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", RoleKind(self.kind))
        if not self.kind.vendor_scoped:
            raise ValueError(f"{self.kind.value} is not a vendor-scoped role")
        if not self.vendor_id:
            raise ValueError(f"{self.kind.value} requires a vendor_id")

    def as_dict(self) -> Dict[str, str]:
        return {"role": self.kind.value, "vendor_id": self.vendor_id}


@dataclass(frozen=True)
class StaffRole:
    """Internal staff role with no vendor affiliation."""

    kind: RoleKind

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", RoleKind(self.kind))
        if self.kind.vendor_scoped:
            raise ValueError(f"{self.kind.value} requires a vendor_id")

    @property
    def vendor_id(self) -> None:
        return None

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {"role": self.kind.value, "vendor_id": None}


RoleAssignment = Union[VendorRole, StaffRole]


def make_role(kind: Union[RoleKind, str], vendor_id: Optional[str] = None) -> RoleAssignment:
    """Build the right role variant, rejecting vendor ids on staff roles and vice versa."""
    role_kind = RoleKind(kind)
    if role_kind.vendor_scoped:
        return VendorRole(role_kind, vendor_id or "")
    if vendor_id:
        raise ValueError(f"{role_kind.value} must not carry a vendor_id")
    return StaffRole(role_kind)


def role_from_dict(data: Dict) -> RoleAssignment:
    return make_role(data["role"], data.get("vendor_id"))


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    roles: Tuple[RoleAssignment, ...] = ()
    is_active: bool = True
    email_verified: bool = False
    token_version: int = 0
    login_attempts: int = 0
    lock_until: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    profile: Dict | None = None

    def __post_init__(self) -> None:
        self.email = self.email.strip().lower()
        self.roles = tuple(self.roles)

    @property
    def role_kinds(self) -> frozenset:
        return frozenset(role.kind for role in self.roles)

    @property
    def vendor_ids(self) -> Tuple[str, ...]:
        return tuple(role.vendor_id for role in self.roles if isinstance(role, VendorRole))

    @property
    def requires_two_factor(self) -> bool:
        return bool(self.role_kinds & PRIVILEGED_ROLE_KINDS)

    def is_locked(self, now: datetime) -> bool:
        return self.lock_until is not None and self.lock_until > now


@dataclass(frozen=True)
class DeviceContext:
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    device_id: Optional[str] = None


@dataclass
class RefreshToken:
    id: str
    token_hash: str
    user_id: str
    expires_at: datetime
    created_at: datetime
    device: DeviceContext = field(default_factory=DeviceContext)
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None
    last_used_at: Optional[datetime] = None

    def is_live(self, now: datetime) -> bool:
        return not self.revoked and self.expires_at > now


@dataclass
class EmailVerificationToken:
    id: str
    token_hash: str
    user_id: str
    email: str
    expires_at: datetime
    created_at: datetime
    used: bool = False
    used_at: Optional[datetime] = None


@dataclass
class PasswordResetToken:
    id: str
    token_hash: str
    user_id: str
    email: str
    expires_at: datetime
    created_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    used: bool = False
    used_at: Optional[datetime] = None


@dataclass(frozen=True)
class BackupCode:
    code_hash: str
    used: bool = False
    used_at: Optional[datetime] = None

    def mark_used(self, when: datetime) -> "BackupCode":
        return replace(self, used=True, used_at=when)


@dataclass
class TwoFactorAuth:
    """Per-user TOTP enrollment. ``secret`` is the clear base32 value; stores encrypt it."""

    user_id: str
    secret: str
    enabled: bool = False
    backup_codes: Tuple[BackupCode, ...] = ()
    created_at: datetime = field(default_factory=_utcnow)
    last_used_at: Optional[datetime] = None
    enabled_at: Optional[datetime] = None

    @property
    def unused_backup_codes(self) -> int:
        return sum(1 for code in self.backup_codes if not code.used)
