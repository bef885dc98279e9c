from __future__ import annotations

from typing import Callable, Optional

from fastapi import Depends, Header, Request

from vendorportal.service.auth import (
    AuthContext,
    AuthService,
    authorize_roles,
    resolve_vendor_scope,
)
from vendorportal.service.runtime import get_runtime
from vendorportal.storage.models import DeviceContext, RoleKind


def get_auth_service() -> AuthService:
    return get_runtime().auth


def device_from_request(request: Request) -> DeviceContext:
    """Client details recorded against refresh tokens."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        ip_address: Optional[str] = forwarded.split(",")[0].strip() or None
    else:
        ip_address = request.client.host if request.client else None
    return DeviceContext(
        user_agent=request.headers.get("User-Agent"),
        ip_address=ip_address,
        device_id=request.headers.get("X-Device-ID"),
    )


async def get_identity(
    authorization: Optional[str] = Header(None),
    auth: AuthService = Depends(get_auth_service),
) -> AuthContext:
    return await auth.authenticate(authorization)


async def get_identity_allow_pending(
    authorization: Optional[str] = Header(None),
    auth: AuthService = Depends(get_auth_service),
) -> AuthContext:
    """Like :func:`get_identity` but lets privileged users without 2FA through to enroll."""
    return await auth.authenticate(authorization, allow_pending_two_factor=True)


def require_roles(*kinds: RoleKind | str) -> Callable[..., AuthContext]:
    """Dependency factory admitting identities holding any of ``kinds``."""
    allowed = tuple(RoleKind(kind) for kind in kinds)

    async def _guard(identity: AuthContext = Depends(get_identity)) -> AuthContext:
        authorize_roles(identity, allowed)
        return identity

    return _guard


async def require_vendor_access(identity: AuthContext = Depends(get_identity)) -> str:
    """Resolve the vendor the caller acts for."""
    return resolve_vendor_scope(identity)
