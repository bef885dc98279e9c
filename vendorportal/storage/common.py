"""Helpers shared between the memory and postgres credential stores."""

from __future__ import annotations

import base64
import hashlib
import json
import os
from typing import Any, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from vendorportal.logging import get_logger
from vendorportal.storage.models import RoleAssignment, role_from_dict

logger = get_logger(__name__)


# ============================================================================
# TOTP SECRET ENCRYPTION
# ============================================================================

def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_mfa_cipher(key_material: str | None) -> Fernet:
    """Fernet cipher for two-factor secrets.

    Falls back to ``MFA_SECRET_KEY`` then ``JWT_SECRET`` from the environment.
    """
    material = key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
    if not material:
        raise RuntimeError("MFA encryption key required; set MFA_SECRET_KEY or JWT_SECRET")
    return Fernet(derive_cipher_key(material))


def encrypt_secret(cipher: Fernet, secret: str) -> str:
    if not secret:
        return secret
    return cipher.encrypt(secret.encode()).decode()


def decrypt_secret(cipher: Fernet, secret: str) -> str:
    if not secret:
        return secret
    try:
        return cipher.decrypt(secret.encode()).decode()
    except InvalidToken as exc:
        logger.error("mfa_secret_decrypt_failed")
        raise RuntimeError("stored two-factor secret cannot be decrypted") from exc


# ============================================================================
# ROW DECODING
# ============================================================================

def serialize_roles(roles: Any) -> List[Dict[str, Optional[str]]]:
    return [role.as_dict() for role in roles]


def parse_roles(raw: Any) -> tuple[RoleAssignment, ...]:
    """Decode a JSON role list; accepts text or already-decoded JSONB."""
    if raw is None:
        return ()
    if isinstance(raw, str):
        raw = json.loads(raw) if raw else []
    return tuple(role_from_dict(item) for item in raw)


def parse_json_object(raw: Any) -> Dict:
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Read ``key`` from a dict row, tolerating columns missing from older schemas."""
    if row is None:
        return default
    try:
        value = row[key]
    except (KeyError, IndexError, TypeError):
        return default
    return default if value is None else value
