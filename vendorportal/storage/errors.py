from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A uniqueness rule in the credential store was violated.

    ``field`` names the offending column (``email``, ``token_hash``) so the
    service layer can pick a meaningful error code.
    """

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        field: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.field = field
        self.detail = detail or {}


class RecordNotFound(LookupError):
    """A write targeted a row that does not exist."""


__all__ = ["ConstraintViolation", "RecordNotFound"]
