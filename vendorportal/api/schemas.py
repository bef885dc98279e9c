from __future__ import annotations

import re
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from vendorportal.logging import get_correlation_id

_ERROR_CODE_RE = re.compile(r"^[A-Z0-9_]+$")


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is the stable machine-readable error kind."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if not _ERROR_CODE_RE.match(value):
            raise ValueError(f"error code must be UPPER_SNAKE_CASE, got {value!r}")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))
