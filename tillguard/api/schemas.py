from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tillguard.logging import get_correlation_id

# Stable error codes rendered in the envelope
ERROR_CODES = frozenset(
    {
        "invalid_credentials",
        "account_disabled",
        "account_locked",
        "rate_limited",
        "token_missing",
        "token_invalid",
        "token_expired",
        "token_blacklisted",
        "refresh_token_invalid",
        "session_expired",
        "csrf_missing",
        "csrf_mismatch",
        "csrf_expired",
        "insufficient_permissions",
        "not_found",
        "conflict",
        "validation_error",
        "unauthorized",
        "internal_error",
    }
)

MAX_IDENTITY_LENGTH = 255
MAX_PASSWORD_LENGTH = 1024


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in ERROR_CODES:
            raise ValueError(f"unknown error code {value!r}")
        return value


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    success: bool = True
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)

    @model_validator(mode="after")
    def _sync_success(self) -> "Envelope":
        self.success = self.status == "ok"
        return self


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    identity: Optional[str] = Field(None, min_length=1, max_length=MAX_IDENTITY_LENGTH)
    username: Optional[str] = Field(None, min_length=1, max_length=MAX_IDENTITY_LENGTH)
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @model_validator(mode="after")
    def _require_identity(self) -> "LoginRequest":
        if not (self.identity or self.username):
            raise ValueError("identity or username is required")
        return self

    @property
    def login_identity(self) -> str:
        return self.identity or self.username or ""


class PinLoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: Union[int, str]
    pin: str = Field(..., min_length=1, max_length=32)

    @field_validator("user_id")
    @classmethod
    def _user_id_text(cls, value: Union[int, str]) -> str:
        value = str(value).strip()
        if not value:
            raise ValueError("user_id is required")
        return value


class RefreshRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    refresh_token: Optional[str] = None


class SetPinRequest(BaseModel):
    # A form-style _csrf field may ride along in the body
    model_config = ConfigDict(extra="ignore")

    pin: str = Field(..., min_length=1, max_length=32)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in_seconds: int
    session_id: str
    user_id: str
    role: str
    csrf_token: str


class VerifyResponse(BaseModel):
    user_id: str
    role: str
    session_id: Optional[str] = None


class CsrfTokenResponse(BaseModel):
    csrf_token: str
    session_id: str


class SessionInfo(BaseModel):
    id: str
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    current: bool = False


class SessionActivityInfo(BaseModel):
    id: str
    type: str
    created_at: datetime
    details: Optional[dict] = None


class TerminateOthersResponse(BaseModel):
    terminated: int


class PinStrengthResponse(BaseModel):
    strength: str


class AuditEventInfo(BaseModel):
    id: str
    category: str
    type: str
    status: str
    severity: str
    timestamp: datetime
    user_id: Optional[str] = None
    username: Optional[str] = None
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    resource_id: Optional[str] = None
    resource_type: Optional[str] = None
    action: Optional[str] = None
    details: Optional[dict] = None


class AuditQueryResponse(BaseModel):
    events: List[AuditEventInfo]
    total: int
    limit: int
    offset: int
