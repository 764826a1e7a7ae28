from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from forkauth.service.passwords import MIN_PASSWORD_LENGTH


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is stable and machine readable."""

    code: str
    message: str
    details: Optional[Any] = None


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


# -- requests -----------------------------------------------------------


class RegisterRequest(BaseModel):
    email: str
    password: str
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    role: str = Field(default="customer", max_length=32)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    # Not format-validated: a malformed email must fail like any unknown account
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=128)


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=256)
    old_access_token: Optional[str] = Field(default=None, max_length=8192)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=256)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _password(cls, value: str) -> str:
        return _validate_password_strength(value)


class RequiredPasswordChangeRequest(PasswordChangeRequest):
    email: str = Field(..., max_length=254)


class TokenRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=8192)


class ServiceAuthenticateRequest(BaseModel):
    client_id: str = Field(..., min_length=1, max_length=128)
    client_secret: str = Field(..., min_length=1, max_length=256)


class ServiceAccountCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    service_name: str = Field(..., max_length=64)
    description: Optional[str] = Field(default=None, max_length=500)
    scopes: Optional[List[str]] = None


class ServiceAccountUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=128)
    description: Optional[str] = Field(default=None, max_length=500)
    scopes: Optional[List[str]] = None
    active: Optional[bool] = None


class AdminCreateAccountRequest(BaseModel):
    email: str
    role: str = Field(..., max_length=32)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    password: Optional[str] = None
    permissions: List[str] = Field(default_factory=list)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _password(cls, value: Optional[str]) -> Optional[str]:
        return _validate_password_strength(value) if value is not None else None


class AccountStatusRequest(BaseModel):
    is_active: bool


class PermissionOverridesRequest(BaseModel):
    permissions: List[str]


class AdminPasswordResetRequest(BaseModel):
    new_password: Optional[str] = None

    @field_validator("new_password")
    @classmethod
    def _password(cls, value: Optional[str]) -> Optional[str]:
        return _validate_password_strength(value) if value is not None else None


# -- responses ----------------------------------------------------------


class AccountSummary(BaseModel):
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: str
    permissions: List[str] = Field(default_factory=list)
    is_active: bool = True
    password_change_required: bool = False
    last_login_at: Optional[datetime] = None


class AuthResponse(BaseModel):
    user: AccountSummary
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: Optional[str] = None
    expires_in: Optional[int] = None
    refresh_expires_at: Optional[datetime] = None
    password_change_required: bool = False
    message: Optional[str] = None


class ServiceAccountResponse(BaseModel):
    id: str
    name: str
    client_id: str
    service_name: str
    scopes: List[str]
    active: bool
    description: Optional[str] = None
    created_by: Optional[str] = None
    last_used_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class ServiceAccountSecretResponse(BaseModel):
    service_account: ServiceAccountResponse
    client_secret: str
    message: str = "Store this client secret securely, it will not be shown again"


class ServiceTokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    service: ServiceAccountResponse


class ServiceTokenValidationResponse(BaseModel):
    valid: bool
    client_id: str
    service_name: str
    scopes: List[str]


class TokenValidationResponse(BaseModel):
    valid: bool
    user: AccountSummary


class AdminCreateAccountResponse(BaseModel):
    user: AccountSummary
    temporary_password: str


class PasswordResetResponse(BaseModel):
    temporary_password: str


class RevokeResponse(BaseModel):
    revoked: bool = True
    sessions_revoked: Optional[int] = None
