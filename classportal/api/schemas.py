from __future__ import annotations

import re
import unicodedata
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from classportal.config import get_settings
from classportal.storage.models import Role

MAX_PASSWORD_LENGTH = 128
MAX_TOKEN_LENGTH = 256

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password(value: str) -> str:
    min_length = get_settings().min_password_length
    if len(value) < min_length:
        raise ValueError(f"Password must be at least {min_length} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_LENGTH} characters")
    return value


class ErrorBody(BaseModel):
    error: str


class SendInvitationRequest(BaseModel):
    email: str
    full_name: str = Field(..., min_length=1, max_length=200)
    role: Role
    created_by: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_invite_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("full_name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("full_name must not be blank")
        return value


class SendInvitationResponse(BaseModel):
    success: bool = True
    message: str
    token: str


class ForgotPasswordRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return _validate_email(value)


class MessageResponse(BaseModel):
    success: bool = True
    message: str


class TokenRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class TokenValidationResponse(BaseModel):
    valid: bool
    email: Optional[str] = None
    full_name: Optional[str] = None
    role: Optional[Role] = None


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)
    password: str

    @field_validator("password")
    @classmethod
    def _validate_reset_password(cls, value: str) -> str:
        return _validate_password(value)


class CompleteInvitationRequest(BaseModel):
    """Invitation redemption body.

    ``email``, ``full_name`` and ``role`` are accepted for compatibility with
    older clients; the account is always created from the token's own record.
    """

    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)
    password: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    role: Optional[str] = None

    @field_validator("password")
    @classmethod
    def _validate_invite_password(cls, value: str) -> str:
        return _validate_password(value)


class CompleteInvitationResponse(MessageResponse):
    user_id: str


class AuthenticateRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class AuthenticatedRowResponse(BaseModel):
    user_id: str
    email: str
    full_name: str
    role: Role
    token: str


class LogoutRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class ProfileResponse(BaseModel):
    id: str
    email: str
    full_name: str
    role: Role
    avatar_url: Optional[str] = None


class HealthResponse(BaseModel):
    status: str = "ok"

