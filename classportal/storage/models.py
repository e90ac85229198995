from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    return email.strip().lower()


class Role(str, Enum):
    """Closed set of portal roles."""

    STUDENT = "student"
    INSTRUCTOR = "instructor"
    ADMIN = "admin"

    @property
    def label(self) -> str:
        return ROLE_LABELS[self]


ROLE_LABELS: dict[Role, str] = {
    Role.ADMIN: "Admin",
    Role.INSTRUCTOR: "Mentor",
    Role.STUDENT: "Student",
}


def role_label(role: Role | str | None) -> str:
    """Display label for emails; unknown roles read as students."""
    try:
        return Role(role).label
    except ValueError:
        return ROLE_LABELS[Role.STUDENT]


class TokenKind(str, Enum):
    RESET = "reset"
    INVITATION = "invitation"


@dataclass
class Profile:
    id: str
    email: str
    full_name: str
    role: Role = Role.STUDENT
    avatar_url: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class ResetToken:
    id: str
    token: str
    email: str
    expires_at: datetime
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, token: str, email: str, ttl: timedelta, *, now: datetime) -> "ResetToken":
        return cls(
            id=str(uuid.uuid4()),
            token=token,
            email=normalize_email(email),
            expires_at=now + ttl,
            created_at=now,
        )


@dataclass
class InvitationToken:
    id: str
    token: str
    email: str
    full_name: str
    role: Role
    expires_at: datetime
    used: bool = False
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        token: str,
        email: str,
        full_name: str,
        role: Role,
        ttl: timedelta,
        *,
        now: datetime,
        created_by: Optional[str] = None,
    ) -> "InvitationToken":
        return cls(
            id=str(uuid.uuid4()),
            token=token,
            email=normalize_email(email),
            full_name=full_name,
            role=Role(role),
            expires_at=now + ttl,
            created_by=created_by,
            created_at=now,
        )


@dataclass
class AuthSession:
    """Server-side record of an issued session token."""

    token: str
    user_id: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AuthenticatedRow:
    """Single row returned by the credential store's authenticate procedure."""

    user_id: str
    email: str
    full_name: str
    role: Role
    token: str

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role.value,
            "token": self.token,
        }
