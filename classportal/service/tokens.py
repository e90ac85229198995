from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol, Union

from classportal.logging import get_logger, redact_email
from classportal.storage.errors import ConstraintViolation, StoreWriteFailed
from classportal.storage.models import (
    InvitationToken,
    ResetToken,
    Role,
    TokenKind,
    utcnow,
)
from classportal.service.errors import TokenInvalidOrExpired, ValidationError

logger = get_logger(__name__)

TokenRecord = Union[ResetToken, InvitationToken]

# attempts at drawing a fresh value when the store reports a collision
MAX_ISSUE_ATTEMPTS = 5


class TokenStore(Protocol):
    def insert_token(self, kind: TokenKind, record: TokenRecord) -> TokenRecord: ...

    def find_valid_token(
        self, kind: TokenKind, token: str, now: datetime
    ) -> Optional[TokenRecord]: ...

    def mark_token_used(self, kind: TokenKind, token: str) -> bool: ...


@dataclass(frozen=True)
class TokenSubject:
    """Who a valid token speaks for."""

    email: str
    full_name: Optional[str] = None
    role: Optional[Role] = None


class TokenService:
    """Issues, validates and consumes single-use reset and invitation tokens."""

    def __init__(
        self,
        store: TokenStore,
        *,
        reset_ttl: timedelta = timedelta(hours=1),
        invitation_ttl: timedelta = timedelta(days=7),
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.reset_ttl = reset_ttl
        self.invitation_ttl = invitation_ttl
        self._now = now

    @staticmethod
    def _generate() -> str:
        return secrets.token_urlsafe(32)

    def issue(
        self,
        kind: TokenKind,
        email: str,
        *,
        full_name: Optional[str] = None,
        role: Optional[Role] = None,
        created_by: Optional[str] = None,
    ) -> str:
        kind = TokenKind(kind)
        if kind is TokenKind.INVITATION and (not full_name or role is None):
            raise ValidationError("invitation requires full_name and role")

        for attempt in range(1, MAX_ISSUE_ATTEMPTS + 1):
            token = self._generate()
            now = self._now()
            if kind is TokenKind.INVITATION:
                record: TokenRecord = InvitationToken.new(
                    token,
                    email,
                    full_name,
                    Role(role),
                    self.invitation_ttl,
                    now=now,
                    created_by=created_by,
                )
            else:
                record = ResetToken.new(token, email, self.reset_ttl, now=now)
            try:
                self.store.insert_token(kind, record)
            except ConstraintViolation:
                logger.warning("token_collision", kind=kind.value, attempt=attempt)
                continue
            logger.info(
                "token_issued",
                kind=kind.value,
                recipient=redact_email(record.email),
                expires_at=record.expires_at.isoformat(),
            )
            return token
        raise StoreWriteFailed(f"could not issue a unique {kind.value} token")

    def validate(self, kind: TokenKind, token: str) -> TokenSubject:
        kind = TokenKind(kind)
        if not token:
            raise TokenInvalidOrExpired()
        record = self.store.find_valid_token(kind, token, self._now())
        if record is None:
            logger.info("token_rejected", kind=kind.value)
            raise TokenInvalidOrExpired()
        if isinstance(record, InvitationToken):
            return TokenSubject(
                email=record.email, full_name=record.full_name, role=record.role
            )
        return TokenSubject(email=record.email)

    def consume(self, kind: TokenKind, token: str) -> bool:
        """Mark the token used; False when it was already used or never existed."""
        kind = TokenKind(kind)
        flipped = self.store.mark_token_used(kind, token)
        if flipped:
            logger.info("token_consumed", kind=kind.value)
        else:
            logger.info("token_consume_noop", kind=kind.value)
        return flipped
