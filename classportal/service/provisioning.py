from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

from classportal.logging import get_logger, redact_email
from classportal.service.email import EmailService
from classportal.service.errors import ServiceError, TokenInvalidOrExpired
from classportal.service.tokens import TokenService
from classportal.storage.models import Profile, Role, TokenKind

logger = get_logger(__name__)

# name used in reset emails when the address has no profile
DEFAULT_USER_NAME = "User"


class CredentialStore(Protocol):
    def get_profile(self, user_id: str) -> Optional[Profile]: ...

    def get_profile_by_email(self, email: str) -> Optional[Profile]: ...

    def reset_password(self, email: str, new_password: str) -> bool: ...

    def create_user_from_invitation(
        self, email: str, full_name: str, role: Role | str, password: str
    ) -> str: ...


class ProvisioningService:
    """Invitation and password reset flows built on single-use tokens.

    Each redemption validates the token, consumes it, then mutates the
    credential store keyed by the token's own subject. The two steps are not
    transactional: a failure after the consume leaves the token used.
    """

    def __init__(
        self,
        tokens: TokenService,
        credentials: CredentialStore,
        email: EmailService,
    ) -> None:
        self.tokens = tokens
        self.credentials = credentials
        self.email = email

    def send_invitation(
        self,
        email: str,
        full_name: str,
        role: Role | str,
        created_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        role = Role(role)
        created_by = created_by or None
        if created_by is not None and self.credentials.get_profile(created_by) is None:
            logger.warning("invitation_creator_unknown", created_by=created_by)
            created_by = None
        token = self.tokens.issue(
            TokenKind.INVITATION,
            email,
            full_name=full_name,
            role=role,
            created_by=created_by,
        )
        self.email.send_invitation(email, full_name, role, token)
        logger.info("invitation_sent", recipient=redact_email(email), role=role.value)
        return {
            "success": True,
            "message": "Invitation sent successfully",
            "token": token,
        }

    def forgot_password(self, email: str) -> Dict[str, Any]:
        # issued regardless of whether the address has an account
        token = self.tokens.issue(TokenKind.RESET, email)
        profile = self.credentials.get_profile_by_email(email)
        user_name = (profile.full_name if profile else None) or DEFAULT_USER_NAME
        self.email.send_password_reset(email, user_name, token)
        logger.info("password_reset_requested", recipient=redact_email(email))
        return {
            "success": True,
            "message": "Password reset email sent successfully",
        }

    def validate_reset_token(self, token: str) -> Dict[str, Any]:
        try:
            subject = self.tokens.validate(TokenKind.RESET, token)
        except TokenInvalidOrExpired:
            return {"valid": False}
        return {"valid": True, "email": subject.email}

    def validate_invitation_token(self, token: str) -> Dict[str, Any]:
        try:
            subject = self.tokens.validate(TokenKind.INVITATION, token)
        except TokenInvalidOrExpired:
            return {"valid": False}
        return {
            "valid": True,
            "email": subject.email,
            "full_name": subject.full_name,
            "role": subject.role.value if subject.role else None,
        }

    def reset_password(self, token: str, password: str) -> Dict[str, Any]:
        subject = self.tokens.validate(TokenKind.RESET, token)
        if not self.tokens.consume(TokenKind.RESET, token):
            logger.warning("reset_token_lost_race")
            raise TokenInvalidOrExpired()
        if not self.credentials.reset_password(subject.email, password):
            logger.error("password_reset_failed", recipient=redact_email(subject.email))
            raise ServiceError("Failed to reset password")
        logger.info("password_reset_completed", recipient=redact_email(subject.email))
        return {"success": True, "message": "Password reset successfully"}

    def complete_invitation(self, token: str, password: str) -> Dict[str, Any]:
        subject = self.tokens.validate(TokenKind.INVITATION, token)
        if not self.tokens.consume(TokenKind.INVITATION, token):
            logger.warning("invitation_token_lost_race")
            raise TokenInvalidOrExpired()
        user_id = self.credentials.create_user_from_invitation(
            subject.email, subject.full_name or "", subject.role or Role.STUDENT, password
        )
        logger.info("invitation_completed", user_id=user_id, role=(subject.role or Role.STUDENT).value)
        return {
            "success": True,
            "message": "Account created successfully",
            "user_id": user_id,
        }
