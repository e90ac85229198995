"""Unit tests for the provisioning flows.

Tests for:
- Invitation issue / validate / redeem
- Password reset issue / validate / redeem
- Single-use enforcement and lost consume races
"""

from datetime import datetime, timedelta, timezone

import pytest

from classportal.service.email import EmailService
from classportal.service.errors import ServiceError, TokenInvalidOrExpired
from classportal.service.provisioning import ProvisioningService
from classportal.service.tokens import TokenService
from classportal.storage.errors import StoreWriteFailed
from classportal.storage.memory import MemoryStore
from classportal.storage.models import Role, TokenKind


class RecordingEmail(EmailService):
    def __init__(self):
        super().__init__(base_url="https://portal.test", dev_mode=True)
        self.sent = []

    def _send_email(self, to_email, subject, html_body):
        self.sent.append({"to": to_email, "subject": subject, "html": html_body})


class Clock:
    def __init__(self):
        self.now = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def email():
    return RecordingEmail()


@pytest.fixture
def provisioning(store, clock, email):
    return ProvisioningService(TokenService(store, now=clock), store, email)


@pytest.fixture
def admin(store):
    return store.create_profile("admin@example.com", "Ada Admin", Role.ADMIN, password="adminpw")


class TestInvitation:
    def test_round_trip_creates_account_that_can_log_in(self, provisioning, store, admin):
        sent = provisioning.send_invitation("a@b.com", "A B", Role.STUDENT, created_by=admin.id)
        token = sent["token"]
        assert sent["success"] is True
        assert sent["message"] == "Invitation sent successfully"

        assert provisioning.validate_invitation_token(token) == {
            "valid": True,
            "email": "a@b.com",
            "full_name": "A B",
            "role": "student",
        }

        result = provisioning.complete_invitation(token, "secret1")
        assert result["success"] is True
        assert result["message"] == "Account created successfully"

        row = store.authenticate("a@b.com", "secret1")
        assert row is not None
        assert row.user_id == result["user_id"]
        assert row.full_name == "A B"
        assert row.role is Role.STUDENT

    def test_email_contains_invite_link(self, provisioning, email):
        token = provisioning.send_invitation("a@b.com", "A B", Role.ADMIN)["token"]
        assert email.sent[0]["to"] == "a@b.com"
        assert f"https://portal.test/invite/{token}" in email.sent[0]["html"]
        assert "(Admin)" in email.sent[0]["subject"]

    def test_unknown_creator_is_dropped(self, provisioning, store):
        token = provisioning.send_invitation("a@b.com", "A B", Role.STUDENT, created_by="ghost")["token"]
        assert store.get_token(TokenKind.INVITATION, token).created_by is None

    def test_empty_creator_is_stored_as_none(self, provisioning, store, monkeypatch):
        looked_up = []
        monkeypatch.setattr(store, "get_profile", lambda user_id: looked_up.append(user_id))

        token = provisioning.send_invitation("a@b.com", "A B", Role.STUDENT, created_by="")["token"]

        assert store.get_token(TokenKind.INVITATION, token).created_by is None
        assert looked_up == []

    def test_known_creator_is_recorded(self, provisioning, store, admin):
        token = provisioning.send_invitation("a@b.com", "A B", Role.STUDENT, created_by=admin.id)["token"]
        assert store.get_token(TokenKind.INVITATION, token).created_by == admin.id

    def test_redeemed_invitation_cannot_be_reused(self, provisioning):
        token = provisioning.send_invitation("a@b.com", "A B", Role.STUDENT)["token"]
        provisioning.complete_invitation(token, "secret1")

        assert provisioning.validate_invitation_token(token) == {"valid": False}
        with pytest.raises(TokenInvalidOrExpired):
            provisioning.complete_invitation(token, "another1")

    def test_expired_invitation_is_rejected(self, provisioning, clock):
        token = provisioning.send_invitation("a@b.com", "A B", Role.STUDENT)["token"]
        clock.now += timedelta(days=7, seconds=1)

        assert provisioning.validate_invitation_token(token) == {"valid": False}
        with pytest.raises(TokenInvalidOrExpired):
            provisioning.complete_invitation(token, "secret1")

    def test_duplicate_email_fails_after_consuming(self, provisioning, store):
        store.create_profile("a@b.com", "Existing", Role.STUDENT, password="pw1234")
        token = provisioning.send_invitation("a@b.com", "A B", Role.STUDENT)["token"]

        with pytest.raises(StoreWriteFailed):
            provisioning.complete_invitation(token, "secret1")
        # token was consumed before the insert failed
        assert store.get_token(TokenKind.INVITATION, token).used is True

    def test_lost_consume_race_is_rejected(self, provisioning, store, monkeypatch):
        token = provisioning.send_invitation("a@b.com", "A B", Role.STUDENT)["token"]
        # another redeemer flips the flag between validate and consume
        monkeypatch.setattr(store, "mark_token_used", lambda kind, tok: False)

        with pytest.raises(TokenInvalidOrExpired):
            provisioning.complete_invitation(token, "secret1")
        assert store.get_profile_by_email("a@b.com") is None


class TestPasswordReset:
    def test_reset_changes_password(self, provisioning, store, admin, email):
        provisioning.forgot_password("admin@example.com")
        token = next(iter(store.tokens[TokenKind.RESET]))

        assert provisioning.validate_reset_token(token) == {
            "valid": True,
            "email": "admin@example.com",
        }
        result = provisioning.reset_password(token, "newpass1")

        assert result == {"success": True, "message": "Password reset successfully"}
        assert store.authenticate("admin@example.com", "adminpw") is None
        assert store.authenticate("admin@example.com", "newpass1") is not None
        assert "Hello Ada Admin!" in email.sent[0]["html"]
        assert f"https://portal.test/reset-password/{token}" in email.sent[0]["html"]

    def test_unknown_email_gets_same_response(self, provisioning, store, email):
        result = provisioning.forgot_password("nobody@example.com")

        assert result == {
            "success": True,
            "message": "Password reset email sent successfully",
        }
        assert len(store.tokens[TokenKind.RESET]) == 1
        assert "Hello User!" in email.sent[0]["html"]

    def test_reset_for_address_without_account_fails(self, provisioning, store):
        provisioning.forgot_password("nobody@example.com")
        token = next(iter(store.tokens[TokenKind.RESET]))

        with pytest.raises(ServiceError) as excinfo:
            provisioning.reset_password(token, "newpass1")
        assert excinfo.value.message == "Failed to reset password"

    def test_reset_token_is_single_use(self, provisioning, store, admin):
        provisioning.forgot_password("admin@example.com")
        token = next(iter(store.tokens[TokenKind.RESET]))
        provisioning.reset_password(token, "newpass1")

        with pytest.raises(TokenInvalidOrExpired):
            provisioning.reset_password(token, "newpass2")
        assert store.authenticate("admin@example.com", "newpass1") is not None

    def test_reset_token_expires_after_an_hour(self, provisioning, store, clock, admin):
        provisioning.forgot_password("admin@example.com")
        token = next(iter(store.tokens[TokenKind.RESET]))
        clock.now += timedelta(hours=1, seconds=1)

        assert provisioning.validate_reset_token(token) == {"valid": False}
        with pytest.raises(TokenInvalidOrExpired):
            provisioning.reset_password(token, "newpass1")

    def test_first_of_two_tokens_wins_only_for_itself(self, provisioning, store, admin):
        provisioning.forgot_password("admin@example.com")
        provisioning.forgot_password("admin@example.com")
        first, second = list(store.tokens[TokenKind.RESET])

        provisioning.reset_password(first, "newpass1")
        assert provisioning.validate_reset_token(second)["valid"] is True
