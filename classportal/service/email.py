from __future__ import annotations

from html import escape
from typing import Optional

import httpx

from classportal.logging import get_logger, redact_email
from classportal.service.errors import EmailDeliveryFailed
from classportal.storage.models import Role, role_label

logger = get_logger(__name__)

_STYLE = """
        body { font-family: Arial, sans-serif; line-height: 1.6; color: #333; }
        .container { max-width: 600px; margin: 0 auto; padding: 20px; }
        .header { background: linear-gradient(135deg, #f97316, #dc2626); color: white; padding: 30px; text-align: center; border-radius: 10px 10px 0 0; }
        .content { background: #f9fafb; padding: 30px; border-radius: 0 0 10px 10px; }
        .button { display: inline-block; background: linear-gradient(135deg, #f97316, #dc2626); color: white; padding: 15px 30px; text-decoration: none; border-radius: 8px; font-weight: bold; margin: 20px 0; }
        .info-box { background: #e0f2fe; border-left: 4px solid #0284c7; padding: 15px; margin: 20px 0; border-radius: 5px; }
        .link { word-break: break-all; background: #f3f4f6; padding: 10px; border-radius: 5px; font-family: monospace; }
        .footer { text-align: center; margin-top: 30px; color: #666; font-size: 14px; }
"""


class EmailService:
    """Transactional email over the provider's HTTP API.

    Sends invitation and password reset messages carrying a deep link back
    into the portal. With no API key configured the service either fails
    (production) or logs the message instead of sending (dev mode).
    """

    def __init__(
        self,
        *,
        api_url: str = "https://api.resend.com/emails",
        api_key: Optional[str] = None,
        from_email: str = "Kelas Otomesyen <noreply@kelasotomesyen.com>",
        base_url: str = "https://classroom.kelasotomesyen.com",
        dev_mode: bool = False,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.from_email = from_email
        self.base_url = base_url.rstrip("/")
        self.dev_mode = dev_mode
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def invite_url(self, token: str) -> str:
        return f"{self.base_url}/invite/{token}"

    def reset_url(self, token: str) -> str:
        return f"{self.base_url}/reset-password/{token}"

    def _send_email(self, to_email: str, subject: str, html_body: str) -> None:
        """POST one message to the provider; raise EmailDeliveryFailed on any failure."""
        if not self.is_configured:
            if not self.dev_mode:
                raise EmailDeliveryFailed("EMAIL_API_KEY is not set")
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                body_preview=html_body[:200],
            )
            return

        payload = {
            "from": self.from_email,
            "to": [to_email],
            "subject": subject,
            "html": html_body,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(self.api_url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            logger.error("email_timeout", to=redact_email(to_email), error=str(exc))
            raise EmailDeliveryFailed("Failed to send email: provider timed out") from exc
        except httpx.HTTPError as exc:
            logger.error(
                "email_transport_error",
                to=redact_email(to_email),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise EmailDeliveryFailed("Failed to send email: provider unreachable") from exc

        if not response.is_success:
            logger.error(
                "email_rejected",
                to=redact_email(to_email),
                status=response.status_code,
            )
            raise EmailDeliveryFailed(f"Failed to send email: {response.text}")

        logger.info("email_sent", to=redact_email(to_email), subject=subject)

    def send_invitation(
        self, to_email: str, full_name: str, role: Role | str, token: str
    ) -> None:
        """Send the account invitation with a link to set a password."""
        invite_url = self.invite_url(token)
        label = role_label(role)
        name = escape(full_name)

        subject = f"Invitation to join Kelas Otomesyen ({label})"

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Kelas Otomesyen Invitation</title>
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container">
        <div class="header">
            <h1>Kelas Otomesyen</h1>
            <p>Welcome to the Classroom Management System</p>
        </div>
        <div class="content">
            <h2>Hello {name}!</h2>
            <p>You have been invited to join <strong>Kelas Otomesyen Classroom</strong> as <strong>{label}</strong>.</p>
            <div class="info-box">
                <h3>Your account</h3>
                <ul>
                    <li><strong>Email:</strong> {escape(to_email)}</li>
                    <li><strong>Name:</strong> {name}</li>
                    <li><strong>Role:</strong> {label}</li>
                </ul>
            </div>
            <p>To activate your account, click the button below and choose a password:</p>
            <div style="text-align: center;">
                <a href="{invite_url}" class="button">Create Password &amp; Activate Account</a>
            </div>
            <ul>
                <li>This link expires in 7 days</li>
                <li>Once your password is set you can sign in right away</li>
                <li>If anything goes wrong, contact your administrator</li>
            </ul>
            <p>If the button doesn't work, copy and paste this URL into your browser:</p>
            <p class="link">{invite_url}</p>
        </div>
        <div class="footer">
            <p>Kelas Otomesyen</p>
            <p>This email was sent automatically, please do not reply.</p>
        </div>
    </div>
</body>
</html>
"""
        self._send_email(to_email, subject, html_body)

    def send_password_reset(self, to_email: str, user_name: str, token: str) -> None:
        """Send password reset email with reset link."""
        reset_url = self.reset_url(token)

        subject = "Reset Password - Kelas Otomesyen Classroom"

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Reset Password - Kelas Otomesyen</title>
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container">
        <div class="header">
            <h1>Reset Password</h1>
            <p>Kelas Otomesyen Classroom</p>
        </div>
        <div class="content">
            <h2>Hello {escape(user_name)}!</h2>
            <p>We received a request to reset the password of your <strong>Kelas Otomesyen Classroom</strong> account.</p>
            <p>If you made this request, click the button below:</p>
            <div style="text-align: center;">
                <a href="{reset_url}" class="button">Reset My Password</a>
            </div>
            <div class="info-box">
                <ul>
                    <li>This link expires in <strong>1 hour</strong></li>
                    <li>If you didn't request a reset, ignore this email</li>
                    <li>Your password stays the same until you use the link above</li>
                </ul>
            </div>
            <p>If the button doesn't work, copy and paste this URL into your browser:</p>
            <p class="link">{reset_url}</p>
        </div>
        <div class="footer">
            <p>Kelas Otomesyen</p>
            <p>This email was sent automatically, please do not reply.</p>
        </div>
    </div>
</body>
</html>
"""
        self._send_email(to_email, subject, html_body)
