from __future__ import annotations

from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from classportal.config import get_settings
from classportal.logging import get_logger
from classportal.service.auth import AuthService, CredentialBackend
from classportal.service.session_cache import FileSessionCache, SessionCache
from classportal.storage.models import Role, TokenKind

logger = get_logger(__name__)

DEFAULT_MIN_PASSWORD_LENGTH = 6


class PortalError(Exception):
    """Non-2xx answer from the portal; ``message`` is the server's ``error``."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class PortalClient:
    """HTTP client for the provisioning functions and the credential rpc surface.

    ``base_url`` and ``api_key`` default to ``BACKEND_URL`` and
    ``BACKEND_PUBLIC_KEY``.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
        http_client: Optional[httpx.Client] = None,
        min_password_length: int = DEFAULT_MIN_PASSWORD_LENGTH,
    ) -> None:
        settings = get_settings()
        base_url = base_url or settings.backend_url
        if api_key is None:
            api_key = settings.backend_public_key
        headers = {"x-client-info": "classportal-python"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
            headers["apikey"] = api_key
        if http_client is not None:
            http_client.headers.update(headers)
            self._client = http_client
        else:
            self._client = httpx.Client(
                base_url=base_url.rstrip("/"),
                headers=headers,
                timeout=timeout,
                transport=transport,
            )
        self.min_password_length = min_password_length

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "PortalClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _request(self, method: str, path: str, json: Optional[dict] = None) -> Any:
        try:
            response = self._client.request(method, path, json=json)
        except httpx.HTTPError as exc:
            logger.warning("portal_request_failed", path=path, error=str(exc))
            raise PortalError(f"request failed: {exc}") from exc
        if response.is_success:
            return response.json()
        try:
            message = response.json().get("error") or response.text
        except ValueError:
            message = response.text
        raise PortalError(message, status_code=response.status_code)

    def _call(self, name: str, payload: dict) -> Dict[str, Any]:
        return self._request("POST", f"/functions/{name}", json=payload)

    # provisioning functions
    def send_invitation(
        self,
        email: str,
        full_name: str,
        role: Role | str,
        created_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload = {"email": email, "full_name": full_name, "role": Role(role).value}
        if created_by:
            payload["created_by"] = created_by
        return self._call("send-invitation", payload)

    def forgot_password(self, email: str) -> Dict[str, Any]:
        return self._call("forgot-password", {"email": email})

    def validate_reset_token(self, token: str) -> Dict[str, Any]:
        return self._call("validate-reset-token", {"token": token})

    def validate_invitation_token(self, token: str) -> Dict[str, Any]:
        return self._call("validate-invitation-token", {"token": token})

    def reset_password(self, token: str, password: str) -> Dict[str, Any]:
        return self._call("reset-password", {"token": token, "password": password})

    def complete_invitation(self, token: str, password: str) -> Dict[str, Any]:
        return self._call("complete-invitation", {"token": token, "password": password})

    def set_password(
        self, kind: TokenKind | str, token: str, password: str, confirm: str
    ) -> Dict[str, Any]:
        """Check the password form locally, then redeem the token."""
        if password != confirm:
            raise PortalError("Passwords do not match")
        if len(password) < self.min_password_length:
            raise PortalError(
                f"Password must be at least {self.min_password_length} characters"
            )
        if TokenKind(kind) is TokenKind.INVITATION:
            return self.complete_invitation(token, password)
        return self.reset_password(token, password)

    # credential rpc
    def authenticate(self, email: str, password: str) -> List[Dict[str, Any]]:
        return self._request(
            "POST", "/rpc/authenticate", json={"email": email, "password": password}
        )

    def logout(self, token: str) -> None:
        self._request("POST", "/rpc/logout", json={"token": token})

    def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self._request("GET", f"/profiles/{quote(user_id, safe='')}")
        except PortalError as exc:
            if exc.status_code == 404:
                return None
            raise


class HttpCredentialBackend:
    """CredentialBackend over a PortalClient."""

    def __init__(self, client: PortalClient) -> None:
        self.client = client

    def authenticate(self, email: str, password: str) -> List[Dict[str, Any]]:
        return self.client.authenticate(email, password)

    def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self.client.get_profile(user_id)

    def logout(self, token: str) -> None:
        self.client.logout(token)


def build_auth_service(
    client: Optional[PortalClient] = None, cache: Optional[SessionCache] = None
) -> AuthService:
    """AuthService over HTTP, caching to the configured session file by default."""
    if client is None:
        client = PortalClient()
    if cache is None:
        cache = FileSessionCache(get_settings().session_cache_path)
    backend: CredentialBackend = HttpCredentialBackend(client)
    return AuthService(backend, cache)
