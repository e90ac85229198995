from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from classportal.logging import get_logger, redact_email
from classportal.service.errors import InvalidCredentials, ProfileNotFound
from classportal.service.session_cache import SessionCache
from classportal.storage.models import AuthenticatedRow, Profile, Role

logger = get_logger(__name__)


class CredentialBackend(Protocol):
    """What the client needs from the credential store."""

    def authenticate(self, email: str, password: str) -> List[Dict[str, Any]]: ...

    def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]: ...

    def logout(self, token: str) -> None: ...


class StoreBackedCredentials:
    """CredentialBackend over an in-process store, for scripts and tests."""

    def __init__(self, store) -> None:
        self.store = store

    def authenticate(self, email: str, password: str) -> List[Dict[str, Any]]:
        row: Optional[AuthenticatedRow] = self.store.authenticate(email, password)
        return [row.to_dict()] if row else []

    def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        profile: Optional[Profile] = self.store.get_profile(user_id)
        if profile is None:
            return None
        return {
            "id": profile.id,
            "email": profile.email,
            "full_name": profile.full_name,
            "role": profile.role.value,
            "avatar_url": profile.avatar_url,
        }

    def logout(self, token: str) -> None:
        self.store.logout(token)


@dataclass
class User:
    id: str
    email: str
    full_name: str
    role: Role
    avatar_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role.value,
            "avatar_url": self.avatar_url,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        return cls(
            id=str(data["id"]),
            email=data["email"],
            full_name=data.get("full_name") or "",
            role=Role(data.get("role") or Role.STUDENT.value),
            avatar_url=data.get("avatar_url"),
        )


@dataclass(frozen=True)
class AuthContext:
    user: User
    token: str


class AuthService:
    """Client-side login, session revalidation and logout.

    The cache is only a hint: on start ``validate_session`` re-reads the
    profile from the backend and drops the cache if it no longer resolves.
    """

    def __init__(self, backend: CredentialBackend, cache: SessionCache) -> None:
        self.backend = backend
        self.cache = cache

    def login(self, email: str, password: str) -> User:
        try:
            rows = self.backend.authenticate(email, password)
            if not rows:
                logger.info("login_rejected", recipient=redact_email(email))
                raise InvalidCredentials()
            row = rows[0]
            token = row["token"]
            user = User(
                id=str(row["user_id"]),
                email=row["email"],
                full_name=row.get("full_name") or "",
                role=Role(row["role"]),
            )
        except InvalidCredentials:
            raise
        except Exception as exc:
            logger.error("login_backend_error", error_type=type(exc).__name__, error=str(exc))
            raise InvalidCredentials("Login failed") from exc

        self.cache.store(token, user.to_dict())
        logger.info("login_succeeded", user_id=user.id)
        return user

    def validate_session(self) -> Optional[User]:
        """Return the fresh user for the cached session, or None if there is none."""
        token = self.cache.get_token()
        if not token:
            return None
        cached = self.cache.get_user()
        if not cached or not cached.get("id"):
            logger.info("session_cache_incomplete")
            self.cache.clear()
            return None

        user_id = str(cached["id"])
        try:
            profile = self.backend.get_profile(user_id)
            if profile is None:
                logger.info(
                    "session_profile_missing", user_id=user_id, error=ProfileNotFound.error_code
                )
                self.cache.clear()
                return None
            user = User.from_dict(profile)
            self.cache.store_user(user.to_dict())
        except Exception as exc:
            logger.warning(
                "session_profile_lookup_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            self.cache.clear()
            return None
        return user

    def logout(self) -> None:
        token = self.cache.get_token()
        try:
            if token:
                self.backend.logout(token)
        except Exception as exc:
            logger.warning("logout_backend_error", error_type=type(exc).__name__, error=str(exc))
        finally:
            self.cache.clear()

    def current_user(self) -> Optional[User]:
        cached = self.cache.get_user()
        if not cached:
            return None
        try:
            return User.from_dict(cached)
        except (KeyError, ValueError):
            return None

    def token(self) -> Optional[str]:
        return self.cache.get_token()

    def is_authenticated(self) -> bool:
        return bool(self.token()) and self.current_user() is not None

    def context(self) -> Optional[AuthContext]:
        token = self.token()
        user = self.current_user()
        if not token or user is None:
            return None
        return AuthContext(user=user, token=token)
