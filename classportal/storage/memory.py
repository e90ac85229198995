from __future__ import annotations

import json
import secrets
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Union

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from classportal.logging import get_logger
from classportal.storage.errors import ConstraintViolation, StoreWriteFailed
from classportal.storage.models import (
    AuthenticatedRow,
    AuthSession,
    InvitationToken,
    Profile,
    ResetToken,
    Role,
    TokenKind,
    normalize_email,
    utcnow,
)

TokenRecord = Union[ResetToken, InvitationToken]


class MemoryStore:
    """In-process token and credential store.

    Mirrors the hosted tables (``profiles``, ``password_reset_tokens``,
    ``user_invitations``) and the credential procedures. State is optionally
    written to ``fs_root/state/classportal_store.json`` after every mutation.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.profiles: Dict[str, Profile] = {}
        self.credentials: Dict[str, str] = {}
        self.sessions: Dict[str, AuthSession] = {}
        self.tokens: Dict[TokenKind, Dict[str, TokenRecord]] = {
            TokenKind.RESET: {},
            TokenKind.INVITATION: {},
        }
        # RLock so procedures can call table helpers while holding it
        self._data_lock = threading.RLock()
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # profiles
    def create_profile(
        self,
        email: str,
        full_name: str,
        role: Role | str = Role.STUDENT,
        *,
        password: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> Profile:
        email = normalize_email(email)
        with self._data_lock:
            if self._find_profile_by_email(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            profile = Profile(
                id=str(uuid.uuid4()),
                email=email,
                full_name=full_name,
                role=Role(role),
                avatar_url=avatar_url,
            )
            self.profiles[profile.id] = profile
            if password is not None:
                self.credentials[profile.id] = self._pwd_hasher.hash(password)
            self._persist_state()
            return profile

    def get_profile(self, user_id: str) -> Optional[Profile]:
        with self._data_lock:
            return self.profiles.get(user_id)

    def get_profile_by_email(self, email: str) -> Optional[Profile]:
        with self._data_lock:
            return self._find_profile_by_email(normalize_email(email))

    def update_profile_role(self, user_id: str, role: Role | str) -> Optional[Profile]:
        with self._data_lock:
            profile = self.profiles.get(user_id)
            if not profile:
                return None
            profile.role = Role(role)
            profile.updated_at = utcnow()
            self._persist_state()
            return profile

    def delete_profile(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.profiles:
                return False
            self.profiles.pop(user_id, None)
            self.credentials.pop(user_id, None)
            for token, sess in list(self.sessions.items()):
                if sess.user_id == user_id:
                    self.sessions.pop(token, None)
            self._persist_state()
            return True

    def _find_profile_by_email(self, email: str) -> Optional[Profile]:
        return next((p for p in self.profiles.values() if p.email == email), None)

    # credential procedures
    def authenticate(self, email: str, password: str) -> Optional[AuthenticatedRow]:
        with self._data_lock:
            profile = self._find_profile_by_email(normalize_email(email))
            if not profile or not self._verify(profile.id, password):
                return None
            session = AuthSession(token=secrets.token_urlsafe(32), user_id=profile.id)
            self.sessions[session.token] = session
            self._persist_state()
            return AuthenticatedRow(
                user_id=profile.id,
                email=profile.email,
                full_name=profile.full_name,
                role=profile.role,
                token=session.token,
            )

    def logout(self, token: str) -> None:
        with self._data_lock:
            if self.sessions.pop(token, None) is not None:
                self._persist_state()

    def reset_password(self, email: str, new_password: str) -> bool:
        with self._data_lock:
            profile = self._find_profile_by_email(normalize_email(email))
            if not profile:
                return False
            self.credentials[profile.id] = self._pwd_hasher.hash(new_password)
            profile.updated_at = utcnow()
            self._persist_state()
            return True

    def create_user_from_invitation(
        self, email: str, full_name: str, role: Role | str, password: str
    ) -> str:
        profile = self.create_profile(email, full_name, role, password=password)
        return profile.id

    def _verify(self, user_id: str, password: str) -> bool:
        stored_hash = self.credentials.get(user_id)
        if not stored_hash:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False

    # tokens
    def insert_token(self, kind: TokenKind, record: TokenRecord) -> TokenRecord:
        with self._data_lock:
            table = self.tokens[TokenKind(kind)]
            if record.token in table:
                raise ConstraintViolation("token already exists", {"field": "token"})
            table[record.token] = record
            self._persist_state()
            return record

    def find_valid_token(
        self, kind: TokenKind, token: str, now: datetime
    ) -> Optional[TokenRecord]:
        with self._data_lock:
            record = self.tokens[TokenKind(kind)].get(token)
            if not record or record.used or record.expires_at <= now:
                return None
            return record

    def mark_token_used(self, kind: TokenKind, token: str) -> bool:
        """Flip ``used`` only if it is still false; report whether it flipped."""
        with self._data_lock:
            record = self.tokens[TokenKind(kind)].get(token)
            if not record or record.used:
                return False
            record.used = True
            self._persist_state()
            return True

    def get_token(self, kind: TokenKind, token: str) -> Optional[TokenRecord]:
        with self._data_lock:
            return self.tokens[TokenKind(kind)].get(token)

    # persistence
    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "classportal_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def _serialize_profile(self, profile: Profile) -> dict:
        return {
            "id": profile.id,
            "email": profile.email,
            "full_name": profile.full_name,
            "role": profile.role.value,
            "avatar_url": profile.avatar_url,
            "created_at": self._serialize_datetime(profile.created_at),
            "updated_at": self._serialize_datetime(profile.updated_at),
        }

    def _deserialize_profile(self, data: dict) -> Profile:
        return Profile(
            id=data["id"],
            email=data["email"],
            full_name=data.get("full_name", ""),
            role=Role(data.get("role", Role.STUDENT.value)),
            avatar_url=data.get("avatar_url"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_token(self, record: TokenRecord) -> dict:
        data = {
            "id": record.id,
            "token": record.token,
            "email": record.email,
            "expires_at": self._serialize_datetime(record.expires_at),
            "used": record.used,
            "created_at": self._serialize_datetime(record.created_at),
        }
        if isinstance(record, InvitationToken):
            data.update(
                full_name=record.full_name,
                role=record.role.value,
                created_by=record.created_by,
            )
        return data

    def _deserialize_token(self, kind: TokenKind, data: dict) -> TokenRecord:
        common = dict(
            id=data["id"],
            token=data["token"],
            email=data["email"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            used=bool(data.get("used", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
        if kind is TokenKind.INVITATION:
            return InvitationToken(
                full_name=data.get("full_name", ""),
                role=Role(data.get("role", Role.STUDENT.value)),
                created_by=data.get("created_by"),
                **common,
            )
        return ResetToken(**common)

    def _persist_state(self) -> None:
        if not self.fs_root:
            return
        state = {
            "profiles": [self._serialize_profile(p) for p in self.profiles.values()],
            "credentials": [
                {"user_id": user_id, "password_hash": pwd_hash}
                for user_id, pwd_hash in self.credentials.items()
            ],
            "sessions": [
                {
                    "token": s.token,
                    "user_id": s.user_id,
                    "created_at": self._serialize_datetime(s.created_at),
                }
                for s in self.sessions.values()
            ],
            "tokens": {
                kind.value: [self._serialize_token(r) for r in table.values()]
                for kind, table in self.tokens.items()
            },
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", error=str(exc))
            raise StoreWriteFailed("failed to persist store state") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.profiles = {
            p["id"]: self._deserialize_profile(p) for p in data.get("profiles", [])
        }
        self.credentials = {
            entry["user_id"]: entry["password_hash"]
            for entry in data.get("credentials", [])
        }
        self.sessions = {
            s["token"]: AuthSession(
                token=s["token"],
                user_id=s["user_id"],
                created_at=self._deserialize_datetime(s["created_at"]),
            )
            for s in data.get("sessions", [])
        }
        raw_tokens = data.get("tokens", {})
        for kind in TokenKind:
            self.tokens[kind] = {
                entry["token"]: self._deserialize_token(kind, entry)
                for entry in raw_tokens.get(kind.value, [])
            }
        return True
