from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

from classportal.logging import get_logger

logger = get_logger(__name__)

TOKEN_KEY = "auth_token"
USER_KEY = "auth_user"


class SessionCache(Protocol):
    """Client-side copy of the last session; never authoritative."""

    def get_token(self) -> Optional[str]: ...

    def get_user(self) -> Optional[Dict[str, Any]]: ...

    def store(self, token: str, user: Dict[str, Any]) -> None: ...

    def store_user(self, user: Dict[str, Any]) -> None: ...

    def clear(self) -> None: ...


class MemorySessionCache:
    """Process-local cache, used by tests and short-lived scripts."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: Dict[str, Any] = {}

    def get_token(self) -> Optional[str]:
        with self._lock:
            return self._data.get(TOKEN_KEY)

    def get_user(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            user = self._data.get(USER_KEY)
            return dict(user) if user is not None else None

    def store(self, token: str, user: Dict[str, Any]) -> None:
        with self._lock:
            self._data[TOKEN_KEY] = token
            self._data[USER_KEY] = dict(user)

    def store_user(self, user: Dict[str, Any]) -> None:
        with self._lock:
            self._data[USER_KEY] = dict(user)

    def clear(self) -> None:
        with self._lock:
            self._data.pop(TOKEN_KEY, None)
            self._data.pop(USER_KEY, None)


class FileSessionCache:
    """JSON file holding ``auth_token`` and ``auth_user``.

    Survives restarts the way browser local storage does. An unreadable or
    corrupt file reads as an empty cache.
    """

    def __init__(self, path: str | os.PathLike) -> None:
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, Any]:
        try:
            data = json.loads(self.path.read_text())
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            logger.warning("session_cache_unreadable", path=str(self.path), error=str(exc))
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(data))
        os.chmod(tmp_path, 0o600)
        tmp_path.replace(self.path)

    def get_token(self) -> Optional[str]:
        with self._lock:
            return self._read().get(TOKEN_KEY)

    def get_user(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            user = self._read().get(USER_KEY)
            return user if isinstance(user, dict) else None

    def store(self, token: str, user: Dict[str, Any]) -> None:
        with self._lock:
            self._write({TOKEN_KEY: token, USER_KEY: dict(user)})

    def store_user(self, user: Dict[str, Any]) -> None:
        with self._lock:
            data = self._read()
            data[USER_KEY] = dict(user)
            self._write(data)

    def clear(self) -> None:
        with self._lock:
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
