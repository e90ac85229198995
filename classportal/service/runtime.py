from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from classportal.config import get_settings, reset_settings_cache
from classportal.logging import get_logger
from classportal.service.email import EmailService
from classportal.service.provisioning import ProvisioningService
from classportal.service.tokens import TokenService
from classportal.storage.memory import MemoryStore
from classportal.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a DSN with '***' for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.tokens = TokenService(
            self.store,
            reset_ttl=timedelta(minutes=self.settings.reset_token_ttl_minutes),
            invitation_ttl=timedelta(days=self.settings.invitation_ttl_days),
        )
        self.email = EmailService(
            api_url=self.settings.email_api_url,
            api_key=self.settings.email_api_key,
            from_email=self.settings.email_from,
            base_url=self.settings.app_base_url,
            dev_mode=self.settings.email_dev_mode,
            timeout=self.settings.email_timeout_seconds,
        )
        if not self.email.is_configured:
            logger.warning(
                "email_not_configured",
                dev_mode=self.settings.email_dev_mode,
                message=(
                    "EMAIL_API_KEY is missing; emails will be logged"
                    if self.settings.email_dev_mode
                    else "EMAIL_API_KEY is missing; provisioning emails will fail"
                ),
            )
        self.provisioning = ProvisioningService(self.tokens, self.store, self.email)

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton under a lock."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        runtime = Runtime()
        return runtime
