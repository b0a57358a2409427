from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional, Union
from urllib.parse import urlparse, urlunparse

from argon2 import PasswordHasher

from tutorbridge.config import Settings, get_settings
from tutorbridge.logging import get_logger
from tutorbridge.service.auth import AuthService
from tutorbridge.service.chat import ConversationService
from tutorbridge.service.generation import GenerationAdapter, HttpGenerationAdapter
from tutorbridge.service.lockout import LockoutTracker
from tutorbridge.service.tokens import ACCESS, REFRESH, TokenCodec
from tutorbridge.storage.memory import MemoryStore
from tutorbridge.storage.models import utcnow
from tutorbridge.storage.postgres import PostgresStore

logger = get_logger(__name__)

Store = Union[MemoryStore, PostgresStore]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a DSN with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


def build_store(settings: Settings) -> Store:
    store_type = "memory" if settings.use_memory_store else "postgres"
    try:
        if settings.use_memory_store:
            store: Store = MemoryStore(fs_root=settings.shared_fs_root)
        else:
            store = PostgresStore(settings.database_url)
    except Exception as exc:
        logger.error(
            "runtime_store_init_failed",
            store_type=store_type,
            database_url=_mask_url_password(settings.database_url),
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise
    logger.info("runtime_store_initialized", store_type=store_type)
    return store


class Runtime:
    """Holds the service graph for one application instance.

    Everything is passed in or derived from ``settings``; nothing here is a
    module-level singleton, so tests can build as many isolated runtimes as
    they need.
    """

    def __init__(
        self,
        settings: Settings,
        store: Store,
        generator: GenerationAdapter,
        *,
        clock: Callable[[], datetime] = utcnow,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.generator = generator
        self.access_codec = TokenCodec(
            settings.jwt_access_secret,
            timedelta(minutes=settings.access_token_ttl_minutes),
            token_type=ACCESS,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
        )
        self.refresh_codec = TokenCodec(
            settings.jwt_refresh_secret,
            timedelta(minutes=settings.refresh_token_ttl_minutes),
            token_type=REFRESH,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
        )
        self.lockout = LockoutTracker(
            store,
            max_attempts=settings.max_login_attempts,
            lockout_duration=timedelta(minutes=settings.lockout_duration_minutes),
            clock=clock,
        )
        self.auth = AuthService(
            store, self.access_codec, self.refresh_codec, self.lockout, hasher=hasher
        )
        self.chat = ConversationService(store, generator)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "Runtime":
        settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            app_env=settings.app_env.value,
            use_memory_store=settings.use_memory_store,
        )
        generator = HttpGenerationAdapter(
            settings.generation_service_url,
            timeout_seconds=settings.generation_timeout_seconds,
            model_name=settings.generation_model_name,
        )
        return cls(settings, build_store(settings), generator)

    async def aclose(self) -> None:
        await self.generator.aclose()
        close = getattr(self.store, "close", None)
        if close is not None:
            close()
        logger.info("runtime_closed")
