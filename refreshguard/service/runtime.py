from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from refreshguard.config import Settings, get_settings, reset_settings_cache
from refreshguard.logging import get_logger
from refreshguard.service.audit import AuditSink, StructlogAuditSink
from refreshguard.service.claims import ClaimsValidator
from refreshguard.service.clock import Clock, SystemClock
from refreshguard.service.codec import TokenCodec
from refreshguard.service.errors import ConfigurationError
from refreshguard.service.issuer import TokenIssuer
from refreshguard.service.rotation import RotationEngine
from refreshguard.service.signing_keys import SecretProvider
from refreshguard.service.verifier import AccessTokenVerifier
from refreshguard.storage.memory import MemoryStore
from refreshguard.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL before it is logged.

    Example: postgresql://app:hunter2@db:5432/auth -> postgresql://app:***@db:5432/auth
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app.

    The signing secret is resolved once here; a rejected secret aborts
    startup with ``ConfigurationError``.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        clock: Optional[Clock] = None,
        audit: Optional[AuditSink] = None,
        store: Optional[Union[MemoryStore, PostgresStore]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment.value,
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.clock = clock or SystemClock()
        self.audit = audit or StructlogAuditSink()
        self.key = SecretProvider.from_settings(self.settings).resolve_secret()
        self.store = store or self._build_store()

        self.codec = TokenCodec()
        self.validator = ClaimsValidator(self.settings, clock=self.clock)
        self.issuer = TokenIssuer(
            self.settings,
            self.store,
            self.key,
            codec=self.codec,
            validator=self.validator,
            clock=self.clock,
            audit=self.audit,
        )
        self.verifier = AccessTokenVerifier(
            self.settings, self.key, codec=self.codec, validator=self.validator
        )
        self.rotation = RotationEngine(
            self.settings, self.store, self.issuer, clock=self.clock, audit=self.audit
        )

    def _build_store(self) -> Union[MemoryStore, PostgresStore]:
        settings = self.settings
        use_memory = settings.use_memory_store or not settings.database_url
        if use_memory and settings.environment.is_production and not settings.use_memory_store:
            raise ConfigurationError(
                "DATABASE_URL is required in production", reason="database_url_missing"
            )
        try:
            store: Union[MemoryStore, PostgresStore]
            if use_memory:
                store = MemoryStore()
            else:
                store = PostgresStore(settings.database_url)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if use_memory else "postgres",
                database_url=_mask_url_password(settings.database_url),
                error_type=type(exc).__name__,
            )
            raise
        logger.info(
            "runtime_store_initialized",
            store_type="memory" if use_memory else "postgres",
            database_url=_mask_url_password(settings.database_url),
        )
        return store

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent a race during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(**overrides) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs.

    Keyword arguments are passed to ``Runtime`` so tests can inject a clock,
    an audit sink or a store.
    """
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings, **overrides)
        return runtime
