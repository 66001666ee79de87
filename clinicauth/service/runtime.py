from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from clinicauth.config import get_settings, reset_settings_cache
from clinicauth.logging import get_logger
from clinicauth.service.auth import AuthService
from clinicauth.service.mobile import MobileInstanceRegistrar
from clinicauth.service.notifier import Notifier
from clinicauth.service.otp import OtpEngine
from clinicauth.service.passwords import PasswordHasher
from clinicauth.service.tokens import TokenEngine
from clinicauth.storage.errors import ConstraintViolation
from clinicauth.storage.memory import MemoryStore
from clinicauth.storage.memory_cache import MemoryCache
from clinicauth.storage.models import RoleRef
from clinicauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
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
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            multi_login_session_allowed=self.settings.multi_login_session_allowed,
        )

        if not self.settings.use_memory_store:
            raise RuntimeError(
                "Only the in-memory credential store ships with clinicauth; "
                "set USE_MEMORY_STORE=true or wire a durable AuthStore explicitly."
            )
        self.store = MemoryStore()

        self.cache: Union[RedisCache, MemoryCache, None] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    socket_timeout=self.settings.redis_socket_timeout,
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for sessions, refresh tokens and OTPs; start Redis "
                    "or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; sessions, blacklist "
                    "entries and OTPs are process-local."
                ),
                mode=fallback_mode,
            )
            self.cache = MemoryCache()

        self.hasher = PasswordHasher()
        self.tokens = TokenEngine(self.settings)
        self.otp = OtpEngine(self.cache, self.settings)
        self.notifier = Notifier.from_settings(self.settings)
        self.mobile = MobileInstanceRegistrar(self.store, self.cache, self.settings)
        self.auth = AuthService(
            self.store,
            self.cache,
            self.settings,
            otp=self.otp,
            tokens=self.tokens,
            hasher=self.hasher,
            notifier=self.notifier,
            mobile=self.mobile,
        )
        self._seed_bootstrap_user()
        logger.info("runtime_init_completed", cache_type=type(self.cache).__name__)

    def _seed_bootstrap_user(self) -> None:
        settings = self.settings
        if not settings.bootstrap_user_id or not settings.bootstrap_password:
            return
        password_hash, algo = self.hasher.hash(settings.bootstrap_password)
        try:
            identity = self.store.create_user(
                settings.bootstrap_user_id,
                email=settings.bootstrap_email,
                mobile_number=settings.bootstrap_mobile,
                password_hash=password_hash,
                password_algo=algo,
                roles=[
                    RoleRef(role_id=f"role-{name.lower()}", role_name=name)
                    for name in settings.bootstrap_roles
                ],
                tenant_id=settings.default_tenant_id,
                user_name=settings.bootstrap_user_id,
            )
        except ConstraintViolation as exc:
            logger.warning("bootstrap_user_exists", detail=exc.detail)
            return
        logger.info("bootstrap_user_created", user_id=identity.id)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the fast path skips the lock once the
    runtime exists, the slow path re-checks under the lock before creating.
    """
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
        if runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
