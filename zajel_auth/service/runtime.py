from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from zajel_auth.config import get_settings, reset_settings_cache
from zajel_auth.logging import get_logger
from zajel_auth.service.accounts import AccountService
from zajel_auth.service.auth import AuthService
from zajel_auth.service.captcha import CaptchaVerifier
from zajel_auth.service.email import EmailService
from zajel_auth.service.oauth import GoogleOAuthClient
from zajel_auth.service.revocation import RevocationRegistry
from zajel_auth.service.sessions import SessionCache
from zajel_auth.service.sms import TwilioVerifyClient
from zajel_auth.service.tokens import TokenService, load_signing_keys
from zajel_auth.service.verification import (
    EmailChannel,
    SmsChannel,
    VerificationChannelManager,
)
from zajel_auth.storage.memory import MemoryStore
from zajel_auth.storage.memory_cache import MemoryCache
from zajel_auth.storage.postgres import PostgresStore
from zajel_auth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        user = parsed.username or ""
        netloc = f"{user}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        # Fatal on failure: nothing may be served without signing keys
        self.signing_keys = load_signing_keys(self.settings)

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = self._select_cache()

        self.tokens = TokenService.from_settings(self.settings, self.signing_keys)
        self.sessions = SessionCache(
            self.cache,
            self.store,
            refresh_ttl_seconds=self.settings.refresh_token_ttl_seconds,
            reset_ttl_seconds=self.settings.password_reset_ttl_minutes * 60,
        )
        self.revocation = RevocationRegistry(self.cache, self.store)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.sms = TwilioVerifyClient(
            self.settings.twilio_account_sid,
            self.settings.twilio_auth_token,
            self.settings.twilio_verify_service_sid,
        )
        self.captcha = CaptchaVerifier(
            self.settings.recaptcha_secret_key,
            verify_url=self.settings.recaptcha_verify_url,
            test_mode=self.settings.test_mode,
        )
        self.google = GoogleOAuthClient(
            self.settings.oauth_google_client_id,
            self.settings.oauth_google_client_secret,
            self.settings.oauth_google_redirect_uri,
        )
        self.verification = VerificationChannelManager(
            self.store,
            email_channel=EmailChannel(self.email),
            sms_channel=SmsChannel(self.sms, self.settings.phone_pattern),
        )
        self.auth = AuthService(
            self.store,
            self.cache,
            self.settings,
            tokens=self.tokens,
            sessions=self.sessions,
            revocation=self.revocation,
            verification=self.verification,
            email=self.email,
            captcha=self.captcha,
            google=self.google,
        )
        self.accounts = AccountService(self.store, self.auth)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            cache_type=type(self.cache).__name__,
            email_configured=self.email.is_configured,
            sms_configured=self.sms.is_configured,
            captcha_configured=self.captcha.is_configured,
            google_configured=self.google.is_configured,
        )

    def _select_cache(self) -> Union[RedisCache, SyncRedisCache, MemoryCache]:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            # Sync client under TEST_MODE avoids binding to a pytest event loop
            cache_cls = SyncRedisCache if self.settings.test_mode else RedisCache
            cache = cache_cls(
                self.settings.redis_url,
                socket_timeout=self.settings.redis_socket_timeout_seconds,
            )
            try:
                cache.verify_connection()
                logger.info(
                    "redis_connected", redis_url=_mask_url_password(self.settings.redis_url)
                )
                return cache
            except Exception as exc:
                redis_error = exc
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                # Keep Redis; each call degrades to the identity-record fallback until it recovers
                logger.error(
                    "redis_unavailable_at_startup",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(redis_error),
                )
                return cache

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                "Running without Redis; sessions, revocations and OAuth state are "
                "held in process memory only."
            ),
            mode=fallback_mode,
        )
        return MemoryCache()

    async def close(self) -> None:
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the fast path skips the lock once the runtime
    exists, the slow path re-checks under the lock before creating it.
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
        if runtime is not None:
            if isinstance(runtime.cache, SyncRedisCache):
                runtime.cache.client.close()
            elif isinstance(runtime.cache, RedisCache):
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
