"""Dependency injection with a singleton service manager.

The service manager builds every shared collaborator once (store, cache,
cooldowns, visit dispatcher, resolver, sweeper) and hands them to request
handlers through a lightweight per-request context. Nothing below reaches for
an ambient database or Redis handle; tests initialize the manager with their
own session factory and cache clients.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional

import httpx
import redis.asyncio as redis
from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shortlink.cache import LinkCache
from shortlink.captcha import CaptchaVerifier
from shortlink.clock import Clock, utcnow
from shortlink.config import Settings, get_settings
from shortlink.cooldown import CooldownStore, CooldownSweeper
from shortlink.database import async_session
from shortlink.errors import AuthenticationError
from shortlink.link_service import LinkService
from shortlink.models import User
from shortlink.redis import close_redis, get_redis, get_redis_read
from shortlink.resolver import RedirectResolver
from shortlink.safe_browsing import SafeBrowsingVerifier
from shortlink.store import LinkStore
from shortlink.visits import GeoResolver, HeaderGeoResolver, HttpGeoResolver, RequestMeta, VisitAggregator, VisitDispatcher


# ============================================================================
# SINGLETON SERVICE MANAGER
# ============================================================================


class ServiceManager:
    """Singleton service manager for shared resources."""

    _instance: Optional["ServiceManager"] = None
    _initialized: bool = False

    def __new__(cls) -> "ServiceManager":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    async def initialize(
        self,
        *,
        settings: Settings | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        cache_writer: redis.Redis | None = None,
        cache_reader: redis.Redis | None = None,
        geo: GeoResolver | None = None,
        clock: Clock = utcnow,
    ) -> None:
        """Initialize shared resources once at startup."""
        if self._initialized:
            return

        self.settings = settings or get_settings()
        self.logger = self._setup_logger()
        self.clock = clock
        self._owns_redis = cache_writer is None
        if cache_writer is None:
            cache_writer = await get_redis()
            cache_reader = cache_reader if cache_reader is not None else await get_redis_read()
        self.cache_writer = cache_writer
        self.cache_reader = cache_reader if cache_reader is not None else cache_writer
        self.http_client = httpx.AsyncClient(timeout=self.settings.GEOIP_TIMEOUT_SECONDS)

        self.store = LinkStore(session_factory or async_session)
        self.cache = LinkCache(
            self.cache_writer,
            self.cache_reader,
            ttl_seconds=self.settings.LINK_CACHE_TTL_SECONDS,
            logger=self.logger,
        )
        self.cooldowns = CooldownStore(self.store, clock=clock)
        self.sweeper = CooldownSweeper(
            self.cooldowns,
            window_minutes=self.settings.NON_USER_COOLDOWN,
            interval_seconds=self.settings.COOLDOWN_SWEEP_INTERVAL_SECONDS,
            logger=self.logger,
        )
        self.aggregator = VisitAggregator(
            self.store,
            geo if geo is not None else self._setup_geo(),
            max_keys=self.settings.MAX_STATS_KEYS_PER_LINK,
            logger=self.logger,
        )
        self.dispatcher = VisitDispatcher(self.aggregator, logger=self.logger)
        self.resolver = RedirectResolver(
            self.store,
            self.cache,
            self.dispatcher,
            default_domain=self.settings.DEFAULT_DOMAIN,
            clock=clock,
            logger=self.logger,
        )
        self.captcha = CaptchaVerifier(
            self.settings.RECAPTCHA_SECRET_KEY,
            self.settings.RECAPTCHA_VERIFY_URL,
            self.http_client,
            logger=self.logger,
        )
        self.safe_browsing = SafeBrowsingVerifier(
            self.settings.GOOGLE_SAFE_BROWSING_KEY,
            self.settings.SAFE_BROWSING_URL,
            self.http_client,
            client_id=self.settings.APP_NAME,
            logger=self.logger,
        )
        self._initialized = True

    def _setup_logger(self) -> logging.Logger:
        """Setup logger once."""
        logger = logging.getLogger("shortlink")
        if not logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            handler.setFormatter(formatter)
            logger.addHandler(handler)
            logger.setLevel(logging.INFO)
        return logger

    def _setup_geo(self) -> GeoResolver:
        if self.settings.GEOIP_SERVICE_URL:
            return HttpGeoResolver(self.settings.GEOIP_SERVICE_URL, self.http_client, logger=self.logger)
        return HeaderGeoResolver()

    async def cleanup(self) -> None:
        """Cleanup shared resources at shutdown."""
        if not self._initialized:
            return
        await self.sweeper.stop()
        await self.dispatcher.drain(timeout=5.0)
        await self.http_client.aclose()
        if self._owns_redis:
            await close_redis()
        self._initialized = False


# Global singleton instance
_service_manager = ServiceManager()


# ============================================================================
# LIGHTWEIGHT REQUEST CONTEXT
# ============================================================================


def client_ip(request: Request) -> str | None:
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


@dataclass
class RequestContext:
    """Per-request view over the shared service manager.

    Attributes:
        service_manager: Singleton service manager with shared resources
        host: Host header, used to resolve custom domains
        request_id: Unique identifier for this request
        user_agent: Client user agent string
        client_ip: Client IP address
        referrer: Referer header
        country_hint: Country code set by an edge proxy, if any
        user: Authenticated user, if an API key was presented
        start_time: Request start timestamp
    """

    service_manager: ServiceManager
    host: str | None = None
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    user_agent: str | None = None
    client_ip: str | None = None
    referrer: str | None = None
    country_hint: str | None = None
    user: User | None = None
    start_time: float = field(default_factory=lambda: time.time())

    @property
    def settings(self) -> Settings:
        return self.service_manager.settings

    @property
    def store(self) -> LinkStore:
        return self.service_manager.store

    @property
    def cache(self) -> LinkCache:
        return self.service_manager.cache

    @property
    def cooldowns(self) -> CooldownStore:
        return self.service_manager.cooldowns

    @property
    def captcha(self) -> CaptchaVerifier:
        return self.service_manager.captcha

    @property
    def safe_browsing(self) -> SafeBrowsingVerifier:
        return self.service_manager.safe_browsing

    @property
    def resolver(self) -> RedirectResolver:
        return self.service_manager.resolver

    @property
    def clock(self) -> Clock:
        return self.service_manager.clock

    @property
    def logger(self) -> logging.LoggerAdapter:
        return logging.LoggerAdapter(
            self.service_manager.logger,
            {
                "request_id": self.request_id,
                "client_ip": self.client_ip,
                "user_agent": self.user_agent,
            },
        )

    @property
    def meta(self) -> RequestMeta:
        return RequestMeta(
            ip=self.client_ip,
            user_agent=self.user_agent,
            referrer=self.referrer,
            country_hint=self.country_hint,
        )

    def get_duration(self) -> float:
        """Get request duration in milliseconds."""
        return (time.time() - self.start_time) * 1000


# ============================================================================
# DEPENDENCY FUNCTIONS
# ============================================================================


async def get_service_manager() -> ServiceManager:
    if not _service_manager._initialized:
        await _service_manager.initialize()
    return _service_manager


async def get_request_context(
    request: Request,
    manager: ServiceManager = Depends(get_service_manager),
    x_api_key: str | None = Header(None),
) -> RequestContext:
    ctx = RequestContext(
        service_manager=manager,
        host=request.headers.get("host"),
        user_agent=request.headers.get("user-agent"),
        client_ip=client_ip(request),
        referrer=request.headers.get("referer"),
        country_hint=request.headers.get(manager.settings.GEOIP_COUNTRY_HEADER),
    )
    if x_api_key:
        ctx.user = await LinkService.from_context(ctx).authenticate(x_api_key)
    return ctx


def get_link_service(ctx: RequestContext = Depends(get_request_context)) -> LinkService:
    return LinkService.from_context(ctx)


async def require_user(ctx: RequestContext = Depends(get_request_context)) -> User:
    if ctx.user is None:
        raise AuthenticationError()
    return ctx.user
