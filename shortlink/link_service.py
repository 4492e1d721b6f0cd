"""Business logic for creating, editing, banning and inspecting links.

Flow Diagram — Link Creation
============================
::
    ┌──────────────┐
    │ POST /api/v2/│
    │ links        │
    └──────┬───────┘
           ▼
    ┌──────────────┐ anonymous: captcha, cooldown, no custom fields
    │ Identity     │ user: daily limit
    │ checks       │
    └──────┬───────┘
           ▼
    ┌──────────────┐ not the service itself, host not banned,
    │ Target checks│ not flagged by Safe Browsing
    │              │ (either = strike against the user)
    └──────┬───────┘
           ▼
    ┌──────────────┐ custom address ─► insert ─► conflict = 409
    │ Insert       │ generated ──────► insert ─► conflict = retry
    └──────┬───────┘                   retries exhausted = 500
           ▼
    ┌──────────────┐
    │ Cache link,  │
    │ touch cooldown│ (anonymous only)
    └──────────────┘

Key Behaviours
===============
- Every mutation (edit, delete, ban) invalidates the affected cache entries
  before returning to the caller.
- Uniqueness is enforced by the database; a generated address that collides
  is simply replaced, so no partial row is ever left behind.
- Passwords are stored as bcrypt hashes and never returned.

Usage Examples
=============
```python
@router.post("/api/v2/links")
async def create_link(
    payload: LinkCreate,
    ctx: RequestContext = Depends(get_request_context),
    service: LinkService = Depends(get_link_service),
):
    link = await service.create(payload, ctx.user, ctx.client_ip)
```
"""

import datetime
import logging
import time
from urllib.parse import urlparse

from prometheus_client import Counter, Histogram

from shortlink.cache import LinkCache
from shortlink.captcha import CaptchaVerifier
from shortlink.clock import Clock, as_utc, utcnow
from shortlink.codegen import generate_address
from shortlink.config import Settings
from shortlink.cooldown import CooldownStore
from shortlink.enums import RequestStatus
from shortlink.errors import (
    AddressConflictError,
    AuthenticationError,
    BannedError,
    GenerationExhaustedError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitedError,
    ShortlinkError,
    ValidationFailedError,
)
from shortlink.models import Domain, User
from shortlink.resolver import split_host
from shortlink.safe_browsing import SafeBrowsingVerifier
from shortlink.schemas import BanRequest, CachedLinkPayload, DomainCreate, LinkCreate, LinkEdit
from shortlink.security import generate_apikey, hash_password
from shortlink.store import LinkKey, LinkStore, VisitStats

__all__ = ["RESERVED_ADDRESSES", "LinkService"]

# First path segments owned by the service itself.
RESERVED_ADDRESSES = frozenset({"api", "health", "metrics", "docs", "redoc", "openapi.json", "protected"})

MIN_EXPIRY = datetime.timedelta(minutes=1)

LINK_CREATION_REQUESTS_TOTAL = Counter(
    "shortlink_link_creation_requests_total",
    "Total link creation requests",
    ["status"],
)
LINK_CREATION_DURATION = Histogram(
    "shortlink_link_creation_duration_seconds",
    "Time taken to create links",
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5],
)
ADDRESS_COLLISIONS_TOTAL = Counter(
    "shortlink_address_collisions_total",
    "Generated addresses that collided with an existing link",
)


class LinkService:
    def __init__(
        self,
        store: LinkStore,
        cache: LinkCache,
        cooldowns: CooldownStore,
        captcha: CaptchaVerifier,
        settings: Settings,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
        clock: Clock = utcnow,
        safe_browsing: SafeBrowsingVerifier | None = None,
    ):
        self._store = store
        self._cache = cache
        self._cooldowns = cooldowns
        self._captcha = captcha
        self._safe_browsing = safe_browsing
        self._settings = settings
        self._logger = logger or logging.getLogger("shortlink.links")
        self._clock = clock

    @classmethod
    def from_context(cls, ctx) -> "LinkService":
        return cls(
            store=ctx.store,
            cache=ctx.cache,
            cooldowns=ctx.cooldowns,
            captcha=ctx.captcha,
            settings=ctx.settings,
            logger=ctx.logger,
            clock=ctx.clock,
            safe_browsing=ctx.safe_browsing,
        )

    # ========================================================================
    # IDENTITY
    # ========================================================================

    async def authenticate(self, apikey: str | None) -> User | None:
        if not apikey:
            return None
        user = await self._store.find_user_by_apikey(apikey)
        if user is None:
            raise AuthenticationError("API key is not correct.")
        if user.banned:
            raise BannedError("Your account has been banned.")
        return user

    def is_admin(self, user: User | None) -> bool:
        return user is not None and user.email.lower() in self._settings.admin_emails

    async def regenerate_apikey(self, user: User) -> str:
        apikey = generate_apikey()
        await self._store.set_user_apikey(user.id, apikey)
        self._logger.info(f"API key regenerated for user {user.id}")
        return apikey

    # ========================================================================
    # LINKS
    # ========================================================================

    def short_url(self, link: CachedLinkPayload) -> str:
        if link.domain:
            scheme = "https" if self._settings.CUSTOM_DOMAIN_USE_HTTPS else "http"
            return f"{scheme}://{link.domain}/{link.address}"
        return f"{self._settings.BASE_URL.rstrip('/')}/{link.address}"

    async def create(self, payload: LinkCreate, user: User | None, ip: str | None) -> CachedLinkPayload:
        """Create a link for a user or an anonymous source.

        Raises:
            AuthenticationError: Anonymous use is disabled or a user-only field was set.
            RateLimitedError: Anonymous cooldown or daily user limit reached.
            AddressConflictError: The custom address is taken or reserved.
            GenerationExhaustedError: No free address within the retry budget.
        """
        start_time = time.perf_counter()
        try:
            if user is None:
                await self._check_anonymous(payload, ip)
            else:
                await self._check_daily_limit(user)

            await self._check_target(payload.target, user)
            domain = await self._resolve_domain(payload.domain, user)

            fields = {
                "target": payload.target,
                "description": payload.description,
                "expire_in": self._check_expiry(payload.expire_in),
                "password": await hash_password(payload.password) if payload.password else None,
                "user_id": user.id if user else None,
                "domain_id": domain.id if domain else None,
            }
            if payload.address:
                if payload.address.lower() in RESERVED_ADDRESSES:
                    raise AddressConflictError("Custom address is not available.")
                link = await self._store.insert_link({**fields, "address": payload.address})
            else:
                link = await self._insert_generated(fields)

            await self._cache.set(link.domain, link.address, link)
            if user is None and ip:
                await self._cooldowns.touch(ip)

            duration = time.perf_counter() - start_time
            LINK_CREATION_DURATION.observe(duration)
            LINK_CREATION_REQUESTS_TOTAL.labels(status=RequestStatus.SUCCESS).inc()
            self._logger.info(f"Link created: {link.address} (id={link.id}) in {duration:.3f}s")
            return link

        except GenerationExhaustedError:
            LINK_CREATION_REQUESTS_TOTAL.labels(status=RequestStatus.ERROR).inc()
            self._logger.error("Link creation failed: address generation exhausted")
            raise
        except ShortlinkError as exc:
            LINK_CREATION_REQUESTS_TOTAL.labels(status=RequestStatus.VALIDATION_ERROR).inc()
            self._logger.warning(f"Link creation rejected: {exc.message}")
            raise

    async def edit(self, link_id: int, payload: LinkEdit, user: User) -> CachedLinkPayload:
        link = await self._owned_link(link_id, user)
        changes = payload.model_dump(exclude_unset=True)
        fields: dict = {}

        if changes.get("target") and changes["target"] != link.target:
            await self._check_target(changes["target"], user)
            fields["target"] = changes["target"]
        if changes.get("address") and changes["address"] != link.address:
            if changes["address"].lower() in RESERVED_ADDRESSES:
                raise AddressConflictError("Custom address is not available.")
            fields["address"] = changes["address"]
        if "description" in changes:
            fields["description"] = changes["description"] or None
        if "expire_in" in changes:
            fields["expire_in"] = self._check_expiry(changes["expire_in"])
        if "password" in changes:
            fields["password"] = await hash_password(changes["password"]) if changes["password"] else None

        if not fields:
            return link

        updated = await self._store.update_link(link.id, fields)
        await self._cache.invalidate(link.domain, link.address)
        if "address" in fields:
            await self._cache.invalidate(link.domain, fields["address"])
        if updated is None:
            raise NotFoundError()

        self._logger.info(f"Link {link.id} edited: {', '.join(sorted(fields))}")
        return updated

    async def delete(self, link_id: int, user: User) -> None:
        link = await self._owned_link(link_id, user)
        await self._store.delete_link(link.id)
        await self._cache.invalidate(link.domain, link.address)
        self._logger.info(f"Link {link.id} deleted by user {user.id}")

    async def ban(self, link_id: int, admin: User, request: BanRequest) -> str:
        if not self.is_admin(admin):
            raise PermissionDeniedError()
        link = await self._store.find_link_by_id(link_id)
        if link is None:
            raise NotFoundError()

        await self._store.ban_link(link.id, admin.id)
        keys: list[LinkKey] = [(link.domain, link.address)]

        if request.host:
            host = urlparse(link.target).hostname
            if host:
                await self._store.ban_host(host, admin.id)
        if link.user_id is not None:
            if request.user:
                await self._store.ban_user(link.user_id, admin.id)
            if request.user_links:
                await self._store.ban_user_links(link.user_id, admin.id)
            if request.user or request.user_links:
                keys.extend(await self._store.link_keys(user_id=link.user_id))
        if request.domain and link.domain_id is not None:
            await self._store.ban_domain(link.domain_id, admin.id)
            keys.extend(await self._store.link_keys(domain_id=link.domain_id))

        await self._cache.invalidate_many(keys)
        self._logger.warning(f"Link {link.id} banned by admin {admin.id} ({request.model_dump()})")
        return "Banned link successfully."

    async def stats(self, link_id: int, user: User) -> tuple[CachedLinkPayload, VisitStats]:
        link = await self._owned_link(link_id, user)
        return link, await self._store.get_visit_stats(link.id)

    async def list_links(self, user: User, skip: int = 0, limit: int = 10) -> tuple[int, list[CachedLinkPayload]]:
        return await self._store.list_links(user.id, skip=skip, limit=limit)

    # ========================================================================
    # DOMAINS
    # ========================================================================

    async def add_domain(self, user: User, payload: DomainCreate) -> Domain:
        if split_host(payload.address) == split_host(self._settings.DEFAULT_DOMAIN):
            raise ValidationFailedError("You can't use the default domain.")
        domain = await self._store.insert_domain(user.id, payload.address, payload.homepage)
        self._logger.info(f"Domain {domain.address} added by user {user.id}")
        return domain

    async def remove_domain(self, user: User, domain_id: int) -> None:
        domain = await self._store.find_domain(domain_id)
        if domain is None or domain.user_id != user.id:
            raise NotFoundError("Domain could not be found.")
        await self._store.detach_domain(domain.id)
        self._logger.info(f"Domain {domain.address} removed by user {user.id}")

    # ========================================================================
    # PRIVATE HELPERS
    # ========================================================================

    async def _owned_link(self, link_id: int, user: User) -> CachedLinkPayload:
        link = await self._store.find_link_by_id(link_id)
        if link is None or (link.user_id != user.id and not self.is_admin(user)):
            raise NotFoundError()
        return link

    async def _insert_generated(self, fields: dict) -> CachedLinkPayload:
        retries = self._settings.LINK_GENERATION_MAX_RETRIES
        for attempt in range(1, retries + 1):
            address = generate_address(self._settings.LINK_LENGTH)
            if address.lower() in RESERVED_ADDRESSES:
                continue
            try:
                return await self._store.insert_link({**fields, "address": address})
            except AddressConflictError:
                ADDRESS_COLLISIONS_TOTAL.inc()
                self._logger.debug(f"Generated address {address} collided (attempt {attempt}/{retries})")
        raise GenerationExhaustedError()

    async def _check_anonymous(self, payload: LinkCreate, ip: str | None) -> None:
        if self._settings.DISALLOW_ANONYMOUS_LINKS:
            raise AuthenticationError("You need to log in to create links.")
        if payload.address or payload.domain:
            raise AuthenticationError("Only users can use custom addresses and domains.")
        if payload.password and not self._settings.ALLOW_ANONYMOUS_PASSWORDS:
            raise AuthenticationError("Only users can protect links with a password.")
        if not await self._captcha.verify(payload.captcha_token, ip):
            raise ValidationFailedError("reCAPTCHA is not valid. Try again.")
        window = self._settings.NON_USER_COOLDOWN
        if ip and window > 0 and await self._cooldowns.is_in_cooldown(ip, window):
            raise RateLimitedError(f"Non-logged in users are limited. Wait {window} minutes or log in.")

    async def _check_daily_limit(self, user: User) -> None:
        limit = self._settings.USER_LIMIT_PER_DAY
        if limit <= 0:
            return
        since = self._clock() - datetime.timedelta(days=1)
        if await self._store.count_links_since(user.id, since) >= limit:
            raise RateLimitedError(f"You have reached your daily limit ({limit}). Please wait 24h.")

    async def _check_target(self, target: str, user: User | None) -> None:
        host = (urlparse(target).hostname or "").lower()
        if not host:
            raise ValidationFailedError("Target URL has no host.")
        if host == split_host(self._settings.DEFAULT_DOMAIN):
            raise ValidationFailedError(f"{self._settings.DEFAULT_DOMAIN} URLs are not allowed.")

        banned_host = await self._store.find_host(host)
        if banned_host is not None and banned_host.banned:
            self._logger.info(f"Target host {host} is banned")
        elif self._safe_browsing is not None and await self._safe_browsing.is_malicious(target):
            self._logger.warning(f"Target {target} flagged by Safe Browsing")
        else:
            return

        if user is not None:
            window = datetime.timedelta(hours=self._settings.USER_COOLDOWN_WINDOW_HOURS)
            strikes = await self._store.add_user_cooldown(user.id, self._clock(), window)
            if strikes >= self._settings.USER_COOLDOWN_LIMIT:
                await self._store.ban_user(user.id)
                await self._cache.invalidate_many(await self._store.link_keys(user_id=user.id))
                self._logger.warning(f"User {user.id} banned after {strikes} malicious submissions")
        raise BannedError("URL is containing malware/scam.")

    async def _resolve_domain(self, address: str | None, user: User | None) -> Domain | None:
        if not address or split_host(address) == split_host(self._settings.DEFAULT_DOMAIN):
            return None
        assert user is not None, "anonymous requests cannot reach domain resolution"
        domain = await self._store.find_domain_for_user(user.id, address)
        if domain is None:
            raise ValidationFailedError("You can't use this domain.")
        if domain.banned:
            raise BannedError("This domain has been banned.")
        return domain

    def _check_expiry(self, expire_in: datetime.datetime | None) -> datetime.datetime | None:
        if expire_in is None:
            return None
        expire_in = as_utc(expire_in)
        if expire_in < self._clock() + MIN_EXPIRY:
            raise ValidationFailedError("Expire time should be more than 1 minute.")
        return expire_in
