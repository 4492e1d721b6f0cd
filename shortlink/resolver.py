"""Request-time resolution of a short address into a redirect outcome.

State Machine
=============
::
    (host, address)
          │
          ▼
    ┌──────────────┐ unknown host ─────────────► NotFound
    │ DomainLookup │ banned domain ────────────► Banned(domain)
    │ (custom host)│ empty address + homepage ─► ExternalRedirect
    └──────┬───────┘
           ▼
    ┌──────────────┐ cache ─► store ─► cache.set
    │ LinkLookup   │ miss ─────────────────────► NotFound
    └──────┬───────┘
           ▼
    ┌──────────────┐ link / owner / domain ────► Banned(reason)
    │ BanCheck     │
    └──────┬───────┘
           ▼
    ┌──────────────┐ expire_in in the past ────► Expired
    │ ExpiryCheck  │
    └──────┬───────┘
           ▼
    ┌──────────────┐ no / wrong password ──────► PasswordRequired
    │ PasswordCheck│
    └──────┬───────┘
           ▼
    Redirect(target)  + VisitDispatcher.dispatch()  (not awaited)

Key Behaviours
===============
- Outcomes are plain values, not exceptions; callers match on their type.
- Banned content never reaches the password prompt, and the visit is only
  dispatched once every gate has passed.
- ``Expired`` renders exactly like ``NotFound`` but is logged and counted
  separately.
"""

import logging
import time
from dataclasses import dataclass
from typing import ClassVar

from prometheus_client import Counter, Histogram

from shortlink.cache import LinkCache
from shortlink.clock import Clock, utcnow
from shortlink.enums import BanReason, OutcomeKind
from shortlink.models import Domain
from shortlink.schemas import CachedLinkPayload
from shortlink.security import check_password
from shortlink.store import LinkStore
from shortlink.visits import RequestMeta, VisitDispatcher

__all__ = [
    "Banned",
    "Expired",
    "ExternalRedirect",
    "NotFound",
    "Outcome",
    "PasswordRequired",
    "Redirect",
    "RedirectResolver",
    "split_host",
]

RESOLUTIONS_TOTAL = Counter(
    "shortlink_resolutions_total",
    "Redirect resolutions by outcome",
    ["outcome"],
)
RESOLUTION_DURATION = Histogram(
    "shortlink_resolution_duration_seconds",
    "Time taken to resolve a short address",
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5],
)


@dataclass(frozen=True)
class Redirect:
    kind: ClassVar[OutcomeKind] = OutcomeKind.REDIRECT
    target: str
    link_id: int


@dataclass(frozen=True)
class ExternalRedirect:
    kind: ClassVar[OutcomeKind] = OutcomeKind.EXTERNAL_REDIRECT
    target: str


@dataclass(frozen=True)
class PasswordRequired:
    kind: ClassVar[OutcomeKind] = OutcomeKind.PASSWORD_REQUIRED
    address: str
    link_id: int
    mismatch: bool = False


@dataclass(frozen=True)
class Banned:
    kind: ClassVar[OutcomeKind] = OutcomeKind.BANNED
    reason: BanReason


@dataclass(frozen=True)
class NotFound:
    kind: ClassVar[OutcomeKind] = OutcomeKind.NOT_FOUND


@dataclass(frozen=True)
class Expired:
    kind: ClassVar[OutcomeKind] = OutcomeKind.EXPIRED
    link_id: int


Outcome = Redirect | ExternalRedirect | PasswordRequired | Banned | NotFound | Expired


def split_host(host: str | None) -> str:
    """Lower-case a Host header value and drop its port."""
    if not host:
        return ""
    host = host.strip().lower()
    if host.startswith("["):
        return host.split("]")[0] + "]"
    return host.rsplit(":", 1)[0] if host.count(":") == 1 else host


class RedirectResolver:
    def __init__(
        self,
        store: LinkStore,
        cache: LinkCache,
        dispatcher: VisitDispatcher,
        default_domain: str,
        clock: Clock = utcnow,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        self._store = store
        self._cache = cache
        self._dispatcher = dispatcher
        self._default_host = split_host(default_domain)
        self._clock = clock
        self._logger = logger or logging.getLogger("shortlink.resolver")

    def is_default_host(self, host: str | None) -> bool:
        host = split_host(host)
        return not host or host == self._default_host

    async def resolve(
        self,
        host: str | None,
        address: str,
        meta: RequestMeta,
        password: str | None = None,
    ) -> Outcome:
        start_time = time.perf_counter()
        outcome = await self._resolve(split_host(host), address, meta, password)
        RESOLUTION_DURATION.observe(time.perf_counter() - start_time)
        RESOLUTIONS_TOTAL.labels(outcome=outcome.kind.value).inc()
        return outcome

    async def _resolve(self, host: str, address: str, meta: RequestMeta, password: str | None) -> Outcome:
        domain: Domain | None = None
        if not self.is_default_host(host):
            domain = await self._store.find_domain_by_host(host)
            if domain is None:
                self._logger.info(f"Unknown custom domain: {host}")
                return NotFound()
            if domain.banned:
                return Banned(BanReason.DOMAIN)
            if not address and domain.homepage:
                return ExternalRedirect(domain.homepage)

        if not address:
            return NotFound()

        link = await self._lookup(domain, address)
        if link is None:
            return NotFound()

        if link.banned:
            return Banned(BanReason.LINK)
        if link.owner_banned:
            return Banned(BanReason.OWNER)
        if link.domain_banned:
            return Banned(BanReason.DOMAIN)

        if link.expire_in is not None and link.expire_in <= self._clock():
            self._logger.info(f"Expired link requested: {address} (id={link.id}, expired {link.expire_in.isoformat()})")
            return Expired(link.id)

        if link.password:
            if password is None:
                return PasswordRequired(address, link.id)
            if not await check_password(password, link.password):
                self._logger.info(f"Password mismatch for link {link.id}")
                return PasswordRequired(address, link.id, mismatch=True)

        self._dispatcher.dispatch(link.id, meta)
        return Redirect(link.target, link.id)

    async def _lookup(self, domain: Domain | None, address: str) -> CachedLinkPayload | None:
        domain_address = domain.address if domain else None
        cached = await self._cache.get(domain_address, address)
        if cached is not None:
            return cached

        link = await self._store.find_link(domain.id if domain else None, address)
        if link is not None:
            await self._cache.set(domain_address, address, link)
        return link
