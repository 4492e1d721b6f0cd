"""Visit classification and aggregation.

Flow Diagram — one successful redirect
======================================
::
    ┌──────────────┐
    │ resolver     │
    │ Redirect     │
    └──────┬───────┘
           ▼ dispatch(), not awaited by the request
    ┌──────────────┐
    │ VisitDispatch│  independent asyncio task,
    │ task         │  errors logged and swallowed
    └──────┬───────┘
           ▼
    ┌──────────────┐   user-agents parser
    │ classify     │── browser bucket, OS bucket
    │ request      │── referrer host (urlparse)
    └──────┬───────┘── country (GeoResolver)
           ▼
    ┌──────────────┐
    │ store.       │  single transaction,
    │ increment_   │  SQL-side increments
    │ visit()      │
    └──────────────┘

How to Use
===========
**Step 1 — Build the aggregator once**::
    aggregator = VisitAggregator(store, HeaderGeoResolver(), max_keys=100)
    dispatcher = VisitDispatcher(aggregator)

**Step 2 — Fire from the request path**::
    dispatcher.dispatch(link.id, RequestMeta(ip=ip, user_agent=ua))

**Step 3 — Drain on shutdown**::
    await dispatcher.drain()

Key Behaviours
===============
- Every visit lands in exactly one browser and one OS bucket; unmatched
  user agents count as ``other``.
- Unresolvable countries and missing referrers are omitted from their maps
  but the visit still counts towards ``total``.
- Delivery is at-most-once: a failed or abandoned recording is never retried,
  so counts may undercount but never overcount.
"""

import asyncio
import ipaddress
import logging
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import urlparse

import httpx
from prometheus_client import Counter
from user_agents import parse as parse_ua

from shortlink.enums import Browser, OperatingSystem
from shortlink.store import LinkStore, VisitDelta

__all__ = [
    "GeoResolver",
    "HeaderGeoResolver",
    "HttpGeoResolver",
    "RequestMeta",
    "VisitAggregator",
    "VisitDispatcher",
    "classify_browser",
    "classify_os",
    "referrer_host",
]

VISITS_RECORDED_TOTAL = Counter(
    "shortlink_visits_recorded_total",
    "Visits applied to link statistics",
)
VISIT_FAILURES_TOTAL = Counter(
    "shortlink_visit_failures_total",
    "Visit recordings that failed and were dropped",
)

LINUX_FAMILIES = {"linux", "ubuntu", "debian", "fedora", "red hat", "suse", "opensuse", "gentoo", "arch linux", "mint"}


@dataclass(frozen=True)
class RequestMeta:
    ip: str | None = None
    user_agent: str | None = None
    referrer: str | None = None
    # Country code already resolved by an edge proxy, if any.
    country_hint: str | None = None


def classify_browser(user_agent: str | None) -> Browser:
    if not user_agent:
        return Browser.OTHER
    family = parse_ua(user_agent).browser.family.lower()
    if "edge" in family:
        return Browser.EDGE
    if "opera" in family:
        return Browser.OPERA
    if family in ("ie", "ie mobile"):
        return Browser.IE
    if "firefox" in family:
        return Browser.FIREFOX
    if "chrom" in family:
        return Browser.CHROME
    if "safari" in family:
        return Browser.SAFARI
    return Browser.OTHER


def classify_os(user_agent: str | None) -> OperatingSystem:
    if not user_agent:
        return OperatingSystem.OTHER
    family = parse_ua(user_agent).os.family.lower()
    if family == "android":
        return OperatingSystem.ANDROID
    if family == "ios":
        return OperatingSystem.IOS
    if family in ("mac os x", "macos"):
        return OperatingSystem.MACOS
    if family.startswith("windows"):
        return OperatingSystem.WINDOWS
    if family in LINUX_FAMILIES or "linux" in family:
        return OperatingSystem.LINUX
    return OperatingSystem.OTHER


def referrer_host(referrer: str | None) -> str | None:
    if not referrer:
        return None
    try:
        host = urlparse(referrer.strip()).hostname
    except ValueError:
        return None
    return host or None


def _normalize_country(value: str | None) -> str | None:
    if not value:
        return None
    value = value.strip().upper()
    if len(value) != 2 or not value.isalpha() or value == "XX":
        return None
    return value


def _is_public(ip: str | None) -> bool:
    if not ip:
        return False
    try:
        return ipaddress.ip_address(ip).is_global
    except ValueError:
        return False


class GeoResolver(Protocol):
    async def country_for(self, meta: RequestMeta) -> str | None: ...


class HeaderGeoResolver:
    """Trusts the country code an edge proxy put on the request."""

    async def country_for(self, meta: RequestMeta) -> str | None:
        return _normalize_country(meta.country_hint)


class HttpGeoResolver:
    """Looks the source address up against an HTTP geolocation service.

    The service is expected to answer ``GET {base_url}/{ip}`` with a JSON body
    holding ``country_code`` (or ``country``). Edge-provided hints win.
    """

    def __init__(self, base_url: str, client: httpx.AsyncClient, logger: logging.Logger | None = None):
        self._base_url = base_url.rstrip("/")
        self._client = client
        self._logger = logger or logging.getLogger("shortlink.geo")

    async def country_for(self, meta: RequestMeta) -> str | None:
        hinted = _normalize_country(meta.country_hint)
        if hinted or not _is_public(meta.ip):
            return hinted
        try:
            response = await self._client.get(f"{self._base_url}/{meta.ip}")
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            self._logger.debug(f"Geo lookup failed for {meta.ip}: {exc}")
            return None
        return _normalize_country(payload.get("country_code") or payload.get("country"))


class VisitAggregator:
    def __init__(
        self,
        store: LinkStore,
        geo: GeoResolver,
        max_keys: int,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        self._store = store
        self._geo = geo
        self._max_keys = max_keys
        self._logger = logger or logging.getLogger("shortlink.visits")

    async def classify(self, meta: RequestMeta) -> VisitDelta:
        return VisitDelta(
            browser=classify_browser(meta.user_agent),
            os=classify_os(meta.user_agent),
            country=await self._geo.country_for(meta),
            referrer=referrer_host(meta.referrer),
        )

    async def record(self, link_id: int, meta: RequestMeta) -> None:
        delta = await self.classify(meta)
        await self._store.increment_visit(link_id, delta, self._max_keys)
        VISITS_RECORDED_TOTAL.inc()
        self._logger.debug(f"Visit recorded for link {link_id}: {delta}")


class VisitDispatcher:
    """Runs visit recordings as detached tasks so redirects never wait on them."""

    def __init__(self, aggregator: VisitAggregator, logger: logging.Logger | None = None):
        self._aggregator = aggregator
        self._logger = logger or logging.getLogger("shortlink.visits")
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(self, link_id: int, meta: RequestMeta) -> None:
        task = asyncio.create_task(self._record(link_id, meta))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _record(self, link_id: int, meta: RequestMeta) -> None:
        try:
            await self._aggregator.record(link_id, meta)
        except Exception as exc:
            VISIT_FAILURES_TOTAL.inc()
            self._logger.error(f"Visit recording failed for link {link_id}: {exc}")

    async def drain(self, timeout: float | None = None) -> None:
        if not self._tasks:
            return
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            self._logger.warning(f"Abandoned {len(pending)} visit recordings on drain")
