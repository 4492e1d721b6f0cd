"""Visit classification, aggregation and dispatch tests."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from shortlink.enums import Browser, OperatingSystem
from shortlink.store import LinkStore, VisitDelta
from shortlink.visits import (
    HeaderGeoResolver,
    HttpGeoResolver,
    RequestMeta,
    VisitAggregator,
    VisitDispatcher,
    classify_browser,
    classify_os,
    referrer_host,
)

CHROME_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
FIREFOX_LINUX = "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0"
SAFARI_IPHONE = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
SAFARI_MAC = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.1 Safari/605.1.15"
)
EDGE_WINDOWS = CHROME_WINDOWS + " Edg/120.0.0.0"
OPERA_WINDOWS = CHROME_WINDOWS + " OPR/105.0.0.0"
IE_WINDOWS = "Mozilla/5.0 (Windows NT 10.0; Trident/7.0; rv:11.0) like Gecko"
CHROME_ANDROID = (
    "Mozilla/5.0 (Linux; Android 13; Pixel 7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36"
)


async def _new_link(store: LinkStore, address: str = "abc123") -> int:
    link = await store.insert_link({"address": address, "target": "https://example.com"})
    return link.id


# ============================================================================
# CLASSIFICATION
# ============================================================================


@pytest.mark.parametrize(
    "user_agent, browser, os",
    [
        (CHROME_WINDOWS, Browser.CHROME, OperatingSystem.WINDOWS),
        (FIREFOX_LINUX, Browser.FIREFOX, OperatingSystem.LINUX),
        (SAFARI_IPHONE, Browser.SAFARI, OperatingSystem.IOS),
        (SAFARI_MAC, Browser.SAFARI, OperatingSystem.MACOS),
        (EDGE_WINDOWS, Browser.EDGE, OperatingSystem.WINDOWS),
        (OPERA_WINDOWS, Browser.OPERA, OperatingSystem.WINDOWS),
        (IE_WINDOWS, Browser.IE, OperatingSystem.WINDOWS),
        (CHROME_ANDROID, Browser.CHROME, OperatingSystem.ANDROID),
        ("curl/8.4.0", Browser.OTHER, OperatingSystem.OTHER),
        (None, Browser.OTHER, OperatingSystem.OTHER),
    ],
)
def test_classify_user_agent(user_agent, browser, os) -> None:
    assert classify_browser(user_agent) is browser
    assert classify_os(user_agent) is os


@pytest.mark.parametrize(
    "referrer, expected",
    [
        ("https://news.ycombinator.com/item?id=1", "news.ycombinator.com"),
        ("http://Example.COM:8080/path", "example.com"),
        ("not a url", None),
        ("", None),
        (None, None),
    ],
)
def test_referrer_host(referrer, expected) -> None:
    assert referrer_host(referrer) == expected


@pytest.mark.asyncio
@pytest.mark.parametrize("hint, expected", [("de", "DE"), ("XX", None), ("T1", None), (None, None)])
async def test_header_geo_resolver(hint, expected) -> None:
    assert await HeaderGeoResolver().country_for(RequestMeta(country_hint=hint)) == expected


@pytest.mark.asyncio
async def test_http_geo_resolver_looks_up_public_addresses() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/8.8.8.8"
        return httpx.Response(200, json={"country_code": "us"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        geo = HttpGeoResolver("http://geo.internal/", client)
        assert await geo.country_for(RequestMeta(ip="8.8.8.8")) == "US"


@pytest.mark.asyncio
async def test_http_geo_resolver_skips_private_and_failures() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(503)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        geo = HttpGeoResolver("http://geo.internal", client)
        assert await geo.country_for(RequestMeta(ip="10.0.0.1")) is None
        assert await geo.country_for(RequestMeta(ip="127.0.0.1")) is None
        assert await geo.country_for(RequestMeta(ip="8.8.8.8", country_hint="fr")) == "FR"
        assert calls == []

        assert await geo.country_for(RequestMeta(ip="8.8.8.8")) is None
        assert len(calls) == 1


# ============================================================================
# AGGREGATION
# ============================================================================


@pytest.mark.asyncio
async def test_record_updates_every_bucket(store: LinkStore) -> None:
    link_id = await _new_link(store)
    aggregator = VisitAggregator(store, HeaderGeoResolver(), max_keys=100)

    await aggregator.record(
        link_id,
        RequestMeta(user_agent=CHROME_WINDOWS, referrer="https://t.co/x", country_hint="DE"),
    )
    await aggregator.record(link_id, RequestMeta(user_agent=FIREFOX_LINUX, country_hint="DE"))

    stats = await store.get_visit_stats(link_id)
    assert stats.total == 2
    assert stats.browser["chrome"] == 1
    assert stats.browser["firefox"] == 1
    assert stats.os["windows"] == 1
    assert stats.os["linux"] == 1
    assert stats.country == {"DE": 2}
    assert stats.referrer == {"t.co": 1}

    link = await store.find_link_by_id(link_id)
    assert link.visit_count == 2


@pytest.mark.asyncio
async def test_bucket_sums_match_total(store: LinkStore) -> None:
    link_id = await _new_link(store)
    aggregator = VisitAggregator(store, HeaderGeoResolver(), max_keys=100)

    for user_agent in (CHROME_WINDOWS, SAFARI_IPHONE, "curl/8.4.0", None, EDGE_WINDOWS):
        await aggregator.record(link_id, RequestMeta(user_agent=user_agent))

    stats = await store.get_visit_stats(link_id)
    assert stats.total == 5
    assert sum(stats.browser.values()) == 5
    assert sum(stats.os.values()) == 5
    assert stats.country == {}
    assert stats.referrer == {}


@pytest.mark.asyncio
async def test_key_cap_ignores_new_keys_but_counts_existing(store: LinkStore) -> None:
    link_id = await _new_link(store)

    for host in ("a.example", "b.example", "c.example", "a.example"):
        await store.increment_visit(
            link_id,
            VisitDelta(browser=Browser.OTHER, os=OperatingSystem.OTHER, referrer=host),
            max_keys=2,
        )

    stats = await store.get_visit_stats(link_id)
    assert stats.total == 4
    assert stats.referrer == {"a.example": 2, "b.example": 1}


@pytest.mark.asyncio
async def test_concurrent_records_lose_no_updates(store: LinkStore) -> None:
    link_id = await _new_link(store)
    aggregator = VisitAggregator(store, HeaderGeoResolver(), max_keys=100)
    k = 20

    await asyncio.gather(
        *(aggregator.record(link_id, RequestMeta(user_agent=CHROME_WINDOWS, country_hint="NL")) for _ in range(k))
    )

    stats = await store.get_visit_stats(link_id)
    assert stats.total == k
    assert stats.browser["chrome"] == k
    assert stats.country == {"NL": k}
    assert (await store.find_link_by_id(link_id)).visit_count == k


# ============================================================================
# DISPATCH
# ============================================================================


@pytest.mark.asyncio
async def test_dispatch_does_not_block_and_drains(store: LinkStore) -> None:
    link_id = await _new_link(store)
    dispatcher = VisitDispatcher(VisitAggregator(store, HeaderGeoResolver(), max_keys=100))

    for _ in range(3):
        dispatcher.dispatch(link_id, RequestMeta(user_agent=CHROME_WINDOWS))
    assert dispatcher.pending == 3

    await dispatcher.drain()

    assert dispatcher.pending == 0
    assert (await store.get_visit_stats(link_id)).total == 3


@pytest.mark.asyncio
async def test_dispatch_swallows_failures() -> None:
    aggregator = AsyncMock(spec=VisitAggregator)
    aggregator.record = AsyncMock(side_effect=RuntimeError("store down"))
    logger = MagicMock()
    dispatcher = VisitDispatcher(aggregator, logger=logger)

    dispatcher.dispatch(1, RequestMeta())
    await dispatcher.drain()

    aggregator.record.assert_awaited_once()
    logger.error.assert_called_once()


@pytest.mark.asyncio
async def test_drain_abandons_slow_recordings() -> None:
    gate = asyncio.Event()

    async def slow_record(link_id: int, meta: RequestMeta) -> None:
        await gate.wait()

    aggregator = AsyncMock(spec=VisitAggregator)
    aggregator.record = AsyncMock(side_effect=slow_record)
    dispatcher = VisitDispatcher(aggregator)

    dispatcher.dispatch(1, RequestMeta())
    await dispatcher.drain(timeout=0.01)
    await asyncio.sleep(0.01)

    assert dispatcher.pending == 0
