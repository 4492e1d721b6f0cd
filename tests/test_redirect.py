"""Redirect endpoint behavior tests, end to end through the ASGI app."""

import datetime

import pytest
from httpx import AsyncClient

from shortlink.dependencies import ServiceManager
from shortlink.store import LinkStore

CHROME = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


async def _stats(client: AsyncClient, manager: ServiceManager, link_id: int, apikey: str) -> dict:
    await manager.dispatcher.drain()
    response = await client.get(f"/api/v2/links/{link_id}/stats", headers={"X-API-KEY": apikey})
    assert response.status_code == 200
    return response.json()


@pytest.mark.asyncio
async def test_anonymous_link_redirects_and_counts(client: AsyncClient, manager: ServiceManager, store: LinkStore) -> None:
    create_resp = await client.post("/api/v2/links", json={"target": "https://example.com"})
    assert create_resp.status_code == 201
    address = create_resp.json()["address"]
    assert len(address) == 6

    response = await client.get(
        f"/{address}",
        headers={"User-Agent": CHROME, "Referer": "https://news.example/post", "cf-ipcountry": "SE"},
        follow_redirects=False,
    )
    assert response.status_code == 307
    assert response.headers["location"] == "https://example.com"

    await manager.dispatcher.drain()
    link = await store.find_link(None, address)
    stats = await store.get_visit_stats(link.id)
    assert stats.total == 1
    assert stats.browser["chrome"] == 1
    assert stats.os["windows"] == 1
    assert stats.country == {"SE": 1}
    assert stats.referrer == {"news.example": 1}
    assert link.visit_count == 1


@pytest.mark.asyncio
async def test_redirect_unknown_address(client: AsyncClient) -> None:
    response = await client.get("/nonexistent", follow_redirects=False)
    assert response.status_code == 404
    assert response.json() == {"status": "not_found", "address": "nonexistent"}


@pytest.mark.asyncio
async def test_root_on_default_domain_is_not_found(client: AsyncClient) -> None:
    response = await client.get("/", follow_redirects=False)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_password_protected_link(client: AsyncClient, manager: ServiceManager, user) -> None:
    headers = {"X-API-KEY": user.apikey}
    create_resp = await client.post(
        "/api/v2/links",
        json={"target": "https://secret.example.com", "password": "secret"},
        headers=headers,
    )
    assert create_resp.status_code == 201
    assert create_resp.json()["password"] is True
    link_id = create_resp.json()["id"]
    address = create_resp.json()["address"]

    response = await client.get(f"/{address}", follow_redirects=False)
    assert response.status_code == 401
    assert response.json() == {"status": "password_required", "address": address}
    assert "secret.example.com" not in response.text

    wrong = await client.post(f"/{address}/protected", json={"password": "wrong"})
    assert wrong.status_code == 401
    assert wrong.json() == {"error": "Password is not correct."}

    right = await client.post(f"/{address}/protected", json={"password": "secret"})
    assert right.status_code == 200
    assert right.json() == {"target": "https://secret.example.com"}

    stats = await _stats(client, manager, link_id, user.apikey)
    assert stats["total"] == 1


@pytest.mark.asyncio
async def test_banned_owner_blocks_redirect(client: AsyncClient, store: LinkStore, user, admin) -> None:
    headers = {"X-API-KEY": user.apikey}
    flagged = await client.post("/api/v2/links", json={"target": "https://spam.example.com"}, headers=headers)
    innocent = await client.post("/api/v2/links", json={"target": "https://example.com"}, headers=headers)
    address = innocent.json()["address"]

    # Warm the cache so the ban has to invalidate it
    assert (await client.get(f"/{address}", follow_redirects=False)).status_code == 307

    ban = await client.post(
        f"/api/v2/links/{flagged.json()['id']}/ban",
        json={"user": True},
        headers={"X-API-KEY": admin.apikey},
    )
    assert ban.status_code == 200

    response = await client.get(f"/{address}", follow_redirects=False)
    assert response.status_code == 403
    assert response.json()["status"] == "banned"
    assert not (await store.find_link(None, address)).banned


@pytest.mark.asyncio
async def test_expired_link_is_not_found(
    client: AsyncClient, manager: ServiceManager, store: LinkStore, user
) -> None:
    headers = {"X-API-KEY": user.apikey}
    expire_in = (datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(hours=1)).isoformat()
    create_resp = await client.post(
        "/api/v2/links", json={"target": "https://example.com", "expire_in": expire_in}, headers=headers
    )
    assert create_resp.status_code == 201
    link_id = create_resp.json()["id"]
    address = create_resp.json()["address"]

    past = datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(minutes=1)
    await store.update_link(link_id, {"expire_in": past})
    await manager.cache.invalidate(None, address)

    response = await client.get(f"/{address}", follow_redirects=False)
    assert response.status_code == 404
    assert response.json()["status"] == "not_found"

    stats = await _stats(client, manager, link_id, user.apikey)
    assert stats["visit_count"] == 0
    assert stats["total"] == 0


@pytest.mark.asyncio
async def test_custom_domain_redirects(client: AsyncClient, user) -> None:
    headers = {"X-API-KEY": user.apikey}
    domain = await client.post(
        "/api/v2/domains",
        json={"address": "links.example.com", "homepage": "https://home.example.com"},
        headers=headers,
    )
    assert domain.status_code == 201

    create_resp = await client.post(
        "/api/v2/links",
        json={"target": "https://custom.example.com", "address": "promo", "domain": "links.example.com"},
        headers=headers,
    )
    assert create_resp.status_code == 201
    assert create_resp.json()["link"] == "http://links.example.com/promo"

    on_domain = await client.get("/promo", headers={"Host": "links.example.com"}, follow_redirects=False)
    assert on_domain.status_code == 307
    assert on_domain.headers["location"] == "https://custom.example.com"

    homepage = await client.get("/", headers={"Host": "links.example.com"}, follow_redirects=False)
    assert homepage.status_code == 307
    assert homepage.headers["location"] == "https://home.example.com"

    off_domain = await client.get("/promo", follow_redirects=False)
    assert off_domain.status_code == 404


@pytest.mark.asyncio
async def test_custom_domain_registered_with_port(client: AsyncClient, user) -> None:
    headers = {"X-API-KEY": user.apikey}
    domain = await client.post("/api/v2/domains", json={"address": "links.example.com:8443"}, headers=headers)
    assert domain.status_code == 201
    assert domain.json()["address"] == "links.example.com"

    create_resp = await client.post(
        "/api/v2/links",
        json={"target": "https://custom.example.com", "address": "p1", "domain": "links.example.com:8443"},
        headers=headers,
    )
    assert create_resp.status_code == 201

    response = await client.get("/p1", headers={"Host": "links.example.com:8443"}, follow_redirects=False)
    assert response.status_code == 307
    assert response.headers["location"] == "https://custom.example.com"


@pytest.mark.asyncio
async def test_redirect_after_edit_uses_new_target(client: AsyncClient, user) -> None:
    headers = {"X-API-KEY": user.apikey}
    create_resp = await client.post(
        "/api/v2/links", json={"target": "https://old.example.com", "address": "moving"}, headers=headers
    )
    await client.get("/moving", follow_redirects=False)

    edit = await client.patch(
        f"/api/v2/links/{create_resp.json()['id']}", json={"target": "https://new.example.com"}, headers=headers
    )
    assert edit.status_code == 200

    response = await client.get("/moving", follow_redirects=False)
    assert response.headers["location"] == "https://new.example.com"
