"""End-to-end tests through the HTTP API with the in-process worker."""

import pytest
from httpx import AsyncClient

from shortlinks.worker import ClickWorker

ALICE = {"X-User-Id": "alice"}
BOB = {"X-User-Id": "bob"}
ADMIN = {"X-User-Id": "root", "X-User-Role": "admin"}
BROWSER = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Referer": "https://twitter.com/",
}


async def create(client: AsyncClient, headers: dict | None = None, **body) -> dict:
    body.setdefault("url", "https://example.com/landing")
    response = await client.post("/api/links", json=body, headers=headers or ALICE)
    assert response.status_code == 201, response.text
    return response.json()


async def visit(client: AsyncClient, worker: ClickWorker, code: str, **params):
    response = await client.get(f"/{code}", params=params, headers=BROWSER, follow_redirects=False)
    await worker.process_stream_batch()
    return response


@pytest.mark.asyncio
async def test_health(client: AsyncClient) -> None:
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "database": "healthy", "cache": "healthy"}


@pytest.mark.asyncio
async def test_create_redirect_and_count(client: AsyncClient, worker: ClickWorker) -> None:
    link = await create(client, title="Landing")
    code = link["short_code"]
    assert len(code) == 6
    assert link["short_url"] == f"http://sho.rt/{code}"
    assert link["owner_id"] == "alice"
    assert link["has_password"] is False

    response = await visit(client, worker, code)
    assert response.status_code == 302
    assert response.headers["location"] == "https://example.com/landing"

    stored = (await client.get(f"/api/links/{link['id']}", headers=ALICE)).json()
    assert stored["click_count"] == 1

    overview = (await client.get(f"/api/analytics/{code}/overview", headers=ALICE)).json()
    assert overview["total_clicks"] == 1
    assert overview["top_country"] == "ID"
    assert overview["top_browser"] == "Chrome"

    referrers = (await client.get(f"/api/analytics/{code}/referrers", headers=ALICE)).json()
    assert referrers["referrers"] == [{"referer": "https://twitter.com/", "clicks": 1}]


@pytest.mark.asyncio
async def test_unknown_code(client: AsyncClient) -> None:
    response = await client.get("/zzzzzz", follow_redirects=False)
    assert response.status_code == 404
    body = response.json()
    assert body["error"] == "NotFound"
    assert body["short_code"] == "zzzzzz"


@pytest.mark.asyncio
async def test_custom_alias_conflict(client: AsyncClient) -> None:
    link = await create(client, customAlias="Promo")
    assert link["short_code"] == "promo"
    assert link["is_custom_alias"] is True

    response = await client.post(
        "/api/links", json={"url": "https://other.example.com", "customAlias": "promo"}, headers=BOB
    )
    assert response.status_code == 409
    assert response.json()["error"] == "Conflict"


@pytest.mark.asyncio
async def test_create_accepts_camel_case_body(client: AsyncClient) -> None:
    response = await client.post(
        "/api/links",
        json={"originalUrl": "https://example.com/camel", "customAlias": "camel", "maxClicks": 5},
        headers=ALICE,
    )
    assert response.status_code == 201, response.text
    link = response.json()
    assert link["destination_url"] == "https://example.com/camel"
    assert link["short_code"] == "camel"
    assert link["max_clicks"] == 5


@pytest.mark.asyncio
async def test_reserved_alias_and_bad_destinations(client: AsyncClient) -> None:
    for body in (
        {"url": "https://example.com", "customAlias": "docs"},
        {"url": "ftp://example.com/file"},
        {"url": "http://localhost:8080/"},
        {"url": "http://10.1.2.3/"},
        {"url": "https://example.com", "customAlias": "a!"},
        {"url": "https://example.com", "maxClicks": 0},
        {},
    ):
        response = await client.post("/api/links", json=body, headers=ALICE)
        assert response.status_code == 400, body
        assert response.json()["error"] == "ValidationError"


@pytest.mark.asyncio
async def test_quota_exhaustion(client: AsyncClient, worker: ClickWorker) -> None:
    link = await create(client, maxClicks=3)
    code = link["short_code"]

    for _ in range(3):
        assert (await visit(client, worker, code)).status_code == 302

    response = await visit(client, worker, code)
    assert response.status_code == 400
    assert response.json()["reason"] == "QuotaExceeded"
    assert (await client.get(f"/api/links/{link['id']}", headers=ALICE)).json()["click_count"] == 3


@pytest.mark.asyncio
async def test_password_protected_link(client: AsyncClient, worker: ClickWorker) -> None:
    link = await create(client, password="hunter22")
    code = link["short_code"]
    assert link["has_password"] is True

    missing = await visit(client, worker, code)
    assert missing.status_code == 400
    assert missing.json()["reason"] == "PasswordRequired"

    wrong = await visit(client, worker, code, password="hunter23")
    assert wrong.status_code == 400
    assert wrong.json()["reason"] == "PasswordMismatch"

    right = await visit(client, worker, code, password="hunter22")
    assert right.status_code == 302


@pytest.mark.asyncio
async def test_deactivate_then_delete(client: AsyncClient, worker: ClickWorker) -> None:
    link = await create(client, customAlias="spring-sale")
    assert (await visit(client, worker, "spring-sale")).status_code == 302

    patched = await client.patch(f"/api/links/{link['id']}", json={"isActive": False}, headers=ALICE)
    assert patched.status_code == 200
    assert patched.json()["is_active"] is False

    response = await visit(client, worker, "spring-sale")
    assert response.status_code == 400
    assert response.json()["reason"] == "Deactivated"

    assert (await client.delete(f"/api/links/{link['id']}", headers=ALICE)).status_code == 204

    response = await visit(client, worker, "spring-sale")
    assert response.status_code == 404
    assert response.json()["reason"] == "Gone"
    assert (await client.get(f"/api/links/{link['id']}", headers=ALICE)).status_code == 404
    assert (await client.get("/api/analytics/spring-sale/overview", headers=ALICE)).status_code == 404

    again = await client.post(
        "/api/links", json={"url": "https://example.com", "customAlias": "spring-sale"}, headers=ALICE
    )
    assert again.status_code == 409


@pytest.mark.asyncio
async def test_bulk_create(client: AsyncClient) -> None:
    await create(client, customAlias="taken")

    response = await client.post(
        "/api/links/bulk",
        json={
            "links": [
                {"url": "https://a.example.com"},
                {"url": "https://b.example.com", "customAlias": "promo"},
                {"url": "https://c.example.com", "customAlias": "taken"},
            ]
        },
        headers=ALICE,
    )

    assert response.status_code == 201
    body = response.json()
    assert body["created"] == 2
    assert body["skipped"] == 1
    assert body["skipped_items"][0]["index"] == 2
    assert [link["short_code"] for link in body["links"]][1] == "promo"


@pytest.mark.asyncio
async def test_ownership(client: AsyncClient) -> None:
    link = await create(client)

    assert (await client.get(f"/api/links/{link['id']}", headers=BOB)).status_code == 403
    assert (await client.patch(f"/api/links/{link['id']}", json={"title": "x"}, headers=BOB)).status_code == 403
    assert (await client.delete(f"/api/links/{link['id']}", headers=BOB)).status_code == 403
    assert (await client.get(f"/api/analytics/{link['short_code']}/devices", headers=BOB)).status_code == 403
    assert (await client.get(f"/api/links/{link['id']}", headers=ADMIN)).status_code == 200


@pytest.mark.asyncio
async def test_list_links(client: AsyncClient) -> None:
    await create(client)
    await create(client)
    await create(client, headers=BOB)

    assert (await client.get("/api/links")).status_code == 403

    mine = (await client.get("/api/links", params={"limit": 1}, headers=ALICE)).json()
    assert mine["total"] == 2
    assert len(mine["items"]) == 1

    everything = (await client.get("/api/links", headers=ADMIN)).json()
    assert everything["total"] == 3


@pytest.mark.asyncio
async def test_analytics_endpoints(client: AsyncClient, worker: ClickWorker) -> None:
    link = await create(client)
    code = link["short_code"]
    await visit(client, worker, code)
    await visit(client, worker, code)

    timeline = (await client.get(f"/api/analytics/{code}/timeline", params={"interval": "hour"}, headers=ALICE)).json()
    assert timeline["interval"] == "hour"
    assert timeline["total_clicks"] == 2

    locations = (await client.get(f"/api/analytics/{code}/locations", headers=ALICE)).json()
    assert locations["countries"][0] == {
        "country_code": "ID",
        "country": "Indonesia",
        "clicks": 2,
        "percentage": 100.0,
    }
    assert locations["cities"][0]["city"] == "Surabaya"

    devices = (await client.get(f"/api/analytics/{code}/devices", headers=ALICE)).json()
    assert devices["by_type"][0]["device_type"] == "desktop"

    heatmap = (await client.get(f"/api/analytics/{code}/heatmap", headers=ALICE)).json()
    assert sum(cell["clicks"] for cell in heatmap["cells"]) == 2

    export = await client.get(f"/api/analytics/{code}/export", headers=ALICE)
    assert export.status_code == 200
    assert export.headers["content-type"].startswith("text/csv")
    assert export.headers["content-disposition"] == f'attachment; filename="{code}-clicks.csv"'
    assert len(export.text.strip().splitlines()) == 3


@pytest.mark.asyncio
async def test_redirect_survives_cache_outage(client: AsyncClient, fake_redis) -> None:
    link = await create(client)
    fake_redis.fail = True

    response = await client.get(f"/{link['short_code']}", follow_redirects=False)

    assert response.status_code == 302
    assert response.headers["location"] == "https://example.com/landing"


@pytest.mark.asyncio
async def test_past_expiry_is_rejected(client: AsyncClient) -> None:
    response = await client.post(
        "/api/links",
        json={"url": "https://example.com", "expiresAt": "2000-01-01T00:00:00Z"},
        headers=ALICE,
    )
    assert response.status_code == 400
    assert response.json()["error"] == "ValidationError"


@pytest.mark.asyncio
async def test_future_expiry_redirects(client: AsyncClient, worker: ClickWorker) -> None:
    link = await create(client, expiresAt="2999-01-01T00:00:00Z")
    assert link["expires_at"].startswith("2999-01-01")
    assert (await visit(client, worker, link["short_code"])).status_code == 302
