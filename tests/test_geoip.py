"""Geolocation tests: deterministic private-IP mapping, public lookups, failures."""

import asyncio
from types import SimpleNamespace

import geoip2.errors
import httpx
import pytest

from shortlinks.config import Settings
from shortlinks.geoip import MOCK_LOCATIONS, GeoIpResolver, normalize_ip


@pytest.fixture
def resolver(settings: Settings) -> GeoIpResolver:
    return GeoIpResolver(settings)


def api_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "ip,city",
    [
        ("10.0.0.5", "Jakarta"),
        ("127.0.0.1", "Surabaya"),
        ("192.168.1.2", "Bandung"),
        ("172.16.0.3", "Singapore"),
        ("10.1.1.4", "New York"),
        ("::ffff:10.0.0.5", "Jakarta"),
        ("fd00::1", "Surabaya"),
    ],
)
async def test_private_addresses_map_deterministically(resolver: GeoIpResolver, ip: str, city: str) -> None:
    first = await resolver.resolve(ip)
    second = await resolver.resolve(ip)
    assert first == second
    assert first.city == city
    assert first in MOCK_LOCATIONS


@pytest.mark.asyncio
async def test_private_addresses_unresolved_in_production(settings: Settings) -> None:
    production = settings.model_copy(update={"APP_ENV": "production"})
    assert await GeoIpResolver(production).resolve("10.0.0.5") is None


@pytest.mark.asyncio
@pytest.mark.parametrize("ip", [None, "", "not-an-ip", "999.1.1.1"])
async def test_invalid_input_is_none(resolver: GeoIpResolver, ip) -> None:
    assert await resolver.resolve(ip) is None


def test_normalize_ipv4_mapped() -> None:
    assert str(normalize_ip("::ffff:8.8.8.8")) == "8.8.8.8"
    assert normalize_ip("garbage") is None


@pytest.mark.asyncio
async def test_public_address_without_sources(resolver: GeoIpResolver) -> None:
    assert await resolver.resolve("8.8.8.8") is None


@pytest.mark.asyncio
async def test_public_address_via_api(settings: Settings) -> None:
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        return httpx.Response(
            200,
            json={
                "status": "success",
                "countryCode": "US",
                "city": "Mountain View",
                "lat": 37.4,
                "lon": -122.1,
                "timezone": "America/Los_Angeles",
            },
        )

    resolver = GeoIpResolver(settings, http_client=api_client(handler))
    location = await resolver.resolve("::ffff:8.8.8.8")

    assert location.country == "US"
    assert location.city == "Mountain View"
    assert location.timezone == "America/Los_Angeles"
    assert requested == ["http://ip-api.com/json/8.8.8.8"]
    await resolver.close()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [httpx.Response(200, json={"status": "fail", "message": "reserved range"}), httpx.Response(500, text="boom")],
)
async def test_api_failures_are_none(settings: Settings, response: httpx.Response) -> None:
    resolver = GeoIpResolver(settings, http_client=api_client(lambda request: response))
    assert await resolver.resolve("8.8.8.8") is None


@pytest.mark.asyncio
async def test_slow_lookup_times_out(settings: Settings) -> None:
    async def slow(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(1)
        return httpx.Response(200, json={"status": "success", "countryCode": "US"})

    fast = settings.model_copy(update={"GEOIP_TIMEOUT_SECONDS": 0.05})
    resolver = GeoIpResolver(fast, http_client=api_client(slow))
    assert await resolver.resolve("8.8.8.8") is None


class FakeReader:
    def __init__(self, found: bool) -> None:
        self.found = found

    def city(self, ip: str):
        if not self.found:
            raise geoip2.errors.AddressNotFoundError(f"{ip} not in database")
        return SimpleNamespace(
            country=SimpleNamespace(iso_code="SG"),
            city=SimpleNamespace(name="Singapore"),
            location=SimpleNamespace(latitude=1.35, longitude=103.8, time_zone="Asia/Singapore"),
        )

    def close(self) -> None:
        pass


@pytest.mark.asyncio
async def test_database_lookup(settings: Settings) -> None:
    location = await GeoIpResolver(settings, reader=FakeReader(found=True)).resolve("8.8.4.4")
    assert location.country == "SG"
    assert location.timezone == "Asia/Singapore"


@pytest.mark.asyncio
async def test_database_miss_falls_through_to_api(settings: Settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": "success", "countryCode": "DE", "city": "Berlin"})

    resolver = GeoIpResolver(settings, reader=FakeReader(found=False), http_client=api_client(handler))
    location = await resolver.resolve("8.8.4.4")
    assert location.country == "DE"
    await resolver.close()
