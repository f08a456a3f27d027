"""IP geolocation for click enrichment.

Resolution order
================
::
    normalise (::ffff:a.b.c.d → a.b.c.d)
        │
        ├─ not an IP ─────────────────────────────► None
        ├─ private / loopback / link-local
        │     ├─ non-production ──► deterministic pseudo-location
        │     └─ production ──────────────────────► None
        └─ public
              ├─ GeoLite2 City database (geoip2)
              └─ ip-api HTTP lookup (httpx), when enabled

The whole public lookup runs under ``GEOIP_TIMEOUT_SECONDS``. Any failure
(missing database, unknown address, HTTP error, timeout) is logged and
resolves to None; ``resolve`` never raises.
"""

import asyncio
import ipaddress
import logging
from dataclasses import dataclass

import geoip2.database
import geoip2.errors
import httpx
from prometheus_client import Counter

from shortlinks.config import Settings

__all__ = ["GeoLocation", "GeoIpResolver", "MOCK_LOCATIONS", "normalize_ip"]

logger = logging.getLogger("shortlinks.geoip")

GEO_LOOKUPS_TOTAL = Counter(
    "shortlinks_geo_lookups_total",
    "Geolocation lookups by source and outcome",
    ["source", "status"],
)


@dataclass(frozen=True)
class GeoLocation:
    country: str | None = None
    city: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    timezone: str | None = None


MOCK_LOCATIONS = (
    GeoLocation("ID", "Jakarta", -6.2088, 106.8456, "Asia/Jakarta"),
    GeoLocation("ID", "Surabaya", -7.2575, 112.7521, "Asia/Jakarta"),
    GeoLocation("ID", "Bandung", -6.9175, 107.6191, "Asia/Jakarta"),
    GeoLocation("SG", "Singapore", 1.3521, 103.8198, "Asia/Singapore"),
    GeoLocation("US", "New York", 40.7128, -74.006, "America/New_York"),
)


def normalize_ip(raw: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    try:
        address = ipaddress.ip_address(raw.strip())
    except ValueError:
        return None
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        return address.ipv4_mapped
    return address


def _is_internal(address: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    return address.is_private or address.is_loopback or address.is_link_local


def mock_location(address: ipaddress.IPv4Address | ipaddress.IPv6Address) -> GeoLocation:
    # Last octet for IPv4, last 16-bit group for IPv6.
    if isinstance(address, ipaddress.IPv4Address):
        seed = int(address) & 0xFF
    else:
        seed = int(address) & 0xFFFF
    return MOCK_LOCATIONS[seed % len(MOCK_LOCATIONS)]


class GeoIpResolver:
    def __init__(
        self,
        settings: Settings,
        reader: geoip2.database.Reader | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._reader = reader
        self._http = http_client

    @classmethod
    def from_settings(cls, settings: Settings) -> "GeoIpResolver":
        reader = None
        if settings.GEOIP_DATABASE_PATH:
            try:
                reader = geoip2.database.Reader(settings.GEOIP_DATABASE_PATH)
            except (OSError, ValueError) as exc:
                logger.warning(f"GeoIP database unavailable at {settings.GEOIP_DATABASE_PATH}: {exc}")
        http_client = None
        if settings.GEOIP_USE_API:
            http_client = httpx.AsyncClient(timeout=settings.GEOIP_TIMEOUT_SECONDS)
        return cls(settings, reader=reader, http_client=http_client)

    async def resolve(self, ip: str | None) -> GeoLocation | None:
        if not ip:
            return None
        address = normalize_ip(ip)
        if address is None:
            logger.debug(f"Not an IP address: {ip!r}")
            return None

        if _is_internal(address):
            if self._settings.is_production:
                return None
            return mock_location(address)

        try:
            return await asyncio.wait_for(self._lookup(str(address)), timeout=self._settings.GEOIP_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            GEO_LOOKUPS_TOTAL.labels(source="any", status="timeout").inc()
            logger.warning(f"Geolocation timed out for {address}")
        except Exception as exc:
            GEO_LOOKUPS_TOTAL.labels(source="any", status="error").inc()
            logger.warning(f"Geolocation failed for {address}: {exc}")
        return None

    async def close(self) -> None:
        if self._reader is not None:
            self._reader.close()
        if self._http is not None:
            await self._http.aclose()

    async def _lookup(self, ip: str) -> GeoLocation | None:
        if self._reader is not None:
            location = await asyncio.to_thread(self._lookup_database, ip)
            if location is not None:
                return location
        if self._http is not None:
            return await self._lookup_api(ip)
        return None

    def _lookup_database(self, ip: str) -> GeoLocation | None:
        try:
            response = self._reader.city(ip)
        except geoip2.errors.AddressNotFoundError:
            GEO_LOOKUPS_TOTAL.labels(source="database", status="not_found").inc()
            return None
        GEO_LOOKUPS_TOTAL.labels(source="database", status="success").inc()
        return GeoLocation(
            country=response.country.iso_code,
            city=response.city.name,
            latitude=response.location.latitude,
            longitude=response.location.longitude,
            timezone=response.location.time_zone,
        )

    async def _lookup_api(self, ip: str) -> GeoLocation | None:
        response = await self._http.get(self._settings.GEOIP_API_URL.format(ip=ip))
        response.raise_for_status()
        data = response.json()
        if data.get("status") == "fail":
            GEO_LOOKUPS_TOTAL.labels(source="api", status="not_found").inc()
            return None
        GEO_LOOKUPS_TOTAL.labels(source="api", status="success").inc()
        return GeoLocation(
            country=data.get("countryCode") or None,
            city=data.get("city") or None,
            latitude=data.get("lat"),
            longitude=data.get("lon"),
            timezone=data.get("timezone") or None,
        )
