"""IP to location resolution. Lookups are best-effort and never raise."""

from __future__ import annotations

import ipaddress
import logging
import re
from typing import Protocol

import httpx

from account_security.core.settings import settings
from account_security.schemas.sessions import Location

logger = logging.getLogger(__name__)

UNKNOWN_LOCATION = Location()

_PRIVATE_PATTERNS = (
    re.compile(r"^10\."),
    re.compile(r"^172\.(1[6-9]|2[0-9]|3[0-1])\."),
    re.compile(r"^192\.168\."),
    re.compile(r"^127\."),
    re.compile(r"^::1$"),
    re.compile(r"^fe80:", re.IGNORECASE),
)

# Country names that are always treated as suspicious; extend per deployment.
SUSPICIOUS_COUNTRIES: frozenset[str] = frozenset({"XX", "YY", "ZZ"})

TIMEZONE_OFFSETS = {
    "America/Los_Angeles": -8,
    "America/New_York": -5,
    "America/Chicago": -6,
    "UTC": 0,
    "Europe/London": 0,
    "Europe/Berlin": 1,
    "Asia/Tokyo": 9,
}


class LocationResolver(Protocol):
    async def resolve(self, ip_address: str) -> Location: ...


def _hash_ip(ip_address: str) -> int:
    # 32-bit rolling hash (h * 31 + c) so fallback locations stay stable across runs.
    value = 0
    for char in ip_address:
        value = ((value << 5) - value + ord(char)) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return abs(value)


class StaticLocationResolver:
    """Development resolver backed by a fixed table.

    Addresses outside the table resolve to ``UNKNOWN_LOCATION`` unless
    ``hash_fallback`` is set, which derives a stable fake location per address.
    """

    KNOWN = {
        "127.0.0.1": Location(
            country="United States",
            region="California",
            city="San Francisco",
            latitude=37.7749,
            longitude=-122.4194,
            timezone="America/Los_Angeles",
        ),
        "192.168.1.1": Location(
            country="United States",
            region="New York",
            city="New York",
            latitude=40.7128,
            longitude=-74.0060,
            timezone="America/New_York",
        ),
        "10.0.0.1": Location(
            country="United States",
            region="Texas",
            city="Austin",
            latitude=30.2672,
            longitude=-97.7431,
            timezone="America/Chicago",
        ),
    }
    COUNTRIES = ("United States", "Canada", "United Kingdom", "Germany", "France", "Japan", "Australia")
    CITIES = ("New York", "Los Angeles", "Chicago", "Houston", "Phoenix", "Philadelphia", "San Antonio")

    def __init__(self, overrides: dict[str, Location] | None = None, hash_fallback: bool = False) -> None:
        self._table = {**self.KNOWN, **(overrides or {})}
        self._hash_fallback = hash_fallback

    async def resolve(self, ip_address: str) -> Location:
        known = self._table.get(ip_address)
        if known is not None:
            return known
        if not self._hash_fallback:
            return UNKNOWN_LOCATION
        value = _hash_ip(ip_address)
        return Location(
            country=self.COUNTRIES[value % len(self.COUNTRIES)],
            region="Unknown",
            city=self.CITIES[value % len(self.CITIES)],
            latitude=float(20 + value % 50),
            longitude=float(-120 + value % 60),
            timezone="UTC",
        )


class HttpLocationResolver:
    """ip-api style JSON endpoint: ``GET {base_url}/{ip}``."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def resolve(self, ip_address: str) -> Location:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.get(f"{self._base_url}/{ip_address}")
            response.raise_for_status()
        data = response.json()
        if data.get("status", "success") != "success":
            return UNKNOWN_LOCATION
        return Location(
            country=data.get("country") or "Unknown",
            region=data.get("regionName") or data.get("region") or "Unknown",
            city=data.get("city") or "Unknown",
            latitude=float(data.get("lat") or 0),
            longitude=float(data.get("lon") or 0),
            timezone=data.get("timezone") or "UTC",
        )


def build_resolver() -> LocationResolver:
    if settings.geolocation_url:
        return HttpLocationResolver(settings.geolocation_url, settings.geolocation_timeout_seconds)
    return StaticLocationResolver()


async def locate(resolver: LocationResolver | None, ip_address: str | None) -> Location:
    if resolver is None or not ip_address:
        return UNKNOWN_LOCATION
    try:
        location = await resolver.resolve(ip_address)
    except Exception as exc:
        logger.warning("Location lookup failed for %s: %s", ip_address, exc)
        return UNKNOWN_LOCATION
    logger.debug("Resolved location for %s: %s, %s", ip_address, location.city, location.country)
    return location


def is_unknown(location: Location | None) -> bool:
    return location is None or (location.latitude == 0 and location.longitude == 0)


def is_valid_ip(value: str | None) -> bool:
    if not value:
        return False
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def is_private_ip(value: str) -> bool:
    return any(pattern.match(value) for pattern in _PRIVATE_PATTERNS)


def is_suspicious_location(location: Location) -> bool:
    if location.country in SUSPICIOUS_COUNTRIES:
        return True
    return location.latitude == 0 and location.longitude == 0


def timezone_offset_hours(location: Location) -> int:
    return TIMEZONE_OFFSETS.get(location.timezone, 0)
