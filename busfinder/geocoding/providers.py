"""
Remote geocoding providers: OneMap (Singapore's national geocoder) and
OpenStreetMap Nominatim.
"""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, NamedTuple

import httpx

logger = logging.getLogger(__name__)

ONEMAP_URL = "https://www.onemap.gov.sg/api/common/elastic/search"
NOMINATIM_URL = "https://nominatim.openstreetmap.org/search"
GEOCODE_TIMEOUT_SECONDS = 10.0
GEOCODE_USER_AGENT = "Singapore-Bus-Finder/2.0 (bus stop lookup)"
NOMINATIM_MIN_INTERVAL_SECONDS = 1.05


class ProviderHit(NamedTuple):
    lat: float
    lng: float
    display_name: str


def _float(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class OneMapProvider:
    """OneMap elastic search. Response: { found, results: [{ LATITUDE, LONGITUDE, ADDRESS }] }."""

    def __init__(
        self,
        url: str = ONEMAP_URL,
        *,
        timeout: float = GEOCODE_TIMEOUT_SECONDS,
        user_agent: str = GEOCODE_USER_AGENT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._url = url
        self._timeout = timeout
        self._user_agent = user_agent
        self._transport = transport

    async def search(self, query: str) -> ProviderHit | None:
        async with httpx.AsyncClient(
            timeout=self._timeout,
            headers={"User-Agent": self._user_agent},
            transport=self._transport,
        ) as client:
            r = await client.get(
                self._url,
                params={"searchVal": query, "returnGeom": "Y", "getAddrDetails": "Y", "pageNum": 1},
            )
            r.raise_for_status()
            data = r.json()
        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list):
            return None
        for item in results:
            if not isinstance(item, dict):
                continue
            lat, lng = _float(item.get("LATITUDE")), _float(item.get("LONGITUDE"))
            if lat is None or lng is None:
                continue
            display = item.get("ADDRESS") or item.get("SEARCHVAL") or query
            return ProviderHit(lat=lat, lng=lng, display_name=str(display))
        return None


class NominatimProvider:
    """
    Nominatim search, limited to Singapore. Requests are serialized and spaced
    at least min_interval apart (Nominatim usage policy: 1 req/sec).
    """

    def __init__(
        self,
        url: str = NOMINATIM_URL,
        *,
        timeout: float = GEOCODE_TIMEOUT_SECONDS,
        user_agent: str = GEOCODE_USER_AGENT,
        country_code: str = "sg",
        min_interval: float = NOMINATIM_MIN_INTERVAL_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._url = url
        self._timeout = timeout
        self._user_agent = user_agent
        self._country_code = country_code
        self._min_interval = min_interval
        self._sleep = sleep
        self._transport = transport
        self._lock: asyncio.Lock | None = None
        self._last_request_at = 0.0

    async def _wait_turn(self) -> None:
        wait = self._last_request_at + self._min_interval - time.monotonic()
        if wait > 0:
            await self._sleep(wait)

    async def search(self, query: str) -> ProviderHit | None:
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            await self._wait_turn()
            try:
                async with httpx.AsyncClient(
                    timeout=self._timeout,
                    headers={"User-Agent": self._user_agent},
                    transport=self._transport,
                ) as client:
                    r = await client.get(
                        self._url,
                        params={
                            "q": query,
                            "format": "json",
                            "limit": 1,
                            "countrycodes": self._country_code,
                        },
                    )
                    r.raise_for_status()
                    data = r.json()
            finally:
                self._last_request_at = time.monotonic()
        if not isinstance(data, list) or not data:
            return None
        first = data[0]
        if not isinstance(first, dict):
            return None
        lat, lng = _float(first.get("lat")), _float(first.get("lon"))
        if lat is None or lng is None:
            return None
        return ProviderHit(lat=lat, lng=lng, display_name=str(first.get("display_name") or query))
