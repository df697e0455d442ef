"""Pytest configuration and fixtures."""
import math
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest

# Ensure project root is on path when running pytest from anywhere
root = Path(__file__).resolve().parent.parent
if str(root) not in sys.path:
    sys.path.insert(0, str(root))

from busfinder.arrivals.service import ArrivalService  # noqa: E402
from busfinder.data.gazetteer import Gazetteer  # noqa: E402
from busfinder.data.geo import EARTH_RADIUS_M  # noqa: E402
from busfinder.data.stops_repo import StopRepository  # noqa: E402
from busfinder.datamall.client import DataMallClient  # noqa: E402
from busfinder.datamall.retry import RetryPolicy  # noqa: E402
from busfinder.geocoding.providers import ProviderHit  # noqa: E402
from busfinder.geocoding.service import Geocoder  # noqa: E402
from busfinder.query.service import TransitQueryService  # noqa: E402
from busfinder.sessions.store import SessionStore  # noqa: E402

ORIGIN = (1.3000, 103.8000)


def north_of(meters: float, origin: tuple[float, float] = ORIGIN) -> tuple[float, float]:
    return origin[0] + math.degrees(meters / EARTH_RADIUS_M), origin[1]


class SleepRecorder:
    """Stand-in for asyncio.sleep that records delays instead of waiting."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeDataMallServer:
    """
    httpx.MockTransport handler imitating DataMall. Three stops north of
    ORIGIN at 40 m, 120 m and 480 m. Arrivals are minutes from request time.
    """

    def __init__(self):
        self.stops = [
            {"BusStopCode": "10009", "Description": "Bt Merah Int", "Latitude": north_of(40)[0], "Longitude": ORIGIN[1]},
            {"BusStopCode": "10011", "Description": "Opp Blk 22", "Latitude": north_of(120)[0], "Longitude": ORIGIN[1]},
            {"BusStopCode": "10021", "Description": "Henderson Rd", "Latitude": north_of(480)[0], "Longitude": ORIGIN[1]},
        ]
        self.arrivals: dict[str, list[tuple[str, float | None]]] = {
            "10009": [("12", 45), ("5", 3), ("A1", None)],
            "10011": [("61", 8)],
            "10021": [("7", 10)],
        }
        self.failing_stops: set[str] = set()
        self.down = False
        self.paths: list[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.paths.append(request.url.path)
        if self.down:
            return httpx.Response(503)
        resource = request.url.path.split("/ltaodataservice/", 1)[1]
        params = request.url.params
        if resource == "BusStops":
            skip = int(params.get("$skip", 0))
            top = int(params.get("$top", 500))
            return httpx.Response(200, json={"odata.metadata": "x", "value": self.stops[skip : skip + top]})
        if resource == "BusArrivalv2":
            code = params["BusStopCode"]
            if code in self.failing_stops:
                return httpx.Response(500)
            now = datetime.now(timezone.utc)
            services = [
                {
                    "ServiceNo": no,
                    "NextBus": {
                        # a few seconds of slack so rounding is stable
                        "EstimatedArrival": (now + timedelta(minutes=m, seconds=5)).isoformat() if m is not None else "",
                        "Load": "SEA" if m is not None else "",
                        "Monitored": 1,
                    },
                    "NextBus2": {"EstimatedArrival": "", "Load": "", "Monitored": 0},
                }
                for no, m in self.arrivals.get(code, [])
            ]
            return httpx.Response(200, json={"BusStopCode": code, "Services": services})
        return httpx.Response(404)


class StaticProvider:
    def __init__(self, hits=None):
        self.hits = hits or {}
        self.queries: list[str] = []

    async def search(self, query: str):
        self.queries.append(query)
        return self.hits.get(query)


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def make_client(sleeps):
    """Build a DataMallClient whose HTTP traffic goes to a handler function."""

    def _make(handler, base_urls=("https://primary.test/ltaodataservice", "http://fallback.test/ltaodataservice"), **kwargs):
        kwargs.setdefault("retry_policy", RetryPolicy(sleep=sleeps))
        return DataMallClient(
            api_key="test-key",
            base_urls=base_urls,
            transport=httpx.MockTransport(handler),
            **kwargs,
        )

    return _make


@pytest.fixture
def datamall():
    return FakeDataMallServer()


@pytest.fixture
def transit_service(make_client, datamall, sleeps):
    """TransitQueryService wired to the fake DataMall and a static geocoder."""
    client = make_client(datamall.handler)
    primary = StaticProvider({"Henderson Waves": ProviderHit(ORIGIN[0], ORIGIN[1], "HENDERSON WAVES")})
    geocoder = Geocoder(primary, StaticProvider(), Gazetteer({"bishan": (1.3510, 103.8485)}))
    return TransitQueryService(
        client=client,
        repository=StopRepository(client, sleep=sleeps),
        arrivals=ArrivalService(client),
        geocoder=geocoder,
        sessions=SessionStore(),
    )
