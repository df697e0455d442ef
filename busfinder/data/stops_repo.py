"""
Bus stop repository: paginated bulk fetch from DataMall into the StopCache and
Haversine nearby search over the cached snapshot.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, NamedTuple

from busfinder.data.geo import bbox_delta_deg, haversine_distance_m, longitude_delta_deg
from busfinder.data.stop_cache import Stop, StopCache
from busfinder.datamall.client import DataMallClient
from busfinder.errors import BusFinderError, EmptyDataset, MalformedUpstreamPayload

logger = logging.getLogger(__name__)

BUS_STOPS_RESOURCE = "BusStops"
PAGE_SIZE = 500
MAX_PAGES = 30
PAGE_PAUSE_SECONDS = 0.2


class RankedStop(NamedTuple):
    stop: Stop
    distance_m: int
    rank: int


def _parse_stop(raw: Any) -> Stop | None:
    if not isinstance(raw, dict):
        return None
    code = str(raw.get("BusStopCode") or "").strip()
    if not code:
        return None
    try:
        lat = float(raw.get("Latitude"))
        lng = float(raw.get("Longitude"))
    except (TypeError, ValueError):
        return None
    name = str(raw.get("Description") or raw.get("RoadName") or code).strip()
    return Stop(code=code, name=name, latitude=lat, longitude=lng)


def _page_records(payload: Any) -> list[Any]:
    if not isinstance(payload, list):
        raise MalformedUpstreamPayload(f"BusStops page is {type(payload).__name__}, expected list")
    return payload


def rank_stops(
    stops: tuple[Stop, ...] | list[Stop],
    lat: float,
    lng: float,
    radius_m: float,
    limit: int,
) -> list[RankedStop]:
    """
    Return stops within radius_m of (lat, lng), nearest first, up to limit.
    Ties keep snapshot order. Bounding box prefilter, then exact Haversine check.
    """
    if limit <= 0 or radius_m < 0:
        return []
    dlat, dlng = bbox_delta_deg(lat, radius_m)
    with_dist: list[tuple[float, Stop]] = []
    for stop in stops:
        if abs(stop.latitude - lat) > dlat or longitude_delta_deg(lng, stop.longitude) > dlng:
            continue
        d = haversine_distance_m(lat, lng, stop.latitude, stop.longitude)
        if d <= radius_m:
            with_dist.append((d, stop))
    # list.sort is stable, so equal distances keep cache order
    with_dist.sort(key=lambda x: x[0])
    return [
        RankedStop(stop=stop, distance_m=round(d), rank=i + 1)
        for i, (d, stop) in enumerate(with_dist[:limit])
    ]


class StopRepository:
    """Loads the full stop list through DataMallClient and answers nearby queries."""

    def __init__(
        self,
        client: DataMallClient,
        cache: StopCache | None = None,
        *,
        page_size: int = PAGE_SIZE,
        max_pages: int = MAX_PAGES,
        page_pause_seconds: float = PAGE_PAUSE_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._client = client
        self.cache = cache if cache is not None else StopCache()
        self._page_size = page_size
        self._max_pages = max_pages
        self._page_pause = page_pause_seconds
        self._sleep = sleep
        self._inflight: asyncio.Task | None = None

    async def _fetch_all(self) -> list[Stop]:
        stops: list[Stop] = []
        skip = 0
        for page in range(1, self._max_pages + 1):
            logger.info("telemetry bus_stops_page page=%s skip=%s", page, skip)
            records = _page_records(await self._client.get(BUS_STOPS_RESOURCE, {"$skip": skip}))
            if not records:
                break
            stops.extend(s for s in map(_parse_stop, records) if s is not None)
            skip += self._page_size
            if len(records) >= self._page_size:
                await self._sleep(self._page_pause)
        else:
            logger.warning("telemetry bus_stops_page_limit_reached pages=%s", self._max_pages)
        if not stops:
            raise EmptyDataset("DataMall returned no bus stops")
        return stops

    async def _refresh(self) -> list[Stop]:
        try:
            stops = await self._fetch_all()
        except BusFinderError as e:
            logger.warning(
                "telemetry bus_stops_refresh_failed error=%s cached=%s",
                str(e),
                len(self.cache),
                extra={"error": str(e), "cached": len(self.cache)},
            )
            return list(self.cache.stops)
        self.cache.replace(stops)
        logger.info("telemetry bus_stops_refreshed count=%s", len(stops), extra={"count": len(stops)})
        return stops

    def _start_refresh(self) -> asyncio.Task:
        # No await between the check and the assignment, so this is atomic on the loop.
        task = self._inflight
        if task is None or task.done():
            task = asyncio.ensure_future(self._refresh())
            self._inflight = task
        return task

    async def refresh_all(self) -> list[Stop]:
        """
        Reload every stop. On any failure the previous snapshot is kept and
        returned. Concurrent callers share one in-flight refresh.
        """
        return await asyncio.shield(self._start_refresh())

    def refresh_in_background(self) -> None:
        """Start a refresh (or join the running one) without waiting for it."""
        self._start_refresh()

    async def ensure_loaded(self) -> None:
        if not self.cache.is_populated:
            await self.refresh_all()

    async def find_nearby(self, lat: float, lng: float, radius_m: float, max_results: int) -> list[RankedStop]:
        await self.ensure_loaded()
        results = rank_stops(self.cache.stops, lat, lng, radius_m, max_results)
        logger.info(
            "telemetry nearby_stops radius_m=%s found=%s",
            radius_m,
            len(results),
            extra={"radius_m": radius_m, "found": len(results)},
        )
        return results

    def find_stop(self, code: str) -> Stop | None:
        for stop in self.cache.stops:
            if stop.code == code:
                return stop
        return None
