"""
Nearby-stops query: ties geocoding, the stop repository, live arrivals and
per-user sessions together. This is what the transport layer (HTTP here) calls.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, NamedTuple

from busfinder.arrivals.models import Prediction
from busfinder.arrivals.service import ArrivalService
from busfinder.data.stop_cache import Stop
from busfinder.data.stops_repo import RankedStop, StopRepository
from busfinder.datamall.client import DataMallClient
from busfinder.errors import DiscoveryExhausted
from busfinder.geocoding.service import GeocodeResult, Geocoder
from busfinder.sessions.store import SessionStore, UserPreferences

logger = logging.getLogger(__name__)

STOPS_STALE_AFTER = timedelta(hours=24)


class NearbyResult(NamedTuple):
    stops: list[RankedStop]
    # None marks a stop whose arrivals could not be fetched
    predictions_by_stop: dict[str, list[Prediction] | None]


class SearchOutcome(NamedTuple):
    place: GeocodeResult | None
    nearby: NearbyResult | None


class StopRefresh(NamedTuple):
    stop: RankedStop
    predictions: list[Prediction] | None


class TransitQueryService:
    def __init__(
        self,
        client: DataMallClient,
        repository: StopRepository,
        arrivals: ArrivalService,
        geocoder: Geocoder,
        sessions: SessionStore,
    ):
        self.client = client
        self.repository = repository
        self.arrivals = arrivals
        self.geocoder = geocoder
        self.sessions = sessions

    async def warm_up(self) -> bool:
        """Discover a working endpoint and preload stops. Failure only logs."""
        if await self.client.discover() is None:
            logger.error("telemetry warm_up_failed reason=no_working_endpoint")
            return False
        stops = await self.repository.refresh_all()
        logger.info("telemetry warm_up_done stops=%s", len(stops))
        return bool(stops)

    def _require_stop_data(self) -> None:
        # No snapshot even after a refresh attempt: the transit API is unusable.
        if not self.repository.cache.is_populated:
            raise DiscoveryExhausted()

    async def find_stop(self, stop_code: str) -> Stop | None:
        await self.repository.ensure_loaded()
        self._require_stop_data()
        return self.repository.find_stop(stop_code)

    async def query_nearby(self, lat: float, lng: float, prefs: UserPreferences) -> NearbyResult:
        """
        Nearby stops within prefs.search_radius_m (at most prefs.max_stops) and
        their displayable arrivals, in rank order.
        Raises DiscoveryExhausted when the transit API cannot be reached at all.
        """
        cache = self.repository.cache
        if cache.is_populated and cache.is_stale(STOPS_STALE_AFTER):
            logger.info("telemetry bus_stops_stale age_s=%s", round(cache.age().total_seconds()))
            self.repository.refresh_in_background()
        stops = await self.repository.find_nearby(lat, lng, prefs.search_radius_m, prefs.max_stops)
        if not stops:
            self._require_stop_data()
            return NearbyResult(stops=[], predictions_by_stop={})
        predictions = await self.arrivals.fetch_for_stops([s.stop.code for s in stops])
        return NearbyResult(stops=stops, predictions_by_stop=predictions)

    async def resolve_address(self, text: str) -> GeocodeResult | None:
        return await self.geocoder.resolve(text)

    async def on_location_shared(self, user_id: str, lat: float, lng: float) -> NearbyResult:
        logger.info("telemetry location_shared user_id=%s", user_id)
        self.sessions.record_location(user_id, lat, lng)
        return await self.query_nearby(lat, lng, self.sessions.get_or_default_preferences(user_id))

    async def on_free_text_query(self, user_id: str, text: str) -> SearchOutcome:
        self.sessions.mark_awaiting_text(user_id, False)
        place = await self.resolve_address(text)
        if place is None:
            return SearchOutcome(place=None, nearby=None)
        nearby = await self.on_location_shared(user_id, place.latitude, place.longitude)
        return SearchOutcome(place=place, nearby=nearby)

    def mark_awaiting_text(self, user_id: str, awaiting: bool = True) -> None:
        self.sessions.mark_awaiting_text(user_id, awaiting)

    async def on_refresh_requested(self, user_id: str) -> NearbyResult | None:
        """Repeat the user's last query. None when there is no location on record."""
        session = self.sessions.get_session(user_id)
        if session is None or not session.has_location:
            return None
        return await self.on_location_shared(user_id, session.last_latitude, session.last_longitude)

    async def refresh_stop(self, user_id: str, stop_code: str) -> StopRefresh | None:
        """
        Refresh arrivals for one stop near the user's last location.
        None when the session is gone or the stop is no longer nearby.
        """
        session = self.sessions.get_session(user_id)
        if session is None or not session.has_location:
            return None
        prefs = self.sessions.get_or_default_preferences(user_id)
        nearby = await self.repository.find_nearby(
            session.last_latitude, session.last_longitude, prefs.search_radius_m, prefs.max_stops
        )
        ranked = next((s for s in nearby if s.stop.code == stop_code), None)
        if ranked is None:
            return None
        predictions = (await self.arrivals.fetch_for_stops([stop_code]))[stop_code]
        return StopRefresh(stop=ranked, predictions=predictions)

    def on_preference_change(self, user_id: str, field_name: str, value: int) -> UserPreferences:
        prefs = self.sessions.set_preference(user_id, field_name, value)
        logger.info("telemetry preference_changed user_id=%s field=%s value=%s", user_id, field_name, value)
        return prefs

    async def retest_connection(self) -> str | None:
        """Re-run endpoint discovery; returns the working base URL or None."""
        working = await self.client.retest()
        return working.base_url if working else None

    def status(self, now: datetime | None = None) -> dict[str, Any]:
        cache = self.repository.cache
        age = cache.age(now)
        return {
            "endpoint": self.client.status(),
            "stops_cached": len(cache),
            "last_refreshed_at": cache.last_refreshed_at.isoformat() if cache.last_refreshed_at else None,
            "cache_age_seconds": round(age.total_seconds(), 1) if age is not None else None,
            "stale": cache.is_stale(STOPS_STALE_AFTER, now),
            "active_sessions": self.sessions.active_count(),
        }
