"""Pydantic models for the HTTP API."""
from pydantic import BaseModel, Field

from busfinder.arrivals.models import Prediction
from busfinder.arrivals.service import format_eta
from busfinder.data.stops_repo import RankedStop
from busfinder.geocoding.service import GeocodeResult
from busfinder.sessions.store import (
    MAX_STOPS_MAX,
    MAX_STOPS_MIN,
    SEARCH_RADIUS_M_MAX,
    SEARCH_RADIUS_M_MIN,
    UserPreferences,
)


class ArrivalItem(BaseModel):
    service: str
    next_bus: str
    next_bus_load: str
    following_bus: str
    following_bus_load: str
    monitored: bool

    @classmethod
    def from_prediction(cls, p: Prediction) -> "ArrivalItem":
        return cls(
            service=p.service_id,
            next_bus=format_eta(p.eta_primary),
            next_bus_load=p.load_primary.value,
            following_bus=format_eta(p.eta_secondary),
            following_bus_load=p.load_secondary.value,
            monitored=p.monitored,
        )


class NearbyStop(BaseModel):
    code: str
    name: str
    lat: float
    lng: float
    distance_m: int
    rank: int
    status: str  # "ok" | "unavailable"
    arrivals: list[ArrivalItem] | None

    @classmethod
    def build(cls, ranked: RankedStop, predictions: list[Prediction] | None) -> "NearbyStop":
        return cls(
            code=ranked.stop.code,
            name=ranked.stop.name,
            lat=ranked.stop.latitude,
            lng=ranked.stop.longitude,
            distance_m=ranked.distance_m,
            rank=ranked.rank,
            status="ok" if predictions is not None else "unavailable",
            arrivals=[ArrivalItem.from_prediction(p) for p in predictions] if predictions is not None else None,
        )


class PlaceInfo(BaseModel):
    lat: float
    lng: float
    display_name: str
    provenance: str

    @classmethod
    def from_result(cls, r: GeocodeResult) -> "PlaceInfo":
        return cls(lat=r.latitude, lng=r.longitude, display_name=r.display_address, provenance=r.provenance.value)


class NearbyStopsResponse(BaseModel):
    radius_m: int
    stops: list[NearbyStop]
    place: PlaceInfo | None = None
    message: str | None = None


class LocationRequest(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class SearchRequest(BaseModel):
    text: str = Field(min_length=1, max_length=200)


class AwaitingTextState(BaseModel):
    awaiting: bool = True


class RefreshRequest(BaseModel):
    stop_code: str | None = None


class PreferencesRequest(BaseModel):
    search_radius_m: int | None = Field(default=None, ge=SEARCH_RADIUS_M_MIN, le=SEARCH_RADIUS_M_MAX)
    max_stops: int | None = Field(default=None, ge=MAX_STOPS_MIN, le=MAX_STOPS_MAX)


class PreferencesResponse(BaseModel):
    search_radius_m: int
    max_stops: int

    @classmethod
    def from_prefs(cls, prefs: UserPreferences) -> "PreferencesResponse":
        return cls(search_radius_m=prefs.search_radius_m, max_stops=prefs.max_stops)
