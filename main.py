import logging
import re
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from busfinder.api.models import (
    AwaitingTextState,
    LocationRequest,
    NearbyStop,
    NearbyStopsResponse,
    PlaceInfo,
    PreferencesRequest,
    PreferencesResponse,
    RefreshRequest,
    SearchRequest,
)
from busfinder.arrivals.service import ArrivalService
from busfinder.data.stops_repo import RankedStop, StopRepository
from busfinder.datamall.client import DataMallClient
from busfinder.errors import DiscoveryExhausted
from busfinder.geocoding.providers import NominatimProvider, OneMapProvider
from busfinder.geocoding.service import Geocoder
from busfinder.middleware import RequestLoggingMiddleware
from busfinder.monitoring import get_metrics
from busfinder.query.service import NearbyResult, TransitQueryService
from busfinder.sessions.store import SessionStore, UserPreferences, validate_preference
from settings import Settings, get_settings

settings = get_settings()

# Structured logging: include module and level; handlers can add JSON later
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address, default_limits=["100/minute"])

LAT_MIN, LAT_MAX = -90.0, 90.0
LNG_MIN, LNG_MAX = -180.0, 180.0
USER_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_\-]{1,64}$")
STOP_CODE_PATTERN = re.compile(r"^[0-9A-Za-z]{1,10}$")

SERVICE_UNAVAILABLE_DETAIL = "Bus arrival service is unavailable right now. Please try again later."
NO_STOPS_MESSAGE = "No bus stops found within {radius} meters."
SESSION_EXPIRED_DETAIL = "Session expired. Please share your location again."


def build_service(cfg: Settings) -> TransitQueryService:
    client = DataMallClient(
        api_key=cfg.lta_api_key,
        base_urls=cfg.base_url_list(),
        timeout=cfg.request_timeout_seconds,
        user_agent=cfg.user_agent,
    )
    geocoder = Geocoder(
        primary=OneMapProvider(cfg.onemap_url, timeout=cfg.geocode_timeout_seconds),
        secondary=NominatimProvider(cfg.nominatim_url, timeout=cfg.geocode_timeout_seconds),
    )
    sessions = SessionStore(
        default_preferences=UserPreferences(
            search_radius_m=cfg.default_search_radius_m,
            max_stops=cfg.default_max_stops,
        ),
        max_sessions=cfg.max_sessions,
    )
    return TransitQueryService(
        client=client,
        repository=StopRepository(client),
        arrivals=ArrivalService(client),
        geocoder=geocoder,
        sessions=sessions,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    if not settings.lta_api_key:
        logger.warning("telemetry startup lta_api_key=missing")
    service = build_service(settings)
    app.state.service = service
    if settings.preload_stops and settings.lta_api_key:
        await service.warm_up()
    yield
    app.state.service = None


app = FastAPI(title=settings.app_name, debug=settings.debug, lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(DiscoveryExhausted)
def discovery_exhausted_handler(request: Request, exc: DiscoveryExhausted):
    logger.error("telemetry discovery_exhausted path=%s", request.url.path)
    return JSONResponse(status_code=503, content={"detail": SERVICE_UNAVAILABLE_DETAIL})


@app.exception_handler(Exception)
def unhandled_exception_handler(request: Request, exc: Exception):
    """Return consistent JSON error for unhandled exceptions (500). Skip validation/HTTP errors."""
    from fastapi.exceptions import RequestValidationError
    if isinstance(exc, (HTTPException, RequestValidationError)):
        raise exc
    logger.exception("telemetry unhandled_exception path=%s", request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": "An unexpected error occurred. Please try again later."},
    )


app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.cors_origins.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _service() -> TransitQueryService:
    service: TransitQueryService | None = getattr(app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Service is starting up. Please try again shortly.")
    return service


def _validate_lat_lng(lat: float, lng: float) -> None:
    if not (LAT_MIN <= lat <= LAT_MAX):
        raise HTTPException(status_code=400, detail=f"lat must be between {LAT_MIN} and {LAT_MAX}")
    if not (LNG_MIN <= lng <= LNG_MAX):
        raise HTTPException(status_code=400, detail=f"lng must be between {LNG_MIN} and {LNG_MAX}")


def _validate_user_id(user_id: str) -> None:
    if not USER_ID_PATTERN.match(user_id):
        raise HTTPException(status_code=400, detail="Invalid user id (alphanumeric, underscore, hyphen; max 64 chars).")


def _validate_stop_code(stop_code: str) -> None:
    if not STOP_CODE_PATTERN.match(stop_code):
        raise HTTPException(status_code=400, detail="Invalid stop code (alphanumeric, max 10 chars).")


def _render_nearby(result: NearbyResult, radius_m: int, place: PlaceInfo | None = None) -> NearbyStopsResponse:
    stops = [NearbyStop.build(r, result.predictions_by_stop.get(r.stop.code)) for r in result.stops]
    message = None if stops else NO_STOPS_MESSAGE.format(radius=radius_m)
    return NearbyStopsResponse(radius_m=radius_m, stops=stops, place=place, message=message)


@app.get("/health")
@limiter.exempt
def health(request: Request):
    logger.info("telemetry route=health")
    return {"status": "ok"}


@app.get("/metrics")
@limiter.exempt
def metrics(request: Request):
    """Request counts, upstream call outcomes, geocode provenance counts, uptime."""
    return get_metrics()


@app.get("/debug")
def debug(request: Request):
    """Pinned DataMall endpoint, stop cache size and age, active sessions."""
    return _service().status()


@app.post("/connection/test")
async def connection_test(request: Request):
    """Re-run DataMall endpoint discovery."""
    base_url = await _service().retest_connection()
    if base_url is None:
        raise HTTPException(status_code=503, detail="API connection failed. No working endpoint found.")
    return {"status": "ok", "base_url": base_url}


# --- Stateless queries ---


@app.get("/stops/nearby", response_model=NearbyStopsResponse)
async def stops_nearby(request: Request, lat: float, lng: float, radius_m: int | None = None, max_stops: int | None = None):
    _validate_lat_lng(lat, lng)
    service = _service()
    defaults = service.sessions.default_preferences
    try:
        prefs = UserPreferences(
            search_radius_m=radius_m if radius_m is not None else defaults.search_radius_m,
            max_stops=max_stops if max_stops is not None else defaults.max_stops,
        )
        validate_preference("search_radius_m", prefs.search_radius_m)
        validate_preference("max_stops", prefs.max_stops)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    logger.info("telemetry route=stops_nearby radius_m=%s max_stops=%s", prefs.search_radius_m, prefs.max_stops)
    result = await service.query_nearby(lat, lng, prefs)
    return _render_nearby(result, prefs.search_radius_m)


@app.get("/stops/{stop_code}/arrivals", response_model=NearbyStop)
async def stop_arrivals(request: Request, stop_code: str):
    _validate_stop_code(stop_code)
    service = _service()
    stop = await service.find_stop(stop_code)
    if stop is None:
        raise HTTPException(status_code=404, detail=f"Bus stop not found: {stop_code}.")
    logger.info("telemetry route=stop_arrivals stop_code=%s", stop_code)
    predictions = (await service.arrivals.fetch_for_stops([stop_code]))[stop_code]
    return NearbyStop.build(RankedStop(stop=stop, distance_m=0, rank=1), predictions)


@app.get("/geocode", response_model=PlaceInfo)
async def geocode(request: Request, q: str = ""):
    """Resolve a place name in Singapore to coordinates. 404 when nothing matches."""
    query = (q or "").strip()
    if len(query) < 2:
        raise HTTPException(status_code=400, detail="Provide a search query (e.g. Bugis Junction or an address).")
    result = await _service().resolve_address(query)
    if result is None:
        raise HTTPException(status_code=404, detail=f'Could not find "{query[:80]}". Try a more specific name.')
    return PlaceInfo.from_result(result)


# --- Per-user flows (what the chat transport calls) ---


@app.post("/users/{user_id}/location", response_model=NearbyStopsResponse)
async def user_location(request: Request, user_id: str, body: LocationRequest):
    _validate_user_id(user_id)
    service = _service()
    result = await service.on_location_shared(user_id, body.lat, body.lng)
    prefs = service.sessions.get_or_default_preferences(user_id)
    return _render_nearby(result, prefs.search_radius_m)


@app.post("/users/{user_id}/awaiting-text", status_code=204)
def user_awaiting_text(request: Request, user_id: str, body: AwaitingTextState):
    """Mark that the user's next free-text message is a place search."""
    _validate_user_id(user_id)
    _service().mark_awaiting_text(user_id, body.awaiting)


@app.get("/users/{user_id}/awaiting-text", response_model=AwaitingTextState)
def get_user_awaiting_text(request: Request, user_id: str):
    _validate_user_id(user_id)
    return AwaitingTextState(awaiting=_service().sessions.is_awaiting_text(user_id))


@app.post("/users/{user_id}/search", response_model=NearbyStopsResponse)
async def user_search(request: Request, user_id: str, body: SearchRequest):
    _validate_user_id(user_id)
    service = _service()
    outcome = await service.on_free_text_query(user_id, body.text)
    if outcome.place is None:
        raise HTTPException(status_code=404, detail=f'Could not find "{body.text[:80]}". Try a more specific name.')
    prefs = service.sessions.get_or_default_preferences(user_id)
    return _render_nearby(outcome.nearby, prefs.search_radius_m, place=PlaceInfo.from_result(outcome.place))


@app.post("/users/{user_id}/refresh")
async def user_refresh(request: Request, user_id: str, body: RefreshRequest | None = None):
    """Repeat the last query, or refresh a single stop when stop_code is given."""
    _validate_user_id(user_id)
    service = _service()
    prefs = service.sessions.get_or_default_preferences(user_id)
    if body is not None and body.stop_code:
        _validate_stop_code(body.stop_code)
        refreshed = await service.refresh_stop(user_id, body.stop_code)
        if refreshed is None:
            if service.sessions.get_session(user_id) is None:
                raise HTTPException(status_code=404, detail=SESSION_EXPIRED_DETAIL)
            raise HTTPException(status_code=404, detail="Bus stop not found. Please search again.")
        return NearbyStop.build(refreshed.stop, refreshed.predictions)
    result = await service.on_refresh_requested(user_id)
    if result is None:
        raise HTTPException(status_code=404, detail=SESSION_EXPIRED_DETAIL)
    return _render_nearby(result, prefs.search_radius_m)


@app.get("/users/{user_id}/preferences", response_model=PreferencesResponse)
def get_user_preferences(request: Request, user_id: str):
    _validate_user_id(user_id)
    return PreferencesResponse.from_prefs(_service().sessions.get_or_default_preferences(user_id))


@app.put("/users/{user_id}/preferences", response_model=PreferencesResponse)
def put_user_preferences(request: Request, user_id: str, body: PreferencesRequest):
    _validate_user_id(user_id)
    service = _service()
    prefs = service.sessions.get_or_default_preferences(user_id)
    try:
        for field_name, value in body.model_dump(exclude_none=True).items():
            prefs = service.on_preference_change(user_id, field_name, value)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return PreferencesResponse.from_prefs(prefs)
