"""
Live bus arrivals per stop: fetch through DataMallClient with a resource-path
fallback, parse services into Predictions, then filter, sort and truncate for
display.
"""
import asyncio
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any

from busfinder.arrivals.models import LoadLevel, Prediction
from busfinder.datamall.client import DataMallClient
from busfinder.errors import MalformedUpstreamPayload, TransientRequestFailure

logger = logging.getLogger(__name__)

ARRIVALS_RESOURCE = "BusArrivalv2"
ARRIVALS_FALLBACK_RESOURCE = "v3/BusArrival"
MAX_SERVICES_PER_STOP = 8
MAX_CONCURRENT_STOP_FETCHES = 15
MAX_ETA_MINUTES = 60
NON_NUMERIC_SERVICE_RANK = 999

ARRIVING = "Arriving"
NO_DATA = "No data"

_LEADING_DIGITS = re.compile(r"^\s*(\d+)")


def parse_eta(raw: Any, now: datetime) -> timedelta | None:
    """Time until an ISO-8601 arrival timestamp; None when blank or unparsable."""
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        arrival = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if arrival.tzinfo is None:
        arrival = arrival.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return arrival - now


def eta_minutes(eta: timedelta) -> int:
    return round(eta.total_seconds() / 60)


def format_eta(eta: timedelta | None) -> str:
    """User-facing ETA: "Arriving", "1 min", "N mins" or "No data"."""
    if eta is None:
        return NO_DATA
    minutes = eta_minutes(eta)
    if minutes > MAX_ETA_MINUTES:
        return NO_DATA
    if minutes <= 0:
        return ARRIVING
    if minutes == 1:
        return "1 min"
    return f"{minutes} mins"


def service_sort_key(service_id: str) -> int:
    """Leading integer of the service number ("151A" -> 151); 999 otherwise."""
    m = _LEADING_DIGITS.match(service_id or "")
    if not m or int(m.group(1)) == 0:
        return NON_NUMERIC_SERVICE_RANK
    return int(m.group(1))


def _next_bus(raw: dict[str, Any], key: str) -> dict[str, Any]:
    value = raw.get(key)
    return value if isinstance(value, dict) else {}


def _parse_prediction(raw: dict[str, Any], now: datetime) -> Prediction:
    first = _next_bus(raw, "NextBus")
    second = _next_bus(raw, "NextBus2")
    monitored = first.get("Monitored")
    return Prediction(
        service_id=str(raw.get("ServiceNo") or "").strip(),
        eta_primary=parse_eta(first.get("EstimatedArrival"), now),
        eta_secondary=parse_eta(second.get("EstimatedArrival"), now),
        load_primary=LoadLevel.from_code(first.get("Load")),
        load_secondary=LoadLevel.from_code(second.get("Load")),
        monitored=monitored in (1, "1", True),
    )


def parse_predictions(payload: Any, now: datetime) -> list[Prediction]:
    """Parse a bus arrival payload; unrecognized shapes yield no predictions."""
    services = None
    if isinstance(payload, dict):
        services = payload.get("Services")
    elif isinstance(payload, list):
        services = payload
    if not isinstance(services, list):
        logger.warning("telemetry arrivals_malformed_payload type=%s", type(payload).__name__)
        return []
    return [_parse_prediction(s, now) for s in services if isinstance(s, dict)]


def select_displayable(predictions: list[Prediction], limit: int = MAX_SERVICES_PER_STOP) -> list[Prediction]:
    """
    Keep predictions with a usable primary ETA (present and at most an hour
    out), order by service number, truncate to limit.
    """
    usable = [
        p for p in predictions
        if p.eta_primary is not None and eta_minutes(p.eta_primary) <= MAX_ETA_MINUTES
    ]
    usable.sort(key=lambda p: service_sort_key(p.service_id))
    return usable[:limit]


class ArrivalService:
    """Fetches and normalizes bus arrivals for stops."""

    def __init__(
        self,
        client: DataMallClient,
        *,
        resource: str = ARRIVALS_RESOURCE,
        fallback_resource: str | None = ARRIVALS_FALLBACK_RESOURCE,
        max_concurrency: int = MAX_CONCURRENT_STOP_FETCHES,
    ):
        self._client = client
        self._resource = resource
        self._fallback_resource = fallback_resource
        self._max_concurrency = max(1, max_concurrency)

    async def fetch_predictions(self, stop_code: str, now: datetime | None = None) -> list[Prediction]:
        """
        All services at a stop. Falls back to the alternate resource path once
        when the primary path answers 404.
        Raises TransientRequestFailure or DiscoveryExhausted.
        """
        params = {"BusStopCode": stop_code}
        try:
            payload = await self._client.get(self._resource, params)
        except TransientRequestFailure as e:
            if e.status_code != 404 or not self._fallback_resource:
                raise
            logger.warning(
                "telemetry arrivals_resource_not_found resource=%s fallback=%s stop_code=%s",
                self._resource,
                self._fallback_resource,
                stop_code,
            )
            payload = await self._client.get(self._fallback_resource, params)
        predictions = parse_predictions(payload, now or datetime.now(timezone.utc))
        logger.info(
            "telemetry arrivals_fetched stop_code=%s services=%s",
            stop_code,
            len(predictions),
            extra={"stop_code": stop_code, "count": len(predictions)},
        )
        return predictions

    async def displayable_for(self, stop_code: str) -> list[Prediction] | None:
        """Displayable predictions, or None when this stop's fetch failed."""
        try:
            return select_displayable(await self.fetch_predictions(stop_code))
        except (TransientRequestFailure, MalformedUpstreamPayload) as e:
            logger.warning(
                "telemetry arrivals_unavailable stop_code=%s error=%s",
                stop_code,
                str(e),
                extra={"stop_code": stop_code, "error": str(e)},
            )
            return None

    async def fetch_for_stops(self, stop_codes: list[str]) -> dict[str, list[Prediction] | None]:
        """
        Displayable predictions for several stops, fetched concurrently.
        Keys follow the order of stop_codes. DiscoveryExhausted propagates.
        """
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def one(code: str) -> list[Prediction] | None:
            async with semaphore:
                return await self.displayable_for(code)

        results = await asyncio.gather(*(one(code) for code in stop_codes))
        return dict(zip(stop_codes, results))
