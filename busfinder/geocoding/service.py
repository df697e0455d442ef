"""
Free-text place name -> coordinates, through an ordered chain of strategies:

1. OneMap with the raw query
2. Nominatim with the query plus the country
3. Nominatim with augmented queries ("<q> MRT station", "<q> mall", ...)
4. Local gazetteer, exact name
5. Local gazetteer, substring either way

The first strategy that yields a hit wins. Running out of strategies returns
None: an unknown place is an expected outcome, not an error.
"""
import logging
from enum import Enum
from typing import Awaitable, Callable, NamedTuple, Protocol

from busfinder.cache import TTLCache
from busfinder.data.gazetteer import Gazetteer
from busfinder.fallback import first_success
from busfinder.geocoding.providers import ProviderHit
from busfinder.monitoring.metrics import record_geocode

logger = logging.getLogger(__name__)

COUNTRY = "Singapore"
AUGMENT_TERMS = ("MRT station", "bus interchange", "mall")
MAX_QUERY_LEN = 200


class Provenance(str, Enum):
    PRIMARY = "onemap"
    SECONDARY = "nominatim"
    AUGMENTED = "nominatim_augmented"
    GAZETTEER_EXACT = "gazetteer_exact"
    GAZETTEER_PARTIAL = "gazetteer_partial"


class GeocodeResult(NamedTuple):
    latitude: float
    longitude: float
    display_address: str
    provenance: Provenance


class Strategy(NamedTuple):
    name: str
    run: Callable[[str], Awaitable["GeocodeResult | None"]]

    def __str__(self) -> str:
        return self.name


class Provider(Protocol):
    async def search(self, query: str) -> ProviderHit | None: ...


def augmented_queries(query: str, country: str = COUNTRY, terms: tuple[str, ...] = AUGMENT_TERMS) -> list[str]:
    return [f"{query} {term}, {country}" for term in terms]


class Geocoder:
    def __init__(
        self,
        primary: Provider,
        secondary: Provider,
        gazetteer: Gazetteer | None = None,
        *,
        country: str = COUNTRY,
        augment_terms: tuple[str, ...] = AUGMENT_TERMS,
        cache: TTLCache | None = None,
    ):
        self._primary = primary
        self._secondary = secondary
        self._gazetteer = gazetteer if gazetteer is not None else Gazetteer()
        self._country = country
        self._augment_terms = augment_terms
        self._cache = cache if cache is not None else TTLCache()

    async def _primary_lookup(self, query: str) -> GeocodeResult | None:
        hit = await self._primary.search(query)
        return _from_hit(hit, Provenance.PRIMARY)

    async def _secondary_lookup(self, query: str) -> GeocodeResult | None:
        hit = await self._secondary.search(f"{query}, {self._country}")
        return _from_hit(hit, Provenance.SECONDARY)

    async def _augmented_lookup(self, query: str) -> GeocodeResult | None:
        async def attempt(q: str) -> ProviderHit | None:
            return await self._secondary.search(q)

        found = await first_success(
            augmented_queries(query, self._country, self._augment_terms),
            attempt,
            label="geocode_augmented",
        )
        return _from_hit(found[1], Provenance.AUGMENTED) if found else None

    async def _gazetteer_exact(self, query: str) -> GeocodeResult | None:
        place = self._gazetteer.lookup_exact(query)
        if place is None:
            return None
        return GeocodeResult(place.lat, place.lng, place.name.title(), Provenance.GAZETTEER_EXACT)

    async def _gazetteer_partial(self, query: str) -> GeocodeResult | None:
        place = self._gazetteer.lookup_partial(query)
        if place is None:
            return None
        return GeocodeResult(place.lat, place.lng, place.name.title(), Provenance.GAZETTEER_PARTIAL)

    def strategies(self) -> list[Strategy]:
        return [
            Strategy(Provenance.PRIMARY.value, self._primary_lookup),
            Strategy(Provenance.SECONDARY.value, self._secondary_lookup),
            Strategy(Provenance.AUGMENTED.value, self._augmented_lookup),
            Strategy(Provenance.GAZETTEER_EXACT.value, self._gazetteer_exact),
            Strategy(Provenance.GAZETTEER_PARTIAL.value, self._gazetteer_partial),
        ]

    async def resolve(self, text: str) -> GeocodeResult | None:
        """Resolve a place name. Never raises for provider failures; None if nothing matched."""
        query = " ".join((text or "").split())[:MAX_QUERY_LEN]
        if not query:
            return None
        cache_key = query.lower()
        cached = self._cache.get(cache_key)
        if cached is not None:
            logger.info("telemetry geocode_served cache_hit=true provenance=%s", cached.provenance.value)
            return cached

        async def run(strategy: Strategy) -> GeocodeResult | None:
            return await strategy.run(query)

        found = await first_success(self.strategies(), run, label="geocode")
        if found is None:
            logger.info("telemetry geocode_not_found q=%s", query[:50])
            record_geocode(None)
            return None
        result = found[1]
        record_geocode(result.provenance.value)
        logger.info(
            "telemetry geocode_resolved provenance=%s q=%s",
            result.provenance.value,
            query[:50],
            extra={"provenance": result.provenance.value},
        )
        self._cache.set(cache_key, result)
        return result


def _from_hit(hit: ProviderHit | None, provenance: Provenance) -> GeocodeResult | None:
    if hit is None:
        return None
    return GeocodeResult(hit.lat, hit.lng, hit.display_name, provenance)
