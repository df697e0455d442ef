"""
LTA DataMall client: endpoint/auth-scheme discovery, retry with exponential
backoff, and normalization of the response envelopes DataMall has used.
"""
import logging
from typing import Any, NamedTuple

import httpx

from busfinder.datamall.retry import RetryPolicy
from busfinder.errors import DiscoveryExhausted, TransientRequestFailure
from busfinder.fallback import first_success
from busfinder.monitoring.metrics import record_upstream_call

logger = logging.getLogger(__name__)

DATAMALL_BASE_URLS = (
    "https://datamall2.mytransport.sg/ltaodataservice",
    "http://datamall2.mytransport.sg/ltaodataservice",
)
DATAMALL_REQUEST_TIMEOUT_SECONDS = 15.0
DATAMALL_USER_AGENT = "Singapore-Bus-Finder/2.0"
DISCOVERY_RESOURCE = "BusStops"
DISCOVERY_PARAMS = {"$skip": 0, "$top": 1}

# Envelope keys that wrap a record list, in the order they are checked.
_LIST_ENVELOPE_KEYS = ("value", "data")


class AuthScheme(NamedTuple):
    name: str
    header: str
    prefix: str = ""

    def headers(self, api_key: str) -> dict[str, str]:
        return {self.header: f"{self.prefix}{api_key}"}


ACCOUNT_KEY = AuthScheme("account_key", "AccountKey")
BEARER = AuthScheme("bearer", "Authorization", "Bearer ")
API_KEY_HEADER = AuthScheme("api_key", "X-API-Key")
DEFAULT_AUTH_SCHEMES = (ACCOUNT_KEY, BEARER, API_KEY_HEADER)


class EndpointCandidate(NamedTuple):
    base_url: str
    auth_scheme: AuthScheme

    def __str__(self) -> str:
        return f"{self.base_url}[{self.auth_scheme.name}]"


def normalize_payload(raw: Any) -> Any:
    """
    Return the record list out of a DataMall response.
    Handles { value: [...] }, { data: [...] } and bare arrays; anything else is
    returned as-is for the caller to interpret.
    """
    if isinstance(raw, list):
        return raw
    if isinstance(raw, dict):
        for key in _LIST_ENVELOPE_KEYS:
            if isinstance(raw.get(key), list):
                return raw[key]
    return raw


class DataMallClient:
    """
    Client for the LTA DataMall API.

    The base URL and the header that carries the account key are not known up
    front; the first working combination found by discover() is pinned and
    reused until retest() is called.
    """

    def __init__(
        self,
        api_key: str,
        base_urls: tuple[str, ...] | list[str] = DATAMALL_BASE_URLS,
        auth_schemes: tuple[AuthScheme, ...] = DEFAULT_AUTH_SCHEMES,
        *,
        timeout: float = DATAMALL_REQUEST_TIMEOUT_SECONDS,
        retry_policy: RetryPolicy | None = None,
        user_agent: str = DATAMALL_USER_AGENT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api_key = api_key
        self._base_urls = [u.rstrip("/") for u in base_urls if u.strip()]
        self._auth_schemes = tuple(auth_schemes)
        self._timeout = timeout
        self._retry = retry_policy or RetryPolicy()
        self._user_agent = user_agent
        self._transport = transport
        self._working: EndpointCandidate | None = None

    @property
    def working_endpoint(self) -> EndpointCandidate | None:
        return self._working

    def candidates(self) -> list[EndpointCandidate]:
        return [
            EndpointCandidate(base, scheme)
            for base in self._base_urls
            for scheme in self._auth_schemes
        ]

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._timeout,
            headers={"accept": "application/json", "User-Agent": self._user_agent},
            transport=self._transport,
        )

    async def _fetch(self, candidate: EndpointCandidate, resource: str, params: dict[str, Any]) -> Any:
        url = f"{candidate.base_url}/{resource.lstrip('/')}"
        async with self._client() as client:
            resp = await client.get(url, params=params, headers=candidate.auth_scheme.headers(self._api_key))
            resp.raise_for_status()
            return resp.json()

    async def _try_candidate(self, candidate: EndpointCandidate) -> list[Any] | None:
        logger.info("telemetry datamall_try_candidate candidate=%s", candidate)
        data = normalize_payload(await self._fetch(candidate, DISCOVERY_RESOURCE, dict(DISCOVERY_PARAMS)))
        if isinstance(data, list) and data:
            return data
        return None

    async def discover(self) -> EndpointCandidate | None:
        """Try every base URL x auth scheme; pin and return the first that works."""
        found = await first_success(self.candidates(), self._try_candidate, label="datamall_discovery")
        if found is None:
            logger.error("telemetry datamall_discovery_exhausted candidates=%s", len(self.candidates()))
            return None
        self._working = found[0]
        logger.info(
            "telemetry datamall_endpoint_pinned base_url=%s auth=%s",
            self._working.base_url,
            self._working.auth_scheme.name,
        )
        return self._working

    async def retest(self) -> EndpointCandidate | None:
        """Drop the pinned endpoint and run discovery again."""
        self._working = None
        return await self.discover()

    async def get(self, resource: str, params: dict[str, Any] | None = None) -> Any:
        """
        GET a DataMall resource with the pinned endpoint, retrying transient
        failures. Returns the normalized payload.
        Raises DiscoveryExhausted if no endpoint is pinned and none can be found,
        TransientRequestFailure once the retry budget is spent.
        """
        candidate = self._working
        if candidate is None:
            candidate = await self.discover()
            if candidate is None:
                raise DiscoveryExhausted()

        params = dict(params or {})
        last_error: Exception | None = None
        last_status: int | None = None
        attempt = 0
        while True:
            attempt += 1
            logger.info(
                "telemetry datamall_request resource=%s attempt=%s params=%s",
                resource,
                attempt,
                params,
                extra={"resource": resource, "attempt": attempt},
            )
            try:
                data = await self._fetch(candidate, resource, params)
                record_upstream_call(ok=True)
                return normalize_payload(data)
            except httpx.TimeoutException as e:
                last_error = e
                last_status = None
                logger.warning(
                    "telemetry datamall_timeout attempt=%s resource=%s",
                    attempt,
                    resource,
                    extra={"attempt": attempt, "resource": resource},
                )
            except httpx.HTTPStatusError as e:
                last_error = e
                last_status = e.response.status_code
                logger.warning(
                    "telemetry datamall_http_error attempt=%s resource=%s status=%s",
                    attempt,
                    resource,
                    last_status,
                    extra={"attempt": attempt, "resource": resource, "status": last_status},
                )
            except (httpx.HTTPError, ValueError) as e:
                last_error = e
                last_status = None
                logger.warning(
                    "telemetry datamall_api_error attempt=%s resource=%s error=%s",
                    attempt,
                    resource,
                    str(e),
                    extra={"attempt": attempt, "resource": resource, "error": str(e)},
                )
            record_upstream_call(ok=False)
            if not self._retry.should_retry(attempt):
                break
            delay = await self._retry.backoff(attempt)
            logger.info("telemetry datamall_retry resource=%s delay_s=%s", resource, delay)

        msg = f"DataMall {resource} unavailable after {attempt} attempts."
        raise TransientRequestFailure(msg, status_code=last_status) from last_error

    def status(self) -> dict[str, Any]:
        working = self._working
        return {
            "base_url": working.base_url if working else None,
            "auth_scheme": working.auth_scheme.name if working else None,
            "candidates": len(self.candidates()),
        }
