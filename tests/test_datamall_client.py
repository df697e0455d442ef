"""Unit tests for DataMallClient: discovery, pinning, retry/backoff, normalization."""
import asyncio

import httpx
import pytest

from busfinder.datamall.client import (
    ACCOUNT_KEY,
    API_KEY_HEADER,
    BEARER,
    normalize_payload,
)
from busfinder.datamall.retry import RetryPolicy
from busfinder.errors import DiscoveryExhausted, TransientRequestFailure
from busfinder.fallback import first_success

STOP_RECORD = {"BusStopCode": "01012", "Description": "Hotel Grand Pacific", "Latitude": 1.2968, "Longitude": 103.8525}


def _auth_used(request: httpx.Request) -> str:
    if request.headers.get("AccountKey"):
        return "account_key"
    if request.headers.get("Authorization", "").startswith("Bearer "):
        return "bearer"
    if request.headers.get("X-API-Key"):
        return "api_key"
    return "none"


# --- Normalization ---


def test_normalize_value_envelope():
    assert normalize_payload({"odata.metadata": "x", "value": [1, 2]}) == [1, 2]


def test_normalize_data_envelope():
    assert normalize_payload({"data": [{"a": 1}]}) == [{"a": 1}]


def test_normalize_bare_list():
    assert normalize_payload([{"a": 1}]) == [{"a": 1}]


def test_normalize_unrecognized_object_returned_raw():
    raw = {"BusStopCode": "83139", "Services": []}
    assert normalize_payload(raw) is raw


def test_auth_scheme_headers():
    assert ACCOUNT_KEY.headers("k") == {"AccountKey": "k"}
    assert BEARER.headers("k") == {"Authorization": "Bearer k"}
    assert API_KEY_HEADER.headers("k") == {"X-API-Key": "k"}


# --- Discovery ---


def test_discovery_tries_auth_schemes_then_base_urls_in_order(make_client):
    seen: list[tuple[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.host, _auth_used(request)))
        if request.url.host == "fallback.test" and _auth_used(request) == "bearer":
            return httpx.Response(200, json={"value": [STOP_RECORD]})
        return httpx.Response(401, json={"fault": "unauthorized"})

    client = make_client(handler)
    working = asyncio.run(client.discover())

    assert working is not None
    assert working.base_url == "http://fallback.test/ltaodataservice"
    assert working.auth_scheme == BEARER
    assert seen == [
        ("primary.test", "account_key"),
        ("primary.test", "bearer"),
        ("primary.test", "api_key"),
        ("fallback.test", "account_key"),
        ("fallback.test", "bearer"),
    ]


def test_discovery_requests_one_record(make_client):
    params = []

    def handler(request: httpx.Request) -> httpx.Response:
        params.append(dict(request.url.params))
        assert request.url.path.endswith("/BusStops")
        return httpx.Response(200, json={"value": [STOP_RECORD]})

    asyncio.run(make_client(handler).discover())
    assert params == [{"$skip": "0", "$top": "1"}]


def test_discovery_rejects_empty_payload(make_client):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"value": []})

    client = make_client(handler)
    assert asyncio.run(client.discover()) is None
    assert client.working_endpoint is None


def test_discovery_exhausted_surfaces_on_get(make_client):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = make_client(handler)
    with pytest.raises(DiscoveryExhausted):
        asyncio.run(client.get("BusArrivalv2", {"BusStopCode": "01012"}))


def test_pinned_endpoint_is_not_rediscovered(make_client):
    hosts = []
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params.get("$top") == "1":
            hosts.append(request.url.host)
            if _auth_used(request) != "account_key":
                return httpx.Response(403)
            return httpx.Response(200, json={"value": [STOP_RECORD]})
        requests.append((request.url.host, _auth_used(request)))
        return httpx.Response(200, json={"Services": []})

    client = make_client(handler)

    async def run():
        await client.get("BusArrivalv2", {"BusStopCode": "01012"})
        await client.get("BusArrivalv2", {"BusStopCode": "01013"})
        await client.get("BusArrivalv2", {"BusStopCode": "01019"})

    asyncio.run(run())
    assert hosts == ["primary.test"]
    assert requests == [("primary.test", "account_key")] * 3


def test_retest_discovers_again(make_client):
    hosts = []

    def handler(request: httpx.Request) -> httpx.Response:
        hosts.append(request.url.host)
        return httpx.Response(200, json={"value": [STOP_RECORD]})

    client = make_client(handler)

    async def run():
        await client.discover()
        await client.retest()

    asyncio.run(run())
    assert hosts == ["primary.test", "primary.test"]


def test_failed_request_does_not_drop_pin(make_client):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params.get("$top") == "1":
            return httpx.Response(200, json={"value": [STOP_RECORD]})
        return httpx.Response(500)

    client = make_client(handler)

    async def run():
        await client.discover()
        with pytest.raises(TransientRequestFailure):
            await client.get("BusArrivalv2", {"BusStopCode": "01012"})

    asyncio.run(run())
    assert client.working_endpoint is not None


# --- Retry / backoff ---


def test_retries_with_exponential_backoff_then_raises(make_client, sleeps):
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params.get("$top") == "1":
            return httpx.Response(200, json={"value": [STOP_RECORD]})
        attempts.append(request.url.path)
        return httpx.Response(503)

    client = make_client(handler)
    with pytest.raises(TransientRequestFailure) as exc_info:
        asyncio.run(client.get("BusArrivalv2", {"BusStopCode": "01012"}))

    assert len(attempts) == 3
    assert sleeps.calls == [2.0, 4.0]
    assert exc_info.value.status_code == 503


def test_retry_succeeds_after_transient_timeout(make_client, sleeps):
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params.get("$top") == "1":
            return httpx.Response(200, json={"value": [STOP_RECORD]})
        calls["n"] += 1
        if calls["n"] == 1:
            raise httpx.ReadTimeout("slow", request=request)
        return httpx.Response(200, json={"value": [STOP_RECORD, STOP_RECORD]})

    data = asyncio.run(make_client(handler).get("BusStops", {"$skip": 0}))
    assert data == [STOP_RECORD, STOP_RECORD]
    assert sleeps.calls == [2.0]


def test_invalid_json_is_retried(make_client, sleeps):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params.get("$top") == "1":
            return httpx.Response(200, json={"value": [STOP_RECORD]})
        return httpx.Response(200, content=b"<html>gateway error</html>")

    with pytest.raises(TransientRequestFailure) as exc_info:
        asyncio.run(make_client(handler).get("BusStops"))
    assert exc_info.value.status_code is None
    assert len(sleeps.calls) == 2


def test_404_status_is_reported(make_client):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params.get("$top") == "1":
            return httpx.Response(200, json={"value": [STOP_RECORD]})
        return httpx.Response(404)

    client = make_client(handler, retry_policy=RetryPolicy(max_attempts=1))
    with pytest.raises(TransientRequestFailure) as exc_info:
        asyncio.run(client.get("BusArrivalv2", {"BusStopCode": "01012"}))
    assert exc_info.value.status_code == 404


def test_retry_policy_delays():
    policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=10.0)
    assert [policy.delay_for(a) for a in (1, 2, 3, 4)] == [2.0, 4.0, 8.0, 10.0]
    assert policy.should_retry(4)
    assert not policy.should_retry(5)


def test_status_reports_pinned_endpoint(make_client):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[STOP_RECORD])

    client = make_client(handler)
    assert client.status()["base_url"] is None
    asyncio.run(client.discover())
    status = client.status()
    assert status["base_url"] == "https://primary.test/ltaodataservice"
    assert status["auth_scheme"] == "account_key"
    assert status["candidates"] == 6


# --- first_success combinator ---


def test_first_success_skips_failures_and_empties():
    async def attempt(n: int):
        if n == 1:
            raise RuntimeError("boom")
        if n == 2:
            return None
        return f"hit-{n}"

    assert asyncio.run(first_success([1, 2, 3, 4], attempt)) == (3, "hit-3")


def test_first_success_exhausted_returns_none():
    async def attempt(n: int):
        return []

    assert asyncio.run(first_success([1, 2], attempt)) is None
