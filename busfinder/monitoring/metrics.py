"""In-memory request and upstream-call metrics for the /metrics endpoint."""
import time
from collections.abc import MutableMapping
from threading import Lock

_start_time = time.monotonic()
_counts: MutableMapping[str, int] = {}
_lock = Lock()


def _incr(bucket: str) -> None:
    with _lock:
        _counts[bucket] = _counts.get(bucket, 0) + 1


def record_request(status_code: int) -> None:
    if 200 <= status_code < 300:
        bucket = "2xx"
    elif 400 <= status_code < 500:
        bucket = "4xx"
    elif status_code >= 500:
        bucket = "5xx"
    else:
        bucket = "other"
    _incr(bucket)


def record_upstream_call(ok: bool) -> None:
    _incr("upstream_ok" if ok else "upstream_failed")


def record_geocode(provenance: str | None) -> None:
    _incr(f"geocode_{provenance or 'not_found'}")


def get_metrics() -> dict:
    with _lock:
        counts = dict(_counts)
    uptime_seconds = time.monotonic() - _start_time
    request_buckets = ("2xx", "4xx", "5xx", "other")
    return {
        "requests_total": sum(counts.get(b, 0) for b in request_buckets),
        "requests_2xx": counts.get("2xx", 0),
        "requests_4xx": counts.get("4xx", 0),
        "requests_5xx": counts.get("5xx", 0),
        "upstream_ok": counts.get("upstream_ok", 0),
        "upstream_failed": counts.get("upstream_failed", 0),
        "geocode": {k[len("geocode_"):]: v for k, v in counts.items() if k.startswith("geocode_")},
        "uptime_seconds": round(uptime_seconds, 1),
    }
