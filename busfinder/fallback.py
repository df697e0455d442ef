"""
"First success wins" combinator shared by endpoint discovery and geocoding.
"""
import logging
from typing import Awaitable, Callable, Iterable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


async def first_success(
    candidates: Iterable[T],
    attempt: Callable[[T], Awaitable[R | None]],
    *,
    label: str = "fallback",
) -> tuple[T, R] | None:
    """
    Try each candidate in order and return (candidate, result) for the first
    one whose attempt returns a truthy result. Exceptions are logged and the
    chain moves on. Returns None when every candidate is exhausted.
    """
    for candidate in candidates:
        try:
            result = await attempt(candidate)
        except Exception as e:
            logger.warning(
                "telemetry %s_candidate_failed candidate=%s error=%s",
                label,
                candidate,
                str(e),
                extra={"candidate": str(candidate), "error": str(e)},
            )
            continue
        if result:
            logger.info("telemetry %s_candidate_succeeded candidate=%s", label, candidate)
            return candidate, result
        logger.info("telemetry %s_candidate_empty candidate=%s", label, candidate)
    return None
