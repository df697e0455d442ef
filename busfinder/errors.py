"""Error types raised by the bus finder core."""


class BusFinderError(Exception):
    """Base class for core errors."""


class DiscoveryExhausted(BusFinderError):
    """No base URL / auth scheme combination returned a usable payload."""

    def __init__(self, message: str = "Transit data service unavailable (no working endpoint)."):
        super().__init__(message)


class TransientRequestFailure(BusFinderError, RuntimeError):
    """A request kept failing after the retry budget was spent."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class EmptyDataset(BusFinderError):
    """Bulk stop fetch completed but returned no stops."""


class MalformedUpstreamPayload(BusFinderError, ValueError):
    """Upstream payload shape was not recognized."""
