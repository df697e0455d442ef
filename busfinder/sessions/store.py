"""
Per-user session state: last shared location, pending free-text search flag,
and search preferences. In-memory only, bounded as an LRU keyed by user id.
"""
import logging
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from threading import Lock

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_RADIUS_M = 50
DEFAULT_MAX_STOPS = 3
DEFAULT_MAX_SESSIONS = 10_000

SEARCH_RADIUS_M_MIN, SEARCH_RADIUS_M_MAX = 10, 5000
MAX_STOPS_MIN, MAX_STOPS_MAX = 1, 15

PREFERENCE_BOUNDS = {
    "search_radius_m": (SEARCH_RADIUS_M_MIN, SEARCH_RADIUS_M_MAX),
    "max_stops": (MAX_STOPS_MIN, MAX_STOPS_MAX),
}


def validate_preference(field_name: str, value: int) -> int:
    bounds = PREFERENCE_BOUNDS.get(field_name)
    if bounds is None:
        raise ValueError(f"Unknown preference: {field_name}")
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{field_name} must be an integer")
    lo, hi = bounds
    if not (lo <= value <= hi):
        raise ValueError(f"{field_name} must be between {lo} and {hi}")
    return value


@dataclass(frozen=True)
class UserPreferences:
    search_radius_m: int = DEFAULT_SEARCH_RADIUS_M
    max_stops: int = DEFAULT_MAX_STOPS


@dataclass
class UserSession:
    user_id: str
    last_latitude: float | None = None
    last_longitude: float | None = None
    last_fetched_at: datetime | None = None
    awaiting_free_text_query: bool = False
    preferences: UserPreferences | None = None

    @property
    def has_location(self) -> bool:
        return self.last_latitude is not None and self.last_longitude is not None


@dataclass
class SessionStore:
    """Thread-safe, size-bounded store of UserSession objects."""

    default_preferences: UserPreferences = field(default_factory=UserPreferences)
    max_sessions: int = DEFAULT_MAX_SESSIONS
    _sessions: "OrderedDict[str, UserSession]" = field(default_factory=OrderedDict, init=False, repr=False)
    _lock: Lock = field(default_factory=Lock, init=False, repr=False)

    def _touch(self, user_id: str) -> UserSession:
        """Get or create the session and mark it most recently used. Caller holds the lock."""
        session = self._sessions.get(user_id)
        if session is None:
            session = UserSession(user_id=user_id)
            self._sessions[user_id] = session
            while len(self._sessions) > self.max_sessions:
                evicted, _ = self._sessions.popitem(last=False)
                logger.info("telemetry session_evicted user_id=%s", evicted)
        else:
            self._sessions.move_to_end(user_id)
        return session

    def get_session(self, user_id: str) -> UserSession | None:
        with self._lock:
            session = self._sessions.get(user_id)
            return replace(session) if session is not None else None

    def record_location(self, user_id: str, lat: float, lng: float, now: datetime | None = None) -> UserSession:
        with self._lock:
            session = self._touch(user_id)
            session.last_latitude = lat
            session.last_longitude = lng
            session.last_fetched_at = now or datetime.now(timezone.utc)
            session.awaiting_free_text_query = False
            return replace(session)

    def mark_awaiting_text(self, user_id: str, awaiting: bool) -> None:
        with self._lock:
            self._touch(user_id).awaiting_free_text_query = awaiting

    def is_awaiting_text(self, user_id: str) -> bool:
        with self._lock:
            session = self._sessions.get(user_id)
            return bool(session and session.awaiting_free_text_query)

    def get_or_default_preferences(self, user_id: str) -> UserPreferences:
        with self._lock:
            session = self._sessions.get(user_id)
            if session is None or session.preferences is None:
                return self.default_preferences
            return session.preferences

    def set_preference(self, user_id: str, field_name: str, value: int) -> UserPreferences:
        """Set one preference. Raises ValueError for unknown fields or out-of-range values."""
        validate_preference(field_name, value)
        with self._lock:
            session = self._touch(user_id)
            current = session.preferences or self.default_preferences
            session.preferences = replace(current, **{field_name: value})
            return session.preferences

    def active_count(self) -> int:
        with self._lock:
            return len(self._sessions)
