"""Tests for SessionStore: locations, awaiting-text flag, preferences, LRU bound."""
from datetime import datetime, timezone

import pytest

from busfinder.sessions.store import SessionStore, UserPreferences, validate_preference


def test_new_user_gets_defaults():
    store = SessionStore()
    assert store.get_session("u1") is None
    assert store.get_or_default_preferences("u1") == UserPreferences(search_radius_m=50, max_stops=3)


def test_record_location_clears_awaiting_flag():
    store = SessionStore()
    store.mark_awaiting_text("u1", True)
    assert store.is_awaiting_text("u1")

    at = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)
    session = store.record_location("u1", 1.30, 103.85, now=at)

    assert session.has_location
    assert session.last_fetched_at == at
    assert not store.is_awaiting_text("u1")


def test_get_session_returns_copy():
    store = SessionStore()
    store.record_location("u1", 1.30, 103.85)
    copy = store.get_session("u1")
    copy.last_latitude = 0.0
    assert store.get_session("u1").last_latitude == 1.30


def test_set_preference_is_per_user():
    store = SessionStore()
    prefs = store.set_preference("u1", "search_radius_m", 400)
    assert prefs == UserPreferences(search_radius_m=400, max_stops=3)
    store.set_preference("u1", "max_stops", 10)
    assert store.get_or_default_preferences("u1") == UserPreferences(search_radius_m=400, max_stops=10)
    assert store.get_or_default_preferences("u2") == UserPreferences()


@pytest.mark.parametrize(
    "field_name,value",
    [
        ("search_radius_m", 9),
        ("search_radius_m", 5001),
        ("max_stops", 0),
        ("max_stops", 16),
        ("max_stops", True),
        ("max_stops", "5"),
        ("colour", 3),
    ],
)
def test_invalid_preference_rejected(field_name, value):
    store = SessionStore()
    with pytest.raises(ValueError):
        store.set_preference("u1", field_name, value)
    assert store.get_or_default_preferences("u1") == UserPreferences()


@pytest.mark.parametrize("field_name,value", [("search_radius_m", 10), ("search_radius_m", 5000), ("max_stops", 1), ("max_stops", 15)])
def test_preference_bounds_inclusive(field_name, value):
    assert validate_preference(field_name, value) == value


def test_least_recently_used_session_evicted():
    store = SessionStore(max_sessions=2)
    store.record_location("u1", 1.30, 103.85)
    store.record_location("u2", 1.31, 103.86)
    store.mark_awaiting_text("u1", True)  # touches u1
    store.record_location("u3", 1.32, 103.87)

    assert store.active_count() == 2
    assert store.get_session("u2") is None
    assert store.get_session("u1") is not None
    assert store.get_session("u3") is not None


def test_custom_default_preferences():
    store = SessionStore(default_preferences=UserPreferences(search_radius_m=300, max_stops=5))
    assert store.get_or_default_preferences("anyone").search_radius_m == 300
