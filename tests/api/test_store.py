import pytest

from src.api.services.store import ActivityStore, SessionNotFoundError, SessionStore
from tests.helpers import NOW, make_event


class TestActivityStore:
    """行動ログストアのテスト"""

    def test_events_are_kept_in_timestamp_order(self):
        store = ActivityStore()
        for offset in (30, 10, 20):
            store.add(make_event("typing", timestamp=NOW + offset))

        timestamps = [e.timestamp for e in store.find_by_session_id("sess-1")]
        assert timestamps == [NOW + 10, NOW + 20, NOW + 30]

    def test_same_timestamp_keeps_arrival_order(self):
        store = ActivityStore()
        store.add(make_event("typing", url="https://a.dev/"))
        store.add(make_event("typing", url="https://b.dev/"))

        assert [e.url for e in store.find_by_session_id("sess-1")] == [
            "https://a.dev/",
            "https://b.dev/",
        ]

    def test_filter_by_event_type(self):
        store = ActivityStore()
        store.add(make_event("typing"))
        store.add(make_event("tab_switch"))

        assert [e.event_type for e in store.find_by_session_id("sess-1", "tab_switch")] == [
            "tab_switch"
        ]
        assert store.find_by_session_id("other") == []

    def test_recent_window(self):
        store = ActivityStore()
        for offset in range(10):
            store.add(make_event("typing", timestamp=NOW + offset))

        recent = store.recent("sess-1", limit=3)

        assert [e.timestamp for e in recent] == [NOW + 7, NOW + 8, NOW + 9]
        assert store.recent("sess-1", limit=0) == []


class TestSessionStore:
    """セッションストアのテスト"""

    def test_create_is_idempotent(self):
        store = SessionStore()
        first = store.create("s1", NOW)

        assert store.create("s1", NOW + 1) is first

    def test_require_unknown(self):
        with pytest.raises(SessionNotFoundError, match="missing"):
            SessionStore().require("missing")

    def test_completed_newest_first(self):
        store = SessionStore()
        for index in range(3):
            store.create(f"s{index}", NOW + index)
            store.end(f"s{index}", NOW + 100, 50.0 + index)
        store.create("active", NOW + 10)

        completed = store.completed(exclude="s2")

        assert [s.id for s in completed] == ["s1", "s0"]
        assert all(s.status == "completed" for s in completed)
