"""In-memory activity / session / insight stores.

本番ではDBに置き換える前提の最小実装。コアはここから読み出すだけ。
"""

import bisect
from collections import defaultdict
from dataclasses import dataclass, field

from src.model.models import (
    ActivityEvent,
    DistractionPattern,
    EventType,
    Session,
    SessionInsights,
    SessionSummary,
)


class SessionNotFoundError(LookupError):
    """指定されたセッションが存在しない."""


class ActivityStore:
    """セッションごとの行動イベント (timestamp 昇順)."""

    def __init__(self) -> None:
        self._by_session: dict[str, list[ActivityEvent]] = defaultdict(list)

    def add(self, event: ActivityEvent) -> ActivityEvent:
        events = self._by_session[event.session_id]
        # 同時刻のイベントは到着順
        bisect.insort_right(events, event, key=lambda e: e.timestamp)
        return event

    def find_by_session_id(
        self,
        session_id: str,
        event_type: EventType | None = None,
    ) -> list[ActivityEvent]:
        events = self._by_session.get(session_id, [])
        if event_type is None:
            return list(events)
        return [e for e in events if e.event_type == event_type]

    def recent(self, session_id: str, limit: int = 50) -> list[ActivityEvent]:
        """直近 ``limit`` 件を昇順で返す."""
        events = self._by_session.get(session_id, [])
        return list(events[-limit:]) if limit > 0 else []

    def count(self, session_id: str) -> int:
        return len(self._by_session.get(session_id, []))


class SessionStore:
    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    def create(self, session_id: str, start_time: int) -> Session:
        """セッションを作成する. 既存IDの場合はそのまま返す."""
        existing = self._sessions.get(session_id)
        if existing is not None:
            return existing
        session = Session(id=session_id, start_time=start_time)
        self._sessions[session_id] = session
        return session

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            msg = f"Session not found: {session_id}"
            raise SessionNotFoundError(msg)
        return session

    def end(self, session_id: str, end_time: int, focus_score: float | None) -> Session:
        session = self.require(session_id)
        session.end_time = end_time
        session.focus_score = focus_score
        session.status = "completed"
        return session

    def completed(self, exclude: str | None = None, limit: int = 10) -> list[Session]:
        """完了済みセッションを新しい順に返す."""
        sessions = [
            s
            for s in self._sessions.values()
            if s.status == "completed" and s.id != exclude
        ]
        sessions.sort(key=lambda s: s.start_time, reverse=True)
        return sessions[:limit]


@dataclass
class FullSessionInsights:
    session_id: str
    focus_score: float
    insights: SessionInsights
    recommendations: list[str]
    patterns: list[DistractionPattern] = field(default_factory=list)
    statistics: SessionSummary | None = None
    ai_generated: bool = False


class InsightStore:
    def __init__(self) -> None:
        self._by_session: dict[str, list[FullSessionInsights]] = defaultdict(list)

    def save(self, insights: FullSessionInsights) -> None:
        self._by_session[insights.session_id].append(insights)

    def find_latest(self, session_id: str) -> FullSessionInsights | None:
        stored = self._by_session.get(session_id)
        return stored[-1] if stored else None
