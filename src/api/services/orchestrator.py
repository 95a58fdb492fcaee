"""Real-time loop: activity event -> pattern check -> at most one intervention."""

import asyncio
import logging
import secrets
from collections.abc import Callable, Coroutine
from typing import Any

from src.api.services.coach import CoachService, fallback_intervention_text
from src.api.services.delivery import DeliveryHub
from src.api.services.insights import InsightsService
from src.api.services.rate_limiter import (
    DEFAULT_MIN_INTERVENTION_INTERVAL_MS,
    RateLimiter,
)
from src.api.services.store import ActivityStore, SessionStore
from src.model.models import (
    ActivityEvent,
    DistractionPattern,
    InterventionPayload,
    InterventionPriority,
    InterventionType,
    Session,
    now_ms,
)
from src.patterns.analysis import PatternAnalysisService

logger = logging.getLogger("flowstate.orchestrator")

INTERVENTION_EVENT = "intervention:send"
FOCUS_EVENT = "focus:update"
SESSION_EVENT = "session:update"

_URGENCY: dict[str, tuple[InterventionType, InterventionPriority]] = {
    "social_media_spiral": ("alert", "high"),
    "context_switching": ("alert", "high"),
    "extended_idle": ("suggestion", "medium"),
    "fragmented_focus": ("question", "low"),
}
_DEFAULT_URGENCY: tuple[InterventionType, InterventionPriority] = ("suggestion", "low")


def intervention_urgency(
    pattern: DistractionPattern,
) -> tuple[InterventionType, InterventionPriority]:
    """パターン種別から配信用の (type, priority) を決める."""
    return _URGENCY.get(pattern.type, _DEFAULT_URGENCY)


def _intervention_id() -> str:
    return f"int_{now_ms()}_{secrets.token_hex(3)}"


class InterventionOrchestrator:
    """行動イベントごとに分析し、必要なら介入メッセージを1件だけ配信する.

    推論の失敗はログに残して破棄する。イベントの取り込みを止めることはない。
    ``coach`` が None の場合はAIを呼ばず、固定文面で介入する。
    """

    def __init__(  # noqa: PLR0913
        self,
        activities: ActivityStore,
        sessions: SessionStore,
        analysis: PatternAnalysisService,
        delivery: DeliveryHub,
        rate_limiter: RateLimiter,
        coach: CoachService | None = None,
        insights: InsightsService | None = None,
        *,
        recent_window: int = 50,
        min_intervention_interval_ms: int = DEFAULT_MIN_INTERVENTION_INTERVAL_MS,
        clock: Callable[[], int] = now_ms,
        publish_focus_updates: bool = True,
    ) -> None:
        self.activities = activities
        self.sessions = sessions
        self.analysis = analysis
        self.delivery = delivery
        self.rate_limiter = rate_limiter
        self.coach = coach
        self.insights = insights
        self.recent_window = recent_window
        self.min_intervention_interval_ms = min_intervention_interval_ms
        self.publish_focus_updates = publish_focus_updates
        self._clock = clock
        self._in_flight: set[str] = set()
        self._tasks: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # activity ingestion

    async def handle_activity(self, event: ActivityEvent) -> InterventionPayload | None:
        """イベントを保存し、パターンがあれば介入する. 例外は送出しない."""
        self.activities.add(event)
        return await self.process_session(event.session_id)

    def submit(self, event: ActivityEvent) -> "asyncio.Task[InterventionPayload | None]":
        """イベントを保存し、分析と介入はバックグラウンドで行う."""
        self.activities.add(event)
        return self._spawn(self.process_session(event.session_id))

    async def process_session(self, session_id: str) -> InterventionPayload | None:
        """直近のイベントを分析して介入する. 例外は送出しない."""
        try:
            payload = await self._maybe_intervene(session_id)
        except Exception:
            logger.exception("Intervention failed for session %s", session_id)
            payload = None

        if self.publish_focus_updates and self.delivery.listener_count(session_id):
            self.publish_focus_update(session_id)
        return payload

    async def run(self, inbound: "asyncio.Queue[ActivityEvent | None]") -> None:
        """受信キューを消費する. ``None`` を受け取ると終了する."""
        while True:
            event = await inbound.get()
            try:
                if event is None:
                    return
                await self.handle_activity(event)
            finally:
                inbound.task_done()

    def _is_active(self, session_id: str) -> bool:
        session = self.sessions.get(session_id)
        return session is not None and session.status == "active"

    async def _maybe_intervene(self, session_id: str) -> InterventionPayload | None:
        if not self._is_active(session_id):
            return None
        recent = self.activities.recent(session_id, self.recent_window)
        patterns = self.analysis.analyze_realtime(recent, now=self._clock())
        if not patterns:
            return None

        # 同時に複数検出されても介入は1件だけ
        pattern = patterns[0]
        if session_id in self._in_flight:
            logger.debug("Intervention already in flight for %s", session_id)
            return None
        if not self.rate_limiter.can_send_intervention(
            session_id, self.min_intervention_interval_ms
        ):
            logger.debug("Intervention throttled for session %s", session_id)
            return None

        self._in_flight.add(session_id)
        try:
            message = await self._intervention_text(pattern)
        finally:
            self._in_flight.discard(session_id)

        # 生成中にセッションが終了した場合は記録も配信もしない
        if not self._is_active(session_id):
            logger.debug("Session %s ended before intervention was sent", session_id)
            return None

        self.rate_limiter.record_intervention(session_id)
        kind, priority = intervention_urgency(pattern)
        payload = InterventionPayload(
            intervention_id=_intervention_id(),
            session_id=session_id,
            message=message,
            type=kind,
            priority=priority,
            timestamp=self._clock(),
            pattern_type=pattern.type,
            severity=pattern.severity,
        )
        delivered = self.delivery.deliver(session_id, INTERVENTION_EVENT, payload)
        logger.info(
            "Sent %s intervention (%s) to %d listener(s) for session %s",
            pattern.type,
            pattern.severity,
            delivered,
            session_id,
        )
        return payload

    async def _intervention_text(self, pattern: DistractionPattern) -> str:
        if self.coach is None:
            return fallback_intervention_text(pattern)
        intervention = await self.coach.generate_intervention(pattern)
        return intervention.message

    # ------------------------------------------------------------------
    # session lifecycle

    def start_session(self, session_id: str, start_time: int | None = None) -> Session:
        session = self.sessions.create(
            session_id, self._clock() if start_time is None else start_time
        )
        self.delivery.deliver(
            session_id,
            SESSION_EVENT,
            {"session_id": session_id, "status": session.status},
        )
        return session

    def end_session(self, session_id: str, end_time: int | None = None) -> Session:
        """フォーカススコアを確定し、セッションを完了にする.

        Raises:
            SessionNotFoundError: 未知のセッションID

        """
        session = self.sessions.require(session_id)
        finished_at = self._clock() if end_time is None else end_time
        activities = self.activities.find_by_session_id(session_id)
        score = self.analysis.calculator.calculate(
            activities, finished_at - session.start_time
        )
        session = self.sessions.end(session_id, finished_at, score.overall)
        self.rate_limiter.clear_session(session_id)

        if self.insights is not None and activities:
            self._spawn(self._generate_insights(session))

        self.delivery.deliver(
            session_id,
            SESSION_EVENT,
            {
                "session_id": session_id,
                "status": session.status,
                "focus_score": session.focus_score,
                "end_time": session.end_time,
            },
        )
        logger.info("Session %s ended with focus score %.1f", session_id, score.overall)
        return session

    async def _generate_insights(self, session: Session) -> None:
        assert self.insights is not None  # noqa: S101
        try:
            await self.insights.generate_session_insights(session)
        except Exception:
            logger.exception("Failed to generate insights for session %s", session.id)

    def publish_focus_update(self, session_id: str) -> int:
        """現在のフォーカススコア (4成分 + 総合) を配信する."""
        session = self.sessions.get(session_id)
        if session is None:
            return 0
        now = self._clock()
        end_time = session.end_time if session.end_time is not None else now
        score = self.analysis.calculator.calculate(
            self.activities.find_by_session_id(session_id),
            end_time - session.start_time,
        )
        return self.delivery.deliver(
            session_id,
            FOCUS_EVENT,
            {
                "session_id": session_id,
                "focus_score": score.overall,
                "components": {
                    "typing_consistency": score.typing_consistency,
                    "low_context_switching": score.low_context_switching,
                    "minimal_idle": score.minimal_idle,
                    "site_focus": score.site_focus,
                },
                "timestamp": now,
            },
        )

    # ------------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> "asyncio.Task[Any]":
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """バックグラウンドタスクの完了を待つ."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
