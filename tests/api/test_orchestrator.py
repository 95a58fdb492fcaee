import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from src.api.services.coach import CoachService, fallback_intervention_text
from src.api.services.delivery import DeliveryHub
from src.api.services.insights import InsightsService
from src.api.services.orchestrator import (
    FOCUS_EVENT,
    INTERVENTION_EVENT,
    SESSION_EVENT,
    InterventionOrchestrator,
    intervention_urgency,
)
from src.api.services.rate_limiter import RateLimiter
from src.api.services.store import (
    ActivityStore,
    InsightStore,
    SessionNotFoundError,
    SessionStore,
)
from src.model.models import DistractionPattern
from src.patterns.analysis import PatternAnalysisService
from tests.helpers import MINUTE, NOW, make_event


def _drain_messages(subscription):
    messages = []
    while not subscription.queue.empty():
        messages.append(subscription.queue.get_nowait())
    return messages


class TestInterventionOrchestrator:
    """リアルタイム介入ループのテスト"""

    @pytest.fixture
    def activities(self):
        return ActivityStore()

    @pytest.fixture
    def sessions(self):
        store = SessionStore()
        store.create("sess-1", NOW - 30 * MINUTE)
        return store

    @pytest.fixture
    def delivery(self):
        return DeliveryHub()

    @pytest.fixture
    def limiter(self, clock):
        return RateLimiter(clock=clock)

    @pytest.fixture
    def make_orchestrator(self, activities, sessions, delivery, limiter, clock):
        def factory(coach=None, insights=None, **kwargs):
            return InterventionOrchestrator(
                activities,
                sessions,
                PatternAnalysisService(),
                delivery,
                limiter,
                coach=coach,
                insights=insights,
                clock=clock,
                **kwargs,
            )

        return factory

    @pytest.mark.asyncio
    async def test_no_pattern_no_intervention(self, make_orchestrator, delivery):
        orchestrator = make_orchestrator()
        subscription = delivery.subscribe("sess-1")

        payload = await orchestrator.handle_activity(make_event("typing", typing_velocity=50))

        assert payload is None
        assert [m["event"] for m in _drain_messages(subscription)] == [FOCUS_EVENT]

    @pytest.mark.asyncio
    async def test_single_fire_for_co_occurring_patterns(
        self, make_orchestrator, activities, delivery, context_switch_burst, long_idle_event
    ):
        """context_switching と extended_idle が同時でも介入は1件"""
        for event in context_switch_burst:
            activities.add(event)
        orchestrator = make_orchestrator(publish_focus_updates=False)
        subscription = delivery.subscribe("sess-1")

        payload = await orchestrator.handle_activity(long_idle_event)

        messages = _drain_messages(subscription)
        assert len(messages) == 1
        assert messages[0]["event"] == INTERVENTION_EVENT
        assert payload.pattern_type == "context_switching"
        assert payload.type == "alert"
        assert payload.priority == "high"
        assert payload.dismissible is True
        assert payload.intervention_id.startswith("int_")
        assert messages[0]["data"]["message"] == payload.message

    @pytest.mark.asyncio
    async def test_degraded_mode_uses_fallback_text(self, make_orchestrator, long_idle_event):
        """coach なしではAIを呼ばず固定文面"""
        orchestrator = make_orchestrator()

        payload = await orchestrator.handle_activity(long_idle_event)

        pattern = DistractionPattern(type="extended_idle", severity="high", description="")
        assert payload.message == fallback_intervention_text(pattern)
        assert payload.type == "suggestion"
        assert payload.priority == "medium"

    @pytest.mark.asyncio
    async def test_throttled_intervention_is_silent(
        self, make_orchestrator, limiter, clock, long_idle_event
    ):
        """介入間隔内は何も送らない"""
        orchestrator = make_orchestrator()

        assert await orchestrator.handle_activity(long_idle_event) is not None
        assert await orchestrator.handle_activity(long_idle_event) is None

        clock.advance(10 * MINUTE)
        later = make_event("idle_end", timestamp=clock.now, idle_duration=400)
        assert await orchestrator.handle_activity(later) is not None

    @pytest.mark.asyncio
    async def test_uses_coach_message(
        self, make_orchestrator, mock_inference_client, long_idle_event
    ):
        orchestrator = make_orchestrator(coach=CoachService(mock_inference_client))

        payload = await orchestrator.handle_activity(long_idle_event)

        assert payload.message == "Pick one tab and stay there."
        mock_inference_client.generate_fast.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_inference_failure_is_swallowed(
        self, make_orchestrator, activities, limiter, long_idle_event
    ):
        """推論エラーでも取り込みは成功し、介入記録も残らない"""
        coach = Mock()
        coach.generate_intervention = AsyncMock(side_effect=RuntimeError("API down"))
        orchestrator = make_orchestrator(coach=coach)

        assert await orchestrator.handle_activity(long_idle_event) is None
        assert activities.count("sess-1") == 1
        assert limiter.can_send_intervention("sess-1") is True

    @pytest.mark.asyncio
    async def test_in_flight_guard(self, make_orchestrator, long_idle_event):
        """生成中に届いたイベントで二重に介入しない"""
        release = asyncio.Event()

        async def slow_intervention(pattern):
            await release.wait()
            return Mock(message="Back to it.")

        coach = Mock()
        coach.generate_intervention = AsyncMock(side_effect=slow_intervention)
        orchestrator = make_orchestrator(coach=coach)

        first = orchestrator.submit(long_idle_event)
        await asyncio.sleep(0)
        second = orchestrator.submit(long_idle_event)
        await asyncio.sleep(0)
        release.set()

        results = await asyncio.gather(first, second)
        assert sum(r is not None for r in results) == 1
        assert coach.generate_intervention.await_count == 1

    @pytest.mark.asyncio
    async def test_session_ended_during_generation(
        self, make_orchestrator, limiter, delivery, long_idle_event
    ):
        """生成中にセッションが終了したら記録も配信もしない"""
        release = asyncio.Event()

        async def slow_intervention(pattern):
            await release.wait()
            return Mock(message="Back to it.")

        coach = Mock()
        coach.generate_intervention = AsyncMock(side_effect=slow_intervention)
        orchestrator = make_orchestrator(coach=coach, publish_focus_updates=False)
        subscription = delivery.subscribe("sess-1")

        pending = orchestrator.submit(long_idle_event)
        await asyncio.sleep(0)
        orchestrator.end_session("sess-1")
        release.set()

        assert await pending is None
        assert limiter.tracked_sessions == 0
        assert [m["event"] for m in _drain_messages(subscription)] == [SESSION_EVENT]

    @pytest.mark.asyncio
    async def test_completed_session_gets_no_intervention(
        self, make_orchestrator, sessions, limiter, activities, long_idle_event
    ):
        """終了済みセッションのイベントは保存のみ"""
        sessions.end("sess-1", NOW, 50.0)
        coach = Mock()
        coach.generate_intervention = AsyncMock()
        orchestrator = make_orchestrator(coach=coach)

        assert await orchestrator.handle_activity(long_idle_event) is None
        assert activities.count("sess-1") == 1
        assert limiter.tracked_sessions == 0
        coach.generate_intervention.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_run_consumes_inbound_queue(
        self, make_orchestrator, activities, context_switch_burst
    ):
        """受信キューのイベントを順に処理し、None で終了"""
        orchestrator = make_orchestrator()
        inbound = asyncio.Queue()
        for event in context_switch_burst:
            inbound.put_nowait(event)
        inbound.put_nowait(None)

        await asyncio.wait_for(orchestrator.run(inbound), timeout=1)

        assert activities.count("sess-1") == len(context_switch_burst)

    @pytest.mark.asyncio
    async def test_end_session(
        self, make_orchestrator, sessions, limiter, delivery, activities, clock, context_switch_burst
    ):
        """終了時にスコア確定・介入記録削除・分析生成・通知"""
        for event in context_switch_burst:
            activities.add(event)
        insights = InsightsService(activities, InsightStore(), PatternAnalysisService())
        orchestrator = make_orchestrator(insights=insights)
        limiter.record_intervention("sess-1")
        subscription = delivery.subscribe("sess-1")

        session = orchestrator.end_session("sess-1")
        await orchestrator.drain()

        assert session.status == "completed"
        assert session.end_time == clock.now
        assert session.focus_score == 65.4
        assert limiter.tracked_sessions == 0
        assert insights.get_session_insights("sess-1") is not None
        message = _drain_messages(subscription)[0]
        assert message["event"] == SESSION_EVENT
        assert message["data"]["focus_score"] == 65.4

    @pytest.mark.asyncio
    async def test_end_unknown_session(self, make_orchestrator):
        with pytest.raises(SessionNotFoundError):
            make_orchestrator().end_session("missing")

    @pytest.mark.asyncio
    async def test_start_session(self, make_orchestrator, sessions, clock):
        session = make_orchestrator().start_session("sess-2")

        assert session.start_time == clock.now
        assert sessions.get("sess-2") is session

    @pytest.mark.asyncio
    async def test_publish_focus_update(self, make_orchestrator, delivery):
        subscription = delivery.subscribe("sess-1")

        assert make_orchestrator().publish_focus_update("sess-1") == 1

        data = subscription.queue.get_nowait()["data"]
        assert set(data["components"]) == {
            "typing_consistency",
            "low_context_switching",
            "minimal_idle",
            "site_focus",
        }
        assert data["focus_score"] == 75.0


class TestInterventionUrgency:
    @pytest.mark.parametrize(
        ("pattern_type", "expected"),
        [
            ("social_media_spiral", ("alert", "high")),
            ("context_switching", ("alert", "high")),
            ("extended_idle", ("suggestion", "medium")),
            ("fragmented_focus", ("question", "low")),
            ("something_new", ("suggestion", "low")),
        ],
    )
    def test_mapping(self, pattern_type, expected):
        pattern = DistractionPattern(type=pattern_type, severity="low", description="")  # type: ignore[arg-type]
        assert intervention_urgency(pattern) == expected
