"""FastAPI app exposing Flowstate session, activity and coaching endpoints."""

import asyncio
import contextlib
import secrets
import time
from collections import deque
from dataclasses import asdict
from typing import Any

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, JsonValue, ValidationError, field_validator

from src.api.logger import setup_logging
from src.api.services.coach import CoachService
from src.api.services.delivery import ClientType, DeliveryHub
from src.api.services.insights import InsightsService
from src.api.services.llm import InferenceClient, create_inference_client
from src.api.services.orchestrator import InterventionOrchestrator
from src.api.services.rate_limiter import RateLimiter
from src.api.services.store import (
    ActivityStore,
    InsightStore,
    SessionNotFoundError,
    SessionStore,
)
from src.model.models import ActivityEvent, EventType, Session, now_ms
from src.model.urls import classify_site, sanitize_url
from src.patterns.analysis import PatternAnalysisService

# FastAPIアプリケーションのインスタンスを作成
app = FastAPI(
    title="Flowstate Focus API",
    description="Real-time focus analysis and AI coaching API",
)

# グローバルな状態管理
STATE: dict[str, Any] = {
    "started_at": time.time(),
    "inference": None,
    "logs": deque(maxlen=100),  # ログを保存 (最大100件)
}

logger = setup_logging(recent=STATE["logs"])


def build_services(inference: InferenceClient | None) -> None:
    """ストア・分析・配信・オーケストレーターを組み立てて STATE に置く."""
    activities = ActivityStore()
    sessions = SessionStore()
    analysis = PatternAnalysisService()
    delivery = DeliveryHub()
    coach = CoachService(inference) if inference is not None else None
    insights = InsightsService(activities, InsightStore(), analysis, coach)
    rate_limiter = inference.rate_limiter if inference is not None else RateLimiter()

    STATE.update(
        inference=inference,
        activities=activities,
        sessions=sessions,
        analysis=analysis,
        delivery=delivery,
        insights=insights,
        rate_limiter=rate_limiter,
        orchestrator=InterventionOrchestrator(
            activities,
            sessions,
            analysis,
            delivery,
            rate_limiter,
            coach=coach,
            insights=insights,
        ),
    )


build_services(None)


def _orchestrator() -> InterventionOrchestrator:
    return STATE["orchestrator"]


def _require_session(session_id: str) -> Session:
    try:
        return STATE["sessions"].require(session_id)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


# --- Pydanticモデル定義 ---


class SessionCreate(BaseModel):
    """セッション開始リクエスト."""

    session_id: str | None = None
    start_time: int | None = None


class ActivityIn(BaseModel):
    """行動イベントのデータモデル."""

    session_id: str
    event_type: EventType
    timestamp: int | None = None
    url: str | None = None
    typing_velocity: float | None = None
    idle_duration: float | None = None
    metadata: dict[str, JsonValue] | None = None

    @field_validator("session_id")
    @classmethod
    def session_id_must_not_be_empty(cls, v: str) -> str:
        """セッションIDが空でないこと."""
        if not v or not v.strip():
            msg = "session_id must not be empty"
            raise ValueError(msg)
        return v

    @field_validator("typing_velocity", "idle_duration")
    @classmethod
    def must_not_be_negative(cls, v: float | None) -> float | None:
        if v is not None and v < 0:
            msg = "value must not be negative"
            raise ValueError(msg)
        return v

    def to_event(self) -> ActivityEvent:
        return ActivityEvent(
            session_id=self.session_id,
            timestamp=self.timestamp if self.timestamp is not None else now_ms(),
            event_type=self.event_type,
            url=sanitize_url(self.url) if self.url else None,
            typing_velocity=self.typing_velocity,
            idle_duration=self.idle_duration,
            metadata=self.metadata,
        )


# --- アプリケーションのライフサイクルイベント ---


# Deprecated on_event usage is temporarily retained for simplicity.
@app.on_event("startup")  # pyright: ignore[reportDeprecated]
async def startup_event() -> None:
    """起動時に推論クライアントを初期化 (未設定ならAIなしで動作)."""
    inference = create_inference_client()
    build_services(inference)
    if inference is None:
        logger.info("AI coaching disabled; using rule-based interventions")
        return
    is_ready = await asyncio.to_thread(inference.is_available)
    logger.info("Inference API available: %s", is_ready)


@app.on_event("shutdown")  # pyright: ignore[reportDeprecated]
async def shutdown_event() -> None:
    await _orchestrator().drain()
    inference: InferenceClient | None = STATE["inference"]
    if inference is not None:
        await inference.aclose()


# --- APIエンドポイント定義 ---


@app.post("/sessions")
async def start_session(req: SessionCreate) -> dict[str, Any]:
    """セッションを開始する. session_id 省略時は採番する."""
    session_id = req.session_id or f"sess_{now_ms()}_{secrets.token_hex(4)}"
    session = _orchestrator().start_session(session_id, req.start_time)
    logger.info("Session started: %s", session_id)
    return {"ok": True, "session": asdict(session)}


@app.post("/sessions/{session_id}/end")
async def end_session(session_id: str) -> dict[str, Any]:
    """セッションを終了し、フォーカススコアを確定する."""
    try:
        session = _orchestrator().end_session(session_id)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"ok": True, "session": asdict(session)}


@app.get("/sessions/{session_id}")
async def get_session(session_id: str) -> dict[str, Any]:
    session = _require_session(session_id)
    return {
        "session": asdict(session),
        "activity_count": STATE["activities"].count(session_id),
    }


@app.get("/sessions/{session_id}/analysis")
async def get_session_analysis(session_id: str) -> dict[str, Any]:
    """パターン検出・フォーカススコア・推奨事項を返す."""
    session = _require_session(session_id)
    activities = STATE["activities"].find_by_session_id(session_id)
    analysis = STATE["analysis"].analyze_session(session, activities)
    return asdict(analysis)


@app.get("/sessions/{session_id}/insights")
async def get_session_insights(session_id: str, compare: bool = False) -> dict[str, Any]:
    """セッション後の分析 (生成済みならそれを返す)."""
    session = _require_session(session_id)
    insights: InsightsService = STATE["insights"]
    try:
        result = await insights.get_or_generate_insights(session)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    body = asdict(result)
    if compare:
        history = STATE["sessions"].completed(exclude=session_id)
        body["comparison"] = await insights.generate_comparative_insight(session, history)
    return body


@app.post("/events")
async def ingest_event(activity: ActivityIn) -> dict[str, Any]:
    """行動イベントを取り込む. 分析と介入はバックグラウンドで行う."""
    _require_session(activity.session_id)
    event = activity.to_event()
    _orchestrator().submit(event)
    return {
        "ok": True,
        "event_type": event.event_type,
        "url": event.url,
        "site": classify_site(event.url),
    }


@app.get("/health")
async def health() -> dict[str, Any]:
    inference: InferenceClient | None = STATE["inference"]
    return {
        "status": "ok",
        "timestamp": now_ms(),
        "uptime": time.time() - STATE["started_at"],
        "ai_enabled": inference is not None,
        "rate_limit": inference.get_rate_limit_stats() if inference else None,
    }


@app.get("/status")
async def get_current_status() -> dict[str, Any]:
    """現在のシステム状態を取得する."""
    rate_limiter: RateLimiter = STATE["rate_limiter"]
    return {
        "ai_enabled": STATE["inference"] is not None,
        "connections": STATE["delivery"].get_connection_stats(),
        "available_tokens": rate_limiter.get_available_tokens(),
        "tracked_sessions": rate_limiter.tracked_sessions,
    }


# --- モニタリング用エンドポイント ---


@app.get("/api/monitoring_data")
async def get_monitoring_data() -> dict[str, Any]:
    """モニタリングUIに最新データを提供する."""
    delivery: DeliveryHub = STATE["delivery"]
    return {
        "logs": list(STATE["logs"]),
        "deliveries": delivery.get_history(),
        "connections": delivery.get_connection_stats(),
    }


# --- WebSocket ---


@app.websocket("/ws/{session_id}")
async def session_socket(
    websocket: WebSocket, session_id: str, client_type: str = "frontend"
) -> None:
    """セッションの介入・スコア更新を購読する.

    クライアントからは {"event": "activity:log", "data": {...}} と
    {"event": "session:end"} を受け付ける。
    """
    try:
        kind = ClientType(client_type)
    except ValueError:
        await websocket.close(code=1008)
        return

    await websocket.accept()
    delivery: DeliveryHub = STATE["delivery"]
    subscription = delivery.subscribe(session_id, kind)
    await websocket.send_json(
        {"event": "session:subscribed", "data": {"session_id": session_id}}
    )

    async def forward() -> None:
        while True:
            message = await subscription.queue.get()
            await websocket.send_json(message)

    sender = asyncio.create_task(forward())
    try:
        while True:
            incoming = await websocket.receive_json()
            await _handle_socket_message(websocket, session_id, incoming)
    except WebSocketDisconnect:
        logger.info("%s disconnected from session %s", kind.value, session_id)
    finally:
        sender.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sender
        delivery.unsubscribe(subscription)


async def _handle_socket_message(
    websocket: WebSocket, session_id: str, incoming: Any
) -> None:
    event = incoming.get("event") if isinstance(incoming, dict) else None
    if event == "activity:log":
        data = incoming.get("data") or {}
        if not isinstance(data, dict):
            await websocket.send_json(
                {"event": "error", "data": {"message": "Invalid activity payload"}}
            )
            return
        try:
            activity = ActivityIn.model_validate({**data, "session_id": session_id})
        except ValidationError as exc:
            details = exc.errors(
                include_url=False, include_context=False, include_input=False
            )
            await websocket.send_json(
                {
                    "event": "error",
                    "data": {"message": "Invalid activity payload", "details": details},
                }
            )
            return
        if STATE["sessions"].get(session_id) is None:
            await websocket.send_json(
                {"event": "error", "data": {"message": f"Session not found: {session_id}"}}
            )
            return
        _orchestrator().submit(activity.to_event())
    elif event == "session:end":
        try:
            _orchestrator().end_session(session_id)
        except SessionNotFoundError as exc:
            await websocket.send_json({"event": "error", "data": {"message": str(exc)}})
    else:
        await websocket.send_json(
            {"event": "error", "data": {"message": f"Unknown event: {event}"}}
        )
