__all__ = [
    "ActivityEvent",
    "ComparativeInsight",
    "DistractionPattern",
    "EventType",
    "FocusScoreComponents",
    "InterventionMessage",
    "InterventionPayload",
    "InterventionPriority",
    "InterventionType",
    "JsonValue",
    "PatternType",
    "Session",
    "SessionInsights",
    "SessionStatus",
    "SessionSummary",
    "Severity",
    "Trend",
    "UrlCount",
    "now_ms",
]

import time
from dataclasses import dataclass, field
from typing import Literal, TypeAlias

# メタデータ用の構造化値（プリミティブ・リスト・辞書の入れ子）
JsonValue: TypeAlias = (
    str | int | float | bool | None | list["JsonValue"] | dict[str, "JsonValue"]
)

EventType = Literal[
    "tab_switch",
    "tab_activated",
    "url_change",
    "typing",
    "idle_start",
    "idle_end",
    "window_focus",
    "window_blur",
    "app_switch",
]
PatternType = Literal[
    "context_switching",
    "social_media_spiral",
    "extended_idle",
    "fragmented_focus",
]
Severity = Literal["low", "medium", "high"]
SessionStatus = Literal["active", "completed", "abandoned"]
Trend = Literal["improving", "stable", "declining"]
InterventionType = Literal["alert", "suggestion", "encouragement", "question"]
InterventionPriority = Literal["low", "medium", "high"]

SWITCH_EVENTS: frozenset[str] = frozenset({"tab_switch", "app_switch"})


def now_ms() -> int:
    """現在時刻をエポックミリ秒で返す."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class ActivityEvent:
    """1件の行動観測イベント.

    timestamp はエポックミリ秒。記録後は変更しない。
    """

    session_id: str
    timestamp: int
    event_type: EventType
    url: str | None = None
    typing_velocity: float | None = None  # 文字/分 (typing のみ)
    idle_duration: float | None = None  # 秒 (idle_end のみ)
    metadata: dict[str, JsonValue] | None = None

    @property
    def is_switch(self) -> bool:
        return self.event_type in SWITCH_EVENTS


@dataclass(frozen=True)
class DistractionPattern:
    """検出された脱線パターン."""

    type: PatternType
    severity: Severity
    description: str
    metadata: dict[str, JsonValue] = field(default_factory=dict)


@dataclass(frozen=True)
class FocusScoreComponents:
    """集中スコアの内訳 (各0-100) と加重合計."""

    typing_consistency: float
    low_context_switching: float
    minimal_idle: float
    site_focus: float
    overall: float


@dataclass(frozen=True)
class UrlCount:
    url: str
    count: int


@dataclass(frozen=True)
class SessionSummary:
    """AIプロンプト用のセッション要約."""

    duration: int  # 分
    total_activities: int
    tab_switch_count: int
    typing_bursts: int
    idle_time: float  # 秒
    dominant_urls: list[UrlCount] = field(default_factory=list)


@dataclass
class Session:
    """セッションのメタデータ (外部ストアが所有)."""

    id: str
    start_time: int
    end_time: int | None = None
    focus_score: float | None = None
    status: SessionStatus = "active"


@dataclass(frozen=True)
class InterventionMessage:
    """AI (またはルール) が生成したコーチングメッセージ."""

    message: str
    pattern: DistractionPattern
    timestamp: int


@dataclass(frozen=True)
class InterventionPayload:
    """配信チャネルへ渡す介入ペイロード."""

    intervention_id: str
    session_id: str
    message: str
    type: InterventionType
    priority: InterventionPriority
    timestamp: int
    pattern_type: PatternType
    severity: Severity
    dismissible: bool = True


@dataclass(frozen=True)
class SessionInsights:
    """セッション終了後の分析結果."""

    summary: str
    what_went_well: str
    areas_for_improvement: str
    recommendations: str
    focus_fingerprint: str
    generated_at: int


@dataclass(frozen=True)
class ComparativeInsight:
    insight: str
    trend: Trend
    generated_at: int
