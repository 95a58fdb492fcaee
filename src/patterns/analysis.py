"""Session level analysis: patterns + focus score + summary + recommendations."""

from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass

from src.model.models import (
    ActivityEvent,
    DistractionPattern,
    FocusScoreComponents,
    Session,
    SessionSummary,
    Trend,
    UrlCount,
    now_ms,
)
from src.patterns.detector import PatternDetector
from src.patterns.focus_score import FocusScoreCalculator

MAX_RECOMMENDATIONS = 4
TOP_URLS = 5
TREND_THRESHOLD_PCT = 10

PATTERN_RECOMMENDATIONS: dict[str, tuple[str, ...]] = {
    "context_switching": (
        'Try the "One Tab Rule": Keep only one work-related tab open at a time',
        "Use time-blocking: Dedicate 25-minute Pomodoro sessions to single tasks",
    ),
    "social_media_spiral": (
        "Use a website blocker during focus sessions (e.g., Freedom, Cold Turkey)",
        'Schedule specific "social media check" times instead of browsing '
        "throughout the day",
    ),
    "extended_idle": (
        'Set an "idle alert" to notify you after 5 minutes of inactivity',
        "If taking a break, explicitly start a break timer to separate work "
        "from rest",
    ),
    "fragmented_focus": (
        "Batch similar tasks together to reduce context switching",
        'Use "implementation intentions": Plan specific actions before '
        "starting work",
    ),
}

DEFAULT_RECOMMENDATIONS = (
    "Keep up the good work! Your focus patterns look healthy",
    "Consider tracking what time of day you focus best to optimize your schedule",
)


@dataclass(frozen=True)
class PatternAnalysisResult:
    patterns: list[DistractionPattern]
    focus_score: FocusScoreComponents
    summary: SessionSummary
    recommendations: list[str]


class PatternAnalysisService:
    """PatternDetector と FocusScoreCalculator をまとめるサービス."""

    def __init__(
        self,
        detector: PatternDetector | None = None,
        calculator: FocusScoreCalculator | None = None,
    ) -> None:
        self.detector = detector or PatternDetector()
        self.calculator = calculator or FocusScoreCalculator()

    def analyze_session(
        self,
        session: Session,
        activities: Sequence[ActivityEvent],
        now: int | None = None,
    ) -> PatternAnalysisResult:
        """セッション全体を分析する.

        進行中のセッションは ``now`` (省略時は現在時刻) を終了時刻とみなす。
        """
        reference = now_ms() if now is None else now
        end_time = session.end_time if session.end_time is not None else reference
        duration_ms = max(0, end_time - session.start_time)

        patterns = self.detector.detect_patterns(activities, now=end_time)
        focus_score = self.calculator.calculate(activities, duration_ms)
        summary = self.build_session_summary(activities, round(duration_ms / 60_000))
        recommendations = self.generate_recommendations(patterns, focus_score)

        return PatternAnalysisResult(
            patterns=patterns,
            focus_score=focus_score,
            summary=summary,
            recommendations=recommendations,
        )

    def analyze_realtime(
        self,
        recent_activities: Sequence[ActivityEvent],
        now: int | None = None,
    ) -> list[DistractionPattern]:
        """リアルタイム用: パターン検出のみ行う."""
        return self.detector.detect_patterns(recent_activities, now=now)

    @staticmethod
    def build_session_summary(
        activities: Sequence[ActivityEvent], duration_minutes: int
    ) -> SessionSummary:
        tab_switches = sum(1 for a in activities if a.is_switch)
        typing_bursts = sum(1 for a in activities if a.event_type == "typing")
        idle_time = sum(
            float(a.idle_duration or 0)
            for a in activities
            if a.event_type == "idle_end" and a.idle_duration
        )
        url_counts = Counter(a.url for a in activities if a.url)
        dominant = [
            UrlCount(url=url, count=count)
            for url, count in url_counts.most_common(TOP_URLS)
        ]
        return SessionSummary(
            duration=duration_minutes,
            total_activities=len(activities),
            tab_switch_count=tab_switches,
            typing_bursts=typing_bursts,
            idle_time=idle_time,
            dominant_urls=dominant,
        )

    @staticmethod
    def generate_recommendations(
        patterns: Sequence[DistractionPattern],
        focus_score: FocusScoreComponents,
    ) -> list[str]:
        """検出パターンと弱い内訳スコアから推奨事項 (最大4件) を作る."""
        recommendations: list[str] = []
        fired = {p.type for p in patterns}
        for pattern_type, texts in PATTERN_RECOMMENDATIONS.items():
            if pattern_type in fired:
                recommendations.extend(texts)

        if focus_score.typing_consistency < 60:  # noqa: PLR2004
            recommendations.append(
                "Build up to longer focus periods gradually "
                "(start with 15 minutes, increase weekly)"
            )
        if focus_score.low_context_switching < 50:  # noqa: PLR2004
            recommendations.append(
                "Close unnecessary browser tabs and apps before starting focused work"
            )
        if focus_score.minimal_idle > 80 and focus_score.overall > 80:  # noqa: PLR2004
            recommendations.append(
                "Great focus! Remember to take breaks to avoid burnout. "
                "Your brain needs rest too"
            )

        if not recommendations:
            recommendations.extend(DEFAULT_RECOMMENDATIONS)

        # 重複を除いて順序を保つ
        unique = list(dict.fromkeys(recommendations))
        return unique[:MAX_RECOMMENDATIONS]

    @staticmethod
    def calculate_trend(current_score: float, historical_average: float) -> Trend:
        """過去平均との比較でトレンドを判定する.

        historical_average が 0 の場合の扱いは呼び出し側の責任。
        """
        percent_change = (current_score - historical_average) * 100 / historical_average
        if percent_change >= TREND_THRESHOLD_PCT:
            return "improving"
        if percent_change <= -TREND_THRESHOLD_PCT:
            return "declining"
        return "stable"
