"""Post-session insights with deterministic fallbacks when AI is unavailable."""

import logging
import re
from collections.abc import Sequence

from src.api.services.coach import CoachService
from src.api.services.store import ActivityStore, FullSessionInsights, InsightStore
from src.model.models import (
    FocusScoreComponents,
    Session,
    SessionInsights,
    SessionSummary,
    Trend,
    now_ms,
)
from src.patterns.analysis import PatternAnalysisResult, PatternAnalysisService

logger = logging.getLogger("flowstate.insights")

MAX_RECOMMENDATIONS = 4
HISTORY_LIMIT = 10
GOOD_COMPONENT_SCORE = 70

_TECHNIQUE_SPLIT_RE = re.compile(r"\d+\.\s+\*\*")


class InsightsService:
    """セッション後の分析結果を生成・保存する."""

    def __init__(
        self,
        activities: ActivityStore,
        insight_store: InsightStore,
        analysis: PatternAnalysisService,
        coach: CoachService | None = None,
    ) -> None:
        self.activities = activities
        self.insight_store = insight_store
        self.analysis = analysis
        self.coach = coach

    async def generate_session_insights(self, session: Session) -> FullSessionInsights:
        """AI分析 (利用可能なら) とパターン分析を組み合わせる.

        Raises:
            ValueError: セッションに行動ログがない

        """
        activities = self.activities.find_by_session_id(session.id)
        if not activities:
            msg = "Cannot generate insights for session with no activities"
            raise ValueError(msg)

        analysis = self.analysis.analyze_session(session, activities)

        ai_insights: SessionInsights | None = None
        if self.coach is not None:
            try:
                ai_insights = await self.coach.generate_session_insights(
                    session, activities, analysis.summary
                )
            except Exception:
                # パターンベースの結果にフォールバック
                logger.exception("Failed to generate AI insights for %s", session.id)

        recommendations = analysis.recommendations
        if ai_insights is not None:
            recommendations = (
                extract_recommendations(ai_insights.recommendations)
                or analysis.recommendations
            )

        result = FullSessionInsights(
            session_id=session.id,
            focus_score=analysis.focus_score.overall,
            insights=ai_insights or create_fallback_insights(analysis),
            recommendations=recommendations,
            patterns=analysis.patterns,
            statistics=analysis.summary,
            ai_generated=ai_insights is not None,
        )
        self.insight_store.save(result)
        return result

    def get_session_insights(self, session_id: str) -> FullSessionInsights | None:
        return self.insight_store.find_latest(session_id)

    async def get_or_generate_insights(self, session: Session) -> FullSessionInsights:
        existing = self.get_session_insights(session.id)
        if existing is not None:
            return existing
        return await self.generate_session_insights(session)

    async def generate_comparative_insight(
        self,
        session: Session,
        historical_sessions: Sequence[Session],
    ) -> str:
        """過去のセッションと比較したコメントを返す."""
        if not historical_sessions:
            return "Not enough historical data for comparison"

        scores = [s.focus_score for s in historical_sessions if s.focus_score is not None]
        if not scores:
            return "No completed sessions with focus scores for comparison"
        average_score = sum(scores) / len(scores)

        current = self.analysis.analyze_session(
            session, self.activities.find_by_session_id(session.id)
        )
        current_score = current.focus_score.overall
        if average_score == 0:
            trend: Trend = "improving" if current_score > 0 else "stable"
        else:
            trend = self.analysis.calculate_trend(current_score, average_score)

        if self.coach is None:
            return create_fallback_comparison(current_score, average_score, trend)

        historical = self._historical_average(historical_sessions[:HISTORY_LIMIT])
        try:
            insight = await self.coach.generate_comparative_insight(
                current.summary, historical, trend
            )
        except Exception:
            logger.exception("Failed to generate comparative insight")
            return create_fallback_comparison(current_score, average_score, trend)
        return insight.insight

    def _historical_average(self, sessions: Sequence[Session]) -> SessionSummary:
        summaries = []
        for past in sessions:
            end_time = past.end_time if past.end_time is not None else now_ms()
            activities = self.activities.find_by_session_id(past.id)
            summaries.append(
                self.analysis.build_session_summary(
                    activities, round((end_time - past.start_time) / 60_000)
                )
            )
        count = len(summaries)
        return SessionSummary(
            duration=round(sum(s.duration for s in summaries) / count),
            total_activities=round(sum(s.total_activities for s in summaries) / count),
            tab_switch_count=round(sum(s.tab_switch_count for s in summaries) / count),
            typing_bursts=round(sum(s.typing_bursts for s in summaries) / count),
            idle_time=sum(s.idle_time for s in summaries) / count,
        )


def extract_recommendations(text: str) -> list[str]:
    """"1. **Technique**" 形式のテキストから "名前: 実践方法" を抜き出す."""
    recommendations: list[str] = []
    for section in _TECHNIQUE_SPLIT_RE.split(text):
        lines = [line for line in section.splitlines() if line.strip()]
        if not lines:
            continue
        name = lines[0].strip().removesuffix("**").strip()
        for index, line in enumerate(lines):
            if "How to apply" not in line:
                continue
            _, _, inline = line.partition(":")
            how_to = inline.strip()
            if not how_to and index + 1 < len(lines):
                how_to = lines[index + 1].strip().lstrip("-").strip()
            if how_to:
                recommendations.append(f"{name}: {how_to}")
            break
    return recommendations[:MAX_RECOMMENDATIONS]


def create_fallback_insights(analysis: PatternAnalysisResult) -> SessionInsights:
    """AIなしで作るセッション分析."""
    overall = analysis.focus_score.overall
    patterns = analysis.patterns
    if patterns:
        detected = f"Detected {len(patterns)} distraction pattern(s)."
        improvement = f"Focus on reducing {patterns[0].type.replace('_', ' ')}."
    else:
        detected = "No significant distraction patterns detected."
        improvement = "Continue monitoring patterns to identify areas for improvement."

    if overall >= GOOD_COMPONENT_SCORE:
        went_well = (
            "Maintained good focus throughout the session with consistent work patterns."
        )
    else:
        went_well = "Completed the session and logged activity data for analysis."

    return SessionInsights(
        summary=f"Session completed with a focus score of {overall:.1f}. {detected}",
        what_went_well=went_well,
        areas_for_improvement=improvement,
        recommendations="\n\n".join(analysis.recommendations),
        focus_fingerprint=focus_fingerprint(analysis.focus_score),
        generated_at=now_ms(),
    )


def focus_fingerprint(score: FocusScoreComponents) -> str:
    strengths: list[str] = []
    weaknesses: list[str] = []
    for value, strength, weakness in (
        (score.typing_consistency, "consistent work rhythm", "inconsistent typing patterns"),
        (score.low_context_switching, "minimal context switching", "frequent task switching"),
        (score.minimal_idle, "high engagement", "extended idle periods"),
    ):
        if value >= GOOD_COMPONENT_SCORE:
            strengths.append(strength)
        else:
            weaknesses.append(weakness)

    primary = strengths[0] if strengths else weaknesses[0]
    advice = (
        "You work best with sustained attention on single tasks."
        if len(strengths) >= 2  # noqa: PLR2004
        else "Consider implementing techniques to maintain deeper focus."
    )
    return f"Your focus style is characterized by {primary}. {advice}"


def create_fallback_comparison(current: float, average: float, trend: Trend) -> str:
    pct = abs((current - average) * 100 / average) if average else 0.0
    if trend == "improving":
        return (
            f"Great work! Your focus score of {current:.1f} is {pct:.0f}% higher "
            f"than your average of {average:.1f}. You're building stronger focus habits."
        )
    if trend == "declining":
        return (
            f"Your focus score of {current:.1f} is {pct:.0f}% lower than your "
            f"average of {average:.1f}. Consider what might be affecting your "
            "concentration recently."
        )
    return (
        f"Your focus score of {current:.1f} is consistent with your average of "
        f"{average:.1f}. You're maintaining steady performance."
    )
