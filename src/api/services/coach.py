"""AI coaching: intervention messages and post-session insights."""

import re
from collections.abc import Sequence
from typing import Protocol

from pydantic import BaseModel, ValidationError

from src.api.services import prompts
from src.api.services.llm import InferenceClient
from src.model.models import (
    ActivityEvent,
    ComparativeInsight,
    DistractionPattern,
    InterventionMessage,
    Session,
    SessionInsights,
    SessionSummary,
    Trend,
    now_ms,
)


_EMPTY_SECTION_TEXT = {
    "summary": "No summary generated",
    "what_went_well": "No insights generated",
    "areas_for_improvement": "No insights generated",
    "recommendations": "No recommendations generated",
    "focus_fingerprint": "No fingerprint generated",
}

_FALLBACK_INTERVENTIONS: dict[str, dict[str, str]] = {
    "context_switching": {
        "low": "You've been switching tabs a bit. Pick one tab to stay on for the next few minutes.",  # noqa: E501
        "medium": "Lots of tab hopping lately. Try closing what you don't need and focus on one thing for 10 minutes.",  # noqa: E501
        "high": "You're switching contexts very often. Take a breath, choose one task, and give it 15 uninterrupted minutes.",  # noqa: E501
    },
    "social_media_spiral": {
        "low": "A few social media visits just now. Is there something you meant to get back to?",  # noqa: E501
        "medium": "Social feeds are pulling you in. Close them for now and schedule a check-in later.",  # noqa: E501
        "high": "This is turning into a social media spiral. Close the feed and return to your task for the next 10 minutes.",  # noqa: E501
    },
    "extended_idle": {
        "low": "Welcome back! What's the one thing you want to do next?",
        "medium": "That was a decent break. A good moment to reset and pick your next step.",  # noqa: E501
        "high": "Long break detected. If you're back, start small: one quick task to rebuild momentum.",  # noqa: E501
    },
    "fragmented_focus": {
        "low": "Your work looks a little scattered. Could you batch the next few tasks together?",  # noqa: E501
        "medium": "You're switching about as often as you type. What would help you stay on one task?",  # noqa: E501
        "high": "Focus looks very fragmented. What is the single most important thing right now?",  # noqa: E501
    },
}
_GENERIC_INTERVENTION = "Take a moment to refocus on what matters most right now."


def fallback_intervention_text(pattern: DistractionPattern) -> str:
    """AIなしで使う、パターンと重大度に応じた固定メッセージ."""
    by_severity = _FALLBACK_INTERVENTIONS.get(pattern.type, {})
    return by_severity.get(pattern.severity, _GENERIC_INTERVENTION)


# ----------------------------------------------------------------------
# insights parsing


class InsightSections(BaseModel):
    """構造化出力で要求するセッション分析のスキーマ."""

    summary: str
    what_went_well: str
    areas_for_improvement: str
    recommendations: str
    focus_fingerprint: str


class InsightsParser(Protocol):
    def parse(self, text: str) -> dict[str, str] | None: ...


class JsonInsightsParser:
    """JSONオブジェクトとして返された分析を検証する."""

    _object_re = re.compile(r"\{.*\}", re.DOTALL)

    def parse(self, text: str) -> dict[str, str] | None:
        match = self._object_re.search(text or "")
        if not match:
            return None
        try:
            sections = InsightSections.model_validate_json(match.group(0))
        except ValidationError:
            return None
        return sections.model_dump()


class MarkdownInsightsParser:
    """見出し (# / ##) でMarkdownを分割する互換パーサー."""

    _headings: tuple[tuple[str, str], ...] = tuple(
        (title.lower(), key) for key, title, _ in prompts.INSIGHT_SECTIONS
    )

    def parse(self, text: str) -> dict[str, str] | None:
        sections: dict[str, list[str]] = {key: [] for key, _, _ in prompts.INSIGHT_SECTIONS}
        current: str | None = None
        found = False
        for line in (text or "").splitlines():
            stripped = line.strip()
            if stripped.startswith("#"):
                heading = stripped.lstrip("#").strip().lower()
                key = next((k for title, k in self._headings if heading.startswith(title)), None)
                if key is not None:
                    current = key
                    found = True
                    continue
            if current and stripped:
                sections[current].append(line)
        if not found:
            return None
        return {key: "\n".join(lines).strip() for key, lines in sections.items()}


DEFAULT_INSIGHTS_PARSERS: tuple[InsightsParser, ...] = (
    JsonInsightsParser(),
    MarkdownInsightsParser(),
)


def parse_session_analysis(
    text: str,
    parsers: Sequence[InsightsParser] = DEFAULT_INSIGHTS_PARSERS,
) -> dict[str, str]:
    """モデル出力を5つのセクションに分解する. 空のセクションは既定文で埋める."""
    parsed: dict[str, str] = {}
    for parser in parsers:
        result = parser.parse(text)
        if result is not None:
            parsed = result
            break
    return {
        key: (parsed.get(key) or "").strip() or default
        for key, default in _EMPTY_SECTION_TEXT.items()
    }


# ----------------------------------------------------------------------


class CoachService:
    """InferenceClient を使ってコーチング文面を生成する."""

    def __init__(
        self,
        client: InferenceClient,
        *,
        structured_output: bool = True,
        parsers: Sequence[InsightsParser] = DEFAULT_INSIGHTS_PARSERS,
    ) -> None:
        self.client = client
        self.structured_output = structured_output
        self.parsers = tuple(parsers)

    async def generate_intervention(
        self, pattern: DistractionPattern
    ) -> InterventionMessage:
        """リアルタイム介入メッセージ (fastモデル)."""
        text = await self.client.generate_fast(
            prompts.realtime_intervention(pattern),
            max_tokens=150,
            temperature=0.7,
        )
        message = text.strip() or fallback_intervention_text(pattern)
        return InterventionMessage(message=message, pattern=pattern, timestamp=now_ms())

    async def generate_session_insights(
        self,
        session: Session,
        activities: Sequence[ActivityEvent],
        summary: SessionSummary,
    ) -> SessionInsights:
        """セッション後の詳細分析 (deepモデル)."""
        prompt = prompts.post_session_analysis(
            session, activities, summary, structured=self.structured_output
        )
        response_format = {"type": "json_object"} if self.structured_output else None
        text = await self.client.generate_deep(
            prompt,
            max_tokens=1000,
            temperature=0.7,
            response_format=response_format,
        )
        sections = parse_session_analysis(text, self.parsers)
        return SessionInsights(**sections, generated_at=now_ms())

    async def generate_technique_recommendations(
        self, patterns: Sequence[DistractionPattern]
    ) -> str:
        text = await self.client.generate_fast(
            prompts.technique_recommendations(patterns),
            max_tokens=800,
            temperature=0.7,
        )
        return text.strip()

    async def generate_comparative_insight(
        self,
        current: SessionSummary,
        historical_average: SessionSummary,
        trend: Trend,
    ) -> ComparativeInsight:
        text = await self.client.generate_deep(
            prompts.comparative_analysis(current, historical_average, trend),
            max_tokens=200,
            temperature=0.7,
        )
        return ComparativeInsight(insight=text.strip(), trend=trend, generated_at=now_ms())

    async def assess_focus_state(
        self,
        recent_activities: Sequence[ActivityEvent],
        window_minutes: int,
    ) -> str:
        text = await self.client.generate_fast(
            prompts.focus_state_description(recent_activities, window_minutes),
            max_tokens=50,
            temperature=0.3,
        )
        return text.strip()
