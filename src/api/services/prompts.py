"""Prompt templates. Only behavioural patterns are sent, never page content."""

from collections import Counter
from collections.abc import Sequence

from src.model.models import (
    ActivityEvent,
    DistractionPattern,
    Session,
    SessionSummary,
    Trend,
)

APP_NAME = "Flowstate"

_SEVERITY_CONTEXT = {
    "low": "slightly distracted",
    "medium": "experiencing some distraction",
    "high": "significantly distracted",
}

INSIGHT_SECTIONS = (
    ("summary", "Session Summary", "1-2 sentences summarizing overall performance"),
    (
        "what_went_well",
        "What Went Well",
        "2-3 specific positive patterns, with data to back it up",
    ),
    (
        "areas_for_improvement",
        "Areas for Improvement",
        "2-3 specific challenges observed, framed constructively",
    ),
    (
        "recommendations",
        "Personalized Recommendations",
        "3-4 actionable techniques tailored to this user's patterns",
    ),
    (
        "focus_fingerprint",
        "Focus Fingerprint",
        "A unique insight about this user's work style based on patterns",
    ),
)


def _label(value: str) -> str:
    return value.replace("_", " ")


def activity_breakdown(activities: Sequence[ActivityEvent]) -> str:
    """イベント種別ごとの件数を箇条書きにする."""
    counts = Counter(a.event_type for a in activities)
    return "\n".join(f"- {_label(kind)}: {count}" for kind, count in counts.items())


def realtime_intervention(pattern: DistractionPattern) -> str:
    return f"""You are a supportive focus coach for a productivity app called {APP_NAME}. A user is currently {_SEVERITY_CONTEXT[pattern.severity]}.

Pattern detected: {_label(pattern.type)}
Description: {pattern.description}

Generate a brief, supportive intervention message (2-3 sentences max) that:
1. Acknowledges what's happening without judgment
2. Gently encourages refocusing
3. Uses warm, conversational tone
4. Avoids being preachy or condescending
5. Offers a specific, actionable suggestion

Examples of good interventions:
- "I noticed you've been hopping between a few different sites. Want to take a quick breath and choose one thing to focus on for the next 10 minutes?"
- "Looks like you took a short break. Perfect timing to reset. What's the one thing you want to accomplish next?"

Generate ONLY the intervention message, nothing else."""  # noqa: E501


def _session_data(
    session: Session,
    activities: Sequence[ActivityEvent],
    summary: SessionSummary,
) -> str:
    focus = f"{session.focus_score:.1f}" if session.focus_score is not None else "N/A"
    top_sites = "\n".join(
        f"{i}. {u.url} ({u.count} visits)"
        for i, u in enumerate(summary.dominant_urls, start=1)
    )
    return f"""SESSION DATA (Privacy-safe behavioral patterns only):
- Duration: {summary.duration} minutes
- Total activities logged: {summary.total_activities}
- Tab switches: {summary.tab_switch_count}
- Typing bursts: {summary.typing_bursts}
- Total idle time: {round(summary.idle_time / 60)} minutes
- Focus score: {focus}

ACTIVITY BREAKDOWN:
{activity_breakdown(activities)}

TOP VISITED SITES (sanitized URLs, no personal data):
{top_sites}"""


def post_session_analysis(
    session: Session,
    activities: Sequence[ActivityEvent],
    summary: SessionSummary,
    *,
    structured: bool = True,
) -> str:
    """セッション後分析のプロンプト.

    structured=True ではJSONオブジェクトを、False ではMarkdownの
    見出し付きレポートを要求する。
    """
    header = (
        f"You are an expert focus coach analyzing a completed work session for "
        f"{APP_NAME}, a productivity intelligence app."
    )
    tone = (
        "Use a warm, coaching tone. Be specific with data points but avoid "
        "overwhelming with numbers. Frame everything constructively: this is "
        "about growth, not judgment."
    )
    data = _session_data(session, activities, summary)

    if structured:
        keys = "\n".join(f'- "{key}": {hint}' for key, _, hint in INSIGHT_SECTIONS)
        return f"""{header}

{data}

Respond with ONLY a JSON object with these exact string keys:
{keys}

{tone}"""

    sections = "\n\n".join(f"# {title}\n[{hint}]" for _, title, hint in INSIGHT_SECTIONS)
    return f"""{header}

{data}

Generate a comprehensive analysis with the following structure:

{sections}

{tone}

Generate the complete analysis in Markdown format."""


def technique_recommendations(patterns: Sequence[DistractionPattern]) -> str:
    pattern_summary = "\n".join(
        f"- {_label(p.type)}: {p.severity} severity" for p in patterns
    )
    return f"""You are a focus coach recommending specific techniques for a {APP_NAME} user.

DETECTED PATTERNS:
{pattern_summary}

Recommend 3-4 specific, evidence-based focus techniques that address these patterns. For each technique:

1. **Technique Name**
   - Why it helps: [1 sentence]
   - How to apply it: [2-3 sentences with concrete steps]
   - Expected benefit: [1 sentence]

Choose from techniques like Pomodoro, time-blocking, the "One Tab Rule", batching similar tasks, implementation intentions, environment design, digital minimalism, attention restoration breaks and progressive focus building.

Generate ONLY the recommendations in the format above, nothing else."""  # noqa: E501


def comparative_analysis(
    current: SessionSummary,
    historical_average: SessionSummary,
    trend: Trend,
) -> str:
    return f"""You are analyzing performance trends for a {APP_NAME} user.

CURRENT SESSION:
- Duration: {current.duration} min
- Tab switches: {current.tab_switch_count}
- Idle time: {round(current.idle_time / 60)} min
- Typing bursts: {current.typing_bursts}

HISTORICAL AVERAGE (last 10 sessions):
- Duration: {historical_average.duration} min
- Tab switches: {historical_average.tab_switch_count}
- Idle time: {round(historical_average.idle_time / 60)} min
- Typing bursts: {historical_average.typing_bursts}

OVERALL TREND: {trend}

Generate a brief comparative insight (3-4 sentences) that:
1. Highlights the most significant change (positive or negative)
2. Provides context for what this means
3. Offers encouragement if improving, or supportive guidance if declining
4. Maintains a growth mindset framing

Generate ONLY the comparative insight, nothing else."""


def focus_state_description(
    recent_activities: Sequence[ActivityEvent], window_minutes: int
) -> str:
    return f"""Based on the last {window_minutes} minutes of activity:

{activity_breakdown(recent_activities)}

Provide a 1-sentence assessment of the user's current focus state. Choose from:
- "Deep focus" (steady typing, no tab switches, no idle)
- "Moderate focus" (mostly on task with occasional context switches)
- "Distracted" (frequent tab switches, low typing activity)
- "Idle/Break" (minimal activity detected)

Respond with ONLY the state and a brief justification (max 10 words). Format: "State: [state] - [justification]\""""  # noqa: E501
