"""Composite 0-100 focus score built from four behavioural sub-scores."""

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace

from src.model.models import ActivityEvent, FocusScoreComponents

NEUTRAL_SCORE = 50
HOUR_MS = 60 * 60 * 1000

DEFAULT_WEIGHTS: dict[str, float] = {
    "typing_consistency": 0.4,
    "low_context_switching": 0.3,
    "minimal_idle": 0.2,
    "site_focus": 0.1,
}

PRODUCTIVE_DOMAINS = (
    "github.com",
    "stackoverflow.com",
    "docs.google.com",
    "notion.so",
    "figma.com",
    "vscode.dev",
    "replit.com",
    "codesandbox.io",
    "vercel.com",
    "netlify.com",
)

DISTRACTING_DOMAINS = (
    "twitter.com",
    "x.com",
    "facebook.com",
    "instagram.com",
    "reddit.com",
    "tiktok.com",
    "youtube.com",
    "netflix.com",
    "twitch.tv",
)


@dataclass(frozen=True)
class FocusScoreConfig:
    weights: Mapping[str, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    productive_domains: tuple[str, ...] = PRODUCTIVE_DOMAINS
    distracting_domains: tuple[str, ...] = DISTRACTING_DOMAINS


def _round_half_up(value: float, digits: int = 0) -> float:
    factor = 10**digits
    return math.floor(value * factor + 0.5) / factor


class FocusScoreCalculator:
    """行動ログとセッション時間から集中スコアを計算する.

    隠れた状態を持たないため、同じ入力からは常に同じ結果になる。
    """

    def __init__(self, config: FocusScoreConfig | None = None) -> None:
        self.config = config or FocusScoreConfig()

    def calculate(
        self,
        activities: Sequence[ActivityEvent],
        session_duration_ms: float,
    ) -> FocusScoreComponents:
        """4つの内訳スコアと加重合計 (小数第1位で丸め) を返す."""
        typing_consistency = self.calculate_typing_consistency(activities)
        low_context_switching = self.calculate_low_context_switching(
            activities, session_duration_ms
        )
        minimal_idle = self.calculate_minimal_idle(activities, session_duration_ms)
        site_focus = self.calculate_site_focus(activities)

        weights = self.config.weights
        overall = (
            typing_consistency * weights["typing_consistency"]
            + low_context_switching * weights["low_context_switching"]
            + minimal_idle * weights["minimal_idle"]
            + site_focus * weights["site_focus"]
        )
        return FocusScoreComponents(
            typing_consistency=typing_consistency,
            low_context_switching=low_context_switching,
            minimal_idle=minimal_idle,
            site_focus=site_focus,
            overall=_round_half_up(overall, 1),
        )

    def calculate_typing_consistency(self, activities: Sequence[ActivityEvent]) -> float:
        """タイピング速度の変動係数 (CV) が小さいほど高得点."""
        velocities = [
            float(a.typing_velocity)
            for a in activities
            if a.event_type == "typing" and a.typing_velocity
        ]
        if len(velocities) < 3:  # noqa: PLR2004
            return NEUTRAL_SCORE

        mean = sum(velocities) / len(velocities)
        variance = sum((v - mean) ** 2 for v in velocities) / len(velocities)
        cv = math.sqrt(variance) / mean if mean > 0 else 1.0

        # CV 0.2 以下でほぼ満点、0.5 以上で 0
        score = max(0.0, min(100.0, 100 - cv * 200))
        return _round_half_up(score)

    def calculate_low_context_switching(
        self,
        activities: Sequence[ActivityEvent],
        session_duration_ms: float,
    ) -> float:
        """1時間あたりのタブ/アプリ切り替え回数から算出."""
        if session_duration_ms <= 0:
            return NEUTRAL_SCORE

        switches = sum(1 for a in activities if a.is_switch)
        per_hour = switches / (session_duration_ms / HOUR_MS)

        if per_hour <= 5:  # noqa: PLR2004
            return 100
        if per_hour <= 15:  # noqa: PLR2004
            return _round_half_up(100 - (per_hour - 5) * 3)
        if per_hour <= 30:  # noqa: PLR2004
            return _round_half_up(70 - (per_hour - 15) * 2)
        return max(0, _round_half_up(40 - (per_hour - 30)))

    def calculate_minimal_idle(
        self,
        activities: Sequence[ActivityEvent],
        session_duration_ms: float,
    ) -> float:
        """セッション時間に占めるアイドル割合から算出 (短い休憩は許容)."""
        session_seconds = session_duration_ms / 1000
        if session_seconds <= 0:
            return NEUTRAL_SCORE

        total_idle = sum(
            float(a.idle_duration or 0)
            for a in activities
            if a.event_type == "idle_end" and a.idle_duration
        )
        idle_pct = total_idle / session_seconds * 100

        if idle_pct <= 10:  # noqa: PLR2004
            return 100
        if idle_pct <= 20:  # noqa: PLR2004
            return _round_half_up(100 - (idle_pct - 10))
        if idle_pct <= 40:  # noqa: PLR2004
            return _round_half_up(80 - (idle_pct - 20) * 1.5)
        return max(0, _round_half_up(50 - (idle_pct - 40) * 1.25))

    def calculate_site_focus(self, activities: Sequence[ActivityEvent]) -> float:
        """生産的サイトと脱線サイトの訪問比率から算出.

        ドメインはURLへの部分一致で判定する (src.model.urls の判定とは異なる)。
        """
        urls = [a.url for a in activities if a.url]
        if not urls:
            return NEUTRAL_SCORE

        productive = 0
        distracting = 0
        for url in urls:
            if any(domain in url for domain in self.config.productive_domains):
                productive += 1
            elif any(domain in url for domain in self.config.distracting_domains):
                distracting += 1

        productive_ratio = productive / len(urls)
        distracting_ratio = distracting / len(urls)

        if distracting_ratio > 0.5:  # noqa: PLR2004
            return _round_half_up(30 * (1 - distracting_ratio))
        if productive_ratio > 0.7:  # noqa: PLR2004
            return 100
        if productive_ratio > 0.4:  # noqa: PLR2004
            return _round_half_up(70 + productive_ratio * 30)
        return _round_half_up(50 + productive_ratio * 40)

    def update_config(
        self,
        *,
        weights: Mapping[str, float] | None = None,
        productive_domains: Sequence[str] | None = None,
        distracting_domains: Sequence[str] | None = None,
    ) -> None:
        """設定を更新する. weights はキー単位でマージ、ドメインは置き換え."""
        config = self.config
        if weights:
            config = replace(config, weights={**config.weights, **weights})
        if productive_domains is not None:
            config = replace(config, productive_domains=tuple(productive_domains))
        if distracting_domains is not None:
            config = replace(config, distracting_domains=tuple(distracting_domains))
        self.config = config
