"""Rule based distraction pattern detection over a session's activity log."""

from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from src.model.models import (
    ActivityEvent,
    DistractionPattern,
    JsonValue,
    Severity,
    now_ms,
)

MINUTE_MS = 60 * 1000

SOCIAL_MEDIA_DOMAINS = (
    "twitter.com",
    "x.com",
    "facebook.com",
    "instagram.com",
    "reddit.com",
    "tiktok.com",
    "youtube.com",
    "linkedin.com",
)


@dataclass(frozen=True)
class PatternDetectionConfig:
    """検出器の閾値設定 (時間窓はミリ秒、アイドルは秒)."""

    context_switch_window: int = 5 * MINUTE_MS
    context_switch_threshold: int = 8
    social_media_domains: tuple[str, ...] = field(default=SOCIAL_MEDIA_DOMAINS)
    social_media_min_visits: int = 3
    idle_threshold_short: float = 30
    idle_threshold_medium: float = 120
    idle_threshold_extended: float = 300
    fragmented_focus_window: int = 10 * MINUTE_MS
    fragmented_focus_threshold: int = 10
    fragmented_focus_min_typing: int = 5
    fragmented_focus_min_ratio: float = 0.5
    # count/threshold の比率による重大度の境界
    severity_high_ratio: float = 2.0
    severity_medium_ratio: float = 1.5


DEFAULT_PATTERN_CONFIG = PatternDetectionConfig()


class PatternDetector:
    """行動ログから4種類の脱線パターンを検出する.

    副作用はなく、重なり合う時間窓で何度呼んでも同じ結果になる。
    """

    def __init__(self, config: PatternDetectionConfig | None = None) -> None:
        self.config = config or DEFAULT_PATTERN_CONFIG

    def detect_patterns(
        self,
        activities: Sequence[ActivityEvent],
        now: int | None = None,
    ) -> list[DistractionPattern]:
        """全検出器を固定順で評価する.

        Args:
            activities: セッションの行動イベント
            now: 時間窓の基準時刻（エポックミリ秒）。省略時は現在時刻

        Returns:
            検出されたパターン (context_switching, social_media_spiral,
            extended_idle, fragmented_focus の順)

        """
        reference = now_ms() if now is None else now
        detected = (
            self._detect_context_switching(activities, reference),
            self._detect_social_media_spiral(activities, reference),
            self._detect_extended_idle(activities),
            self._detect_fragmented_focus(activities, reference),
        )
        return [pattern for pattern in detected if pattern is not None]

    def update_config(self, **overrides: Any) -> None:
        """設定を部分的に上書きする."""
        if "social_media_domains" in overrides:
            overrides["social_media_domains"] = tuple(overrides["social_media_domains"])
        self.config = replace(self.config, **overrides)

    # ------------------------------------------------------------------
    # detectors

    def _detect_context_switching(
        self, activities: Sequence[ActivityEvent], now: int
    ) -> DistractionPattern | None:
        window_start = now - self.config.context_switch_window
        switches = [
            a for a in activities if a.is_switch and a.timestamp > window_start
        ]
        threshold = self.config.context_switch_threshold
        if len(switches) < threshold:
            return None

        unique_urls = {a.url for a in switches if a.url}
        window_minutes = self._minutes(self.config.context_switch_window)
        return DistractionPattern(
            type="context_switching",
            severity=self._calculate_severity(len(switches), threshold),
            description=(
                f"{len(switches)} tab switches in {window_minutes} minutes "
                f"across {len(unique_urls)} different sites"
            ),
            metadata={
                "switchCount": len(switches),
                "uniqueUrls": len(unique_urls),
                "windowMinutes": window_minutes,
            },
        )

    def _detect_social_media_spiral(
        self, activities: Sequence[ActivityEvent], now: int
    ) -> DistractionPattern | None:
        window_start = now - self.config.context_switch_window
        domain_counts: Counter[str] = Counter()
        total_visits = 0
        for activity in activities:
            if not activity.url or activity.timestamp <= window_start:
                continue
            domain = self._match_social_domain(activity.url)
            if domain is None:
                continue
            total_visits += 1
            domain_counts[domain] += 1

        if total_visits < self.config.social_media_min_visits:
            return None

        # 同数の場合は先に数えたドメインを優先
        dominant_domain, dominant_count = domain_counts.most_common(1)[0]
        if total_visits >= 10:
            severity: Severity = "high"
        elif total_visits >= 5:
            severity = "medium"
        else:
            severity = "low"

        window_minutes = self._minutes(self.config.context_switch_window)
        counts: dict[str, JsonValue] = dict(domain_counts)
        return DistractionPattern(
            type="social_media_spiral",
            severity=severity,
            description=(
                f"{total_visits} visits to social media "
                f"({dominant_domain}: {dominant_count} times) "
                f"in {window_minutes} minutes"
            ),
            metadata={
                "totalVisits": total_visits,
                "domainCounts": counts,
                "dominantDomain": dominant_domain,
                "windowMinutes": window_minutes,
            },
        )

    def _detect_extended_idle(
        self, activities: Sequence[ActivityEvent]
    ) -> DistractionPattern | None:
        idle_ends = [
            a for a in activities if a.event_type == "idle_end" and a.idle_duration
        ]
        if not idle_ends:
            return None

        # 最新のアイドル期間のみを報告する
        latest = max(idle_ends, key=lambda a: a.timestamp)
        idle_duration = float(latest.idle_duration or 0)
        if idle_duration < self.config.idle_threshold_short:
            return None

        if idle_duration >= self.config.idle_threshold_extended:
            severity: Severity = "high"
        elif idle_duration >= self.config.idle_threshold_medium:
            severity = "medium"
        else:
            severity = "low"

        idle_minutes = round(idle_duration / 60)
        return DistractionPattern(
            type="extended_idle",
            severity=severity,
            description=f"Idle for {idle_minutes} minutes",
            metadata={
                "idleDurationSeconds": idle_duration,
                "idleDurationMinutes": idle_minutes,
            },
        )

    def _detect_fragmented_focus(
        self, activities: Sequence[ActivityEvent], now: int
    ) -> DistractionPattern | None:
        window_start = now - self.config.fragmented_focus_window
        recent = [a for a in activities if a.timestamp > window_start]
        typing_count = sum(1 for a in recent if a.event_type == "typing")
        switch_count = sum(1 for a in recent if a.event_type == "tab_switch")

        if (
            typing_count < self.config.fragmented_focus_min_typing
            or switch_count < self.config.fragmented_focus_threshold
        ):
            return None

        ratio = switch_count / typing_count
        if ratio < self.config.fragmented_focus_min_ratio:
            # 健全なマルチタスクの範囲
            return None

        if ratio >= 1.5:
            severity: Severity = "high"
        elif ratio >= 0.8:
            severity = "medium"
        else:
            severity = "low"

        window_minutes = self._minutes(self.config.fragmented_focus_window)
        return DistractionPattern(
            type="fragmented_focus",
            severity=severity,
            description=(
                f"Work fragmented across {switch_count} context switches with "
                f"{typing_count} typing bursts in {window_minutes} minutes"
            ),
            metadata={
                "typingBursts": typing_count,
                "contextSwitches": switch_count,
                "ratio": ratio,
                "windowMinutes": window_minutes,
            },
        )

    # ------------------------------------------------------------------
    # helpers

    def _match_social_domain(self, url: str) -> str | None:
        """URLに部分一致する最初のSNSドメイン.

        部分文字列での一致なので dropbox.com も x.com として数える。
        """
        for domain in self.config.social_media_domains:
            if domain in url:
                return domain
        return None

    def _calculate_severity(self, actual: int, threshold: int) -> Severity:
        ratio = actual / threshold
        if ratio >= self.config.severity_high_ratio:
            return "high"
        if ratio >= self.config.severity_medium_ratio:
            return "medium"
        return "low"

    @staticmethod
    def _minutes(window_ms: int) -> int | float:
        minutes = window_ms / MINUTE_MS
        return int(minutes) if minutes.is_integer() else minutes
