"""テスト共通のヘルパー."""

from src.model.models import ActivityEvent

NOW = 1_700_000_000_000  # 固定の基準時刻 (エポックミリ秒)
MINUTE = 60_000


class FakeClock:
    """テスト用の手動で進める時計 (ミリ秒)."""

    def __init__(self, start: int = NOW) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def make_event(
    event_type: str = "tab_switch",
    *,
    session_id: str = "sess-1",
    timestamp: int = NOW,
    url: str | None = None,
    typing_velocity: float | None = None,
    idle_duration: float | None = None,
) -> ActivityEvent:
    return ActivityEvent(
        session_id=session_id,
        timestamp=timestamp,
        event_type=event_type,  # type: ignore[arg-type]
        url=url,
        typing_velocity=typing_velocity,
        idle_duration=idle_duration,
    )
