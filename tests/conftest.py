from unittest.mock import AsyncMock, Mock

import pytest

from src.api.services.rate_limiter import RateLimitConfig, RateLimiter
from src.model.models import DistractionPattern, Session
from tests.helpers import MINUTE, NOW, FakeClock, make_event


@pytest.fixture
def clock():
    """手動で進める時計"""
    return FakeClock()


@pytest.fixture
def unlimited_limiter(clock):
    """実質無制限のレートリミッター"""
    return RateLimiter(
        RateLimitConfig(tokens_per_minute=1_000_000, requests_per_minute=10_000),
        clock=clock,
    )


@pytest.fixture
def session():
    """30分前に開始した進行中のセッション"""
    return Session(id="sess-1", start_time=NOW - 30 * MINUTE)


@pytest.fixture
def context_switch_burst():
    """5分以内に異なるURLへ8回タブ切り替え"""
    return [
        make_event(
            "tab_switch",
            timestamp=NOW - i * 10_000,
            url=f"https://site{i}.example.com/",
        )
        for i in range(8)
    ]


@pytest.fixture
def long_idle_event():
    """6分間のアイドルから復帰"""
    return make_event("idle_end", timestamp=NOW - 1_000, idle_duration=360)


@pytest.fixture
def sample_pattern():
    return DistractionPattern(
        type="context_switching",
        severity="medium",
        description="12 tab switches in 5 minutes across 9 different sites",
        metadata={"switchCount": 12},
    )


@pytest.fixture
def mock_inference_client():
    """InferenceClient のモック"""
    mock = Mock()
    mock.generate_fast = AsyncMock(return_value="Pick one tab and stay there.")
    mock.generate_deep = AsyncMock(return_value="")
    return mock
