"""Token bucket + sliding window admission control for inference calls."""

import logging
import math
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from src.model.models import now_ms

logger = logging.getLogger("flowstate.rate_limiter")

WINDOW_MS = 60_000
DEFAULT_MIN_INTERVENTION_INTERVAL_MS = 10 * 60 * 1000


@dataclass(frozen=True)
class RateLimitConfig:
    """推論APIのレート制限設定 (無料枠より少し控えめ)."""

    tokens_per_minute: int = 5000
    requests_per_minute: int = 25
    burst_size: int = 5


class RateLimiter:
    """推論API呼び出しの許可判定.

    ``acquire`` は待機せず即座に True/False を返す。待機や再試行は
    呼び出し側 (RequestQueue) の責任。状態はこのクラスだけが変更する。
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._tokens = float(self.config.tokens_per_minute)
        self._requests: deque[int] = deque()
        self._last_refill = clock()
        self._session_interventions: dict[str, int] = {}

    def acquire(self, estimated_tokens: int = 200) -> bool:
        """リクエスト可能ならトークンを消費して True を返す."""
        now = self._clock()
        self._refill_tokens(now)
        self._clean_old_requests(now)

        if len(self._requests) >= self.config.requests_per_minute:
            wait_ms = self._requests[0] + WINDOW_MS - now
            logger.warning(
                "Rate limit: too many requests. Wait %ss", math.ceil(wait_ms / 1000)
            )
            return False

        if self._tokens < estimated_tokens:
            tokens_per_second = self.config.tokens_per_minute / 60
            wait_s = (estimated_tokens - self._tokens) / tokens_per_second
            logger.warning(
                "Rate limit: not enough tokens. Need %d, have %d. Wait %ss",
                estimated_tokens,
                math.floor(self._tokens),
                math.ceil(wait_s),
            )
            return False

        self._tokens -= estimated_tokens
        self._requests.append(now)
        return True

    def can_send_intervention(
        self,
        session_id: str,
        min_interval_ms: int = DEFAULT_MIN_INTERVENTION_INTERVAL_MS,
    ) -> bool:
        """セッション単位の介入間隔チェック (初回は常に True)."""
        last = self._session_interventions.get(session_id)
        if last is None:
            return True
        elapsed = self._clock() - last
        if elapsed < min_interval_ms:
            logger.debug(
                "Intervention throttled for session %s: %ss remaining",
                session_id,
                math.ceil((min_interval_ms - elapsed) / 1000),
            )
            return False
        return True

    def record_intervention(self, session_id: str) -> None:
        self._session_interventions[session_id] = self._clock()

    def clear_session(self, session_id: str) -> None:
        """セッション終了時に介入記録を削除する."""
        self._session_interventions.pop(session_id, None)

    def get_available_tokens(self) -> int:
        """補充してから現在のトークン数を返す."""
        self._refill_tokens(self._clock())
        return math.floor(self._tokens)

    def get_time_until_next_request(self) -> int:
        """次のリクエストが可能になるまでのミリ秒."""
        now = self._clock()
        self._clean_old_requests(now)
        if len(self._requests) < self.config.requests_per_minute:
            return 0
        return max(0, self._requests[0] + WINDOW_MS - now)

    @property
    def tracked_sessions(self) -> int:
        return len(self._session_interventions)

    def _refill_tokens(self, now: int) -> None:
        elapsed = now - self._last_refill
        if elapsed <= 0:
            return
        refill = elapsed / WINDOW_MS * self.config.tokens_per_minute
        self._tokens = min(float(self.config.tokens_per_minute), self._tokens + refill)
        self._last_refill = now

    def _clean_old_requests(self, now: int) -> None:
        cutoff = now - WINDOW_MS
        while self._requests and self._requests[0] <= cutoff:
            self._requests.popleft()
