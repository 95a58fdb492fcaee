"""Errors surfaced by the inference layer."""

import re
from collections.abc import Mapping

HTTP_BAD_REQUEST = 400
HTTP_TOO_MANY_REQUESTS = 429

_MODEL_UNAVAILABLE_MARKERS = (
    "decommissioned",
    "model_decommissioned",
    "unknown model",
    "model_not_found",
)


class InferenceError(Exception):
    """推論レイヤーのエラー基底クラス."""


class RateLimitExceededError(InferenceError):
    """外部APIがレート制限で拒否した (キューで再試行済み)."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ModelUnavailableError(InferenceError):
    """モデルが廃止・未知として拒否され、フォールバックも失敗した."""


class UnknownInferenceError(InferenceError):
    """その他の推論エラー (再試行しない)."""


class QueueFullError(InferenceError):
    """リクエストキューが満杯."""


class QueueClearedError(InferenceError):
    """キューがクリアされ、リクエストが破棄された."""


class InferenceHTTPError(Exception):
    """推論APIの境界で発生した生のエラー."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.headers: dict[str, str] = {
            k.lower(): v for k, v in (headers or {}).items()
        }


def is_rate_limit_error(error: BaseException) -> bool:
    """HTTP 429 相当またはレート制限メッセージを含むか."""
    if isinstance(error, RateLimitExceededError):
        return True
    if isinstance(error, (ModelUnavailableError, UnknownInferenceError)):
        return False
    if getattr(error, "status_code", None) == HTTP_TOO_MANY_REQUESTS:
        return True
    message = str(error).lower()
    return "429" in message or "rate_limit" in message or "rate limit" in message


def is_model_unavailable_error(error: BaseException) -> bool:
    """モデル廃止 (400 + model) を示すエラーか."""
    message = str(error).lower()
    if any(marker in message for marker in _MODEL_UNAVAILABLE_MARKERS):
        return True
    return (
        getattr(error, "status_code", None) == HTTP_BAD_REQUEST
        and re.search(r"\bmodel\b", message) is not None
    )
