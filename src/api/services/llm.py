"""Inference client for an OpenAI-compatible chat API (e.g. Groq, LM Studio)."""

import asyncio
import logging
import math
import os
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal, TypedDict

import requests
from dotenv import load_dotenv

from src.api.services.errors import (
    InferenceHTTPError,
    ModelUnavailableError,
    RateLimitExceededError,
    UnknownInferenceError,
    is_model_unavailable_error,
    is_rate_limit_error,
)
from src.api.services.rate_limiter import RateLimitConfig, RateLimiter
from src.api.services.request_queue import RequestQueue

logger = logging.getLogger("flowstate.llm")

HTTP_OK = 200
FALLBACK_MAX_TOKENS = 4096
FAST_PRIORITY = 1
DEEP_PRIORITY = 0

REPO_ROOT = Path(__file__).resolve().parents[3]

Role = Literal["system", "user", "assistant"]


class ChatMessage(TypedDict):
    role: Role
    content: str


class RateLimitStats(TypedDict):
    available_tokens: int
    queue_size: int
    time_until_next_request: int


RetryAfterParser = Callable[[BaseException], float | None]

_TRY_AGAIN_RE = re.compile(r"try again in ([\d.]+)s", re.IGNORECASE)


def parse_retry_after(error: BaseException) -> float | None:
    """エラーから再試行までの秒数を取り出す.

    ``retry-after`` ヘッダ、または本文の "try again in Ns" を解釈する。
    プロバイダごとに形式が異なるため InferenceClient に差し替え可能。
    """
    headers = getattr(error, "headers", None) or {}
    header = headers.get("retry-after")
    if header:
        try:
            return float(header)
        except ValueError:
            pass
    match = _TRY_AGAIN_RE.search(str(error))
    if match:
        try:
            return float(math.ceil(float(match.group(1))))
        except ValueError:
            return None
    return None


class ChatCompletionsTransport:
    """``/v1/chat/completions`` への同期HTTPクライアント."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 20.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.chat_url = f"{self.base_url}/v1/chat/completions"

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def is_available(self) -> bool:
        """推論サーバーが利用可能かチェック."""
        try:
            response = requests.get(
                f"{self.base_url}/v1/models", timeout=5, headers=self._headers()
            )
        except requests.RequestException:
            return False
        else:
            status_code: int = response.status_code
            return status_code == HTTP_OK

    def complete(
        self,
        messages: list[ChatMessage],
        model: str,
        max_tokens: int,
        temperature: float,
        response_format: dict[str, Any] | None = None,
    ) -> str:
        """チャット補完を1回呼び出してテキストを返す.

        Raises:
            InferenceHTTPError: 通信失敗または200以外の応答

        """
        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if response_format:
            payload["response_format"] = response_format

        try:
            response = requests.post(
                self.chat_url,
                json=payload,
                timeout=self.timeout,
                headers=self._headers(),
            )
        except requests.RequestException as exc:
            msg = f"Request to {self.chat_url} failed: {exc}"
            raise InferenceHTTPError(msg) from exc

        if response.status_code != HTTP_OK:
            msg = f"{response.status_code} {self._error_text(response)}"
            raise InferenceHTTPError(
                msg,
                status_code=response.status_code,
                headers=dict(response.headers),
            )

        data = response.json()
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            return ""
        return content or ""

    @staticmethod
    def _error_text(response: requests.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            code = error.get("code") or error.get("type") or ""
            message = error.get("message", "")
            return f"{code}: {message}" if code else str(message)
        return response.text


@dataclass(frozen=True)
class InferenceConfig:
    fast_model: str = "llama-3.1-8b-instant"
    deep_model: str = "llama-3.1-70b-versatile"
    max_tokens: int = 1000
    temperature: float = 0.7


class InferenceClient:
    """高速 (fast) / 詳細 (deep) の2段階モデルを扱う推論クライアント.

    すべての呼び出しは RequestQueue を経由し、RateLimiter の許可を得てから
    実行される。deep モデルが廃止されている場合は fast モデルへ自動で
    フォールバックする。
    """

    def __init__(
        self,
        transport: ChatCompletionsTransport,
        config: InferenceConfig | None = None,
        *,
        rate_limiter: RateLimiter | None = None,
        request_queue: RequestQueue[str] | None = None,
        retry_after_parser: RetryAfterParser = parse_retry_after,
        max_retry_after: float = 60.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.transport = transport
        self.config = config or InferenceConfig()
        self.rate_limiter = rate_limiter or RateLimiter(RateLimitConfig())
        self.request_queue: RequestQueue[str] = request_queue or RequestQueue(
            self.rate_limiter, max_queue_size=50, max_retries=3, retry_delay_ms=5000
        )
        self._parse_retry_after = retry_after_parser
        self._max_retry_after = max_retry_after
        self._sleep = sleep

    # ------------------------------------------------------------------
    # public API

    async def generate_fast(
        self,
        prompt: str,
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
        response_format: dict[str, Any] | None = None,
    ) -> str:
        """リアルタイム介入向けの高速モデル呼び出し (優先度高)."""
        tokens = max_tokens or self.config.max_tokens
        messages: list[ChatMessage] = [{"role": "user", "content": prompt}]
        model = self.config.fast_model

        async def execute() -> str:
            try:
                return await self._complete(
                    messages, model, tokens, temperature, response_format
                )
            except Exception as exc:
                if is_rate_limit_error(exc):
                    await self._raise_rate_limited(exc, model)
                logger.exception("Fast model (%s) inference error", model)
                msg = f"Fast model API error: {exc}"
                raise UnknownInferenceError(msg) from exc

        return await self.request_queue.enqueue(
            execute, priority=FAST_PRIORITY, estimated_tokens=tokens
        )

    async def generate_deep(
        self,
        prompt: str,
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
        response_format: dict[str, Any] | None = None,
    ) -> str:
        """セッション後分析向けの詳細モデル呼び出し (優先度低).

        deep モデルが廃止・未知として拒否された場合は、トークン上限を2倍
        (最大4096) にして fast モデルで1回だけ再実行する。
        """
        tokens = max_tokens or self.config.max_tokens
        messages: list[ChatMessage] = [{"role": "user", "content": prompt}]
        model = self.config.deep_model

        async def execute() -> str:
            try:
                return await self._complete(
                    messages, model, tokens, temperature, response_format
                )
            except Exception as exc:
                if is_rate_limit_error(exc):
                    await self._raise_rate_limited(exc, model)
                if is_model_unavailable_error(exc):
                    return await self._fallback(
                        messages,
                        failed_model=model,
                        error=exc,
                        max_tokens=min(tokens * 2, FALLBACK_MAX_TOKENS),
                        temperature=temperature,
                        response_format=response_format,
                    )
                logger.exception("Deep model (%s) inference error", model)
                msg = f"Deep model API error: {exc}"
                raise UnknownInferenceError(msg) from exc

        return await self.request_queue.enqueue(
            execute, priority=DEEP_PRIORITY, estimated_tokens=tokens
        )

    async def generate_with_history(
        self,
        messages: list[ChatMessage],
        use_fast_model: bool = True,  # noqa: FBT001, FBT002
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str:
        """会話履歴付きの呼び出し. フォールバック先は常に fast モデル."""
        tokens = max_tokens or self.config.max_tokens
        model = self.config.fast_model if use_fast_model else self.config.deep_model
        history = list(messages)

        async def execute() -> str:
            try:
                return await self._complete(history, model, tokens, temperature)
            except Exception as exc:
                if is_rate_limit_error(exc):
                    await self._raise_rate_limited(exc, model)
                if is_model_unavailable_error(exc):
                    return await self._fallback(
                        history,
                        failed_model=model,
                        error=exc,
                        max_tokens=tokens,
                        temperature=temperature,
                    )
                logger.exception("Chat history inference error (%s)", model)
                msg = f"Inference API error: {exc}"
                raise UnknownInferenceError(msg) from exc

        return await self.request_queue.enqueue(
            execute,
            priority=FAST_PRIORITY if use_fast_model else DEEP_PRIORITY,
            estimated_tokens=tokens,
        )

    def get_rate_limit_stats(self) -> RateLimitStats:
        """ヘルスチェック用の統計."""
        return {
            "available_tokens": self.rate_limiter.get_available_tokens(),
            "queue_size": self.request_queue.get_queue_size(),
            "time_until_next_request": self.rate_limiter.get_time_until_next_request(),
        }

    def is_available(self) -> bool:
        return self.transport.is_available()

    async def aclose(self) -> None:
        await self.request_queue.shutdown()

    # ------------------------------------------------------------------
    # internals

    async def _complete(
        self,
        messages: list[ChatMessage],
        model: str,
        max_tokens: int,
        temperature: float | None,
        response_format: dict[str, Any] | None = None,
    ) -> str:
        return await asyncio.to_thread(
            self.transport.complete,
            messages,
            model,
            max_tokens,
            self.config.temperature if temperature is None else temperature,
            response_format,
        )

    async def _raise_rate_limited(self, error: Exception, model: str) -> None:
        retry_after = self._parse_retry_after(error)
        if retry_after:
            wait = min(retry_after, self._max_retry_after)
            logger.warning("Rate limit hit (%s). Retry after %ss", model, wait)
            await self._sleep(wait)
        msg = f"Rate limit exceeded: {error}"
        raise RateLimitExceededError(msg, retry_after=retry_after) from error

    async def _fallback(
        self,
        messages: list[ChatMessage],
        *,
        failed_model: str,
        error: Exception,
        max_tokens: int,
        temperature: float | None,
        response_format: dict[str, Any] | None = None,
    ) -> str:
        fallback_model = self.config.fast_model
        logger.warning(
            "Model %s is unavailable (%s). Falling back to %s. "
            "Please update the configured model name.",
            failed_model,
            error,
            fallback_model,
        )
        try:
            result = await self._complete(
                messages, fallback_model, max_tokens, temperature, response_format
            )
        except Exception as fallback_error:
            logger.exception("Fallback model %s also failed", fallback_model)
            msg = (
                f"Both models failed. {failed_model} error: {error}, "
                f"{fallback_model} fallback error: {fallback_error}"
            )
            raise ModelUnavailableError(msg) from fallback_error
        logger.info("Used %s as fallback for %s", fallback_model, failed_model)
        return result


def create_inference_client(
    base_url: str | None = None,
    api_key: str | None = None,
) -> InferenceClient | None:
    """推論クライアントのファクトリ関数.

    環境変数 (リポジトリ直下の .env.local からも読み込む):
    - LLM_URL: OpenAI互換APIのベースURL（例: https://api.groq.com/openai）
    - LLM_API_KEY: APIキー
    - LLM_FAST_MODEL / LLM_DEEP_MODEL: モデル名
    - LLM_MAX_TOKENS / LLM_TEMPERATURE
    - LLM_TOKENS_PER_MINUTE / LLM_REQUESTS_PER_MINUTE

    LLM_URL が未設定の場合は None を返し、AI機能なしで動作させる。
    """
    load_dotenv(dotenv_path=REPO_ROOT / ".env.local", override=False)

    resolved_base = base_url or os.getenv("LLM_URL")
    if not resolved_base:
        logger.warning("LLM_URL not set. AI features will be disabled.")
        return None

    defaults = InferenceConfig()
    config = InferenceConfig(
        fast_model=os.getenv("LLM_FAST_MODEL") or defaults.fast_model,
        deep_model=os.getenv("LLM_DEEP_MODEL") or defaults.deep_model,
        max_tokens=int(os.getenv("LLM_MAX_TOKENS") or defaults.max_tokens),
        temperature=float(os.getenv("LLM_TEMPERATURE") or defaults.temperature),
    )
    limits = RateLimitConfig(
        tokens_per_minute=int(os.getenv("LLM_TOKENS_PER_MINUTE") or 5000),
        requests_per_minute=int(os.getenv("LLM_REQUESTS_PER_MINUTE") or 25),
    )
    transport = ChatCompletionsTransport(
        base_url=resolved_base,
        api_key=api_key or os.getenv("LLM_API_KEY") or None,
    )
    return InferenceClient(transport, config, rate_limiter=RateLimiter(limits))
