"""Priority request queue that serialises inference calls behind the rate limiter."""

import asyncio
import logging
import secrets
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Generic, Protocol, TypeVar

from src.api.services.errors import (
    QueueClearedError,
    QueueFullError,
    RateLimitExceededError,
    is_rate_limit_error,
)
from src.model.models import now_ms

logger = logging.getLogger("flowstate.request_queue")

T = TypeVar("T")


class Admission(Protocol):
    def acquire(self, estimated_tokens: int = ...) -> bool: ...


@dataclass
class QueuedRequest(Generic[T]):
    """キューで待機中の推論呼び出し."""

    id: str
    execute: Callable[[], Awaitable[T]]
    future: "asyncio.Future[T]"
    priority: int
    timestamp: int
    estimated_tokens: int
    max_retries: int
    retries: int = field(default=0)


def _request_id() -> str:
    return f"req_{now_ms()}_{secrets.token_hex(3)}"


class RequestQueue(Generic[T]):
    """レート制限下で推論呼び出しを直列化するキュー.

    - 優先度の高い順 (同じ優先度は先着順)
    - スロットリング系エラーは指数バックオフで再試行し、キュー先頭へ戻す
    - ドレインループは常に最大1つ
    """

    def __init__(
        self,
        rate_limiter: Admission,
        max_queue_size: int = 50,
        max_retries: int = 3,
        retry_delay_ms: int = 5000,
        *,
        poll_interval_ms: int = 2000,
        default_token_estimate: int = 200,
        is_retryable: Callable[[BaseException], bool] = is_rate_limit_error,
    ) -> None:
        self._rate_limiter = rate_limiter
        self.max_queue_size = max_queue_size
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms
        self.poll_interval_ms = poll_interval_ms
        self.default_token_estimate = default_token_estimate
        self._is_retryable = is_retryable

        self._queue: list[QueuedRequest[T]] = []
        self._processing = False
        self._drain_task: asyncio.Task[None] | None = None
        self._retry_tasks: set[asyncio.Task[None]] = set()

    async def enqueue(
        self,
        execute: Callable[[], Awaitable[T]],
        *,
        priority: int = 0,
        estimated_tokens: int | None = None,
        max_retries: int | None = None,
    ) -> T:
        """リクエストをキューに追加し、結果を待つ.

        Raises:
            QueueFullError: キューが ``max_queue_size`` に達している

        """
        if len(self._queue) >= self.max_queue_size:
            msg = "Request queue is full. Please try again later."
            raise QueueFullError(msg)

        loop = asyncio.get_running_loop()
        request: QueuedRequest[T] = QueuedRequest(
            id=_request_id(),
            execute=execute,
            future=loop.create_future(),
            priority=priority,
            timestamp=now_ms(),
            estimated_tokens=estimated_tokens or self.default_token_estimate,
            max_retries=self.max_retries if max_retries is None else max_retries,
        )
        self._insert(request)
        self._ensure_processing()
        return await request.future

    def get_queue_size(self) -> int:
        return len(self._queue)

    @property
    def is_processing(self) -> bool:
        return self._processing

    def clear(self) -> None:
        """待機中のリクエストをすべて破棄する."""
        pending, self._queue = self._queue, []
        for request in pending:
            if not request.future.done():
                request.future.set_exception(QueueClearedError("Queue cleared"))

    async def shutdown(self) -> None:
        """ドレインループと再試行待ちを停止する."""
        self.clear()
        tasks = list(self._retry_tasks)
        if self._drain_task is not None:
            tasks.append(self._drain_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._processing = False

    # ------------------------------------------------------------------

    def _insert(self, request: QueuedRequest[T]) -> None:
        # 自分より優先度が低い最初の要素の前に挿入 (同順位は後ろへ)
        for index, queued in enumerate(self._queue):
            if queued.priority < request.priority:
                self._queue.insert(index, request)
                return
        self._queue.append(request)

    def _ensure_processing(self) -> None:
        if self._processing:
            return
        self._processing = True
        self._drain_task = asyncio.get_running_loop().create_task(self._process_queue())

    async def _process_queue(self) -> None:
        try:
            while self._queue:
                if self._queue[0].future.done():
                    # 呼び出し側がキャンセル済み. 許可を消費せずに捨てる
                    self._queue.pop(0)
                    continue
                if not self._rate_limiter.acquire(self.default_token_estimate):
                    await asyncio.sleep(self.poll_interval_ms / 1000)
                    continue

                request = self._queue.pop(0)
                logger.debug(
                    "Executing request %s (priority %d, ~%d tokens)",
                    request.id,
                    request.priority,
                    request.estimated_tokens,
                )

                try:
                    result = await request.execute()
                except Exception as exc:  # noqa: BLE001
                    self._handle_failure(request, exc)
                else:
                    if not request.future.done():
                        request.future.set_result(result)
        finally:
            self._processing = False
            self._drain_task = None

    def _handle_failure(self, request: QueuedRequest[T], error: Exception) -> None:
        retryable = self._is_retryable(error)
        if retryable and request.retries < request.max_retries:
            request.retries += 1
            delay_ms = self.retry_delay_ms * 2 ** (request.retries - 1)
            logger.warning(
                "Rate limit hit. Retrying request %s in %dms (attempt %d/%d)",
                request.id,
                delay_ms,
                request.retries,
                request.max_retries,
            )
            task = asyncio.get_running_loop().create_task(
                self._requeue_after(request, delay_ms)
            )
            self._retry_tasks.add(task)
            task.add_done_callback(self._retry_tasks.discard)
            return

        if request.future.done():
            return
        if retryable and not isinstance(error, RateLimitExceededError):
            wrapped = RateLimitExceededError(str(error))
            wrapped.__cause__ = error
            error = wrapped
        request.future.set_exception(error)

    async def _requeue_after(self, request: QueuedRequest[Any], delay_ms: int) -> None:
        await asyncio.sleep(delay_ms / 1000)
        if request.future.done():
            return
        self._queue.insert(0, request)
        self._ensure_processing()
