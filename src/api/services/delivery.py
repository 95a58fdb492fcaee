"""Best-effort push of interventions and session updates to subscribers."""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field, is_dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger("flowstate.delivery")


class ClientType(Enum):
    """購読クライアントの種類."""

    EXTENSION = "extension"
    FRONTEND = "frontend"


@dataclass
class Subscription:
    session_id: str
    client_type: ClientType
    queue: "asyncio.Queue[dict[str, Any]]"
    connected_at: float = field(default_factory=time.time)


class DeliveryHub:
    """セッションIDごとの購読者へペイロードを配信する.

    配信は fire-and-forget で、購読者のキューが満杯なら破棄する。
    接続のライフサイクルは呼び出し側 (WebSocketハンドラ) が管理する。
    """

    def __init__(self, max_queue_size: int = 100, history_size: int = 100) -> None:
        self.max_queue_size = max_queue_size
        self.history_size = history_size
        self._subscribers: dict[str, list[Subscription]] = {}
        self._history: list[dict[str, Any]] = []

    def subscribe(
        self,
        session_id: str,
        client_type: ClientType = ClientType.FRONTEND,
    ) -> Subscription:
        subscription = Subscription(
            session_id=session_id,
            client_type=client_type,
            queue=asyncio.Queue(maxsize=self.max_queue_size),
        )
        self._subscribers.setdefault(session_id, []).append(subscription)
        logger.info("%s subscribed to session %s", client_type.value, session_id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        listeners = self._subscribers.get(subscription.session_id, [])
        if subscription in listeners:
            listeners.remove(subscription)
        if not listeners:
            self._subscribers.pop(subscription.session_id, None)

    def deliver(self, session_id: str, event: str, data: Any) -> int:
        """購読者全員にイベントを送る. 届いた購読者数を返す."""
        payload = asdict(data) if is_dataclass(data) and not isinstance(data, type) else data
        message = {"event": event, "data": payload}

        delivered = 0
        for subscription in list(self._subscribers.get(session_id, [])):
            try:
                subscription.queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning(
                    "Dropping %s for session %s: subscriber queue full",
                    event,
                    session_id,
                )
                continue
            delivered += 1

        self._history.append(
            {
                "session_id": session_id,
                "event": event,
                "delivered": delivered,
                "timestamp": time.time(),
            }
        )
        del self._history[: -self.history_size]
        return delivered

    def listener_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, []))

    def get_history(self) -> list[dict[str, Any]]:
        """配信履歴のコピーを返す."""
        return list(self._history)

    def get_connection_stats(self) -> dict[str, int]:
        subscriptions = [s for subs in self._subscribers.values() for s in subs]
        return {
            "extension_connections": sum(
                1 for s in subscriptions if s.client_type is ClientType.EXTENSION
            ),
            "frontend_connections": sum(
                1 for s in subscriptions if s.client_type is ClientType.FRONTEND
            ),
            "total_connections": len(subscriptions),
        }
