"""Topic-based fan-out of payment events to live subscribers."""

from __future__ import annotations

import asyncio
import inspect
import itertools
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Union

from ..datalake.schemas import PersistedTransaction
from ..monitoring.logger import current_correlation_id, get_logger
from ..monitoring.metrics import METRICS
from ..utils.constants import lamports_to_sol

GLOBAL_TOPIC = "stats"
WALLET_TOPIC_PREFIX = "wallet-"


class EventType(str, Enum):
    """Event names delivered to subscribers."""

    TRANSACTION = "transaction-update"
    BALANCE = "balance-update"
    EARNINGS = "earnings-update"
    LEADERBOARD = "leaderboard-update"
    STATS = "stats-update"


def wallet_topic(address: str) -> str:
    return f"{WALLET_TOPIC_PREFIX}{address}"


def address_from_topic(topic: str) -> Optional[str]:
    if topic.startswith(WALLET_TOPIC_PREFIX):
        return topic[len(WALLET_TOPIC_PREFIX):] or None
    return None


@dataclass(slots=True)
class Event:
    """A published message as seen by subscribers."""

    topic: str
    type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    correlation_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "topic": self.topic,
            "type": self.type.value,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
            "correlation_id": self.correlation_id,
        }


_SUBSCRIBER_IDS = itertools.count(1)


class Subscriber:
    """A connected session. The queue is its transport."""

    def __init__(self, maxsize: int = 256) -> None:
        self.id = next(_SUBSCRIBER_IDS)
        self.queue: "asyncio.Queue[Event]" = asyncio.Queue(maxsize=maxsize)
        self.connected = True
        self.topics: Set[str] = set()

    def close(self) -> None:
        self.connected = False

    def __repr__(self) -> str:
        return f"Subscriber(id={self.id}, connected={self.connected}, topics={sorted(self.topics)})"


Handler = Callable[[Event], Union[None, Any]]


class FanoutPublisher:
    """Delivers events to every current subscriber of a topic, fire-and-forget."""

    def __init__(self, *, queue_size: int = 256, history_size: int = 200) -> None:
        self._topics: Dict[str, Set[Subscriber]] = {}
        self._handlers: Dict[Optional[EventType], List[Handler]] = defaultdict(list)
        self._history: Deque[Event] = deque(maxlen=history_size)
        self._queue_size = queue_size
        self._pending: Set[asyncio.Task] = set()
        self._logger = get_logger(__name__)

    def subscribe(self, topic: str, subscriber: Optional[Subscriber] = None) -> Subscriber:
        """Join ``topic``, creating it on first join."""

        subscriber = subscriber or Subscriber(self._queue_size)
        self._topics.setdefault(topic, set()).add(subscriber)
        subscriber.topics.add(topic)
        METRICS.gauge("publisher.topics", len(self._topics))
        return subscriber

    def unsubscribe(self, topic: str, subscriber: Subscriber) -> None:
        members = self._topics.get(topic)
        subscriber.topics.discard(topic)
        if members is None:
            return
        members.discard(subscriber)
        if not members:
            del self._topics[topic]
        METRICS.gauge("publisher.topics", len(self._topics))

    def disconnect(self, subscriber: Subscriber) -> List[str]:
        """Close ``subscriber`` and leave every topic; return the topics it left."""

        subscriber.close()
        left = sorted(subscriber.topics)
        for topic in left:
            self.unsubscribe(topic, subscriber)
        return left

    def add_handler(self, event_type: Optional[EventType], handler: Handler) -> None:
        """Register an in-process callback for ``event_type`` on any topic."""

        self._handlers[event_type].append(handler)

    def topics(self) -> List[str]:
        return sorted(self._topics)

    def subscriber_count(self, topic: str) -> int:
        return len(self._topics.get(topic, ()))

    def history(self, limit: int = 100) -> List[Event]:
        return list(self._history)[-limit:]

    def publish(self, topic: str, event_type: Union[EventType, str], payload: Optional[Dict[str, Any]] = None) -> int:
        """Deliver to the current subscribers of ``topic``; return the delivery count.

        Disconnected or backed-up subscribers are dropped rather than retried.
        """

        if isinstance(event_type, str):
            event_type = EventType(event_type)
        correlation_id = current_correlation_id()
        event = Event(
            topic=topic,
            type=event_type,
            payload=dict(payload or {}),
            correlation_id=None if correlation_id == "-" else correlation_id,
        )
        self._history.append(event)
        delivered = 0
        for subscriber in list(self._topics.get(topic, ())):
            if not subscriber.connected:
                self._drop(subscriber)
                continue
            try:
                subscriber.queue.put_nowait(event)
            except asyncio.QueueFull:
                self._logger.warning("Dropping subscriber %s: queue full", subscriber.id)
                self._drop(subscriber)
                continue
            delivered += 1
        METRICS.increment("publisher.delivered", delivered)
        METRICS.increment(f"publisher.events.{event_type.value}")
        self._run_handlers(event)
        return delivered

    def _drop(self, subscriber: Subscriber) -> None:
        METRICS.increment("publisher.dropped")
        self.disconnect(subscriber)

    def _run_handlers(self, event: Event) -> None:
        handlers = list(self._handlers.get(event.type, [])) + list(self._handlers.get(None, []))
        for handler in handlers:
            try:
                result = handler(event)
            except Exception:  # noqa: BLE001
                self._logger.exception("Event handler %s failed", getattr(handler, "__name__", handler))
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._handler_done)

    def _handler_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self._logger.error("Async event handler failed: %s", task.exception())

    async def drain(self) -> None:
        """Wait for in-flight async handlers to finish."""

        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def close(self) -> None:
        for subscriber in {member for members in self._topics.values() for member in members}:
            self.disconnect(subscriber)
        for task in list(self._pending):
            task.cancel()


def transaction_payload(record: PersistedTransaction, rate: Optional[float] = None) -> Dict[str, Any]:
    amount = record.amount_sol
    amount_usd = record.usd_value
    if rate is not None:
        amount_usd = round(amount * rate, 6)
    return {
        "signature": record.signature,
        "fromAddress": record.sender,
        "toAddress": record.receiver,
        "amount": amount,
        "amountLamports": record.amount_lamports,
        "amountUSD": amount_usd,
        "direction": record.direction.value,
        "blockTime": record.block_time,
        "status": record.status.value,
        "type": "received" if record.direction.value == "IN" else "sent",
    }


def balance_payload(lamports: int, rate: float) -> Dict[str, Any]:
    balance = lamports_to_sol(lamports)
    return {"balance": balance, "balanceUSD": round(balance * rate, 6), "rate": rate}


__all__ = [
    "Event",
    "EventType",
    "FanoutPublisher",
    "GLOBAL_TOPIC",
    "Subscriber",
    "address_from_topic",
    "balance_payload",
    "transaction_payload",
    "wallet_topic",
]
