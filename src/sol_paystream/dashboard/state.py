"""Shared dashboard state: read paths and live-session bookkeeping."""

from __future__ import annotations

import time
from collections import defaultdict
from typing import Any, Dict, List, Optional, Set

from ..analytics.summary import leaderboard
from ..datalake.schemas import PersistedTransaction, TransactionStatus
from ..datalake.storage import StoreError
from ..ingestion.ledger import is_valid_address
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS, MetricsRegistry
from ..realtime.context import RealtimeContext
from ..realtime.publisher import GLOBAL_TOPIC, Subscriber, address_from_topic, balance_payload, wallet_topic
from .utils import pagination_view, totals_view, transaction_view


class DashboardState:
    """Wraps the realtime context for HTTP and websocket handlers.

    Addresses watched because a session asked for them are released when the
    last session leaves their topic; addresses pinned through the API or the
    registry keep being watched.
    """

    def __init__(self, ctx: RealtimeContext, *, metrics: MetricsRegistry = METRICS) -> None:
        self.ctx = ctx
        self.config = ctx.config
        self.metrics = metrics
        self._pinned: Set[str] = set(ctx.loop.addresses())
        self._session_counts: Dict[str, int] = defaultdict(int)
        self._session_topics: Dict[int, Set[str]] = defaultdict(set)
        self._logger = get_logger(__name__)

    async def list_transactions(self, address: str, page: int = 1, limit: Optional[int] = None) -> Dict[str, Any]:
        """Reconcile and page; raises :class:`ReconciliationError` on hard failure."""

        await self._register(address)
        result = await self.ctx.engine.reconcile_and_list(address, page=page, limit=limit)
        return {
            "transactions": [transaction_view(record) for record in result.transactions],
            "pagination": pagination_view(result.pagination),
            "stale": result.stale,
        }

    async def _register(self, address: str) -> None:
        # Registers without reactivating an address someone stopped watching.
        try:
            await self.ctx.store.add_watched_address(address, reactivate=False)
        except StoreError as exc:
            self._logger.warning("Could not register %s: %s", address, exc)

    async def transaction(self, signature: str) -> Dict[str, Any]:
        record = await self.ctx.store.find_by_signature(signature)
        if record is None:
            raise KeyError(signature)
        return transaction_view(record)

    async def stats(self, address: str, days: Optional[int] = None) -> Dict[str, Any]:
        since = int(time.time()) - days * 86_400 if days else None
        totals = await self.ctx.store.totals(address, since=since)
        return {"address": address, "days": days, **totals_view(totals)}

    async def export(self, address: str) -> List[PersistedTransaction]:
        return await self.ctx.store.list_by_address(address, limit=self.config.dashboard.export_limit)

    def last_known_transactions(self, address: str) -> Optional[Dict[str, Any]]:
        cached = self.ctx.engine.last_known(address)
        if cached is None:
            return None
        return {
            "transactions": [transaction_view(record) for record in cached.transactions],
            "pagination": pagination_view(cached.pagination),
            "stale": True,
        }

    async def balance(self, address: str) -> Dict[str, Any]:
        lamports = await self.ctx.gateway.get_balance(address)
        rate = await self.ctx.rates.get_rate()
        return {"address": address, **balance_payload(lamports, rate)}

    async def leaderboard(self, limit: int = 10, days: Optional[int] = None) -> List[Dict[str, Any]]:
        return await leaderboard(self.ctx.store, days=days, limit=limit)

    async def set_status(self, signature: str, status: TransactionStatus) -> Dict[str, Any]:
        current = await self.ctx.store.find_by_signature(signature)
        if current is None:
            raise KeyError(signature)
        previous = current.status
        updated = await self.ctx.store.update_status(signature, status)
        if previous != updated.status and self.ctx.notifier.enabled:
            await self.ctx.notifier.send_status_change(updated, previous)
        return transaction_view(updated)

    def watcher_status(self) -> Dict[str, Any]:
        status = self.ctx.loop.status()
        status["topics"] = {topic: self.ctx.publisher.subscriber_count(topic) for topic in self.ctx.publisher.topics()}
        subscriber = self.ctx.subscriber
        status["subscription"] = subscriber.state.value if subscriber is not None else "disabled"
        return status

    async def pin(self, address: str) -> bool:
        self._pinned.add(address)
        return await self.ctx.watch(address)

    async def unpin(self, address: str) -> bool:
        self._pinned.discard(address)
        if self._session_counts.get(address):
            return False
        return await self.ctx.unwatch(address)

    async def join(self, subscriber: Subscriber, topic: str) -> None:
        """Subscribe a session to ``topic``; raises ``ValueError`` for a bad wallet topic."""

        address = address_from_topic(topic)
        if address is not None and not is_valid_address(address):
            raise ValueError(f"Invalid Solana address in topic {topic!r}")
        joined = self._session_topics[subscriber.id]
        if topic in joined:
            return
        joined.add(topic)
        self.ctx.publisher.subscribe(topic, subscriber)
        if address is None:
            return
        self._session_counts[address] += 1
        await self.ctx.watch(address)

    async def leave(self, subscriber: Subscriber, topic: str) -> None:
        joined = self._session_topics.get(subscriber.id)
        if not joined or topic not in joined:
            return
        joined.discard(topic)
        self.ctx.publisher.unsubscribe(topic, subscriber)
        await self._release(address_from_topic(topic))

    async def open_session(self, address: Optional[str] = None) -> Subscriber:
        subscriber = Subscriber(self.config.dashboard.subscriber_queue_size)
        await self.join(subscriber, GLOBAL_TOPIC)
        if address:
            await self.join(subscriber, wallet_topic(address))
        return subscriber

    async def close_session(self, subscriber: Subscriber) -> None:
        self.ctx.publisher.disconnect(subscriber)
        for topic in sorted(self._session_topics.pop(subscriber.id, set())):
            await self._release(address_from_topic(topic))

    async def _release(self, address: Optional[str]) -> None:
        if address is None:
            return
        remaining = self._session_counts.get(address, 0) - 1
        if remaining > 0:
            self._session_counts[address] = remaining
            return
        self._session_counts.pop(address, None)
        if address not in self._pinned:
            await self.ctx.unwatch(address)

    def metrics_snapshot(self) -> Dict[str, object]:
        return {"metrics": self.metrics.snapshot(), "pipeline": self.metrics.pipeline_summary()}


__all__ = ["DashboardState"]
