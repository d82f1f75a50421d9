"""Polling change-detection loop that turns new ledger activity into published events."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from ..analytics.summary import earnings_series, leaderboard
from ..config.settings import AppConfig, WatcherConfig, get_app_config
from ..datalake.schemas import PersistedTransaction
from ..datalake.storage import StoreError, TransactionStore
from ..ingestion.ledger import LedgerError, LedgerGateway, is_valid_address
from ..ingestion.pricing import ExchangeRateCache
from ..monitoring.logger import correlation_scope, get_logger, log_fields, new_correlation_id
from ..monitoring.metrics import METRICS
from ..reconciliation.engine import ReconciliationEngine
from .publisher import (
    GLOBAL_TOPIC,
    EventType,
    FanoutPublisher,
    balance_payload,
    transaction_payload,
    wallet_topic,
)


class WatchState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    PUBLISHING = "publishing"


@dataclass(slots=True)
class AddressWatch:
    """Per-address polling state."""

    address: str
    state: WatchState = WatchState.IDLE
    watermark: Optional[str] = None
    in_flight: bool = False
    last_polled_at: Optional[float] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "state": self.state.value,
            "watermark": self.watermark,
            "inFlight": self.in_flight,
            "lastPolledAt": self.last_polled_at,
            "lastError": self.last_error,
            "consecutiveFailures": self.consecutive_failures,
        }


def records_newer_than(records: List[PersistedTransaction], watermark: Optional[str]) -> List[PersistedTransaction]:
    """Return the records ahead of ``watermark`` in a newest-first list.

    Every record counts as new when the watermark is unknown or has fallen out
    of the window.
    """

    if watermark is None:
        return list(records)
    newer: List[PersistedTransaction] = []
    for record in records:
        if record.signature == watermark:
            return newer
        newer.append(record)
    return list(records)


class ChangeDetectionLoop:
    """Polls every watched address on a fixed interval and publishes what changed."""

    def __init__(
        self,
        engine: ReconciliationEngine,
        publisher: FanoutPublisher,
        gateway: LedgerGateway,
        rates: ExchangeRateCache,
        store: TransactionStore,
        config: Optional[AppConfig] = None,
    ) -> None:
        self._config: WatcherConfig = (config or get_app_config()).watcher
        self._engine = engine
        self._publisher = publisher
        self._gateway = gateway
        self._rates = rates
        self._store = store
        self._watches: Dict[str, AddressWatch] = {}
        self._timer: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._logger = get_logger(__name__)

    @property
    def interval(self) -> float:
        return self._config.poll_interval_seconds

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def addresses(self) -> List[str]:
        return sorted(self._watches)

    def is_watching(self, address: str) -> bool:
        return address in self._watches

    def watch(self, address: str) -> Optional[AddressWatch]:
        return self._watches.get(address)

    async def start_watching(self, address: str) -> bool:
        """Add ``address`` to the monitored set; start the timer on the first one."""

        if not is_valid_address(address):
            METRICS.increment("watcher.rejected_addresses")
            self._logger.warning("Refusing to watch invalid address %r", address)
            return False
        if address in self._watches:
            return False
        self._watches[address] = AddressWatch(address=address)
        METRICS.gauge("watcher.addresses", len(self._watches))
        try:
            await self._store.add_watched_address(address)
        except StoreError as exc:
            self._logger.warning("Could not register watched address %s: %s", address, exc)
        if not self.running:
            self._timer = asyncio.create_task(self._run(), name="change-detection-timer")
            self._logger.info("Change detection started (interval %.1fs)", self.interval)
        self._logger.info("Watching %s", address)
        return True

    async def stop_watching(self, address: str) -> bool:
        """Remove ``address``; cancel the timer once nothing is watched."""

        if self._watches.pop(address, None) is None:
            return False
        METRICS.gauge("watcher.addresses", len(self._watches))
        try:
            await self._store.deactivate_watched_address(address)
        except StoreError as exc:
            self._logger.warning("Could not deactivate watched address %s: %s", address, exc)
        if not self._watches:
            await self._cancel_timer()
            self._logger.info("Change detection stopped; no watched addresses")
        self._logger.info("Stopped watching %s", address)
        return True

    async def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is None or timer.done():
            return
        timer.cancel()
        try:
            await timer
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while self._watches:
            await asyncio.sleep(self.interval)
            if not self._watches:
                break
            self._spawn(self.tick())

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def tick(self) -> None:
        """Poll every watched address once, concurrently."""

        METRICS.increment("watcher.ticks")
        with correlation_scope(new_correlation_id("tick")):
            await asyncio.gather(*(self._poll_guarded(address) for address in list(self._watches)))

    async def _poll_guarded(self, address: str) -> None:
        watch = self._watches.get(address)
        if watch is None:
            return
        if watch.in_flight:
            METRICS.increment("watcher.skipped_in_flight")
            self._logger.debug("Skipping %s; previous poll still running", address)
            return
        watch.in_flight = True
        try:
            with log_fields(address=address):
                await self.poll_address(address)
            watch.consecutive_failures = 0
            watch.last_error = None
        except Exception as exc:  # noqa: BLE001
            watch.consecutive_failures += 1
            watch.last_error = str(exc)
            watch.state = WatchState.IDLE
            METRICS.increment("watcher.poll_failures")
            self._logger.warning("Poll failed for %s (%d in a row): %s", address, watch.consecutive_failures, exc)
        finally:
            watch.in_flight = False
            watch.last_polled_at = time.time()

    async def poll_address(self, address: str) -> List[PersistedTransaction]:
        """Reconcile ``address`` and publish anything newer than its watermark."""

        watch = self._watches.get(address) or AddressWatch(address=address)
        watch.state = WatchState.POLLING
        records = await self._engine.reconcile(address, limit=self._config.poll_page_size)
        newest = records[0].signature if records else None
        if newest is None or newest == watch.watermark:
            watch.state = WatchState.UNCHANGED
            return []
        watch.state = WatchState.CHANGED
        fresh = records_newer_than(records, watch.watermark)
        watch.watermark = newest
        watch.state = WatchState.PUBLISHING
        try:
            await self._publish_changes(address, fresh)
        finally:
            watch.state = WatchState.IDLE
        return fresh

    async def _publish_changes(self, address: str, fresh: List[PersistedTransaction]) -> None:
        rate = await self._rates.get_rate()
        topic = wallet_topic(address)
        for record in reversed(fresh):
            self._publisher.publish(topic, EventType.TRANSACTION, transaction_payload(record, rate))
        self._publisher.publish(
            GLOBAL_TOPIC,
            EventType.STATS,
            {"address": address, "newTransactions": len(fresh), "latestSignature": fresh[0].signature},
        )
        self._logger.info("Published %d new transactions for %s", len(fresh), address)
        await self._publish_balance(address, rate)
        await self._publish_earnings(address)
        await self._publish_leaderboard()

    async def _publish_balance(self, address: str, rate: float, lamports: Optional[int] = None) -> None:
        if lamports is None:
            try:
                lamports = await self._gateway.get_balance(address)
            except LedgerError as exc:
                self._logger.warning("Balance refresh failed for %s: %s", address, exc)
                return
        self._publisher.publish(wallet_topic(address), EventType.BALANCE, balance_payload(lamports, rate))

    async def _publish_earnings(self, address: str) -> None:
        try:
            series = await earnings_series(self._store, address, self._config.earnings_window_days)
        except StoreError as exc:
            self._logger.warning("Earnings refresh failed for %s: %s", address, exc)
            return
        self._publisher.publish(wallet_topic(address), EventType.EARNINGS, {"address": address, "earnings": series})

    async def _publish_leaderboard(self) -> None:
        try:
            board = await leaderboard(self._store, limit=self._config.leaderboard_limit)
        except StoreError as exc:
            self._logger.warning("Leaderboard refresh failed: %s", exc)
            return
        self._publisher.publish(GLOBAL_TOPIC, EventType.LEADERBOARD, {"leaderboard": board})

    async def notify_account_change(self, address: str, lamports: int, slot: Optional[int] = None) -> None:
        """Push hook for live account notifications."""

        if address not in self._watches:
            return
        rate = await self._rates.get_rate()
        await self._publish_balance(address, rate, lamports)
        self._logger.debug("Account %s changed at slot %s; scheduling poll", address, slot)
        self._spawn(self._poll_guarded(address))

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "intervalSeconds": self.interval,
            "addresses": [watch.to_dict() for watch in self._watches.values()],
        }

    async def shutdown(self) -> None:
        self._watches.clear()
        METRICS.gauge("watcher.addresses", 0)
        await self._cancel_timer()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)


__all__ = ["AddressWatch", "ChangeDetectionLoop", "WatchState", "records_newer_than"]
