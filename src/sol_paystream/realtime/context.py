"""Explicit runtime context wiring the pipeline together."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

from ..config.settings import AppConfig, get_app_config
from ..datalake.storage import SQLiteStorage, StoreError, TransactionStore
from ..ingestion.ledger import LedgerGateway
from ..ingestion.pricing import CoinGeckoOracle, ExchangeRateCache, PriceOracle
from ..ingestion.subscription import AccountSubscriber
from ..monitoring.logger import get_logger
from ..notifications.webhooks import WebhookNotifier
from ..reconciliation.engine import ReconciliationEngine
from .publisher import FanoutPublisher
from .watcher import ChangeDetectionLoop

_LOGGER = get_logger(__name__)


@dataclass
class RealtimeContext:
    """Everything a running process needs; created by :func:`init`, torn down by :func:`shutdown`."""

    config: AppConfig
    storage: SQLiteStorage
    store: TransactionStore
    gateway: LedgerGateway
    rates: ExchangeRateCache
    publisher: FanoutPublisher
    engine: ReconciliationEngine
    loop: ChangeDetectionLoop
    notifier: WebhookNotifier
    subscriber: Optional[AccountSubscriber] = None
    owned: Dict[str, Any] = field(default_factory=dict)
    closed: bool = False

    async def watch(self, address: str) -> bool:
        started = await self.loop.start_watching(address)
        if self.subscriber is not None:
            await self.subscriber.add_address(address)
        return started

    async def unwatch(self, address: str) -> bool:
        stopped = await self.loop.stop_watching(address)
        if self.subscriber is not None:
            await self.subscriber.remove_address(address)
        return stopped


async def init(
    config: Optional[AppConfig] = None,
    *,
    gateway: Optional[LedgerGateway] = None,
    oracle: Optional[PriceOracle] = None,
    storage: Optional[SQLiteStorage] = None,
    notifier: Optional[WebhookNotifier] = None,
    resume: bool = True,
) -> RealtimeContext:
    """Build the pipeline and resume watching every active registered address."""

    app_config = config or get_app_config()
    owned: Dict[str, Any] = {}
    storage = storage or SQLiteStorage(app_config.storage.database_path)
    store = TransactionStore(storage, timeout=app_config.storage.timeout_seconds)
    if gateway is None:
        gateway = LedgerGateway(app_config.rpc)
        owned["gateway"] = gateway
    if oracle is None:
        oracle = CoinGeckoOracle(app_config.pricing)
        owned["oracle"] = oracle
    rates = ExchangeRateCache(oracle, app_config.pricing)
    publisher = FanoutPublisher(queue_size=app_config.dashboard.subscriber_queue_size)
    engine = ReconciliationEngine(gateway, store, rates, app_config)
    loop = ChangeDetectionLoop(engine, publisher, gateway, rates, store, app_config)
    if notifier is None:
        notifier = WebhookNotifier(app_config.webhooks)
        owned["notifier"] = notifier
    if notifier.enabled:
        publisher.add_handler(None, notifier.handle_event)
    subscriber = None
    if app_config.watcher.enable_account_subscription:
        subscriber = AccountSubscriber(loop.notify_account_change, app_config)
    ctx = RealtimeContext(
        config=app_config,
        storage=storage,
        store=store,
        gateway=gateway,
        rates=rates,
        publisher=publisher,
        engine=engine,
        loop=loop,
        notifier=notifier,
        subscriber=subscriber,
        owned=owned,
    )
    if resume:
        await _resume_watches(ctx)
    if subscriber is not None:
        subscriber.start()
    return ctx


async def _resume_watches(ctx: RealtimeContext) -> None:
    try:
        watched = await ctx.store.list_watched_addresses(active_only=True)
    except StoreError as exc:
        _LOGGER.warning("Could not load watched addresses: %s", exc)
        return
    resumed: Set[str] = set()
    for entry in watched:
        await ctx.watch(entry.address)
        resumed.add(entry.address)
    if resumed:
        _LOGGER.info("Resumed watching %d addresses", len(resumed))


async def shutdown(ctx: RealtimeContext) -> None:
    if ctx.closed:
        return
    ctx.closed = True
    await ctx.loop.shutdown()
    if ctx.subscriber is not None:
        await ctx.subscriber.stop()
    await ctx.publisher.drain()
    ctx.publisher.close()
    if "gateway" in ctx.owned:
        await ctx.gateway.close()
    if "oracle" in ctx.owned:
        ctx.owned["oracle"].close()
    if "notifier" in ctx.owned:
        ctx.notifier.close()
    _LOGGER.info("Realtime context shut down")


__all__ = ["RealtimeContext", "init", "shutdown"]
