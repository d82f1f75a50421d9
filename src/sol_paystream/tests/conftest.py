from __future__ import annotations

from pathlib import Path

import pytest

from sol_paystream.config.settings import AppConfig
from sol_paystream.datalake.storage import SQLiteStorage, TransactionStore
from sol_paystream.ingestion.pricing import ExchangeRateCache
from sol_paystream.monitoring.metrics import METRICS
from sol_paystream.realtime.publisher import FanoutPublisher
from sol_paystream.realtime.watcher import ChangeDetectionLoop
from sol_paystream.reconciliation.engine import ReconciliationEngine
from sol_paystream.tests.fakes import FakeGateway, FakeOracle


@pytest.fixture(autouse=True)
def _reset_metrics() -> None:
    METRICS.reset()


@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig(
        watcher={"poll_interval_seconds": 0.05, "poll_page_size": 5},
        reconciliation={"default_page_size": 20, "fetch_concurrency": 4},
        storage={"timeout_seconds": 5.0},
        webhooks={"urls": []},
        pricing={"cache_ttl_seconds": 300, "fallback_rate": 100.0},
    )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture
def storage(tmp_path: Path) -> SQLiteStorage:
    return SQLiteStorage(tmp_path / "paystream.sqlite3")


@pytest.fixture
def store(storage: SQLiteStorage) -> TransactionStore:
    return TransactionStore(storage, timeout=5.0)


@pytest.fixture
def rates(oracle: FakeOracle, app_config: AppConfig) -> ExchangeRateCache:
    return ExchangeRateCache(oracle, app_config.pricing)


@pytest.fixture
def engine(gateway: FakeGateway, store: TransactionStore, rates: ExchangeRateCache, app_config: AppConfig) -> ReconciliationEngine:
    return ReconciliationEngine(gateway, store, rates, app_config)


@pytest.fixture
def publisher() -> FanoutPublisher:
    return FanoutPublisher()


@pytest.fixture
def loop(
    engine: ReconciliationEngine,
    publisher: FanoutPublisher,
    gateway: FakeGateway,
    rates: ExchangeRateCache,
    store: TransactionStore,
    app_config: AppConfig,
) -> ChangeDetectionLoop:
    return ChangeDetectionLoop(engine, publisher, gateway, rates, store, app_config)
