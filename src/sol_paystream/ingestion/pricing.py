"""SOL exchange-rate oracle and time-bounded rate cache."""

from __future__ import annotations

import asyncio
import time
from typing import Dict, Optional, Protocol, Tuple

import requests
from cachetools import TTLCache

from ..config.settings import PricingConfig, get_app_config
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS


class OracleError(RuntimeError):
    """Raised when the price oracle cannot return a usable quote."""


class PriceOracle(Protocol):
    async def get_price(self, base: str, quote: str) -> float:
        ...


class CoinGeckoOracle:
    """Fetches simple spot prices from the CoinGecko HTTP API."""

    def __init__(
        self,
        config: Optional[PricingConfig] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._config = config or get_app_config().pricing
        self._session = session or requests.Session()
        self._url = f"{str(self._config.oracle_url).rstrip('/')}/simple/price"
        self._logger = get_logger(__name__)

    def _request(self, base: str, quote: str) -> float:
        headers = {"Accept": "application/json"}
        if self._config.api_key:
            headers["x-cg-demo-api-key"] = self._config.api_key
        try:
            response = self._session.get(
                self._url,
                params={"ids": base, "vs_currencies": quote},
                headers=headers,
                timeout=self._config.http_timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise OracleError(f"price request for {base}/{quote} failed: {exc}") from exc
        try:
            price = float(payload[base][quote])
        except (KeyError, TypeError, ValueError) as exc:
            raise OracleError(f"price payload missing {base}/{quote}") from exc
        if price <= 0:
            raise OracleError(f"non-positive price for {base}/{quote}: {price}")
        return price

    async def get_price(self, base: str, quote: str) -> float:
        return await asyncio.to_thread(self._request, base, quote)

    def close(self) -> None:
        self._session.close()


class ExchangeRateCache:
    """Serves the SOL rate for a quote currency without ever raising.

    Fresh quotes live for ``cache_ttl_seconds``. When the oracle fails the
    last value ever seen for the quote is served, then the configured fallback.
    """

    def __init__(
        self,
        oracle: PriceOracle,
        config: Optional[PricingConfig] = None,
        *,
        clock=time.monotonic,
    ) -> None:
        self._config = config or get_app_config().pricing
        self._oracle = oracle
        self._base = self._config.base_currency
        self._fallback_rate = self._config.fallback_rate
        self._timeout = self._config.http_timeout
        self._clock = clock
        self._cache: TTLCache[str, float] = TTLCache(
            maxsize=32, ttl=max(self._config.cache_ttl_seconds, 0.001), timer=clock
        )
        self._last_known: Dict[str, Tuple[float, float]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._logger = get_logger(__name__)

    def _lock_for(self, quote: str) -> asyncio.Lock:
        lock = self._locks.get(quote)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[quote] = lock
        return lock

    async def get_rate(self, quote: Optional[str] = None) -> float:
        quote = (quote or self._config.quote_currency).lower()
        cached = self._cache.get(quote)
        if cached is not None:
            return cached
        async with self._lock_for(quote):
            # Another caller may have refreshed the entry while we waited.
            cached = self._cache.get(quote)
            if cached is not None:
                return cached
            try:
                rate = await asyncio.wait_for(self._oracle.get_price(self._base, quote), timeout=self._timeout)
            except Exception as exc:  # noqa: BLE001
                METRICS.increment("pricing.oracle_failures")
                return self._degraded_rate(quote, exc)
            self._cache[quote] = rate
            self._last_known[quote] = (rate, self._clock())
            METRICS.gauge(f"pricing.{self._base}_{quote}", rate)
            return rate

    def _degraded_rate(self, quote: str, exc: BaseException) -> float:
        last = self._last_known.get(quote)
        if last is not None:
            self._logger.warning("Rate oracle failed for %s; serving last known value: %s", quote, exc)
            return last[0]
        self._logger.warning("Rate oracle failed for %s; serving fallback rate: %s", quote, exc)
        return self._fallback_rate

    def last_updated(self, quote: Optional[str] = None) -> Optional[float]:
        entry = self._last_known.get((quote or self._config.quote_currency).lower())
        return entry[1] if entry else None

    def clear(self) -> None:
        self._cache.clear()


__all__ = ["CoinGeckoOracle", "ExchangeRateCache", "OracleError", "PriceOracle"]
