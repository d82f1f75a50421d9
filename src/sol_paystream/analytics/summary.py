"""Earnings series, sender leaderboard, and daily summaries."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol

from ..datalake.storage import StoreError, TransactionStore
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from ..utils.constants import utc_now

_LOGGER = get_logger(__name__)


class SummaryNotifier(Protocol):
    async def send_daily_summary(self, summary: Dict[str, Any]) -> bool:
        ...


def _day_bounds(day: date) -> tuple[int, int]:
    start = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
    end = start + timedelta(days=1)
    return int(start.timestamp()), int(end.timestamp())


async def earnings_series(store: TransactionStore, address: str, days: int = 7) -> List[Dict[str, Any]]:
    """Per-day inbound totals for the last ``days`` UTC days, oldest first, gaps filled."""

    today = utc_now().date()
    first_day = today - timedelta(days=days - 1)
    since, _ = _day_bounds(first_day)
    rows = {row.day: row for row in await store.daily_earnings(address, since)}
    series: List[Dict[str, Any]] = []
    for offset in range(days):
        key = (first_day + timedelta(days=offset)).isoformat()
        row = rows.get(key)
        series.append(
            {
                "date": key,
                "amountSOL": row.total_sol if row else 0.0,
                "usdValue": round(row.total_usd, 6) if row else 0.0,
                "count": row.count if row else 0,
            }
        )
    return series


async def leaderboard(
    store: TransactionStore,
    *,
    days: Optional[int] = None,
    limit: int = 10,
    receiver: Optional[str] = None,
) -> List[Dict[str, Any]]:
    since = None
    if days is not None:
        since = int((utc_now() - timedelta(days=days)).timestamp())
    senders = await store.top_senders(receiver=receiver, since=since, limit=limit)
    return [
        {
            "rank": rank,
            "address": entry.sender,
            "totalSentSOL": entry.total_sol,
            "totalSentUSD": round(entry.total_usd, 6),
            "transactionCount": entry.count,
        }
        for rank, entry in enumerate(senders, start=1)
    ]


async def build_daily_summary(store: TransactionStore, address: str, day: Optional[date] = None) -> Dict[str, Any]:
    day = day or utc_now().date()
    since, until = _day_bounds(day)
    totals = await store.totals(address, since=since, until=until)
    senders = await store.top_senders(receiver=address, since=since, until=until, limit=5)
    average_sol = totals.total_sol / totals.count if totals.count else 0.0
    average_usd = totals.total_usd / totals.count if totals.count else 0.0
    return {
        "date": day.isoformat(),
        "walletAddress": address,
        "totalTransactions": totals.count,
        "totalReceivedSOL": totals.total_sol,
        "totalReceivedUSD": round(totals.total_usd, 6),
        "averageAmountSOL": average_sol,
        "averageAmountUSD": round(average_usd, 6),
        "uniqueSenders": totals.unique_senders,
        "topSenders": [
            {
                "address": entry.sender,
                "totalSentSOL": entry.total_sol,
                "totalSentUSD": round(entry.total_usd, 6),
                "transactionCount": entry.count,
            }
            for entry in senders
        ],
        "timestamp": utc_now().isoformat(),
    }


async def run_daily_summaries(
    store: TransactionStore,
    notifier: Optional[SummaryNotifier],
    day: Optional[date] = None,
) -> Dict[str, Any]:
    """Build and deliver a summary for every active watched address.

    A failing wallet is recorded in the result and does not stop the run.
    """

    day = day or (utc_now() - timedelta(days=1)).date()
    watched = await store.list_watched_addresses(active_only=True)
    results: Dict[str, Any] = {"total": len(watched), "successful": 0, "failed": 0, "errors": []}
    for entry in watched:
        try:
            summary = await build_daily_summary(store, entry.address, day)
            if notifier is not None and not await notifier.send_daily_summary(summary):
                _LOGGER.warning("Daily summary webhook not delivered for %s", entry.address)
            results["successful"] += 1
        except StoreError as exc:
            results["failed"] += 1
            results["errors"].append({"wallet": entry.address, "error": str(exc)})
            _LOGGER.error("Daily summary failed for %s: %s", entry.address, exc)
    METRICS.increment("summaries.successful", results["successful"])
    METRICS.increment("summaries.failed", results["failed"])
    _LOGGER.info(
        "Daily summary run for %s: %d successful, %d failed",
        day.isoformat(),
        results["successful"],
        results["failed"],
    )
    return results


__all__ = ["build_daily_summary", "earnings_series", "leaderboard", "run_daily_summaries"]
