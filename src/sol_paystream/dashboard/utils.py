"""Utility helpers for dashboard serialization."""

from __future__ import annotations

import csv
import io
from typing import Any, Dict, Iterable

from ..datalake.schemas import Pagination, PersistedTransaction, TransactionTotals

CSV_COLUMNS = (
    "signature",
    "timestamp",
    "fromAddress",
    "toAddress",
    "direction",
    "amount",
    "amountUSD",
    "fee",
    "status",
)


def transaction_view(record: PersistedTransaction) -> Dict[str, Any]:
    timestamp = record.timestamp
    return {
        "signature": record.signature,
        "fromAddress": record.sender,
        "toAddress": record.receiver,
        "amount": record.amount_sol,
        "amountLamports": record.amount_lamports,
        "amountUSD": record.usd_value,
        "solPrice": record.sol_price,
        "direction": record.direction.value,
        "status": record.status.value,
        "fee": record.fee_lamports,
        "slot": record.slot,
        "blockTime": record.block_time,
        "timestamp": timestamp.isoformat() if timestamp else None,
        "creatorId": record.creator_id,
    }


def pagination_view(pagination: Pagination) -> Dict[str, Any]:
    return {
        "page": pagination.page,
        "limit": pagination.limit,
        "total": pagination.total,
        "pages": pagination.pages,
        "hasNext": pagination.has_next,
    }


def totals_view(totals: TransactionTotals) -> Dict[str, Any]:
    return {
        "count": totals.count,
        "totalSOL": totals.total_sol,
        "totalLamports": totals.total_lamports,
        "totalUSD": round(totals.total_usd, 2),
        "uniqueSenders": totals.unique_senders,
    }


def transactions_csv(records: Iterable[PersistedTransaction]) -> str:
    """Render records as CSV with a header row, one line per transaction."""

    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(CSV_COLUMNS)
    for record in records:
        view = transaction_view(record)
        writer.writerow([view[column] if view[column] is not None else "" for column in CSV_COLUMNS])
    return output.getvalue()


__all__ = ["CSV_COLUMNS", "pagination_view", "totals_view", "transaction_view", "transactions_csv"]
