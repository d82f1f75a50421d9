"""Shared constants and time helpers."""

from datetime import datetime, timezone
from decimal import Decimal


def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


LAMPORTS_PER_SOL = 1_000_000_000


def lamports_to_sol(lamports: int) -> float:
    return float(Decimal(lamports) / Decimal(LAMPORTS_PER_SOL))


def sol_to_lamports(sol: float) -> int:
    return int(Decimal(str(sol)) * LAMPORTS_PER_SOL)


__all__ = ["utc_now", "LAMPORTS_PER_SOL", "lamports_to_sol", "sol_to_lamports"]
