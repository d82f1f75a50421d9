"""Reconciliation of ledger history with stored payments."""

from .engine import ReconciliationEngine, ReconciliationError

__all__ = ["ReconciliationEngine", "ReconciliationError"]
