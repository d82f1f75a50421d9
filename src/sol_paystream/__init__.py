"""Solana wallet payment reconciliation and real-time propagation."""

__version__ = "0.1.0"
