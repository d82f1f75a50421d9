"""Data models shared by the ledger, reconciliation, and storage layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple

from ..utils.constants import lamports_to_sol, utc_now


class PaymentDirection(str, Enum):
    """Whether value entered or left the watched address."""

    IN = "IN"
    OUT = "OUT"


class TransactionStatus(str, Enum):
    """Lifecycle of a persisted payment."""

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"

    def can_transition_to(self, target: "TransactionStatus") -> bool:
        return target in _ALLOWED_TRANSITIONS.get(self, ())


_ALLOWED_TRANSITIONS = {
    TransactionStatus.PENDING: (TransactionStatus.CONFIRMED, TransactionStatus.FAILED),
}


@dataclass(slots=True)
class WatchedAddress:
    """An address registered for reconciliation and live updates."""

    address: str
    is_active: bool = True
    created_at: datetime = field(default_factory=utc_now)


@dataclass(slots=True)
class Creator:
    """Owner record that persisted payments to a watched address link to."""

    id: int
    name: str
    solana_address: str
    created_at: datetime = field(default_factory=utc_now)


@dataclass(slots=True, frozen=True)
class SignatureInfo:
    """Signature listing entry returned by the ledger, most recent first."""

    signature: str
    slot: int
    block_time: Optional[int] = None
    err: Optional[object] = None


@dataclass(slots=True, frozen=True)
class RawLedgerTransaction:
    """A confirmed transaction body as read from the ledger.

    ``pre_balances`` and ``post_balances`` are indexed like ``account_keys``.
    """

    signatures: Tuple[str, ...]
    slot: int
    block_time: Optional[int]
    fee: int
    account_keys: Tuple[str, ...]
    pre_balances: Tuple[int, ...]
    post_balances: Tuple[int, ...]
    err: Optional[object] = None

    @property
    def signature(self) -> str:
        return self.signatures[0] if self.signatures else ""


@dataclass(slots=True, frozen=True)
class NormalizedPayment:
    """A classified SOL transfer relative to one watched address."""

    signature: str
    sender: str
    receiver: str
    amount_lamports: int
    direction: PaymentDirection
    fee_lamports: int
    block_time: Optional[int]
    slot: int

    @property
    def amount_sol(self) -> float:
        return lamports_to_sol(self.amount_lamports)

    @property
    def fee_sol(self) -> float:
        return lamports_to_sol(self.fee_lamports)

    @property
    def timestamp(self) -> Optional[datetime]:
        if self.block_time is None:
            return None
        return datetime.fromtimestamp(self.block_time, timezone.utc)


@dataclass(slots=True)
class PersistedTransaction:
    """A payment as stored, with its status and USD snapshot."""

    signature: str
    sender: str
    receiver: str
    amount_lamports: int
    direction: PaymentDirection
    fee_lamports: int
    block_time: Optional[int]
    slot: int
    status: TransactionStatus = TransactionStatus.CONFIRMED
    creator_id: Optional[int] = None
    usd_value: Optional[float] = None
    sol_price: Optional[float] = None
    created_at: datetime = field(default_factory=utc_now)

    @classmethod
    def from_payment(
        cls,
        payment: NormalizedPayment,
        *,
        status: TransactionStatus = TransactionStatus.CONFIRMED,
        creator_id: Optional[int] = None,
        sol_price: Optional[float] = None,
    ) -> "PersistedTransaction":
        usd_value = None
        if sol_price is not None:
            usd_value = round(payment.amount_sol * sol_price, 6)
        return cls(
            signature=payment.signature,
            sender=payment.sender,
            receiver=payment.receiver,
            amount_lamports=payment.amount_lamports,
            direction=payment.direction,
            fee_lamports=payment.fee_lamports,
            block_time=payment.block_time,
            slot=payment.slot,
            status=status,
            creator_id=creator_id,
            usd_value=usd_value,
            sol_price=sol_price,
        )

    @property
    def amount_sol(self) -> float:
        return lamports_to_sol(self.amount_lamports)

    @property
    def timestamp(self) -> Optional[datetime]:
        if self.block_time is None:
            return None
        return datetime.fromtimestamp(self.block_time, timezone.utc)

    def sort_key(self) -> Tuple[int, int, int]:
        """Descending-order key; rows without a block time sort last."""

        if self.block_time is None:
            return (0, 0, self.slot)
        return (1, self.block_time, self.slot)


@dataclass(slots=True)
class Pagination:
    page: int
    limit: int
    total: int
    pages: int
    has_next: bool

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        pages = (total + limit - 1) // limit if limit else 0
        return cls(page=page, limit=limit, total=total, pages=pages, has_next=page < pages)


@dataclass(slots=True)
class ReconciledPage:
    """Result of ``reconcile_and_list``."""

    transactions: List[PersistedTransaction]
    pagination: Pagination
    stale: bool = False


@dataclass(slots=True)
class TransactionTotals:
    """Aggregates over a window of inbound confirmed payments."""

    count: int = 0
    total_lamports: int = 0
    total_usd: float = 0.0
    unique_senders: int = 0

    @property
    def total_sol(self) -> float:
        return lamports_to_sol(self.total_lamports)


@dataclass(slots=True)
class SenderTotal:
    sender: str
    total_lamports: int
    count: int
    total_usd: float = 0.0

    @property
    def total_sol(self) -> float:
        return lamports_to_sol(self.total_lamports)


@dataclass(slots=True)
class DailyEarning:
    day: str
    total_lamports: int
    total_usd: float
    count: int

    @property
    def total_sol(self) -> float:
        return lamports_to_sol(self.total_lamports)


__all__ = [
    "Creator",
    "DailyEarning",
    "NormalizedPayment",
    "Pagination",
    "PaymentDirection",
    "PersistedTransaction",
    "RawLedgerTransaction",
    "ReconciledPage",
    "SenderTotal",
    "SignatureInfo",
    "TransactionStatus",
    "TransactionTotals",
    "WatchedAddress",
]
