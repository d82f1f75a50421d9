"""In-memory collaborators shared by the test suite."""

from __future__ import annotations

from typing import Dict, List, Optional, Set

from solders.pubkey import Pubkey

from sol_paystream.datalake.schemas import RawLedgerTransaction, SignatureInfo
from sol_paystream.ingestion.ledger import LedgerError
from sol_paystream.ingestion.pricing import OracleError


def make_address(seed: int) -> str:
    return str(Pubkey(bytes([seed]) * 32))


class FakeGateway:
    """In-memory ledger keyed by address and signature."""

    def __init__(self) -> None:
        self.history: Dict[str, List[SignatureInfo]] = {}
        self.bodies: Dict[str, RawLedgerTransaction] = {}
        self.balances: Dict[str, int] = {}
        self.failing_bodies: Set[str] = set()
        self.fail_listing = False
        self.listing_calls: List[tuple] = []
        self.body_calls: List[str] = []

    def add(self, address: str, tx: RawLedgerTransaction) -> None:
        entries = self.history.setdefault(address, [])
        entries.append(SignatureInfo(signature=tx.signature, slot=tx.slot, block_time=tx.block_time, err=tx.err))
        entries.sort(key=lambda info: (info.block_time or 0, info.slot), reverse=True)
        self.bodies[tx.signature] = tx

    async def get_signatures_for_address(self, address: str, limit: int, before: Optional[str] = None) -> List[SignatureInfo]:
        self.listing_calls.append((address, limit, before))
        if self.fail_listing:
            raise LedgerError("listing unavailable")
        entries = list(self.history.get(address, []))
        if before is not None:
            signatures = [info.signature for info in entries]
            entries = entries[signatures.index(before) + 1 :] if before in signatures else []
        return entries[:limit]

    async def get_transaction(self, signature: str) -> Optional[RawLedgerTransaction]:
        self.body_calls.append(signature)
        if signature in self.failing_bodies:
            raise LedgerError(f"{signature} unavailable")
        return self.bodies.get(signature)

    async def get_balance(self, address: str) -> int:
        return self.balances.get(address, 0)

    async def close(self) -> None:
        return None


class FakeOracle:
    def __init__(self, price: float = 150.0) -> None:
        self.price = price
        self.fail = False
        self.calls = 0

    async def get_price(self, base: str, quote: str) -> float:
        self.calls += 1
        if self.fail:
            raise OracleError("oracle down")
        return self.price


def payment_tx(
    signature: str,
    sender: str,
    receiver: str,
    lamports: int,
    block_time: Optional[int],
    *,
    fee: int = 5000,
    slot: Optional[int] = None,
    err: Optional[object] = None,
) -> RawLedgerTransaction:
    sender_pre = 50_000_000_000
    receiver_pre = 1_000_000_000
    return RawLedgerTransaction(
        signatures=(signature,),
        slot=slot if slot is not None else (block_time or 0),
        block_time=block_time,
        fee=fee,
        account_keys=(sender, receiver, "11111111111111111111111111111111"),
        pre_balances=(sender_pre, receiver_pre, 1),
        post_balances=(sender_pre - lamports - fee, receiver_pre + lamports, 1),
        err=err,
    )


