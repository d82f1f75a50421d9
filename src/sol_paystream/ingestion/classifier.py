"""Classify raw ledger transactions into SOL payments relative to one address."""

from __future__ import annotations

from typing import Optional

from ..datalake.schemas import NormalizedPayment, PaymentDirection, RawLedgerTransaction
from ..utils.constants import sol_to_lamports

DEFAULT_MAX_PAYMENT_LAMPORTS = sol_to_lamports(1_000_000)


def _find_counterparty(tx: RawLedgerTransaction, target_index: int, direction: PaymentDirection) -> Optional[int]:
    # IN looks for the largest debit, OUT for the largest credit; ties keep the lowest index.
    span = min(len(tx.account_keys), len(tx.pre_balances), len(tx.post_balances))
    best_index: Optional[int] = None
    best_change = 0
    fallback: Optional[int] = None
    for index in range(span):
        if index == target_index:
            continue
        if fallback is None:
            fallback = index
        change = tx.pre_balances[index] - tx.post_balances[index]
        if direction is PaymentDirection.OUT:
            change = -change
        if change > best_change:
            best_change = change
            best_index = index
    return best_index if best_index is not None else fallback


def classify(
    tx: RawLedgerTransaction,
    target_address: str,
    max_amount_lamports: int = DEFAULT_MAX_PAYMENT_LAMPORTS,
) -> Optional[NormalizedPayment]:
    """Return the SOL payment ``tx`` represents for ``target_address``, if any.

    The target's own balance change decides the direction and amount. The
    counterparty is the account with the largest opposite change, falling back
    to the first other account. Failed, malformed, self-directed and
    implausibly large transfers yield ``None``.
    """

    if tx.err is not None:
        return None
    try:
        target_index = tx.account_keys.index(target_address)
    except ValueError:
        return None
    if target_index >= len(tx.pre_balances) or target_index >= len(tx.post_balances):
        return None

    delta = tx.post_balances[target_index] - tx.pre_balances[target_index]
    if delta == 0:
        return None
    direction = PaymentDirection.IN if delta > 0 else PaymentDirection.OUT

    counterparty_index = _find_counterparty(tx, target_index, direction)
    if counterparty_index is None:
        return None
    counterparty = tx.account_keys[counterparty_index]
    if counterparty == target_address:
        return None

    amount = abs(delta)
    if amount > max_amount_lamports:
        return None

    if direction is PaymentDirection.IN:
        sender, receiver = counterparty, target_address
    else:
        sender, receiver = target_address, counterparty
    return NormalizedPayment(
        signature=tx.signature,
        sender=sender,
        receiver=receiver,
        amount_lamports=amount,
        direction=direction,
        fee_lamports=tx.fee,
        block_time=tx.block_time,
        slot=tx.slot,
    )


def classify_inbound(
    tx: RawLedgerTransaction,
    target_address: str,
    max_amount_lamports: int = DEFAULT_MAX_PAYMENT_LAMPORTS,
) -> Optional[NormalizedPayment]:
    payment = classify(tx, target_address, max_amount_lamports)
    if payment is None or payment.direction is not PaymentDirection.IN:
        return None
    return payment


__all__ = ["DEFAULT_MAX_PAYMENT_LAMPORTS", "classify", "classify_inbound"]
