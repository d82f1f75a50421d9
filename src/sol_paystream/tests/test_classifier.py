from __future__ import annotations

from sol_paystream.datalake.schemas import PaymentDirection, RawLedgerTransaction
from sol_paystream.ingestion.classifier import classify, classify_inbound
from sol_paystream.tests.fakes import make_address
from sol_paystream.utils.constants import sol_to_lamports

W = make_address(1)
S = make_address(2)
T = make_address(3)


def _tx(keys, pre, post, *, fee=10, err=None, signatures=("sig-1",)) -> RawLedgerTransaction:
    return RawLedgerTransaction(
        signatures=tuple(signatures),
        slot=42,
        block_time=1_700_000_000,
        fee=fee,
        account_keys=tuple(keys),
        pre_balances=tuple(pre),
        post_balances=tuple(post),
        err=err,
    )


def test_inbound_example_payment() -> None:
    tx = _tx([W, S], [1000, 5000], [1500, 4490])

    payment = classify(tx, W)

    assert payment is not None
    assert payment.sender == S
    assert payment.receiver == W
    assert payment.amount_lamports == 500
    assert payment.fee_lamports == 10
    assert payment.direction is PaymentDirection.IN
    assert payment.signature == "sig-1"


def test_classification_is_deterministic() -> None:
    tx = _tx([W, S, T], [1000, 5000, 7000], [1500, 4490, 7000])

    results = {classify(tx, W) for _ in range(5)}

    assert len(results) == 1


def test_outbound_payment_reverses_roles() -> None:
    tx = _tx([W, S], [5000, 1000], [4490, 1500])

    payment = classify(tx, W)

    assert payment is not None
    assert payment.direction is PaymentDirection.OUT
    assert payment.sender == W
    assert payment.receiver == S
    assert payment.amount_lamports == 510
    assert classify_inbound(tx, W) is None


def test_largest_debit_wins_over_earlier_accounts() -> None:
    tx = _tx([S, W, T], [5000, 1000, 9000], [4900, 1600, 8500])

    payment = classify(tx, W)

    assert payment is not None
    assert payment.sender == T


def test_falls_back_to_first_other_account_without_debit() -> None:
    tx = _tx([W, S, T], [1000, 5000, 6000], [1500, 5000, 6000])

    payment = classify(tx, W)

    assert payment is not None
    assert payment.sender == S


def test_self_transfer_is_rejected() -> None:
    tx = _tx([W, W], [1000, 1000], [1500, 500])

    assert classify(tx, W) is None


def test_failed_or_unrelated_transactions_are_rejected() -> None:
    assert classify(_tx([W, S], [1000, 5000], [1500, 4490], err={"InstructionError": [0, "Custom"]}), W) is None
    assert classify(_tx([S, T], [1000, 5000], [1500, 4490]), W) is None
    assert classify(_tx([W, S], [1000, 5000], [1000, 4990]), W) is None


def test_malformed_balance_arrays_are_rejected() -> None:
    tx = _tx([S, W], [5000], [4490])

    assert classify(tx, W) is None


def test_amount_above_ceiling_is_rejected() -> None:
    lamports = sol_to_lamports(2_000_000)
    tx = _tx([S, W], [lamports * 2, 0], [lamports - 10, lamports])

    assert classify(tx, W) is None
    assert classify(tx, W, max_amount_lamports=sol_to_lamports(3_000_000)) is not None
