from __future__ import annotations

import asyncio

import pytest
from solders.signature import Signature

from sol_paystream.config.settings import RPCConfig
from sol_paystream.ingestion.ledger import (
    LedgerError,
    LedgerGateway,
    LedgerTimeoutError,
    is_valid_address,
    parse_signatures,
    parse_transaction,
)
from sol_paystream.tests.fakes import make_address

WALLET = make_address(1)
PAYER = make_address(2)
LOOKUP = make_address(5)


def _transaction_result() -> dict:
    return {
        "slot": 321,
        "blockTime": 1_700_000_000,
        "transaction": {
            "signatures": ["sig-main", "sig-cosigner"],
            "message": {"accountKeys": [PAYER, WALLET]},
        },
        "meta": {
            "fee": 5000,
            "err": None,
            "preBalances": [10_000, 0, 7],
            "postBalances": [4_000, 1_000, 5_007],
            "loadedAddresses": {"writable": [LOOKUP], "readonly": []},
        },
    }


class FakeRpcClient:
    def __init__(self, responses: dict, delay: float = 0.0) -> None:
        self.responses = responses
        self.delay = delay
        self.calls = []

    async def _respond(self, name, *args, **kwargs):
        self.calls.append((name, args, kwargs))
        if self.delay:
            await asyncio.sleep(self.delay)
        response = self.responses[name]
        if isinstance(response, Exception):
            raise response
        return response

    async def get_signatures_for_address(self, *args, **kwargs):
        return await self._respond("get_signatures_for_address", *args, **kwargs)

    async def get_transaction(self, *args, **kwargs):
        return await self._respond("get_transaction", *args, **kwargs)

    async def get_balance(self, *args, **kwargs):
        return await self._respond("get_balance", *args, **kwargs)


def test_parse_transaction_appends_lookup_table_keys() -> None:
    tx = parse_transaction(_transaction_result())

    assert tx is not None
    assert tx.signature == "sig-main"
    assert tx.account_keys == (PAYER, WALLET, LOOKUP)
    assert tx.post_balances[2] == 5_007
    assert tx.fee == 5000
    assert tx.slot == 321


def test_parse_transaction_accepts_parsed_account_keys() -> None:
    result = _transaction_result()
    result["transaction"]["message"]["accountKeys"] = [
        {"pubkey": PAYER, "signer": True, "writable": True},
        {"pubkey": WALLET, "signer": False, "writable": True},
    ]

    tx = parse_transaction(result)

    assert tx.account_keys[:2] == (PAYER, WALLET)


def test_parse_missing_transaction_returns_none() -> None:
    assert parse_transaction(None) is None


def test_parse_signatures_skips_malformed_entries() -> None:
    entries = parse_signatures(
        [
            {"signature": "a", "slot": 2, "blockTime": 20, "err": None},
            {"slot": 1},
            {"signature": "b", "slot": 1, "blockTime": None, "err": {"InstructionError": [0, "x"]}},
        ]
    )

    assert [entry.signature for entry in entries] == ["a", "b"]
    assert entries[1].err is not None


def test_address_validation() -> None:
    assert is_valid_address(WALLET)
    assert not is_valid_address("not-base58-0OIl")
    assert not is_valid_address("")


def test_gateway_normalises_dict_responses() -> None:
    signature = str(Signature.default())
    client = FakeRpcClient(
        {
            "get_signatures_for_address": {"result": [{"signature": signature, "slot": 9, "blockTime": 90}]},
            "get_transaction": {"result": _transaction_result()},
            "get_balance": {"result": {"context": {"slot": 9}, "value": 42}},
        }
    )
    gateway = LedgerGateway(RPCConfig(), client=client)

    async def scenario():
        signatures = await gateway.get_signatures_for_address(WALLET, limit=10)
        body = await gateway.get_transaction(signature)
        balance = await gateway.get_balance(WALLET)
        return signatures, body, balance

    signatures, body, balance = asyncio.run(scenario())

    assert [entry.signature for entry in signatures] == [signature]
    assert body.signature == "sig-main"
    assert balance == 42
    assert client.calls[0][2]["limit"] == 10
    assert client.calls[1][2]["max_supported_transaction_version"] == 0


def test_gateway_wraps_rpc_errors() -> None:
    client = FakeRpcClient(
        {
            "get_balance": {"error": {"code": -32005, "message": "Node is behind"}},
            "get_signatures_for_address": ConnectionError("refused"),
        }
    )
    gateway = LedgerGateway(RPCConfig(), client=client)

    with pytest.raises(LedgerError):
        asyncio.run(gateway.get_balance(WALLET))
    with pytest.raises(LedgerError):
        asyncio.run(gateway.get_signatures_for_address(WALLET, limit=5))


def test_gateway_enforces_deadline() -> None:
    client = FakeRpcClient({"get_balance": {"result": {"value": 1}}}, delay=1.0)
    gateway = LedgerGateway(RPCConfig(request_timeout=0.1), client=client)

    with pytest.raises(LedgerTimeoutError):
        asyncio.run(gateway.get_balance(WALLET))


def test_gateway_rejects_malformed_cursor_before_calling_rpc() -> None:
    client = FakeRpcClient({"get_signatures_for_address": {"result": []}})
    gateway = LedgerGateway(RPCConfig(), client=client)

    with pytest.raises(LedgerError):
        asyncio.run(gateway.get_signatures_for_address(WALLET, limit=5, before="not-a-signature"))
    assert client.calls == []
