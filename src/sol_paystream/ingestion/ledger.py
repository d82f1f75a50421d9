"""Read-only access to the Solana ledger over JSON-RPC."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Mapping, Optional, Sequence

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solders.pubkey import Pubkey
from solders.signature import Signature

from ..config.settings import RPCConfig, get_app_config
from ..datalake.schemas import RawLedgerTransaction, SignatureInfo
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS


class LedgerError(RuntimeError):
    """Raised when the ledger cannot answer a request."""


class LedgerTimeoutError(LedgerError):
    """Raised when a ledger request exceeds its deadline."""


def is_valid_address(address: str) -> bool:
    try:
        Pubkey.from_string(address)
    except (ValueError, TypeError):
        return False
    return True


def _signature(value: str) -> Signature:
    try:
        return Signature.from_string(value)
    except (ValueError, TypeError) as exc:
        raise LedgerError(f"Malformed signature {value!r}") from exc


def _account_key(entry: Any) -> str:
    if isinstance(entry, Mapping):
        return str(entry.get("pubkey", ""))
    return str(entry)


def parse_transaction(payload: Optional[Mapping[str, Any]]) -> Optional[RawLedgerTransaction]:
    """Build a :class:`RawLedgerTransaction` from a ``getTransaction`` result.

    Returns ``None`` when the ledger has no body for the signature. Keys loaded
    from address lookup tables are appended after the static keys (writable,
    then readonly) so balance indices line up with ``account_keys``.
    """

    if not payload:
        return None
    transaction = payload.get("transaction") or {}
    meta = payload.get("meta") or {}
    message = transaction.get("message") or {}
    keys = [_account_key(entry) for entry in message.get("accountKeys") or []]
    loaded = meta.get("loadedAddresses") or {}
    keys.extend(str(key) for key in loaded.get("writable") or [])
    keys.extend(str(key) for key in loaded.get("readonly") or [])
    return RawLedgerTransaction(
        signatures=tuple(str(sig) for sig in transaction.get("signatures") or []),
        slot=int(payload.get("slot") or 0),
        block_time=payload.get("blockTime"),
        fee=int(meta.get("fee") or 0),
        account_keys=tuple(keys),
        pre_balances=tuple(int(value) for value in meta.get("preBalances") or []),
        post_balances=tuple(int(value) for value in meta.get("postBalances") or []),
        err=meta.get("err"),
    )


def parse_signatures(payload: Optional[Sequence[Mapping[str, Any]]]) -> List[SignatureInfo]:
    entries: List[SignatureInfo] = []
    for item in payload or []:
        signature = item.get("signature")
        if not signature:
            continue
        entries.append(
            SignatureInfo(
                signature=str(signature),
                slot=int(item.get("slot") or 0),
                block_time=item.get("blockTime"),
                err=item.get("err"),
            )
        )
    return entries


class LedgerGateway:
    """Async JSON-RPC gateway with per-call deadlines.

    ``client`` may be any object exposing the ``AsyncClient`` coroutine methods;
    responses are normalised through their JSON form so parsing stays pure.
    """

    def __init__(self, config: Optional[RPCConfig] = None, client: Optional[Any] = None) -> None:
        self._config = config or get_app_config().rpc
        self._commitment = Commitment(self._config.commitment)
        self._client = client or AsyncClient(
            str(self._config.http_url),
            commitment=self._commitment,
            timeout=self._config.request_timeout,
        )
        self._timeout = self._config.request_timeout
        self._logger = get_logger(__name__)

    async def _execute(self, method_name: str, *args, **kwargs) -> Dict[str, Any]:
        method = getattr(self._client, method_name)
        try:
            result = await asyncio.wait_for(method(*args, **kwargs), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            METRICS.increment("ledger.timeouts")
            raise LedgerTimeoutError(f"RPC {method_name} timed out after {self._timeout}s") from exc
        except Exception as exc:  # noqa: BLE001
            METRICS.increment("ledger.errors")
            self._logger.debug("RPC %s failed: %s", method_name, exc)
            raise LedgerError(f"RPC {method_name} failed: {exc}") from exc
        if isinstance(result, dict):
            payload = result
        elif hasattr(result, "to_json"):
            payload = json.loads(result.to_json())
        else:
            raise LedgerError(f"RPC {method_name} returned an unsupported payload: {type(result)!r}")
        if "error" in payload:
            METRICS.increment("ledger.errors")
            raise LedgerError(f"RPC {method_name} returned an error: {payload['error']}")
        return payload

    async def get_signatures_for_address(
        self,
        address: str,
        limit: int,
        before: Optional[str] = None,
    ) -> List[SignatureInfo]:
        """Return up to ``limit`` signatures touching ``address``, newest first."""

        payload = await self._execute(
            "get_signatures_for_address",
            Pubkey.from_string(address),
            before=_signature(before) if before else None,
            limit=limit,
            commitment=self._commitment,
        )
        return parse_signatures(payload.get("result"))

    async def get_transaction(self, signature: str) -> Optional[RawLedgerTransaction]:
        payload = await self._execute(
            "get_transaction",
            _signature(signature),
            encoding="json",
            commitment=self._commitment,
            max_supported_transaction_version=0,
        )
        return parse_transaction(payload.get("result"))

    async def get_balance(self, address: str) -> int:
        """Return the lamport balance of ``address``."""

        payload = await self._execute(
            "get_balance", Pubkey.from_string(address), commitment=self._commitment
        )
        result = payload.get("result") or {}
        return int(result.get("value") or 0)

    async def close(self) -> None:
        close = getattr(self._client, "close", None)
        if close is not None:
            await close()


__all__ = [
    "LedgerError",
    "LedgerGateway",
    "LedgerTimeoutError",
    "is_valid_address",
    "parse_signatures",
    "parse_transaction",
]
