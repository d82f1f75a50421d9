"""Merge on-chain payment history with the persisted transaction record."""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

from ..config.settings import AppConfig, ReconciliationConfig, get_app_config
from ..datalake.schemas import (
    NormalizedPayment,
    Pagination,
    PersistedTransaction,
    RawLedgerTransaction,
    ReconciledPage,
    SignatureInfo,
    TransactionStatus,
)
from ..datalake.storage import StoreError, TransactionStore
from ..ingestion.classifier import classify
from ..ingestion.ledger import LedgerError, LedgerGateway, is_valid_address
from ..ingestion.pricing import ExchangeRateCache
from ..monitoring.logger import (
    correlation_scope,
    current_correlation_id,
    get_logger,
    log_fields,
    new_correlation_id,
)
from ..monitoring.metrics import METRICS
from ..utils.constants import sol_to_lamports


class ReconciliationError(RuntimeError):
    """Raised when a reconcile call cannot produce a trustworthy view."""

    def __init__(self, address: str, message: str) -> None:
        super().__init__(f"{address}: {message}")
        self.address = address


def merge_newest_first(records: List[PersistedTransaction], limit: int) -> List[PersistedTransaction]:
    """Deduplicate by signature and return the newest ``limit`` records."""

    unique: Dict[str, PersistedTransaction] = {}
    for record in records:
        unique.setdefault(record.signature, record)
    ordered = sorted(unique.values(), key=PersistedTransaction.sort_key, reverse=True)
    return ordered[:limit]


class ReconciliationEngine:
    """Fetches, classifies, deduplicates and persists payments for one address at a time."""

    def __init__(
        self,
        gateway: LedgerGateway,
        store: TransactionStore,
        rates: ExchangeRateCache,
        config: Optional[AppConfig] = None,
    ) -> None:
        app_config = config or get_app_config()
        self._config: ReconciliationConfig = app_config.reconciliation
        self._creator_name = app_config.storage.default_creator_name
        self._gateway = gateway
        self._store = store
        self._rates = rates
        self._max_lamports = sol_to_lamports(self._config.max_payment_sol)
        self._last_pages: Dict[str, ReconciledPage] = {}
        self._creator_ids: Dict[str, int] = {}
        self._logger = get_logger(__name__)

    @property
    def config(self) -> ReconciliationConfig:
        return self._config

    def _resolve_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self._config.default_page_size
        return max(1, min(int(limit), self._config.max_page_size))

    async def reconcile(
        self,
        address: str,
        limit: Optional[int] = None,
        before: Optional[str] = None,
    ) -> List[PersistedTransaction]:
        """Return the newest ``limit`` payments for ``address``, ingesting any new ones.

        With ``before`` the page holds the payments older than that signature.
        Raises :class:`ReconciliationError` when the signature listing or the
        stored history cannot be read. Individual transaction fetches that fail
        are skipped.
        """

        if not is_valid_address(address):
            raise ReconciliationError(address, "invalid address")
        page_size = self._resolve_limit(limit)
        correlation_id = current_correlation_id()
        if correlation_id == "-":
            correlation_id = new_correlation_id("reconcile")
        with correlation_scope(correlation_id), log_fields(address=address), METRICS.timer("reconcile.latency_ms"):
            METRICS.increment("reconcile.calls")
            try:
                return await self._reconcile(address, page_size, before)
            except ReconciliationError:
                METRICS.increment("reconcile.failures")
                raise

    async def _reconcile(
        self, address: str, page_size: int, before: Optional[str]
    ) -> List[PersistedTransaction]:
        window = page_size * self._config.overfetch_multiplier
        try:
            signatures = await self._gateway.get_signatures_for_address(address, limit=window, before=before)
        except LedgerError as exc:
            self._logger.error("Signature listing failed for %s: %s", address, exc)
            raise ReconciliationError(address, f"signature listing failed: {exc}") from exc

        payments = await self._classify_window(address, signatures)

        try:
            cursor = await self._store.find_by_signature(before) if before else None
            if cursor is not None:
                persisted = await self._store.list_older_than(address, cursor, limit=self._config.store_page_size)
            else:
                persisted = await self._store.list_by_address(address, limit=self._config.store_page_size)
        except StoreError as exc:
            self._logger.error("Stored history unavailable for %s: %s", address, exc)
            raise ReconciliationError(address, f"store read failed: {exc}") from exc
        persisted_by_signature = {record.signature: record for record in persisted}

        fresh = [payment for payment in payments if payment.signature not in persisted_by_signature]
        duplicates = len(payments) - len(fresh)
        if duplicates:
            METRICS.increment("reconcile.duplicates", duplicates)

        ingested = await self._persist_new(address, fresh) if fresh else []
        candidates = [*persisted, *ingested]
        if before and cursor is None:
            # Unknown cursor position: only the listed window is known to be older.
            listed = {info.signature for info in signatures}
            candidates = [record for record in candidates if record.signature in listed]
        merged = merge_newest_first(candidates, page_size)
        self._logger.info(
            "Reconciled %s: %d signatures, %d payments, %d new",
            address,
            len(signatures),
            len(payments),
            len(ingested),
        )
        return merged

    async def _classify_window(self, address: str, signatures: List[SignatureInfo]) -> List[NormalizedPayment]:
        semaphore = asyncio.Semaphore(self._config.fetch_concurrency)

        async def fetch(info: SignatureInfo) -> Optional[RawLedgerTransaction]:
            async with semaphore:
                try:
                    return await self._gateway.get_transaction(info.signature)
                except LedgerError as exc:
                    METRICS.increment("reconcile.fetch_failures")
                    self._logger.warning("Skipping %s for %s: %s", info.signature, address, exc)
                    return None

        candidates = [info for info in signatures if info.err is None]
        bodies = await asyncio.gather(*(fetch(info) for info in candidates))
        payments: List[NormalizedPayment] = []
        for body in bodies:
            if body is None:
                continue
            payment = classify(body, address, self._max_lamports)
            if payment is not None:
                payments.append(payment)
        return payments

    async def _creator_id(self, address: str) -> Optional[int]:
        cached = self._creator_ids.get(address)
        if cached is not None:
            return cached
        try:
            creator = await self._store.ensure_creator(address, self._creator_name)
        except StoreError as exc:
            self._logger.warning("Creator lookup failed for %s: %s", address, exc)
            return None
        self._creator_ids[address] = creator.id
        return creator.id

    async def _persist_new(self, address: str, payments: List[NormalizedPayment]) -> List[PersistedTransaction]:
        rate = await self._rates.get_rate()
        creator_id = await self._creator_id(address)
        ingested: List[PersistedTransaction] = []
        for payment in payments:
            record = PersistedTransaction.from_payment(
                payment,
                status=TransactionStatus.CONFIRMED,
                creator_id=creator_id,
                sol_price=rate,
            )
            try:
                inserted = await self._store.insert(record)
                if not inserted:
                    # Lost the race to a concurrent reconcile; the stored row wins.
                    METRICS.increment("reconcile.duplicates")
                    record = await self._store.find_by_signature(payment.signature) or record
                else:
                    METRICS.increment("reconcile.ingested")
            except StoreError as exc:
                METRICS.increment("reconcile.persist_failures")
                self._logger.warning("Could not persist %s: %s", payment.signature, exc)
                continue
            ingested.append(record)
        return ingested

    async def reconcile_and_list(
        self,
        address: str,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> ReconciledPage:
        """Reconcile the newest window then serve ``page`` from the store."""

        page = max(1, int(page))
        page_size = self._resolve_limit(limit)
        newest = await self.reconcile(address, limit=min(page * page_size, self._config.max_page_size))
        if page == 1:
            transactions = newest[:page_size]
            try:
                total = await self._store.count_by_address(address)
            except StoreError as exc:
                raise ReconciliationError(address, f"store read failed: {exc}") from exc
        else:
            try:
                transactions = await self._store.list_by_address(
                    address, limit=page_size, offset=(page - 1) * page_size
                )
                total = await self._store.count_by_address(address)
            except StoreError as exc:
                raise ReconciliationError(address, f"store read failed: {exc}") from exc
        result = ReconciledPage(
            transactions=transactions,
            pagination=Pagination.build(page=page, limit=page_size, total=total),
        )
        if page == 1:
            self._last_pages[address] = result
        return result

    def last_known(self, address: str) -> Optional[ReconciledPage]:
        """Return the last successfully merged first page for ``address``."""

        cached = self._last_pages.get(address)
        if cached is None:
            return None
        return ReconciledPage(transactions=list(cached.transactions), pagination=cached.pagination, stale=True)


__all__ = ["ReconciliationEngine", "ReconciliationError", "merge_newest_first"]
