"""SQLite persistence for creators, watched addresses, and payments."""

from __future__ import annotations

import asyncio
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from typing import Any, Callable, Iterator, List, Optional, Sequence, TypeVar

from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from ..utils.constants import utc_now
from .schemas import (
    Creator,
    DailyEarning,
    PaymentDirection,
    PersistedTransaction,
    SenderTotal,
    TransactionStatus,
    TransactionTotals,
    WatchedAddress,
)

T = TypeVar("T")

SCHEMA_VERSION = 1


class StoreError(RuntimeError):
    """Raised when the payment store cannot serve a request."""


class StoreTimeoutError(StoreError):
    """Raised when a store call exceeds its deadline."""


class InvalidStatusTransition(StoreError):
    """Raised when a status change is not an allowed transition."""


CREATE_CREATOR_TABLE = """
CREATE TABLE IF NOT EXISTS creators (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    solana_address TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL
);
"""

CREATE_WATCHED_ADDRESS_TABLE = """
CREATE TABLE IF NOT EXISTS watched_addresses (
    address TEXT PRIMARY KEY,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);
"""

CREATE_TRANSACTION_TABLE = """
CREATE TABLE IF NOT EXISTS transactions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    signature TEXT NOT NULL UNIQUE,
    sender TEXT NOT NULL,
    receiver TEXT NOT NULL,
    amount_lamports INTEGER NOT NULL,
    direction TEXT NOT NULL,
    fee_lamports INTEGER NOT NULL,
    block_time INTEGER,
    slot INTEGER NOT NULL,
    status TEXT NOT NULL,
    creator_id INTEGER REFERENCES creators(id),
    usd_value REAL,
    sol_price REAL,
    created_at TEXT NOT NULL
);
"""

CREATE_TRANSACTION_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_transactions_receiver ON transactions (receiver)",
    "CREATE INDEX IF NOT EXISTS idx_transactions_sender ON transactions (sender)",
    "CREATE INDEX IF NOT EXISTS idx_transactions_creator ON transactions (creator_id)",
    "CREATE INDEX IF NOT EXISTS idx_transactions_block_time ON transactions (block_time)",
)

CREATE_SCHEMA_VERSION_TABLE = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version INTEGER NOT NULL
);
"""

_TRANSACTION_COLUMNS = (
    "signature, sender, receiver, amount_lamports, direction, fee_lamports, block_time, "
    "slot, status, creator_id, usd_value, sol_price, created_at"
)

_NEWEST_FIRST = "ORDER BY block_time IS NULL, block_time DESC, slot DESC"


def _parse_datetime(value: Optional[str]) -> datetime:
    if not value:
        return utc_now()
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _row_to_transaction(row: Sequence[Any]) -> PersistedTransaction:
    return PersistedTransaction(
        signature=row[0],
        sender=row[1],
        receiver=row[2],
        amount_lamports=int(row[3]),
        direction=PaymentDirection(row[4]),
        fee_lamports=int(row[5]),
        block_time=row[6],
        slot=int(row[7]),
        status=TransactionStatus(row[8]),
        creator_id=row[9],
        usd_value=row[10],
        sol_price=row[11],
        created_at=_parse_datetime(row[12]),
    )


class SQLiteStorage:
    """SQLite-backed storage for payment history and the watched-address registry."""

    def __init__(self, database_path: Path) -> None:
        self._database_path = Path(database_path).resolve()
        self._initialize()

    @property
    def database_path(self) -> Path:
        return self._database_path

    def _initialize(self) -> None:
        self._database_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as con:
            con.execute(CREATE_CREATOR_TABLE)
            con.execute(CREATE_WATCHED_ADDRESS_TABLE)
            con.execute(CREATE_TRANSACTION_TABLE)
            for statement in CREATE_TRANSACTION_INDEXES:
                con.execute(statement)
            con.execute(CREATE_SCHEMA_VERSION_TABLE)
            self._apply_migrations(con)
            con.commit()

    def _apply_migrations(self, con: sqlite3.Connection) -> None:
        if self._get_schema_version(con) != SCHEMA_VERSION:
            con.execute("DELETE FROM schema_migrations")
            con.execute("INSERT INTO schema_migrations (version) VALUES (?)", (SCHEMA_VERSION,))

    def _get_schema_version(self, con: sqlite3.Connection) -> int:
        row = con.execute("SELECT version FROM schema_migrations ORDER BY ROWID DESC LIMIT 1").fetchone()
        if row is None:
            return 0
        return int(row[0])

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        con = sqlite3.connect(self._database_path)
        con.execute("PRAGMA foreign_keys = ON")
        try:
            yield con
        finally:
            con.close()

    # Creators -----------------------------------------------------------------

    def ensure_creator(self, solana_address: str, name: str) -> Creator:
        with self._connect() as con:
            con.execute(
                "INSERT OR IGNORE INTO creators (name, solana_address, created_at) VALUES (?, ?, ?)",
                (name, solana_address, utc_now().isoformat()),
            )
            con.commit()
            row = con.execute(
                "SELECT id, name, solana_address, created_at FROM creators WHERE solana_address = ?",
                (solana_address,),
            ).fetchone()
        return Creator(id=row[0], name=row[1], solana_address=row[2], created_at=_parse_datetime(row[3]))

    def get_creator_by_address(self, solana_address: str) -> Optional[Creator]:
        with self._connect() as con:
            row = con.execute(
                "SELECT id, name, solana_address, created_at FROM creators WHERE solana_address = ?",
                (solana_address,),
            ).fetchone()
        if row is None:
            return None
        return Creator(id=row[0], name=row[1], solana_address=row[2], created_at=_parse_datetime(row[3]))

    # Watched addresses ----------------------------------------------------------

    def add_watched_address(self, address: str, reactivate: bool = True) -> WatchedAddress:
        """Register ``address``; an existing row is reactivated only when ``reactivate`` is set."""

        now = utc_now()
        conflict = "DO UPDATE SET is_active = 1" if reactivate else "DO NOTHING"
        with self._connect() as con:
            con.execute(
                "INSERT INTO watched_addresses (address, is_active, created_at) "
                f"VALUES (?, 1, ?) ON CONFLICT(address) {conflict}",
                (address, now.isoformat()),
            )
            con.commit()
            row = con.execute(
                "SELECT address, is_active, created_at FROM watched_addresses WHERE address = ?",
                (address,),
            ).fetchone()
        return WatchedAddress(address=row[0], is_active=bool(row[1]), created_at=_parse_datetime(row[2]))

    def deactivate_watched_address(self, address: str) -> bool:
        with self._connect() as con:
            cur = con.execute(
                "UPDATE watched_addresses SET is_active = 0 WHERE address = ? AND is_active = 1",
                (address,),
            )
            con.commit()
            changed = cur.rowcount > 0
        return changed

    def list_watched_addresses(self, active_only: bool = True) -> List[WatchedAddress]:
        query = "SELECT address, is_active, created_at FROM watched_addresses"
        if active_only:
            query += " WHERE is_active = 1"
        query += " ORDER BY created_at"
        with self._connect() as con:
            rows = con.execute(query).fetchall()
        return [
            WatchedAddress(address=row[0], is_active=bool(row[1]), created_at=_parse_datetime(row[2]))
            for row in rows
        ]

    # Transactions ---------------------------------------------------------------

    def insert_transaction(self, record: PersistedTransaction) -> bool:
        """Insert ``record``; return ``False`` if its signature is already recorded."""

        try:
            with self._connect() as con:
                con.execute(
                    f"INSERT INTO transactions ({_TRANSACTION_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        record.signature,
                        record.sender,
                        record.receiver,
                        record.amount_lamports,
                        record.direction.value,
                        record.fee_lamports,
                        record.block_time,
                        record.slot,
                        record.status.value,
                        record.creator_id,
                        record.usd_value,
                        record.sol_price,
                        record.created_at.isoformat(),
                    ),
                )
                con.commit()
        except sqlite3.IntegrityError:
            return False
        return True

    def find_transaction_by_signature(self, signature: str) -> Optional[PersistedTransaction]:
        with self._connect() as con:
            row = con.execute(
                f"SELECT {_TRANSACTION_COLUMNS} FROM transactions WHERE signature = ?",
                (signature,),
            ).fetchone()
        if row is None:
            return None
        return _row_to_transaction(row)

    def list_transactions_by_address(
        self, address: str, limit: int = 200, offset: int = 0
    ) -> List[PersistedTransaction]:
        with self._connect() as con:
            rows = con.execute(
                f"SELECT {_TRANSACTION_COLUMNS} FROM transactions "
                f"WHERE sender = ? OR receiver = ? {_NEWEST_FIRST} LIMIT ? OFFSET ?",
                (address, address, limit, offset),
            ).fetchall()
        return [_row_to_transaction(row) for row in rows]

    def list_transactions_older_than(
        self, address: str, cursor: PersistedTransaction, limit: int = 200
    ) -> List[PersistedTransaction]:
        """Rows that sort after ``cursor`` in newest-first order."""

        if cursor.block_time is None:
            older = "block_time IS NULL AND slot < ?"
            params: List[object] = [cursor.slot]
        else:
            older = "(block_time IS NULL OR block_time < ? OR (block_time = ? AND slot < ?))"
            params = [cursor.block_time, cursor.block_time, cursor.slot]
        with self._connect() as con:
            rows = con.execute(
                f"SELECT {_TRANSACTION_COLUMNS} FROM transactions "
                f"WHERE (sender = ? OR receiver = ?) AND {older} AND signature != ? {_NEWEST_FIRST} LIMIT ?",
                (address, address, *params, cursor.signature, limit),
            ).fetchall()
        return [_row_to_transaction(row) for row in rows]

    def count_transactions_by_address(self, address: str) -> int:
        with self._connect() as con:
            row = con.execute(
                "SELECT COUNT(*) FROM transactions WHERE sender = ? OR receiver = ?",
                (address, address),
            ).fetchone()
        return int(row[0])

    def update_transaction_status(self, signature: str, status: TransactionStatus) -> PersistedTransaction:
        current = self.find_transaction_by_signature(signature)
        if current is None:
            raise StoreError(f"Unknown transaction {signature}")
        if current.status == status:
            return current
        if not current.status.can_transition_to(status):
            raise InvalidStatusTransition(f"{current.status.value} -> {status.value} is not allowed")
        with self._connect() as con:
            con.execute(
                "UPDATE transactions SET status = ? WHERE signature = ? AND status = ?",
                (status.value, signature, current.status.value),
            )
            con.commit()
        current.status = status
        return current

    def transaction_totals(
        self,
        receiver: str,
        since: Optional[int] = None,
        until: Optional[int] = None,
    ) -> TransactionTotals:
        clauses = ["receiver = ?", "direction = ?", "status = ?"]
        params: List[object] = [receiver, PaymentDirection.IN.value, TransactionStatus.CONFIRMED.value]
        if since is not None:
            clauses.append("block_time >= ?")
            params.append(since)
        if until is not None:
            clauses.append("block_time < ?")
            params.append(until)
        query = (
            "SELECT COUNT(*), COALESCE(SUM(amount_lamports), 0), COALESCE(SUM(usd_value), 0), "
            f"COUNT(DISTINCT sender) FROM transactions WHERE {' AND '.join(clauses)}"
        )
        with self._connect() as con:
            row = con.execute(query, params).fetchone()
        return TransactionTotals(
            count=int(row[0]),
            total_lamports=int(row[1]),
            total_usd=float(row[2]),
            unique_senders=int(row[3]),
        )

    def top_senders(
        self,
        *,
        receiver: Optional[str] = None,
        since: Optional[int] = None,
        until: Optional[int] = None,
        limit: int = 10,
    ) -> List[SenderTotal]:
        clauses = ["direction = ?", "status = ?"]
        params: List[object] = [PaymentDirection.IN.value, TransactionStatus.CONFIRMED.value]
        if receiver is not None:
            clauses.append("receiver = ?")
            params.append(receiver)
        if since is not None:
            clauses.append("block_time >= ?")
            params.append(since)
        if until is not None:
            clauses.append("block_time < ?")
            params.append(until)
        query = (
            "SELECT sender, SUM(amount_lamports) AS total, COUNT(*), COALESCE(SUM(usd_value), 0) "
            f"FROM transactions WHERE {' AND '.join(clauses)} "
            "GROUP BY sender ORDER BY total DESC, sender LIMIT ?"
        )
        params.append(limit)
        with self._connect() as con:
            rows = con.execute(query, params).fetchall()
        return [
            SenderTotal(sender=row[0], total_lamports=int(row[1]), count=int(row[2]), total_usd=float(row[3]))
            for row in rows
        ]

    def daily_earnings(self, receiver: str, since: int) -> List[DailyEarning]:
        with self._connect() as con:
            rows = con.execute(
                """
                SELECT date(block_time, 'unixepoch') AS day,
                       SUM(amount_lamports), COALESCE(SUM(usd_value), 0), COUNT(*)
                FROM transactions
                WHERE receiver = ? AND direction = ? AND status = ? AND block_time >= ?
                GROUP BY day ORDER BY day
                """,
                (receiver, PaymentDirection.IN.value, TransactionStatus.CONFIRMED.value, since),
            ).fetchall()
        return [
            DailyEarning(day=row[0], total_lamports=int(row[1]), total_usd=float(row[2]), count=int(row[3]))
            for row in rows
        ]


class TransactionStore:
    """Asynchronous facade that runs storage calls off the event loop with a deadline."""

    def __init__(self, storage: SQLiteStorage, *, timeout: float = 5.0) -> None:
        self._storage = storage
        self._timeout = timeout
        self._logger = get_logger(__name__)

    @property
    def storage(self) -> SQLiteStorage:
        return self._storage

    async def _call(self, name: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(partial(func, *args, **kwargs)), timeout=self._timeout
            )
        except asyncio.TimeoutError as exc:
            METRICS.increment("store.timeouts")
            raise StoreTimeoutError(f"store call {name} timed out after {self._timeout}s") from exc
        except StoreError:
            raise
        except sqlite3.Error as exc:
            METRICS.increment("store.errors")
            self._logger.warning("Store call %s failed: %s", name, exc)
            raise StoreError(f"store call {name} failed: {exc}") from exc

    async def insert(self, record: PersistedTransaction) -> bool:
        return await self._call("insert", self._storage.insert_transaction, record)

    async def find_by_signature(self, signature: str) -> Optional[PersistedTransaction]:
        return await self._call("find_by_signature", self._storage.find_transaction_by_signature, signature)

    async def list_by_address(self, address: str, limit: int = 200, offset: int = 0) -> List[PersistedTransaction]:
        return await self._call(
            "list_by_address", self._storage.list_transactions_by_address, address, limit, offset
        )

    async def list_older_than(
        self, address: str, cursor: PersistedTransaction, limit: int = 200
    ) -> List[PersistedTransaction]:
        return await self._call(
            "list_older_than", self._storage.list_transactions_older_than, address, cursor, limit
        )

    async def count_by_address(self, address: str) -> int:
        return await self._call("count_by_address", self._storage.count_transactions_by_address, address)

    async def update_status(self, signature: str, status: TransactionStatus) -> PersistedTransaction:
        return await self._call("update_status", self._storage.update_transaction_status, signature, status)

    async def ensure_creator(self, address: str, name: str) -> Creator:
        return await self._call("ensure_creator", self._storage.ensure_creator, address, name)

    async def add_watched_address(self, address: str, reactivate: bool = True) -> WatchedAddress:
        return await self._call(
            "add_watched_address", self._storage.add_watched_address, address, reactivate
        )

    async def deactivate_watched_address(self, address: str) -> bool:
        return await self._call(
            "deactivate_watched_address", self._storage.deactivate_watched_address, address
        )

    async def list_watched_addresses(self, active_only: bool = True) -> List[WatchedAddress]:
        return await self._call(
            "list_watched_addresses", self._storage.list_watched_addresses, active_only
        )

    async def totals(
        self, receiver: str, since: Optional[int] = None, until: Optional[int] = None
    ) -> TransactionTotals:
        return await self._call("totals", self._storage.transaction_totals, receiver, since, until)

    async def top_senders(
        self,
        *,
        receiver: Optional[str] = None,
        since: Optional[int] = None,
        until: Optional[int] = None,
        limit: int = 10,
    ) -> List[SenderTotal]:
        return await self._call(
            "top_senders",
            self._storage.top_senders,
            receiver=receiver,
            since=since,
            until=until,
            limit=limit,
        )

    async def daily_earnings(self, receiver: str, since: int) -> List[DailyEarning]:
        return await self._call("daily_earnings", self._storage.daily_earnings, receiver, since)


__all__ = [
    "InvalidStatusTransition",
    "SQLiteStorage",
    "StoreError",
    "StoreTimeoutError",
    "TransactionStore",
]
