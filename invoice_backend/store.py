"""Persistent invoice ownership read model backed by SQLite."""
from __future__ import annotations

import logging
import os
import sqlite3
import threading
import time
from typing import Any, Dict, List, Optional

from .models import InvoiceCreatedEvent, InvoiceTradedEvent

LOGGER = logging.getLogger("invoice-backend.store")


def normalize_address(address: str) -> str:
    return str(address or "").strip().lower()


class InvoiceStore:
    """Thread-safe store indexing token ownership and trade history.

    Rows are written only from contract events; invoice details themselves are
    always read from the chain. ``event_cursors`` records the last block each
    event subscription has processed so a restart resumes where it stopped.
    """

    def __init__(self, db_path: Optional[str] = None) -> None:
        self._db_path = db_path or os.getenv("READMODEL_PATH", "./data/invoices.db")
        if self._db_path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(self._db_path)), exist_ok=True)
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._lock = threading.Lock()
        self._create_schema()

    def _create_schema(self) -> None:
        with self._conn:  # type: ignore[call-arg]
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS tokens (
                    token_id TEXT PRIMARY KEY,
                    issuer TEXT NOT NULL,
                    owner TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    created_block INTEGER NOT NULL,
                    owner_block INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """
            )
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_tokens_owner ON tokens(owner)")
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS trades (
                    tx_hash TEXT NOT NULL,
                    log_index INTEGER NOT NULL,
                    token_id TEXT NOT NULL,
                    seller TEXT NOT NULL,
                    buyer TEXT NOT NULL,
                    price TEXT NOT NULL,
                    block_number INTEGER NOT NULL,
                    recorded_at INTEGER NOT NULL,
                    PRIMARY KEY (tx_hash, log_index)
                )
                """
            )
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_trades_token ON trades(token_id)")
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS event_cursors (
                    event_name TEXT PRIMARY KEY,
                    last_block INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """
            )

    # DomainEventSink

    async def on_invoice_created(self, event: InvoiceCreatedEvent) -> None:
        self.record_created(event)

    async def on_invoice_traded(self, event: InvoiceTradedEvent) -> None:
        self.record_trade(event)

    def record_created(self, event: InvoiceCreatedEvent) -> Dict[str, Any]:
        issuer = normalize_address(event.issuer)
        now = int(time.time())
        with self._lock:
            with self._conn:  # type: ignore[call-arg]
                # A trade seen before its creation log keeps the newer owner.
                self._conn.execute(
                    """
                    INSERT INTO tokens(token_id, issuer, owner, amount, created_block, owner_block, updated_at)
                    VALUES(?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(token_id) DO UPDATE SET
                        issuer = excluded.issuer,
                        amount = excluded.amount,
                        created_block = excluded.created_block,
                        updated_at = excluded.updated_at
                    """,
                    (str(event.token_id), issuer, issuer, str(event.amount), event.block_number,
                     event.block_number, now),
                )
            return self._fetch(event.token_id) or {}

    def record_trade(self, event: InvoiceTradedEvent) -> Dict[str, Any]:
        buyer = normalize_address(event.buyer)
        seller = normalize_address(event.seller)
        now = int(time.time())
        with self._lock:
            with self._conn:  # type: ignore[call-arg]
                inserted = self._conn.execute(
                    """
                    INSERT OR IGNORE INTO trades(
                        tx_hash, log_index, token_id, seller, buyer, price, block_number, recorded_at
                    ) VALUES(?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (event.tx_hash.lower(), event.log_index, str(event.token_id), seller, buyer,
                     str(event.price), event.block_number, now),
                ).rowcount
                if inserted:
                    self._conn.execute(
                        """
                        INSERT INTO tokens(token_id, issuer, owner, amount, created_block, owner_block, updated_at)
                        VALUES(?, ?, ?, '0', ?, ?, ?)
                        ON CONFLICT(token_id) DO UPDATE SET
                            owner = excluded.owner,
                            owner_block = excluded.owner_block,
                            updated_at = excluded.updated_at
                        WHERE excluded.owner_block >= tokens.owner_block
                        """,
                        (str(event.token_id), seller, buyer, event.block_number, event.block_number, now),
                    )
                else:
                    LOGGER.debug("Trade %s:%s already recorded", event.tx_hash, event.log_index)
            return self._fetch(event.token_id) or {}

    # EventCursor

    def load_cursor(self, event_name: str) -> Optional[int]:
        with self._lock:
            row = self._conn.execute(
                "SELECT last_block FROM event_cursors WHERE event_name = ?", (event_name,)
            ).fetchone()
        return int(row[0]) if row else None

    def save_cursor(self, event_name: str, last_block: int) -> None:
        with self._lock:
            with self._conn:  # type: ignore[call-arg]
                # Cursors only move forward.
                self._conn.execute(
                    """
                    INSERT INTO event_cursors(event_name, last_block, updated_at) VALUES(?, ?, ?)
                    ON CONFLICT(event_name) DO UPDATE SET
                        last_block = excluded.last_block,
                        updated_at = excluded.updated_at
                    WHERE excluded.last_block > event_cursors.last_block
                    """,
                    (event_name, last_block, int(time.time())),
                )

    def _fetch(self, token_id: int) -> Optional[Dict[str, Any]]:
        cursor = self._conn.execute(
            "SELECT token_id, issuer, owner, amount, created_block, updated_at FROM tokens WHERE token_id = ?",
            (str(token_id),),
        )
        row = cursor.fetchone()
        if not row:
            return None
        return {
            "tokenId": int(row[0]),
            "issuer": row[1],
            "owner": row[2],
            "amount": row[3],
            "createdBlock": int(row[4]),
            "updatedAt": int(row[5]),
        }

    def get(self, token_id: int) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._fetch(token_id)

    def token_ids(self) -> List[int]:
        with self._lock:
            cursor = self._conn.execute("SELECT token_id FROM tokens")
            return sorted(int(row[0]) for row in cursor.fetchall())

    def token_ids_for_owner(self, owner: str) -> List[int]:
        with self._lock:
            cursor = self._conn.execute("SELECT token_id FROM tokens WHERE owner = ?", (normalize_address(owner),))
            return sorted(int(row[0]) for row in cursor.fetchall())

    def trades_for(self, token_id: int) -> List[Dict[str, Any]]:
        with self._lock:
            cursor = self._conn.execute(
                """
                SELECT tx_hash, log_index, seller, buyer, price, block_number
                FROM trades WHERE token_id = ? ORDER BY block_number ASC, log_index ASC
                """,
                (str(token_id),),
            )
            return [
                {
                    "txHash": tx_hash,
                    "logIndex": int(log_index),
                    "from": seller,
                    "to": buyer,
                    "price": price,
                    "blockNumber": int(block_number),
                }
                for tx_hash, log_index, seller, buyer, price, block_number in cursor.fetchall()
            ]

    def close(self) -> None:
        with self._lock:
            self._conn.close()


__all__ = ["InvoiceStore", "normalize_address"]
