# --- START OF FILE payment_store.py ---

"""
Payment Store
Durable, append-only record of completed Stars payments keyed by charge id,
plus the write-only trail of payments whose delivery failed.

All mutations run under one asyncio lock and inside BEGIN IMMEDIATE
transactions, so appends and the refund flip never interleave.
"""

import logging
import sqlite3
import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from utils import get_db_connection, init_db
from payment_errors import DuplicatePayment, AlreadyRefunded, PaymentNotFound

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentRecord:
    sequence_id: int
    payer_id: int
    charge_id: str
    provider_charge_id: Optional[str]
    product_id: str
    amount_paid: int
    quantity_delivered: int
    created_at_ms: int
    recorded_at: str
    refunded: bool = False
    refunded_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "PaymentRecord":
        return cls(
            sequence_id=row['id'],
            payer_id=row['user_id'],
            charge_id=row['charge_id'],
            provider_charge_id=row['provider_charge_id'],
            product_id=row['product_id'],
            amount_paid=row['spent_stars'],
            quantity_delivered=row['coins_delivered'],
            created_at_ms=row['created_at'],
            recorded_at=row['recorded_at'],
            refunded=bool(row['refunded']),
            refunded_at=row['refunded_at'],
        )


class PaymentStore:
    """Single writer for PaymentRecord rows and FailedDeliveryEntry rows."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._lock = asyncio.Lock()
        init_db(db_path)

    # --- Sync helpers (run in worker threads) ---
    def _append_sync(self, payer_id, charge_id, provider_charge_id, product_id, amount_paid, quantity_delivered, created_at_ms) -> PaymentRecord:
        conn = None
        try:
            conn = get_db_connection(self.db_path)
            c = conn.cursor()
            c.execute("BEGIN IMMEDIATE")
            c.execute("SELECT id FROM payments WHERE charge_id = ?", (charge_id,))
            if c.fetchone():
                conn.rollback()
                raise DuplicatePayment(charge_id)
            recorded_at = datetime.now(timezone.utc).isoformat()
            c.execute("""
                INSERT INTO payments (user_id, charge_id, provider_charge_id, product_id,
                                      spent_stars, coins_delivered, created_at, recorded_at, refunded)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0)
            """, (payer_id, charge_id, provider_charge_id, product_id, amount_paid, quantity_delivered, created_at_ms, recorded_at))
            sequence_id = c.lastrowid
            conn.commit()
            logger.info(f"💾 Payment saved to database: #{sequence_id} (charge {charge_id})")
            return PaymentRecord(
                sequence_id=sequence_id, payer_id=payer_id, charge_id=charge_id,
                provider_charge_id=provider_charge_id, product_id=product_id,
                amount_paid=amount_paid, quantity_delivered=quantity_delivered,
                created_at_ms=created_at_ms, recorded_at=recorded_at,
            )
        except sqlite3.IntegrityError:
            if conn and conn.in_transaction: conn.rollback()
            raise DuplicatePayment(charge_id)
        except sqlite3.Error as e:
            logger.error(f"DB error saving payment {charge_id}: {e}", exc_info=True)
            if conn and conn.in_transaction: conn.rollback()
            raise
        finally:
            if conn: conn.close()

    def _get_sync(self, charge_id) -> Optional[PaymentRecord]:
        conn = None
        try:
            conn = get_db_connection(self.db_path)
            c = conn.cursor()
            c.execute("SELECT * FROM payments WHERE charge_id = ?", (charge_id,))
            row = c.fetchone()
            return PaymentRecord.from_row(row) if row else None
        finally:
            if conn: conn.close()

    def _mark_refunded_sync(self, charge_id) -> PaymentRecord:
        conn = None
        try:
            conn = get_db_connection(self.db_path)
            c = conn.cursor()
            c.execute("BEGIN IMMEDIATE")
            refunded_at = datetime.now(timezone.utc).isoformat()
            update_res = c.execute(
                "UPDATE payments SET refunded = 1, refunded_at = ? WHERE charge_id = ? AND refunded = 0",
                (refunded_at, charge_id)
            )
            if update_res.rowcount == 0:
                c.execute("SELECT refunded FROM payments WHERE charge_id = ?", (charge_id,))
                existing = c.fetchone()
                conn.rollback()
                if existing is None:
                    raise PaymentNotFound(charge_id)
                raise AlreadyRefunded(charge_id)
            c.execute("SELECT * FROM payments WHERE charge_id = ?", (charge_id,))
            row = c.fetchone()
            conn.commit()
            logger.info(f"Payment {charge_id} marked refunded at {refunded_at}")
            return PaymentRecord.from_row(row)
        except sqlite3.Error as e:
            logger.error(f"DB error marking payment {charge_id} refunded: {e}", exc_info=True)
            if conn and conn.in_transaction: conn.rollback()
            raise
        finally:
            if conn: conn.close()

    def _append_failed_delivery_sync(self, payer_id, charge_id, error) -> None:
        conn = None
        try:
            conn = get_db_connection(self.db_path)
            c = conn.cursor()
            c.execute("BEGIN IMMEDIATE")
            c.execute(
                "INSERT INTO failed_deliveries (user_id, charge_id, error, timestamp) VALUES (?, ?, ?, ?)",
                (payer_id, charge_id, str(error), datetime.now(timezone.utc).isoformat())
            )
            conn.commit()
        except sqlite3.Error as e:
            logger.critical(f"DB error writing failed delivery for charge {charge_id}: {e}", exc_info=True)
            if conn and conn.in_transaction: conn.rollback()
            raise
        finally:
            if conn: conn.close()

    # --- Async API ---
    async def append(self, payer_id: int, charge_id: str, product_id: str, amount_paid: int, quantity_delivered: int, created_at_ms: int, provider_charge_id: str | None = None) -> PaymentRecord:
        """Appends a new record. Raises DuplicatePayment if the charge id is already stored."""
        async with self._lock:
            return await asyncio.to_thread(
                self._append_sync, payer_id, charge_id, provider_charge_id,
                product_id, amount_paid, quantity_delivered, created_at_ms
            )

    async def get(self, charge_id: str) -> Optional[PaymentRecord]:
        async with self._lock:
            return await asyncio.to_thread(self._get_sync, charge_id)

    async def mark_refunded(self, charge_id: str) -> PaymentRecord:
        """Flips refunded false->true once. Raises PaymentNotFound or AlreadyRefunded otherwise."""
        async with self._lock:
            return await asyncio.to_thread(self._mark_refunded_sync, charge_id)

    async def append_failed_delivery(self, payer_id, charge_id: str, error) -> None:
        async with self._lock:
            await asyncio.to_thread(self._append_failed_delivery_sync, payer_id, charge_id, error)

# --- END OF FILE payment_store.py ---
