"""
Payment Store Tests
Append-once records, refund flip and the failed-delivery trail on a temp sqlite file.
"""

import asyncio
import sqlite3

import pytest

from payment_store import PaymentStore
from payment_errors import DuplicatePayment, AlreadyRefunded, PaymentNotFound


@pytest.fixture
def store(tmp_path):
    return PaymentStore(str(tmp_path / "store.db"))


def append(store, charge_id="stxCharge1", payer_id=42, product_id="package_mini", amount_paid=25, quantity_delivered=250):
    return asyncio.run(store.append(
        payer_id=payer_id, charge_id=charge_id, product_id=product_id,
        amount_paid=amount_paid, quantity_delivered=quantity_delivered,
        created_at_ms=1_700_000_000_000,
    ))


def test_append_and_get(store):
    record = append(store)
    assert record.sequence_id == 1
    assert not record.refunded and record.refunded_at is None

    stored = asyncio.run(store.get("stxCharge1"))
    assert stored == record


def test_sequence_ids_increase(store):
    first = append(store, "stxA")
    second = append(store, "stxB", payer_id=7)
    assert second.sequence_id > first.sequence_id


def test_get_unknown_returns_none(store):
    assert asyncio.run(store.get("stxNope")) is None


def test_duplicate_charge_id_is_rejected(store):
    append(store)
    with pytest.raises(DuplicatePayment) as exc_info:
        append(store, amount_paid=50)
    assert exc_info.value.charge_id == "stxCharge1"
    assert asyncio.run(store.get("stxCharge1")).amount_paid == 25


def test_mark_refunded_once(store):
    append(store)
    record = asyncio.run(store.mark_refunded("stxCharge1"))
    assert record.refunded and record.refunded_at

    with pytest.raises(AlreadyRefunded):
        asyncio.run(store.mark_refunded("stxCharge1"))
    assert asyncio.run(store.get("stxCharge1")).refunded_at == record.refunded_at


def test_mark_refunded_unknown(store):
    with pytest.raises(PaymentNotFound):
        asyncio.run(store.mark_refunded("stxNope"))


def test_failed_delivery_rows_are_appended(store):
    async def write_two():
        await store.append_failed_delivery(42, "stxBroken", "DeliveryFailure('blocked')")
        await store.append_failed_delivery(42, "stxBroken", "DeliveryFailure('blocked')")

    asyncio.run(write_two())
    conn = sqlite3.connect(store.db_path)
    try:
        rows = conn.execute("SELECT user_id, charge_id, error FROM failed_deliveries").fetchall()
    finally:
        conn.close()
    assert rows == [(42, "stxBroken", "DeliveryFailure('blocked')")] * 2


def test_records_survive_reopen(tmp_path):
    path = str(tmp_path / "reopen.db")
    append(PaymentStore(path))
    assert asyncio.run(PaymentStore(path).get("stxCharge1")) is not None
