"""Tests for the purchase ledger and its outbox fan-out."""

from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from asiduo.receipts.ledger import FANOUT_JOBS, PurchaseLedger
from asiduo.receipts.models import Purchase

from conftest import RUC

CUSTOMER = "+51987654321"


def _purchase(pid: str = f"{RUC}-B011-00524671", amount: str = "4.90") -> Purchase:
    return Purchase(
        id=pid,
        customer_id=CUSTOMER,
        merchant_slug="el-trigal",
        amount=Decimal(amount),
        entity_id="trigal-sac",
        tax_id=RUC,
        invoice_number="B011-00524671",
        created_at=datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc),
    )


@pytest.fixture
def ledger(stores):
    return PurchaseLedger(stores.purchases, stores.customers, stores.merchants)


def test_record_runs_every_fanout_job(stores, ledger):
    stores.customers.ensure_customer(CUSTOMER, "Ana", datetime.now(timezone.utc))

    result = ledger.record(_purchase())

    assert result.success and result.created
    assert result.fanout_errors == []
    jobs = stores.purchases.list_jobs(result.purchase.id)
    assert {j["job"] for j in jobs} == set(FANOUT_JOBS)
    assert all(j["status"] == "done" for j in jobs)

    summary = stores.customers.get_summary(CUSTOMER, "el-trigal")
    assert summary.purchase_count == 1
    assert summary.total_spent == Decimal("4.90")

    row = stores.customers.get_merchant_customer("el-trigal", CUSTOMER)
    assert row["name"] == "Ana"
    assert row["purchase_count"] == 1
    assert stores.merchants.get_tax_index(RUC) == ("el-trigal", "trigal-sac")


def test_record_twice_is_idempotent(stores, ledger):
    first = ledger.record(_purchase())
    second = ledger.record(_purchase())

    assert first.created is True
    assert second.created is False
    assert second.purchase.id == first.purchase.id
    assert len(stores.purchases.list_purchases("el-trigal")) == 1
    assert stores.customers.get_summary(CUSTOMER, "el-trigal").purchase_count == 1


def test_summaries_accumulate(stores, ledger):
    ledger.record(_purchase("p1", "4.90"))
    ledger.record(_purchase("p2", "10.10"))

    summary = stores.customers.get_summary(CUSTOMER, "el-trigal")
    assert summary.purchase_count == 2
    assert summary.total_spent == Decimal("15.00")
    assert stores.customers.list_merchant_customers("el-trigal")[0]["purchase_count"] == 2


def test_fanout_failure_keeps_purchase_and_drains_later(stores):
    broken = MagicMock()
    broken.get_summary.side_effect = RuntimeError("almacén caído")
    broken.get_merchant_customer.side_effect = RuntimeError("almacén caído")

    result = PurchaseLedger(stores.purchases, broken).record(_purchase())

    assert result.success
    assert len(result.fanout_errors) == 2
    assert stores.purchases.get_purchase("el-trigal", result.purchase.id) is not None
    pending = {j["job"] for j in stores.purchases.pending_jobs()}
    assert pending == {"customer_summary", "merchant_customer"}

    healthy = PurchaseLedger(stores.purchases, stores.customers, stores.merchants)
    assert healthy.drain_outbox() == 2
    assert stores.purchases.pending_jobs() == []
    assert stores.customers.get_summary(CUSTOMER, "el-trigal").purchase_count == 1


def test_attach_image_only_once(stores, ledger):
    purchase = ledger.record(_purchase()).purchase

    assert ledger.attach_image("el-trigal", purchase.id, "/tmp/a.jpg") is True
    assert ledger.attach_image("el-trigal", purchase.id, "/tmp/b.jpg") is False
    stored = stores.purchases.get_purchase("el-trigal", purchase.id)
    assert stored.receipt_image_ref == "/tmp/a.jpg"


def test_find_by_work_item(stores, ledger):
    purchase = _purchase()
    purchase.work_item_id = "w1"
    ledger.record(purchase)

    assert ledger.find_by_work_item("el-trigal", "w1").id == purchase.id
    assert ledger.find_by_work_item("el-trigal", "w2") is None
