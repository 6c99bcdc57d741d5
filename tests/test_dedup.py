"""Tests for duplicate receipt detection."""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock

from asiduo.receipts.dedup import DedupGuard
from asiduo.receipts.models import Purchase, ReceiptFacts

from conftest import RUC

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


def _purchase(**kwargs) -> Purchase:
    defaults = dict(
        id=f"{RUC}-B011-00524671",
        customer_id="+51987654321",
        merchant_slug="el-trigal",
        amount=Decimal("4.90"),
        entity_id="trigal-sac",
        tax_id=RUC,
        invoice_number="B011-00524671",
        created_at=NOW - timedelta(hours=1),
    )
    defaults.update(kwargs)
    return Purchase(**defaults)


def _guard(stores) -> DedupGuard:
    return DedupGuard(stores.purchases, window=timedelta(hours=24), now=lambda: NOW)


class TestInvoiceDuplicates:
    def test_same_invoice_is_duplicate_even_with_other_amount(self, stores):
        stores.purchases.insert_purchase(_purchase())
        facts = ReceiptFacts(tax_id=RUC, invoice_number="B011-00524671", amount=Decimal("9.99"))

        duplicate = _guard(stores).check("el-trigal", "+51999999999", facts)

        assert duplicate is not None
        assert duplicate.id == f"{RUC}-B011-00524671"

    def test_other_invoice_is_not_duplicate(self, stores):
        stores.purchases.insert_purchase(_purchase())
        facts = ReceiptFacts(tax_id=RUC, invoice_number="B011-00524672", amount=Decimal("4.90"))
        assert not _guard(stores).is_duplicate("el-trigal", "+51987654321", facts)

    def test_same_work_item_is_a_resumption(self, stores):
        stores.purchases.insert_purchase(_purchase(work_item_id="w1"))
        facts = ReceiptFacts(tax_id=RUC, invoice_number="B011-00524671", amount=Decimal("4.90"))
        assert _guard(stores).check("el-trigal", "+51987654321", facts, work_item_id="w1") is None


class TestHeuristicDuplicates:
    def _no_invoice(self, **kwargs) -> Purchase:
        return _purchase(
            id="el-trigal_+51987654321_1", invoice_number=None, **kwargs
        )

    def test_same_amount_within_window(self, stores):
        stores.purchases.insert_purchase(self._no_invoice())
        facts = ReceiptFacts(tax_id=RUC, amount=Decimal("4.90"))
        assert _guard(stores).is_duplicate("el-trigal", "+51987654321", facts)

    def test_outside_window(self, stores):
        stores.purchases.insert_purchase(self._no_invoice(created_at=NOW - timedelta(hours=25)))
        facts = ReceiptFacts(tax_id=RUC, amount=Decimal("4.90"))
        assert not _guard(stores).is_duplicate("el-trigal", "+51987654321", facts)

    def test_different_amount(self, stores):
        stores.purchases.insert_purchase(self._no_invoice())
        facts = ReceiptFacts(tax_id=RUC, amount=Decimal("4.91"))
        assert not _guard(stores).is_duplicate("el-trigal", "+51987654321", facts)

    def test_other_customer(self, stores):
        stores.purchases.insert_purchase(self._no_invoice())
        facts = ReceiptFacts(tax_id=RUC, amount=Decimal("4.90"))
        assert not _guard(stores).is_duplicate("el-trigal", "+51911111111", facts)

    def test_not_applied_when_invoice_present(self, stores):
        stores.purchases.insert_purchase(self._no_invoice())
        facts = ReceiptFacts(tax_id=RUC, invoice_number="B011-00000001", amount=Decimal("4.90"))
        assert not _guard(stores).is_duplicate("el-trigal", "+51987654321", facts)


def test_store_failure_fails_open(caplog):
    store = MagicMock()
    store.find_by_invoice.side_effect = RuntimeError("base de datos caída")
    guard = DedupGuard(store, now=lambda: NOW)
    facts = ReceiptFacts(tax_id=RUC, invoice_number="B011-00524671", amount=Decimal("4.90"))

    with caplog.at_level(logging.WARNING, logger="asiduo.receipts.data_quality"):
        assert guard.check("el-trigal", "+51987654321", facts) is None

    assert any(r.name == "asiduo.receipts.data_quality" for r in caplog.records)
