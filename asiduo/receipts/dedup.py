"""Detect receipts that were already credited."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from .db.ports import PurchaseStore
from .models import Purchase, ReceiptFacts, utcnow

logger = logging.getLogger(__name__)
quality_logger = logging.getLogger("asiduo.receipts.data_quality")


class DedupGuard:
    """Decide whether a receipt duplicates an existing purchase.

    A receipt with both a tax id and an invoice number is a duplicate when the
    merchant already has a purchase for that pair. Without an invoice number,
    the same customer paying the exact same amount within the window counts as
    a duplicate. Store errors fail open.
    """

    def __init__(
        self,
        store: PurchaseStore,
        window: timedelta = timedelta(hours=24),
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._window = window
        self._now = now

    def find_duplicate(
        self,
        merchant_slug: str,
        customer_id: str,
        facts: ReceiptFacts,
        work_item_id: str | None = None,
    ) -> Purchase | None:
        """Return the purchase this receipt duplicates, or None."""
        if facts.tax_id and facts.invoice_number:
            match = self._store.find_by_invoice(
                merchant_slug, facts.tax_id, facts.invoice_number
            )
            candidates = [match] if match else []
        elif facts.invoice_number is None and facts.amount is not None:
            since = self._now() - self._window
            candidates = self._store.find_recent(
                merchant_slug, customer_id, facts.amount, since
            )
        else:
            candidates = []

        for purchase in candidates:
            if work_item_id and purchase.work_item_id == work_item_id:
                logger.info(
                    "Compra %s ya registrada por el mismo trabajo %s (reanudación)",
                    purchase.id,
                    work_item_id,
                )
                continue
            return purchase
        return None

    def check(
        self,
        merchant_slug: str,
        customer_id: str,
        facts: ReceiptFacts,
        work_item_id: str | None = None,
    ) -> Purchase | None:
        """Like find_duplicate, but store errors are logged and yield None."""
        try:
            duplicate = self.find_duplicate(merchant_slug, customer_id, facts, work_item_id)
        except Exception as exc:
            quality_logger.warning(
                "Verificación de duplicados falló para %s/%s, se continúa: %s",
                merchant_slug,
                customer_id,
                exc,
            )
            return None
        if duplicate is not None:
            logger.info(
                "Comprobante duplicado: %s (RUC %s, comprobante %s)",
                duplicate.id,
                facts.tax_id,
                facts.invoice_number,
            )
        return duplicate

    def is_duplicate(
        self,
        merchant_slug: str,
        customer_id: str,
        facts: ReceiptFacts,
        work_item_id: str | None = None,
    ) -> bool:
        return self.check(merchant_slug, customer_id, facts, work_item_id) is not None
