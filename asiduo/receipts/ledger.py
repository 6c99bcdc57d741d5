"""Purchase ledger: durable purchase insert plus outbox fan-out.

The purchase row is the durability boundary. Everything derived from it
(customer summaries, the merchant's customer list, the audit copy and the
tax index) is written by outbox jobs keyed by ``(purchase_id, job)``, so a
job that already completed never runs twice.
"""

from __future__ import annotations

import logging
from typing import Callable

from .db.ports import CustomerStore, MerchantStore, PurchaseStore
from .models import CustomerSummary, Purchase, RecordResult, as_utc, from_iso, to_money

logger = logging.getLogger(__name__)

FANOUT_JOBS = ("customer_summary", "merchant_customer", "audit_log", "tax_index")


def _bump(summary: CustomerSummary | None, purchase: Purchase) -> CustomerSummary:
    summary = summary or CustomerSummary()
    at = as_utc(purchase.created_at)
    summary.purchase_count += 1
    summary.total_spent += purchase.amount
    if summary.first_visit is None or at < summary.first_visit:
        summary.first_visit = at
    if summary.last_visit is None or at > summary.last_visit:
        summary.last_visit = at
    return summary


class PurchaseLedger:
    """Commit purchases and keep their derived records in step."""

    def __init__(
        self,
        purchases: PurchaseStore,
        customers: CustomerStore,
        merchants: MerchantStore | None = None,
    ) -> None:
        self._purchases = purchases
        self._customers = customers
        self._merchants = merchants
        self._jobs: dict[str, Callable[[Purchase], None]] = {
            "customer_summary": self._job_customer_summary,
            "merchant_customer": self._job_merchant_customer,
            "audit_log": self._purchases.write_audit,
            "tax_index": self._job_tax_index,
        }

    def record(self, purchase: Purchase) -> RecordResult:
        """Persist a purchase and run its fan-out jobs.

        Recording an id that already exists is not an error: the stored
        purchase is returned with ``created=False`` and only jobs still
        pending are run.

        Args:
            purchase: The purchase to commit.

        Returns:
            RecordResult with the stored purchase and any fan-out failures.
        """
        created = self._purchases.insert_purchase(purchase)
        if created:
            logger.info(
                "Compra registrada: %s (%s, S/ %s)",
                purchase.id,
                purchase.merchant_slug,
                purchase.amount,
            )
            stored = purchase
        else:
            stored = self._purchases.get_purchase(purchase.merchant_slug, purchase.id) or purchase
            logger.info("Compra ya existente, no se vuelve a registrar: %s", purchase.id)

        self._purchases.enqueue_jobs(stored, list(FANOUT_JOBS))
        errors = self._run_pending(stored)
        return RecordResult(success=True, purchase=stored, created=created, fanout_errors=errors)

    def _run_pending(self, purchase: Purchase) -> list[str]:
        errors: list[str] = []
        for job in self._purchases.pending_jobs(
            purchase_id=purchase.id, merchant_slug=purchase.merchant_slug
        ):
            name = job["job"]
            error = self._run_job(name, purchase)
            if error:
                errors.append(f"{name}: {error}")
        return errors

    def _run_job(self, name: str, purchase: Purchase) -> str | None:
        handler = self._jobs.get(name)
        if handler is None:
            logger.error("Trabajo de distribución desconocido: %s", name)
            return f"trabajo desconocido {name}"
        try:
            handler(purchase)
        except Exception as exc:
            logger.warning(
                "Trabajo %s falló para la compra %s: %s", name, purchase.id, exc
            )
            self._purchases.mark_job(
                purchase.merchant_slug, purchase.id, name, done=False, error=str(exc)
            )
            return str(exc)
        self._purchases.mark_job(purchase.merchant_slug, purchase.id, name, done=True)
        return None

    def drain_outbox(self, limit: int = 100) -> int:
        """Retry pending fan-out jobs.

        Returns:
            Number of jobs that completed.
        """
        completed = 0
        for job in self._purchases.pending_jobs(limit=limit):
            purchase = self._purchases.get_purchase(job["merchant_slug"], job["purchase_id"])
            if purchase is None:
                logger.error("Compra no encontrada para el trabajo %s: %s", job["job"], job["purchase_id"])
                continue
            if self._run_job(job["job"], purchase) is None:
                completed += 1
        if completed:
            logger.info("Trabajos de distribución completados: %d", completed)
        return completed

    def find_by_work_item(self, merchant_slug: str, work_item_id: str) -> Purchase | None:
        return self._purchases.find_by_work_item(merchant_slug, work_item_id)

    def attach_image(self, merchant_slug: str, purchase_id: str, ref: str) -> bool:
        """Attach a receipt image reference if the purchase has none yet."""
        attached = self._purchases.set_image_ref(merchant_slug, purchase_id, ref)
        if attached:
            logger.info("Imagen adjuntada a la compra %s: %s", purchase_id, ref)
        return attached

    # ── Fan-out jobs ──

    def _job_customer_summary(self, purchase: Purchase) -> None:
        summary = self._customers.get_summary(purchase.customer_id, purchase.merchant_slug)
        self._customers.save_summary(
            purchase.customer_id, purchase.merchant_slug, _bump(summary, purchase)
        )

    def _job_merchant_customer(self, purchase: Purchase) -> None:
        row = self._customers.get_merchant_customer(purchase.merchant_slug, purchase.customer_id)
        customer = self._customers.get_customer(purchase.customer_id)
        name = customer.name if customer else "Cliente"
        summary = None
        if row is not None:
            summary = CustomerSummary(
                purchase_count=row["purchase_count"],
                total_spent=to_money(row["total_spent"]),
                first_visit=from_iso(row["first_visit"]),
                last_visit=from_iso(row["last_visit"]),
            )
        self._customers.save_merchant_customer(
            purchase.merchant_slug, purchase.customer_id, name, _bump(summary, purchase)
        )

    def _job_tax_index(self, purchase: Purchase) -> None:
        if self._merchants is None or not purchase.tax_id or not purchase.entity_id:
            return
        if self._merchants.get_tax_index(purchase.tax_id) is None:
            self._merchants.set_tax_index(
                purchase.tax_id, purchase.merchant_slug, purchase.entity_id
            )
