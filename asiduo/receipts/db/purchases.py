"""Purchase ledger storage: purchases, audit log and fan-out outbox."""

from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal

from ..models import Purchase, to_iso, utcnow
from .ports import PurchaseStore
from .schema import SQLiteStore


def _dump(purchase: Purchase) -> str:
    return json.dumps(purchase.to_dict(), ensure_ascii=False)


class PurchaseDB(SQLiteStore, PurchaseStore):
    """Manages the purchases, purchase_audit and purchase_outbox tables."""

    def insert_purchase(self, purchase: Purchase) -> bool:
        conn = self._get_conn()
        cur = conn.execute(
            """INSERT OR IGNORE INTO purchases
               (merchant_slug, id, customer_id, entity_id, amount, tax_id,
                invoice_number, work_item_id, created_at, doc)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                purchase.merchant_slug,
                purchase.id,
                purchase.customer_id,
                purchase.entity_id,
                str(purchase.amount),
                purchase.tax_id,
                purchase.invoice_number,
                purchase.work_item_id,
                to_iso(purchase.created_at),
                _dump(purchase),
            ),
        )
        conn.commit()
        return cur.rowcount == 1

    def get_purchase(self, merchant_slug: str, purchase_id: str) -> Purchase | None:
        row = self._get_conn().execute(
            "SELECT doc FROM purchases WHERE merchant_slug = ? AND id = ?",
            (merchant_slug, purchase_id),
        ).fetchone()
        return Purchase.from_dict(json.loads(row["doc"])) if row else None

    def find_by_invoice(
        self, merchant_slug: str, tax_id: str, invoice_number: str
    ) -> Purchase | None:
        row = self._get_conn().execute(
            """SELECT doc FROM purchases
               WHERE merchant_slug = ? AND tax_id = ? AND invoice_number = ?
               LIMIT 1""",
            (merchant_slug, tax_id, invoice_number),
        ).fetchone()
        return Purchase.from_dict(json.loads(row["doc"])) if row else None

    def find_by_work_item(self, merchant_slug: str, work_item_id: str) -> Purchase | None:
        row = self._get_conn().execute(
            """SELECT doc FROM purchases
               WHERE merchant_slug = ? AND work_item_id = ?
               ORDER BY created_at LIMIT 1""",
            (merchant_slug, work_item_id),
        ).fetchone()
        return Purchase.from_dict(json.loads(row["doc"])) if row else None

    def find_recent(
        self,
        merchant_slug: str,
        customer_id: str,
        amount: Decimal,
        since: datetime,
    ) -> list[Purchase]:
        rows = self._get_conn().execute(
            """SELECT doc FROM purchases
               WHERE merchant_slug = ? AND customer_id = ?
                 AND amount = ? AND created_at >= ?
               ORDER BY created_at DESC""",
            (merchant_slug, customer_id, str(amount), to_iso(since)),
        ).fetchall()
        return [Purchase.from_dict(json.loads(r["doc"])) for r in rows]

    def list_purchases(
        self, merchant_slug: str | None = None, customer_id: str | None = None
    ) -> list[Purchase]:
        clauses, params = [], []
        if merchant_slug is not None:
            clauses.append("merchant_slug = ?")
            params.append(merchant_slug)
        if customer_id is not None:
            clauses.append("customer_id = ?")
            params.append(customer_id)
        sql = "SELECT doc FROM purchases"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at"
        rows = self._get_conn().execute(sql, params).fetchall()
        return [Purchase.from_dict(json.loads(r["doc"])) for r in rows]

    def set_image_ref(self, merchant_slug: str, purchase_id: str, ref: str) -> bool:
        purchase = self.get_purchase(merchant_slug, purchase_id)
        if purchase is None or purchase.receipt_image_ref:
            return False
        purchase.receipt_image_ref = ref
        conn = self._get_conn()
        conn.execute(
            "UPDATE purchases SET doc = ? WHERE merchant_slug = ? AND id = ?",
            (_dump(purchase), merchant_slug, purchase_id),
        )
        conn.commit()
        return True

    def write_audit(self, purchase: Purchase) -> None:
        conn = self._get_conn()
        conn.execute(
            """INSERT OR IGNORE INTO purchase_audit
               (purchase_id, merchant_slug, customer_id, doc, recorded_at)
               VALUES (?, ?, ?, ?, ?)""",
            (
                purchase.id,
                purchase.merchant_slug,
                purchase.customer_id,
                _dump(purchase),
                to_iso(utcnow()),
            ),
        )
        conn.commit()

    def enqueue_jobs(self, purchase: Purchase, jobs: list[str]) -> None:
        conn = self._get_conn()
        conn.executemany(
            """INSERT OR IGNORE INTO purchase_outbox (purchase_id, merchant_slug, job)
               VALUES (?, ?, ?)""",
            [(purchase.id, purchase.merchant_slug, job) for job in jobs],
        )
        conn.commit()

    def pending_jobs(
        self,
        purchase_id: str | None = None,
        merchant_slug: str | None = None,
        limit: int = 100,
    ) -> list[dict]:
        sql = "SELECT * FROM purchase_outbox WHERE status = 'pending'"
        params: list = []
        if purchase_id is not None:
            sql += " AND purchase_id = ?"
            params.append(purchase_id)
        if merchant_slug is not None:
            sql += " AND merchant_slug = ?"
            params.append(merchant_slug)
        sql += " ORDER BY rowid LIMIT ?"
        params.append(limit)
        rows = self._get_conn().execute(sql, params).fetchall()
        return [dict(r) for r in rows]

    def list_jobs(self, purchase_id: str) -> list[dict]:
        rows = self._get_conn().execute(
            "SELECT * FROM purchase_outbox WHERE purchase_id = ? ORDER BY rowid",
            (purchase_id,),
        ).fetchall()
        return [dict(r) for r in rows]

    def mark_job(
        self,
        merchant_slug: str,
        purchase_id: str,
        job: str,
        *,
        done: bool,
        error: str | None = None,
    ) -> None:
        conn = self._get_conn()
        conn.execute(
            """UPDATE purchase_outbox
               SET status = ?,
                   attempts = attempts + 1,
                   last_error = ?,
                   updated_at = strftime('%Y-%m-%dT%H:%M:%S+00:00', 'now')
               WHERE merchant_slug = ? AND purchase_id = ? AND job = ?""",
            ("done" if done else "pending", error, merchant_slug, purchase_id, job),
        )
        conn.commit()
