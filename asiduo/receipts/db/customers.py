"""Customer profiles and per-merchant purchase summaries."""

from __future__ import annotations

import sqlite3
from datetime import datetime

from ..models import Customer, CustomerSummary, from_iso, to_iso, to_money
from .ports import CustomerStore
from .schema import SQLiteStore


def _summary(row: sqlite3.Row) -> CustomerSummary:
    return CustomerSummary(
        purchase_count=row["purchase_count"],
        total_spent=to_money(row["total_spent"]),
        first_visit=from_iso(row["first_visit"]),
        last_visit=from_iso(row["last_visit"]),
    )


class CustomerDB(SQLiteStore, CustomerStore):
    """Manages customers, customer_summaries and merchant_customers."""

    def get_customer(self, customer_id: str) -> Customer | None:
        conn = self._get_conn()
        row = conn.execute(
            "SELECT * FROM customers WHERE id = ?", (customer_id,)
        ).fetchone()
        if row is None:
            return None
        summaries = conn.execute(
            "SELECT * FROM customer_summaries WHERE customer_id = ?", (customer_id,)
        ).fetchall()
        return Customer(
            id=row["id"],
            name=row["name"],
            created_at=from_iso(row["created_at"]),
            last_active=from_iso(row["last_active"]),
            summaries={s["merchant_slug"]: _summary(s) for s in summaries},
        )

    def ensure_customer(self, customer_id: str, name: str, now: datetime) -> Customer:
        conn = self._get_conn()
        ts = to_iso(now)
        conn.execute(
            """INSERT INTO customers (id, name, created_at, last_active)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET last_active = excluded.last_active""",
            (customer_id, name or "Cliente", ts, ts),
        )
        conn.commit()
        return self.get_customer(customer_id)

    def get_summary(self, customer_id: str, merchant_slug: str) -> CustomerSummary | None:
        row = self._get_conn().execute(
            """SELECT * FROM customer_summaries
               WHERE customer_id = ? AND merchant_slug = ?""",
            (customer_id, merchant_slug),
        ).fetchone()
        return _summary(row) if row else None

    def save_summary(
        self, customer_id: str, merchant_slug: str, summary: CustomerSummary
    ) -> None:
        conn = self._get_conn()
        conn.execute(
            """INSERT OR REPLACE INTO customer_summaries
               (customer_id, merchant_slug, purchase_count, total_spent,
                first_visit, last_visit)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                customer_id,
                merchant_slug,
                summary.purchase_count,
                str(summary.total_spent),
                to_iso(summary.first_visit),
                to_iso(summary.last_visit),
            ),
        )
        conn.commit()

    def get_merchant_customer(self, merchant_slug: str, customer_id: str) -> dict | None:
        row = self._get_conn().execute(
            """SELECT * FROM merchant_customers
               WHERE merchant_slug = ? AND customer_id = ?""",
            (merchant_slug, customer_id),
        ).fetchone()
        return dict(row) if row else None

    def save_merchant_customer(
        self, merchant_slug: str, customer_id: str, name: str, summary: CustomerSummary
    ) -> None:
        conn = self._get_conn()
        conn.execute(
            """INSERT OR REPLACE INTO merchant_customers
               (merchant_slug, customer_id, name, purchase_count, total_spent,
                first_visit, last_visit)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                merchant_slug,
                customer_id,
                name or "Cliente",
                summary.purchase_count,
                str(summary.total_spent),
                to_iso(summary.first_visit),
                to_iso(summary.last_visit),
            ),
        )
        conn.commit()

    def list_merchant_customers(self, merchant_slug: str) -> list[dict]:
        rows = self._get_conn().execute(
            """SELECT * FROM merchant_customers WHERE merchant_slug = ?
               ORDER BY purchase_count DESC""",
            (merchant_slug,),
        ).fetchall()
        return [dict(r) for r in rows]
