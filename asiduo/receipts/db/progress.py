"""Loyalty programs, per-customer progress and processed-ticket markers."""

from __future__ import annotations

import json
import sqlite3
from decimal import Decimal

from ..models import LoyaltyProgram, ProgramProgress, to_iso, to_money, utcnow
from .ports import ProgressStore
from .schema import SQLiteStore


def _program(row: sqlite3.Row) -> LoyaltyProgram:
    program = LoyaltyProgram.from_dict(json.loads(row["doc"]))
    program.stats = {
        "total_participants": row["total_participants"],
        "rewards_redeemed": row["rewards_redeemed"],
        "total_revenue": to_money(row["total_revenue"]),
    }
    return program


class LoyaltyDB(SQLiteStore, ProgressStore):
    """Manages loyalty_programs, program_progress and loyalty_processed_tickets."""

    def list_programs(self, merchant_slug: str) -> list[LoyaltyProgram]:
        rows = self._get_conn().execute(
            """SELECT * FROM loyalty_programs WHERE merchant_slug = ?
               ORDER BY priority, id""",
            (merchant_slug,),
        ).fetchall()
        return [_program(r) for r in rows]

    def get_program(self, program_id: str) -> LoyaltyProgram | None:
        row = self._get_conn().execute(
            "SELECT * FROM loyalty_programs WHERE id = ?", (program_id,)
        ).fetchone()
        return _program(row) if row else None

    def save_program(self, program: LoyaltyProgram) -> None:
        doc = program.to_dict()
        doc.pop("stats", None)
        conn = self._get_conn()
        conn.execute(
            """INSERT INTO loyalty_programs (id, merchant_slug, priority, doc)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   merchant_slug = excluded.merchant_slug,
                   priority = excluded.priority,
                   doc = excluded.doc""",
            (program.id, program.merchant_slug, program.priority, json.dumps(doc, ensure_ascii=False)),
        )
        conn.commit()

    def add_program_stats(
        self,
        program_id: str,
        participants: int = 0,
        rewards_redeemed: int = 0,
        revenue: Decimal = Decimal("0"),
    ) -> None:
        conn = self._get_conn()
        row = conn.execute(
            "SELECT total_revenue FROM loyalty_programs WHERE id = ?", (program_id,)
        ).fetchone()
        if row is None:
            return
        total_revenue = to_money(row["total_revenue"]) + to_money(revenue)
        conn.execute(
            """UPDATE loyalty_programs
               SET total_participants = total_participants + ?,
                   rewards_redeemed = rewards_redeemed + ?,
                   total_revenue = ?
               WHERE id = ?""",
            (participants, rewards_redeemed, str(total_revenue), program_id),
        )
        conn.commit()

    def get_progress(
        self, customer_id: str, merchant_slug: str, program_id: str
    ) -> ProgramProgress | None:
        row = self._get_conn().execute(
            """SELECT doc FROM program_progress
               WHERE customer_id = ? AND merchant_slug = ? AND program_id = ?""",
            (customer_id, merchant_slug, program_id),
        ).fetchone()
        return ProgramProgress.from_dict(json.loads(row["doc"])) if row else None

    def list_progress(self, customer_id: str, merchant_slug: str) -> list[ProgramProgress]:
        rows = self._get_conn().execute(
            """SELECT doc FROM program_progress
               WHERE customer_id = ? AND merchant_slug = ? ORDER BY program_id""",
            (customer_id, merchant_slug),
        ).fetchall()
        return [ProgramProgress.from_dict(json.loads(r["doc"])) for r in rows]

    def save_progress(self, progress: ProgramProgress) -> None:
        conn = self._get_conn()
        conn.execute(
            """INSERT INTO program_progress (customer_id, merchant_slug, program_id, doc)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(customer_id, merchant_slug, program_id) DO UPDATE SET
                   doc = excluded.doc,
                   updated_at = strftime('%Y-%m-%dT%H:%M:%S+00:00', 'now')""",
            (
                progress.customer_id,
                progress.merchant_slug,
                progress.program_id,
                json.dumps(progress.to_dict(), ensure_ascii=False),
            ),
        )
        conn.commit()

    def is_ticket_processed(self, customer_id: str, purchase_id: str) -> bool:
        row = self._get_conn().execute(
            """SELECT 1 FROM loyalty_processed_tickets
               WHERE customer_id = ? AND purchase_id = ?""",
            (customer_id, purchase_id),
        ).fetchone()
        return row is not None

    def mark_ticket_processed(
        self, customer_id: str, purchase_id: str, merchant_slug: str, results: list[dict]
    ) -> None:
        conn = self._get_conn()
        conn.execute(
            """INSERT OR IGNORE INTO loyalty_processed_tickets
               (customer_id, purchase_id, merchant_slug, results, processed_at)
               VALUES (?, ?, ?, ?, ?)""",
            (
                customer_id,
                purchase_id,
                merchant_slug,
                json.dumps(results, ensure_ascii=False),
                to_iso(utcnow()),
            ),
        )
        conn.commit()
