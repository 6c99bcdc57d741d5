"""Durable work queue for inbound receipt images."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime

from ..models import WorkItem, WorkStatus, from_iso, to_iso, utcnow
from .ports import QueueStore
from .schema import SQLiteStore


def _item(row: sqlite3.Row) -> WorkItem:
    return WorkItem(
        id=row["id"],
        payload=json.loads(row["payload"]),
        status=WorkStatus(row["status"]),
        attempts=row["attempts"],
        last_error=row["last_error"],
        next_attempt_at=from_iso(row["next_attempt_at"]),
        result=json.loads(row["result"]) if row["result"] else None,
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
    )


class QueueDB(SQLiteStore, QueueStore):
    """Manages the work_items table."""

    def insert_item(self, item: WorkItem) -> None:
        now = to_iso(item.created_at or utcnow())
        conn = self._get_conn()
        conn.execute(
            """INSERT INTO work_items
               (id, payload, status, attempts, last_error, next_attempt_at,
                result, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                item.id,
                json.dumps(item.payload, ensure_ascii=False),
                item.status.value,
                item.attempts,
                item.last_error,
                to_iso(item.next_attempt_at),
                json.dumps(item.result) if item.result is not None else None,
                now,
                now,
            ),
        )
        conn.commit()

    def get_item(self, item_id: str) -> WorkItem | None:
        row = self._get_conn().execute(
            "SELECT * FROM work_items WHERE id = ?", (item_id,)
        ).fetchone()
        return _item(row) if row else None

    def claim_due(self, now: datetime, limit: int) -> list[WorkItem]:
        conn = self._get_conn()
        ts = to_iso(now)
        rows = conn.execute(
            """SELECT id FROM work_items
               WHERE status = 'pending'
                 AND (next_attempt_at IS NULL OR next_attempt_at <= ?)
               ORDER BY created_at
               LIMIT ?""",
            (ts, limit),
        ).fetchall()

        claimed: list[str] = []
        for row in rows:
            cur = conn.execute(
                """UPDATE work_items
                   SET status = 'processing', attempts = attempts + 1, updated_at = ?
                   WHERE id = ? AND status = 'pending'""",
                (ts, row["id"]),
            )
            if cur.rowcount == 1:
                claimed.append(row["id"])
        conn.commit()
        return [self.get_item(item_id) for item_id in claimed]

    def update_item(
        self,
        item_id: str,
        status: WorkStatus,
        *,
        last_error: str | None = None,
        next_attempt_at: datetime | None = None,
        result: dict | None = None,
        attempts: int | None = None,
    ) -> None:
        conn = self._get_conn()
        conn.execute(
            """UPDATE work_items
               SET status = ?,
                   attempts = COALESCE(?, attempts),
                   last_error = ?,
                   next_attempt_at = ?,
                   result = COALESCE(?, result),
                   updated_at = ?
               WHERE id = ?""",
            (
                status.value,
                attempts,
                last_error,
                to_iso(next_attempt_at),
                json.dumps(result, ensure_ascii=False, default=str) if result is not None else None,
                to_iso(utcnow()),
                item_id,
            ),
        )
        conn.commit()

    def list_items(self, status: WorkStatus | None = None, limit: int = 50) -> list[WorkItem]:
        if status is None:
            rows = self._get_conn().execute(
                "SELECT * FROM work_items ORDER BY created_at DESC LIMIT ?", (limit,)
            ).fetchall()
        else:
            rows = self._get_conn().execute(
                """SELECT * FROM work_items WHERE status = ?
                   ORDER BY created_at DESC LIMIT ?""",
                (status.value, limit),
            ).fetchall()
        return [_item(r) for r in rows]

    def stale_items(self, older_than: datetime) -> list[WorkItem]:
        rows = self._get_conn().execute(
            """SELECT * FROM work_items
               WHERE status = 'processing' AND updated_at < ?
               ORDER BY updated_at""",
            (to_iso(older_than),),
        ).fetchall()
        return [_item(r) for r in rows]
