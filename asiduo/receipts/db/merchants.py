"""Merchant directory and tax id index."""

from __future__ import annotations

import json

from ..models import Merchant
from .ports import MerchantStore
from .schema import SQLiteStore


class MerchantDB(SQLiteStore, MerchantStore):
    """Manages the merchants and tax_index tables."""

    def get_merchant(self, slug: str) -> Merchant | None:
        row = self._get_conn().execute(
            "SELECT doc FROM merchants WHERE slug = ?", (slug,)
        ).fetchone()
        return Merchant.from_dict(json.loads(row["doc"])) if row else None

    def list_merchants(self, limit: int | None = None) -> list[Merchant]:
        sql = "SELECT doc FROM merchants ORDER BY slug"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)
        rows = self._get_conn().execute(sql, params).fetchall()
        return [Merchant.from_dict(json.loads(r["doc"])) for r in rows]

    def save_merchant(self, merchant: Merchant) -> None:
        conn = self._get_conn()
        conn.execute(
            """INSERT INTO merchants (slug, name, doc, active)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(slug) DO UPDATE SET
                   name = excluded.name,
                   doc = excluded.doc,
                   active = excluded.active,
                   updated_at = strftime('%Y-%m-%dT%H:%M:%S+00:00', 'now')""",
            (
                merchant.slug,
                merchant.name,
                json.dumps(merchant.to_dict(), ensure_ascii=False),
                int(merchant.active),
            ),
        )
        for entity in merchant.legal_entities:
            conn.execute(
                """INSERT OR REPLACE INTO tax_index (tax_id, merchant_slug, entity_id)
                   VALUES (?, ?, ?)""",
                (entity.tax_id, merchant.slug, entity.id),
            )
        conn.commit()

    def get_tax_index(self, tax_id: str) -> tuple[str, str] | None:
        row = self._get_conn().execute(
            "SELECT merchant_slug, entity_id FROM tax_index WHERE tax_id = ?",
            (tax_id,),
        ).fetchone()
        return (row["merchant_slug"], row["entity_id"]) if row else None

    def set_tax_index(self, tax_id: str, merchant_slug: str, entity_id: str) -> None:
        conn = self._get_conn()
        conn.execute(
            """INSERT INTO tax_index (tax_id, merchant_slug, entity_id)
               VALUES (?, ?, ?)
               ON CONFLICT(tax_id) DO UPDATE SET
                   merchant_slug = excluded.merchant_slug,
                   entity_id = excluded.entity_id,
                   updated_at = strftime('%Y-%m-%dT%H:%M:%S+00:00', 'now')""",
            (tax_id, merchant_slug, entity_id),
        )
        conn.commit()

    def delete_tax_index(self, tax_id: str) -> None:
        conn = self._get_conn()
        conn.execute("DELETE FROM tax_index WHERE tax_id = ?", (tax_id,))
        conn.commit()
