"""Resolve a receipt's tax id (RUC) to an onboarded merchant."""

from __future__ import annotations

import logging

from .db.ports import MerchantStore
from .models import LegalEntity, Merchant, MerchantRef

logger = logging.getLogger(__name__)


def _ref(merchant: Merchant, entity: LegalEntity) -> MerchantRef:
    return MerchantRef(
        slug=merchant.slug,
        entity_id=entity.id,
        name=merchant.name,
        legal_name=entity.legal_name,
        address=entity.address,
        extraction=merchant.extraction,
    )


class MerchantResolver:
    """Index lookup with a bounded scan fallback that repairs the index."""

    def __init__(self, store: MerchantStore, scan_limit: int = 500) -> None:
        self._store = store
        self._scan_limit = scan_limit

    def resolve(self, tax_id: str | None) -> MerchantRef | None:
        """Return the merchant and entity owning ``tax_id``, or None.

        Inactive merchants never resolve.
        """
        if not tax_id:
            return None

        indexed = self._store.get_tax_index(tax_id)
        if indexed is not None:
            slug, entity_id = indexed
            merchant = self._store.get_merchant(slug)
            entity = merchant.entity_for_tax_id(tax_id) if merchant else None
            if merchant is not None and entity is not None and entity.id == entity_id:
                if not merchant.active:
                    logger.info("Negocio inactivo para RUC %s: %s", tax_id, slug)
                    return None
                return _ref(merchant, entity)
            logger.warning("Índice de RUC desactualizado: %s -> %s/%s", tax_id, slug, entity_id)

        for merchant in self._store.list_merchants(limit=self._scan_limit):
            entity = merchant.entity_for_tax_id(tax_id)
            if entity is None:
                continue
            self._store.set_tax_index(tax_id, merchant.slug, entity.id)
            logger.info("Índice de RUC reparado: %s -> %s/%s", tax_id, merchant.slug, entity.id)
            if not merchant.active:
                logger.info("Negocio inactivo para RUC %s: %s", tax_id, merchant.slug)
                return None
            return _ref(merchant, entity)

        logger.info("RUC sin negocio registrado: %s", tax_id)
        return None
