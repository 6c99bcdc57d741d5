"""Tests for RUC → merchant resolution."""

import logging

from asiduo.receipts.merchants import MerchantResolver
from asiduo.receipts.models import LegalEntity, Merchant

from conftest import RUC


def test_resolve_through_index(stores, merchant):
    ref = MerchantResolver(stores.merchants).resolve(RUC)
    assert ref.slug == "el-trigal"
    assert ref.entity_id == "trigal-sac"
    assert ref.name == "Panadería El Trigal"
    assert ref.legal_name == "PANADERIA EL TRIGAL S.A.C."


def test_unknown_tax_id(stores, merchant):
    assert MerchantResolver(stores.merchants).resolve("20999999999") is None


def test_empty_tax_id(stores):
    assert MerchantResolver(stores.merchants).resolve(None) is None
    assert MerchantResolver(stores.merchants).resolve("") is None


def test_scan_repairs_missing_index(stores, merchant):
    stores.merchants.delete_tax_index(RUC)
    assert stores.merchants.get_tax_index(RUC) is None

    ref = MerchantResolver(stores.merchants).resolve(RUC)

    assert ref.slug == "el-trigal"
    assert stores.merchants.get_tax_index(RUC) == ("el-trigal", "trigal-sac")


def test_stale_index_is_repaired(stores, merchant, caplog):
    stores.merchants.set_tax_index(RUC, "otro", "otro-sac")

    with caplog.at_level(logging.WARNING, logger="asiduo.receipts.merchants"):
        ref = MerchantResolver(stores.merchants).resolve(RUC)

    assert ref.slug == "el-trigal"
    assert stores.merchants.get_tax_index(RUC) == ("el-trigal", "trigal-sac")
    assert "desactualizado" in caplog.text


def test_inactive_merchant_does_not_resolve(stores):
    stores.merchants.save_merchant(
        Merchant(
            slug="cerrado",
            name="Cerrado",
            legal_entities=[LegalEntity(id="c1", tax_id="10456789012")],
            active=False,
        )
    )
    assert MerchantResolver(stores.merchants).resolve("10456789012") is None


def test_multiple_entities(stores):
    stores.merchants.save_merchant(
        Merchant(
            slug="cadena",
            legal_entities=[
                LegalEntity(id="norte", tax_id="20111111111"),
                LegalEntity(id="sur", tax_id="20222222222"),
            ],
        )
    )
    resolver = MerchantResolver(stores.merchants)
    assert resolver.resolve("20111111111").entity_id == "norte"
    assert resolver.resolve("20222222222").entity_id == "sur"
