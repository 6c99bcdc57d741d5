"""Shared fixtures and helpers: SQLite stores, a sample merchant, a canned OCR."""

import asyncio
from datetime import datetime, timezone

import pytest

from asiduo.receipts.db import open_stores
from asiduo.receipts.dedup import DedupGuard
from asiduo.receipts.extraction import TextExtractor
from asiduo.receipts.ledger import PurchaseLedger
from asiduo.receipts.loyalty import LoyaltyEngine
from asiduo.receipts.merchants import MerchantResolver
from asiduo.receipts.models import LegalEntity, Merchant
from asiduo.receipts.ocr import OCRBackend
from asiduo.receipts.pipeline import ReceiptPipeline
from asiduo.receipts.whatsapp import LogSender

RUC = "20504680623"
NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)

RECEIPT_TEXT = """\
PANADERIA EL TRIGAL S.A.C.
RUC: 20504680623
AV. LARCO 345 MIRAFLORES
BOLETA DE VENTA ELECTRONICA
B011-00524671
FECHA: 15/03/2024
CAJERO: MARIA
1 BAGUETTE FRANCES 2.50 2.50
2 PAN CIABATTA 1.20 2.40
SUB TOTAL 4.15
IGV 0.75
TOTAL A PAGAR S/ 4.90
SON: CUATRO CON 90/100 SOLES
"""


@pytest.fixture
def stores(tmp_path):
    s = open_stores(tmp_path / "test.db")
    yield s
    s.close()


@pytest.fixture
def merchant(stores):
    m = Merchant(
        slug="el-trigal",
        name="Panadería El Trigal",
        legal_entities=[
            LegalEntity(
                id="trigal-sac",
                tax_id=RUC,
                legal_name="PANADERIA EL TRIGAL S.A.C.",
                address="AV. LARCO 345 MIRAFLORES",
            )
        ],
        primary_entity_id="trigal-sac",
    )
    stores.merchants.save_merchant(m)
    return m


JPEG = b"\xff\xd8\xff\xe0fake-jpeg"


class FakeOCR(OCRBackend):
    """Return canned text, or raise the given exception."""

    def __init__(self, text: str = "", error: Exception | None = None, delay: float = 0.0):
        self.text = text
        self.error = error
        self.delay = delay
        self.calls = 0

    async def recognize_text(self, image: bytes) -> str:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.text


def make_pipeline(stores, ocr, sender=None, archive=None, now=lambda: NOW) -> ReceiptPipeline:
    return ReceiptPipeline(
        ocr=ocr,
        extractor=TextExtractor(),
        resolver=MerchantResolver(stores.merchants),
        dedup=DedupGuard(stores.purchases, now=now),
        ledger=PurchaseLedger(stores.purchases, stores.customers, stores.merchants),
        loyalty=LoyaltyEngine(stores.loyalty, now=now),
        customers=stores.customers,
        sender=sender if sender is not None else LogSender(),
        archive=archive,
        now=now,
    )
