"""One receipt, end to end: image → facts → merchant → dedup → ledger → loyalty."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from .archive import ReceiptArchive, create_archive, image_filename
from .db.ports import CustomerStore
from .dedup import DedupGuard
from .errors import DuplicateReceipt, InsufficientReceiptData, InvariantViolation, UnknownMerchant
from .extraction import TextExtractor
from .ledger import PurchaseLedger
from .loyalty import LoyaltyEngine
from .merchants import MerchantResolver
from .messages import format_confirmation
from .models import MerchantRef, ProgramResult, Purchase, ReceiptFacts, utcnow
from .ocr import OCRBackend
from .whatsapp import MessageSender, normalize_phone

if TYPE_CHECKING:
    from .config import ReceiptsConfig
    from .db import Stores

logger = logging.getLogger(__name__)

_MEDIA_PREFIX = "whatsapp:"


@dataclass
class PipelineResult:
    purchase: Purchase
    merchant: MerchantRef
    facts: ReceiptFacts
    programs: list[ProgramResult] = field(default_factory=list)
    purchase_count: int = 1
    message: str = ""
    notified: bool = False
    fanout_errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": "credited",
            "purchase_id": self.purchase.id,
            "merchant_slug": self.merchant.slug,
            "amount": str(self.purchase.amount),
            "purchase_count": self.purchase_count,
            "programs": [p.to_dict() for p in self.programs],
            "notified": self.notified,
            "fanout_errors": self.fanout_errors,
        }


class ReceiptPipeline:
    """Run one receipt through every stage and notify the customer."""

    def __init__(
        self,
        ocr: OCRBackend,
        extractor: TextExtractor,
        resolver: MerchantResolver,
        dedup: DedupGuard,
        ledger: PurchaseLedger,
        loyalty: LoyaltyEngine,
        customers: CustomerStore,
        sender: MessageSender | None = None,
        archive: ReceiptArchive | None = None,
        card_template: str = "https://asiduo.club/{slug}/{phone}",
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self._ocr = ocr
        self._extractor = extractor
        self._resolver = resolver
        self._dedup = dedup
        self._ledger = ledger
        self._loyalty = loyalty
        self._customers = customers
        self._sender = sender
        self._archive = archive
        self._card_template = card_template
        self._now = now

    @property
    def sender(self) -> MessageSender | None:
        return self._sender

    async def load_image(self, payload: dict[str, Any]) -> bytes:
        """Read the image of a work item payload.

        ``image_b64`` is inline base64; ``image_ref`` is either
        ``whatsapp:<media id>`` or a local file path.
        """
        if payload.get("image_b64"):
            try:
                return base64.b64decode(payload["image_b64"], validate=True)
            except (binascii.Error, ValueError) as exc:
                raise InvariantViolation(f"Imagen base64 inválida: {exc}") from exc

        ref = payload.get("image_ref")
        if not ref:
            raise InvariantViolation("El trabajo no contiene imagen")
        if ref.startswith(_MEDIA_PREFIX):
            if self._sender is None:
                raise InvariantViolation(f"No hay cliente de mensajería para descargar {ref}")
            return await self._sender.download_media(ref[len(_MEDIA_PREFIX):])

        path = Path(ref).expanduser()
        if not path.exists():
            raise InvariantViolation(f"Imagen no encontrada: {path}")
        return await asyncio.to_thread(path.read_bytes)

    async def process(
        self, payload: dict[str, Any], work_item_id: str | None = None
    ) -> PipelineResult:
        """Process a work item payload ``{customer_ref, customer_name, image_*}``.

        Raises:
            ReceiptError: A terminal outcome (duplicate, unreadable, unknown merchant).
            CollaboratorError: A transient OCR or messaging failure.
        """
        image = await self.load_image(payload)
        text = await self._ocr.recognize_text(image)
        if not text or not text.strip():
            raise InsufficientReceiptData(["text"])
        return await self.process_text(
            text,
            payload.get("customer_ref", ""),
            customer_name=payload.get("customer_name") or "Cliente",
            work_item_id=work_item_id,
            image=image,
        )

    def _facts_for(self, text: str) -> tuple[ReceiptFacts, MerchantRef]:
        facts = self._extractor.extract(text)
        if not facts.tax_id:
            raise InsufficientReceiptData(facts.missing())

        merchant = self._resolver.resolve(facts.tax_id)
        if merchant is None:
            raise UnknownMerchant(facts.tax_id)

        if merchant.extraction and not self._extractor.has_overrides(merchant.slug):
            self._extractor.register(merchant.slug, merchant.extraction)
        if self._extractor.has_overrides(merchant.slug):
            tax_id = facts.tax_id
            facts = self._extractor.extract(text, merchant.slug)
            facts.tax_id = tax_id

        missing = facts.missing()
        if missing:
            raise InsufficientReceiptData(missing)
        return facts, merchant

    async def process_text(
        self,
        text: str,
        customer_ref: str,
        customer_name: str = "Cliente",
        work_item_id: str | None = None,
        image: bytes | None = None,
    ) -> PipelineResult:
        customer_id = normalize_phone(customer_ref)
        if not customer_id:
            raise InvariantViolation("El trabajo no identifica al cliente")

        facts, merchant = self._facts_for(text)
        now = self._now()
        self._customers.ensure_customer(customer_id, customer_name, now)

        duplicate = self._dedup.check(merchant.slug, customer_id, facts, work_item_id)
        if duplicate is not None:
            raise DuplicateReceipt(duplicate.id)

        purchase = None
        if work_item_id:
            purchase = self._ledger.find_by_work_item(merchant.slug, work_item_id)
            if purchase is not None:
                logger.info("Reanudando la compra %s del trabajo %s", purchase.id, work_item_id)
        if purchase is None:
            purchase = Purchase.from_facts(
                facts, customer_id, merchant, created_at=now, work_item_id=work_item_id
            )

        recorded = self._ledger.record(purchase)
        purchase = recorded.purchase

        if image is not None and self._archive is not None and not purchase.receipt_image_ref:
            await self._store_image(purchase, image)

        programs = self._loyalty.evaluate(merchant.slug, customer_id, purchase)
        summary = self._customers.get_summary(customer_id, merchant.slug)
        count = summary.purchase_count if summary else 1

        message = format_confirmation(
            merchant.name or facts.merchant_name_raw or merchant.slug,
            purchase,
            count,
            programs,
            self._card_template,
        )
        notified = await self.notify(customer_id, message)
        return PipelineResult(
            purchase=purchase,
            merchant=merchant,
            facts=facts,
            programs=programs,
            purchase_count=count,
            message=message,
            notified=notified,
            fanout_errors=recorded.fanout_errors,
        )

    async def _store_image(self, purchase: Purchase, image: bytes) -> None:
        try:
            ref = await self._archive.store(
                image, image_filename(purchase.merchant_slug, purchase.id, image)
            )
            if self._ledger.attach_image(purchase.merchant_slug, purchase.id, ref):
                purchase.receipt_image_ref = ref
        except Exception as exc:
            logger.warning("No se pudo archivar la imagen de %s: %s", purchase.id, exc)

    async def notify(self, recipient: str, body: str) -> bool:
        """Send a message; failures are logged and reported as False."""
        if self._sender is None:
            return False
        try:
            await self._sender.send_message(recipient, body)
        except Exception as exc:
            logger.warning("No se pudo notificar a %s: %s", recipient, exc)
            return False
        return True


def build_pipeline(
    config: ReceiptsConfig,
    stores: Stores,
    ocr: OCRBackend | None = None,
    sender: MessageSender | None = None,
    archive: ReceiptArchive | None = None,
) -> ReceiptPipeline:
    """Wire a pipeline from configuration and open stores."""
    if ocr is None:
        from .ocr import create_backend

        ocr = create_backend(config)
    if sender is None:
        from .whatsapp import create_sender

        sender = create_sender(config)
    if archive is None:
        archive = create_archive(config)

    extractor = TextExtractor(
        mismatch_tolerance=Decimal(str(config.extraction.mismatch_tolerance)),
        name_scan_lines=config.extraction.name_scan_lines,
    )
    for slug, overrides in config.extraction.overrides.items():
        extractor.register(slug, overrides)

    return ReceiptPipeline(
        ocr=ocr,
        extractor=extractor,
        resolver=MerchantResolver(stores.merchants),
        dedup=DedupGuard(stores.purchases, window=timedelta(hours=config.dedup.window_hours)),
        ledger=PurchaseLedger(stores.purchases, stores.customers, stores.merchants),
        loyalty=LoyaltyEngine(stores.loyalty),
        customers=stores.customers,
        sender=sender,
        archive=archive,
        card_template=config.card.url_template,
    )
