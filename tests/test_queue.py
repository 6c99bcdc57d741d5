"""Tests for the delivery queue and retry coordinator."""

import base64
from datetime import timedelta

import pytest

from asiduo.receipts.config import ReceiptsConfig
from asiduo.receipts.errors import CollaboratorError
from asiduo.receipts.ledger import PurchaseLedger
from asiduo.receipts.messages import GENERIC_FAILURE
from asiduo.receipts.models import WorkStatus
from asiduo.receipts.queue import DeliveryCoordinator, create_coordinator
from asiduo.receipts.whatsapp import LogSender

from conftest import JPEG, NOW, RECEIPT_TEXT, FakeOCR, make_pipeline


class Clock:
    def __init__(self, start=NOW):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def _payload(customer="987654321") -> dict:
    return {
        "customer_ref": customer,
        "customer_name": "Ana",
        "image_b64": base64.b64encode(JPEG).decode(),
    }


def _coordinator(stores, ocr, sender=None, clock=None, **kwargs) -> DeliveryCoordinator:
    clock = clock or Clock()
    pipeline = make_pipeline(stores, ocr, sender=sender, now=clock)
    return DeliveryCoordinator(
        stores.queue,
        pipeline,
        ledger=PurchaseLedger(stores.purchases, stores.customers, stores.merchants),
        now=clock,
        **kwargs,
    )


class TestEnqueue:
    def test_requires_customer_and_image(self, stores):
        coordinator = _coordinator(stores, FakeOCR())
        with pytest.raises(ValueError):
            coordinator.enqueue({"image_b64": "abc"})
        with pytest.raises(ValueError):
            coordinator.enqueue({"customer_ref": "987654321"})

    def test_persists_pending_item(self, stores):
        coordinator = _coordinator(stores, FakeOCR())
        item = coordinator.enqueue(_payload())

        stored = stores.queue.get_item(item.id)
        assert stored.status == WorkStatus.PENDING
        assert stored.attempts == 0
        assert stored.payload["customer_ref"] == "987654321"


class TestSweep:
    @pytest.mark.asyncio
    async def test_completes_item(self, stores, merchant):
        coordinator = _coordinator(stores, FakeOCR(RECEIPT_TEXT))
        item = coordinator.enqueue(_payload())

        report = await coordinator.sweep()

        assert report.claimed == 1
        assert report.completed == 1
        stored = stores.queue.get_item(item.id)
        assert stored.status == WorkStatus.COMPLETED
        assert stored.attempts == 1
        assert stored.result["outcome"] == "credited"

    @pytest.mark.asyncio
    async def test_duplicate_is_completed_and_reported(self, stores, merchant):
        sender = LogSender()
        clock = Clock()
        coordinator = _coordinator(stores, FakeOCR(RECEIPT_TEXT), sender=sender, clock=clock)
        coordinator.enqueue(_payload())
        clock.advance(seconds=1)
        second = coordinator.enqueue(_payload("911111111"))

        report = await coordinator.sweep()

        assert report.completed == 1
        assert report.duplicates == 1
        stored = stores.queue.get_item(second.id)
        assert stored.status == WorkStatus.COMPLETED
        assert stored.result["outcome"] == "duplicate"
        assert sender.sent[-1] == ("+51911111111", "Este comprobante ya ha sido registrado anteriormente.")

    @pytest.mark.asyncio
    async def test_unknown_merchant_fails_with_reply(self, stores):
        sender = LogSender()
        coordinator = _coordinator(stores, FakeOCR(RECEIPT_TEXT), sender=sender)
        item = coordinator.enqueue(_payload())

        report = await coordinator.sweep()

        assert report.failed == 1
        stored = stores.queue.get_item(item.id)
        assert stored.status == WorkStatus.FAILED
        assert stored.result == {"outcome": "UnknownMerchant"}
        assert "20504680623" in sender.sent[0][1]

    @pytest.mark.asyncio
    async def test_transient_errors_back_off_then_dead_letter(self, stores, merchant):
        clock = Clock()
        sender = LogSender()
        ocr = FakeOCR(error=CollaboratorError("OCR no disponible"))
        coordinator = _coordinator(stores, ocr, sender=sender, clock=clock, max_attempts=3)
        item = coordinator.enqueue(_payload())

        report = await coordinator.sweep()
        assert report.retried == 1
        stored = stores.queue.get_item(item.id)
        assert stored.status == WorkStatus.PENDING
        assert stored.next_attempt_at == NOW + timedelta(seconds=60)
        assert stored.last_error == "OCR no disponible"

        # Not due yet
        assert (await coordinator.sweep()).claimed == 0

        clock.advance(seconds=61)
        assert (await coordinator.sweep()).retried == 1
        assert stores.queue.get_item(item.id).attempts == 2
        assert sender.sent == []

        clock.advance(seconds=121)
        report = await coordinator.sweep()

        assert report.dead_lettered == 1
        stored = stores.queue.get_item(item.id)
        assert stored.status == WorkStatus.DEAD_LETTER
        assert stored.attempts == 3
        assert sender.sent == [("+51987654321", GENERIC_FAILURE)]
        assert ocr.calls == 3

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, stores, merchant):
        coordinator = _coordinator(
            stores, FakeOCR(RECEIPT_TEXT, delay=0.5), item_timeout=0.05
        )
        item = coordinator.enqueue(_payload())

        report = await coordinator.sweep()

        assert report.retried == 1
        stored = stores.queue.get_item(item.id)
        assert stored.status == WorkStatus.PENDING
        assert stored.last_error == "TimeoutError"

    @pytest.mark.asyncio
    async def test_batch_size_limits_claims(self, stores, merchant):
        coordinator = _coordinator(stores, FakeOCR(""), batch_size=2)
        for _ in range(3):
            coordinator.enqueue(_payload())

        report = await coordinator.sweep()

        assert report.claimed == 2
        assert len(stores.queue.list_items(WorkStatus.PENDING)) == 1


class TestRequeue:
    @pytest.mark.asyncio
    async def test_requeue_failed_item(self, stores):
        coordinator = _coordinator(stores, FakeOCR(RECEIPT_TEXT))
        item = coordinator.enqueue(_payload())
        await coordinator.sweep()

        requeued = coordinator.requeue(item.id)

        assert requeued.status == WorkStatus.PENDING
        assert requeued.attempts == 0

    def test_requeue_unknown_item(self, stores):
        with pytest.raises(KeyError):
            _coordinator(stores, FakeOCR()).requeue("nope")

    def test_requeue_pending_item_is_rejected(self, stores):
        coordinator = _coordinator(stores, FakeOCR())
        item = coordinator.enqueue(_payload())
        with pytest.raises(ValueError):
            coordinator.requeue(item.id)


def test_recover_stale(stores):
    clock = Clock()
    coordinator = _coordinator(stores, FakeOCR(), clock=clock)
    item = coordinator.enqueue(_payload())
    stores.queue.claim_due(clock(), 10)

    assert coordinator.recover_stale(timedelta(minutes=30)) == 0

    clock.advance(hours=1)
    assert coordinator.recover_stale(timedelta(minutes=30)) == 1
    stored = stores.queue.get_item(item.id)
    assert stored.status == WorkStatus.PENDING
    assert stored.last_error.startswith("recuperado")


def test_backoff_is_exponential_and_capped(stores):
    coordinator = _coordinator(stores, FakeOCR(), backoff_base=60, backoff_max=3600)
    assert [coordinator.backoff(n).total_seconds() for n in (1, 2, 3)] == [60, 120, 240]
    assert coordinator.backoff(10).total_seconds() == 3600


@pytest.mark.asyncio
async def test_create_coordinator_from_config(stores, merchant):
    config = ReceiptsConfig()
    config.whatsapp.enabled = False
    config.queue.batch_size = 1

    coordinator = create_coordinator(config, stores, ocr=FakeOCR(RECEIPT_TEXT))
    coordinator.enqueue(_payload())
    coordinator.enqueue(_payload("911111111"))

    assert (await coordinator.sweep()).claimed == 1
    assert isinstance(coordinator.pipeline.sender, LogSender)
    assert coordinator.drain_outbox() == 0
