"""Delivery queue and retry coordinator for inbound receipts.

Each work item is processed as one unit: a terminal outcome (credited,
duplicate, unreadable, unknown merchant) closes it, while transient failures
send it back to ``pending`` with exponential backoff until ``max_attempts``,
after which it is dead-lettered.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable

from .db.ports import QueueStore
from .errors import DuplicateReceipt, ReceiptError
from .ledger import PurchaseLedger
from .messages import GENERIC_FAILURE
from .models import WorkItem, WorkStatus, utcnow
from .pipeline import ReceiptPipeline, build_pipeline

if TYPE_CHECKING:
    from .config import ReceiptsConfig
    from .db import Stores

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    claimed: int = 0
    completed: int = 0
    duplicates: int = 0
    failed: int = 0
    retried: int = 0
    dead_lettered: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class DeliveryCoordinator:
    """Claim due work items and run the receipt pipeline on each."""

    def __init__(
        self,
        store: QueueStore,
        pipeline: ReceiptPipeline,
        ledger: PurchaseLedger | None = None,
        batch_size: int = 5,
        item_timeout: float = 540.0,
        max_attempts: int = 3,
        backoff_base: float = 60.0,
        backoff_max: float = 3600.0,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._pipeline = pipeline
        self._ledger = ledger
        self._batch_size = batch_size
        self._item_timeout = item_timeout
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._now = now

    @property
    def pipeline(self) -> ReceiptPipeline:
        return self._pipeline

    def enqueue(self, payload: dict[str, Any]) -> WorkItem:
        """Persist a new work item.

        Args:
            payload: ``{customer_ref, customer_name?, image_ref | image_b64}``.

        Raises:
            ValueError: The payload has no customer or no image.
        """
        if not payload.get("customer_ref"):
            raise ValueError("customer_ref es obligatorio")
        if not (payload.get("image_ref") or payload.get("image_b64")):
            raise ValueError("Se requiere image_ref o image_b64")

        item = WorkItem(id=uuid.uuid4().hex, payload=dict(payload), created_at=self._now())
        self._store.insert_item(item)
        logger.info("Comprobante encolado: %s (%s)", item.id, payload["customer_ref"])
        return item

    def backoff(self, attempts: int) -> timedelta:
        seconds = self._backoff_base * 2 ** max(attempts - 1, 0)
        return timedelta(seconds=min(seconds, self._backoff_max))

    async def sweep(self) -> SweepReport:
        """Process up to ``batch_size`` due items, one at a time."""
        report = SweepReport()
        items = self._store.claim_due(self._now(), self._batch_size)
        report.claimed = len(items)
        if items:
            logger.info("Procesando %d comprobantes en cola", len(items))
        for item in items:
            await self.process_item(item, report)
        return report

    async def process_item(self, item: WorkItem, report: SweepReport | None = None) -> WorkStatus:
        """Run the pipeline for one claimed item and record the outcome."""
        report = report or SweepReport()
        try:
            result = await asyncio.wait_for(
                self._pipeline.process(item.payload, work_item_id=item.id),
                timeout=self._item_timeout,
            )
        except DuplicateReceipt as exc:
            logger.info("Trabajo %s: comprobante duplicado (%s)", item.id, exc.purchase_id)
            self._store.update_item(
                item.id,
                WorkStatus.COMPLETED,
                result={"outcome": "duplicate", "purchase_id": exc.purchase_id},
            )
            report.duplicates += 1
            await self._pipeline.notify(item.customer_ref, exc.user_message)
            return WorkStatus.COMPLETED
        except ReceiptError as exc:
            logger.warning("Trabajo %s falló: %s", item.id, exc)
            self._store.update_item(
                item.id,
                WorkStatus.FAILED,
                last_error=str(exc),
                result={"outcome": type(exc).__name__},
            )
            report.failed += 1
            await self._pipeline.notify(item.customer_ref, exc.user_message)
            return WorkStatus.FAILED
        except Exception as exc:
            return await self._retry_or_dead_letter(item, exc, report)

        self._store.update_item(item.id, WorkStatus.COMPLETED, result=result.to_dict())
        report.completed += 1
        logger.info("Trabajo %s completado: compra %s", item.id, result.purchase.id)
        return WorkStatus.COMPLETED

    async def _retry_or_dead_letter(
        self, item: WorkItem, exc: Exception, report: SweepReport
    ) -> WorkStatus:
        error = str(exc) or type(exc).__name__
        if item.attempts >= self._max_attempts:
            logger.error(
                "Trabajo %s enviado a dead letter tras %d intentos: %s",
                item.id,
                item.attempts,
                error,
            )
            self._store.update_item(item.id, WorkStatus.DEAD_LETTER, last_error=error)
            report.dead_lettered += 1
            await self._pipeline.notify(item.customer_ref, GENERIC_FAILURE)
            return WorkStatus.DEAD_LETTER

        delay = self.backoff(item.attempts)
        logger.warning(
            "Trabajo %s falló (intento %d/%d), reintento en %s: %s",
            item.id,
            item.attempts,
            self._max_attempts,
            delay,
            error,
        )
        self._store.update_item(
            item.id,
            WorkStatus.PENDING,
            last_error=error,
            next_attempt_at=self._now() + delay,
        )
        report.retried += 1
        return WorkStatus.PENDING

    def requeue(self, item_id: str) -> WorkItem:
        """Move a failed or dead-lettered item back to pending.

        Raises:
            KeyError: Unknown item.
            ValueError: The item is not in a terminal failure state.
        """
        item = self._store.get_item(item_id)
        if item is None:
            raise KeyError(item_id)
        if item.status not in (WorkStatus.FAILED, WorkStatus.DEAD_LETTER):
            raise ValueError(f"Solo se reencolan trabajos fallidos (estado: {item.status.value})")
        self._store.update_item(
            item_id, WorkStatus.PENDING, last_error=item.last_error, attempts=0
        )
        logger.info("Trabajo %s reencolado", item_id)
        return self._store.get_item(item_id)

    def recover_stale(self, older_than: timedelta) -> int:
        """Return items abandoned in ``processing`` to ``pending``."""
        items = self._store.stale_items(self._now() - older_than)
        for item in items:
            self._store.update_item(
                item.id,
                WorkStatus.PENDING,
                last_error="recuperado: quedó en proceso sin terminar",
            )
            logger.warning("Trabajo %s recuperado tras quedar en proceso", item.id)
        return len(items)

    def drain_outbox(self, limit: int = 100) -> int:
        if self._ledger is None:
            return 0
        return self._ledger.drain_outbox(limit)


def create_coordinator(config: ReceiptsConfig, stores: Stores, **pipeline_kwargs) -> DeliveryCoordinator:
    """Wire a coordinator (and its pipeline) from configuration."""
    pipeline = build_pipeline(config, stores, **pipeline_kwargs)
    q = config.queue
    return DeliveryCoordinator(
        store=stores.queue,
        pipeline=pipeline,
        ledger=PurchaseLedger(stores.purchases, stores.customers, stores.merchants),
        batch_size=q.batch_size,
        item_timeout=q.item_timeout,
        max_attempts=q.max_attempts,
        backoff_base=q.backoff_base,
        backoff_max=q.backoff_max,
    )
