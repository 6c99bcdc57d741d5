"""Scheduled sweeps of the receipt queue and the ledger outbox."""

from __future__ import annotations

import logging
from datetime import timedelta

logger = logging.getLogger(__name__)


class ReceiptScheduler:
    """Runs the periodic jobs that keep the queue moving.

    Uses APScheduler cron triggers. Job bodies log their own errors.
    """

    def __init__(self, config, coordinator) -> None:
        """Initialize scheduler.

        Args:
            config: ReceiptsConfig instance.
            coordinator: DeliveryCoordinator that owns the queue.

        Raises:
            ImportError: If apscheduler is not installed.
        """
        try:
            from apscheduler.schedulers.asyncio import AsyncIOScheduler
            from apscheduler.triggers.cron import CronTrigger
        except ImportError:
            raise ImportError(
                "Se requiere apscheduler: pip install apscheduler"
            )

        self._config = config
        self._coordinator = coordinator
        self._scheduler = AsyncIOScheduler()
        self._CronTrigger = CronTrigger
        self._running = False

    def setup_jobs(self) -> None:
        """Register the sweep, outbox and recovery jobs from ``config.queue``."""
        q = self._config.queue
        for func, job_id, name, schedule in (
            (self._job_sweep_queue, "sweep_queue", "Procesar comprobantes en cola", q.sweep_schedule),
            (self._job_drain_outbox, "drain_outbox", "Reintentar distribución de compras", q.outbox_schedule),
            (self._job_recover_stale, "recover_stale", "Recuperar trabajos abandonados", q.recovery_schedule),
        ):
            self._scheduler.add_job(
                func,
                trigger=self._parse_cron(schedule),
                id=job_id,
                name=name,
                replace_existing=True,
            )
            logger.info("Tarea programada %s: %s", job_id, schedule)

    def start(self) -> None:
        """Register the queue jobs and start ticking."""
        self.setup_jobs()
        self._scheduler.start()
        self._running = True
        logger.info("Planificador iniciado")

    def stop(self) -> None:
        """Shut down without waiting for running jobs."""
        if self._running:
            self._scheduler.shutdown(wait=False)
            self._running = False
            logger.info("Planificador detenido")

    @property
    def running(self) -> bool:
        return self._running

    def get_jobs(self) -> list[dict]:
        """Return id, name and next run time of each registered job."""
        jobs = []
        for job in self._scheduler.get_jobs():
            jobs.append({
                "id": job.id,
                "name": job.name,
                "next_run": str(job.next_run_time) if getattr(job, "next_run_time", None) else None,
            })
        return jobs

    def _parse_cron(self, expr: str):
        """Parse a cron expression into a CronTrigger."""
        parts = expr.split()
        if len(parts) == 5:
            return self._CronTrigger(
                minute=parts[0],
                hour=parts[1],
                day=parts[2],
                month=parts[3],
                day_of_week=parts[4],
            )
        raise ValueError(f"Expresión cron inválida: {expr}")

    async def _job_sweep_queue(self) -> None:
        try:
            report = await self._coordinator.sweep()
            if report.claimed:
                logger.info("Barrido de cola: %s", report.to_dict())
        except Exception:
            logger.exception("Error en el barrido de la cola")

    async def _job_drain_outbox(self) -> None:
        try:
            self._coordinator.drain_outbox()
        except Exception:
            logger.exception("Error al reintentar la distribución de compras")

    async def _job_recover_stale(self) -> None:
        try:
            count = self._coordinator.recover_stale(
                timedelta(seconds=self._config.queue.stale_after)
            )
            if count:
                logger.warning("Trabajos recuperados: %d", count)
        except Exception:
            logger.exception("Error al recuperar trabajos abandonados")
