"""Tests for ReceiptScheduler."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from asiduo.receipts.config import load_config
from asiduo.receipts.queue import SweepReport


def _scheduler(config=None, coordinator=None):
    from asiduo.receipts.scheduler import ReceiptScheduler

    return ReceiptScheduler(config or load_config(), coordinator or MagicMock())


def test_scheduler_import_error():
    """ReceiptScheduler raises ImportError if apscheduler is missing."""
    try:
        scheduler = _scheduler()
        assert scheduler is not None
        assert scheduler.running is False
    except ImportError:
        pass


def test_scheduler_setup_jobs():
    """Queue, outbox and recovery jobs are registered."""
    try:
        config = load_config()
        config.queue.sweep_schedule = "*/2 * * * *"
        scheduler = _scheduler(config)
        scheduler.setup_jobs()

        job_ids = {j["id"] for j in scheduler.get_jobs()}
        assert job_ids == {"sweep_queue", "drain_outbox", "recover_stale"}
    except ImportError:
        pytest.skip("apscheduler not installed")


def test_scheduler_rejects_bad_cron():
    try:
        config = load_config()
        config.queue.sweep_schedule = "cada cinco minutos"
        scheduler = _scheduler(config)
    except ImportError:
        pytest.skip("apscheduler not installed")

    with pytest.raises(ValueError, match="cron"):
        scheduler.setup_jobs()


@pytest.mark.asyncio
async def test_jobs_call_coordinator():
    coordinator = MagicMock()
    coordinator.sweep = AsyncMock(return_value=SweepReport(claimed=1, completed=1))
    coordinator.recover_stale.return_value = 2
    try:
        scheduler = _scheduler(coordinator=coordinator)
    except ImportError:
        pytest.skip("apscheduler not installed")

    await scheduler._job_sweep_queue()
    await scheduler._job_drain_outbox()
    await scheduler._job_recover_stale()

    coordinator.sweep.assert_awaited_once()
    coordinator.drain_outbox.assert_called_once()
    coordinator.recover_stale.assert_called_once_with(timedelta(seconds=1800))


@pytest.mark.asyncio
async def test_job_errors_are_logged(caplog):
    coordinator = MagicMock()
    coordinator.sweep = AsyncMock(side_effect=RuntimeError("base de datos bloqueada"))
    try:
        scheduler = _scheduler(coordinator=coordinator)
    except ImportError:
        pytest.skip("apscheduler not installed")

    await scheduler._job_sweep_queue()

    assert "Error en el barrido de la cola" in caplog.text
