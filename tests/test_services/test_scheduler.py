from __future__ import annotations

import pytest

from src.services import scheduler as scheduler_module


@pytest.mark.asyncio
async def test_daily_job_is_registered_once(monkeypatch):
    monkeypatch.setattr(scheduler_module.settings.scheduler, "reconciliation_hour", 2)
    monkeypatch.setattr(scheduler_module.settings.scheduler, "reconciliation_minute", 30)

    scheduler_module.start_scheduler()
    scheduler_module.start_scheduler()
    try:
        jobs = scheduler_module.scheduler.get_jobs()
        assert [job.id for job in jobs] == [scheduler_module.RECONCILIATION_JOB_ID]
        job = jobs[0]
        assert job.max_instances == 1
        assert job.coalesce is True
        assert "hour='2'" in str(job.trigger)
        assert "minute='30'" in str(job.trigger)
    finally:
        scheduler_module.scheduler.remove_all_jobs()
        scheduler_module.shutdown_scheduler()


@pytest.mark.asyncio
async def test_tick_logs_and_survives_failures(monkeypatch, caplog):
    async def boom():
        raise RuntimeError("no database")

    monkeypatch.setattr(scheduler_module, "run_reconciliation", boom)

    await scheduler_module.reconciliation_tick()

    assert "Reconciliation run failed" in caplog.text
