"""Tests for the nightly sync schedule and its job body."""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from lmssync.errors import SyncConflictError
from lmssync.scheduler.jobs import build_scheduler, _nightly_sync


def _nightly_job(scheduler):
    return scheduler.get_job("nightly_sync")


class TestBuildScheduler:
    def test_single_cron_job_not_started(self):
        scheduler = build_scheduler(MagicMock())

        assert isinstance(scheduler, AsyncIOScheduler)
        assert not scheduler.running
        assert [job.id for job in scheduler.get_jobs()] == ["nightly_sync"]
        assert _nightly_job(scheduler).trigger.__class__.__name__ == "CronTrigger"

    def test_job_receives_orchestrator(self):
        orchestrator = MagicMock()
        scheduler = build_scheduler(orchestrator)
        assert _nightly_job(scheduler).kwargs == {"orchestrator": orchestrator}

    def test_runs_on_the_hour_from_settings(self):
        with patch("lmssync.scheduler.jobs.get_settings") as mock_settings:
            mock_settings.return_value.sync_hour = 4
            scheduler = build_scheduler(MagicMock())

        fields = {f.name: str(f) for f in _nightly_job(scheduler).trigger.fields}
        assert (fields["hour"], fields["minute"]) == ("4", "0")


# ─── Job body ─────────────────────────────────────────────────────────────────

class TestNightlySyncJob:
    @pytest.mark.asyncio
    async def test_runs_incremental_chain(self):
        orchestrator = MagicMock()
        orchestrator.run_chain = AsyncMock(return_value=[
            {"entityType": "users", "status": "completed", "processed": 3, "failed": 0},
        ])

        await _nightly_sync(orchestrator)

        orchestrator.run_chain.assert_awaited_once_with(mode="incremental")

    @pytest.mark.asyncio
    async def test_conflict_is_logged_not_raised(self, caplog):
        orchestrator = MagicMock()
        orchestrator.run_chain = AsyncMock(side_effect=SyncConflictError({"type": "users"}))

        await _nightly_sync(orchestrator)  # must not raise

        assert "already running" in caplog.text

    @pytest.mark.asyncio
    async def test_unexpected_error_is_swallowed(self):
        orchestrator = MagicMock()
        orchestrator.run_chain = AsyncMock(side_effect=RuntimeError("db down"))

        await _nightly_sync(orchestrator)  # must not raise
