"""Tests for the scheduler's job guards and lifecycle."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from pulse.config import Settings
from pulse.daemon import JobFlags, Scheduler
from tests.conftest import make_session, make_session_factory


def _scheduler():
    pipeline = MagicMock()
    pipeline.load = AsyncMock()
    trigger_engine = MagicMock()
    trigger_engine.scan = AsyncMock(return_value=0)
    metrics_engine = MagicMock()
    metrics_engine.analyze_all = AsyncMock(return_value=0)
    watcher = MagicMock()
    watcher.run = AsyncMock()
    watcher.stop = AsyncMock()
    return Scheduler(
        settings=Settings(),
        pipeline=pipeline,
        trigger_engine=trigger_engine,
        metrics_engine=metrics_engine,
        watcher=watcher,
        session_factory=make_session_factory(make_session()),
    )


class TestJobFlags:
    def test_all_clear_by_default(self):
        flags = JobFlags()
        assert not any([flags.files, flags.email, flags.clustering, flags.triggers, flags.metrics])

    def test_watcher_shares_scheduler_flags(self):
        scheduler = Scheduler(
            settings=Settings(),
            pipeline=MagicMock(),
            trigger_engine=MagicMock(),
            metrics_engine=MagicMock(),
            session_factory=make_session_factory(make_session()),
        )
        assert scheduler.watcher.flags is scheduler.flags


class TestRunJob:
    @pytest.mark.asyncio
    async def test_runs_and_clears_flag(self):
        scheduler = _scheduler()
        job = AsyncMock()

        assert await scheduler.run_job("clustering", job) is True
        job.assert_awaited_once()
        assert scheduler.flags.clustering is False

    @pytest.mark.asyncio
    async def test_overlapping_tick_skipped(self):
        scheduler = _scheduler()
        release = asyncio.Event()
        calls = []

        async def slow_job():
            calls.append(1)
            await release.wait()

        first = asyncio.create_task(scheduler.run_job("email", slow_job))
        await asyncio.sleep(0)
        assert scheduler.flags.email is True

        assert await scheduler.run_job("email", slow_job) is False
        release.set()
        assert await first is True
        assert calls == [1]
        assert scheduler.flags.email is False

    @pytest.mark.asyncio
    async def test_error_logged_not_raised(self):
        scheduler = _scheduler()
        job = AsyncMock(side_effect=RuntimeError("boom"))

        assert await scheduler.run_job("metrics", job) is True
        assert scheduler.flags.metrics is False

    @pytest.mark.asyncio
    async def test_other_jobs_not_blocked(self):
        scheduler = _scheduler()
        scheduler.flags.email = True
        job = AsyncMock()

        assert await scheduler.run_job("triggers", job) is True
        job.assert_awaited_once()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_runs_immediate_jobs_and_stop_cleans_up(self):
        scheduler = _scheduler()

        with patch("pulse.daemon.fetch_all_accounts", new_callable=AsyncMock) as fetch, \
                patch("pulse.daemon.run_clustering", new_callable=AsyncMock) as cluster, \
                patch("pulse.daemon.close_db", new_callable=AsyncMock) as close:
            await scheduler.start()
            await asyncio.sleep(0.05)
            await scheduler.stop()

        scheduler.pipeline.load.assert_awaited_once()
        scheduler.trigger_engine.prime.assert_called_once()
        scheduler.watcher.run.assert_awaited_once()
        scheduler.watcher.stop.assert_awaited_once()
        fetch.assert_awaited_once()
        cluster.assert_awaited_once()
        # Trigger scan waits 5s, metrics a full interval
        scheduler.trigger_engine.scan.assert_not_awaited()
        scheduler.metrics_engine.analyze_all.assert_not_awaited()
        close.assert_awaited_once()
        assert scheduler._tasks == []
