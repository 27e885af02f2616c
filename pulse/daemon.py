"""Pulse daemon: file watching plus the periodic ingestion, clustering and alert jobs."""

import asyncio
import logging
import signal
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from rich.console import Console

from pulse.alerts.metrics import MetricsAlertEngine
from pulse.alerts.triggers import TriggerEngine
from pulse.config import Settings, get_settings
from pulse.ingestion.mailbox import fetch_all_accounts
from pulse.ingestion.watcher import FileWatchAdapter
from pulse.processing.ai import AIClient
from pulse.processing.clustering import run_clustering
from pulse.processing.sentiment import SentimentPipeline
from pulse.storage.db import close_db, get_session

logger = logging.getLogger(__name__)
console = Console()


@dataclass
class JobFlags:
    """In-flight markers, one per job. A tick whose flag is set is skipped.

    ``files`` is owned by the watcher, which queues settled files behind the
    one in flight instead of dropping them.
    """

    files: bool = False
    email: bool = False
    clustering: bool = False
    triggers: bool = False
    metrics: bool = False


class Scheduler:
    """Owns the watcher, the periodic timers and the shared engines."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        pipeline: Optional[SentimentPipeline] = None,
        trigger_engine: Optional[TriggerEngine] = None,
        metrics_engine: Optional[MetricsAlertEngine] = None,
        watcher: Optional[FileWatchAdapter] = None,
        session_factory: Callable = get_session,
    ):
        self.settings = settings or get_settings()
        ai = AIClient(self.settings.anthropic)
        self.pipeline = pipeline or SentimentPipeline.from_settings(self.settings, ai)
        self.trigger_engine = trigger_engine or TriggerEngine(ai=ai, settings=self.settings)
        self.metrics_engine = metrics_engine or MetricsAlertEngine(ai=ai, settings=self.settings)
        self.session_factory = session_factory
        self.flags = JobFlags()
        self.watcher = watcher or FileWatchAdapter(
            self.trigger_engine, self.pipeline, self.settings, session_factory=session_factory, flags=self.flags
        )
        self._tasks: list[asyncio.Task] = []
        self._running: set[asyncio.Task] = set()

    async def run_job(self, name: str, job: Callable[[], Awaitable[object]]) -> bool:
        """Run ``job`` unless the previous run of ``name`` is still in flight.

        Returns False if skipped. Errors are logged, never raised.
        """
        if getattr(self.flags, name):
            logger.info("%s job still running, skipping this tick", name)
            return False

        setattr(self.flags, name, True)
        start = datetime.now(timezone.utc)
        try:
            await job()
            elapsed = (datetime.now(timezone.utc) - start).total_seconds()
            logger.debug("%s job complete in %.1fs", name, elapsed)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("%s job failed: %s", name, e, exc_info=True)
        finally:
            setattr(self.flags, name, False)
        return True

    async def _every(
        self,
        name: str,
        job: Callable[[], Awaitable[object]],
        interval_seconds: float,
        initial_delay: Optional[float] = 0.0,
    ) -> None:
        """Periodic timer. ``initial_delay=None`` waits a full interval before the first run."""
        delay = interval_seconds if initial_delay is None else initial_delay
        while True:
            await asyncio.sleep(delay)
            task = asyncio.create_task(self.run_job(name, job))
            self._running.add(task)
            task.add_done_callback(self._running.discard)
            delay = interval_seconds

    # --- jobs ---------------------------------------------------------------

    async def email_job(self) -> None:
        await fetch_all_accounts(self.pipeline, self.settings, session_factory=self.session_factory)

    async def clustering_job(self) -> None:
        async with self.session_factory() as session:
            await run_clustering(session, self.settings.clustering)

    async def triggers_job(self) -> None:
        async with self.session_factory() as session:
            created = await self.trigger_engine.scan(session)
        if created:
            logger.info("Trigger scan created %d alerts", created)

    async def metrics_job(self) -> None:
        async with self.session_factory() as session:
            await self.metrics_engine.analyze_all(session)

    async def watch_job(self) -> None:
        await self.watcher.run()

    # --- lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        await self.pipeline.load()
        self.trigger_engine.prime()

        alerts = self.settings.alerts
        self._tasks = [
            asyncio.create_task(self.watch_job()),
            asyncio.create_task(
                self._every("email", self.email_job, self.settings.mailbox.interval_minutes * 60)
            ),
            asyncio.create_task(
                self._every("clustering", self.clustering_job, self.settings.clustering.interval_minutes * 60)
            ),
            asyncio.create_task(
                self._every(
                    "triggers",
                    self.triggers_job,
                    alerts.trigger_interval_minutes * 60,
                    initial_delay=alerts.trigger_initial_delay_seconds,
                )
            ),
            asyncio.create_task(
                self._every("metrics", self.metrics_job, alerts.metrics_interval_minutes * 60, initial_delay=None)
            ),
        ]
        logger.info("Scheduler started with %d background tasks", len(self._tasks))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await self.watcher.stop()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        if self._running:
            logger.info("Waiting for %d in-flight jobs...", len(self._running))
            await asyncio.gather(*list(self._running), return_exceptions=True)

        await close_db()
        logger.info("Scheduler stopped")


async def run_daemon(settings: Optional[Settings] = None) -> None:
    """Run the Pulse daemon until SIGINT/SIGTERM."""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _handle_shutdown(signum, frame):
        logger.info("Shutdown signal received, finishing in-flight work...")
        loop.call_soon_threadsafe(stop_event.set)

    signal.signal(signal.SIGINT, _handle_shutdown)
    signal.signal(signal.SIGTERM, _handle_shutdown)

    scheduler = Scheduler(settings)
    console.print("[bold]Pulse daemon started[/bold]")
    console.print("Press Ctrl+C to stop.\n")

    await scheduler.start()
    try:
        await stop_event.wait()
    finally:
        await scheduler.stop()
    console.print("\n[bold]Pulse daemon stopped.[/bold]")
