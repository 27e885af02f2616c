"""File watch adapter: debounced dispatch of changed files into the pipeline."""

import asyncio
import logging
from pathlib import Path
from typing import Callable, Optional, Union

from watchfiles import Change, awatch

from pulse.alerts.triggers import TriggerEngine
from pulse.config import Settings, WatchSettings, get_settings
from pulse.ingestion.importer import import_file, is_metrics_export
from pulse.ingestion.tracker import claim_file, mark_completed, mark_error
from pulse.processing.sentiment import SentimentPipeline
from pulse.storage.db import get_session

logger = logging.getLogger(__name__)

RESTART_BACKOFF_SECONDS = 5.0


def is_watched(path: Union[str, Path], extensions) -> bool:
    """Extension filter plus hidden-component exclusion (``.git``, ``.~lock`` files, ...)."""
    p = Path(path)
    if any(part.startswith(".") for part in p.parts if part not in (".", "..")):
        return False
    return p.suffix.lower() in {e.lower() for e in extensions}


class FileWatchAdapter:
    """Watches the configured directories and hands settled files to the pipeline.

    Each event (re)starts a per-path timer; the file is processed once it has
    been quiet for ``debounce_seconds``. Settled files are processed one at a
    time, and ``flags.files`` is set while one is in flight.
    """

    def __init__(
        self,
        trigger_engine: TriggerEngine,
        pipeline: SentimentPipeline,
        settings: Optional[Settings] = None,
        session_factory: Callable = get_session,
        flags=None,
    ):
        settings = settings or get_settings()
        self.settings: WatchSettings = settings.watch
        self.trigger_engine = trigger_engine
        self.pipeline = pipeline
        self.session_factory = session_factory
        self.flags = flags
        self._pending: dict[str, asyncio.Task] = {}
        self._dispatching: set[asyncio.Task] = set()
        self._dispatch_lock = asyncio.Lock()
        self._stop = asyncio.Event()

    def watched_directories(self) -> list[Path]:
        dirs = []
        for directory in self.settings.directories:
            if directory.is_dir():
                dirs.append(directory)
            else:
                logger.warning("Watch directory %s does not exist, skipping", directory)
        return dirs

    def _filter(self, change: Change, path: str) -> bool:
        return change in (Change.added, Change.modified) and is_watched(path, self.settings.extensions)

    def schedule(self, path: Union[str, Path]) -> None:
        """Restart the debounce timer for ``path``."""
        key = str(path)
        existing = self._pending.get(key)
        if existing is not None and not existing.done():
            existing.cancel()
        self._pending[key] = asyncio.create_task(self._debounced(key))

    async def _debounced(self, path: str) -> None:
        try:
            await asyncio.sleep(self.settings.debounce_seconds)
        except asyncio.CancelledError:
            return
        # Drop the timer before processing so a new event can schedule a fresh one
        task = asyncio.current_task()
        if self._pending.get(path) is task:
            del self._pending[path]
        self._dispatching.add(task)
        try:
            await self._dispatch(path)
        finally:
            self._dispatching.discard(task)

    async def _dispatch(self, path: str) -> None:
        async with self._dispatch_lock:
            if self._stop.is_set():
                logger.info("Watcher stopping, not processing %s", path)
                return
            self._set_busy(True)
            try:
                await self.process_file(path)
            except Exception as e:
                logger.error("Error processing file %s: %s", path, e)
            finally:
                self._set_busy(False)

    def _set_busy(self, busy: bool) -> None:
        if self.flags is not None:
            self.flags.files = busy

    async def process_file(self, path: Union[str, Path]) -> int:
        """Run a settled file through trigger detection, import and sentiment.

        Returns the number of imported rows.
        """
        path = str(path)
        logger.info("Processing file: %s", path)

        if is_metrics_export(path):
            async with self.session_factory() as session:
                await self.trigger_engine.process_path(session, path)

        async with self.session_factory() as session:
            record = await claim_file(session, path)
            if record is None:
                return 0
            try:
                async with session.begin_nested():
                    count = await import_file(session, path)
            except Exception as e:
                logger.error("Error importing %s: %s", path, e)
                await mark_error(session, record, str(e))
                return 0
            await mark_completed(session, record, count)

        if count:
            async with self.session_factory() as session:
                summary = await self.pipeline.process_pending(session)
            logger.info(
                "Sentiment after %s: %d conversations, %d emails, %d failed",
                Path(path).name,
                summary["conversations"],
                summary["emails"],
                summary["failed"],
            )
        return count

    async def run(self) -> None:
        """Watch until ``stop()`` is called, restarting the watcher after errors."""
        self._stop.clear()
        while not self._stop.is_set():
            dirs = self.watched_directories()
            if not dirs:
                logger.warning("No watch directories available")
                await self._wait_backoff()
                continue

            logger.info("Watching %s", ", ".join(str(d) for d in dirs))
            try:
                async for changes in awatch(
                    *dirs,
                    watch_filter=self._filter,
                    stop_event=self._stop,
                    recursive=True,
                ):
                    for _change, path in changes:
                        self.schedule(path)
            except Exception as e:
                logger.error("File watcher error: %s", e)
                await self._wait_backoff()

    async def _wait_backoff(self) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=RESTART_BACKOFF_SECONDS)
        except asyncio.TimeoutError:
            pass

    async def stop(self) -> None:
        self._stop.set()
        pending = list(self._pending.values())
        self._pending.clear()
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        # Let the file in flight finish; queued ones see the stop flag and return
        if self._dispatching:
            await asyncio.gather(*list(self._dispatching), return_exceptions=True)
        logger.info("File watcher stopped")
