"""Content-hash change tracking for watched files and metric exports."""

import hashlib
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional, Union

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.storage.models import FileProcessing

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def compute_hash(path: PathLike) -> str:
    """SHA-256 of the file's bytes."""
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def ledger_key(path: PathLike) -> str:
    return str(Path(path).resolve())


def file_kind(path: PathLike) -> str:
    return Path(path).suffix.lstrip(".").lower()


class ChangeTracker:
    """In-memory idempotency ledger mapping path -> last seen content hash.

    Owned by whoever schedules the scan and passed to it, so tests can
    inject a fresh ledger.
    """

    def __init__(self) -> None:
        self._ledger: dict[str, str] = {}

    def __contains__(self, path: PathLike) -> bool:
        return ledger_key(path) in self._ledger

    def prime(self, paths: Iterable[PathLike]) -> int:
        """Record the current hash of each existing path without reporting it as changed."""
        primed = 0
        for path in paths:
            try:
                self._ledger[ledger_key(path)] = compute_hash(path)
                primed += 1
                logger.info("Initialized watch for %s", path)
            except OSError:
                logger.info("Could not initialize %s: file not found", path)
        return primed

    def has_changed(self, path: PathLike) -> bool:
        """Return True (and update the ledger) if the content differs from the last recorded hash."""
        key = ledger_key(path)
        try:
            current = compute_hash(path)
        except OSError as e:
            logger.warning("Could not hash %s: %s", path, e)
            return False

        if self._ledger.get(key) == current:
            return False

        self._ledger[key] = current
        return True

    def changed(self, paths: Iterable[PathLike]) -> list[str]:
        """Check every path and return the ones whose content changed."""
        result = []
        for path in paths:
            if self.has_changed(path):
                logger.info("File changed: %s", path)
                result.append(str(path))
        return result

    def forget(self, path: PathLike) -> None:
        self._ledger.pop(ledger_key(path), None)


async def claim_file(session: AsyncSession, path: PathLike) -> Optional[FileProcessing]:
    """Persistent counterpart of ``has_changed`` backed by the file_processing table.

    Returns None when the stored hash matches the file. Otherwise upserts the
    row with status Processing and the new hash and returns it.
    """
    key = ledger_key(path)
    content_hash = compute_hash(path)

    result = await session.execute(
        select(FileProcessing).where(FileProcessing.file_path == key)
    )
    existing = result.scalar_one_or_none()
    if existing is not None and existing.content_hash == content_hash:
        logger.info("File %s already processed with same hash", key)
        return None

    now = datetime.now(timezone.utc)
    stmt = (
        pg_insert(FileProcessing)
        .values(
            file_path=key,
            content_hash=content_hash,
            file_kind=file_kind(path),
            status="Processing",
            records_processed=0,
            processed_at=now,
        )
        .on_conflict_do_update(
            index_elements=[FileProcessing.file_path],
            set_={
                "content_hash": content_hash,
                "status": "Processing",
                "error_message": None,
                "processed_at": now,
            },
        )
        .returning(FileProcessing)
    )
    result = await session.scalars(stmt, execution_options={"populate_existing": True})
    return result.one()


async def mark_completed(session: AsyncSession, record: FileProcessing, records_processed: int) -> None:
    record.status = "Completed"
    record.records_processed = records_processed
    record.error_message = None
    record.processed_at = datetime.now(timezone.utc)
    await session.flush()


async def mark_error(session: AsyncSession, record: FileProcessing, message: str) -> None:
    """Record a failure and clear the hash so the next event retries the file."""
    record.status = "Error"
    record.content_hash = ""
    record.error_message = message
    record.processed_at = datetime.now(timezone.utc)
    await session.flush()
