"""Alert queries shared by both alert-producing paths."""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.storage.models import Alert, EmailNotification

logger = logging.getLogger(__name__)


def _since(window: timedelta) -> datetime:
    return datetime.now(timezone.utc) - window


async def find_pending_alert(session: AsyncSession, client_id: str, trigger_type: str) -> Optional[Alert]:
    result = await session.execute(
        select(Alert)
        .where(
            Alert.client_id == client_id,
            Alert.trigger_type == trigger_type,
            Alert.status == "Pending",
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


async def recent_alert_exists(
    session: AsyncSession,
    client_id: str,
    trigger_type: str,
    window: timedelta,
) -> bool:
    """True if an alert of this type was raised for the client within ``window``, whatever its status."""
    result = await session.execute(
        select(Alert.id)
        .where(
            Alert.client_id == client_id,
            Alert.trigger_type == trigger_type,
            Alert.detected_at > _since(window),
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def count_recent_alerts(session: AsyncSession, client_id: str, window: timedelta) -> int:
    result = await session.execute(
        select(func.count(Alert.id)).where(
            Alert.client_id == client_id,
            Alert.detected_at > _since(window),
        )
    )
    return result.scalar_one() or 0


async def insert_pending_alert(session: AsyncSession, values: dict) -> Optional[Alert]:
    """Insert a Pending alert unless one already exists for (client_id, trigger_type).

    The partial unique index on Pending alerts makes this safe against a
    concurrent writer; the loser gets None.
    """
    stmt = (
        pg_insert(Alert)
        .values(status="Pending", **values)
        .on_conflict_do_nothing(
            index_elements=[Alert.client_id, Alert.trigger_type],
            index_where=Alert.status == "Pending",
        )
        .returning(Alert)
    )
    result = await session.scalars(stmt)
    return result.one_or_none()


async def alert_stats(session: AsyncSession) -> dict:
    """Counts for monitoring: total, pending, critical, and raised in the last 24h."""
    total = (await session.execute(select(func.count(Alert.id)))).scalar_one()
    pending = (await session.execute(
        select(func.count(Alert.id)).where(Alert.status == "Pending")
    )).scalar_one()
    critical = (await session.execute(
        select(func.count(Alert.id)).where(Alert.severity == "Critical")
    )).scalar_one()
    recent = (await session.execute(
        select(func.count(Alert.id)).where(Alert.detected_at > _since(timedelta(days=1)))
    )).scalar_one()
    return {
        "total_alerts": total or 0,
        "pending_alerts": pending or 0,
        "critical_alerts": critical or 0,
        "recent_alerts": recent or 0,
    }


async def list_notifications(
    session: AsyncSession,
    alert_id: Optional[uuid.UUID] = None,
    limit: int = 50,
) -> list[EmailNotification]:
    """Logged client notifications, newest first."""
    query = select(EmailNotification).order_by(EmailNotification.sent_at.desc())
    if alert_id is not None:
        query = query.where(EmailNotification.alert_id == alert_id)
    result = await session.execute(query.limit(limit))
    return list(result.scalars().all())
