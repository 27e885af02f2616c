"""Alert state machine and the notification audit trail."""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from pulse.config import get_settings
from pulse.storage.models import Alert, EmailNotification

logger = logging.getLogger(__name__)

# Allowed transitions. Nothing leaves Resolved.
TRANSITIONS: dict[str, frozenset[str]] = {
    "Pending": frozenset({"Acknowledged", "Resolved"}),
    "Acknowledged": frozenset({"Resolved"}),
    "Resolved": frozenset(),
}


class AlertNotFoundError(LookupError):
    pass


class InvalidTransitionError(ValueError):
    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move alert from {current} to {target}")
        self.current = current
        self.target = target


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def build_notification(alert: Alert, action: str, sender: str) -> EmailNotification:
    """Compose the client-facing email logged for a status change."""
    client_name = alert.client_name or alert.client_id
    subject = f"{action}: {alert.description} - {client_name}"
    body = (
        f"Dear {client_name},\n\n"
        f"We wanted to follow up on the recent alert regarding {alert.description}.\n\n"
        f"Our team has {action.lower()} this issue and we're committed to ensuring your "
        "continued satisfaction with our services.\n\n"
        "If you have any questions or concerns, please don't hesitate to reach out to us.\n\n"
        "Best regards,\nCSD Team"
    )
    return EmailNotification(
        alert_id=alert.id,
        subject=subject,
        recipient=alert.client_email,
        sender=sender,
        body=body,
        status="Logged",
    )


async def transition_alert(
    session: AsyncSession,
    alert_id: Union[uuid.UUID, str],
    action: str,
    sender: Optional[str] = None,
) -> Alert:
    """Move an alert to ``action`` and append one notification record.

    Raises AlertNotFoundError or InvalidTransitionError.
    """
    if isinstance(alert_id, str):
        alert_id = uuid.UUID(alert_id)

    alert = await session.get(Alert, alert_id)
    if alert is None:
        raise AlertNotFoundError(f"Alert not found: {alert_id}")

    if not can_transition(alert.status, action):
        raise InvalidTransitionError(alert.status, action)

    alert.status = action
    if action == "Resolved":
        alert.resolved_at = datetime.now(timezone.utc)

    sender = sender or get_settings().alerts.notification_sender
    notification = build_notification(alert, action, sender)
    session.add(notification)
    await session.flush()

    # No live transport: the notification row is the dispatch record
    logger.info(
        "Alert %s %s for %s; notification logged to %s",
        alert.id,
        action.lower(),
        alert.client_id,
        alert.client_email or "(no recipient)",
    )
    return alert
