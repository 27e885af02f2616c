"""FastAPI REST API for Pulse alerts."""

import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import select

from pulse.alerts.lifecycle import AlertNotFoundError, InvalidTransitionError, transition_alert
from pulse.alerts.metrics import MetricsAlertEngine
from pulse.alerts.store import alert_stats, list_notifications
from pulse.storage.db import get_session
from pulse.storage.models import Alert

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Pulse API",
    description="REST API for Pulse client health alerts",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Pydantic response models ---

class AlertResponse(BaseModel):
    id: UUID
    client_id: str
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    trigger_type: str
    description: str
    severity: str
    status: str
    source: str
    analysis_payload: Optional[dict] = None
    data_snapshot: Optional[str] = None
    detected_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class AlertStatsResponse(BaseModel):
    total_alerts: int = 0
    pending_alerts: int = 0
    critical_alerts: int = 0
    recent_alerts: int = 0


class NotificationResponse(BaseModel):
    id: UUID
    alert_id: UUID
    subject: str
    recipient: Optional[str] = None
    sender: str
    body: str
    status: str
    sent_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class AnalyzeResponse(BaseModel):
    message: str
    alerts_generated: int
    current_stats: AlertStatsResponse


_metrics_engine: Optional[MetricsAlertEngine] = None


def get_metrics_engine() -> MetricsAlertEngine:
    """Shared engine so manual passes honour the in-flight and rate-limit guards."""
    global _metrics_engine
    if _metrics_engine is None:
        _metrics_engine = MetricsAlertEngine()
    return _metrics_engine


# --- Endpoints ---

@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/alerts", response_model=list[AlertResponse])
async def list_alerts(
    status: Optional[str] = Query(None),
    severity: Optional[str] = Query(None),
    limit: int = Query(50, le=200),
):
    """List alerts, newest first, optionally filtered."""
    async with get_session() as session:
        query = select(Alert).order_by(Alert.detected_at.desc())
        if status:
            query = query.where(Alert.status == status)
        if severity:
            query = query.where(Alert.severity == severity)
        result = await session.execute(query.limit(limit))
        return result.scalars().all()


@app.get("/alerts/stats", response_model=AlertStatsResponse)
async def get_alert_stats():
    async with get_session() as session:
        return await alert_stats(session)


@app.post("/alerts/analyze", response_model=AnalyzeResponse)
async def analyze_alerts():
    """Run one metrics-threshold pass now. Skipped passes report 0 alerts."""
    engine = get_metrics_engine()
    async with get_session() as session:
        created = await engine.analyze_all(session)
        stats = await alert_stats(session)
    return AnalyzeResponse(
        message="Alert analysis completed",
        alerts_generated=created,
        current_stats=AlertStatsResponse(**stats),
    )


@app.get("/alerts/{alert_id}", response_model=AlertResponse)
async def get_alert(alert_id: UUID):
    async with get_session() as session:
        alert = await session.get(Alert, alert_id)
        if alert is None:
            raise HTTPException(status_code=404, detail="Alert not found")
        return AlertResponse.model_validate(alert)


@app.get("/email-notifications", response_model=list[NotificationResponse])
async def get_notifications(
    alert_id: Optional[UUID] = Query(None),
    limit: int = Query(50, le=200),
):
    """Logged client notifications, newest first."""
    async with get_session() as session:
        notifications = await list_notifications(session, alert_id, limit)
        return [NotificationResponse.model_validate(n) for n in notifications]


async def _transition(alert_id: UUID, action: str) -> AlertResponse:
    try:
        async with get_session() as session:
            alert = await transition_alert(session, alert_id, action)
            return AlertResponse.model_validate(alert)
    except AlertNotFoundError:
        raise HTTPException(status_code=404, detail="Alert not found")
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))


@app.post("/alerts/{alert_id}/acknowledge", response_model=AlertResponse)
async def acknowledge(alert_id: UUID):
    """Acknowledge an alert and log the client notification."""
    return await _transition(alert_id, "Acknowledged")


@app.post("/alerts/{alert_id}/resolve", response_model=AlertResponse)
async def resolve(alert_id: UUID):
    """Resolve an alert and log the client notification."""
    return await _transition(alert_id, "Resolved")
