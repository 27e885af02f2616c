"""Threshold-driven alerting over stored client metrics."""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictBool, ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.alerts.store import (
    count_recent_alerts,
    find_pending_alert,
    insert_pending_alert,
    recent_alert_exists,
)
from pulse.config import AlertSettings, Settings, get_settings
from pulse.processing.ai import AIClient, AIResponseError, AIUnavailableError
from pulse.storage.models import Client, ClientMetrics

logger = logging.getLogger(__name__)

METRICS_PROMPT_VERSION = "v1.0"

METRICS_SYSTEM = (
    "You are an expert Customer Success AI that identifies critical client risk patterns requiring "
    "immediate attention. You are conservative and only generate alerts for genuine business-critical "
    "concerns. Respond with valid JSON only."
)

METRICS_PROMPT = """Analyze this client's data to identify concerning patterns that require immediate attention. Focus on business-critical issues that could lead to churn, relationship deterioration, or revenue loss.

CLIENT PROFILE:
- Client ID: {client_id}
- Primary Contact: {primary_contact}
- Region: {region}
- Industry: {industry}
- Contract Status: {contract_status}
- Annual Spend: ${annual_spend:,}
- Health Score: {health_score}/10
- Risk Flag: {risk_flag}

PERFORMANCE METRICS:
- Average Response Time: {avg_response_days} days
- Average Delivery Time: {avg_delivery_days} days
- Escalations: {escalations}
- Delivered Items: {delivered}
- Backlog Items: {backlog}
- Support Score: {support_score}/100

ALERT CRITERIA (generate alerts ONLY for these):
1. LOW_SUPPORT_SCORE: support score < 70
2. HIGH_ESCALATIONS: escalations > 3
3. POOR_PERFORMANCE: backlog > 15 AND delivered < 5 AND response time > 5 days
4. HIGH_RISK_CLIENT: high annual spend + low health score + high risk flag
5. DELIVERY_ISSUES: delivery time > 10 days with a growing backlog

SEVERITY LEVELS:
- Critical: immediate churn risk, major revenue at stake
- High: significant relationship risk, action within 24-48 hours
- Medium: concerning pattern, action within 1 week
- Low: minor concern, monitor

Respond with a JSON object:
{{
  "shouldAlert": boolean,
  "triggerType": "LOW_SUPPORT_SCORE|HIGH_ESCALATIONS|POOR_PERFORMANCE|HIGH_RISK_CLIENT|DELIVERY_ISSUES",
  "severity": "Low|Medium|High|Critical",
  "description": "Brief description of the concerning pattern",
  "analysis": "Detailed analysis of the issue and its business impact",
  "businessImpact": "Specific business risks and potential revenue impact",
  "recommendedActions": ["Action 1", "Action 2"]
}}

Only set shouldAlert to true for genuinely concerning patterns. If several criteria match, report the most severe one."""

TRIGGER_TYPES = (
    "LOW_SUPPORT_SCORE",
    "HIGH_ESCALATIONS",
    "POOR_PERFORMANCE",
    "HIGH_RISK_CLIENT",
    "DELIVERY_ISSUES",
)

SNAPSHOT_HEADERS = (
    "Client ID",
    "Primary Contact",
    "Health Score",
    "Risk Flag",
    "Annual Spend",
    "Avg Response Days",
    "Avg Delivery Days",
    "Escalations",
    "Delivered",
    "Backlog",
    "Support Score",
    "Snapshot Date",
)


class AlertVerdict(BaseModel):
    """Strict verdict contract. ``shouldAlert`` must be a real boolean."""

    model_config = ConfigDict(populate_by_name=True)

    should_alert: StrictBool = Field(alias="shouldAlert")
    trigger_type: str = Field(default="UNKNOWN", alias="triggerType")
    severity: Literal["Low", "Medium", "High", "Critical"] = "Low"
    description: str = ""
    analysis: str = ""
    business_impact: str = Field(default="", alias="businessImpact")
    recommended_actions: list[str] = Field(default_factory=list, alias="recommendedActions")


NO_ALERT = AlertVerdict(should_alert=False, description="Analysis failed")


@dataclass
class ClientSnapshot:
    client: Client
    metrics: Optional[ClientMetrics]


def build_prompt(snapshot: ClientSnapshot) -> str:
    c, m = snapshot.client, snapshot.metrics
    return METRICS_PROMPT.format(
        client_id=c.client_id,
        primary_contact=c.primary_contact,
        region=c.region,
        industry=c.industry,
        contract_status=c.contract_status,
        annual_spend=c.annual_spend_usd or 0,
        health_score=c.health_score,
        risk_flag=c.risk_flag,
        avg_response_days=m.avg_response_days,
        avg_delivery_days=m.avg_delivery_days,
        escalations=m.escalations,
        delivered=m.delivered,
        backlog=m.backlog,
        support_score=m.support_score,
    )


def metrics_snapshot(snapshot: ClientSnapshot, taken_at: Optional[datetime] = None) -> str:
    """CSV header line plus one value line, kept on the alert for reference."""
    c, m = snapshot.client, snapshot.metrics
    if m is None:
        return ""
    taken_at = taken_at or datetime.now(timezone.utc)
    values = (
        c.client_id,
        c.primary_contact,
        c.health_score,
        c.risk_flag,
        c.annual_spend_usd,
        m.avg_response_days,
        m.avg_delivery_days,
        m.escalations,
        m.delivered,
        m.backlog,
        m.support_score,
        taken_at.isoformat(),
    )
    return ",".join(SNAPSHOT_HEADERS) + "\n" + ",".join(str(v) for v in values)


class MetricsAlertEngine:
    """Runs the per-client AI verdict over stored metrics.

    Overlapping passes are skipped, and a new pass never starts within
    ``metrics_min_interval_seconds`` of the previous one.
    """

    def __init__(self, ai: Optional[AIClient] = None, settings: Optional[Settings] = None, clock=time.monotonic):
        settings = settings or get_settings()
        self.ai = ai or AIClient(settings.anthropic)
        self.settings: AlertSettings = settings.alerts
        self._clock = clock
        self._analyzing = False
        self._last_started: Optional[float] = None

    @property
    def spam_window(self) -> timedelta:
        return timedelta(minutes=self.settings.spam_window_minutes)

    @property
    def dedup_window(self) -> timedelta:
        return timedelta(minutes=self.settings.dedup_window_minutes)

    async def analyze_all(self, session: AsyncSession) -> int:
        """One full pass over all clients. Returns the number of alerts created."""
        if self._analyzing:
            logger.info("Metrics analysis already in progress, skipping")
            return 0

        now = self._clock()
        if self._last_started is not None and now - self._last_started < self.settings.metrics_min_interval_seconds:
            logger.info("Metrics analysis rate limited, skipping")
            return 0

        self._analyzing = True
        self._last_started = now
        try:
            snapshots = await self.load_snapshots(session)
            logger.info("Analyzing metrics for %d clients", len(snapshots))

            created = 0
            for snapshot in snapshots:
                try:
                    async with session.begin_nested():
                        if await self.analyze_client(session, snapshot):
                            created += 1
                except Exception as e:
                    logger.error("Error analyzing client %s: %s", snapshot.client.client_id, e)

            logger.info("Metrics analysis complete. Generated %d new alerts", created)
            return created
        finally:
            self._analyzing = False

    async def load_snapshots(self, session: AsyncSession) -> list[ClientSnapshot]:
        result = await session.execute(
            select(Client, ClientMetrics)
            .outerjoin(ClientMetrics, ClientMetrics.client_id == Client.client_id)
            .order_by(Client.client_id)
        )
        return [ClientSnapshot(client=client, metrics=metrics) for client, metrics in result.all()]

    async def analyze_client(self, session: AsyncSession, snapshot: ClientSnapshot) -> bool:
        client_id = snapshot.client.client_id
        if snapshot.metrics is None:
            logger.debug("No metrics for client %s, skipping", client_id)
            return False

        recent = await count_recent_alerts(session, client_id, self.spam_window)
        if recent >= self.settings.spam_max_alerts:
            logger.info("Client %s has %d recent alerts, rate limiting applied", client_id, recent)
            return False

        verdict = await self.get_verdict(session, snapshot)
        if not verdict.should_alert:
            return False

        if await self.is_duplicate(session, client_id, verdict.trigger_type):
            logger.info("Duplicate alert prevented for client %s, trigger: %s", client_id, verdict.trigger_type)
            return False

        alert = await insert_pending_alert(
            session,
            {
                "client_id": client_id,
                "client_name": snapshot.client.primary_contact,
                "client_email": snapshot.client.client_email,
                "trigger_type": verdict.trigger_type,
                "description": verdict.description,
                "severity": verdict.severity,
                "source": "metrics",
                "analysis_payload": {
                    "analysis": verdict.analysis,
                    "businessImpact": verdict.business_impact,
                    "recommendedActions": verdict.recommended_actions,
                    "generatedAt": datetime.now(timezone.utc).isoformat(),
                    "clientHealthScore": snapshot.client.health_score,
                    "riskFlag": snapshot.client.risk_flag,
                    "annualSpend": snapshot.client.annual_spend_usd,
                },
                "data_snapshot": metrics_snapshot(snapshot),
            },
        )
        if alert is None:
            return False

        logger.info("Generated %s alert for client %s: %s", verdict.severity, client_id, verdict.trigger_type)
        return True

    async def is_duplicate(self, session: AsyncSession, client_id: str, trigger_type: str) -> bool:
        """Same (client, trigger) raised within the window in any status, or still pending."""
        if await recent_alert_exists(session, client_id, trigger_type, self.dedup_window):
            return True
        return await find_pending_alert(session, client_id, trigger_type) is not None

    async def get_verdict(self, session: AsyncSession, snapshot: ClientSnapshot) -> AlertVerdict:
        """Ask the AI service. Anything other than a well-formed verdict means no alert."""
        try:
            data = await self.ai.complete_json(
                session,
                session_type="metrics_alert",
                system=METRICS_SYSTEM,
                prompt=build_prompt(snapshot),
                max_tokens=1000,
                temperature=0.1,
                prompt_version=METRICS_PROMPT_VERSION,
            )
            verdict = AlertVerdict.model_validate(data)
        except AIUnavailableError as e:
            logger.warning("Metrics analysis skipped for %s: %s", snapshot.client.client_id, e)
            return NO_ALERT
        except (AIResponseError, ValidationError) as e:
            logger.warning("Invalid alert verdict for %s, defaulting to no alert: %s", snapshot.client.client_id, e)
            return NO_ALERT

        if verdict.should_alert and verdict.trigger_type not in TRIGGER_TYPES:
            logger.warning(
                "Unknown trigger type %r for %s, defaulting to no alert",
                verdict.trigger_type,
                snapshot.client.client_id,
            )
            return NO_ALERT
        return verdict
