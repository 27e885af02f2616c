"""Trigger detection on changed client metric/retention exports."""

import json
import logging
from pathlib import Path
from typing import Iterable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool, ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.alerts.store import find_pending_alert, insert_pending_alert
from pulse.config import Settings, get_settings
from pulse.ingestion.importer import DataImportError, parse_export
from pulse.ingestion.tracker import ChangeTracker, compute_hash, ledger_key
from pulse.processing.ai import AIClient, AIResponseError, AIUnavailableError
from pulse.storage.models import Client, FileProcessing

logger = logging.getLogger(__name__)

TRIGGER_PROMPT_VERSION = "v1.0"

TRIGGER_SYSTEM = (
    "You are a Customer Success AI assistant specialized in analyzing client data for churn risk "
    "and performance issues. Always respond with valid JSON only."
)

TRIGGER_PROMPT = """Analyze this client data for concerning triggers that require immediate attention.

File: {file_name}
Data: {rows}
Client Information: {clients}

Analyze each client for concerning patterns and determine if any triggers warrant immediate action. Focus on:

For client metrics exports:
- High escalations (>5)
- Poor support scores (<70)
- Long response/delivery times (>3 days)
- High backlog (>10)

For client retention exports:
- Low renewal rates (<80%)
- High policy lapses (>2)
- Multiple competitor quotes (>3)
- High risk scores (>70)

For each concerning client, provide:
1. Client ID and details
2. Trigger type (NPS_DROP, HIGH_CHURN_RISK, POOR_PERFORMANCE, NEGATIVE_FEEDBACK, etc.)
3. Specific description of the issue
4. Severity level (Low/Medium/High/Critical)
5. Clear reasoning

Respond in this exact JSON format:
{{
  "hasConcerningTriggers": boolean,
  "triggers": [
    {{
      "clientId": "string",
      "clientName": "string",
      "clientEmail": "string",
      "triggerType": "string",
      "description": "string",
      "severity": "Low|Medium|High|Critical",
      "reasoning": "string"
    }}
  ],
  "analysis": "string"
}}"""


class Trigger(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    client_id: str = Field(alias="clientId", min_length=1)
    client_name: str = Field(default="", alias="clientName")
    client_email: str = Field(default="", alias="clientEmail")
    trigger_type: str = Field(alias="triggerType", min_length=1)
    description: str
    severity: Literal["Low", "Medium", "High", "Critical"]
    reasoning: str = ""


class TriggerAnalysis(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    has_concerning_triggers: StrictBool = Field(alias="hasConcerningTriggers")
    triggers: list[Trigger] = Field(default_factory=list)
    analysis: str = ""


def _client_profile(client: Client) -> dict:
    return {
        "client_id": client.client_id,
        "primary_contact": client.primary_contact,
        "region": client.region,
        "industry": client.industry,
        "contract_status": client.contract_status,
        "annual_spend_usd": client.annual_spend_usd,
        "health_score": client.health_score,
        "risk_flag": client.risk_flag,
        "client_email": client.client_email,
    }


class TriggerEngine:
    """File-change alert path.

    Holds its own ChangeTracker so a metric export rewritten with identical
    bytes never reaches the AI service twice.
    """

    def __init__(
        self,
        ai: Optional[AIClient] = None,
        exports: Optional[Iterable[Union[str, Path]]] = None,
        tracker: Optional[ChangeTracker] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.ai = ai or AIClient(settings.anthropic)
        self.exports = [Path(p) for p in (exports if exports is not None else settings.watch.metric_exports)]
        self.tracker = tracker or ChangeTracker()

    def prime(self) -> int:
        """Seed the ledger with the exports as they are now."""
        return self.tracker.prime(p for p in self.exports if p.exists())

    async def prime_from_ledger(
        self,
        session: AsyncSession,
        paths: Optional[Iterable[Union[str, Path]]] = None,
    ) -> int:
        """Seed the tracker with exports whose current bytes are already in file_processing.

        For one-shot runs that start without in-memory state. Defaults to the
        configured exports.
        """
        primed = 0
        for path in (self.exports if paths is None else [Path(p) for p in paths]):
            if not path.exists():
                continue
            result = await session.execute(
                select(FileProcessing.content_hash).where(FileProcessing.file_path == ledger_key(path))
            )
            if result.scalar_one_or_none() == compute_hash(path):
                primed += self.tracker.prime([path])
        return primed

    def check_for_changes(self) -> list[str]:
        logger.debug("Checking for metric export changes...")
        return self.tracker.changed(p for p in self.exports if p.exists())

    async def scan(self, session: AsyncSession) -> int:
        """Periodic pass: process every configured export whose content changed."""
        created = 0
        for path in self.check_for_changes():
            try:
                created += await self.process_changed_file(session, path)
            except Exception as e:
                logger.error("Error processing %s: %s", path, e)
        return created

    async def process_path(self, session: AsyncSession, path: Union[str, Path]) -> int:
        """Entry point for the file watcher: analyze only if the content changed."""
        if not self.tracker.has_changed(path):
            logger.info("Metric export %s unchanged, skipping trigger analysis", path)
            return 0
        return await self.process_changed_file(session, path)

    async def process_changed_file(self, session: AsyncSession, path: Union[str, Path]) -> int:
        """Ask the AI service about a changed export and raise alerts. Returns alerts created."""
        logger.info("Processing changed file: %s", path)
        try:
            content = Path(path).read_text(encoding="utf-8", errors="replace")
            rows = parse_export(path, content)
        except (OSError, DataImportError) as e:
            logger.error("Could not parse %s: %s", path, e)
            return 0

        result = await session.execute(select(Client))
        clients = [_client_profile(c) for c in result.scalars().all()]

        try:
            analysis = await self.analyze_export(session, Path(path).name, rows, clients)
        except AIUnavailableError as e:
            logger.warning("Trigger analysis skipped for %s: %s", path, e)
            # Retry on the next scan even though the bytes are unchanged
            self.tracker.forget(path)
            return 0
        except Exception as e:
            logger.error("Trigger analysis error for %s, will retry: %s", path, e)
            self.tracker.forget(path)
            return 0
        if analysis is None or not analysis.has_concerning_triggers:
            return 0

        rows_by_client = {row["client_id"]: row for row in rows}
        return await self.create_alerts(session, analysis, rows_by_client)

    async def analyze_export(
        self,
        session: AsyncSession,
        file_name: str,
        rows: list[dict],
        clients: list[dict],
    ) -> Optional[TriggerAnalysis]:
        """Returns None for any reply that doesn't match the contract.

        AIUnavailableError and transport errors propagate so the caller can retry.
        """
        prompt = TRIGGER_PROMPT.format(
            file_name=file_name,
            rows=json.dumps(rows, indent=2),
            clients=json.dumps(clients, indent=2, default=str),
        )
        try:
            data = await self.ai.complete_json(
                session,
                session_type="trigger_detection",
                system=TRIGGER_SYSTEM,
                prompt=prompt,
                max_tokens=2000,
                temperature=0.3,
                prompt_version=TRIGGER_PROMPT_VERSION,
            )
            analysis = TriggerAnalysis.model_validate(data)
        except (AIResponseError, ValidationError) as e:
            logger.warning("Trigger analysis for %s returned no actionable result: %s", file_name, e)
            return None

        logger.info("AI trigger analysis completed for %s: %d triggers", file_name, len(analysis.triggers))
        return analysis

    async def create_alerts(
        self,
        session: AsyncSession,
        analysis: TriggerAnalysis,
        rows_by_client: Optional[dict[str, dict]] = None,
    ) -> int:
        """Insert one Pending alert per trigger unless the client already has one of that type pending."""
        rows_by_client = rows_by_client or {}
        payload = analysis.model_dump(by_alias=True)
        created = 0

        for trigger in analysis.triggers:
            try:
                async with session.begin_nested():
                    if await self.create_alert(session, trigger, payload, rows_by_client.get(trigger.client_id)):
                        created += 1
            except Exception as e:
                logger.error("Error creating alert for %s: %s", trigger.client_id, e)

        return created

    async def create_alert(
        self,
        session: AsyncSession,
        trigger: Trigger,
        payload: dict,
        row: Optional[dict] = None,
    ) -> bool:
        existing = await find_pending_alert(session, trigger.client_id, trigger.trigger_type)
        if existing is not None:
            logger.info("Alert already pending for %s: %s", trigger.client_id, trigger.trigger_type)
            return False

        snapshot = {"trigger": trigger.model_dump(by_alias=True), "row": row}
        alert = await insert_pending_alert(
            session,
            {
                "client_id": trigger.client_id,
                "client_name": trigger.client_name or None,
                "client_email": trigger.client_email or None,
                "trigger_type": trigger.trigger_type,
                "description": trigger.description,
                "severity": trigger.severity,
                "source": "file_change",
                "analysis_payload": payload,
                "data_snapshot": json.dumps(snapshot, default=str),
            },
        )
        if alert is None:
            return False
        logger.info("Created %s alert for %s: %s", trigger.severity, trigger.client_id, trigger.description)
        return True
