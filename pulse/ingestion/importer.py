"""Generic import routine for client exports dropped on disk.

Derives structured rows from a changed file and upserts them:

- ``client_<ID>*.xml``: one client profile
- ``client_<ID>*.txt``: conversation transcripts, scenarios separated by
  ``--- SCENARIO END ---``
- ``*client_metrics*.csv`` / ``*aggregated*.csv``: per-client service metrics
- ``*retention*.csv``: per-client retention and churn signals
"""

import csv
import io
import logging
import re
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Optional, Union

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.storage.models import Client, ClientMetrics, ClientRetention, Conversation

logger = logging.getLogger(__name__)

SCENARIO_SEPARATOR = "--- SCENARIO END ---"

_CLIENT_FILE_RE = re.compile(r"client_([A-Za-z0-9]+)", re.IGNORECASE)

_PROFILE_TAGS = {
    "client_id": "Client",
    "primary_contact": "Primary_Contact",
    "region": "Region",
    "industry": "Industry",
    "contract_status": "Contract_Status",
    "annual_spend_usd": "Annual_Spend_USD",
    "health_score": "Health_Score",
    "risk_flag": "Risk_Flag",
    "client_email": "Client_email",
}

METRICS_COLUMNS = (
    "client_id",
    "avg_response_days",
    "avg_delivery_days",
    "escalations",
    "delivered",
    "backlog",
    "support_score",
)

RETENTION_COLUMNS = (
    "client_id",
    "renewal_rate_percent",
    "policy_lapse_count",
    "competitor_quotes_requested",
    "risk_score",
)


class DataImportError(ValueError):
    """Raised when an export cannot be parsed into rows."""


def detect_kind(path: Union[str, Path]) -> Optional[str]:
    """Classify a file as profile, conversations, metrics or retention."""
    p = Path(path)
    name = p.name.lower()
    ext = p.suffix.lower()
    if ext == ".xml":
        return "profile"
    if ext == ".txt":
        return "conversations"
    if ext == ".csv":
        if "retention" in name:
            return "retention"
        if "client_metrics" in name or "aggregated" in name:
            return "metrics"
    return None


def is_metrics_export(path: Union[str, Path]) -> bool:
    """True for the tabular exports the trigger engine reviews."""
    name = Path(path).name.lower()
    return name.endswith(".csv") and ("client_metrics" in name or "client_retention" in name)


def client_id_from_filename(path: Union[str, Path]) -> Optional[str]:
    match = _CLIENT_FILE_RE.search(Path(path).stem)
    return match.group(1) if match else None


def parse_client_xml(content: str) -> dict:
    """Parse a single client profile document."""
    try:
        root = ET.fromstring(content)
    except ET.ParseError as e:
        raise DataImportError(f"Invalid XML: {e}") from e

    profile = {}
    for field, tag in _PROFILE_TAGS.items():
        node = root if root.tag == tag else root.find(f".//{tag}")
        if node is None:
            raise DataImportError(f"Invalid XML format - missing {tag}")
        profile[field] = (node.text or "").strip()

    for field in ("client_id", "primary_contact"):
        if not profile[field]:
            raise DataImportError(f"Invalid XML format - empty {_PROFILE_TAGS[field]}")

    if not profile["client_email"]:
        profile["client_email"] = f"{profile['client_id'].lower()}.clientinsure@gmail.com"

    try:
        profile["annual_spend_usd"] = int(float(profile["annual_spend_usd"]))
        profile["health_score"] = float(profile["health_score"])
    except ValueError as e:
        raise DataImportError(f"Invalid numeric field in profile {profile['client_id']}: {e}") from e

    return profile


def parse_conversation_txt(content: str, client_id: str) -> list[dict]:
    """Parse ``Speaker: message`` lines, numbering scenarios from 1."""
    rows = []
    for index, scenario in enumerate(content.split(SCENARIO_SEPARATOR), start=1):
        for line in scenario.strip().splitlines():
            line = line.strip()
            if ":" not in line:
                continue
            speaker, message = line.split(":", 1)
            speaker = speaker.strip()
            message = message.strip()
            if not speaker or not message:
                continue
            if speaker.startswith("Client "):
                speaker = "Client"
            rows.append({
                "client_id": client_id,
                "speaker": speaker,
                "message": message,
                "scenario_number": index,
            })
    return rows


def _read_csv(content: str) -> list[list[str]]:
    content = content.lstrip("\ufeff").strip()
    if not content:
        return []
    reader = csv.reader(io.StringIO(content))
    rows = [[cell.strip() for cell in row] for row in reader if any(cell.strip() for cell in row)]
    # First row is the header
    return rows[1:]


def parse_metrics_csv(content: str) -> list[dict]:
    rows = []
    for line_no, values in enumerate(_read_csv(content), start=2):
        if len(values) < len(METRICS_COLUMNS):
            raise DataImportError(f"Metrics row {line_no} has {len(values)} columns")
        try:
            rows.append({
                "client_id": values[0],
                "avg_response_days": float(values[1]),
                "avg_delivery_days": float(values[2]),
                "escalations": int(values[3]),
                "delivered": int(values[4]),
                "backlog": int(values[5]),
                "support_score": int(values[6]),
            })
        except ValueError as e:
            raise DataImportError(f"Metrics row {line_no}: {e}") from e
    return rows


def parse_retention_csv(content: str) -> list[dict]:
    rows = []
    for line_no, values in enumerate(_read_csv(content), start=2):
        if len(values) < len(RETENTION_COLUMNS):
            raise DataImportError(f"Retention row {line_no} has {len(values)} columns")
        try:
            rows.append({
                "client_id": values[0],
                "renewal_rate_percent": int(values[1]),
                "policy_lapse_count": int(values[2]),
                "competitor_quotes_requested": int(values[3]),
                "risk_score": int(values[4]),
            })
        except ValueError as e:
            raise DataImportError(f"Retention row {line_no}: {e}") from e
    return rows


def parse_export(path: Union[str, Path], content: str) -> list[dict]:
    """Parse a metrics or retention export by filename."""
    kind = detect_kind(path)
    if kind == "metrics":
        return parse_metrics_csv(content)
    if kind == "retention":
        return parse_retention_csv(content)
    raise DataImportError(f"Not a tabular client export: {path}")


async def _upsert(session: AsyncSession, model, rows: list[dict], key: str) -> int:
    for row in rows:
        update = {k: v for k, v in row.items() if k != key}
        stmt = (
            pg_insert(model)
            .values(**row)
            .on_conflict_do_update(index_elements=[getattr(model, key)], set_=update)
        )
        await session.execute(stmt)
    await session.flush()
    return len(rows)


async def _insert_conversations(session: AsyncSession, rows: list[dict]) -> int:
    inserted = 0
    for row in rows:
        stmt = pg_insert(Conversation).values(**row).on_conflict_do_nothing(
            constraint="uq_conversation_line"
        )
        result = await session.execute(stmt)
        inserted += result.rowcount or 0
    await session.flush()
    return inserted


async def import_file(session: AsyncSession, path: Union[str, Path]) -> int:
    """Import one changed file. Returns the number of rows written."""
    kind = detect_kind(path)
    if kind is None:
        logger.debug("No importer for %s", path)
        return 0

    content = Path(path).read_text(encoding="utf-8", errors="replace")

    if kind == "profile":
        count = await _upsert(session, Client, [parse_client_xml(content)], "client_id")
    elif kind == "conversations":
        client_id = client_id_from_filename(path)
        if not client_id:
            raise DataImportError(f"Cannot derive client id from {Path(path).name}")
        count = await _insert_conversations(session, parse_conversation_txt(content, client_id))
    elif kind == "metrics":
        count = await _upsert(session, ClientMetrics, parse_metrics_csv(content), "client_id")
    else:
        count = await _upsert(session, ClientRetention, parse_retention_csv(content), "client_id")

    logger.info("Imported %d %s rows from %s", count, kind, path)
    return count
