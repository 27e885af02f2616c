"""Mailbox ingestion over IMAP.

Each configured account is polled for the trailing lookback window. Messages
are fetched with BODY.PEEK[] so nothing is marked as seen, stored once per
Message-ID, matched to a client, and classified right away.
"""

import asyncio
import email
import imaplib
import logging
import ssl
from datetime import datetime, timedelta, timezone
from email.header import decode_header, make_header
from email.message import Message
from email.utils import parseaddr, parsedate_to_datetime
from typing import Callable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.config import MailboxAccount, MailboxSettings, Settings, get_settings
from pulse.processing.sentiment import SentimentPipeline, email_text
from pulse.storage.db import get_session
from pulse.storage.models import Client, Email

logger = logging.getLogger(__name__)

_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


def imap_date(dt: datetime) -> str:
    """IMAP SEARCH date (``01-Jan-2024``), independent of locale."""
    return f"{dt.day:02d}-{_MONTHS[dt.month - 1]}-{dt.year}"


def _decode_part(part: Message) -> str:
    payload = part.get_payload(decode=True)
    if payload is None:
        return ""
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


def _extract_body(msg: Message) -> str:
    """First text/plain part, else the first text/html part."""
    if not msg.is_multipart():
        return _decode_part(msg)

    html = ""
    for part in msg.walk():
        if part.get_content_maintype() == "multipart":
            continue
        if part.get_content_disposition() == "attachment":
            continue
        content_type = part.get_content_type()
        if content_type == "text/plain":
            return _decode_part(part)
        if content_type == "text/html" and not html:
            html = _decode_part(part)
    return html


def _decode_header(value: Optional[str]) -> str:
    if not value:
        return ""
    return str(make_header(decode_header(value)))


def parse_message(raw: bytes) -> Optional[dict]:
    """Parse an RFC 822 message. Returns None if it has no Message-ID."""
    msg = email.message_from_bytes(raw)
    message_id = (msg.get("Message-ID") or "").strip()
    if not message_id:
        return None

    received_at = datetime.now(timezone.utc)
    date_header = msg.get("Date")
    if date_header:
        try:
            received_at = parsedate_to_datetime(date_header)
            if received_at.tzinfo is None:
                received_at = received_at.replace(tzinfo=timezone.utc)
        except (TypeError, ValueError):
            pass

    return {
        "message_id": message_id,
        "subject": _decode_header(msg.get("Subject")),
        "sender": _decode_header(msg.get("From")),
        "recipient": _decode_header(msg.get("To")),
        "received_at": received_at,
        "body": _extract_body(msg).strip(),
    }


def match_client(clients: Sequence[Client], sender: str) -> Optional[Client]:
    """Best-effort client association for an incoming email.

    Exact address match first, then the contact's first name appearing in
    the sender string.
    """
    if not sender:
        return None
    _, address = parseaddr(sender)
    address = address.lower()
    lowered = sender.lower()

    for client in clients:
        if client.client_email and address and client.client_email.lower() == address:
            return client

    for client in clients:
        if not client.primary_contact:
            continue
        first_name = client.primary_contact.split()[0].lower()
        if first_name and first_name in lowered:
            return client
    return None


def _open_connection(host: str, port: int, timeout: float, allow_relaxed_tls: bool) -> imaplib.IMAP4_SSL:
    context = ssl.create_default_context()
    try:
        return imaplib.IMAP4_SSL(host, port, ssl_context=context, timeout=timeout)
    except ssl.SSLCertVerificationError as e:
        if not allow_relaxed_tls:
            raise
        logger.warning(
            "Certificate verification failed for %s:%d (%s); retrying with relaxed TLS, server identity is NOT verified",
            host,
            port,
            e,
        )
    relaxed = ssl.create_default_context()
    relaxed.check_hostname = False
    relaxed.verify_mode = ssl.CERT_NONE
    return imaplib.IMAP4_SSL(host, port, ssl_context=relaxed, timeout=timeout)


def fetch_raw_messages(
    account: MailboxAccount,
    password: str,
    settings: MailboxSettings,
    since: datetime,
) -> list[bytes]:
    """Blocking IMAP fetch of every INBOX message since ``since``."""
    host = account.host or settings.host
    port = account.port or settings.port
    conn = _open_connection(host, port, settings.timeout_seconds, settings.allow_relaxed_tls)
    try:
        conn.login(account.address, password)
        typ, _ = conn.select("INBOX", readonly=True)
        if typ != "OK":
            raise imaplib.IMAP4.error(f"Could not open INBOX for {account.address}")

        typ, data = conn.search(None, "SINCE", imap_date(since))
        if typ != "OK":
            raise imaplib.IMAP4.error(f"Search failed for {account.address}")

        messages: list[bytes] = []
        for num in (data[0] or b"").split():
            typ, parts = conn.fetch(num, "(BODY.PEEK[])")
            if typ != "OK":
                logger.warning("Fetch of message %s failed for %s", num.decode(), account.address)
                continue
            for part in parts:
                if isinstance(part, tuple) and len(part) > 1:
                    messages.append(part[1])
        return messages
    finally:
        try:
            conn.logout()
        except (imaplib.IMAP4.error, OSError):
            pass


async def store_email(
    session: AsyncSession,
    account_address: str,
    parsed: dict,
    client_id: Optional[str] = None,
) -> Optional[Email]:
    """Insert the email unless its Message-ID is already stored."""
    existing = await session.execute(
        select(Email.id).where(Email.message_id == parsed["message_id"])
    )
    if existing.scalar_one_or_none() is not None:
        return None

    stmt = (
        pg_insert(Email)
        .values(account=account_address, client_id=client_id, processed=False, **parsed)
        .on_conflict_do_nothing(index_elements=[Email.message_id])
        .returning(Email)
    )
    result = await session.scalars(stmt)
    return result.one_or_none()


async def ingest_message(
    session: AsyncSession,
    account_address: str,
    raw: bytes,
    clients: Sequence[Client],
    pipeline: SentimentPipeline,
) -> Optional[Email]:
    """Parse, store and classify one message. Returns the new row, or None if skipped."""
    parsed = parse_message(raw)
    if parsed is None:
        logger.debug("Skipping message without Message-ID in %s", account_address)
        return None

    client = match_client(clients, parsed["sender"])
    record = await store_email(session, account_address, parsed, client.client_id if client else None)
    if record is None:
        return None

    # Left unprocessed on failure so the next sentiment batch retries it
    if await pipeline.classify(session, str(record.id), "email", email_text(record)) is not None:
        record.processed = True
    await session.flush()
    logger.info("Stored email %s from %s", record.message_id, record.sender)
    return record


async def fetch_account(
    session: AsyncSession,
    account: MailboxAccount,
    pipeline: SentimentPipeline,
    settings: Optional[MailboxSettings] = None,
) -> int:
    """Poll one account. Returns the number of new emails stored."""
    settings = settings or get_settings().mailbox
    password = account.password or settings.default_password
    if not password:
        logger.warning("No password configured for %s, skipping", account.address)
        return 0

    since = datetime.now(timezone.utc) - timedelta(hours=settings.lookback_hours)
    raw_messages = await asyncio.to_thread(fetch_raw_messages, account, password, settings, since)
    logger.info("Fetched %d messages for %s", len(raw_messages), account.address)

    result = await session.execute(select(Client))
    clients = list(result.scalars().all())

    stored = 0
    for raw in raw_messages:
        try:
            async with session.begin_nested():
                if await ingest_message(session, account.address, raw, clients, pipeline) is not None:
                    stored += 1
        except Exception as e:
            logger.error("Error processing message for %s: %s", account.address, e)
    return stored


async def fetch_all_accounts(
    pipeline: SentimentPipeline,
    settings: Optional[Settings] = None,
    session_factory: Callable = get_session,
) -> dict:
    """Poll every configured account in turn. One account failing doesn't stop the rest."""
    settings = settings or get_settings()
    summary = {"accounts": 0, "emails_fetched": 0, "failed_accounts": 0}

    for account in settings.mailbox.accounts:
        summary["accounts"] += 1
        try:
            async with session_factory() as session:
                count = await fetch_account(session, account, pipeline, settings.mailbox)
            summary["emails_fetched"] += count
        except Exception as e:
            summary["failed_accounts"] += 1
            logger.error("Failed to fetch emails for %s: %s", account.address, e)

    logger.info(
        "Mailbox poll: %d accounts, %d new emails",
        summary["accounts"],
        summary["emails_fetched"],
    )
    return summary
