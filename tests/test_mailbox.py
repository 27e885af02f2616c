"""Tests for IMAP mailbox ingestion."""

import ssl
import uuid
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from pulse.config import MailboxAccount, MailboxSettings, Settings
from pulse.ingestion.mailbox import (
    _open_connection,
    fetch_account,
    fetch_all_accounts,
    imap_date,
    match_client,
    parse_message,
    store_email,
)
from pulse.storage.models import Email
from tests.conftest import make_client, make_result, make_session, make_session_factory

PLAIN_MESSAGE = (
    b"Message-ID: <abc123@mail.example.com>\r\n"
    b"From: Jane Smith <jane@acme.com>\r\n"
    b"To: csdinsure@gmail.com\r\n"
    b"Subject: Claim update\r\n"
    b"Date: Sat, 01 Feb 2026 12:00:00 +0000\r\n"
    b"\r\n"
    b"Still waiting on my claim, this is frustrating.\r\n"
)


class TestParseMessage:
    def test_plain_text(self):
        parsed = parse_message(PLAIN_MESSAGE)
        assert parsed["message_id"] == "<abc123@mail.example.com>"
        assert parsed["subject"] == "Claim update"
        assert parsed["sender"] == "Jane Smith <jane@acme.com>"
        assert parsed["recipient"] == "csdinsure@gmail.com"
        assert parsed["received_at"].year == 2026
        assert parsed["body"] == "Still waiting on my claim, this is frustrating."

    def test_prefers_plain_over_html(self):
        msg = MIMEMultipart("alternative")
        msg["Message-ID"] = "<m1@x>"
        msg.attach(MIMEText("<p>Hello</p>", "html"))
        msg.attach(MIMEText("Hello plain", "plain"))
        assert parse_message(msg.as_bytes())["body"] == "Hello plain"

    def test_html_fallback(self):
        msg = MIMEMultipart("alternative")
        msg["Message-ID"] = "<m2@x>"
        msg.attach(MIMEText("<p>Only html</p>", "html"))
        assert parse_message(msg.as_bytes())["body"] == "<p>Only html</p>"

    def test_missing_message_id(self):
        assert parse_message(b"Subject: hi\r\n\r\nbody") is None

    def test_bad_date_falls_back_to_now(self):
        raw = PLAIN_MESSAGE.replace(b"Sat, 01 Feb 2026 12:00:00 +0000", b"not a date")
        parsed = parse_message(raw)
        assert parsed["received_at"].tzinfo is not None


class TestMatchClient:
    def test_exact_address(self):
        jane = make_client(client_email="jane@acme.com", primary_contact="Jane Smith")
        other = make_client(client_id="C002", client_email="bob@other.com", primary_contact="Bob Jones")
        assert match_client([other, jane], "Jane S <JANE@acme.com>") is jane

    def test_first_name_containment(self):
        bob = make_client(client_id="C002", client_email="bob@other.com", primary_contact="Bob Jones")
        assert match_client([bob], "Bob from Accounts <accounts@other.org>") is bob

    def test_no_match(self):
        assert match_client([make_client()], "someone@nowhere.com") is None
        assert match_client([make_client()], "") is None


def test_imap_date():
    assert imap_date(datetime(2024, 3, 5)) == "05-Mar-2024"


class TestStoreEmail:
    @pytest.mark.asyncio
    async def test_duplicate_message_id_skipped(self):
        parsed = parse_message(PLAIN_MESSAGE)
        session = make_session(make_result(scalar=uuid.uuid4()))
        session.scalars = AsyncMock()

        assert await store_email(session, "csdinsure@gmail.com", parsed) is None
        session.scalars.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_new_message_inserted(self):
        parsed = parse_message(PLAIN_MESSAGE)
        record = Email(id=uuid.uuid4(), message_id=parsed["message_id"], account="csdinsure@gmail.com")
        session = make_session(make_result(scalar=None))
        insert_result = MagicMock()
        insert_result.one_or_none.return_value = record
        session.scalars = AsyncMock(return_value=insert_result)

        assert await store_email(session, "csdinsure@gmail.com", parsed, "C001") is record


class TestFetchAccount:
    @pytest.mark.asyncio
    async def test_same_message_twice_stored_once(self):
        stored: dict[str, Email] = {}

        async def fake_store(session, account_address, parsed, client_id=None):
            if parsed["message_id"] in stored:
                return None
            record = Email(id=uuid.uuid4(), account=account_address, client_id=client_id, processed=False, **parsed)
            stored[parsed["message_id"]] = record
            return record

        jane = make_client(client_id="C001", client_email="jane@acme.com")
        session = make_session(make_result(scalars=[jane]))
        pipeline = MagicMock()
        pipeline.classify = AsyncMock()
        account = MailboxAccount(address="csdinsure@gmail.com", password="secret")

        with patch("pulse.ingestion.mailbox.fetch_raw_messages", return_value=[PLAIN_MESSAGE, PLAIN_MESSAGE]), \
                patch("pulse.ingestion.mailbox.store_email", side_effect=fake_store):
            count = await fetch_account(session, account, pipeline, MailboxSettings())

        assert count == 1
        assert len(stored) == 1
        record = stored["<abc123@mail.example.com>"]
        assert record.client_id == "C001"
        assert record.processed is True
        pipeline.classify.assert_awaited_once()
        assert pipeline.classify.call_args.args[2] == "email"

    @pytest.mark.asyncio
    async def test_failed_classification_left_for_batch(self):
        record = Email(
            id=uuid.uuid4(), message_id="<abc123@mail.example.com>", account="csdinsure@gmail.com", processed=False
        )
        session = make_session(make_result(scalars=[]))
        pipeline = MagicMock()
        pipeline.classify = AsyncMock(return_value=None)
        account = MailboxAccount(address="csdinsure@gmail.com", password="secret")

        with patch("pulse.ingestion.mailbox.fetch_raw_messages", return_value=[PLAIN_MESSAGE]), \
                patch("pulse.ingestion.mailbox.store_email", new_callable=AsyncMock, return_value=record):
            assert await fetch_account(session, account, pipeline, MailboxSettings()) == 1

        assert record.processed is False

    @pytest.mark.asyncio
    async def test_account_without_password_skipped(self):
        account = MailboxAccount(address="support@example.com")
        with patch("pulse.ingestion.mailbox.fetch_raw_messages") as fetch:
            count = await fetch_account(make_session(), account, MagicMock(), MailboxSettings(default_password=""))
        assert count == 0
        fetch.assert_not_called()

    @pytest.mark.asyncio
    async def test_default_password_used(self):
        account = MailboxAccount(address="support@example.com")
        with patch("pulse.ingestion.mailbox.fetch_raw_messages", return_value=[]) as fetch:
            await fetch_account(make_session(), account, MagicMock(), MailboxSettings(default_password="shared"))
        assert fetch.call_args.args[1] == "shared"

    @pytest.mark.asyncio
    async def test_bad_message_does_not_block_others(self):
        session = make_session(make_result(scalars=[]))
        pipeline = MagicMock()
        pipeline.classify = AsyncMock()
        account = MailboxAccount(address="csdinsure@gmail.com", password="secret")
        ok = Email(id=uuid.uuid4(), message_id="<ok@x>", account="csdinsure@gmail.com")

        with patch("pulse.ingestion.mailbox.fetch_raw_messages", return_value=[PLAIN_MESSAGE, PLAIN_MESSAGE]), \
                patch("pulse.ingestion.mailbox.store_email", new_callable=AsyncMock,
                      side_effect=[RuntimeError("constraint"), ok]):
            count = await fetch_account(session, account, pipeline, MailboxSettings())

        assert count == 1


class TestFetchAllAccounts:
    @pytest.mark.asyncio
    async def test_failing_account_isolated(self):
        settings = Settings(mailbox=MailboxSettings(accounts=[
            MailboxAccount(address="a@example.com", password="x"),
            MailboxAccount(address="b@example.com", password="y"),
        ]))
        factory = make_session_factory(make_session())

        with patch("pulse.ingestion.mailbox.fetch_account", new_callable=AsyncMock,
                   side_effect=[OSError("connection refused"), 2]):
            summary = await fetch_all_accounts(MagicMock(), settings, session_factory=factory)

        assert summary == {"accounts": 2, "emails_fetched": 2, "failed_accounts": 1}


class TestOpenConnection:
    def test_relaxed_retry_on_cert_failure(self):
        conn = MagicMock()
        with patch("pulse.ingestion.mailbox.imaplib.IMAP4_SSL",
                   side_effect=[ssl.SSLCertVerificationError("self signed"), conn]) as imap:
            assert _open_connection("imap.example.com", 993, 5.0, allow_relaxed_tls=True) is conn

        relaxed = imap.call_args.kwargs["ssl_context"]
        assert relaxed.verify_mode == ssl.CERT_NONE
        assert relaxed.check_hostname is False

    def test_strict_mode_raises(self):
        with patch("pulse.ingestion.mailbox.imaplib.IMAP4_SSL",
                   side_effect=ssl.SSLCertVerificationError("self signed")) as imap:
            with pytest.raises(ssl.SSLCertVerificationError):
                _open_connection("imap.example.com", 993, 5.0, allow_relaxed_tls=False)
        assert imap.call_count == 1
