"""Tests for the client export importer."""

import pytest

from pulse.ingestion.importer import (
    DataImportError,
    client_id_from_filename,
    detect_kind,
    import_file,
    is_metrics_export,
    parse_client_xml,
    parse_conversation_txt,
    parse_export,
    parse_metrics_csv,
    parse_retention_csv,
)
from tests.conftest import make_session

PROFILE_XML = """<?xml version="1.0" encoding="UTF-8"?>
<ClientProfile>
  <Client>C001</Client>
  <Primary_Contact>Jane Smith</Primary_Contact>
  <Region>North America</Region>
  <Industry>Insurance</Industry>
  <Contract_Status>Active</Contract_Status>
  <Annual_Spend_USD>250000</Annual_Spend_USD>
  <Health_Score>6.5</Health_Score>
  <Risk_Flag>High</Risk_Flag>
  <Client_email>jane@acme.com</Client_email>
</ClientProfile>
"""

METRICS_CSV = (
    "\ufeffClient ID,Avg Response Days,Avg Delivery Days,Escalations,Delivered,Backlog,Support Score\n"
    "C001,2.5,4.0,5,3,18,60\n"
    "C002,1.0,2.0,0,20,2,95\n"
)

RETENTION_CSV = (
    "Client ID,Renewal Rate %,Policy Lapses,Competitor Quotes,Risk Score\n"
    "C001,72,3,4,80\n"
)


class TestDetectKind:
    def test_kinds(self):
        assert detect_kind("data/xml/client_C001.xml") == "profile"
        assert detect_kind("data/calls/client_C001_calls.txt") == "conversations"
        assert detect_kind("data/client_metrics.csv") == "metrics"
        assert detect_kind("data/excel/aggregated_Q1.csv") == "metrics"
        assert detect_kind("data/client_retention.csv") == "retention"
        assert detect_kind("data/notes.csv") is None
        assert detect_kind("data/sheet.xlsx") is None

    def test_is_metrics_export(self):
        assert is_metrics_export("data/client_metrics.csv")
        assert is_metrics_export("/abs/client_retention.csv")
        assert not is_metrics_export("data/aggregated.csv")
        assert not is_metrics_export("data/client_metrics.txt")

    def test_client_id_from_filename(self):
        assert client_id_from_filename("data/calls/client_ABC123_calls.txt") == "ABC123"
        assert client_id_from_filename("data/calls/notes.txt") is None


class TestParseClientXml:
    def test_full_profile(self):
        profile = parse_client_xml(PROFILE_XML)
        assert profile["client_id"] == "C001"
        assert profile["primary_contact"] == "Jane Smith"
        assert profile["annual_spend_usd"] == 250000
        assert profile["health_score"] == 6.5
        assert profile["client_email"] == "jane@acme.com"

    def test_missing_email_gets_default(self):
        xml = PROFILE_XML.replace("<Client_email>jane@acme.com</Client_email>", "<Client_email></Client_email>")
        profile = parse_client_xml(xml)
        assert profile["client_email"] == "c001.clientinsure@gmail.com"

    def test_missing_tag_rejected(self):
        xml = PROFILE_XML.replace("<Region>North America</Region>", "")
        with pytest.raises(DataImportError, match="Region"):
            parse_client_xml(xml)

    def test_malformed_xml_rejected(self):
        with pytest.raises(DataImportError):
            parse_client_xml("<ClientProfile><Client>")

    def test_bad_number_rejected(self):
        xml = PROFILE_XML.replace("<Health_Score>6.5</Health_Score>", "<Health_Score>high</Health_Score>")
        with pytest.raises(DataImportError):
            parse_client_xml(xml)


class TestParseConversationTxt:
    def test_scenarios_numbered_from_one(self):
        content = (
            "Agent: Hello, how can I help?\n"
            "Client Jane: My delivery is late again.\n"
            "--- SCENARIO END ---\n"
            "Agent: Following up on your invoice.\n"
            "Client: Thanks, that was quick.\n"
        )
        rows = parse_conversation_txt(content, "C001")

        assert len(rows) == 4
        assert [r["scenario_number"] for r in rows] == [1, 1, 2, 2]
        assert rows[1]["speaker"] == "Client"
        assert rows[1]["message"] == "My delivery is late again."
        assert all(r["client_id"] == "C001" for r in rows)

    def test_lines_without_speaker_skipped(self):
        rows = parse_conversation_txt("just a note\nAgent:\nAgent: Hi: there\n", "C001")
        assert len(rows) == 1
        assert rows[0]["message"] == "Hi: there"


class TestParseCsv:
    def test_metrics_with_bom_and_header(self):
        rows = parse_metrics_csv(METRICS_CSV)
        assert len(rows) == 2
        assert rows[0] == {
            "client_id": "C001",
            "avg_response_days": 2.5,
            "avg_delivery_days": 4.0,
            "escalations": 5,
            "delivered": 3,
            "backlog": 18,
            "support_score": 60,
        }

    def test_metrics_short_row_rejected(self):
        with pytest.raises(DataImportError):
            parse_metrics_csv("header\nC001,1,2\n")

    def test_metrics_non_numeric_rejected(self):
        with pytest.raises(DataImportError):
            parse_metrics_csv("h\nC001,x,2,3,4,5,6\n")

    def test_retention(self):
        rows = parse_retention_csv(RETENTION_CSV)
        assert rows == [{
            "client_id": "C001",
            "renewal_rate_percent": 72,
            "policy_lapse_count": 3,
            "competitor_quotes_requested": 4,
            "risk_score": 80,
        }]

    def test_empty_export(self):
        assert parse_metrics_csv("") == []

    def test_parse_export_by_name(self):
        assert len(parse_export("client_metrics.csv", METRICS_CSV)) == 2
        assert len(parse_export("client_retention.csv", RETENTION_CSV)) == 1
        with pytest.raises(DataImportError):
            parse_export("notes.csv", METRICS_CSV)


class TestImportFile:
    @pytest.mark.asyncio
    async def test_metrics_upserted_per_row(self, tmp_path):
        path = tmp_path / "client_metrics.csv"
        path.write_text(METRICS_CSV, encoding="utf-8")
        session = make_session()

        count = await import_file(session, path)

        assert count == 2
        assert session.execute.await_count == 2
        session.flush.assert_awaited()

    @pytest.mark.asyncio
    async def test_conversations_count_inserted_rows(self, tmp_path):
        path = tmp_path / "client_C001_calls.txt"
        path.write_text("Agent: Hi\nClient: Hello\n", encoding="utf-8")
        session = make_session()
        session.execute.return_value.rowcount = 1

        count = await import_file(session, path)
        assert count == 2
        assert session.execute.await_count == 2

    @pytest.mark.asyncio
    async def test_conversation_file_without_client_id(self, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("Agent: Hi\n", encoding="utf-8")
        with pytest.raises(DataImportError):
            await import_file(make_session(), path)

    @pytest.mark.asyncio
    async def test_unknown_file_ignored(self, tmp_path):
        path = tmp_path / "sheet.xlsx"
        path.write_bytes(b"binary")
        session = make_session()
        assert await import_file(session, path) == 0
        session.execute.assert_not_awaited()
