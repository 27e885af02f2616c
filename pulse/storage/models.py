"""SQLAlchemy ORM models for Pulse."""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    ARRAY,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

FILE_STATUSES = ("Processing", "Completed", "Error")
CONTENT_TYPES = ("conversation", "email")
SENTIMENT_LABELS = ("positive", "neutral", "negative")
ANALYSIS_METHODS = ("local", "remote")
ALERT_SEVERITIES = ("Low", "Medium", "High", "Critical")
ALERT_STATUSES = ("Pending", "Acknowledged", "Resolved")
ALERT_SOURCES = ("file_change", "metrics")


def _in(column: str, values: tuple[str, ...]) -> str:
    return f"{column} IN ({','.join(repr(v) for v in values)})"


class Base(DeclarativeBase):
    pass


class Client(Base):
    __tablename__ = "clients"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    client_id: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    primary_contact: Mapped[str] = mapped_column(Text, nullable=False)
    region: Mapped[Optional[str]] = mapped_column(Text)
    industry: Mapped[Optional[str]] = mapped_column(Text)
    contract_status: Mapped[Optional[str]] = mapped_column(Text)
    annual_spend_usd: Mapped[int] = mapped_column(Integer, default=0)
    health_score: Mapped[float] = mapped_column(Float, default=0.0)
    risk_flag: Mapped[Optional[str]] = mapped_column(Text)
    client_email: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    metrics: Mapped[Optional["ClientMetrics"]] = relationship(back_populates="client")

    __table_args__ = (
        Index("idx_clients_email", "client_email"),
    )


class Conversation(Base):
    __tablename__ = "conversations"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    client_id: Mapped[str] = mapped_column(
        Text, ForeignKey("clients.client_id", ondelete="CASCADE"), nullable=False
    )
    speaker: Mapped[str] = mapped_column(Text, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    scenario_number: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("client_id", "scenario_number", "speaker", "message", name="uq_conversation_line"),
        Index("idx_conversations_client", "client_id"),
    )


class ClientMetrics(Base):
    __tablename__ = "client_metrics"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    client_id: Mapped[str] = mapped_column(
        Text, ForeignKey("clients.client_id", ondelete="CASCADE"), unique=True, nullable=False
    )
    avg_response_days: Mapped[float] = mapped_column(Float, nullable=False)
    avg_delivery_days: Mapped[float] = mapped_column(Float, nullable=False)
    escalations: Mapped[int] = mapped_column(Integer, nullable=False)
    delivered: Mapped[int] = mapped_column(Integer, nullable=False)
    backlog: Mapped[int] = mapped_column(Integer, nullable=False)
    support_score: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    client: Mapped["Client"] = relationship(back_populates="metrics")


class ClientRetention(Base):
    __tablename__ = "client_retention"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    client_id: Mapped[str] = mapped_column(
        Text, ForeignKey("clients.client_id", ondelete="CASCADE"), unique=True, nullable=False
    )
    renewal_rate_percent: Mapped[int] = mapped_column(Integer, nullable=False)
    policy_lapse_count: Mapped[int] = mapped_column(Integer, nullable=False)
    competitor_quotes_requested: Mapped[int] = mapped_column(Integer, nullable=False)
    risk_score: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class FileProcessing(Base):
    __tablename__ = "file_processing"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    file_path: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    content_hash: Mapped[str] = mapped_column(Text, nullable=False, default="")
    file_kind: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(
        String,
        CheckConstraint(_in("status", FILE_STATUSES)),
        default="Processing",
    )
    records_processed: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Email(Base):
    __tablename__ = "emails"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    message_id: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    account: Mapped[str] = mapped_column(Text, nullable=False)
    client_id: Mapped[Optional[str]] = mapped_column(
        Text, ForeignKey("clients.client_id", ondelete="SET NULL")
    )
    subject: Mapped[Optional[str]] = mapped_column(Text)
    body: Mapped[Optional[str]] = mapped_column(Text)
    sender: Mapped[Optional[str]] = mapped_column(Text)
    recipient: Mapped[Optional[str]] = mapped_column(Text)
    received_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    processed: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_emails_processed", "processed", postgresql_where="processed = FALSE"),
        Index("idx_emails_client", "client_id"),
    )


class SentimentAnalysis(Base):
    __tablename__ = "sentiment_analysis"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    content_id: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    content_type: Mapped[str] = mapped_column(
        String,
        CheckConstraint(_in("content_type", CONTENT_TYPES)),
        nullable=False,
    )
    sentiment_score: Mapped[float] = mapped_column(
        Float, CheckConstraint("sentiment_score BETWEEN -1 AND 1"), nullable=False
    )
    sentiment_label: Mapped[str] = mapped_column(
        String,
        CheckConstraint(_in("sentiment_label", SENTIMENT_LABELS)),
        nullable=False,
    )
    confidence: Mapped[float] = mapped_column(
        Float, CheckConstraint("confidence BETWEEN 0 AND 1"), nullable=False
    )
    method: Mapped[str] = mapped_column(
        String,
        CheckConstraint(_in("method", ANALYSIS_METHODS)),
        nullable=False,
    )
    key_phrases: Mapped[list[str]] = mapped_column(ARRAY(Text), default=list)
    cluster_id: Mapped[Optional[int]] = mapped_column(Integer)
    raw_response: Mapped[Optional[dict]] = mapped_column(JSONB)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_sentiment_content_type", "content_type"),
        Index("idx_sentiment_cluster", "cluster_id", postgresql_where="cluster_id IS NOT NULL"),
    )


class Alert(Base):
    __tablename__ = "alerts"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    client_id: Mapped[str] = mapped_column(Text, nullable=False)
    client_name: Mapped[Optional[str]] = mapped_column(Text)
    client_email: Mapped[Optional[str]] = mapped_column(Text)
    trigger_type: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[str] = mapped_column(
        String,
        CheckConstraint(_in("severity", ALERT_SEVERITIES)),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String,
        CheckConstraint(_in("status", ALERT_STATUSES)),
        default="Pending",
    )
    source: Mapped[str] = mapped_column(
        String,
        CheckConstraint(_in("source", ALERT_SOURCES)),
        nullable=False,
    )
    analysis_payload: Mapped[Optional[dict]] = mapped_column(JSONB)
    data_snapshot: Mapped[Optional[str]] = mapped_column(Text)
    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    notifications: Mapped[list["EmailNotification"]] = relationship(back_populates="alert")

    __table_args__ = (
        Index("idx_alerts_client_trigger", "client_id", "trigger_type"),
        Index("idx_alerts_status", "status"),
        Index("idx_alerts_detected", "detected_at"),
        # At most one Pending alert per (client, trigger)
        Index(
            "uq_alerts_pending_client_trigger",
            "client_id",
            "trigger_type",
            unique=True,
            postgresql_where="status = 'Pending'",
        ),
    )


class EmailNotification(Base):
    __tablename__ = "email_notifications"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    alert_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("alerts.id", ondelete="CASCADE"), nullable=False
    )
    subject: Mapped[str] = mapped_column(Text, nullable=False)
    recipient: Mapped[Optional[str]] = mapped_column(Text)
    sender: Mapped[str] = mapped_column(Text, nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, default="Logged")
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    alert: Mapped["Alert"] = relationship(back_populates="notifications")


class AIConversation(Base):
    __tablename__ = "ai_conversations"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_type: Mapped[str] = mapped_column(Text, nullable=False)
    model: Mapped[str] = mapped_column(Text, nullable=False)
    prompt_version: Mapped[Optional[str]] = mapped_column(Text)
    request_messages: Mapped[dict] = mapped_column(JSONB, nullable=False)
    response_content: Mapped[dict] = mapped_column(JSONB, nullable=False)
    input_tokens: Mapped[Optional[int]] = mapped_column(Integer)
    output_tokens: Mapped[Optional[int]] = mapped_column(Integer)
    latency_ms: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_ai_conversations_type", "session_type"),
        Index("idx_ai_conversations_date", "created_at"),
    )
