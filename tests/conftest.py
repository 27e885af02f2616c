"""Shared test fixtures."""

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock


def _mock_with(defaults: dict, overrides: dict):
    defaults.update(overrides)
    mock = MagicMock()
    for k, v in defaults.items():
        setattr(mock, k, v)
    return mock


def make_client(**overrides):
    """Create a mock Client object for testing."""
    defaults = {
        "client_id": "C001",
        "primary_contact": "Jane Smith",
        "region": "North America",
        "industry": "Insurance",
        "contract_status": "Active",
        "annual_spend_usd": 250000,
        "health_score": 6.5,
        "risk_flag": "Medium",
        "client_email": "c001.clientinsure@gmail.com",
    }
    return _mock_with(defaults, overrides)


def make_metrics(**overrides):
    """Create a mock ClientMetrics object for testing."""
    defaults = {
        "client_id": "C001",
        "avg_response_days": 2.5,
        "avg_delivery_days": 4.0,
        "escalations": 1,
        "delivered": 12,
        "backlog": 4,
        "support_score": 85,
    }
    return _mock_with(defaults, overrides)


def make_alert(**overrides):
    """Create a mock Alert object for testing."""
    defaults = {
        "id": uuid.uuid4(),
        "client_id": "C001",
        "client_name": "Jane Smith",
        "client_email": "c001.clientinsure@gmail.com",
        "trigger_type": "HIGH_ESCALATIONS",
        "description": "Escalations above threshold",
        "severity": "High",
        "status": "Pending",
        "source": "metrics",
        "analysis_payload": None,
        "data_snapshot": None,
        "detected_at": datetime(2026, 2, 1, 12, 0, 0, tzinfo=timezone.utc),
        "resolved_at": None,
    }
    return _mock_with(defaults, overrides)


def make_analysis(**overrides):
    """Create a mock SentimentAnalysis object for testing."""
    defaults = {
        "id": uuid.uuid4(),
        "content_id": str(uuid.uuid4()),
        "content_type": "conversation",
        "sentiment_score": 0.5,
        "sentiment_label": "positive",
        "confidence": 0.8,
        "method": "local",
        "key_phrases": ["delivery", "invoice"],
        "cluster_id": None,
    }
    return _mock_with(defaults, overrides)


def make_result(scalars=None, scalar=None, rows=None):
    """Mock of a SQLAlchemy Result covering the accessors the code uses."""
    result = MagicMock()
    result.scalars.return_value.all.return_value = list(scalars or [])
    result.scalar_one_or_none.return_value = scalar
    result.scalar_one.return_value = scalar
    result.all.return_value = list(rows or [])
    return result


def make_session(execute_result=None):
    """Mock AsyncSession. ``begin_nested()`` works as an async context manager."""
    session = AsyncMock()
    session.add = MagicMock()
    session.begin_nested = MagicMock()
    session.execute = AsyncMock(return_value=execute_result if execute_result is not None else make_result())
    return session


def make_session_factory(session):
    """Stand-in for ``get_session`` that always yields ``session``."""

    @asynccontextmanager
    async def factory():
        yield session

    return factory
