"""Sentiment classification: local model first, remote AI as fallback."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Literal, Optional, Protocol

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy import Text, cast, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.config import LocalModelSettings, SentimentSettings, Settings, get_settings
from pulse.processing.ai import AIClient, AIResponseError, AIUnavailableError
from pulse.processing.keyphrases import extract_key_phrases
from pulse.storage.models import Conversation, Email, SentimentAnalysis

logger = logging.getLogger(__name__)

SENTIMENT_PROMPT_VERSION = "v1.0"

SENTIMENT_SYSTEM = """Analyze the sentiment of the client message you are given.
Respond with JSON only, no other text:
{"sentiment_score": <number from -1 to 1>, "sentiment_label": "positive" | "neutral" | "negative", "confidence": <number from 0 to 1>}

sentiment_score is the signed polarity. confidence is how certain you are of the label,
independent of how strong the sentiment is."""


@dataclass
class SentimentResult:
    """Outcome of one classifier attempt, tagged with the method that produced it."""

    method: Literal["local", "remote"]
    score: float
    label: str
    confidence: float
    raw: dict = field(default_factory=dict)


class ClassifierUnavailable(RuntimeError):
    pass


class SentimentClassifier(Protocol):
    method: str

    async def classify(self, session: AsyncSession, text: str) -> SentimentResult:
        ...


class RemoteSentiment(BaseModel):
    """Strict response contract for the remote classifier."""

    sentiment_score: float = Field(ge=-1.0, le=1.0)
    sentiment_label: Literal["positive", "neutral", "negative"]
    confidence: float = Field(ge=0.0, le=1.0)


def result_from_local(output: list[dict]) -> SentimentResult:
    """Map a transformers ``sentiment-analysis`` output to a signed result.

    POSITIVE keeps the model probability as the score, NEGATIVE negates it.
    Confidence is the probability itself.
    """
    top = output[0]
    label = str(top["label"]).upper()
    probability = float(top["score"])
    if label not in ("POSITIVE", "NEGATIVE"):
        raise ValueError(f"Unexpected local label: {top['label']}")

    return SentimentResult(
        method="local",
        score=probability if label == "POSITIVE" else -probability,
        label=label.lower(),
        confidence=probability,
        raw={"output": output},
    )


class LocalClassifier:
    """Hugging Face ``transformers`` pipeline, loaded once and run off the event loop."""

    method = "local"

    def __init__(self, settings: LocalModelSettings):
        self.settings = settings
        self._pipe = None
        self._load_attempted = False

    @property
    def loaded(self) -> bool:
        return self._pipe is not None

    async def load(self) -> bool:
        """Load the model once. A failure disables the local stage."""
        if self._load_attempted:
            return self.loaded
        self._load_attempted = True

        if not self.settings.enabled:
            logger.info("Local sentiment model disabled")
            return False

        try:
            self._pipe = await asyncio.to_thread(self._build_pipeline)
            logger.info("Loaded local sentiment model %s", self.settings.name)
        except Exception as e:
            logger.warning("Local sentiment model unavailable, using remote only: %s", e)
            self._pipe = None
        return self.loaded

    def _build_pipeline(self):
        from transformers import pipeline

        return pipeline("sentiment-analysis", model=self.settings.name)

    async def classify(self, session: AsyncSession, text: str) -> SentimentResult:
        if self._pipe is None:
            raise ClassifierUnavailable("Local model not loaded")
        output = await asyncio.to_thread(self._pipe, text[: self.settings.max_chars])
        return result_from_local(output)


class RemoteClassifier:
    method = "remote"

    def __init__(self, ai: AIClient, max_chars: int = 1000):
        self.ai = ai
        self.max_chars = max_chars

    async def classify(self, session: AsyncSession, text: str) -> SentimentResult:
        data = await self.ai.complete_json(
            session,
            session_type="sentiment",
            system=SENTIMENT_SYSTEM,
            prompt=text[: self.max_chars],
            max_tokens=200,
            prompt_version=SENTIMENT_PROMPT_VERSION,
        )
        parsed = RemoteSentiment.model_validate(data)
        return SentimentResult(
            method="remote",
            score=parsed.sentiment_score,
            label=parsed.sentiment_label,
            confidence=parsed.confidence,
            raw=data,
        )


async def get_analysis(session: AsyncSession, content_id: str) -> Optional[SentimentAnalysis]:
    result = await session.execute(
        select(SentimentAnalysis).where(SentimentAnalysis.content_id == content_id)
    )
    return result.scalar_one_or_none()


async def insert_analysis(session: AsyncSession, values: dict) -> Optional[SentimentAnalysis]:
    """Insert-if-absent on content_id. Returns None if another writer got there first."""
    stmt = (
        pg_insert(SentimentAnalysis)
        .values(**values)
        .on_conflict_do_nothing(index_elements=[SentimentAnalysis.content_id])
        .returning(SentimentAnalysis)
    )
    result = await session.scalars(stmt)
    return result.one_or_none()


class SentimentPipeline:
    """Runs an ordered chain of classifiers and persists one result per content unit."""

    def __init__(self, classifiers: list[SentimentClassifier], settings: Optional[SentimentSettings] = None):
        self.classifiers = classifiers
        self.settings = settings or get_settings().sentiment

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, ai: Optional[AIClient] = None) -> "SentimentPipeline":
        settings = settings or get_settings()
        ai = ai or AIClient(settings.anthropic)
        return cls(
            [
                LocalClassifier(settings.local_model),
                RemoteClassifier(ai, settings.sentiment.remote_max_chars),
            ],
            settings.sentiment,
        )

    async def load(self) -> None:
        for classifier in self.classifiers:
            if isinstance(classifier, LocalClassifier):
                await classifier.load()

    async def _run_chain(self, session: AsyncSession, text: str) -> Optional[SentimentResult]:
        for classifier in self.classifiers:
            try:
                return await classifier.classify(session, text)
            except ClassifierUnavailable:
                continue
            except AIUnavailableError as e:
                logger.debug("Remote sentiment skipped: %s", e)
            except (AIResponseError, ValidationError) as e:
                logger.warning("Malformed %s sentiment response: %s", classifier.method, e)
            except Exception as e:
                logger.warning("%s sentiment classification failed: %s", classifier.method.capitalize(), e)
        return None

    async def classify(
        self,
        session: AsyncSession,
        content_id: str,
        content_type: str,
        text: str,
    ) -> Optional[SentimentAnalysis]:
        """Classify one content unit. No-op if it already has an analysis row.

        Returns the stored row, or None if every classifier failed.
        """
        content_id = str(content_id)
        existing = await get_analysis(session, content_id)
        if existing is not None:
            return existing

        result = await self._run_chain(session, text or "")
        if result is None:
            logger.error("Sentiment analysis failed for %s %s: no classifier succeeded", content_type, content_id)
            return None

        record = await insert_analysis(
            session,
            {
                "content_id": content_id,
                "content_type": content_type,
                "sentiment_score": result.score,
                "sentiment_label": result.label,
                "confidence": result.confidence,
                "method": result.method,
                "key_phrases": extract_key_phrases(text or "", self.settings.key_phrase_count),
                "raw_response": result.raw,
            },
        )
        if record is None:
            logger.debug("Sentiment for %s %s already stored by another cycle", content_type, content_id)
            return await get_analysis(session, content_id)

        logger.info(
            "Analyzed sentiment for %s %s: %s (%.2f, %s)",
            content_type,
            content_id,
            record.sentiment_label,
            record.confidence,
            record.method,
        )
        return record

    async def process_pending(self, session: AsyncSession) -> dict:
        """Classify one bounded batch of conversations and unprocessed emails.

        Whatever doesn't fit in the batch is picked up on the next cycle.
        """
        summary = {"conversations": 0, "emails": 0, "failed": 0, "errors": 0}

        result = await session.execute(
            select(Conversation)
            .outerjoin(SentimentAnalysis, SentimentAnalysis.content_id == cast(Conversation.id, Text))
            .where(SentimentAnalysis.id.is_(None))
            .order_by(Conversation.created_at)
            .limit(self.settings.conversation_batch_size)
        )
        for conv in result.scalars().all():
            try:
                async with session.begin_nested():
                    record = await self.classify(session, str(conv.id), "conversation", conv.message)
            except Exception as e:
                logger.error("Failed to classify conversation %s: %s", conv.id, e)
                summary["errors"] += 1
                continue
            if record is None:
                summary["failed"] += 1
            else:
                summary["conversations"] += 1

        result = await session.execute(
            select(Email)
            .where(Email.processed.is_(False))
            .order_by(Email.received_at)
            .limit(self.settings.email_batch_size)
        )
        for email in result.scalars().all():
            try:
                async with session.begin_nested():
                    record = await self.classify(session, str(email.id), "email", email_text(email))
            except Exception as e:
                logger.error("Failed to classify email %s: %s", email.id, e)
                summary["errors"] += 1
            else:
                if record is None:
                    summary["failed"] += 1
                else:
                    summary["emails"] += 1
            # Outside the savepoint so a rolled-back attempt still counts as tried
            email.processed = True

        await session.flush()
        return summary


def email_text(email: Email) -> str:
    return f"{email.subject or ''} {email.body or ''}".strip()
