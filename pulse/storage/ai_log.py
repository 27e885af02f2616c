"""Permanent record of every remote AI call."""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from pulse.storage.models import AIConversation

logger = logging.getLogger(__name__)


async def store_ai_conversation(
    session: AsyncSession,
    session_type: str,
    model: str,
    request_messages: list[dict],
    response_content: dict,
    prompt_version: Optional[str] = None,
    input_tokens: Optional[int] = None,
    output_tokens: Optional[int] = None,
    latency_ms: Optional[int] = None,
) -> AIConversation:
    """Log an AI API call, including calls whose reply could not be parsed."""
    conv = AIConversation(
        session_type=session_type,
        model=model,
        prompt_version=prompt_version,
        request_messages=request_messages,
        response_content=response_content,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        latency_ms=latency_ms,
    )
    session.add(conv)
    await session.flush()
    logger.debug("Logged AI conversation: %s (%s)", session_type, model)
    return conv
