"""Structured-JSON calls to the remote AI analysis service (Claude)."""

import json
import logging
import time
from typing import Optional

import anthropic
from sqlalchemy.ext.asyncio import AsyncSession

from pulse.config import AnthropicSettings, get_settings
from pulse.storage.ai_log import store_ai_conversation

logger = logging.getLogger(__name__)


class AIUnavailableError(RuntimeError):
    """No API key configured; remote analysis is disabled."""


class AIResponseError(ValueError):
    """The reply could not be parsed into a JSON object."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


def parse_json_object(raw_text: str) -> dict:
    """Extract the first JSON object from a model reply.

    Tolerates markdown code fences and prose around the object.
    """
    text = (raw_text or "").strip()
    if not text:
        raise AIResponseError("Empty response", raw_text)

    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else text[3:]
    if text.rstrip().endswith("```"):
        text = text.rstrip()[:-3]

    try:
        start = text.index("{")
        end = text.rindex("}") + 1
        parsed = json.loads(text[start:end])
    except (json.JSONDecodeError, ValueError) as e:
        raise AIResponseError(f"Malformed JSON: {e}", raw_text) from e

    if not isinstance(parsed, dict):
        raise AIResponseError("Response is not a JSON object", raw_text)
    return parsed


class AIClient:
    """Thin wrapper over the Anthropic Messages API that always expects JSON back."""

    def __init__(self, settings: Optional[AnthropicSettings] = None):
        self.settings = settings or get_settings().anthropic
        self._client: Optional[anthropic.AsyncAnthropic] = None

    @property
    def available(self) -> bool:
        return bool(self.settings.api_key)

    def _get_client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(
                api_key=self.settings.api_key,
                timeout=self.settings.timeout_seconds,
                max_retries=1,
            )
        return self._client

    async def complete_json(
        self,
        session: AsyncSession,
        session_type: str,
        system: str,
        prompt: str,
        max_tokens: int = 1000,
        temperature: float = 0.1,
        prompt_version: Optional[str] = None,
    ) -> dict:
        """Send one prompt and return the parsed JSON object.

        Raises AIUnavailableError without an API key, AIResponseError on an
        unparseable reply, and anthropic.APIError on transport failures.
        """
        if not self.available:
            raise AIUnavailableError("No Anthropic API key configured")

        messages = [{"role": "user", "content": prompt}]
        start_time = time.time()

        try:
            response = await self._get_client().messages.create(
                model=self.settings.model,
                max_tokens=max_tokens,
                temperature=temperature,
                system=system,
                messages=messages,
            )
        except Exception as e:
            logger.warning("%s call failed: %s", session_type, e)
            if self.settings.store_ai_conversations:
                await store_ai_conversation(
                    session=session,
                    session_type=session_type,
                    model=self.settings.model,
                    prompt_version=prompt_version,
                    request_messages=[{"role": "system", "content": system}, *messages],
                    response_content={"raw": None, "parsed": None, "error": f"{type(e).__name__}: {e}"},
                    latency_ms=int((time.time() - start_time) * 1000),
                )
            raise

        latency_ms = int((time.time() - start_time) * 1000)
        raw_text = response.content[0].text if response.content else ""

        parsed: Optional[dict] = None
        error: Optional[AIResponseError] = None
        try:
            parsed = parse_json_object(raw_text)
        except AIResponseError as e:
            error = e
            logger.warning("Unparseable %s response: %s", session_type, raw_text[:300])

        if self.settings.store_ai_conversations:
            await store_ai_conversation(
                session=session,
                session_type=session_type,
                model=self.settings.model,
                prompt_version=prompt_version,
                request_messages=[{"role": "system", "content": system}, *messages],
                response_content={"raw": raw_text, "parsed": parsed},
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
                latency_ms=latency_ms,
            )

        if error is not None:
            raise error
        return parsed
