"""
Model client — the narrow interface to the generative-text service.

Every model call in the pipeline asks for a JSON object matching a pydantic
schema. The client:
- extracts the JSON (```json fences tolerated),
- validates it against the schema,
- runs an optional grounding check against the caller's inputs,
- retries answers that fail any of those steps.

Callers decide what a failure means: the prioritizer falls back to base
scores, job handlers let the consumer retry.
"""
from __future__ import annotations

import json
import re
import structlog
from typing import Any, Callable, Optional, TypeVar

from pydantic import BaseModel, ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import LLMConfig, get_settings
from core.errors import ModelResponseError, ModelUnavailableError

logger = structlog.get_logger()

T = TypeVar("T", bound=BaseModel)

# Returns a reason string when the output is not grounded in the inputs, None when it is
GroundingCheck = Callable[[Any], Optional[str]]

_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")


def extract_json(text: str) -> Any:
    """Parse the JSON payload of a model answer."""
    body = (text or "").strip()
    match = _FENCE.search(body)
    if match:
        body = match.group(1).strip()
    try:
        return json.loads(body)
    except ValueError as e:
        raise ModelResponseError(f"Model answer is not valid JSON: {e}") from e


def parse_output(text: str, schema: type[T], grounding: Optional[GroundingCheck] = None) -> T:
    try:
        output = schema.model_validate(extract_json(text))
    except ValidationError as e:
        raise ModelResponseError(f"Model answer does not match {schema.__name__}: {e}") from e

    if grounding is not None:
        reason = grounding(output)
        if reason:
            raise ModelResponseError(f"Grounding validation failed: {reason}")
    return output


class ModelClient:
    """Anthropic-backed JSON completion with schema validation and retries."""

    def __init__(self, llm: Optional[LLMConfig] = None):
        self._llm = llm or get_settings().llm
        self._client = None

    @property
    def available(self) -> bool:
        return bool(self._llm.api_key)

    async def _get_client(self):
        if not self.available:
            raise ModelUnavailableError("No API key configured for the model client")
        if self._client is None:
            import anthropic
            self._client = anthropic.AsyncAnthropic(
                api_key=self._llm.api_key,
                max_retries=self._llm.max_retries,
            )
            logger.info("llm_client_initialized", provider=self._llm.provider,
                        model=self._llm.model)
        return self._client

    async def _call(self, system: str, prompt: str, max_tokens: Optional[int] = None) -> str:
        import anthropic

        client = await self._get_client()
        try:
            response = await client.messages.create(
                model=self._llm.model,
                max_tokens=max_tokens or self._llm.max_tokens,
                temperature=self._llm.temperature,
                system=system,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIError as e:
            raise ModelUnavailableError(f"Model call failed: {e}") from e

        text = "".join(block.text for block in response.content if block.type == "text")
        if not text:
            raise ModelResponseError("No text content in model response")
        return text

    @retry(
        retry=retry_if_exception_type(ModelResponseError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        reraise=True,
    )
    async def complete_json(
        self,
        system: str,
        prompt: str,
        schema: type[T],
        grounding: Optional[GroundingCheck] = None,
        max_tokens: Optional[int] = None,
    ) -> T:
        """Ask for a JSON object matching `schema`. Invalid answers are retried."""
        text = await self._call(system, prompt, max_tokens)
        try:
            return parse_output(text, schema, grounding)
        except ModelResponseError as e:
            logger.warning("model_response_rejected", schema=schema.__name__, error=str(e))
            raise


def with_signal_context(system: str, signal_context: str) -> str:
    """Append cross-brand signals to a system prompt."""
    if not signal_context:
        return system
    return f"{system}\n\n## Cross-Brand Signals\n{signal_context}"
