"""
AI capability used by the pipeline stages.

Everything that talks to a model goes through AIClient. Consumers must
tolerate empty or malformed output; only transport failures and timeouts
raise (as UpstreamError).
"""

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any

from openai import AsyncOpenAI, OpenAIError
from pydantic import ValidationError as PydanticValidationError

from colloquy.config import settings
from colloquy.errors import UpstreamError
from colloquy.schemas import ClaimRelation
from colloquy.services.claim_relations import heuristic_relation

logger = logging.getLogger(__name__)

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")

CLASSIFY_PROMPT = (
    "You compare two claims taken from different participants in a discussion.\n\n"
    "Claim A: {claim_a}\n"
    "Claim B: {claim_b}\n\n"
    "Decide whether the claims agree (assert the same thing), contradict "
    "(one denies or directly rebuts the other) or are unrelated.\n\n"
    'Respond with a JSON object: {{"relation": "agree" | "contradict" | "unrelated", '
    '"confidence": number between 0 and 1}}\n\n'
    "JSON:"
)


def parse_json_object(text: str | None) -> dict[str, Any] | None:
    """
    Pull the first JSON object out of a model response.

    Strips markdown code fences and trailing commas. Returns None when no
    object can be parsed.
    """
    if not text:
        return None

    result_text = text.strip()
    if result_text.startswith("```"):
        result_text = result_text.split("```")[1]
        if result_text.startswith("json"):
            result_text = result_text[4:]
    result_text = result_text.strip()

    match = _JSON_OBJECT.search(result_text)
    if not match:
        return None

    try:
        parsed = json.loads(_TRAILING_COMMA.sub(r"\1", match.group(0)))
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


class AIClient(ABC):
    """Black-box model capability: complete a prompt, classify a pair of claims."""

    @abstractmethod
    async def complete(self, prompt: str, max_tokens: int = 1500, temperature: float = 0) -> str:
        ...

    async def classify(self, claim_a: str, claim_b: str) -> ClaimRelation | None:
        """Classify two claims. None when the response is unusable."""
        text = await self.complete(
            CLASSIFY_PROMPT.format(claim_a=claim_a, claim_b=claim_b), max_tokens=100
        )
        parsed = parse_json_object(text)
        if parsed is None:
            logger.warning("Claim classification returned no JSON object")
            return None
        try:
            return ClaimRelation.model_validate(parsed)
        except PydanticValidationError as e:
            logger.warning(f"Claim classification malformed: {e}")
            return None


class OpenAIClient(AIClient):
    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        timeout_seconds: float = 300.0,
    ):
        self.client = AsyncOpenAI(api_key=api_key)
        self.model = model
        self.timeout_seconds = timeout_seconds

    async def complete(self, prompt: str, max_tokens: int = 1500, temperature: float = 0) -> str:
        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=self.model,
                    messages=[{"role": "user", "content": prompt}],
                    max_tokens=max_tokens,
                    temperature=temperature,
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise UpstreamError(f"AI call timed out after {self.timeout_seconds}s")
        except OpenAIError as e:
            raise UpstreamError(f"AI call failed: {e}") from e

        content = response.choices[0].message.content
        return (content or "").strip()


class OfflineAIClient(AIClient):
    """
    Used when no API key is configured. Completions come back empty, so
    every stage takes its fallback path; claim pairs go through the lexical
    heuristic.
    """

    async def complete(self, prompt: str, max_tokens: int = 1500, temperature: float = 0) -> str:
        return ""

    async def classify(self, claim_a: str, claim_b: str) -> ClaimRelation | None:
        return heuristic_relation(claim_a, claim_b)


def get_ai_client() -> AIClient:
    if not settings.openai_api_key:
        logger.warning("No OpenAI API key configured, using offline AI client")
        return OfflineAIClient()
    return OpenAIClient(
        api_key=settings.openai_api_key,
        model=settings.openai_model,
        timeout_seconds=settings.ai_timeout_seconds,
    )
