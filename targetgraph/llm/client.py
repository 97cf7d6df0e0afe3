"""
Structured LLM Client

Thin wrapper over ``openai.AsyncOpenAI`` chat completions that requests a
JSON-schema response and validates it with pydantic. Rate-limit replies put
the client into a cooldown during which every call fails fast, so callers
drop to their deterministic fallbacks without waiting.
"""

import logging
import time
from typing import Optional, Type, TypeVar

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

from ..core.exceptions import (
    DatabaseConnectionError,
    DatabaseTimeoutError,
    DatabaseUnavailableError,
    SchemaValidationError,
)
from ..core.metrics import record_llm_call

logger = logging.getLogger(__name__)

M = TypeVar('M', bound=BaseModel)

COOLDOWN_FLOOR_MS = 5000
COOLDOWN_CEILING_MS = 90000


def clamp_cooldown_ms(value_ms: float) -> int:
    return int(max(COOLDOWN_FLOOR_MS, min(COOLDOWN_CEILING_MS, value_ms)))


class StructuredLLMClient:
    """
    JSON-schema chat completions validated against pydantic models.

    Example:
        >>> llm = StructuredLLMClient(api_key, model="gpt-4.1")
        >>> if llm.available:
        ...     ranking = await llm.complete_json(
        ...         "targetgraph_ranking", RankingResponse, system_prompt, user_prompt
        ...     )
    """

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gpt-4.1",
        small_model: str = "gpt-4.1-mini",
        cooldown_ms: int = 25000,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.model = model
        self.small_model = small_model
        self.default_cooldown_ms = clamp_cooldown_ms(cooldown_ms)
        self._client = client or (AsyncOpenAI(api_key=api_key) if api_key else None)
        self._cooldown_until = 0.0

    @classmethod
    def from_config(cls, config) -> 'StructuredLLMClient':
        return cls(
            api_key=config.openai_api_key,
            model=config.openai_model,
            small_model=config.openai_small_model,
            cooldown_ms=config.llm_cooldown_ms,
        )

    @property
    def configured(self) -> bool:
        return self._client is not None

    @property
    def cooling_down(self) -> bool:
        return time.monotonic() < self._cooldown_until

    @property
    def available(self) -> bool:
        """True when a key is configured and no rate-limit cooldown is active."""
        return self.configured and not self.cooling_down

    def start_cooldown(self, retry_after_seconds: Optional[float] = None) -> int:
        """Enter cooldown; returns its length in milliseconds."""
        if retry_after_seconds is not None:
            cooldown_ms = clamp_cooldown_ms(retry_after_seconds * 1000)
        else:
            cooldown_ms = self.default_cooldown_ms
        self._cooldown_until = time.monotonic() + cooldown_ms / 1000
        logger.warning(f"LLM rate limited; cooling down for {cooldown_ms} ms")
        return cooldown_ms

    async def complete_json(
        self,
        schema_name: str,
        model_cls: Type[M],
        system_prompt: str,
        user_prompt: str,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        temperature: float = 0.1,
    ) -> M:
        """
        One schema-constrained completion.

        Raises:
            DatabaseUnavailableError: No key configured, cooldown active, or rate limited
            DatabaseTimeoutError: The request timed out
            DatabaseConnectionError: Any other API failure
            SchemaValidationError: The reply does not validate against ``model_cls``
        """
        if self._client is None:
            raise DatabaseUnavailableError("openai", "no API key configured")
        if self.cooling_down:
            remaining = int(self._cooldown_until - time.monotonic()) + 1
            raise DatabaseUnavailableError("openai", "rate-limit cooldown active", retry_after=remaining)

        try:
            response = await self._client.chat.completions.create(
                model=model or self.model,
                temperature=temperature,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                response_format={
                    "type": "json_schema",
                    "json_schema": {
                        "name": schema_name,
                        "schema": model_cls.model_json_schema(),
                        "strict": False,
                    },
                },
                timeout=timeout,
            )
        except openai.RateLimitError as e:
            record_llm_call(schema_name, "rate_limited")
            retry_after = _retry_after_seconds(e)
            cooldown_ms = self.start_cooldown(retry_after)
            raise DatabaseUnavailableError(
                "openai", "rate limited", retry_after=int(cooldown_ms / 1000)
            ) from e
        except openai.APITimeoutError as e:
            record_llm_call(schema_name, "timeout")
            raise DatabaseTimeoutError("openai", timeout or 0.0, query=schema_name) from e
        except openai.APIError as e:
            record_llm_call(schema_name, "error")
            raise DatabaseConnectionError("openai", f"{type(e).__name__}: {e}", {"schema": schema_name}) from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            record_llm_call(schema_name, "invalid")
            raise SchemaValidationError(schema_name, "empty completion")

        try:
            parsed = model_cls.model_validate_json(content)
        except ValidationError as e:
            record_llm_call(schema_name, "invalid")
            raise SchemaValidationError(schema_name, f"{e.error_count()} validation error(s)") from e

        record_llm_call(schema_name, "success")
        return parsed


def _retry_after_seconds(error: openai.RateLimitError) -> Optional[float]:
    response = getattr(error, "response", None)
    header = response.headers.get("retry-after") if response is not None else None
    if not header:
        return None
    try:
        return float(header)
    except ValueError:
        return None
