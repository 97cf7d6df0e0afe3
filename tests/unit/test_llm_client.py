"""
Unit tests for the structured LLM client.
"""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock

import httpx
import openai
import pytest

from targetgraph.core.exceptions import (
    DatabaseConnectionError,
    DatabaseUnavailableError,
    SchemaValidationError,
)
from targetgraph.llm import StructuredLLMClient, clamp_cooldown_ms
from targetgraph.models import ExtractedMentions

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def client_returning(**kwargs):
    fake = Mock()
    fake.chat.completions.create = AsyncMock(**kwargs)
    return StructuredLLMClient(api_key=None, client=fake), fake


@pytest.mark.unit
class TestStructuredLLMClient:

    def test_unconfigured_is_unavailable(self):
        assert not StructuredLLMClient(api_key=None).available

    async def test_unconfigured_call_fails_fast(self):
        with pytest.raises(DatabaseUnavailableError):
            await StructuredLLMClient(api_key=None).complete_json("x", ExtractedMentions, "s", "u")

    async def test_valid_reply_is_parsed(self):
        reply = {
            "intent": "multihop-discovery",
            "mentions": [{"text": "asthma", "type": "disease"}],
            "constraints": [],
            "rationale": "one disease",
        }
        llm, fake = client_returning(return_value=completion(json.dumps(reply)))

        parsed = await llm.complete_json("mentions", ExtractedMentions, "system", "user", timeout=4.2)

        assert parsed.mentions[0].text == "asthma"
        kwargs = fake.chat.completions.create.await_args.kwargs
        assert kwargs["response_format"]["json_schema"]["name"] == "mentions"
        assert kwargs["timeout"] == 4.2

    @pytest.mark.parametrize("content", [None, "", "{\"intent\": 3}", "not json"])
    async def test_bad_reply_is_schema_error(self, content):
        llm, _ = client_returning(return_value=completion(content))
        with pytest.raises(SchemaValidationError):
            await llm.complete_json("mentions", ExtractedMentions, "system", "user")

    async def test_rate_limit_starts_cooldown(self):
        error = openai.RateLimitError(
            "slow down",
            response=httpx.Response(429, headers={"retry-after": "30"}, request=REQUEST),
            body=None,
        )
        llm, fake = client_returning(side_effect=error)

        with pytest.raises(DatabaseUnavailableError) as exc:
            await llm.complete_json("mentions", ExtractedMentions, "system", "user")

        assert exc.value.retry_after == 30
        assert llm.cooling_down
        assert not llm.available

        with pytest.raises(DatabaseUnavailableError):
            await llm.complete_json("mentions", ExtractedMentions, "system", "user")
        assert fake.chat.completions.create.await_count == 1

    async def test_api_error_is_connection_error(self):
        error = openai.APIConnectionError(request=REQUEST)
        llm, _ = client_returning(side_effect=error)
        with pytest.raises(DatabaseConnectionError):
            await llm.complete_json("mentions", ExtractedMentions, "system", "user")

    @pytest.mark.parametrize("value,expected", [(100, 5000), (25000, 25000), (10**6, 90000)])
    def test_cooldown_is_clamped(self, value, expected):
        assert clamp_cooldown_ms(value) == expected
