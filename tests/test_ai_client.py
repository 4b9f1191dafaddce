"""
CaseCompass - AI Client Tests
The real AIClient against an httpx MockTransport: model fallback, per-model
parameters, tool calls, embeddings and the provider health check.
"""

import json

import httpx
import pytest

from app.core.config import Settings
from app.core.errors import AINotConfigured, AIServiceError
from app.services.ai_client import AIClient, AIResponseParseError

NEW_MODEL = "gpt-4.1-2025-04-14"
LEGACY_MODEL = "gpt-4o-mini"


def _settings(**overrides) -> Settings:
    values = {
        "openai_api_key": "test-key",
        "openai_base_url": "https://ai.test/v1",
        "chat_models": f"{NEW_MODEL},{LEGACY_MODEL}",
        "embedding_models": "text-embedding-3-large,text-embedding-3-small",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def _completion(content=None, tool_calls=None) -> dict:
    message = {"role": "assistant", "content": content}
    if tool_calls is not None:
        message["tool_calls"] = tool_calls
    return {"choices": [{"message": message}]}


class Provider:
    """Scripted provider: answers per model name and records every request body."""

    def __init__(self, replies: dict):
        self.replies = replies
        self.requests: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        self.requests.append({"path": request.url.path, "body": body, "auth": request.headers.get("Authorization")})
        reply = self.replies.get(body.get("model"), (500, {"error": "unknown model"}))
        status_code, payload = reply
        return httpx.Response(status_code, json=payload)

    @property
    def models(self) -> list[str]:
        return [r["body"].get("model") for r in self.requests]


def _client(provider, **overrides) -> AIClient:
    return AIClient(_settings(**overrides), transport=httpx.MockTransport(provider))


# =============================================================================
# Chat & Fallback
# =============================================================================

class TestChat:

    @pytest.mark.anyio
    async def test_first_model_answers(self):
        provider = Provider({NEW_MODEL: (200, _completion("Hello Sarah"))})
        reply = await _client(provider).chat([{"role": "user", "content": "Hi"}])
        assert reply == "Hello Sarah"
        assert provider.models == [NEW_MODEL]
        assert provider.requests[0]["path"] == "/v1/chat/completions"
        assert provider.requests[0]["auth"] == "Bearer test-key"

    @pytest.mark.anyio
    async def test_server_error_falls_through_to_next_model(self):
        provider = Provider({
            NEW_MODEL: (503, {"error": "overloaded"}),
            LEGACY_MODEL: (200, _completion("From the fallback")),
        })
        reply = await _client(provider).chat([{"role": "user", "content": "Hi"}])
        assert reply == "From the fallback"
        assert provider.models == [NEW_MODEL, LEGACY_MODEL]

    @pytest.mark.anyio
    async def test_unauthorized_stops_the_chain(self):
        provider = Provider({
            NEW_MODEL: (401, {"error": "bad key"}),
            LEGACY_MODEL: (200, _completion("never reached")),
        })
        with pytest.raises(AIServiceError) as excinfo:
            await _client(provider).chat([{"role": "user", "content": "Hi"}])
        assert excinfo.value.code == "AI_UNAUTHORIZED"
        assert provider.models == [NEW_MODEL]

    @pytest.mark.anyio
    async def test_network_error_falls_through(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if json.loads(request.content)["model"] == NEW_MODEL:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json=_completion("Recovered"))

        client = AIClient(_settings(), transport=httpx.MockTransport(handler))
        assert await client.chat([{"role": "user", "content": "Hi"}]) == "Recovered"

    @pytest.mark.anyio
    async def test_exhausted_chain_raises(self):
        provider = Provider({})
        with pytest.raises(AIServiceError) as excinfo:
            await _client(provider).chat([{"role": "user", "content": "Hi"}])
        assert excinfo.value.message == "All AI models failed for task: conversation"
        assert provider.models == [NEW_MODEL, LEGACY_MODEL]

    @pytest.mark.anyio
    async def test_missing_key_is_not_configured(self):
        provider = Provider({NEW_MODEL: (200, _completion("unused"))})
        with pytest.raises(AINotConfigured):
            await _client(provider, openai_api_key="").chat([{"role": "user", "content": "Hi"}])
        assert provider.requests == []


class TestModelParameters:

    @pytest.mark.anyio
    async def test_newer_models_take_max_completion_tokens(self):
        provider = Provider({NEW_MODEL: (200, _completion("ok"))})
        await _client(provider).chat([{"role": "user", "content": "Hi"}], max_tokens=300, temperature=0.2)
        body = provider.requests[0]["body"]
        assert body["max_completion_tokens"] == 300
        assert "max_tokens" not in body
        assert "temperature" not in body

    @pytest.mark.anyio
    async def test_legacy_models_take_max_tokens_and_temperature(self):
        provider = Provider({LEGACY_MODEL: (200, _completion("ok"))})
        await _client(provider, chat_models=LEGACY_MODEL).chat([{"role": "user", "content": "Hi"}], max_tokens=300)
        body = provider.requests[0]["body"]
        assert body["max_tokens"] == 300
        assert body["temperature"] == 0.7
        assert "max_completion_tokens" not in body

    @pytest.mark.anyio
    async def test_json_mode_sets_response_format(self):
        provider = Provider({LEGACY_MODEL: (200, _completion('{"category": "other"}'))})
        client = _client(provider, chat_models=LEGACY_MODEL)
        data = await client.chat_json([{"role": "user", "content": "Classify"}], task="conversation")
        assert data == {"category": "other"}
        body = provider.requests[0]["body"]
        assert body["response_format"] == {"type": "json_object"}
        assert body["temperature"] == 0.1

    @pytest.mark.anyio
    async def test_chat_json_rejects_non_json(self):
        provider = Provider({NEW_MODEL: (200, _completion("Sorry, I cannot help"))})
        with pytest.raises(AIResponseParseError):
            await _client(provider).chat_json([{"role": "user", "content": "Classify"}], task="conversation")


# =============================================================================
# Tool Calls & Embeddings
# =============================================================================

class TestCallTool:

    @pytest.mark.anyio
    async def test_returns_parsed_arguments(self):
        tool_calls = [{"function": {"name": "create_milestone_plan", "arguments": '{"milestones": []}'}}]
        provider = Provider({NEW_MODEL: (200, _completion(None, tool_calls))})
        result = await _client(provider).call_tool(
            [{"role": "user", "content": "Plan"}],
            tool_name="create_milestone_plan",
            description="Create a plan",
            parameters={"type": "object"},
            task="conversation",
        )
        assert result == {"milestones": []}
        body = provider.requests[0]["body"]
        assert body["tool_choice"] == {"type": "function", "function": {"name": "create_milestone_plan"}}
        assert body["tools"][0]["function"]["name"] == "create_milestone_plan"

    @pytest.mark.anyio
    async def test_missing_tool_call(self):
        provider = Provider({NEW_MODEL: (200, _completion("I would rather chat"))})
        with pytest.raises(AIServiceError) as excinfo:
            await _client(provider).call_tool(
                [{"role": "user", "content": "Plan"}],
                tool_name="create_milestone_plan",
                description="Create a plan",
                parameters={"type": "object"},
                task="conversation",
            )
        assert excinfo.value.message == "No tool call in AI response"


class TestEmbed:

    @pytest.mark.anyio
    async def test_falls_back_to_smaller_model(self):
        provider = Provider({
            "text-embedding-3-large": (500, {"error": "down"}),
            "text-embedding-3-small": (200, {"data": [{"embedding": [0.1, 0.2]}]}),
        })
        assert await _client(provider).embed("He took my phone") == [0.1, 0.2]
        assert provider.models == ["text-embedding-3-large", "text-embedding-3-small"]
        assert provider.requests[1]["body"]["dimensions"] == 1536
        assert provider.requests[1]["path"] == "/v1/embeddings"


# =============================================================================
# Health
# =============================================================================

class TestHealth:

    @pytest.mark.anyio
    @pytest.mark.parametrize("code,expected", [
        (200, "ok"),
        (401, "unauthorized"),
        (429, "rate_limited"),
        (503, "openai_down"),
        (404, "degraded"),
    ])
    async def test_status_mapping(self, code, expected):
        client = AIClient(_settings(), transport=httpx.MockTransport(lambda request: httpx.Response(code, json={})))
        result = await client.health()
        assert result == {"service": "openai", "ok": code == 200, "status": expected, "code": code}

    @pytest.mark.anyio
    async def test_network_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        result = await AIClient(_settings(), transport=httpx.MockTransport(handler)).health()
        assert result["status"] == "network_error"
        assert result["ok"] is False

    @pytest.mark.anyio
    async def test_missing_key(self):
        result = await AIClient(_settings(openai_api_key="")).health()
        assert result == {"service": "openai", "ok": False, "status": "missing_key", "code": None}
