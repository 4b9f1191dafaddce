"""
CaseCompass - AI Client
OpenAI-compatible chat, tool-call, embedding and vision client over httpx.

Each task type has an ordered model chain. A request walks the chain until a
model answers; an authentication failure stops the walk immediately since
every other model would fail the same way.
"""

import base64
import json
import logging
from typing import Any, Optional

import httpx

from app.core.config import Settings, get_settings
from app.core.errors import AINotConfigured, AIServiceError

logger = logging.getLogger(__name__)


class AIResponseParseError(AIServiceError):
    """The model answered, but not with the JSON we asked for."""
    code = "AI_PARSE_ERROR"


class AIClient:
    """
    Thin async client for an OpenAI-compatible API.
    """

    # Ordered fallback chains per task. "conversation" comes from settings.
    TASK_MODELS = {
        "categorization": ["gpt-4.1-mini-2025-04-14", "gpt-4o-mini"],
        "legal_analysis": ["gpt-4.1-2025-04-14", "gpt-4.1-mini-2025-04-14", "gpt-4o"],
        "evidence_processing": ["gpt-4.1-2025-04-14", "gpt-4.1-mini-2025-04-14", "gpt-4o"],
        "timeline_extraction": ["gpt-4.1-mini-2025-04-14", "gpt-4o-mini"],
        "planning": ["gpt-4.1-2025-04-14", "gpt-4.1-mini-2025-04-14", "gpt-4o"],
        "case_analysis": ["gpt-4.1-2025-04-14", "gpt-4.1-mini-2025-04-14", "gpt-4o"],
        "search_expansion": ["gpt-4.1-mini-2025-04-14", "gpt-4o-mini"],
        "conversation_summary": ["gpt-4o-mini", "gpt-4.1-mini-2025-04-14"],
    }

    # Older models take max_tokens + temperature; newer ones take
    # max_completion_tokens and reject a custom temperature.
    LEGACY_PREFIXES = ("gpt-4o", "gpt-4-", "gpt-3.5")

    DEFAULT_MAX_TOKENS = 2000

    def __init__(self, settings: Optional[Settings] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings or get_settings()
        self.transport = transport
        self.api_key = self.settings.openai_api_key
        self.base_url = self.settings.openai_base_url.rstrip("/")
        self.timeout = self.settings.ai_timeout_seconds

    @property
    def is_available(self) -> bool:
        """Check if an API key is configured."""
        return bool(self.api_key)

    def models_for(self, task: str) -> list[str]:
        if task == "conversation":
            return self.settings.chat_models_list
        return self.TASK_MODELS.get(task, self.settings.chat_models_list)

    # =========================================================================
    # Transport
    # =========================================================================

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _post(self, path: str, payload: dict) -> dict:
        if not self.is_available:
            raise AINotConfigured("AI provider API key is not configured")

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(
                f"{self.base_url}{path}",
                headers=self._headers(),
                json=payload,
            )

        if response.status_code == 401:
            raise AIServiceError(
                "AI provider rejected the API key",
                code="AI_UNAUTHORIZED",
                details={"status": 401},
            )
        if response.status_code != 200:
            raise AIServiceError(
                f"AI API error: {response.status_code}",
                details={"status": response.status_code, "body": response.text[:500]},
            )
        return response.json()

    def _build_payload(
        self,
        model: str,
        messages: list[dict],
        max_tokens: Optional[int],
        temperature: Optional[float],
        json_mode: bool,
    ) -> dict:
        payload: dict[str, Any] = {"model": model, "messages": messages}
        tokens = max_tokens or self.DEFAULT_MAX_TOKENS
        if model.startswith(self.LEGACY_PREFIXES):
            payload["max_tokens"] = tokens
            payload["temperature"] = 0.7 if temperature is None else temperature
        else:
            payload["max_completion_tokens"] = tokens
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        return payload

    async def _complete(self, task: str, payload_extra: dict, **kwargs) -> dict:
        """Walk the model chain for a task; return the first choice's message."""
        last_error: Optional[Exception] = None

        for model in self.models_for(task):
            payload = self._build_payload(model, **kwargs)
            payload.update(payload_extra)
            try:
                data = await self._post("/chat/completions", payload)
                message = data["choices"][0]["message"]
                logger.debug("AI %s answered by %s", task, model)
                return message
            except AINotConfigured:
                raise
            except AIServiceError as e:
                if e.code == "AI_UNAUTHORIZED":
                    raise
                last_error = e
                logger.warning("AI model %s failed for %s: %s", model, task, e.message)
            except (httpx.HTTPError, KeyError, IndexError, ValueError) as e:
                last_error = e
                logger.warning("AI model %s failed for %s: %s", model, task, e)

        raise AIServiceError(
            f"All AI models failed for task: {task}",
            details={"last_error": str(last_error) if last_error else None},
        )

    # =========================================================================
    # Public API
    # =========================================================================

    async def chat(
        self,
        messages: list[dict],
        *,
        task: str = "conversation",
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        json_mode: bool = False,
    ) -> str:
        """Return the assistant text for a chat completion."""
        message = await self._complete(
            task,
            {},
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
            json_mode=json_mode,
        )
        return message.get("content") or ""

    async def chat_json(
        self,
        messages: list[dict],
        *,
        task: str = "legal_analysis",
        max_tokens: Optional[int] = None,
    ) -> dict:
        """
        Chat completion in JSON mode, parsed.
        Raises AIResponseParseError if the content is not a JSON object.
        """
        content = await self.chat(messages, task=task, max_tokens=max_tokens, temperature=0.1, json_mode=True)
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as e:
            raise AIResponseParseError("AI returned invalid JSON", details={"content": content[:500]}) from e
        if not isinstance(parsed, dict):
            raise AIResponseParseError("AI returned JSON that is not an object")
        return parsed

    async def call_tool(
        self,
        messages: list[dict],
        *,
        tool_name: str,
        description: str,
        parameters: dict,
        task: str = "planning",
        max_tokens: Optional[int] = None,
    ) -> dict:
        """Force a single function call and return its parsed arguments."""
        tools = [{
            "type": "function",
            "function": {"name": tool_name, "description": description, "parameters": parameters},
        }]
        message = await self._complete(
            task,
            {"tools": tools, "tool_choice": {"type": "function", "function": {"name": tool_name}}},
            messages=messages,
            max_tokens=max_tokens,
            temperature=None,
            json_mode=False,
        )

        tool_calls = message.get("tool_calls") or []
        if not tool_calls:
            raise AIServiceError("No tool call in AI response")
        try:
            return json.loads(tool_calls[0]["function"]["arguments"])
        except (KeyError, json.JSONDecodeError) as e:
            raise AIResponseParseError("Tool call arguments were not valid JSON") from e

    async def embed(self, text: str) -> list[float]:
        """Embed text, falling back through the embedding models."""
        last_error: Optional[Exception] = None
        for model in self.settings.embedding_models_list:
            try:
                data = await self._post("/embeddings", {
                    "model": model,
                    "input": text[:8000],
                    "dimensions": self.settings.embedding_dimensions,
                })
                return data["data"][0]["embedding"]
            except AINotConfigured:
                raise
            except (AIServiceError, httpx.HTTPError, KeyError, IndexError) as e:
                last_error = e
                logger.warning("Embedding model %s failed: %s", model, e)
        raise AIServiceError("All embedding models failed", details={"last_error": str(last_error)})

    async def vision_ocr(self, image_bytes: bytes, mime_type: str) -> str:
        """Transcribe the text in an image."""
        data_url = f"data:{mime_type};base64,{base64.b64encode(image_bytes).decode('ascii')}"
        payload = self._build_payload(
            self.settings.vision_model,
            messages=[
                {
                    "role": "system",
                    "content": "You extract text from images accurately. Return plain text only.",
                },
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": "Extract all legible text from this image."},
                        {"type": "image_url", "image_url": {"url": data_url}},
                    ],
                },
            ],
            max_tokens=2000,
            temperature=0.0,
            json_mode=False,
        )
        data = await self._post("/chat/completions", payload)
        try:
            return data["choices"][0]["message"].get("content") or ""
        except (KeyError, IndexError) as e:
            raise AIServiceError("Malformed OCR response") from e

    async def health(self) -> dict:
        """Check the provider with GET /models."""
        if not self.is_available:
            return {"service": "openai", "ok": False, "status": "missing_key", "code": None}

        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self.transport) as client:
                response = await client.get(f"{self.base_url}/models", headers=self._headers())
        except httpx.HTTPError as e:
            logger.warning("AI health check failed: %s", e)
            return {"service": "openai", "ok": False, "status": "network_error", "code": None}

        code = response.status_code
        if code == 200:
            status = "ok"
        elif code == 401:
            status = "unauthorized"
        elif code == 429:
            status = "rate_limited"
        elif code >= 500:
            status = "openai_down"
        else:
            status = "degraded"
        return {"service": "openai", "ok": code == 200, "status": status, "code": code}


# =============================================================================
# Singleton
# =============================================================================

_ai_client: Optional[AIClient] = None


def get_ai_client() -> AIClient:
    """Get or create the AI client singleton. Also usable as a FastAPI dependency."""
    global _ai_client
    if _ai_client is None:
        _ai_client = AIClient()
    return _ai_client


def set_ai_client(client: Optional[AIClient]) -> None:
    """Replace the process-wide client (None resets to lazy creation)."""
    global _ai_client
    _ai_client = client
