import json
import logging
from typing import Any, AsyncIterator

import httpx
from ..core.config import settings

logger = logging.getLogger(__name__)


class LLMError(Exception):
    """Model call failed: transport error, timeout, bad status or unreadable payload."""


class OpenAIClient:
    """Handle on an OpenAI-compatible chat-completions endpoint.

    One instance is built per request by `get_llm_client`; tests pass their own.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        chat_model: str = "gpt-4o",
        extraction_model: str = "gpt-4o-mini",
        timeout_seconds: float = 30,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.chat_model = chat_model
        self.extraction_model = extraction_model
        self.timeout_seconds = timeout_seconds

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    @property
    def _url(self) -> str:
        return f"{self.base_url}/chat/completions"

    @property
    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.api_key}"}

    def _payload(self, messages, model, temperature, max_tokens, **extra) -> dict:
        payload = {
            "model": model or self.chat_model,
            "messages": messages,
            "temperature": temperature,
        }
        if max_tokens:
            payload["max_tokens"] = max_tokens
        payload.update({k: v for k, v in extra.items() if v is not None})
        return payload

    async def chat(
        self,
        messages: list[dict],
        model: str | None = None,
        temperature: float = 0.2,
        max_tokens: int | None = None,
        response_format: dict | None = None,
        tools: list[dict] | None = None,
        tool_choice: dict | None = None,
    ) -> dict[str, Any]:
        """Single completion; returns the first choice's message object."""
        payload = self._payload(
            messages, model, temperature, max_tokens,
            response_format=response_format, tools=tools, tool_choice=tool_choice,
        )
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                r = await client.post(self._url, headers=self._headers, json=payload)
                r.raise_for_status()
                data = r.json()
        except httpx.TimeoutException as e:
            raise LLMError(f"model call timed out after {self.timeout_seconds}s") from e
        except (httpx.HTTPError, ValueError) as e:
            raise LLMError(f"model call failed: {e}") from e
        try:
            return data["choices"][0]["message"]
        except (KeyError, IndexError, TypeError) as e:
            raise LLMError("model response had no choices") from e

    async def stream_chat(
        self,
        messages: list[dict],
        model: str | None = None,
        temperature: float = 0.2,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        """Yield content deltas as the provider sends them (server-sent `data:` lines)."""
        payload = self._payload(messages, model, temperature, max_tokens, stream=True)
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                async with client.stream("POST", self._url, headers=self._headers, json=payload) as r:
                    r.raise_for_status()
                    async for line in r.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        data = line[len("data:"):].strip()
                        if data == "[DONE]":
                            break
                        try:
                            chunk = json.loads(data)
                        except json.JSONDecodeError:
                            logger.warning("Skipping unreadable stream chunk")
                            continue
                        choices = chunk.get("choices") or [{}]
                        delta = (choices[0].get("delta") or {}).get("content")
                        if delta:
                            yield delta
        except httpx.TimeoutException as e:
            raise LLMError(f"model stream timed out after {self.timeout_seconds}s") from e
        except httpx.HTTPError as e:
            raise LLMError(f"model stream failed: {e}") from e


def get_llm_client() -> OpenAIClient:
    return OpenAIClient(
        api_key=settings.OPENAI_API_KEY,
        base_url=settings.OPENAI_BASE_URL,
        chat_model=settings.OPENAI_CHAT_MODEL,
        extraction_model=settings.OPENAI_EXTRACTION_MODEL,
        timeout_seconds=settings.OPENAI_TIMEOUT_SECONDS,
    )
