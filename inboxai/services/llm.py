from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from inboxai.services.config import get_settings
from inboxai.services.errors import ProviderError


@dataclass
class Usage:
    """Token usage of one chat completion (zeros when the provider omits it)."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ChatProvider(Protocol):
    async def complete(
        self,
        *,
        model: str,
        messages: list[dict[str, Any]],
        tools: Optional[list[dict[str, Any]]] = None,
        tool_choice: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> dict[str, Any]:
        ...


class TemporaryProviderError(ProviderError):
    pass


def message_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text":
                parts.append(str(item.get("text", "")))
        return "\n".join(parts).strip()
    return str(content)


def first_message(response: dict[str, Any]) -> dict[str, Any]:
    choices = response.get("choices") or []
    if not choices:
        raise ProviderError("Chat completion did not contain choices")
    message = choices[0].get("message")
    if not isinstance(message, dict):
        raise ProviderError("Chat completion choice did not contain a message")
    return message


def usage_of(response: dict[str, Any]) -> Usage:
    usage = response.get("usage") or {}
    return Usage(
        prompt_tokens=int(usage.get("prompt_tokens") or 0),
        completion_tokens=int(usage.get("completion_tokens") or 0),
        total_tokens=int(usage.get("total_tokens") or 0),
    )


@retry(
    retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError, TemporaryProviderError)),
    wait=wait_exponential(multiplier=1, min=1, max=8),
    stop=stop_after_attempt(3),
    reraise=True,
)
async def _chat_completion_request(payload: dict[str, Any]) -> dict[str, Any]:
    settings = get_settings()
    if not settings.openai_api_key:
        raise ProviderError("OPENAI_API_KEY is not configured")

    url = settings.openai_base_url.rstrip("/") + "/chat/completions"
    headers = {
        "Authorization": f"Bearer {settings.openai_api_key}",
        "Content-Type": "application/json",
    }

    timeout = httpx.Timeout(settings.llm_timeout_seconds)
    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.post(url, headers=headers, json=payload)

    if response.status_code >= 500 or response.status_code in {408, 409, 425, 429}:
        raise TemporaryProviderError(f"Chat completion temporary error: {response.status_code}")

    if response.status_code >= 400:
        detail = response.text[:300]
        raise ProviderError(f"Chat completion failed ({response.status_code}): {detail}")

    try:
        return response.json()
    except json.JSONDecodeError as exc:
        raise ProviderError(f"Chat completion returned invalid JSON: {exc}") from exc


class OpenAIChatProvider:
    """OpenAI-compatible ``/chat/completions`` endpoint with tool-calling support."""

    async def complete(
        self,
        *,
        model: str,
        messages: list[dict[str, Any]],
        tools: Optional[list[dict[str, Any]]] = None,
        tool_choice: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"model": model, "messages": messages}
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = tool_choice or "auto"
        if temperature is not None:
            payload["temperature"] = temperature
        if max_tokens is not None:
            payload["max_completion_tokens"] = max_tokens

        try:
            return await _chat_completion_request(payload)
        except httpx.HTTPError as exc:
            raise ProviderError(f"Chat completion request failed: {exc}") from exc


def try_parse_json_object(text: str) -> Optional[dict[str, Any]]:
    text = text.strip()
    if not text:
        return None

    try:
        value = json.loads(text)
        if isinstance(value, dict):
            return value
    except json.JSONDecodeError:
        pass

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None

    snippet = text[start : end + 1]
    try:
        value = json.loads(snippet)
        if isinstance(value, dict):
            return value
    except json.JSONDecodeError:
        return None

    return None
