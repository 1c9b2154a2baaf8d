from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from inboxai.dependencies import reset_dependencies
from inboxai.services.config import get_settings
from inboxai.services.prompts import ANALYZE_EMAIL_PROMPT, GENERATE_REPLY_PROMPT
from scripts.reset_db import seed_database


def chat_response(
    content: Optional[str] = None,
    tool_calls: Optional[list[dict[str, Any]]] = None,
    usage: Optional[dict[str, int]] = None,
) -> dict[str, Any]:
    message: dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    response: dict[str, Any] = {"choices": [{"index": 0, "message": message}]}
    if usage is not None:
        response["usage"] = usage
    return response


def tool_call(name: str, arguments: Any, call_id: str = "call_1") -> dict[str, Any]:
    if not isinstance(arguments, str):
        arguments = json.dumps(arguments)
    return {"id": call_id, "type": "function", "function": {"name": name, "arguments": arguments}}


class FakeProvider:
    """Scripted chat provider: pops queued responses or delegates to ``handler``.

    A queued or returned exception is raised instead of returned.
    """

    def __init__(self, responses: Optional[list[Any]] = None, handler: Optional[Callable[..., Any]] = None):
        self.responses = list(responses or [])
        self.handler = handler
        self.calls: list[dict[str, Any]] = []

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
        self.calls.append(
            {"model": model, "messages": [dict(m) for m in messages], "tools": tools, "tool_choice": tool_choice}
        )
        if self.handler is not None:
            result = self.handler(model=model, messages=messages, tools=tools)
        else:
            result = self.responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class RecordingUsage:
    def __init__(self) -> None:
        self.records: list[Any] = []

    async def track(self, record: Any) -> Optional[int]:
        self.records.append(record)
        return len(self.records)


class FakeTools:
    def __init__(self, results: Optional[dict[str, Any]] = None) -> None:
        self.results = results or {}
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def execute(self, tool_name: str, args: dict[str, Any]) -> Any:
        self.calls.append((tool_name, args))
        result = self.results.get(tool_name)
        if isinstance(result, Exception):
            raise result
        return result


AGENT_ANSWER = """**Kunde:** Max Mustermann (Mustermann GmbH)
**Anliegen:** Lieferung AU-2026-0412 hängt fest

```json
{"keyFacts": [
  {"icon": "person", "label": "Kunde", "value": "Max Mustermann"},
  {"icon": "badge", "label": "Kd-Nr.", "value": "K-10234"},
  {"icon": "local_shipping", "label": "Tracking", "value": "00340434161234567890"}
 ],
 "suggestedReply": "Guten Tag Herr Mustermann, wir prüfen die Sendung.",
 "customerPhone": "+49 30 1234567"}
```"""


def routing_handler(
    agent_answer: str = AGENT_ANSWER,
    *,
    fail_agent_for: Optional[Callable[[list[dict[str, Any]]], bool]] = None,
) -> Callable[..., Any]:
    """Answers analyze/reply/agent calls the way a well-behaved model would."""

    def handler(*, model: str, messages: list[dict[str, Any]], tools: Any) -> Any:
        system = messages[0]["content"]
        if system.startswith(ANALYZE_EMAIL_PROMPT):
            return chat_response(
                json.dumps({"summary": "Kunde fragt nach Lieferung", "tags": ["Versand", "Tracking", "Frage"],
                            "cleanedContent": "Wo bleibt meine Lieferung?"}),
                usage={"prompt_tokens": 100, "completion_tokens": 20, "total_tokens": 120},
            )
        if system.startswith(GENERATE_REPLY_PROMPT):
            return chat_response(json.dumps({"subject": "Re: Ihre Lieferung", "body": "Wir kümmern uns darum."}))
        if fail_agent_for is not None and fail_agent_for(messages):
            return RuntimeError("upstream unavailable")
        return chat_response(agent_answer, usage={"prompt_tokens": 500, "completion_tokens": 80, "total_tokens": 580})

    return handler


@pytest.fixture
def db_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    path = tmp_path / "inbox.db"
    monkeypatch.setenv("DATABASE_PATH", str(path))
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    get_settings.cache_clear()
    reset_dependencies()

    conn = sqlite3.connect(path)
    try:
        seed_database(conn)
        conn.commit()
    finally:
        conn.close()

    yield path

    get_settings.cache_clear()
    reset_dependencies()
