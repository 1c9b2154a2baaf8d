from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from inboxai.services.config import get_settings
from inboxai.services.facts import find_json_block
from inboxai.services.llm import ChatProvider, first_message, message_text, usage_of
from inboxai.services.prompts import (
    AGENT_SYSTEM_PROMPT,
    FORCE_SUMMARY_INSTRUCTION,
    EmailPromptData,
    build_agent_user_prompt,
)
from inboxai.services.tools import TOOL_DEFINITIONS, ToolExecutor
from inboxai.services.usage import UsageRecord, UsageTracker

logger = logging.getLogger(__name__)

MAX_ITERATIONS = 6
TRUNCATION_MARKER = "... (gekürzt)"
NO_ANALYSIS_TEXT = "Keine Analyse möglich."
PROVIDER_FAILURE_TEXT = "Analyse fehlgeschlagen: OpenAI-API nicht erreichbar."

CUSTOMER_TOOLS = ("find_customer_by_email", "find_customer", "get_customer_full_context")
ORDER_TOOLS = ("get_customer_orders", "get_order_details")


@dataclass
class AgentStep:
    kind: str  # tool_call | tool_result | thinking | complete | error | reply
    status: str  # running | done | error
    tool: Optional[str] = None
    args: Optional[dict[str, Any]] = None
    result: Any = None
    content: Optional[str] = None

    def summary(self) -> Optional[str]:
        if self.kind == "tool_result":
            return f"{self.tool}: {json.dumps(self.result, ensure_ascii=False, default=str)[:120]}"
        if self.content is None:
            return None
        return self.content[:150]

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "tool": self.tool,
            "status": self.status,
            "summary": self.summary(),
        }


@dataclass
class AnalysisResult:
    narrative_text: str
    raw_json_block: Optional[str] = None
    ok: bool = True
    used_fallback: bool = False
    error: Optional[str] = None


@dataclass
class ToolRecord:
    tool: str
    args: dict[str, Any]
    result: Any

    @property
    def succeeded(self) -> bool:
        if self.result is None:
            return False
        return not (isinstance(self.result, dict) and "error" in self.result)


StepCallback = Callable[[AgentStep], None]


def parse_tool_arguments(raw: Any) -> dict[str, Any]:
    """Tool-call arguments as a dict; anything unparseable becomes ``{}``."""
    if isinstance(raw, dict):
        return raw
    try:
        value = json.loads(raw or "{}")
    except (json.JSONDecodeError, TypeError):
        logger.warning("Malformed tool arguments, using {}: %.200r", raw)
        return {}
    return value if isinstance(value, dict) else {}


def truncate_tool_result(result: Any, limit: int) -> str:
    text = json.dumps(result, ensure_ascii=False, default=str)
    if len(text) > limit:
        return text[:limit] + TRUNCATION_MARKER
    return text


def _first(result: Any) -> Any:
    if isinstance(result, list):
        return result[0] if result else None
    return result


def build_fallback_summary(records: list[ToolRecord], email: EmailPromptData) -> str:
    """Deterministic summary from already collected tool output."""
    lines: list[str] = []

    customer_record = next(
        (r for r in records if r.tool in CUSTOMER_TOOLS and r.succeeded and isinstance(_first(r.result), dict)),
        None,
    )
    if customer_record is not None:
        c = _first(customer_record.result)
        name = f"{c.get('first_name') or ''} {c.get('last_name') or ''}".strip()
        company = f" ({c['company']})" if c.get("company") else ""
        number = c.get("customer_number") or c.get("customer_id") or "unbekannt"
        lines.append(f"**Kunde:** {name}{company}, Kd.-Nr. {number}")
    else:
        lines.append(f"**Kunde:** {email.from_name or email.from_address} (nicht im System gefunden)")

    lines.append(f"**Anliegen:** {email.subject}")

    for record in records:
        if record.tool not in ORDER_TOOLS or not record.succeeded:
            continue
        if isinstance(record.result, list):
            orders = record.result
        elif isinstance(record.result, dict) and record.result.get("header"):
            orders = [record.result["header"]]
        else:
            orders = []
        if orders:
            lines.append(f"**Bestellungen:** {len(orders)} gefunden")
            break

    shipping = next((r for r in records if r.tool == "get_order_shipping" and r.succeeded), None)
    if shipping is not None:
        s = _first(shipping.result)
        if isinstance(s, dict) and s.get("tracking_id"):
            lines.append(f"**Versand:** Tracking {s['tracking_id']}")

    lines.append("")
    lines.append(
        "*Hinweis: Zusammenfassung wurde aus den gesammelten Daten erstellt "
        "(KI-Zusammenfassung war nicht verfügbar).*"
    )
    return "\n".join(lines)


class EmailAgent:
    """Bounded tool-calling conversation for a single email.

    At most ``max_iterations`` provider calls with tools, plus one forced
    summary call without tools when the budget runs out.
    """

    def __init__(
        self,
        provider: ChatProvider,
        tools: ToolExecutor,
        usage: Optional[UsageTracker] = None,
        *,
        model: Optional[str] = None,
        max_iterations: Optional[int] = None,
        tool_result_max_chars: Optional[int] = None,
        body_prompt_chars: Optional[int] = None,
    ) -> None:
        settings = get_settings()
        self.provider = provider
        self.tools = tools
        self.usage = usage
        self.model = model or settings.model_powerful
        self.max_iterations = max_iterations or settings.agent_max_iterations or MAX_ITERATIONS
        self.tool_result_max_chars = tool_result_max_chars or settings.tool_result_max_chars
        self.body_prompt_chars = body_prompt_chars or settings.body_prompt_chars
        self._pending: set[asyncio.Task] = set()

    async def run(self, email: EmailPromptData, on_step: StepCallback) -> AnalysisResult:
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": AGENT_SYSTEM_PROMPT},
            {"role": "user", "content": build_agent_user_prompt(email, self.body_prompt_chars)},
        ]
        records: list[ToolRecord] = []

        for iteration in range(self.max_iterations):
            logger.debug("Agent iteration %d for %s", iteration + 1, email.id)
            try:
                response = await self._call(messages, email, feature="agent-analyze", with_tools=True)
                message = first_message(response)
            except Exception as exc:  # noqa: BLE001
                logger.error("Chat completion failed for %s: %s", email.id, exc)
                return self._recover(records, email, on_step, exc)

            tool_calls = message.get("tool_calls") or []
            messages.append(
                {
                    "role": "assistant",
                    "content": message.get("content"),
                    **({"tool_calls": tool_calls} if tool_calls else {}),
                }
            )

            if not tool_calls:
                final = message_text(message.get("content")).strip() or NO_ANALYSIS_TEXT
                self._emit(on_step, AgentStep("complete", "done", content=final))
                return AnalysisResult(narrative_text=final, raw_json_block=find_json_block(final))

            for tool_call in tool_calls:
                await self._run_tool(tool_call, messages, records, on_step)

        logger.warning("Max iterations reached for %s, forcing final summary", email.id)
        messages.append({"role": "user", "content": FORCE_SUMMARY_INSTRUCTION})
        try:
            response = await self._call(messages, email, feature="agent-analyze-summary", with_tools=False)
            final = message_text(first_message(response).get("content")).strip()
        except Exception as exc:  # noqa: BLE001
            logger.error("Final summary call failed for %s: %s", email.id, exc)
            return self._recover(records, email, on_step, exc)

        if final:
            self._emit(on_step, AgentStep("complete", "done", content=final))
            return AnalysisResult(narrative_text=final, raw_json_block=find_json_block(final))
        return self._recover(records, email, on_step, RuntimeError("Final summary was empty"))

    async def flush_usage(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _run_tool(
        self,
        tool_call: dict[str, Any],
        messages: list[dict[str, Any]],
        records: list[ToolRecord],
        on_step: StepCallback,
    ) -> None:
        function = tool_call.get("function") or {}
        tool_name = function.get("name") or "unknown"
        args = parse_tool_arguments(function.get("arguments"))

        self._emit(on_step, AgentStep("tool_call", "running", tool=tool_name, args=args))

        try:
            result = await self.tools.execute(tool_name, args)
        except Exception as exc:  # noqa: BLE001
            logger.error("Tool %s failed: %s", tool_name, exc)
            result = {"error": str(exc)}
        status = "error" if isinstance(result, dict) and "error" in result else "done"

        records.append(ToolRecord(tool=tool_name, args=args, result=result))
        self._emit(on_step, AgentStep("tool_result", status, tool=tool_name, args=args, result=result))

        messages.append(
            {
                "role": "tool",
                "tool_call_id": tool_call.get("id"),
                "content": truncate_tool_result(result, self.tool_result_max_chars),
            }
        )

    def _recover(
        self,
        records: list[ToolRecord],
        email: EmailPromptData,
        on_step: StepCallback,
        exc: BaseException,
    ) -> AnalysisResult:
        if records:
            logger.warning("Building fallback summary for %s from %d tool results", email.id, len(records))
            fallback = build_fallback_summary(records, email)
            self._emit(on_step, AgentStep("complete", "done", content=fallback))
            return AnalysisResult(narrative_text=fallback, used_fallback=True, error=str(exc))

        self._emit(on_step, AgentStep("error", "error", content=f"OpenAI Fehler: {exc}"))
        return AnalysisResult(narrative_text=PROVIDER_FAILURE_TEXT, ok=False, error=str(exc))

    async def _call(
        self,
        messages: list[dict[str, Any]],
        email: EmailPromptData,
        *,
        feature: str,
        with_tools: bool,
    ) -> dict[str, Any]:
        started = time.monotonic()
        try:
            if with_tools:
                response = await self.provider.complete(
                    model=self.model,
                    messages=messages,
                    tools=TOOL_DEFINITIONS,
                    tool_choice="auto",
                )
            else:
                response = await self.provider.complete(model=self.model, messages=messages)
        except Exception as exc:
            self._track(
                UsageRecord(
                    feature=feature,
                    model=self.model,
                    duration_ms=int((time.monotonic() - started) * 1000),
                    success=False,
                    error_message=str(exc),
                    context=(email.subject or "")[:200],
                )
            )
            raise

        usage = usage_of(response)
        self._track(
            UsageRecord(
                feature=feature,
                model=self.model,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                total_tokens=usage.total_tokens,
                duration_ms=int((time.monotonic() - started) * 1000),
                context=(email.subject or "")[:200],
            )
        )
        return response

    def _track(self, record: UsageRecord) -> None:
        if self.usage is None:
            return
        try:
            task = asyncio.create_task(self._safe_track(record))
        except RuntimeError:
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _safe_track(self, record: UsageRecord) -> None:
        try:
            await self.usage.track(record)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Usage tracking failed: %s", exc)

    @staticmethod
    def _emit(on_step: StepCallback, step: AgentStep) -> None:
        try:
            on_step(step)
        except Exception:  # noqa: BLE001
            logger.warning("Step callback failed for %s step", step.kind, exc_info=True)
