from __future__ import annotations

import asyncio
import json

from inboxai.services.agent import (
    MAX_ITERATIONS,
    NO_ANALYSIS_TEXT,
    PROVIDER_FAILURE_TEXT,
    TRUNCATION_MARKER,
    AgentStep,
    EmailAgent,
    ToolRecord,
    build_fallback_summary,
    parse_tool_arguments,
    truncate_tool_result,
)
from inboxai.services.errors import ProviderError, ToolExecutionError
from inboxai.services.prompts import FORCE_SUMMARY_INSTRUCTION, EmailPromptData
from inboxai.services.tools import TOOL_DEFINITIONS
from tests.conftest import FakeProvider, FakeTools, RecordingUsage, chat_response, tool_call

CUSTOMER = {
    "customer_id": 1001,
    "customer_number": "K-10234",
    "first_name": "Max",
    "last_name": "Mustermann",
    "company": "Mustermann GmbH",
}

EMAIL = EmailPromptData(
    id="mail-001",
    subject="Wo bleibt meine Lieferung?",
    from_address="max@mustermann.de",
    from_name="Max Mustermann",
    text_body="Hallo, wo bleibt meine Lieferung AU-2026-0412?",
)


def _run(agent: EmailAgent, steps: list[AgentStep]):
    async def go():
        result = await agent.run(EMAIL, steps.append)
        await agent.flush_usage()
        return result

    return asyncio.run(go())


def test_direct_answer_completes_in_one_call() -> None:
    provider = FakeProvider([chat_response("Fertige Analyse")])
    agent = EmailAgent(provider, FakeTools(), model="test-model")
    steps: list[AgentStep] = []

    result = _run(agent, steps)

    assert result.ok is True
    assert result.narrative_text == "Fertige Analyse"
    assert [step.kind for step in steps] == ["complete"]
    assert provider.calls[0]["tools"] == TOOL_DEFINITIONS
    assert provider.calls[0]["tool_choice"] == "auto"
    assert provider.calls[0]["messages"][1]["content"].startswith("Analysiere diese E-Mail")


def test_missing_content_yields_placeholder_text() -> None:
    agent = EmailAgent(FakeProvider([chat_response(None)]), FakeTools(), model="test-model")
    steps: list[AgentStep] = []

    result = _run(agent, steps)

    assert result.narrative_text == NO_ANALYSIS_TEXT


def test_tool_results_are_fed_back_to_the_model() -> None:
    provider = FakeProvider(
        [
            chat_response(tool_calls=[tool_call("find_customer_by_email", {"email": "max@mustermann.de"}, "c1")]),
            chat_response("Analyse mit Kundendaten"),
        ]
    )
    tools = FakeTools({"find_customer_by_email": CUSTOMER})
    agent = EmailAgent(provider, tools, model="test-model")
    steps: list[AgentStep] = []

    result = _run(agent, steps)

    assert result.narrative_text == "Analyse mit Kundendaten"
    assert tools.calls == [("find_customer_by_email", {"email": "max@mustermann.de"})]
    assert [(step.kind, step.status) for step in steps] == [
        ("tool_call", "running"),
        ("tool_result", "done"),
        ("complete", "done"),
    ]
    second_call_messages = provider.calls[1]["messages"]
    assert second_call_messages[-2]["tool_calls"][0]["id"] == "c1"
    assert second_call_messages[-1]["role"] == "tool"
    assert second_call_messages[-1]["tool_call_id"] == "c1"
    assert json.loads(second_call_messages[-1]["content"])["customer_number"] == "K-10234"


def test_malformed_tool_arguments_become_empty_object() -> None:
    provider = FakeProvider(
        [
            chat_response(tool_calls=[tool_call("find_customer", "{not json")]),
            chat_response("Fertig"),
        ]
    )
    tools = FakeTools({"find_customer": []})
    agent = EmailAgent(provider, tools, model="test-model")

    result = _run(agent, [])

    assert result.ok is True
    assert tools.calls == [("find_customer", {})]


def test_tool_exception_is_captured_as_error_result() -> None:
    provider = FakeProvider(
        [
            chat_response(tool_calls=[tool_call("get_order_details", {"order_number": "X"})]),
            chat_response("Fertig"),
        ]
    )
    tools = FakeTools({"get_order_details": ToolExecutionError("boom")})
    agent = EmailAgent(provider, tools, model="test-model")
    steps: list[AgentStep] = []

    result = _run(agent, steps)

    assert result.ok is True
    tool_result = steps[1]
    assert tool_result.kind == "tool_result"
    assert tool_result.status == "error"
    assert tool_result.result == {"error": "boom"}
    assert "boom" in provider.calls[1]["messages"][-1]["content"]


def test_iteration_budget_forces_one_final_call_without_tools() -> None:
    def handler(*, model, messages, tools):
        if tools is None:
            return chat_response("Zusammenfassung nach Budget")
        return chat_response(tool_calls=[tool_call("find_customer", {"search": "Max"})])

    provider = FakeProvider(handler=handler)
    agent = EmailAgent(provider, FakeTools({"find_customer": [CUSTOMER]}), model="test-model")

    result = _run(agent, [])

    assert len(provider.calls) == MAX_ITERATIONS + 1
    assert all(call["tools"] is not None for call in provider.calls[:-1])
    assert provider.calls[-1]["tools"] is None
    assert provider.calls[-1]["messages"][-1] == {"role": "user", "content": FORCE_SUMMARY_INSTRUCTION}
    assert result.narrative_text == "Zusammenfassung nach Budget"
    assert result.used_fallback is False


def test_failed_final_call_falls_back_to_collected_tool_data() -> None:
    def handler(*, model, messages, tools):
        if tools is None:
            return ProviderError("timeout")
        return chat_response(tool_calls=[tool_call("find_customer_by_email", {"email": "max@mustermann.de"})])

    provider = FakeProvider(handler=handler)
    agent = EmailAgent(provider, FakeTools({"find_customer_by_email": CUSTOMER}), model="test-model")
    steps: list[AgentStep] = []

    result = _run(agent, steps)

    assert len(provider.calls) == MAX_ITERATIONS + 1
    assert result.ok is True
    assert result.used_fallback is True
    assert "**Kunde:** Max Mustermann (Mustermann GmbH)" in result.narrative_text
    assert f"**Anliegen:** {EMAIL.subject}" in result.narrative_text
    assert steps[-1].kind == "complete"


def test_provider_failure_without_tool_data_is_terminal() -> None:
    provider = FakeProvider([ProviderError("connection refused")])
    agent = EmailAgent(provider, FakeTools(), model="test-model")
    steps: list[AgentStep] = []

    result = _run(agent, steps)

    assert result.ok is False
    assert result.narrative_text == PROVIDER_FAILURE_TEXT
    assert result.error == "connection refused"
    assert [(step.kind, step.status) for step in steps] == [("error", "error")]


def test_provider_failure_mid_loop_uses_fallback() -> None:
    provider = FakeProvider(
        [
            chat_response(tool_calls=[tool_call("find_customer_by_email", {"email": "max@mustermann.de"})]),
            chat_response(tool_calls=[tool_call("get_customer_orders", {"customer_id": 1001})]),
            ProviderError("rate limited"),
        ]
    )
    tools = FakeTools(
        {
            "find_customer_by_email": CUSTOMER,
            "get_customer_orders": [{"order_number": "AU-1"}, {"order_number": "AU-2"}],
        }
    )
    agent = EmailAgent(provider, tools, model="test-model")

    result = _run(agent, [])

    assert result.used_fallback is True
    assert "**Bestellungen:** 2 gefunden" in result.narrative_text


def test_step_callback_errors_do_not_abort_the_run() -> None:
    def explode(step: AgentStep) -> None:
        raise RuntimeError("observer gone")

    agent = EmailAgent(FakeProvider([chat_response("Fertig")]), FakeTools(), model="test-model")

    result = asyncio.run(agent.run(EMAIL, explode))

    assert result.narrative_text == "Fertig"


def test_usage_is_tracked_for_success_and_failure() -> None:
    usage = RecordingUsage()
    provider = FakeProvider(
        [
            chat_response(
                tool_calls=[tool_call("find_customer", {"search": "Max"})],
                usage={"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
            ),
            ProviderError("down"),
        ]
    )
    agent = EmailAgent(provider, FakeTools({"find_customer": [CUSTOMER]}), usage, model="test-model")

    _run(agent, [])

    assert [(r.feature, r.success) for r in usage.records] == [("agent-analyze", True), ("agent-analyze", False)]
    assert usage.records[0].total_tokens == 15
    assert usage.records[1].error_message == "down"


def test_parse_tool_arguments() -> None:
    assert parse_tool_arguments('{"search": "Max"}') == {"search": "Max"}
    assert parse_tool_arguments("{broken") == {}
    assert parse_tool_arguments("[1, 2]") == {}
    assert parse_tool_arguments(None) == {}


def test_truncate_tool_result_adds_marker() -> None:
    text = truncate_tool_result({"blob": "a" * 5000}, 2000)

    assert len(text) == 2000 + len(TRUNCATION_MARKER)
    assert text.endswith(TRUNCATION_MARKER)
    assert truncate_tool_result({"ok": 1}, 2000) == '{"ok": 1}'


def test_fallback_summary_without_customer_uses_sender() -> None:
    records = [ToolRecord(tool="find_customer_by_email", args={}, result=None)]

    summary = build_fallback_summary(records, EMAIL)

    assert summary.startswith("**Kunde:** Max Mustermann (nicht im System gefunden)")


def test_step_to_dict_summarizes_tool_results() -> None:
    step = AgentStep("tool_result", "done", tool="find_customer", result={"name": "x" * 300})

    data = step.to_dict()

    assert data["type"] == "tool_result"
    assert data["summary"].startswith("find_customer: ")
    assert len(data["summary"]) == len("find_customer: ") + 120
