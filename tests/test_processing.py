from __future__ import annotations

import asyncio
from typing import Any, Iterable, Optional

from inboxai.services.agent import AgentStep, EmailAgent
from inboxai.services.analysis import EmailAnalyzer
from inboxai.services.emails import EmailRepository
from inboxai.services.event_bus import EventBus
from inboxai.services.job_state import JobMode, JobTracker
from inboxai.services.pipeline import EmailPipeline
from inboxai.services.processing import ProcessingOrchestrator
from inboxai.services.prompts import GENERATE_REPLY_PROMPT
from tests.conftest import FakeProvider, FakeTools, RecordingUsage, routing_handler

SEEDED_IDS = ["mail-001", "mail-002", "mail-003", "mail-004", "mail-005"]


def build_orchestrator(
    provider: FakeProvider,
    *,
    tracker: Optional[JobTracker] = None,
    precompute_reply: bool = True,
) -> ProcessingOrchestrator:
    usage = RecordingUsage()
    repository = EmailRepository()
    pipeline = EmailPipeline(
        repository,
        EmailAnalyzer(provider, usage, model="fast-model"),
        EmailAgent(provider, FakeTools(), usage, model="agent-model"),
        precompute_reply=precompute_reply,
    )
    return ProcessingOrchestrator(pipeline, repository, EventBus(), tracker)


class FakePipeline:
    def __init__(
        self,
        fail_ids: Iterable[str] = (),
        gate: Optional[asyncio.Event] = None,
        gated_ids: Optional[Iterable[str]] = None,
    ) -> None:
        self.fail_ids = set(fail_ids)
        self.gate = gate
        self.gated_ids = None if gated_ids is None else set(gated_ids)
        self.seen: list[str] = []
        self.active = 0
        self.max_active = 0

    async def process(self, item_id: str, on_step) -> dict[str, Any]:
        self.seen.append(item_id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            on_step(AgentStep("thinking", "running", content=f"Analysiere {item_id}"))
            await asyncio.sleep(0)
            if self.gate is not None and (self.gated_ids is None or item_id in self.gated_ids):
                await self.gate.wait()
            if item_id in self.fail_ids:
                raise RuntimeError(f"database locked for {item_id}")
            return {"id": item_id, "aiSummary": "Kunde fragt nach Lieferung"}
        finally:
            self.active -= 1


def types(events: list[dict[str, Any]]) -> list[str]:
    return [event["type"] for event in events if event["type"] != "step"]


def test_batch_processes_every_candidate_and_persists_results(db_path) -> None:
    provider = FakeProvider(handler=routing_handler())

    async def scenario():
        orchestrator = build_orchestrator(provider)
        events: list[dict[str, Any]] = []
        orchestrator.subscribe(events.append)
        started = await orchestrator.start_batch("process")
        final = await orchestrator.wait_idle()
        view = await orchestrator.repository.trimmed_view("mail-001")
        email = await orchestrator.repository.get_email("mail-001")
        status = await orchestrator.get_ai_status()
        return started, final, events, view, email, status

    started, final, events, view, email, status = asyncio.run(scenario())

    assert started.is_running is True
    assert started.mode is JobMode.BATCH
    assert started.total == 5
    assert final.is_running is False
    assert final.current_item_id is None
    assert (final.processed, final.total, final.failed) == (5, 5, 0)

    assert types(events) == ["start"] + ["progress"] * 5 + ["complete"]
    assert events[0] == {"type": "start", "total": 5, "processed": 0}
    progress = [event for event in events if event["type"] == "progress"]
    assert [event["item"]["id"] for event in progress] == SEEDED_IDS
    assert [event["processed"] for event in progress] == [1, 2, 3, 4, 5]
    assert events[-1] == {"type": "complete", "processed": 5, "total": 5, "failed": 0}

    steps = [event for event in events if event["type"] == "step"]
    assert {event["itemId"] for event in steps} <= set(SEEDED_IDS)
    assert any(event["step"]["type"] == "reply" for event in steps)

    assert view["aiSummary"] == "Kunde fragt nach Lieferung"
    assert view["aiTags"] == ["Versand", "Tracking", "Frage"]
    assert view["agentKeyFacts"][0] == {"icon": "person", "label": "Kunde", "value": "Max Mustermann"}
    assert "```json" not in view["agentAnalysis"]
    assert view["suggestedReply"] == "Wir kümmern uns darum."
    assert view["customerPhone"] == "+49 30 1234567"
    assert email["suggested_reply_subject"] == "Re: Ihre Lieferung"
    assert email["ai_processing"] is False
    assert email["ai_processed_at"] is not None

    assert status["total"] == 5
    assert status["processed"] == 5
    assert status["pending"] == 0
    assert status["background"]["isRunning"] is False


def test_empty_body_gets_placeholder_summary_without_model_calls(db_path) -> None:
    provider = FakeProvider(handler=routing_handler())

    async def scenario():
        orchestrator = build_orchestrator(provider)
        await orchestrator.start_single("mail-005")
        final = await orchestrator.wait_idle()
        return final, await orchestrator.repository.trimmed_view("mail-005")

    final, view = asyncio.run(scenario())

    assert provider.calls == []
    assert view["aiSummary"] == "Kein E-Mail-Inhalt vorhanden"
    assert view["aiTags"] == []
    assert (final.processed, final.failed) == (1, 0)


def test_agent_failure_marks_item_failed_and_batch_continues(db_path) -> None:
    def fails_for_invoice_mail(messages):
        return "Rechnung RE-2026-0301" in messages[1]["content"]

    provider = FakeProvider(handler=routing_handler(fail_agent_for=fails_for_invoice_mail))

    async def scenario():
        orchestrator = build_orchestrator(provider)
        events: list[dict[str, Any]] = []
        orchestrator.subscribe(events.append)
        await orchestrator.start_batch(JobMode.BATCH)
        final = await orchestrator.wait_idle()
        return final, events, await orchestrator.repository.trimmed_view("mail-003")

    final, events, view = asyncio.run(scenario())

    assert (final.processed, final.total, final.failed) == (5, 5, 1)
    assert view["aiSummary"].startswith("Analyse fehlgeschlagen: upstream unavailable")
    assert view["agentKeyFacts"] is None
    third = [event for event in events if event["type"] == "progress"][2]
    assert third["item"]["id"] == "mail-003"
    assert third["failed"] == 1
    assert events[-1]["type"] == "complete"


def test_reply_generation_failure_is_not_critical(db_path) -> None:
    base = routing_handler()

    def handler(*, model, messages, tools):
        if messages[0]["content"].startswith(GENERATE_REPLY_PROMPT):
            return RuntimeError("reply model down")
        return base(model=model, messages=messages, tools=tools)

    provider = FakeProvider(handler=handler)

    async def scenario():
        orchestrator = build_orchestrator(provider)
        await orchestrator.start_single("mail-001")
        final = await orchestrator.wait_idle()
        return final, await orchestrator.repository.get_email("mail-001")

    final, email = asyncio.run(scenario())

    assert final.failed == 0
    assert email["suggested_reply"] == "Guten Tag Herr Mustermann, wir prüfen die Sendung."
    assert email["suggested_reply_subject"] is None
    assert email["ai_processed_at"] is not None
    assert email["ai_processing"] is False


def test_item_exception_emits_error_event_and_loop_continues(db_path) -> None:
    pipeline = FakePipeline(fail_ids={"mail-003"})

    async def scenario():
        orchestrator = ProcessingOrchestrator(pipeline, EmailRepository(), EventBus())
        events: list[dict[str, Any]] = []
        orchestrator.subscribe(events.append)
        await orchestrator.start_batch()
        return await orchestrator.wait_idle(), events

    final, events = asyncio.run(scenario())

    assert pipeline.seen == SEEDED_IDS
    assert pipeline.max_active == 1
    assert (final.processed, final.total, final.failed) == (5, 5, 1)
    assert types(events) == ["start", "progress", "progress", "error", "progress", "progress", "complete"]
    error = next(event for event in events if event["type"] == "error")
    assert error == {
        "type": "error",
        "itemId": "mail-003",
        "error": "database locked for mail-003",
        "processed": 3,
        "total": 5,
        "failed": 1,
    }
    step = next(event for event in events if event["type"] == "step")
    assert step["itemId"] == "mail-001"
    assert step["step"] == {"type": "thinking", "tool": None, "status": "running", "summary": "Analysiere mail-001"}


def test_crash_escaping_the_loop_emits_fatal_error_and_resets(db_path) -> None:
    class CrashingTracker(JobTracker):
        def set_current(self, item_id):
            if item_id == "mail-002":
                raise RuntimeError("state corrupted")
            super().set_current(item_id)

    async def scenario():
        orchestrator = ProcessingOrchestrator(FakePipeline(), EmailRepository(), EventBus(), CrashingTracker())
        events: list[dict[str, Any]] = []
        orchestrator.subscribe(events.append)
        started = await orchestrator.start_batch()
        final = await orchestrator.wait_idle()
        return started, final, events

    started, final, events = asyncio.run(scenario())

    assert started.is_running is True
    assert final.is_running is False
    assert final.current_item_id is None
    assert types(events) == ["start", "progress", "fatal-error"]
    assert events[-1] == {"type": "fatal-error", "error": "state corrupted"}


def test_start_is_idempotent_while_running(db_path) -> None:
    async def scenario():
        gate = asyncio.Event()
        orchestrator = ProcessingOrchestrator(FakePipeline(gate=gate), EmailRepository(), EventBus())
        events: list[dict[str, Any]] = []
        orchestrator.subscribe(events.append)
        first, second = await asyncio.gather(orchestrator.start_batch(), orchestrator.start_batch())
        third = await orchestrator.start_batch(JobMode.RECALCULATE)
        single = await orchestrator.start_single("mail-001")
        gate.set()
        await orchestrator.wait_idle()
        return first, second, third, single, events

    first, second, third, single, events = asyncio.run(scenario())

    assert first.is_running and second.is_running
    assert first.started_at == second.started_at
    assert third.mode is JobMode.BATCH
    assert single.mode is JobMode.BATCH
    assert types(events).count("start") == 1


def test_empty_candidate_set_stays_idle(db_path) -> None:
    async def scenario():
        orchestrator = ProcessingOrchestrator(FakePipeline(), EmailRepository(), EventBus())
        await orchestrator.start_batch()
        finished = await orchestrator.wait_idle()
        for email_id in SEEDED_IDS:
            await orchestrator.repository.update_ai_fields(email_id, ai_processed_at="2026-02-13T10:00:00Z")
        events: list[dict[str, Any]] = []
        orchestrator.subscribe(events.append)
        snapshot = await orchestrator.start_batch()
        unknown = await orchestrator.start_single("does-not-exist")
        return finished, snapshot, unknown, events

    finished, snapshot, unknown, events = asyncio.run(scenario())

    assert (finished.processed, finished.total) == (5, 5)
    idle = {
        "isRunning": False,
        "mode": None,
        "total": 0,
        "processed": 0,
        "failed": 0,
        "currentItemId": None,
        "startedAt": None,
    }
    assert snapshot.to_dict() == idle
    assert unknown.to_dict() == idle
    assert events == []


def test_recalculate_clears_previous_results(db_path) -> None:
    pipeline = FakePipeline()

    async def scenario():
        orchestrator = ProcessingOrchestrator(pipeline, EmailRepository(), EventBus())
        for email_id in SEEDED_IDS:
            await orchestrator.repository.update_ai_fields(
                email_id, ai_summary="alt", ai_processed_at="2026-02-13T10:00:00Z"
            )
        started = await orchestrator.start_batch("recalculate")
        cleared = await orchestrator.repository.get_email("mail-004")
        await orchestrator.wait_idle()
        return started, cleared

    started, cleared = asyncio.run(scenario())

    assert started.mode is JobMode.RECALCULATE
    assert started.total == 5
    assert cleared["ai_summary"] is None
    assert pipeline.seen == SEEDED_IDS


def test_single_reprocess(db_path) -> None:
    pipeline = FakePipeline()

    async def scenario():
        orchestrator = ProcessingOrchestrator(pipeline, EmailRepository(), EventBus())
        unknown = await orchestrator.start_single("does-not-exist")
        started = await orchestrator.start_single("mail-002")
        final = await orchestrator.wait_idle()
        return unknown, started, final

    unknown, started, final = asyncio.run(scenario())

    assert unknown.is_running is False
    assert started.mode is JobMode.SINGLE
    assert started.total == 1
    assert started.current_item_id == "mail-002"
    assert pipeline.seen == ["mail-002"]
    assert (final.processed, final.failed) == (1, 0)


def test_reconnect_snapshot_only_while_running(db_path) -> None:
    async def scenario():
        gate = asyncio.Event()
        pipeline = FakePipeline(gate=gate, gated_ids={"mail-003"})
        orchestrator = ProcessingOrchestrator(pipeline, EmailRepository(), EventBus())
        await orchestrator.start_batch()
        while orchestrator.get_status().processed < 2:
            await asyncio.sleep(0)
        during: list[dict[str, Any]] = []
        unsubscribe = orchestrator.subscribe_with_reconnect(during.append)
        gate.set()
        await orchestrator.wait_idle()
        unsubscribe()

        after: list[dict[str, Any]] = []
        orchestrator.subscribe_with_reconnect(after.append)
        return during, after

    during, after = asyncio.run(scenario())

    assert during[0]["type"] == "reconnect"
    assert during[0]["isRunning"] is True
    assert during[0]["total"] == 5
    assert during[0]["processed"] == 2
    assert during[0]["currentItemId"] == "mail-003"
    assert during[0]["mode"] == "batch"
    assert types(during)[-1] == "complete"
    assert after == []


def test_status_is_a_pure_read(db_path) -> None:
    async def scenario():
        orchestrator = ProcessingOrchestrator(FakePipeline(), EmailRepository(), EventBus())
        before = orchestrator.get_status()
        await orchestrator.start_batch()
        running = orchestrator.get_status()
        again = orchestrator.get_status()
        await orchestrator.wait_idle()
        return before, running, again

    before, running, again = asyncio.run(scenario())

    assert before.is_running is False
    assert running == again
    assert running.to_dict()["isRunning"] is True
    assert running.processed <= running.total
