from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, Union

from inboxai.services.agent import AgentStep
from inboxai.services.config import get_settings
from inboxai.services.emails import EmailRepository
from inboxai.services.errors import BatchCrash
from inboxai.services.event_bus import (
    Event,
    EventBus,
    Subscriber,
    complete_event,
    fatal_error_event,
    item_error_event,
    progress_event,
    reconnect_event,
    start_event,
    step_event,
)
from inboxai.services.job_state import IDLE, JobMode, JobSnapshot, JobTracker
from inboxai.services.pipeline import EmailPipeline, summary_is_usable

logger = logging.getLogger(__name__)


class ProcessingOrchestrator:
    """Runs AI processing for the inbox in one background task at a time.

    ``start_batch``/``start_single`` return as soon as the job is claimed; the
    items are processed strictly one after another by a detached task. Progress
    is only observable through ``get_status`` and the event bus.
    """

    def __init__(
        self,
        pipeline: EmailPipeline,
        repository: EmailRepository,
        bus: EventBus,
        tracker: Optional[JobTracker] = None,
        *,
        batch_limit: Optional[int] = None,
    ) -> None:
        self.pipeline = pipeline
        self.repository = repository
        self.bus = bus
        self.tracker = tracker or JobTracker()
        self.batch_limit = batch_limit or get_settings().batch_limit
        self._start_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    # -- status and subscriptions --------------------------------------------

    def get_status(self) -> JobSnapshot:
        return self.tracker.snapshot()

    async def get_ai_status(self) -> dict[str, Any]:
        counts = await self.repository.ai_status_counts()
        return {**counts, "background": self.get_status().to_dict()}

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        return self.bus.subscribe(callback)

    def subscribe_with_reconnect(self, callback: Subscriber) -> Callable[[], None]:
        """Subscribe and, while a run is active, hand the new subscriber the current snapshot first."""
        unsubscribe = self.bus.subscribe(callback)
        snapshot = self.tracker.snapshot()
        if snapshot.is_running:
            try:
                callback(reconnect_event(snapshot.to_dict()))
            except Exception:  # noqa: BLE001
                logger.warning("Subscriber failed on reconnect event", exc_info=True)
        return unsubscribe

    def publish(self, event: Event) -> None:
        self.bus.publish(event)

    async def wait_idle(self) -> JobSnapshot:
        task = self._task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self.get_status()

    # -- starting runs --------------------------------------------------------

    async def start_batch(self, mode: Union[JobMode, str] = JobMode.BATCH) -> JobSnapshot:
        mode = JobMode.parse(mode) if isinstance(mode, str) else mode
        if mode is JobMode.SINGLE:
            raise ValueError("Use start_single for single-item runs")

        async with self._start_lock:
            if self.tracker.is_running:
                logger.info("Background processing already running, ignoring %s request", mode.value)
                return self.tracker.snapshot()

            if mode is JobMode.RECALCULATE:
                await self.repository.reset_all_ai_fields()

            items = await self.repository.get_unprocessed(self.batch_limit)
            if not items:
                logger.info("No unprocessed emails found")
                return IDLE

            claimed, snapshot = self.tracker.try_start(mode, len(items))
            if not claimed:
                return snapshot

            logger.info("Starting %s processing of %d emails", mode.value, len(items))
            self.publish(start_event(snapshot.total, snapshot.processed))
            self._spawn([item["id"] for item in items])
            return snapshot

    async def start_single(self, item_id: str) -> JobSnapshot:
        async with self._start_lock:
            if self.tracker.is_running:
                logger.info("Background processing already running, ignoring reprocess of %s", item_id)
                return self.tracker.snapshot()

            if await self.repository.get_email(item_id) is None:
                logger.warning("Reprocess requested for unknown email %s", item_id)
                return IDLE

            await self.repository.reset_ai_fields(item_id)
            claimed, snapshot = self.tracker.try_start(JobMode.SINGLE, 1, current_item_id=item_id)
            if not claimed:
                return snapshot

            logger.info("Starting single reprocess of %s", item_id)
            self.publish(start_event(snapshot.total, snapshot.processed))
            self._spawn([item_id])
            return snapshot

    # -- background loop ------------------------------------------------------

    def _spawn(self, item_ids: list[str]) -> None:
        async def execute() -> None:
            try:
                await self._run_loop(item_ids)
            except asyncio.CancelledError:
                self.tracker.fail()
                raise
            except Exception as exc:
                crash = BatchCrash(str(exc) or type(exc).__name__)
                logger.exception("Background processing crashed")
                self.tracker.fail()
                self.publish(fatal_error_event(str(crash)))

        self._task = asyncio.create_task(execute())

    async def _run_loop(self, item_ids: list[str]) -> None:
        for item_id in item_ids:
            self.tracker.set_current(item_id)

            def forward(step: AgentStep, item_id: str = item_id) -> None:
                self.publish(step_event(item_id, step.to_dict()))

            try:
                view = await self.pipeline.process(item_id, forward)
            except Exception as exc:  # noqa: BLE001
                logger.error("Email %s failed: %s", item_id, exc)
                await self._release(item_id)
                snapshot = self.tracker.advance(ok=False)
                self.publish(
                    item_error_event(item_id, str(exc), snapshot.processed, snapshot.total, snapshot.failed)
                )
                continue

            snapshot = self.tracker.advance(ok=summary_is_usable(view.get("aiSummary")))
            logger.info("Processed %d/%d (%d failed)", snapshot.processed, snapshot.total, snapshot.failed)
            self.publish(progress_event(snapshot.processed, snapshot.total, snapshot.failed, view))

        snapshot = self.tracker.complete()
        logger.info(
            "Background processing complete: %d/%d processed, %d failed",
            snapshot.processed,
            snapshot.total,
            snapshot.failed,
        )
        self.publish(complete_event(snapshot.processed, snapshot.total, snapshot.failed))

    async def _release(self, item_id: str) -> None:
        try:
            await self.repository.mark_processing(item_id, False)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not clear processing flag for %s: %s", item_id, exc)
