from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class JobMode(str, Enum):
    BATCH = "batch"
    RECALCULATE = "recalculate"
    SINGLE = "single"

    @classmethod
    def parse(cls, value: str) -> "JobMode":
        if value == "process":
            return cls.BATCH
        return cls(value)


@dataclass(frozen=True)
class JobSnapshot:
    is_running: bool = False
    mode: Optional[JobMode] = None
    total: int = 0
    processed: int = 0
    failed: int = 0
    current_item_id: Optional[str] = None
    started_at: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "isRunning": self.is_running,
            "mode": self.mode.value if self.mode else None,
            "total": self.total,
            "processed": self.processed,
            "failed": self.failed,
            "currentItemId": self.current_item_id,
            "startedAt": self.started_at,
        }


IDLE = JobSnapshot()


class JobTracker:
    """Owns the single processing job.

    The orchestrator claims the job with ``try_start`` and its detached loop is
    the only caller of ``set_current``/``advance``/``complete`` until the run
    ends. ``fail`` is reserved for the crash boundary. Readers only ever get
    immutable snapshots.
    """

    def __init__(self) -> None:
        self._state = IDLE

    @property
    def is_running(self) -> bool:
        return self._state.is_running

    def snapshot(self) -> JobSnapshot:
        return self._state

    def try_start(
        self, mode: JobMode, total: int, current_item_id: Optional[str] = None
    ) -> tuple[bool, JobSnapshot]:
        """Claim the job unless one is running. Returns ``(claimed, snapshot)``."""
        if self._state.is_running:
            return False, self._state
        self._state = JobSnapshot(
            is_running=True,
            mode=mode,
            total=total,
            processed=0,
            failed=0,
            current_item_id=current_item_id,
            started_at=datetime.utcnow().replace(microsecond=0).isoformat() + "Z",
        )
        return True, self._state

    def set_current(self, item_id: Optional[str]) -> None:
        self._state = replace(self._state, current_item_id=item_id)

    def advance(self, ok: bool) -> JobSnapshot:
        state = self._state
        processed = min(state.processed + 1, state.total)
        failed = state.failed if ok else min(state.failed + 1, processed)
        self._state = replace(state, processed=processed, failed=failed)
        return self._state

    def complete(self) -> JobSnapshot:
        self._state = replace(self._state, is_running=False, current_item_id=None)
        return self._state

    def fail(self) -> JobSnapshot:
        return self.complete()
