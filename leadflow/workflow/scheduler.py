from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from leadflow.workflow.engine import WorkflowEngine
from leadflow.workflow.models import ExecutionState
from leadflow.workflow.store import SQLiteWorkflowStore


LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ResumeTriggerResult:
    workflow_id: str
    record_id: str
    status: str
    detail: str


class ResumeScheduler:
    """Resumes paused executions whose delay has elapsed."""

    def __init__(self, *, store: SQLiteWorkflowStore, engine: WorkflowEngine) -> None:
        self._store = store
        self._engine = engine

    def pending(self, now: datetime | None = None, limit: int = 20) -> list[ExecutionState]:
        return self._store.due_paused_states(now or datetime.now(timezone.utc), limit=limit)

    async def trigger_due(self, now: datetime | None = None, limit: int = 20) -> list[ResumeTriggerResult]:
        ts = now or datetime.now(timezone.utc)
        due = self._store.due_paused_states(ts, limit=limit)
        results: list[ResumeTriggerResult] = []

        for state in due:
            results.append(await self._resume(state))

        return results

    async def _resume(self, state: ExecutionState) -> ResumeTriggerResult:
        try:
            result = await self._engine.resume(state.workflow_id, state.record_id, paused_state=state)
            status = result.status.value
            detail = result.error or f"Resumed from {state.pause_node_id}."
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Resuming workflow %s for record %s failed", state.workflow_id, state.record_id)
            status = "error"
            detail = str(exc)

        return ResumeTriggerResult(
            workflow_id=state.workflow_id,
            record_id=state.record_id,
            status=status,
            detail=detail,
        )
