from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from leadflow.settings import EngineSettings
from leadflow.workflow.actions import ActionContext, MessageGenerator, run_action
from leadflow.workflow.conditions import evaluate_operator, resolve_field
from leadflow.workflow.configs import ConditionConfig, DelayConfig, LoopConfig, parse_config
from leadflow.workflow.errors import NodeExecutionError, WorkflowError
from leadflow.workflow.http_client import RetryingCallClient
from leadflow.workflow.models import (
    BRANCH_FALSE,
    BRANCH_TRUE,
    ExecutionState,
    LoopCursor,
    NodeKind,
    RecordContext,
    WorkflowNode,
)
from leadflow.workflow.sandbox import ScriptRunner
from leadflow.workflow.store import TaskQueue, WorkflowStore
from leadflow.workflow.triggers import TriggerContext, evaluate_trigger, to_milliseconds


LOGGER = logging.getLogger(__name__)


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    SKIP = "skip"
    FAIL = "fail"
    PAUSE = "pause"


@dataclass(slots=True)
class NodeOutcome:
    kind: OutcomeKind
    action: str | None = None
    data: dict[str, Any] | None = None
    branch: str | None = None
    error: str | None = None
    resume_at: datetime | None = None
    triggered: bool | None = None
    exception: Exception | None = None

    @classmethod
    def failed(cls, message: str, exception: Exception | None = None) -> NodeOutcome:
        return cls(kind=OutcomeKind.FAIL, error=message, exception=exception)


@dataclass(slots=True)
class EvaluationContext:
    workflow_id: str
    record: RecordContext
    state: ExecutionState
    now: datetime
    dry_run: bool = False


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class NodeEvaluator:
    """Evaluates one node against a record and reports what the engine should do next."""

    def __init__(
        self,
        *,
        settings: EngineSettings,
        store: WorkflowStore | None = None,
        task_queue: TaskQueue | None = None,
        call_client: RetryingCallClient | None = None,
        script_runner: ScriptRunner | None = None,
        message_generator: MessageGenerator | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._task_queue = task_queue
        self._call_client = call_client
        self._script_runner = script_runner
        self._message_generator = message_generator

    async def evaluate(self, node: WorkflowNode, context: EvaluationContext) -> NodeOutcome:
        try:
            if node.kind is NodeKind.TRIGGER:
                return self._evaluate_trigger(node, context)
            if node.kind is NodeKind.CONDITION:
                return self._evaluate_condition(node, context)
            if node.kind is NodeKind.ACTION:
                return await self._evaluate_action(node, context)
            if node.kind is NodeKind.DELAY:
                return self._evaluate_delay(node, context)
            if node.kind is NodeKind.LOOP:
                return self._evaluate_loop(node, context)
            if node.kind is NodeKind.END:
                return NodeOutcome(kind=OutcomeKind.SUCCESS)
        except WorkflowError as exc:
            return NodeOutcome.failed(str(exc), exc)
        return NodeOutcome.failed(f"Unsupported node kind '{node.kind}'")

    def _evaluate_trigger(self, node: WorkflowNode, context: EvaluationContext) -> NodeOutcome:
        result = evaluate_trigger(
            node,
            context.record,
            TriggerContext(
                store=self._store,
                now=context.now,
                event_window_seconds=self._settings.event_window_seconds,
            ),
        )
        if not result.triggered:
            LOGGER.debug("Trigger %s not met for record %s", node.id, context.record.record_id)
        return NodeOutcome(
            kind=OutcomeKind.SUCCESS,
            action="trigger_evaluated",
            data=result.to_dict(),
            triggered=result.triggered,
        )

    def _evaluate_condition(self, node: WorkflowNode, context: EvaluationContext) -> NodeOutcome:
        config = parse_config(ConditionConfig, node.id, node.config)
        actual = resolve_field(context.record.data, config.field)
        result = evaluate_operator(config.operator, actual, config.value, config.case_sensitive)
        LOGGER.debug("Condition %s evaluated %s %s %r -> %s", node.id, config.field, config.operator, config.value, result)
        return NodeOutcome(
            kind=OutcomeKind.SUCCESS,
            action="condition_evaluated",
            data={
                "field": config.field,
                "operator": config.operator,
                "value": config.value,
                "actual": actual,
                "result": result,
            },
            branch=BRANCH_TRUE if result else BRANCH_FALSE,
        )

    async def _evaluate_action(self, node: WorkflowNode, context: EvaluationContext) -> NodeOutcome:
        outcome = await run_action(
            ActionContext(
                workflow_id=context.workflow_id,
                node=node,
                record=context.record,
                variables=context.state.variables,
                now=context.now,
                dry_run=context.dry_run,
                store=self._store,
                task_queue=self._task_queue,
                call_client=self._call_client,
                script_runner=self._script_runner,
                message_generator=self._message_generator,
                script_timeout_ms=self._settings.script_timeout_ms,
            )
        )
        return NodeOutcome(kind=OutcomeKind.SUCCESS, action=outcome.action, data=outcome.data)

    def _evaluate_delay(self, node: WorkflowNode, context: EvaluationContext) -> NodeOutcome:
        config = parse_config(DelayConfig, node.id, node.config)

        if config.delay_until is not None:
            target = _aware(config.delay_until)
            if target <= context.now:
                return NodeOutcome(
                    kind=OutcomeKind.SKIP,
                    action="delay_expired",
                    data={"delay_until": target.isoformat()},
                )
            return NodeOutcome(
                kind=OutcomeKind.PAUSE,
                action="delay_started",
                data={"delay_until": target.isoformat(), "resume_at": target.isoformat()},
                resume_at=target,
            )

        if config.delay_seconds is not None:
            seconds = config.delay_seconds
        else:
            seconds = to_milliseconds(config.duration or 0, config.unit) / 1000.0

        if seconds < 0:
            raise NodeExecutionError(node.id, "Delay duration cannot be negative")
        if seconds == 0:
            return NodeOutcome(kind=OutcomeKind.SKIP, action="delay_zero", data={"delay_seconds": 0})

        resume_at = context.now + timedelta(seconds=seconds)
        return NodeOutcome(
            kind=OutcomeKind.PAUSE,
            action="delay_started",
            data={"delay_seconds": seconds, "resume_at": resume_at.isoformat()},
            resume_at=resume_at,
        )

    def _evaluate_loop(self, node: WorkflowNode, context: EvaluationContext) -> NodeOutcome:
        config = parse_config(LoopConfig, node.id, node.config)
        state = context.state
        cursor = state.loop_cursor if state.loop_cursor and state.loop_cursor.loop_node_id == node.id else None

        if cursor is None:
            cap = config.max_iterations or self._settings.loop_max_iterations
            items = self._materialize_loop_items(node, config, cap)
            if not items:
                return NodeOutcome(
                    kind=OutcomeKind.SKIP,
                    action="loop_empty",
                    data={"iteration_type": config.iteration_type, "total_items": 0},
                )
            cursor = LoopCursor(loop_node_id=node.id, index=0, items=items)
            state.loop_cursor = cursor

        if cursor.index >= cursor.total:
            state.loop_cursor = None
            return NodeOutcome(
                kind=OutcomeKind.SUCCESS,
                action="loop_completed",
                data={"total_items": cursor.total, "iterations": cursor.index},
            )

        current_index = cursor.index
        item_id = cursor.items[current_index]
        cursor.index += 1
        return NodeOutcome(
            kind=OutcomeKind.SUCCESS,
            action="loop_iteration",
            data={
                "current_index": current_index,
                "total_items": cursor.total,
                "remaining_items": cursor.total - cursor.index,
                "item_id": item_id,
            },
        )

    def _materialize_loop_items(self, node: WorkflowNode, config: LoopConfig, cap: int) -> list[str]:
        if config.iteration_type == "list":
            return [str(item) for item in (config.items or [])][:cap]
        if self._store is None:
            raise NodeExecutionError(node.id, "Loop over stored records requires a record store.")
        if config.iteration_type == "audience":
            return self._store.audience_members(str(config.audience_id), limit=cap)
        return self._store.find_records(config.filter, limit=cap)
