from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from copy import deepcopy
from datetime import datetime, timezone
from typing import Any

from leadflow.settings import EngineSettings
from leadflow.workflow.actions import MessageGenerator
from leadflow.workflow.diagnostics import render_validation_issues
from leadflow.workflow.errors import CallError, WorkflowError
from leadflow.workflow.evaluators import EvaluationContext, NodeEvaluator, NodeOutcome, OutcomeKind
from leadflow.workflow.hooks import WorkflowHookRegistry
from leadflow.workflow.http_client import RetryingCallClient, RetryPolicy
from leadflow.workflow.models import (
    ActionRecord,
    ExecutionResult,
    ExecutionState,
    ExecutionStatus,
    NodeError,
    NodeKind,
    RecordContext,
    WorkflowGraph,
    WorkflowNode,
)
from leadflow.workflow.sandbox import ScriptRunner
from leadflow.workflow.store import TaskQueue, WorkflowStore
from leadflow.workflow.validator import ValidationIssue, validate_graph


LOGGER = logging.getLogger(__name__)

WORKFLOW_ERROR_NODE = "workflow"

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowEngine:
    """Walks a workflow graph for one record, pausing at delays and resuming later.

    A run is a single traversal: nodes are evaluated one at a time starting at
    the trigger. Nodes with several unlabeled outgoing edges fan out; each
    branch is walked depth-first in edge declaration order, and branches not yet
    walked are kept on the state so a pause inside one branch resumes the rest.
    """

    def __init__(
        self,
        store: WorkflowStore | None = None,
        *,
        settings: EngineSettings | None = None,
        task_queue: TaskQueue | None = None,
        call_client: RetryingCallClient | None = None,
        script_runner: ScriptRunner | None = None,
        message_generator: MessageGenerator | None = None,
        hooks: WorkflowHookRegistry | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._settings = settings or EngineSettings()
        self._store = store
        if task_queue is None and callable(getattr(store, "submit", None)):
            task_queue = store  # type: ignore[assignment]
        self._hooks = hooks or WorkflowHookRegistry()
        self._clock = clock or _utc_now
        self._evaluator = NodeEvaluator(
            settings=self._settings,
            store=store,
            task_queue=task_queue,
            call_client=call_client
            or RetryingCallClient(
                default_policy=RetryPolicy(
                    max_retries=self._settings.webhook_max_retries,
                    initial_delay_ms=self._settings.webhook_initial_delay_ms,
                    backoff_multiplier=self._settings.webhook_backoff_multiplier,
                ),
                default_timeout_ms=self._settings.webhook_timeout_ms,
            ),
            script_runner=script_runner or ScriptRunner(default_timeout_ms=self._settings.script_timeout_ms),
            message_generator=message_generator,
        )

    @property
    def hooks(self) -> WorkflowHookRegistry:
        return self._hooks

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    async def execute(
        self,
        workflow_id: str,
        record_id: str,
        *,
        graph: WorkflowGraph | None = None,
        record: RecordContext | Mapping[str, Any] | None = None,
        dry_run: bool = False,
        skip_validation: bool = False,
        stop_if_not_triggered: bool = False,
    ) -> ExecutionResult:
        started_at = self._clock()
        state = ExecutionState(
            workflow_id=workflow_id,
            record_id=record_id,
            metadata={
                "workflow_id": workflow_id,
                "record_id": record_id,
                "started_at": started_at.isoformat(),
                "dry_run": dry_run,
            },
        )

        try:
            active_graph = graph or self._load_graph(workflow_id)
            active_record = self._resolve_record(record_id, record)
        except WorkflowError as exc:
            return self._fatal(state, str(exc))

        warnings: list[str] = []
        if not skip_validation:
            validation = validate_graph(
                active_graph,
                large_graph_node_count=self._settings.large_graph_warning_threshold,
            )
            warnings = validation.warnings
            if not validation.valid:
                rendered = render_validation_issues(validation.errors)
                LOGGER.warning("Workflow %s failed validation:\n%s", workflow_id, rendered)
                return self._fatal(
                    state,
                    f"Workflow graph is invalid:\n{rendered}",
                    validation_errors=validation.errors,
                    warnings=warnings,
                )

        triggers = active_graph.trigger_nodes()
        if not triggers:
            return self._fatal(state, "Workflow has no trigger node.")

        state.metadata["total_nodes"] = len(active_graph.nodes)
        state.current_node_id = triggers[0].id
        state.pending_branches = [triggers[0].id]

        LOGGER.info(
            "Starting workflow %s for record %s%s",
            workflow_id,
            record_id,
            " (dry run)" if dry_run else "",
        )
        await self._emit_hook(
            "before_run",
            {"workflow_id": workflow_id, "record_id": record_id, "dry_run": dry_run, "resumed": False},
        )
        return await self._drive(
            active_graph,
            active_record,
            state,
            dry_run=dry_run,
            stop_if_not_triggered=stop_if_not_triggered,
            warnings=warnings,
        )

    async def resume(
        self,
        workflow_id: str,
        record_id: str,
        *,
        paused_state: ExecutionState | None = None,
        graph: WorkflowGraph | None = None,
        record: RecordContext | Mapping[str, Any] | None = None,
        dry_run: bool = False,
    ) -> ExecutionResult:
        """Continue a paused run from the delay node it stopped at.

        When the state came from the store it is claimed first; a claim that
        loses to a concurrent resume fails this call without running anything.
        Failures after the state is loaded report a copy of it, so the trace up
        to the pause is kept.
        """
        now = self._clock()
        try:
            state = paused_state or self._load_paused_state(workflow_id, record_id)
        except WorkflowError as exc:
            empty = ExecutionState(
                workflow_id=workflow_id,
                record_id=record_id,
                metadata={"workflow_id": workflow_id, "record_id": record_id, "dry_run": dry_run},
            )
            return self._fatal(empty, str(exc))

        fallback = ExecutionState.from_dict(state.to_dict())
        try:
            active_graph = graph or self._load_graph(workflow_id)
            active_record = self._resolve_record(record_id, record)
        except WorkflowError as exc:
            return self._fatal(fallback, str(exc))

        if state.status is not ExecutionStatus.PAUSED:
            return self._fatal(fallback, f"Execution is not paused (status={state.status.value}).")

        validation = validate_graph(
            active_graph,
            large_graph_node_count=self._settings.large_graph_warning_threshold,
        )
        if not validation.valid:
            rendered = render_validation_issues(validation.errors)
            return self._fatal(
                fallback,
                f"Workflow graph is invalid:\n{rendered}",
                validation_errors=validation.errors,
                warnings=validation.warnings,
            )

        pause_node = active_graph.node(state.pause_node_id or "")
        if pause_node is None or pause_node.kind is not NodeKind.DELAY:
            return self._fatal(
                fallback,
                f"Paused node '{state.pause_node_id}' is not a delay node in workflow '{workflow_id}'.",
            )

        if not dry_run and self._store is not None and state.version > 0:
            try:
                claimed = self._store.claim_paused_state(workflow_id, record_id, state.version)
            except WorkflowError as exc:
                return self._fatal(fallback, f"Could not claim paused execution: {exc}")
            if not claimed:
                return self._fatal(
                    fallback,
                    f"Paused execution for workflow '{workflow_id}' and record '{record_id}' "
                    "was already resumed.",
                )

        if state.resume_at is not None and now < state.resume_at:
            LOGGER.warning(
                "Resuming workflow %s for record %s before its resume time %s",
                workflow_id,
                record_id,
                state.resume_at.isoformat(),
            )

        state.status = ExecutionStatus.RUNNING
        state.mark_completed(pause_node.id)
        state.actions_taken.append(
            ActionRecord(node_id=pause_node.id, action="delay_completed", result={"resumed_at": now.isoformat()})
        )
        state.pause_node_id = None
        state.resume_at = None
        state.metadata["resumed_at"] = now.isoformat()
        state.metadata["resume_count"] = int(state.metadata.get("resume_count", 0)) + 1
        state.metadata["dry_run"] = dry_run
        state.metadata.pop("completed_at", None)
        state.pending_branches.extend(reversed(self._next_nodes(active_graph, pause_node, None)))

        LOGGER.info("Resuming workflow %s for record %s after delay %s", workflow_id, record_id, pause_node.id)
        await self._emit_hook(
            "before_run",
            {"workflow_id": workflow_id, "record_id": record_id, "dry_run": dry_run, "resumed": True},
        )
        return await self._drive(
            active_graph,
            active_record,
            state,
            dry_run=dry_run,
            stop_if_not_triggered=False,
            warnings=validation.warnings,
        )

    def run(self, **kwargs: Any) -> ExecutionResult:
        return self._run_sync(self.execute(**kwargs), "run", "execute")

    def run_resume(self, **kwargs: Any) -> ExecutionResult:
        return self._run_sync(self.resume(**kwargs), "run_resume", "resume")

    def _run_sync(self, coroutine: Any, name: str, async_name: str) -> ExecutionResult:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop and loop.is_running():
            coroutine.close()
            raise RuntimeError(
                f"WorkflowEngine.{name}() cannot be called inside an active event loop. Use await {async_name}()."
            )
        return asyncio.run(coroutine)

    async def _drive(
        self,
        graph: WorkflowGraph,
        record: RecordContext,
        state: ExecutionState,
        *,
        dry_run: bool,
        stop_if_not_triggered: bool,
        warnings: list[str],
    ) -> ExecutionResult:
        visits = int(state.metadata.get("iterations", 0))
        cap = self._settings.max_node_visits

        while state.pending_branches:
            node_id = state.pending_branches.pop()
            node = graph.node(node_id)
            if node is None:
                state.add_error(WORKFLOW_ERROR_NODE, f"Next node '{node_id}' was not found in the workflow.")
                state.status = ExecutionStatus.FAILED
                break

            if visits >= cap:
                state.pending_branches.append(node_id)
                state.add_error(
                    WORKFLOW_ERROR_NODE,
                    f"Execution exceeded the maximum of {cap} node visits; the workflow may contain a cycle.",
                )
                state.status = ExecutionStatus.FAILED
                LOGGER.error("Workflow %s hit the node visit cap (%s)", state.workflow_id, cap)
                break
            visits += 1

            state.mark_visited(node.id)
            await self._emit_hook(
                "before_node",
                {
                    "workflow_id": state.workflow_id,
                    "record_id": state.record_id,
                    "node_id": node.id,
                    "node_kind": node.kind.value,
                    "step": visits,
                },
            )

            outcome = await self._evaluate(node, record, state, dry_run)
            if outcome.action:
                state.actions_taken.append(ActionRecord(node_id=node.id, action=outcome.action, result=outcome.data))

            await self._emit_hook(
                "after_node",
                {
                    "workflow_id": state.workflow_id,
                    "record_id": state.record_id,
                    "node_id": node.id,
                    "node_kind": node.kind.value,
                    "step": visits,
                    "outcome": outcome.kind.value,
                    "action": outcome.action,
                },
            )

            if outcome.kind is OutcomeKind.FAIL:
                self._record_failure(state, node, outcome)
                await self._emit_hook(
                    "on_error",
                    {
                        "workflow_id": state.workflow_id,
                        "record_id": state.record_id,
                        "node_id": node.id,
                        "error": outcome.error,
                    },
                )
                break

            if outcome.kind is OutcomeKind.PAUSE:
                state.status = ExecutionStatus.PAUSED
                state.pause_node_id = node.id
                state.resume_at = outcome.resume_at
                break

            if outcome.kind is OutcomeKind.SKIP:
                state.mark_skipped(node.id)
            else:
                state.mark_completed(node.id)

            if node.kind is NodeKind.TRIGGER and outcome.triggered is False and stop_if_not_triggered:
                LOGGER.info("Trigger %s not met for record %s; stopping", node.id, state.record_id)
                state.pending_branches.clear()
                break

            next_ids = self._next_nodes(graph, node, outcome)
            if len(next_ids) > 1:
                LOGGER.debug("Node %s fans out to %s", node.id, ", ".join(next_ids))
            state.pending_branches.extend(reversed(next_ids))

        if state.status is ExecutionStatus.RUNNING:
            state.status = ExecutionStatus.COMPLETED

        state.metadata["iterations"] = visits

        if state.status is ExecutionStatus.PAUSED:
            await self._persist_pause(state, dry_run)

        return await self._finish(state, dry_run=dry_run, warnings=warnings)

    async def _evaluate(
        self,
        node: WorkflowNode,
        record: RecordContext,
        state: ExecutionState,
        dry_run: bool,
    ) -> NodeOutcome:
        context = EvaluationContext(
            workflow_id=state.workflow_id,
            record=record,
            state=state,
            now=self._clock(),
            dry_run=dry_run,
        )
        try:
            return await self._evaluator.evaluate(node, context)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Node %s raised unexpectedly", node.id)
            return NodeOutcome.failed(str(exc) or exc.__class__.__name__, exc)

    def _record_failure(self, state: ExecutionState, node: WorkflowNode, outcome: NodeOutcome) -> None:
        message = outcome.error or "Node execution failed"
        LOGGER.error(
            "Node %s failed in workflow %s for record %s: %s",
            node.id,
            state.workflow_id,
            state.record_id,
            message,
        )
        state.add_error(node.id, message)
        state.status = ExecutionStatus.FAILED
        if isinstance(outcome.exception, CallError):
            state.actions_taken.append(
                ActionRecord(
                    node_id=node.id,
                    action="send_webhook_failed",
                    result={
                        "error": message,
                        "retryable": outcome.exception.retryable,
                        "status": outcome.exception.status,
                        "attempts": len(outcome.exception.history),
                        "retry_history": [attempt.to_dict() for attempt in outcome.exception.history],
                    },
                )
            )

    async def _persist_pause(self, state: ExecutionState, dry_run: bool) -> None:
        LOGGER.info(
            "Workflow %s paused at %s for record %s until %s",
            state.workflow_id,
            state.pause_node_id,
            state.record_id,
            state.resume_at.isoformat() if state.resume_at else "unspecified",
        )
        if dry_run:
            return

        if self._store is None:
            error = "No store is configured to persist the paused execution."
        else:
            try:
                self._store.save_paused_state(state)
                error = None
            except WorkflowError as exc:
                error = f"Failed to persist paused execution: {exc}"

        if error:
            LOGGER.error("Workflow %s: %s", state.workflow_id, error)
            state.add_error(state.pause_node_id or WORKFLOW_ERROR_NODE, error)
            state.status = ExecutionStatus.FAILED
            return

        await self._emit_hook(
            "on_pause",
            {
                "workflow_id": state.workflow_id,
                "record_id": state.record_id,
                "node_id": state.pause_node_id,
                "resume_at": state.resume_at.isoformat() if state.resume_at else None,
            },
        )

    async def _finish(self, state: ExecutionState, *, dry_run: bool, warnings: list[str]) -> ExecutionResult:
        finished_at = self._clock()
        state.metadata["completed_at"] = finished_at.isoformat()
        started_raw = state.metadata.get("started_at")
        if isinstance(started_raw, str):
            started_at = datetime.fromisoformat(started_raw)
            state.metadata["duration_ms"] = int((finished_at - started_at).total_seconds() * 1000)

        if state.status.terminal and not dry_run:
            self._record_stats(state.workflow_id, state.status is ExecutionStatus.COMPLETED)

        LOGGER.info(
            "Workflow %s for record %s finished with status %s after %s node visit(s)",
            state.workflow_id,
            state.record_id,
            state.status.value,
            state.metadata.get("iterations", 0),
        )
        await self._emit_hook(
            "after_run",
            {
                "workflow_id": state.workflow_id,
                "record_id": state.record_id,
                "status": state.status.value,
                "visited": list(state.visited),
                "dry_run": dry_run,
            },
        )
        return ExecutionResult(
            status=state.status,
            state=state,
            error=state.errors[0].message if state.status is ExecutionStatus.FAILED and state.errors else None,
            warnings=list(warnings),
        )

    def _fatal(
        self,
        state: ExecutionState,
        message: str,
        *,
        validation_errors: list[ValidationIssue] | None = None,
        warnings: list[str] | None = None,
    ) -> ExecutionResult:
        LOGGER.error("Workflow %s for record %s failed: %s", state.workflow_id, state.record_id, message)
        state.status = ExecutionStatus.FAILED
        state.errors = [NodeError(node_id=WORKFLOW_ERROR_NODE, message=message)]
        state.metadata["completed_at"] = self._clock().isoformat()
        return ExecutionResult(
            status=ExecutionStatus.FAILED,
            state=state,
            error=message,
            validation_errors=list(validation_errors or []),
            warnings=list(warnings or []),
        )

    def _next_nodes(self, graph: WorkflowGraph, node: WorkflowNode, outcome: NodeOutcome | None) -> list[str]:
        edges = graph.outgoing(node.id)
        if node.kind is NodeKind.CONDITION:
            branch = outcome.branch if outcome else None
            for edge in edges:
                if edge.branch_label == branch:
                    return [edge.target_node_id]
            LOGGER.warning("Condition %s has no edge labelled '%s'; ending this branch", node.id, branch)
            return []
        return [edge.target_node_id for edge in edges]

    def _record_stats(self, workflow_id: str, succeeded: bool) -> None:
        if self._store is None:
            return
        try:
            self._store.increment_workflow_stats(workflow_id, succeeded)
        except Exception:  # noqa: BLE001
            # Statistics are best-effort bookkeeping.
            LOGGER.warning("Could not update statistics for workflow %s", workflow_id, exc_info=True)

    async def _emit_hook(self, event: str, context: dict[str, Any]) -> None:
        if not self._hooks.has_callbacks(event):
            return
        invocations = await self._hooks.emit(event, context)
        failed = [item.callback_name for item in invocations if not item.ok]
        if failed:
            LOGGER.debug("Hooks failed for %s: %s", event, ", ".join(failed))

    def _load_graph(self, workflow_id: str) -> WorkflowGraph:
        if self._store is None:
            raise WorkflowError("No workflow store is configured and no graph was supplied.")
        graph = self._store.load_graph(workflow_id)
        if graph is None:
            raise WorkflowError(f"Workflow '{workflow_id}' was not found.")
        return graph

    def _load_paused_state(self, workflow_id: str, record_id: str) -> ExecutionState:
        if self._store is None:
            raise WorkflowError("No workflow store is configured and no paused state was supplied.")
        state = self._store.load_paused_state(workflow_id, record_id)
        if state is None:
            raise WorkflowError(f"No paused execution found for workflow '{workflow_id}' and record '{record_id}'.")
        return state

    def _resolve_record(self, record_id: str, record: RecordContext | Mapping[str, Any] | None) -> RecordContext:
        if isinstance(record, RecordContext):
            return RecordContext(
                record_id=record.record_id,
                data=deepcopy(record.data),
                workspace_id=record.workspace_id,
            )
        if record is not None:
            return RecordContext(record_id=record_id, data=deepcopy(dict(record)))
        if self._store is None:
            raise WorkflowError("No record store is configured and no record was supplied.")
        loaded = self._store.load_record(record_id)
        if loaded is None:
            raise WorkflowError(f"Record '{record_id}' was not found.")
        return loaded
