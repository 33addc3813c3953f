from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from leadflow.workflow.engine import WorkflowEngine
from leadflow.workflow.errors import WorkflowError
from leadflow.workflow.models import ExecutionStatus, RecordContext, WorkflowGraph
from leadflow.workflow.store import SQLiteWorkflowStore, StoredTestRun
from leadflow.workflow.validator import ValidationIssue, validate_graph


LOGGER = logging.getLogger(__name__)

SYNTHETIC_RECORD_ID = "test-lead"


def synthetic_record() -> dict[str, Any]:
    return {
        "id": SYNTHETIC_RECORD_ID,
        "name": "Test Lead",
        "username": "testlead",
        "email": "test@example.com",
        "profileUrl": "https://example.com/testlead",
        "platform": "linkedin",
        "bio": "Test lead for workflow testing",
        "headline": "Test User",
        "company": "Test Company",
        "industry": "Technology",
        "location": "San Francisco, CA",
        "score": 50,
        "tags": [],
        "pipelineStageId": None,
        "customFields": {},
    }


@dataclass(slots=True)
class DryRunResult:
    success: bool
    test_run_id: str
    workflow_id: str
    record_id: str
    trace: dict[str, Any] | None = None
    duration_ms: int = 0
    error: str | None = None
    validation_errors: list[ValidationIssue] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "test_run_id": self.test_run_id,
            "workflow_id": self.workflow_id,
            "record_id": self.record_id,
            "trace": self.trace,
            "duration_ms": self.duration_ms,
            "error": self.error,
            "validation_errors": [issue.to_dict() for issue in self.validation_errors],
        }


class DryRunHarness:
    """Runs a workflow without side effects and keeps a record of each test run."""

    def __init__(self, *, engine: WorkflowEngine, store: SQLiteWorkflowStore) -> None:
        self._engine = engine
        self._store = store

    async def run(
        self,
        workflow_id: str,
        record_id: str | None = None,
        graph: WorkflowGraph | None = None,
    ) -> DryRunResult:
        started = time.monotonic()
        test_run_id = self._store.create_test_run(workflow_id, record_id)
        resolved_record_id = record_id or SYNTHETIC_RECORD_ID

        try:
            active_graph = graph or self._store.load_graph(workflow_id)
            if active_graph is None:
                raise WorkflowError(f"Workflow '{workflow_id}' was not found.")
            record = self._resolve_record(record_id)
        except WorkflowError as exc:
            return self._fail(test_run_id, workflow_id, resolved_record_id, started, str(exc))

        validation = validate_graph(
            active_graph,
            large_graph_node_count=self._engine.settings.large_graph_warning_threshold,
        )
        if not validation.valid:
            message = "; ".join(issue.message for issue in validation.errors)
            return self._fail(
                test_run_id,
                workflow_id,
                resolved_record_id,
                started,
                f"Workflow validation failed: {message}",
                validation_errors=validation.errors,
            )

        self._store.update_test_run(test_run_id, status="running")
        result = await self._engine.execute(
            workflow_id,
            record.record_id,
            graph=active_graph,
            record=record,
            dry_run=True,
            skip_validation=True,
        )

        trace = result.trace.to_dict()
        trace["variables"] = dict(result.state.variables)
        trace["warnings"] = list(validation.warnings)
        duration_ms = int((time.monotonic() - started) * 1000)
        success = result.status is not ExecutionStatus.FAILED
        self._store.update_test_run(
            test_run_id,
            status="completed" if success else "failed",
            trace=trace,
            error_text=result.error,
            duration_ms=duration_ms,
        )
        LOGGER.info("Dry run %s of workflow %s finished: %s", test_run_id, workflow_id, result.status.value)
        return DryRunResult(
            success=success,
            test_run_id=test_run_id,
            workflow_id=workflow_id,
            record_id=record.record_id,
            trace=trace,
            duration_ms=duration_ms,
            error=result.error,
        )

    def get(self, test_run_id: str) -> StoredTestRun | None:
        return self._store.get_test_run(test_run_id)

    def list(self, workflow_id: str, limit: int = 10, offset: int = 0) -> list[StoredTestRun]:
        return self._store.list_test_runs(workflow_id, limit=limit, offset=offset)

    def _resolve_record(self, record_id: str | None) -> RecordContext:
        if record_id is None:
            return RecordContext(record_id=SYNTHETIC_RECORD_ID, data=synthetic_record())
        record = self._store.load_record(record_id)
        if record is None:
            raise WorkflowError(f"Record '{record_id}' was not found.")
        return record

    def _fail(
        self,
        test_run_id: str,
        workflow_id: str,
        record_id: str,
        started: float,
        message: str,
        *,
        validation_errors: list[ValidationIssue] | None = None,
    ) -> DryRunResult:
        duration_ms = int((time.monotonic() - started) * 1000)
        LOGGER.warning("Dry run %s of workflow %s failed: %s", test_run_id, workflow_id, message)
        self._store.update_test_run(test_run_id, status="failed", error_text=message, duration_ms=duration_ms)
        return DryRunResult(
            success=False,
            test_run_id=test_run_id,
            workflow_id=workflow_id,
            record_id=record_id,
            duration_ms=duration_ms,
            error=message,
            validation_errors=list(validation_errors or []),
        )
