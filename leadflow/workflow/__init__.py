from leadflow.workflow.dry_run import DryRunHarness, DryRunResult
from leadflow.workflow.engine import WorkflowEngine
from leadflow.workflow.errors import (
    CallError,
    GraphFormatError,
    GraphValidationError,
    NodeConfigError,
    NodeExecutionError,
    PersistenceError,
    ScriptError,
    ScriptTimeoutError,
    ScriptValidationError,
    WorkflowError,
)
from leadflow.workflow.hooks import RUN_HOOK_EVENTS, HookInvocation, WorkflowHookRegistry
from leadflow.workflow.models import (
    ActionRecord,
    ExecutionResult,
    ExecutionState,
    ExecutionStatus,
    ExecutionTrace,
    NodeKind,
    RecordContext,
    WorkflowEdge,
    WorkflowGraph,
    WorkflowNode,
    graph_from_dict,
)
from leadflow.workflow.scheduler import ResumeScheduler, ResumeTriggerResult
from leadflow.workflow.store import SQLiteWorkflowStore, StoredTestRun, WorkflowStats
from leadflow.workflow.validator import (
    ValidationIssue,
    ValidationResult,
    validate_graph,
    validate_graph_or_raise,
)

__all__ = [
    "ActionRecord",
    "CallError",
    "DryRunHarness",
    "DryRunResult",
    "ExecutionResult",
    "ExecutionState",
    "ExecutionStatus",
    "ExecutionTrace",
    "GraphFormatError",
    "GraphValidationError",
    "HookInvocation",
    "NodeConfigError",
    "NodeExecutionError",
    "NodeKind",
    "PersistenceError",
    "RUN_HOOK_EVENTS",
    "RecordContext",
    "ResumeScheduler",
    "ResumeTriggerResult",
    "SQLiteWorkflowStore",
    "ScriptError",
    "ScriptTimeoutError",
    "ScriptValidationError",
    "StoredTestRun",
    "ValidationIssue",
    "ValidationResult",
    "WorkflowEdge",
    "WorkflowEngine",
    "WorkflowError",
    "WorkflowGraph",
    "WorkflowHookRegistry",
    "WorkflowNode",
    "WorkflowStats",
    "graph_from_dict",
    "validate_graph",
    "validate_graph_or_raise",
]
