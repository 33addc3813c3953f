from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from leadflow.workflow.http_client import CallAttempt
    from leadflow.workflow.validator import ValidationIssue


class WorkflowError(RuntimeError):
    """Base class for workflow engine failures."""


class GraphFormatError(WorkflowError):
    """Raised when a stored workflow document cannot be turned into a graph."""


class GraphValidationError(WorkflowError):
    """Raised by callers that prefer exceptions over validation results."""

    def __init__(self, issues: list[ValidationIssue]) -> None:
        self.issues = list(issues)
        summary = "; ".join(issue.message for issue in self.issues) or "Workflow graph is invalid."
        super().__init__(summary)


class NodeExecutionError(WorkflowError):
    """A single node's evaluator failed."""

    def __init__(self, node_id: str, message: str) -> None:
        self.node_id = node_id
        super().__init__(message)


class NodeConfigError(WorkflowError):
    """Node configuration did not match the shape its evaluator expects."""


class ScriptError(WorkflowError):
    """A sandboxed script failed."""


class ScriptValidationError(ScriptError):
    """A script was rejected before execution."""


class ScriptTimeoutError(ScriptError):
    """A sandboxed script exceeded its wall-clock budget."""


class CallError(WorkflowError):
    """An outbound call failed; carries the retry history."""

    def __init__(
        self,
        message: str,
        *,
        retryable: bool,
        status: int | None = None,
        history: list[CallAttempt] | None = None,
    ) -> None:
        self.retryable = retryable
        self.status = status
        self.history = list(history or [])
        super().__init__(message)


class PersistenceError(WorkflowError):
    """The record store failed to save or load data."""
