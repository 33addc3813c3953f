from __future__ import annotations

from collections.abc import Mapping
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from leadflow.workflow.errors import GraphFormatError


class NodeKind(str, Enum):
    TRIGGER = "trigger"
    CONDITION = "condition"
    ACTION = "action"
    DELAY = "delay"
    LOOP = "loop"
    END = "end"


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED}


BRANCH_TRUE = "true"
BRANCH_FALSE = "false"

# Stored documents name some nodes by a combined "<kind>_<subtype>" type.
_KIND_PREFIXES = (
    ("trigger_", NodeKind.TRIGGER),
    ("action_", NodeKind.ACTION),
)
_LEGACY_DELAY_TYPES = {"action_wait_until_time", "wait_delay"}


@dataclass(slots=True, frozen=True)
class WorkflowNode:
    id: str
    kind: NodeKind
    subtype: str = ""
    config: Mapping[str, Any] = field(default_factory=dict)
    name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "kind": self.kind.value,
            "subtype": self.subtype,
            "config": deepcopy(dict(self.config)),
        }
        if self.name:
            payload["name"] = self.name
        return payload


@dataclass(slots=True, frozen=True)
class WorkflowEdge:
    id: str
    source_node_id: str
    target_node_id: str
    branch_label: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "sourceNodeId": self.source_node_id,
            "targetNodeId": self.target_node_id,
        }
        if self.branch_label is not None:
            payload["branchLabel"] = self.branch_label
        return payload


@dataclass(slots=True)
class WorkflowGraph:
    workflow_id: str
    nodes: list[WorkflowNode]
    edges: list[WorkflowEdge]
    name: str = ""
    _node_index: dict[str, WorkflowNode] = field(init=False, repr=False, compare=False)
    _outgoing: dict[str, list[WorkflowEdge]] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._node_index = {}
        for node in self.nodes:
            # First declaration wins; duplicates are a format error upstream.
            self._node_index.setdefault(node.id, node)
        self._outgoing = {}
        for edge in self.edges:
            self._outgoing.setdefault(edge.source_node_id, []).append(edge)

    def node(self, node_id: str) -> WorkflowNode | None:
        return self._node_index.get(node_id)

    def has_node(self, node_id: str) -> bool:
        return node_id in self._node_index

    def outgoing(self, node_id: str) -> list[WorkflowEdge]:
        return list(self._outgoing.get(node_id, []))

    def trigger_nodes(self) -> list[WorkflowNode]:
        return [node for node in self.nodes if node.kind is NodeKind.TRIGGER]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.workflow_id,
            "name": self.name or self.workflow_id,
            "nodes": [node.to_dict() for node in self.nodes],
            "edges": [edge.to_dict() for edge in self.edges],
        }


@dataclass(slots=True)
class RecordContext:
    record_id: str
    data: dict[str, Any]
    workspace_id: str | None = None

    def get(self, key: str, default: object = None) -> object:
        return self.data.get(key, default)


@dataclass(slots=True)
class NodeError:
    node_id: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"node_id": self.node_id, "message": self.message}


@dataclass(slots=True)
class ActionRecord:
    node_id: str
    action: str
    result: object = None

    def to_dict(self) -> dict[str, Any]:
        return {"node_id": self.node_id, "action": self.action, "result": self.result}


@dataclass(slots=True)
class LoopCursor:
    loop_node_id: str
    index: int
    items: list[str]

    @property
    def total(self) -> int:
        return len(self.items)

    def to_dict(self) -> dict[str, Any]:
        return {"loop_node_id": self.loop_node_id, "index": self.index, "items": list(self.items)}


@dataclass(slots=True)
class ExecutionState:
    workflow_id: str
    record_id: str
    current_node_id: str | None = None
    visited: list[str] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: list[NodeError] = field(default_factory=list)
    status: ExecutionStatus = ExecutionStatus.RUNNING
    pause_node_id: str | None = None
    resume_at: datetime | None = None
    loop_cursor: LoopCursor | None = None
    pending_branches: list[str] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)
    actions_taken: list[ActionRecord] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    version: int = 0

    def mark_visited(self, node_id: str) -> None:
        self.current_node_id = node_id
        self.visited.append(node_id)

    def mark_completed(self, node_id: str) -> None:
        if node_id not in self.completed:
            self.completed.append(node_id)

    def mark_skipped(self, node_id: str) -> None:
        if node_id not in self.skipped:
            self.skipped.append(node_id)

    def add_error(self, node_id: str, message: str) -> None:
        self.errors.append(NodeError(node_id=node_id, message=message))

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "record_id": self.record_id,
            "current_node_id": self.current_node_id,
            "visited": list(self.visited),
            "completed": list(self.completed),
            "skipped": list(self.skipped),
            "errors": [error.to_dict() for error in self.errors],
            "status": self.status.value,
            "pause_node_id": self.pause_node_id,
            "resume_at": self.resume_at.isoformat() if self.resume_at else None,
            "loop_cursor": self.loop_cursor.to_dict() if self.loop_cursor else None,
            "pending_branches": list(self.pending_branches),
            "variables": deepcopy(self.variables),
            "actions_taken": [action.to_dict() for action in self.actions_taken],
            "metadata": deepcopy(self.metadata),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ExecutionState:
        try:
            raw_cursor = payload.get("loop_cursor")
            cursor = None
            if isinstance(raw_cursor, Mapping):
                cursor = LoopCursor(
                    loop_node_id=str(raw_cursor["loop_node_id"]),
                    index=int(raw_cursor.get("index", 0)),
                    items=[str(item) for item in raw_cursor.get("items") or []],
                )
            resume_at = payload.get("resume_at")
            return cls(
                workflow_id=str(payload["workflow_id"]),
                record_id=str(payload["record_id"]),
                current_node_id=payload.get("current_node_id"),
                visited=[str(item) for item in payload.get("visited") or []],
                completed=[str(item) for item in payload.get("completed") or []],
                skipped=[str(item) for item in payload.get("skipped") or []],
                errors=[
                    NodeError(node_id=str(item["node_id"]), message=str(item["message"]))
                    for item in payload.get("errors") or []
                ],
                status=ExecutionStatus(payload.get("status", ExecutionStatus.RUNNING.value)),
                pause_node_id=payload.get("pause_node_id"),
                resume_at=datetime.fromisoformat(resume_at) if resume_at else None,
                loop_cursor=cursor,
                pending_branches=[str(item) for item in payload.get("pending_branches") or []],
                variables=dict(payload.get("variables") or {}),
                actions_taken=[
                    ActionRecord(
                        node_id=str(item["node_id"]),
                        action=str(item["action"]),
                        result=item.get("result"),
                    )
                    for item in payload.get("actions_taken") or []
                ],
                metadata=dict(payload.get("metadata") or {}),
                version=int(payload.get("version", 0)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise GraphFormatError(f"Malformed execution state: {exc}") from exc


@dataclass(slots=True)
class ExecutionTrace:
    visited: list[str]
    completed: list[str]
    skipped: list[str]
    errors: list[NodeError]
    actions_taken: list[ActionRecord]
    status: ExecutionStatus
    pause_node_id: str | None = None
    resume_at: datetime | None = None

    @classmethod
    def from_state(cls, state: ExecutionState) -> ExecutionTrace:
        return cls(
            visited=list(state.visited),
            completed=list(state.completed),
            skipped=list(state.skipped),
            errors=list(state.errors),
            actions_taken=list(state.actions_taken),
            status=state.status,
            pause_node_id=state.pause_node_id,
            resume_at=state.resume_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "visited": list(self.visited),
            "completed": list(self.completed),
            "skipped": list(self.skipped),
            "errors": [error.to_dict() for error in self.errors],
            "actions_taken": [action.to_dict() for action in self.actions_taken],
            "status": self.status.value,
            "pause_node_id": self.pause_node_id,
            "resume_at": self.resume_at.isoformat() if self.resume_at else None,
        }


@dataclass(slots=True)
class ExecutionResult:
    status: ExecutionStatus
    state: ExecutionState
    error: str | None = None
    validation_errors: list[Any] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status in {ExecutionStatus.COMPLETED, ExecutionStatus.PAUSED}

    @property
    def actions_taken(self) -> list[ActionRecord]:
        return self.state.actions_taken

    @property
    def trace(self) -> ExecutionTrace:
        return ExecutionTrace.from_state(self.state)


def graph_from_dict(payload: Mapping[str, Any], workflow_id: str | None = None) -> WorkflowGraph:
    """Canonicalize a stored workflow document into a ``WorkflowGraph``.

    Accepts node kinds given either as ``kind``/``subtype`` or as the combined
    ``type`` strings used by stored documents (``action_add_tag``,
    ``trigger_manual``). Edge endpoints may be ``sourceNodeId``/``targetNodeId``
    or ``source``/``target``; the branch label may live on the edge itself or
    under ``config.condition``.
    """
    if not isinstance(payload, Mapping):
        raise GraphFormatError("Workflow document must be a mapping.")

    resolved_id = str(workflow_id or payload.get("id") or payload.get("workflow_id") or "").strip()
    if not resolved_id:
        raise GraphFormatError("Workflow document must contain a non-empty 'id'.")

    raw_nodes = payload.get("nodes") or []
    raw_edges = payload.get("edges") or []
    if not isinstance(raw_nodes, list) or not isinstance(raw_edges, list):
        raise GraphFormatError("Workflow 'nodes' and 'edges' must be lists.")

    nodes: list[WorkflowNode] = []
    seen: set[str] = set()
    for index, raw in enumerate(raw_nodes):
        node = _node_from_dict(raw, index)
        if node.id in seen:
            raise GraphFormatError(f"Duplicate node id '{node.id}'.")
        seen.add(node.id)
        nodes.append(node)

    edges = [_edge_from_dict(raw, index) for index, raw in enumerate(raw_edges)]
    return WorkflowGraph(
        workflow_id=resolved_id,
        name=str(payload.get("name") or resolved_id),
        nodes=nodes,
        edges=edges,
    )


def _node_from_dict(raw: object, index: int) -> WorkflowNode:
    if not isinstance(raw, Mapping):
        raise GraphFormatError(f"Node at index {index} must be a mapping.")

    node_id = str(raw.get("id") or raw.get("node_id") or "").strip()
    if not node_id:
        raise GraphFormatError(f"Node at index {index} is missing an 'id'.")

    config = raw.get("config") or {}
    if not isinstance(config, Mapping):
        raise GraphFormatError(f"Node '{node_id}' config must be a mapping.")
    config = deepcopy(dict(config))

    raw_kind = str(raw.get("kind") or raw.get("type") or "").strip()
    subtype = str(raw.get("subtype") or "").strip()

    if raw_kind in _LEGACY_DELAY_TYPES:
        if "waitUntil" in config and "delayUntil" not in config:
            config["delayUntil"] = config["waitUntil"]
        return WorkflowNode(id=node_id, kind=NodeKind.DELAY, subtype=raw_kind, config=config, name=raw.get("name"))

    kind: NodeKind | None = None
    try:
        kind = NodeKind(raw_kind)
    except ValueError:
        for prefix, prefixed_kind in _KIND_PREFIXES:
            if raw_kind.startswith(prefix):
                kind = prefixed_kind
                subtype = subtype or raw_kind[len(prefix):]
                break
    if kind is None:
        raise GraphFormatError(f"Node '{node_id}' has unknown type '{raw_kind}'.")

    if not subtype and kind in {NodeKind.TRIGGER, NodeKind.ACTION}:
        subtype = str(config.get("type") or ("manual" if kind is NodeKind.TRIGGER else "")).strip()

    return WorkflowNode(id=node_id, kind=kind, subtype=subtype, config=config, name=raw.get("name"))


def _edge_from_dict(raw: object, index: int) -> WorkflowEdge:
    if not isinstance(raw, Mapping):
        raise GraphFormatError(f"Edge at index {index} must be a mapping.")

    source = str(raw.get("sourceNodeId") or raw.get("source_node_id") or raw.get("source") or "").strip()
    target = str(raw.get("targetNodeId") or raw.get("target_node_id") or raw.get("target") or "").strip()
    edge_id = str(raw.get("id") or f"edge-{index}")

    label = raw.get("branchLabel", raw.get("branch_label", raw.get("condition")))
    config = raw.get("config")
    if label is None and isinstance(config, Mapping):
        label = config.get("condition")
    if isinstance(label, bool):
        label = BRANCH_TRUE if label else BRANCH_FALSE

    return WorkflowEdge(
        id=edge_id,
        source_node_id=source,
        target_node_id=target,
        branch_label=str(label) if label is not None else None,
    )
