from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Literal

from leadflow.workflow.errors import GraphValidationError
from leadflow.workflow.models import BRANCH_FALSE, BRANCH_TRUE, NodeKind, WorkflowGraph


IssueType = Literal[
    "missing_trigger",
    "multiple_triggers",
    "cycle",
    "disconnected",
    "invalid_condition",
    "invalid_edge",
]

LARGE_GRAPH_NODE_COUNT = 50


@dataclass(slots=True)
class ValidationIssue:
    type: IssueType
    message: str
    node_id: str | None = None
    edge_id: str | None = None
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type, "message": self.message}
        if self.node_id is not None:
            payload["node_id"] = self.node_id
        if self.edge_id is not None:
            payload["edge_id"] = self.edge_id
        if self.details is not None:
            payload["details"] = self.details
        return payload


@dataclass(slots=True)
class ValidationResult:
    valid: bool
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": [issue.to_dict() for issue in self.errors],
            "warnings": list(self.warnings),
        }


def validate_graph(
    graph: WorkflowGraph,
    *,
    large_graph_node_count: int = LARGE_GRAPH_NODE_COUNT,
) -> ValidationResult:
    """Run every structural check and collect all violations.

    The graph is never mutated. Only the first cycle is reported; fixing it and
    validating again surfaces the next one.
    """
    errors: list[ValidationIssue] = []
    warnings: list[str] = []

    if not graph.nodes:
        errors.append(
            ValidationIssue(
                type="missing_trigger",
                message="Workflow must have at least one node",
            )
        )
        return ValidationResult(valid=False, errors=errors, warnings=warnings)

    triggers = graph.trigger_nodes()
    errors.extend(_check_triggers(triggers))

    adjacency = _build_adjacency(graph)

    cycle = _find_first_cycle(graph, adjacency)
    if cycle:
        errors.append(
            ValidationIssue(
                type="cycle",
                message=f"Cycle detected in workflow: {' -> '.join(cycle)}",
                node_id=cycle[0],
                details={"cycle": cycle},
            )
        )

    if len(triggers) == 1:
        trigger_id = triggers[0].id
        reachable = _reachable_from(trigger_id, adjacency)
        unreachable = [node.id for node in graph.nodes if node.id != trigger_id and node.id not in reachable]
        if unreachable:
            errors.append(
                ValidationIssue(
                    type="disconnected",
                    message=(
                        f"Found {len(unreachable)} disconnected node(s) not reachable from trigger: "
                        f"{', '.join(unreachable)}"
                    ),
                    details={"unreachable_node_ids": unreachable},
                )
            )

    errors.extend(_check_conditions(graph))
    errors.extend(_check_edges(graph))

    if len(graph.nodes) > large_graph_node_count:
        warnings.append(
            f"Workflow has more than {large_graph_node_count} nodes, which may impact performance"
        )
    has_end = any(node.kind is NodeKind.END for node in graph.nodes)
    if len(graph.nodes) > 1 and not has_end:
        warnings.append("Workflow has no explicit end node, execution will stop at leaf nodes")

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)


def validate_graph_or_raise(graph: WorkflowGraph) -> ValidationResult:
    result = validate_graph(graph)
    if not result.valid:
        raise GraphValidationError(result.errors)
    return result


def _check_triggers(triggers: list) -> list[ValidationIssue]:
    if not triggers:
        return [
            ValidationIssue(
                type="missing_trigger",
                message="Workflow must have exactly one trigger node",
            )
        ]
    if len(triggers) > 1:
        trigger_ids = [node.id for node in triggers]
        return [
            ValidationIssue(
                type="multiple_triggers",
                message=f"Workflow has {len(triggers)} trigger nodes, but only one is allowed",
                details={"trigger_count": len(triggers), "trigger_node_ids": trigger_ids},
            )
        ]
    return []


def _build_adjacency(graph: WorkflowGraph) -> dict[str, list[str]]:
    adjacency: dict[str, list[str]] = {node.id: [] for node in graph.nodes}
    for edge in graph.edges:
        # Dangling edges and self-loops are reported as invalid_edge instead.
        if edge.source_node_id == edge.target_node_id:
            continue
        if edge.source_node_id not in adjacency or edge.target_node_id not in adjacency:
            continue
        adjacency[edge.source_node_id].append(edge.target_node_id)
    return adjacency


def _find_first_cycle(graph: WorkflowGraph, adjacency: dict[str, list[str]]) -> list[str] | None:
    visited: set[str] = set()

    for root in graph.nodes:
        if root.id in visited:
            continue

        path: list[str] = [root.id]
        on_path: set[str] = {root.id}
        visited.add(root.id)
        stack = [(root.id, iter(adjacency[root.id]))]

        while stack:
            node_id, neighbors = stack[-1]
            advanced = False
            for neighbor in neighbors:
                if neighbor in on_path:
                    start = path.index(neighbor)
                    return path[start:] + [neighbor]
                if neighbor not in visited:
                    visited.add(neighbor)
                    on_path.add(neighbor)
                    path.append(neighbor)
                    stack.append((neighbor, iter(adjacency[neighbor])))
                    advanced = True
                    break
            if not advanced:
                stack.pop()
                on_path.discard(node_id)
                path.pop()

    return None


def _reachable_from(start: str, adjacency: dict[str, list[str]]) -> set[str]:
    reachable = {start}
    queue = deque([start])
    while queue:
        current = queue.popleft()
        for neighbor in adjacency.get(current, []):
            if neighbor not in reachable:
                reachable.add(neighbor)
                queue.append(neighbor)
    return reachable


def _check_conditions(graph: WorkflowGraph) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    for node in graph.nodes:
        if node.kind is not NodeKind.CONDITION:
            continue

        outgoing = graph.outgoing(node.id)
        if len(outgoing) != 2:
            issues.append(
                ValidationIssue(
                    type="invalid_condition",
                    message=(
                        f"Condition node must have exactly 2 outgoing edges (true/false), "
                        f"found {len(outgoing)}"
                    ),
                    node_id=node.id,
                    details={"actual_branches": len(outgoing), "expected_branches": 2},
                )
            )
            continue

        labels = [edge.branch_label for edge in outgoing]
        has_true = BRANCH_TRUE in labels
        has_false = BRANCH_FALSE in labels
        if not (has_true and has_false):
            missing = [label for label, present in ((BRANCH_TRUE, has_true), (BRANCH_FALSE, has_false)) if not present]
            issues.append(
                ValidationIssue(
                    type="invalid_condition",
                    message=f"Condition node is missing '{', '.join(missing)}' branch",
                    node_id=node.id,
                    details={
                        "has_true_branch": has_true,
                        "has_false_branch": has_false,
                        "labels": labels,
                    },
                )
            )
    return issues


def _check_edges(graph: WorkflowGraph) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    for edge in graph.edges:
        if not graph.has_node(edge.source_node_id):
            issues.append(
                ValidationIssue(
                    type="invalid_edge",
                    message=f"Edge references non-existent source node: {edge.source_node_id}",
                    edge_id=edge.id,
                )
            )
        if not graph.has_node(edge.target_node_id):
            issues.append(
                ValidationIssue(
                    type="invalid_edge",
                    message=f"Edge references non-existent target node: {edge.target_node_id}",
                    edge_id=edge.id,
                )
            )
        if edge.source_node_id == edge.target_node_id:
            issues.append(
                ValidationIssue(
                    type="invalid_edge",
                    message="Edge cannot connect node to itself",
                    node_id=edge.source_node_id,
                    edge_id=edge.id,
                )
            )
    return issues
