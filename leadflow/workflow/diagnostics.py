from __future__ import annotations

from leadflow.workflow.validator import ValidationIssue, ValidationResult


_ISSUE_ORDER = {
    "missing_trigger": 0,
    "multiple_triggers": 1,
    "cycle": 2,
    "disconnected": 3,
    "invalid_condition": 4,
    "invalid_edge": 5,
}


def render_validation_issue(issue: ValidationIssue) -> str:
    location_bits: list[str] = []
    if issue.node_id:
        location_bits.append(f"node={issue.node_id}")
    if issue.edge_id:
        location_bits.append(f"edge={issue.edge_id}")

    location = f" ({', '.join(location_bits)})" if location_bits else ""
    return f"[ERROR] {issue.type}: {issue.message}{location}".rstrip()


def render_validation_issues(issues: list[ValidationIssue]) -> str:
    if not issues:
        return ""

    sorted_items = sorted(
        issues,
        key=lambda item: (_ISSUE_ORDER.get(item.type, 9), item.node_id or "", item.edge_id or ""),
    )
    return "\n".join(f"- {render_validation_issue(item)}" for item in sorted_items)


def render_validation_result(result: ValidationResult) -> str:
    lines: list[str] = []
    rendered = render_validation_issues(result.errors)
    if rendered:
        lines.append(rendered)
    lines.extend(f"- [WARNING] {warning}" for warning in result.warnings)
    return "\n".join(lines)
