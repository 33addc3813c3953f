from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from leadflow.workflow.conditions import evaluate_operator, resolve_field, to_number
from leadflow.workflow.configs import (
    FieldChangeTriggerConfig,
    StageTriggerConfig,
    TagTriggerConfig,
    ThresholdTriggerConfig,
    TimeTriggerConfig,
    WebhookTriggerConfig,
    parse_config,
)
from leadflow.workflow.errors import NodeConfigError
from leadflow.workflow.models import RecordContext, WorkflowNode
from leadflow.workflow.store import WorkflowStore


class TriggerKind(str, Enum):
    MANUAL = "manual"
    STAGE_ENTRY = "stage_entry"
    SCORE_THRESHOLD = "score_threshold"
    FIELD_CHANGE = "field_change"
    TIME_BASED = "time_based"
    TAG_APPLIED = "tag_applied"
    WEBHOOK = "webhook"


TRIGGER_ALIASES = {
    "stage_change": TriggerKind.STAGE_ENTRY,
    "lead_stage_entry": TriggerKind.STAGE_ENTRY,
    "lead_score_change": TriggerKind.SCORE_THRESHOLD,
    "field_threshold": TriggerKind.SCORE_THRESHOLD,
    "lead_field_change": TriggerKind.FIELD_CHANGE,
    "date_reached": TriggerKind.TIME_BASED,
    "webhook_received": TriggerKind.WEBHOOK,
}

THRESHOLD_OPERATORS = {
    "greater_than": "greater_than",
    "less_than": "less_than",
    "equals": "equals",
    "greater_or_equal": "greater_or_equal",
    "less_or_equal": "less_or_equal",
    "eq": "equals",
    "ne": "not_equals",
    "gt": "greater_than",
    "gte": "greater_or_equal",
    "lt": "less_than",
    "lte": "less_or_equal",
}

_UNIT_MILLISECONDS = {
    "ms": 1,
    "millisecond": 1,
    "milliseconds": 1,
    "s": 1000,
    "sec": 1000,
    "second": 1000,
    "seconds": 1000,
    "min": 60_000,
    "minute": 60_000,
    "minutes": 60_000,
    "hr": 3_600_000,
    "h": 3_600_000,
    "hour": 3_600_000,
    "hours": 3_600_000,
    "day": 86_400_000,
    "d": 86_400_000,
    "days": 86_400_000,
}


def to_milliseconds(amount: float, unit: str) -> float:
    factor = _UNIT_MILLISECONDS.get(unit.strip().lower())
    if factor is None:
        raise NodeConfigError(f"Unknown time unit: {unit}")
    return amount * factor


def parse_timestamp(value: object) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(slots=True)
class TriggerContext:
    store: WorkflowStore | None
    now: datetime
    event_window_seconds: int = 300


@dataclass(slots=True)
class TriggerResult:
    triggered: bool
    trigger_type: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"triggered": self.triggered, "trigger_type": self.trigger_type, **self.data}


def resolve_trigger_kind(subtype: str) -> TriggerKind:
    key = (subtype or TriggerKind.MANUAL.value).strip().lower()
    if key in TRIGGER_ALIASES:
        return TRIGGER_ALIASES[key]
    try:
        return TriggerKind(key)
    except ValueError as exc:
        raise NodeConfigError(f"Unknown trigger type: {subtype}") from exc


def evaluate_trigger(node: WorkflowNode, record: RecordContext, context: TriggerContext) -> TriggerResult:
    kind = resolve_trigger_kind(node.subtype)
    handler = TRIGGER_HANDLERS[kind]
    triggered, data = handler(node, record, context)
    return TriggerResult(triggered=triggered, trigger_type=kind.value, data=data)


TriggerHandler = Callable[[WorkflowNode, RecordContext, TriggerContext], tuple[bool, dict[str, Any]]]


def _manual(node: WorkflowNode, record: RecordContext, context: TriggerContext) -> tuple[bool, dict[str, Any]]:
    return True, {"manually_triggered": True}


def _stage_entry(node: WorkflowNode, record: RecordContext, context: TriggerContext) -> tuple[bool, dict[str, Any]]:
    config = parse_config(StageTriggerConfig, node.id, node.config)
    current = record.get("pipelineStageId")
    if not current:
        return False, {"reason": "Record has no stage"}
    if config.to_stage_id and current != config.to_stage_id:
        return False, {"reason": "Record not in target stage", "current_stage_id": current}
    return True, {
        "current_stage_id": current,
        "from_stage_id": config.from_stage_id,
        "to_stage_id": config.to_stage_id,
    }


def _score_threshold(
    node: WorkflowNode, record: RecordContext, context: TriggerContext
) -> tuple[bool, dict[str, Any]]:
    config = parse_config(ThresholdTriggerConfig, node.id, node.config)
    operator = THRESHOLD_OPERATORS.get(config.operator.strip().lower())
    if operator is None:
        raise NodeConfigError(f"Unknown operator: {config.operator}")
    value = resolve_field(record.data, config.field)
    if to_number(value) is None:
        return False, {"reason": f"Field {config.field} is not numeric", "field": config.field}
    met = evaluate_operator(operator, value, config.threshold)
    return met, {
        "field": config.field,
        "value": value,
        "threshold": config.threshold,
        "operator": config.operator,
        "condition_met": met,
    }


def _field_change(node: WorkflowNode, record: RecordContext, context: TriggerContext) -> tuple[bool, dict[str, Any]]:
    config = parse_config(FieldChangeTriggerConfig, node.id, node.config)
    value = resolve_field(record.data, config.field)
    if config.value is None:
        met = not evaluate_operator("is_empty", value, None)
    else:
        met = evaluate_operator("equals", value, config.value)
    return met, {"field": config.field, "value": value, "expected": config.value}


def _time_based(node: WorkflowNode, record: RecordContext, context: TriggerContext) -> tuple[bool, dict[str, Any]]:
    config = parse_config(TimeTriggerConfig, node.id, node.config)
    if config.date_field == "customDate":
        if config.custom_date is None:
            return False, {"reason": "customDateValue required for custom date field"}
        target = parse_timestamp(config.custom_date)
    elif config.date_field == "lastContactedAt":
        target = parse_timestamp(record.get("lastContactedAt") or record.get("lastInteractionAt"))
    else:
        target = parse_timestamp(resolve_field(record.data, config.date_field))

    if target is None:
        return False, {"reason": f"Date field {config.date_field} is not set", "date_field": config.date_field}

    if config.relative_offset is not None:
        offset = timedelta(
            milliseconds=to_milliseconds(config.relative_offset.amount, config.relative_offset.unit)
        )
        target = target - offset if config.relative_offset.before else target + offset

    met = context.now >= target
    return met, {
        "date_field": config.date_field,
        "target_date": target.isoformat(),
        "current_date": context.now.isoformat(),
    }


def _tag_applied(node: WorkflowNode, record: RecordContext, context: TriggerContext) -> tuple[bool, dict[str, Any]]:
    config = parse_config(TagTriggerConfig, node.id, node.config)
    tags = record.get("tags") or []
    if config.tag not in tags:
        return False, {"reason": "Tag not applied to record", "tag": config.tag}
    return True, {"tag": config.tag}


def _webhook(node: WorkflowNode, record: RecordContext, context: TriggerContext) -> tuple[bool, dict[str, Any]]:
    config = parse_config(WebhookTriggerConfig, node.id, node.config)
    if context.store is None:
        return False, {"reason": "No event source available"}
    window = config.window_seconds or context.event_window_seconds
    since = context.now - timedelta(seconds=window)
    events = context.store.recent_events(record.record_id, since)
    for event in events:
        if config.expected_event and event.event_type != config.expected_event:
            continue
        return True, {
            "event_type": event.event_type,
            "event_payload": event.payload,
            "received_at": event.received_at.isoformat(),
        }
    return False, {
        "reason": "No matching event received",
        "expected_event": config.expected_event,
        "window_seconds": window,
    }


TRIGGER_HANDLERS: dict[TriggerKind, TriggerHandler] = {
    TriggerKind.MANUAL: _manual,
    TriggerKind.STAGE_ENTRY: _stage_entry,
    TriggerKind.SCORE_THRESHOLD: _score_threshold,
    TriggerKind.FIELD_CHANGE: _field_change,
    TriggerKind.TIME_BASED: _time_based,
    TriggerKind.TAG_APPLIED: _tag_applied,
    TriggerKind.WEBHOOK: _webhook,
}

_missing_triggers = set(TriggerKind) - set(TRIGGER_HANDLERS)
if _missing_triggers:
    raise RuntimeError(f"Trigger kinds without handlers: {sorted(kind.value for kind in _missing_triggers)}")
