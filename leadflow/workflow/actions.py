"""Action catalog.

Every ``ActionKind`` member has exactly one handler in ``ACTION_HANDLERS``;
the module refuses to import otherwise. Handlers parse their typed config
first, so a malformed node fails the same way in dry runs and live runs, and
then either report what they would do (dry run) or perform the side effect
through the record store, task queue, call client, or script runner.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from leadflow.workflow.conditions import to_number
from leadflow.workflow.configs import (
    AssignOwnerConfig,
    AudienceConfig,
    ChangeStageConfig,
    EnqueueTaskConfig,
    ScoreConfig,
    ScriptConfig,
    SendMessageConfig,
    TagActionConfig,
    UpdateFieldConfig,
    WebhookActionConfig,
    parse_config,
)
from leadflow.workflow.errors import NodeConfigError, NodeExecutionError
from leadflow.workflow.http_client import RetryingCallClient, RetryPolicy
from leadflow.workflow.models import RecordContext, WorkflowNode
from leadflow.workflow.sandbox import ScriptRunner
from leadflow.workflow.store import TaskQueue, WorkflowStore
from leadflow.workflow.templating import render_template, resolve_value


LOGGER = logging.getLogger(__name__)

MESSAGE_QUEUE = "outbound_messages"
AI_PLACEHOLDER = "[AI generated message]"

UPDATABLE_FIELDS = frozenset(
    {
        "fullName",
        "email",
        "phone",
        "location",
        "bio",
        "company",
        "headline",
        "industry",
        "jobTitle",
        "notes",
        "status",
        "priority",
        "score",
        "pipelineStageId",
        "assignedToId",
    }
)
CUSTOM_FIELD_PREFIX = "customFields."

WEBHOOK_RECORD_FIELDS = (
    "fullName",
    "email",
    "phone",
    "company",
    "headline",
    "industry",
    "location",
    "score",
    "status",
    "profileUrl",
    "platform",
)


class ActionKind(str, Enum):
    ASSIGN_OWNER = "assign_owner"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    CHANGE_STAGE = "change_stage"
    SEND_MESSAGE = "send_message"
    UPDATE_FIELD = "update_field"
    INCREMENT_SCORE = "increment_score"
    DECREMENT_SCORE = "decrement_score"
    ADD_TO_AUDIENCE = "add_to_audience"
    REMOVE_FROM_AUDIENCE = "remove_from_audience"
    ENQUEUE_TASK = "enqueue_task"
    SEND_WEBHOOK = "send_webhook"
    RUN_SCRIPT = "run_script"


ACTION_ALIASES = {
    "assign_user": ActionKind.ASSIGN_OWNER,
    "update_lead_field": ActionKind.UPDATE_FIELD,
    "enqueue_agent": ActionKind.ENQUEUE_TASK,
    "webhook_call": ActionKind.SEND_WEBHOOK,
    "javascript_code": ActionKind.RUN_SCRIPT,
    "script": ActionKind.RUN_SCRIPT,
}


class MessageGenerator(Protocol):
    async def invoke(
        self,
        messages: Sequence[BaseMessage],
        tools: Sequence[Any] | None = None,
        on_token: Callable[[str], None] | None = None,
    ) -> AIMessage: ...


@dataclass(slots=True)
class ActionContext:
    workflow_id: str
    node: WorkflowNode
    record: RecordContext
    variables: dict[str, Any]
    now: datetime
    dry_run: bool = False
    store: WorkflowStore | None = None
    task_queue: TaskQueue | None = None
    call_client: RetryingCallClient | None = None
    script_runner: ScriptRunner | None = None
    message_generator: MessageGenerator | None = None
    script_timeout_ms: int | None = None

    def template_context(self) -> dict[str, Any]:
        return {
            "record": self.record.data,
            "lead": self.record.data,
            "variables": self.variables,
            "workflow": {"id": self.workflow_id},
            "now": self.now.isoformat(),
        }


@dataclass(slots=True)
class ActionOutcome:
    action: str
    data: dict[str, Any] = field(default_factory=dict)


ActionHandler = Callable[[ActionContext], Awaitable[ActionOutcome]]


def resolve_action_kind(subtype: str) -> ActionKind:
    key = (subtype or "").strip().lower()
    if key in ACTION_ALIASES:
        return ACTION_ALIASES[key]
    try:
        return ActionKind(key)
    except ValueError as exc:
        raise NodeConfigError(f"Unknown action type: {subtype or '<missing>'}") from exc


async def run_action(context: ActionContext) -> ActionOutcome:
    kind = resolve_action_kind(context.node.subtype)
    return await ACTION_HANDLERS[kind](context)


def _dry(outcome_action: str, **data: Any) -> ActionOutcome:
    return ActionOutcome(action=outcome_action, data={**data, "dry_run": True})


def _require_store(context: ActionContext) -> WorkflowStore:
    if context.store is None:
        raise NodeExecutionError(context.node.id, "No record store is configured for this action.")
    return context.store


def _update_record(context: ActionContext, patch: Mapping[str, Any]) -> dict[str, Any]:
    store = _require_store(context)
    updated = store.update_record(context.record.record_id, patch)
    context.record.data.clear()
    context.record.data.update(updated)
    return updated


def _log_activity(context: ActionContext, action: str, description: str, **metadata: Any) -> None:
    store = _require_store(context)
    store.add_activity(
        context.record.record_id,
        "workflow_action",
        description,
        {"workflow_id": context.workflow_id, "node_id": context.node.id, "action": action, **metadata},
    )


async def _assign_owner(context: ActionContext) -> ActionOutcome:
    config = parse_config(AssignOwnerConfig, context.node.id, context.node.config)
    if context.dry_run:
        return _dry("assign_owner", user_id=config.user_id)
    previous = context.record.get("assignedToId")
    _update_record(context, {"assignedToId": config.user_id})
    _log_activity(context, "assign_owner", f"Record assigned to {config.user_id}", previous_owner=previous)
    return ActionOutcome("assign_owner", {"user_id": config.user_id, "previous_owner": previous})


async def _add_tag(context: ActionContext) -> ActionOutcome:
    config = parse_config(TagActionConfig, context.node.id, context.node.config)
    if context.dry_run:
        return _dry("add_tag", tag=config.tag)
    tags = list(context.record.get("tags") or [])
    if config.tag in tags:
        return ActionOutcome("add_tag", {"tag": config.tag, "added": False, "reason": "Tag already applied"})
    tags.append(config.tag)
    _update_record(context, {"tags": tags})
    _log_activity(context, "add_tag", f"Tag '{config.tag}' added")
    return ActionOutcome("add_tag", {"tag": config.tag, "added": True})


async def _remove_tag(context: ActionContext) -> ActionOutcome:
    config = parse_config(TagActionConfig, context.node.id, context.node.config)
    if context.dry_run:
        return _dry("remove_tag", tag=config.tag)
    tags = list(context.record.get("tags") or [])
    if config.tag not in tags:
        return ActionOutcome("remove_tag", {"tag": config.tag, "removed": False, "reason": "Tag not applied"})
    tags.remove(config.tag)
    _update_record(context, {"tags": tags})
    _log_activity(context, "remove_tag", f"Tag '{config.tag}' removed")
    return ActionOutcome("remove_tag", {"tag": config.tag, "removed": True})


async def _change_stage(context: ActionContext) -> ActionOutcome:
    config = parse_config(ChangeStageConfig, context.node.id, context.node.config)
    if context.dry_run:
        return _dry("change_stage", stage_id=config.stage_id)
    previous = context.record.get("pipelineStageId")
    _update_record(context, {"pipelineStageId": config.stage_id})
    _log_activity(context, "change_stage", f"Stage changed to {config.stage_id}", previous_stage_id=previous)
    return ActionOutcome("change_stage", {"stage_id": config.stage_id, "previous_stage_id": previous})


async def _send_message(context: ActionContext) -> ActionOutcome:
    config = parse_config(SendMessageConfig, context.node.id, context.node.config)
    template_context = context.template_context()
    body = config.content or config.template
    rendered = render_template(body, template_context) if body else None

    if config.ai_prompt:
        prompt = render_template(config.ai_prompt, template_context)
        if context.dry_run:
            return _dry("send_message", message=rendered or AI_PLACEHOLDER, prompt=prompt, channel=config.channel)
        if context.message_generator is not None:
            rendered = await _generate_message(context.message_generator, config.system_prompt, prompt)
        elif rendered is None:
            raise NodeExecutionError(context.node.id, "aiPrompt requires a configured message generator.")
        else:
            LOGGER.info("No message generator configured; node %s falls back to its template", context.node.id)

    if context.dry_run:
        return _dry("send_message", message=rendered, channel=config.channel)

    if not rendered or not rendered.strip():
        raise NodeExecutionError(context.node.id, "Rendered message is empty.")

    if context.task_queue is None:
        raise NodeExecutionError(context.node.id, "No task queue is configured for outbound messages.")
    task_id = context.task_queue.submit(
        MESSAGE_QUEUE,
        {
            "workflow_id": context.workflow_id,
            "record_id": context.record.record_id,
            "node_id": context.node.id,
            "channel": config.channel,
            "content": rendered,
        },
    )
    _log_activity(context, "send_message", "Message queued for delivery", task_id=task_id)
    return ActionOutcome("send_message", {"message": rendered, "channel": config.channel, "task_id": task_id})


async def _generate_message(generator: MessageGenerator, system_prompt: str | None, prompt: str) -> str:
    messages: list[BaseMessage] = []
    if system_prompt and system_prompt.strip():
        messages.append(SystemMessage(content=system_prompt))
    messages.append(HumanMessage(content=prompt))
    response = await generator.invoke(messages, tools=None, on_token=None)
    content = response.content
    return content if isinstance(content, str) else str(content)


async def _update_field(context: ActionContext) -> ActionOutcome:
    config = parse_config(UpdateFieldConfig, context.node.id, context.node.config)
    template_context = context.template_context()
    patch: dict[str, Any] = {}
    custom: dict[str, Any] = {}
    for name, raw_value in config.updates().items():
        value = resolve_value(raw_value, template_context)
        if name.startswith(CUSTOM_FIELD_PREFIX):
            key = name[len(CUSTOM_FIELD_PREFIX):]
            if not key:
                raise NodeExecutionError(context.node.id, "Custom field name is empty.")
            custom[key] = value
        elif name in UPDATABLE_FIELDS:
            patch[name] = value
        else:
            raise NodeExecutionError(context.node.id, f"Field '{name}' cannot be updated by workflows.")
    if custom:
        patch["customFields"] = custom

    if context.dry_run:
        return _dry("update_field", fields=patch)
    _update_record(context, patch)
    _log_activity(context, "update_field", f"Updated fields: {', '.join(sorted(patch))}")
    return ActionOutcome("update_field", {"fields": patch})


async def _change_score(context: ActionContext, direction: int) -> ActionOutcome:
    config = parse_config(ScoreConfig, context.node.id, context.node.config)
    action = "increment_score" if direction > 0 else "decrement_score"
    current = to_number(context.record.get(config.field)) or 0
    new_value = current + direction * config.amount
    if direction < 0:
        new_value = max(0, new_value)
    if float(new_value).is_integer():
        new_value = int(new_value)
    if context.dry_run:
        return _dry(action, field=config.field, amount=config.amount, previous=current, value=new_value)
    _update_record(context, {config.field: new_value})
    _log_activity(context, action, f"{config.field} changed from {current} to {new_value}")
    return ActionOutcome(action, {"field": config.field, "amount": config.amount, "previous": current, "value": new_value})


async def _increment_score(context: ActionContext) -> ActionOutcome:
    return await _change_score(context, 1)


async def _decrement_score(context: ActionContext) -> ActionOutcome:
    return await _change_score(context, -1)


async def _add_to_audience(context: ActionContext) -> ActionOutcome:
    config = parse_config(AudienceConfig, context.node.id, context.node.config)
    if context.dry_run:
        return _dry("add_to_audience", audience_id=config.audience_id)
    added = _require_store(context).add_audience_member(config.audience_id, context.record.record_id)
    if added:
        _log_activity(context, "add_to_audience", f"Added to audience {config.audience_id}")
    return ActionOutcome("add_to_audience", {"audience_id": config.audience_id, "added": added})


async def _remove_from_audience(context: ActionContext) -> ActionOutcome:
    config = parse_config(AudienceConfig, context.node.id, context.node.config)
    if context.dry_run:
        return _dry("remove_from_audience", audience_id=config.audience_id)
    removed = _require_store(context).remove_audience_member(config.audience_id, context.record.record_id)
    if removed:
        _log_activity(context, "remove_from_audience", f"Removed from audience {config.audience_id}")
    return ActionOutcome("remove_from_audience", {"audience_id": config.audience_id, "removed": removed})


async def _enqueue_task(context: ActionContext) -> ActionOutcome:
    config = parse_config(EnqueueTaskConfig, context.node.id, context.node.config)
    payload = resolve_value(config.payload, context.template_context())
    if context.dry_run:
        return _dry("enqueue_task", task=config.task, queue=config.queue, payload=payload)
    if context.task_queue is None:
        raise NodeExecutionError(context.node.id, "No task queue is configured.")
    task_id = context.task_queue.submit(
        config.queue,
        {
            "task": config.task,
            "workflow_id": context.workflow_id,
            "record_id": context.record.record_id,
            "node_id": context.node.id,
            "payload": payload,
        },
    )
    _log_activity(context, "enqueue_task", f"Task '{config.task}' queued", task_id=task_id)
    return ActionOutcome("enqueue_task", {"task": config.task, "queue": config.queue, "task_id": task_id})


def _default_webhook_body(context: ActionContext) -> dict[str, Any]:
    record_fields = {"id": context.record.record_id}
    for name in WEBHOOK_RECORD_FIELDS:
        record_fields[name] = context.record.get(name)
    return {
        "record": record_fields,
        "workflow": {"id": context.workflow_id},
        "variables": dict(context.variables),
        "timestamp": context.now.isoformat(),
    }


async def _send_webhook(context: ActionContext) -> ActionOutcome:
    config = parse_config(WebhookActionConfig, context.node.id, context.node.config)
    body: object = _default_webhook_body(context)
    if config.body_template is not None:
        body = resolve_value(config.body_template, {**body, "lead": body["record"]})
    elif config.body is not None:
        body = resolve_value(config.body, context.template_context())

    if context.dry_run:
        return _dry("send_webhook", url=config.url, method=config.method, body=body)
    if context.call_client is None:
        raise NodeExecutionError(context.node.id, "No call client is configured for webhooks.")

    policy = RetryPolicy.from_config(config.retry, context.call_client.default_policy)
    result = await context.call_client.call(
        config.url,
        method=config.method,
        headers=config.headers,
        body=body,
        policy=policy,
        timeout_ms=config.timeout_ms,
    )
    _log_activity(
        context,
        "send_webhook",
        f"Webhook {config.method} {config.url} returned {result.response.status}",
        attempts=result.attempts,
    )
    return ActionOutcome(
        "send_webhook",
        {
            "url": config.url,
            "status": result.response.status,
            "response_body": result.response.body,
            "attempts": result.attempts,
            "retry_history": [attempt.to_dict() for attempt in result.history],
            "duration_ms": result.duration_ms,
        },
    )


async def _run_script(context: ActionContext) -> ActionOutcome:
    config = parse_config(ScriptConfig, context.node.id, context.node.config)
    runner = context.script_runner or ScriptRunner()
    if context.dry_run:
        runner.validate(config.code)
        return _dry("run_script", validated=True)
    result = await runner.arun(
        config.code,
        context.record.data,
        timeout_ms=config.timeout_ms or context.script_timeout_ms,
        variables=context.variables,
    )
    context.variables.clear()
    context.variables.update(result.variables)
    return ActionOutcome(
        "run_script",
        {
            "result": result.result,
            "variables": result.variables,
            "logs": result.logs,
            "duration_ms": result.duration_ms,
        },
    )


ACTION_HANDLERS: dict[ActionKind, ActionHandler] = {
    ActionKind.ASSIGN_OWNER: _assign_owner,
    ActionKind.ADD_TAG: _add_tag,
    ActionKind.REMOVE_TAG: _remove_tag,
    ActionKind.CHANGE_STAGE: _change_stage,
    ActionKind.SEND_MESSAGE: _send_message,
    ActionKind.UPDATE_FIELD: _update_field,
    ActionKind.INCREMENT_SCORE: _increment_score,
    ActionKind.DECREMENT_SCORE: _decrement_score,
    ActionKind.ADD_TO_AUDIENCE: _add_to_audience,
    ActionKind.REMOVE_FROM_AUDIENCE: _remove_from_audience,
    ActionKind.ENQUEUE_TASK: _enqueue_task,
    ActionKind.SEND_WEBHOOK: _send_webhook,
    ActionKind.RUN_SCRIPT: _run_script,
}

_missing_actions = set(ActionKind) - set(ACTION_HANDLERS)
if _missing_actions:
    raise RuntimeError(f"Action kinds without handlers: {sorted(kind.value for kind in _missing_actions)}")
