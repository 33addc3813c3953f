"""Typed node configurations.

Stored node configs are free-form camelCase maps. Each evaluator parses the
shape it needs here before doing any work, so a malformed node fails at the
node with a readable message instead of deep inside an action handler.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any, Literal, TypeVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from leadflow.workflow.errors import NodeConfigError


ConfigT = TypeVar("ConfigT", bound="NodeConfig")


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class NodeConfig(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class ConditionConfig(NodeConfig):
    field: str = Field(validation_alias=_alias("field", "conditionField", "fieldName"))
    operator: str = Field(validation_alias=_alias("operator", "conditionOperator"))
    value: Any = Field(default=None, validation_alias=_alias("value", "conditionValue"))
    case_sensitive: bool = Field(default=False, validation_alias=_alias("case_sensitive", "caseSensitive"))


class DelayConfig(NodeConfig):
    delay_until: datetime | None = Field(
        default=None, validation_alias=_alias("delay_until", "delayUntil", "waitUntil")
    )
    delay_seconds: float | None = Field(default=None, validation_alias=_alias("delay_seconds", "delaySeconds"))
    duration: float | None = None
    unit: str = "seconds"

    @model_validator(mode="after")
    def _require_target(self) -> DelayConfig:
        if self.delay_until is None and self.delay_seconds is None and self.duration is None:
            raise ValueError("delay requires delayUntil, delaySeconds, or duration")
        return self


class LoopConfig(NodeConfig):
    iteration_type: Literal["records", "audience", "list"] = Field(
        default="records", validation_alias=_alias("iteration_type", "iterationType", "loopType")
    )
    audience_id: str | None = Field(default=None, validation_alias=_alias("audience_id", "audienceId"))
    items: list[Any] | None = Field(default=None, validation_alias=_alias("items", "loopList", "customList"))
    filter: dict[str, Any] = Field(default_factory=dict, validation_alias=_alias("filter", "leadFilter"))
    max_iterations: int | None = Field(
        default=None, ge=1, le=1000, validation_alias=_alias("max_iterations", "maxIterations")
    )

    @field_validator("iteration_type", mode="before")
    @classmethod
    def _normalize_type(cls, value: object) -> object:
        legacy = {"leads": "records", "custom_list": "list", "custom": "list"}
        if isinstance(value, str):
            return legacy.get(value, value)
        return value

    @model_validator(mode="after")
    def _require_source(self) -> LoopConfig:
        if self.iteration_type == "audience" and not self.audience_id:
            raise ValueError("audience loops require audienceId")
        return self


class StageTriggerConfig(NodeConfig):
    to_stage_id: str | None = Field(
        default=None, validation_alias=_alias("to_stage_id", "toStageId", "pipelineStageId", "stageId")
    )
    from_stage_id: str | None = Field(default=None, validation_alias=_alias("from_stage_id", "fromStageId"))


class ThresholdTriggerConfig(NodeConfig):
    field: str = Field(default="score", validation_alias=_alias("field", "scoreField", "fieldName"))
    operator: str = "gte"
    threshold: float = Field(validation_alias=_alias("threshold", "scoreThreshold"))

    @field_validator("field", mode="before")
    @classmethod
    def _normalize_field(cls, value: object) -> object:
        return "score" if value == "totalScore" else value


class FieldChangeTriggerConfig(NodeConfig):
    field: str = Field(validation_alias=_alias("field", "fieldName"))
    value: Any = Field(default=None, validation_alias=_alias("value", "fieldValue"))


class RelativeOffset(NodeConfig):
    amount: float
    unit: str = "days"
    before: bool = False


class TimeTriggerConfig(NodeConfig):
    date_field: str = Field(default="customDate", validation_alias=_alias("date_field", "dateField"))
    custom_date: datetime | None = Field(
        default=None, validation_alias=_alias("custom_date", "customDateValue", "scheduledTime")
    )
    relative_offset: RelativeOffset | None = Field(
        default=None, validation_alias=_alias("relative_offset", "relativeOffset")
    )


class TagTriggerConfig(NodeConfig):
    tag: str = Field(validation_alias=_alias("tag", "tagId", "tagName"))


class WebhookTriggerConfig(NodeConfig):
    expected_event: str | None = Field(default=None, validation_alias=_alias("expected_event", "expectedEvent"))
    window_seconds: int | None = Field(default=None, ge=1, validation_alias=_alias("window_seconds", "windowSeconds"))


class AssignOwnerConfig(NodeConfig):
    user_id: str = Field(validation_alias=_alias("user_id", "userId", "assignedUserId", "assignedToId"))


class TagActionConfig(NodeConfig):
    tag: str = Field(validation_alias=_alias("tag", "tagId", "tagName"))


class ChangeStageConfig(NodeConfig):
    stage_id: str = Field(validation_alias=_alias("stage_id", "targetStageId", "stageId", "pipelineStageId"))


class SendMessageConfig(NodeConfig):
    content: str | None = Field(default=None, validation_alias=_alias("content", "message"))
    template: str | None = None
    ai_prompt: str | None = Field(default=None, validation_alias=_alias("ai_prompt", "aiPrompt"))
    system_prompt: str | None = Field(default=None, validation_alias=_alias("system_prompt", "systemPrompt"))
    channel: str = "default"

    @model_validator(mode="after")
    def _require_body(self) -> SendMessageConfig:
        if not (self.content or self.template or self.ai_prompt):
            raise ValueError("send_message requires content, template, or aiPrompt")
        return self


class UpdateFieldConfig(NodeConfig):
    field: str | None = Field(default=None, validation_alias=_alias("field", "fieldName"))
    value: Any = Field(default=None, validation_alias=_alias("value", "fieldValue"))
    fields: dict[str, Any] | None = Field(default=None, validation_alias=_alias("fields", "leadFieldData"))

    @model_validator(mode="after")
    def _require_target(self) -> UpdateFieldConfig:
        if not self.field and not self.fields:
            raise ValueError("update_field requires field or leadFieldData")
        return self

    def updates(self) -> dict[str, Any]:
        merged: dict[str, Any] = dict(self.fields or {})
        if self.field:
            merged[self.field] = self.value
        return merged


class ScoreConfig(NodeConfig):
    amount: int = Field(
        default=1, validation_alias=_alias("amount", "scoreIncrement", "increment", "decrement")
    )
    field: str = "score"


class AudienceConfig(NodeConfig):
    audience_id: str = Field(validation_alias=_alias("audience_id", "audienceId"))


class EnqueueTaskConfig(NodeConfig):
    task: str = Field(validation_alias=_alias("task", "agentTask", "taskType"))
    queue: str = "agent_tasks"
    payload: dict[str, Any] = Field(default_factory=dict)


class WebhookActionConfig(NodeConfig):
    url: str = Field(validation_alias=_alias("url", "webhookUrl"))
    method: str = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    body_template: Any = Field(default=None, validation_alias=_alias("body_template", "bodyTemplate"))
    timeout_ms: int | None = Field(default=None, ge=1, validation_alias=_alias("timeout_ms", "timeoutMs", "timeout"))
    retry: dict[str, Any] | None = Field(default=None, validation_alias=_alias("retry", "retryPolicy"))

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value: object) -> object:
        return value.upper() if isinstance(value, str) else value

    @field_validator("url")
    @classmethod
    def _http_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("webhook url must start with http:// or https://")
        return value


class ScriptConfig(NodeConfig):
    code: str = Field(validation_alias=_alias("code", "script"))
    timeout_ms: int | None = Field(default=None, ge=1, validation_alias=_alias("timeout_ms", "timeoutMs", "timeout"))


def parse_config(model: type[ConfigT], node_id: str, config: Mapping[str, Any]) -> ConfigT:
    try:
        return model.model_validate(dict(config))
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'config'}: {error['msg']}"
            for error in exc.errors()
        )
        raise NodeConfigError(f"Invalid configuration for node '{node_id}': {problems}") from exc
