"""Pydantic models for pipelines, run sessions, and agent events."""

from __future__ import annotations

import datetime as dt
import re
import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

_CAMEL_BOUNDARY_RE = re.compile(r"(?<!^)(?=[A-Z])")


def utc_now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


def _enum_token(value: Any) -> Any:
    """Map ``GreaterThanOrEqual`` / ``ExitCode`` style names to snake_case values."""
    if isinstance(value, Enum) or not isinstance(value, str):
        return value
    token = value.strip()
    if "_" in token or token.islower() or token.isupper():
        return token.lower()
    return _CAMEL_BOUNDARY_RE.sub("_", token).lower()


class _FlexibleModel(BaseModel):
    """Model that accepts snake_case, camelCase, or PascalCase input keys.

    Pipeline files produced by external editors use PascalCase property
    names (``TargetProjectPath``); our own files use snake_case.
    """

    @model_validator(mode="before")
    @classmethod
    def _normalize_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        lookup = {name.replace("_", "").lower(): name for name in cls.model_fields}
        normalized: dict[str, Any] = {}
        for key, value in data.items():
            target = lookup.get(str(key).replace("_", "").lower(), key)
            normalized[target] = value
        return normalized


# ---------------------------------------------------------------------------
# Pipeline definition
# ---------------------------------------------------------------------------

class StepType(str, Enum):
    """How a step produces its output."""

    EXECUTE = "execute"
    EXTRACT = "extract"
    VALIDATE = "validate"


class FailBehavior(str, Enum):
    """What happens to the rest of the iteration when a step fails."""

    CONTINUE = "continue"
    ABORT = "abort"


class MarkerType(str, Enum):
    """Where a marker reads its actual value from."""

    EXIT_CODE = "exit_code"
    JSON_PATH = "json_path"
    REGEX = "regex"
    FILE_EXISTS = "file_exists"


class CompareOperator(str, Enum):
    """Comparison applied between a marker's actual and target value."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN = "less_than"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    CONTAINS = "contains"


class AccessLevel(str, Enum):
    """Permission the healing agent has for files matching a rule."""

    EDITABLE = "editable"
    READ_ONLY = "read_only"
    EXCLUDED = "excluded"


class PipelineStep(_FlexibleModel):
    """One command or extraction executed every iteration."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:8])
    name: str = ""
    type: StepType = StepType.EXECUTE
    command: str = ""
    working_dir: str = ""
    file_path: str = ""
    extraction_pattern: str = ""
    output_key: str = ""
    timeout: int = 120  # seconds
    fail_behavior: FailBehavior = FailBehavior.CONTINUE

    @field_validator("type", "fail_behavior", mode="before")
    @classmethod
    def _coerce_enum(cls, value: Any) -> Any:
        return _enum_token(value)


class Marker(_FlexibleModel):
    """A typed success criterion checked after every iteration's steps."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:8])
    name: str = ""
    type: MarkerType = MarkerType.EXIT_CODE
    source: str = ""
    operator: CompareOperator = CompareOperator.EQUALS
    target_value: str = ""

    @field_validator("type", "operator", mode="before")
    @classmethod
    def _coerce_enum(cls, value: Any) -> Any:
        return _enum_token(value)

    @field_validator("target_value", mode="before")
    @classmethod
    def _stringify_target(cls, value: Any) -> Any:
        # JSON documents sometimes carry numeric targets (``"TargetValue": 0``).
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (int, float)):
            return str(value)
        return value


class FileAccessRule(_FlexibleModel):
    """Glob-style path rule rendered into the healing prompt."""

    path_pattern: str = ""
    access_level: AccessLevel = AccessLevel.EDITABLE

    @field_validator("access_level", mode="before")
    @classmethod
    def _coerce_enum(cls, value: Any) -> Any:
        return _enum_token(value)


class Pipeline(_FlexibleModel):
    """A complete run -> check -> heal definition for one target project."""

    name: str = ""
    description: str = ""
    target_project_path: str = ""
    max_iterations: int = 5  # 0 or negative means unlimited
    steps: list[PipelineStep] = Field(default_factory=list)
    markers: list[Marker] = Field(default_factory=list)
    file_access_rules: list[FileAccessRule] = Field(default_factory=list)
    healing_prompt_template: str = ""

    @property
    def is_unlimited(self) -> bool:
        return self.max_iterations <= 0


# ---------------------------------------------------------------------------
# Run results
# ---------------------------------------------------------------------------

class StepResult(BaseModel):
    """Captured outcome of one step execution."""

    step_id: str = ""
    step_name: str = ""
    exit_code: int = 0
    output: str = ""
    error: str = ""
    failed: bool = False
    duration_seconds: float = 0.0


class MarkerResult(BaseModel):
    """Evaluation of one marker against the iteration's step data."""

    marker_id: str = ""
    marker_name: str = ""
    passed: bool = False
    actual_value: str = ""
    expected_value: str = ""
    operator: CompareOperator = CompareOperator.EQUALS


class Iteration(BaseModel):
    """One pass of steps, marker evaluation and (optionally) healing."""

    number: int
    step_results: list[StepResult] = Field(default_factory=list)
    marker_results: list[MarkerResult] = Field(default_factory=list)
    analysis: str = ""
    changes_made: list[str] = Field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def passed_count(self) -> int:
        return sum(1 for result in self.marker_results if result.passed)


class TranscriptEntry(BaseModel):
    """A prompt sent to the healing agent and the response it produced."""

    prompt: str = ""
    response: str = ""
    timestamp: str = Field(default_factory=utc_now_iso)


class RunStatus(str, Enum):
    """Lifecycle state of a run session."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"


class CostInfo(BaseModel):
    """Usage and cost accumulated from agent ``result`` events."""

    total_cost_usd: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    invocations: int = 0

    def summary(self) -> str:
        if self.total_cost_usd > 0:
            tokens = self.input_tokens + self.output_tokens
            return f"${self.total_cost_usd:.4f}  ({tokens:,} tokens, {self.invocations} calls)"
        if self.invocations > 0:
            plural = "s" if self.invocations != 1 else ""
            return f"{self.invocations} agent call{plural}"
        return ""


class RunSession(BaseModel):
    """Full record of one pipeline run, owned by a single engine run."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:8])
    pipeline_name: str = ""
    start_time: str = Field(default_factory=utc_now_iso)
    end_time: str | None = None
    status: RunStatus = RunStatus.RUNNING
    iterations: list[Iteration] = Field(default_factory=list)
    transcript: list[TranscriptEntry] = Field(default_factory=list)
    cost: CostInfo = Field(default_factory=CostInfo)


# ---------------------------------------------------------------------------
# Agent protocol
# ---------------------------------------------------------------------------

class AgentEvent(BaseModel):
    """One line of the agent's stream-json output.

    ``type`` is the protocol's own ``type`` field (``assistant``,
    ``tool_use``, ``tool_result``, ``result``, ...) or ``raw`` when the line
    could not be parsed.
    """

    type: str = "raw"
    content: str | None = None
    tool_name: str | None = None
    tool_input: str | None = None
    file_path: str | None = None
    raw_json: str | None = None


class AgentResult(BaseModel):
    """Aggregated outcome of one agent invocation."""

    full_response: str = ""
    changes_made: list[str] = Field(default_factory=list)
    timed_out: bool = False
    cancelled: bool = False
    exit_code: int = 0
    duration_seconds: float = 0.0
