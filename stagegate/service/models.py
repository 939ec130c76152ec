"""
Pydantic models for the Stagegate service.

Defines stage specifications, quality gates, execution results, run reports
and API contracts. Definition-side models are frozen once constructed.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .config import config


# ============================================================================
# Enums
# ============================================================================


class StageStatus(str, Enum):
    """Outcome of one stage invocation."""

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class WorkflowStatus(str, Enum):
    """Workflow run status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"
    GATE_FAILED = "gate_failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (WorkflowStatus.PENDING, WorkflowStatus.RUNNING)


class EscalationAction(str, Enum):
    """What the engine does when a stage or gate fails."""

    ABORT = "abort"
    FALLBACK = "fallback"


class OutputType(str, Enum):
    """Declared type of a stage output key (JSON schema type names)."""

    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"
    NULL = "null"
    ANY = "any"


class TerminationReason(str, Enum):
    """Why a run stopped before completing."""

    STAGE_FAILED = "stage_failed"
    STAGE_TIMEOUT = "stage_timeout"
    MISSING_INPUT = "missing_input"
    CONTEXT_CONFLICT = "context_conflict"
    GATE_FAILED = "gate_failed"
    CANCELLED = "cancelled"
    ENGINE_ERROR = "engine_error"


# ============================================================================
# Definition Models
# ============================================================================


class EscalationPolicy(BaseModel):
    """Failure policy for a stage or quality gate."""

    model_config = ConfigDict(frozen=True)

    action: EscalationAction = Field(default=EscalationAction.ABORT)
    fallback_stage: Optional[str] = Field(
        default=None, description="Stage inserted into the sequence on failure"
    )

    @model_validator(mode="before")
    @classmethod
    def coerce_shorthand(cls, data: Any) -> Any:
        """Accept 'abort' or 'fallback:<stage>' strings in manifests."""
        if isinstance(data, str):
            if data.startswith("fallback:"):
                return {"action": "fallback", "fallback_stage": data.split(":", 1)[1]}
            return {"action": data}
        return data

    @model_validator(mode="after")
    def check_fallback_target(self) -> "EscalationPolicy":
        if self.action == EscalationAction.FALLBACK and not self.fallback_stage:
            raise ValueError("fallback policy requires a fallback_stage")
        if self.action == EscalationAction.ABORT and self.fallback_stage:
            raise ValueError("abort policy cannot name a fallback_stage")
        return self


class StageOutput(BaseModel):
    """Declared output key of a stage."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(..., min_length=1, description="Context key produced")
    type: OutputType = Field(default=OutputType.ANY, description="Declared value type")
    schema_: Optional[Dict[str, Any]] = Field(
        default=None,
        alias="schema",
        description="Extra JSON schema constraints for the value",
    )
    description: Optional[str] = Field(default=None)

    @model_validator(mode="before")
    @classmethod
    def coerce_name(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"name": data}
        return data

    def json_schema(self) -> Dict[str, Any]:
        """JSON schema fragment for this output's value."""
        schema: Dict[str, Any] = dict(self.schema_ or {})
        if self.type != OutputType.ANY:
            schema.setdefault("type", self.type.value)
        return schema


class StageSpec(BaseModel):
    """One step in a workflow, bound to a single worker."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(..., min_length=1, description="Unique stage name")
    worker: str = Field(..., min_length=1, description="Bound worker identifier")
    description: Optional[str] = Field(default=None)
    inputs: Tuple[str, ...] = Field(
        default=(), description="Context keys required before invocation"
    )
    outputs: Tuple[StageOutput, ...] = Field(
        default=(), description="Context keys produced on success"
    )
    timeout: float = Field(
        default_factory=lambda: config.default_stage_timeout_seconds,
        gt=0,
        le=86400,
        description="Maximum duration of one attempt in seconds",
    )
    retries: int = Field(
        default_factory=lambda: config.default_stage_retries,
        ge=0,
        le=10,
        description="Retry attempts after a worker failure",
    )
    on_failure: EscalationPolicy = Field(default_factory=EscalationPolicy)

    @field_validator("inputs")
    @classmethod
    def validate_unique_inputs(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        if len(set(v)) != len(v):
            raise ValueError("inputs must not repeat a key")
        return v

    @field_validator("outputs")
    @classmethod
    def validate_unique_outputs(
        cls, v: Tuple[StageOutput, ...]
    ) -> Tuple[StageOutput, ...]:
        names = [output.name for output in v]
        if len(set(names)) != len(names):
            raise ValueError("outputs must not repeat a key")
        return v

    @property
    def output_keys(self) -> Tuple[str, ...]:
        return tuple(output.name for output in self.outputs)


class GatePredicate(BaseModel):
    """Boolean check over one context key."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(default="", description="Predicate name used in reports")
    key: str = Field(..., min_length=1, description="Context key inspected")
    operator: str = Field(default="truthy", description="Comparison operator")
    value: Any = Field(default=None, description="Expected value for the operator")
    description: Optional[str] = Field(default=None)

    @model_validator(mode="before")
    @classmethod
    def default_name(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("name") and data.get("key"):
            label = f"{data['key']} {data.get('operator', 'truthy')}"
            if data.get("value") is not None:
                label = f"{label} {data['value']!r}"
            data = {**data, "name": label}
        return data


class QualityGate(BaseModel):
    """Checkpoint evaluated after a stage; every predicate must hold."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    after_stage: str = Field(..., min_length=1, description="Stage the gate follows")
    predicates: Tuple[GatePredicate, ...] = Field(..., min_length=1)
    on_failure: EscalationPolicy = Field(default_factory=EscalationPolicy)
    description: Optional[str] = Field(default=None)


# ============================================================================
# Execution Models
# ============================================================================


class StageError(BaseModel):
    """Error detail captured from a stage invocation."""

    model_config = ConfigDict(frozen=True)

    error_type: str = Field(..., description="Exception class name")
    message: str = Field(..., description="Error message")


class StageResult(BaseModel):
    """Outcome of one stage invocation."""

    model_config = ConfigDict(frozen=True)

    stage: str
    worker: str
    status: StageStatus
    output: Dict[str, Any] = Field(default_factory=dict)
    attempts: int = Field(default=1, ge=0)
    duration_seconds: float = Field(default=0.0, ge=0.0)
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: datetime = Field(default_factory=datetime.utcnow)
    error: Optional[StageError] = Field(default=None)
    inputs_hash: str = Field(default="", description="SHA256 hash of stage inputs")
    outputs_hash: str = Field(default="", description="SHA256 hash of stage outputs")
    fallback_for: Optional[str] = Field(
        default=None, description="Stage or gate whose failure routed here"
    )

    @property
    def succeeded(self) -> bool:
        return self.status == StageStatus.SUCCESS


class PredicateResult(BaseModel):
    """Evaluation of one gate predicate."""

    model_config = ConfigDict(frozen=True)

    name: str
    key: str
    operator: str
    expected: Any = None
    actual: Any = None
    passed: bool
    message: str = ""


class QualityGateResult(BaseModel):
    """Evaluation of a quality gate; lists every predicate, passing or not."""

    model_config = ConfigDict(frozen=True)

    gate: str
    after_stage: str
    passed: bool
    predicates: List[PredicateResult] = Field(default_factory=list)
    evaluated_at: datetime = Field(default_factory=datetime.utcnow)
    routed_to: Optional[str] = Field(
        default=None, description="Fallback stage inserted after a failure"
    )

    @property
    def failures(self) -> List[PredicateResult]:
        return [p for p in self.predicates if not p.passed]

    def raise_for_failure(self) -> None:
        """Raise GatePredicateFailure listing every failing predicate."""
        from .errors import GatePredicateFailure

        if not self.passed:
            raise GatePredicateFailure(self.gate, self.failures)


class TerminationInfo(BaseModel):
    """Which stage or gate ended a run, and why."""

    reason: TerminationReason
    message: str
    stage: Optional[str] = None
    gate: Optional[str] = None
    stage_result: Optional[StageResult] = None
    predicate_failures: List[PredicateResult] = Field(default_factory=list)


class WorkflowReport(BaseModel):
    """Terminal report of a workflow run."""

    run_id: str
    workflow: str
    version: str
    status: WorkflowStatus
    initial_arguments: Dict[str, Any] = Field(default_factory=dict)
    stage_results: List[StageResult] = Field(default_factory=list)
    gate_results: List[QualityGateResult] = Field(default_factory=list)
    context: Dict[str, Any] = Field(default_factory=dict)
    producers: Dict[str, str] = Field(
        default_factory=dict, description="Context key -> producing stage"
    )
    termination: Optional[TerminationInfo] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: float = Field(default=0.0, ge=0.0)

    @property
    def succeeded(self) -> bool:
        return self.status == WorkflowStatus.COMPLETED

    @property
    def statuses(self) -> List[Tuple[str, StageStatus]]:
        return [(r.stage, r.status) for r in self.stage_results]


# ============================================================================
# API Request/Response Models
# ============================================================================


class WorkflowRunRequest(BaseModel):
    """Request to run a workflow."""

    manifest_name: Optional[str] = Field(
        default=None, description="Name of a manifest in the manifest directory"
    )
    manifest_yaml: Optional[str] = Field(default=None, description="Inline YAML manifest")
    arguments: Dict[str, Any] = Field(
        default_factory=dict, description="Initial workflow arguments"
    )

    @model_validator(mode="after")
    def validate_manifest_source(self) -> "WorkflowRunRequest":
        """Ensure exactly one manifest source is provided."""
        if bool(self.manifest_name) == bool(self.manifest_yaml):
            raise ValueError("Provide exactly one of manifest_name or manifest_yaml")
        return self


class WorkflowValidateRequest(BaseModel):
    """Request to validate an inline manifest."""

    manifest_yaml: str = Field(..., min_length=1)


class WorkflowValidateResponse(BaseModel):
    """Validation outcome for a manifest."""

    valid: bool
    workflow: Optional[str] = None
    problems: List[str] = Field(default_factory=list)


class WorkflowStartResponse(BaseModel):
    """Response from a background workflow start."""

    run_id: str = Field(..., description="Unique run ID")
    status: WorkflowStatus = Field(..., description="Current run status")
    message: str = Field(..., description="Human-readable message")


class RunStatusResponse(BaseModel):
    """Status of a background run."""

    run_id: str
    workflow: str
    status: WorkflowStatus
    current_stage: Optional[str] = None
    report: Optional[WorkflowReport] = None


class HealthCheckResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Service status (healthy, degraded)")
    version: str = Field(..., description="Service version")
    workers: List[str] = Field(default_factory=list, description="Registered workers")
    active_runs: int = Field(default=0, ge=0)
    uptime_seconds: float = Field(..., ge=0.0, description="Service uptime")


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")
    details: Optional[Dict[str, Any]] = Field(default=None, description="Additional details")
