"""
Stagegate service implementation.

Contains the workflow engine, its components, and the FastAPI application
(`stagegate.service.main`).
"""

from .cancellation import CancellationToken
from .config import StagegateConfig, config
from .context import ExecutionContext
from .definition import (
    DefinitionLoader,
    WorkflowDefinition,
    load_definition,
    load_definition_from_file,
    load_definition_from_yaml,
)
from .errors import (
    ConfigurationError,
    ContextConflictError,
    GatePredicateFailure,
    MissingInputError,
    StagegateError,
    WorkerFailure,
    WorkerTimeout,
)
from .executor import StageExecutor
from .gates import QualityGateEvaluator
from .models import (
    EscalationPolicy,
    GatePredicate,
    QualityGate,
    QualityGateResult,
    StageOutput,
    StageResult,
    StageSpec,
    StageStatus,
    WorkflowReport,
    WorkflowStatus,
)
from .workers import HttpWorker, WorkerRegistry
from .workflow_engine import WorkflowEngine, WorkflowRun, run_workflow

__all__ = [
    "CancellationToken",
    "StagegateConfig",
    "config",
    "ExecutionContext",
    "DefinitionLoader",
    "WorkflowDefinition",
    "load_definition",
    "load_definition_from_file",
    "load_definition_from_yaml",
    "ConfigurationError",
    "ContextConflictError",
    "GatePredicateFailure",
    "MissingInputError",
    "StagegateError",
    "WorkerFailure",
    "WorkerTimeout",
    "StageExecutor",
    "QualityGateEvaluator",
    "EscalationPolicy",
    "GatePredicate",
    "QualityGate",
    "QualityGateResult",
    "StageOutput",
    "StageResult",
    "StageSpec",
    "StageStatus",
    "WorkflowReport",
    "WorkflowStatus",
    "HttpWorker",
    "WorkerRegistry",
    "WorkflowEngine",
    "WorkflowRun",
    "run_workflow",
]
