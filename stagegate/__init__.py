"""
Stagegate: sequential multi-agent workflow orchestration.

This package provides:
- Workflow definitions validated at load time (YAML manifests)
- An append-only execution context shared between stages
- A stage executor with timeouts, retries and output contracts
- Quality gates with abort or fallback escalation
- A workflow engine producing structured run reports
- A FastAPI service and a command line interface

Stages always run one after another; each run owns its own context.
"""

__version__ = "1.0.0"

from .service.cancellation import CancellationToken
from .service.config import StagegateConfig, config
from .service.definition import WorkflowDefinition, load_definition_from_yaml
from .service.errors import ConfigurationError
from .service.models import StageStatus, WorkflowReport, WorkflowStatus
from .service.workers import WorkerRegistry
from .service.workflow_engine import WorkflowEngine, run_workflow

__all__ = [
    "CancellationToken",
    "StagegateConfig",
    "config",
    "WorkflowDefinition",
    "load_definition_from_yaml",
    "ConfigurationError",
    "StageStatus",
    "WorkflowReport",
    "WorkflowStatus",
    "WorkerRegistry",
    "WorkflowEngine",
    "run_workflow",
]
