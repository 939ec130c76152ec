"""
Exception hierarchy for the Stagegate workflow service.

Only ConfigurationError is expected to reach callers of the engine; every
per-stage error is captured into a StageResult instead.
"""

from typing import Any, List, Optional, Sequence


class StagegateError(Exception):
    """Base exception for workflow orchestration errors."""

    pass


class ConfigurationError(StagegateError):
    """Raised when a workflow definition is malformed or unsatisfiable."""

    def __init__(self, message: str, problems: Optional[List[str]] = None) -> None:
        self.problems = problems or [message]
        super().__init__(message)


class MissingInputError(StagegateError):
    """Raised when a stage is invoked without its required context keys."""

    def __init__(self, stage: str, missing: Sequence[str]) -> None:
        self.stage = stage
        self.missing = list(missing)
        super().__init__(
            f"Stage '{stage}' is missing required inputs: {', '.join(self.missing)}"
        )


class WorkerFailure(StagegateError):
    """Raised when a worker errors or violates its output contract."""

    pass


class WorkerTimeout(StagegateError):
    """Raised when a worker exceeds its stage's maximum duration."""

    def __init__(self, stage: str, timeout: float) -> None:
        self.stage = stage
        self.timeout = timeout
        super().__init__(f"Stage '{stage}' timed out after {timeout}s")


class GatePredicateFailure(StagegateError):
    """Raised on demand for a failed quality gate; lists every failing predicate."""

    def __init__(self, gate: str, failures: List[Any]) -> None:
        self.gate = gate
        self.failures = failures
        names = ", ".join(getattr(f, "name", str(f)) for f in failures)
        super().__init__(f"Quality gate '{gate}' failed: {names}")


class ContextConflictError(StagegateError):
    """Raised when a stage attempts to overwrite an existing context key."""

    def __init__(self, key: str, existing_producer: str, attempted_by: str) -> None:
        self.key = key
        self.existing_producer = existing_producer
        self.attempted_by = attempted_by
        super().__init__(
            f"Context key '{key}' was produced by '{existing_producer}' "
            f"and cannot be overwritten by '{attempted_by}'"
        )


class WorkflowCancelled(StagegateError):
    """Marks a run that was cancelled through its cancellation token."""

    pass
