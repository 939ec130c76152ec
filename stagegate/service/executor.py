"""
Stage Executor: invokes the worker bound to a stage.

Enforces the stage's required inputs, its per-attempt timeout, its retry
count and its declared output schema. The executor never writes to the
context; the engine merges the output of a successful StageResult.
"""

import copy
import hashlib
import json
import logging
import time
from contextlib import nullcontext
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

import anyio
from jsonschema import Draft7Validator

from .cancellation import CancellationToken
from .config import config
from .context import ExecutionContext
from .errors import MissingInputError, WorkerFailure, WorkerTimeout, WorkflowCancelled
from .models import StageError, StageResult, StageSpec, StageStatus
from .workers import AsyncWorkerFn, WorkerRegistry

logger = logging.getLogger(__name__)


def compute_hash(data: Any) -> str:
    """
    Compute SHA256 hash of data for provenance tracking.

    Args:
        data: Data to hash (JSON serialized with sorted keys)

    Returns:
        Hex digest of SHA256 hash
    """
    content = json.dumps(data, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def output_schema(stage: StageSpec) -> Dict[str, Any]:
    """JSON schema that a stage's worker output must satisfy."""
    return {
        "type": "object",
        "required": list(stage.output_keys),
        "properties": {output.name: output.json_schema() for output in stage.outputs},
    }


class StageExecutor:
    """Runs one stage against the current execution context."""

    def __init__(self, registry: WorkerRegistry, retry_delay: Optional[float] = None) -> None:
        """
        Initialize stage executor.

        Args:
            registry: Registry resolving worker identifiers
            retry_delay: Fixed delay between attempts (config default if not provided)
        """
        self.registry = registry
        self.retry_delay = config.retry_delay_seconds if retry_delay is None else retry_delay

    async def execute(
        self,
        stage: StageSpec,
        context: ExecutionContext,
        token: Optional[CancellationToken] = None,
        fallback_for: Optional[str] = None,
    ) -> StageResult:
        """
        Execute a stage with retries and timeout.

        Args:
            stage: Stage to execute
            context: Current execution context (read only)
            token: Run-level cancellation token
            fallback_for: Stage or gate whose failure routed to this stage

        Returns:
            StageResult with status success, failure, timeout or cancelled

        Raises:
            MissingInputError: If required inputs are absent (worker not invoked)
        """
        missing = context.missing(stage.inputs)
        if missing:
            raise MissingInputError(stage.name, missing)

        worker = self.registry.resolve(stage.worker)
        inputs = context.select(stage.inputs)
        started_at = datetime.utcnow()
        start = time.monotonic()

        status = StageStatus.FAILURE
        output: Dict[str, Any] = {}
        last_error: Optional[Exception] = None
        attempts = 0

        for attempt in range(1, stage.retries + 2):
            if token is not None and token.cancelled:
                status = StageStatus.CANCELLED
                last_error = WorkflowCancelled(token.reason or "cancelled")
                break

            attempts = attempt
            logger.info(
                f"Invoking worker '{stage.worker}' for stage '{stage.name}' "
                f"(attempt {attempt}/{stage.retries + 1})"
            )
            try:
                output = await self._invoke(stage, worker, copy.deepcopy(inputs), token)
                status = StageStatus.SUCCESS
                last_error = None
                break
            except WorkerTimeout as e:
                status = StageStatus.TIMEOUT
                last_error = e
                logger.error(str(e))
                break
            except WorkflowCancelled as e:
                status = StageStatus.CANCELLED
                last_error = e
                logger.warning(f"Stage '{stage.name}' cancelled during attempt {attempt}")
                break
            except WorkerFailure as e:
                status = StageStatus.FAILURE
                last_error = e
                if attempt <= stage.retries:
                    logger.warning(
                        f"Stage '{stage.name}' attempt {attempt} failed: {e}. Retrying..."
                    )
                    await anyio.sleep(self.retry_delay)
                else:
                    logger.error(f"Stage '{stage.name}' failed after {attempt} attempts: {e}")

        return StageResult(
            stage=stage.name,
            worker=stage.worker,
            status=status,
            output=output if status == StageStatus.SUCCESS else {},
            attempts=attempts,
            duration_seconds=time.monotonic() - start,
            started_at=started_at,
            completed_at=datetime.utcnow(),
            error=_stage_error(last_error),
            inputs_hash=compute_hash(inputs),
            outputs_hash=compute_hash(output) if status == StageStatus.SUCCESS else "",
            fallback_for=fallback_for,
        )

    async def _invoke(
        self,
        stage: StageSpec,
        worker: AsyncWorkerFn,
        inputs: Dict[str, Any],
        token: Optional[CancellationToken],
    ) -> Dict[str, Any]:
        """
        Run one worker attempt.

        Raises:
            WorkerTimeout: If the attempt exceeded stage.timeout
            WorkflowCancelled: If the token cancelled the attempt
            WorkerFailure: If the worker raised or broke its output contract
        """
        with anyio.CancelScope() as cancel_scope:
            with token.bind(cancel_scope) if token is not None else nullcontext():
                with anyio.move_on_after(stage.timeout) as timeout_scope:
                    try:
                        raw = await worker(inputs)
                    except WorkerFailure:
                        raise
                    except Exception as e:
                        raise WorkerFailure(f"{type(e).__name__}: {e}") from e
                if timeout_scope.cancelled_caught:
                    raise WorkerTimeout(stage.name, stage.timeout)

        if cancel_scope.cancelled_caught:
            raise WorkflowCancelled(token.reason if token else "cancelled")

        return self._check_output(stage, raw)

    def _check_output(self, stage: StageSpec, raw: Any) -> Dict[str, Any]:
        """Validate worker output against the stage's declared outputs."""
        if not isinstance(raw, Mapping):
            raise WorkerFailure(
                f"Worker '{stage.worker}' returned {type(raw).__name__}, expected a mapping"
            )

        validator = Draft7Validator(output_schema(stage))
        errors = sorted(validator.iter_errors(dict(raw)), key=lambda e: list(e.path))
        if errors:
            details = [
                f"{'.'.join(str(p) for p in e.path) or '<root>'}: {e.message}" for e in errors
            ]
            raise WorkerFailure(f"Output contract violated: {'; '.join(details)}")

        extra = sorted(set(raw) - set(stage.output_keys))
        if extra:
            logger.warning(f"Stage '{stage.name}' dropped undeclared outputs: {extra}")

        return {key: raw[key] for key in stage.output_keys}


def _stage_error(error: Optional[Exception]) -> Optional[StageError]:
    if error is None:
        return None
    return StageError(error_type=type(error).__name__, message=str(error))
