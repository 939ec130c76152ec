"""
Workflow Engine for driving staged workflow runs.

Runs stages strictly in sequence, merges successful outputs into the run's
context, evaluates quality gates, applies abort or fallback policies, and
always finishes with a WorkflowReport.
"""

import logging
import time
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Any, Deque, Dict, List, Mapping, Optional, Tuple, Union
from uuid import uuid4

import anyio
from pydantic import BaseModel, ConfigDict, Field

from .cancellation import CancellationToken
from .config import config
from .context import ExecutionContext
from .definition import (
    WorkflowDefinition,
    load_definition,
    load_definition_from_file,
    load_definition_from_yaml,
)
from .errors import ConfigurationError, ContextConflictError, MissingInputError
from .executor import StageExecutor
from .gates import QualityGateEvaluator
from .models import (
    EscalationAction,
    QualityGateResult,
    StageError,
    StageResult,
    StageSpec,
    StageStatus,
    TerminationInfo,
    TerminationReason,
    WorkflowReport,
    WorkflowStatus,
)
from .workers import WorkerRegistry

logger = logging.getLogger(__name__)

MAX_TRACKED_RUNS = 10000

# (stage, stage or gate that routed to it, main stage whose gates follow it)
PlannedStage = Tuple[StageSpec, Optional[str], Optional[str]]


class WorkflowRun(BaseModel):
    """One execution instance of a workflow definition. Never reused."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    run_id: str = Field(default_factory=lambda: str(uuid4()))
    definition: WorkflowDefinition
    status: WorkflowStatus = Field(default=WorkflowStatus.PENDING)
    current_stage_index: int = Field(default=0, ge=0)
    current_stage: Optional[str] = Field(default=None)
    initial_arguments: Dict[str, Any] = Field(default_factory=dict)
    context: ExecutionContext
    stage_results: List[StageResult] = Field(default_factory=list)
    gate_results: List[QualityGateResult] = Field(default_factory=list)
    termination: Optional[TerminationInfo] = Field(default=None)
    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)

    def to_report(self) -> WorkflowReport:
        """Snapshot of the run for callers and audit."""
        duration = 0.0
        if self.started_at is not None:
            end = self.completed_at or datetime.utcnow()
            duration = max((end - self.started_at).total_seconds(), 0.0)
        return WorkflowReport(
            run_id=self.run_id,
            workflow=self.definition.name,
            version=self.definition.version,
            status=self.status,
            initial_arguments=self.initial_arguments,
            stage_results=list(self.stage_results),
            gate_results=list(self.gate_results),
            context=self.context.snapshot(),
            producers=self.context.producers(),
            termination=self.termination,
            started_at=self.started_at,
            completed_at=self.completed_at,
            duration_seconds=duration,
        )


class WorkflowEngine:
    """
    Workflow engine that executes staged workflows.

    Responsibilities:
    - Load and validate workflow definitions
    - Execute stages sequentially with a shared append-only context
    - Evaluate quality gates after designated stages
    - Apply per-stage and per-gate abort/fallback policies
    - Track and cancel in-flight runs
    """

    def __init__(
        self,
        registry: Optional[WorkerRegistry] = None,
        executor: Optional[StageExecutor] = None,
        evaluator: Optional[QualityGateEvaluator] = None,
        manifest_dir: Optional[Path] = None,
    ) -> None:
        """
        Initialize workflow engine.

        Args:
            registry: Worker registry (created from config if not provided)
            executor: Stage executor (created over the registry if not provided)
            evaluator: Quality gate evaluator
            manifest_dir: Directory containing workflow manifests
        """
        self._owns_registry = registry is None
        self.registry = registry or WorkerRegistry(worker_service_url=config.worker_service_url)
        self.executor = executor or StageExecutor(self.registry)
        self.evaluator = evaluator or QualityGateEvaluator()
        self.manifest_dir = Path(manifest_dir or config.manifest_dir)
        self._runs: Dict[str, WorkflowRun] = {}
        self._tokens: Dict[str, CancellationToken] = {}

    async def close(self) -> None:
        """Release the worker registry's HTTP client if this engine created it."""
        if self._owns_registry:
            await self.registry.close()

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    def load_definition_from_file(self, manifest_name: str) -> WorkflowDefinition:
        """Load `<manifest_dir>/<manifest_name>.yaml`."""
        return load_definition_from_file(self.manifest_dir / f"{manifest_name}.yaml")

    def load_definition_from_yaml(self, yaml_content: str) -> WorkflowDefinition:
        return load_definition_from_yaml(yaml_content)

    def check_workers(self, definition: WorkflowDefinition) -> None:
        """
        Ensure every worker named by the definition can be resolved.

        Raises:
            ConfigurationError: If any worker is unknown
        """
        unknown = [name for name in definition.worker_names() if not self.registry.has(name)]
        if unknown:
            raise ConfigurationError(
                f"Workflow '{definition.name}' uses unregistered workers: {', '.join(unknown)}",
                [f"unregistered worker '{name}'" for name in unknown],
            )

    def check_operators(self, definition: WorkflowDefinition) -> None:
        """
        Ensure every gate predicate uses an operator the evaluator knows.

        Raises:
            ConfigurationError: If any predicate names an unknown operator
        """
        known = set(self.evaluator.operators)
        problems = [
            f"gate '{gate.name}' predicate on '{predicate.key}' uses unknown operator "
            f"'{predicate.operator}'"
            for gate in definition.gates
            for predicate in gate.predicates
            if predicate.operator not in known
        ]
        if problems:
            raise ConfigurationError(
                f"Workflow '{definition.name}' uses unknown gate operators", problems
            )

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def create_run(
        self,
        definition: WorkflowDefinition,
        arguments: Optional[Mapping[str, Any]] = None,
        run_id: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> WorkflowRun:
        """Create a Pending run with its context seeded from `arguments`."""
        arguments = dict(arguments or {})
        run = WorkflowRun(
            run_id=run_id or str(uuid4()),
            definition=definition,
            initial_arguments=arguments,
            context=ExecutionContext(arguments),
        )
        self._track(run)
        self._tokens[run.run_id] = token or CancellationToken()
        return run

    async def run(
        self,
        definition: WorkflowDefinition,
        arguments: Optional[Mapping[str, Any]] = None,
        token: Optional[CancellationToken] = None,
        run_id: Optional[str] = None,
    ) -> WorkflowReport:
        """
        Execute a complete workflow.

        Args:
            definition: Workflow definition to execute
            arguments: Caller-supplied initial arguments
            token: Run-level cancellation token
            run_id: Run ID (generated if not provided)

        Returns:
            Terminal workflow report

        Raises:
            ConfigurationError: If a bound worker cannot be resolved or a gate uses an
                unknown operator (before the run starts)
        """
        self.check_workers(definition)
        self.check_operators(definition)
        run = self.create_run(definition, arguments, run_id, token)
        return await self.drive(run)

    async def drive(
        self, run: WorkflowRun, token: Optional[CancellationToken] = None
    ) -> WorkflowReport:
        """Drive a Pending run to a terminal state."""
        if run.status != WorkflowStatus.PENDING:
            raise ValueError(f"Run '{run.run_id}' is {run.status.value}; runs are never reused")

        token = token or self._tokens.get(run.run_id) or CancellationToken()
        self._tokens[run.run_id] = token
        definition = run.definition
        plan: Deque[PlannedStage] = deque((spec, None, spec.name) for spec in definition.stages)

        run.status = WorkflowStatus.RUNNING
        run.started_at = datetime.utcnow()
        start = time.monotonic()
        logger.info(
            f"Starting workflow '{definition.name}' (run: {run.run_id}) "
            f"with {len(definition.stages)} stages"
        )

        try:
            while plan:
                spec, fallback_for, anchor = plan.popleft()
                if token.cancelled:
                    self._terminate(
                        run,
                        WorkflowStatus.CANCELLED,
                        TerminationInfo(
                            reason=TerminationReason.CANCELLED,
                            stage=spec.name,
                            message=f"Run cancelled before stage '{spec.name}': {token.reason}",
                        ),
                    )
                    break

                if not await self._run_stage(run, plan, spec, fallback_for, anchor, token):
                    break

                # A failed stage routed to its fallback has its gates checked after the fallback
                if (
                    anchor is not None
                    and run.stage_results[-1].succeeded
                    and not self._check_gates(run, plan, anchor)
                ):
                    break
            else:
                run.status = WorkflowStatus.COMPLETED
                run.completed_at = datetime.utcnow()
        except anyio.get_cancelled_exc_class():
            # The task driving the run was cancelled, e.g. on service shutdown
            self._terminate(
                run,
                WorkflowStatus.CANCELLED,
                TerminationInfo(
                    reason=TerminationReason.CANCELLED,
                    stage=run.current_stage,
                    message="Run interrupted: the task driving it was cancelled",
                ),
            )
            raise
        except Exception as e:
            logger.exception(f"Unexpected error while driving run '{run.run_id}'")
            self._terminate(
                run,
                WorkflowStatus.ABORTED,
                TerminationInfo(
                    reason=TerminationReason.ENGINE_ERROR,
                    stage=run.current_stage,
                    message=f"Run aborted by an unexpected error: {type(e).__name__}: {e}",
                ),
            )
        finally:
            self._tokens.pop(run.run_id, None)

        run.current_stage = None
        logger.info(
            f"Workflow '{definition.name}' (run: {run.run_id}) finished with status "
            f"'{run.status.value}' in {time.monotonic() - start:.2f}s"
        )
        return run.to_report()

    async def _run_stage(
        self,
        run: WorkflowRun,
        plan: Deque[PlannedStage],
        spec: StageSpec,
        fallback_for: Optional[str],
        anchor: Optional[str],
        token: CancellationToken,
    ) -> bool:
        """Execute one stage and merge its output. Returns False if the run ended."""
        run.current_stage = spec.name
        logger.info(
            f"Executing stage {run.current_stage_index + 1}: '{spec.name}' "
            f"(worker: {spec.worker})"
            + (f" as fallback for '{fallback_for}'" if fallback_for else "")
        )

        try:
            result = await self.executor.execute(spec, run.context, token, fallback_for)
        except MissingInputError as e:
            result = StageResult(
                stage=spec.name,
                worker=spec.worker,
                status=StageStatus.FAILURE,
                attempts=0,
                error=StageError(error_type=type(e).__name__, message=str(e)),
                fallback_for=fallback_for,
            )
            run.stage_results.append(result)
            logger.error(str(e))
            self._terminate(
                run,
                WorkflowStatus.ABORTED,
                TerminationInfo(
                    reason=TerminationReason.MISSING_INPUT,
                    stage=spec.name,
                    message=str(e),
                    stage_result=result,
                ),
            )
            return False

        run.stage_results.append(result)

        if result.status == StageStatus.SUCCESS:
            try:
                run.context.merge(spec.name, result.output)
            except ContextConflictError as e:
                logger.error(str(e))
                self._terminate(
                    run,
                    WorkflowStatus.ABORTED,
                    TerminationInfo(
                        reason=TerminationReason.CONTEXT_CONFLICT,
                        stage=spec.name,
                        message=str(e),
                        stage_result=result,
                    ),
                )
                return False
            except Exception as e:
                logger.error(f"Stage '{spec.name}' output could not be merged: {e}")
                self._terminate(
                    run,
                    WorkflowStatus.ABORTED,
                    TerminationInfo(
                        reason=TerminationReason.STAGE_FAILED,
                        stage=spec.name,
                        message=(
                            f"Stage '{spec.name}' output could not be merged: "
                            f"{type(e).__name__}: {e}"
                        ),
                        stage_result=result,
                    ),
                )
                return False
            run.current_stage_index += 1
            logger.info(
                f"Stage '{spec.name}' succeeded in {result.duration_seconds:.2f}s, "
                f"produced keys: {sorted(result.output)}"
            )
            return True

        if result.status == StageStatus.CANCELLED:
            self._terminate(
                run,
                WorkflowStatus.CANCELLED,
                TerminationInfo(
                    reason=TerminationReason.CANCELLED,
                    stage=spec.name,
                    message=f"Run cancelled during stage '{spec.name}': {token.reason}",
                    stage_result=result,
                ),
            )
            return False

        policy = spec.on_failure
        if policy.action == EscalationAction.FALLBACK and policy.fallback_stage:
            fallback = run.definition.stage(policy.fallback_stage)
            logger.warning(
                f"Stage '{spec.name}' ended with '{result.status.value}'; "
                f"routing to fallback stage '{fallback.name}'"
            )
            plan.appendleft((fallback, spec.name, anchor))
            return True

        reason = (
            TerminationReason.STAGE_TIMEOUT
            if result.status == StageStatus.TIMEOUT
            else TerminationReason.STAGE_FAILED
        )
        detail = result.error.message if result.error else result.status.value
        self._terminate(
            run,
            WorkflowStatus.ABORTED,
            TerminationInfo(
                reason=reason,
                stage=spec.name,
                message=f"Stage '{spec.name}' ended with '{result.status.value}': {detail}",
                stage_result=result,
            ),
        )
        return False

    def _check_gates(self, run: WorkflowRun, plan: Deque[PlannedStage], anchor: str) -> bool:
        """Evaluate the gates after `anchor`. Returns False if a gate aborted the run."""
        routed: List[PlannedStage] = []

        for gate in run.definition.gates_after(anchor):
            result = self.evaluator.evaluate(gate, run.context)
            if result.passed:
                run.gate_results.append(result)
                continue

            policy = gate.on_failure
            if policy.action == EscalationAction.FALLBACK and policy.fallback_stage:
                fallback = run.definition.stage(policy.fallback_stage)
                result = result.model_copy(update={"routed_to": fallback.name})
                run.gate_results.append(result)
                logger.warning(
                    f"Quality gate '{gate.name}' failed; routing to fallback stage "
                    f"'{fallback.name}'"
                )
                routed.append((fallback, gate.name, None))
                continue

            run.gate_results.append(result)
            failures = result.failures
            self._terminate(
                run,
                WorkflowStatus.GATE_FAILED,
                TerminationInfo(
                    reason=TerminationReason.GATE_FAILED,
                    stage=anchor,
                    gate=gate.name,
                    message=(
                        f"Quality gate '{gate.name}' failed after stage '{anchor}': "
                        + "; ".join(f"{p.name}: {p.message}" for p in failures)
                    ),
                    predicate_failures=failures,
                ),
            )
            return False

        for planned in reversed(routed):
            plan.appendleft(planned)
        return True

    def _terminate(
        self, run: WorkflowRun, status: WorkflowStatus, termination: TerminationInfo
    ) -> None:
        run.status = status
        run.termination = termination
        run.completed_at = datetime.utcnow()
        logger.error(
            f"Workflow '{run.definition.name}' (run: {run.run_id}) "
            f"{status.value}: {termination.message}"
        )

    def _track(self, run: WorkflowRun) -> None:
        self._runs[run.run_id] = run
        if len(self._runs) > MAX_TRACKED_RUNS:
            finished = [rid for rid, r in self._runs.items() if r.status.is_terminal]
            for rid in finished[: len(finished) // 2]:
                del self._runs[rid]

    def get_run(self, run_id: str) -> Optional[WorkflowRun]:
        """
        Get a tracked run.

        Args:
            run_id: Run ID

        Returns:
            The run or None if not found
        """
        return self._runs.get(run_id)

    def cancel_run(self, run_id: str, reason: str = "cancelled by caller") -> bool:
        """
        Cancel a running workflow.

        Args:
            run_id: Run ID
            reason: Reason recorded in the termination info

        Returns:
            True if a cancellation was requested, False if the run is unknown or finished
        """
        run = self._runs.get(run_id)
        token = self._tokens.get(run_id)
        if run is None or token is None or run.status.is_terminal:
            return False
        logger.info(f"Cancelling workflow run '{run_id}'")
        token.cancel(reason)
        return True

    def abandon_run(self, run: WorkflowRun, reason: str) -> None:
        """Mark a Pending run that will never be driven as cancelled."""
        if run.status != WorkflowStatus.PENDING:
            return
        self._terminate(
            run,
            WorkflowStatus.CANCELLED,
            TerminationInfo(
                reason=TerminationReason.CANCELLED,
                message=f"Run cancelled before it started: {reason}",
            ),
        )
        self._tokens.pop(run.run_id, None)


async def run_workflow(
    definition: Union[WorkflowDefinition, Mapping[str, Any]],
    initial_arguments: Optional[Mapping[str, Any]] = None,
    registry: Optional[WorkerRegistry] = None,
    token: Optional[CancellationToken] = None,
) -> WorkflowReport:
    """
    Run a workflow definition to completion and return its report.

    Args:
        definition: Workflow definition or raw manifest mapping
        initial_arguments: Caller-supplied initial arguments
        registry: Worker registry binding the definition's workers
        token: Run-level cancellation token

    Raises:
        ConfigurationError: If the definition is invalid or a worker is unbound
    """
    if not isinstance(definition, WorkflowDefinition):
        definition = load_definition(definition)
    engine = WorkflowEngine(registry=registry)
    try:
        return await engine.run(definition, initial_arguments, token=token)
    finally:
        await engine.close()
