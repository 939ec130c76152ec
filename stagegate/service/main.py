"""
Stagegate Service - Main FastAPI Application.

Provides API endpoints for:
- Listing and validating workflow manifests
- Running workflows synchronously and returning their report
- Starting background runs, polling their status and cancelling them
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List, Optional, Set

import anyio
from fastapi import APIRouter, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .config import config
from .definition import DefinitionLoader, WorkflowDefinition, load_definition_from_yaml
from .errors import ConfigurationError
from .models import (
    ErrorResponse,
    HealthCheckResponse,
    RunStatusResponse,
    WorkflowReport,
    WorkflowRunRequest,
    WorkflowStartResponse,
    WorkflowStatus,
    WorkflowValidateRequest,
    WorkflowValidateResponse,
)
from .workflow_engine import WorkflowEngine, WorkflowRun

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

SERVICE_VERSION = "1.0.0"

router = APIRouter()


# ============================================================================
# Helpers
# ============================================================================


def _engine(request: Request) -> WorkflowEngine:
    return request.app.state.workflow_engine


def _load_definition(request: Request, body: WorkflowRunRequest) -> WorkflowDefinition:
    """Resolve the manifest named or embedded in a run request."""
    if body.manifest_name:
        loader: DefinitionLoader = request.app.state.definition_loader
        try:
            definition = loader.load(body.manifest_name)
        except FileNotFoundError as e:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Manifest not found: {body.manifest_name}",
            ) from e
        logger.info(f"Loaded manifest '{body.manifest_name}' from file")
        return definition
    return load_definition_from_yaml(body.manifest_yaml or "")


async def _drive_in_background(app: FastAPI, run: WorkflowRun) -> None:
    """Drive a run under the service's concurrency limit."""
    limiter: anyio.CapacityLimiter = app.state.run_limiter
    engine: WorkflowEngine = app.state.workflow_engine
    try:
        async with limiter:
            report = await engine.drive(run)
    except asyncio.CancelledError:
        # Still queued behind the limiter; drive() marks started runs itself
        engine.abandon_run(run, "service shutting down")
        raise
    logger.info(
        f"Background run '{run.run_id}' of '{report.workflow}' "
        f"finished with status: {report.status.value}"
    )


# ============================================================================
# API Endpoints
# ============================================================================


@router.get("/", response_model=Dict[str, str])
async def root() -> Dict[str, str]:
    """Root endpoint with service information."""
    return {
        "service": "Stagegate Workflow Orchestrator",
        "version": SERVICE_VERSION,
        "status": "running",
        "docs": "/docs",
    }


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(request: Request) -> HealthCheckResponse:
    """Health check endpoint with registered workers and active runs."""
    engine = _engine(request)
    active = len(request.app.state.background_tasks)
    return HealthCheckResponse(
        status="healthy",
        version=SERVICE_VERSION,
        workers=engine.registry.names(),
        active_runs=active,
        uptime_seconds=time.time() - request.app.state.started_at,
    )


@router.get("/workflows", response_model=Dict[str, List[str]])
async def list_workflows(request: Request) -> Dict[str, List[str]]:
    """List manifests available in the manifest directory."""
    loader: DefinitionLoader = request.app.state.definition_loader
    return {"manifests": loader.list_names()}


@router.post("/workflows/validate", response_model=WorkflowValidateResponse)
async def validate_workflow(body: WorkflowValidateRequest) -> WorkflowValidateResponse:
    """Validate an inline YAML manifest without running it."""
    try:
        definition = load_definition_from_yaml(body.manifest_yaml)
    except ConfigurationError as e:
        return WorkflowValidateResponse(valid=False, problems=e.problems)
    return WorkflowValidateResponse(valid=True, workflow=definition.name)


@router.post("/workflows/run", response_model=WorkflowReport)
async def run_workflow_endpoint(request: Request, body: WorkflowRunRequest) -> WorkflowReport:
    """
    Run a workflow to completion and return its report.

    Stage failures and gate failures are reported in the body, not as HTTP errors.

    Raises:
        HTTPException: If the manifest cannot be found
    """
    definition = _load_definition(request, body)
    logger.info(f"Running workflow '{definition.name}' synchronously")
    async with request.app.state.run_limiter:
        return await _engine(request).run(definition, body.arguments)


@router.post(
    "/workflows/start",
    response_model=WorkflowStartResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_workflow(request: Request, body: WorkflowRunRequest) -> WorkflowStartResponse:
    """
    Start a workflow run in the background.

    Returns:
        Run ID and Pending status; poll /workflows/runs/{run_id} for progress
    """
    definition = _load_definition(request, body)
    engine = _engine(request)
    engine.check_workers(definition)
    engine.check_operators(definition)
    run = engine.create_run(definition, body.arguments)

    tasks: Set[asyncio.Task[None]] = request.app.state.background_tasks
    task = asyncio.create_task(_drive_in_background(request.app, run))
    tasks.add(task)
    task.add_done_callback(tasks.discard)

    return WorkflowStartResponse(
        run_id=run.run_id,
        status=run.status,
        message=f"Workflow '{definition.name}' started",
    )


@router.get("/workflows/runs/{run_id}", response_model=RunStatusResponse)
async def get_run_status(request: Request, run_id: str) -> RunStatusResponse:
    """Get the status of a run, with its report once it has one."""
    run = _engine(request).get_run(run_id)
    if run is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Run {run_id} not found",
        )
    report: Optional[WorkflowReport] = None
    if run.status != WorkflowStatus.PENDING:
        report = run.to_report()
    return RunStatusResponse(
        run_id=run.run_id,
        workflow=run.definition.name,
        status=run.status,
        current_stage=run.current_stage,
        report=report,
    )


@router.post("/workflows/runs/{run_id}/cancel", response_model=Dict[str, Any])
async def cancel_run(request: Request, run_id: str) -> Dict[str, Any]:
    """Cancel a pending or running workflow run."""
    engine = _engine(request)
    if engine.get_run(run_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Run {run_id} not found",
        )
    cancelled = engine.cancel_run(run_id, reason="cancelled via API")
    return {"run_id": run_id, "cancelled": cancelled}


# ============================================================================
# Application Factory
# ============================================================================


def create_app(workflow_engine: Optional[WorkflowEngine] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        workflow_engine: Engine to serve (created from config on startup if not provided)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Starting Stagegate service...")
        logger.info(f"Manifest directory: {config.manifest_dir}")
        logger.info(f"Worker service URL: {config.worker_service_url}")

        engine = workflow_engine or WorkflowEngine()
        app.state.workflow_engine = engine
        app.state.definition_loader = DefinitionLoader(engine.manifest_dir)
        app.state.run_limiter = anyio.CapacityLimiter(config.max_concurrent_runs)
        app.state.background_tasks = set()
        app.state.started_at = time.time()

        logger.info("Stagegate service started successfully")
        yield

        logger.info("Shutting down Stagegate service...")
        pending = list(app.state.background_tasks)
        for task in pending:
            task.cancel()
        # Runs must reach a terminal state before the registry's client closes
        await asyncio.gather(*pending, return_exceptions=True)
        await engine.close()
        logger.info("Stagegate service shutdown complete")

    app = FastAPI(
        title="Stagegate Workflow Orchestrator",
        description="Sequential multi-agent workflows with shared context and quality gates",
        version=SERVICE_VERSION,
        lifespan=lifespan,
    )

    @app.exception_handler(ConfigurationError)
    async def configuration_exception_handler(
        request: Request, exc: ConfigurationError
    ) -> JSONResponse:
        """Handle invalid workflow definitions and unbound workers."""
        logger.warning(f"Configuration error: {exc}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=ErrorResponse(
                error="ConfigurationError",
                message=str(exc),
                details={"problems": exc.problems},
            ).model_dump(),
        )

    @app.exception_handler(ValidationError)
    async def validation_exception_handler(
        request: Request, exc: ValidationError
    ) -> JSONResponse:
        """Handle Pydantic validation errors."""
        errors = [f"{err['loc']}: {err['msg']}" for err in exc.errors()]
        logger.warning(f"Validation error: {errors}")
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=ErrorResponse(
                error="ValidationError",
                message="Invalid request data",
                details={"errors": errors},
            ).model_dump(),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        """Handle HTTP exceptions."""
        logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}")
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                error="HTTPException",
                message=str(exc.detail or "An error occurred"),
            ).model_dump(),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle all other exceptions."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="InternalServerError",
                message="An internal server error occurred",
                details={"exception": str(exc)},
            ).model_dump(),
        )

    app.include_router(router)
    return app


app = create_app()


def main() -> None:
    """Main entry point for running the service."""
    import uvicorn

    logger.info("Starting Stagegate service with uvicorn...")

    uvicorn.run(
        "stagegate.service.main:app",
        host=config.host,
        port=config.port,
        reload=config.reload,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
