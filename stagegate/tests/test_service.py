"""
Tests for the Stagegate FastAPI service.

Tests cover:
- Service information and health endpoints
- Manifest listing and validation
- Synchronous runs and their reports
- Background runs, polling and cancellation
- Error handling
"""

import time
from pathlib import Path
from typing import Any, Dict, Iterator

import anyio
import pytest
from fastapi.testclient import TestClient

from stagegate.service.executor import StageExecutor
from stagegate.service.main import create_app
from stagegate.service.models import TerminationReason, WorkflowStatus
from stagegate.service.workers import WorkerRegistry
from stagegate.service.workflow_engine import WorkflowEngine

WRITE_MANIFEST = """
name: write
arguments: [topic]
stages:
  - name: outline
    worker: outliner
    inputs: [topic]
    outputs:
      - {name: sections, type: array}
    retries: 0
  - name: draft
    worker: drafter
    inputs: [sections]
    outputs:
      - {name: draft, type: string}
    retries: 0
gates:
  - name: outline-gate
    after_stage: outline
    predicates:
      - {key: sections, operator: length_ge, value: 2}
"""

SLOW_MANIFEST = """
name: slow
stages:
  - name: wait
    worker: sleeper
    outputs: [done]
    timeout: 30
"""


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def registry() -> WorkerRegistry:
    registry = WorkerRegistry()
    registry.register(
        "outliner",
        lambda inputs: {"sections": [f"intro to {inputs['topic']}", "details", "summary"]},
    )
    registry.register("drafter", lambda inputs: {"draft": " / ".join(inputs["sections"])})

    async def sleeper(inputs: Dict[str, Any]) -> Dict[str, Any]:
        await anyio.sleep(30)
        return {"done": True}

    registry.register("sleeper", sleeper)
    return registry


@pytest.fixture
def manifest_dir(tmp_path: Path) -> Path:
    (tmp_path / "write.yaml").write_text(WRITE_MANIFEST)
    (tmp_path / "slow.yaml").write_text(SLOW_MANIFEST)
    return tmp_path


@pytest.fixture
def engine(registry: WorkerRegistry, manifest_dir: Path) -> WorkflowEngine:
    return WorkflowEngine(
        registry=registry,
        executor=StageExecutor(registry, retry_delay=0),
        manifest_dir=manifest_dir,
    )


@pytest.fixture
def test_client(engine: WorkflowEngine) -> Iterator[TestClient]:
    """Create test client with the lifespan running."""
    with TestClient(create_app(engine)) as client:
        yield client


def wait_for_status(client: TestClient, run_id: str, timeout: float = 5.0) -> Dict[str, Any]:
    """Poll a background run until it reaches a terminal status."""
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/workflows/runs/{run_id}").json()
        if body["status"] not in ("pending", "running"):
            return body
        if time.monotonic() > deadline:
            raise AssertionError(f"run {run_id} still {body['status']}")
        time.sleep(0.02)


# ============================================================================
# Information Endpoint Tests
# ============================================================================


def test_root_endpoint(test_client: TestClient) -> None:
    """Test root endpoint returns service information."""
    response = test_client.get("/")

    assert response.status_code == 200
    data = response.json()
    assert data["service"] == "Stagegate Workflow Orchestrator"
    assert data["status"] == "running"


def test_health_check_endpoint(test_client: TestClient) -> None:
    response = test_client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["workers"] == ["drafter", "outliner", "sleeper"]
    assert data["active_runs"] == 0


def test_list_workflows(test_client: TestClient) -> None:
    response = test_client.get("/workflows")

    assert response.status_code == 200
    assert response.json() == {"manifests": ["slow", "write"]}


# ============================================================================
# Validation Endpoint Tests
# ============================================================================


def test_validate_valid_manifest(test_client: TestClient) -> None:
    response = test_client.post("/workflows/validate", json={"manifest_yaml": WRITE_MANIFEST})

    assert response.status_code == 200
    assert response.json() == {"valid": True, "workflow": "write", "problems": []}


def test_validate_invalid_manifest(test_client: TestClient) -> None:
    broken = WRITE_MANIFEST.replace("inputs: [sections]", "inputs: [sections, sources]")

    response = test_client.post("/workflows/validate", json={"manifest_yaml": broken})

    assert response.status_code == 200
    data = response.json()
    assert data["valid"] is False
    assert any("sources" in problem for problem in data["problems"])


# ============================================================================
# Synchronous Run Tests
# ============================================================================


def test_run_named_manifest(test_client: TestClient) -> None:
    response = test_client.post(
        "/workflows/run",
        json={"manifest_name": "write", "arguments": {"topic": "caching"}},
    )

    assert response.status_code == 200
    report = response.json()
    assert report["status"] == "completed"
    assert [r["status"] for r in report["stage_results"]] == ["success", "success"]
    assert report["context"]["draft"] == "intro to caching / details / summary"
    assert report["producers"]["draft"] == "draft"


def test_run_inline_manifest_gate_failure(test_client: TestClient) -> None:
    """Gate failures are reported in the body, not as HTTP errors."""
    strict = WRITE_MANIFEST.replace("value: 2", "value: 5")

    response = test_client.post(
        "/workflows/run",
        json={"manifest_yaml": strict, "arguments": {"topic": "caching"}},
    )

    assert response.status_code == 200
    report = response.json()
    assert report["status"] == "gate_failed"
    assert report["termination"]["gate"] == "outline-gate"
    assert len(report["stage_results"]) == 1


def test_run_unknown_manifest(test_client: TestClient) -> None:
    response = test_client.post("/workflows/run", json={"manifest_name": "missing"})

    assert response.status_code == 404
    assert response.json()["error"] == "HTTPException"


def test_run_invalid_manifest(test_client: TestClient) -> None:
    response = test_client.post("/workflows/run", json={"manifest_yaml": "name: [unclosed"})

    assert response.status_code == 400
    data = response.json()
    assert data["error"] == "ConfigurationError"
    assert data["details"]["problems"]


def test_run_unregistered_worker(test_client: TestClient) -> None:
    manifest = WRITE_MANIFEST.replace("worker: drafter", "worker: ghostwriter")

    response = test_client.post(
        "/workflows/run", json={"manifest_yaml": manifest, "arguments": {"topic": "x"}}
    )

    assert response.status_code == 400
    assert "unregistered worker 'ghostwriter'" in response.json()["details"]["problems"]


def test_unknown_gate_operator_rejected(test_client: TestClient) -> None:
    manifest = WRITE_MANIFEST.replace("operator: length_ge", "operator: longer_than")

    for endpoint in ("/workflows/run", "/workflows/start"):
        response = test_client.post(
            endpoint, json={"manifest_yaml": manifest, "arguments": {"topic": "x"}}
        )

        assert response.status_code == 400
        assert response.json()["details"]["problems"] == [
            "gate 'outline-gate' predicate on 'sections' uses unknown operator 'longer_than'"
        ]


def test_run_requires_one_manifest_source(test_client: TestClient) -> None:
    response = test_client.post(
        "/workflows/run",
        json={"manifest_name": "write", "manifest_yaml": WRITE_MANIFEST},
    )

    assert response.status_code == 422


# ============================================================================
# Background Run Tests
# ============================================================================


def test_start_and_poll(test_client: TestClient) -> None:
    response = test_client.post(
        "/workflows/start",
        json={"manifest_name": "write", "arguments": {"topic": "queues"}},
    )

    assert response.status_code == 202
    data = response.json()
    assert data["status"] == "pending"

    body = wait_for_status(test_client, data["run_id"])
    assert body["status"] == "completed"
    assert body["workflow"] == "write"
    assert body["report"]["context"]["sections"][0] == "intro to queues"


def test_cancel_background_run(test_client: TestClient) -> None:
    response = test_client.post("/workflows/start", json={"manifest_name": "slow"})
    run_id = response.json()["run_id"]

    cancel = test_client.post(f"/workflows/runs/{run_id}/cancel")

    assert cancel.status_code == 200
    assert cancel.json() == {"run_id": run_id, "cancelled": True}
    body = wait_for_status(test_client, run_id)
    assert body["status"] == "cancelled"
    assert body["report"]["termination"]["reason"] == "cancelled"


def test_shutdown_cancels_background_runs(engine: WorkflowEngine) -> None:
    """Runs still in flight at shutdown end Cancelled before the service stops."""
    with TestClient(create_app(engine)) as client:
        run_id = client.post("/workflows/start", json={"manifest_name": "slow"}).json()["run_id"]
        deadline = time.monotonic() + 5.0
        while client.get(f"/workflows/runs/{run_id}").json()["status"] != "running":
            assert time.monotonic() < deadline, "run never started"
            time.sleep(0.02)

    run = engine.get_run(run_id)
    assert run.status == WorkflowStatus.CANCELLED
    assert run.termination.reason == TerminationReason.CANCELLED
    assert run.termination.stage == "wait"


def test_unknown_run(test_client: TestClient) -> None:
    assert test_client.get("/workflows/runs/nope").status_code == 404
    assert test_client.post("/workflows/runs/nope/cancel").status_code == 404
