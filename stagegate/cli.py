"""
Stagegate command line interface.

Module: stagegate/cli.py

Commands:
    stagegate list                          List bundled/configured manifests
    stagegate validate FILE                 Validate a workflow manifest
    stagegate run FILE --arg key=value      Run a workflow and print its report
    stagegate serve                         Start the HTTP service
"""

import importlib
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import anyio
import click
import yaml
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Load environment variables for worker modules imported with --registry
load_dotenv(override=False)

from . import __version__
from .service.config import config
from .service.definition import DefinitionLoader, WorkflowDefinition, load_definition_from_file
from .service.errors import ConfigurationError
from .service.models import StageStatus, WorkflowReport, WorkflowStatus
from .service.workers import WorkerRegistry
from .service.workflow_engine import WorkflowEngine

console = Console()

STATUS_STYLES = {
    StageStatus.SUCCESS: "green",
    StageStatus.FAILURE: "red",
    StageStatus.TIMEOUT: "yellow",
    StageStatus.CANCELLED: "magenta",
}


def parse_arguments(pairs: Tuple[str, ...], args_file: Optional[str]) -> Dict[str, Any]:
    """
    Build initial workflow arguments.

    Values given as key=value are parsed as YAML scalars, so `true`, `3` and
    `[a, b]` become a bool, an int and a list.
    """
    arguments: Dict[str, Any] = {}
    if args_file:
        with open(args_file, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise click.BadParameter("arguments file must contain a mapping", param_hint="--args-file")
        arguments.update(loaded)

    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"expected key=value, got '{pair}'", param_hint="--arg")
        key, raw = pair.split("=", 1)
        try:
            arguments[key.strip()] = yaml.safe_load(raw)
        except yaml.YAMLError:
            arguments[key.strip()] = raw
    return arguments


def load_registry(spec: Optional[str], worker_url: Optional[str]) -> WorkerRegistry:
    """
    Load a worker registry.

    Args:
        spec: "module:attribute" naming a WorkerRegistry object, or None
        worker_url: Base URL for remote workers
    """
    if spec:
        module_name, _, attribute = spec.partition(":")
        module = importlib.import_module(module_name)
        registry = getattr(module, attribute or "registry")
        if not isinstance(registry, WorkerRegistry):
            raise click.BadParameter(f"{spec} is not a WorkerRegistry", param_hint="--registry")
        if worker_url and registry.worker_service_url is None:
            registry.worker_service_url = worker_url.rstrip("/")
        return registry
    return WorkerRegistry(worker_service_url=worker_url or config.worker_service_url)


def _resolve_manifest(manifest: str) -> Path:
    path = Path(manifest)
    if path.exists():
        return path
    bundled = Path(config.manifest_dir) / f"{manifest}.yaml"
    if bundled.exists():
        return bundled
    raise click.BadParameter(f"manifest not found: {manifest}", param_hint="MANIFEST")


def _print_definition(definition: WorkflowDefinition) -> None:
    table = Table(title=f"{definition.name} v{definition.version}")
    table.add_column("#", style="dim")
    table.add_column("Stage", style="cyan")
    table.add_column("Worker")
    table.add_column("Inputs")
    table.add_column("Outputs")
    table.add_column("Retries", justify="right")
    table.add_column("On failure")

    for index, spec in enumerate(definition.stages, start=1):
        policy = spec.on_failure.action.value
        if spec.on_failure.fallback_stage:
            policy = f"{policy} -> {spec.on_failure.fallback_stage}"
        table.add_row(
            str(index),
            spec.name,
            spec.worker,
            ", ".join(spec.inputs),
            ", ".join(spec.output_keys),
            str(spec.retries),
            policy,
        )
    console.print(table)

    for gate in definition.gates:
        checks = "\n".join(p.name for p in gate.predicates)
        console.print(
            Panel(checks, title=f"gate: {gate.name} (after {gate.after_stage})", expand=False)
        )


def _print_report(report: WorkflowReport) -> None:
    table = Table(title=f"Run {report.run_id}")
    table.add_column("Stage", style="cyan")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Error")

    for result in report.stage_results:
        style = STATUS_STYLES.get(result.status, "white")
        name = result.stage
        if result.fallback_for:
            name = f"{name} (for {result.fallback_for})"
        table.add_row(
            name,
            f"[{style}]{result.status.value}[/{style}]",
            str(result.attempts),
            f"{result.duration_seconds:.2f}s",
            result.error.message if result.error else "",
        )
    console.print(table)

    for gate in report.gate_results:
        mark = "[green]✓[/green]" if gate.passed else "[red]✗[/red]"
        console.print(f"{mark} gate {gate.gate}")
        for predicate in gate.predicates:
            if not predicate.passed:
                console.print(f"    [red]{predicate.name}[/red]: {predicate.message}")

    if report.succeeded:
        console.print(f"\n[bold green]Workflow {report.workflow} completed[/bold green]")
    elif report.termination is not None:
        console.print(
            Panel(
                report.termination.message,
                title=f"[bold red]{report.status.value}[/bold red]",
                expand=False,
            )
        )


@click.group()
@click.version_option(__version__, prog_name="Stagegate")
@click.option("--log-level", default=None, help="Override the configured log level")
def cli(log_level: Optional[str]) -> None:
    """
    Stagegate - sequential multi-agent workflows with quality gates.
    """
    logging.basicConfig(
        level=getattr(logging, (log_level or config.log_level).upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@cli.command(name="list")
def list_cmd() -> None:
    """List manifests in the configured manifest directory."""
    names = DefinitionLoader(Path(config.manifest_dir)).list_names()
    if not names:
        console.print("[yellow]No manifests found.[/yellow]")
        return
    for name in names:
        console.print(f"  {name}")


@cli.command(name="validate")
@click.argument("manifest")
def validate_cmd(manifest: str) -> None:
    """Validate a workflow manifest (path or manifest name)."""
    path = _resolve_manifest(manifest)
    try:
        definition = load_definition_from_file(path)
    except ConfigurationError as e:
        console.print(f"[red]✗[/red] Invalid manifest: {path}")
        for problem in e.problems:
            console.print(f"  - {problem}")
        sys.exit(1)

    console.print(f"[green]✓[/green] Manifest is valid: {path}")
    _print_definition(definition)


@cli.command(name="run")
@click.argument("manifest")
@click.option("--arg", "pairs", multiple=True, help="Initial argument as key=value")
@click.option("--args-file", type=click.Path(exists=True), help="YAML/JSON file of arguments")
@click.option("--registry", "registry_spec", help="module:attribute of a WorkerRegistry")
@click.option("--worker-url", help="Base URL of the remote worker service")
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON")
def run_cmd(
    manifest: str,
    pairs: Tuple[str, ...],
    args_file: Optional[str],
    registry_spec: Optional[str],
    worker_url: Optional[str],
    as_json: bool,
) -> None:
    """Run a workflow and print its report."""
    path = _resolve_manifest(manifest)
    arguments = parse_arguments(pairs, args_file)
    registry = load_registry(registry_spec, worker_url)

    async def _run() -> WorkflowReport:
        engine = WorkflowEngine(registry=registry)
        try:
            return await engine.run(load_definition_from_file(path), arguments)
        finally:
            await registry.close()

    try:
        report = anyio.run(_run)
    except ConfigurationError as e:
        console.print(f"[red]✗[/red] {e}")
        sys.exit(1)

    if as_json:
        click.echo(json.dumps(report.model_dump(mode="json"), indent=2))
    else:
        _print_report(report)

    if report.status != WorkflowStatus.COMPLETED:
        sys.exit(2)


@cli.command(name="serve")
@click.option("--host", default=None, help="Host to bind")
@click.option("--port", type=int, default=None, help="Port to bind")
def serve_cmd(host: Optional[str], port: Optional[int]) -> None:
    """Start the Stagegate HTTP service."""
    import uvicorn

    uvicorn.run(
        "stagegate.service.main:app",
        host=host or config.host,
        port=port or config.port,
        reload=config.reload,
        log_level=config.log_level.lower(),
    )


def main() -> None:
    """Main entry point for stagegate."""
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)


if __name__ == "__main__":
    main()
