"""
Workflow definitions: the ordered stage list, its gates, and load-time validation.

A definition is validated once when it is constructed. Any stage whose
required inputs cannot be satisfied by the initial arguments plus the
outputs of earlier stages makes the whole definition invalid.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .config import config
from .context import ARGUMENTS_PRODUCER
from .errors import ConfigurationError
from .models import EscalationAction, QualityGate, StageSpec

logger = logging.getLogger(__name__)


class WorkflowDefinition(BaseModel):
    """Immutable ordered sequence of stages with their quality gates."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="Workflow name")
    version: str = Field(default="1.0.0", description="Workflow version (semver)")
    description: Optional[str] = Field(default=None)
    arguments: Tuple[str, ...] = Field(
        default=(), description="Keys supplied by the caller when the run starts"
    )
    stages: Tuple[StageSpec, ...] = Field(..., min_length=1)
    fallback_stages: Tuple[StageSpec, ...] = Field(
        default=(), description="Stages that only run when a policy routes to them"
    )
    gates: Tuple[QualityGate, ...] = Field(default=())
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """Validate version follows semver pattern."""
        parts = v.split(".")
        if len(parts) != 3:
            raise ValueError("Version must follow semver format (x.y.z)")
        for part in parts:
            if not part.isdigit():
                raise ValueError("Version parts must be numeric")
        return v

    @model_validator(mode="after")
    def validate_dependencies(self) -> "WorkflowDefinition":
        problems = find_definition_problems(self)
        if problems:
            raise ConfigurationError(
                f"Workflow '{self.name}' is invalid: {'; '.join(problems)}", problems
            )
        return self

    def stage(self, name: str) -> StageSpec:
        """Look up a main or fallback stage by name."""
        for spec in self.stages + self.fallback_stages:
            if spec.name == name:
                return spec
        raise KeyError(name)

    def gates_after(self, stage_name: str) -> List[QualityGate]:
        return [gate for gate in self.gates if gate.after_stage == stage_name]

    def available_keys_before(self, index: int) -> Set[str]:
        """Keys guaranteed present when the stage at `index` starts."""
        keys = set(self.arguments)
        for spec in self.stages[:index]:
            keys.update(spec.output_keys)
        return keys

    def worker_names(self) -> List[str]:
        return sorted({spec.worker for spec in self.stages + self.fallback_stages})


def find_definition_problems(definition: WorkflowDefinition) -> List[str]:
    """
    Check a definition for internal consistency.

    Args:
        definition: Definition to check

    Returns:
        Human-readable problems; empty when the definition is valid
    """
    problems: List[str] = []
    main_names = [spec.name for spec in definition.stages]
    fallbacks = {spec.name: spec for spec in definition.fallback_stages}

    seen: Set[str] = set()
    for name in main_names + list(fallbacks):
        if name in seen:
            problems.append(f"stage name '{name}' is declared more than once")
        seen.add(name)
    if len(fallbacks) != len(definition.fallback_stages):
        return problems

    # Which policy inserts each fallback stage: fallback -> (stage, gate)
    routes: Dict[str, Tuple[str, Optional[str]]] = {}

    def register_route(target: Optional[str], owner: str, gate: Optional[str]) -> None:
        label = f"gate '{gate}'" if gate else f"stage '{owner}'"
        if target not in fallbacks:
            problems.append(f"{label} routes to unknown fallback stage '{target}'")
        elif target in routes:
            problems.append(f"fallback stage '{target}' is the target of more than one policy")
        else:
            routes[target] = (owner, gate)

    for spec in definition.stages:
        if spec.on_failure.action == EscalationAction.FALLBACK:
            register_route(spec.on_failure.fallback_stage, spec.name, None)
    for gate in definition.gates:
        if gate.after_stage not in main_names:
            problems.append(f"gate '{gate.name}' follows unknown stage '{gate.after_stage}'")
            continue
        if gate.on_failure.action == EscalationAction.FALLBACK:
            register_route(gate.on_failure.fallback_stage, gate.after_stage, gate.name)

    for name, spec in fallbacks.items():
        if spec.on_failure.action != EscalationAction.ABORT:
            problems.append(f"fallback stage '{name}' cannot itself route to a fallback")
        if name not in routes:
            logger.warning(
                f"Fallback stage '{name}' in workflow '{definition.name}' is never routed to"
            )

    # Output keys are written once per run
    producers: Dict[str, str] = {key: ARGUMENTS_PRODUCER for key in definition.arguments}
    for spec in definition.stages:
        for key in spec.output_keys:
            if key in producers:
                problems.append(
                    f"stage '{spec.name}' output '{key}' is already produced by '{producers[key]}'"
                )
            else:
                producers[key] = spec.name
    fallback_producers: Dict[str, str] = {}
    for name, (owner, gate) in routes.items():
        for key in fallbacks[name].output_keys:
            replaced = gate is None and producers.get(key) == owner
            if (key in producers and not replaced) or key in fallback_producers:
                other = producers.get(key) or fallback_producers[key]
                problems.append(
                    f"fallback stage '{name}' output '{key}' is already produced by '{other}'"
                )
            fallback_producers.setdefault(key, name)

    # Inputs must be satisfiable at every point in the sequence
    available: Set[str] = set(definition.arguments)
    for spec in definition.stages:
        missing = [key for key in spec.inputs if key not in available]
        if missing:
            problems.append(
                f"stage '{spec.name}' requires {missing} which no earlier stage or argument provides"
            )
        if spec.on_failure.action == EscalationAction.FALLBACK and spec.on_failure.fallback_stage in fallbacks:
            fallback = fallbacks[spec.on_failure.fallback_stage]
            fallback_missing = [key for key in fallback.inputs if key not in available]
            if fallback_missing:
                problems.append(
                    f"fallback stage '{fallback.name}' requires {fallback_missing} "
                    f"which are unavailable when '{spec.name}' fails"
                )
            uncovered = [key for key in spec.output_keys if key not in fallback.output_keys]
            if uncovered:
                problems.append(
                    f"fallback stage '{fallback.name}' must produce {uncovered} "
                    f"to replace stage '{spec.name}'"
                )
        available.update(spec.output_keys)

        for gate in definition.gates_after(spec.name):
            unknown = [p.key for p in gate.predicates if p.key not in available]
            if unknown:
                problems.append(f"gate '{gate.name}' checks keys {unknown} that are never available")
            if gate.on_failure.action == EscalationAction.FALLBACK and gate.on_failure.fallback_stage in fallbacks:
                fallback = fallbacks[gate.on_failure.fallback_stage]
                fallback_missing = [key for key in fallback.inputs if key not in available]
                if fallback_missing:
                    problems.append(
                        f"fallback stage '{fallback.name}' requires {fallback_missing} "
                        f"which are unavailable after gate '{gate.name}'"
                    )

    return problems


# ============================================================================
# Loading
# ============================================================================


def load_definition(data: Mapping[str, Any]) -> WorkflowDefinition:
    """
    Build a workflow definition from parsed manifest data.

    Raises:
        ConfigurationError: If the data is malformed or unsatisfiable
    """
    if not isinstance(data, Mapping):
        raise ConfigurationError("Workflow manifest must be a mapping")
    try:
        return WorkflowDefinition(**data)
    except ValidationError as e:
        problems = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise ConfigurationError(f"Invalid workflow structure: {'; '.join(problems)}", problems)


def load_definition_from_yaml(yaml_content: str) -> WorkflowDefinition:
    """
    Load a workflow definition from a YAML string.

    Raises:
        ConfigurationError: If the YAML or the definition is invalid
    """
    try:
        data = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in manifest: {e}")
    definition = load_definition(data)
    logger.info(f"Loaded workflow '{definition.name}' from YAML string")
    return definition


def load_definition_from_file(path: Path) -> WorkflowDefinition:
    """
    Load a workflow definition from a YAML file.

    Raises:
        ConfigurationError: If the manifest is invalid
        FileNotFoundError: If the file doesn't exist
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Manifest not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        content = f.read()
    definition = load_definition_from_yaml(content)
    logger.info(f"Loaded workflow '{definition.name}' from {path}")
    return definition


class DefinitionLoader:
    """Loads named manifests from a directory and caches them."""

    def __init__(self, manifest_dir: Optional[Path] = None) -> None:
        self.manifest_dir = Path(manifest_dir or config.manifest_dir)
        self._cache: Dict[str, WorkflowDefinition] = {}

    def list_names(self) -> List[str]:
        if not self.manifest_dir.exists():
            return []
        return sorted(p.stem for p in self.manifest_dir.glob("*.yaml"))

    def load(self, manifest_name: str) -> WorkflowDefinition:
        """
        Load manifest `<manifest_dir>/<manifest_name>.yaml`.

        Raises:
            ConfigurationError: If the manifest is invalid
            FileNotFoundError: If the manifest doesn't exist
        """
        if manifest_name in self._cache:
            logger.info(f"Loaded manifest '{manifest_name}' from cache")
            return self._cache[manifest_name]
        if "/" in manifest_name or "\\" in manifest_name or manifest_name.startswith("."):
            raise FileNotFoundError(f"Manifest not found: {manifest_name}")

        definition = load_definition_from_file(self.manifest_dir / f"{manifest_name}.yaml")
        self._cache[manifest_name] = definition
        return definition

    def clear(self) -> None:
        self._cache.clear()
