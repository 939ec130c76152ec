"""
Append-only execution context shared by the stages of one workflow run.

Every key records the stage that produced it. Keys are written once; a later
write raises ContextConflictError and leaves the context untouched.
"""

import copy
import logging
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional

from .errors import ContextConflictError

logger = logging.getLogger(__name__)

ARGUMENTS_PRODUCER = "arguments"


class ExecutionContext:
    """Accumulated key-value record for a single WorkflowRun."""

    def __init__(self, arguments: Optional[Mapping[str, Any]] = None) -> None:
        """
        Initialize the context with caller-supplied arguments.

        Args:
            arguments: Initial arguments, recorded as produced by "arguments"
        """
        self._values: Dict[str, Any] = {}
        self._producers: Dict[str, str] = {}
        if arguments:
            self.merge(ARGUMENTS_PRODUCER, arguments)

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __getitem__(self, key: str) -> Any:
        return copy.deepcopy(self._values[key])

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"ExecutionContext(keys={sorted(self._values)})"

    def get(self, key: str, default: Any = None) -> Any:
        """Deep copy of the value stored under `key`, or `default`."""
        if key not in self._values:
            return default
        return copy.deepcopy(self._values[key])

    def keys(self) -> List[str]:
        return list(self._values)

    def missing(self, keys: Iterable[str]) -> List[str]:
        """Return the keys from `keys` that are not present, in order."""
        return [key for key in keys if key not in self._values]

    def select(self, keys: Iterable[str]) -> Dict[str, Any]:
        """Deep-copied snapshot of the given keys."""
        return {key: copy.deepcopy(self._values[key]) for key in keys}

    def snapshot(self) -> Dict[str, Any]:
        """Deep-copied snapshot of every key."""
        return copy.deepcopy(self._values)

    def producers(self) -> Dict[str, str]:
        return dict(self._producers)

    def producer_of(self, key: str) -> Optional[str]:
        return self._producers.get(key)

    def merge(self, producer: str, outputs: Mapping[str, Any]) -> None:
        """
        Add a stage's outputs to the context.

        The merge is all-or-nothing: every key is checked and every value
        copied before any is written.

        Args:
            producer: Name of the stage (or "arguments") producing the keys
            outputs: Key-value pairs to add

        Raises:
            ContextConflictError: If any key already exists
            TypeError: If a value cannot be deep-copied
        """
        for key in outputs:
            if key in self._values:
                raise ContextConflictError(key, self._producers[key], producer)

        copied = {key: copy.deepcopy(value) for key, value in outputs.items()}
        for key, value in copied.items():
            self._values[key] = value
            self._producers[key] = producer

        logger.debug(f"Merged {len(outputs)} keys from '{producer}' into context")
