"""
Run-level cancellation token.

The engine checks the token before each stage. The stage executor binds the
cancel scope of the in-flight worker call so that cancel() interrupts it.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional, Set

import anyio

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation for a single workflow run.

    cancel() must be called from the event loop that drives the run.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: Optional[str] = None
        self._scopes: Set[anyio.CancelScope] = set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled by caller") -> None:
        """Mark the run cancelled and interrupt any bound worker call."""
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        logger.info(f"Cancellation requested: {reason}")
        for scope in list(self._scopes):
            scope.cancel()

    @contextmanager
    def bind(self, scope: anyio.CancelScope) -> Iterator[None]:
        """Attach a cancel scope for the duration of a worker call."""
        if self._cancelled:
            scope.cancel()
        self._scopes.add(scope)
        try:
            yield
        finally:
            self._scopes.discard(scope)
