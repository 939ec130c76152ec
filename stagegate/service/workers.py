"""
Worker registry: resolves the worker identifier bound to a stage.

Workers are callables taking the stage's input mapping and returning an
output mapping. Async callables are awaited directly; sync callables run in a
worker thread. Remote workers are reached over HTTP.
"""

import functools
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

import anyio
import httpx

from .config import config
from .errors import ConfigurationError, WorkerFailure

logger = logging.getLogger(__name__)

WorkerFn = Callable[[Dict[str, Any]], Any]
AsyncWorkerFn = Callable[[Dict[str, Any]], Awaitable[Any]]


def _is_async_callable(fn: Any) -> bool:
    return inspect.iscoroutinefunction(fn) or inspect.iscoroutinefunction(
        getattr(fn, "__call__", None)
    )


def as_async_worker(fn: WorkerFn) -> AsyncWorkerFn:
    """
    Wrap a sync worker so it runs in a thread; async workers pass through.

    A timeout or cancellation abandons the thread: the stage stops waiting for
    it and any value it returns later is discarded.
    """
    if _is_async_callable(fn):
        return fn

    @functools.wraps(fn)
    async def _run_in_thread(inputs: Dict[str, Any]) -> Any:
        result = await anyio.to_thread.run_sync(
            functools.partial(fn, inputs), abandon_on_cancel=True
        )
        if inspect.isawaitable(result):
            result = await result
        return result

    return _run_in_thread


class HttpWorker:
    """Worker hosted by a remote service."""

    def __init__(self, name: str, url: str, http_client: httpx.AsyncClient) -> None:
        """
        Initialize remote worker.

        Args:
            name: Worker identifier
            url: Endpoint receiving POSTed stage inputs
            http_client: Shared HTTP client
        """
        self.name = name
        self.url = url
        self.http_client = http_client

    def __repr__(self) -> str:
        return f"HttpWorker(name={self.name!r}, url={self.url!r})"

    async def __call__(self, inputs: Dict[str, Any]) -> Mapping[str, Any]:
        """
        POST inputs to the worker endpoint and return its outputs.

        The endpoint answers either {"outputs": {...}} (optionally with
        "status" and "error_message") or a bare mapping of outputs.

        Raises:
            WorkerFailure: On transport errors, HTTP errors or a failed status
        """
        try:
            response = await self.http_client.post(
                self.url, json={"worker": self.name, "inputs": inputs}
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise WorkerFailure(
                f"Worker '{self.name}' failed with HTTP {e.response.status_code}: "
                f"{e.response.text}"
            ) from e
        except httpx.HTTPError as e:
            raise WorkerFailure(f"Worker '{self.name}' request failed: {e}") from e

        body = response.json()
        if isinstance(body, dict) and "outputs" in body:
            if body.get("status") not in (None, "success"):
                raise WorkerFailure(
                    body.get("error_message") or f"Worker '{self.name}' reported {body['status']}"
                )
            return body["outputs"]
        return body


class WorkerRegistry:
    """Maps worker identifiers to callables."""

    def __init__(
        self,
        worker_service_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Initialize worker registry.

        Args:
            worker_service_url: Base URL for workers not registered locally
            http_client: HTTP client for remote workers (created if needed)
        """
        self.worker_service_url = worker_service_url
        self._http_client = http_client
        self._owns_client = http_client is None
        self._workers: Dict[str, AsyncWorkerFn] = {}

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=config.worker_http_timeout_seconds)
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client if this registry created it."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    def register(self, name: str, fn: WorkerFn) -> WorkerFn:
        """
        Register a worker callable.

        Raises:
            ConfigurationError: If the name is already registered
        """
        if name in self._workers:
            raise ConfigurationError(f"Worker '{name}' is already registered")
        self._workers[name] = as_async_worker(fn)
        logger.info(f"Registered worker '{name}'")
        return fn

    def worker(self, name: str) -> Callable[[WorkerFn], WorkerFn]:
        """Decorator form of register()."""

        def decorator(fn: WorkerFn) -> WorkerFn:
            return self.register(name, fn)

        return decorator

    def register_http(self, name: str, url: str) -> HttpWorker:
        """Register a remote worker reached at `url`."""
        remote = HttpWorker(name, url, self.http_client)
        self.register(name, remote)
        return remote

    def unregister(self, name: str) -> None:
        self._workers.pop(name, None)

    def has(self, name: str) -> bool:
        return name in self._workers or self.worker_service_url is not None

    def names(self) -> List[str]:
        return sorted(self._workers)

    def resolve(self, name: str) -> AsyncWorkerFn:
        """
        Resolve a worker identifier.

        Unregistered names fall back to the remote worker service when one
        is configured.

        Raises:
            ConfigurationError: If the worker cannot be resolved
        """
        if name in self._workers:
            return self._workers[name]
        if self.worker_service_url:
            url = f"{self.worker_service_url}/workers/{name}/execute"
            logger.info(f"Resolving worker '{name}' to remote endpoint {url}")
            return self.register_http(name, url)
        raise ConfigurationError(f"No worker registered under '{name}'")
