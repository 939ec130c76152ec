"""
Tests for the append-only execution context and the cancellation token.
"""

import threading

import anyio
import pytest

from stagegate.service.cancellation import CancellationToken
from stagegate.service.context import ARGUMENTS_PRODUCER, ExecutionContext
from stagegate.service.errors import ContextConflictError


class TestExecutionContext:
    """Test ExecutionContext."""

    def test_seeded_from_arguments(self) -> None:
        context = ExecutionContext({"topic": "caching", "limit": 3})

        assert "topic" in context
        assert context["limit"] == 3
        assert len(context) == 2
        assert context.producer_of("topic") == ARGUMENTS_PRODUCER

    def test_empty_context(self) -> None:
        context = ExecutionContext()
        assert len(context) == 0
        assert context.get("missing", "default") == "default"
        assert context.producer_of("missing") is None

    def test_merge_records_producer(self) -> None:
        context = ExecutionContext({"topic": "caching"})
        context.merge("research", {"notes": ["a", "b"]})

        assert context.keys() == ["topic", "notes"]
        assert context.producers() == {"topic": "arguments", "notes": "research"}

    def test_merge_never_overwrites(self) -> None:
        context = ExecutionContext({"topic": "caching"})
        context.merge("research", {"notes": "first"})

        with pytest.raises(ContextConflictError) as exc_info:
            context.merge("rewrite", {"notes": "second"})

        assert exc_info.value.key == "notes"
        assert exc_info.value.existing_producer == "research"
        assert exc_info.value.attempted_by == "rewrite"
        assert context["notes"] == "first"

    def test_merge_is_all_or_nothing(self) -> None:
        context = ExecutionContext({"topic": "caching"})

        with pytest.raises(ContextConflictError):
            context.merge("stage", {"fresh": 1, "topic": "other"})

        assert "fresh" not in context
        assert context["topic"] == "caching"

    def test_missing_preserves_order(self) -> None:
        context = ExecutionContext({"b": 1})
        assert context.missing(["c", "b", "a"]) == ["c", "a"]

    def test_values_are_isolated(self) -> None:
        """Neither the producer nor a reader can mutate stored values."""
        outputs = {"items": [1, 2]}
        context = ExecutionContext()
        context.merge("stage", outputs)

        outputs["items"].append(3)
        selected = context.select(["items"])
        selected["items"].append(4)
        snapshot = context.snapshot()
        snapshot["items"].append(5)
        context.get("items").append(6)
        context["items"].append(7)

        assert context["items"] == [1, 2]

    def test_uncopyable_value_writes_nothing(self) -> None:
        context = ExecutionContext()

        with pytest.raises(TypeError):
            context.merge("stage", {"ok": 1, "handle": threading.Lock()})

        assert len(context) == 0
        assert context.producers() == {}


class TestCancellationToken:
    """Test CancellationToken."""

    def test_cancel_once(self) -> None:
        token = CancellationToken()
        assert not token.cancelled

        token.cancel("first")
        token.cancel("second")

        assert token.cancelled
        assert token.reason == "first"

    @pytest.mark.asyncio
    async def test_cancel_interrupts_bound_scope(self) -> None:
        token = CancellationToken()

        async def cancel_soon() -> None:
            await anyio.sleep(0.01)
            token.cancel("stop")

        async with anyio.create_task_group() as tg:
            tg.start_soon(cancel_soon)
            with anyio.CancelScope() as scope:
                with token.bind(scope):
                    await anyio.sleep(5)

        assert scope.cancelled_caught

    @pytest.mark.asyncio
    async def test_bind_after_cancel(self) -> None:
        token = CancellationToken()
        token.cancel()

        with anyio.CancelScope() as scope:
            with token.bind(scope):
                await anyio.sleep(5)

        assert scope.cancelled_caught
