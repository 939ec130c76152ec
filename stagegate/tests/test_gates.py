"""
Tests for the quality gate evaluator.
"""

from typing import Any

import pytest

from stagegate.service.context import ExecutionContext
from stagegate.service.errors import GatePredicateFailure
from stagegate.service.gates import QualityGateEvaluator
from stagegate.service.models import GatePredicate, QualityGate


@pytest.fixture
def evaluator() -> QualityGateEvaluator:
    return QualityGateEvaluator()


@pytest.fixture
def context() -> ExecutionContext:
    return ExecutionContext(
        {
            "classified": True,
            "severity": "high",
            "coverage": 0.72,
            "tests_added": ["test_a", "test_b"],
            "summary": "Fix race in cache eviction",
        }
    )


def make_gate(*predicates: Any, **kwargs: Any) -> QualityGate:
    return QualityGate(
        name=kwargs.pop("name", "gate"),
        after_stage=kwargs.pop("after_stage", "stage"),
        predicates=predicates,
        **kwargs,
    )


class TestQualityGateEvaluator:
    """Test gate evaluation."""

    def test_all_predicates_pass(
        self, evaluator: QualityGateEvaluator, context: ExecutionContext
    ) -> None:
        gate = make_gate(
            {"key": "classified", "operator": "equals", "value": True},
            {"key": "severity", "operator": "in", "value": ["low", "high"]},
        )

        result = evaluator.evaluate(gate, context)

        assert result.passed
        assert result.failures == []
        assert [p.message for p in result.predicates] == ["ok", "ok"]

    def test_reports_every_predicate(
        self, evaluator: QualityGateEvaluator, context: ExecutionContext
    ) -> None:
        """Two predicates, one false: both states reported, gate failed."""
        gate = make_gate(
            {"key": "classified", "operator": "equals", "value": True},
            {"key": "coverage", "operator": "ge", "value": 0.8},
        )

        result = evaluator.evaluate(gate, context)

        assert not result.passed
        assert [p.passed for p in result.predicates] == [True, False]
        failure = result.failures[0]
        assert failure.key == "coverage"
        assert failure.actual == 0.72
        assert failure.expected == 0.8
        assert "got 0.72" in failure.message

    def test_missing_key_fails(
        self, evaluator: QualityGateEvaluator, context: ExecutionContext
    ) -> None:
        gate = make_gate({"key": "patch"})

        result = evaluator.evaluate(gate, context)

        assert not result.passed
        assert result.predicates[0].message == "'patch' is not in context"

    def test_exists_operator(
        self, evaluator: QualityGateEvaluator, context: ExecutionContext
    ) -> None:
        gate = make_gate(
            {"key": "summary", "operator": "exists"},
            {"key": "patch", "operator": "exists"},
        )

        result = evaluator.evaluate(gate, context)

        assert [p.passed for p in result.predicates] == [True, False]

    @pytest.mark.parametrize(
        "key,operator,value,expected",
        [
            ("classified", "truthy", None, True),
            ("classified", "falsy", None, False),
            ("severity", "not_equals", "low", True),
            ("severity", "not_in", ["low"], True),
            ("coverage", "gt", 0.5, True),
            ("coverage", "lt", 0.5, False),
            ("coverage", "le", 0.72, True),
            ("tests_added", "contains", "test_b", True),
            ("tests_added", "length_ge", 3, False),
            ("tests_added", "length_le", 2, True),
            ("summary", "matches", r"^Fix\b", True),
        ],
    )
    def test_builtin_operators(
        self,
        evaluator: QualityGateEvaluator,
        context: ExecutionContext,
        key: str,
        operator: str,
        value: Any,
        expected: bool,
    ) -> None:
        predicate = GatePredicate(key=key, operator=operator, value=value)
        assert evaluator.evaluate_predicate(predicate, context).passed is expected

    def test_type_error_fails_predicate(
        self, evaluator: QualityGateEvaluator, context: ExecutionContext
    ) -> None:
        predicate = GatePredicate(key="severity", operator="gt", value=3)

        result = evaluator.evaluate_predicate(predicate, context)

        assert not result.passed
        assert result.message.startswith("could not evaluate")

    def test_unknown_operator(
        self, evaluator: QualityGateEvaluator, context: ExecutionContext
    ) -> None:
        predicate = GatePredicate(key="severity", operator="resembles", value="high")

        result = evaluator.evaluate_predicate(predicate, context)

        assert not result.passed
        assert "unknown operator" in result.message

    def test_custom_operator(
        self, evaluator: QualityGateEvaluator, context: ExecutionContext
    ) -> None:
        evaluator.register_operator("startswith", lambda actual, prefix: actual.startswith(prefix))
        predicate = GatePredicate(key="summary", operator="startswith", value="Fix")

        assert evaluator.evaluate_predicate(predicate, context).passed
        assert "startswith" in evaluator.operators

    def test_builtin_operator_cannot_be_replaced(self, evaluator: QualityGateEvaluator) -> None:
        with pytest.raises(ValueError):
            evaluator.register_operator("equals", lambda a, b: True)

    def test_evaluation_does_not_mutate_context(
        self, evaluator: QualityGateEvaluator, context: ExecutionContext
    ) -> None:
        before = context.snapshot()
        evaluator.evaluate(make_gate({"key": "tests_added", "operator": "length_ge", "value": 1}), context)
        assert context.snapshot() == before

    def test_result_does_not_alias_context(
        self, evaluator: QualityGateEvaluator, context: ExecutionContext
    ) -> None:
        """Mutating a gate result leaves the context and the gate untouched."""
        gate = make_gate(
            {"key": "tests_added", "operator": "contains", "value": ["test_a"]},
        )

        result = evaluator.evaluate(gate, context)
        result.predicates[0].actual.append("test_z")
        result.predicates[0].expected.append("test_y")

        assert context["tests_added"] == ["test_a", "test_b"]
        assert gate.predicates[0].value == ["test_a"]

    def test_raise_for_failure(
        self, evaluator: QualityGateEvaluator, context: ExecutionContext
    ) -> None:
        gate = make_gate(
            {"key": "coverage", "operator": "ge", "value": 0.8},
            {"key": "severity", "operator": "equals", "value": "low"},
            name="quality",
        )
        result = evaluator.evaluate(gate, context)

        with pytest.raises(GatePredicateFailure) as exc_info:
            result.raise_for_failure()

        assert exc_info.value.gate == "quality"
        assert len(exc_info.value.failures) == 2
