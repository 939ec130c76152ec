"""
Quality gate evaluation.

Evaluation is pure: it reads the execution context and returns a result
listing every predicate, so a failed gate reports all of its failing checks
rather than the first one.
"""

import copy
import logging
import operator
import re
from typing import Any, Callable, Dict, List

from .context import ExecutionContext
from .models import GatePredicate, PredicateResult, QualityGate, QualityGateResult

logger = logging.getLogger(__name__)

PredicateFn = Callable[[Any, Any], bool]


def _matches(actual: Any, pattern: Any) -> bool:
    return re.search(str(pattern), str(actual)) is not None


BUILTIN_OPERATORS: Dict[str, PredicateFn] = {
    "truthy": lambda actual, _: bool(actual),
    "falsy": lambda actual, _: not actual,
    "equals": operator.eq,
    "not_equals": operator.ne,
    "in": lambda actual, expected: actual in expected,
    "not_in": lambda actual, expected: actual not in expected,
    "gt": operator.gt,
    "ge": operator.ge,
    "lt": operator.lt,
    "le": operator.le,
    "contains": lambda actual, expected: expected in actual,
    "matches": _matches,
    "length_ge": lambda actual, expected: len(actual) >= expected,
    "length_le": lambda actual, expected: len(actual) <= expected,
}


class QualityGateEvaluator:
    """Evaluates quality gates against an execution context."""

    def __init__(self) -> None:
        self._operators: Dict[str, PredicateFn] = dict(BUILTIN_OPERATORS)

    @property
    def operators(self) -> List[str]:
        return sorted(self._operators) + ["exists"]

    def register_operator(self, name: str, fn: PredicateFn) -> None:
        """
        Register a custom predicate operator.

        Args:
            name: Operator name used in manifests
            fn: Callable receiving (actual, expected) and returning a bool
        """
        if name == "exists" or name in BUILTIN_OPERATORS:
            raise ValueError(f"Operator '{name}' is built in and cannot be replaced")
        self._operators[name] = fn

    def evaluate_predicate(
        self, predicate: GatePredicate, context: ExecutionContext
    ) -> PredicateResult:
        present = predicate.key in context
        # a copy; results never alias the context
        actual = context.get(predicate.key)

        def result(passed: bool, message: str) -> PredicateResult:
            return PredicateResult(
                name=predicate.name,
                key=predicate.key,
                operator=predicate.operator,
                expected=copy.deepcopy(predicate.value),
                actual=actual,
                passed=passed,
                message=message,
            )

        if predicate.operator == "exists":
            return result(present, "present" if present else f"'{predicate.key}' is not in context")
        if not present:
            return result(False, f"'{predicate.key}' is not in context")

        check = self._operators.get(predicate.operator)
        if check is None:
            return result(False, f"unknown operator '{predicate.operator}'")

        try:
            passed = bool(check(actual, predicate.value))
        except (TypeError, ValueError, re.error) as e:
            return result(False, f"could not evaluate: {e}")

        if passed:
            return result(True, "ok")
        return result(
            False,
            f"expected {predicate.key} {predicate.operator} {predicate.value!r}, got {actual!r}",
        )

    def evaluate(self, gate: QualityGate, context: ExecutionContext) -> QualityGateResult:
        """
        Evaluate every predicate of a gate.

        Args:
            gate: Gate to evaluate
            context: Fully merged context of all preceding stages

        Returns:
            Gate result; passed only if every predicate holds
        """
        results = [self.evaluate_predicate(p, context) for p in gate.predicates]
        passed = all(r.passed for r in results)

        if passed:
            logger.info(f"Quality gate '{gate.name}' passed ({len(results)} predicates)")
        else:
            failed = [r.name for r in results if not r.passed]
            logger.warning(f"Quality gate '{gate.name}' failed: {failed}")

        return QualityGateResult(
            gate=gate.name,
            after_stage=gate.after_stage,
            passed=passed,
            predicates=results,
        )
