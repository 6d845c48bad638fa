"""Conformance runner: checks declared ``expected`` values against the engine.

A scalar that declares both a formula and an ``expected`` number is a test
case. The model is evaluated once and every case is reported as passed,
failed or skipped.
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from dataclasses import dataclass
from typing import Any

from forgecalc._model import Model, ScalarNode
from forgecalc.calc._evaluator import ModelEvaluator
from forgecalc.calc._values import ErrorValue, is_number

logger = logging.getLogger(__name__)

PASSED = "passed"
FAILED = "failed"
SKIPPED = "skipped"


@dataclass(frozen=True)
class TestCase:
    """A formula scalar with a declared expected value."""

    __test__ = False  # not a pytest test class

    name: str
    formula: str
    expected: float


@dataclass(frozen=True)
class TestResult:
    __test__ = False

    name: str
    status: str
    formula: str = ""
    expected: float | None = None
    actual: Any = None
    error: str | None = None
    reason: str | None = None

    @property
    def passed(self) -> bool:
        return self.status == PASSED

    @property
    def failed(self) -> bool:
        return self.status == FAILED


def extract_test_cases(model: Model) -> list[TestCase]:
    """Collect test cases from the model's scalars, in declaration order."""
    cases: list[TestCase] = []
    for node in model.nodes.values():
        if not isinstance(node, ScalarNode) or node.formula is None:
            continue
        expected = node.metadata.get("expected")
        if isinstance(expected, bool) or not isinstance(expected, (int, float)):
            continue
        cases.append(TestCase(node.path, node.formula.text, float(expected)))
    return cases


def run_conformance(model: Model, tolerance: float = 1e-9) -> list[TestResult]:
    """Evaluate *model* and compare every test case with its expected value.

    A case passes when ``|actual - expected| <= tolerance``. An in-band
    error fails the case; a non-numeric result skips it.
    """
    cases = extract_test_cases(model)
    evaluator = ModelEvaluator()
    evaluator.load(model)
    env = evaluator.calculate()

    results: list[TestResult] = []
    for case in cases:
        actual = env[case.name]
        if isinstance(actual, ErrorValue):
            results.append(TestResult(
                case.name, FAILED, case.formula, case.expected,
                actual=actual.code, error=actual.message,
            ))
        elif isinstance(actual, bool) or not is_number(actual):
            results.append(TestResult(
                case.name, SKIPPED, case.formula, case.expected,
                actual=actual, reason=f"non-numeric result {actual!r}",
            ))
        elif math.isclose(actual, case.expected, rel_tol=0.0, abs_tol=tolerance):
            results.append(TestResult(case.name, PASSED, case.formula, case.expected, actual=float(actual)))
        else:
            results.append(TestResult(
                case.name, FAILED, case.formula, case.expected, actual=float(actual),
                error=f"expected {case.expected!r}, got {float(actual)!r}",
            ))

    counts = summarize(results)
    logger.info(
        "Conformance: %d passed, %d failed, %d skipped",
        counts[PASSED], counts[FAILED], counts[SKIPPED],
    )
    return results


def summarize(results: list[TestResult]) -> dict[str, int]:
    """Count results by status."""
    counts = Counter(r.status for r in results)
    return {status: counts.get(status, 0) for status in (PASSED, FAILED, SKIPPED)}
