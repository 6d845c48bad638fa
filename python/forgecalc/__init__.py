"""forgecalc - deterministic formula engine for forge financial models.

Usage::

    from forgecalc import Model, evaluate

    model = Model.from_mapping({
        "price": 99,
        "units_sold": 1000,
        "revenue": "=price * units_sold",
    })
    env = evaluate(model)
    env["revenue"]  # 99000.0
"""

# The engine is imported before the document model: the model imports
# calc submodules, and calc's evaluator imports the model.
from forgecalc.calc import (  # isort: skip
    ArrayValue,
    CalcError,
    CycleError,
    DateSerial,
    Environment,
    ErrorValue,
    EvaluationError,
    FormulaSyntaxError,
    FunctionRegistry,
    LambdaValue,
    ModelError,
    ModelEvaluator,
    NodeError,
    ResolutionError,
    VersionError,
    evaluate,
)
from forgecalc._conformance import TestCase, TestResult, run_conformance, summarize
from forgecalc._model import Column, Formula, Model, ScalarNode, TableNode

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "ArrayValue",
    "CalcError",
    "Column",
    "CycleError",
    "DateSerial",
    "Environment",
    "ErrorValue",
    "EvaluationError",
    "Formula",
    "FormulaSyntaxError",
    "FunctionRegistry",
    "LambdaValue",
    "Model",
    "ModelError",
    "ModelEvaluator",
    "NodeError",
    "ResolutionError",
    "ScalarNode",
    "TableNode",
    "TestCase",
    "TestResult",
    "VersionError",
    "evaluate",
    "run_conformance",
    "summarize",
]
