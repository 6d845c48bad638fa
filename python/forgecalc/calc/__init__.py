"""forgecalc.calc - Formula evaluation engine for forge models."""

from forgecalc.calc._errors import (
    CalcError,
    CycleError,
    EvaluationError,
    FormulaSyntaxError,
    ModelError,
    ResolutionError,
    VersionError,
)
from forgecalc.calc._evaluator import ModelEvaluator, evaluate
from forgecalc.calc._functions import FUNCTION_CATEGORIES, FunctionRegistry, FunctionSpec, is_supported
from forgecalc.calc._graph import DependencyGraph
from forgecalc.calc._parser import FormulaParser, all_references, parse_functions
from forgecalc.calc._protocol import CalcEngine, Environment, NodeDelta, NodeError, RecalcResult
from forgecalc.calc._resolver import BoundFormula, Resolver
from forgecalc.calc._scope import LambdaValue, Scope
from forgecalc.calc._values import ArrayValue, DateSerial, ErrorValue

__all__ = [
    "ArrayValue",
    "BoundFormula",
    "CalcEngine",
    "CalcError",
    "CycleError",
    "DateSerial",
    "DependencyGraph",
    "Environment",
    "ErrorValue",
    "EvaluationError",
    "FUNCTION_CATEGORIES",
    "FormulaParser",
    "FormulaSyntaxError",
    "FunctionRegistry",
    "FunctionSpec",
    "LambdaValue",
    "ModelError",
    "ModelEvaluator",
    "NodeDelta",
    "NodeError",
    "RecalcResult",
    "ResolutionError",
    "Resolver",
    "Scope",
    "VersionError",
    "all_references",
    "evaluate",
    "is_supported",
    "parse_functions",
]
