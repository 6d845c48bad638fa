"""ModelEvaluator: evaluates a bound model in dependency order.

Structural problems (syntax, resolution, cycles, version) are raised by
:meth:`ModelEvaluator.load` before anything is computed. Computational
problems become in-band :class:`ErrorValue` results that propagate through
dependents like spreadsheet errors.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Any

from forgecalc._model import Model, ScalarNode, TableNode
from forgecalc.calc._ast import (
    ArrayLiteral,
    BinaryOp,
    FunctionCall,
    LambdaCall,
    LambdaDef,
    LetBinding,
    Literal,
    Node,
    Reference,
    UnaryOp,
)
from forgecalc.calc._errors import EvaluationError, FormulaSyntaxError, ModelError
from forgecalc.calc._functions import FunctionRegistry, power
from forgecalc.calc._graph import DependencyGraph
from forgecalc.calc._protocol import Environment, NodeDelta, RecalcResult
from forgecalc.calc._resolver import BoundFormula, Resolver
from forgecalc.calc._scope import EMPTY_SCOPE, LambdaValue, Scope
from forgecalc.calc._values import (
    ArrayValue,
    DateSerial,
    ErrorSignal,
    ErrorValue,
    compare_values,
    first_error,
    to_number,
    to_text,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Operators
# ---------------------------------------------------------------------------


def _arith(op: str, left: Any, right: Any) -> Any:
    """Evaluate an arithmetic operation on two scalars."""
    err = first_error(left, right)
    if err is not None:
        return err
    try:
        x = to_number(left)
        y = to_number(right)
    except ErrorSignal as e:
        return e.error
    if op == "+":
        result = x + y
    elif op == "-":
        result = x - y
    elif op == "*":
        result = x * y
    elif op == "/":
        if y == 0:
            return ErrorValue.of("#DIV/0!", "division by zero")
        result = x / y
    else:
        return power(x, y)
    if not math.isfinite(result):
        return ErrorValue.of("#NUM!", "result is too large")
    return result


def _concat(left: Any, right: Any) -> Any:
    try:
        return to_text(left) + to_text(right)
    except ErrorSignal as e:
        return e.error


_COMPARISONS: dict[str, Callable[[int], bool]] = {
    "=": lambda c: c == 0,
    "<>": lambda c: c != 0,
    "<": lambda c: c < 0,
    ">": lambda c: c > 0,
    "<=": lambda c: c <= 0,
    ">=": lambda c: c >= 0,
}


def _compare(op: str, left: Any, right: Any) -> Any:
    """Evaluate a comparison: numbers < text < booleans, text case-insensitive."""
    try:
        return _COMPARISONS[op](compare_values(left, right))
    except ErrorSignal as e:
        return e.error


def _scalar_op(op: str) -> Callable[[Any, Any], Any]:
    if op == "&":
        return _concat
    if op in _COMPARISONS:
        return lambda a, b: _compare(op, a, b)
    return lambda a, b: _arith(op, a, b)


def _element(value: Any) -> Any:
    """Operand inside an array: nested arrays and lambdas are not values."""
    if isinstance(value, (ArrayValue, LambdaValue)):
        return ErrorValue.of("#VALUE!", "array element must be a single value")
    return value


def _broadcast(fn: Callable[[Any, Any], Any], left: Any, right: Any) -> Any:
    """Apply a scalar operator element-wise over equal shapes or array with scalar."""
    if isinstance(left, ArrayValue) and len(left.values) == 1 and not isinstance(right, ArrayValue):
        left = left.values[0]
    if isinstance(right, ArrayValue) and len(right.values) == 1 and not isinstance(left, ArrayValue):
        right = right.values[0]
    if isinstance(left, ArrayValue) and isinstance(right, ArrayValue):
        if left.shape != right.shape:
            return ErrorValue.of(
                "#VALUE!", f"array shapes differ: {left.shape} and {right.shape}"
            )
        values = [fn(_element(a), _element(b)) for a, b in zip(left.values, right.values)]
        return ArrayValue(values=values, n_rows=left.n_rows, n_cols=left.n_cols)
    if isinstance(left, ArrayValue):
        return left.map(lambda a: fn(_element(a), right))
    if isinstance(right, ArrayValue):
        return right.map(lambda b: fn(left, _element(b)))
    return fn(left, right)


def _unary(op: str, value: Any) -> Any:
    if op == "+":
        return value

    def apply(v: Any) -> Any:
        if isinstance(v, ErrorValue):
            return v
        try:
            x = to_number(v)
        except ErrorSignal as e:
            return e.error
        return -x if op == "-" else x / 100

    if isinstance(value, ArrayValue):
        return value.map(lambda v: apply(_element(v)))
    return apply(value)


def _normalize(value: Any) -> Any:
    """Canonical value representation: one float type for numbers."""
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, DateSerial):
        return value
    if isinstance(value, (int, float)):
        num = float(value)
        if not math.isfinite(num):
            return ErrorValue.of("#NUM!", "result is not a finite number")
        return num
    if isinstance(value, ArrayValue):
        return value.map(_normalize)
    return value


def _cell_value(value: Any) -> Any:
    """A table cell holds exactly one scalar value."""
    if isinstance(value, ArrayValue):
        if len(value.values) == 1:
            return _cell_value(value.values[0])
        return ErrorValue.of("#VALUE!", "formula produced an array in a table cell")
    if isinstance(value, LambdaValue):
        return ErrorValue.of("#VALUE!", "formula produced a LAMBDA in a table cell")
    return 0.0 if value is None else value


def _values_differ(a: Any, b: Any, tolerance: float) -> bool:
    """Check if two values differ beyond tolerance."""
    if isinstance(a, ArrayValue) and isinstance(b, ArrayValue):
        if a.shape != b.shape:
            return True
        return any(_values_differ(x, y, tolerance) for x, y in zip(a.values, b.values))
    if isinstance(a, bool) or isinstance(b, bool):
        return a != b
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return abs(float(a) - float(b)) > tolerance
    return a != b


# ---------------------------------------------------------------------------
# Evaluation context
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _Column:
    """Row layout of a table column identity."""

    table: str
    row_count: int


class _Context:
    """Where a formula is being evaluated: its node and, in tables, its row.

    ``own`` holds the rows of the column being evaluated computed so far.
    """

    __slots__ = ("env", "owner", "row", "own")

    def __init__(self, env: Mapping[str, Any], owner: str, row: int | None = None, own: list[Any] | None = None) -> None:
        self.env = env
        self.owner = owner
        self.row = row
        self.own = own

    def at_row(self, row: int | None) -> _Context:
        return _Context(self.env, self.owner, row, self.own)


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------


class ModelEvaluator:
    """Evaluates forge models.

    Usage::

        evaluator = ModelEvaluator()
        evaluator.load(model)
        env = evaluator.calculate()
        bull = evaluator.calculate(scenario="bull")
        recalc = evaluator.recalculate({"price": 110.0})

    With ``max_workers > 1`` each dependency wave is evaluated on a thread
    pool and committed in declaration order, so results are identical to a
    serial run.
    """

    def __init__(self, max_workers: int = 1, registry: FunctionRegistry | None = None) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.max_workers = max_workers
        self._functions = registry if registry is not None else FunctionRegistry()
        self._model: Model | None = None
        self._declared: list[str] = []
        self._literals: dict[str, Any] = {}
        self._scalar_literals: set[str] = set()
        self._bound: dict[str, BoundFormula] = {}
        self._formulas: dict[str, str] = {}
        self._columns: dict[str, _Column] = {}
        self._readers: dict[str, list[str]] = {}
        self._graph = DependencyGraph()
        self._order: list[str] = []
        self._waves: list[list[str]] = []
        self._last: Environment | None = None
        self._loaded = False

    @property
    def graph(self) -> DependencyGraph:
        return self._graph

    @property
    def order(self) -> list[str]:
        """Formula node identities in evaluation order."""
        return list(self._order)

    def load(self, model: Model) -> None:
        """Check versions, bind every formula and build the dependency graph.

        Raises VersionError, FormulaSyntaxError, ResolutionError or
        CycleError; nothing is evaluated.
        """
        model.check_version()
        self._model = model
        self._declared = []
        self._literals = {}
        self._scalar_literals = set()
        self._bound = {}
        self._formulas = {}
        self._columns = {}
        self._readers = {}
        self._last = None
        self._loaded = False

        pending: list[tuple[str, Resolver, Any, str]] = []
        self._collect(model, Resolver(model, registry=self._functions), pending)

        for identity, resolver, formula, local_path in pending:
            try:
                self._bound[identity] = resolver.bind(formula, local_path)
            except FormulaSyntaxError as e:
                raise e.with_node(identity) from e
            self._formulas[identity] = formula.text

        self._graph = DependencyGraph.from_bindings(self._bound.values())
        self._order = self._graph.topological_order()
        self._waves = self._graph.levels()
        for bound in self._bound.values():
            for dep in bound.dependencies:
                if dep not in self._graph:
                    self._readers.setdefault(dep, []).append(bound.owner)
        self._loaded = True
        logger.info(
            "Loaded model: %d formula nodes, %d literals, %d waves",
            len(self._order), len(self._literals), len(self._waves),
        )

    def _collect(
        self,
        model: Model,
        resolver: Resolver,
        pending: list[tuple[str, Resolver, Any, str]],
    ) -> None:
        """Register the nodes of *model* (then its includes) in declaration order."""
        prefix = resolver.prefix
        for path, node in model.nodes.items():
            if isinstance(node, TableNode):
                for column in node.columns:
                    local = node.column_path(column.name)
                    identity = prefix + local
                    self._declared.append(identity)
                    self._columns[identity] = _Column(prefix + node.path, node.row_count)
                    if column.formula is not None:
                        pending.append((identity, resolver, column.formula, local))
                    else:
                        self._literals[identity] = ArrayValue.column_vector(column.values or ())
            elif isinstance(node, ScalarNode):
                identity = prefix + path
                self._declared.append(identity)
                if node.formula is not None:
                    pending.append((identity, resolver, node.formula, path))
                else:
                    self._literals[identity] = node.value
                    if not isinstance(node.value, ArrayValue):
                        self._scalar_literals.add(identity)
        for name, include in model.includes.items():
            child = Resolver(include, f"{prefix}{name}.", self._functions)
            self._collect(include, child, pending)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def calculate(self, scenario: str | None = None) -> Environment:
        """Evaluate every node; *scenario* applies the model's named overrides."""
        if not self._loaded or self._model is None:
            raise RuntimeError("Call load() before calculate()")
        overrides: Mapping[str, float] = {}
        if scenario is not None:
            if scenario not in self._model.scenarios:
                raise ModelError(f"Unknown scenario {scenario!r}")
            overrides = self._check_overrides(self._model.scenarios[scenario])
        env = self._run(overrides, baseline=None, affected=None)
        self._last = env
        return env

    def recalculate(
        self,
        overrides: dict[str, float],
        tolerance: float = 1e-10,
    ) -> RecalcResult:
        """Override literal scalars and recompute affected formulas.

        The previous :meth:`calculate` result is the baseline; formula nodes
        that do not depend on an overridden literal keep their values.
        """
        if not self._loaded:
            raise RuntimeError("Call load() before recalculate()")
        values = self._check_overrides(overrides)
        baseline = self._last if self._last is not None else self.calculate()

        affected = self._graph.affected_nodes(values, self._readers)
        env = self._run(values, baseline=baseline, affected=set(affected))

        deltas: list[NodeDelta] = []
        propagated = 0
        for identity in affected:
            old_val = baseline.get(identity)
            new_val = env.get(identity)
            if _values_differ(old_val, new_val, tolerance):
                propagated += 1
                deltas.append(NodeDelta(
                    path=identity,
                    old_value=old_val,
                    new_value=new_val,
                    formula=self._formulas.get(identity),
                ))

        self._last = env
        return RecalcResult(
            overrides=dict(values),
            deltas=tuple(deltas),
            total_formula_nodes=len(self._order),
            propagated_nodes=propagated,
            max_chain_depth=self._graph.max_depth(values, self._readers),
        )

    def _check_overrides(self, overrides: Mapping[str, Any]) -> dict[str, float]:
        checked: dict[str, float] = {}
        for path, value in overrides.items():
            if path not in self._scalar_literals:
                if path in self._bound:
                    raise ModelError("Cannot override a formula node", node=path)
                raise ModelError("Override target is not a literal scalar", node=path)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ModelError("Override value must be a number", node=path)
            checked[path] = float(value)
        return checked

    def _run(
        self,
        overrides: Mapping[str, float],
        baseline: Environment | None,
        affected: set[str] | None,
    ) -> Environment:
        env = Environment(self._declared)
        for identity in self._declared:
            if identity in overrides:
                env.set(identity, overrides[identity])
            elif identity in self._literals:
                if baseline is not None:
                    env.set(identity, baseline[identity])
                else:
                    env.set(identity, self._literals[identity])

        def needs_eval(identity: str) -> bool:
            return baseline is None or affected is None or identity in affected

        if self.max_workers == 1:
            for identity in self._order:
                if needs_eval(identity):
                    env.set(identity, self._evaluate_node(identity, env))
                else:
                    env.set(identity, baseline[identity])  # type: ignore[index]
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                for wave in self._waves:
                    todo = [n for n in wave if needs_eval(n)]
                    results = dict(zip(todo, pool.map(lambda n: self._evaluate_node(n, env), todo)))
                    # Commit in declaration order
                    for identity in wave:
                        env.set(identity, results[identity] if identity in results else baseline[identity])  # type: ignore[index]

        n_errors = len(env.errors())
        logger.info(
            "Evaluated %d formula nodes (%d with errors)",
            len(self._order) if affected is None else len(affected), n_errors,
        )
        return env

    # ------------------------------------------------------------------
    # Node evaluation
    # ------------------------------------------------------------------

    def _evaluate_node(self, identity: str, env: Mapping[str, Any]) -> Any:
        """Evaluate one formula node against the committed environment."""
        bound = self._bound[identity]
        column = self._columns.get(identity)
        if column is None:
            value = _normalize(self._eval(bound.ast, _Context(env, identity), EMPTY_SCOPE))
            if isinstance(value, LambdaValue) and value.name is None:
                value = replace(value, name=identity)
            logger.debug("%s = %r", identity, value)
            return 0.0 if value is None else value

        rows: list[Any] = []
        ctx = _Context(env, identity, own=rows)
        for i in range(column.row_count):
            value = self._eval(bound.ast, ctx.at_row(i), EMPTY_SCOPE)
            rows.append(_cell_value(_normalize(value)))
        logger.debug("%s = %r", identity, rows)
        return ArrayValue.column_vector(rows)

    def _eval(self, node: Node, ctx: _Context, scope: Scope) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Reference):
            return self._read(node, ctx, scope)
        if isinstance(node, BinaryOp):
            left = self._eval(node.left, ctx, scope)
            right = self._eval(node.right, ctx, scope)
            return _broadcast(_scalar_op(node.op), left, right)
        if isinstance(node, UnaryOp):
            return _unary(node.op, self._eval(node.operand, ctx, scope))
        if isinstance(node, FunctionCall):
            args = [self._eval(arg, ctx, scope) for arg in node.args]
            return self._call(node.name, args)
        if isinstance(node, ArrayLiteral):
            rows = [[_element(self._eval(item, ctx, scope)) for item in row] for row in node.rows]
            return ArrayValue.from_rows(rows)
        if isinstance(node, LetBinding):
            for name, value_node in zip(node.names, node.values):
                value = self._eval(value_node, ctx, scope)
                if isinstance(value, LambdaValue) and value.name is None:
                    value = replace(value, name=name)
                scope = scope.child({name: value})
            return self._eval(node.body, ctx, scope)
        if isinstance(node, LambdaDef):
            return LambdaValue(node.params, node.body, scope, ctx.row)
        if isinstance(node, LambdaCall):
            return self._call_lambda(node, ctx, scope)
        raise TypeError(f"Unknown AST node: {type(node).__name__}")

    def _read(self, node: Reference, ctx: _Context, scope: Scope) -> Any:
        target = node.target
        if target is None:
            raise EvaluationError(f"Unbound reference {node.path!r}", node=ctx.owner)
        kind = target.kind
        if kind == "local":
            return scope.lookup(target.key)
        if kind in ("scalar", "column"):
            return ctx.env[target.key]
        if kind == "table":
            columns = [ctx.env[c] for c in target.columns]
            n_rows = columns[0].n_rows if columns else 0
            values = [col.values[r] for r in range(n_rows) for col in columns]
            return ArrayValue(values=values, n_rows=n_rows, n_cols=len(columns))

        # Row-relative sibling column
        if ctx.row is None:
            raise EvaluationError(f"Row reference {node.path!r} outside a table row", node=ctx.owner)
        row = ctx.row + (node.offset or 0)
        n_rows = self._columns[target.key].row_count
        if row < 0 or row >= n_rows:
            return ErrorValue.of("#REF!", f"row {row + 1} of {node.path} is outside the table")
        if target.key == ctx.owner:
            if row >= ctx.row:
                raise EvaluationError(
                    f"Row {ctx.row + 1} reads row {row + 1} of its own column before it is computed",
                    node=ctx.owner,
                )
            return ctx.own[row]  # type: ignore[index]
        return ctx.env[target.key].values[row]

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    def _call(self, name: str, args: list[Any]) -> Any:
        """Dispatch a builtin: errors propagate unless the function handles them."""
        spec = self._functions.spec(name)
        if spec is None:
            return ErrorValue.of("#NAME?", f"unknown function {name}")
        if not spec.error_aware:
            err = first_error(*args)
            if err is not None:
                return err
        try:
            return _normalize(spec.func(args))
        except ErrorSignal as e:
            return e.error
        except ZeroDivisionError as e:
            logger.debug("Error evaluating %s: %s", name, e)
            return ErrorValue.of("#DIV/0!", f"{name}: {e}")
        except (ValueError, OverflowError) as e:
            logger.debug("Error evaluating %s: %s", name, e)
            return ErrorValue.of("#NUM!", f"{name}: {e}")
        except TypeError as e:
            logger.debug("Error evaluating %s: %s", name, e)
            return ErrorValue.of("#VALUE!", f"{name}: {e}")

    def _call_lambda(self, node: LambdaCall, ctx: _Context, scope: Scope) -> Any:
        target = self._eval(node.target, ctx, scope)
        if isinstance(target, ErrorValue):
            return target
        if not isinstance(target, LambdaValue):
            return ErrorValue.of("#VALUE!", "called value is not a LAMBDA")
        args = [self._eval(arg, ctx, scope) for arg in node.args]
        if len(args) != target.arity:
            return ErrorValue.of(
                "#VALUE!", f"LAMBDA takes {target.arity} arguments, got {len(args)}"
            )
        body_ctx = ctx if target.row is None or target.row == ctx.row else ctx.at_row(target.row)
        return self._eval(target.body, body_ctx, target.bind(args))


def evaluate(model: Model, scenario: str | None = None, max_workers: int = 1) -> Environment:
    """Load and evaluate *model* in one call."""
    evaluator = ModelEvaluator(max_workers=max_workers)
    evaluator.load(model)
    return evaluator.calculate(scenario)
