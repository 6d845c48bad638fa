"""CalcEngine protocol, the Environment, and result dataclasses."""

from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from forgecalc.calc._errors import EvaluationError
from forgecalc.calc._values import ArrayValue, ErrorValue

if TYPE_CHECKING:
    from forgecalc._model import Model


@dataclass(frozen=True)
class NodeError:
    """An in-band error value held by a node (or by one row of a column)."""

    path: str
    kind: str  # "TypeError" or "ValueError"
    code: str  # e.g. "#DIV/0!"
    message: str
    row: int | None = None  # 1-based row for column cells


class Environment(Mapping[str, Any]):
    """Write-once mapping of node identity -> computed value.

    Iteration follows declaration order regardless of evaluation order.
    Scalars map to a single value; table columns map to an ``n x 1``
    :class:`ArrayValue`.
    """

    __slots__ = ("_order", "_values")

    def __init__(self, order: Sequence[str]) -> None:
        self._order = list(order)
        self._values: dict[str, Any] = {}

    def set(self, identity: str, value: Any) -> None:
        if identity in self._values:
            raise EvaluationError("Value already computed in this run", node=identity)
        self._values[identity] = value

    def __getitem__(self, identity: str) -> Any:
        return self._values[identity]

    def __iter__(self) -> Iterator[str]:
        return (k for k in self._order if k in self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"Environment({len(self._values)} values)"

    def errors(self) -> list[NodeError]:
        """All in-band errors, in declaration order."""
        found: list[NodeError] = []
        for identity in self:
            value = self._values[identity]
            if isinstance(value, ErrorValue):
                found.append(NodeError(identity, value.kind, value.code, value.message))
            elif isinstance(value, ArrayValue):
                for i, cell in enumerate(value.values, start=1):
                    if isinstance(cell, ErrorValue):
                        found.append(NodeError(identity, cell.kind, cell.code, cell.message, row=i))
        return found

    def to_dict(self) -> dict[str, Any]:
        """Plain-data view: arrays become lists, errors their codes."""

        def plain(value: Any) -> Any:
            if isinstance(value, ErrorValue):
                return value.code
            if isinstance(value, ArrayValue):
                return [plain(v) for v in value.values]
            if isinstance(value, (bool, str)) or value is None:
                return value
            if isinstance(value, float):
                return float(value)
            return repr(value)

        return {identity: plain(self._values[identity]) for identity in self}


@dataclass(frozen=True)
class NodeDelta:
    """A single node's value change from recalculation."""

    path: str
    old_value: Any
    new_value: Any
    formula: str | None = None  # the formula that produced new_value


@dataclass(frozen=True)
class RecalcResult:
    """Result of an override-driven recalculation."""

    overrides: dict[str, float]  # scalar path -> new input value
    deltas: tuple[NodeDelta, ...]  # nodes that changed
    total_formula_nodes: int = 0
    propagated_nodes: int = 0  # formula nodes whose value actually changed
    max_chain_depth: int = 0  # longest dependency chain from overridden inputs

    @property
    def propagation_ratio(self) -> float:
        if self.total_formula_nodes == 0:
            return 0.0
        return self.propagated_nodes / self.total_formula_nodes


@runtime_checkable
class CalcEngine(Protocol):
    """Protocol for model evaluation engines."""

    def load(self, model: Model) -> None:
        """Check versions, bind formulas, build the dependency graph."""
        ...

    def calculate(self, scenario: str | None = None) -> Environment:
        """Evaluate all nodes in topological order.

        Returns the Environment of every declared node.
        """
        ...

    def recalculate(
        self,
        overrides: dict[str, float],
        tolerance: float = 1e-10,
    ) -> RecalcResult:
        """Override literal scalars and recompute affected formulas.

        Returns a RecalcResult describing which nodes changed.
        """
        ...
