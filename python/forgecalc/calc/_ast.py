"""Formula AST node types.

Every node carries ``pos``, the character offset of its first token in the
full formula text (including the leading ``=``). Nodes are immutable; the
resolver produces a bound copy in which each :class:`Reference` carries a
:class:`Target`.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any, Union


@dataclass(frozen=True)
class Target:
    """What a bound reference reads at evaluation time.

    ``kind`` is one of:

    - ``local``: a LET name or LAMBDA parameter (``key`` is the name)
    - ``scalar``: a scalar node (``key`` is its identity)
    - ``row``: a sibling column of the enclosing table, read per row
    - ``column``: a whole table column as an ``n x 1`` array
    - ``table``: a whole table as an ``n x k`` array (``columns`` lists
      its column identities)
    """

    kind: str
    key: str
    columns: tuple[str, ...] = ()


@dataclass(frozen=True)
class Literal:
    value: Any
    pos: int = 0


@dataclass(frozen=True)
class ArrayLiteral:
    """``{1,2;3,4}``: rows separated by ``;``, columns by ``,``."""

    rows: tuple[tuple[Node, ...], ...]
    pos: int = 0


@dataclass(frozen=True)
class Reference:
    path: str
    offset: int | None = None
    pos: int = 0
    target: Target | None = None


@dataclass(frozen=True)
class UnaryOp:
    op: str  # "-", "+" or "%" (postfix percent)
    operand: Node
    pos: int = 0


@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: Node
    right: Node
    pos: int = 0


@dataclass(frozen=True)
class FunctionCall:
    name: str
    args: tuple[Node, ...]
    pos: int = 0


@dataclass(frozen=True)
class LetBinding:
    names: tuple[str, ...]
    values: tuple[Node, ...]
    body: Node
    pos: int = 0


@dataclass(frozen=True)
class LambdaDef:
    params: tuple[str, ...]
    body: Node
    pos: int = 0


@dataclass(frozen=True)
class LambdaCall:
    target: Node
    args: tuple[Node, ...]
    pos: int = 0


Node = Union[
    Literal,
    ArrayLiteral,
    Reference,
    UnaryOp,
    BinaryOp,
    FunctionCall,
    LetBinding,
    LambdaDef,
    LambdaCall,
]


def walk(node: Node) -> Iterator[Node]:
    """Yield *node* and all of its descendants, depth-first, left to right."""
    yield node
    if isinstance(node, ArrayLiteral):
        for row in node.rows:
            for item in row:
                yield from walk(item)
    elif isinstance(node, UnaryOp):
        yield from walk(node.operand)
    elif isinstance(node, BinaryOp):
        yield from walk(node.left)
        yield from walk(node.right)
    elif isinstance(node, FunctionCall):
        for arg in node.args:
            yield from walk(arg)
    elif isinstance(node, LetBinding):
        for value in node.values:
            yield from walk(value)
        yield from walk(node.body)
    elif isinstance(node, LambdaDef):
        yield from walk(node.body)
    elif isinstance(node, LambdaCall):
        yield from walk(node.target)
        for arg in node.args:
            yield from walk(arg)


def lambda_of(node: Node) -> LambdaDef | None:
    """Return the LAMBDA a formula evaluates to, looking through LET bodies."""
    while isinstance(node, LetBinding):
        node = node.body
    return node if isinstance(node, LambdaDef) else None
