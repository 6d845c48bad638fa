"""Reference resolver: binds every name in a formula AST to a target.

Lookup order for a reference:

1. LET names and LAMBDA parameters in scope
2. sibling columns of the enclosing table (row-relative)
3. the enclosing group, then each outer group, then the model root
4. an include, by explicit ``include.`` prefix
5. a name defined in the root of exactly one include

From a row formula, a column of another table with the same number of rows
is read row-aligned, except inside the arguments of a function that takes
ranges (SUM, MATCH, NPV, ...), which sees the whole column.

Call targets resolve to a local binding, then a model node whose formula
is a LAMBDA, then the function registry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any

from forgecalc._model import Formula, Model, ScalarNode, TableNode
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
    Target,
    UnaryOp,
    lambda_of,
)
from forgecalc.calc._errors import ResolutionError
from forgecalc.calc._functions import FunctionRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BoundFormula:
    """A formula whose references all carry targets.

    ``dependencies`` lists the node identities the formula reads, in first
    reference order. A column's offset reference to itself is not listed.
    """

    owner: str
    ast: Node
    dependencies: tuple[str, ...]


# A model hit: the target plus the model node it came from (the table, for a column)
_Hit = tuple[Target, Any]


class _Binding:
    """Per-formula state: the owner's context and collected dependencies."""

    def __init__(self, owner: str, group: str, table: TableNode | None, column: str | None) -> None:
        self.owner = owner
        self.group = group
        self.table = table
        self.column = column
        self.dependencies: list[str] = []
        # Depth of enclosing range-taking function calls
        self.ranges = 0

    def depend(self, identity: str) -> None:
        if identity not in self.dependencies:
            self.dependencies.append(identity)

    def fail(self, kind: str, name: str, message: str, pos: int) -> ResolutionError:
        return ResolutionError(kind, name, message, node=self.owner, position=pos)


class Resolver:
    """Binds formulas of one model (and, through it, its includes).

    *prefix* is prepended to every identity this resolver produces; an
    include named ``rates`` is resolved by a child with prefix ``rates.``.
    """

    def __init__(
        self,
        model: Model,
        prefix: str = "",
        registry: FunctionRegistry | None = None,
    ) -> None:
        self.model = model
        self.prefix = prefix
        self.registry = registry if registry is not None else FunctionRegistry()
        self._includes = {
            name: Resolver(include, f"{prefix}{name}.", self.registry)
            for name, include in model.includes.items()
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def bind(self, formula: Formula, owner: str) -> BoundFormula:
        """Bind *formula* declared at local path *owner*.

        *owner* is a scalar path or a ``table.column`` path; the latter
        makes sibling columns visible as row-relative references.
        """
        table = None
        column = None
        parent, _, last = owner.rpartition(".")
        node = self.model.get(parent) if parent else None
        if isinstance(node, TableNode) and node.column(last) is not None:
            table, column = node, last
            group = node.group
        else:
            group = parent
        binding = _Binding(self.prefix + owner, group, table, column)
        ast = self._bind(formula.ast, binding, {})
        logger.debug("Bound %s: %d dependencies", binding.owner, len(binding.dependencies))
        return BoundFormula(binding.owner, ast, tuple(binding.dependencies))

    def lookup(self, path: str, group: str = "") -> Target | None:
        """Resolve a model path as seen from *group*; None when undefined."""
        hit = self._find(path, group, None)
        return hit[0] if hit is not None else None

    # ------------------------------------------------------------------
    # Model lookup
    # ------------------------------------------------------------------

    def _hit_for(self, path: str) -> _Hit | None:
        """Exact local path -> hit, without any search."""
        node = self.model.get(path)
        if node is not None:
            identity = self.prefix + path
            if isinstance(node, TableNode):
                columns = tuple(self.prefix + node.column_path(c) for c in node.column_names)
                return (Target("table", identity, columns), node)
            return (Target("scalar", identity), node)
        parent, _, last = path.rpartition(".")
        if parent:
            table = self.model.get(parent)
            if isinstance(table, TableNode):
                column = table.column(last)
                if column is not None:
                    return (Target("column", self.prefix + path), table)
        return None

    def _find(self, path: str, group: str, binding: _Binding | None, pos: int = 0) -> _Hit | None:
        # Enclosing groups, innermost outward, then the root
        parts = group.split(".") if group else []
        for i in range(len(parts), -1, -1):
            base = ".".join(parts[:i])
            hit = self._hit_for(f"{base}.{path}" if base else path)
            if hit is not None:
                return hit

        # Explicit include prefix
        head, _, rest = path.partition(".")
        if rest and head in self._includes:
            return self._includes[head]._find(rest, "", binding, pos)

        # Unprefixed name defined in exactly one include root
        found: list[tuple[str, _Hit]] = []
        for inc_name, include in self._includes.items():
            hit = include._hit_for(path)
            if hit is not None:
                found.append((inc_name, hit))
        if len(found) > 1 and binding is not None:
            names = ", ".join(name for name, _ in found)
            raise binding.fail(
                "AmbiguousName", path,
                f"{path!r} is defined in several includes ({names}); add an include prefix",
                pos,
            )
        if len(found) == 1:
            return found[0][1]
        return None

    # ------------------------------------------------------------------
    # AST binding
    # ------------------------------------------------------------------

    def _bind(self, node: Node, b: _Binding, local: dict[str, int | None]) -> Node:
        """Return a bound copy of *node*.

        *local* maps names in scope to the arity of the LAMBDA they hold,
        or None when unknown.
        """
        if isinstance(node, Literal):
            return node
        if isinstance(node, Reference):
            return self._bind_reference(node, b, local)
        if isinstance(node, ArrayLiteral):
            rows = tuple(tuple(self._bind(item, b, local) for item in row) for row in node.rows)
            return replace(node, rows=rows)
        if isinstance(node, UnaryOp):
            return replace(node, operand=self._bind(node.operand, b, local))
        if isinstance(node, BinaryOp):
            return replace(
                node,
                left=self._bind(node.left, b, local),
                right=self._bind(node.right, b, local),
            )
        if isinstance(node, LetBinding):
            scope = dict(local)
            values: list[Node] = []
            for name, value in zip(node.names, node.values):
                bound = self._bind(value, b, scope)
                values.append(bound)
                lam = lambda_of(bound)
                scope[name] = len(lam.params) if lam is not None else None
            body = self._bind(node.body, b, scope)
            return replace(node, values=tuple(values), body=body)
        if isinstance(node, LambdaDef):
            scope = dict(local)
            for param in node.params:
                scope[param] = None
            return replace(node, body=self._bind(node.body, b, scope))
        if isinstance(node, FunctionCall):
            return self._bind_call(node, b, local)
        if isinstance(node, LambdaCall):
            target = self._bind(node.target, b, local)
            lam = lambda_of(target)
            if lam is not None and len(lam.params) != len(node.args):
                raise b.fail(
                    "WrongArity", "LAMBDA",
                    f"LAMBDA takes {len(lam.params)} arguments, got {len(node.args)}",
                    node.pos,
                )
            args = tuple(self._bind(arg, b, local) for arg in node.args)
            return replace(node, target=target, args=args)
        raise TypeError(f"Unknown AST node: {type(node).__name__}")

    def _bind_reference(self, node: Reference, b: _Binding, local: dict[str, int | None]) -> Node:
        path = node.path
        if path in local:
            if node.offset is not None:
                raise b.fail("InvalidOffset", path, f"Local name {path!r} cannot take a row offset", node.pos)
            return replace(node, target=Target("local", path))

        if b.table is not None and b.table.column(path) is not None:
            identity = self.prefix + b.table.column_path(path)
            # A column reading its own earlier rows is sequenced per row, not per node
            if not (path == b.column and node.offset is not None):
                b.depend(identity)
            return replace(node, target=Target("row", identity))

        if node.offset is not None:
            raise b.fail(
                "InvalidOffset", path,
                "Row offsets are only valid on columns of the enclosing table",
                node.pos,
            )

        hit = self._find(path, b.group, b, node.pos)
        if hit is None:
            raise b.fail("UnknownName", path, f"Unknown name {path!r}", node.pos)
        target = hit[0]
        if target.kind == "table":
            for column in target.columns:
                b.depend(column)
        else:
            b.depend(target.key)
        if (
            target.kind == "column"
            and b.table is not None
            and b.ranges == 0
            and hit[1].row_count == b.table.row_count
        ):
            target = Target("row", target.key)
        return replace(node, target=target)

    def _bind_call(self, node: FunctionCall, b: _Binding, local: dict[str, int | None]) -> Node:
        name = node.name
        spec = self.registry.spec(name)
        ranged = name not in local and spec is not None and spec.takes_ranges
        if ranged:
            b.ranges += 1
        try:
            args = tuple(self._bind(arg, b, local) for arg in node.args)
        finally:
            if ranged:
                b.ranges -= 1

        if name in local:
            arity = local[name]
            if arity is not None and arity != len(args):
                raise b.fail(
                    "WrongArity", name,
                    f"{name} takes {arity} arguments, got {len(args)}",
                    node.pos,
                )
            callee = Reference(name, pos=node.pos, target=Target("local", name))
            return LambdaCall(callee, args, node.pos)

        hit = self._find(name, b.group, b, node.pos)
        if hit is not None and isinstance(hit[1], ScalarNode) and hit[1].formula is not None:
            lam = lambda_of(hit[1].formula.ast)
            if lam is not None:
                if len(lam.params) != len(args):
                    raise b.fail(
                        "WrongArity", name,
                        f"{name} takes {len(lam.params)} arguments, got {len(args)}",
                        node.pos,
                    )
                b.depend(hit[0].key)
                callee = Reference(name, pos=node.pos, target=hit[0])
                return LambdaCall(callee, args, node.pos)

        if spec is None:
            raise b.fail("UnknownName", name, f"Unknown function {name}", node.pos)
        if not spec.accepts(len(args)):
            raise b.fail(
                "WrongArity", name.upper(),
                f"{name.upper()} takes {spec.arity_text()} arguments, got {len(args)}",
                node.pos,
            )
        return replace(node, name=name.upper(), args=args)
