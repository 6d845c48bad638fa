"""Lexical scopes for LET bindings and LAMBDA values.

Scopes form an explicit parent-pointer chain. A scope is never mutated
after construction: binding a name creates a child scope.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from forgecalc.calc._ast import Node


class Scope:
    """An immutable frame of local bindings with an optional parent."""

    __slots__ = ("_bindings", "parent")

    def __init__(self, bindings: Mapping[str, Any] | None = None, parent: Scope | None = None) -> None:
        self._bindings = MappingProxyType(dict(bindings or {}))
        self.parent = parent

    def child(self, bindings: Mapping[str, Any]) -> Scope:
        return Scope(bindings, self)

    def lookup(self, name: str) -> Any:
        """Return the innermost binding of *name*; KeyError when unbound."""
        scope: Scope | None = self
        while scope is not None:
            if name in scope._bindings:
                return scope._bindings[name]
            scope = scope.parent
        raise KeyError(name)

    def __contains__(self, name: object) -> bool:
        try:
            self.lookup(name)  # type: ignore[arg-type]
        except KeyError:
            return False
        return True

    def names(self) -> list[str]:
        """All visible names, innermost first."""
        seen: list[str] = []
        scope: Scope | None = self
        while scope is not None:
            for name in scope._bindings:
                if name not in seen:
                    seen.append(name)
            scope = scope.parent
        return seen

    def __repr__(self) -> str:
        return f"Scope({self.names()!r})"


EMPTY_SCOPE = Scope()


@dataclass(frozen=True)
class LambdaValue:
    """A callable value: a LAMBDA body plus the scope it was defined in.

    ``row`` is the table row context at definition time (None outside
    table formulas), so row-relative references in the body keep reading
    the defining row.
    """

    params: tuple[str, ...]
    body: Node
    scope: Scope = field(default=EMPTY_SCOPE, compare=False)
    row: Any = field(default=None, compare=False)
    name: str | None = None

    @property
    def arity(self) -> int:
        return len(self.params)

    def bind(self, args: list[Any]) -> Scope:
        """Return the call scope: a fresh child of the captured scope."""
        return self.scope.child(dict(zip(self.params, args)))

    def __repr__(self) -> str:
        label = self.name or "LAMBDA"
        return f"<{label}({', '.join(self.params)})>"
