"""Structural error taxonomy for model evaluation.

Structural errors abort a run. Computational errors (divide-by-zero,
wrong-type arguments, lookup misses) are not exceptions: they become
in-band :class:`~forgecalc.calc._values.ErrorValue` results.
"""

from __future__ import annotations


class CalcError(Exception):
    """Base class for every error that aborts a model run."""

    def __init__(self, message: str, node: str | None = None) -> None:
        self.message = message
        self.node = node
        if node:
            message = f"{node}: {message}"
        super().__init__(message)


class FormulaSyntaxError(CalcError):
    """Malformed formula text. ``position`` is a 0-based character offset."""

    def __init__(
        self,
        message: str,
        position: int,
        text: str = "",
        node: str | None = None,
    ) -> None:
        self.reason = message
        self.position = position
        self.text = text
        super().__init__(f"{message} at position {position}", node)

    def with_node(self, node: str) -> FormulaSyntaxError:
        return FormulaSyntaxError(self.reason, self.position, self.text, node)


class ResolutionError(CalcError):
    """A reference or call target that cannot be bound.

    ``kind`` is one of ``UnknownName``, ``AmbiguousName``, ``WrongArity``
    or ``InvalidOffset``.
    """

    KINDS = ("UnknownName", "AmbiguousName", "WrongArity", "InvalidOffset")

    def __init__(
        self,
        kind: str,
        name: str,
        message: str,
        node: str | None = None,
        position: int | None = None,
    ) -> None:
        if kind not in self.KINDS:
            raise ValueError(f"Unknown resolution error kind: {kind!r}")
        self.kind = kind
        self.name = name
        self.position = position
        super().__init__(f"{kind}: {message}", node)


class CycleError(CalcError):
    """A dependency cycle. ``cycle`` lists its members, first repeated last."""

    def __init__(self, cycle: list[str], involved: list[str] | None = None) -> None:
        self.cycle = cycle
        self.involved = involved if involved is not None else sorted(set(cycle))
        super().__init__(f"Circular reference: {' -> '.join(cycle)}")

    @property
    def members(self) -> list[str]:
        return self.cycle[:-1] if len(self.cycle) > 1 else list(self.cycle)


class VersionError(CalcError):
    """A construct the model's declared version does not permit."""


class ModelError(CalcError):
    """A document shape the engine cannot build a model from."""


class EvaluationError(CalcError):
    """A fatal evaluation-order violation, e.g. reading a row not yet computed."""
