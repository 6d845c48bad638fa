"""Document model: an immutable tree built from a parsed forge document.

The reader (YAML or otherwise) is an external collaborator; this module
takes its output, a plain mapping, and builds typed nodes keyed by dotted
path in declaration order.
"""

from __future__ import annotations

import datetime
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from functools import cached_property
from types import MappingProxyType
from typing import Any, Union

from forgecalc.calc._ast import Node
from forgecalc.calc._dates import date_to_serial
from forgecalc.calc._errors import ModelError, VersionError
from forgecalc.calc._parser import FormulaParser
from forgecalc.calc._values import ArrayValue, DateSerial

logger = logging.getLogger(__name__)

VERSION_SCALAR_ONLY = "1.0.0"
VERSION_FULL = "5.0.0"
SUPPORTED_VERSIONS = (VERSION_SCALAR_ONLY, VERSION_FULL)
DEFAULT_VERSION = VERSION_FULL

# Scalar mapping keys that carry no metadata
_SCALAR_KEYS = frozenset({"value", "formula"})
# The only metadata a scalar-only document may declare
_V1_METADATA = frozenset({"expected"})
_SCENARIOS_KEY = "scenarios"
_NAME_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


@dataclass(frozen=True)
class Formula:
    """Formula source text with a lazily parsed, cached AST."""

    text: str

    @cached_property
    def ast(self) -> Node:
        return FormulaParser().parse(self.text)

    def __str__(self) -> str:
        return self.text


@dataclass(frozen=True)
class ScalarNode:
    """A named value: a literal, a formula, or both (formula wins)."""

    path: str
    value: Any = None
    formula: Formula | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.path.rsplit(".", 1)[-1]

    @property
    def group(self) -> str:
        """Dotted path of the enclosing group ("" at the model root)."""
        return self.path.rpartition(".")[0]

    @property
    def is_formula(self) -> bool:
        return self.formula is not None


@dataclass(frozen=True)
class Column:
    """A table column: literal row values or a per-row formula."""

    name: str
    values: tuple[Any, ...] | None = None
    formula: Formula | None = None

    @property
    def is_formula(self) -> bool:
        return self.formula is not None


@dataclass(frozen=True)
class TableNode:
    """A named set of equal-length columns."""

    path: str
    columns: tuple[Column, ...]
    row_count: int

    @property
    def name(self) -> str:
        return self.path.rsplit(".", 1)[-1]

    @property
    def group(self) -> str:
        return self.path.rpartition(".")[0]

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    def column(self, name: str) -> Column | None:
        for col in self.columns:
            if col.name == name:
                return col
        return None

    def column_path(self, name: str) -> str:
        return f"{self.path}.{name}"


ModelNode = Union[ScalarNode, TableNode]


@dataclass(frozen=True)
class Model:
    """Root container of a forge document.

    ``nodes`` maps dotted path to node in declaration order. ``includes``
    maps include name to the included model. ``scenarios`` maps scenario
    name to scalar path -> override value.
    """

    version: str = DEFAULT_VERSION
    nodes: Mapping[str, ModelNode] = field(default_factory=dict)
    includes: Mapping[str, Model] = field(default_factory=dict)
    scenarios: Mapping[str, Mapping[str, float]] = field(default_factory=dict)
    groups: frozenset[str] = frozenset()
    name: str | None = None

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def __contains__(self, path: object) -> bool:
        return path in self.nodes

    def __getitem__(self, path: str) -> ModelNode:
        return self.nodes[path]

    def get(self, path: str) -> ModelNode | None:
        return self.nodes.get(path)

    def scalars(self) -> list[ScalarNode]:
        return [n for n in self.nodes.values() if isinstance(n, ScalarNode)]

    def tables(self) -> list[TableNode]:
        return [n for n in self.nodes.values() if isinstance(n, TableNode)]

    def is_group(self, path: str) -> bool:
        return path in self.groups

    # ------------------------------------------------------------------
    # Version gating
    # ------------------------------------------------------------------

    def check_version(self) -> None:
        """Raise VersionError for any construct the version does not permit.

        Included models are checked against their own declared versions.
        """
        if self.version not in SUPPORTED_VERSIONS:
            raise VersionError(
                f"Unsupported _forge_version {self.version!r} "
                f"(expected one of {', '.join(SUPPORTED_VERSIONS)})"
            )
        if self.version == VERSION_SCALAR_ONLY:
            self._check_scalar_only()
        for include in self.includes.values():
            include.check_version()

    def _check_scalar_only(self) -> None:
        label = f"version {VERSION_SCALAR_ONLY} models"
        if self.includes:
            raise VersionError(f"Includes are not permitted in {label}")
        if self.scenarios:
            raise VersionError(f"Scenarios are not permitted in {label}")
        for path, node in self.nodes.items():
            if isinstance(node, TableNode):
                raise VersionError(f"Tables are not permitted in {label}", node=path)
            if isinstance(node.value, ArrayValue):
                raise VersionError(f"Array values are not permitted in {label}", node=path)
            extra = set(node.metadata) - _V1_METADATA
            if extra:
                raise VersionError(
                    f"Metadata {', '.join(sorted(extra))} not permitted in {label}",
                    node=path,
                )

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_mapping(
        cls,
        doc: Mapping[str, Any],
        includes: Mapping[str, Any] | None = None,
    ) -> Model:
        """Build a model from a parsed document mapping.

        *includes* supplies the documents named by ``_includes``, keyed by
        include name or by file; values are mappings or prebuilt models.
        """
        model = _Builder(includes or {}).build(doc, ())
        model.check_version()
        return model


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


def _literal(raw: Any, path: str) -> Any:
    """Convert a raw document value to an engine value."""
    if raw is None:
        raise ModelError("Null value", node=path)
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)):
        return float(raw)
    if isinstance(raw, str):
        return raw
    if isinstance(raw, datetime.datetime):
        raise ModelError("Timestamps are not supported; use a date", node=path)
    if isinstance(raw, datetime.date):
        try:
            return DateSerial(date_to_serial(raw.year, raw.month, raw.day))
        except ValueError as e:
            raise ModelError(str(e), node=path) from e
    raise ModelError(f"Unsupported value of type {type(raw).__name__}", node=path)


def _is_formula_text(raw: Any) -> bool:
    return isinstance(raw, str) and raw.startswith("=")


def _check_name(name: Any, path: str) -> str:
    if not isinstance(name, str) or not _NAME_RE.fullmatch(name):
        raise ModelError(f"Invalid name {name!r}", node=path or None)
    return name


class _Builder:
    def __init__(self, documents: Mapping[str, Any]) -> None:
        self._documents = documents
        self._nodes: dict[str, ModelNode] = {}
        self._groups: set[str] = set()
        self._scalar_only = False

    def build(self, doc: Mapping[str, Any], stack: tuple[str, ...]) -> Model:
        if not isinstance(doc, Mapping):
            raise ModelError(f"Document must be a mapping, got {type(doc).__name__}")
        version = str(doc.get("_forge_version", DEFAULT_VERSION))
        name = doc.get("_name")
        # Scalar-only documents are gated before any node is built
        self._scalar_only = version == VERSION_SCALAR_ONLY
        if self._scalar_only and doc.get("_includes"):
            raise VersionError(f"Includes are not permitted in version {VERSION_SCALAR_ONLY} models")

        for key, raw in doc.items():
            if isinstance(key, str) and key.startswith("_"):
                continue
            if key == _SCENARIOS_KEY:
                continue
            self._entry(_check_name(key, ""), raw, "")

        includes = self._includes(doc.get("_includes"), stack)
        for inc_name in includes:
            if inc_name in self._nodes or inc_name in self._groups:
                raise ModelError(f"Include name {inc_name!r} collides with a model name")

        scenarios = self._scenarios(doc.get(_SCENARIOS_KEY))
        logger.debug(
            "Built model %s: %d nodes, %d includes, %d scenarios",
            name or "<root>", len(self._nodes), len(includes), len(scenarios),
        )
        return Model(
            version=version,
            nodes=MappingProxyType(self._nodes),
            includes=MappingProxyType(includes),
            scenarios=MappingProxyType(scenarios),
            groups=frozenset(self._groups),
            name=name if isinstance(name, str) else None,
        )

    def _entry(self, key: str, raw: Any, prefix: str) -> None:
        path = f"{prefix}.{key}" if prefix else key
        if isinstance(raw, Mapping):
            keys = {k for k in raw if not (isinstance(k, str) and k.startswith("_"))}
            if keys & _SCALAR_KEYS:
                self._nodes[path] = self._scalar_mapping(path, raw)
            elif any(isinstance(raw[k], list) for k in keys):
                if self._scalar_only:
                    raise VersionError(
                        f"Tables are not permitted in version {VERSION_SCALAR_ONLY} models", node=path
                    )
                self._nodes[path] = self._table(path, raw)
            else:
                self._groups.add(path)
                for sub_key, sub_raw in raw.items():
                    if isinstance(sub_key, str) and sub_key.startswith("_"):
                        continue
                    self._entry(_check_name(sub_key, path), sub_raw, path)
        elif _is_formula_text(raw):
            self._nodes[path] = ScalarNode(path, formula=Formula(raw))
        elif isinstance(raw, list):
            self._nodes[path] = ScalarNode(path, value=self._array(path, raw))
        else:
            self._nodes[path] = ScalarNode(path, value=_literal(raw, path))

    def _array(self, path: str, raw: list[Any]) -> ArrayValue:
        return ArrayValue.column_vector(_literal(v, path) for v in raw)

    def _scalar_mapping(self, path: str, raw: Mapping[str, Any]) -> ScalarNode:
        formula = None
        if raw.get("formula") is not None:
            text = raw["formula"]
            if not _is_formula_text(text):
                raise ModelError("Formula must be a string starting with '='", node=path)
            formula = Formula(text)
        value = None
        if raw.get("value") is not None:
            value = raw["value"]
            value = self._array(path, value) if isinstance(value, list) else _literal(value, path)
        if formula is None and value is None:
            raise ModelError("Scalar has neither a value nor a formula", node=path)
        metadata = {
            k: v for k, v in raw.items()
            if k not in _SCALAR_KEYS and not (isinstance(k, str) and k.startswith("_"))
        }
        return ScalarNode(path, value=value, formula=formula, metadata=MappingProxyType(metadata))

    def _table(self, path: str, raw: Mapping[str, Any]) -> TableNode:
        columns: list[Column] = []
        row_count: int | None = None
        for key, col_raw in raw.items():
            if isinstance(key, str) and key.startswith("_"):
                continue
            col_name = _check_name(key, path)
            col_path = f"{path}.{col_name}"
            if isinstance(col_raw, list):
                values = tuple(_literal(v, col_path) for v in col_raw)
                if row_count is None:
                    row_count = len(values)
                elif len(values) != row_count:
                    raise ModelError(
                        f"Column {col_name!r} has {len(values)} rows, expected {row_count}",
                        node=path,
                    )
                columns.append(Column(col_name, values=values))
            elif _is_formula_text(col_raw):
                columns.append(Column(col_name, formula=Formula(col_raw)))
            else:
                raise ModelError(
                    f"Column {col_name!r} must be a list or a formula", node=path
                )
        return TableNode(path, tuple(columns), row_count or 0)

    def _includes(self, raw: Any, stack: tuple[str, ...]) -> dict[str, Model]:
        if raw is None:
            return {}
        if not isinstance(raw, list):
            raise ModelError("_includes must be a list")
        includes: dict[str, Model] = {}
        for entry in raw:
            if isinstance(entry, Mapping):
                inc_name = entry.get("name") or entry.get("as")
                file = entry.get("file")
            else:
                inc_name, file = entry, None
            inc_name = _check_name(inc_name, "")
            if inc_name in includes:
                raise ModelError(f"Duplicate include {inc_name!r}")
            source = self._documents.get(inc_name)
            if source is None and file is not None:
                source = self._documents.get(file)
            if source is None:
                raise ModelError(f"Unknown include {inc_name!r}")
            key = str(file or inc_name)
            if key in stack:
                raise ModelError(f"Include cycle: {' -> '.join(stack + (key,))}")
            if isinstance(source, Model):
                includes[inc_name] = source
            else:
                includes[inc_name] = _Builder(self._documents).build(source, stack + (key,))
        return includes

    def _scenarios(self, raw: Any) -> dict[str, Mapping[str, float]]:
        if raw is None:
            return {}
        if not isinstance(raw, Mapping):
            raise ModelError("scenarios must be a mapping")
        scenarios: dict[str, Mapping[str, float]] = {}
        for name, overrides in raw.items():
            if not isinstance(overrides, Mapping):
                raise ModelError(f"Scenario {name!r} must be a mapping")
            values: dict[str, float] = {}
            for path, value in overrides.items():
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    raise ModelError(f"Scenario {name!r} override for {path!r} must be a number")
                values[str(path)] = float(value)
            scenarios[str(name)] = MappingProxyType(values)
        return scenarios
