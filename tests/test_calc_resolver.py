"""Tests for forgecalc.calc reference resolution and name binding."""

from __future__ import annotations

from typing import Any

import pytest

from forgecalc import Model, ModelEvaluator, evaluate
from forgecalc.calc._ast import Target
from forgecalc.calc._errors import CycleError, ResolutionError
from forgecalc.calc._functions import FunctionRegistry
from forgecalc.calc._resolver import Resolver


def _load(doc: dict[str, Any], includes: dict[str, Any] | None = None) -> ModelEvaluator:
    evaluator = ModelEvaluator()
    evaluator.load(Model.from_mapping(doc, includes=includes))
    return evaluator


GROUPED = {
    "rate": 0.1,
    "assumptions": {
        "rate": 0.2,
        "pricing": {
            "markup": "=rate * 2",
        },
    },
    "top": "=rate",
}


class TestLookupOrder:
    def test_nearest_group_wins(self) -> None:
        env = evaluate(Model.from_mapping(GROUPED))
        assert env["assumptions.pricing.markup"] == pytest.approx(0.4)
        assert env["top"] == pytest.approx(0.1)

    def test_lookup_from_group(self) -> None:
        resolver = Resolver(Model.from_mapping(GROUPED))
        assert resolver.lookup("rate", "assumptions.pricing") == Target("scalar", "assumptions.rate")
        assert resolver.lookup("rate") == Target("scalar", "rate")
        assert resolver.lookup("missing") is None

    def test_dotted_path_from_root(self) -> None:
        env = evaluate(Model.from_mapping({**GROUPED, "check": "=assumptions.rate + 1"}))
        assert env["check"] == pytest.approx(1.2)

    def test_table_and_column_targets(self) -> None:
        model = Model.from_mapping({"sales": {"qty": [1, 2], "price": [3, 4]}})
        resolver = Resolver(model)
        assert resolver.lookup("sales") == Target("table", "sales", ("sales.qty", "sales.price"))
        assert resolver.lookup("sales.qty") == Target("column", "sales.qty")

    def test_names_are_case_sensitive(self) -> None:
        with pytest.raises(ResolutionError) as exc:
            _load({"Price": 1, "y": "=price"})
        assert exc.value.kind == "UnknownName"


class TestBinding:
    def test_dependencies_in_reference_order(self) -> None:
        model = Model.from_mapping({"a": 1, "b": 2, "c": "=b + a * b"})
        bound = Resolver(model).bind(model["c"].formula, "c")
        assert bound.owner == "c"
        assert bound.dependencies == ("b", "a")

    def test_table_reference_depends_on_every_column(self) -> None:
        model = Model.from_mapping({
            "sales": {"qty": [1, 2], "price": [3, 4]},
            "n": "=ROWS(sales)",
        })
        bound = Resolver(model).bind(model["n"].formula, "n")
        assert bound.dependencies == ("sales.qty", "sales.price")

    def test_column_self_offset_is_not_a_dependency(self) -> None:
        model = Model.from_mapping({
            "sales": {
                "amount": [1, 2, 3],
                "running": "=IFERROR(running[-1], 0) + amount",
            },
        })
        table = model["sales"]
        bound = Resolver(model).bind(table.column("running").formula, "sales.running")
        assert bound.owner == "sales.running"
        assert bound.dependencies == ("sales.amount",)

    def test_other_table_column_targets_in_row_formula(self) -> None:
        model = Model.from_mapping({
            "prices": {"p": [1, 2, 3]},
            "sales": {"q": [10, 20, 30], "share": "=prices.p / SUM(prices.p)"},
        })
        formula = model["sales"].column("share").formula
        bound = Resolver(model).bind(formula, "sales.share")
        assert bound.ast.left.target == Target("row", "prices.p")
        assert bound.ast.right.args[0].target == Target("column", "prices.p")
        assert bound.dependencies == ("prices.p",)

    def test_registered_range_function_sees_whole_column(self) -> None:
        model = Model.from_mapping({
            "prices": {"p": [1, 2, 3]},
            "sales": {"q": [10, 20, 30], "n": "=SIZE(prices.p)"},
        })
        registry = FunctionRegistry()
        registry.register("SIZE", lambda args: float(len(args[0].values)), 1, 1, takes_ranges=True)
        bound = Resolver(model, registry=registry).bind(model["sales"].column("n").formula, "sales.n")
        assert bound.ast.args[0].target == Target("column", "prices.p")

    def test_function_names_canonicalized(self) -> None:
        model = Model.from_mapping({"a": 1, "b": "=round(a, 0)"})
        bound = Resolver(model).bind(model["b"].formula, "b")
        assert bound.ast.name == "ROUND"


class TestResolutionErrors:
    def test_unknown_name_with_position(self) -> None:
        with pytest.raises(ResolutionError) as exc:
            _load({"x": "=1 + missing"})
        assert exc.value.kind == "UnknownName"
        assert exc.value.name == "missing"
        assert exc.value.node == "x"
        assert exc.value.position == 5

    def test_unknown_function(self) -> None:
        with pytest.raises(ResolutionError, match="Unknown function FOO") as exc:
            _load({"x": "=FOO(1)"})
        assert exc.value.kind == "UnknownName"

    def test_wrong_arity_too_many(self) -> None:
        with pytest.raises(ResolutionError, match="ABS takes exactly 1 arguments, got 2") as exc:
            _load({"x": "=ABS(1, 2)"})
        assert exc.value.kind == "WrongArity"

    def test_wrong_arity_too_few(self) -> None:
        with pytest.raises(ResolutionError) as exc:
            _load({"x": "=ROUND()"})
        assert exc.value.kind == "WrongArity"

    def test_offset_on_scalar(self) -> None:
        with pytest.raises(ResolutionError) as exc:
            _load({"a": 1, "b": "=a[-1]"})
        assert exc.value.kind == "InvalidOffset"

    def test_offset_on_local(self) -> None:
        with pytest.raises(ResolutionError) as exc:
            _load({"b": "=LET(v, 1, v[-1])"})
        assert exc.value.kind == "InvalidOffset"

    def test_unknown_kind_rejected(self) -> None:
        with pytest.raises(ValueError):
            ResolutionError("Bogus", "x", "nope")


class TestIncludes:
    def test_include_prefix(self) -> None:
        env = evaluate(Model.from_mapping(
            {"_includes": ["rates"], "x": "=rates.base * 2"},
            includes={"rates": {"base": 5}},
        ))
        assert env["x"] == 10.0
        assert env["rates.base"] == 5.0

    def test_unique_include_root(self) -> None:
        env = evaluate(Model.from_mapping(
            {"_includes": ["rates"], "x": "=base * 2"},
            includes={"rates": {"base": 5}},
        ))
        assert env["x"] == 10.0

    def test_ambiguous_across_includes(self) -> None:
        with pytest.raises(ResolutionError) as exc:
            _load(
                {"_includes": ["a", "b"], "x": "=base"},
                includes={"a": {"base": 1}, "b": {"base": 2}},
            )
        assert exc.value.kind == "AmbiguousName"
        assert "a, b" in str(exc.value)

    def test_prefix_disambiguates(self) -> None:
        env = evaluate(Model.from_mapping(
            {"_includes": ["a", "b"], "x": "=a.base + b.base"},
            includes={"a": {"base": 1}, "b": {"base": 2}},
        ))
        assert env["x"] == 3.0

    def test_local_name_shadows_include(self) -> None:
        env = evaluate(Model.from_mapping(
            {"_includes": ["rates"], "base": 100, "x": "=base"},
            includes={"rates": {"base": 5}},
        ))
        assert env["x"] == 100.0

    def test_include_formulas_resolve_in_include(self) -> None:
        env = evaluate(Model.from_mapping(
            {"_includes": ["rates"], "x": "=rates.doubled"},
            includes={"rates": {"base": 5, "doubled": "=base * 2"}},
        ))
        assert env["rates.doubled"] == 10.0
        assert env["x"] == 10.0


class TestLetLambdaBinding:
    def test_let_shadows_model_name(self) -> None:
        env = evaluate(Model.from_mapping({"x": 5, "y": "=LET(x, 10, x + 1)", "z": "=x"}))
        assert env["y"] == 11.0
        assert env["z"] == 5.0

    def test_let_name_invisible_elsewhere(self) -> None:
        with pytest.raises(ResolutionError) as exc:
            _load({"y": "=LET(tmp, 10, tmp)", "z": "=tmp"})
        assert exc.value.kind == "UnknownName"
        assert exc.value.node == "z"

    def test_let_lambda_arity(self) -> None:
        with pytest.raises(ResolutionError) as exc:
            _load({"y": "=LET(sq, LAMBDA(a, a * a), sq(1, 2))"})
        assert exc.value.kind == "WrongArity"

    def test_immediate_lambda_arity(self) -> None:
        with pytest.raises(ResolutionError) as exc:
            _load({"y": "=LAMBDA(a, b, a + b)(1)"})
        assert exc.value.kind == "WrongArity"

    def test_model_lambda_call(self) -> None:
        env = evaluate(Model.from_mapping({"double": "=LAMBDA(x, x * 2)", "y": "=double(21)"}))
        assert env["y"] == 42.0

    def test_model_lambda_arity(self) -> None:
        with pytest.raises(ResolutionError) as exc:
            _load({"double": "=LAMBDA(x, x * 2)", "y": "=double(1, 2)"})
        assert exc.value.kind == "WrongArity"
        assert exc.value.name == "double"

    def test_self_referential_lambda_is_a_cycle(self) -> None:
        with pytest.raises(CycleError) as exc:
            _load({"f": "=LAMBDA(n, IF(n <= 0, 0, f(n - 1)))"})
        assert exc.value.members == ["f"]
