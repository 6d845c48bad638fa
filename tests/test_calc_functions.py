"""Tests for forgecalc.calc builtin functions and the function registry."""

from __future__ import annotations

from typing import Any

import pytest

from forgecalc import Model, evaluate
from forgecalc.calc._evaluator import ModelEvaluator
from forgecalc.calc._functions import (
    _BUILTINS,
    FUNCTION_CATEGORIES,
    FunctionRegistry,
    FunctionSpec,
    is_supported,
)
from forgecalc.calc._values import ArrayValue, ErrorValue, to_number


def _eval(formula: str, **inputs: Any) -> Any:
    """Evaluate *formula* as the ``result`` node of a one-formula model."""
    model = Model.from_mapping({**inputs, "result": formula})
    return evaluate(model)["result"]


def _is_error(value: Any, code: str) -> bool:
    return isinstance(value, ErrorValue) and value.code == code


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestFunctionRegistry:
    def test_builtins_registered(self) -> None:
        reg = FunctionRegistry()
        assert reg.has("SUM")
        assert reg.has("npv")
        assert "XLOOKUP" in reg.supported_functions

    def test_lookup_is_case_insensitive(self) -> None:
        reg = FunctionRegistry()
        assert reg.get("round") is reg.get("ROUND")
        assert reg.spec("Round") is _BUILTINS["ROUND"]

    def test_unknown_returns_none(self) -> None:
        reg = FunctionRegistry()
        assert reg.get("NOPE") is None
        assert reg.spec("NOPE") is None
        assert not reg.has("NOPE")

    def test_register_custom(self) -> None:
        reg = FunctionRegistry()
        reg.register("DOUBLE", lambda args: to_number(args[0]) * 2, 1, 1)
        spec = reg.spec("double")
        assert spec is not None
        assert spec.category == "custom"
        assert spec.func([21.0]) == 42.0

    def test_custom_function_in_model(self) -> None:
        reg = FunctionRegistry()
        reg.register("DOUBLE", lambda args: to_number(args[0]) * 2, 1, 1)
        ev = ModelEvaluator(registry=reg)
        ev.load(Model.from_mapping({"x": 4, "y": "=double(x)"}))
        assert ev.calculate()["y"] == 8.0

    def test_custom_registry_is_isolated(self) -> None:
        reg = FunctionRegistry()
        reg.register("DOUBLE", lambda args: 0.0, 1, 1)
        assert not FunctionRegistry().has("DOUBLE")

    def test_is_supported(self) -> None:
        assert is_supported("vlookup")
        assert is_supported("VARIANCE_PCT")
        assert not is_supported("WEBSERVICE")

    def test_categories(self) -> None:
        assert FUNCTION_CATEGORIES["SUM"] == "math"
        assert FUNCTION_CATEGORIES["NPV"] == "financial"
        assert FUNCTION_CATEGORIES["BREAKEVEN_UNITS"] == "fpa"
        assert FUNCTION_CATEGORIES["DATE"] == "date"
        assert FUNCTION_CATEGORIES["XLOOKUP"] == "lookup"


class TestFunctionSpec:
    def test_fixed_arity(self) -> None:
        spec = FunctionSpec(lambda args: None, 2, 2, "math")
        assert spec.accepts(2)
        assert not spec.accepts(1)
        assert not spec.accepts(3)
        assert spec.arity_text() == "exactly 2"

    def test_optional_trailing(self) -> None:
        spec = _BUILTINS["ROUND"]
        assert spec.accepts(1)
        assert spec.accepts(2)
        assert not spec.accepts(3)
        assert spec.arity_text() == "1 to 2"

    def test_variadic(self) -> None:
        spec = _BUILTINS["SUM"]
        assert spec.accepts(1)
        assert spec.accepts(255)
        assert not spec.accepts(0)
        assert spec.arity_text() == "at least 1"

    def test_error_aware_flags(self) -> None:
        assert _BUILTINS["IFERROR"].error_aware
        assert _BUILTINS["COUNT"].error_aware
        assert not _BUILTINS["SUM"].error_aware


# ---------------------------------------------------------------------------
# Math
# ---------------------------------------------------------------------------


class TestSum:
    def test_direct_call(self) -> None:
        assert _BUILTINS["SUM"].func([1.0, 2.0, 3.0]) == 6.0

    def test_array_skips_text_and_booleans(self) -> None:
        arr = ArrayValue.column_vector([3.0, "x", True])
        assert _BUILTINS["SUM"].func([1.0, 2.0, arr]) == 6.0

    def test_numeric_text_argument_coerces(self) -> None:
        assert _eval('=SUM(1, "5")') == 6.0

    def test_boolean_argument_coerces(self) -> None:
        assert _eval("=SUM(1, TRUE)") == 2.0

    def test_non_numeric_text_argument(self) -> None:
        assert _is_error(_eval('=SUM(1, "abc")'), "#VALUE!")

    def test_error_propagates(self) -> None:
        assert _is_error(_eval("=SUM(1, 1/0)"), "#DIV/0!")

    def test_model_array(self) -> None:
        assert _eval("=SUM(costs)", costs=[10, 20, 30]) == 60.0


class TestMathFunctions:
    def test_product(self) -> None:
        assert _eval("=PRODUCT({2,3,4})") == 24.0

    def test_product_of_no_numbers(self) -> None:
        assert _eval('=PRODUCT({"a"})') == 0.0

    def test_sumproduct(self) -> None:
        assert _eval("=SUMPRODUCT({1,2,3},{4,5,6})") == 32.0

    def test_sumproduct_shape_mismatch(self) -> None:
        assert _is_error(_eval("=SUMPRODUCT({1,2,3},{4,5})"), "#VALUE!")

    def test_sumsq(self) -> None:
        assert _eval("=SUMSQ(3, 4)") == 25.0

    def test_abs(self) -> None:
        assert _eval("=ABS(-4.5)") == 4.5

    def test_round(self) -> None:
        assert _eval("=ROUND(3.456, 2)") == 3.46

    def test_round_half_away_from_zero(self) -> None:
        assert _eval("=ROUND(2.5, 0)") == 3.0
        assert _eval("=ROUND(-2.5, 0)") == -3.0

    def test_round_uses_decimal_repr(self) -> None:
        assert _eval("=ROUND(2.675, 2)") == 2.68

    def test_round_negative_digits(self) -> None:
        assert _eval("=ROUND(1234.5, -2)") == 1200.0

    def test_round_default_digits(self) -> None:
        assert _eval("=ROUND(7.5)") == 8.0

    def test_roundup(self) -> None:
        assert _eval("=ROUNDUP(3.421, 2)") == 3.43
        assert _eval("=ROUNDUP(-3.421, 2)") == -3.43

    def test_rounddown(self) -> None:
        assert _eval("=ROUNDDOWN(3.789, 1)") == 3.7
        assert _eval("=TRUNC(-3.789)") == -3.0

    def test_int_floors(self) -> None:
        assert _eval("=INT(-3.2)") == -4.0

    def test_mround(self) -> None:
        assert _eval("=MROUND(10, 3)") == 9.0
        assert _is_error(_eval("=MROUND(-10, 3)"), "#NUM!")

    def test_ceiling_floor(self) -> None:
        assert _eval("=CEILING(22.25, 0.5)") == 22.5
        assert _eval("=FLOOR(22.75, 0.5)") == 22.5
        assert _eval("=CEILING(4.3)") == 5.0
        assert _is_error(_eval("=FLOOR(5, 0)"), "#DIV/0!")

    def test_mod_sign_follows_divisor(self) -> None:
        assert _eval("=MOD(-3, 2)") == 1.0
        assert _eval("=MOD(3, -2)") == -1.0

    def test_mod_by_zero(self) -> None:
        assert _is_error(_eval("=MOD(5, 0)"), "#DIV/0!")

    def test_quotient(self) -> None:
        assert _eval("=QUOTIENT(-7, 2)") == -3.0

    def test_power(self) -> None:
        assert _eval("=POWER(2, 10)") == 1024.0

    def test_power_domain_errors(self) -> None:
        assert _is_error(_eval("=POWER(0, 0)"), "#NUM!")
        assert _is_error(_eval("=POWER(0, -1)"), "#DIV/0!")
        assert _is_error(_eval("=POWER(-8, 1/3)"), "#NUM!")

    def test_sqrt(self) -> None:
        assert _eval("=SQRT(16)") == 4.0
        assert _is_error(_eval("=SQRT(-1)"), "#NUM!")

    def test_logs(self) -> None:
        assert _eval("=LOG(1000)") == pytest.approx(3.0)
        assert _eval("=LOG(8, 2)") == pytest.approx(3.0)
        assert _eval("=LN(EXP(2))") == pytest.approx(2.0)
        assert _is_error(_eval("=LN(0)"), "#NUM!")
        assert _is_error(_eval("=LOG10(-1)"), "#NUM!")

    def test_sign_pi_fact(self) -> None:
        assert _eval("=SIGN(-0.5)") == -1.0
        assert _eval("=PI()") == pytest.approx(3.141592653589793)
        assert _eval("=FACT(5)") == 120.0
        assert _is_error(_eval("=FACT(-1)"), "#NUM!")


# ---------------------------------------------------------------------------
# Statistical
# ---------------------------------------------------------------------------


class TestStatistical:
    def test_average(self) -> None:
        assert _eval("=AVERAGE({1,2,3,4})") == 2.5

    def test_average_of_no_numbers(self) -> None:
        assert _is_error(_eval('=AVERAGE({"a","b"})'), "#DIV/0!")

    def test_averagea_counts_text_as_zero(self) -> None:
        assert _eval('=AVERAGEA({2,"x",TRUE})') == 1.0

    def test_min_max(self) -> None:
        assert _eval("=MIN(4, {2,9}, 7)") == 2.0
        assert _eval("=MAX(4, {2,9}, 7)") == 9.0

    def test_min_max_of_no_numbers(self) -> None:
        assert _eval('=MAX({"a","b"})') == 0.0
        assert _eval('=MIN({"a"})') == 0.0

    def test_median(self) -> None:
        assert _eval("=MEDIAN({3,1,2,4})") == 2.5
        assert _eval("=MEDIAN(5, 1, 3)") == 3.0

    def test_count_numbers_only(self) -> None:
        assert _eval('=COUNT({1,2,"x"}, 5)') == 3.0

    def test_count_skips_errors(self) -> None:
        assert _eval("=COUNT({1}, 1/0)") == 1.0

    def test_counta(self) -> None:
        assert _eval('=COUNTA({1,"x",TRUE})') == 3.0

    def test_stdev_and_var(self) -> None:
        data = "{2,4,4,4,5,5,7,9}"
        assert _eval(f"=STDEV.P({data})") == pytest.approx(2.0)
        assert _eval(f"=STDEV.S({data})") == pytest.approx((32 / 7) ** 0.5)
        assert _eval(f"=VAR.P({data})") == pytest.approx(4.0)
        assert _eval(f"=VAR({data})") == pytest.approx(32 / 7)

    def test_stdev_needs_two_values(self) -> None:
        assert _is_error(_eval("=STDEV.S({1})"), "#DIV/0!")

    def test_percentile_quartile(self) -> None:
        assert _eval("=PERCENTILE({1,2,3,4}, 0.5)") == 2.5
        assert _eval("=QUARTILE({1,2,3,4,5}, 1)") == 2.0
        assert _is_error(_eval("=PERCENTILE({1,2}, 1.5)"), "#NUM!")

    def test_large_small(self) -> None:
        assert _eval("=LARGE({3,5,1}, 1)") == 5.0
        assert _eval("=SMALL({3,5,1}, 2)") == 3.0
        assert _is_error(_eval("=LARGE({3,5,1}, 4)"), "#NUM!")

    def test_rank(self) -> None:
        assert _eval("=RANK(5, {3,5,1})") == 1.0
        assert _eval("=RANK(5, {3,5,1}, 1)") == 3.0
        assert _is_error(_eval("=RANK(4, {3,5,1})"), "#N/A")

    def test_correl(self) -> None:
        assert _eval("=CORREL({1,2,3},{2,4,6})") == pytest.approx(1.0)
        assert _eval("=CORREL({1,2,3},{3,2,1})") == pytest.approx(-1.0)
        assert _is_error(_eval("=CORREL({1,1,1},{1,2,3})"), "#DIV/0!")


# ---------------------------------------------------------------------------
# Logic
# ---------------------------------------------------------------------------


class TestLogic:
    def test_if(self) -> None:
        assert _eval('=IF(1 > 0, "yes", "no")') == "yes"
        assert _eval('=IF(0, "yes", "no")') == "no"

    def test_if_missing_else(self) -> None:
        assert _eval("=IF(FALSE, 1)") is False

    def test_if_blank_branch_is_zero(self) -> None:
        assert _eval("=IF(TRUE, , 1)") == 0.0

    def test_if_error_condition(self) -> None:
        assert _is_error(_eval("=IF(1/0 > 1, 1, 2)"), "#DIV/0!")

    def test_if_untaken_branch_error_ignored(self) -> None:
        assert _eval("=IF(TRUE, 1, 1/0)") == 1.0

    def test_ifs(self) -> None:
        assert _eval("=IFS(FALSE, 1, TRUE, 2)") == 2.0
        assert _is_error(_eval("=IFS(FALSE, 1)"), "#N/A")

    def test_ifs_odd_arguments(self) -> None:
        assert _is_error(_eval("=IFS(TRUE, 1, FALSE)"), "#VALUE!")

    def test_iferror(self) -> None:
        assert _eval('=IFERROR(1/0, "fallback")') == "fallback"
        assert _eval('=IFERROR(5, "fallback")') == 5.0

    def test_ifna(self) -> None:
        assert _eval("=IFNA(NA(), 0)") == 0.0
        assert _is_error(_eval("=IFNA(1/0, 0)"), "#DIV/0!")

    def test_and_or_xor_not(self) -> None:
        assert _eval("=AND(TRUE, 1)") is True
        assert _eval("=AND(TRUE, 0)") is False
        assert _eval("=OR(FALSE, 0)") is False
        assert _eval("=OR({0,0,1})") is True
        assert _eval("=XOR(TRUE, TRUE)") is False
        assert _eval("=NOT(0)") is True

    def test_and_with_bad_text(self) -> None:
        assert _is_error(_eval('=AND("maybe")'), "#VALUE!")

    def test_switch(self) -> None:
        assert _eval('=SWITCH(2, 1, "a", 2, "b", "z")') == "b"
        assert _eval('=SWITCH(9, 1, "a", "z")') == "z"
        assert _is_error(_eval('=SWITCH(9, 1, "a")'), "#N/A")

    def test_is_functions(self) -> None:
        assert _eval("=ISERROR(1/0)") is True
        assert _eval("=ISERR(NA())") is False
        assert _eval("=ISNA(NA())") is True
        assert _eval('=ISNUMBER("1")') is False
        assert _eval("=ISNUMBER(1)") is True
        assert _eval('=ISTEXT("a")') is True
        assert _eval("=ISLOGICAL(FALSE)") is True

    def test_true_false_functions(self) -> None:
        assert _eval("=TRUE()") is True
        assert _eval("=FALSE()") is False


# ---------------------------------------------------------------------------
# Text
# ---------------------------------------------------------------------------


class TestText:
    def test_mid(self) -> None:
        assert _eval('=MID("Hello", 2, 3)') == "ell"

    def test_mid_bad_start(self) -> None:
        assert _is_error(_eval('=MID("Hello", 0, 3)'), "#VALUE!")

    def test_left_right(self) -> None:
        assert _eval('=LEFT("Hello", 2)') == "He"
        assert _eval('=LEFT("Hello")') == "H"
        assert _eval('=RIGHT("Hello", 3)') == "llo"
        assert _eval('=RIGHT("Hello", 0)') == ""

    def test_len_of_number(self) -> None:
        assert _eval("=LEN(1234.5)") == 6.0

    def test_concatenate(self) -> None:
        assert _eval('=CONCATENATE("a", 1, TRUE)') == "a1TRUE"

    def test_concat_joins_arrays(self) -> None:
        assert _eval('=CONCAT({"a","b"}, "c")') == "abc"

    def test_textjoin(self) -> None:
        assert _eval('=TEXTJOIN("-", TRUE, {"a","","b"})') == "a-b"
        assert _eval('=TEXTJOIN("-", FALSE, {"a","","b"})') == "a--b"

    def test_case_functions(self) -> None:
        assert _eval('=UPPER("abc")') == "ABC"
        assert _eval('=LOWER("ABC")') == "abc"
        assert _eval('=PROPER("hello world")') == "Hello World"

    def test_trim(self) -> None:
        assert _eval('=TRIM("  a   b  ")') == "a b"

    def test_substitute(self) -> None:
        assert _eval('=SUBSTITUTE("a-b-c", "-", "+")') == "a+b+c"
        assert _eval('=SUBSTITUTE("a-b-c", "-", "+", 2)') == "a-b+c"

    def test_replace(self) -> None:
        assert _eval('=REPLACE("abcdef", 2, 3, "X")') == "aXef"

    def test_text_number_formats(self) -> None:
        assert _eval('=TEXT(1234.567, "#,##0.00")') == "1,234.57"
        assert _eval('=TEXT(0.25, "0%")') == "25%"
        assert _eval('=TEXT(2.5, "0")') == "3"
        assert _eval('=TEXT(-1234, "$#,##0")') == "-$1,234"

    def test_text_date_format(self) -> None:
        assert _eval('=TEXT(DATE(2024, 1, 15), "yyyy-mm-dd")') == "2024-01-15"
        assert _eval('=TEXT(DATE(2024, 1, 15), "mmm-yy")') == "Jan-24"

    def test_rept_exact(self) -> None:
        assert _eval('=REPT("ab", 3)') == "ababab"
        assert _eval('=EXACT("a", "A")') is False

    def test_find_is_case_sensitive(self) -> None:
        assert _eval('=FIND("l", "Hello")') == 3.0
        assert _is_error(_eval('=FIND("L", "Hello")'), "#VALUE!")

    def test_search_wildcards(self) -> None:
        assert _eval('=SEARCH("L*o", "Hello")') == 3.0
        assert _eval('=SEARCH("?", "abc", 2)') == 2.0
        assert _is_error(_eval('=SEARCH("e", "Hello", 3)'), "#VALUE!")

    def test_value(self) -> None:
        assert _eval('=VALUE("$1,250")') == 1250.0
        assert _eval('=VALUE("15%")') == 0.15
        assert _is_error(_eval('=VALUE("abc")'), "#VALUE!")

    def test_ampersand_formats_numbers(self) -> None:
        assert _eval('="Total: " & 1.5') == "Total: 1.5"
        assert _eval("=1 & 2") == "12"
