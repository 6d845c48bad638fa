"""Tests for lookup and conditional aggregation builtins.

Covers: INDEX, MATCH, VLOOKUP, HLOOKUP, XLOOKUP, CHOOSE, ROWS, COLUMNS,
SUMIF, SUMIFS, COUNTIF, COUNTIFS, AVERAGEIF, AVERAGEIFS, MINIFS, MAXIFS,
the criteria parser, and ArrayValue shape handling.
"""

from __future__ import annotations

from typing import Any

import pytest

from forgecalc import Model, evaluate
from forgecalc.calc._functions import _parse_criteria, wildcard_match
from forgecalc.calc._values import ArrayValue, ErrorSignal, ErrorValue


# ---------------------------------------------------------------------------
# Helper: model with a sales table + one formula
# ---------------------------------------------------------------------------

SALES = {
    "region": ["East", "West", "East", "North"],
    "amount": [100, 200, 150, 50],
    "product": ["apple", "apricot", "banana", "apple"],
}


def _calc(formula: str, **inputs: Any) -> Any:
    model = Model.from_mapping({"sales": SALES, **inputs, "result": formula})
    return evaluate(model)["result"]


def _is_error(value: Any, code: str) -> bool:
    return isinstance(value, ErrorValue) and value.code == code


# ---------------------------------------------------------------------------
# ArrayValue unit tests
# ---------------------------------------------------------------------------


class TestArrayValue:
    def test_get_2d(self) -> None:
        av = ArrayValue(values=[1, 2, 3, 4, 5, 6], n_rows=2, n_cols=3)
        assert av.get(1, 1) == 1
        assert av.get(1, 3) == 3
        assert av.get(2, 2) == 5

    def test_get_out_of_bounds(self) -> None:
        av = ArrayValue.column_vector([1, 2, 3])
        assert av.get(4, 1) is None
        assert av.get(0, 1) is None

    def test_column_and_row(self) -> None:
        av = ArrayValue(values=[1, 2, 3, 4, 5, 6], n_rows=3, n_cols=2)
        assert av.column(2) == [2, 4, 6]
        assert av.row(3) == [5, 6]
        assert av.shape == (3, 2)

    def test_from_rows(self) -> None:
        av = ArrayValue.from_rows([[1, 2], [3, 4]])
        assert av.values == [1, 2, 3, 4]
        assert av.shape == (2, 2)

    def test_from_rows_ragged(self) -> None:
        with pytest.raises(ValueError, match="equal length"):
            ArrayValue.from_rows([[1, 2], [3]])

    def test_iterable_and_len(self) -> None:
        av = ArrayValue.column_vector([10, 20, 30])
        assert list(av) == [10, 20, 30]
        assert len(av) == 3


# ---------------------------------------------------------------------------
# Criteria parsing
# ---------------------------------------------------------------------------


class TestCriteria:
    def test_operator_prefix(self) -> None:
        pred = _parse_criteria(">100")
        assert pred(150.0)
        assert not pred(100.0)
        assert not pred("abc")

    def test_not_equal(self) -> None:
        pred = _parse_criteria("<>0")
        assert pred(5.0)
        assert not pred(0.0)
        assert pred("text")

    def test_number_equality_matches_numeric_text(self) -> None:
        pred = _parse_criteria("100")
        assert pred(100.0)
        assert pred("100")

    def test_plain_number_criteria(self) -> None:
        pred = _parse_criteria(3.0)
        assert pred(3.0)
        assert not pred("3")

    def test_text_is_case_insensitive(self) -> None:
        pred = _parse_criteria("east")
        assert pred("East")
        assert not pred("West")

    def test_wildcards(self) -> None:
        pred = _parse_criteria("ap*")
        assert pred("apple")
        assert pred("APRICOT")
        assert not pred("banana")

    def test_empty_matches_blank(self) -> None:
        pred = _parse_criteria("")
        assert pred(None)
        assert pred("")
        assert not pred(0.0)

    def test_boolean_criteria(self) -> None:
        pred = _parse_criteria(True)
        assert pred(True)
        assert not pred(1.0)
        assert _parse_criteria("=FALSE")(False)

    def test_error_criteria_raises_signal(self) -> None:
        with pytest.raises(ErrorSignal):
            _parse_criteria(ErrorValue.NA)


class TestWildcardMatch:
    def test_star_and_question(self) -> None:
        assert wildcard_match("a*c", "abbbc")
        assert wildcard_match("a?c", "ABC")
        assert not wildcard_match("a?c", "abbc")

    def test_tilde_escape(self) -> None:
        assert wildcard_match("a~*", "a*")
        assert not wildcard_match("a~*", "ab")

    def test_regex_characters_literal(self) -> None:
        assert wildcard_match("1.5 (net)", "1.5 (net)")
        assert not wildcard_match("1.5", "125")


# ---------------------------------------------------------------------------
# Conditional aggregation
# ---------------------------------------------------------------------------


class TestSumIf:
    def test_sumif_with_sum_range(self) -> None:
        assert _calc('=SUMIF(sales.region, "East", sales.amount)') == 250.0

    def test_sumif_on_criteria_range(self) -> None:
        assert _calc('=SUMIF(sales.amount, ">=150")') == 350.0

    def test_sumif_no_match(self) -> None:
        assert _calc('=SUMIF(sales.region, "South", sales.amount)') == 0.0

    def test_sumifs_multiple_criteria(self) -> None:
        result = _calc('=SUMIFS(sales.amount, sales.region, "East", sales.amount, ">120")')
        assert result == 150.0

    def test_sumifs_size_mismatch(self) -> None:
        assert _is_error(_calc('=SUMIFS({1,2,3}, {1,2}, ">0")'), "#VALUE!")

    def test_sumifs_unpaired_criteria(self) -> None:
        result = _calc('=SUMIFS(sales.amount, sales.region, "East", sales.amount)')
        assert _is_error(result, "#VALUE!")

    def test_sumif_criteria_from_model(self) -> None:
        assert _calc("=SUMIF(sales.region, target, sales.amount)", target="West") == 200.0


class TestCountIf:
    def test_countif_wildcard(self) -> None:
        assert _calc('=COUNTIF(sales.product, "ap*")') == 3.0

    def test_countif_not_equal(self) -> None:
        assert _calc('=COUNTIF(sales.amount, "<>100")') == 3.0

    def test_countifs(self) -> None:
        assert _calc('=COUNTIFS(sales.region, "East", sales.product, "apple")') == 1.0

    def test_countifs_size_mismatch(self) -> None:
        assert _is_error(_calc('=COUNTIFS(sales.region, "East", {1,2}, ">0")'), "#VALUE!")


class TestConditionalStats:
    def test_averageif(self) -> None:
        assert _calc('=AVERAGEIF(sales.region, "East", sales.amount)') == 125.0

    def test_averageif_no_match(self) -> None:
        assert _is_error(_calc('=AVERAGEIF(sales.region, "South", sales.amount)'), "#DIV/0!")

    def test_averageifs(self) -> None:
        assert _calc('=AVERAGEIFS(sales.amount, sales.region, "<>East")') == pytest.approx(125.0)

    def test_minifs_maxifs(self) -> None:
        assert _calc('=MINIFS(sales.amount, sales.region, "East")') == 100.0
        assert _calc('=MAXIFS(sales.amount, sales.region, "East")') == 150.0

    def test_minifs_no_match_is_zero(self) -> None:
        assert _calc('=MINIFS(sales.amount, sales.region, "South")') == 0.0


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


class TestIndex:
    def test_horizontal_vector(self) -> None:
        assert _calc("=INDEX({10,20,30}, 2)") == 20.0

    def test_column_vector(self) -> None:
        assert _calc("=INDEX(sales.amount, 3)") == 150.0

    def test_2d(self) -> None:
        assert _calc("=INDEX({1,2;3,4}, 2, 1)") == 3.0

    def test_whole_table(self) -> None:
        assert _calc("=INDEX(sales, 2, 3)") == "apricot"

    def test_zero_row_selects_column(self) -> None:
        result = _calc("=INDEX({1,2;3,4}, 0, 2)")
        assert isinstance(result, ArrayValue)
        assert result.values == [2.0, 4.0]
        assert result.shape == (2, 1)

    def test_out_of_range(self) -> None:
        assert _is_error(_calc("=INDEX({10,20,30}, 5)"), "#REF!")


class TestMatch:
    def test_exact(self) -> None:
        assert _calc("=MATCH(20, {10,20,30}, 0)") == 2.0

    def test_exact_text_case_insensitive(self) -> None:
        assert _calc('=MATCH("BANANA", sales.product, 0)') == 3.0

    def test_exact_wildcard(self) -> None:
        assert _calc('=MATCH("b*", {"apple","banana"}, 0)') == 2.0

    def test_approximate_ascending(self) -> None:
        assert _calc("=MATCH(25, {10,20,30})") == 2.0

    def test_approximate_descending(self) -> None:
        assert _calc("=MATCH(25, {30,20,10}, -1)") == 1.0

    def test_not_found(self) -> None:
        assert _is_error(_calc("=MATCH(99, {10,20,30}, 0)"), "#N/A")
        assert _is_error(_calc("=MATCH(5, {10,20,30})"), "#N/A")

    def test_index_match(self) -> None:
        assert _calc('=INDEX(sales.amount, MATCH("banana", sales.product, 0))') == 150.0


class TestXLookup:
    def test_exact(self) -> None:
        assert _calc('=XLOOKUP("West", sales.region, sales.amount)') == 200.0

    def test_first_match_wins(self) -> None:
        assert _calc('=XLOOKUP("East", sales.region, sales.amount)') == 100.0

    def test_search_last_to_first(self) -> None:
        assert _calc('=XLOOKUP("East", sales.region, sales.amount, , 0, -1)') == 150.0

    def test_not_found_default(self) -> None:
        assert _is_error(_calc('=XLOOKUP("South", sales.region, sales.amount)'), "#N/A")

    def test_not_found_fallback(self) -> None:
        assert _calc('=XLOOKUP("South", sales.region, sales.amount, "none")') == "none"

    def test_next_smaller_and_larger(self) -> None:
        assert _calc("=XLOOKUP(15, {10,20,30}, {1,2,3}, , -1)") == 1.0
        assert _calc("=XLOOKUP(15, {10,20,30}, {1,2,3}, , 1)") == 2.0

    def test_wildcard_mode(self) -> None:
        assert _calc('=XLOOKUP("ban*", sales.product, sales.amount, , 2)') == 150.0

    def test_returns_table_row(self) -> None:
        result = _calc('=XLOOKUP("West", sales.region, sales)')
        assert isinstance(result, ArrayValue)
        assert result.values == ["West", 200.0, "apricot"]

    def test_size_mismatch(self) -> None:
        assert _is_error(_calc("=XLOOKUP(1, {1,2,3}, {1,2})"), "#VALUE!")


class TestVLookupHLookup:
    def test_vlookup_exact(self) -> None:
        assert _calc('=VLOOKUP(2, {1,"a";2,"b";3,"c"}, 2, FALSE)') == "b"

    def test_vlookup_approximate(self) -> None:
        assert _calc('=VLOOKUP(2.5, {1,"a";2,"b";3,"c"}, 2)') == "b"

    def test_vlookup_on_table(self) -> None:
        assert _calc('=VLOOKUP("West", sales, 2, FALSE)') == 200.0

    def test_vlookup_column_out_of_range(self) -> None:
        assert _is_error(_calc('=VLOOKUP(2, {1,"a";2,"b"}, 3, FALSE)'), "#REF!")

    def test_vlookup_not_found(self) -> None:
        assert _is_error(_calc('=VLOOKUP(9, {1,"a";2,"b"}, 2, FALSE)'), "#N/A")

    def test_hlookup(self) -> None:
        assert _calc('=HLOOKUP("b", {"a","b";1,2}, 2, FALSE)') == 2.0


class TestChooseRowsColumns:
    def test_choose(self) -> None:
        assert _calc('=CHOOSE(2, "x", "y")') == "y"

    def test_choose_out_of_range(self) -> None:
        assert _is_error(_calc('=CHOOSE(3, "x", "y")'), "#VALUE!")

    def test_choose_ignores_unselected_errors(self) -> None:
        assert _calc('=CHOOSE(1, "x", 1/0)') == "x"

    def test_rows_columns(self) -> None:
        assert _calc("=ROWS(sales)") == 4.0
        assert _calc("=COLUMNS(sales)") == 3.0
        assert _calc("=ROWS(sales.amount)") == 4.0
        assert _calc("=COLUMNS({1,2})") == 2.0
