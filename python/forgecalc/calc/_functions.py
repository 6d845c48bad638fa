"""Function registry and builtin implementations for formula evaluation."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from decimal import ROUND_DOWN, ROUND_HALF_UP, ROUND_UP, Context, Decimal
from typing import Any, Callable

import numpy as np

from forgecalc.calc._dates import (
    _builtin_date,
    _builtin_datedif,
    _builtin_day,
    _builtin_days,
    _builtin_edate,
    _builtin_eomonth,
    _builtin_hour,
    _builtin_minute,
    _builtin_month,
    _builtin_second,
    _builtin_weekday,
    _builtin_year,
    _builtin_yearfrac,
    serial_to_date,
)
from forgecalc.calc._financial import (
    _builtin_breakeven_revenue,
    _builtin_breakeven_units,
    _builtin_db,
    _builtin_ddb,
    _builtin_fv,
    _builtin_ipmt,
    _builtin_irr,
    _builtin_mirr,
    _builtin_nper,
    _builtin_npv,
    _builtin_pmt,
    _builtin_ppmt,
    _builtin_pv,
    _builtin_rate,
    _builtin_sln,
    _builtin_variance,
    _builtin_variance_pct,
    _builtin_variance_status,
    _builtin_xnpv,
)
from forgecalc.calc._values import (
    ArrayValue,
    ErrorSignal,
    ErrorValue,
    collect_numbers,
    compare_values,
    flatten,
    format_number,
    is_number,
    parse_number,
    to_bool,
    to_number,
    to_text,
    values_equal,
)

# ---------------------------------------------------------------------------
# Builtin implementations.
# Each takes a list of evaluated argument values; arity is checked when the
# formula is bound, so implementations index ``args`` directly.
# ---------------------------------------------------------------------------


def _opt_number(args: list[Any], index: int, default: float) -> float:
    """Numeric optional argument; omitted or blank gives *default*."""
    if index < len(args) and args[index] is not None:
        return to_number(args[index])
    return default


def _as_array(val: Any) -> ArrayValue:
    """View any argument as an array (scalars become 1 x 1)."""
    if isinstance(val, ArrayValue):
        return val
    return ArrayValue(values=[val], n_rows=1, n_cols=1)


def _flatten_range(arg: Any) -> list[Any]:
    """Extract values from an ArrayValue or a single value."""
    if isinstance(arg, ArrayValue):
        return arg.values
    return [arg]


# ---------------------------------------------------------------------------
# Math builtins
# ---------------------------------------------------------------------------

_DECIMAL_CONTEXT = Context(prec=800)


def _round_decimal(x: float, digits: int, mode: str) -> float:
    """Round on the shortest decimal repr of *x*, not its binary expansion.

    ``ROUND(2.675, 2)`` is 2.68 because 2.675 reads as 2.675, although the
    nearest double is slightly below it.
    """
    if not math.isfinite(x):
        raise ValueError("cannot round a non-finite number")
    digits = max(-330, min(330, digits))
    exponent = Decimal(1).scaleb(-digits)
    rounded = Decimal(repr(x)).quantize(exponent, rounding=mode, context=_DECIMAL_CONTEXT)
    return float(rounded)


def _snap(x: float) -> float:
    """Drop binary noise past 15 significant digits (0.30000000000000004 -> 0.3)."""
    return float(f"{x:.15g}")


def _builtin_sum(args: list[Any]) -> float:
    return sum(collect_numbers(args))


def _builtin_product(args: list[Any]) -> float:
    nums = collect_numbers(args)
    if not nums:
        return 0.0
    return math.prod(nums)


def _builtin_sumsq(args: list[Any]) -> float:
    return sum(n * n for n in collect_numbers(args))


def _builtin_sumproduct(args: list[Any]) -> float | ErrorValue:
    """SUMPRODUCT(array1, [array2], ...). Non-numeric entries count as 0."""
    arrays = [_as_array(a) for a in args]
    shape = arrays[0].shape
    if any(arr.shape != shape for arr in arrays):
        return ErrorValue.of("#VALUE!", "SUMPRODUCT arrays must have the same shape")
    total = 0.0
    for i in range(len(arrays[0].values)):
        prod = 1.0
        for arr in arrays:
            v = arr.values[i]
            if isinstance(v, ErrorValue):
                raise ErrorSignal(v)
            prod *= float(v) if is_number(v) else 0.0
        total += prod
    return total


def _builtin_abs(args: list[Any]) -> float:
    return abs(to_number(args[0]))


def _builtin_round(args: list[Any]) -> float:
    digits = int(_opt_number(args, 1, 0.0))
    return _round_decimal(to_number(args[0]), digits, ROUND_HALF_UP)


def _builtin_roundup(args: list[Any]) -> float:
    digits = int(_opt_number(args, 1, 0.0))
    return _round_decimal(to_number(args[0]), digits, ROUND_UP)


def _builtin_rounddown(args: list[Any]) -> float:
    digits = int(_opt_number(args, 1, 0.0))
    return _round_decimal(to_number(args[0]), digits, ROUND_DOWN)


def _builtin_trunc(args: list[Any]) -> float:
    return _builtin_rounddown(args)


def _builtin_int(args: list[Any]) -> float:
    return float(math.floor(to_number(args[0])))


def _builtin_mround(args: list[Any]) -> float | ErrorValue:
    """MROUND(number, multiple). Round half away from zero to a multiple."""
    number = to_number(args[0])
    multiple = to_number(args[1])
    if multiple == 0:
        return 0.0
    if number * multiple < 0:
        return ErrorValue.of("#NUM!", "number and multiple must have the same sign")
    quotient = _round_decimal(_snap(number / multiple), 0, ROUND_HALF_UP)
    return _snap(quotient * multiple)


def _builtin_ceiling(args: list[Any]) -> float | ErrorValue:
    """CEILING(number, [significance]). Round up to a multiple of significance."""
    number = to_number(args[0])
    significance = _opt_number(args, 1, 1.0)
    if significance == 0:
        return 0.0
    if number > 0 and significance < 0:
        return ErrorValue.of("#NUM!", "positive number with negative significance")
    return _snap(math.ceil(_snap(number / significance)) * significance)


def _builtin_floor(args: list[Any]) -> float | ErrorValue:
    """FLOOR(number, [significance]). Round down to a multiple of significance."""
    number = to_number(args[0])
    significance = _opt_number(args, 1, 1.0)
    if significance == 0:
        return ErrorValue.of("#DIV/0!", "significance is zero")
    if number > 0 and significance < 0:
        return ErrorValue.of("#NUM!", "positive number with negative significance")
    return _snap(math.floor(_snap(number / significance)) * significance)


def _builtin_mod(args: list[Any]) -> float:
    number = to_number(args[0])
    divisor = to_number(args[1])
    if divisor == 0:
        raise ZeroDivisionError("MOD: division by zero")
    # Result has the sign of the divisor
    return _snap(number - divisor * math.floor(number / divisor))


def _builtin_quotient(args: list[Any]) -> float:
    numerator = to_number(args[0])
    denominator = to_number(args[1])
    if denominator == 0:
        raise ZeroDivisionError("QUOTIENT: division by zero")
    return float(math.trunc(numerator / denominator))


def power(base: float, exponent: float) -> float | ErrorValue:
    """Exponentiation shared by ``^`` and POWER."""
    if base == 0 and exponent == 0:
        return ErrorValue.of("#NUM!", "0^0 is undefined")
    if base == 0 and exponent < 0:
        return ErrorValue.of("#DIV/0!", "zero raised to a negative power")
    # Negative base with fractional exponent has no real result
    if base < 0 and not float(exponent).is_integer():
        return ErrorValue.of("#NUM!", "negative base with fractional exponent")
    try:
        result = base ** exponent
    except OverflowError:
        return ErrorValue.of("#NUM!", "result is too large")
    if not math.isfinite(result):
        return ErrorValue.of("#NUM!", "result is too large")
    return float(result)


def _builtin_power(args: list[Any]) -> float | ErrorValue:
    return power(to_number(args[0]), to_number(args[1]))


def _builtin_sqrt(args: list[Any]) -> float:
    num = to_number(args[0])
    if num < 0:
        raise ValueError("SQRT: negative argument")
    return math.sqrt(num)


def _builtin_exp(args: list[Any]) -> float:
    return math.exp(to_number(args[0]))


def _builtin_ln(args: list[Any]) -> float:
    num = to_number(args[0])
    if num <= 0:
        raise ValueError("LN: argument must be positive")
    return math.log(num)


def _builtin_log(args: list[Any]) -> float:
    num = to_number(args[0])
    base = _opt_number(args, 1, 10.0)
    if num <= 0 or base <= 0:
        raise ValueError("LOG: arguments must be positive")
    if base == 1:
        raise ZeroDivisionError("LOG: base 1")
    if base == 10:
        return math.log10(num)
    return math.log(num) / math.log(base)


def _builtin_log10(args: list[Any]) -> float:
    num = to_number(args[0])
    if num <= 0:
        raise ValueError("LOG10: argument must be positive")
    return math.log10(num)


def _builtin_pi(args: list[Any]) -> float:
    return math.pi


def _builtin_sign(args: list[Any]) -> float:
    num = to_number(args[0])
    if num > 0:
        return 1.0
    if num < 0:
        return -1.0
    return 0.0


def _builtin_fact(args: list[Any]) -> float:
    num = math.trunc(to_number(args[0]))
    if num < 0:
        raise ValueError("FACT: negative argument")
    if num > 170:
        raise OverflowError("FACT: result is too large")
    return float(math.factorial(num))


# ---------------------------------------------------------------------------
# Statistical builtins
# ---------------------------------------------------------------------------


def _builtin_average(args: list[Any]) -> float | ErrorValue:
    nums = collect_numbers(args)
    if not nums:
        return ErrorValue.of("#DIV/0!", "AVERAGE of no numbers")
    return sum(nums) / len(nums)


def _builtin_averagea(args: list[Any]) -> float | ErrorValue:
    """AVERAGEA: like AVERAGE, but text inside arrays counts as 0, TRUE as 1."""
    nums: list[float] = []
    for a in args:
        if isinstance(a, ArrayValue):
            for v in a.values:
                if isinstance(v, ErrorValue):
                    raise ErrorSignal(v)
                if isinstance(v, bool):
                    nums.append(1.0 if v else 0.0)
                elif is_number(v):
                    nums.append(float(v))
                elif isinstance(v, str):
                    nums.append(0.0)
        elif a is not None:
            nums.append(to_number(a))
    if not nums:
        return ErrorValue.of("#DIV/0!", "AVERAGEA of no values")
    return sum(nums) / len(nums)


def _builtin_min(args: list[Any]) -> float:
    nums = collect_numbers(args)
    if not nums:
        return 0.0
    return min(nums)


def _builtin_max(args: list[Any]) -> float:
    nums = collect_numbers(args)
    if not nums:
        return 0.0
    return max(nums)


def _builtin_median(args: list[Any]) -> float:
    nums = collect_numbers(args)
    if not nums:
        raise ValueError("MEDIAN of no numbers")
    return float(np.median(np.asarray(nums, dtype=float)))


def _builtin_count(args: list[Any]) -> float:
    """COUNT - counts numeric values only; errors and text are skipped."""
    return float(len(collect_numbers(args, propagate_errors=False)))


def _builtin_counta(args: list[Any]) -> float:
    """COUNTA - counts non-empty values."""
    return float(sum(1 for v in flatten(args) if v is not None))


def _builtin_countblank(args: list[Any]) -> float:
    return float(sum(1 for v in _flatten_range(args[0]) if v is None or v == ""))


def _sample(args: list[Any], minimum: int) -> np.ndarray:
    nums = collect_numbers(args)
    if len(nums) < minimum:
        raise ZeroDivisionError(f"needs at least {minimum} numbers")
    return np.asarray(nums, dtype=float)


def _builtin_stdev_s(args: list[Any]) -> float:
    return float(np.std(_sample(args, 2), ddof=1))


def _builtin_stdev_p(args: list[Any]) -> float:
    return float(np.std(_sample(args, 1), ddof=0))


def _builtin_var_s(args: list[Any]) -> float:
    return float(np.var(_sample(args, 2), ddof=1))


def _builtin_var_p(args: list[Any]) -> float:
    return float(np.var(_sample(args, 1), ddof=0))


def _builtin_percentile(args: list[Any]) -> float:
    """PERCENTILE(array, k): inclusive, linear interpolation between ranks."""
    nums = collect_numbers([args[0]])
    k = to_number(args[1])
    if not nums or k < 0 or k > 1:
        raise ValueError("PERCENTILE: k must be in [0, 1] over a non-empty array")
    return float(np.quantile(np.asarray(nums, dtype=float), k))


def _builtin_quartile(args: list[Any]) -> float:
    quart = math.trunc(to_number(args[1]))
    if quart < 0 or quart > 4:
        raise ValueError("QUARTILE: quart must be 0-4")
    return _builtin_percentile([args[0], quart / 4])


def _kth(args: list[Any], largest: bool) -> float:
    nums = sorted(collect_numbers([args[0]]), reverse=largest)
    k = math.ceil(to_number(args[1]))
    if k < 1 or k > len(nums):
        raise ValueError("k is out of range")
    return nums[k - 1]


def _builtin_large(args: list[Any]) -> float:
    return _kth(args, largest=True)


def _builtin_small(args: list[Any]) -> float:
    return _kth(args, largest=False)


def _builtin_rank(args: list[Any]) -> float | ErrorValue:
    """RANK(number, ref, [order]). Order 0 (default) ranks descending."""
    number = to_number(args[0])
    nums = collect_numbers([args[1]])
    ascending = _opt_number(args, 2, 0.0) != 0
    if number not in nums:
        return ErrorValue.of("#N/A", "number is not in the reference list")
    if ascending:
        return float(1 + sum(1 for n in nums if n < number))
    return float(1 + sum(1 for n in nums if n > number))


def _builtin_correl(args: list[Any]) -> float | ErrorValue:
    """CORREL(array1, array2). Pearson correlation over numeric pairs."""
    left = _flatten_range(args[0])
    right = _flatten_range(args[1])
    if len(left) != len(right):
        return ErrorValue.of("#N/A", "CORREL arrays must have the same length")
    xs: list[float] = []
    ys: list[float] = []
    for x, y in zip(left, right):
        err = x if isinstance(x, ErrorValue) else y if isinstance(y, ErrorValue) else None
        if err is not None:
            raise ErrorSignal(err)
        if is_number(x) and is_number(y):
            xs.append(float(x))
            ys.append(float(y))
    if len(xs) < 2:
        raise ZeroDivisionError("CORREL needs at least two pairs")
    x_arr = np.asarray(xs, dtype=float)
    y_arr = np.asarray(ys, dtype=float)
    if np.std(x_arr) == 0 or np.std(y_arr) == 0:
        raise ZeroDivisionError("CORREL of a constant series")
    return float(np.corrcoef(x_arr, y_arr)[0, 1])


# ---------------------------------------------------------------------------
# Criteria matching engine (shared by SUMIF, SUMIFS, COUNTIF, COUNTIFS, ...)
# ---------------------------------------------------------------------------

_CRITERIA_OP_RE = re.compile(r"^(>=|<=|<>|>|<|=)(.*)$", re.DOTALL)


def _wildcard_regex(pattern: str) -> str:
    """Translate a wildcard pattern (``*``, ``?``, ``~`` escape) to a regex."""
    regex = ""
    i = 0
    while i < len(pattern):
        c = pattern[i]
        if c == "~" and i + 1 < len(pattern):
            regex += re.escape(pattern[i + 1])
            i += 2
        elif c == "*":
            regex += ".*"
            i += 1
        elif c == "?":
            regex += "."
            i += 1
        else:
            regex += re.escape(c)
            i += 1
    return regex


def wildcard_match(pattern: str, text: str) -> bool:
    """Match a wildcard pattern (*, ?) against text. Case-insensitive."""
    return re.fullmatch(_wildcard_regex(pattern), text, re.IGNORECASE | re.DOTALL) is not None


def _has_wildcard(text: str) -> bool:
    return "*" in text or "?" in text


def _parse_criteria(criteria: Any) -> Callable[[Any], bool]:
    """Parse a criteria value into a predicate function.

    Supports:
    - Numeric exact match: ``100`` matches values equal to 100
    - Text exact match (case-insensitive): ``"Sales"``
    - Operator prefix: ``">100"``, ``"<=50"``, ``"<>0"``
    - Wildcards: ``"apple*"``, ``"?pple"``
    - Booleans: ``TRUE`` or ``"=FALSE"``
    - Empty text ``""`` matches blanks
    """
    if isinstance(criteria, ErrorValue):
        raise ErrorSignal(criteria)
    if isinstance(criteria, bool):
        return lambda v, c=criteria: isinstance(v, bool) and v == c
    if is_number(criteria):
        target = float(criteria)
        return lambda v: is_number(v) and float(v) == target

    crit_str = to_text(criteria)
    m = _CRITERIA_OP_RE.match(crit_str)
    op, val_str = (m.group(1), m.group(2)) if m else ("=", crit_str)

    threshold = parse_number(val_str)
    if threshold is not None:
        if op == "=":
            return lambda v, t=threshold: _numeric_view(v) == t
        if op == "<>":
            return lambda v, t=threshold: _numeric_view(v) != t
        cmp_num = _COMPARATORS[op]
        return lambda v, t=threshold: is_number(v) and cmp_num(float(v), t)

    upper = val_str.upper()
    if upper in ("TRUE", "FALSE") and op in ("=", "<>"):
        flag = upper == "TRUE"
        if op == "=":
            return lambda v: isinstance(v, bool) and v == flag
        return lambda v: not (isinstance(v, bool) and v == flag)

    if val_str == "":
        if op == "=":
            return lambda v: v is None or v == ""
        if op == "<>":
            return lambda v: v is not None and v != ""

    if op in ("=", "<>"):
        if _has_wildcard(val_str):
            matches = lambda v, p=val_str: isinstance(v, str) and wildcard_match(p, v)  # noqa: E731
        else:
            lower = val_str.lower()
            matches = lambda v, l=lower: isinstance(v, str) and v.lower() == l  # noqa: E731
        if op == "=":
            return matches
        return lambda v: not matches(v)

    cmp_text = _COMPARATORS[op]
    lower = val_str.lower()
    return lambda v, l=lower: isinstance(v, str) and cmp_text(v.lower(), l)


def _numeric_view(v: Any) -> float | None:
    """Numbers and numeric text compare by value in criteria equality."""
    if is_number(v):
        return float(v)
    if isinstance(v, str):
        return parse_number(v)
    return None


_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    ">": lambda a, b: a > b,
    "<": lambda a, b: a < b,
    ">=": lambda a, b: a >= b,
    "<=": lambda a, b: a <= b,
}


def _criteria_pairs(args: list[Any], length: int) -> list[tuple[list[Any], Callable[[Any], bool]]]:
    """Build (values, predicate) pairs; every range must have *length* cells."""
    predicates: list[tuple[list[Any], Callable[[Any], bool]]] = []
    for j in range(0, len(args) - 1, 2):
        cv = _flatten_range(args[j])
        if len(cv) != length:
            raise ErrorSignal(ErrorValue.of("#VALUE!", "criteria ranges must have the same size"))
        predicates.append((cv, _parse_criteria(args[j + 1])))
    return predicates


def _matching(values: list[Any], predicates: list[tuple[list[Any], Callable[[Any], bool]]]) -> list[Any]:
    return [
        values[i]
        for i in range(len(values))
        if all(pred(cv[i]) for cv, pred in predicates)
    ]


def _pairs_check(args: list[Any], offset: int) -> None:
    if (len(args) - offset) % 2 != 0:
        raise ErrorSignal(ErrorValue.of("#VALUE!", "criteria must come in range/criteria pairs"))


# ---------------------------------------------------------------------------
# Conditional aggregation builtins (SUMIF, SUMIFS, COUNTIF, COUNTIFS)
# ---------------------------------------------------------------------------


def _builtin_sumif(args: list[Any]) -> float:
    """SUMIF(criteria_range, criteria, [sum_range])."""
    crit_vals = _flatten_range(args[0])
    sum_vals = _flatten_range(args[2]) if len(args) > 2 and args[2] is not None else crit_vals

    predicate = _parse_criteria(args[1])
    total = 0.0
    for i, cv in enumerate(crit_vals):
        if predicate(cv):
            sv = sum_vals[i] if i < len(sum_vals) else None
            if is_number(sv):
                total += float(sv)
    return total


def _builtin_sumifs(args: list[Any]) -> float:
    """SUMIFS(sum_range, criteria_range1, criteria1, ...).

    Note: sum_range is FIRST (unlike SUMIF where it's last).
    """
    _pairs_check(args, 1)
    sum_vals = _flatten_range(args[0])
    predicates = _criteria_pairs(args[1:], len(sum_vals))
    return sum(float(v) for v in _matching(sum_vals, predicates) if is_number(v))


def _builtin_countif(args: list[Any]) -> float:
    """COUNTIF(range, criteria)."""
    predicate = _parse_criteria(args[1])
    return float(sum(1 for v in _flatten_range(args[0]) if predicate(v)))


def _builtin_countifs(args: list[Any]) -> float:
    """COUNTIFS(criteria_range1, criteria1, [criteria_range2, criteria2, ...])."""
    _pairs_check(args, 0)
    # Length of first criteria range determines row count
    n = len(_flatten_range(args[0]))
    predicates = _criteria_pairs(args, n)
    return float(len(_matching([None] * n, predicates)))


# ---------------------------------------------------------------------------
# Conditional stats: AVERAGEIF, AVERAGEIFS, MINIFS, MAXIFS
# ---------------------------------------------------------------------------


def _builtin_averageif(args: list[Any]) -> float | ErrorValue:
    """AVERAGEIF(criteria_range, criteria, [average_range])."""
    crit_vals = _flatten_range(args[0])
    avg_vals = _flatten_range(args[2]) if len(args) > 2 and args[2] is not None else crit_vals

    predicate = _parse_criteria(args[1])
    total = 0.0
    count = 0
    for i, cv in enumerate(crit_vals):
        if predicate(cv):
            av = avg_vals[i] if i < len(avg_vals) else None
            if is_number(av):
                total += float(av)
                count += 1
    if count == 0:
        return ErrorValue.of("#DIV/0!", "no values meet the criteria")
    return total / count


def _builtin_averageifs(args: list[Any]) -> float | ErrorValue:
    """AVERAGEIFS(average_range, criteria_range1, criteria1, ...).

    Note: average_range is FIRST (like SUMIFS).
    """
    _pairs_check(args, 1)
    avg_vals = _flatten_range(args[0])
    predicates = _criteria_pairs(args[1:], len(avg_vals))
    nums = [float(v) for v in _matching(avg_vals, predicates) if is_number(v)]
    if not nums:
        return ErrorValue.of("#DIV/0!", "no values meet the criteria")
    return sum(nums) / len(nums)


def _builtin_minifs(args: list[Any]) -> float:
    """MINIFS(min_range, criteria_range1, criteria1, ...).

    Returns the minimum value among cells meeting all criteria, 0 if none.
    """
    _pairs_check(args, 1)
    min_vals = _flatten_range(args[0])
    predicates = _criteria_pairs(args[1:], len(min_vals))
    candidates = [float(v) for v in _matching(min_vals, predicates) if is_number(v)]
    return min(candidates) if candidates else 0.0


def _builtin_maxifs(args: list[Any]) -> float:
    """MAXIFS(max_range, criteria_range1, criteria1, ...).

    Returns the maximum value among cells meeting all criteria, 0 if none.
    """
    _pairs_check(args, 1)
    max_vals = _flatten_range(args[0])
    predicates = _criteria_pairs(args[1:], len(max_vals))
    candidates = [float(v) for v in _matching(max_vals, predicates) if is_number(v)]
    return max(candidates) if candidates else 0.0


# ---------------------------------------------------------------------------
# Logical builtins
# ---------------------------------------------------------------------------


def _branch(args: list[Any], index: int, default: Any) -> Any:
    """Return a branch argument: missing gives *default*, blank gives 0."""
    if index >= len(args):
        return default
    value = args[index]
    return 0.0 if value is None else value


def _builtin_if(args: list[Any]) -> Any:
    condition = args[0]
    if isinstance(condition, ErrorValue):
        return condition
    if to_bool(condition):
        return _branch(args, 1, True)
    return _branch(args, 2, False)


def _builtin_ifs(args: list[Any]) -> Any:
    """IFS(condition1, value1, [condition2, value2], ...)."""
    if len(args) % 2 != 0:
        return ErrorValue.of("#VALUE!", "IFS needs condition/value pairs")
    for j in range(0, len(args), 2):
        condition = args[j]
        if isinstance(condition, ErrorValue):
            return condition
        if to_bool(condition):
            return _branch(args, j + 1, 0.0)
    return ErrorValue.of("#N/A", "no IFS condition is true")


def _builtin_iferror(args: list[Any]) -> Any:
    if isinstance(args[0], ErrorValue):
        return _branch(args, 1, 0.0)
    return args[0]


def _builtin_ifna(args: list[Any]) -> Any:
    if isinstance(args[0], ErrorValue) and args[0].code == "#N/A":
        return _branch(args, 1, 0.0)
    return args[0]


def _logical_values(args: list[Any]) -> list[bool]:
    values: list[bool] = []
    for a in args:
        if isinstance(a, ArrayValue):
            for v in a.values:
                if isinstance(v, ErrorValue):
                    raise ErrorSignal(v)
                if isinstance(v, bool) or is_number(v):
                    values.append(bool(v))
        elif a is not None:
            values.append(to_bool(a))
    if not values:
        raise ErrorSignal(ErrorValue.of("#VALUE!", "no logical values"))
    return values


def _builtin_and(args: list[Any]) -> bool:
    return all(_logical_values(args))


def _builtin_or(args: list[Any]) -> bool:
    return any(_logical_values(args))


def _builtin_xor(args: list[Any]) -> bool:
    return sum(_logical_values(args)) % 2 == 1


def _builtin_not(args: list[Any]) -> bool:
    return not to_bool(args[0])


def _builtin_switch(args: list[Any]) -> Any:
    """SWITCH(expression, value1, result1, [value2, result2], ..., [default])."""
    subject = args[0]
    if isinstance(subject, ErrorValue):
        return subject
    pairs = args[1:]
    for j in range(0, len(pairs) - 1, 2):
        candidate = pairs[j]
        if isinstance(candidate, ErrorValue):
            return candidate
        if values_equal(subject, candidate):
            return _branch(pairs, j + 1, 0.0)
    if len(pairs) % 2 == 1:
        return _branch(pairs, len(pairs) - 1, 0.0)
    return ErrorValue.of("#N/A", "no SWITCH value matches")


def _builtin_true(args: list[Any]) -> bool:
    return True


def _builtin_false(args: list[Any]) -> bool:
    return False


def _builtin_na(args: list[Any]) -> ErrorValue:
    return ErrorValue.NA


def _builtin_iserror(args: list[Any]) -> bool:
    return isinstance(args[0], ErrorValue)


def _builtin_iserr(args: list[Any]) -> bool:
    return isinstance(args[0], ErrorValue) and args[0].code != "#N/A"


def _builtin_isna(args: list[Any]) -> bool:
    return isinstance(args[0], ErrorValue) and args[0].code == "#N/A"


def _builtin_isnumber(args: list[Any]) -> bool:
    return is_number(args[0])


def _builtin_istext(args: list[Any]) -> bool:
    return isinstance(args[0], str)


def _builtin_islogical(args: list[Any]) -> bool:
    return isinstance(args[0], bool)


def _builtin_isblank(args: list[Any]) -> bool:
    return args[0] is None


# ---------------------------------------------------------------------------
# Text builtins
# ---------------------------------------------------------------------------

_MAX_TEXT_LENGTH = 32767


def _count_arg(args: list[Any], index: int, default: int) -> int:
    count = int(_opt_number(args, index, float(default)))
    if count < 0:
        raise ErrorSignal(ErrorValue.of("#VALUE!", "character count must not be negative"))
    return count


def _builtin_left(args: list[Any]) -> str:
    text = to_text(args[0])
    return text[:_count_arg(args, 1, 1)]


def _builtin_right(args: list[Any]) -> str:
    text = to_text(args[0])
    num_chars = _count_arg(args, 1, 1)
    return text[-num_chars:] if num_chars > 0 else ""


def _builtin_mid(args: list[Any]) -> str | ErrorValue:
    text = to_text(args[0])
    start = int(to_number(args[1]))
    num_chars = int(to_number(args[2]))
    if start < 1 or num_chars < 0:
        return ErrorValue.of("#VALUE!", "MID start must be >= 1 and length >= 0")
    # 1-indexed
    return text[start - 1 : start - 1 + num_chars]


def _builtin_len(args: list[Any]) -> float:
    return float(len(to_text(args[0])))


def _builtin_concatenate(args: list[Any]) -> str:
    return "".join(to_text(a) for a in args)


def _builtin_concat(args: list[Any]) -> str:
    """CONCAT(text1, ...). Like CONCATENATE, but arrays are joined cell by cell."""
    return "".join(to_text(v) for v in flatten(args))


def _builtin_textjoin(args: list[Any]) -> str | ErrorValue:
    """TEXTJOIN(delimiter, ignore_empty, text1, ...)."""
    delimiter = to_text(args[0])
    ignore_empty = to_bool(args[1])
    parts = [to_text(v) for v in flatten(args[2:])]
    if ignore_empty:
        parts = [p for p in parts if p != ""]
    result = delimiter.join(parts)
    if len(result) > _MAX_TEXT_LENGTH:
        return ErrorValue.of("#VALUE!", "result is too long")
    return result


def _builtin_upper(args: list[Any]) -> str:
    return to_text(args[0]).upper()


def _builtin_lower(args: list[Any]) -> str:
    return to_text(args[0]).lower()


def _builtin_proper(args: list[Any]) -> str:
    """PROPER: capitalize the first letter of every run of letters."""
    chars: list[str] = []
    prev_alpha = False
    for ch in to_text(args[0]):
        chars.append(ch.lower() if prev_alpha else ch.upper())
        prev_alpha = ch.isalpha()
    return "".join(chars)


def _builtin_trim(args: list[Any]) -> str:
    """TRIM: remove leading/trailing spaces and collapse internal spaces."""
    return " ".join(part for part in to_text(args[0]).split(" ") if part)


def _builtin_substitute(args: list[Any]) -> str | ErrorValue:
    """SUBSTITUTE(text, old_text, new_text, [instance_num])."""
    text = to_text(args[0])
    old_text = to_text(args[1])
    new_text = to_text(args[2])
    if not old_text:
        return text

    if len(args) > 3 and args[3] is not None:
        instance = int(to_number(args[3]))
        if instance < 1:
            return ErrorValue.of("#VALUE!", "instance_num must be >= 1")
        # Replace only the Nth occurrence
        count = 0
        start = 0
        while True:
            idx = text.find(old_text, start)
            if idx == -1:
                break
            count += 1
            if count == instance:
                return text[:idx] + new_text + text[idx + len(old_text):]
            start = idx + len(old_text)
        return text  # instance not found, return unchanged

    return text.replace(old_text, new_text)


def _builtin_replace(args: list[Any]) -> str | ErrorValue:
    """REPLACE(old_text, start_num, num_chars, new_text)."""
    text = to_text(args[0])
    start = int(to_number(args[1]))
    num_chars = int(to_number(args[2]))
    new_text = to_text(args[3])
    if start < 1 or num_chars < 0:
        return ErrorValue.of("#VALUE!", "REPLACE start must be >= 1 and length >= 0")
    return text[:start - 1] + new_text + text[start - 1 + num_chars:]


_MONTH_ABBRS = [
    "", "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
]
_MONTH_NAMES = [
    "", "January", "February", "March", "April", "May", "June", "July",
    "August", "September", "October", "November", "December",
]


def _fixed(val: float, decimals: int, grouping: bool = False) -> str:
    """Format with half-away-from-zero rounding on the decimal repr."""
    rounded = Decimal(repr(val)).quantize(
        Decimal(1).scaleb(-decimals), rounding=ROUND_HALF_UP, context=_DECIMAL_CONTEXT
    )
    if rounded == 0:
        rounded = abs(rounded)
    spec = f",.{decimals}f" if grouping else f".{decimals}f"
    return format(rounded, spec)


def _builtin_text(args: list[Any]) -> str:
    """TEXT(value, format_text). Supports common number and date patterns."""
    value = args[0]
    fmt = to_text(args[1])

    if isinstance(value, str):
        num = parse_number(value)
        if num is None:
            return value
        value = num
    if isinstance(value, bool) or not is_number(value):
        return to_text(value)

    val = float(value)
    # Strip quotes for matching (e.g., "$"#,##0 -> $#,##0)
    fmt_clean = fmt.replace('"', '')
    fmt_lower = fmt_clean.lower()

    # --- Percentage formats ---
    if re.fullmatch(r"0(\.0+)?%", fmt_lower):
        decimals = len(fmt_lower.split(".")[1]) - 1 if "." in fmt_lower else 0
        return f"{_fixed(val * 100, decimals)}%"

    # --- Number formats with commas ---
    if re.fullmatch(r"#,##0(\.0+)?", fmt_lower):
        decimals = len(fmt_lower.split(".")[-1]) if "." in fmt_lower else 0
        return _fixed(val, decimals, grouping=True)

    # --- Currency: $#,##0 and $#,##0.00 ---
    if re.fullmatch(r"\$#,##0(\.0+)?", fmt_lower):
        decimals = len(fmt_lower.split(".")[-1]) if "." in fmt_lower else 0
        body = _fixed(abs(val), decimals, grouping=True)
        return f"-${body}" if val < 0 and body.strip("0.,") else f"${body}"

    # --- Accounting format with parentheses for negatives ---
    if fmt_lower in ("#,##0_);(#,##0)", "#,##0.00_);(#,##0.00)"):
        decimals = 2 if ".00" in fmt_lower else 0
        if val < 0:
            return f"({_fixed(abs(val), decimals, grouping=True)})"
        return f"{_fixed(val, decimals, grouping=True)} "  # trailing space aligns with paren width

    # --- Scientific notation ---
    if fmt_lower == "0.00e+00":
        return f"{val:.2E}"

    # --- Date serial formats ---
    if fmt_lower in ("yyyy-mm-dd", "yyyy/mm/dd"):
        y, m, d = serial_to_date(int(val))
        sep = "-" if "-" in fmt_clean else "/"
        return f"{y:04d}{sep}{m:02d}{sep}{d:02d}"
    if fmt_lower in ("mm/dd/yyyy", "dd/mm/yyyy"):
        y, m, d = serial_to_date(int(val))
        if fmt_lower.startswith("mm"):
            return f"{m:02d}/{d:02d}/{y:04d}"
        return f"{d:02d}/{m:02d}/{y:04d}"
    if fmt_lower in ("d-mmm-yy", "d-mmm-yyyy"):
        y, m, d = serial_to_date(int(val))
        if fmt_lower == "d-mmm-yy":
            return f"{d}-{_MONTH_ABBRS[m]}-{y % 100:02d}"
        return f"{d}-{_MONTH_ABBRS[m]}-{y:04d}"
    if fmt_lower == "mmm-yy":
        y, m, _d = serial_to_date(int(val))
        return f"{_MONTH_ABBRS[m]}-{y % 100:02d}"
    if fmt_lower == "mmmm yyyy":
        y, m, _d = serial_to_date(int(val))
        return f"{_MONTH_NAMES[m]} {y:04d}"
    if fmt_lower == "yyyy":
        y, _m, _d = serial_to_date(int(val))
        return f"{y:04d}"

    # --- Plain numeric 0, 0.0, 0.00, 0.000, etc. ---
    if re.fullmatch(r"0(\.0+)?", fmt_lower):
        decimals = len(fmt_lower.split(".")[-1]) if "." in fmt_lower else 0
        return _fixed(val, decimals)

    # General and unrecognized patterns
    return format_number(val)


def _builtin_rept(args: list[Any]) -> str | ErrorValue:
    """REPT(text, number_times)."""
    text = to_text(args[0])
    n = int(to_number(args[1]))
    if n < 0 or len(text) * n > _MAX_TEXT_LENGTH:
        return ErrorValue.of("#VALUE!", "REPT count is out of range")
    return text * n


def _builtin_exact(args: list[Any]) -> bool:
    """EXACT(text1, text2). Case-sensitive comparison."""
    return to_text(args[0]) == to_text(args[1])


def _start_arg(args: list[Any], within_text: str) -> int:
    start_num = int(_opt_number(args, 2, 1.0))
    if start_num < 1 or start_num > len(within_text) + 1:
        raise ErrorSignal(ErrorValue.of("#VALUE!", "start_num is out of range"))
    return start_num


def _builtin_find(args: list[Any]) -> float | ErrorValue:
    """FIND(find_text, within_text, [start_num]). Case-sensitive, 1-based."""
    find_text = to_text(args[0])
    within_text = to_text(args[1])
    start_num = _start_arg(args, within_text)

    # Convert to 0-based for Python's str.find
    idx = within_text.find(find_text, start_num - 1)
    if idx == -1:
        return ErrorValue.of("#VALUE!", f"{find_text!r} not found")
    return float(idx + 1)  # Back to 1-based


def _builtin_search(args: list[Any]) -> float | ErrorValue:
    """SEARCH(find_text, within_text, [start_num]). Case-insensitive, wildcards."""
    find_text = to_text(args[0])
    within_text = to_text(args[1])
    start_num = _start_arg(args, within_text)
    pattern = re.compile(_wildcard_regex(find_text), re.IGNORECASE | re.DOTALL)
    m = pattern.search(within_text, start_num - 1)
    if m is None:
        return ErrorValue.of("#VALUE!", f"{find_text!r} not found")
    return float(m.start() + 1)


def _builtin_value(args: list[Any]) -> float | ErrorValue:
    """VALUE(text). Convert numeric text (``"1,250"``, ``"$4.50"``, ``"15%"``)."""
    val = args[0]
    if isinstance(val, bool):
        return ErrorValue.of("#VALUE!", "VALUE expects text or a number")
    if is_number(val):
        return float(val)
    text = to_text(val).strip()
    negative = text.startswith("-")
    body = text[1:] if negative else text
    if body.startswith("$"):
        body = body[1:]
    num = parse_number(body)
    if num is None:
        return ErrorValue.of("#VALUE!", f"cannot convert {text!r} to a number")
    return -num if negative else num


# ---------------------------------------------------------------------------
# Lookup builtins (INDEX, MATCH, XLOOKUP, VLOOKUP, HLOOKUP, CHOOSE)
# ---------------------------------------------------------------------------


def _lookup_le(candidate: Any, target: Any) -> bool:
    """``candidate <= target`` for same-kind values; mixed kinds never match."""
    if isinstance(candidate, ErrorValue) or candidate is None:
        return False
    if is_number(candidate) != is_number(target) or isinstance(candidate, str) != isinstance(target, str):
        return False
    return compare_values(candidate, target) <= 0


def _lookup_ge(candidate: Any, target: Any) -> bool:
    if isinstance(candidate, ErrorValue) or candidate is None:
        return False
    if is_number(candidate) != is_number(target) or isinstance(candidate, str) != isinstance(target, str):
        return False
    return compare_values(candidate, target) >= 0


def _builtin_index(args: list[Any]) -> Any:
    """INDEX(array, row_num, [col_num]).

    A 0 row (or column) selects the whole column (or row).
    """
    array = _as_array(args[0])
    row_num = int(to_number(args[1]))
    col_num = int(to_number(args[2])) if len(args) > 2 and args[2] is not None else None

    if col_num is None:
        # 1D horizontal array: row_num acts as column index
        if array.n_rows == 1:
            if row_num < 1 or row_num > array.n_cols:
                return ErrorValue.of("#REF!", "INDEX position is out of range")
            return array.get(1, row_num)
        col_num = 1 if array.n_cols == 1 else 0

    if row_num < 0 or row_num > array.n_rows or col_num < 0 or col_num > array.n_cols:
        return ErrorValue.of("#REF!", "INDEX position is out of range")
    if row_num == 0 and col_num == 0:
        return array
    if row_num == 0:
        return ArrayValue.column_vector(array.column(col_num))
    if col_num == 0:
        return ArrayValue(values=array.row(row_num), n_rows=1, n_cols=array.n_cols)
    return array.get(row_num, col_num)


def _builtin_match(args: list[Any]) -> float | ErrorValue:
    """MATCH(lookup_value, lookup_array, [match_type]).

    match_type: 1=largest<= (default), 0=exact, -1=smallest>=.
    Exact matches on text accept wildcards.
    """
    lookup_value = args[0]
    values = _flatten_range(args[1])
    match_type = int(_opt_number(args, 2, 1.0))

    if match_type == 0:
        # Exact match - case-insensitive for strings
        wildcard = isinstance(lookup_value, str) and _has_wildcard(lookup_value)
        for i, v in enumerate(values):
            if wildcard and isinstance(v, str):
                if wildcard_match(lookup_value, v):
                    return float(i + 1)
            elif values_equal(lookup_value, v):
                return float(i + 1)
        return ErrorValue.of("#N/A", "no exact match")

    if match_type > 0:
        # Largest value <= lookup (assumes sorted ascending)
        best_idx = None
        for i, v in enumerate(values):
            if _lookup_le(v, lookup_value):
                best_idx = i + 1
        return float(best_idx) if best_idx is not None else ErrorValue.of("#N/A", "no match")

    # Smallest value >= lookup (assumes sorted descending)
    best_idx = None
    for i, v in enumerate(values):
        if _lookup_ge(v, lookup_value):
            best_idx = i + 1
    return float(best_idx) if best_idx is not None else ErrorValue.of("#N/A", "no match")


def _builtin_xlookup(args: list[Any]) -> Any:
    """XLOOKUP(lookup_value, lookup_array, return_array, [if_not_found], [match_mode], [search_mode]).

    match_mode: 0=exact (default), -1=next smaller, 1=next larger, 2=wildcard.
    search_mode: 1=first-to-last (default), -1=last-to-first.
    """
    lookup_value = args[0]
    lookup_vals = _flatten_range(args[1])
    return_array = _as_array(args[2])
    if_not_found = args[3] if len(args) > 3 and args[3] is not None else ErrorValue.of("#N/A", "no match")
    match_mode = int(_opt_number(args, 4, 0.0))
    search_mode = int(_opt_number(args, 5, 1.0))

    if match_mode not in (0, -1, 1, 2) or search_mode not in (1, -1):
        return ErrorValue.of("#VALUE!", "unsupported XLOOKUP mode")

    n = len(lookup_vals)
    if return_array.n_rows == n and return_array.n_cols > 1:
        def _result(idx: int) -> Any:
            return ArrayValue(values=return_array.row(idx + 1), n_rows=1, n_cols=return_array.n_cols)
    elif return_array.n_cols == n and return_array.n_rows > 1:
        def _result(idx: int) -> Any:
            return ArrayValue.column_vector(return_array.column(idx + 1))
    elif len(return_array.values) == n:
        def _result(idx: int) -> Any:
            return return_array.values[idx]
    else:
        return ErrorValue.of("#VALUE!", "lookup and return arrays differ in size")

    search_range = range(n) if search_mode == 1 else range(n - 1, -1, -1)

    # --- Exact match (0) or wildcard match (2) ---
    if match_mode in (0, 2):
        for i in search_range:
            v = lookup_vals[i]
            if match_mode == 2 and isinstance(lookup_value, str) and isinstance(v, str):
                if wildcard_match(lookup_value, v):
                    return _result(i)
            elif values_equal(lookup_value, v):
                return _result(i)
        return if_not_found

    # --- Approximate match: -1 (next smaller) or 1 (next larger) ---
    best_idx: int | None = None
    for i in search_range:
        v = lookup_vals[i]
        if values_equal(lookup_value, v):
            return _result(i)
        if match_mode == -1 and _lookup_le(v, lookup_value):
            if best_idx is None or compare_values(v, lookup_vals[best_idx]) > 0:
                best_idx = i
        elif match_mode == 1 and _lookup_ge(v, lookup_value):
            if best_idx is None or compare_values(v, lookup_vals[best_idx]) < 0:
                best_idx = i

    if best_idx is not None:
        return _result(best_idx)
    return if_not_found


def _range_lookup_flag(args: list[Any]) -> bool:
    if len(args) > 3 and args[3] is not None:
        return to_bool(args[3])
    return True


def _vector_lookup(lookup_value: Any, keys: list[Any], results: list[Any], approximate: bool) -> Any:
    """Shared VLOOKUP/HLOOKUP search over the first row or column."""
    if approximate:
        # Largest value <= lookup_value (sorted ascending)
        best_idx = None
        for i, v in enumerate(keys):
            if _lookup_le(v, lookup_value):
                best_idx = i
        if best_idx is None:
            return ErrorValue.of("#N/A", "no match")
        return results[best_idx]
    # Exact match (case-insensitive for strings)
    wildcard = isinstance(lookup_value, str) and _has_wildcard(lookup_value)
    for i, v in enumerate(keys):
        if wildcard and isinstance(v, str):
            if wildcard_match(lookup_value, v):
                return results[i]
        elif values_equal(lookup_value, v):
            return results[i]
    return ErrorValue.of("#N/A", "no exact match")


def _builtin_vlookup(args: list[Any]) -> Any:
    """VLOOKUP(lookup_value, table_array, col_index_num, [range_lookup]).

    range_lookup: FALSE (or 0) = exact match, TRUE (or 1, default) = approximate.
    Approximate match assumes the first column is sorted ascending and finds
    the largest value <= lookup_value.
    """
    table = _as_array(args[1])
    col_index_num = int(to_number(args[2]))
    if col_index_num < 1:
        return ErrorValue.of("#VALUE!", "col_index_num must be >= 1")
    if col_index_num > table.n_cols:
        return ErrorValue.of("#REF!", "col_index_num exceeds the table width")
    return _vector_lookup(args[0], table.column(1), table.column(col_index_num), _range_lookup_flag(args))


def _builtin_hlookup(args: list[Any]) -> Any:
    """HLOOKUP(lookup_value, table_array, row_index_num, [range_lookup]).

    Searches the first row of a table and returns a value from the specified row.
    """
    table = _as_array(args[1])
    row_index_num = int(to_number(args[2]))
    if row_index_num < 1:
        return ErrorValue.of("#VALUE!", "row_index_num must be >= 1")
    if row_index_num > table.n_rows:
        return ErrorValue.of("#REF!", "row_index_num exceeds the table height")
    return _vector_lookup(args[0], table.row(1), table.row(row_index_num), _range_lookup_flag(args))


def _builtin_choose(args: list[Any]) -> Any:
    """CHOOSE(index_num, value1, value2, ...)."""
    if isinstance(args[0], ErrorValue):
        return args[0]
    index_num = int(to_number(args[0]))
    if index_num < 1 or index_num > len(args) - 1:
        return ErrorValue.of("#VALUE!", "CHOOSE index is out of range")
    return _branch(args, index_num, 0.0)


def _builtin_rows(args: list[Any]) -> float:
    return float(_as_array(args[0]).n_rows)


def _builtin_columns(args: list[Any]) -> float:
    return float(_as_array(args[0]).n_cols)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FunctionSpec:
    """A registered function: implementation, arity bounds and dispatch flags.

    ``max_args`` of None means variadic. An ``error_aware`` function receives
    error arguments instead of having them propagate before the call. A
    ``takes_ranges`` function reads other tables' columns whole, even from
    inside a row formula.
    """

    func: Callable[[list[Any]], Any]
    min_args: int
    max_args: int | None
    category: str
    error_aware: bool = False
    takes_ranges: bool = False

    def accepts(self, n_args: int) -> bool:
        if n_args < self.min_args:
            return False
        return self.max_args is None or n_args <= self.max_args

    def arity_text(self) -> str:
        if self.max_args is None:
            return f"at least {self.min_args}"
        if self.min_args == self.max_args:
            return f"exactly {self.min_args}"
        return f"{self.min_args} to {self.max_args}"


def _fn(
    func: Callable[[list[Any]], Any],
    min_args: int,
    max_args: int | None,
    category: str,
    error_aware: bool = False,
    ranges: bool = False,
) -> FunctionSpec:
    return FunctionSpec(func, min_args, max_args, category, error_aware, ranges)


_BUILTINS: dict[str, FunctionSpec] = {
    # Math
    "SUM": _fn(_builtin_sum, 1, None, "math", ranges=True),
    "PRODUCT": _fn(_builtin_product, 1, None, "math", ranges=True),
    "SUMPRODUCT": _fn(_builtin_sumproduct, 1, None, "math", ranges=True),
    "SUMSQ": _fn(_builtin_sumsq, 1, None, "math", ranges=True),
    "ABS": _fn(_builtin_abs, 1, 1, "math"),
    "ROUND": _fn(_builtin_round, 1, 2, "math"),
    "ROUNDUP": _fn(_builtin_roundup, 1, 2, "math"),
    "ROUNDDOWN": _fn(_builtin_rounddown, 1, 2, "math"),
    "MROUND": _fn(_builtin_mround, 2, 2, "math"),
    "CEILING": _fn(_builtin_ceiling, 1, 2, "math"),
    "FLOOR": _fn(_builtin_floor, 1, 2, "math"),
    "INT": _fn(_builtin_int, 1, 1, "math"),
    "TRUNC": _fn(_builtin_trunc, 1, 2, "math"),
    "MOD": _fn(_builtin_mod, 2, 2, "math"),
    "QUOTIENT": _fn(_builtin_quotient, 2, 2, "math"),
    "POWER": _fn(_builtin_power, 2, 2, "math"),
    "SQRT": _fn(_builtin_sqrt, 1, 1, "math"),
    "EXP": _fn(_builtin_exp, 1, 1, "math"),
    "LN": _fn(_builtin_ln, 1, 1, "math"),
    "LOG": _fn(_builtin_log, 1, 2, "math"),
    "LOG10": _fn(_builtin_log10, 1, 1, "math"),
    "PI": _fn(_builtin_pi, 0, 0, "math"),
    "SIGN": _fn(_builtin_sign, 1, 1, "math"),
    "FACT": _fn(_builtin_fact, 1, 1, "math"),
    # Statistical
    "AVERAGE": _fn(_builtin_average, 1, None, "statistical", ranges=True),
    "AVERAGEA": _fn(_builtin_averagea, 1, None, "statistical", ranges=True),
    "MIN": _fn(_builtin_min, 1, None, "statistical", ranges=True),
    "MAX": _fn(_builtin_max, 1, None, "statistical", ranges=True),
    "MEDIAN": _fn(_builtin_median, 1, None, "statistical", ranges=True),
    "COUNT": _fn(_builtin_count, 1, None, "statistical", error_aware=True, ranges=True),
    "COUNTA": _fn(_builtin_counta, 1, None, "statistical", error_aware=True, ranges=True),
    "COUNTBLANK": _fn(_builtin_countblank, 1, 1, "statistical", ranges=True),
    "COUNTIF": _fn(_builtin_countif, 2, 2, "statistical", ranges=True),
    "COUNTIFS": _fn(_builtin_countifs, 2, None, "statistical", ranges=True),
    "SUMIF": _fn(_builtin_sumif, 2, 3, "statistical", ranges=True),
    "SUMIFS": _fn(_builtin_sumifs, 3, None, "statistical", ranges=True),
    "AVERAGEIF": _fn(_builtin_averageif, 2, 3, "statistical", ranges=True),
    "AVERAGEIFS": _fn(_builtin_averageifs, 3, None, "statistical", ranges=True),
    "MINIFS": _fn(_builtin_minifs, 3, None, "statistical", ranges=True),
    "MAXIFS": _fn(_builtin_maxifs, 3, None, "statistical", ranges=True),
    "STDEV": _fn(_builtin_stdev_s, 1, None, "statistical", ranges=True),
    "STDEV.S": _fn(_builtin_stdev_s, 1, None, "statistical", ranges=True),
    "STDEV.P": _fn(_builtin_stdev_p, 1, None, "statistical", ranges=True),
    "VAR": _fn(_builtin_var_s, 1, None, "statistical", ranges=True),
    "VAR.S": _fn(_builtin_var_s, 1, None, "statistical", ranges=True),
    "VAR.P": _fn(_builtin_var_p, 1, None, "statistical", ranges=True),
    "PERCENTILE": _fn(_builtin_percentile, 2, 2, "statistical", ranges=True),
    "PERCENTILE.INC": _fn(_builtin_percentile, 2, 2, "statistical", ranges=True),
    "QUARTILE": _fn(_builtin_quartile, 2, 2, "statistical", ranges=True),
    "LARGE": _fn(_builtin_large, 2, 2, "statistical", ranges=True),
    "SMALL": _fn(_builtin_small, 2, 2, "statistical", ranges=True),
    "RANK": _fn(_builtin_rank, 2, 3, "statistical", ranges=True),
    "RANK.EQ": _fn(_builtin_rank, 2, 3, "statistical", ranges=True),
    "CORREL": _fn(_builtin_correl, 2, 2, "statistical", ranges=True),
    # Logic
    "IF": _fn(_builtin_if, 1, 3, "logic", error_aware=True),
    "IFS": _fn(_builtin_ifs, 2, None, "logic", error_aware=True),
    "IFERROR": _fn(_builtin_iferror, 2, 2, "logic", error_aware=True),
    "IFNA": _fn(_builtin_ifna, 2, 2, "logic", error_aware=True),
    "AND": _fn(_builtin_and, 1, None, "logic", ranges=True),
    "OR": _fn(_builtin_or, 1, None, "logic", ranges=True),
    "XOR": _fn(_builtin_xor, 1, None, "logic", ranges=True),
    "NOT": _fn(_builtin_not, 1, 1, "logic"),
    "SWITCH": _fn(_builtin_switch, 3, None, "logic", error_aware=True),
    "TRUE": _fn(_builtin_true, 0, 0, "logic"),
    "FALSE": _fn(_builtin_false, 0, 0, "logic"),
    "NA": _fn(_builtin_na, 0, 0, "logic"),
    "ISERROR": _fn(_builtin_iserror, 1, 1, "logic", error_aware=True),
    "ISERR": _fn(_builtin_iserr, 1, 1, "logic", error_aware=True),
    "ISNA": _fn(_builtin_isna, 1, 1, "logic", error_aware=True),
    "ISNUMBER": _fn(_builtin_isnumber, 1, 1, "logic", error_aware=True),
    "ISTEXT": _fn(_builtin_istext, 1, 1, "logic", error_aware=True),
    "ISLOGICAL": _fn(_builtin_islogical, 1, 1, "logic", error_aware=True),
    "ISBLANK": _fn(_builtin_isblank, 1, 1, "logic", error_aware=True),
    # Text
    "LEFT": _fn(_builtin_left, 1, 2, "text"),
    "RIGHT": _fn(_builtin_right, 1, 2, "text"),
    "MID": _fn(_builtin_mid, 3, 3, "text"),
    "LEN": _fn(_builtin_len, 1, 1, "text"),
    "CONCATENATE": _fn(_builtin_concatenate, 1, None, "text"),
    "CONCAT": _fn(_builtin_concat, 1, None, "text", ranges=True),
    "TEXTJOIN": _fn(_builtin_textjoin, 3, None, "text", ranges=True),
    "UPPER": _fn(_builtin_upper, 1, 1, "text"),
    "LOWER": _fn(_builtin_lower, 1, 1, "text"),
    "PROPER": _fn(_builtin_proper, 1, 1, "text"),
    "TRIM": _fn(_builtin_trim, 1, 1, "text"),
    "SUBSTITUTE": _fn(_builtin_substitute, 3, 4, "text"),
    "REPLACE": _fn(_builtin_replace, 4, 4, "text"),
    "TEXT": _fn(_builtin_text, 2, 2, "text"),
    "REPT": _fn(_builtin_rept, 2, 2, "text"),
    "EXACT": _fn(_builtin_exact, 2, 2, "text"),
    "FIND": _fn(_builtin_find, 2, 3, "text"),
    "SEARCH": _fn(_builtin_search, 2, 3, "text"),
    "VALUE": _fn(_builtin_value, 1, 1, "text"),
    # Date and time
    "DATE": _fn(_builtin_date, 3, 3, "date"),
    "YEAR": _fn(_builtin_year, 1, 1, "date"),
    "MONTH": _fn(_builtin_month, 1, 1, "date"),
    "DAY": _fn(_builtin_day, 1, 1, "date"),
    "EDATE": _fn(_builtin_edate, 2, 2, "date"),
    "EOMONTH": _fn(_builtin_eomonth, 2, 2, "date"),
    "DAYS": _fn(_builtin_days, 2, 2, "date"),
    "DATEDIF": _fn(_builtin_datedif, 3, 3, "date"),
    "WEEKDAY": _fn(_builtin_weekday, 1, 2, "date"),
    "YEARFRAC": _fn(_builtin_yearfrac, 2, 3, "date"),
    "HOUR": _fn(_builtin_hour, 1, 1, "date"),
    "MINUTE": _fn(_builtin_minute, 1, 1, "date"),
    "SECOND": _fn(_builtin_second, 1, 1, "date"),
    # Lookup
    "INDEX": _fn(_builtin_index, 2, 3, "lookup", ranges=True),
    "MATCH": _fn(_builtin_match, 2, 3, "lookup", ranges=True),
    "XLOOKUP": _fn(_builtin_xlookup, 3, 6, "lookup", ranges=True),
    "VLOOKUP": _fn(_builtin_vlookup, 3, 4, "lookup", ranges=True),
    "HLOOKUP": _fn(_builtin_hlookup, 3, 4, "lookup", ranges=True),
    "CHOOSE": _fn(_builtin_choose, 2, None, "lookup", error_aware=True),
    "ROWS": _fn(_builtin_rows, 1, 1, "lookup", ranges=True),
    "COLUMNS": _fn(_builtin_columns, 1, 1, "lookup", ranges=True),
    # Financial
    "PV": _fn(_builtin_pv, 3, 5, "financial"),
    "FV": _fn(_builtin_fv, 3, 5, "financial"),
    "PMT": _fn(_builtin_pmt, 3, 5, "financial"),
    "IPMT": _fn(_builtin_ipmt, 4, 6, "financial"),
    "PPMT": _fn(_builtin_ppmt, 4, 6, "financial"),
    "NPER": _fn(_builtin_nper, 3, 5, "financial"),
    "RATE": _fn(_builtin_rate, 3, 6, "financial"),
    "NPV": _fn(_builtin_npv, 2, None, "financial", ranges=True),
    "IRR": _fn(_builtin_irr, 1, 2, "financial", ranges=True),
    "MIRR": _fn(_builtin_mirr, 3, 3, "financial", ranges=True),
    "XNPV": _fn(_builtin_xnpv, 3, 3, "financial", ranges=True),
    "SLN": _fn(_builtin_sln, 3, 3, "financial"),
    "DB": _fn(_builtin_db, 4, 5, "financial"),
    "DDB": _fn(_builtin_ddb, 4, 5, "financial"),
    # FP&A
    "VARIANCE": _fn(_builtin_variance, 2, 2, "fpa"),
    "VARIANCE_PCT": _fn(_builtin_variance_pct, 2, 2, "fpa"),
    "VARIANCE_STATUS": _fn(_builtin_variance_status, 2, 3, "fpa"),
    "BREAKEVEN_UNITS": _fn(_builtin_breakeven_units, 3, 3, "fpa"),
    "BREAKEVEN_REVENUE": _fn(_builtin_breakeven_revenue, 2, 2, "fpa"),
}

FUNCTION_CATEGORIES: dict[str, str] = {name: spec.category for name, spec in _BUILTINS.items()}


def is_supported(func_name: str) -> bool:
    """Check if a function name is a builtin."""
    return func_name.upper() in _BUILTINS


class FunctionRegistry:
    """Registry of callable function implementations.

    Starts with builtins and can be extended with custom functions. The
    table is fixed once a model is loaded: formulas are bound against it.
    """

    def __init__(self) -> None:
        self._functions: dict[str, FunctionSpec] = dict(_BUILTINS)

    def register(
        self,
        name: str,
        func: Callable[[list[Any]], Any],
        min_args: int = 0,
        max_args: int | None = None,
        *,
        category: str = "custom",
        error_aware: bool = False,
        takes_ranges: bool = False,
    ) -> None:
        self._functions[name.upper()] = FunctionSpec(
            func, min_args, max_args, category, error_aware, takes_ranges
        )

    def get(self, name: str) -> Callable[[list[Any]], Any] | None:
        spec = self._functions.get(name.upper())
        return spec.func if spec is not None else None

    def spec(self, name: str) -> FunctionSpec | None:
        return self._functions.get(name.upper())

    def has(self, name: str) -> bool:
        return name.upper() in self._functions

    @property
    def supported_functions(self) -> frozenset[str]:
        return frozenset(self._functions.keys())
