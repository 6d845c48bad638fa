"""Financial and FP&A builtins.

Cash flows follow the usual signed convention: money paid out is negative,
money received is positive.
"""

from __future__ import annotations

import math
from typing import Any

from forgecalc.calc._values import (
    ArrayValue,
    ErrorSignal,
    ErrorValue,
    collect_numbers,
    is_number,
    to_bool,
    to_number,
)


def _opt(args: list[Any], index: int, default: float) -> float:
    """Numeric optional argument; omitted or blank gives *default*."""
    if index < len(args) and args[index] is not None:
        return to_number(args[index])
    return default


def _cash_flows(arg: Any) -> list[float]:
    """Numbers of a cash-flow array; errors inside propagate."""
    if isinstance(arg, ArrayValue):
        values: list[float] = []
        for v in arg.values:
            if isinstance(v, ErrorValue):
                raise ErrorSignal(v)
            if is_number(v):
                values.append(float(v))
        return values
    return [to_number(arg)]


# ---------------------------------------------------------------------------
# Time value of money: PV, FV, PMT, IPMT, PPMT, NPER, RATE
# ---------------------------------------------------------------------------


def _fv(rate: float, nper: float, pmt: float, pv: float, pmt_type: int) -> float:
    if rate == 0:
        return -(pv + pmt * nper)
    growth = (1 + rate) ** nper
    return -(pv * growth + pmt * (1 + rate * pmt_type) * (growth - 1) / rate)


def _pmt(rate: float, nper: float, pv: float, fv: float, pmt_type: int) -> float:
    if nper == 0:
        raise ZeroDivisionError("PMT: nper is zero")
    if rate == 0:
        return -(pv + fv) / nper
    pvif = (1 + rate) ** nper
    return -(rate * (pv * pvif + fv)) / (pvif - 1) / (1 + rate * pmt_type)


def _builtin_pv(args: list[Any]) -> float:
    """PV(rate, nper, pmt, [fv], [type]).

    Present value of an investment: the total amount that a series of future
    payments is worth right now.
    """
    rate = to_number(args[0])
    nper = to_number(args[1])
    pmt = to_number(args[2])
    fv = _opt(args, 3, 0.0)
    pmt_type = int(_opt(args, 4, 0.0) != 0)

    if rate == 0:
        return -(fv + pmt * nper)
    pv_annuity = pmt * (1 + rate * pmt_type) * (1 - (1 + rate) ** (-nper)) / rate
    pv_fv = fv / (1 + rate) ** nper
    return -(pv_annuity + pv_fv)


def _builtin_fv(args: list[Any]) -> float:
    """FV(rate, nper, pmt, [pv], [type]).

    Future value of an investment based on periodic, constant payments
    and a constant interest rate.
    """
    rate = to_number(args[0])
    nper = to_number(args[1])
    pmt = to_number(args[2])
    pv = _opt(args, 3, 0.0)
    pmt_type = int(_opt(args, 4, 0.0) != 0)
    return _fv(rate, nper, pmt, pv, pmt_type)


def _builtin_pmt(args: list[Any]) -> float:
    """PMT(rate, nper, pv, [fv], [type]).

    Payment for a loan based on constant payments and constant interest rate.
    """
    rate = to_number(args[0])
    nper = to_number(args[1])
    pv = to_number(args[2])
    fv = _opt(args, 3, 0.0)
    pmt_type = int(_opt(args, 4, 0.0) != 0)
    return _pmt(rate, nper, pv, fv, pmt_type)


def _ipmt(rate: float, per: float, nper: float, pv: float, fv: float, pmt_type: int) -> float:
    pmt = _pmt(rate, nper, pv, fv, pmt_type)
    if per == 1:
        interest = 0.0 if pmt_type else -pv
    elif pmt_type:
        interest = _fv(rate, per - 2, pmt, pv, 1) - pmt
    else:
        interest = _fv(rate, per - 1, pmt, pv, 0)
    return interest * rate


def _period_args(args: list[Any]) -> tuple[float, float, float, float, float, int]:
    rate = to_number(args[0])
    per = to_number(args[1])
    nper = to_number(args[2])
    pv = to_number(args[3])
    fv = _opt(args, 4, 0.0)
    pmt_type = int(_opt(args, 5, 0.0) != 0)
    if per < 1 or per > nper:
        raise ValueError("period must be between 1 and nper")
    return rate, per, nper, pv, fv, pmt_type


def _builtin_ipmt(args: list[Any]) -> float:
    """IPMT(rate, per, nper, pv, [fv], [type]). Interest part of one payment."""
    return _ipmt(*_period_args(args))


def _builtin_ppmt(args: list[Any]) -> float:
    """PPMT(rate, per, nper, pv, [fv], [type]). Principal part of one payment."""
    rate, per, nper, pv, fv, pmt_type = _period_args(args)
    return _pmt(rate, nper, pv, fv, pmt_type) - _ipmt(rate, per, nper, pv, fv, pmt_type)


def _builtin_nper(args: list[Any]) -> float:
    """NPER(rate, pmt, pv, [fv], [type]). Number of payment periods."""
    rate = to_number(args[0])
    pmt = to_number(args[1])
    pv = to_number(args[2])
    fv = _opt(args, 3, 0.0)
    pmt_type = int(_opt(args, 4, 0.0) != 0)

    if rate == 0:
        if pmt == 0:
            raise ValueError("NPER: payment is zero")
        return -(pv + fv) / pmt
    adjusted = pmt * (1 + rate * pmt_type)
    numerator = adjusted - fv * rate
    denominator = adjusted + pv * rate
    if denominator == 0 or numerator / denominator <= 0:
        raise ValueError("NPER: no solution")
    return math.log(numerator / denominator) / math.log(1 + rate)


def _builtin_rate(args: list[Any]) -> float | ErrorValue:
    """RATE(nper, pmt, pv, [fv], [type], [guess]).

    Interest rate per period, solved with Newton-Raphson.
    """
    nper = to_number(args[0])
    pmt = to_number(args[1])
    pv = to_number(args[2])
    fv = _opt(args, 3, 0.0)
    pmt_type = int(_opt(args, 4, 0.0) != 0)
    rate = _opt(args, 5, 0.1)

    def _f(r: float) -> float:
        if r <= -1:
            raise ValueError("RATE: rate fell to -100% or below")
        if r == 0:
            return pv + pmt * nper + fv
        growth = (1 + r) ** nper
        return pv * growth + pmt * (1 + r * pmt_type) * (growth - 1) / r + fv

    for _ in range(100):
        value = _f(rate)
        if abs(value) < 1e-10:
            return rate
        step = 1e-7 * max(1.0, abs(rate))
        deriv = (_f(rate + step) - _f(rate - step)) / (2 * step)
        if deriv == 0:
            break
        new_rate = rate - value / deriv
        if new_rate <= -1:
            new_rate = (rate - 1) / 2
        if abs(new_rate - rate) < 1e-12:
            return new_rate
        rate = new_rate
    return ErrorValue.of("#NUM!", "RATE did not converge")


# ---------------------------------------------------------------------------
# Discounted cash flows: NPV, IRR, MIRR, XNPV
# ---------------------------------------------------------------------------


def _builtin_npv(args: list[Any]) -> float:
    """NPV(rate, value1, [value2], ...).

    Net present value of a series of cash flows. The first value is at
    period 1 (no time-0 cash flow).
    """
    rate = to_number(args[0])
    if rate == -1:
        raise ZeroDivisionError("NPV: rate of -1")
    values = collect_numbers(args[1:])
    return sum(v / (1 + rate) ** (i + 1) for i, v in enumerate(values))


def _builtin_irr(args: list[Any]) -> float | ErrorValue:
    """IRR(values, [guess]).

    Internal rate of return for a series of cash flows.
    Uses Newton-Raphson with bisection fallback.
    """
    values = _cash_flows(args[0])
    if len(values) < 2:
        return ErrorValue.of("#NUM!", "IRR needs at least two cash flows")

    # Must have both positive and negative cash flows
    has_pos = any(v > 0 for v in values)
    has_neg = any(v < 0 for v in values)
    if not (has_pos and has_neg):
        return ErrorValue.of("#NUM!", "IRR needs positive and negative cash flows")

    guess = _opt(args, 1, 0.1)

    def _npv(rate: float) -> float:
        return sum(v / (1 + rate) ** i for i, v in enumerate(values))

    def _npv_deriv(rate: float) -> float:
        return sum(-i * v / (1 + rate) ** (i + 1) for i, v in enumerate(values))

    # Newton-Raphson
    rate = guess
    for _ in range(100):
        if rate <= -1:
            break
        npv_val = _npv(rate)
        if abs(npv_val) < 1e-10:
            return rate
        deriv = _npv_deriv(rate)
        if abs(deriv) < 1e-14:
            break
        new_rate = rate - npv_val / deriv
        if abs(new_rate - rate) < 1e-10:
            return new_rate
        rate = new_rate

    # Bisection fallback: search [-0.999, 10.0]
    lo, hi = -0.999, 10.0
    if _npv(lo) * _npv(hi) > 0:
        return ErrorValue.of("#NUM!", "IRR did not converge")
    for _ in range(200):
        mid = (lo + hi) / 2
        if abs(_npv(mid)) < 1e-10 or (hi - lo) < 1e-12:
            return mid
        if _npv(lo) * _npv(mid) < 0:
            hi = mid
        else:
            lo = mid
    return ErrorValue.of("#NUM!", "IRR did not converge")


def _builtin_mirr(args: list[Any]) -> float:
    """MIRR(values, finance_rate, reinvest_rate). Modified internal rate of return."""
    values = _cash_flows(args[0])
    finance_rate = to_number(args[1])
    reinvest_rate = to_number(args[2])
    n = len(values)
    if n < 2:
        raise ZeroDivisionError("MIRR needs at least two cash flows")
    future_pos = sum(v * (1 + reinvest_rate) ** (n - 1 - i) for i, v in enumerate(values) if v > 0)
    present_neg = sum(v / (1 + finance_rate) ** i for i, v in enumerate(values) if v < 0)
    if future_pos == 0 or present_neg == 0:
        raise ZeroDivisionError("MIRR needs positive and negative cash flows")
    return (-future_pos / present_neg) ** (1 / (n - 1)) - 1


def _builtin_xnpv(args: list[Any]) -> float:
    """XNPV(rate, values, dates). NPV of irregular cash flows on actual/365."""
    rate = to_number(args[0])
    values = _cash_flows(args[1])
    dates = [float(int(d)) for d in _cash_flows(args[2])]
    if len(values) != len(dates) or not values:
        raise ValueError("XNPV: values and dates must have equal length")
    if rate <= -1:
        raise ValueError("XNPV: rate must be greater than -1")
    start = dates[0]
    if any(d < start for d in dates):
        raise ValueError("XNPV: dates precede the first date")
    return sum(v / (1 + rate) ** ((d - start) / 365) for v, d in zip(values, dates))


# ---------------------------------------------------------------------------
# Depreciation: SLN, DB, DDB
# ---------------------------------------------------------------------------


def _builtin_sln(args: list[Any]) -> float:
    """SLN(cost, salvage, life).

    Straight-line depreciation for one period.
    """
    cost = to_number(args[0])
    salvage = to_number(args[1])
    life = to_number(args[2])
    return (cost - salvage) / life


def _builtin_db(args: list[Any]) -> float | ErrorValue:
    """DB(cost, salvage, life, period, [month]).

    Fixed-declining balance depreciation. *month* is the number of months
    in the first year (default 12).
    """
    cost = to_number(args[0])
    salvage = to_number(args[1])
    life = int(to_number(args[2]))
    period = int(to_number(args[3]))
    month = int(_opt(args, 4, 12.0))

    if life <= 0 or period <= 0 or period > life + 1 or not 1 <= month <= 12:
        return ErrorValue.of("#NUM!", "invalid DB period arguments")
    if cost <= 0:
        return 0.0

    # Rate rounded to 3 decimal places
    rate = round(1 - (salvage / cost) ** (1 / life), 3)
    book_value = cost
    dep = 0.0

    for yr in range(1, period + 1):
        if yr == 1:
            dep = cost * rate * month / 12
        elif yr == life + 1:
            # Final partial year
            dep = book_value * rate * (12 - month) / 12
        else:
            dep = book_value * rate
        book_value -= dep

    return dep


def _builtin_ddb(args: list[Any]) -> float | ErrorValue:
    """DDB(cost, salvage, life, period, [factor]). Double-declining balance."""
    cost = to_number(args[0])
    salvage = to_number(args[1])
    life = to_number(args[2])
    period = to_number(args[3])
    factor = _opt(args, 4, 2.0)
    if life <= 0 or period <= 0 or period > life or factor <= 0 or cost < 0 or salvage < 0:
        return ErrorValue.of("#NUM!", "invalid DDB arguments")

    book_value = cost
    dep = 0.0
    for _ in range(math.ceil(period)):
        dep = min(book_value * factor / life, max(book_value - salvage, 0.0))
        book_value -= dep
    return dep


# ---------------------------------------------------------------------------
# FP&A: variance analysis and break-even
# ---------------------------------------------------------------------------


def _builtin_variance(args: list[Any]) -> float:
    """VARIANCE(actual, budget) = actual - budget."""
    return to_number(args[0]) - to_number(args[1])


def _builtin_variance_pct(args: list[Any]) -> float | ErrorValue:
    """VARIANCE_PCT(actual, budget) = (actual - budget) / budget."""
    actual = to_number(args[0])
    budget = to_number(args[1])
    if budget == 0:
        return ErrorValue.of("#DIV/0!", "budget is zero")
    return (actual - budget) / budget


def _builtin_variance_status(args: list[Any]) -> float:
    """VARIANCE_STATUS(actual, budget, [favorable_if_lower]).

    1 when the variance is favorable, -1 when unfavorable, 0 on budget.
    Higher actuals are favorable unless *favorable_if_lower* is TRUE
    (cost lines).
    """
    actual = to_number(args[0])
    budget = to_number(args[1])
    lower_is_better = to_bool(args[2]) if len(args) > 2 and args[2] is not None else False
    diff = actual - budget
    if diff == 0:
        return 0.0
    favorable = diff < 0 if lower_is_better else diff > 0
    return 1.0 if favorable else -1.0


def _breakeven(fixed: float, denominator: float, what: str) -> float | ErrorValue:
    if denominator == 0:
        return ErrorValue.of("#DIV/0!", f"{what} is zero")
    if denominator < 0:
        return ErrorValue.of("#NUM!", f"{what} is negative")
    return fixed / denominator


def _builtin_breakeven_units(args: list[Any]) -> float | ErrorValue:
    """BREAKEVEN_UNITS(fixed_costs, price, variable_cost) = fixed / (price - variable)."""
    fixed = to_number(args[0])
    price = to_number(args[1])
    variable = to_number(args[2])
    return _breakeven(fixed, price - variable, "unit contribution margin")


def _builtin_breakeven_revenue(args: list[Any]) -> float | ErrorValue:
    """BREAKEVEN_REVENUE(fixed_costs, margin_pct) = fixed / margin_pct."""
    fixed = to_number(args[0])
    margin = to_number(args[1])
    return _breakeven(fixed, margin, "contribution margin")


