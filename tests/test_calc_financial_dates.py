"""Tests for forgecalc.calc financial, FP&A and date builtins."""

from __future__ import annotations

import datetime
from typing import Any

import pytest

from forgecalc import DateSerial, Model, evaluate
from forgecalc.calc._dates import date_to_serial, serial_to_date, serial_to_time
from forgecalc.calc._values import ErrorValue


def _eval(formula: str, **inputs: Any) -> Any:
    model = Model.from_mapping({**inputs, "result": formula})
    return evaluate(model)["result"]


def _is_error(value: Any, code: str) -> bool:
    return isinstance(value, ErrorValue) and value.code == code


# ---------------------------------------------------------------------------
# Time value of money
# ---------------------------------------------------------------------------


class TestTimeValueOfMoney:
    def test_pmt_mortgage(self) -> None:
        assert _eval("=PMT(0.05/12, 360, 200000)") == pytest.approx(-1073.64, abs=0.01)

    def test_pmt_zero_rate(self) -> None:
        assert _eval("=PMT(0, 10, 1000)") == -100.0

    def test_pv(self) -> None:
        assert _eval("=PV(0.08/12, 12*20, 500)") == pytest.approx(-59777.15, abs=0.01)

    def test_fv_annuity_due(self) -> None:
        assert _eval("=FV(0.06/12, 10, -200, -500, 1)") == pytest.approx(2581.40, abs=0.01)

    def test_nper(self) -> None:
        assert _eval("=NPER(0.12/12, -100, -1000, 10000, 1)") == pytest.approx(59.6739, abs=1e-3)

    def test_rate(self) -> None:
        assert _eval("=RATE(4*12, -200, 8000)") == pytest.approx(0.0077014725, abs=1e-7)

    def test_ipmt_ppmt_sum_to_pmt(self) -> None:
        model = Model.from_mapping({
            "rate": 0.1 / 12,
            "nper": 36,
            "pv": 8000,
            "interest": "=IPMT(rate, 1, nper, pv)",
            "principal": "=PPMT(rate, 1, nper, pv)",
            "payment": "=PMT(rate, nper, pv)",
        })
        env = evaluate(model)
        assert env["interest"] == pytest.approx(-66.67, abs=0.01)
        assert env["interest"] + env["principal"] == pytest.approx(env["payment"])


class TestDiscountedCashFlows:
    def test_npv(self) -> None:
        assert _eval("=NPV(0.1, -10000, 3000, 4200, 6800)") == pytest.approx(1188.44, abs=0.01)

    def test_npv_over_model_array(self) -> None:
        result = _eval("=NPV(0.1, flows)", flows=[-10000, 3000, 4200, 6800])
        assert result == pytest.approx(1188.44, abs=0.01)

    def test_irr(self) -> None:
        result = _eval("=IRR({-70000,12000,15000,18000,21000,26000})")
        assert result == pytest.approx(0.0866, abs=1e-4)

    def test_irr_needs_sign_change(self) -> None:
        assert _is_error(_eval("=IRR({100,200})"), "#NUM!")

    def test_mirr(self) -> None:
        result = _eval("=MIRR({-120000,39000,30000,21000,37000,46000}, 0.1, 0.12)")
        assert result == pytest.approx(0.126094, abs=1e-5)

    def test_xnpv_one_year(self) -> None:
        result = _eval("=XNPV(0.1, {-1000,1100}, {DATE(2023,1,1), DATE(2024,1,1)})")
        assert result == pytest.approx(0.0, abs=1e-9)


class TestDepreciation:
    def test_sln(self) -> None:
        assert _eval("=SLN(30000, 7500, 10)") == 2250.0

    def test_ddb_first_year(self) -> None:
        assert _eval("=DDB(2400, 300, 10, 1)") == pytest.approx(480.0)

    def test_db_partial_first_year(self) -> None:
        assert _eval("=DB(1000000, 100000, 6, 1, 7)") == pytest.approx(186083.33, abs=0.01)

    def test_db_invalid_period(self) -> None:
        assert _is_error(_eval("=DB(1000, 100, 5, 9)"), "#NUM!")


class TestFpaFunctions:
    def test_variance(self) -> None:
        assert _eval("=VARIANCE(120, 100)") == 20.0

    def test_variance_pct(self) -> None:
        assert _eval("=VARIANCE_PCT(120, 100)") == 0.2

    def test_variance_pct_zero_budget(self) -> None:
        assert _is_error(_eval("=VARIANCE_PCT(1, 0)"), "#DIV/0!")

    def test_variance_status(self) -> None:
        assert _eval("=VARIANCE_STATUS(120, 100)") == 1.0
        assert _eval("=VARIANCE_STATUS(120, 100, TRUE)") == -1.0
        assert _eval("=VARIANCE_STATUS(90, 100, TRUE)") == 1.0
        assert _eval("=VARIANCE_STATUS(100, 100)") == 0.0

    def test_breakeven_units(self) -> None:
        assert _eval("=BREAKEVEN_UNITS(10000, 50, 30)") == 500.0

    def test_breakeven_units_no_margin(self) -> None:
        assert _is_error(_eval("=BREAKEVEN_UNITS(10000, 30, 30)"), "#DIV/0!")
        assert _is_error(_eval("=BREAKEVEN_UNITS(10000, 20, 30)"), "#NUM!")

    def test_breakeven_revenue(self) -> None:
        assert _eval("=BREAKEVEN_REVENUE(10000, 0.4)") == pytest.approx(25000.0)


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------


class TestSerials:
    def test_known_serial(self) -> None:
        assert date_to_serial(2024, 1, 15) == 45306
        assert serial_to_date(45306) == (2024, 1, 15)

    def test_phantom_leap_day(self) -> None:
        assert serial_to_date(60) == (1900, 2, 29)
        assert date_to_serial(1900, 3, 1) == 61
        assert date_to_serial(1900, 2, 28) == 59

    def test_month_overflow(self) -> None:
        assert date_to_serial(2020, 14, 1) == date_to_serial(2021, 2, 1)
        assert date_to_serial(2024, 3, 0) == date_to_serial(2024, 2, 29)

    def test_out_of_range(self) -> None:
        with pytest.raises(ValueError):
            date_to_serial(10000, 1, 1)

    def test_time_fraction(self) -> None:
        assert serial_to_time(45306.75) == (18, 0, 0)


class TestDateFunctions:
    def test_date_returns_serial(self) -> None:
        result = _eval("=DATE(2024, 1, 15)")
        assert isinstance(result, DateSerial)
        assert result == 45306.0

    def test_date_arithmetic_is_number(self) -> None:
        result = _eval("=DATE(2024, 1, 15) + 30")
        assert result == 45336.0
        assert not isinstance(result, DateSerial)

    def test_date_two_digit_year(self) -> None:
        assert _eval("=DATE(99, 1, 1)") == date_to_serial(1999, 1, 1)

    def test_year_month_day(self) -> None:
        assert _eval("=YEAR(45306)") == 2024.0
        assert _eval("=MONTH(45306)") == 1.0
        assert _eval("=DAY(45306)") == 15.0

    def test_year_of_negative_serial(self) -> None:
        assert _is_error(_eval("=YEAR(-1)"), "#NUM!")

    def test_edate_clamps_to_month_end(self) -> None:
        assert _eval("=EDATE(DATE(2024, 1, 31), 1)") == date_to_serial(2024, 2, 29)

    def test_eomonth(self) -> None:
        assert _eval("=EOMONTH(DATE(2024, 1, 15), 1)") == date_to_serial(2024, 2, 29)
        assert _eval("=EOMONTH(DATE(2024, 1, 15), -1)") == date_to_serial(2023, 12, 31)

    def test_days(self) -> None:
        assert _eval("=DAYS(DATE(2024, 3, 1), DATE(2024, 2, 1))") == 29.0

    def test_datedif(self) -> None:
        start = "DATE(2020, 1, 15)"
        end = "DATE(2024, 3, 10)"
        assert _eval(f'=DATEDIF({start}, {end}, "Y")') == 4.0
        assert _eval(f'=DATEDIF({start}, {end}, "M")') == 49.0
        assert _eval(f'=DATEDIF({start}, {end}, "YM")') == 1.0

    def test_datedif_reversed(self) -> None:
        assert _is_error(_eval('=DATEDIF(DATE(2024,1,1), DATE(2023,1,1), "D")'), "#NUM!")

    def test_weekday(self) -> None:
        # 2024-01-15 is a Monday
        assert _eval("=WEEKDAY(DATE(2024, 1, 15))") == 2.0
        assert _eval("=WEEKDAY(DATE(2024, 1, 15), 2)") == 1.0
        assert _eval("=WEEKDAY(DATE(2024, 1, 15), 3)") == 0.0

    def test_yearfrac(self) -> None:
        assert _eval("=YEARFRAC(DATE(2024, 1, 1), DATE(2024, 7, 1))") == 0.5
        assert _eval("=YEARFRAC(DATE(2023, 1, 1), DATE(2024, 1, 1), 3)") == 1.0

    def test_time_parts(self) -> None:
        assert _eval("=HOUR(0.75)") == 18.0
        assert _eval("=MINUTE(0.75 + 1/1440)") == 1.0
        assert _eval("=SECOND(1/86400)") == 1.0

    def test_date_literal_in_model(self) -> None:
        result = _eval("=start + 1", start=datetime.date(2024, 1, 15))
        assert result == 45307.0
