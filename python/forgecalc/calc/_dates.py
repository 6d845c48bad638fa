"""Date and time builtins on the 1900 date system."""

from __future__ import annotations

import calendar
import datetime
from typing import Any

from forgecalc.calc._values import DateSerial, ErrorValue, to_number, to_text

# ---------------------------------------------------------------------------
# Date serial number helpers (epoch: serial 1 = Jan 1, 1900)
# ---------------------------------------------------------------------------

# The Lotus 1-2-3 bug: serial 60 = Feb 29, 1900 (doesn't exist).
# Serials >= 61 are off by one vs a correct calendar.
_LOTUS_BUG_SERIAL = 60
_EPOCH = datetime.date(1899, 12, 31)  # serial 0
MAX_SERIAL = 2958465  # Dec 31, 9999


def days_in_month(y: int, m: int) -> int:
    """Length of a month, counting the phantom Feb 29, 1900."""
    if (y, m) == (1900, 2):
        return 29
    return calendar.monthrange(y, m)[1]


def date_to_serial(y: int, m: int, d: int) -> int:
    """Convert (year, month, day) to a serial number.

    Month and day overflow/underflow roll over (month 14 is Feb of the next
    year, day 0 is the last day of the previous month). Reproduces the
    Lotus 1-2-3 bug for dates before March 1, 1900.
    """
    m -= 1  # 0-based
    y += m // 12
    m = m % 12 + 1
    if y < 1900 or y > 9999:
        raise ValueError(f"year {y} is outside 1900-9999")
    first = (datetime.date(y, m, 1) - _EPOCH).days
    # Lotus bug: from Mar 1, 1900 on, add 1 for the phantom Feb 29, 1900
    if first >= _LOTUS_BUG_SERIAL:
        first += 1
    serial = first + d - 1
    if serial < 0 or serial > MAX_SERIAL:
        raise ValueError(f"date serial {serial} is out of range")
    return serial


def serial_to_date(serial: int) -> tuple[int, int, int]:
    """Convert a serial number to (year, month, day).

    Serial 0 is the pseudo-date Jan 0, 1900 and serial 60 the phantom
    Feb 29, 1900.
    """
    if serial < 0 or serial > MAX_SERIAL:
        raise ValueError(f"date serial {serial} is out of range")
    if serial == 0:
        return (1900, 1, 0)
    if serial == _LOTUS_BUG_SERIAL:
        return (1900, 2, 29)

    # For serials > 60, subtract 1 to undo the Lotus bug offset
    adjusted = serial - 1 if serial > _LOTUS_BUG_SERIAL else serial
    dt = _EPOCH + datetime.timedelta(days=adjusted)
    return (dt.year, dt.month, dt.day)


def serial_to_time(serial: float) -> tuple[int, int, int]:
    """Extract (hour, minute, second) from the fractional portion of a serial."""
    frac = abs(serial) - int(abs(serial))
    total_seconds = round(frac * 86400)
    if total_seconds == 86400:
        total_seconds = 0
    hour = total_seconds // 3600
    minute = (total_seconds % 3600) // 60
    second = total_seconds % 60
    return (hour, minute, second)


def _serial_arg(val: Any) -> int:
    serial = int(to_number(val))
    if serial < 0:
        raise ValueError("negative date serial")
    return serial


def _clamped_serial(y: int, m: int, d: int) -> int:
    """Serial for (y, m, d) with the day clamped to the month's length."""
    m -= 1
    y += m // 12
    m = m % 12 + 1
    return date_to_serial(y, m, min(d, days_in_month(y, m)))


# ---------------------------------------------------------------------------
# Date builtins
# ---------------------------------------------------------------------------


def _builtin_date(args: list[Any]) -> DateSerial | ErrorValue:
    """DATE(year, month, day). Returns a date serial.

    Handles overflow: DATE(2020,14,1) = DATE(2021,2,1), DATE(2024,1,32) =
    DATE(2024,2,1). Years 0-1899 are offset by 1900.
    """
    y = int(to_number(args[0]))
    m = int(to_number(args[1]))
    d = int(to_number(args[2]))
    if 0 <= y < 1900:
        y += 1900
    if y < 0 or y > 9999:
        return ErrorValue.of("#NUM!", f"year {y} is out of range")
    return DateSerial(date_to_serial(y, m, d))


def _builtin_year(args: list[Any]) -> float:
    """YEAR(serial). Extract year from a serial number."""
    y, _m, _d = serial_to_date(_serial_arg(args[0]))
    return float(y)


def _builtin_month(args: list[Any]) -> float:
    """MONTH(serial). Extract month (1-12) from a serial number."""
    _y, m, _d = serial_to_date(_serial_arg(args[0]))
    return float(m)


def _builtin_day(args: list[Any]) -> float:
    """DAY(serial). Extract day (1-31) from a serial number."""
    _y, _m, d = serial_to_date(_serial_arg(args[0]))
    return float(d)


def _builtin_edate(args: list[Any]) -> DateSerial:
    """EDATE(start_date, months). Same day N months later, clamped to month end."""
    y, m, d = serial_to_date(_serial_arg(args[0]))
    months = int(to_number(args[1]))
    return DateSerial(_clamped_serial(y, m + months, d))


def _builtin_eomonth(args: list[Any]) -> DateSerial:
    """EOMONTH(start_date, months). End of month N months from start."""
    y, m, _d = serial_to_date(_serial_arg(args[0]))
    months = int(to_number(args[1]))
    m += months - 1
    y += m // 12
    m = m % 12 + 1
    return DateSerial(date_to_serial(y, m, days_in_month(y, m)))


def _builtin_days(args: list[Any]) -> float:
    """DAYS(end_date, start_date). Whole days between two dates."""
    end = int(to_number(args[0]))
    start = int(to_number(args[1]))
    return float(end - start)


def _builtin_datedif(args: list[Any]) -> float | ErrorValue:
    """DATEDIF(start_date, end_date, unit) with units Y, M, D, MD, YM, YD."""
    start = _serial_arg(args[0])
    end = _serial_arg(args[1])
    unit = to_text(args[2]).upper()
    if start > end:
        return ErrorValue.of("#NUM!", "start date is after end date")
    sy, sm, sd = serial_to_date(start)
    ey, em, ed = serial_to_date(end)
    months = (ey - sy) * 12 + (em - sm) - (1 if ed < sd else 0)

    if unit == "D":
        return float(end - start)
    if unit == "M":
        return float(months)
    if unit == "Y":
        return float(months // 12)
    if unit == "YM":
        return float(months % 12)
    if unit == "MD":
        if ed >= sd:
            return float(ed - sd)
        return float(end - _clamped_serial(ey, em - 1, sd))
    if unit == "YD":
        anchor = _clamped_serial(ey, sm, sd)
        if anchor > end:
            anchor = _clamped_serial(ey - 1, sm, sd)
        return float(end - anchor)
    return ErrorValue.of("#NUM!", f"unknown DATEDIF unit {unit!r}")


def _builtin_weekday(args: list[Any]) -> float | ErrorValue:
    """WEEKDAY(serial, [return_type]).

    Type 1 (default): Sunday=1..Saturday=7. Type 2: Monday=1..Sunday=7.
    Type 3: Monday=0..Sunday=6. Types 11-17: week starting Monday..Sunday.
    Serial 1 (Jan 1, 1900) is a Sunday in this date system.
    """
    serial = _serial_arg(args[0])
    return_type = int(to_number(args[1])) if len(args) > 1 and args[1] is not None else 1
    if return_type in (1, 17):
        return float((serial - 1) % 7 + 1)
    if return_type in (2, 11):
        return float((serial - 2) % 7 + 1)
    if return_type == 3:
        return float((serial - 2) % 7)
    if 12 <= return_type <= 16:
        return float((serial - (return_type - 9)) % 7 + 1)
    return ErrorValue.of("#NUM!", f"invalid WEEKDAY return type {return_type}")


def _is_last_of_february(y: int, m: int, d: int) -> bool:
    return m == 2 and d == days_in_month(y, 2)


def _builtin_yearfrac(args: list[Any]) -> float | ErrorValue:
    """YEARFRAC(start_date, end_date, [basis]).

    Basis 0: US (NASD) 30/360, 1: actual/actual, 2: actual/360,
    3: actual/365, 4: European 30/360.
    """
    start = _serial_arg(args[0])
    end = _serial_arg(args[1])
    basis = int(to_number(args[2])) if len(args) > 2 and args[2] is not None else 0
    if basis not in (0, 1, 2, 3, 4):
        return ErrorValue.of("#NUM!", f"invalid YEARFRAC basis {basis}")
    if start > end:
        start, end = end, start
    sy, sm, sd = serial_to_date(start)
    ey, em, ed = serial_to_date(end)

    if basis == 0:
        if _is_last_of_february(sy, sm, sd) and _is_last_of_february(ey, em, ed):
            ed = 30
        if _is_last_of_february(sy, sm, sd):
            sd = 30
        if ed == 31 and sd >= 30:
            ed = 30
        if sd == 31:
            sd = 30
        return ((ey - sy) * 360 + (em - sm) * 30 + (ed - sd)) / 360
    if basis == 4:
        sd, ed = min(sd, 30), min(ed, 30)
        return ((ey - sy) * 360 + (em - sm) * 30 + (ed - sd)) / 360
    if basis == 2:
        return (end - start) / 360
    if basis == 3:
        return (end - start) / 365

    # Actual/actual
    within_year = sy == ey or (
        ey == sy + 1 and (sm > em or (sm == em and sd >= ed))
    )
    if within_year:
        if sy == ey:
            leap = calendar.isleap(sy)
        else:
            leap = (calendar.isleap(sy) and (sm, sd) <= (2, 29)) or (
                calendar.isleap(ey) and (em, ed) >= (2, 29)
            )
        return (end - start) / (366 if leap else 365)
    years = ey - sy + 1
    total_days = date_to_serial(ey + 1, 1, 1) - date_to_serial(sy, 1, 1)
    return (end - start) / (total_days / years)


# ---------------------------------------------------------------------------
# Time builtins (HOUR, MINUTE, SECOND)
# ---------------------------------------------------------------------------


def _time_arg(val: Any) -> float:
    serial = to_number(val)
    if serial < 0:
        raise ValueError("negative time serial")
    return serial


def _builtin_hour(args: list[Any]) -> float:
    """HOUR(serial). Extract hour (0-23) from a serial number."""
    h, _m, _s = serial_to_time(_time_arg(args[0]))
    return float(h)


def _builtin_minute(args: list[Any]) -> float:
    """MINUTE(serial). Extract minute (0-59) from a serial number."""
    _h, m, _s = serial_to_time(_time_arg(args[0]))
    return float(m)


def _builtin_second(args: list[Any]) -> float:
    """SECOND(serial). Extract second (0-59) from a serial number."""
    _h, _m, s = serial_to_time(_time_arg(args[0]))
    return float(s)
