"""Runtime value types and spreadsheet coercion rules.

Values are plain Python objects:

- Number: ``float`` (one IEEE double representation everywhere)
- Text: ``str``
- Boolean: ``bool``
- Date: :class:`DateSerial` (a ``float`` subclass, 1900 date system)
- Error: :class:`ErrorValue`
- Array: :class:`ArrayValue`
- Blank: ``None`` (only for omitted optional arguments)
"""

from __future__ import annotations

import math
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from typing import Any


# ---------------------------------------------------------------------------
# ErrorValue: typed error values that propagate through formula chains
# ---------------------------------------------------------------------------


class ErrorValue:
    """Spreadsheet error value that propagates through formula chains.

    Use ``ErrorValue.of(code)`` for the shared instance of a code, or
    ``ErrorValue.of(code, message)`` to attach a diagnostic. Errors compare
    equal when their codes match, and compare equal to their code string.
    """

    __slots__ = ("code", "message")
    _cache: dict[str, ErrorValue] = {}

    NA: ErrorValue
    VALUE: ErrorValue
    REF: ErrorValue
    DIV0: ErrorValue
    NUM: ErrorValue
    NAME: ErrorValue

    CODES = ("#N/A", "#VALUE!", "#REF!", "#DIV/0!", "#NUM!", "#NAME?")

    def __init__(self, code: str, message: str = "") -> None:
        self.code = code
        self.message = message or _DEFAULT_MESSAGES.get(code, code)

    @classmethod
    def of(cls, code: str, message: str = "") -> ErrorValue:
        canon = code.upper()
        if canon not in cls.CODES:
            raise ValueError(f"Unknown error code: {code!r}")
        if message:
            return cls(canon, message)
        if canon not in cls._cache:
            cls._cache[canon] = cls(canon)
        return cls._cache[canon]

    @property
    def kind(self) -> str:
        """Taxonomy kind: argument mismatches are TypeError, the rest ValueError."""
        if self.code in ("#VALUE!", "#NAME?"):
            return "TypeError"
        return "ValueError"

    def __repr__(self) -> str:
        return self.code

    def __str__(self) -> str:
        return self.code

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ErrorValue):
            return self.code == other.code
        if isinstance(other, str):
            return self.code == other.upper()
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.code)


_DEFAULT_MESSAGES = {
    "#N/A": "value not available",
    "#VALUE!": "wrong type of argument",
    "#REF!": "invalid reference",
    "#DIV/0!": "division by zero",
    "#NUM!": "invalid numeric value",
    "#NAME?": "unrecognized name",
}

# Singletons
ErrorValue.NA = ErrorValue.of("#N/A")
ErrorValue.VALUE = ErrorValue.of("#VALUE!")
ErrorValue.REF = ErrorValue.of("#REF!")
ErrorValue.DIV0 = ErrorValue.of("#DIV/0!")
ErrorValue.NUM = ErrorValue.of("#NUM!")
ErrorValue.NAME = ErrorValue.of("#NAME?")


class ErrorSignal(Exception):
    """Raised by coercion helpers to short-circuit with an in-band error."""

    def __init__(self, error: ErrorValue) -> None:
        super().__init__(error.code)
        self.error = error


def is_error(val: Any) -> bool:
    """Return True if *val* is an ErrorValue instance."""
    return isinstance(val, ErrorValue)


def first_error(*values: Any) -> ErrorValue | None:
    """Return the first ErrorValue found in *values*, or None."""
    for v in values:
        if isinstance(v, ErrorValue):
            return v
    return None


# ---------------------------------------------------------------------------
# DateSerial
# ---------------------------------------------------------------------------


class DateSerial(float):
    """A date as a 1900-system serial number.

    Arithmetic on a DateSerial yields a plain ``float``, as in a spreadsheet
    where ``date + 30`` is just a number until formatted.
    """

    __slots__ = ()

    def __repr__(self) -> str:
        return f"DateSerial({float(self)!r})"


# ---------------------------------------------------------------------------
# ArrayValue: shape-aware 2D array container
# ---------------------------------------------------------------------------


@dataclass
class ArrayValue:
    """An ordered array value that preserves 2D shape metadata.

    Table columns are ``n x 1`` arrays; array literals ``{1,2,3}`` are
    ``1 x 3``. Values are stored row-major.
    """

    values: list[Any]
    n_rows: int
    n_cols: int

    @classmethod
    def column_vector(cls, values: Iterable[Any]) -> ArrayValue:
        vals = list(values)
        return cls(values=vals, n_rows=len(vals), n_cols=1)

    @classmethod
    def from_rows(cls, rows: list[list[Any]]) -> ArrayValue:
        n_cols = len(rows[0]) if rows else 0
        if any(len(r) != n_cols for r in rows):
            raise ValueError("Array rows must have equal length")
        flat = [v for r in rows for v in r]
        return cls(values=flat, n_rows=len(rows), n_cols=n_cols)

    @property
    def shape(self) -> tuple[int, int]:
        return (self.n_rows, self.n_cols)

    def get(self, row: int, col: int) -> Any:
        """Get value at 1-based (row, col) position."""
        if row < 1 or row > self.n_rows or col < 1 or col > self.n_cols:
            return None
        idx = (row - 1) * self.n_cols + (col - 1)
        return self.values[idx] if idx < len(self.values) else None

    def column(self, col: int) -> list[Any]:
        """Extract a 1-based column as a list."""
        if col < 1 or col > self.n_cols:
            return []
        return [self.values[(r * self.n_cols) + (col - 1)] for r in range(self.n_rows)]

    def row(self, row: int) -> list[Any]:
        """Extract a 1-based row as a list."""
        if row < 1 or row > self.n_rows:
            return []
        start = (row - 1) * self.n_cols
        return self.values[start:start + self.n_cols]

    def map(self, fn: Callable[[Any], Any]) -> ArrayValue:
        return ArrayValue(values=[fn(v) for v in self.values], n_rows=self.n_rows, n_cols=self.n_cols)

    def __iter__(self) -> Iterator[Any]:
        return iter(self.values)

    def __len__(self) -> int:
        return len(self.values)


# ---------------------------------------------------------------------------
# Type predicates
# ---------------------------------------------------------------------------


def is_number(val: Any) -> bool:
    return isinstance(val, (int, float)) and not isinstance(val, bool)


# ---------------------------------------------------------------------------
# Coercion
# ---------------------------------------------------------------------------


def parse_number(text: str) -> float | None:
    """Parse numeric text the way a spreadsheet coerces it, or None."""
    s = text.strip()
    if not s:
        return None
    percent = s.endswith("%")
    if percent:
        s = s[:-1].strip()
    s = s.replace(",", "") if _looks_grouped(s) else s
    try:
        num = float(s)
    except ValueError:
        return None
    if not math.isfinite(num):
        return None
    return num / 100 if percent else num


def _looks_grouped(s: str) -> bool:
    head = s.lstrip("+-").split(".", 1)[0]
    if "," not in head:
        return False
    groups = head.split(",")
    return 1 <= len(groups[0]) <= 3 and all(len(g) == 3 and g.isdigit() for g in groups[1:])


def to_number(val: Any) -> float:
    """Coerce a scalar to a float (spreadsheet numeric context)."""
    if isinstance(val, ErrorValue):
        raise ErrorSignal(val)
    if isinstance(val, bool):
        return 1.0 if val else 0.0
    if isinstance(val, (int, float)):
        return float(val)
    if val is None:
        return 0.0
    if isinstance(val, str):
        num = parse_number(val)
        if num is None:
            raise ErrorSignal(ErrorValue.of("#VALUE!", f"cannot convert {val!r} to a number"))
        return num
    if isinstance(val, ArrayValue):
        if len(val.values) == 1:
            return to_number(val.values[0])
        raise ErrorSignal(ErrorValue.of("#VALUE!", "expected a single value, got an array"))
    raise ErrorSignal(ErrorValue.of("#VALUE!", f"cannot use {type(val).__name__} as a number"))


def to_text(val: Any) -> str:
    """Coerce a scalar to text (spreadsheet string context)."""
    if isinstance(val, ErrorValue):
        raise ErrorSignal(val)
    if isinstance(val, bool):
        return "TRUE" if val else "FALSE"
    if isinstance(val, (int, float)):
        return format_number(float(val))
    if val is None:
        return ""
    if isinstance(val, str):
        return val
    if isinstance(val, ArrayValue):
        if len(val.values) == 1:
            return to_text(val.values[0])
        raise ErrorSignal(ErrorValue.of("#VALUE!", "expected a single value, got an array"))
    raise ErrorSignal(ErrorValue.of("#VALUE!", f"cannot use {type(val).__name__} as text"))


def to_bool(val: Any) -> bool:
    """Coerce a scalar to a boolean (spreadsheet logical context)."""
    if isinstance(val, ErrorValue):
        raise ErrorSignal(val)
    if isinstance(val, bool):
        return val
    if isinstance(val, (int, float)):
        return val != 0
    if val is None:
        return False
    if isinstance(val, str):
        upper = val.strip().upper()
        if upper == "TRUE":
            return True
        if upper == "FALSE":
            return False
        raise ErrorSignal(ErrorValue.of("#VALUE!", f"cannot convert {val!r} to a logical value"))
    if isinstance(val, ArrayValue):
        if len(val.values) == 1:
            return to_bool(val.values[0])
        raise ErrorSignal(ErrorValue.of("#VALUE!", "expected a single value, got an array"))
    raise ErrorSignal(ErrorValue.of("#VALUE!", f"cannot use {type(val).__name__} as a logical value"))


def format_number(num: float) -> str:
    """Render a number the way the General format does (15 significant digits)."""
    if num == 0:
        return "0"
    if num.is_integer() and abs(num) < 1e15:
        return str(int(num))
    text = f"{num:.15g}"
    if "e" in text:
        mantissa, exp = text.split("e")
        sign = exp[0]
        digits = exp[1:].lstrip("0").rjust(2, "0")
        text = f"{mantissa}E{sign}{digits}"
    return text


def flatten(values: Iterable[Any]) -> list[Any]:
    """Flatten arrays (and nested lists) into one ordered list."""
    result: list[Any] = []
    for v in values:
        if isinstance(v, ArrayValue):
            result.extend(v.values)
        elif isinstance(v, (list, tuple)):
            result.extend(flatten(v))
        else:
            result.append(v)
    return result


def collect_numbers(args: Iterable[Any], *, propagate_errors: bool = True) -> list[float]:
    """Gather numbers for aggregation.

    Direct arguments coerce (numeric text, booleans); non-numeric direct text
    is ``#VALUE!``. Array elements contribute numbers only. Errors propagate
    unless *propagate_errors* is False, in which case they are skipped.
    """
    result: list[float] = []
    for a in args:
        if isinstance(a, (ArrayValue, list, tuple)):
            for v in flatten([a]):
                if isinstance(v, ErrorValue):
                    if propagate_errors:
                        raise ErrorSignal(v)
                    continue
                if is_number(v):
                    result.append(float(v))
        elif isinstance(a, ErrorValue):
            if propagate_errors:
                raise ErrorSignal(a)
        elif a is None:
            continue
        elif isinstance(a, str) and not propagate_errors:
            num = parse_number(a)
            if num is not None:
                result.append(num)
        else:
            result.append(to_number(a))
    return result


# ---------------------------------------------------------------------------
# Comparison
# ---------------------------------------------------------------------------

_TYPE_RANK = {"number": 0, "text": 1, "bool": 2}


def _rank(val: Any) -> tuple[int, Any]:
    if isinstance(val, bool):
        return (_TYPE_RANK["bool"], val)
    if isinstance(val, (int, float)):
        return (_TYPE_RANK["number"], float(val))
    if isinstance(val, str):
        return (_TYPE_RANK["text"], val.lower())
    raise ErrorSignal(ErrorValue.of("#VALUE!", f"cannot compare {type(val).__name__}"))


def compare_values(left: Any, right: Any) -> int:
    """Three-way spreadsheet comparison: numbers < text < booleans.

    Text compares case-insensitively. A blank compares as the empty value
    of the other operand's type.
    """
    if isinstance(left, ErrorValue):
        raise ErrorSignal(left)
    if isinstance(right, ErrorValue):
        raise ErrorSignal(right)
    if isinstance(left, ArrayValue) or isinstance(right, ArrayValue):
        raise ErrorSignal(ErrorValue.of("#VALUE!", "cannot compare an array"))
    if left is None:
        left = _blank_like(right)
    if right is None:
        right = _blank_like(left)
    lr, rr = _rank(left), _rank(right)
    if lr < rr:
        return -1
    if lr > rr:
        return 1
    return 0


def _blank_like(other: Any) -> Any:
    if isinstance(other, bool):
        return False
    if isinstance(other, str):
        return ""
    return 0.0


def values_equal(left: Any, right: Any) -> bool:
    """Lookup equality: numbers by value, text case-insensitive, no coercion."""
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if is_number(left) and is_number(right):
        return float(left) == float(right)
    if isinstance(left, str) and isinstance(right, str):
        return left.lower() == right.lower()
    return False
