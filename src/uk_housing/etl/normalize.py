"""
Field normalization for text-encoded source values.

Raw exports carry numbers as text with currency symbols, thousands
separators and stray spaces ("£32,500 "). The helpers here turn such values
into typed Python values and never raise on bad data: a failed conversion
comes back as ``UNCONVERTIBLE`` and an empty cell as ``ABSENT`` so that the
caller decides whether the row is excluded or the run is blocked.
"""

from __future__ import annotations

import math
from decimal import Decimal, InvalidOperation
from typing import Iterable, Tuple

import pandas as pd

DEFAULT_STRIP_CHARS = ("£", ",", " ", "\u00a0")

STATUS_OK = "ok"
STATUS_ABSENT = "absent"
STATUS_UNCONVERTIBLE = "unconvertible"

# Measures land in DECIMAL(18,2) columns and are staged with 6 decimal places
MEASURE_LIMIT = Decimal(10) ** 16
MEASURE_SCALE = 6


class _Marker:
    __slots__ = ("name",)

    def __init__(self, name: str):
        self.name = name

    def __repr__(self) -> str:
        return self.name

    def __bool__(self) -> bool:
        return False

    def __reduce__(self):
        return self.name


ABSENT = _Marker("ABSENT")
UNCONVERTIBLE = _Marker("UNCONVERTIBLE")


def is_missing(raw) -> bool:
    if raw is None or raw is ABSENT:
        return True
    if isinstance(raw, float) and math.isnan(raw):
        return True
    return raw is pd.NA or raw is pd.NaT


def normalize_text(raw):
    """Trim a text value; blank or missing input becomes ``ABSENT``."""
    if is_missing(raw):
        return ABSENT
    text = str(raw).strip()
    return text if text else ABSENT


def _to_target(number: Decimal, target):
    if not number.is_finite() or abs(number) >= MEASURE_LIMIT:
        return UNCONVERTIBLE
    if target is int:
        if number != number.to_integral_value():
            return UNCONVERTIBLE
        return int(number)
    if target is Decimal:
        if number.normalize().as_tuple().exponent < -MEASURE_SCALE:
            return UNCONVERTIBLE
        return number
    raise TypeError(f"unsupported target type: {target!r}")


def normalize_numeric(raw, target=int, strip_chars: Iterable[str] = DEFAULT_STRIP_CHARS):
    """
    Coerce a messy value into ``target`` (``int`` or ``Decimal``).

    Returns the typed value, ``ABSENT`` for blank input, or ``UNCONVERTIBLE``
    when non-numeric residue remains after stripping ``strip_chars`` or the
    number does not fit a measure column.
    Already-normalized values and markers pass through unchanged.
    """
    if raw is UNCONVERTIBLE:
        return UNCONVERTIBLE
    if is_missing(raw):
        return ABSENT
    if isinstance(raw, bool):
        return UNCONVERTIBLE
    if isinstance(raw, (int, Decimal)):
        return _to_target(Decimal(raw), target)
    if isinstance(raw, float):
        return _to_target(Decimal(repr(raw)), target)

    text = str(raw).strip()
    if not text:
        return ABSENT
    for ch in strip_chars:
        text = text.replace(ch, "")
    if not text:
        return UNCONVERTIBLE
    try:
        number = Decimal(text)
    except InvalidOperation:
        return UNCONVERTIBLE
    return _to_target(number, target)


def status_of(value) -> str:
    if value is ABSENT:
        return STATUS_ABSENT
    if value is UNCONVERTIBLE:
        return STATUS_UNCONVERTIBLE
    return STATUS_OK


def normalize_column(
    series: pd.Series, target=int, strip_chars: Iterable[str] = DEFAULT_STRIP_CHARS
) -> Tuple[pd.Series, pd.Series]:
    """
    Normalize a whole column.

    Returns ``(values, status)``: values hold the typed value or None,
    status holds ``ok`` / ``absent`` / ``unconvertible`` per row.
    """
    strip_chars = tuple(strip_chars)
    converted = [normalize_numeric(v, target, strip_chars) for v in series.tolist()]
    status = pd.Series([status_of(v) for v in converted], index=series.index, dtype=object)
    values = pd.Series(
        [None if status_of(v) != STATUS_OK else v for v in converted], index=series.index, dtype=object
    )
    return values, status
