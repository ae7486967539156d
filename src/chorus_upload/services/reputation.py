# src/chorus_upload/services/reputation.py
"""Log-scaled reputation used to gate uploads."""

from __future__ import annotations

import math
from typing import Final

MAGNITUDE_OFFSET: Final[int] = 9  # raw scores below 10**9 map to the baseline
POINTS_PER_MAGNITUDE: Final[int] = 9
BASELINE: Final[int] = 25
_LEADING_DIGITS: Final[int] = 4
_LOG_EPSILON: Final[float] = 0.00000001


def _log10_of_digits(digits: str) -> float:
    """Approximate log10 of a (possibly huge) decimal string from its leading digits."""
    try:
        leading = int(digits[:_LEADING_DIGITS])
    except ValueError:
        return 0.0
    if leading <= 0:
        return 0.0
    log = math.log10(leading) + _LOG_EPSILON
    return (len(digits) - 1) + (log - int(log))


def rep_log10(raw: int | str | None) -> int:
    """Convert a raw ledger reputation into the familiar 25-centred scale.

    Each order of magnitude above 10**9 is worth nine points; negative raw
    scores mirror below the baseline. The result is truncated toward zero.
    """
    text = str(raw if raw is not None else 0).strip()
    negative = text.startswith("-")
    digits = text[1:] if negative else text

    out = max(_log10_of_digits(digits) - MAGNITUDE_OFFSET, 0.0)
    if negative:
        out = -out
    return int(out * POINTS_PER_MAGNITUDE + BASELINE)
