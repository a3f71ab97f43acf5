"""Utilities for working with epoch-millisecond timestamps."""

from __future__ import annotations

import time
from typing import Optional, Union

Number = Union[int, float]
Scalar = Union[Number, str]


def now_ms() -> int:
    """Return the current wall-clock time in epoch milliseconds."""

    return int(time.time() * 1000)


def from_epoch_millis(value: Optional[Scalar]) -> Optional[int]:
    """Parse ``value`` representing epoch milliseconds.

    Values written by other clients are stringified integers; anything that
    does not parse yields ``None`` so callers can treat it as absent.
    """

    if value in (None, ""):
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


__all__ = ["now_ms", "from_epoch_millis"]
