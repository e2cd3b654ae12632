"""Window resolution for meta-event queries.

A window is either a duration (``15m``, ``1h``, ``7d``) or, when
``lookback_blocks`` is set, a block-count lookback from the highest block
currently stored. The two are mutually exclusive per query.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta

from telltide.detector.models import InvalidWindowFormat

_WINDOW_RE = re.compile(r"(\d+)(m|h|d)", re.ASCII)

_UNIT_MINUTES = {
    "m": 1,
    "h": 60,
    "d": 60 * 24,
}


def parse_window(window: str) -> int:
    """Convert a duration specifier to minutes.

    Args:
        window: String such as ``"5m"``, ``"1h"`` or ``"2d"``.

    Returns:
        Window length in minutes.

    Raises:
        InvalidWindowFormat: If the string does not match ``<digits><m|h|d>``.
    """
    match = _WINDOW_RE.fullmatch(window) if isinstance(window, str) else None
    if match is None:
        raise InvalidWindowFormat(str(window))
    value, unit = match.groups()
    return int(value) * _UNIT_MINUTES[unit]


def window_start(now: datetime, window_minutes: int) -> datetime:
    """Lower timestamp bound for a time-based window ending at ``now``."""
    return now - timedelta(minutes=window_minutes)


def resolve_block_floor(max_block: int, lookback_blocks: int) -> int:
    """Lowest block included by a block-count lookback (never negative)."""
    return max(0, max_block - lookback_blocks)
