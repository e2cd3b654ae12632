"""Threshold comparison for meta-event conditions."""

from __future__ import annotations

import operator
from collections.abc import Callable

from telltide.detector.models import ConfigurationError

_OPERATORS: dict[str, Callable[[float, float], bool]] = {
    ">": operator.gt,
    "<": operator.lt,
    ">=": operator.ge,
    "<=": operator.le,
    "=": operator.eq,
    "!=": operator.ne,
}


def evaluate(actual: float, op: str, threshold: float) -> bool:
    """Compare ``actual`` against ``threshold`` using ``op``.

    Plain float semantics; ``=`` and ``!=`` use exact equality.

    Raises:
        ConfigurationError: If ``op`` is not one of the six supported operators.
    """
    compare = _OPERATORS.get(op)
    if compare is None:
        raise ConfigurationError(f"Unknown operator: {op}")
    return compare(actual, threshold)
