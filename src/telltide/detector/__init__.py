"""Detection layer - Meta-event condition evaluation."""

from telltide.detector.condition import evaluate
from telltide.detector.meta_event import MetaEventDetector
from telltide.detector.models import (
    ConfigurationError,
    Condition,
    DetectionResult,
    EventCountConfig,
    InvalidMetaEventConfig,
    InvalidWindowFormat,
    MetaEventConfig,
    MetaEventError,
    NetAggregateConfig,
    RollingAggregateConfig,
    Subscription,
    UnsupportedAggregation,
    parse_meta_event_config,
)
from telltide.detector.window import parse_window, resolve_block_floor, window_start

__all__ = [
    "Condition",
    "ConfigurationError",
    "DetectionResult",
    "EventCountConfig",
    "InvalidMetaEventConfig",
    "InvalidWindowFormat",
    "MetaEventConfig",
    "MetaEventDetector",
    "MetaEventError",
    "NetAggregateConfig",
    "RollingAggregateConfig",
    "Subscription",
    "UnsupportedAggregation",
    "evaluate",
    "parse_meta_event_config",
    "parse_window",
    "resolve_block_floor",
    "window_start",
]
