"""Data models for the detector module.

``MetaEventConfig`` is a tagged union keyed on ``type``: each variant carries
only the fields its detection algorithm needs, and defaults (``chain``,
cooldown) live on the models rather than in the detection code.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, TypeAdapter, ValidationError

if TYPE_CHECKING:
    from telltide.storage.repos import SubscriptionDTO

DEFAULT_CHAIN = "ethereum"
DEFAULT_COOLDOWN_MINUTES = 1

ComparisonOperator = Literal[">", "<", ">=", "<=", "=", "!="]
AggregationType = Literal["sum", "avg", "min", "max", "count"]


# ============================================================================
# Errors
# ============================================================================


class MetaEventError(Exception):
    """Base error for meta-event evaluation."""


class ConfigurationError(MetaEventError):
    """A subscription's meta-event configuration cannot be evaluated."""


class InvalidWindowFormat(ConfigurationError):
    """Window string does not match ``<digits><m|h|d>``."""

    def __init__(self, window: str) -> None:
        super().__init__(
            f"Invalid window format: {window!r}. Expected format: 1h, 15m, 24h, etc."
        )
        self.window = window


class UnsupportedAggregation(ConfigurationError):
    """Aggregation is not valid for the chosen detection variant."""


class InvalidMetaEventConfig(ConfigurationError):
    """Stored configuration blob failed validation."""


# ============================================================================
# Configuration variants
# ============================================================================


class Condition(BaseModel):
    """Threshold comparison applied to the computed metric."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    operator: ComparisonOperator
    value: float | str

    @property
    def threshold(self) -> float:
        """Numeric threshold; non-numeric values evaluate as 0."""
        if isinstance(self.value, str):
            return 0.0
        return float(self.value)


class _BaseMetaEventConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    event_type: str
    chain: str = DEFAULT_CHAIN
    contracts: list[str] | None = None
    contract_address: str | None = None
    market_id: str | None = None
    from_address: str | None = None
    to_address: str | None = None
    window: str
    lookback_blocks: PositiveInt | None = None
    condition: Condition

    def contract_targets(self) -> list[str] | None:
        """Contracts to filter on, in evaluation order (None = all contracts)."""
        if self.contracts:
            return list(self.contracts)
        if self.contract_address:
            return [self.contract_address]
        return None


class EventCountConfig(_BaseMetaEventConfig):
    """Count events in the window and compare the count to the threshold."""

    type: Literal["event_count"] = "event_count"


class RollingAggregateConfig(_BaseMetaEventConfig):
    """Aggregate ``data[field]`` over the window and compare it."""

    type: Literal["rolling_aggregate"] = "rolling_aggregate"
    field: str
    aggregation: AggregationType


class NetAggregateConfig(_BaseMetaEventConfig):
    """Aggregate of ``positive_event_type`` minus aggregate of ``negative_event_type``."""

    type: Literal["net_aggregate"] = "net_aggregate"
    field: str
    aggregation: AggregationType
    positive_event_type: str
    negative_event_type: str


MetaEventConfig = Annotated[
    EventCountConfig | RollingAggregateConfig | NetAggregateConfig,
    Field(discriminator="type"),
]

_config_adapter: TypeAdapter[MetaEventConfig] = TypeAdapter(MetaEventConfig)


def parse_meta_event_config(raw: dict[str, Any]) -> MetaEventConfig:
    """Validate a stored configuration blob into its typed variant.

    Raises:
        InvalidMetaEventConfig: If the blob is missing fields or has an
            unknown ``type``.
    """
    try:
        return _config_adapter.validate_python(raw)
    except ValidationError as e:
        raise InvalidMetaEventConfig(str(e)) from e


# ============================================================================
# Subscription / results
# ============================================================================


@dataclass(frozen=True)
class Subscription:
    """A subscription as seen by one detection pass.

    Attributes:
        id: Subscription id.
        user_id: Owner id.
        name: Human-readable name (echoed in webhook payloads).
        webhook_url: Delivery target.
        config: Parsed meta-event configuration.
        cooldown_minutes: Minimum minutes between notifications.
    """

    id: str
    user_id: str
    name: str
    webhook_url: str
    config: MetaEventConfig
    cooldown_minutes: int = DEFAULT_COOLDOWN_MINUTES

    @classmethod
    def from_dto(
        cls,
        dto: SubscriptionDTO,
        *,
        default_cooldown_minutes: int = DEFAULT_COOLDOWN_MINUTES,
    ) -> Subscription:
        """Build from a stored row; raises ``InvalidMetaEventConfig`` on a bad blob."""
        cooldown = dto.cooldown_minutes
        return cls(
            id=str(dto.id),
            user_id=dto.user_id,
            name=dto.name,
            webhook_url=dto.webhook_url,
            config=parse_meta_event_config(dto.meta_event_config),
            cooldown_minutes=default_cooldown_minutes if cooldown is None else cooldown,
        )


@dataclass(frozen=True)
class DetectionResult:
    """Outcome of evaluating one subscription.

    Attributes:
        triggered: Whether the condition was met.
        window: The configured window string.
        event_count: Count observed (event_count variant).
        aggregated_value: Aggregate or net value (aggregate variants).
        threshold: Numeric threshold compared against.
        triggered_by_contract: Contract that satisfied a multi-contract OR-set.
        evaluated_at: When the evaluation finished.
    """

    triggered: bool
    window: str
    event_count: int | None = None
    aggregated_value: float | None = None
    threshold: float | None = None
    triggered_by_contract: str | None = None
    evaluated_at: datetime | None = None

    @property
    def observed_value(self) -> float | None:
        """The number that was compared to the threshold."""
        if self.aggregated_value is not None:
            return self.aggregated_value
        if self.event_count is not None:
            return float(self.event_count)
        return None
