"""Data models for the alerter module."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from telltide.detector.models import DetectionResult, Subscription


@dataclass(frozen=True)
class WebhookPayload:
    """Canonical body POSTed to a subscriber when a meta-event fires.

    Attributes:
        subscription_id: Subscription that triggered.
        subscription_name: Its human-readable name.
        triggered_at: When the detection pass produced the trigger.
        meta_event_type: ``event_count``, ``rolling_aggregate`` or ``net_aggregate``.
        window: Configured window string.
        aggregated_value: Observed metric (the event count for ``event_count``).
        threshold: Numeric threshold that was compared against.
        triggered_by_contract: Contract that satisfied a multi-contract OR-set.
    """

    subscription_id: str
    subscription_name: str
    triggered_at: datetime
    meta_event_type: str
    window: str
    aggregated_value: float | None = None
    threshold: float | None = None
    triggered_by_contract: str | None = None

    @classmethod
    def from_detection(
        cls,
        subscription: Subscription,
        result: DetectionResult,
        triggered_at: datetime | None = None,
    ) -> WebhookPayload:
        """Render the payload for a triggered detection result."""
        return cls(
            subscription_id=subscription.id,
            subscription_name=subscription.name,
            triggered_at=triggered_at or datetime.now(UTC),
            meta_event_type=subscription.config.type,
            window=result.window,
            aggregated_value=result.observed_value,
            threshold=result.threshold,
            triggered_by_contract=result.triggered_by_contract,
        )

    def to_dict(self) -> dict[str, Any]:
        """JSON-serializable form; unset optional keys are omitted."""
        meta_event: dict[str, Any] = {
            "type": self.meta_event_type,
            "condition_met": True,
        }
        if self.aggregated_value is not None:
            meta_event["aggregated_value"] = self.aggregated_value
        if self.threshold is not None:
            meta_event["threshold"] = self.threshold
        meta_event["window"] = self.window
        if self.triggered_by_contract is not None:
            meta_event["triggered_by_contract"] = self.triggered_by_contract

        return {
            "subscription_id": self.subscription_id,
            "subscription_name": self.subscription_name,
            "triggered_at": self.triggered_at.isoformat(),
            "meta_event": meta_event,
        }


@dataclass(frozen=True)
class PendingNotification:
    """A triggered detection waiting to be handed to the dispatcher."""

    subscription_id: str
    webhook_url: str
    payload: WebhookPayload


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of delivering one notification.

    Attributes:
        notification_id: Id of the audit row written before delivery.
        delivered: True if a 2xx response was received.
        attempts: Number of POST attempts made.
        status_code: Last HTTP status seen, or 0 if no response was received.
    """

    notification_id: str
    delivered: bool
    attempts: int
    status_code: int


@dataclass(frozen=True)
class BatchDispatchResult:
    """Counts for one dispatched batch."""

    successful: int
    failed: int

    @property
    def total(self) -> int:
        return self.successful + self.failed
