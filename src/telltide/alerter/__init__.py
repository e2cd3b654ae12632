"""Alerting layer - Webhook payloads and delivery."""

from telltide.alerter.models import (
    BatchDispatchResult,
    DispatchResult,
    PendingNotification,
    WebhookPayload,
)
from telltide.alerter.webhook import WebhookDispatcher

__all__ = [
    "BatchDispatchResult",
    "DispatchResult",
    "PendingNotification",
    "WebhookDispatcher",
    "WebhookPayload",
]
