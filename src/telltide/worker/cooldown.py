"""Per-subscription notification cooldown."""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from telltide.detector.models import Subscription
from telltide.storage.repos import NotificationLogRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class CooldownGate:
    """Decides whether a subscription is evaluated in the current pass.

    A subscription that notified less than ``cooldown_minutes`` ago is
    skipped before detection, so its window is not queried at all until
    the cooldown expires. The last notification is read from the audit
    log; there is no in-memory state.
    """

    def __init__(
        self,
        session_scope: Callable[[], AbstractAsyncContextManager[AsyncSession]],
    ) -> None:
        self._session_scope = session_scope

    async def should_skip(self, subscription: Subscription, now: datetime) -> bool:
        """Return True if the subscription is still cooling down at ``now``."""
        async with self._session_scope() as session:
            last_triggered = await NotificationLogRepository(session).get_last_triggered_at(
                subscription.id
            )
        if last_triggered is None:
            return False

        elapsed = now - last_triggered
        if elapsed < timedelta(minutes=subscription.cooldown_minutes):
            logger.debug(
                "Subscription %s in cooldown (%.0fs since last notification, cooldown %dm)",
                subscription.id,
                elapsed.total_seconds(),
                subscription.cooldown_minutes,
            )
            return True
        return False
