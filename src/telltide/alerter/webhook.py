"""Webhook delivery with an audit trail and bounded retries.

Every notification is written to ``notifications_log`` before the first
network attempt. The row is then updated in place with the attempt count
and the last HTTP status observed.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from contextlib import AbstractAsyncContextManager
from typing import TYPE_CHECKING

import httpx

from telltide.alerter.models import BatchDispatchResult, DispatchResult, PendingNotification
from telltide.config import WebhookSettings
from telltide.storage.repos import NotificationLogRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

SessionScope = Callable[[], AbstractAsyncContextManager["AsyncSession"]]

# Status that means the subscriber endpoint does not exist; retrying is pointless.
ABORT_STATUS = 404


class WebhookDispatcher:
    """POSTs meta-event payloads to subscriber webhooks.

    Per notification:

    1. Insert the audit row.
    2. Attempt delivery up to ``max_attempts`` times. A 2xx response stops
       with success; a 404 stops immediately; anything else (non-2xx,
       timeout, transport error) waits ``attempt * retry_delay_ms`` and
       tries again.
    3. Persist ``retry_count`` after every attempt and the final status
       (0 if no response was ever received) at the end.

    Example:
        ```python
        async with WebhookDispatcher(db.get_async_session, settings.webhook) as dispatcher:
            result = await dispatcher.dispatch_batch(pending)
            print(result.successful, result.failed)
        ```
    """

    def __init__(
        self,
        session_scope: SessionScope,
        settings: WebhookSettings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            session_scope: Callable returning an async session context manager.
            settings: Delivery settings; defaults are read from the environment.
            client: HTTP client to use. When omitted one is created lazily and
                closed by :meth:`aclose`.
        """
        self._session_scope = session_scope
        self._settings = settings or WebhookSettings()
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._settings.timeout_seconds),
            )
        return self._client

    async def aclose(self) -> None:
        """Close the HTTP client if this dispatcher created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> WebhookDispatcher:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def dispatch(self, notification: PendingNotification) -> DispatchResult:
        """Deliver one notification.

        Delivery failures are recorded and reported in the result, not raised.
        Store errors while writing the audit row do propagate.
        """
        body = notification.payload.to_dict()
        async with self._session_scope() as session:
            log_id = await NotificationLogRepository(session).create(
                notification.subscription_id,
                notification.payload.triggered_at,
                body,
            )

        max_attempts = self._settings.max_attempts
        url = notification.webhook_url
        last_status = 0
        delivered = False
        aborted = False
        attempt = 0

        try:
            for attempt in range(1, max_attempts + 1):
                logger.info("Sending webhook to %s (attempt %d/%d)", url, attempt, max_attempts)
                try:
                    response = await self._get_client().post(
                        url,
                        json=body,
                        headers={
                            "Content-Type": "application/json",
                            "User-Agent": self._settings.user_agent,
                        },
                        timeout=self._settings.timeout_seconds,
                    )
                    last_status = response.status_code
                    if response.is_success:
                        delivered = True
                        logger.info("Webhook delivered to %s (%d)", url, last_status)
                    elif last_status == ABORT_STATUS:
                        aborted = True
                        logger.warning(
                            "Webhook endpoint %s returned 404, abandoning remaining attempts", url
                        )
                    else:
                        logger.warning("Webhook %s returned non-2xx status: %d", url, last_status)
                except httpx.TimeoutException:
                    logger.warning("Webhook delivery to %s timed out (attempt %d)", url, attempt)
                except (httpx.HTTPError, httpx.InvalidURL) as e:
                    logger.warning(
                        "Webhook delivery to %s failed (attempt %d): %s", url, attempt, e
                    )

                await self._record_attempt(log_id, attempt)

                if delivered or aborted:
                    break
                if attempt < max_attempts:
                    await asyncio.sleep(attempt * self._settings.retry_delay_ms / 1000)
        finally:
            await self._record_status(log_id, last_status)

        if not delivered:
            logger.error(
                "Webhook delivery failed for subscription %s after %d attempt(s), last status %d",
                notification.subscription_id,
                attempt,
                last_status,
            )

        return DispatchResult(
            notification_id=log_id,
            delivered=delivered,
            attempts=attempt,
            status_code=last_status,
        )

    async def dispatch_batch(
        self, notifications: Sequence[PendingNotification]
    ) -> BatchDispatchResult:
        """Deliver all notifications concurrently.

        One notification failing (including raising) does not affect the others.
        """
        if not notifications:
            return BatchDispatchResult(successful=0, failed=0)

        results = await asyncio.gather(
            *(self.dispatch(n) for n in notifications),
            return_exceptions=True,
        )

        successful = 0
        for notification, result in zip(notifications, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    "Dispatch for subscription %s raised: %s",
                    notification.subscription_id,
                    result,
                )
            elif result.delivered:
                successful += 1

        return BatchDispatchResult(successful=successful, failed=len(results) - successful)

    async def _record_attempt(self, log_id: str, attempt: int) -> None:
        async with self._session_scope() as session:
            await NotificationLogRepository(session).update_retry_count(log_id, attempt)

    async def _record_status(self, log_id: str, status: int) -> None:
        async with self._session_scope() as session:
            await NotificationLogRepository(session).update_response_status(log_id, status)
