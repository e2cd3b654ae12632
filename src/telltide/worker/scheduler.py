"""Recurring detection worker.

This module provides the MetaEventWorker class that periodically evaluates
every active subscription and hands triggered notifications to the webhook
dispatcher as one batch per pass.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from telltide.alerter.models import BatchDispatchResult, PendingNotification, WebhookPayload
from telltide.alerter.webhook import WebhookDispatcher
from telltide.config import Settings, get_settings
from telltide.detector.meta_event import MetaEventDetector
from telltide.detector.models import Subscription
from telltide.storage.database import DatabaseManager
from telltide.storage.repos import SubscriptionRepository
from telltide.worker.cooldown import CooldownGate

logger = logging.getLogger(__name__)


class WorkerState(str, Enum):
    """Worker lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class WorkerStats:
    """Statistics for the worker."""

    started_at: datetime | None = None
    passes_run: int = 0
    ticks_dropped: int = 0
    subscriptions_evaluated: int = 0
    subscriptions_skipped: int = 0
    triggers: int = 0
    notifications_delivered: int = 0
    notifications_failed: int = 0
    errors: int = 0
    last_pass_at: datetime | None = None
    last_pass_duration_seconds: float | None = None
    last_error: str | None = None


@dataclass(frozen=True)
class PassSummary:
    """What one detection pass did.

    Attributes:
        active: Active subscriptions loaded.
        skipped: Subscriptions skipped by the cooldown gate.
        evaluated: Subscriptions that went through detection.
        failed: Subscriptions that raised while being processed.
        notifications: Notifications produced, in subscription order.
        dispatch: Batch delivery counts (None when nothing was dispatched).
    """

    active: int
    skipped: int
    evaluated: int
    failed: int
    notifications: tuple[PendingNotification, ...]
    dispatch: BatchDispatchResult | None = None


class MetaEventWorker:
    """Runs detection passes on a fixed interval.

    Passes are single-flight: a tick that arrives while the previous pass
    (including its dispatch batch) is still running is dropped and counted,
    never queued.

    Example:
        ```python
        from telltide.config import get_settings
        from telltide.worker.scheduler import MetaEventWorker

        worker = MetaEventWorker(get_settings())

        await worker.start()
        # Passes run every WORKER_INTERVAL_SECONDS until stop() is called
        await worker.stop()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        db_manager: DatabaseManager | None = None,
        detector: MetaEventDetector | None = None,
        dispatcher: WebhookDispatcher | None = None,
        dry_run: bool | None = None,
    ) -> None:
        """Initialize the worker.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            db_manager: Database manager. Created from settings when omitted,
                in which case the worker disposes it on stop().
            detector: Meta-event detector (built on ``db_manager`` when omitted).
            dispatcher: Webhook dispatcher (built on ``db_manager`` when omitted).
            dry_run: If True, log payloads instead of dispatching them.
                Overrides settings.dry_run.
        """
        self._settings = settings or get_settings()
        self._dry_run = dry_run if dry_run is not None else self._settings.dry_run

        self._owns_db = db_manager is None
        self._db_manager = db_manager or DatabaseManager(
            self._settings.database.url,
            pool_size=self._settings.database.pool_size,
        )
        session_scope = self._db_manager.get_async_session
        self._detector = detector or MetaEventDetector(session_scope)
        self._dispatcher = dispatcher or WebhookDispatcher(session_scope, self._settings.webhook)
        self._cooldown = CooldownGate(session_scope)

        self._state = WorkerState.STOPPED
        self._stats = WorkerStats()

        # Single-flight guard
        self._pass_running = False

        # Synchronization
        self._stop_event: asyncio.Event | None = None
        self._tick_task: asyncio.Task[None] | None = None
        self._pass_task: asyncio.Task[PassSummary | None] | None = None

    @property
    def state(self) -> WorkerState:
        """Current worker state."""
        return self._state

    @property
    def stats(self) -> WorkerStats:
        """Current worker statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        """Check if worker is running."""
        return self._state == WorkerState.RUNNING

    @property
    def pass_in_progress(self) -> bool:
        """True while a detection pass holds the single-flight guard."""
        return self._pass_running

    async def start(self) -> None:
        """Start the worker.

        Launches one pass immediately, then one every
        ``worker.interval_seconds``.

        Raises:
            RuntimeError: If worker is already running.
        """
        if self._state != WorkerState.STOPPED:
            raise RuntimeError(f"Cannot start worker in state {self._state}")

        self._state = WorkerState.STARTING
        self._stop_event = asyncio.Event()
        logger.info(
            "Starting meta-event worker (interval %ss%s)",
            self._settings.worker.interval_seconds,
            ", dry run" if self._dry_run else "",
        )

        self._stats.started_at = datetime.now(UTC)
        self._launch_pass()
        self._tick_task = asyncio.create_task(self._run_tick_loop())
        self._state = WorkerState.RUNNING
        logger.info("Worker started")

    async def stop(self) -> None:
        """Stop the worker gracefully.

        Cancels the timer so no new pass starts, then waits for an in-flight
        pass (including its dispatch batch) to finish before releasing
        resources.
        """
        if self._state == WorkerState.STOPPED:
            return

        self._state = WorkerState.STOPPING
        logger.info("Stopping worker...")

        if self._stop_event:
            self._stop_event.set()

        if self._tick_task:
            self._tick_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._tick_task
            self._tick_task = None

        if self._pass_task and not self._pass_task.done():
            logger.info("Waiting for in-flight detection pass to finish...")
            with contextlib.suppress(asyncio.CancelledError):
                await self._pass_task
        self._pass_task = None

        await self._cleanup()

        self._state = WorkerState.STOPPED
        logger.info("Worker stopped")

    async def run(self) -> None:
        """Start the worker and run until stop() is called or the task is cancelled."""
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def close(self) -> None:
        """Release resources of a worker that was never started (one-shot use)."""
        if self._state == WorkerState.STOPPED:
            await self._cleanup()

    def request_stop(self) -> None:
        """Ask a worker blocked in run() to shut down (safe from signal handlers)."""
        if self._stop_event:
            self._stop_event.set()

    async def __aenter__(self) -> MetaEventWorker:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    async def run_pass(self) -> PassSummary | None:
        """Run one detection pass.

        Returns:
            Summary of the pass, or None if the tick was dropped because a
            pass was already running, or if the pass itself failed.
        """
        if self._pass_running:
            self._stats.ticks_dropped += 1
            logger.warning("Previous detection pass still running, skipping this tick")
            return None

        self._pass_running = True
        started = time.monotonic()
        try:
            summary = await self._execute_pass()
            self._stats.passes_run += 1
            return summary
        except Exception as e:
            self._stats.errors += 1
            self._stats.last_error = str(e)
            logger.error("Detection pass failed: %s", e)
            return None
        finally:
            self._pass_running = False
            self._stats.last_pass_at = datetime.now(UTC)
            self._stats.last_pass_duration_seconds = time.monotonic() - started

    async def _log_relevant_events(self, subscription: Subscription, limit: int = 10) -> None:
        """Log the most recent events behind a trigger at debug level."""
        try:
            events = await self._detector.relevant_events(subscription.config, limit=limit)
        except Exception as e:
            logger.warning("Could not list events for subscription %s: %s", subscription.id, e)
            return
        for event in events:
            logger.debug(
                "  %s block=%d contract=%s tx=%s",
                event.event_type,
                event.block_number,
                event.contract_address,
                event.transaction_hash,
            )

    async def _execute_pass(self) -> PassSummary:
        logger.info("Running meta-event detection pass...")
        async with self._db_manager.get_async_session() as session:
            rows = await SubscriptionRepository(session).list_active()
        logger.info("Checking %d active subscription(s)", len(rows))

        default_cooldown = self._settings.worker.default_cooldown_minutes
        pending: list[PendingNotification] = []
        skipped = evaluated = failed = 0

        for row in rows:
            try:
                subscription = Subscription.from_dto(
                    row, default_cooldown_minutes=default_cooldown
                )
                if await self._cooldown.should_skip(subscription, datetime.now(UTC)):
                    skipped += 1
                    continue

                result = await self._detector.detect(subscription)
                evaluated += 1
                if not result.triggered:
                    continue

                logger.info(
                    "Meta-event triggered for %s (%s): value=%s threshold=%s%s",
                    subscription.name,
                    subscription.id,
                    result.observed_value,
                    result.threshold,
                    f" contract={result.triggered_by_contract}"
                    if result.triggered_by_contract
                    else "",
                )
                if logger.isEnabledFor(logging.DEBUG):
                    await self._log_relevant_events(subscription)
                pending.append(
                    PendingNotification(
                        subscription_id=subscription.id,
                        webhook_url=subscription.webhook_url,
                        payload=WebhookPayload.from_detection(subscription, result),
                    )
                )
            except Exception as e:
                failed += 1
                self._stats.errors += 1
                self._stats.last_error = str(e)
                logger.error("Error processing subscription %s: %s", row.id, e)

        self._stats.subscriptions_evaluated += evaluated
        self._stats.subscriptions_skipped += skipped
        self._stats.triggers += len(pending)

        dispatch: BatchDispatchResult | None = None
        if not pending:
            logger.info("Detection pass complete: no meta-events triggered")
        elif self._dry_run:
            for notification in pending:
                logger.info(
                    "[DRY RUN] Would POST to %s: %s",
                    notification.webhook_url,
                    json.dumps(notification.payload.to_dict()),
                )
        else:
            logger.info("Dispatching %d webhook notification(s)", len(pending))
            dispatch = await self._dispatcher.dispatch_batch(pending)
            self._stats.notifications_delivered += dispatch.successful
            self._stats.notifications_failed += dispatch.failed
            logger.info(
                "Webhooks dispatched: %d successful, %d failed",
                dispatch.successful,
                dispatch.failed,
            )

        return PassSummary(
            active=len(rows),
            skipped=skipped,
            evaluated=evaluated,
            failed=failed,
            notifications=tuple(pending),
            dispatch=dispatch,
        )

    def _launch_pass(self) -> None:
        if self._pass_task is not None and not self._pass_task.done():
            self._stats.ticks_dropped += 1
            logger.warning("Previous detection pass still running, skipping this tick")
            return
        self._pass_task = asyncio.create_task(self.run_pass())

    async def _run_tick_loop(self) -> None:
        if not self._stop_event:
            return

        interval = self._settings.worker.interval_seconds
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except TimeoutError:
                pass
            self._launch_pass()

    async def _cleanup(self) -> None:
        """Clean up resources."""
        await self._dispatcher.aclose()

        if self._owns_db:
            await self._db_manager.dispose_async()

        logger.debug("Resources cleaned up")
