"""Meta-event detection algorithms.

This module provides the MetaEventDetector class that evaluates a
subscription's meta-event condition against the event store. Three
variants are supported:

- ``event_count``: number of matching events in the window.
- ``rolling_aggregate``: sum/avg/min/max of a numeric event field.
- ``net_aggregate``: the same aggregate over two event populations,
  positive minus negative.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from telltide.detector.condition import evaluate
from telltide.detector.models import (
    DetectionResult,
    EventCountConfig,
    MetaEventConfig,
    NetAggregateConfig,
    RollingAggregateConfig,
    Subscription,
    UnsupportedAggregation,
)
from telltide.detector.window import parse_window, resolve_block_floor, window_start
from telltide.storage.repos import EventDTO, EventFilter, EventRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

SessionScope = Callable[[], AbstractAsyncContextManager["AsyncSession"]]
Measure = Callable[[EventFilter], Awaitable[float]]


@dataclass(frozen=True)
class _Outcome:
    triggered: bool
    value: float | None
    contract: str | None = None


class MetaEventDetector:
    """Evaluates meta-event conditions over the current window.

    The detector holds no per-subscription state: every call to
    :meth:`detect` resolves the window against the store as it is now.

    Multi-contract subscriptions (``contracts`` with more than one entry)
    are evaluated per contract in list order; the first contract whose own
    metric satisfies the condition wins and the rest are not queried.

    Example:
        ```python
        db = DatabaseManager(settings.database.url)
        detector = MetaEventDetector(db.get_async_session)

        result = await detector.detect(subscription)
        if result.triggered:
            print(result.observed_value, result.triggered_by_contract)
        ```
    """

    def __init__(
        self,
        session_scope: SessionScope,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the detector.

        Args:
            session_scope: Callable returning an async context manager that
                yields a database session (e.g. ``DatabaseManager.get_async_session``).
            clock: Source of "now"; defaults to the UTC wall clock.
        """
        self._session_scope = session_scope
        self._clock = clock or (lambda: datetime.now(UTC))

    async def detect(self, subscription: Subscription) -> DetectionResult:
        """Evaluate one subscription.

        Any error (bad configuration, store failure) is logged and reported
        as a non-triggered result; nothing propagates to the caller.
        """
        config = subscription.config
        try:
            window_minutes = parse_window(config.window)
            async with self._session_scope() as session:
                repo = EventRepository(session)
                if isinstance(config, EventCountConfig):
                    return await self._detect_event_count(repo, config, window_minutes)
                if isinstance(config, RollingAggregateConfig):
                    return await self._detect_rolling_aggregate(repo, config, window_minutes)
                if isinstance(config, NetAggregateConfig):
                    return await self._detect_net_aggregate(repo, config, window_minutes)
                raise TypeError(f"Unknown meta-event type: {type(config).__name__}")
        except Exception as e:
            logger.error(
                "Error detecting meta-event for subscription %s (%s): %s",
                subscription.id,
                subscription.name,
                e,
            )
            return DetectionResult(triggered=False, window=config.window)

    async def relevant_events(self, config: MetaEventConfig, limit: int = 100) -> list[EventDTO]:
        """Most recent events inside a configuration's window and filters.

        For ``net_aggregate`` configurations this lists ``event_type`` events only.
        """
        window_minutes = parse_window(config.window)
        async with self._session_scope() as session:
            repo = EventRepository(session)
            flt = await self._base_filter(repo, config, [config.event_type], window_minutes)
            targets = config.contract_targets()
            if targets:
                flt = replace(flt, contracts=tuple(targets))
            return await repo.list_matching(config.event_type, flt, limit=limit)

    # ------------------------------------------------------------------
    # Variants
    # ------------------------------------------------------------------

    async def _detect_event_count(
        self,
        repo: EventRepository,
        config: EventCountConfig,
        window_minutes: int,
    ) -> DetectionResult:
        flt = await self._base_filter(repo, config, [config.event_type], window_minutes)
        self._log_query(config, window_minutes, flt)

        async def measure(f: EventFilter) -> float:
            return float(await repo.count_matching(config.event_type, f))

        outcome = await self._evaluate_targets(config, flt, measure)
        logger.debug("Result: count=%s", outcome.value)
        return DetectionResult(
            triggered=outcome.triggered,
            window=config.window,
            event_count=int(outcome.value) if outcome.value is not None else None,
            threshold=config.condition.threshold,
            triggered_by_contract=outcome.contract,
            evaluated_at=self._clock(),
        )

    async def _detect_rolling_aggregate(
        self,
        repo: EventRepository,
        config: RollingAggregateConfig,
        window_minutes: int,
    ) -> DetectionResult:
        _require_value_aggregation(config.aggregation)
        flt = await self._base_filter(repo, config, [config.event_type], window_minutes)
        self._log_query(config, window_minutes, flt)

        async def measure(f: EventFilter) -> float:
            return await repo.aggregate(config.event_type, config.field, config.aggregation, f)

        outcome = await self._evaluate_targets(config, flt, measure)
        logger.debug("Result: %s=%s", config.aggregation, outcome.value)
        return DetectionResult(
            triggered=outcome.triggered,
            window=config.window,
            aggregated_value=outcome.value,
            threshold=config.condition.threshold,
            triggered_by_contract=outcome.contract,
            evaluated_at=self._clock(),
        )

    async def _detect_net_aggregate(
        self,
        repo: EventRepository,
        config: NetAggregateConfig,
        window_minutes: int,
    ) -> DetectionResult:
        _require_value_aggregation(config.aggregation)
        # One window for both populations.
        flt = await self._base_filter(
            repo,
            config,
            [config.positive_event_type, config.negative_event_type],
            window_minutes,
        )
        self._log_query(config, window_minutes, flt)

        async def measure(f: EventFilter) -> float:
            positive = await repo.aggregate(
                config.positive_event_type, config.field, config.aggregation, f
            )
            negative = await repo.aggregate(
                config.negative_event_type, config.field, config.aggregation, f
            )
            return positive - negative

        outcome = await self._evaluate_targets(config, flt, measure)
        logger.debug(
            "Result: net=%s (%s - %s)",
            outcome.value,
            config.positive_event_type,
            config.negative_event_type,
        )
        return DetectionResult(
            triggered=outcome.triggered,
            window=config.window,
            aggregated_value=outcome.value,
            threshold=config.condition.threshold,
            triggered_by_contract=outcome.contract,
            evaluated_at=self._clock(),
        )

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    async def _base_filter(
        self,
        repo: EventRepository,
        config: MetaEventConfig,
        event_types: Sequence[str],
        window_minutes: int,
    ) -> EventFilter:
        """Filter set without the contract restriction.

        A block lookback replaces the time window entirely.
        """
        flt = EventFilter(
            chain=config.chain,
            from_address=config.from_address,
            to_address=config.to_address,
            market_id=config.market_id,
        )
        if config.lookback_blocks is not None:
            max_block = await repo.max_block(event_types, chain=config.chain)
            return replace(flt, min_block=resolve_block_floor(max_block, config.lookback_blocks))
        return replace(flt, since=window_start(self._clock(), window_minutes))

    async def _evaluate_targets(
        self,
        config: MetaEventConfig,
        flt: EventFilter,
        measure: Measure,
    ) -> _Outcome:
        op = config.condition.operator
        threshold = config.condition.threshold
        targets = config.contract_targets()

        if targets and len(targets) > 1:
            for contract in targets:
                value = await measure(replace(flt, contracts=(contract,)))
                if evaluate(value, op, threshold):
                    return _Outcome(triggered=True, value=value, contract=contract)
            return _Outcome(triggered=False, value=None)

        value = await measure(replace(flt, contracts=tuple(targets) if targets else None))
        return _Outcome(triggered=evaluate(value, op, threshold), value=value)

    @staticmethod
    def _log_query(config: MetaEventConfig, window_minutes: int, flt: EventFilter) -> None:
        if flt.min_block is not None:
            scope = f"blocks>={flt.min_block}"
        else:
            scope = f"window={window_minutes}min since={flt.since.isoformat() if flt.since else '-'}"
        logger.debug(
            "Query: type=%s event=%s chain=%s %s",
            config.type,
            config.event_type,
            config.chain,
            scope,
        )


def _require_value_aggregation(aggregation: str) -> None:
    if aggregation == "count":
        raise UnsupportedAggregation("Use event_count type for count aggregation")
