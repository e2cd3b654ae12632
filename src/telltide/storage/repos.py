"""Repository pattern implementations for data access.

This module provides data access abstractions for the three stores the
engine talks to: the event store (read-mostly), the subscription store
(read-only to the worker), and the notification audit log.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal

import sqlalchemy as sa
from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from telltide.storage.models import EventModel, NotificationLogModel, SubscriptionModel

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

AggregationFn = Literal["sum", "avg", "min", "max"]

_AGGREGATES = {
    "sum": sa.func.sum,
    "avg": sa.func.avg,
    "min": sa.func.min,
    "max": sa.func.max,
}


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _lower(value: str | None) -> str | None:
    return value.lower() if value else None


# ============================================================================
# Events
# ============================================================================


@dataclass
class EventDTO:
    """Data transfer object for decoded on-chain events."""

    chain: str
    block_number: int
    timestamp: datetime
    event_type: str
    contract_address: str
    transaction_hash: str
    log_index: int
    from_address: str | None = None
    to_address: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: EventModel) -> EventDTO:
        return cls(
            chain=model.chain,
            block_number=model.block_number,
            timestamp=_as_utc(model.timestamp),
            event_type=model.event_type,
            contract_address=model.contract_address,
            transaction_hash=model.transaction_hash,
            log_index=model.log_index,
            from_address=model.from_address,
            to_address=model.to_address,
            data=dict(model.data or {}),
            created_at=model.created_at,
        )


@dataclass(frozen=True)
class EventFilter:
    """Filter set shared by count/aggregate/list queries.

    Exactly one of ``since`` (time window) or ``min_block`` (block lookback)
    is normally set; the detector never combines them.

    Attributes:
        chain: Chain name, or None for all chains.
        contracts: Contract addresses (OR-set), or None for all contracts.
        from_address: Optional sender filter.
        to_address: Optional recipient filter.
        market_id: Optional ``data.market_id`` filter (Morpho markets).
        since: Lower bound on event timestamp (inclusive).
        min_block: Lower bound on block number (inclusive).
    """

    chain: str | None = None
    contracts: tuple[str, ...] | None = None
    from_address: str | None = None
    to_address: str | None = None
    market_id: str | None = None
    since: datetime | None = None
    min_block: int | None = None

    def where_clauses(self) -> list[sa.ColumnElement[bool]]:
        clauses: list[sa.ColumnElement[bool]] = []
        if self.chain:
            clauses.append(EventModel.chain == self.chain)
        if self.contracts:
            clauses.append(EventModel.contract_address.in_([c.lower() for c in self.contracts]))
        if self.from_address:
            clauses.append(EventModel.from_address == self.from_address.lower())
        if self.to_address:
            clauses.append(EventModel.to_address == self.to_address.lower())
        if self.market_id:
            clauses.append(
                sa.func.lower(EventModel.data["market_id"].as_string()) == self.market_id.lower()
            )
        if self.min_block is not None:
            clauses.append(EventModel.block_number >= self.min_block)
        elif self.since is not None:
            clauses.append(EventModel.timestamp >= self.since)
        return clauses


class EventRepository:
    """Repository for the event store.

    The worker only reads from it; ``insert_many`` exists for the ingestion
    collaborator and for seeding.
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
        """
        self.session = session

    async def count_matching(self, event_type: str, flt: EventFilter) -> int:
        """Count events of ``event_type`` matching the filter."""
        stmt = (
            select(sa.func.count())
            .select_from(EventModel)
            .where(EventModel.event_type == event_type, *flt.where_clauses())
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one() or 0)

    async def aggregate(
        self,
        event_type: str,
        field_name: str,
        fn: AggregationFn,
        flt: EventFilter,
    ) -> float:
        """Aggregate a numeric ``data`` field over matching events.

        Args:
            event_type: Event type to aggregate.
            field_name: Key inside the event ``data`` map.
            fn: One of sum, avg, min, max.
            flt: Shared filter set.

        Returns:
            The aggregated value, or 0.0 when no event matched.
        """
        agg = _AGGREGATES.get(fn)
        if agg is None:
            raise ValueError(f"Unsupported aggregation function: {fn}")

        value_expr = sa.cast(
            EventModel.data[field_name].as_string(),
            sa.Numeric(asdecimal=False),
        )
        stmt = select(agg(value_expr)).where(
            EventModel.event_type == event_type, *flt.where_clauses()
        )
        result = await self.session.execute(stmt)
        value = result.scalar_one_or_none()
        return float(value) if value is not None else 0.0

    async def max_block(self, event_types: str | Sequence[str], *, chain: str | None = None) -> int:
        """Highest stored block number for the event type(s), or 0 if none."""
        types = [event_types] if isinstance(event_types, str) else list(event_types)
        stmt = select(sa.func.max(EventModel.block_number)).where(EventModel.event_type.in_(types))
        if chain:
            stmt = stmt.where(EventModel.chain == chain)
        result = await self.session.execute(stmt)
        value = result.scalar_one_or_none()
        return int(value) if value is not None else 0

    async def list_matching(
        self, event_type: str, flt: EventFilter, *, limit: int = 100
    ) -> list[EventDTO]:
        """List the most recent matching events, newest first."""
        stmt = (
            select(EventModel)
            .where(EventModel.event_type == event_type, *flt.where_clauses())
            .order_by(EventModel.timestamp.desc(), EventModel.log_index.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [EventDTO.from_model(m) for m in result.scalars().all()]

    async def insert_many(self, dtos: Sequence[EventDTO]) -> int:
        """Insert events, ignoring ones already stored (idempotent).

        Returns the number of attempted inserts (not the number of newly created
        rows), for portability across dialects.
        """
        if not dtos:
            return 0

        now = datetime.now(UTC)
        rows = [
            {
                "chain": dto.chain,
                "block_number": dto.block_number,
                "timestamp": dto.timestamp,
                "event_type": dto.event_type,
                "contract_address": dto.contract_address.lower(),
                "from_address": _lower(dto.from_address),
                "to_address": _lower(dto.to_address),
                "data": dto.data,
                "transaction_hash": dto.transaction_hash.lower(),
                "log_index": dto.log_index,
                "created_at": now,
            }
            for dto in dtos
        ]

        index_cols = ["chain", "transaction_hash", "log_index"]
        insert = pg_insert if self.session.get_bind().dialect.name == "postgresql" else sqlite_insert
        stmt = insert(EventModel).values(rows).on_conflict_do_nothing(index_elements=index_cols)
        await self.session.execute(stmt)
        await self.session.flush()
        return len(dtos)


# ============================================================================
# Subscriptions
# ============================================================================


@dataclass
class SubscriptionDTO:
    """Data transfer object for subscriptions.

    ``meta_event_config`` stays the raw JSON mapping here; the detector
    parses it into its typed form.
    """

    user_id: str
    name: str
    webhook_url: str
    meta_event_config: dict[str, Any]
    cooldown_minutes: int | None = None
    is_active: bool = True
    id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: SubscriptionModel) -> SubscriptionDTO:
        return cls(
            id=model.id,
            user_id=model.user_id,
            name=model.name,
            webhook_url=model.webhook_url,
            meta_event_config=dict(model.meta_event_config or {}),
            cooldown_minutes=model.cooldown_minutes,
            is_active=model.is_active,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )


class SubscriptionRepository:
    """Repository for meta-event subscriptions."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def list_active(self) -> list[SubscriptionDTO]:
        result = await self.session.execute(
            select(SubscriptionModel)
            .where(SubscriptionModel.is_active.is_(True))
            .order_by(SubscriptionModel.created_at.asc())
        )
        return [SubscriptionDTO.from_model(m) for m in result.scalars().all()]

    async def get_by_id(self, subscription_id: str) -> SubscriptionDTO | None:
        result = await self.session.execute(
            select(SubscriptionModel).where(SubscriptionModel.id == subscription_id)
        )
        model = result.scalar_one_or_none()
        return SubscriptionDTO.from_model(model) if model else None

    async def insert(self, dto: SubscriptionDTO) -> SubscriptionDTO:
        """Insert a subscription and return it with its generated id."""
        model = SubscriptionModel(
            user_id=dto.user_id,
            name=dto.name,
            webhook_url=dto.webhook_url,
            meta_event_config=dto.meta_event_config,
            cooldown_minutes=dto.cooldown_minutes,
            is_active=dto.is_active,
        )
        if dto.id is not None:
            model.id = dto.id
        self.session.add(model)
        await self.session.flush()
        return SubscriptionDTO.from_model(model)


# ============================================================================
# Notification log
# ============================================================================


@dataclass
class NotificationLogDTO:
    """Data transfer object for notification audit rows."""

    id: str
    subscription_id: str
    triggered_at: datetime
    payload: dict[str, Any]
    webhook_response_status: int | None
    retry_count: int
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: NotificationLogModel) -> NotificationLogDTO:
        return cls(
            id=model.id,
            subscription_id=model.subscription_id,
            triggered_at=_as_utc(model.triggered_at),
            payload=dict(model.payload or {}),
            webhook_response_status=model.webhook_response_status,
            retry_count=model.retry_count,
            created_at=model.created_at,
        )


class NotificationLogRepository:
    """Repository for the webhook notification audit log.

    Rows are created before delivery and mutated in place as attempts
    proceed; the engine never deletes them.
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
        """
        self.session = session

    async def create(
        self,
        subscription_id: str,
        triggered_at: datetime,
        payload: dict[str, Any],
    ) -> str:
        """Insert an audit row and return its id."""
        model = NotificationLogModel(
            subscription_id=subscription_id,
            triggered_at=triggered_at,
            payload=payload,
            retry_count=0,
        )
        self.session.add(model)
        await self.session.flush()
        return model.id

    async def update_retry_count(self, log_id: str, retry_count: int) -> None:
        await self.session.execute(
            update(NotificationLogModel)
            .where(NotificationLogModel.id == log_id)
            .values(retry_count=retry_count)
        )

    async def update_response_status(self, log_id: str, status: int) -> None:
        await self.session.execute(
            update(NotificationLogModel)
            .where(NotificationLogModel.id == log_id)
            .values(webhook_response_status=status)
        )

    async def get_by_id(self, log_id: str) -> NotificationLogDTO | None:
        result = await self.session.execute(
            select(NotificationLogModel).where(NotificationLogModel.id == log_id)
        )
        model = result.scalar_one_or_none()
        return NotificationLogDTO.from_model(model) if model else None

    async def get_last_triggered_at(self, subscription_id: str) -> datetime | None:
        """Most recent ``triggered_at`` for a subscription (UTC), if any."""
        result = await self.session.execute(
            select(NotificationLogModel.triggered_at)
            .where(NotificationLogModel.subscription_id == subscription_id)
            .order_by(NotificationLogModel.triggered_at.desc())
            .limit(1)
        )
        value = result.scalar_one_or_none()
        return _as_utc(value) if value is not None else None

    async def list_recent(self, subscription_id: str, limit: int = 50) -> list[NotificationLogDTO]:
        result = await self.session.execute(
            select(NotificationLogModel)
            .where(NotificationLogModel.subscription_id == subscription_id)
            .order_by(NotificationLogModel.triggered_at.desc())
            .limit(limit)
        )
        return [NotificationLogDTO.from_model(m) for m in result.scalars().all()]
