"""Pytest configuration and fixtures."""

import itertools
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

import pytest

from telltide.storage.database import DatabaseManager
from telltide.storage.repos import EventDTO, EventRepository, SubscriptionDTO, SubscriptionRepository

USDC = "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"
WEBHOOK_URL = "https://hooks.example.com/telltide"


@pytest.fixture
async def db_manager(tmp_path):
    """Database manager backed by a file SQLite database with the schema created.

    A file database (rather than ``:memory:``) lets concurrent sessions each
    get their own connection.
    """
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'telltide.db'}")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()


@pytest.fixture
def make_event() -> Callable[..., EventDTO]:
    """Factory for event DTOs with unique transaction hashes."""
    counter = itertools.count(1)

    def _make(
        event_type: str = "erc20_transfer",
        *,
        contract: str = USDC,
        block: int = 100,
        timestamp: datetime | None = None,
        data: dict[str, Any] | None = None,
        chain: str = "ethereum",
        from_address: str | None = None,
        to_address: str | None = None,
    ) -> EventDTO:
        n = next(counter)
        return EventDTO(
            chain=chain,
            block_number=block,
            timestamp=timestamp or datetime.now(UTC),
            event_type=event_type,
            contract_address=contract,
            transaction_hash=f"0x{n:064x}",
            log_index=0,
            from_address=from_address,
            to_address=to_address,
            data=data or {},
        )

    return _make


@pytest.fixture
def seed_events(db_manager) -> Callable[..., Awaitable[None]]:
    """Insert events into the test database."""

    async def _seed(*events: EventDTO) -> None:
        async with db_manager.get_async_session() as session:
            await EventRepository(session).insert_many(list(events))

    return _seed


@pytest.fixture
def add_subscription(db_manager) -> Callable[..., Awaitable[SubscriptionDTO]]:
    """Insert a subscription and return the stored row."""

    async def _add(
        config: dict[str, Any],
        *,
        name: str = "Test subscription",
        webhook_url: str = WEBHOOK_URL,
        cooldown_minutes: int | None = 1,
        is_active: bool = True,
    ) -> SubscriptionDTO:
        async with db_manager.get_async_session() as session:
            return await SubscriptionRepository(session).insert(
                SubscriptionDTO(
                    user_id="user-1",
                    name=name,
                    webhook_url=webhook_url,
                    meta_event_config=config,
                    cooldown_minutes=cooldown_minutes,
                    is_active=is_active,
                )
            )

    return _add
