"""Storage layer - Database schemas and repositories."""

from telltide.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from telltide.storage.models import (
    Base,
    EventModel,
    NotificationLogModel,
    SubscriptionModel,
)
from telltide.storage.repos import (
    EventDTO,
    EventFilter,
    EventRepository,
    NotificationLogDTO,
    NotificationLogRepository,
    SubscriptionDTO,
    SubscriptionRepository,
)

__all__ = [
    "Base",
    "DatabaseManager",
    "EventDTO",
    "EventFilter",
    "EventModel",
    "EventRepository",
    "NotificationLogDTO",
    "NotificationLogModel",
    "NotificationLogRepository",
    "SubscriptionDTO",
    "SubscriptionModel",
    "SubscriptionRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
