"""Database infrastructure — engine, ORM models, and repositories."""

from meetup_escrow.infrastructure.database.engine import (
    build_engine,
    close_db,
    create_tables,
    get_engine,
    get_store,
    init_db,
)
from meetup_escrow.infrastructure.database.orm_models import (
    AppliedAdjustmentRow,
    Base,
    ReviewRow,
    TransactionEventRow,
    TransactionRow,
    UserStatisticsRow,
)
from meetup_escrow.infrastructure.database.repositories import (
    EventRepository,
    ReviewRepository,
    SqlAlchemyPersistenceStore,
    TransactionRepository,
    UserStatisticsRepository,
)

__all__ = [
    "AppliedAdjustmentRow",
    "Base",
    "EventRepository",
    "ReviewRepository",
    "ReviewRow",
    "SqlAlchemyPersistenceStore",
    "TransactionEventRow",
    "TransactionRepository",
    "TransactionRow",
    "UserStatisticsRepository",
    "UserStatisticsRow",
    "build_engine",
    "close_db",
    "create_tables",
    "get_engine",
    "get_store",
    "init_db",
]
