"""Storage layer - Database schemas and repositories."""

from token_swap_indexer.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from token_swap_indexer.storage.models import (
    Base,
    IndexerCursorModel,
    LeaderboardEntryModel,
    RateUpdateModel,
    SwapEventModel,
    TokenMetricsModel,
    TransactionModel,
    UserModel,
)
from token_swap_indexer.storage.repos import (
    CursorRepository,
    LeaderboardEntryDTO,
    LeaderboardRepository,
    RateUpdateDTO,
    RateUpdateRepository,
    SwapEventDTO,
    SwapEventRepository,
    TokenMetricsDTO,
    TokenMetricsRepository,
    TransactionDTO,
    TransactionRepository,
    UserDTO,
    UserRepository,
)
from token_swap_indexer.storage.types import ExactDecimal, Uint256

__all__ = [
    "Base",
    "CursorRepository",
    "DatabaseManager",
    "ExactDecimal",
    "IndexerCursorModel",
    "LeaderboardEntryDTO",
    "LeaderboardEntryModel",
    "LeaderboardRepository",
    "RateUpdateDTO",
    "RateUpdateModel",
    "RateUpdateRepository",
    "SwapEventDTO",
    "SwapEventModel",
    "SwapEventRepository",
    "TokenMetricsDTO",
    "TokenMetricsModel",
    "TokenMetricsRepository",
    "TransactionDTO",
    "TransactionModel",
    "TransactionRepository",
    "Uint256",
    "UserDTO",
    "UserModel",
    "UserRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
