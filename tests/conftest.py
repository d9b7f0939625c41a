"""Pytest configuration and fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from token_swap_indexer.storage.database import DatabaseManager
from token_swap_indexer.storage.models import Base


@pytest.fixture
def sqlite_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'indexer.db'}"


@pytest.fixture
async def db(sqlite_url: str):
    """DatabaseManager over a fresh SQLite file with the schema created."""
    engine = create_async_engine(sqlite_url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    manager = DatabaseManager(sqlite_url, engine=engine)
    yield manager
    await manager.dispose_async()
