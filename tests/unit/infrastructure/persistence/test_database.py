"""Tests for engine setup and session scopes."""

import pytest
from sqlalchemy import text

from swapify.config.settings import DatabaseSettings, Settings
from swapify.infrastructure.persistence import Database
from swapify.infrastructure.persistence.models import UserModel


class TestDatabase:
    """Engine configuration per dialect."""

    async def test_plain_postgres_url_uses_asyncpg(self) -> None:
        db = Database(Settings(database=DatabaseSettings(url="postgresql://swapify@db/swapify")))
        assert db.dialect_name == "postgresql"
        assert db._engine.url.drivername == "postgresql+asyncpg"
        await db.close()

    async def test_sqlite_pool_stats(self, database: Database) -> None:
        assert database.get_pool_stats()["pool_type"] == "sqlite"

    async def test_session_scope_rolls_back_on_error(self, database: Database) -> None:
        with pytest.raises(RuntimeError):
            async with database.session_scope() as session:
                session.add(UserModel(spotify_id="alice"))
                await session.flush()
                raise RuntimeError("boom")

        async with database.session_scope() as session:
            count = await session.scalar(text("SELECT COUNT(*) FROM users"))
        assert count == 0
