"""
Unit tests for database helpers
"""

import pytest
from sqlalchemy import inspect
from core.database import get_engine, get_session_maker, init_models


class TestDatabase:
    """Test engine caching and bookkeeping table creation"""

    def test_engine_cached_per_url(self, tmp_path):
        """Test the same URL returns the same engine"""
        url = f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}"
        assert get_engine(url) is get_engine(url)

    @pytest.mark.asyncio
    async def test_init_models(self, tmp_path):
        """Test checkpoint and operation tables are created"""
        engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'init.db'}")
        try:
            await init_models(engine)

            async with engine.connect() as conn:
                names = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
            assert {"migration_checkpoints", "migration_operations"} <= set(names)

            session_maker = get_session_maker(engine)
            async with session_maker() as session:
                assert session.bind is engine
        finally:
            await engine.dispose()
