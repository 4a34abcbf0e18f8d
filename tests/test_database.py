"""Tests for engine construction and dialect-aware upserts."""
from unittest.mock import MagicMock

import pytest

from commission_engine.database.connection import build_engine
from commission_engine.database.models import UserAttribution
from commission_engine.database.upsert import insert_for


class TestBuildEngine:
    @pytest.mark.unit
    def test_unsupported_database_rejected(self, test_settings) -> None:
        settings = test_settings.model_copy(
            update={"database_url": "mysql+aiomysql://user:pw@localhost/settlement"}
        )

        with pytest.raises(ValueError, match="mysql"):
            build_engine(settings)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sqlite_engine(self, test_settings) -> None:
        engine = build_engine(test_settings)

        assert engine.dialect.name == "sqlite"
        await engine.dispose()


class TestInsertFor:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_matches_session_dialect(self, test_db) -> None:
        stmt = insert_for(test_db, UserAttribution)

        assert hasattr(stmt, "on_conflict_do_nothing")

    @pytest.mark.unit
    def test_unknown_dialect_rejected(self) -> None:
        db = MagicMock()
        db.get_bind.return_value.dialect.name = "mssql"

        with pytest.raises(ValueError, match="mssql"):
            insert_for(db, UserAttribution)
