import pytest
import pytest_asyncio
from sqlalchemy import text

from loggr.database.database_factory import create_engine_for_url
from loggr.database.models import CONSOLE_ERRORS_TABLE, IGNORE_PATTERNS_TABLE, IP_MAPPING_TABLE, ConsoleError
from loggr.database.schema_manager import SchemaManager
from loggr.database.utils import split_sql_commands


@pytest_asyncio.fixture
async def engine(temp_db_url):
    engine = create_engine_for_url(temp_db_url)
    yield engine
    await engine.dispose()


async def broken_strategy(table):
    raise RuntimeError("disk on fire")


@pytest.mark.asyncio
async def test_ensure_tables_is_idempotent(engine):
    manager = SchemaManager(engine)
    assert set(await manager.missing_tables()) == {CONSOLE_ERRORS_TABLE, IP_MAPPING_TABLE, IGNORE_PATTERNS_TABLE}

    first = await manager.ensure_tables()
    assert set(first.values()) == {"declarative"}
    second = await manager.ensure_tables()
    assert set(second.values()) == {"existing"}
    assert await manager.missing_tables() == []
    assert manager.get_failures() == []


@pytest.mark.asyncio
async def test_falls_through_to_next_strategy(engine):
    manager = SchemaManager(engine)
    manager.strategies = [("broken", broken_strategy), ("direct_sql", manager.create_direct_sql)]

    assert await manager.create_table(ConsoleError.__table__) == "direct_sql"
    failures = manager.get_failures()
    assert failures[0]["table"] == CONSOLE_ERRORS_TABLE
    assert failures[0]["strategy"] == "broken"
    assert failures[0]["error_type"] == "RuntimeError"

    status = await manager.get_table_status()
    assert status[CONSOLE_ERRORS_TABLE]["exists"] is True
    assert status[CONSOLE_ERRORS_TABLE]["strategy"] == "direct_sql"
    assert status[CONSOLE_ERRORS_TABLE]["missing_indexes"] == []


@pytest.mark.asyncio
async def test_minimal_strategy_then_index_repair(engine):
    manager = SchemaManager(engine)
    manager.strategies = [("minimal", manager.create_minimal)]

    assert await manager.create_table(ConsoleError.__table__) == "minimal"
    status = await manager.get_table_status()
    assert status[CONSOLE_ERRORS_TABLE]["missing_columns"] == []
    assert status[CONSOLE_ERRORS_TABLE]["missing_indexes"]

    created = await manager.ensure_indexes(ConsoleError.__table__)
    assert created
    status = await manager.get_table_status()
    assert status[CONSOLE_ERRORS_TABLE]["missing_indexes"] == []


@pytest.mark.asyncio
async def test_all_strategies_failing_is_reported(engine):
    manager = SchemaManager(engine, strategies=[("broken", broken_strategy)])
    results = await manager.ensure_tables()
    assert set(results.values()) == {None}
    assert len(manager.get_failures()) == 3

    status = await manager.get_table_status()
    assert all(entry["exists"] is False for entry in status.values())


@pytest.mark.asyncio
async def test_repair_after_table_dropped(engine):
    manager = SchemaManager(engine)
    await manager.ensure_tables()
    assert await manager.ensure_if_missing() is False

    async with engine.begin() as conn:
        await conn.execute(text(f"DROP TABLE {IP_MAPPING_TABLE}"))
    assert await manager.missing_tables() == [IP_MAPPING_TABLE]

    assert await manager.ensure_if_missing() is True
    status = await manager.get_table_status()
    assert status[IP_MAPPING_TABLE]["exists"] is True
    assert status[IP_MAPPING_TABLE]["row_count"] == 0


def test_split_sql_commands_respects_quotes():
    script = "CREATE TABLE a (x TEXT DEFAULT ';');\nINSERT INTO a VALUES ('b;c');\nSELECT 1"
    assert split_sql_commands(script) == [
        "CREATE TABLE a (x TEXT DEFAULT ';');",
        "INSERT INTO a VALUES ('b;c');",
        "SELECT 1",
    ]


def test_split_sql_commands_skips_comments_and_keeps_doubled_quotes():
    script = "-- header; not a command\nINSERT INTO a VALUES ('it''s; fine'); -- trailing\n;"
    assert split_sql_commands(script) == ["INSERT INTO a VALUES ('it''s; fine');"]
