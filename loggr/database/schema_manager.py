"""Self-healing table creation and live table status.

Each core table goes through up to three creation strategies, stopping at the
first one after which the table exists:

    declarative  -> Table.create(checkfirst=True), indexes included
    direct_sql   -> DDL compiled for the live dialect, run statement by statement
    minimal      -> main table only, columns without secondary indexes

Missing indexes are added afterwards, one by one, after an inspector lookup.
Status is always derived from the database itself, never from a stored flag.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel
from sqlalchemy import Column, MetaData, Table, func, inspect, select
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.schema import CreateIndex, CreateTable

from loggr.core.utils import utcnow
from loggr.database.database_factory import create_session_maker
from loggr.database.models import ConsoleError, IgnorePattern, IpUserMapping, Option
from loggr.database.utils import execute_sql_commands

logger = logging.getLogger(__name__)

CORE_TABLES: List[Table] = [
    ConsoleError.__table__,
    IpUserMapping.__table__,
    IgnorePattern.__table__,
]
MAIN_TABLE = ConsoleError.__table__

MAX_RECORDED_FAILURES = 50

Strategy = Tuple[str, Callable[[Table], Awaitable[None]]]


class TableCreationFailure(BaseModel):
    table: str
    strategy: str
    error_type: str
    message: str
    occurred_at: str


def _is_already_exists(error: Exception) -> bool:
    return "already exists" in str(error).lower()


class SchemaManager:
    def __init__(self, engine: AsyncEngine, strategies: Optional[Sequence[Strategy]] = None):
        self.engine = engine
        self.session_maker = create_session_maker(engine)
        self.strategies: List[Strategy] = list(strategies) if strategies is not None else [
            ("declarative", self.create_declarative),
            ("direct_sql", self.create_direct_sql),
            ("minimal", self.create_minimal),
        ]
        self.failures: List[TableCreationFailure] = []
        self.strategy_used: Dict[str, str] = {}

    # Introspection

    async def _inspect(self, fn: Callable[[Any], Any]) -> Any:
        async with self.engine.connect() as conn:
            return await conn.run_sync(lambda sync_conn: fn(inspect(sync_conn)))

    async def table_exists(self, name: str) -> bool:
        return await self._inspect(lambda insp: insp.has_table(name))

    async def missing_tables(self) -> List[str]:
        missing = []
        for table in CORE_TABLES:
            if not await self.table_exists(table.name):
                missing.append(table.name)
        return missing

    # Creation strategies

    async def create_declarative(self, table: Table) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(lambda sync_conn: table.create(sync_conn, checkfirst=True))

    async def create_direct_sql(self, table: Table) -> None:
        dialect = self.engine.dialect
        statements = [str(CreateTable(table).compile(dialect=dialect)).strip()]
        statements += [str(CreateIndex(index).compile(dialect=dialect)).strip()
                       for index in sorted(table.indexes, key=lambda i: i.name)]
        script = ";\n".join(statements) + ";"
        async with self.session_maker() as session:
            await execute_sql_commands(session, script)

    async def create_minimal(self, table: Table) -> None:
        if table.name != MAIN_TABLE.name:
            raise RuntimeError("Minimal schema is only defined for the main table")
        minimal = Table(
            table.name,
            MetaData(),
            *[Column(c.name, c.type, primary_key=c.primary_key, nullable=c.nullable,
                     autoincrement=c.autoincrement)
              for c in table.columns],
        )
        async with self.engine.begin() as conn:
            await conn.run_sync(lambda sync_conn: minimal.create(sync_conn, checkfirst=True))

    # Orchestration

    def _record_failure(self, table: str, strategy: str, error: Exception) -> None:
        failure = TableCreationFailure(
            table=table,
            strategy=strategy,
            error_type=error.__class__.__name__,
            message=str(error)[:1000],
            occurred_at=utcnow().isoformat(),
        )
        self.failures.append(failure)
        del self.failures[:-MAX_RECORDED_FAILURES]
        logger.error(f"Table creation strategy '{strategy}' failed for {table}: "
                     f"{failure.error_type}: {failure.message}")

    async def create_table(self, table: Table) -> Optional[str]:
        """Create one table if missing, returning the strategy that produced it."""
        if await self.table_exists(table.name):
            return "existing"

        for name, strategy in self.strategies:
            try:
                await strategy(table)
            except Exception as e:
                if _is_already_exists(e):
                    logger.info(f"Table {table.name} created concurrently, treating as success")
                else:
                    self._record_failure(table.name, name, e)
            if await self.table_exists(table.name):
                self.strategy_used[table.name] = name
                logger.info(f"Table {table.name} available via '{name}' strategy")
                return name

        logger.error(f"All creation strategies failed for table {table.name}")
        return None

    async def ensure_indexes(self, table: Table) -> List[str]:
        """Add declared indexes missing from an existing table. Returns created names."""
        existing = await self._inspect(
            lambda insp: {ix["name"] for ix in insp.get_indexes(table.name)})
        created = []
        for index in sorted(table.indexes, key=lambda i: i.name):
            if index.name in existing:
                continue
            try:
                async with self.engine.begin() as conn:
                    await conn.run_sync(lambda sync_conn: index.create(sync_conn))
                created.append(index.name)
                logger.info(f"Added index {index.name} on {table.name}")
            except Exception as e:
                if not _is_already_exists(e):
                    self._record_failure(table.name, f"add_index:{index.name}", e)
        return created

    async def ensure_tables(self) -> Dict[str, Optional[str]]:
        """Idempotent: create whatever is missing, then fill in missing indexes."""
        results: Dict[str, Optional[str]] = {}
        for table in CORE_TABLES:
            results[table.name] = await self.create_table(table)
            if results[table.name] is not None:
                await self.ensure_indexes(table)

        try:
            await self.create_declarative(Option.__table__)
        except Exception as e:
            if not _is_already_exists(e):
                self._record_failure(Option.__table__.name, "declarative", e)
        return results

    async def ensure_if_missing(self) -> bool:
        """Opportunistic repair used on admin requests. True when anything was attempted."""
        if not await self.missing_tables():
            return False
        logger.warning("Expected tables missing, running table creation")
        await self.ensure_tables()
        return True

    async def drop_tables(self) -> None:
        async with self.engine.begin() as conn:
            for table in reversed(CORE_TABLES):
                await conn.run_sync(lambda sync_conn, t=table: t.drop(sync_conn, checkfirst=True))

    # Status

    async def get_table_status(self) -> Dict[str, Dict[str, Any]]:
        status: Dict[str, Dict[str, Any]] = {}
        for table in CORE_TABLES:
            exists = await self.table_exists(table.name)
            entry: Dict[str, Any] = {
                "exists": exists,
                "row_count": 0,
                "missing_columns": [],
                "missing_indexes": [],
                "strategy": self.strategy_used.get(table.name),
            }
            if exists:
                columns = await self._inspect(
                    lambda insp, name=table.name: {c["name"] for c in insp.get_columns(name)})
                indexes = await self._inspect(
                    lambda insp, name=table.name: {ix["name"] for ix in insp.get_indexes(name)})
                async with self.engine.connect() as conn:
                    result = await conn.execute(select(func.count()).select_from(table))
                    entry["row_count"] = result.scalar() or 0
                entry["missing_columns"] = sorted(c.name for c in table.columns if c.name not in columns)
                entry["missing_indexes"] = sorted(i.name for i in table.indexes if i.name not in indexes)
            status[table.name] = entry
        return status

    def get_failures(self) -> List[Dict[str, Any]]:
        return [failure.model_dump() for failure in self.failures]
