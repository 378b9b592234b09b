from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine, AsyncSession, AsyncEngine
from sqlalchemy.orm import declarative_base
from fastapi import Request
from loggr.core.config import config
import logging

logger = logging.getLogger(__name__)

Base = declarative_base()


def table_name(name: str) -> str:
    """Apply the configured table prefix."""
    return f"{config.TABLE_PREFIX}{name}"


def create_engine_for_url(database_url: str = None) -> AsyncEngine:
    """Create async engine with proper configuration for the target dialect"""
    database_url = database_url or config.DATABASE_URL
    database_url = database_url.replace('postgresql://', 'postgresql+asyncpg://')

    if database_url.startswith("sqlite"):
        engine = create_async_engine(database_url,
                                     echo=config.SQL_ECHO,
                                     connect_args={"check_same_thread": False})
    else:
        engine = create_async_engine(database_url,
                                     echo=config.SQL_ECHO,
                                     pool_pre_ping=True,
                                     pool_size=20,
                                     max_overflow=10)
    logger.info(f"Database engine created for dialect: {engine.dialect.name}")
    return engine


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Important for async operations
        autocommit=False,
        autoflush=False)


async def get_db(request: Request):
    """Get database session from the application context"""
    session_maker = request.app.state.context.session_maker
    async with session_maker() as session:
        try:
            yield session
        finally:
            await session.close()
