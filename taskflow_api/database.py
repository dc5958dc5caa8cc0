import logging

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from taskflow_api.config import Settings
from taskflow_api.errors import DependencyUnavailableError

logger = logging.getLogger(__name__)

# Base class
Base = declarative_base()


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    return create_async_engine(settings.database_url, echo=False, future=True)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def init_models(engine: AsyncEngine) -> None:
    # registers Task on Base.metadata
    from taskflow_api import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_database(engine: AsyncEngine) -> None:
    """Fail fast when the store is not reachable."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        raise DependencyUnavailableError("database", str(e)) from e
    logger.info("Database reachable url=%s", engine.url.render_as_string(hide_password=True))
