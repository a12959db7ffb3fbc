import logging
from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from tenacity import retry, stop_after_attempt, wait_exponential, before_sleep_log

from crm_webhook.config import Settings
from crm_webhook.models import Base

logger = logging.getLogger(__name__)


def create_engine(settings: Settings, **overrides) -> AsyncEngine:
    """Build the shared, bounded connection pool for the configured backend."""
    url = make_url(settings.database_url)
    options = {"pool_pre_ping": True}
    connect_args = {}

    if url.get_backend_name() != "sqlite":
        options.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
        )
        if url.get_driver_name() == "asyncpg":
            connect_args["timeout"] = settings.db_timeout
            connect_args["command_timeout"] = settings.db_timeout
            if settings.db_ssl:
                connect_args["ssl"] = "require"
        elif url.get_driver_name() == "aiomysql":
            connect_args["connect_timeout"] = int(settings.db_timeout)

    if connect_args:
        options["connect_args"] = connect_args
    options.update(overrides)
    return create_async_engine(url, **options)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )


@retry(
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
async def init_db(engine: AsyncEngine):
    # Retried while the database container is still coming up
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ready: %s", ", ".join(sorted(Base.metadata.tables)))


async def ping(engine: AsyncEngine) -> bool:
    async with engine.connect() as conn:
        result = await conn.execute(text("SELECT 1"))
        return result.scalar() == 1
