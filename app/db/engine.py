import logging
import time
from uuid import uuid4

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.config import settings

logger = logging.getLogger(__name__)


def _is_postgres_url(database_url: str) -> bool:
    return database_url.startswith("postgresql") or database_url.startswith("postgres")


def _is_sqlite_url(database_url: str) -> bool:
    return database_url.startswith("sqlite")


db_url = settings.DATABASE_URL
db_url_obj = make_url(db_url)
connect_args: dict = {}
engine_kwargs: dict = {
    "echo": False,
    "future": True,
}

if _is_postgres_url(db_url):
    # Prevent prepared statement collisions with asyncpg + PgBouncer transaction mode.
    connect_args["statement_cache_size"] = 0
    connect_args["prepared_statement_cache_size"] = 0
    connect_args["prepared_statement_name_func"] = lambda: f"__asyncpg_{uuid4()}__"

    # For transaction poolers (6543), avoid SQLAlchemy connection reuse.
    if db_url_obj.port == 6543:
        engine_kwargs["poolclass"] = NullPool

    if settings.ENVIRONMENT == "production":
        connect_args.setdefault("ssl", "require")
elif _is_sqlite_url(db_url):
    # The sequence allocator commits on its own connection while a request
    # session is open, so writers must wait for the file lock instead of failing.
    connect_args["timeout"] = 30
    engine_kwargs["poolclass"] = NullPool

engine = create_async_engine(
    db_url,
    connect_args=connect_args,
    **engine_kwargs,
)

async_session_factory = sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_session() -> AsyncSession:
    start_time = time.time()
    async with async_session_factory() as session:
        yield session

    duration = time.time() - start_time
    if duration > 0.2:
        logger.warning(f"Slow DB Session: {duration:.4f}s")


async def init_db():
    from sqlmodel import SQLModel
    from app.models import approval
    from app.models import outbox
    from app.models import webhook_event
    from app.models import sequence
    from app.models import document

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
