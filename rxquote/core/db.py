import os
from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

# ---------------------------------------------------------------------------
# Marketplace DB  (catalog_entries, stock_items, prescriptions)
# ---------------------------------------------------------------------------
DB_URL = os.getenv("DB_URL", "postgresql+asyncpg://rxquote:rxquote@db:5432/rxquote")

engine: AsyncEngine = create_async_engine(
    DB_URL,
    echo=False,
    future=True,
    pool_size=int(os.getenv("DB_POOL_SIZE", "10")),
    max_overflow=5,
    pool_pre_ping=True,
)
AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def create_task_session_factory() -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Short-lived engine for Celery tasks (each task runs its own event loop)."""
    task_engine = create_async_engine(DB_URL, echo=False, future=True)
    return task_engine, async_sessionmaker(task_engine, class_=AsyncSession, expire_on_commit=False)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        yield session


async def init_db() -> None:
    # Importing the models registers their tables on SQLModel.metadata
    from rxquote.models import catalog, prescription  # noqa: F401

    async with engine.begin() as connection:
        await connection.run_sync(SQLModel.metadata.create_all)
