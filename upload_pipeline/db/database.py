from contextlib import asynccontextmanager
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from upload_pipeline.core.config import DATABASE_URL, SQL_ECHO

engine = create_async_engine(DATABASE_URL, echo=SQL_ECHO)
AsyncSessionLocal = sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp; all DateTime columns store naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@asynccontextmanager
async def unit_of_work(session_factory=AsyncSessionLocal):
    """
    One bounded transaction per caller-facing operation.

    Commits when the block exits cleanly and rolls back on any exception, so a
    multi-step mutation (delete artifacts + clear URLs + flip status) is applied
    all together or not at all.
    """
    async with session_factory() as db:
        try:
            yield db
            await db.commit()
        except Exception:
            await db.rollback()
            raise


async def init_models(bind=engine):
    """Create every table on the given engine (local development and tests)."""
    # Register the mapped classes on Base.metadata
    from upload_pipeline.db import models  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
