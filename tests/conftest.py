import uuid
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from upload_pipeline.db import models  # noqa: F401
from upload_pipeline.db.database import Base, utcnow
from upload_pipeline.db.entity_store import EntityStore
from upload_pipeline.db.models import EntityKind


class FakeClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
async def engine():
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return EntityStore()


@pytest.fixture
async def project(db, store):
    return await store.create(db, EntityKind.project, name="Downtown Tower")


@pytest.fixture
async def option(db, store, project):
    return await store.create(db, EntityKind.option, project_id=project.id, name="Option A")


@pytest.fixture
async def record(db, store, project, option):
    return await store.create(
        db,
        EntityKind.record,
        project_id=project.id,
        option_id=option.id,
        scenario_id=uuid.uuid4(),
        device_type="quest",
    )


@pytest.fixture
async def seeded(session_factory):
    """Committed project/option/record ids for tests that open their own sessions."""
    store = EntityStore()
    async with session_factory() as session:
        project = await store.create(session, EntityKind.project, name="Harbor View")
        option = await store.create(session, EntityKind.option, project_id=project.id, name="Option B")
        record = await store.create(
            session,
            EntityKind.record,
            project_id=project.id,
            option_id=option.id,
            scenario_id=uuid.uuid4(),
        )
        await session.commit()
    return {
        "project": str(project.id),
        "option": str(option.id),
        "record": str(record.id),
        "scenario": str(record.scenario_id),
    }
