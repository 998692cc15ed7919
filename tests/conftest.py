import os
import uuid
from typing import AsyncGenerator, Generator

# Settings are read at import time; configure before touching the app.
os.environ["AGENCY_JOBS_SQLALCHEMY_DATABASE_URI"] = "sqlite+aiosqlite://"
os.environ["AGENCY_JOBS_ENABLE_BACKGROUND_SERVICES"] = "false"
os.environ["AGENCY_JOBS_ADMIN_API_KEY"] = "test-admin-key"
os.environ.pop("AGENCY_JOBS_WORKER_SHARED_SECRET", None)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from app.db import models
from app.db.session import Base, get_db_session
from app.webhooks.event_types import SYSTEM_EVENT_TYPES

ADMIN_KEY = "test-admin-key"
ADMIN_HEADERS = {"X-Admin-Key": ADMIN_KEY}
AGENCY_KEY = "acme-key"
AGENCY_HEADERS = {"X-API-Key": AGENCY_KEY}


@pytest.fixture
async def engine():
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
async def agency(session) -> models.Agency:
    agency = models.Agency(id="acme", name="Acme Agency", api_key=AGENCY_KEY)
    session.add(agency)
    await session.commit()
    return agency


@pytest.fixture
def client() -> Generator[TestClient, None, None]:
    from starlette.routing import _DefaultLifespan

    from app.main import app

    db_name = f"agency_jobs_test_{uuid.uuid4().hex}"
    shared_memory_uri = f"file:{db_name}?mode=memory&cache=shared&uri=true"
    sync_engine = create_engine(f"sqlite+pysqlite:///{shared_memory_uri}", poolclass=StaticPool)
    Base.metadata.create_all(sync_engine)

    with Session(sync_engine) as sync_session:
        sync_session.add_all([
            models.WebhookEventType(name=name, category=category, description=description)
            for name, category, description in SYSTEM_EVENT_TYPES
        ])
        sync_session.commit()

    engine = create_async_engine(f"sqlite+aiosqlite:///{shared_memory_uri}", echo=False, poolclass=StaticPool)
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    async def override_db_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_maker() as session:
            yield session

    # No bootstrap or background loops under test
    app.router.lifespan_context = _DefaultLifespan(app.router)
    app.dependency_overrides[get_db_session] = override_db_session

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    sync_engine.dispose()


@pytest.fixture
def agency_headers(client: TestClient) -> dict[str, str]:
    response = client.post(
        "/api/admin/agencies",
        headers=ADMIN_HEADERS,
        json={"id": "acme", "name": "Acme Agency", "api_key": AGENCY_KEY},
    )
    assert response.status_code == 201
    return AGENCY_HEADERS


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return ADMIN_HEADERS
