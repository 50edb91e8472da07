import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")

from typing import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.pool import StaticPool

from app.api.v1.fees import reports
from app.auth.dependencies import get_current_user
from app.auth.schemas import CurrentUser
from app.db.session import Base, get_db
from app.main import app

from factories import ACCOUNTANT_ID, TENANT_ID, School, create_school


TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
# SQLite has no schemas; render school.* and core.* tables unqualified
SCHEMA_TRANSLATE_MAP = {"school": None, "core": None}


@compiles(UUID, "sqlite")
def _uuid_as_text_on_sqlite(type_, compiler, **kw) -> str:
    # A column typed UUID gets NUMERIC affinity on SQLite, which mangles all-digit hex values
    return "CHAR(32)"


@pytest.fixture()
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        execution_options={"schema_translate_map": SCHEMA_TRANSLATE_MAP},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture()
async def db_session(session_factory: async_sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def clear_report_cache():
    reports.invalidate_report_cache()
    yield
    reports.invalidate_report_cache()


@pytest.fixture()
def current_user() -> CurrentUser:
    return CurrentUser(
        id=ACCOUNTANT_ID,
        tenant_id=TENANT_ID,
        role="ACCOUNTANT",
        permissions={"fees": {"create": True, "read": True, "update": True}},
        academic_year_status="ACTIVE",
    )


@pytest.fixture()
async def client(db_session: AsyncSession, current_user: CurrentUser) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client bound to the FastAPI app, authenticated as an accountant."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: current_user
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture()
async def school(db_session: AsyncSession) -> School:
    """Tenant with an ACTIVE 2025-2026 academic year (starts 1 April) and one class."""
    return await create_school(db_session)
