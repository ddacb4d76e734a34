import os
from datetime import datetime, timedelta, timezone

# Settings are read at import time, so the test environment goes first
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test_validated_queries.db")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.pop("REDIS_URL", None)
os.environ.pop("WAREHOUSE_DATABASE_URL", None)
os.environ.pop("ANALYTICS_DATABASE_URL", None)

import jwt
import pytest_asyncio
from fakeredis import FakeAsyncRedis, FakeServer
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from app.main import app
from app.core import models
from app.core.database import Base, get_db
from app.core.config import settings
from app.core.queries.backends import Backend, BackendRouter
from app.core.queries.cache import CacheStore
from app.core.queries.filters import utc_today
from app.core.queries.service import ValidatedQueryService, get_query_service

# NullPool: every test runs in its own event loop, pooled connections would not survive
test_engine = create_async_engine(settings.DATABASE_URL, echo=False, poolclass=NullPool)
TestingSessionLocal = async_sessionmaker(
    test_engine, class_=AsyncSession, expire_on_commit=False
)

Q1_SQL = (
    "SELECT COUNT(*) c FROM t WHERE d BETWEEN :start_date AND :end_date "
    "AND (:region IS NULL OR region = :region)"
)

DELIVERIES_SQL = (
    "SELECT region, COUNT(*) AS orders FROM ${schema}.deliveries "
    "WHERE created_at BETWEEN :start_date AND :end_date "
    "AND (:region IS NULL OR region = :region) "
    "GROUP BY region ORDER BY region"
)


class FailingBackend(Backend):
    """Warehouse stand-in that is always unreachable."""

    def __init__(self, name: str = "warehouse"):
        super().__init__(name, engine=None)
        self.calls = 0

    async def fetch_all(self, sql: str):
        self.calls += 1
        raise ConnectionError("warehouse unreachable")

    async def dispose(self):
        pass


async def seed_operational_tables(conn):
    """Small relational copies of the tables the templates read."""
    today = utc_today()
    recent = (today - timedelta(days=3)).isoformat()
    old = (today - timedelta(days=90)).isoformat()

    await conn.exec_driver_sql("CREATE TABLE t (d TEXT, region TEXT)")
    await conn.exec_driver_sql(
        f"INSERT INTO t VALUES ('{recent}', 'Cairo'), ('{recent}', 'Cairo'), "
        f"('{recent}', 'Giza'), ('{old}', 'Cairo')"
    )
    await conn.exec_driver_sql(
        "CREATE TABLE deliveries (created_at TEXT, region TEXT, status TEXT)"
    )
    await conn.exec_driver_sql(
        f"INSERT INTO deliveries VALUES ('{recent}', 'Cairo', 'delivered'), "
        f"('{recent}', 'Giza', 'delivered'), ('{recent}', 'Alex', 'failed')"
    )
    await conn.exec_driver_sql("CREATE TABLE regions (name TEXT)")
    await conn.exec_driver_sql(
        "INSERT INTO regions VALUES ('Giza'), ('Cairo'), ('Alex')"
    )


# Fresh schema and data for every test
@pytest_asyncio.fixture(scope="function", autouse=True)
async def set_up_db():
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        for table in ("t", "deliveries", "regions"):
            await conn.exec_driver_sql(f"DROP TABLE IF EXISTS {table}")
        await conn.run_sync(Base.metadata.create_all)
        await seed_operational_tables(conn)
    yield  # Tests happens here
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


# Create session and rollback once it is done
@pytest_asyncio.fixture(scope="function")
async def db_session():
    async with TestingSessionLocal() as session:
        yield session
        await session.rollback()
        await session.close()


@pytest_asyncio.fixture(scope="function")
async def redis_client():
    client = FakeAsyncRedis(server=FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest_asyncio.fixture(scope="function")
async def warehouse():
    return FailingBackend()


@pytest_asyncio.fixture(scope="function")
async def query_router(warehouse):
    return BackendRouter(
        primary=Backend("primary", test_engine),
        warehouse=warehouse,
        backoff_seconds=0,
    )


@pytest_asyncio.fixture(scope="function")
async def service(query_router, redis_client):
    return ValidatedQueryService(
        router=query_router,
        cache=CacheStore(redis_client),
        session_factory=TestingSessionLocal,
    )


# Client
@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession, service: ValidatedQueryService):
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_query_service] = lambda: service
    app.state.query_service = service

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


# Tokens are issued by the portal; mint compatible ones here
def create_access_token(data: dict):
    to_encode = data.copy()
    expire_time = datetime.now(timezone.utc) + timedelta(
        minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES
    )
    to_encode.update({"exp": expire_time})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


# Token for user
@pytest_asyncio.fixture(scope="function")
async def auth_headers_user():
    token = create_access_token({"user_id": "am-user-1", "role": "user"})
    return {"Authorization": f"Bearer {token}"}


# Token for admin
@pytest_asyncio.fixture(scope="function")
async def auth_headers_admin():
    token = create_access_token({"user_id": "admin-1", "role": "admin"})
    return {"Authorization": f"Bearer {token}"}


async def add_query(db: AsyncSession, **overrides) -> models.ValidatedQuery:
    data = {
        "name": "Q1",
        "scope": "AM",
        "sql_text": Q1_SQL,
        "chart_hint": "kpi",
        "validated_by": "admin-1",
    }
    data.update(overrides)
    query = models.ValidatedQuery(**data)
    db.add(query)
    await db.commit()
    await db.refresh(query)
    return query


# Q1
@pytest_asyncio.fixture(scope="function")
async def q1(db_session: AsyncSession):
    return await add_query(db_session)


@pytest_asyncio.fixture(scope="function")
async def deliveries_query(db_session: AsyncSession):
    return await add_query(
        db_session, name="AM_DELIVERIES_BY_REGION", sql_text=DELIVERIES_SQL, chart_hint="bar"
    )


@pytest_asyncio.fixture(scope="function")
async def region_dimension(db_session: AsyncSession):
    dimension = models.FilterDimension(
        label="Region",
        sql_param="region",
        control="select",
        values_sql="SELECT name FROM regions ORDER BY name",
    )
    db_session.add(dimension)
    await db_session.commit()
    await db_session.refresh(dimension)
    return dimension


# Factory for extra catalogue entries
@pytest_asyncio.fixture(scope="function")
async def make_query(db_session: AsyncSession):
    async def _make(**overrides):
        return await add_query(db_session, **overrides)

    return _make
