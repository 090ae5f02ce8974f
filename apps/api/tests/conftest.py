import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base, get_db
from main import app
from routers import rate_limit


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    """Fresh SQLite ledger per test; generous busy timeout for concurrent writers."""
    db_path = tmp_path / "canvas_ledger.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", connect_args={"timeout": 30})
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def canvas_client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)


async def start_session(client: AsyncClient, color_label: str = "blue"):
    """Create a participant through the API; return (snapshot, auth headers)."""
    response = await client.post("/session/init", json={"color_label": color_label})
    assert response.status_code == 200, response.text
    payload = response.json()
    headers = {"Authorization": f"Bearer {payload['session_token']}"}
    return payload, headers
