import asyncio

import pytest
import pytest_asyncio
from httpx import ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from canvas_client import CanvasApiClient, CanvasSession, LedgerSnapshot, Mark, NotRevealedError, SessionPhase
from database import Base, get_db
from main import app
from services.session_token import create_session_token


@pytest_asyncio.fixture
async def api_client(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'client_flow.db'}", connect_args={"timeout": 30})
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async def override_get_db():
        async with maker() as session:
            yield session

    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    app.dependency_overrides[get_db] = override_get_db
    client = CanvasApiClient("http://test", transport=ASGITransport(app=app))
    yield client

    await client.close()
    app.dependency_overrides.pop(get_db, None)
    app.state.disable_rate_limits = previous
    await engine.dispose()


@pytest.mark.asyncio
async def test_blind_session_reveals_after_quota_and_loads_canvas_once(api_client):
    session = CanvasSession(api_client, batch_size=4, debounce_seconds=0.01, max_in_flight=2)
    try:
        assert await session.start() == SessionPhase.SELECTING_IDENTITY
        snapshot = await session.choose_color("purple")
        assert snapshot.free_quota_consumed == 0

        placed = [session.place(0.05 * (i + 1), 0.5) for i in range(12)]
        assert all(mark is not None for mark in placed[:10])
        assert placed[10:] == [None, None]

        await asyncio.wait_for(session.drain(), timeout=10)

        state = session.state
        assert state.phase == SessionPhase.REVEALED_ACTIVE
        assert state.snapshot.free_quota_consumed == 10
        assert state.snapshot.revealed is True
        assert state.revealed_marks_loaded is True
        assert state.pending == []
        assert len(state.render_set()) == 10
        assert state.can_place() is False
        assert session.place(0.5, 0.5) is None
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_explicit_reveal_before_quota_is_refused(api_client):
    session = CanvasSession(api_client, batch_size=1, debounce_seconds=0.01)
    try:
        await session.start()
        await session.choose_color("yellow")
        session.place(0.25, 0.75)
        await session.drain()

        assert await session.reveal() is False
        assert session.state.phase == SessionPhase.BLIND_ACTIVE
        assert session.state.snapshot.free_quota_consumed == 1
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_stored_token_restores_blind_session(api_client):
    first = CanvasSession(api_client, batch_size=2, debounce_seconds=0.01)
    try:
        await first.start()
        await first.choose_color("teal")
        first.place(0.1, 0.2)
        first.place(0.3, 0.4)
        await first.drain()
    finally:
        await first.close()
    token = api_client.token

    restored = CanvasSession(api_client)
    try:
        assert await restored.start(stored_token=token) == SessionPhase.BLIND_ACTIVE
        assert restored.state.snapshot.free_quota_consumed == 2
        assert len(restored.state.render_set()) == 2
        assert restored.state.estimated_remaining_quota == 8
    finally:
        await restored.close()


@pytest.mark.asyncio
async def test_stored_token_for_unknown_participant_restarts_selection(api_client):
    session = CanvasSession(api_client)
    try:
        phase = await session.start(stored_token=create_session_token("vanished")["token"])
        assert phase == SessionPhase.SELECTING_IDENTITY
        assert session.token is None
    finally:
        await session.close()


class RevealedCanvasApi:
    """Revealed participant whose canvas listing fails a scripted number of times."""

    def __init__(self, fetch_errors):
        self.token = None
        self.snapshot = LedgerSnapshot(
            id="p-9",
            color_label="blue",
            color_value="#2563eb",
            free_quota_consumed=10,
            revealed=True,
            credit_balance=0,
        )
        self.fetch_errors = list(fetch_errors)
        self.fetches = 0

    async def get_participant(self):
        return self.snapshot

    async def list_all_placements(self):
        self.fetches += 1
        if self.fetch_errors:
            raise self.fetch_errors.pop(0)
        return [Mark(x=0.5, y=0.5, color_value="#f97316", phase="free", created_at="2026-10-18T09:00:00+00:00")]


@pytest.mark.asyncio
async def test_failed_canvas_fetch_is_retried_on_next_snapshot():
    api = RevealedCanvasApi([NotRevealedError("not revealed yet", status_code=403)])
    session = CanvasSession(api)
    try:
        assert await session.start(stored_token="stored") == SessionPhase.REVEALED_ACTIVE
        assert session.state.revealed_marks_loaded is False

        await session.refresh()

        assert api.fetches == 2
        assert session.state.revealed_marks_loaded is True
        assert len(session.state.render_set()) == 1
    finally:
        await session.close()
