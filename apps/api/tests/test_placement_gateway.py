import asyncio
import uuid

import pytest
from sqlalchemy import func, select

from conftest import start_session
from models.placement import Placement


def _key() -> str:
    return str(uuid.uuid4())


@pytest.mark.asyncio
async def test_ten_free_placements_reveal_then_quota_exhausted(canvas_client):
    snapshot, headers = await start_session(canvas_client)
    assert snapshot["free_quota_consumed"] == 0
    assert snapshot["revealed"] is False
    assert snapshot["credit_balance"] == 0

    for expected in range(1, 10):
        response = await canvas_client.post(
            "/placements",
            json={"x": 0.1, "y": 0.2, "idempotency_key": _key(), "phase": "free"},
            headers=headers,
        )
        assert response.status_code == 200
        payload = response.json()
        assert payload["snapshot"]["free_quota_consumed"] == expected
        assert payload["snapshot"]["revealed"] is False
        assert payload["placement"]["phase"] == "free"
        assert payload["replayed"] is False

    tenth = await canvas_client.post(
        "/placements",
        json={"x": 0.5, "y": 0.5, "idempotency_key": _key(), "phase": "free"},
        headers=headers,
    )
    assert tenth.status_code == 200
    assert tenth.json()["snapshot"]["free_quota_consumed"] == 10
    assert tenth.json()["snapshot"]["revealed"] is True

    eleventh = await canvas_client.post(
        "/placements",
        json={"x": 0.5, "y": 0.5, "idempotency_key": _key(), "phase": "free"},
        headers=headers,
    )
    assert eleventh.status_code == 409
    detail = eleventh.json()["detail"]
    assert detail["error"] == "NO_FREE_CAPACITY"
    assert detail["snapshot"]["free_quota_consumed"] == 10
    assert detail["snapshot"]["revealed"] is True

    # Without the free-phase hint the revealed participant is on the paid path.
    paid = await canvas_client.post(
        "/placements",
        json={"x": 0.5, "y": 0.5, "idempotency_key": _key()},
        headers=headers,
    )
    assert paid.status_code == 402
    assert paid.json()["detail"]["error"] == "INSUFFICIENT_CREDITS"
    assert paid.json()["detail"]["snapshot"]["credit_balance"] == 0


@pytest.mark.asyncio
async def test_revealed_participant_without_credits_is_rejected(canvas_client, session_maker):
    _, headers = await start_session(canvas_client)
    batch = [{"x": 0.3, "y": 0.3, "idempotency_key": _key()} for _ in range(10)]
    filled = await canvas_client.post("/placements/batch", json={"placements": batch}, headers=headers)
    assert filled.status_code == 200
    assert filled.json()["snapshot"]["revealed"] is True

    response = await canvas_client.post(
        "/placements",
        json={"x": 0.9, "y": 0.9, "idempotency_key": _key()},
        headers=headers,
    )
    assert response.status_code == 402
    detail = response.json()["detail"]
    assert detail["snapshot"]["credit_balance"] == 0
    assert detail["snapshot"]["free_quota_consumed"] == 10

    async with session_maker() as session:
        paid = await session.execute(select(func.count()).select_from(Placement).where(Placement.phase == "paid"))
        assert paid.scalar() == 0


@pytest.mark.asyncio
async def test_duplicate_key_sent_concurrently_with_one_unit_left(canvas_client, session_maker):
    _, headers = await start_session(canvas_client)
    batch = [{"x": 0.2, "y": 0.2, "idempotency_key": _key()} for _ in range(9)]
    prefill = await canvas_client.post("/placements/batch", json={"placements": batch}, headers=headers)
    assert prefill.json()["snapshot"]["free_quota_consumed"] == 9

    key = _key()
    body = {"x": 0.75, "y": 0.25, "idempotency_key": key}
    first, second = await asyncio.gather(
        canvas_client.post("/placements", json=body, headers=headers),
        canvas_client.post("/placements", json=body, headers=headers),
    )
    assert first.status_code == 200
    assert second.status_code == 200
    assert first.json()["snapshot"]["free_quota_consumed"] == 10
    assert second.json()["snapshot"]["free_quota_consumed"] == 10
    assert first.json()["placement"]["id"] == second.json()["placement"]["id"]
    assert sorted([first.json()["replayed"], second.json()["replayed"]]) == [False, True]

    async with session_maker() as session:
        stored = await session.execute(
            select(func.count()).select_from(Placement).where(Placement.idempotency_key == key)
        )
        assert stored.scalar() == 1


@pytest.mark.asyncio
async def test_batch_stops_at_quota_and_reports_accepted_items(canvas_client):
    _, headers = await start_session(canvas_client)
    seven = [{"x": 0.1, "y": 0.1, "idempotency_key": _key()} for _ in range(7)]
    response = await canvas_client.post("/placements/batch", json={"placements": seven}, headers=headers)
    assert response.status_code == 200
    assert response.json()["snapshot"]["free_quota_consumed"] == 7

    fifteen = [{"x": 0.4, "y": 0.6, "idempotency_key": _key()} for _ in range(15)]
    response = await canvas_client.post("/placements/batch", json={"placements": fifteen}, headers=headers)
    assert response.status_code == 409
    detail = response.json()["detail"]
    assert detail["error"] == "NO_FREE_CAPACITY"
    assert len(detail["accepted"]) == 3
    assert all(item["phase"] == "free" for item in detail["accepted"])
    assert [item["idempotency_key"] for item in detail["accepted"]] == [
        item["idempotency_key"] for item in fifteen[:3]
    ]
    assert detail["snapshot"]["free_quota_consumed"] == 10
    assert detail["snapshot"]["revealed"] is True


@pytest.mark.asyncio
async def test_out_of_range_coordinate_is_a_validation_error(canvas_client):
    _, headers = await start_session(canvas_client)
    response = await canvas_client.post(
        "/placements",
        json={"x": 1.5, "y": 0.5, "idempotency_key": _key()},
        headers=headers,
    )
    assert response.status_code == 422
    assert response.json()["detail"]["error"] == "VALIDATION"

    me = await canvas_client.get("/session/me", headers=headers)
    assert me.json()["free_quota_consumed"] == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "raw_body",
    [
        '{"x": Infinity, "y": 0.5}',
        '{"x": 0.5, "y": -Infinity}',
        '{"x": NaN, "y": 0.5}',
    ],
)
async def test_non_finite_coordinate_is_a_validation_error(canvas_client, raw_body):
    _, headers = await start_session(canvas_client)
    response = await canvas_client.post(
        "/placements",
        content=raw_body,
        headers={**headers, "Content-Type": "application/json"},
    )
    assert response.status_code == 422
    assert response.json()["detail"]["error"] == "VALIDATION"

    me = await canvas_client.get("/session/me", headers=headers)
    assert me.json()["free_quota_consumed"] == 0


@pytest.mark.asyncio
async def test_batch_with_non_finite_item_applies_nothing(canvas_client):
    _, headers = await start_session(canvas_client)
    raw_body = '{"placements": [{"x": 0.1, "y": 0.1}, {"x": 0.2, "y": NaN}]}'
    response = await canvas_client.post(
        "/placements/batch",
        content=raw_body,
        headers={**headers, "Content-Type": "application/json"},
    )
    assert response.status_code == 422
    assert response.json()["detail"]["error"] == "VALIDATION"

    me = await canvas_client.get("/session/me", headers=headers)
    assert me.json()["free_quota_consumed"] == 0


@pytest.mark.asyncio
async def test_batch_with_one_invalid_item_applies_nothing(canvas_client):
    _, headers = await start_session(canvas_client)
    items = [
        {"x": 0.1, "y": 0.1, "idempotency_key": _key()},
        {"x": 0.2, "y": -0.01, "idempotency_key": _key()},
    ]
    response = await canvas_client.post("/placements/batch", json={"placements": items}, headers=headers)
    assert response.status_code == 422

    me = await canvas_client.get("/session/me", headers=headers)
    assert me.json()["free_quota_consumed"] == 0


@pytest.mark.asyncio
async def test_retried_batch_does_not_consume_twice(canvas_client):
    _, headers = await start_session(canvas_client)
    items = [{"x": 0.5, "y": 0.5, "idempotency_key": _key()} for _ in range(4)]

    first = await canvas_client.post("/placements/batch", json={"placements": items}, headers=headers)
    retry = await canvas_client.post("/placements/batch", json={"placements": items}, headers=headers)
    assert first.status_code == 200
    assert retry.status_code == 200
    assert retry.json()["snapshot"]["free_quota_consumed"] == 4
    assert [item["id"] for item in retry.json()["accepted"]] == [item["id"] for item in first.json()["accepted"]]


@pytest.mark.asyncio
async def test_placement_without_key_is_accepted(canvas_client):
    _, headers = await start_session(canvas_client)
    response = await canvas_client.post("/placements", json={"x": 0.0, "y": 1.0}, headers=headers)
    assert response.status_code == 200
    assert response.json()["placement"]["idempotency_key"] is None
    assert response.json()["snapshot"]["free_quota_consumed"] == 1


@pytest.mark.asyncio
async def test_all_placements_gated_on_reveal(canvas_client):
    _, other_headers = await start_session(canvas_client, "red")
    await canvas_client.post("/placements", json={"x": 0.9, "y": 0.1}, headers=other_headers)

    _, headers = await start_session(canvas_client, "green")
    await canvas_client.post("/placements", json={"x": 0.2, "y": 0.8}, headers=headers)

    blind = await canvas_client.get("/placements/all", headers=headers)
    assert blind.status_code == 403
    assert blind.json()["detail"]["error"] == "NOT_REVEALED"

    mine = await canvas_client.get("/placements/mine", headers=headers)
    assert mine.status_code == 200
    assert len(mine.json()) == 1
    assert mine.json()[0]["phase"] == "free"

    rest = [{"x": 0.3, "y": 0.3, "idempotency_key": _key()} for _ in range(9)]
    await canvas_client.post("/placements/batch", json={"placements": rest}, headers=headers)

    revealed = await canvas_client.get("/placements/all", headers=headers)
    assert revealed.status_code == 200
    everything = revealed.json()
    assert len(everything) == 11
    assert {mark["color_value"] for mark in everything} == {
        (await canvas_client.get("/session/me", headers=headers)).json()["color_value"],
        (await canvas_client.get("/session/me", headers=other_headers)).json()["color_value"],
    }
    timestamps = [mark["created_at"] for mark in everything]
    assert timestamps == sorted(timestamps)
    assert "idempotency_key" not in everything[0]


@pytest.mark.asyncio
async def test_unknown_participant_is_not_found(canvas_client):
    from services.session_token import create_session_token

    headers = {"Authorization": f"Bearer {create_session_token('missing-participant')['token']}"}
    response = await canvas_client.post("/placements", json={"x": 0.5, "y": 0.5}, headers=headers)
    assert response.status_code == 404
    assert response.json()["detail"]["error"] == "NOT_FOUND"

    mine = await canvas_client.get("/placements/mine", headers=headers)
    assert mine.status_code == 404


@pytest.mark.asyncio
async def test_missing_token_is_unauthorized(canvas_client):
    response = await canvas_client.post("/placements", json={"x": 0.5, "y": 0.5})
    assert response.status_code == 401
