import pytest

from canvas_client.state import (
    CanvasState,
    LedgerSnapshot,
    Mark,
    PlacementNotAllowedError,
    SessionPhase,
)


def _snapshot(consumed=0, revealed=False, credits=0, participant_id="p-1"):
    return LedgerSnapshot(
        id=participant_id,
        color_label="blue",
        color_value="#1e90ff",
        free_quota_consumed=consumed,
        revealed=revealed,
        credit_balance=credits,
    )


def _active_state(snapshot=None):
    state = CanvasState()
    state.begin_identity_selection()
    state.identity_created(snapshot or _snapshot())
    return state


def test_identity_lifecycle():
    state = CanvasState()
    assert state.phase == SessionPhase.UNINITIALIZED
    assert state.can_place() is False

    state.begin_identity_selection()
    assert state.phase == SessionPhase.SELECTING_IDENTITY

    state.identity_created(_snapshot())
    assert state.phase == SessionPhase.BLIND_ACTIVE
    assert state.estimated_remaining_quota == 10

    state.drop_identity()
    assert state.phase == SessionPhase.SELECTING_IDENTITY
    assert state.snapshot is None


def test_provisional_marks_reduce_estimate_but_never_reveal():
    state = _active_state(_snapshot(consumed=8))
    first = state.add_provisional(0.1, 0.1)
    second = state.add_provisional(0.2, 0.2)

    assert first.idempotency_key != second.idempotency_key
    assert first.phase == "free"
    assert state.estimated_remaining_quota == 0
    assert state.can_place() is False
    assert state.phase == SessionPhase.BLIND_ACTIVE
    with pytest.raises(PlacementNotAllowedError):
        state.add_provisional(0.3, 0.3)

    state.rollback(second.idempotency_key)
    assert state.estimated_remaining_quota == 1


def test_stale_snapshot_is_ignored():
    state = _active_state()
    assert state.adopt(_snapshot(consumed=3)) is True
    assert state.adopt(_snapshot(consumed=2)) is False
    assert state.snapshot.free_quota_consumed == 3

    assert state.adopt(_snapshot(consumed=3, credits=0)) is True


def test_snapshot_for_other_participant_replaces_state():
    state = _active_state(_snapshot(consumed=5))
    assert state.adopt(_snapshot(consumed=0, participant_id="p-2")) is True
    assert state.snapshot.id == "p-2"


def test_confirm_keeps_mark_with_server_time():
    state = _active_state()
    mark = state.add_provisional(0.4, 0.6)
    confirmed = state.confirm(mark.idempotency_key, {"id": "pl-1", "phase": "free", "created_at": "2026-10-18T10:00:00+00:00"})

    assert confirmed.created_at == "2026-10-18T10:00:00+00:00"
    assert confirmed.provisional is False
    assert state.pending == []
    assert state.render_set() == [confirmed]
    assert state.confirm(mark.idempotency_key, {}) is None


def test_reveal_handoff_discards_blind_marks_and_fetches_once():
    state = _active_state(_snapshot(consumed=9))
    kept = state.add_provisional(0.5, 0.5)
    state.confirm(kept.idempotency_key, {"id": "pl-9", "phase": "free", "created_at": "2026-10-18T10:00:00+00:00"})
    state.adopt(_snapshot(consumed=9))
    blind = state.add_provisional(0.7, 0.7)

    assert state.adopt(_snapshot(consumed=10, revealed=True)) is True
    assert state.phase == SessionPhase.REVEALED_ACTIVE
    assert state.pending == []
    assert state.render_set() == []
    assert state.rollback(blind.idempotency_key) is None

    assert state.claim_revealed_fetch() is True
    assert state.claim_revealed_fetch() is False

    everyone = [
        Mark(x=0.5, y=0.5, color_value="#1e90ff", phase="free", created_at="2026-10-18T10:00:00+00:00"),
        Mark(x=0.9, y=0.1, color_value="#ff0000", phase="free", created_at="2026-10-18T10:00:01+00:00"),
    ]
    state.load_revealed_marks(everyone)
    assert state.render_set() == everyone

    state.adopt(_snapshot(consumed=10, revealed=True, credits=1))
    assert state.claim_revealed_fetch() is False


def test_revealed_flag_never_regresses():
    state = _active_state(_snapshot(consumed=10, revealed=True))
    assert state.phase == SessionPhase.REVEALED_ACTIVE
    assert state.adopt(_snapshot(consumed=10, revealed=False)) is False
    assert state.snapshot.revealed is True


def test_paid_marks_follow_credit_estimate():
    state = _active_state(_snapshot(consumed=10, revealed=True, credits=2))
    state.load_revealed_marks([])
    first = state.add_provisional(0.1, 0.9)
    assert first.phase == "paid"
    assert state.estimated_credits == 1

    state.add_provisional(0.2, 0.9)
    assert state.can_place() is False

    confirmed = state.confirm(first.idempotency_key, {"id": "pl-p", "phase": "paid", "created_at": "2026-10-18T11:00:00+00:00"})
    state.adopt(_snapshot(consumed=10, revealed=True, credits=1))
    assert confirmed in state.render_set()
    assert state.estimated_credits == 0


def test_failed_revealed_fetch_can_be_claimed_again():
    state = _active_state(_snapshot(consumed=10, revealed=True))
    assert state.claim_revealed_fetch() is True
    state.release_revealed_fetch()
    assert state.claim_revealed_fetch() is True
