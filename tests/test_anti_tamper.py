from __future__ import annotations

from datetime import datetime, timezone

import pytest

from quest_guard.anti_tamper import audit_claimed_reward, extract_claimed_reward
from quest_guard.db import Database


def _dt(y: int, m: int, d: int, h: int = 10, minute: int = 0) -> datetime:
    return datetime(y, m, d, h, minute, tzinfo=timezone.utc)


class _BrokenSink:
    def record_security_event(self, **kwargs: object) -> int:
        raise RuntimeError("sink offline")


def test_extract_claimed_reward_prefers_direct_value() -> None:
    assert extract_claimed_reward(120, {"reward_zo": 80}) == 120.0
    assert extract_claimed_reward(None, {"reward_zo": 80}) == 80.0
    assert extract_claimed_reward(None, {"claimed_reward": "75"}) == 75.0
    assert extract_claimed_reward(None, {}) is None
    assert extract_claimed_reward(True, None) is None
    assert extract_claimed_reward(float("nan"), None) is None


@pytest.mark.parametrize(("claimed", "flagged"), [(200, False), (201, False), (199, False), (202, True), (500, True), (0, True)])
def test_tolerance_is_one_token(claimed: float, flagged: bool) -> None:
    flag = audit_claimed_reward("u1", "game-1111", 1111, claimed, 200, _dt(2026, 3, 1))
    assert (flag is not None) is flagged


def test_missing_claim_is_never_flagged() -> None:
    assert audit_claimed_reward("u1", "game-1111", 1111, None, 200, _dt(2026, 3, 1)) is None


def test_mismatch_is_persisted_as_security_event(tmp_path) -> None:
    db = Database(tmp_path / "quests.db")
    now = _dt(2026, 3, 1)

    flag = audit_claimed_reward("u1", "game-1111", 0, 200, 50, now, sink=db)

    assert flag is not None
    assert flag.claimed_amount == 200
    assert flag.computed_amount == 50
    events = db.list_security_events()
    assert len(events) == 1
    assert events[0].event_type == "reward_mismatch"
    assert events[0].user_id == "u1"
    assert events[0].computed_amount == 50
    assert events[0].created_at == now


def test_failing_sink_does_not_raise(caplog) -> None:
    flag = audit_claimed_reward("u1", "game-1111", 0, 999, 50, _dt(2026, 3, 1), sink=_BrokenSink())
    assert flag is not None
    assert "failed to persist security event" in caplog.text
