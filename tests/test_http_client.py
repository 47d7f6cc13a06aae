from __future__ import annotations

from datetime import datetime, timezone

import httpx
import pytest
from fastapi.testclient import TestClient

from quest_guard.api_app import build_api_app
from quest_guard.db import Database
from quest_guard.errors import NetworkError
from quest_guard.http_client import DeliveryResponse, HttpCompletionClient
from quest_guard.queue_store import MemoryKeyValueStore
from quest_guard.rewards import FixedReward
from quest_guard.submission_queue import SubmissionQueue


def _dt(y: int, m: int, d: int, h: int = 10, minute: int = 0) -> datetime:
    return datetime(y, m, d, h, minute, tzinfo=timezone.utc)


def _mock_client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler), base_url="http://quest.test")


def test_deliver_posts_payload_with_idempotency_header() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": True, "completion_id": 3})

    client = HttpCompletionClient("http://quest.test", client=_mock_client(handler))
    response = client.deliver({"user_id": "u1", "quest_id": "game-1111", "idempotency_key": "k-9"})

    assert response == DeliveryResponse(200, {"success": True, "completion_id": 3})
    assert response.ok is True
    assert seen[0].url.path == "/api/quests/complete"
    assert seen[0].headers["Idempotency-Key"] == "k-9"


def test_error_statuses_are_returned_not_raised() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": "Quest is on cooldown"})

    response = HttpCompletionClient("http://quest.test", client=_mock_client(handler)).deliver({"user_id": "u1"})

    assert response.ok is False
    assert response.cooldown is True
    assert response.body["error"] == "Quest is on cooldown"


def test_non_json_body_is_wrapped() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="Bad Gateway")

    response = HttpCompletionClient("http://quest.test", client=_mock_client(handler)).deliver({})
    assert response.status_code == 502
    assert response.body == {"error": "Bad Gateway"}


@pytest.mark.parametrize(
    "exc_type",
    [httpx.ReadTimeout, httpx.ConnectError],
)
def test_transport_failures_become_network_errors(exc_type) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise exc_type("boom", request=request)

    client = HttpCompletionClient("http://quest.test", timeout=2.0, client=_mock_client(handler))
    with pytest.raises(NetworkError):
        client.deliver({"user_id": "u1"})


def test_lost_response_is_replayed_without_double_credit(tmp_path) -> None:
    db = Database(tmp_path / "quests.db")
    now = _dt(2026, 3, 1)
    db.upsert_quest("daily-checkin", "Daily check-in", 24, FixedReward(amount=10), now)
    db.upsert_user("u1", now)
    api = TestClient(build_api_app(db, clock=lambda: now))
    http = HttpCompletionClient("http://testserver", client=api)

    class _LosesFirstResponse:
        def __init__(self) -> None:
            self.calls = 0

        def deliver(self, payload: dict) -> DeliveryResponse:
            self.calls += 1
            response = http.deliver(payload)
            if self.calls == 1:
                raise NetworkError("connection reset after request was sent")
            return response

    queue = SubmissionQueue(MemoryKeyValueStore(), _LosesFirstResponse(), clock=lambda: now)
    result = queue.submit({"user_id": "u1", "quest_id": "daily-checkin"})
    assert result.queued_id is not None

    report = queue.drain()

    assert len(report.delivered) == 1
    assert queue.stats().total == 0
    assert db.count_completions("u1") == 1
    assert db.get_balance("u1") == 10
