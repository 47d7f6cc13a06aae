from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from quest_guard.errors import NetworkError

logger = logging.getLogger(__name__)

COMPLETE_PATH = "/api/quests/complete"


@dataclass(frozen=True)
class DeliveryResponse:
    status_code: int
    body: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def cooldown(self) -> bool:
        return self.status_code == 429


class CompletionTransport(Protocol):
    def deliver(self, payload: dict[str, Any]) -> DeliveryResponse:
        """POST one attempt; raise ``NetworkError`` when no HTTP response arrives."""
        ...


def _response_body(resp: httpx.Response) -> dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {"error": resp.text[:500]}
    if isinstance(data, dict):
        return data
    return {"data": data}


class HttpCompletionClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    def _post(self, client: httpx.Client, payload: dict[str, Any]) -> httpx.Response:
        headers = {"Content-Type": "application/json"}
        key = payload.get("idempotency_key")
        if key:
            headers["Idempotency-Key"] = str(key)
        return client.post(COMPLETE_PATH, json=payload, headers=headers)

    def deliver(self, payload: dict[str, Any]) -> DeliveryResponse:
        try:
            if self._client is not None:
                resp = self._post(self._client, payload)
            else:
                with httpx.Client(base_url=self.base_url, timeout=self.timeout) as client:
                    resp = self._post(client, payload)
        except httpx.TimeoutException as exc:
            raise NetworkError(f"Timed out after {self.timeout}s: {exc}") from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"Transport error: {exc}") from exc

        body = _response_body(resp)
        if resp.status_code >= 500:
            logger.warning("quest completion server error %s: %s", resp.status_code, body.get("error"))
        return DeliveryResponse(status_code=resp.status_code, body=body)
