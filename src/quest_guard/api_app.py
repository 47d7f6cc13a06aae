from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from quest_guard.catalog import load_quest_catalog, sync_quest_catalog
from quest_guard.config import load_settings
from quest_guard.db import CompletionAttempt, Database
from quest_guard.errors import CooldownActiveError, QuestGuardError
from quest_guard.logging_setup import setup_logging
from quest_guard.rewards import reward_rule_to_dict
from quest_guard.service import complete_quest, quest_status, user_progress
from quest_guard.time_utils import isoformat_or_none, utc_now

logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "idempotency-key"


def _require_auth(request: Request, token: str | None) -> None:
    if not token:
        return
    header = request.headers.get("x-admin-token")
    query = request.query_params.get("token")
    if header == token or query == token:
        return
    raise HTTPException(status_code=401, detail="Unauthorized")


class CompletionRequest(BaseModel):
    user_id: str | None = None
    quest_id: str | None = None
    score: float | None = Field(default=None, allow_inf_nan=False)
    location: str | None = None
    latitude: float | None = Field(default=None, allow_inf_nan=False)
    longitude: float | None = Field(default=None, allow_inf_nan=False)
    claimed_reward: float | None = None
    metadata: dict[str, Any] | None = None
    idempotency_key: str | None = None


class UserUpsertRequest(BaseModel):
    user_id: str = Field(min_length=1)
    nickname: str | None = None


def build_api_app(
    db: Database,
    admin_token: str | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> FastAPI:
    app = FastAPI(title="Quest Guard", version="1.0.0")

    @app.exception_handler(QuestGuardError)
    async def quest_error_handler(request: Request, exc: QuestGuardError) -> JSONResponse:
        body: dict[str, Any] = {"error": exc.message}
        if isinstance(exc, CooldownActiveError):
            body["next_available_at"] = isoformat_or_none(exc.next_available_at)
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        fields = sorted({".".join(str(p) for p in err.get("loc", ())[1:]) for err in exc.errors()})
        return JSONResponse(
            status_code=400,
            content={"error": f"Invalid request: {', '.join(f for f in fields if f) or 'body'}"},
        )

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    @app.post("/api/quests/complete")
    def api_complete_quest(request: Request, payload: CompletionRequest) -> dict[str, Any]:
        attempt = CompletionAttempt(
            user_id=payload.user_id,
            quest_slug=payload.quest_id,
            score=payload.score,
            location=payload.location,
            latitude=payload.latitude,
            longitude=payload.longitude,
            claimed_reward=payload.claimed_reward,
            metadata=payload.metadata or {},
            idempotency_key=payload.idempotency_key or request.headers.get(IDEMPOTENCY_HEADER),
        )
        logger.info("quest completion request: user=%s quest=%s score=%s", attempt.user_id, attempt.quest_slug, attempt.score)
        outcome = complete_quest(db, attempt, clock())
        return outcome.to_response()

    @app.get("/api/quests/status")
    def api_quest_status(userId: str | None = None, questId: str | None = None) -> dict[str, Any]:
        return quest_status(db, userId, questId, clock()).to_response()

    @app.get("/api/quests")
    def api_list_quests() -> dict[str, Any]:
        return {
            "quests": [
                {
                    "id": q.id,
                    "slug": q.slug,
                    "title": q.title,
                    "cooldown_hours": q.cooldown_hours,
                    "reward_rule": reward_rule_to_dict(q.reward_rule),
                    "reputation": dict(q.reputation_rewards),
                    "items": list(q.item_rewards),
                }
                for q in db.list_quests()
            ]
        }

    @app.post("/api/users")
    def api_upsert_user(payload: UserUpsertRequest) -> dict[str, Any]:
        user = db.upsert_user(payload.user_id.strip(), clock(), nickname=payload.nickname)
        return {"ok": True, "user_id": user.id, "balance": user.balance}

    @app.get("/api/users/{user_id}/progress")
    def api_user_progress(user_id: str) -> dict[str, Any]:
        return user_progress(db, user_id)

    @app.get("/api/security/events")
    def api_security_events(request: Request, limit: int = 100, user_id: str | None = None) -> dict[str, Any]:
        _require_auth(request, admin_token)
        return {
            "events": [
                {
                    "id": e.id,
                    "event_type": e.event_type,
                    "user_id": e.user_id,
                    "quest_slug": e.quest_slug,
                    "score": e.score,
                    "claimed_amount": e.claimed_amount,
                    "computed_amount": e.computed_amount,
                    "created_at": e.created_at.isoformat(),
                }
                for e in db.list_security_events(limit=limit, user_id=user_id)
            ]
        }

    return app


def run_api() -> None:
    settings = load_settings()
    setup_logging(settings.log_level)
    db = Database(settings.database_path)
    sync_quest_catalog(db, load_quest_catalog(settings.quest_catalog_path), utc_now())
    app = build_api_app(db, settings.admin_panel_token)
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
