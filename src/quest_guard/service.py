from __future__ import annotations

import logging
import math
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from quest_guard.anti_tamper import audit_claimed_reward, extract_claimed_reward
from quest_guard.db import CompletionAttempt, Database, QuestDefinition
from quest_guard.db_constants import COOLDOWN_ACTIVE, IDEMPOTENCY_CONFLICT
from quest_guard.errors import ConflictError, CooldownActiveError, NotFoundError, StorageError, ValidationError
from quest_guard.rewards import compute_reward, requires_score
from quest_guard.time_utils import cooldown_ends_at, ensure_utc, isoformat_or_none

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompletionOutcome:
    completion_id: int
    quest: QuestDefinition
    tokens: int
    next_available_at: datetime | None
    replayed: bool
    flagged: bool

    def to_response(self) -> dict[str, Any]:
        return {
            "success": True,
            "completion_id": self.completion_id,
            "rewards": {
                "zo_tokens": self.tokens,
                "reputation": dict(self.quest.reputation_rewards),
                "items": list(self.quest.item_rewards),
            },
            "next_available_at": isoformat_or_none(self.next_available_at),
            "replayed": self.replayed,
        }


@dataclass(frozen=True)
class QuestStatus:
    can_complete: bool
    next_available_at: datetime | None
    last_completed_at: datetime | None

    def to_response(self) -> dict[str, Any]:
        return {
            "canComplete": self.can_complete,
            "nextAvailableAt": isoformat_or_none(self.next_available_at),
            "lastCompletedAt": isoformat_or_none(self.last_completed_at),
        }


def _clean(value: str | None) -> str:
    return str(value).strip() if value is not None else ""


def _check_finite(attempt: CompletionAttempt) -> None:
    bad = [
        name
        for name, value in (("score", attempt.score), ("latitude", attempt.latitude), ("longitude", attempt.longitude))
        if value is not None and not math.isfinite(value)
    ]
    if bad:
        raise ValidationError(f"Invalid number for: {', '.join(bad)}")


def _resolve_quest_and_user(db: Database, user_id: str, quest_slug: str) -> QuestDefinition:
    try:
        quest = db.get_quest_by_slug(quest_slug)
        if quest is None:
            raise NotFoundError("Quest not found")
        if not db.user_exists(user_id):
            raise NotFoundError("User not found. Please complete onboarding first.")
    except sqlite3.Error as exc:
        logger.exception("storage failure resolving quest %s for user %s", quest_slug, user_id)
        raise StorageError("Failed to load quest") from exc
    return quest


def _apply_progress(db: Database, user_id: str, quest: QuestDefinition, now: datetime) -> None:
    try:
        for trait, delta in quest.reputation_rewards.items():
            db.add_reputation(user_id, trait, delta, now)
        db.touch_streak(user_id, "quest", now)
    except (sqlite3.Error, ValueError):
        logger.warning("progress update failed for user %s quest %s", user_id, quest.slug, exc_info=True)


def complete_quest(db: Database, attempt: CompletionAttempt, now: datetime) -> CompletionOutcome:
    """
    Adjudicate one completion attempt.

    Raises ``ValidationError`` / ``NotFoundError`` for bad input,
    ``CooldownActiveError`` when the quest was completed inside its cooldown
    window, ``ConflictError`` when the idempotency key belongs to another quest
    and ``StorageError`` when the ledger could not be written.
    """
    now = ensure_utc(now)
    user_id = _clean(attempt.user_id)
    quest_slug = _clean(attempt.quest_slug)
    if not user_id or not quest_slug:
        raise ValidationError("Missing required fields: user_id, quest_id")
    _check_finite(attempt)

    quest = _resolve_quest_and_user(db, user_id, quest_slug)
    if requires_score(quest.reward_rule) and attempt.score is None:
        raise ValidationError(f"Missing required field: score (quest {quest.slug} pays by score)")

    tokens = compute_reward(quest.reward_rule, attempt.score)
    claimed = extract_claimed_reward(attempt.claimed_reward, attempt.metadata)
    flag = audit_claimed_reward(
        user_id=user_id,
        quest_slug=quest.slug,
        score=attempt.score,
        claimed_amount=claimed,
        computed_amount=tokens,
        now=now,
        sink=db,
    )

    metadata = {
        **(attempt.metadata or {}),
        "server_calculated_tokens": tokens,
        "client_submitted_tokens": claimed,
        "reputation_delta": dict(quest.reputation_rewards),
        "items_awarded": list(quest.item_rewards),
        "reward_mismatch_flagged": flag is not None,
    }

    result = db.complete_quest_atomic(
        user_id=user_id,
        quest_id=quest.id,
        cooldown_hours=quest.cooldown_hours,
        score=attempt.score,
        location=attempt.location,
        amount=tokens,
        metadata=metadata,
        now=now,
        latitude=attempt.latitude,
        longitude=attempt.longitude,
        idempotency_key=_clean(attempt.idempotency_key) or None,
    )

    if result.success and result.completion_id is not None:
        if not result.replayed:
            _apply_progress(db, user_id, quest, now)
            logger.info("quest %s completed by %s: %d tokens (completion %s)", quest.slug, user_id, tokens, result.completion_id)
        return CompletionOutcome(
            completion_id=result.completion_id,
            quest=quest,
            tokens=result.awarded_amount if result.awarded_amount is not None else tokens,
            next_available_at=result.next_available_at,
            replayed=result.replayed,
            flagged=flag is not None,
        )
    if result.error_code == COOLDOWN_ACTIVE:
        raise CooldownActiveError(result.next_available_at)
    if result.error_code == IDEMPOTENCY_CONFLICT:
        raise ConflictError("Idempotency key already used for another quest")
    raise StorageError("Failed to record quest completion")


def quest_status(db: Database, user_id: str | None, quest_slug: str | None, now: datetime) -> QuestStatus:
    user = _clean(user_id)
    slug = _clean(quest_slug)
    if not user or not slug:
        raise ValidationError("Missing required fields: userId, questId")
    try:
        quest = db.get_quest_by_slug(slug)
        if quest is None:
            raise NotFoundError("Quest not found")
        last = db.latest_completion(user, quest.id)
    except sqlite3.Error as exc:
        logger.exception("storage failure reading status of %s for %s", slug, user)
        raise StorageError("Failed to load quest status") from exc

    if last is None:
        return QuestStatus(can_complete=True, next_available_at=None, last_completed_at=None)

    completed_at = ensure_utc(last.created_at)
    next_available = cooldown_ends_at(completed_at, quest.cooldown_hours)
    can_complete = next_available is None or ensure_utc(now) >= next_available
    return QuestStatus(can_complete=can_complete, next_available_at=next_available, last_completed_at=completed_at)


def user_progress(db: Database, user_id: str) -> dict[str, Any]:
    user = db.get_user(user_id)
    if user is None:
        raise NotFoundError("User not found")
    return {
        "user_id": user.id,
        "balance": user.balance,
        "total_quests_completed": db.count_completions(user.id),
        "reputations": [
            {"trait": r.trait, "score": r.score, "level": r.level, "progress": r.progress}
            for r in db.list_reputations(user.id)
        ],
        "streaks": [
            {
                "streak_type": s.streak_type,
                "count": s.count,
                "longest_streak": s.longest_streak,
                "last_action_at": isoformat_or_none(s.last_action_at),
            }
            for s in db.list_streaks(user.id)
        ],
    }
