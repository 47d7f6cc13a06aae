from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from quest_guard.rewards import RewardRule


@dataclass(frozen=True)
class QuestDefinition:
    id: int
    slug: str
    title: str
    cooldown_hours: float
    reward_rule: RewardRule
    reputation_rewards: dict[str, int]
    item_rewards: tuple[str, ...]
    active: bool


@dataclass(frozen=True)
class UserRecord:
    id: str
    nickname: str | None
    balance: int
    created_at: datetime


@dataclass(frozen=True)
class QuestCompletionRecord:
    id: int
    user_id: str
    quest_id: int
    score: float
    location: str
    latitude: float | None
    longitude: float | None
    awarded_amount: int
    metadata: dict[str, Any]
    idempotency_key: str | None
    created_at: datetime


@dataclass(frozen=True)
class CompletionResult:
    success: bool
    completion_id: int | None = None
    error_code: str | None = None
    next_available_at: datetime | None = None
    created_at: datetime | None = None
    awarded_amount: int | None = None
    replayed: bool = False


@dataclass(frozen=True)
class SecurityEvent:
    id: int
    event_type: str
    user_id: str
    quest_slug: str
    score: float | None
    claimed_amount: float
    computed_amount: int
    created_at: datetime


@dataclass(frozen=True)
class LedgerEntry:
    id: int
    user_id: str
    amount: int
    source: str
    completion_id: int | None
    created_at: datetime


@dataclass(frozen=True)
class UserReputation:
    user_id: str
    trait: str
    score: int
    updated_at: datetime

    @property
    def level(self) -> int:
        return self.score // 100 + 1

    @property
    def progress(self) -> int:
        return self.score % 100


@dataclass(frozen=True)
class UserStreak:
    user_id: str
    streak_type: str
    count: int
    longest_streak: int
    last_action_at: datetime | None


@dataclass(frozen=True)
class CompletionAttempt:
    user_id: str | None
    quest_slug: str | None
    score: float | None = None
    location: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    claimed_reward: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    idempotency_key: str | None = None
