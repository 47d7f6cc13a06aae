from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from quest_guard.db_constants import REWARD_MISMATCH_TOLERANCE, SECURITY_EVENT_REWARD_MISMATCH

logger = logging.getLogger(__name__)

CLAIMED_REWARD_METADATA_KEYS = ("reward_zo", "claimed_reward")


class SecurityEventSink(Protocol):
    def record_security_event(
        self,
        event_type: str,
        user_id: str,
        quest_slug: str,
        score: float | None,
        claimed_amount: float,
        computed_amount: int,
        created_at: datetime,
    ) -> int: ...


@dataclass(frozen=True)
class TamperFlag:
    user_id: str
    quest_slug: str
    score: float | None
    claimed_amount: float
    computed_amount: int
    flagged_at: datetime


def _as_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def extract_claimed_reward(claimed_reward: Any, metadata: dict[str, Any] | None) -> float | None:
    direct = _as_number(claimed_reward)
    if direct is not None:
        return direct
    for key in CLAIMED_REWARD_METADATA_KEYS:
        value = _as_number((metadata or {}).get(key))
        if value is not None:
            return value
    return None


def audit_claimed_reward(
    user_id: str,
    quest_slug: str,
    score: float | None,
    claimed_amount: float | None,
    computed_amount: int,
    now: datetime,
    sink: SecurityEventSink | None = None,
) -> TamperFlag | None:
    """
    Compare what the client says it earned with what the server computed.

    Purely observational: the awarded amount is never changed here and a
    failing sink is logged, not raised.
    """
    if claimed_amount is None:
        return None
    if abs(claimed_amount - computed_amount) <= REWARD_MISMATCH_TOLERANCE:
        return None

    flag = TamperFlag(
        user_id=user_id,
        quest_slug=quest_slug,
        score=score,
        claimed_amount=claimed_amount,
        computed_amount=computed_amount,
        flagged_at=now,
    )
    logger.warning(
        "reward mismatch flagged: user=%s quest=%s score=%s claimed=%s computed=%s at=%s",
        user_id,
        quest_slug,
        score,
        claimed_amount,
        computed_amount,
        now.isoformat(),
    )
    if sink is not None:
        try:
            sink.record_security_event(
                event_type=SECURITY_EVENT_REWARD_MISMATCH,
                user_id=user_id,
                quest_slug=quest_slug,
                score=score,
                claimed_amount=claimed_amount,
                computed_amount=computed_amount,
                created_at=now,
            )
        except Exception:
            logger.exception("failed to persist security event for user %s quest %s", user_id, quest_slug)
    return flag
