from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Union


@dataclass(frozen=True)
class FixedReward:
    amount: int


@dataclass(frozen=True)
class ProximityReward:
    """Pays more the closer a score lands to ``target``.

    ``base`` is paid at zero proximity and ``base + bonus_span`` on an exact hit;
    the result is always clamped into ``[min_bound, max_bound]``.
    """

    target: float
    base: float
    bonus_span: float
    min_bound: int
    max_bound: int


RewardRule = Union[FixedReward, ProximityReward]


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def proximity_factor(target: float, score: float) -> float:
    distance = abs(score - target)
    if target == 0:
        return 1.0 if distance == 0 else 0.0
    return max(0.0, 1.0 - distance / abs(target))


def compute_reward(rule: RewardRule, score: float | None) -> int:
    if isinstance(rule, FixedReward):
        return int(rule.amount)

    if score is None:
        return int(rule.min_bound)
    raw = rule.base + proximity_factor(rule.target, float(score)) * rule.bonus_span
    amount = _round_half_up(raw)
    return min(max(amount, int(rule.min_bound)), int(rule.max_bound))


def requires_score(rule: RewardRule) -> bool:
    return isinstance(rule, ProximityReward)


def parse_reward_rule(raw: Any) -> RewardRule:
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return FixedReward(amount=int(raw))
    if not isinstance(raw, dict):
        raise ValueError(f"Reward rule must be a mapping, got {type(raw).__name__}")

    rule_type = str(raw.get("type", "fixed")).strip().lower()
    if rule_type == "fixed":
        return FixedReward(amount=int(raw.get("amount", 0)))
    if rule_type == "proximity":
        try:
            target = float(raw["target"])
            base = float(raw.get("base", 0))
            bonus_span = float(raw.get("bonus_span", 0))
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Invalid proximity reward rule: {raw!r}") from exc
        min_bound = int(raw.get("min_bound", _round_half_up(base)))
        max_bound = int(raw.get("max_bound", _round_half_up(base + bonus_span)))
        if min_bound > max_bound:
            raise ValueError(f"Proximity reward bounds are inverted: [{min_bound}, {max_bound}]")
        return ProximityReward(
            target=target,
            base=base,
            bonus_span=bonus_span,
            min_bound=min_bound,
            max_bound=max_bound,
        )
    raise ValueError(f"Unknown reward rule type: {rule_type}")


def reward_rule_to_dict(rule: RewardRule) -> dict[str, Any]:
    if isinstance(rule, FixedReward):
        return {"type": "fixed", "amount": rule.amount}
    return {
        "type": "proximity",
        "target": rule.target,
        "base": rule.base,
        "bonus_span": rule.bonus_span,
        "min_bound": rule.min_bound,
        "max_bound": rule.max_bound,
    }
