from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml

from quest_guard.db import Database
from quest_guard.db_constants import DEFAULT_QUEST_CATALOG, REPUTATION_TRAITS
from quest_guard.rewards import RewardRule, parse_reward_rule

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CatalogQuest:
    slug: str
    title: str
    cooldown_hours: float
    reward_rule: RewardRule
    reputation: dict[str, int]
    items: tuple[str, ...]
    active: bool = True


def _parse_entry(raw: dict[str, Any]) -> CatalogQuest | None:
    slug = str(raw.get("slug", "")).strip()
    if not slug:
        logger.warning("skipping catalog entry without slug: %r", raw)
        return None
    try:
        cooldown = float(raw.get("cooldown_hours", 0) or 0)
        rule = parse_reward_rule(raw.get("reward_rule", raw.get("reward", 0)))
    except (TypeError, ValueError) as exc:
        logger.warning("skipping catalog entry %s: %s", slug, exc)
        return None
    if cooldown < 0:
        logger.warning("skipping catalog entry %s: negative cooldown", slug)
        return None

    reputation_raw = raw.get("reputation", {})
    reputation: dict[str, int] = {}
    if isinstance(reputation_raw, dict):
        for trait, delta in reputation_raw.items():
            if trait not in REPUTATION_TRAITS:
                logger.warning("ignoring unknown reputation trait %s on %s", trait, slug)
                continue
            try:
                reputation[str(trait)] = int(delta)
            except (TypeError, ValueError):
                continue

    items_raw = raw.get("items", [])
    items = tuple(str(x) for x in items_raw) if isinstance(items_raw, list) else ()

    return CatalogQuest(
        slug=slug,
        title=str(raw.get("title", slug)).strip() or slug,
        cooldown_hours=cooldown,
        reward_rule=rule,
        reputation=reputation,
        items=items,
        active=bool(raw.get("active", True)),
    )


def load_quest_catalog(path: Path) -> list[CatalogQuest]:
    if not path.exists():
        logger.info("quest catalog %s not found, using built-in catalog", path)
        entries: Any = DEFAULT_QUEST_CATALOG
    else:
        raw = yaml.safe_load(path.read_text()) or {}
        entries = raw.get("quests", []) if isinstance(raw, dict) else raw

    quests: list[CatalogQuest] = []
    seen: set[str] = set()
    if isinstance(entries, list):
        for item in entries:
            if not isinstance(item, dict):
                continue
            quest = _parse_entry(item)
            if quest is None or quest.slug in seen:
                continue
            seen.add(quest.slug)
            quests.append(quest)
    return quests


def sync_quest_catalog(db: Database, quests: list[CatalogQuest], now: datetime) -> int:
    for quest in quests:
        db.upsert_quest(
            slug=quest.slug,
            title=quest.title,
            cooldown_hours=quest.cooldown_hours,
            reward_rule=quest.reward_rule,
            now=now,
            reputation_rewards=quest.reputation,
            item_rewards=quest.items,
            active=quest.active,
        )
    deactivated = db.deactivate_missing_quests({q.slug for q in quests}, now)
    logger.info("quest catalog synced: %d quests, %d deactivated", len(quests), deactivated)
    return len(quests)
