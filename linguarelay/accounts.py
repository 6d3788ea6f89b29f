# coding=utf-8
from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Dict, List

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TierLimits:
    daily_minutes: int
    monthly_minutes: int
    max_history_days: int


# Negative minutes mean unlimited.
TIER_LIMITS: Dict[str, TierLimits] = {
    "free": TierLimits(daily_minutes=10, monthly_minutes=100, max_history_days=7),
    "basic": TierLimits(daily_minutes=60, monthly_minutes=1000, max_history_days=30),
    "premium": TierLimits(daily_minutes=300, monthly_minutes=5000, max_history_days=90),
    "enterprise": TierLimits(daily_minutes=-1, monthly_minutes=-1, max_history_days=365),
}


def limits_for(tier: str) -> TierLimits:
    return TIER_LIMITS.get(str(tier or "").lower(), TIER_LIMITS["free"])


def minutes_for(duration_ms: int) -> int:
    return int(math.ceil(max(0, int(duration_ms)) / 60000.0))


@dataclass(frozen=True)
class HistoryEntry:
    source_text: str
    target_text: str
    source_lang: str
    target_lang: str
    is_voice: bool = True
    duration_ms: int = 0
    confidence: float = 0.0
    created_at: float = field(default_factory=time.time)


class UsageLedger:
    """In-memory daily usage counters keyed by user id."""

    def __init__(self) -> None:
        self._daily: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    def daily_usage(self, user_id: str) -> int:
        return self._daily.get(user_id, 0)

    async def within_limit(self, user_id: str, tier: str) -> bool:
        limits = limits_for(tier)
        if limits.daily_minutes < 0:
            return True
        return self.daily_usage(user_id) < limits.daily_minutes

    async def record(self, user_id: str, minutes: int) -> None:
        async with self._lock:
            self._daily[user_id] = self._daily.get(user_id, 0) + int(minutes)
        logger.info("usage recorded user=%s minutes=%d daily=%d", user_id, minutes, self._daily[user_id])

    def reset_daily(self) -> None:
        self._daily.clear()


class HistoryStore:
    """In-memory translation history."""

    def __init__(self) -> None:
        self._entries: Dict[str, List[HistoryEntry]] = {}

    async def save(self, user_id: str, entry: HistoryEntry) -> None:
        self._entries.setdefault(user_id, []).append(entry)

    def entries(self, user_id: str) -> List[HistoryEntry]:
        return list(self._entries.get(user_id, []))
