"""
Keepsake - Memory Strength
Decay and strengthening of memory activation during consolidation
"""

from datetime import datetime, timedelta
from typing import Optional, Tuple
from dataclasses import dataclass

import config
from core.context import EngineContext
from core.logger import log_info
from concurrency.db_retry import db_retry


@dataclass
class StrengthSettings:
    """Tunables for the strength pass."""
    base_rate: float = config.DECAY_BASE_RATE
    min_strength: float = config.DECAY_MIN_STRENGTH
    access_window_days: int = config.DECAY_ACCESS_WINDOW_DAYS
    unaccessed_multiplier: float = config.DECAY_UNACCESSED_MULTIPLIER
    decay_interval_hours: float = config.DECAY_INTERVAL_HOURS
    base_gain: float = config.STRENGTHEN_BASE_GAIN
    max_strength: float = config.STRENGTHEN_MAX_STRENGTH
    frequent_access: int = config.STRENGTHEN_FREQUENT_ACCESS
    high_salience: float = config.HIGH_SALIENCE_THRESHOLD


def _recently_accessed(last_accessed_at: Optional[datetime], now: datetime, window_days: int) -> bool:
    if last_accessed_at is None:
        return False
    return (now - last_accessed_at) < timedelta(days=window_days)


def calculate_decay(
    salience: float,
    access_count: int,
    last_accessed_at: Optional[datetime],
    current_strength: float,
    now: datetime,
    settings: StrengthSettings = StrengthSettings()
) -> float:
    """
    Amount of strength a memory loses in one decay interval.

    Salience, recent access and frequent access each protect; total
    protection is capped at 90%. Never-accessed, low-salience memories
    decay faster. The result never takes the memory below the floor.
    """
    salience_protection = (salience / 10.0) * 0.5
    access_protection = 0.3 if _recently_accessed(last_accessed_at, now, settings.access_window_days) else 0.0
    frequency_protection = min(access_count / 10.0, 0.2)
    protection = min(salience_protection + access_protection + frequency_protection, 0.9)

    rate = settings.base_rate * (1 - protection)
    if last_accessed_at is None and salience < settings.high_salience:
        rate *= settings.unaccessed_multiplier

    return min(rate, max(0.0, current_strength - settings.min_strength))


def calculate_strengthen(
    salience: float,
    access_count: int,
    last_accessed_at: Optional[datetime],
    current_strength: float,
    now: datetime,
    settings: StrengthSettings = StrengthSettings()
) -> float:
    """Strength gained from recent access, high salience and frequent access."""
    gain = 0.0
    if _recently_accessed(last_accessed_at, now, settings.access_window_days):
        gain += settings.base_gain * 0.5
    if salience >= settings.high_salience:
        gain += settings.base_gain * 0.3
    if access_count >= settings.frequent_access:
        gain += settings.base_gain * 0.2

    return min(gain, max(0.0, settings.max_strength - current_strength))


def _parse(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class StrengthProcessor:
    """
    Applies decay and strengthening to stored memories.

    Each memory decays at most once per decay interval (tracked by
    ``last_decayed_at``) and is strengthened only when it was accessed after
    its last strengthening, so repeated runs without new activity change
    nothing.
    """

    def __init__(self, ctx: EngineContext, settings: Optional[StrengthSettings] = None):
        self.ctx = ctx
        self.settings = settings or StrengthSettings()

    def process(self) -> Tuple[int, int]:
        """
        Returns:
            (memories decayed, memories strengthened)
        """
        decayed = self.apply_decay()
        strengthened = self.apply_strengthening()
        if decayed or strengthened:
            log_info(f"Strength pass: {decayed} decayed, {strengthened} strengthened", prefix="💪")
        return decayed, strengthened

    @db_retry()
    def apply_decay(self) -> int:
        now = self.ctx.now()
        cutoff = (now - timedelta(hours=self.settings.decay_interval_hours)).isoformat()

        rows = self.ctx.db.execute(
            """
            SELECT id, salience_score, access_count, last_accessed_at, current_strength
            FROM memories
            WHERE current_strength > ?
              AND COALESCE(last_decayed_at, created_at) <= ?
            """,
            (self.settings.min_strength, cutoff),
            fetch=True
        )

        decayed = 0
        updates = []
        for row in rows:
            amount = calculate_decay(
                row["salience_score"], row["access_count"], _parse(row["last_accessed_at"]),
                row["current_strength"], now, self.settings
            )
            new_strength = max(self.settings.min_strength, row["current_strength"] - amount)
            updates.append((new_strength, now.isoformat(), row["id"]))
            if amount > 0.001:
                decayed += 1

        if updates:
            self.ctx.db.execute_many(
                "UPDATE memories SET current_strength = ?, last_decayed_at = ? WHERE id = ?",
                updates
            )
        return decayed

    @db_retry()
    def apply_strengthening(self) -> int:
        now = self.ctx.now()
        rows = self.ctx.db.execute(
            """
            SELECT id, salience_score, access_count, last_accessed_at, current_strength
            FROM memories
            WHERE last_accessed_at IS NOT NULL
              AND (last_strengthened_at IS NULL OR last_accessed_at > last_strengthened_at)
            """,
            fetch=True
        )

        strengthened = 0
        updates = []
        for row in rows:
            gain = calculate_strengthen(
                row["salience_score"], row["access_count"], _parse(row["last_accessed_at"]),
                row["current_strength"], now, self.settings
            )
            new_strength = min(self.settings.max_strength, row["current_strength"] + gain)
            updates.append((new_strength, now.isoformat(), row["id"]))
            if gain > 0.001:
                strengthened += 1

        if updates:
            self.ctx.db.execute_many(
                "UPDATE memories SET current_strength = ?, last_strengthened_at = ? WHERE id = ?",
                updates
            )
        return strengthened

    @db_retry()
    def get_stats(self):
        row = self.ctx.db.execute(
            """
            SELECT
                SUM(CASE WHEN current_strength <= ? THEN 1 ELSE 0 END) AS dormant,
                SUM(CASE WHEN current_strength > ? THEN 1 ELSE 0 END) AS active
            FROM memories
            """,
            (self.settings.min_strength, self.settings.min_strength),
            fetch=True
        )[0]
        return {"dormant_memories": row["dormant"] or 0, "active_memories": row["active"] or 0}
