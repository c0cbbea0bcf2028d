"""
Keepsake - Patterns
Detects recurring behavioural, temporal and emotional patterns in memories
"""

from datetime import timedelta
from typing import Optional, List, Dict, Any
from dataclasses import dataclass, field

import config
from core.context import EngineContext
from core.logger import log_info, log_warning
from concurrency.db_retry import db_retry
from llm.json_repair import repair_json, as_str, as_float
from llm.router import TaskType

PATTERN_TYPES = ("behavioral", "temporal", "emotional", "social", "cognitive", "physical")

TIME_OF_DAY = ("early_morning", "morning", "midday", "afternoon", "evening", "night", "late_night")

DAY_OF_WEEK = (
    "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday",
    "weekday", "weekend",
)

REINFORCE_BOOST = 0.03

PATTERN_SYSTEM_PROMPT = """You are a pattern detector. Given a memory/observation, identify any recurring patterns this might indicate about the person.

A pattern is a recurring behavior, tendency, or rhythm - NOT a one-time event.

Pattern types:
- behavioral: Recurring actions/habits ("checks email first thing", "procrastinates on complex tasks")
- temporal: Time-based rhythms ("most productive in the morning", "energy dips after lunch")
- emotional: Emotional tendencies ("gets anxious before presentations", "energized by deadlines")
- social: Interaction patterns ("prefers 1-on-1 meetings", "avoids large groups")
- cognitive: Thinking patterns ("overthinks decisions", "thinks best while walking")
- physical: Body/health patterns ("tired after lunch", "exercises when stressed")

Time indicators (optional):
- time_of_day: early_morning, morning, midday, afternoon, evening, night, late_night
- day_of_week: monday, tuesday, etc., or weekday/weekend

Return ONLY a JSON array of patterns. Include confidence (0.0-1.0) and frequency (0.0=rare, 1.0=constant).
If no patterns are present, return an empty array: []

Format: [{"content": "pattern description", "pattern_type": "type", "confidence": 0.X, "frequency": 0.X, "time_of_day": "morning" or null, "day_of_week": "monday" or null, "reason": "why this is a pattern"}]"""


@dataclass
class ExtractedPattern:
    content: str
    pattern_type: str
    confidence: float
    frequency: float = 0.5
    time_of_day: Optional[str] = None
    day_of_week: Optional[str] = None


@dataclass
class PatternPassResult:
    created: List[int] = field(default_factory=list)
    reinforced: List[int] = field(default_factory=list)
    analyzed: int = 0
    dormant: int = 0


def _choice(value, allowed) -> Optional[str]:
    text = as_str(value)
    return text.lower() if text and text.lower() in allowed else None


class PatternService:
    """Pattern extraction, reinforcement and dormancy."""

    def __init__(
        self,
        ctx: EngineContext,
        batch_size: int = config.PATTERN_BATCH_SIZE,
        min_confidence: float = config.PATTERN_MIN_CONFIDENCE,
        dormant_days: int = config.PATTERN_DORMANT_DAYS
    ):
        self.ctx = ctx
        self.batch_size = batch_size
        self.min_confidence = min_confidence
        self.dormant_days = dormant_days

    def extract_patterns(self, content: str, existing: List[str]) -> Optional[List[ExtractedPattern]]:
        """
        Ask the model for patterns in one memory.

        Returns:
            Extracted patterns, or None when the call itself failed
        """
        existing_info = ""
        if existing:
            existing_info = "\n\nExisting patterns (check for reinforcement):\n" + "\n".join(f"- {p}" for p in existing)

        response = self.ctx.llm.complete(
            messages=[{
                "role": "user",
                "content": (
                    f'Memory: "{content}"{existing_info}\n\n'
                    f"What patterns does this memory reveal or reinforce? Return JSON array only."
                )
            }],
            system_prompt=PATTERN_SYSTEM_PROMPT,
            task_type=TaskType.ANALYSIS,
            temperature=0.2,
            max_tokens=600
        )
        if not response.success:
            log_warning(f"Pattern extraction call failed: {response.error}")
            return None

        parsed = repair_json(response.text, expect="array")
        if not isinstance(parsed, list):
            return []

        patterns = []
        for item in parsed:
            if not isinstance(item, dict):
                continue
            text = as_str(item.get("content"))
            pattern_type = as_str(item.get("pattern_type"))
            confidence = as_float(item.get("confidence"))
            if not text or pattern_type not in PATTERN_TYPES or confidence is None:
                continue
            if confidence < self.min_confidence:
                continue
            patterns.append(ExtractedPattern(
                content=text,
                pattern_type=pattern_type,
                confidence=max(0.0, min(1.0, confidence)),
                frequency=max(0.0, min(1.0, as_float(item.get("frequency"), 0.5))),
                time_of_day=_choice(item.get("time_of_day"), TIME_OF_DAY),
                day_of_week=_choice(item.get("day_of_week"), DAY_OF_WEEK),
            ))
        return patterns

    @db_retry()
    def find_similar_pattern(self, content: str, pattern_type: str) -> Optional[int]:
        result = self.ctx.db.execute(
            """
            SELECT id FROM patterns
            WHERE pattern_type = ? AND status = 'active' AND LOWER(content) = ?
            LIMIT 1
            """,
            (pattern_type, content.strip().lower()),
            fetch=True
        )
        return result[0]["id"] if result else None

    @db_retry()
    def create_pattern(self, pattern: ExtractedPattern) -> int:
        now = self.ctx.now_iso()
        return self.ctx.db.execute_insert(
            """
            INSERT INTO patterns
                (content, pattern_type, confidence, frequency, time_of_day, day_of_week,
                 first_detected_at, last_observed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (pattern.content, pattern.pattern_type, pattern.confidence, pattern.frequency,
             pattern.time_of_day, pattern.day_of_week, now, now)
        )

    @db_retry()
    def reinforce_pattern(self, pattern_id: int, boost: float = REINFORCE_BOOST) -> None:
        self.ctx.db.execute(
            """
            UPDATE patterns
            SET confidence = MIN(1.0, confidence + ?),
                observation_count = observation_count + 1,
                last_observed_at = ?,
                status = 'active'
            WHERE id = ?
            """,
            (boost, self.ctx.now_iso(), pattern_id)
        )

    @db_retry()
    def link_evidence(self, pattern_id: int, memory_id: int) -> None:
        self.ctx.db.execute(
            "INSERT OR IGNORE INTO pattern_evidence (pattern_id, memory_id, created_at) VALUES (?, ?, ?)",
            (pattern_id, memory_id, self.ctx.now_iso())
        )

    @db_retry()
    def get_active_patterns(self, limit: int = 50) -> List[Dict[str, Any]]:
        result = self.ctx.db.execute(
            """
            SELECT * FROM patterns WHERE status = 'active'
            ORDER BY confidence DESC, observation_count DESC
            LIMIT ?
            """,
            (limit,),
            fetch=True
        )
        return [dict(row) for row in result]

    def process_memory(self, memory_id: int, content: str, result: PatternPassResult) -> bool:
        """
        Extract patterns from one memory and create or reinforce them.

        Returns:
            False if the model call failed (the memory stays unanalysed)
        """
        existing = [p["content"] for p in self.get_active_patterns()]
        extracted = self.extract_patterns(content, existing)
        if extracted is None:
            return False

        for pattern in extracted:
            existing_id = self.find_similar_pattern(pattern.content, pattern.pattern_type)
            if existing_id is not None:
                self.reinforce_pattern(existing_id)
                self.link_evidence(existing_id, memory_id)
                result.reinforced.append(existing_id)
            else:
                pattern_id = self.create_pattern(pattern)
                self.link_evidence(pattern_id, memory_id)
                result.created.append(pattern_id)
        return True

    def process_unanalyzed(self) -> PatternPassResult:
        """Run pattern extraction over the next batch of unanalysed memories."""
        result = PatternPassResult()
        rows = self.ctx.db.execute(
            """
            SELECT id, content FROM memories
            WHERE patterns_analyzed_at IS NULL
            ORDER BY created_at DESC
            LIMIT ?
            """,
            (self.batch_size,),
            fetch=True
        )

        for row in rows:
            try:
                if not self.process_memory(row["id"], row["content"], result):
                    continue
            except Exception as e:
                log_warning(f"Pattern extraction failed for memory #{row['id']}: {e}")
                continue
            self.ctx.db.execute(
                "UPDATE memories SET patterns_analyzed_at = ? WHERE id = ?",
                (self.ctx.now_iso(), row["id"])
            )
            result.analyzed += 1

        if result.created or result.reinforced:
            log_info(
                f"Patterns: {len(result.created)} created, {len(result.reinforced)} reinforced",
                prefix="🔁"
            )
        return result

    @db_retry()
    def mark_stale_dormant(self) -> int:
        cutoff = (self.ctx.now() - timedelta(days=self.dormant_days)).isoformat()
        return self.ctx.db.execute_write(
            "UPDATE patterns SET status = 'dormant' WHERE status = 'active' AND last_observed_at < ?",
            (cutoff,)
        )

    @db_retry()
    def get_pattern_stats(self) -> Dict[str, Any]:
        row = self.ctx.db.execute(
            """
            SELECT COUNT(*) AS total,
                   SUM(CASE WHEN status = 'active' THEN 1 ELSE 0 END) AS active,
                   SUM(CASE WHEN status = 'dormant' THEN 1 ELSE 0 END) AS dormant,
                   AVG(confidence) AS avg_confidence
            FROM patterns
            """,
            fetch=True
        )[0]
        return {
            "total": row["total"],
            "active": row["active"] or 0,
            "dormant": row["dormant"] or 0,
            "avg_confidence": row["avg_confidence"] or 0.0,
        }
