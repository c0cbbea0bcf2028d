"""
Keepsake - Active Research
Finds gaps in what is known about the user and turns them into questions to ask
"""

import re
from datetime import timedelta
from typing import Optional, List, Dict, Any
from dataclasses import dataclass, field

import config
from core.context import EngineContext
from core.logger import log_info, log_warning
from concurrency.db_retry import db_retry
from llm.json_repair import repair_json, as_str, as_int
from llm.router import TaskType
from memory.categories import SUMMARY_CATEGORIES

GAP_PRIORITIES = ("low", "medium", "high")

INPUT_MARKER_KEY = "research_input_marker"

GAP_SYSTEM_PROMPT = """You are a knowledge gap detector for a personal memory assistant. Given what is known about a person (category summaries and memory counts) and the gaps already open, identify important things that are NOT yet known.

Focus on gaps that would help the assistant be more useful: missing basics (where they live, what they do), people mentioned without context, goals without timelines, projects without status.

Also report which open gaps the current knowledge now answers.

Return ONLY a JSON object:
{"new_gaps": [{"topic": "short topic", "description": "what is missing and why it matters", "priority": "low|medium|high"}],
 "filled_gap_ids": [<id of an open gap that is now answered>]}

If nothing is missing, return: {"new_gaps": [], "filled_gap_ids": []}"""

QUESTION_SYSTEM_PROMPT = """You write gentle, natural questions a personal assistant could ask to fill gaps in what it knows about its user.

Each question should be one short conversational sentence, specific to the gap, and never intrusive.

Return ONLY a JSON array: [{"gap_id": <id>, "question": "..."}]
Write at most one question per gap."""

_NON_WORD = re.compile(r'[^a-z0-9]+')


def topic_key(topic: str) -> str:
    """Normalised gap topic used for uniqueness."""
    return _NON_WORD.sub(" ", topic.lower()).strip()


@dataclass
class ResearchPassResult:
    gaps_created: List[int] = field(default_factory=list)
    gaps_filled: List[int] = field(default_factory=list)
    questions_created: List[int] = field(default_factory=list)
    questions_expired: int = 0
    skipped: bool = False


class ResearchService:
    """Knowledge-gap detection and question generation."""

    def __init__(self, ctx: EngineContext, question_expiry_days: int = config.QUESTION_EXPIRY_DAYS):
        self.ctx = ctx
        self.question_expiry_days = question_expiry_days

    @db_retry()
    def input_marker(self) -> str:
        row = self.ctx.db.execute(
            """
            SELECT
                (SELECT COALESCE(SUM(version), 0) FROM living_summaries) AS summaries,
                (SELECT COALESCE(MAX(id), 0) FROM memories) AS memories
            """,
            fetch=True
        )[0]
        return f"s{row['summaries']}|m{row['memories']}"

    @db_retry()
    def get_open_gaps(self) -> List[Dict[str, Any]]:
        result = self.ctx.db.execute(
            "SELECT * FROM knowledge_gaps WHERE status = 'open' ORDER BY id",
            fetch=True
        )
        return [dict(row) for row in result]

    @db_retry()
    def _knowledge_overview(self) -> str:
        summaries = {
            row["category"]: row["content"]
            for row in self.ctx.db.execute("SELECT category, content FROM living_summaries", fetch=True)
        }
        counts = {
            row["category"]: row["count"]
            for row in self.ctx.db.execute(
                "SELECT category, COUNT(*) AS count FROM memory_category_links GROUP BY category",
                fetch=True
            )
        }
        lines = []
        for category in SUMMARY_CATEGORIES:
            summary = summaries.get(category) or "(nothing yet)"
            lines.append(f"[{category}] {counts.get(category, 0)} memories: {summary}")
        return "\n".join(lines)

    def detect_gaps(self, result: ResearchPassResult) -> bool:
        """
        Ask the model for new gaps and gaps now filled.

        Returns:
            False if the model call failed
        """
        open_gaps = self.get_open_gaps()
        open_part = "\n".join(f"- id {g['id']}: {g['topic']}" for g in open_gaps) or "None"

        response = self.ctx.llm.complete(
            messages=[{
                "role": "user",
                "content": (
                    f"What is known:\n{self._knowledge_overview()}\n\n"
                    f"Open gaps:\n{open_part}\n\nReturn JSON only."
                )
            }],
            system_prompt=GAP_SYSTEM_PROMPT,
            task_type=TaskType.ANALYSIS,
            temperature=config.MINING_TEMPERATURE,
            max_tokens=config.MINING_MAX_TOKENS
        )
        if not response.success:
            log_warning(f"Gap detection call failed: {response.error}")
            return False

        parsed = repair_json(response.text, expect="object")
        if not isinstance(parsed, dict):
            return True

        open_ids = {g["id"] for g in open_gaps}
        for gap_id in parsed.get("filled_gap_ids") or []:
            gap_id = as_int(gap_id)
            if gap_id in open_ids and self._mark_filled(gap_id):
                result.gaps_filled.append(gap_id)

        for gap in parsed.get("new_gaps") or []:
            if not isinstance(gap, dict):
                continue
            topic = as_str(gap.get("topic"))
            if not topic or not topic_key(topic):
                continue
            priority = as_str(gap.get("priority"))
            gap_id = self._create_gap(
                topic,
                as_str(gap.get("description")),
                priority if priority in GAP_PRIORITIES else "medium"
            )
            if gap_id is not None:
                result.gaps_created.append(gap_id)
        return True

    @db_retry()
    def _create_gap(self, topic: str, description: Optional[str], priority: str) -> Optional[int]:
        if not self.ctx.db.execute_write(
            """
            INSERT OR IGNORE INTO knowledge_gaps (topic, topic_key, description, priority, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (topic, topic_key(topic), description, priority, self.ctx.now_iso())
        ):
            return None
        return self.ctx.db.execute(
            "SELECT id FROM knowledge_gaps WHERE topic_key = ?", (topic_key(topic),), fetch=True
        )[0]["id"]

    @db_retry()
    def _mark_filled(self, gap_id: int) -> bool:
        return bool(self.ctx.db.execute_write(
            "UPDATE knowledge_gaps SET status = 'filled' WHERE id = ? AND status = 'open'",
            (gap_id,)
        ))

    def generate_questions(self, result: ResearchPassResult) -> None:
        """Write one question for every open gap that has no live question."""
        gaps = self.ctx.db.execute(
            """
            SELECT g.id, g.topic, g.description FROM knowledge_gaps g
            WHERE g.status = 'open'
              AND NOT EXISTS (
                  SELECT 1 FROM research_questions q
                  WHERE q.gap_id = g.id AND q.status IN ('pending', 'asked')
              )
            ORDER BY CASE g.priority WHEN 'high' THEN 1 WHEN 'medium' THEN 2 ELSE 3 END, g.id
            LIMIT 5
            """,
            fetch=True
        )
        if not gaps:
            return

        gap_list = "\n".join(
            f"- id {g['id']}: {g['topic']}" + (f" ({g['description']})" if g["description"] else "")
            for g in gaps
        )
        response = self.ctx.llm.complete(
            messages=[{"role": "user", "content": f"Gaps:\n{gap_list}\n\nReturn JSON array only."}],
            system_prompt=QUESTION_SYSTEM_PROMPT,
            task_type=TaskType.ANALYSIS,
            temperature=config.MINING_TEMPERATURE,
            max_tokens=800
        )
        parsed = repair_json(response.text, expect="array") if response.success else None
        if not isinstance(parsed, list):
            return

        now = self.ctx.now()
        expires = (now + timedelta(days=self.question_expiry_days)).isoformat()
        pending = {g["id"] for g in gaps}
        for item in parsed:
            if not isinstance(item, dict):
                continue
            gap_id = as_int(item.get("gap_id"))
            question = as_str(item.get("question"))
            if gap_id not in pending or not question:
                continue
            pending.discard(gap_id)
            result.questions_created.append(self.ctx.db.execute_insert(
                """
                INSERT INTO research_questions (gap_id, question, created_at, expires_at)
                VALUES (?, ?, ?, ?)
                """,
                (gap_id, question, now.isoformat(), expires)
            ))

    @db_retry()
    def expire_questions(self) -> int:
        return self.ctx.db.execute_write(
            "UPDATE research_questions SET status = 'expired' WHERE status = 'pending' AND expires_at <= ?",
            (self.ctx.now_iso(),)
        )

    @db_retry()
    def mark_asked(self, question_id: int) -> bool:
        return bool(self.ctx.db.execute_write(
            "UPDATE research_questions SET status = 'asked' WHERE id = ? AND status = 'pending'",
            (question_id,)
        ))

    @db_retry()
    def get_pending_questions(self, limit: int = 5) -> List[Dict[str, Any]]:
        result = self.ctx.db.execute(
            """
            SELECT q.id, q.question, g.topic FROM research_questions q
            LEFT JOIN knowledge_gaps g ON g.id = q.gap_id
            WHERE q.status = 'pending' AND q.expires_at > ?
            ORDER BY q.created_at
            LIMIT ?
            """,
            (self.ctx.now_iso(), limit),
            fetch=True
        )
        return [dict(row) for row in result]

    def process(self) -> ResearchPassResult:
        """Detect gaps and write questions when knowledge changed; always expire old questions."""
        result = ResearchPassResult()
        result.questions_expired = self.expire_questions()

        marker = self.input_marker()
        if marker == self.ctx.db.get_state(INPUT_MARKER_KEY):
            result.skipped = True
        elif self.detect_gaps(result):
            self.generate_questions(result)
            self.ctx.db.set_state(INPUT_MARKER_KEY, marker)

        if result.gaps_created or result.gaps_filled or result.questions_created or result.questions_expired:
            log_info(
                f"Research: {len(result.gaps_created)} gaps, {len(result.gaps_filled)} filled, "
                f"{len(result.questions_created)} questions, {result.questions_expired} expired",
                prefix="🔎"
            )
        return result
