"""
Keepsake - Beliefs
Derives persistent beliefs from memories, reinforces repeats, records conflicts
"""

from datetime import datetime
from typing import Optional, List, Dict, Any
from dataclasses import dataclass, field

import config
from core.context import EngineContext
from core.logger import log_info, log_warning
from concurrency.db_retry import db_retry
from llm.json_repair import repair_json, as_str, as_float, as_int
from llm.router import TaskType

BELIEF_TYPES = (
    "value",           # core values ("I value honesty")
    "preference",      # preferences ("I prefer morning work")
    "self_knowledge",  # self-understanding ("I work best under pressure")
    "prediction",      # expectations ("The project will succeed")
    "about_person",    # beliefs about others ("Sarah is reliable")
    "about_project",   # beliefs about work ("This approach is best")
    "about_world",     # general world beliefs ("Remote work is the future")
    "should",          # normative ("I should prioritize health")
)

CONFLICT_TYPES = ("direct_contradiction", "tension", "evolution")

REINFORCE_BOOST = 0.05

EXTRACT_SYSTEM_PROMPT = """You are a belief extractor. Given a memory/observation, identify any beliefs the person holds.

A belief is a persistent conviction or understanding, NOT just a fact or observation.

Belief types:
- value: Core values ("I value honesty", "Family is important to me")
- preference: Preferences ("I prefer working in the morning", "I like remote work")
- self_knowledge: Self-understanding ("I work best under pressure", "I'm an introvert")
- prediction: Expectations ("This project will succeed", "The market will recover")
- about_person: Beliefs about others ("Sarah is reliable", "Tom is ambitious")
- about_project: Beliefs about work/projects ("This codebase is well-designed")
- about_world: General beliefs ("Remote work is the future", "AI will transform work")
- should: Normative beliefs ("I should prioritize health", "One should always be honest")

Return ONLY a JSON array of beliefs found. Include confidence (0.0-1.0).
If no beliefs are present, return an empty array: []

Format: [{"content": "belief statement", "belief_type": "type", "confidence": 0.X, "reason": "why this is a belief"}]"""

CONFLICT_SYSTEM_PROMPT = """You are a belief conflict detector. Given a new belief and a numbered list of existing beliefs, identify any conflicts.

Conflict types:
- direct_contradiction: The beliefs cannot both be true
- tension: The beliefs are in tension but could coexist in different contexts
- evolution: The new belief appears to be an update/evolution of an older belief

Return ONLY a JSON array of conflicts found.
Format: [{"existing_belief_id": <number>, "conflict_type": "...", "description": "brief explanation"}]

If no conflicts, return: []"""


@dataclass
class ExtractedBelief:
    content: str
    belief_type: str
    confidence: float
    reason: str = ""


@dataclass
class BeliefConflict:
    id: int
    belief_a_id: int
    belief_b_id: int
    conflict_type: str
    explanation: Optional[str]


@dataclass
class BeliefResult:
    """Outcome of processing one memory."""
    created: List[int] = field(default_factory=list)
    reinforced: List[int] = field(default_factory=list)
    conflicts: List[BeliefConflict] = field(default_factory=list)


class BeliefService:
    """Extracts beliefs from memory content and maintains the belief set."""

    def __init__(self, ctx: EngineContext, min_confidence: float = config.BELIEF_MIN_CONFIDENCE):
        self.ctx = ctx
        self.min_confidence = min_confidence

    def extract_beliefs(self, content: str) -> List[ExtractedBelief]:
        response = self.ctx.llm.complete(
            messages=[{
                "role": "user",
                "content": f'Memory: "{content}"\n\nWhat beliefs does this memory reveal? Return JSON array only.'
            }],
            system_prompt=EXTRACT_SYSTEM_PROMPT,
            task_type=TaskType.ANALYSIS,
            temperature=0.2,
            max_tokens=500
        )
        if not response.success:
            log_warning(f"Belief extraction call failed: {response.error}")
            return []

        parsed = repair_json(response.text, expect="array")
        if not isinstance(parsed, list):
            return []

        beliefs = []
        for item in parsed:
            if not isinstance(item, dict):
                continue
            text = as_str(item.get("content"))
            belief_type = as_str(item.get("belief_type"))
            confidence = as_float(item.get("confidence"))
            if not text or belief_type not in BELIEF_TYPES or confidence is None:
                continue
            if confidence < self.min_confidence:
                continue
            beliefs.append(ExtractedBelief(
                content=text,
                belief_type=belief_type,
                confidence=min(1.0, confidence),
                reason=as_str(item.get("reason")) or ""
            ))
        return beliefs

    @db_retry()
    def find_similar_belief(self, content: str, belief_type: str) -> Optional[int]:
        """Exact (case-insensitive) match among active beliefs of the same type."""
        result = self.ctx.db.execute(
            """
            SELECT id FROM beliefs
            WHERE belief_type = ? AND status = 'active' AND LOWER(content) = ?
            LIMIT 1
            """,
            (belief_type, content.strip().lower()),
            fetch=True
        )
        return result[0]["id"] if result else None

    @db_retry()
    def create_belief(self, content: str, belief_type: str, confidence: float) -> int:
        now = self.ctx.now_iso()
        return self.ctx.db.execute_insert(
            """
            INSERT INTO beliefs (content, belief_type, confidence, first_extracted_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (content, belief_type, confidence, now, now)
        )

    @db_retry()
    def reinforce_belief(self, belief_id: int, boost: float = REINFORCE_BOOST) -> None:
        now = self.ctx.now_iso()
        self.ctx.db.execute(
            """
            UPDATE beliefs
            SET confidence = MIN(1.0, confidence + ?),
                reinforcement_count = reinforcement_count + 1,
                last_reinforced_at = ?,
                updated_at = ?
            WHERE id = ?
            """,
            (boost, now, now, belief_id)
        )

    @db_retry()
    def link_evidence(self, belief_id: int, memory_id: int, strength: float,
                      support_type: str = "supports") -> None:
        self.ctx.db.execute(
            """
            INSERT INTO belief_evidence (belief_id, memory_id, support_type, strength, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(belief_id, memory_id) DO UPDATE SET
                strength = excluded.strength,
                support_type = excluded.support_type
            """,
            (belief_id, memory_id, support_type, strength, self.ctx.now_iso())
        )

    def detect_conflicts(self, belief_id: int) -> List[BeliefConflict]:
        """Ask the model whether a new belief conflicts with active beliefs of its type."""
        rows = self.ctx.db.execute("SELECT * FROM beliefs WHERE id = ?", (belief_id,), fetch=True)
        if not rows:
            return []
        belief = rows[0]

        others = self.ctx.db.execute(
            """
            SELECT id, content FROM beliefs
            WHERE id != ? AND status = 'active' AND belief_type = ?
            ORDER BY id
            """,
            (belief_id, belief["belief_type"]),
            fetch=True
        )
        if not others:
            return []

        existing = "\n".join(f"- ID: {r['id']}, Content: \"{r['content']}\"" for r in others)
        response = self.ctx.llm.complete(
            messages=[{
                "role": "user",
                "content": (
                    f"New belief: \"{belief['content']}\"\n\n"
                    f"Existing beliefs of type \"{belief['belief_type']}\":\n{existing}\n\n"
                    f"Identify any conflicts. Return JSON array only."
                )
            }],
            system_prompt=CONFLICT_SYSTEM_PROMPT,
            task_type=TaskType.ANALYSIS,
            temperature=0.1,
            max_tokens=500
        )
        parsed = repair_json(response.text, expect="array") if response.success else None
        if not isinstance(parsed, list):
            return []

        valid_ids = {r["id"] for r in others}
        conflicts = []
        for item in parsed:
            if not isinstance(item, dict):
                continue
            other_id = as_int(item.get("existing_belief_id"))
            conflict_type = as_str(item.get("conflict_type"))
            if other_id not in valid_ids or conflict_type not in CONFLICT_TYPES:
                continue
            conflict = self._record_conflict(belief_id, other_id, conflict_type,
                                             as_str(item.get("description")))
            if conflict:
                conflicts.append(conflict)

        return conflicts

    @db_retry()
    def _record_conflict(self, belief_a: int, belief_b: int, conflict_type: str,
                         explanation: Optional[str]) -> Optional[BeliefConflict]:
        now = self.ctx.now_iso()
        with self.ctx.locks.acquire("database"):
            conflict_id = None
            if self.ctx.db.execute_write(
                """
                INSERT OR IGNORE INTO belief_conflicts
                    (belief_a_id, belief_b_id, conflict_type, explanation, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (belief_a, belief_b, conflict_type, explanation, now)
            ):
                conflict_id = self.ctx.db.execute(
                    "SELECT id FROM belief_conflicts WHERE belief_a_id = ? AND belief_b_id = ?",
                    (belief_a, belief_b),
                    fetch=True
                )[0]["id"]
                self.ctx.db.execute(
                    """
                    UPDATE beliefs SET status = 'conflicted', updated_at = ?
                    WHERE id IN (?, ?) AND status = 'active'
                    """,
                    (now, belief_a, belief_b)
                )

        if conflict_id is None:
            return None
        log_info(f"Belief conflict ({conflict_type}): #{belief_a} vs #{belief_b}", prefix="⚖️")
        return BeliefConflict(conflict_id, belief_a, belief_b, conflict_type, explanation)

    def process_memory(self, memory_id: int, content: str) -> BeliefResult:
        """Extract beliefs from a memory, then reinforce or create each."""
        result = BeliefResult()

        for extracted in self.extract_beliefs(content):
            existing_id = self.find_similar_belief(extracted.content, extracted.belief_type)
            if existing_id is not None:
                self.reinforce_belief(existing_id)
                self.link_evidence(existing_id, memory_id, extracted.confidence)
                result.reinforced.append(existing_id)
            else:
                belief_id = self.create_belief(extracted.content, extracted.belief_type, extracted.confidence)
                self.link_evidence(belief_id, memory_id, extracted.confidence)
                result.created.append(belief_id)
                result.conflicts.extend(self.detect_conflicts(belief_id))

        return result

    @db_retry()
    def get_unresolved_conflicts(self) -> List[Dict[str, Any]]:
        result = self.ctx.db.execute(
            """
            SELECT c.*, a.content AS belief_a_content, b.content AS belief_b_content
            FROM belief_conflicts c
            JOIN beliefs a ON a.id = c.belief_a_id
            JOIN beliefs b ON b.id = c.belief_b_id
            WHERE c.resolved = 0
            ORDER BY c.created_at DESC
            """,
            fetch=True
        )
        return [dict(row) for row in result]

    @db_retry()
    def resolve_conflict(self, conflict_id: int, resolution: str, notes: Optional[str] = None) -> None:
        """
        Resolve a recorded conflict.

        Args:
            conflict_id: Conflict to resolve
            resolution: 'belief_a_active', 'belief_b_active' or 'both_valid'
            notes: Optional resolution notes
        """
        rows = self.ctx.db.execute("SELECT * FROM belief_conflicts WHERE id = ?", (conflict_id,), fetch=True)
        if not rows:
            raise KeyError(f"Conflict not found: {conflict_id}")
        conflict = rows[0]
        now = self.ctx.now_iso()

        outcomes = {
            "belief_a_active": ([conflict["belief_a_id"]], [conflict["belief_b_id"]]),
            "belief_b_active": ([conflict["belief_b_id"]], [conflict["belief_a_id"]]),
            "both_valid": ([conflict["belief_a_id"], conflict["belief_b_id"]], []),
        }
        if resolution not in outcomes:
            raise ValueError(f"Invalid conflict resolution: {resolution}")
        keep, retire = outcomes[resolution]

        self.ctx.db.execute(
            "UPDATE belief_conflicts SET resolved = 1, resolution_notes = ?, resolved_at = ? WHERE id = ?",
            (notes, now, conflict_id)
        )
        for belief_id in keep:
            self.ctx.db.execute(
                "UPDATE beliefs SET status = 'active', updated_at = ? WHERE id = ?", (now, belief_id)
            )
        for belief_id in retire:
            self.ctx.db.execute(
                "UPDATE beliefs SET status = 'resolved', updated_at = ? WHERE id = ?", (now, belief_id)
            )

    @db_retry()
    def get_belief_stats(self) -> Dict[str, Any]:
        row = self.ctx.db.execute(
            """
            SELECT COUNT(*) AS total,
                   SUM(CASE WHEN status = 'active' THEN 1 ELSE 0 END) AS active,
                   SUM(CASE WHEN status = 'conflicted' THEN 1 ELSE 0 END) AS conflicted,
                   AVG(confidence) AS avg_confidence
            FROM beliefs
            """,
            fetch=True
        )[0]
        unresolved = self.ctx.db.execute(
            "SELECT COUNT(*) AS count FROM belief_conflicts WHERE resolved = 0", fetch=True
        )[0]["count"]
        return {
            "total": row["total"],
            "active": row["active"] or 0,
            "conflicted": row["conflicted"] or 0,
            "avg_confidence": row["avg_confidence"] or 0.0,
            "unresolved_conflicts": unresolved,
        }
