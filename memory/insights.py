"""
Keepsake - Insights
Cross-analyses beliefs, patterns and recent memories into higher-level insights
"""

from datetime import timedelta
from typing import Optional, List, Dict, Any
from dataclasses import dataclass, field

import config
from core.context import EngineContext
from core.logger import log_info, log_warning
from concurrency.db_retry import db_retry
from llm.json_repair import repair_json, as_str, as_float, as_int
from llm.router import TaskType

INSIGHT_TYPES = ("connection", "contradiction", "opportunity", "warning")
INSIGHT_PRIORITIES = ("low", "medium", "high", "critical")
SOURCE_TYPES = ("memory", "belief", "pattern")
CONTRIBUTIONS = ("primary", "supports", "context", "contrasts")

INPUT_MARKER_KEY = "insights_input_marker"

INSIGHT_SYSTEM_PROMPT = """You are an insight generator. Given a person's beliefs, patterns, and recent memories, identify higher-level insights.

An insight is NOT just restating a belief or pattern - it's a NEW observation from CONNECTING different pieces of information.

Insight types:
- connection: Links between related concepts ("Your productivity pattern aligns with your belief about morning work")
- contradiction: Inconsistencies between what someone believes vs does ("You value balance but patterns show 60+ hour weeks")
- opportunity: Potential improvements based on the data ("Your high-energy mornings could be better used for creative work")
- warning: Potential issues or risks to flag ("Stress patterns correlating with project deadlines suggest overcommitment")

Priority levels: low, medium, high, critical

Requirements:
1. Each insight MUST reference at least 2 sources (beliefs, patterns, or memories) by their [type:id] tag
2. Only generate insights with confidence >= 0.5
3. Focus on actionable or meaningful observations
4. Avoid obvious or trivial connections

Return ONLY a JSON array. If no meaningful insights, return: []

Format: [{
  "content": "insight statement",
  "insight_type": "connection|contradiction|opportunity|warning",
  "priority": "low|medium|high|critical",
  "confidence": 0.X,
  "sources": [{"type": "belief|pattern|memory", "id": 123, "contribution": "primary|supports|context|contrasts"}]
}]"""


@dataclass
class ExtractedInsight:
    content: str
    insight_type: str
    priority: str
    confidence: float
    sources: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class InsightPassResult:
    created: List[int] = field(default_factory=list)
    validated: List[int] = field(default_factory=list)
    stale: int = 0
    skipped: bool = False


class InsightService:
    """Insight generation, validation and staleness."""

    def __init__(
        self,
        ctx: EngineContext,
        min_confidence: float = config.INSIGHT_MIN_CONFIDENCE,
        stale_days: int = config.INSIGHT_STALE_DAYS
    ):
        self.ctx = ctx
        self.min_confidence = min_confidence
        self.stale_days = stale_days

    # -------------------------------------------------------------------------
    # Inputs
    # -------------------------------------------------------------------------

    @db_retry()
    def gather_context(self) -> Dict[str, List[Dict[str, Any]]]:
        db = self.ctx.db
        beliefs = db.execute(
            """
            SELECT id, content, belief_type, confidence FROM beliefs
            WHERE status = 'active' ORDER BY confidence DESC LIMIT 20
            """,
            fetch=True
        )
        patterns = db.execute(
            """
            SELECT id, content, pattern_type, confidence, frequency FROM patterns
            WHERE status = 'active' ORDER BY confidence DESC LIMIT 20
            """,
            fetch=True
        )
        memories = db.execute(
            "SELECT id, content FROM memories ORDER BY created_at DESC LIMIT 15",
            fetch=True
        )
        return {
            "beliefs": [dict(r) for r in beliefs],
            "patterns": [dict(r) for r in patterns],
            "memories": [dict(r) for r in memories],
        }

    @db_retry()
    def input_marker(self) -> str:
        """Fingerprint of everything insight generation reads."""
        row = self.ctx.db.execute(
            """
            SELECT
                (SELECT COUNT(*) || ':' || COALESCE(MAX(updated_at), '') FROM beliefs WHERE status = 'active') AS beliefs,
                (SELECT COUNT(*) || ':' || COALESCE(MAX(last_observed_at), '') FROM patterns WHERE status = 'active') AS patterns,
                (SELECT COALESCE(MAX(id), 0) FROM memories) AS memories
            """,
            fetch=True
        )[0]
        return f"b{row['beliefs']}|p{row['patterns']}|m{row['memories']}"

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    def generate_insights(self, context: Dict[str, List[Dict[str, Any]]]) -> Optional[List[ExtractedInsight]]:
        """
        Returns:
            Extracted insights, or None when the model call failed
        """
        if not context["beliefs"] and not context["patterns"]:
            return []

        beliefs = "\n".join(
            f"- [belief:{b['id']}] ({b['belief_type']}, conf: {b['confidence']:.2f}): \"{b['content']}\""
            for b in context["beliefs"]
        ) or "None recorded yet"
        patterns = "\n".join(
            f"- [pattern:{p['id']}] ({p['pattern_type']}, conf: {p['confidence']:.2f}, "
            f"freq: {p['frequency']:.2f}): \"{p['content']}\""
            for p in context["patterns"]
        ) or "None detected yet"
        memories = "\n".join(
            f"- [memory:{m['id']}]: \"{m['content'][:200]}\"" for m in context["memories"][:10]
        ) or "None"

        response = self.ctx.llm.complete(
            messages=[{
                "role": "user",
                "content": (
                    f"Analyze this person's data and generate insights:\n\n"
                    f"BELIEFS:\n{beliefs}\n\nPATTERNS:\n{patterns}\n\nRECENT MEMORIES:\n{memories}\n\n"
                    f"What connections, contradictions, opportunities, or warnings do you see? "
                    f"Return JSON array only."
                )
            }],
            system_prompt=INSIGHT_SYSTEM_PROMPT,
            task_type=TaskType.ANALYSIS,
            temperature=config.MINING_TEMPERATURE,
            max_tokens=config.MINING_MAX_TOKENS
        )
        if not response.success:
            log_warning(f"Insight generation call failed: {response.error}")
            return None

        parsed = repair_json(response.text, expect="array")
        if not isinstance(parsed, list):
            return []

        known = {
            "belief": {b["id"] for b in context["beliefs"]},
            "pattern": {p["id"] for p in context["patterns"]},
            "memory": {m["id"] for m in context["memories"]},
        }

        insights = []
        for item in parsed:
            if not isinstance(item, dict):
                continue
            content = as_str(item.get("content"))
            insight_type = as_str(item.get("insight_type"))
            priority = as_str(item.get("priority"))
            confidence = as_float(item.get("confidence"))
            if not content or insight_type not in INSIGHT_TYPES or confidence is None:
                continue
            if confidence < self.min_confidence:
                continue

            sources = []
            for source in item.get("sources") or []:
                if not isinstance(source, dict):
                    continue
                source_type = as_str(source.get("type"))
                source_id = as_int(source.get("id"))
                if source_type not in SOURCE_TYPES or source_id not in known[source_type]:
                    continue
                contribution = as_str(source.get("contribution"))
                sources.append({
                    "type": source_type,
                    "id": source_id,
                    "contribution": contribution if contribution in CONTRIBUTIONS else "supports",
                })

            insights.append(ExtractedInsight(
                content=content,
                insight_type=insight_type,
                priority=priority if priority in INSIGHT_PRIORITIES else "medium",
                confidence=min(1.0, confidence),
                sources=sources
            ))
        return insights

    # -------------------------------------------------------------------------
    # Storage
    # -------------------------------------------------------------------------

    @db_retry()
    def find_similar_insight(self, content: str, insight_type: str) -> Optional[int]:
        result = self.ctx.db.execute(
            """
            SELECT id FROM insights
            WHERE insight_type = ? AND status = 'active' AND LOWER(content) = ?
            LIMIT 1
            """,
            (insight_type, content.strip().lower()),
            fetch=True
        )
        return result[0]["id"] if result else None

    @db_retry()
    def create_insight(self, insight: ExtractedInsight) -> int:
        now = self.ctx.now_iso()
        insight_id = self.ctx.db.execute_insert(
            """
            INSERT INTO insights (content, insight_type, priority, confidence, created_at, last_validated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (insight.content, insight.insight_type, insight.priority, insight.confidence, now, now)
        )
        if insight.sources:
            self.ctx.db.execute_many(
                """
                INSERT OR IGNORE INTO insight_sources (insight_id, source_type, source_id, contribution)
                VALUES (?, ?, ?, ?)
                """,
                [(insight_id, s["type"], s["id"], s["contribution"]) for s in insight.sources]
            )
        return insight_id

    @db_retry()
    def validate_insight(self, insight_id: int) -> None:
        self.ctx.db.execute(
            """
            UPDATE insights
            SET validation_count = validation_count + 1, last_validated_at = ?
            WHERE id = ?
            """,
            (self.ctx.now_iso(), insight_id)
        )

    @db_retry()
    def set_status(self, insight_id: int, status: str) -> None:
        """Dismiss or action an insight."""
        if status not in ("dismissed", "actioned"):
            raise ValueError(f"Invalid insight status: {status}")
        self.ctx.db.execute("UPDATE insights SET status = ? WHERE id = ?", (status, insight_id))

    @db_retry()
    def mark_stale(self) -> int:
        cutoff = (self.ctx.now() - timedelta(days=self.stale_days)).isoformat()
        return self.ctx.db.execute_write(
            """
            UPDATE insights SET status = 'stale'
            WHERE status = 'active' AND COALESCE(last_validated_at, created_at) < ?
            """,
            (cutoff,)
        )

    @db_retry()
    def get_active_insights(self, limit: int = 20) -> List[Dict[str, Any]]:
        result = self.ctx.db.execute(
            """
            SELECT * FROM insights WHERE status = 'active'
            ORDER BY CASE priority
                WHEN 'critical' THEN 1 WHEN 'high' THEN 2 WHEN 'medium' THEN 3 ELSE 4
            END, confidence DESC, created_at DESC
            LIMIT ?
            """,
            (limit,),
            fetch=True
        )
        return [dict(row) for row in result]

    # -------------------------------------------------------------------------
    # Consolidation step
    # -------------------------------------------------------------------------

    def process(self) -> InsightPassResult:
        """Generate insights when their inputs changed, then age out stale ones."""
        result = InsightPassResult()

        marker = self.input_marker()
        if marker == self.ctx.db.get_state(INPUT_MARKER_KEY):
            result.skipped = True
        else:
            extracted = self.generate_insights(self.gather_context())
            if extracted is not None:
                for insight in extracted:
                    existing_id = self.find_similar_insight(insight.content, insight.insight_type)
                    if existing_id is not None:
                        self.validate_insight(existing_id)
                        result.validated.append(existing_id)
                    else:
                        result.created.append(self.create_insight(insight))
                self.ctx.db.set_state(INPUT_MARKER_KEY, marker)

        result.stale = self.mark_stale()

        if result.created or result.validated or result.stale:
            log_info(
                f"Insights: {len(result.created)} created, {len(result.validated)} validated, "
                f"{result.stale} stale",
                prefix="💡"
            )
        return result
