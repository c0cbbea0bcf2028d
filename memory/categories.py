"""
Keepsake - Categories and Living Summaries
Classifies memories into summary categories and keeps one evolving summary per category
"""

import re
from datetime import datetime
from typing import Optional, List, Dict, Any
from dataclasses import dataclass

from core.context import EngineContext
from core.logger import log_info, log_warning
from concurrency.db_retry import db_retry
from llm.json_repair import repair_json, as_str, as_float
from llm.router import TaskType

SUMMARY_CATEGORIES = (
    "personality",        # identity, self-story, who you are
    "goals",              # aspirations, what you're working toward
    "relationships",      # people, social connections
    "projects",           # active work, tasks, things you're building
    "interests",          # hobbies, passions
    "wellbeing",          # health, mood, emotional patterns
    "commitments",        # promises, obligations, things owed
    "significant_dates",  # birthdays, anniversaries, milestones
)

CATEGORY_DESCRIPTIONS = {
    "personality": "your identity, self-story, personal traits, and core values",
    "goals": "aspirations, objectives, and things you are working toward",
    "relationships": "key people in your life, family, friends, and social connections",
    "projects": "active work, tasks, and projects you are working on",
    "interests": "hobbies, passions, things you enjoy, and entertainment preferences",
    "wellbeing": "your health, mood, emotional patterns, and physical/mental wellness",
    "commitments": "promises, obligations, and things you owe to others or are owed",
    "significant_dates": "birthdays, anniversaries, and other dates that matter to you",
}

MIN_RELEVANCE = 0.3

CLASSIFY_SYSTEM_PROMPT = """You are a memory classifier. Given a memory/observation, determine which categories it touches.

Categories:
- personality: Identity, self-story, who you are, personal traits, values, name, age, job, core facts about the user
- goals: Aspirations, objectives, things being worked toward
- relationships: People, social connections, family, friends, colleagues
- projects: Active work, tasks, professional or personal projects
- interests: Hobbies, passions, things enjoyed, entertainment preferences
- wellbeing: Health, mood, emotional states, physical/mental wellness
- commitments: Promises, obligations, things owed to others or by others
- significant_dates: Birthdays, anniversaries, milestones, dates that matter

IMPORTANT: Memories about the user's name, age, job, or core identity MUST include "personality" with high relevance (0.9+).
Memories about the user's relationships (wife, husband, children) should include BOTH "personality" AND "relationships".

Return ONLY a JSON array of relevant categories with relevance scores (0.0-1.0).
Only include categories that are clearly relevant (relevance >= 0.3).
Format: [{"category": "...", "relevance": 0.X, "reason": "brief reason"}]

If the memory doesn't clearly relate to any category, return an empty array: []"""

SUMMARY_SYSTEM_PROMPT = """You are a personal memory summarizer. Your job is to maintain a living summary of {description}.

Rules:
1. If there's an existing summary, UPDATE it incrementally - don't rewrite from scratch
2. Preserve important existing information unless it's clearly outdated
3. Add new information from the new memories
4. Keep the summary concise but comprehensive (aim for 100-300 words)
5. Use second person ("you") when referring to the person
6. If information conflicts, prefer the newer information"""

_IDENTITY_PATTERNS = [
    re.compile(r"the user'?s? name is", re.IGNORECASE),
    re.compile(r"user is named", re.IGNORECASE),
    re.compile(r"user'?s? (?:wife|husband|spouse|partner|son|daughter|child|mother|father|parent|sibling|brother|sister) is", re.IGNORECASE),
    re.compile(r"the user is \d+ years? old", re.IGNORECASE),
    re.compile(r"the user (?:is|has|works|lives)", re.IGNORECASE),
]


@dataclass
class CategoryClassification:
    """One category a memory touches."""
    category: str
    relevance: float
    reason: str = ""


@dataclass
class LivingSummary:
    category: str
    content: str
    version: int
    memory_count: int
    last_updated_at: Optional[datetime]


def is_identity_content(content: str, user_name: Optional[str] = None) -> bool:
    """True for memories that are clearly about who the user is."""
    if any(p.search(content) for p in _IDENTITY_PATTERNS):
        return True
    if user_name:
        name = re.escape(user_name)
        owned = rf"\b{name}'?s?\s+(?:wife|husband|spouse|partner|child|children|daughter|son|mother|father|family)\b"
        acting = rf"\b{name}\s+(?:is|has|works|lives)\b"
        return bool(re.search(owned, content, re.IGNORECASE) or re.search(acting, content, re.IGNORECASE))
    return False


class CategoryService:
    """Category classification, memory links, and living summaries."""

    def __init__(self, ctx: EngineContext):
        self.ctx = ctx

    def classify(self, content: str) -> List[CategoryClassification]:
        """
        Classify which categories a memory touches.

        Identity content always includes ``personality`` even when the
        model omits it or the call fails.
        """
        identity = is_identity_content(content, self.ctx.identity.get_user_name())

        response = self.ctx.llm.complete(
            messages=[{
                "role": "user",
                "content": f'Memory: "{content}"\n\nWhich categories does this memory touch? Return JSON array only.'
            }],
            system_prompt=CLASSIFY_SYSTEM_PROMPT,
            task_type=TaskType.CLASSIFICATION,
            temperature=0.1,
            max_tokens=300
        )

        parsed = repair_json(response.text, expect="array") if response.success else None
        result: List[CategoryClassification] = []

        if isinstance(parsed, list):
            for item in parsed:
                if not isinstance(item, dict):
                    continue
                category = as_str(item.get("category"))
                relevance = as_float(item.get("relevance"))
                if category not in SUMMARY_CATEGORIES or relevance is None or relevance < MIN_RELEVANCE:
                    continue
                result.append(CategoryClassification(
                    category=category,
                    relevance=min(1.0, relevance),
                    reason=as_str(item.get("reason")) or ""
                ))
        elif response.success:
            log_warning(f"Unparseable category classification: {response.text[:200]!r}")

        if identity and not any(c.category == "personality" for c in result):
            result.append(CategoryClassification("personality", 1.0, "Identity content"))

        return result

    @db_retry()
    def link_memory_to_categories(self, memory_id: int, classifications: List[CategoryClassification]) -> None:
        if not classifications:
            return

        now = self.ctx.now_iso()
        self.ctx.db.execute_many(
            """
            INSERT INTO memory_category_links (memory_id, category, relevance_score, reason, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(memory_id, category) DO UPDATE SET relevance_score = excluded.relevance_score
            """,
            [(memory_id, c.category, c.relevance, c.reason, now) for c in classifications]
        )

    @db_retry()
    def get_summary(self, category: str) -> Optional[LivingSummary]:
        result = self.ctx.db.execute(
            "SELECT * FROM living_summaries WHERE category = ?",
            (category,),
            fetch=True
        )
        if not result:
            return None
        row = result[0]
        updated = row["last_updated_at"]
        return LivingSummary(
            category=row["category"],
            content=row["content"],
            version=row["version"],
            memory_count=row["memory_count"],
            last_updated_at=datetime.fromisoformat(updated) if updated else None
        )

    @db_retry()
    def update_summary(self, category: str, content: str) -> int:
        """
        Replace a summary's content.

        Returns:
            The new version number
        """
        if category not in SUMMARY_CATEGORIES:
            raise ValueError(f"Unknown summary category: {category}")

        self.ctx.db.execute(
            """
            INSERT INTO living_summaries (category, content, version, last_updated_at)
            VALUES (?, ?, 1, ?)
            ON CONFLICT(category) DO UPDATE SET
                content = excluded.content,
                version = living_summaries.version + 1,
                last_updated_at = excluded.last_updated_at
            """,
            (category, content, self.ctx.now_iso())
        )
        return self.get_summary(category).version

    def append_to_summary(self, category: str, sentence: str) -> bool:
        """
        Append a sentence unless the summary already contains it.

        Returns:
            True if the summary changed
        """
        current = self.get_summary(category)
        existing = current.content if current else ""
        if sentence.lower() in existing.lower():
            return False
        self.update_summary(category, f"{existing} {sentence}".strip())
        return True

    @db_retry()
    def get_unincorporated(self, category: str, limit: int = 20) -> List[Dict[str, Any]]:
        result = self.ctx.db.execute(
            """
            SELECT l.memory_id, m.content, l.relevance_score AS relevance
            FROM memory_category_links l
            JOIN memories m ON m.id = l.memory_id
            WHERE l.category = ? AND l.incorporated = 0
            ORDER BY l.relevance_score DESC, m.created_at DESC
            LIMIT ?
            """,
            (category, limit),
            fetch=True
        )
        return [dict(row) for row in result]

    @db_retry()
    def mark_incorporated(self, memory_ids: List[int], category: str) -> None:
        if not memory_ids:
            return
        placeholders = ",".join("?" * len(memory_ids))
        self.ctx.db.execute(
            f"""
            UPDATE memory_category_links
            SET incorporated = 1, incorporated_at = ?
            WHERE category = ? AND memory_id IN ({placeholders})
            """,
            (self.ctx.now_iso(), category, *memory_ids)
        )
        self.ctx.db.execute(
            """
            UPDATE living_summaries
            SET memory_count = (
                SELECT COUNT(*) FROM memory_category_links
                WHERE category = ? AND incorporated = 1
            )
            WHERE category = ?
            """,
            (category, category)
        )

    def generate_summary(self, category: str) -> int:
        """
        Fold unincorporated memories into a category summary.

        Returns:
            Number of memories incorporated
        """
        pending = self.get_unincorporated(category)
        if not pending:
            return 0

        current = self.get_summary(category)
        existing_part = (
            f"Current summary:\n{current.content}\n\n"
            if current and current.content else "No existing summary yet.\n\n"
        )
        memories_part = "\n".join(f"{i + 1}. {m['content']}" for i, m in enumerate(pending))

        response = self.ctx.llm.complete(
            messages=[{
                "role": "user",
                "content": (
                    f"{existing_part}New memories to incorporate:\n{memories_part}\n\n"
                    f"Generate the updated summary for \"{category}\". "
                    f"Return ONLY the summary text, no preamble."
                )
            }],
            system_prompt=SUMMARY_SYSTEM_PROMPT.format(description=CATEGORY_DESCRIPTIONS[category]),
            task_type=TaskType.ANALYSIS,
            temperature=0.3,
            max_tokens=500
        )

        if not response.success or not response.text.strip():
            log_warning(f"Summary update for {category} failed: {response.error}")
            return 0

        self.update_summary(category, response.text.strip())
        self.mark_incorporated([m["memory_id"] for m in pending], category)
        log_info(f"Summary '{category}' updated with {len(pending)} memories", prefix="📝")
        return len(pending)

    def update_all_summaries(self) -> List[str]:
        """Regenerate every category that has unincorporated links."""
        updated = []
        for category in SUMMARY_CATEGORIES:
            if self.generate_summary(category) > 0:
                updated.append(category)
        return updated
