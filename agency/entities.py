"""
Keepsake - Entity Resolver
Looks up people, places and projects by name so notes and lists can reference them
"""

from datetime import datetime
from typing import Optional, List
from dataclasses import dataclass

from core.context import EngineContext
from concurrency.db_retry import db_retry

ENTITY_TYPES = ("person", "place", "project", "organization", "thing")


@dataclass
class Entity:
    id: int
    name: str
    entity_type: str
    created_at: datetime


class EntityService:
    """Name-based entity lookup."""

    def __init__(self, ctx: EngineContext):
        self.ctx = ctx

    @db_retry()
    def search(self, name: str, limit: int = 20) -> List[Entity]:
        """Entities whose name contains the query (case-insensitive); exact matches first."""
        query = name.strip()
        if not query:
            return []
        result = self.ctx.db.execute(
            """
            SELECT * FROM entities
            WHERE name LIKE ? ESCAPE '\\'
            ORDER BY LOWER(name) = LOWER(?) DESC, LENGTH(name) ASC, id ASC
            LIMIT ?
            """,
            (f"%{_escape_like(query)}%", query, limit),
            fetch=True
        )
        return [self._row_to_entity(row) for row in result]

    def resolve(self, name: Optional[str]) -> Optional[int]:
        """Id of the best match for a name, or None."""
        if not name:
            return None
        matches = self.search(name, limit=1)
        return matches[0].id if matches else None

    @db_retry()
    def create_entity(self, name: str, entity_type: str = "person") -> int:
        if entity_type not in ENTITY_TYPES:
            raise ValueError(f"Invalid entity type: {entity_type}")
        return self.ctx.db.execute_insert(
            "INSERT INTO entities (name, entity_type, created_at) VALUES (?, ?, ?)",
            (name.strip(), entity_type, self.ctx.now_iso())
        )

    def _row_to_entity(self, row) -> Entity:
        created_at = row["created_at"]
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        return Entity(
            id=row["id"],
            name=row["name"],
            entity_type=row["entity_type"],
            created_at=created_at
        )


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
