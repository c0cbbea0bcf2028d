"""
Keepsake - Note Service
Free-form notes the user asks to save
"""

from datetime import datetime
from typing import Optional, List
from dataclasses import dataclass

from core.context import EngineContext
from core.logger import log_info
from concurrency.db_retry import db_retry

NOTE_CATEGORIES = ("general", "idea", "reference", "personal", "work", "health", "recipe")


@dataclass
class Note:
    id: int
    title: Optional[str]
    content: str
    category: Optional[str]
    entity_id: Optional[int]
    source_type: str
    created_at: datetime


class NoteService:
    def __init__(self, ctx: EngineContext):
        self.ctx = ctx

    @db_retry()
    def create_note(
        self,
        content: str,
        title: Optional[str] = None,
        category: Optional[str] = None,
        entity_id: Optional[int] = None,
        source_type: str = "chat"
    ) -> int:
        """
        Save a note. Unknown categories are stored as 'general'.

        Raises:
            ValueError: If the content is empty
        """
        if not content or not content.strip():
            raise ValueError("Note content is required")
        if category not in NOTE_CATEGORIES:
            category = "general"

        with self.ctx.locks.acquire("database"):
            note_id = self.ctx.db.execute_insert(
                """
                INSERT INTO notes (title, content, category, entity_id, source_type, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (title, content.strip(), category, entity_id, source_type, self.ctx.now_iso())
            )

        log_info(f"Saved note [{note_id}]: {(title or content)[:50]}", prefix="🗒️")
        return note_id

    @db_retry()
    def get_note(self, note_id: int) -> Optional[Note]:
        result = self.ctx.db.execute("SELECT * FROM notes WHERE id = ?", (note_id,), fetch=True)
        return self._row_to_note(result[0]) if result else None

    @db_retry()
    def list_notes(self, entity_id: Optional[int] = None, limit: int = 50) -> List[Note]:
        if entity_id is not None:
            result = self.ctx.db.execute(
                "SELECT * FROM notes WHERE entity_id = ? ORDER BY created_at DESC LIMIT ?",
                (entity_id, limit),
                fetch=True
            )
        else:
            result = self.ctx.db.execute(
                "SELECT * FROM notes ORDER BY created_at DESC LIMIT ?",
                (limit,),
                fetch=True
            )
        return [self._row_to_note(row) for row in result]

    def _row_to_note(self, row) -> Note:
        created_at = row["created_at"]
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        return Note(
            id=row["id"],
            title=row["title"],
            content=row["content"],
            category=row["category"],
            entity_id=row["entity_id"],
            source_type=row["source_type"],
            created_at=created_at
        )
