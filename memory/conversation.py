"""
Keepsake - Conversation Store
Conversations, raw chat messages, and their extraction status
"""

from datetime import datetime
from typing import Optional, List, Dict, Any
from dataclasses import dataclass

from core.context import EngineContext
from core.logger import log_warning
from concurrency.db_retry import db_retry

EXTRACTION_STATUSES = ("pending", "extracted", "skipped")


@dataclass
class Message:
    """A single chat message."""
    id: int
    conversation_id: int
    role: str
    content: str
    sequence_number: int
    created_at: datetime
    extraction_status: str
    extracted_at: Optional[datetime] = None


class ConversationStore:
    """
    Stores conversations and messages.

    ``extraction_status`` only ever moves from ``pending`` to ``extracted``
    or ``skipped``; the update statement itself refuses any other move.
    """

    def __init__(self, ctx: EngineContext):
        self.ctx = ctx

    @db_retry()
    def create_conversation(self, title: Optional[str] = None) -> int:
        """Create a conversation and return its ID."""
        now = self.ctx.now_iso()
        return self.ctx.db.execute_insert(
            "INSERT INTO conversations (title, created_at, updated_at) VALUES (?, ?, ?)",
            (title, now, now)
        )

    @db_retry()
    def add_message(self, conversation_id: int, role: str, content: str) -> Optional[int]:
        """
        Append a message to a conversation.

        Args:
            conversation_id: Owning conversation
            role: 'user', 'assistant', or 'system'
            content: The message text

        Returns:
            The new message ID, or None if the message was empty
        """
        if content is None or not content.strip():
            log_warning("Skipping empty message", prefix="⚠️")
            return None

        with self.ctx.locks.acquire("database"):
            db = self.ctx.db
            now = self.ctx.now_iso()

            result = db.execute(
                "SELECT COALESCE(MAX(sequence_number), 0) AS seq FROM messages WHERE conversation_id = ?",
                (conversation_id,),
                fetch=True
            )
            sequence = result[0]["seq"] + 1

            message_id = db.execute_insert(
                """
                INSERT INTO messages
                (conversation_id, role, content, sequence_number, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (conversation_id, role, content, sequence, now)
            )
            db.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (now, conversation_id)
            )

        return message_id

    @db_retry()
    def get_message(self, message_id: int) -> Optional[Message]:
        result = self.ctx.db.execute(
            "SELECT * FROM messages WHERE id = ?",
            (message_id,),
            fetch=True
        )
        return self._row_to_message(result[0]) if result else None

    @db_retry()
    def get_pending_conversations(self) -> List[int]:
        """IDs of conversations that still have pending user messages, oldest first."""
        result = self.ctx.db.execute(
            """
            SELECT conversation_id, MIN(id) AS first_pending
            FROM messages
            WHERE extraction_status = 'pending' AND role = 'user'
            GROUP BY conversation_id
            ORDER BY first_pending ASC
            """,
            fetch=True
        )
        return [row["conversation_id"] for row in result]

    @db_retry()
    def get_pending_messages(self, conversation_id: int) -> List[Message]:
        """Pending user messages of a conversation, in sequence order."""
        result = self.ctx.db.execute(
            """
            SELECT * FROM messages
            WHERE conversation_id = ?
              AND extraction_status = 'pending'
              AND role = 'user'
            ORDER BY sequence_number ASC
            """,
            (conversation_id,),
            fetch=True
        )
        return [self._row_to_message(row) for row in result]

    def mark_messages(self, message_ids: List[int], status: str) -> int:
        """
        Move pending messages to ``extracted`` or ``skipped``.

        Messages that already left ``pending`` are untouched.

        Returns:
            Number of messages that changed status
        """
        if status not in ("extracted", "skipped"):
            raise ValueError(f"Invalid target status: {status}")
        if not message_ids:
            return 0

        placeholders = ",".join("?" * len(message_ids))
        return self.ctx.db.execute_write(
            f"""
            UPDATE messages
            SET extraction_status = ?, extracted_at = ?
            WHERE id IN ({placeholders})
              AND extraction_status = 'pending'
            """,
            (status, self.ctx.now_iso(), *message_ids)
        )

    @db_retry()
    def get_extraction_stats(self) -> Dict[str, Any]:
        """Counts of user messages per extraction status."""
        result = self.ctx.db.execute(
            """
            SELECT
                SUM(CASE WHEN extraction_status = 'pending' THEN 1 ELSE 0 END) AS pending,
                SUM(CASE WHEN extraction_status = 'extracted' THEN 1 ELSE 0 END) AS extracted,
                SUM(CASE WHEN extraction_status = 'skipped' THEN 1 ELSE 0 END) AS skipped,
                COUNT(DISTINCT CASE WHEN extraction_status = 'pending' THEN conversation_id END)
                    AS pending_conversations
            FROM messages
            WHERE role = 'user'
            """,
            fetch=True
        )
        row = result[0]
        return {
            "pending_messages": row["pending"] or 0,
            "extracted_messages": row["extracted"] or 0,
            "skipped_messages": row["skipped"] or 0,
            "conversations_with_pending": row["pending_conversations"] or 0,
        }

    def _row_to_message(self, row) -> Message:
        created_at = row["created_at"]
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        extracted_at = row["extracted_at"]
        if isinstance(extracted_at, str):
            extracted_at = datetime.fromisoformat(extracted_at)

        return Message(
            id=row["id"],
            conversation_id=row["conversation_id"],
            role=row["role"],
            content=row["content"],
            sequence_number=row["sequence_number"],
            created_at=created_at,
            extraction_status=row["extraction_status"],
            extracted_at=extracted_at
        )
