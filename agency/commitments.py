"""
Keepsake - Commitment Service
Things the user needs to do, with optional due dates and a resolution lifecycle
"""

from datetime import datetime
from typing import Optional, List, Dict
from dataclasses import dataclass
from enum import Enum

from core.context import EngineContext
from core.logger import log_info
from concurrency.db_retry import db_retry
from memory.vector_store import normalize_content


class CommitmentStatus(Enum):
    """Lifecycle states for commitments."""
    CANDIDATE = "candidate"    # Inferred by batch extraction, awaiting confirmation
    CONFIRMED = "confirmed"    # Stated directly by the user
    RESOLVED = "resolved"      # Done
    DISMISSED = "dismissed"    # Dropped without completion


OPEN_STATUSES = (CommitmentStatus.CANDIDATE.value, CommitmentStatus.CONFIRMED.value)


@dataclass
class Commitment:
    id: int
    title: str
    description: Optional[str]
    due_at: Optional[datetime]
    all_day: bool
    memory_id: Optional[int]
    source_type: str
    source_message_id: Optional[int]
    status: str
    resolution_notes: Optional[str]
    created_at: datetime
    resolved_at: Optional[datetime]


class CommitmentService:
    """Create, list and resolve commitments."""

    def __init__(self, ctx: EngineContext):
        self.ctx = ctx

    @db_retry()
    def create_commitment(
        self,
        title: str,
        description: Optional[str] = None,
        due_at: Optional[datetime] = None,
        all_day: bool = False,
        memory_id: Optional[int] = None,
        source_type: str = "chat",
        status: CommitmentStatus = CommitmentStatus.CANDIDATE,
        source_message_id: Optional[int] = None
    ) -> int:
        """
        Create a commitment.

        Raises:
            ValueError: If the title is empty or the status is not an open one
        """
        if not title or not title.strip():
            raise ValueError("Commitment title is required")
        if status.value not in OPEN_STATUSES:
            raise ValueError(f"New commitments must be candidate or confirmed, not {status.value}")

        with self.ctx.locks.acquire("database"):
            commitment_id = self.ctx.db.execute_insert(
                """
                INSERT INTO commitments
                (title, description, due_at, all_day, memory_id, source_type, source_message_id, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    title.strip(),
                    description,
                    due_at.isoformat() if due_at else None,
                    1 if all_day else 0,
                    memory_id,
                    source_type,
                    source_message_id,
                    status.value,
                    self.ctx.now_iso()
                )
            )

        due = f" due {due_at.isoformat()}" if due_at else ""
        log_info(f"Created {status.value} commitment [{commitment_id}]: {title.strip()[:50]}{due}", prefix="📌")
        return commitment_id

    @db_retry()
    def get_commitment(self, commitment_id: int) -> Optional[Commitment]:
        result = self.ctx.db.execute(
            "SELECT * FROM commitments WHERE id = ?",
            (commitment_id,),
            fetch=True
        )
        return self._row_to_commitment(result[0]) if result else None

    @db_retry()
    def has_commitment_for_message(self, message_id: int) -> bool:
        result = self.ctx.db.execute(
            "SELECT 1 FROM commitments WHERE source_message_id = ? LIMIT 1",
            (message_id,),
            fetch=True
        )
        return bool(result)

    @db_retry()
    def find_open_by_title(self, title: str) -> Optional[Commitment]:
        """Open commitment whose title matches after normalisation."""
        key = normalize_content(title)
        if not key:
            return None
        result = self.ctx.db.execute(
            "SELECT * FROM commitments WHERE status IN (?, ?) ORDER BY id",
            OPEN_STATUSES,
            fetch=True
        )
        for row in result:
            if normalize_content(row["title"]) == key:
                return self._row_to_commitment(row)
        return None

    @db_retry()
    def list_open_commitments(self, limit: int = 20) -> List[Commitment]:
        """Unresolved commitments, soonest due first (undated last)."""
        result = self.ctx.db.execute(
            """
            SELECT * FROM commitments
            WHERE status IN (?, ?)
            ORDER BY due_at IS NULL, due_at ASC, created_at ASC, id ASC
            LIMIT ?
            """,
            (*OPEN_STATUSES, limit),
            fetch=True
        )
        return [self._row_to_commitment(row) for row in result]

    @db_retry()
    def confirm_commitment(self, commitment_id: int) -> bool:
        return bool(self.ctx.db.execute_write(
            "UPDATE commitments SET status = ? WHERE id = ? AND status = ?",
            (CommitmentStatus.CONFIRMED.value, commitment_id, CommitmentStatus.CANDIDATE.value)
        ))

    @db_retry()
    def resolve_commitment(self, commitment_id: int, notes: Optional[str] = None) -> bool:
        """
        Mark an open commitment resolved.

        Returns:
            True if this call resolved it
        """
        changed = self.ctx.db.execute_write(
            """
            UPDATE commitments
            SET status = ?, resolution_notes = ?, resolved_at = ?
            WHERE id = ? AND status IN (?, ?)
            """,
            (CommitmentStatus.RESOLVED.value, notes, self.ctx.now_iso(), commitment_id, *OPEN_STATUSES)
        )
        if changed:
            log_info(f"Resolved commitment [{commitment_id}]", prefix="✓")
        return bool(changed)

    @db_retry()
    def dismiss_commitment(self, commitment_id: int) -> bool:
        changed = self.ctx.db.execute_write(
            """
            UPDATE commitments SET status = ?, resolved_at = ?
            WHERE id = ? AND status IN (?, ?)
            """,
            (CommitmentStatus.DISMISSED.value, self.ctx.now_iso(), commitment_id, *OPEN_STATUSES)
        )
        if changed:
            log_info(f"Dismissed commitment [{commitment_id}]", prefix="✗")
        return bool(changed)

    @db_retry()
    def get_overdue_commitments(self) -> List[Commitment]:
        result = self.ctx.db.execute(
            """
            SELECT * FROM commitments
            WHERE status IN (?, ?) AND due_at IS NOT NULL AND due_at < ?
            ORDER BY due_at ASC
            """,
            (*OPEN_STATUSES, self.ctx.now_iso()),
            fetch=True
        )
        return [self._row_to_commitment(row) for row in result]

    @db_retry()
    def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in CommitmentStatus}
        result = self.ctx.db.execute(
            "SELECT status, COUNT(*) AS count FROM commitments GROUP BY status",
            fetch=True
        )
        for row in result:
            counts[row["status"]] = row["count"]
        return counts

    def _row_to_commitment(self, row) -> Commitment:
        def parse_datetime(value):
            if value is None:
                return None
            if isinstance(value, datetime):
                return value
            return datetime.fromisoformat(value)

        return Commitment(
            id=row["id"],
            title=row["title"],
            description=row["description"],
            due_at=parse_datetime(row["due_at"]),
            all_day=bool(row["all_day"]),
            memory_id=row["memory_id"],
            source_type=row["source_type"],
            source_message_id=row["source_message_id"],
            status=row["status"],
            resolution_notes=row["resolution_notes"],
            created_at=parse_datetime(row["created_at"]),
            resolved_at=parse_datetime(row["resolved_at"])
        )
