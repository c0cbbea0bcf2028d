"""
Keepsake - Reminder Service
Standalone reminders with exactly one timing mode (relative delay or absolute time)
"""

from datetime import datetime, timedelta
from typing import Optional, List
from dataclasses import dataclass
from enum import Enum

from core.context import EngineContext
from core.logger import log_info
from concurrency.db_retry import db_retry
from agency.time_parser import format_trigger_time


class ReminderStatus(Enum):
    PENDING = "pending"
    SENT = "sent"
    CANCELLED = "cancelled"


@dataclass
class Reminder:
    """
    A scheduled reminder.

    Attributes:
        id: Database primary key
        title: What to remind about
        body: Optional detail
        delay_minutes: Relative timing (set when scheduled_at is not)
        scheduled_at: Absolute timing (set when delay_minutes is not)
        remind_at: Resolved fire time
        status: pending, sent, cancelled
        source_message_id: Chat message that asked for it
        created_at: When the reminder was created
    """
    id: int
    title: str
    body: Optional[str]
    delay_minutes: Optional[int]
    scheduled_at: Optional[datetime]
    remind_at: datetime
    status: str
    source_message_id: Optional[int]
    created_at: datetime


class ReminderService:
    """Create, query and update reminders."""

    def __init__(self, ctx: EngineContext):
        self.ctx = ctx

    @db_retry()
    def create_reminder(
        self,
        title: str,
        delay_minutes: Optional[int] = None,
        scheduled_at: Optional[datetime] = None,
        body: Optional[str] = None,
        source_message_id: Optional[int] = None
    ) -> int:
        """
        Create a reminder.

        Exactly one of ``delay_minutes`` and ``scheduled_at`` must be given.

        Raises:
            ValueError: If the title is empty or both/neither timing is given
        """
        if not title or not title.strip():
            raise ValueError("Reminder title is required")
        if (delay_minutes is None) == (scheduled_at is None):
            raise ValueError("Reminder needs exactly one of delay_minutes or scheduled_at")
        if delay_minutes is not None and delay_minutes <= 0:
            raise ValueError("delay_minutes must be positive")

        now = self.ctx.now()
        remind_at = scheduled_at if scheduled_at is not None else now + timedelta(minutes=delay_minutes)

        with self.ctx.locks.acquire("database"):
            reminder_id = self.ctx.db.execute_insert(
                """
                INSERT INTO reminders
                (title, body, delay_minutes, scheduled_at, remind_at, status, source_message_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    title.strip(),
                    body,
                    delay_minutes,
                    scheduled_at.isoformat() if scheduled_at else None,
                    remind_at.isoformat(),
                    ReminderStatus.PENDING.value,
                    source_message_id,
                    now.isoformat()
                )
            )

        log_info(f"Created reminder [{reminder_id}]: {title.strip()[:50]} ({format_trigger_time(remind_at, now)})", prefix="⏰")
        return reminder_id

    @db_retry()
    def get_reminder(self, reminder_id: int) -> Optional[Reminder]:
        result = self.ctx.db.execute(
            "SELECT * FROM reminders WHERE id = ?",
            (reminder_id,),
            fetch=True
        )
        return self._row_to_reminder(result[0]) if result else None

    @db_retry()
    def get_pending_reminders(self) -> List[Reminder]:
        result = self.ctx.db.execute(
            "SELECT * FROM reminders WHERE status = ? ORDER BY remind_at ASC",
            (ReminderStatus.PENDING.value,),
            fetch=True
        )
        return [self._row_to_reminder(row) for row in result]

    @db_retry()
    def get_due_reminders(self) -> List[Reminder]:
        """Pending reminders whose time has come."""
        result = self.ctx.db.execute(
            "SELECT * FROM reminders WHERE status = ? AND remind_at <= ? ORDER BY remind_at ASC",
            (ReminderStatus.PENDING.value, self.ctx.now_iso()),
            fetch=True
        )
        return [self._row_to_reminder(row) for row in result]

    @db_retry()
    def has_reminder_for_message(self, message_id: int) -> bool:
        result = self.ctx.db.execute(
            "SELECT 1 FROM reminders WHERE source_message_id = ? LIMIT 1",
            (message_id,),
            fetch=True
        )
        return bool(result)

    @db_retry()
    def mark_sent(self, reminder_id: int) -> bool:
        return bool(self.ctx.db.execute_write(
            "UPDATE reminders SET status = ? WHERE id = ? AND status = ?",
            (ReminderStatus.SENT.value, reminder_id, ReminderStatus.PENDING.value)
        ))

    @db_retry()
    def cancel_reminder(self, reminder_id: int) -> bool:
        changed = self.ctx.db.execute_write(
            "UPDATE reminders SET status = ? WHERE id = ? AND status = ?",
            (ReminderStatus.CANCELLED.value, reminder_id, ReminderStatus.PENDING.value)
        )
        if changed:
            log_info(f"Cancelled reminder [{reminder_id}]", prefix="✗")
        return bool(changed)

    def _row_to_reminder(self, row) -> Reminder:
        def parse_datetime(value):
            if value is None:
                return None
            if isinstance(value, datetime):
                return value
            return datetime.fromisoformat(value)

        return Reminder(
            id=row["id"],
            title=row["title"],
            body=row["body"],
            delay_minutes=row["delay_minutes"],
            scheduled_at=parse_datetime(row["scheduled_at"]),
            remind_at=parse_datetime(row["remind_at"]),
            status=row["status"],
            source_message_id=row["source_message_id"],
            created_at=parse_datetime(row["created_at"])
        )
