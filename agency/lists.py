"""
Keepsake - List Service
Checklists, shopping lists and to-do lists with ordered items
"""

from datetime import datetime
from typing import Optional, List, Tuple
from dataclasses import dataclass, field

from core.context import EngineContext
from core.logger import log_info
from concurrency.db_retry import db_retry

LIST_TYPES = ("checklist", "shopping", "todo", "reference")


@dataclass
class ListItem:
    id: int
    list_id: int
    content: str
    is_completed: bool
    sort_order: int


@dataclass
class UserList:
    id: int
    name: str
    list_type: str
    entity_id: Optional[int]
    created_at: datetime
    items: List[ListItem] = field(default_factory=list)


class ListService:
    """
    Lists and their items.

    ``add_item`` merges on miss: adding to a list that does not exist yet
    creates it.
    """

    def __init__(self, ctx: EngineContext):
        self.ctx = ctx

    @db_retry()
    def create_list(
        self,
        name: str,
        list_type: str = "checklist",
        entity_id: Optional[int] = None,
        initial_items: Optional[List[str]] = None
    ) -> int:
        if not name or not name.strip():
            raise ValueError("List name is required")
        if list_type not in LIST_TYPES:
            list_type = "checklist"

        items = [item.strip() for item in initial_items or [] if item and item.strip()]

        with self.ctx.locks.acquire("database"):
            with self.ctx.db.get_connection() as conn:
                list_id = self._insert_list(conn, name.strip(), list_type, entity_id)
                for item in items:
                    self._insert_item(conn, list_id, item)

        log_info(f"Created list [{list_id}]: {name.strip()} ({len(items)} items)", prefix="📋")
        return list_id

    @db_retry()
    def find_list_by_name(self, name: str) -> Optional[UserList]:
        """Exact, case-insensitive name match."""
        result = self.ctx.db.execute(
            "SELECT * FROM lists WHERE LOWER(name) = LOWER(?) ORDER BY id LIMIT 1",
            (name.strip(),),
            fetch=True
        )
        return self._row_to_list(result[0]) if result else None

    @db_retry()
    def add_item(self, list_name: str, content: str, list_type: str = "checklist") -> Tuple[int, int, bool]:
        """
        Add an item to a list by name, creating the list if needed.

        Returns:
            (list id, item id, whether the list was created)
        """
        if not content or not content.strip():
            raise ValueError("List item content is required")

        if not list_name or not list_name.strip():
            raise ValueError("List name is required")
        if list_type not in LIST_TYPES:
            list_type = "checklist"

        with self.ctx.locks.acquire("database"):
            with self.ctx.db.get_connection() as conn:
                row = conn.execute(
                    "SELECT id FROM lists WHERE LOWER(name) = LOWER(?) ORDER BY id LIMIT 1",
                    (list_name.strip(),)
                ).fetchone()
                created = row is None
                list_id = self._insert_list(conn, list_name.strip(), list_type, None) if created else row["id"]
                item_id = self._insert_item(conn, list_id, content.strip())

        log_info(f"Added \"{content.strip()[:40]}\" to list \"{list_name}\"", prefix="📋")
        return list_id, item_id, created

    def _insert_list(self, conn, name: str, list_type: str, entity_id: Optional[int]) -> int:
        return conn.execute(
            "INSERT INTO lists (name, list_type, entity_id, created_at) VALUES (?, ?, ?, ?)",
            (name, list_type, entity_id, self.ctx.now_iso())
        ).lastrowid

    def _insert_item(self, conn, list_id: int, content: str) -> int:
        next_order = conn.execute(
            "SELECT COALESCE(MAX(sort_order), -1) + 1 AS next_order FROM list_items WHERE list_id = ?",
            (list_id,)
        ).fetchone()["next_order"]
        return conn.execute(
            "INSERT INTO list_items (list_id, content, sort_order, created_at) VALUES (?, ?, ?, ?)",
            (list_id, content, next_order, self.ctx.now_iso())
        ).lastrowid

    @db_retry()
    def get_list(self, list_id: int) -> Optional[UserList]:
        result = self.ctx.db.execute("SELECT * FROM lists WHERE id = ?", (list_id,), fetch=True)
        if not result:
            return None
        user_list = self._row_to_list(result[0])
        items = self.ctx.db.execute(
            "SELECT * FROM list_items WHERE list_id = ? ORDER BY sort_order ASC",
            (list_id,),
            fetch=True
        )
        user_list.items = [
            ListItem(
                id=row["id"],
                list_id=row["list_id"],
                content=row["content"],
                is_completed=bool(row["is_completed"]),
                sort_order=row["sort_order"]
            )
            for row in items
        ]
        return user_list

    @db_retry()
    def complete_item(self, item_id: int) -> bool:
        return bool(self.ctx.db.execute_write(
            "UPDATE list_items SET is_completed = 1 WHERE id = ? AND is_completed = 0",
            (item_id,)
        ))

    def _row_to_list(self, row) -> UserList:
        created_at = row["created_at"]
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        return UserList(
            id=row["id"],
            name=row["name"],
            list_type=row["list_type"],
            entity_id=row["entity_id"],
            created_at=created_at
        )
