"""
Keepsake - Identity Lock
Singleton user identity that auto-detection may set exactly once
"""

import json
import re
import threading
from datetime import datetime
from typing import Optional, List, Dict, Any, Callable
from dataclasses import dataclass, field

from core.database import Database
from core.exceptions import IdentityExistsError, IdentityNotFoundError
from core.logger import log_info, log_success, log_warning
from concurrency.locks import LockManager
from concurrency.db_retry import db_retry

IDENTITY_SOURCES = ("auto_detection", "onboarding", "manual", "import", "rename_command")

# Words the personality-summary migration must never take for a name
_NOT_NAMES = {
    "the", "a", "an", "your", "my", "their", "his", "her", "its",
    "this", "that", "here", "there", "now", "then",
}

_SUMMARY_NAME_PATTERNS = [
    re.compile(r"Your name is (\w+)", re.IGNORECASE),
    re.compile(r"You're (\w+)[,.]", re.IGNORECASE),
    re.compile(r"You are (\w+)[,.]", re.IGNORECASE),
    re.compile(r"(\w+) is your name", re.IGNORECASE),
]


@dataclass
class UserIdentity:
    """The identity record (always row id 1)."""
    name: str
    is_locked: bool
    locked_at: Optional[datetime]
    source: str
    created_at: datetime
    updated_at: datetime
    previous_names: List[Dict[str, Any]] = field(default_factory=list)


class IdentityService:
    """
    Reads and writes the identity record.

    ``lock_identity`` is a single conditional upsert, so two messages racing
    to lock different names cannot both win. Reads go through a small cache
    that every write invalidates.
    """

    def __init__(
        self,
        db: Database,
        locks: Optional[LockManager] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.db = db
        self.locks = locks or LockManager()
        self.clock = clock
        self._cache: Optional[UserIdentity] = None
        self._cache_loaded = False
        self._cache_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_identity(self, refresh: bool = False) -> Optional[UserIdentity]:
        """Current identity, or None if no name was ever established."""
        with self._cache_lock:
            if refresh or not self._cache_loaded:
                self._cache = self._load()
                self._cache_loaded = True
            return self._cache

    def is_locked(self, refresh: bool = False) -> bool:
        identity = self.get_identity(refresh=refresh)
        return identity.is_locked if identity else False

    def get_user_name(self) -> Optional[str]:
        identity = self.get_identity()
        return identity.name if identity else None

    def refresh(self) -> Optional[UserIdentity]:
        """Drop the cache and reload from the store."""
        return self.get_identity(refresh=True)

    def _invalidate(self) -> None:
        with self._cache_lock:
            self._cache = None
            self._cache_loaded = False

    @db_retry()
    def _load(self) -> Optional[UserIdentity]:
        result = self.db.execute("SELECT * FROM user_identity WHERE id = 1", fetch=True)
        if not result:
            return None

        row = result[0]
        previous = row["previous_names"]
        if isinstance(previous, str):
            previous = json.loads(previous)

        return UserIdentity(
            name=row["name"],
            is_locked=bool(row["is_locked"]),
            locked_at=datetime.fromisoformat(row["locked_at"]) if row["locked_at"] else None,
            source=row["source"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            previous_names=previous or []
        )

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    @db_retry()
    def lock_identity(self, name: str, source: str = "auto_detection") -> bool:
        """
        Set and lock the name unless the identity is already locked.

        Check and write happen in one statement against the store.

        Returns:
            True if this call set the name, False if it was already locked
        """
        name = name.strip()
        if not name:
            return False

        now = self.clock().isoformat()
        with self.locks.acquire("identity"):
            changed = self.db.execute_write(
                """
                INSERT INTO user_identity
                    (id, name, is_locked, locked_at, source, previous_names, created_at, updated_at)
                VALUES (1, ?, 1, ?, ?, '[]', ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    is_locked = 1,
                    locked_at = excluded.locked_at,
                    source = excluded.source,
                    updated_at = excluded.updated_at
                WHERE user_identity.is_locked = 0
                """,
                (name, now, source, now, now)
            )
            self._invalidate()

        if changed:
            log_success(f"Identity locked: \"{name}\" (source: {source})")
            return True

        log_info(f"Identity already locked, ignoring \"{name}\"", prefix="🔒")
        return False

    @db_retry()
    def set_initial_identity(self, name: str, source: str = "onboarding") -> UserIdentity:
        """
        Establish the identity when none exists yet.

        Raises:
            IdentityExistsError: If any identity row exists, locked or not
        """
        now = self.clock().isoformat()
        with self.locks.acquire("identity"):
            changed = self.db.execute_write(
                """
                INSERT INTO user_identity
                    (id, name, is_locked, locked_at, source, previous_names, created_at, updated_at)
                VALUES (1, ?, 1, ?, ?, '[]', ?, ?)
                ON CONFLICT(id) DO NOTHING
                """,
                (name.strip(), now, source, now, now)
            )
            self._invalidate()

        if not changed:
            existing = self.get_identity()
            raise IdentityExistsError(
                f"Identity already established as \"{existing.name if existing else '?'}\". "
                f"Use rename_user() to change."
            )

        log_success(f"Initial identity set: \"{name.strip()}\" (source: {source})")
        return self.get_identity()

    @db_retry()
    def rename_user(self, new_name: str, reason: str = "User requested rename") -> UserIdentity:
        """
        Explicit rename; the only path that changes a locked name.

        The old name is appended to ``previous_names``.
        """
        existing = self.get_identity(refresh=True)
        if existing is None:
            return self.set_initial_identity(new_name, source="rename_command")

        now = self.clock().isoformat()
        previous = list(existing.previous_names)
        previous.append({"name": existing.name, "changed_at": now, "reason": reason})

        with self.locks.acquire("identity"):
            self.db.execute(
                """
                UPDATE user_identity
                SET name = ?, source = 'rename_command', previous_names = ?, updated_at = ?
                WHERE id = 1
                """,
                (new_name.strip(), json.dumps(previous), now)
            )
            self._invalidate()

        log_info(f"User renamed: \"{existing.name}\" -> \"{new_name.strip()}\" ({reason})", prefix="🪪")
        return self.get_identity()

    @db_retry()
    def unlock_identity(self) -> None:
        """Allow auto-detection to run again (admin/testing)."""
        if self.get_identity(refresh=True) is None:
            raise IdentityNotFoundError("No identity to unlock")
        with self.locks.acquire("identity"):
            self.db.execute(
                "UPDATE user_identity SET is_locked = 0, updated_at = ? WHERE id = 1",
                (self.clock().isoformat(),)
            )
            self._invalidate()
        log_warning("Identity unlocked - detection will run again")

    def migrate_from_personality_summary(self) -> Optional[UserIdentity]:
        """
        One-time import of a name already present in the personality summary.

        Returns:
            The identity (existing or imported), or None if no name was found
        """
        existing = self.get_identity(refresh=True)
        if existing:
            return existing

        result = self.db.execute(
            "SELECT content FROM living_summaries WHERE category = 'personality'",
            fetch=True
        )
        if not result or not result[0]["content"]:
            return None

        content = result[0]["content"]
        for pattern in _SUMMARY_NAME_PATTERNS:
            match = pattern.search(content)
            if match and match.group(1).lower() not in _NOT_NAMES:
                log_info(f"Importing name from personality summary: \"{match.group(1)}\"", prefix="🪪")
                return self.set_initial_identity(match.group(1), source="import")

        return None
