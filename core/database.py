"""
Keepsake - Database Module
SQLite with WAL mode, schema management, and connection handling
"""

import sqlite3
import json
from pathlib import Path
from datetime import datetime
from typing import Optional, Any, List, Tuple
from contextlib import contextmanager

from core.logger import log_success, log_error, log_config, log_section

# Schema version for migrations
SCHEMA_VERSION = 4

# SQL schema definition
SCHEMA_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- Conversations group chat messages
CREATE TABLE IF NOT EXISTS conversations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT,
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL
);

-- Raw chat messages. extraction_status only moves pending -> extracted|skipped.
CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation_id INTEGER NOT NULL REFERENCES conversations(id),
    role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
    content TEXT NOT NULL,
    sequence_number INTEGER NOT NULL,
    created_at TIMESTAMP NOT NULL,
    extraction_status TEXT NOT NULL DEFAULT 'pending'
        CHECK (extraction_status IN ('pending', 'extracted', 'skipped')),
    extracted_at TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_messages_pending
    ON messages(extraction_status, role, conversation_id, sequence_number);

-- Long-term memories
CREATE TABLE IF NOT EXISTS memories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    content TEXT NOT NULL,
    content_key TEXT NOT NULL,
    content_hash TEXT NOT NULL,
    memory_type TEXT,
    source TEXT NOT NULL DEFAULT 'chat',
    source_metadata JSON,
    salience_score REAL NOT NULL DEFAULT 5.0,
    event_date DATE,
    embedding BLOB,
    current_strength REAL NOT NULL DEFAULT 1.0,
    access_count INTEGER NOT NULL DEFAULT 0,
    last_accessed_at TIMESTAMP,
    last_decayed_at TIMESTAMP,
    last_strengthened_at TIMESTAMP,
    edges_scanned_at TIMESTAMP,
    patterns_analyzed_at TIMESTAMP,
    created_at TIMESTAMP NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_memories_content_key ON memories(content_key, created_at);
CREATE INDEX IF NOT EXISTS idx_memories_content_hash ON memories(content_hash, created_at);
CREATE INDEX IF NOT EXISTS idx_memories_event_date ON memories(event_date);

-- Similarity graph (unordered pairs stored with source < target)
CREATE TABLE IF NOT EXISTS memory_edges (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_memory_id INTEGER NOT NULL REFERENCES memories(id),
    target_memory_id INTEGER NOT NULL REFERENCES memories(id),
    edge_type TEXT NOT NULL DEFAULT 'SIMILAR',
    weight REAL NOT NULL,
    similarity REAL NOT NULL,
    reinforcement_count INTEGER NOT NULL DEFAULT 0,
    last_reinforced_at TIMESTAMP,
    last_decayed_at TIMESTAMP,
    created_at TIMESTAMP NOT NULL,
    UNIQUE (source_memory_id, target_memory_id, edge_type),
    CHECK (source_memory_id < target_memory_id)
);

-- Category links feeding living summaries
CREATE TABLE IF NOT EXISTS memory_category_links (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    memory_id INTEGER NOT NULL REFERENCES memories(id),
    category TEXT NOT NULL,
    relevance_score REAL NOT NULL,
    reason TEXT,
    incorporated BOOLEAN NOT NULL DEFAULT 0,
    incorporated_at TIMESTAMP,
    created_at TIMESTAMP NOT NULL,
    UNIQUE (memory_id, category)
);

CREATE TABLE IF NOT EXISTS living_summaries (
    category TEXT PRIMARY KEY,
    content TEXT NOT NULL DEFAULT '',
    version INTEGER NOT NULL DEFAULT 0,
    memory_count INTEGER NOT NULL DEFAULT 0,
    last_updated_at TIMESTAMP
);

-- Beliefs derived from memories
CREATE TABLE IF NOT EXISTS beliefs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    content TEXT NOT NULL,
    belief_type TEXT NOT NULL,
    confidence REAL NOT NULL,
    status TEXT NOT NULL DEFAULT 'active'
        CHECK (status IN ('active', 'conflicted', 'resolved')),
    reinforcement_count INTEGER NOT NULL DEFAULT 0,
    first_extracted_at TIMESTAMP NOT NULL,
    last_reinforced_at TIMESTAMP,
    updated_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS belief_evidence (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    belief_id INTEGER NOT NULL REFERENCES beliefs(id),
    memory_id INTEGER NOT NULL REFERENCES memories(id),
    support_type TEXT NOT NULL CHECK (support_type IN ('supports', 'contradicts', 'nuances')),
    strength REAL NOT NULL DEFAULT 0.5,
    created_at TIMESTAMP NOT NULL,
    UNIQUE (belief_id, memory_id)
);

CREATE TABLE IF NOT EXISTS belief_conflicts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    belief_a_id INTEGER NOT NULL REFERENCES beliefs(id),
    belief_b_id INTEGER NOT NULL REFERENCES beliefs(id),
    conflict_type TEXT NOT NULL,
    explanation TEXT,
    resolved BOOLEAN NOT NULL DEFAULT 0,
    resolution_notes TEXT,
    created_at TIMESTAMP NOT NULL,
    resolved_at TIMESTAMP,
    UNIQUE (belief_a_id, belief_b_id)
);

-- Mined artifacts
CREATE TABLE IF NOT EXISTS patterns (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    content TEXT NOT NULL,
    pattern_type TEXT NOT NULL,
    confidence REAL NOT NULL,
    frequency REAL NOT NULL DEFAULT 0.5,
    time_of_day TEXT,
    day_of_week TEXT,
    status TEXT NOT NULL DEFAULT 'active'
        CHECK (status IN ('active', 'dormant', 'disproven')),
    observation_count INTEGER NOT NULL DEFAULT 1,
    first_detected_at TIMESTAMP NOT NULL,
    last_observed_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS pattern_evidence (
    pattern_id INTEGER NOT NULL REFERENCES patterns(id),
    memory_id INTEGER NOT NULL REFERENCES memories(id),
    created_at TIMESTAMP NOT NULL,
    PRIMARY KEY (pattern_id, memory_id)
);

CREATE TABLE IF NOT EXISTS insights (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    content TEXT NOT NULL,
    insight_type TEXT NOT NULL,
    priority TEXT NOT NULL DEFAULT 'medium',
    confidence REAL NOT NULL,
    status TEXT NOT NULL DEFAULT 'active'
        CHECK (status IN ('active', 'dismissed', 'actioned', 'stale')),
    validation_count INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMP NOT NULL,
    last_validated_at TIMESTAMP
);

CREATE TABLE IF NOT EXISTS insight_sources (
    insight_id INTEGER NOT NULL REFERENCES insights(id),
    source_type TEXT NOT NULL CHECK (source_type IN ('memory', 'belief', 'pattern')),
    source_id INTEGER NOT NULL,
    contribution TEXT NOT NULL DEFAULT 'supports',
    PRIMARY KEY (insight_id, source_type, source_id)
);

CREATE TABLE IF NOT EXISTS knowledge_gaps (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    topic TEXT NOT NULL,
    topic_key TEXT NOT NULL UNIQUE,
    description TEXT,
    priority TEXT NOT NULL DEFAULT 'medium',
    status TEXT NOT NULL DEFAULT 'open' CHECK (status IN ('open', 'filled')),
    created_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS research_questions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    gap_id INTEGER REFERENCES knowledge_gaps(id),
    question TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'asked', 'expired')),
    created_at TIMESTAMP NOT NULL,
    expires_at TIMESTAMP NOT NULL
);

-- Actionable artifacts
CREATE TABLE IF NOT EXISTS commitments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    description TEXT,
    due_at TIMESTAMP,
    all_day BOOLEAN NOT NULL DEFAULT 0,
    memory_id INTEGER REFERENCES memories(id),
    source_type TEXT NOT NULL DEFAULT 'chat',
    source_message_id INTEGER REFERENCES messages(id),
    status TEXT NOT NULL DEFAULT 'candidate'
        CHECK (status IN ('candidate', 'confirmed', 'resolved', 'dismissed')),
    resolution_notes TEXT,
    created_at TIMESTAMP NOT NULL,
    resolved_at TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_commitments_source_message ON commitments(source_message_id);

CREATE TABLE IF NOT EXISTS reminders (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    body TEXT,
    delay_minutes INTEGER,
    scheduled_at TIMESTAMP,
    remind_at TIMESTAMP NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'sent', 'cancelled')),
    source_message_id INTEGER REFERENCES messages(id),
    created_at TIMESTAMP NOT NULL,
    CHECK ((delay_minutes IS NULL) <> (scheduled_at IS NULL))
);

CREATE INDEX IF NOT EXISTS idx_reminders_due ON reminders(status, remind_at);

CREATE TABLE IF NOT EXISTS entities (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    entity_type TEXT NOT NULL DEFAULT 'person',
    created_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS notes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT,
    content TEXT NOT NULL,
    category TEXT,
    entity_id INTEGER REFERENCES entities(id),
    source_type TEXT NOT NULL DEFAULT 'chat',
    created_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS lists (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    list_type TEXT NOT NULL DEFAULT 'checklist',
    entity_id INTEGER REFERENCES entities(id),
    created_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS list_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    list_id INTEGER NOT NULL REFERENCES lists(id),
    content TEXT NOT NULL,
    is_completed BOOLEAN NOT NULL DEFAULT 0,
    sort_order INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMP NOT NULL
);

-- Singleton identity record (id is always 1)
CREATE TABLE IF NOT EXISTS user_identity (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    name TEXT NOT NULL,
    is_locked BOOLEAN NOT NULL DEFAULT 1,
    locked_at TIMESTAMP,
    source TEXT NOT NULL DEFAULT 'auto_detection',
    previous_names JSON NOT NULL DEFAULT '[]',
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL
);

-- Key/value engine state
CREATE TABLE IF NOT EXISTS state (
    key TEXT PRIMARY KEY,
    value JSON,
    updated_at TIMESTAMP
);
"""

# Migration SQL for v1 -> v2 (indexed duplicate lookup for relationship facts)
MIGRATION_V2_SQL = """
ALTER TABLE memories ADD COLUMN content_key TEXT NOT NULL DEFAULT '';
ALTER TABLE memories ADD COLUMN content_hash TEXT NOT NULL DEFAULT '';
CREATE INDEX IF NOT EXISTS idx_memories_content_key ON memories(content_key, created_at);
CREATE INDEX IF NOT EXISTS idx_memories_content_hash ON memories(content_hash, created_at);
"""

# Migration SQL for v2 -> v3 (consolidation bookkeeping so re-runs are no-ops)
MIGRATION_V3_SQL = """
ALTER TABLE memories ADD COLUMN last_decayed_at TIMESTAMP;
ALTER TABLE memories ADD COLUMN last_strengthened_at TIMESTAMP;
ALTER TABLE memories ADD COLUMN edges_scanned_at TIMESTAMP;
ALTER TABLE memories ADD COLUMN patterns_analyzed_at TIMESTAMP;
ALTER TABLE memory_edges ADD COLUMN last_decayed_at TIMESTAMP;
"""

# Migration SQL for v3 -> v4 (commitments remember the message that produced them)
MIGRATION_V4_SQL = """
ALTER TABLE commitments ADD COLUMN source_message_id INTEGER REFERENCES messages(id);
CREATE INDEX IF NOT EXISTS idx_commitments_source_message ON commitments(source_message_id);
"""


class Database:
    """SQLite database manager with WAL mode and thread-safe connections."""

    def __init__(
        self,
        db_path: Path,
        busy_timeout_ms: int = 10000,
    ):
        """
        Initialize the database.

        Args:
            db_path: Path to the SQLite database file
            busy_timeout_ms: Timeout for busy/locked database
        """
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms
        self._initialized = False

    def initialize(self) -> bool:
        """
        Initialize the database: create file, set WAL mode, apply schema.

        Returns:
            True if successful, False otherwise
        """
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

            log_section("Initializing database", "📁")
            log_config("Path", str(self.db_path), indent=1)

            with self.get_connection() as conn:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("PRAGMA synchronous=NORMAL")
                conn.execute(f"PRAGMA busy_timeout={self.busy_timeout_ms}")

                cursor = conn.execute(
                    "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
                )
                if cursor.fetchone() is None:
                    # Fresh database, apply full schema
                    conn.executescript(SCHEMA_SQL)
                    conn.execute(
                        "INSERT INTO schema_version (version) VALUES (?)",
                        (SCHEMA_VERSION,)
                    )
                    log_config("Schema", f"Created (v{SCHEMA_VERSION})", indent=1)
                else:
                    cursor = conn.execute("SELECT MAX(version) FROM schema_version")
                    current_version = cursor.fetchone()[0] or 0
                    if current_version < SCHEMA_VERSION:
                        self._apply_migrations(conn, current_version)
                    log_config("Schema", f"Version {current_version}", indent=1)

                cursor = conn.execute("PRAGMA journal_mode")
                mode = cursor.fetchone()[0]
                log_config("Mode", f"{mode.upper()} (Write-Ahead Logging)", indent=1)

            log_success("Database ready")
            self._initialized = True
            return True

        except Exception as e:
            log_error(f"Database initialization failed: {e}")
            return False

    def _apply_migrations(self, conn: sqlite3.Connection, from_version: int) -> None:
        """
        Apply schema migrations from from_version to SCHEMA_VERSION.

        Raises:
            RuntimeError: If any migration fails - we fail hard to prevent
                          running with a broken/inconsistent schema.
        """
        try:
            if from_version < 2:
                log_config("Applying migration", "v1 → v2 (memory content keys)", indent=1)
                conn.executescript(MIGRATION_V2_SQL)

            if from_version < 3:
                log_config("Applying migration", "v2 → v3 (consolidation bookkeeping)", indent=1)
                conn.executescript(MIGRATION_V3_SQL)

            if from_version < 4:
                log_config("Applying migration", "v3 → v4 (commitment source messages)", indent=1)
                conn.executescript(MIGRATION_V4_SQL)

            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,)
            )
            log_config("Migration", f"v{from_version} → v{SCHEMA_VERSION}", indent=1)

        except Exception as e:
            log_error(f"Migration failed (v{from_version} → v{SCHEMA_VERSION}): {e}")
            raise RuntimeError(
                f"Database migration failed: {e}. "
                f"Please fix the database or delete it to start fresh."
            ) from e

    @contextmanager
    def get_connection(self) -> sqlite3.Connection:
        """
        Get a database connection with proper configuration.

        Yields:
            Configured SQLite connection
        """
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.busy_timeout_ms / 1000,
            check_same_thread=False
        )
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def execute(
        self,
        sql: str,
        params: Tuple = (),
        fetch: bool = False
    ) -> Optional[List[sqlite3.Row]]:
        """
        Execute a SQL statement.

        Args:
            sql: SQL statement
            params: Parameters for the statement
            fetch: Whether to fetch and return results

        Returns:
            List of rows if fetch=True, None otherwise
        """
        with self.get_connection() as conn:
            cursor = conn.execute(sql, params)
            if fetch:
                return cursor.fetchall()
            return None

    def execute_write(self, sql: str, params: Tuple = ()) -> int:
        """
        Execute a write statement and return the number of affected rows.

        Conditional writes (``UPDATE ... WHERE status = 'pending'``) use the
        row count to learn whether they won.
        """
        with self.get_connection() as conn:
            cursor = conn.execute(sql, params)
            return cursor.rowcount

    def execute_insert(self, sql: str, params: Tuple = ()) -> Optional[int]:
        """Execute an INSERT and return the new row id."""
        with self.get_connection() as conn:
            cursor = conn.execute(sql, params)
            return cursor.lastrowid

    def execute_many(self, sql: str, params_list: List[Tuple]) -> None:
        """Execute a SQL statement with multiple parameter sets."""
        with self.get_connection() as conn:
            conn.executemany(sql, params_list)

    def get_state(self, key: str, default: Any = None) -> Any:
        """Get a value from the state table."""
        result = self.execute(
            "SELECT value FROM state WHERE key = ?",
            (key,),
            fetch=True
        )
        if result:
            value = result[0]["value"]
            # SQLite 3.38+ may return native types from JSON columns
            if isinstance(value, str):
                return json.loads(value)
            return value
        return default

    def set_state(self, key: str, value: Any) -> None:
        """Set a value in the state table."""
        now = datetime.now().isoformat()
        self.execute(
            """
            INSERT INTO state (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """,
            (key, json.dumps(value), now)
        )

    def get_stats(self) -> dict:
        """Get database statistics."""
        stats = {}

        with self.get_connection() as conn:
            for table in ("conversations", "messages", "memories", "memory_edges",
                          "beliefs", "patterns", "insights", "commitments", "reminders"):
                cursor = conn.execute(f"SELECT COUNT(*) FROM {table}")
                stats[f"total_{table}"] = cursor.fetchone()[0]

            cursor = conn.execute(
                "SELECT COUNT(*) FROM messages WHERE extraction_status = 'pending' AND role = 'user'"
            )
            stats["pending_messages"] = cursor.fetchone()[0]

        return stats


def init_database(db_path: Path, busy_timeout_ms: int = 10000) -> Optional[Database]:
    """Open and migrate the store. Returns None if setup failed."""
    db = Database(db_path, busy_timeout_ms)
    if not db.initialize():
        return None
    return db
