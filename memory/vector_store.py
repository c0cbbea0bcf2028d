"""
Keepsake - Memory Store
Memory records, access tracking, duplicate lookup and embedding catch-up
"""

import hashlib
import json
import re
from datetime import datetime, date, timedelta
from typing import Optional, List, Dict, Any
from dataclasses import dataclass

import numpy as np

import config
from core.context import EngineContext
from core.embeddings import (
    get_embedding,
    get_embeddings_batch,
    embedding_to_bytes,
    bytes_to_embedding,
    is_model_loaded
)
from concurrency.db_retry import db_retry
from core.logger import log_info, log_warning

_WHITESPACE = re.compile(r'\s+')
_EDGE_PUNCTUATION = re.compile(r'^[\s\W_]+|[\s\W_]+$')

DEDUP_STRATEGIES = ("normalized", "hash", "substring")


def normalize_content(content: str) -> str:
    """Lowercase, collapse whitespace and trim surrounding punctuation."""
    key = _WHITESPACE.sub(" ", content.lower())
    return _EDGE_PUNCTUATION.sub("", key)


def content_hash(content: str) -> str:
    """SHA-1 of the normalized content."""
    return hashlib.sha1(normalize_content(content).encode("utf-8")).hexdigest()


@dataclass
class DuplicatePolicy:
    """
    How relationship facts are matched against recent memories.

    Attributes:
        window_days: Only memories created this recently count as duplicates
        strategy: 'normalized' (equal content_key), 'hash' (equal
            content_hash) or 'substring' (either text contains the other)
    """
    window_days: int = config.RELATIONSHIP_DEDUP_WINDOW_DAYS
    strategy: str = config.RELATIONSHIP_DEDUP_STRATEGY

    def __post_init__(self):
        if self.strategy not in DEDUP_STRATEGIES:
            raise ValueError(f"Unknown duplicate strategy: {self.strategy}")


@dataclass
class Memory:
    """
    A stored memory.

    Attributes:
        id: Database primary key
        content: The memory text
        memory_type: 'fact', 'decision', 'goal', 'event', 'preference' or 'identity'
        source: Where it came from ('chat', 'realtime_identity', ...)
        source_metadata: Conversation id, extraction type, salience hint
        salience_score: Importance 0-10
        event_date: Calendar date the memory describes, if any
        embedding: Vector embedding, None until the model has embedded it
        current_strength: Decaying activation 0.1-1.0
        access_count: Number of times retrieved
        last_accessed_at: When last retrieved
        created_at: When stored
    """
    id: int
    content: str
    memory_type: Optional[str]
    source: str
    source_metadata: Dict[str, Any]
    salience_score: float
    event_date: Optional[date]
    embedding: Optional[np.ndarray]
    current_strength: float
    access_count: int
    last_accessed_at: Optional[datetime]
    created_at: datetime


class MemoryStore:
    """
    Stores memories, their access history and duplicate lookups.

    Memories are stored even when the embedding model is not loaded; the
    consolidation edge pass embeds them later.
    """

    def __init__(self, ctx: EngineContext):
        self.ctx = ctx

    @db_retry()
    def add_memory(
        self,
        content: str,
        memory_type: Optional[str] = None,
        source: str = "chat",
        source_metadata: Optional[Dict[str, Any]] = None,
        salience: float = config.DEFAULT_SALIENCE
    ) -> int:
        """
        Add a new memory.

        Args:
            content: The memory text
            memory_type: Memory type
            source: Source tag
            source_metadata: Extra provenance stored as JSON
            salience: Initial salience (clamped to 0-10)

        Returns:
            The new memory ID
        """
        embedding = get_embedding(content) if is_model_loaded() else None
        salience = max(0.0, min(10.0, float(salience)))

        with self.ctx.locks.acquire("memory"):
            return self.ctx.db.execute_insert(
                """
                INSERT INTO memories
                (content, content_key, content_hash, memory_type, source,
                 source_metadata, salience_score, embedding, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    content,
                    normalize_content(content),
                    content_hash(content),
                    memory_type,
                    source,
                    json.dumps(source_metadata or {}),
                    salience,
                    embedding_to_bytes(embedding) if embedding is not None else None,
                    self.ctx.now_iso()
                )
            )

    @db_retry()
    def find_duplicate(self, content: str, policy: Optional[DuplicatePolicy] = None) -> Optional[int]:
        """
        Look for an equivalent memory created within the policy window.

        Returns:
            ID of the most recent match, or None
        """
        policy = policy or DuplicatePolicy()
        since = (self.ctx.now() - timedelta(days=policy.window_days)).isoformat()
        key = normalize_content(content)

        if policy.strategy == "normalized":
            sql = "SELECT id FROM memories WHERE content_key = ? AND created_at >= ?"
            params = (key, since)
        elif policy.strategy == "hash":
            sql = "SELECT id FROM memories WHERE content_hash = ? AND created_at >= ?"
            params = (content_hash(content), since)
        else:
            sql = """
                SELECT id FROM memories
                WHERE created_at >= ?
                  AND (instr(content_key, ?) > 0 OR instr(?, content_key) > 0)
                  AND content_key != ''
            """
            params = (since, key, key)

        result = self.ctx.db.execute(sql + " ORDER BY created_at DESC LIMIT 1", params, fetch=True)
        return result[0]["id"] if result else None

    @db_retry()
    def get_memory(self, memory_id: int) -> Optional[Memory]:
        """Get a specific memory by ID."""
        result = self.ctx.db.execute(
            "SELECT * FROM memories WHERE id = ?",
            (memory_id,),
            fetch=True
        )
        return self._row_to_memory(result[0]) if result else None

    @db_retry()
    def get_memories(self, memory_ids: List[int]) -> List[Memory]:
        if not memory_ids:
            return []
        placeholders = ",".join("?" * len(memory_ids))
        result = self.ctx.db.execute(
            f"SELECT * FROM memories WHERE id IN ({placeholders}) ORDER BY id",
            tuple(memory_ids),
            fetch=True
        )
        return [self._row_to_memory(row) for row in result]

    @db_retry()
    def get_memory_count(self) -> int:
        result = self.ctx.db.execute("SELECT COUNT(*) AS count FROM memories", fetch=True)
        return result[0]["count"] if result else 0

    @db_retry()
    def update_salience(self, memory_id: int, salience: float) -> None:
        self.ctx.db.execute(
            "UPDATE memories SET salience_score = ? WHERE id = ?",
            (max(0.0, min(10.0, salience)), memory_id)
        )

    @db_retry()
    def set_event_date(self, memory_id: int, event_date: date) -> None:
        self.ctx.db.execute(
            "UPDATE memories SET event_date = ? WHERE id = ?",
            (event_date.isoformat(), memory_id)
        )

    @db_retry()
    def record_access(self, memory_ids: List[int]) -> None:
        """Bump access counters for retrieved memories."""
        if not memory_ids:
            return
        placeholders = ",".join("?" * len(memory_ids))
        self.ctx.db.execute(
            f"""
            UPDATE memories
            SET access_count = access_count + 1, last_accessed_at = ?
            WHERE id IN ({placeholders})
            """,
            (self.ctx.now_iso(), *memory_ids)
        )

    @db_retry()
    def embed_missing(self, limit: int = config.EDGE_SCAN_BATCH) -> int:
        """
        Embed memories stored while the model was unavailable.

        Returns:
            Number of memories embedded
        """
        if not is_model_loaded():
            return 0

        rows = self.ctx.db.execute(
            "SELECT id, content FROM memories WHERE embedding IS NULL ORDER BY id LIMIT ?",
            (limit,),
            fetch=True
        )
        if not rows:
            return 0

        vectors = get_embeddings_batch([row["content"] for row in rows])
        if vectors is None:
            log_warning(f"Could not embed {len(rows)} memories")
            return 0

        embedded = 0
        for row, embedding in zip(rows, vectors):
            self.ctx.db.execute(
                "UPDATE memories SET embedding = ? WHERE id = ?",
                (embedding_to_bytes(embedding), row["id"])
            )
            embedded += 1

        if embedded:
            log_info(f"Embedded {embedded} memories", prefix="🧮")
        return embedded

    def _row_to_memory(self, row) -> Memory:
        created_at = row["created_at"]
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)

        last_accessed_at = row["last_accessed_at"]
        if isinstance(last_accessed_at, str):
            last_accessed_at = datetime.fromisoformat(last_accessed_at)

        event_date = row["event_date"]
        if isinstance(event_date, str):
            event_date = date.fromisoformat(event_date)

        metadata = row["source_metadata"]
        if isinstance(metadata, str):
            metadata = json.loads(metadata)

        return Memory(
            id=row["id"],
            content=row["content"],
            memory_type=row["memory_type"],
            source=row["source"],
            source_metadata=metadata or {},
            salience_score=row["salience_score"],
            event_date=event_date,
            embedding=bytes_to_embedding(row["embedding"]) if row["embedding"] else None,
            current_strength=row["current_strength"],
            access_count=row["access_count"],
            last_accessed_at=last_accessed_at,
            created_at=created_at
        )
