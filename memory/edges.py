"""
Keepsake - Similarity Graph
Forms, reinforces, decays and prunes SIMILAR edges between memories
"""

from datetime import timedelta
from typing import Optional, List, Dict, Any
from dataclasses import dataclass

import numpy as np

import config
from core.context import EngineContext
from core.embeddings import bytes_to_embedding, cosine_similarity_batch
from core.logger import log_info
from concurrency.db_retry import db_retry

EDGE_TYPE_SIMILAR = "SIMILAR"


@dataclass
class EdgeSettings:
    similarity_threshold: float = config.EDGE_SIMILARITY_THRESHOLD
    max_per_memory: int = config.EDGE_MAX_PER_MEMORY
    reinforce_amount: float = config.EDGE_REINFORCE_AMOUNT
    decay_rate: float = config.EDGE_DECAY_RATE
    decay_interval_hours: float = config.EDGE_DECAY_INTERVAL_HOURS
    min_weight: float = config.EDGE_MIN_WEIGHT
    scan_batch: int = config.EDGE_SCAN_BATCH


@dataclass
class EdgePassResult:
    created: int = 0
    reinforced: int = 0
    decayed: int = 0
    pruned: int = 0


def ordered_pair(a: int, b: int):
    """Edges are unordered; store them with the smaller id first."""
    return (a, b) if a < b else (b, a)


class EdgeManager:
    """
    Maintains the memory similarity graph incrementally.

    Only memories not yet scanned (``edges_scanned_at`` is NULL) are compared
    against the rest of the graph, so the work per run is proportional to the
    number of new memories rather than to the graph size.
    """

    def __init__(self, ctx: EngineContext, settings: Optional[EdgeSettings] = None):
        self.ctx = ctx
        self.settings = settings or EdgeSettings()

    def process(self) -> EdgePassResult:
        result = EdgePassResult()
        result.created = self.form_edges()
        result.reinforced = self.reinforce_edges()
        result.decayed = self.decay_edges()
        result.pruned = self.prune_edges()

        if result.created or result.reinforced or result.pruned:
            log_info(
                f"Edge pass: +{result.created} created, {result.reinforced} reinforced, "
                f"{result.decayed} decayed, {result.pruned} pruned",
                prefix="🕸️"
            )
        return result

    @db_retry()
    def form_edges(self) -> int:
        """Connect each unscanned, embedded memory to its nearest neighbours."""
        unscanned = self.ctx.db.execute(
            """
            SELECT id FROM memories
            WHERE edges_scanned_at IS NULL AND embedding IS NOT NULL
            ORDER BY id
            LIMIT ?
            """,
            (self.settings.scan_batch,),
            fetch=True
        )
        if not unscanned:
            return 0

        rows = self.ctx.db.execute(
            "SELECT id, embedding FROM memories WHERE embedding IS NOT NULL ORDER BY id",
            fetch=True
        )
        ids = np.array([row["id"] for row in rows])
        matrix = np.array([bytes_to_embedding(row["embedding"]) for row in rows])
        index = {memory_id: i for i, memory_id in enumerate(ids.tolist())}

        now = self.ctx.now_iso()
        created = 0
        for row in unscanned:
            memory_id = row["id"]
            scores = cosine_similarity_batch(matrix[index[memory_id]], matrix)
            scores[index[memory_id]] = -1.0

            order = np.argsort(-scores)[:self.settings.max_per_memory]
            for i in order:
                similarity = float(scores[i])
                if similarity < self.settings.similarity_threshold:
                    break
                source, target = ordered_pair(memory_id, int(ids[i]))
                created += self.ctx.db.execute_write(
                    """
                    INSERT OR IGNORE INTO memory_edges
                        (source_memory_id, target_memory_id, edge_type, weight, similarity, created_at)
                    VALUES (?, ?, ?, 1.0, ?, ?)
                    """,
                    (source, target, EDGE_TYPE_SIMILAR, similarity, now)
                )

            self.ctx.db.execute(
                "UPDATE memories SET edges_scanned_at = ? WHERE id = ?",
                (now, memory_id)
            )

        return created

    @db_retry()
    def reinforce_edges(self) -> int:
        """Strengthen edges whose two memories were both accessed since the last reinforcement."""
        now = self.ctx.now_iso()
        return self.ctx.db.execute_write(
            """
            UPDATE memory_edges
            SET weight = MIN(1.0, weight + ?),
                reinforcement_count = reinforcement_count + 1,
                last_reinforced_at = ?
            WHERE id IN (
                SELECT e.id FROM memory_edges e
                JOIN memories s ON s.id = e.source_memory_id
                JOIN memories t ON t.id = e.target_memory_id
                WHERE s.last_accessed_at > COALESCE(e.last_reinforced_at, e.created_at)
                  AND t.last_accessed_at > COALESCE(e.last_reinforced_at, e.created_at)
            )
            """,
            (self.settings.reinforce_amount, now)
        )

    @db_retry()
    def decay_edges(self) -> int:
        """Weaken edges idle for a full interval, at most once per interval."""
        now = self.ctx.now()
        cutoff = (now - timedelta(hours=self.settings.decay_interval_hours)).isoformat()
        return self.ctx.db.execute_write(
            """
            UPDATE memory_edges
            SET weight = MAX(?, weight - ?), last_decayed_at = ?
            WHERE COALESCE(last_reinforced_at, created_at) <= ?
              AND (last_decayed_at IS NULL OR last_decayed_at <= ?)
            """,
            (self.settings.min_weight, self.settings.decay_rate, now.isoformat(), cutoff, cutoff)
        )

    @db_retry()
    def prune_edges(self) -> int:
        return self.ctx.db.execute_write(
            "DELETE FROM memory_edges WHERE weight <= ?",
            (self.settings.min_weight + 1e-9,)
        )

    @db_retry()
    def get_related_memories(self, memory_id: int, min_weight: float = 0.2, limit: int = 10) -> List[Dict[str, Any]]:
        result = self.ctx.db.execute(
            """
            SELECT m.id, m.content, e.weight AS edge_weight, e.similarity AS edge_similarity
            FROM memory_edges e
            JOIN memories m ON m.id = CASE
                WHEN e.source_memory_id = ? THEN e.target_memory_id
                ELSE e.source_memory_id
            END
            WHERE (e.source_memory_id = ? OR e.target_memory_id = ?)
              AND e.weight >= ?
            ORDER BY e.weight DESC, e.similarity DESC
            LIMIT ?
            """,
            (memory_id, memory_id, memory_id, min_weight, limit),
            fetch=True
        )
        return [dict(row) for row in result]

    @db_retry()
    def get_edge_stats(self) -> Dict[str, Any]:
        row = self.ctx.db.execute(
            "SELECT COUNT(*) AS total, AVG(weight) AS avg_weight, AVG(similarity) AS avg_similarity FROM memory_edges",
            fetch=True
        )[0]
        return {
            "total_edges": row["total"],
            "average_weight": row["avg_weight"] if row["avg_weight"] is not None else 0.0,
            "average_similarity": row["avg_similarity"] if row["avg_similarity"] is not None else 0.0,
        }
