"""
Keepsake - Consolidation Coordinator
Periodic job: batch extraction, then graph maintenance and mining

Steps, in order:
    1. Batch extraction of pending chat messages
    2. Embed memories stored while the embedding model was unavailable
    3. Memory strength (decay / strengthen)
    4. Similarity edges (form / reinforce / decay / prune)
    5. Patterns (new from unanalysed memories, dormancy for idle ones)
    6. Living summaries for newly linked memories
    7. Insights (only when beliefs, patterns or memories changed)
    8. Knowledge gaps and questions (only when summaries or memories changed)

Summaries run before insights and research because both of those watch
summary versions and memory ids; a second run with nothing new therefore
finds every input marker unchanged and writes nothing.

Runs are triggered by ConsolidationScheduler: after a quiet period with no
new messages, or explicitly. At most one run is active; triggers arriving
during a run collapse into a single re-run.
"""

import threading
import time
from dataclasses import dataclass, field, asdict
from typing import Optional, List, Dict, Any, Callable

import config
from core.context import EngineContext
from core.exceptions import ProviderUnavailableError
from core.logger import log_info, log_success, log_warning, log_error, log_section
from memory.vector_store import MemoryStore
from memory.strength import StrengthProcessor
from memory.edges import EdgeManager
from memory.patterns import PatternService
from memory.categories import CategoryService
from memory.insights import InsightService
from memory.research import ResearchService
from memory.beliefs import BeliefService
from extraction.batch import BatchExtractionCoordinator


@dataclass
class ConsolidationResult:
    """Counts from one consolidation run."""
    conversations_processed: int = 0
    messages_processed: int = 0
    memories_created: int = 0
    commitments_created: int = 0
    commitments_resolved: int = 0
    reminders_created: int = 0
    beliefs_created: int = 0
    beliefs_reinforced: int = 0
    memories_embedded: int = 0
    memories_decayed: int = 0
    memories_strengthened: int = 0
    edges_created: int = 0
    edges_reinforced: int = 0
    edges_decayed: int = 0
    edges_pruned: int = 0
    patterns_created: int = 0
    patterns_reinforced: int = 0
    patterns_dormant: int = 0
    summaries_updated: int = 0
    insights_created: int = 0
    insights_validated: int = 0
    insights_stale: int = 0
    gaps_created: int = 0
    gaps_filled: int = 0
    questions_created: int = 0
    questions_expired: int = 0
    duration_ms: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ConsolidationCoordinator:
    """
    Runs one consolidation pass over the whole store.

    Owns the scheduler that decides when passes run.
    """

    def __init__(
        self,
        ctx: EngineContext,
        extractor: Optional[BatchExtractionCoordinator] = None,
        idle_seconds: float = config.CONSOLIDATION_IDLE_SECONDS
    ):
        self.ctx = ctx
        self.extractor = extractor or BatchExtractionCoordinator(ctx)
        self.memories = MemoryStore(ctx)
        self.strength = StrengthProcessor(ctx)
        self.edges = EdgeManager(ctx)
        self.patterns = PatternService(ctx)
        self.categories = CategoryService(ctx)
        self.insights = InsightService(ctx)
        self.research = ResearchService(ctx)
        self.beliefs = BeliefService(ctx)
        self.scheduler = ConsolidationScheduler(self.run_consolidation, idle_seconds=idle_seconds)

    def run_consolidation(self) -> ConsolidationResult:
        """
        Run every consolidation step once.

        Failures inside a maintenance step are recorded in ``errors`` and
        the remaining steps still run.

        Raises:
            ProviderUnavailableError: Extraction could not reach the provider.
                Conversations finished before the outage keep their results.
        """
        started = time.monotonic()
        result = ConsolidationResult()

        with self.ctx.locks.acquire("consolidation"):
            log_section("Consolidation", "🌙")

            extraction = self.extractor.extract_pending()
            result.conversations_processed = extraction.conversations_processed
            result.messages_processed = extraction.messages_processed
            result.memories_created = extraction.memories_created
            result.commitments_created = extraction.commitments_created
            result.commitments_resolved = extraction.commitments_resolved
            result.reminders_created = extraction.reminders_created
            result.beliefs_created = extraction.beliefs_created
            result.beliefs_reinforced = extraction.beliefs_reinforced
            result.errors.extend(extraction.errors)

            self._step(result, "embeddings", lambda: self._embed(result))
            self._step(result, "strength", lambda: self._strength(result))
            self._step(result, "edges", lambda: self._edges(result))
            self._step(result, "patterns", lambda: self._patterns(result))
            self._step(result, "summaries", lambda: self._summaries(result))
            self._step(result, "insights", lambda: self._insights(result))
            self._step(result, "research", lambda: self._research(result))

        result.duration_ms = int((time.monotonic() - started) * 1000)
        log_success(
            f"Consolidation complete in {result.duration_ms}ms: "
            f"{result.memories_created} memories, {result.edges_created} edges created, "
            f"{result.edges_pruned} pruned, {result.patterns_created} patterns, "
            f"{result.insights_created} insights"
            + (f", {len(result.errors)} error(s)" if result.errors else "")
        )
        return result

    def _step(self, result: ConsolidationResult, name: str, func: Callable[[], None]) -> None:
        try:
            func()
        except Exception as e:
            log_error(f"Consolidation step '{name}' failed: {e}")
            result.errors.append(f"{name}: {e}")

    def _embed(self, result: ConsolidationResult) -> None:
        result.memories_embedded = self.memories.embed_missing()

    def _strength(self, result: ConsolidationResult) -> None:
        result.memories_decayed, result.memories_strengthened = self.strength.process()

    def _edges(self, result: ConsolidationResult) -> None:
        edges = self.edges.process()
        result.edges_created = edges.created
        result.edges_reinforced = edges.reinforced
        result.edges_decayed = edges.decayed
        result.edges_pruned = edges.pruned

    def _patterns(self, result: ConsolidationResult) -> None:
        patterns = self.patterns.process_unanalyzed()
        result.patterns_created = len(patterns.created)
        result.patterns_reinforced = len(patterns.reinforced)
        result.patterns_dormant = self.patterns.mark_stale_dormant()

    def _summaries(self, result: ConsolidationResult) -> None:
        result.summaries_updated = len(self.categories.update_all_summaries())

    def _insights(self, result: ConsolidationResult) -> None:
        insights = self.insights.process()
        result.insights_created = len(insights.created)
        result.insights_validated = len(insights.validated)
        result.insights_stale = insights.stale

    def _research(self, result: ConsolidationResult) -> None:
        research = self.research.process()
        result.gaps_created = len(research.gaps_created)
        result.gaps_filled = len(research.gaps_filled)
        result.questions_created = len(research.questions_created)
        result.questions_expired = research.questions_expired

    def get_consolidation_stats(self) -> Dict[str, Any]:
        """Extraction backlog plus graph and mining totals."""
        stats: Dict[str, Any] = {}
        stats.update(self.extractor.get_extraction_stats())
        stats.update(self.strength.get_stats())
        stats.update(self.edges.get_edge_stats())
        stats["patterns"] = self.patterns.get_pattern_stats()
        stats["beliefs"] = self.beliefs.get_belief_stats()
        stats["commitments"] = self.extractor.commitments.count_by_status()
        stats["memories"] = self.memories.get_memory_count()
        return stats


class ConsolidationScheduler:
    """
    Debounced, single-flight trigger for consolidation runs.

    ``notify_activity()`` (re)starts a one-slot idle timer; when it fires a
    run starts. ``trigger_now()`` skips the wait. Only one run is active at
    a time: triggers arriving during a run set a flag, and exactly one
    follow-up run happens when the current one finishes.
    """

    def __init__(
        self,
        run: Callable[[], ConsolidationResult],
        idle_seconds: float = config.CONSOLIDATION_IDLE_SECONDS,
        on_complete: Optional[Callable[[ConsolidationResult], None]] = None
    ):
        self._run = run
        self.idle_seconds = idle_seconds
        self.on_complete = on_complete
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()
        self._running = False
        self._rerun_requested = False
        self._idle = threading.Event()
        self._idle.set()
        self.runs_completed = 0
        self.last_result: Optional[ConsolidationResult] = None
        self.last_error: Optional[Exception] = None

    def notify_activity(self) -> None:
        """A message arrived: restart the idle countdown."""
        with self._lock:
            self._cancel_locked()
            self._timer = threading.Timer(self.idle_seconds, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def trigger_now(self, background: bool = True) -> None:
        """
        Start a run without waiting for the idle timer.

        Args:
            background: Run on a daemon thread instead of the caller's
        """
        with self._lock:
            self._cancel_locked()
        if background:
            threading.Thread(target=self._fire, daemon=True, name="consolidation").start()
        else:
            self._fire()

    def cancel(self) -> bool:
        """
        Cancel the pending idle timer. A run in progress is not interrupted.

        Returns:
            True if a timer was cancelled
        """
        with self._lock:
            return self._cancel_locked()

    def _cancel_locked(self) -> bool:
        """Cancel the pending timer (must hold self._lock)."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
            return True
        return False

    def has_pending(self) -> bool:
        with self._lock:
            return self._timer is not None or self._rerun_requested

    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def wait_for_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no run is active. Returns False on timeout."""
        return self._idle.wait(timeout)

    def _fire(self) -> None:
        with self._lock:
            self._timer = None
            if self._running:
                self._rerun_requested = True
                log_info("Consolidation already running, queued one re-run", prefix="🌙")
                return
            self._running = True
            self._idle.clear()

        while True:
            self._run_once()
            with self._lock:
                if self._rerun_requested:
                    self._rerun_requested = False
                    continue
                self._running = False
                self._idle.set()
                return

    def _run_once(self) -> None:
        try:
            result = self._run()
        except ProviderUnavailableError as e:
            self.last_error = e
            log_warning(f"Consolidation stopped, provider unavailable ({e.error_type}): {e}")
            return
        except Exception as e:
            self.last_error = e
            log_error(f"Consolidation run failed: {e}")
            return

        self.runs_completed += 1
        self.last_result = result
        self.last_error = None
        if self.on_complete is not None:
            try:
                self.on_complete(result)
            except Exception as e:
                log_warning(f"Consolidation completion callback failed: {e}")
