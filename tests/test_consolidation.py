"""
Tests for consolidation: the full pass, its maintenance steps and the scheduler.
"""

import threading
import time
import unittest

import numpy as np

from core.embeddings import embedding_to_bytes
from core.exceptions import ProviderUnavailableError
from memory.consolidation import ConsolidationCoordinator, ConsolidationScheduler, ConsolidationResult
from memory.edges import EdgeManager, EdgeSettings
from memory.strength import StrengthProcessor
from memory.vector_store import MemoryStore
from engine_fixtures import (
    FakeLLM,
    make_context,
    add_user_messages,
    count,
    EXTRACTION,
    COMMITMENT,
    CATEGORIES,
    SUMMARY,
    PATTERNS,
    INSIGHTS,
    GAPS,
    QUESTIONS
)


def scripted_llm() -> FakeLLM:
    llm = FakeLLM()
    llm.on(EXTRACTION, [
        {"content": "Brian needs to ship the release by Friday", "type": "goal", "salience_hint": 6}
    ])
    llm.on(COMMITMENT, {
        "is_commitment": True, "title": "Ship the release", "due_at": "2025-03-14", "all_day": True
    })
    llm.on(CATEGORIES, [{"category": "goals", "relevance": 0.9, "reason": "A deadline"}])
    llm.on(SUMMARY, "Brian is racing to ship a release by Friday.")
    llm.on(PATTERNS, [
        {"content": "Works in bursts before deadlines", "pattern_type": "behavioral",
         "confidence": 0.6, "frequency": 0.4, "day_of_week": "weekday"}
    ])
    llm.on(INSIGHTS, [
        {"content": "Deadline bursts may be crowding out rest", "insight_type": "warning",
         "priority": "high", "confidence": 0.7, "sources": [{"type": "pattern", "id": 1}, {"type": "pattern", "id": 99}]}
    ])
    llm.on(GAPS, {
        "new_gaps": [{"topic": "Family", "description": "Nothing known about family", "priority": "high"}],
        "filled_gap_ids": []
    })
    llm.on(QUESTIONS, [{"gap_id": 1, "question": "Who are the people closest to you?"}])
    return llm


class TestFullRun(unittest.TestCase):

    def setUp(self):
        self.llm = scripted_llm()
        self.ctx = make_context(self, self.llm)
        self.coordinator = ConsolidationCoordinator(self.ctx)
        add_user_messages(self.ctx, "I need to ship this by Friday")

    def test_first_run_touches_every_step(self):
        result = self.coordinator.run_consolidation()

        self.assertEqual(result.errors, [])
        self.assertEqual(result.memories_created, 1)
        self.assertEqual(result.commitments_created, 1)
        self.assertEqual(result.patterns_created, 1)
        self.assertEqual(result.summaries_updated, 1)
        self.assertEqual(result.insights_created, 1)
        self.assertEqual(result.gaps_created, 1)
        self.assertEqual(result.questions_created, 1)
        self.assertEqual(result.memories_embedded, 0)

        self.assertEqual(count(self.ctx, "pattern_evidence"), 1)
        self.assertEqual(count(self.ctx, "insight_sources"), 1)
        self.assertEqual(
            self.coordinator.categories.get_summary("goals").content,
            "Brian is racing to ship a release by Friday."
        )

    def test_second_run_with_nothing_new_does_nothing(self):
        self.coordinator.run_consolidation()
        calls_after_first = len(self.llm.calls)

        second = self.coordinator.run_consolidation()

        self.assertEqual(len(self.llm.calls), calls_after_first)
        counts = second.to_dict()
        counts.pop("duration_ms")
        self.assertEqual(counts.pop("errors"), [])
        self.assertEqual({k: v for k, v in counts.items() if v}, {})

    def test_new_memory_reopens_mining(self):
        self.coordinator.run_consolidation()
        MemoryStore(self.ctx).add_memory("Brian started running again", memory_type="event")

        second = self.coordinator.run_consolidation()

        self.assertEqual(len(self.llm.calls_for(INSIGHTS)), 2)
        self.assertEqual(len(self.llm.calls_for(GAPS)), 2)
        self.assertEqual(second.insights_created, 0)
        self.assertEqual(second.insights_validated, 1)
        self.assertEqual(second.gaps_created, 0)

    def test_failing_step_is_recorded_and_the_rest_run(self):
        def broken():
            raise RuntimeError("pattern table locked")

        self.coordinator.patterns.process_unanalyzed = broken
        result = self.coordinator.run_consolidation()

        self.assertEqual(len(result.errors), 1)
        self.assertIn("patterns", result.errors[0])
        self.assertEqual(result.summaries_updated, 1)
        self.assertEqual(result.gaps_created, 1)

    def test_provider_outage_stops_the_run(self):
        self.llm.fail(EXTRACTION, "overloaded")
        with self.assertRaises(ProviderUnavailableError):
            self.coordinator.run_consolidation()
        self.assertEqual(self.llm.calls_for(PATTERNS), [])
        self.assertEqual(count(self.ctx, "messages", "extraction_status = 'pending'"), 1)

    def test_stats(self):
        self.coordinator.run_consolidation()
        stats = self.coordinator.get_consolidation_stats()
        self.assertEqual(stats["pending_messages"], 0)
        self.assertEqual(stats["extracted_messages"], 1)
        self.assertEqual(stats["memories"], 1)
        self.assertEqual(stats["commitments"]["candidate"], 1)
        self.assertEqual(stats["patterns"]["active"], 1)


class TestStrength(unittest.TestCase):

    def setUp(self):
        self.ctx = make_context(self)
        self.memories = MemoryStore(self.ctx)
        self.strength = StrengthProcessor(self.ctx)
        self.memory_id = self.memories.add_memory("Brian likes quiet mornings", memory_type="preference")

    def test_decays_at_most_once_per_interval(self):
        self.assertEqual(self.strength.process(), (0, 0))

        self.ctx.clock.advance(hours=25)
        self.assertEqual(self.strength.process(), (1, 0))
        after_first = self.memories.get_memory(self.memory_id).current_strength
        self.assertLess(after_first, 1.0)

        self.assertEqual(self.strength.process(), (0, 0))
        self.assertEqual(self.memories.get_memory(self.memory_id).current_strength, after_first)

        self.ctx.clock.advance(hours=25)
        self.assertEqual(self.strength.process(), (1, 0))

    def test_access_strengthens_once(self):
        self.ctx.db.execute("UPDATE memories SET current_strength = 0.5 WHERE id = ?", (self.memory_id,))
        self.memories.record_access([self.memory_id])

        decayed, strengthened = self.strength.process()
        self.assertEqual(strengthened, 1)
        self.assertGreater(self.memories.get_memory(self.memory_id).current_strength, 0.5)
        self.assertEqual(self.strength.process(), (0, 0))


class TestEdges(unittest.TestCase):

    def setUp(self):
        self.ctx = make_context(self)
        self.memories = MemoryStore(self.ctx)
        self.edges = EdgeManager(self.ctx, EdgeSettings(decay_rate=0.5))
        self.a = self.embedded("Brian runs every morning", [1.0, 0.0, 0.0])
        self.b = self.embedded("Brian jogs before work", [0.9, 0.1, 0.0])
        self.c = self.embedded("Brian's car is blue", [0.0, 0.0, 1.0])

    def embedded(self, content, vector):
        memory_id = self.memories.add_memory(content, memory_type="fact")
        self.ctx.db.execute(
            "UPDATE memories SET embedding = ? WHERE id = ?",
            (embedding_to_bytes(np.array(vector, dtype=np.float32)), memory_id)
        )
        return memory_id

    def test_forms_edges_between_similar_memories_once(self):
        self.assertEqual(self.edges.process().created, 1)
        self.assertEqual(self.edges.process().created, 0)
        related = self.edges.get_related_memories(self.a)
        self.assertEqual([r["id"] for r in related], [self.b])
        self.assertEqual(self.edges.get_related_memories(self.c), [])

    def test_new_memory_is_connected_incrementally(self):
        self.edges.process()
        d = self.embedded("Brian ran a 10k", [0.95, 0.05, 0.0])
        self.assertEqual(self.edges.process().created, 2)
        self.assertEqual({r["id"] for r in self.edges.get_related_memories(d)}, {self.a, self.b})

    def test_joint_access_reinforces(self):
        self.edges.process()
        self.ctx.clock.advance(hours=1)
        self.memories.record_access([self.a, self.b])
        self.assertEqual(self.edges.process().reinforced, 1)
        self.assertEqual(self.edges.process().reinforced, 0)

    def test_idle_edges_decay_then_prune(self):
        self.edges.process()

        self.ctx.clock.advance(hours=25)
        first = self.edges.process()
        self.assertEqual((first.decayed, first.pruned), (1, 0))
        self.assertEqual(self.edges.process().decayed, 0)

        self.ctx.clock.advance(hours=25)
        second = self.edges.process()
        self.assertEqual((second.decayed, second.pruned), (1, 1))
        self.assertEqual(count(self.ctx, "memory_edges"), 0)


class TestScheduler(unittest.TestCase):

    def test_triggers_during_a_run_collapse_into_one_rerun(self):
        started = threading.Event()
        release = threading.Event()
        runs = []

        def run():
            runs.append(1)
            started.set()
            release.wait(5)
            return ConsolidationResult()

        scheduler = ConsolidationScheduler(run, idle_seconds=60)
        scheduler.trigger_now()
        self.assertTrue(started.wait(5))
        self.assertTrue(scheduler.is_running())

        scheduler.trigger_now(background=False)
        scheduler.trigger_now(background=False)
        scheduler.trigger_now(background=False)
        self.assertTrue(scheduler.has_pending())

        release.set()
        self.assertTrue(scheduler.wait_for_idle(5))
        self.assertEqual(len(runs), 2)
        self.assertEqual(scheduler.runs_completed, 2)
        self.assertFalse(scheduler.is_running())

    def test_activity_debounces_the_idle_timer(self):
        runs = []
        scheduler = ConsolidationScheduler(lambda: runs.append(1) or ConsolidationResult(), idle_seconds=0.1)

        for _ in range(3):
            scheduler.notify_activity()
            time.sleep(0.02)

        deadline = time.monotonic() + 3
        while not runs and time.monotonic() < deadline:
            time.sleep(0.02)
        time.sleep(0.2)
        self.assertEqual(len(runs), 1)

    def test_cancel_drops_the_pending_timer(self):
        runs = []
        scheduler = ConsolidationScheduler(lambda: runs.append(1) or ConsolidationResult(), idle_seconds=0.05)
        scheduler.notify_activity()
        self.assertTrue(scheduler.cancel())
        self.assertFalse(scheduler.cancel())
        time.sleep(0.15)
        self.assertEqual(runs, [])

    def test_provider_outage_is_kept_as_last_error(self):
        def run():
            raise ProviderUnavailableError("down", error_type="overloaded")

        scheduler = ConsolidationScheduler(run, idle_seconds=60)
        scheduler.trigger_now(background=False)
        self.assertIsInstance(scheduler.last_error, ProviderUnavailableError)
        self.assertEqual(scheduler.runs_completed, 0)
        self.assertFalse(scheduler.is_running())

    def test_completion_callback(self):
        seen = []
        scheduler = ConsolidationScheduler(ConsolidationResult, idle_seconds=60, on_complete=seen.append)
        scheduler.trigger_now(background=False)
        self.assertEqual(len(seen), 1)
        self.assertIs(scheduler.last_result, seen[0])


if __name__ == '__main__':
    unittest.main()
