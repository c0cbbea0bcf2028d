"""
Tests for the user-facing stores: lists, belief conflicts, insights and
research questions.
"""

import sqlite3
import unittest
from unittest.mock import patch

from agency.lists import ListService
from memory.beliefs import BeliefService
from memory.insights import InsightService, ExtractedInsight
from memory.research import ResearchService
from engine_fixtures import (
    FakeLLM,
    make_context,
    count,
    BELIEF_CONFLICTS,
    GAPS,
    QUESTIONS
)


class TestLists(unittest.TestCase):

    def setUp(self):
        self.ctx = make_context(self)
        self.lists = ListService(self.ctx)

    def test_create_with_items_in_order(self):
        list_id = self.lists.create_list("Packing", initial_items=["Socks", "  ", "Charger "])
        user_list = self.lists.get_list(list_id)
        self.assertEqual([i.content for i in user_list.items], ["Socks", "Charger"])
        self.assertEqual([i.sort_order for i in user_list.items], [0, 1])

    def test_locked_retry_does_not_duplicate_the_list(self):
        insert_item = self.lists._insert_item
        attempts = []

        def flaky_insert(conn, list_id, content):
            attempts.append(content)
            if len(attempts) == 1:
                raise sqlite3.OperationalError("database is locked")
            return insert_item(conn, list_id, content)

        with patch.object(self.lists, "_insert_item", side_effect=flaky_insert), \
                patch("concurrency.db_retry.time.sleep"):
            list_id = self.lists.create_list("Packing", initial_items=["Socks", "Charger"])

        self.assertEqual(count(self.ctx, "lists"), 1)
        self.assertEqual(count(self.ctx, "list_items"), 2)
        self.assertEqual([i.content for i in self.lists.get_list(list_id).items], ["Socks", "Charger"])

    def test_failed_add_leaves_no_new_list(self):
        with patch.object(self.lists, "_insert_item", side_effect=sqlite3.IntegrityError("bad item")):
            with self.assertRaises(sqlite3.IntegrityError):
                self.lists.add_item("Groceries", "Eggs")
        self.assertEqual(count(self.ctx, "lists"), 0)

    def test_complete_item_once(self):
        list_id, item_id, created = self.lists.add_item("Groceries", "Eggs", list_type="shopping")
        self.assertTrue(created)

        self.assertTrue(self.lists.complete_item(item_id))
        self.assertFalse(self.lists.complete_item(item_id))
        self.assertFalse(self.lists.complete_item(item_id + 100))
        self.assertTrue(self.lists.get_list(list_id).items[0].is_completed)

    def test_blank_names_rejected(self):
        with self.assertRaises(ValueError):
            self.lists.create_list("  ")
        with self.assertRaises(ValueError):
            self.lists.add_item("", "Eggs")


class TestBeliefConflicts(unittest.TestCase):

    def setUp(self):
        self.llm = FakeLLM()
        self.ctx = make_context(self, self.llm)
        self.beliefs = BeliefService(self.ctx)
        self.early = self.beliefs.create_belief("I do my best work in the morning", "preference", 0.8)
        self.late = self.beliefs.create_belief("I do my best work late at night", "preference", 0.7)

    def status(self, belief_id):
        return self.ctx.db.execute("SELECT status FROM beliefs WHERE id = ?", (belief_id,), fetch=True)[0]["status"]

    def record_conflict(self):
        self.llm.on(BELIEF_CONFLICTS, [{
            "existing_belief_id": self.early, "conflict_type": "direct_contradiction",
            "description": "Morning versus night"
        }])
        return self.beliefs.detect_conflicts(self.late)

    def test_conflict_is_recorded_and_listed(self):
        conflicts = self.record_conflict()

        self.assertEqual(len(conflicts), 1)
        self.assertEqual(self.status(self.early), "conflicted")
        self.assertEqual(self.status(self.late), "conflicted")

        unresolved = self.beliefs.get_unresolved_conflicts()
        self.assertEqual(len(unresolved), 1)
        self.assertEqual(unresolved[0]["belief_a_content"], "I do my best work late at night")
        self.assertEqual(unresolved[0]["belief_b_content"], "I do my best work in the morning")
        self.assertEqual(unresolved[0]["conflict_type"], "direct_contradiction")

    def test_unknown_belief_in_reply_is_ignored(self):
        self.llm.on(BELIEF_CONFLICTS, [{"existing_belief_id": 99, "conflict_type": "tension"}])
        self.assertEqual(self.beliefs.detect_conflicts(self.late), [])
        self.assertEqual(self.beliefs.get_unresolved_conflicts(), [])

    def test_resolving_keeps_one_belief(self):
        conflict = self.record_conflict()[0]

        self.beliefs.resolve_conflict(conflict.id, "belief_b_active", notes="Mornings it is")

        self.assertEqual(self.status(self.early), "active")
        self.assertEqual(self.status(self.late), "resolved")
        self.assertEqual(self.beliefs.get_unresolved_conflicts(), [])

    def test_both_valid_reactivates_both(self):
        conflict = self.record_conflict()[0]
        self.beliefs.resolve_conflict(conflict.id, "both_valid")
        self.assertEqual(self.status(self.early), "active")
        self.assertEqual(self.status(self.late), "active")

    def test_bad_resolution_changes_nothing(self):
        conflict = self.record_conflict()[0]
        with self.assertRaises(ValueError):
            self.beliefs.resolve_conflict(conflict.id, "neither")
        with self.assertRaises(KeyError):
            self.beliefs.resolve_conflict(conflict.id + 50, "both_valid")
        self.assertEqual(len(self.beliefs.get_unresolved_conflicts()), 1)


class TestInsightLifecycle(unittest.TestCase):

    def setUp(self):
        self.ctx = make_context(self)
        self.insights = InsightService(self.ctx)

    def test_active_insights_ordered_by_priority(self):
        low = self.insights.create_insight(ExtractedInsight("Enjoys hiking", "connection", "low", 0.9))
        critical = self.insights.create_insight(ExtractedInsight("Deadline clash on Friday", "warning", "critical", 0.6))
        high = self.insights.create_insight(ExtractedInsight("Sleeps badly before launches", "connection", "high", 0.8))

        self.assertEqual([i["id"] for i in self.insights.get_active_insights()], [critical, high, low])
        self.assertEqual(len(self.insights.get_active_insights(limit=1)), 1)

    def test_dismissed_and_actioned_leave_the_active_set(self):
        first = self.insights.create_insight(ExtractedInsight("Enjoys hiking", "connection", "low", 0.9))
        second = self.insights.create_insight(ExtractedInsight("Book the dentist", "opportunity", "medium", 0.7))

        self.insights.set_status(first, "dismissed")
        self.insights.set_status(second, "actioned")

        self.assertEqual(self.insights.get_active_insights(), [])

    def test_invalid_status_rejected(self):
        insight_id = self.insights.create_insight(ExtractedInsight("Enjoys hiking", "connection", "low", 0.9))
        with self.assertRaises(ValueError):
            self.insights.set_status(insight_id, "stale")
        self.assertEqual(len(self.insights.get_active_insights()), 1)


class TestResearchQuestions(unittest.TestCase):

    def setUp(self):
        self.llm = FakeLLM()
        self.ctx = make_context(self, self.llm)
        self.research = ResearchService(self.ctx, question_expiry_days=14)
        self.llm.on(GAPS, {
            "new_gaps": [{"topic": "Work schedule", "description": "Unknown hours", "priority": "high"}],
            "filled_gap_ids": []
        })
        self.llm.on(QUESTIONS, [{"gap_id": 1, "question": "What does a normal workday look like for you?"}])

    def test_pending_question_can_be_asked_once(self):
        result = self.research.process()
        self.assertEqual(len(result.questions_created), 1)

        pending = self.research.get_pending_questions()
        self.assertEqual(len(pending), 1)
        self.assertEqual(pending[0]["topic"], "Work schedule")
        self.assertEqual(pending[0]["question"], "What does a normal workday look like for you?")

        self.assertTrue(self.research.mark_asked(pending[0]["id"]))
        self.assertFalse(self.research.mark_asked(pending[0]["id"]))
        self.assertEqual(self.research.get_pending_questions(), [])

    def test_expired_questions_are_not_offered(self):
        self.research.process()
        question_id = self.research.get_pending_questions()[0]["id"]

        self.ctx.clock.advance(days=15)

        self.assertEqual(self.research.get_pending_questions(), [])
        self.assertEqual(self.research.expire_questions(), 1)
        self.assertFalse(self.research.mark_asked(question_id))


if __name__ == '__main__':
    unittest.main()
