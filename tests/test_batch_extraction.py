"""
Tests for batch extraction.

Messages must leave 'pending' exactly once, and only after their
conversation's transcript call succeeded.
"""

import unittest
from datetime import date, datetime
from types import SimpleNamespace

from agency.commitments import CommitmentService
from agency.reminders import ReminderService
from core.exceptions import ProviderUnavailableError
from extraction.dispatcher import RealTimeDispatcher
from extraction.batch import BatchExtractionCoordinator, build_transcript
from memory.conversation import ConversationStore
from memory.vector_store import MemoryStore
from engine_fixtures import (
    FakeLLM,
    failure,
    make_context,
    add_user_messages,
    count,
    EXTRACTION,
    COMMITMENT,
    REMINDER,
    RESOLUTION,
    BELIEFS
)


class BatchTestCase(unittest.TestCase):

    def setUp(self):
        self.llm = FakeLLM()
        self.ctx = make_context(self, self.llm)
        self.coordinator = BatchExtractionCoordinator(self.ctx)
        self.conversations = ConversationStore(self.ctx)
        self.memories = MemoryStore(self.ctx)

    def statuses(self, ids):
        return [self.conversations.get_message(i).extraction_status for i in ids]


class TestCandidatePipeline(BatchTestCase):

    def test_goal_becomes_memory_and_candidate_commitment(self):
        conversation_id, ids = add_user_messages(self.ctx, "I need to ship this by Friday")
        self.llm.on(EXTRACTION, [
            {"content": "Brian needs to ship the release by Friday", "type": "goal", "salience_hint": 6}
        ])
        self.llm.on(COMMITMENT, {
            "is_commitment": True, "title": "Ship the release", "due_at": "2025-03-14",
            "all_day": True, "confidence": 0.93
        })

        result = self.coordinator.extract_pending()

        self.assertEqual(result.conversations_processed, 1)
        self.assertEqual(result.messages_processed, 1)
        self.assertEqual(result.memories_created, 1)
        self.assertEqual(result.commitments_created, 1)
        self.assertEqual(result.errors, [])

        memory_id = self.ctx.db.execute("SELECT id FROM memories", fetch=True)[0]["id"]
        memory = self.memories.get_memory(memory_id)
        self.assertEqual(memory.memory_type, "goal")
        self.assertEqual(memory.salience_score, 7.0)
        self.assertEqual(memory.source_metadata["conversation_id"], conversation_id)

        commitment = CommitmentService(self.ctx).list_open_commitments()[0]
        self.assertEqual(commitment.title, "Ship the release")
        self.assertEqual(commitment.status, "candidate")
        self.assertEqual(commitment.due_at, datetime(2025, 3, 14, 23, 59, 59))
        self.assertTrue(commitment.all_day)
        self.assertEqual(commitment.memory_id, memory_id)

        self.assertEqual(self.statuses(ids), ["extracted"])

    def test_transcript_joins_messages_in_order(self):
        add_user_messages(self.ctx, "first thing", "second thing")
        self.coordinator.extract_pending()
        self.assertEqual(self.llm.calls_for(EXTRACTION)[0].content, "User: first thing\nUser: second thing")

    def test_event_gets_a_date(self):
        add_user_messages(self.ctx, "Sarah's birthday is on February 16th")
        self.llm.on(EXTRACTION, [
            {"content": "Sarah's birthday is February 16th", "type": "event", "salience_hint": 5}
        ])
        self.coordinator.extract_pending()
        memory = self.memories.get_memory(1)
        self.assertEqual(memory.event_date, date(2025, 2, 16))
        self.assertEqual(memory.salience_score, 8.0)

    def test_beliefs_are_reinforced_across_memories(self):
        add_user_messages(self.ctx, "I do my best work before lunch, mornings are great")
        self.llm.on(EXTRACTION, [
            {"content": "Brian prefers working in the morning", "type": "preference", "salience_hint": 5},
            {"content": "Brian likes morning focus time best", "type": "preference", "salience_hint": 5},
        ])
        self.llm.on(BELIEFS, [
            {"content": "I prefer working in the morning", "belief_type": "preference", "confidence": 0.8}
        ])

        result = self.coordinator.extract_pending()

        self.assertEqual(result.beliefs_created, 1)
        self.assertEqual(result.beliefs_reinforced, 1)
        self.assertEqual(count(self.ctx, "belief_evidence"), 2)

    def test_failed_follow_up_step_does_not_abort(self):
        add_user_messages(self.ctx, "I want to learn Rust this year")
        self.llm.on(EXTRACTION, [
            {"content": "Brian wants to learn Rust this year", "type": "goal", "salience_hint": 6},
            {"content": "Brian enjoys systems programming", "type": "preference", "salience_hint": 5},
        ])
        self.llm.on(COMMITMENT, "definitely not json")

        result = self.coordinator.extract_pending()

        self.assertEqual(result.memories_created, 2)
        self.assertEqual(result.commitments_created, 0)


class TestExactlyOnce(BatchTestCase):

    def test_rerun_is_a_no_op(self):
        _, ids = add_user_messages(self.ctx, "I adopted a dog named Biscuit")
        self.llm.on(EXTRACTION, [{"content": "Brian has a dog named Biscuit", "type": "fact", "salience_hint": 6}])

        self.coordinator.extract_pending()
        second = self.coordinator.extract_pending()

        self.assertEqual(second.conversations_processed, 0)
        self.assertEqual(len(self.llm.calls_for(EXTRACTION)), 1)
        self.assertEqual(count(self.ctx, "memories"), 1)
        self.assertEqual(self.statuses(ids), ["extracted"])

    def test_nothing_worth_keeping_is_skipped(self):
        _, ids = add_user_messages(self.ctx, "hello", "thanks!")
        result = self.coordinator.extract_pending()
        self.assertEqual(result.skipped_empty, 1)
        self.assertEqual(self.statuses(ids), ["skipped", "skipped"])

    def test_only_user_messages_are_extracted(self):
        conversation_id, ids = add_user_messages(self.ctx, "I live in Denver")
        assistant_id = self.conversations.add_message(conversation_id, "assistant", "Nice, Denver is lovely.")
        self.coordinator.extract_pending()
        self.assertNotIn("Denver is lovely", self.llm.calls_for(EXTRACTION)[0].content)
        self.assertEqual(self.conversations.get_message(assistant_id).extraction_status, "pending")

    def test_later_messages_are_picked_up_next_run(self):
        conversation_id, first = add_user_messages(self.ctx, "hello")
        self.coordinator.extract_pending()
        _, second = add_user_messages(self.ctx, "goodbye", conversation_id=conversation_id)
        self.coordinator.extract_pending()
        self.assertEqual(self.llm.calls_for(EXTRACTION)[1].content, "User: goodbye")
        self.assertEqual(self.statuses(first + second), ["skipped", "skipped"])


class TestFailures(BatchTestCase):

    def test_provider_unavailable_leaves_messages_pending(self):
        _, ids = add_user_messages(self.ctx, "I live in Denver")
        self.llm.fail(EXTRACTION, "overloaded")

        with self.assertRaises(ProviderUnavailableError):
            self.coordinator.extract_pending()

        self.assertEqual(self.statuses(ids), ["pending"])
        self.assertEqual(count(self.ctx, "memories"), 0)

    def test_failed_conversation_is_recorded_and_others_continue(self):
        _, bad = add_user_messages(self.ctx, "this one breaks")
        _, good = add_user_messages(self.ctx, "I live in Denver")

        def reply(transcript):
            if "breaks" in transcript:
                return failure("invalid_request", "Bad request")
            return [{"content": "Brian lives in Denver", "type": "fact", "salience_hint": 6}]

        self.llm.on(EXTRACTION, reply)
        result = self.coordinator.extract_pending()

        self.assertEqual(len(result.errors), 1)
        self.assertEqual(result.conversations_processed, 1)
        self.assertEqual(self.statuses(bad), ["pending"])
        self.assertEqual(self.statuses(good), ["extracted"])

    def test_no_side_effects_before_transcript_succeeds(self):
        _, ids = add_user_messages(self.ctx, "remind me tomorrow to call the plumber")
        self.llm.on(REMINDER, {
            "is_reminder": True, "title": "Call the plumber", "scheduled_at": "2025-03-13T09:00:00"
        })
        self.llm.fail(EXTRACTION, "invalid_request")

        self.coordinator.extract_pending()

        self.assertEqual(count(self.ctx, "reminders"), 0)
        self.assertEqual(self.statuses(ids), ["pending"])


class TestAuxiliaryChecks(BatchTestCase):

    def test_missed_reminder_is_created(self):
        _, ids = add_user_messages(self.ctx, "remind me tomorrow to call the plumber")
        self.llm.on(REMINDER, {
            "is_reminder": True, "title": "Call the plumber", "scheduled_at": "2025-03-13T09:00:00"
        })

        result = self.coordinator.extract_pending()

        self.assertEqual(result.reminders_created, 1)
        self.assertEqual(result.skipped_empty, 0)
        self.assertTrue(ReminderService(self.ctx).has_reminder_for_message(ids[0]))

    def test_reminder_already_made_in_real_time_is_not_repeated(self):
        _, ids = add_user_messages(self.ctx, "remind me tomorrow to call the plumber")
        ReminderService(self.ctx).create_reminder("Call the plumber", delay_minutes=60, source_message_id=ids[0])

        self.coordinator.extract_pending()

        self.assertEqual(self.llm.calls_for(REMINDER), [])
        self.assertEqual(count(self.ctx, "reminders"), 1)

    def test_resolution_closes_open_commitment(self):
        commitments = CommitmentService(self.ctx)
        report = commitments.create_commitment("Finish the report")
        mom = commitments.create_commitment("Call mom")
        add_user_messages(self.ctx, "called mom this morning, she says hi")
        self.llm.on(RESOLUTION, {
            "is_resolution": True, "commitment_number": 2, "resolution": "completed", "confidence": 0.9
        })

        result = self.coordinator.extract_pending()

        self.assertEqual(result.commitments_resolved, 1)
        self.assertEqual(commitments.get_commitment(mom).status, "resolved")
        self.assertEqual(commitments.get_commitment(report).status, "candidate")

class TestRealTimeOverlap(BatchTestCase):
    """Commitments the batch would infer for messages already handled in real time."""

    def script_goal(self):
        self.llm.on(EXTRACTION, [
            {"content": "Brian needs to finish the report by Friday", "type": "goal", "salience_hint": 6}
        ])
        self.llm.on(COMMITMENT, {
            "is_commitment": True, "title": "Finish the report", "due_at": "2025-03-14",
            "all_day": True, "confidence": 0.93
        })

    def test_dispatched_commitment_is_not_repeated_as_candidate(self):
        _, ids = add_user_messages(self.ctx, "I need to finish the report by Friday")
        self.script_goal()
        RealTimeDispatcher(self.ctx).process_message_realtime(
            "I need to finish the report by Friday", message_id=ids[0]
        )

        result = self.coordinator.extract_pending()

        self.assertEqual(result.memories_created, 1)
        self.assertEqual(result.commitments_created, 0)
        commitments = CommitmentService(self.ctx).list_open_commitments()
        self.assertEqual(len(commitments), 1)
        self.assertEqual(commitments[0].status, "confirmed")
        self.assertEqual(commitments[0].source_message_id, ids[0])

    def test_reminder_outranks_inferred_commitment(self):
        _, ids = add_user_messages(self.ctx, "I need to finish the report by Friday")
        ReminderService(self.ctx).create_reminder("Finish the report", delay_minutes=60, source_message_id=ids[0])
        self.script_goal()

        result = self.coordinator.extract_pending()

        self.assertEqual(result.commitments_created, 0)
        self.assertEqual(count(self.ctx, "commitments"), 0)

    def test_open_commitment_with_same_title_is_not_duplicated(self):
        CommitmentService(self.ctx).create_commitment("finish the report.")
        add_user_messages(self.ctx, "I need to finish the report by Friday")
        self.script_goal()

        result = self.coordinator.extract_pending()

        self.assertEqual(result.commitments_created, 0)
        self.assertEqual(count(self.ctx, "commitments"), 1)


class TestTranscript(unittest.TestCase):

    def test_build_transcript(self):
        messages = [SimpleNamespace(content="a"), SimpleNamespace(content="b")]
        self.assertEqual(build_transcript(messages), "User: a\nUser: b")


if __name__ == '__main__':
    unittest.main()
