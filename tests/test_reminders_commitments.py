"""
Tests for reminder and commitment bookkeeping.
"""

import unittest
from datetime import datetime

from agency.reminders import ReminderService, ReminderStatus
from agency.commitments import CommitmentService, CommitmentStatus
from engine_fixtures import make_context, add_user_messages


class TestReminderTiming(unittest.TestCase):
    """A reminder carries exactly one timing mode."""

    def setUp(self):
        self.ctx = make_context(self)
        self.service = ReminderService(self.ctx)

    def test_delay_resolves_against_now(self):
        reminder = self.service.get_reminder(self.service.create_reminder("Call mom", delay_minutes=120))
        self.assertEqual(reminder.delay_minutes, 120)
        self.assertIsNone(reminder.scheduled_at)
        self.assertEqual(reminder.remind_at, datetime(2025, 3, 12, 12, 0))
        self.assertEqual(reminder.status, ReminderStatus.PENDING.value)

    def test_scheduled_time_is_kept(self):
        at = datetime(2025, 3, 13, 9, 0)
        reminder = self.service.get_reminder(self.service.create_reminder("Groceries", scheduled_at=at))
        self.assertIsNone(reminder.delay_minutes)
        self.assertEqual(reminder.scheduled_at, at)
        self.assertEqual(reminder.remind_at, at)

    def test_both_or_neither_rejected(self):
        with self.assertRaises(ValueError):
            self.service.create_reminder("Call mom")
        with self.assertRaises(ValueError):
            self.service.create_reminder("Call mom", delay_minutes=5, scheduled_at=datetime(2025, 3, 13))

    def test_non_positive_delay_rejected(self):
        with self.assertRaises(ValueError):
            self.service.create_reminder("Call mom", delay_minutes=0)

    def test_blank_title_rejected(self):
        with self.assertRaises(ValueError):
            self.service.create_reminder("  ", delay_minutes=5)

    def test_message_link(self):
        self.service.create_reminder("Call mom", delay_minutes=5, source_message_id=7)
        self.assertTrue(self.service.has_reminder_for_message(7))
        self.assertFalse(self.service.has_reminder_for_message(8))

    def test_status_changes_happen_once(self):
        first = self.service.create_reminder("Call mom", delay_minutes=5)
        second = self.service.create_reminder("Stretch", delay_minutes=10)
        self.assertTrue(self.service.mark_sent(first))
        self.assertFalse(self.service.mark_sent(first))
        self.assertFalse(self.service.cancel_reminder(first))
        self.assertTrue(self.service.cancel_reminder(second))
        self.assertEqual(self.service.get_pending_reminders(), [])

    def test_due_reminders(self):
        self.service.create_reminder("Past", scheduled_at=datetime(2025, 3, 12, 9, 0))
        self.service.create_reminder("Later", delay_minutes=60)
        self.assertEqual([r.title for r in self.service.get_due_reminders()], ["Past"])


class TestCommitmentLifecycle(unittest.TestCase):

    def setUp(self):
        self.ctx = make_context(self)
        self.service = CommitmentService(self.ctx)

    def test_new_commitments_are_candidates(self):
        commitment = self.service.get_commitment(self.service.create_commitment("Finish report"))
        self.assertEqual(commitment.status, CommitmentStatus.CANDIDATE.value)
        self.assertIsNone(commitment.due_at)
        self.assertFalse(commitment.all_day)

    def test_closed_statuses_cannot_be_created(self):
        with self.assertRaises(ValueError):
            self.service.create_commitment("Finish report", status=CommitmentStatus.RESOLVED)
        with self.assertRaises(ValueError):
            self.service.create_commitment("", status=CommitmentStatus.CONFIRMED)

    def test_resolve_happens_once(self):
        commitment_id = self.service.create_commitment("Finish report")
        self.assertTrue(self.service.resolve_commitment(commitment_id, notes="Sent Friday"))
        self.assertFalse(self.service.resolve_commitment(commitment_id))
        self.assertFalse(self.service.dismiss_commitment(commitment_id))

        commitment = self.service.get_commitment(commitment_id)
        self.assertEqual(commitment.status, CommitmentStatus.RESOLVED.value)
        self.assertEqual(commitment.resolution_notes, "Sent Friday")
        self.assertIsNotNone(commitment.resolved_at)

    def test_confirm_only_from_candidate(self):
        commitment_id = self.service.create_commitment("Call mom")
        self.assertTrue(self.service.confirm_commitment(commitment_id))
        self.assertFalse(self.service.confirm_commitment(commitment_id))
        self.assertTrue(self.service.dismiss_commitment(commitment_id))
        self.assertFalse(self.service.confirm_commitment(commitment_id))

    def test_open_commitments_sorted_by_due_date(self):
        self.service.create_commitment("Undated")
        self.service.create_commitment("Friday", due_at=datetime(2025, 3, 14, 23, 59, 59), all_day=True)
        self.service.create_commitment("Thursday", due_at=datetime(2025, 3, 13, 15, 0))
        closed = self.service.create_commitment("Closed", due_at=datetime(2025, 3, 13, 8, 0))
        self.service.resolve_commitment(closed)

        self.assertEqual(
            [c.title for c in self.service.list_open_commitments()],
            ["Thursday", "Friday", "Undated"]
        )

    def test_overdue_and_counts(self):
        self.service.create_commitment("Late", due_at=datetime(2025, 3, 11, 17, 0))
        self.service.create_commitment("On time", due_at=datetime(2025, 3, 14, 17, 0))
        self.assertEqual([c.title for c in self.service.get_overdue_commitments()], ["Late"])
        counts = self.service.count_by_status()
        self.assertEqual(counts["candidate"], 2)
        self.assertEqual(counts["resolved"], 0)

    def test_lookup_by_title_ignores_case_and_punctuation(self):
        open_id = self.service.create_commitment("Finish the report")
        closed = self.service.create_commitment("Call mom")
        self.service.resolve_commitment(closed)

        self.assertEqual(self.service.find_open_by_title("  finish the REPORT! ").id, open_id)
        self.assertIsNone(self.service.find_open_by_title("Call mom"))
        self.assertIsNone(self.service.find_open_by_title("Finish the slides"))
        self.assertIsNone(self.service.find_open_by_title("..."))

    def test_source_message_link(self):
        _, ids = add_user_messages(self.ctx, "I need to finish the report", "and call mom")
        commitment_id = self.service.create_commitment("Finish the report", source_message_id=ids[0])

        self.assertEqual(self.service.get_commitment(commitment_id).source_message_id, ids[0])
        self.assertTrue(self.service.has_commitment_for_message(ids[0]))
        self.assertFalse(self.service.has_commitment_for_message(ids[1]))


if __name__ == '__main__':
    unittest.main()
