"""
Tests for the locked identity record.

Once a name is locked, automatic detection must never change it; only an
explicit rename may.
"""

import threading
import unittest

from core.exceptions import IdentityExistsError, IdentityNotFoundError
from memory.categories import CategoryService
from engine_fixtures import make_context


class TestIdentityLock(unittest.TestCase):

    def setUp(self):
        self.ctx = make_context(self)
        self.identity = self.ctx.identity

    def test_unknown_identity(self):
        self.assertIsNone(self.identity.get_identity())
        self.assertFalse(self.identity.is_locked())
        self.assertIsNone(self.identity.get_user_name())

    def test_first_lock_wins(self):
        self.assertTrue(self.identity.lock_identity("Brian"))
        identity = self.identity.get_identity()
        self.assertEqual(identity.name, "Brian")
        self.assertTrue(identity.is_locked)
        self.assertEqual(identity.source, "auto_detection")
        self.assertIsNotNone(identity.locked_at)

    def test_locked_name_is_immutable_to_detection(self):
        self.identity.lock_identity("Brian")
        self.assertFalse(self.identity.lock_identity("Confident"))
        self.assertEqual(self.identity.get_identity(refresh=True).name, "Brian")

    def test_blank_name_rejected(self):
        self.assertFalse(self.identity.lock_identity("   "))
        self.assertIsNone(self.identity.get_identity())

    def test_concurrent_locks_have_one_winner(self):
        names = ["Brian", "Sarah", "Tom", "Ava", "Leo", "Mia"]
        results = {}
        barrier = threading.Barrier(len(names))

        def attempt(name):
            barrier.wait()
            results[name] = self.identity.lock_identity(name)

        threads = [threading.Thread(target=attempt, args=(n,)) for n in names]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [name for name, won in results.items() if won]
        self.assertEqual(len(winners), 1)
        self.assertEqual(self.identity.get_identity(refresh=True).name, winners[0])

    def test_rename_is_the_only_way_to_change(self):
        self.identity.lock_identity("Brian")
        renamed = self.identity.rename_user("Bri", reason="Prefers the short form")
        self.assertEqual(renamed.name, "Bri")
        self.assertTrue(renamed.is_locked)
        self.assertEqual(renamed.source, "rename_command")
        self.assertEqual(renamed.previous_names[0]["name"], "Brian")
        self.assertEqual(renamed.previous_names[0]["reason"], "Prefers the short form")

    def test_set_initial_identity_refuses_existing(self):
        self.identity.set_initial_identity("Brian")
        with self.assertRaises(IdentityExistsError):
            self.identity.set_initial_identity("Sarah")

    def test_unlock_allows_detection_again(self):
        self.identity.lock_identity("Brian")
        self.identity.unlock_identity()
        self.assertFalse(self.identity.is_locked())
        self.assertTrue(self.identity.lock_identity("Brian Smith"))
        self.assertEqual(self.identity.get_user_name(), "Brian Smith")

    def test_unlock_without_identity(self):
        with self.assertRaises(IdentityNotFoundError):
            self.identity.unlock_identity()


class TestSummaryMigration(unittest.TestCase):

    def test_imports_name_from_personality_summary(self):
        ctx = make_context(self)
        CategoryService(ctx).update_summary("personality", "Your name is Brian. You build things.")
        identity = ctx.identity.migrate_from_personality_summary()
        self.assertEqual(identity.name, "Brian")
        self.assertEqual(identity.source, "import")

    def test_no_summary_no_identity(self):
        ctx = make_context(self)
        self.assertIsNone(ctx.identity.migrate_from_personality_summary())


if __name__ == '__main__':
    unittest.main()
