"""
Tests for salience calibration floors.
"""

import unittest

from memory.categories import CategoryClassification
from memory.salience import calibrate_salience, calibrate_with_reason


def cats(*pairs):
    return [CategoryClassification(category, relevance) for category, relevance in pairs]


class TestCalibration(unittest.TestCase):

    def test_never_lowers_the_hint(self):
        self.assertEqual(calibrate_salience("Likes green tea", "preference", 6), 6)
        self.assertEqual(calibrate_salience("Brian wants to ship Squire", "goal", 9), 9)

    def test_caps_at_ten(self):
        self.assertEqual(calibrate_salience("anything", "fact", 14), 10.0)

    def test_personality_identity_memory_gets_ten(self):
        score, reason = calibrate_with_reason(
            "The user's name is Brian", "fact", 5, cats(("personality", 0.5))
        )
        self.assertEqual(score, 10.0)
        self.assertEqual(reason, "personality + identity")

    def test_locked_name_counts_as_identity(self):
        score = calibrate_salience(
            "Brian has two dogs", "fact", 5, cats(("personality", 0.4)), user_name="Brian"
        )
        self.assertEqual(score, 10.0)

    def test_high_relevance_personality_fact(self):
        score, reason = calibrate_with_reason(
            "Values honesty above everything", "fact", 5, cats(("personality", 0.8))
        )
        self.assertEqual((score, reason), (9.0, "high-relevance personality"))

    def test_origin_story(self):
        self.assertEqual(calibrate_salience("Grew up on a farm in Iowa", "fact", 4), 9.0)

    def test_significant_date(self):
        self.assertEqual(calibrate_salience("Their wedding anniversary is in June", "event", 5), 8.0)

    def test_relationship_event(self):
        score, reason = calibrate_with_reason(
            "Went hiking with Sarah last weekend", "event", 5, cats(("relationships", 0.6))
        )
        self.assertEqual((score, reason), (8.0, "relationship event"))

    def test_life_fact(self):
        self.assertEqual(calibrate_salience("Works as a nurse at the county hospital", "fact", 5), 8.0)

    def test_goal_floor(self):
        score, reason = calibrate_with_reason("Wants to run a marathon", "goal", 6)
        self.assertEqual((score, reason), (7.0, "goal"))

    def test_preferences_are_left_alone(self):
        score, reason = calibrate_with_reason(
            "Prefers to work in the morning", "preference", 5, cats(("personality", 0.9))
        )
        self.assertEqual((score, reason), (5.0, None))


if __name__ == '__main__':
    unittest.main()
