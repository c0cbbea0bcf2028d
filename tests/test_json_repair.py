"""
Tests for tolerant parsing of model output.
"""

import unittest

from llm.json_repair import repair_json, as_bool, as_str, as_float, as_int


class TestRepairJson(unittest.TestCase):
    """repair_json never raises and recovers the common model mistakes."""

    def test_plain_object(self):
        self.assertEqual(repair_json('{"a": 1}'), {"a": 1})

    def test_strips_code_fences(self):
        raw = '```json\n{"is_reminder": true, "delay_minutes": 120}\n```'
        self.assertEqual(repair_json(raw), {"is_reminder": True, "delay_minutes": 120})

    def test_ignores_surrounding_prose(self):
        raw = 'Sure! Here is the result:\n{"name": "Brian"}\nLet me know if you need more.'
        self.assertEqual(repair_json(raw, expect="object"), {"name": "Brian"})

    def test_trailing_commas_removed_on_retry(self):
        raw = '[{"content": "likes tea", "type": "preference",},]'
        self.assertEqual(repair_json(raw, expect="array"), [{"content": "likes tea", "type": "preference"}])

    def test_expect_array_skips_leading_object_text(self):
        raw = 'Output {note} follows: [1, 2, 3]'
        self.assertEqual(repair_json(raw, expect="array"), [1, 2, 3])

    def test_whichever_opens_first_without_expect(self):
        self.assertEqual(repair_json('[{"a": 1}]'), [{"a": 1}])
        self.assertEqual(repair_json('{"a": [1]}'), {"a": [1]})

    def test_garbage_returns_none(self):
        self.assertIsNone(repair_json("no json here"))
        self.assertIsNone(repair_json("{not: valid"))
        self.assertIsNone(repair_json(""))
        self.assertIsNone(repair_json(None))

    def test_wrong_shape_returns_none(self):
        self.assertIsNone(repair_json('{"a": 1}', expect="array"))


class TestFieldCoercion(unittest.TestCase):

    def test_as_bool_only_true_values(self):
        self.assertTrue(as_bool(True))
        self.assertTrue(as_bool(" TRUE "))
        self.assertFalse(as_bool("yes"))
        self.assertFalse(as_bool(1))
        self.assertFalse(as_bool(None))

    def test_as_str_strips_and_rejects_blank(self):
        self.assertEqual(as_str("  Brian "), "Brian")
        self.assertIsNone(as_str("   "))
        self.assertIsNone(as_str(42))

    def test_as_float(self):
        self.assertEqual(as_float("0.9"), 0.9)
        self.assertEqual(as_float(None, 1.0), 1.0)
        self.assertIsNone(as_float("high"))
        self.assertIsNone(as_float(True))

    def test_as_int(self):
        self.assertEqual(as_int("120"), 120)
        self.assertEqual(as_int(30.0), 30)
        self.assertIsNone(as_int("soon"))
        self.assertIsNone(as_int(False))


if __name__ == '__main__':
    unittest.main()
