"""
Tests for natural language time helpers.
"""

import unittest
from datetime import datetime, date

from agency.time_parser import (
    parse_time_expression,
    minutes_until,
    coming_weekday,
    build_date_table,
    parse_iso_datetime,
    normalize_due_at,
    format_trigger_time
)

NOW = datetime(2025, 3, 12, 10, 0, 0)  # Wednesday


class TestParseTimeExpression(unittest.TestCase):

    def test_relative_hours_anywhere_in_text(self):
        self.assertEqual(
            parse_time_expression("remind me in 2 hours to call mom", NOW),
            datetime(2025, 3, 12, 12, 0, 0)
        )

    def test_relative_minutes(self):
        self.assertEqual(parse_time_expression("in 45 mins", NOW), datetime(2025, 3, 12, 10, 45))

    def test_half_an_hour(self):
        self.assertEqual(parse_time_expression("in half an hour", NOW), datetime(2025, 3, 12, 10, 30))

    def test_tomorrow_variants(self):
        self.assertEqual(parse_time_expression("tomorrow", NOW), datetime(2025, 3, 13, 9, 0))
        self.assertEqual(parse_time_expression("tomorrow afternoon", NOW), datetime(2025, 3, 13, 14, 0))
        self.assertEqual(parse_time_expression("tomorrow evening", NOW), datetime(2025, 3, 13, 18, 0))

    def test_tonight_rolls_over_after_eight(self):
        late = datetime(2025, 3, 12, 21, 30)
        self.assertEqual(parse_time_expression("tonight", NOW), datetime(2025, 3, 12, 20, 0))
        self.assertEqual(parse_time_expression("tonight", late), datetime(2025, 3, 13, 20, 0))

    def test_unrecognised_returns_none(self):
        self.assertIsNone(parse_time_expression("at some point", NOW))


class TestDates(unittest.TestCase):

    def test_coming_weekday_is_strictly_after_today(self):
        wednesday = date(2025, 3, 12)
        self.assertEqual(coming_weekday(4, wednesday), date(2025, 3, 14))
        # "by Friday" said on a Friday means next week
        self.assertEqual(coming_weekday(4, date(2025, 3, 14)), date(2025, 3, 21))

    def test_minutes_until_never_negative(self):
        self.assertEqual(minutes_until(datetime(2025, 3, 12, 12, 0), NOW), 120)
        self.assertEqual(minutes_until(datetime(2025, 3, 12, 9, 0), NOW), 0)

    def test_date_table_lists_weekdays(self):
        table = build_date_table(NOW)
        self.assertIn("TODAY IS: Wednesday (2025-03-12)", table)
        self.assertIn("TOMORROW'S DATE: 2025-03-13", table)
        self.assertIn("- Friday: 2025-03-14", table)
        self.assertIn("- Wednesday: 2025-03-19", table)

    def test_parse_iso_accepts_z_and_offsets(self):
        self.assertEqual(parse_iso_datetime("2025-03-14T15:00:00Z"), datetime(2025, 3, 14, 15, 0))
        self.assertEqual(parse_iso_datetime("2025-03-14T15:00:00+02:00"), datetime(2025, 3, 14, 15, 0))
        self.assertEqual(parse_iso_datetime("2025-03-14"), datetime(2025, 3, 14, 0, 0))
        self.assertIsNone(parse_iso_datetime("Friday"))
        self.assertIsNone(parse_iso_datetime(None))

    def test_all_day_due_dates_land_at_end_of_day(self):
        self.assertEqual(normalize_due_at("2025-03-14", True), datetime(2025, 3, 14, 23, 59, 59))
        self.assertEqual(normalize_due_at("2025-03-14T15:00:00", False), datetime(2025, 3, 14, 15, 0))
        self.assertIsNone(normalize_due_at("", True))

    def test_format_trigger_time(self):
        self.assertEqual(format_trigger_time(datetime(2025, 3, 12, 12, 0), NOW), "in 2 hours")
        self.assertEqual(format_trigger_time(datetime(2025, 3, 13, 11, 0), NOW), "tomorrow")
        self.assertEqual(format_trigger_time(datetime(2025, 3, 12, 9, 0), NOW), "overdue")


if __name__ == '__main__':
    unittest.main()
