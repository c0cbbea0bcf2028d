"""
Tests for event-date extraction from memory text.
"""

import unittest
from datetime import date

from memory.event_dates import extract_event_date

REF = date(2025, 3, 12)


class TestExtractEventDate(unittest.TestCase):

    def test_iso(self):
        self.assertEqual(extract_event_date("Surgery is scheduled for 2025-04-02", REF), date(2025, 4, 2))

    def test_month_day_year(self):
        self.assertEqual(extract_event_date("We got married on June 14, 2012", REF), date(2012, 6, 14))
        self.assertEqual(extract_event_date("Moved on Sept. 3rd 2019", REF), date(2019, 9, 3))

    def test_day_month_year(self):
        self.assertEqual(extract_event_date("Born on 16 February 1990", REF), date(1990, 2, 16))
        self.assertEqual(extract_event_date("the 4th of July, 2021 party", REF), date(2021, 7, 4))

    def test_us_numeric(self):
        self.assertEqual(extract_event_date("Closing date 2/16/2025", REF), date(2025, 2, 16))
        self.assertEqual(extract_event_date("Closing date 2/16/25", REF), date(2025, 2, 16))

    def test_month_day_takes_reference_year(self):
        self.assertEqual(extract_event_date("Sarah's birthday is February 16th", REF), date(2025, 2, 16))

    def test_impossible_dates_ignored(self):
        self.assertIsNone(extract_event_date("Deadline February 30, 2025", REF))

    def test_later_valid_date_used_after_invalid_one(self):
        text = "Not 2025-02-30 but 2025-03-01"
        self.assertEqual(extract_event_date(text, REF), date(2025, 3, 1))

    def test_no_date(self):
        self.assertIsNone(extract_event_date("Likes long walks", REF))
        self.assertIsNone(extract_event_date("", REF))


if __name__ == '__main__':
    unittest.main()
