"""
Tests for deterministic relationship-fact templates.
"""

import unittest

from extraction.relationships import extract_relationship_facts


def contents(message):
    return [f.content for f in extract_relationship_facts(message)]


class TestRelationshipTemplates(unittest.TestCase):

    def test_spouse(self):
        facts = extract_relationship_facts("My wife's name is Sarah and she loves hiking")
        self.assertEqual(len(facts), 1)
        self.assertEqual(facts[0].kind, "spouse")
        self.assertEqual(facts[0].content, "The user's wife is named Sarah")
        self.assertEqual(
            [(c.category, c.relevance) for c in facts[0].classifications],
            [("personality", 0.9), ("relationships", 1.0)]
        )
        self.assertEqual(facts[0].salience, 8.0)

    def test_spouse_variants(self):
        self.assertEqual(contents("my husband is called Mark"), ["The user's husband is named Mark"])
        self.assertEqual(contents("My partner Alex is great"), ["The user's partner is named Alex"])

    def test_lowercase_word_after_spouse_is_not_a_name(self):
        self.assertEqual(contents("my wife is tired today"), [])

    def test_named_children(self):
        self.assertEqual(contents("My daughter Emma starts school"), ["The user's daughter is named Emma"])

    def test_child_count(self):
        self.assertEqual(contents("I have two kids"), ["The user has 2 kids"])
        self.assertEqual(contents("I have a daughter"), ["The user has one daughter"])
        self.assertEqual(contents("I've got 3 children"), ["The user has 3 children"])

    def test_job_title_and_employer(self):
        facts = extract_relationship_facts("I work as a software engineer at Acme Corp.")
        self.assertEqual(
            [f.content for f in facts],
            ["The user works as a software engineer"]
        )
        self.assertEqual(contents("I work at Acme Corp."), ["The user works at Acme Corp"])
        self.assertEqual(facts[0].kind, "job")

    def test_age(self):
        self.assertEqual(contents("I'm 56 years old"), ["The user is 56 years old"])
        self.assertEqual(contents("I am 34, by the way"), ["The user is 34 years old"])

    def test_numbers_that_are_not_ages(self):
        self.assertEqual(contents("I'm 5 minutes away"), [])
        self.assertEqual(contents("I'm 90 percent sure"), [])
        self.assertEqual(contents("I'm 300 years old"), [])

    def test_location(self):
        facts = extract_relationship_facts("I live in Portland, Oregon.")
        self.assertEqual([f.content for f in facts], ["The user lives in Portland, Oregon"])
        self.assertEqual(facts[0].kind, "location")
        self.assertEqual(facts[0].salience, 7.0)

    def test_several_templates_fire_on_one_message(self):
        found = contents("My wife Sarah and I live in Denver and I have two kids")
        self.assertEqual(found, [
            "The user's wife is named Sarah",
            "The user has 2 kids",
            "The user lives in Denver",
        ])

    def test_identical_content_returned_once(self):
        self.assertEqual(
            contents("My wife Sarah says hi. My wife, Sarah, also says bye."),
            ["The user's wife is named Sarah"]
        )

    def test_no_match(self):
        self.assertEqual(extract_relationship_facts("What's the weather like?"), [])


if __name__ == '__main__':
    unittest.main()
