"""
Keepsake - Relationship Facts
Deterministic regex templates for spouse, children, job, age and location
"""

import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from memory.categories import CategoryClassification

_NUMBER_WORDS = {
    "a": 1, "an": 1, "one": 1, "two": 2, "three": 3, "four": 4,
    "five": 5, "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10,
}

_NAME = r"([A-Z][a-z]+(?:[-'][A-Z]?[a-z]+)?)"
_PLACE = r"([A-Z][\w.\-]*(?:(?:, | )[A-Z][\w.\-]*){0,3})"


@dataclass(frozen=True)
class RelationshipTemplate:
    """
    One deterministic pattern.

    ``render`` turns a match into memory content, or None to reject it.
    ``weights`` is the fixed pair of category relevances the memory gets.
    """
    kind: str
    pattern: re.Pattern
    render: Callable[[re.Match], Optional[str]]
    weights: Tuple[Tuple[str, float], Tuple[str, float]]
    salience: float


@dataclass
class RelationshipFact:
    kind: str
    content: str
    classifications: List[CategoryClassification]
    salience: float


def _spouse(m: re.Match) -> str:
    return f"The user's {m.group(1).lower()} is named {m.group(2)}"


def _child_named(m: re.Match) -> str:
    return f"The user's {m.group(1).lower()} is named {m.group(2)}"


def _child_count(m: re.Match) -> Optional[str]:
    raw = m.group(1).lower()
    count = int(raw) if raw.isdigit() else _NUMBER_WORDS.get(raw)
    if not count or count > 20:
        return None
    noun = m.group(2).lower()
    if count == 1:
        singular = {"kids": "kid", "children": "child", "sons": "son", "daughters": "daughter"}
        return f"The user has one {singular.get(noun, noun)}"
    plural = {"kid": "kids", "child": "children", "son": "sons", "daughter": "daughters"}
    return f"The user has {count} {plural.get(noun, noun)}"


def _job_title(m: re.Match) -> str:
    return f"The user works as {m.group(1).lower()} {m.group(2).strip()}"


def _employer(m: re.Match) -> str:
    return f"The user works at {m.group(1).strip(' .')}"


def _age(m: re.Match) -> Optional[str]:
    age = int(m.group(1))
    if not 5 <= age <= 120:
        return None
    return f"The user is {age} years old"


def _location(m: re.Match) -> str:
    return f"The user lives in {m.group(1).strip(' ,.')}"


SPOUSE_WEIGHTS = (("personality", 0.9), ("relationships", 1.0))
CHILD_WEIGHTS = (("relationships", 1.0), ("personality", 0.8))
JOB_WEIGHTS = (("personality", 0.9), ("projects", 0.5))
AGE_WEIGHTS = (("personality", 1.0), ("wellbeing", 0.3))
LOCATION_WEIGHTS = (("personality", 0.9), ("relationships", 0.3))

RELATIONSHIP_TEMPLATES: List[RelationshipTemplate] = [
    RelationshipTemplate(
        kind="spouse",
        pattern=re.compile(
            r"\b(?i:my) (?i:(wife|husband|spouse|partner))(?:'s name is| is named| is called|,)? " + _NAME
        ),
        render=_spouse,
        weights=SPOUSE_WEIGHTS,
        salience=8.0
    ),
    RelationshipTemplate(
        kind="children",
        pattern=re.compile(
            r"\b(?i:my) (?i:(son|daughter))(?:'s name is| is named| is called|,)? " + _NAME
        ),
        render=_child_named,
        weights=CHILD_WEIGHTS,
        salience=8.0
    ),
    RelationshipTemplate(
        kind="children",
        pattern=re.compile(
            r"\bI(?: have|'ve got) (\d{1,2}|an?|one|two|three|four|five|six|seven|eight|nine|ten) "
            r"(kids?|children|child|sons?|daughters?)\b",
            re.IGNORECASE
        ),
        render=_child_count,
        weights=CHILD_WEIGHTS,
        salience=8.0
    ),
    RelationshipTemplate(
        kind="job",
        pattern=re.compile(
            r"\b(?:I work as|my job is|I'm employed as|I am employed as) (an?) "
            r"([a-z][a-z\- ]{1,40}?)(?= at | for |[.,!?;]|$)",
            re.IGNORECASE
        ),
        render=_job_title,
        weights=JOB_WEIGHTS,
        salience=7.0
    ),
    RelationshipTemplate(
        kind="job",
        pattern=re.compile(r"\b(?i:I work (?:at|for)) ([A-Z][\w&.\-]*(?: [A-Z][\w&.\-]*){0,3})"),
        render=_employer,
        weights=JOB_WEIGHTS,
        salience=7.0
    ),
    RelationshipTemplate(
        kind="age",
        pattern=re.compile(
            r"\bI(?:'m| am) (\d{1,3})(?: years old| yrs old| years of age)?\b"
            r"(?!\s*(?:%|percent|minutes?|mins?|hours?|days?|weeks?|months?|miles?|km|feet|ft|lbs?|pounds?|kg|th|st|nd|rd))",
            re.IGNORECASE
        ),
        render=_age,
        weights=AGE_WEIGHTS,
        salience=7.0
    ),
    RelationshipTemplate(
        kind="location",
        pattern=re.compile(r"\b(?i:I live in|I'm based in|I am based in|I reside in) " + _PLACE),
        render=_location,
        weights=LOCATION_WEIGHTS,
        salience=7.0
    ),
]


def extract_relationship_facts(
    message: str,
    templates: Optional[List[RelationshipTemplate]] = None
) -> List[RelationshipFact]:
    """
    Run every template against a message.

    Several templates may fire on one message. Identical content is only
    returned once.
    """
    facts: List[RelationshipFact] = []
    seen = set()

    for template in templates if templates is not None else RELATIONSHIP_TEMPLATES:
        for match in template.pattern.finditer(message):
            content = template.render(match)
            if not content or content.lower() in seen:
                continue
            seen.add(content.lower())
            facts.append(RelationshipFact(
                kind=template.kind,
                content=content,
                classifications=[
                    CategoryClassification(category, relevance, f"Relationship template: {template.kind}")
                    for category, relevance in template.weights
                ],
                salience=template.salience
            ))

    return facts
