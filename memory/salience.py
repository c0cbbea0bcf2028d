"""
Keepsake - Salience Calibrator
Raises the salience hint of freshly extracted memories from content heuristics
"""

import re
from typing import Optional, Sequence, Tuple, Any

HIGH_RELEVANCE = 0.7

_IDENTITY_PHRASES = re.compile(
    r"\b(name is|named|called|goes by|my name|their name|identity|introduced (?:himself|herself|themselves) as)\b",
    re.IGNORECASE
)

_ORIGIN_PHRASES = re.compile(
    r"\b(grew up|was born|born in|raised in|childhood|first met|how (?:we|they|he|she) met|"
    r"the day (?:we|i|they) met|started (?:the|our|my) (?:company|business|career)|"
    r"moved to .+ when|origin of|founded|got (?:my|our) start|where it all (?:began|started))\b",
    re.IGNORECASE
)

_SIGNIFICANT_DATE_PHRASES = re.compile(
    r"\b(birthday|anniversary|wedding|married|engaged|graduat\w*|funeral|passed away|died|"
    r"was born|due date|gave birth|retire\w*|divorc\w*|diagnos\w*|promoted|new job|"
    r"moved (?:in|house|out)|bought (?:a|our|my) (?:house|home))\b",
    re.IGNORECASE
)

_LIFE_FACT = re.compile(
    r"\b(\d{1,3} years old|age (?:is )?\d{1,3}|works? (?:as|at|for)|job is|occupation|"
    r"lives? in|living in|resides? in|based in|"
    r"(?:wife|husband|spouse|partner|son|daughter|mother|father|mom|dad|brother|sister|"
    r"grandmother|grandfather|child|children|kids?) (?:is|are|named))\b",
    re.IGNORECASE
)


def _classified(classifications: Sequence[Any], category: str, min_relevance: float = 0.0) -> bool:
    return any(
        c.category == category and c.relevance >= min_relevance
        for c in classifications
    )


def _mentions_name(content: str, user_name: Optional[str]) -> bool:
    if user_name and re.search(rf"\b{re.escape(user_name)}\b", content, re.IGNORECASE):
        return True
    return bool(_IDENTITY_PHRASES.search(content))


def calibrate_with_reason(
    content: str,
    memory_type: Optional[str],
    base: float,
    classifications: Sequence[Any] = (),
    user_name: Optional[str] = None
) -> Tuple[float, Optional[str]]:
    """
    Calibrate salience and name the rule that set the floor.

    Args:
        content: Memory text
        memory_type: fact, decision, goal, event, preference or identity
        base: Extraction salience hint
        classifications: Category classifications (``category``, ``relevance``)
        user_name: Locked user name, if known

    Returns:
        (score, reason); reason is None when no rule raised the score
    """
    base = min(float(base), 10.0)
    factual = memory_type in ("fact", "event", "identity")

    rules = [
        (10.0, "personality + identity",
         memory_type in ("fact", "identity")
         and _classified(classifications, "personality")
         and _mentions_name(content, user_name)),
        (9.0, "high-relevance personality",
         factual and _classified(classifications, "personality", HIGH_RELEVANCE)),
        (9.0, "origin story",
         factual and bool(_ORIGIN_PHRASES.search(content))),
        (8.0, "significant date",
         factual and bool(_SIGNIFICANT_DATE_PHRASES.search(content))),
        (8.0, "relationship event",
         memory_type == "event" and _classified(classifications, "relationships")),
        (8.0, "life fact",
         memory_type == "fact" and bool(_LIFE_FACT.search(content))),
        (7.0, "goal",
         memory_type == "goal"),
    ]

    for floor, reason, matched in rules:
        if matched and floor > base:
            return min(10.0, floor), reason

    return base, None


def calibrate_salience(
    content: str,
    memory_type: Optional[str],
    base: float,
    classifications: Sequence[Any] = (),
    user_name: Optional[str] = None
) -> float:
    """Calibrated salience; never below ``base`` and never above 10."""
    score, _ = calibrate_with_reason(content, memory_type, base, classifications, user_name)
    return score
