"""
Keepsake - Natural Language Time Helpers
Relative time parsing, date tables for prompts, and due-date normalisation
"""

import re
from datetime import datetime, date, timedelta
from typing import Optional, List

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

# Patterns for parsing time expressions (searched anywhere in the text)
TIME_PATTERNS = [
    # "in X minutes/hours/days/weeks"
    (r'in\s+(\d+)\s*(?:min(?:ute)?s?)\b', 'minutes'),
    (r'in\s+(\d+)\s*(?:h(?:ou)?rs?)\b', 'hours'),
    (r'in\s+(\d+)\s*(?:days?)\b', 'days'),
    (r'in\s+(\d+)\s*(?:weeks?)\b', 'weeks'),

    # "in an hour", "in half an hour"
    (r'in\s+half\s+an?\s+hour', 'half_hour'),
    (r'in\s+an?\s+hour', 'one_hour'),

    # Relative day expressions
    (r'tomorrow\s+morning', 'tomorrow_morning'),
    (r'tomorrow\s+afternoon', 'tomorrow_afternoon'),
    (r'tomorrow\s+evening', 'tomorrow_evening'),
    (r'tomorrow', 'tomorrow'),
    (r'this\s+evening', 'this_evening'),
    (r'tonight', 'tonight'),
    (r'later\s+today', 'later_today'),
    (r'next\s+week', 'next_week'),
]


def parse_time_expression(expression: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """
    Parse a natural language time expression into a datetime.

    Args:
        expression: Text containing e.g. "in 2 hours" or "tomorrow morning"
        now: Current datetime (defaults to datetime.now())

    Returns:
        When the expression points to, or None if nothing was recognised
    """
    if now is None:
        now = datetime.now()

    text = expression.lower()
    for pattern, unit in TIME_PATTERNS:
        match = re.search(pattern, text)
        if not match:
            continue

        if unit == 'minutes':
            return now + timedelta(minutes=int(match.group(1)))
        elif unit == 'hours':
            return now + timedelta(hours=int(match.group(1)))
        elif unit == 'days':
            return now + timedelta(days=int(match.group(1)))
        elif unit == 'weeks':
            return now + timedelta(weeks=int(match.group(1)))
        elif unit == 'half_hour':
            return now + timedelta(minutes=30)
        elif unit == 'one_hour':
            return now + timedelta(hours=1)
        elif unit in ('tomorrow', 'tomorrow_morning'):
            return _at(now + timedelta(days=1), 9)
        elif unit == 'tomorrow_afternoon':
            return _at(now + timedelta(days=1), 14)
        elif unit == 'tomorrow_evening':
            return _at(now + timedelta(days=1), 18)
        elif unit == 'this_evening':
            return _at(now, 18)
        elif unit == 'tonight':
            tonight = _at(now, 20)
            # Past 8pm: tomorrow night
            return tonight if tonight > now else tonight + timedelta(days=1)
        elif unit == 'later_today':
            return now + timedelta(hours=2)
        elif unit == 'next_week':
            return now + timedelta(days=7)

    return None


def _at(day: datetime, hour: int) -> datetime:
    return day.replace(hour=hour, minute=0, second=0, microsecond=0)


def minutes_until(target: datetime, now: datetime) -> int:
    """Whole minutes from now until target (never negative)."""
    return max(0, int((target - now).total_seconds() // 60))


def coming_weekday(weekday: int, today: date) -> date:
    """
    The next date falling on ``weekday`` (0 = Monday).

    "By Friday" on a Friday means next week's Friday, so the result is
    always strictly after ``today``.
    """
    days_ahead = (weekday - today.weekday()) % 7
    return today + timedelta(days=days_ahead or 7)


def build_date_table(now: datetime) -> str:
    """
    Date context for classifier prompts.

    The model is given concrete dates instead of doing calendar arithmetic.
    """
    today = now.date()
    lines: List[str] = [
        f"CURRENT DATE/TIME: {now.strftime('%A, %B %d, %Y %I:%M %p')}",
        f"TODAY IS: {now.strftime('%A')} ({today.isoformat()})",
        f"TOMORROW'S DATE: {(today + timedelta(days=1)).isoformat()}",
        "UPCOMING WEEKDAYS (\"by <day>\" / \"next <day>\" = the date below):",
    ]
    for index, name in enumerate(WEEKDAYS):
        lines.append(f"- {name.capitalize()}: {coming_weekday(index, today).isoformat()}")
    lines.append(f"NEXT WEEK (7 days): {(today + timedelta(days=7)).isoformat()}")
    return "\n".join(lines)


def end_of_day(day: datetime) -> datetime:
    return day.replace(hour=23, minute=59, second=59, microsecond=0)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO date or datetime from model output.

    Trailing ``Z`` and offsets are accepted; the result is naive local time
    like every timestamp in the store.
    """
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1]
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed.replace(tzinfo=None)


def normalize_due_at(value: Optional[str], all_day: bool) -> Optional[datetime]:
    """Parse a due date; all-day deadlines land at 23:59:59 of that day."""
    parsed = parse_iso_datetime(value)
    if parsed is None:
        return None
    return end_of_day(parsed) if all_day else parsed


def format_trigger_time(trigger_at: Optional[datetime], now: Optional[datetime] = None) -> str:
    """
    Format a trigger time for display.

    Returns:
        Human-readable string like "in 2 hours" or "tomorrow"
    """
    if trigger_at is None:
        return "unknown"

    if now is None:
        now = datetime.now()

    delta = trigger_at - now

    if delta.total_seconds() < 0:
        return "overdue"

    if delta.total_seconds() < 60:
        return "in less than a minute"

    if delta.total_seconds() < 3600:
        minutes = int(delta.total_seconds() / 60)
        return f"in {minutes} minute{'s' if minutes != 1 else ''}"

    if delta.total_seconds() < 86400:
        hours = int(delta.total_seconds() / 3600)
        return f"in {hours} hour{'s' if hours != 1 else ''}"

    days = int(delta.total_seconds() / 86400)
    if days == 1:
        return "tomorrow"
    return f"in {days} days"
