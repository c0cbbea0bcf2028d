"""
Keepsake - Intent Classifiers
Cheap local pre-filters gating one structured model call per intent
"""

import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, List, Any, Dict, Sequence

import config
from core.context import EngineContext
from core.exceptions import EngineError, ProviderUnavailableError
from core.logger import log_info, log_warning
from llm.json_repair import repair_json, as_bool, as_str, as_float, as_int
from llm.router import TaskType
from agency.time_parser import (
    build_date_table,
    parse_time_expression,
    parse_iso_datetime,
    normalize_due_at,
    minutes_until,
    coming_weekday
)


# =============================================================================
# PRE-FILTERS
# =============================================================================

IDENTITY_PREFILTER = re.compile(r"\b(i'?m|i am|my name is|call me|name'?s)\b", re.IGNORECASE)
REMINDER_PREFILTER = re.compile(r"remind|\bping\b|alert|don't forget|dont forget|set.+reminder", re.IGNORECASE)
NOTE_PREFILTER = re.compile(
    r"\b(note|jot|write (?:this|that) down|save this|remember that|take a note)\b",
    re.IGNORECASE
)
LIST_PREFILTER = re.compile(
    r"\b(list|add .+ to (?:my|the)|grocery|groceries|shopping|checklist|to-?do)\b",
    re.IGNORECASE
)
COMMITMENT_PREFILTER = re.compile(
    r"\b(need to|have to|should|must|want to|going to|will|promise|commit|schedule|"
    r"plan to|deadline|by|due|tomorrow|next week|today)\b",
    re.IGNORECASE
)
RESOLUTION_PREFILTER = re.compile(
    r"\b(done|finished|finally|completed|did it|sent|called|paid|submitted|shipped|booked|"
    r"cancel(?:l?ed)?|no longer|never ?mind|took care|handled|wrapped up|dropped)\b",
    re.IGNORECASE
)

_NAME_SHAPE = re.compile(r"^[^\W\d_][^\W\d_'\-]*(?:[ '\-][^\W\d_]+){0,2}$")

LIST_ACTIONS = ("create", "add_item")


def looks_like_identity(message: str) -> bool:
    return bool(IDENTITY_PREFILTER.search(message))


def looks_like_reminder(message: str) -> bool:
    return bool(REMINDER_PREFILTER.search(message))


def looks_like_note(message: str) -> bool:
    return bool(NOTE_PREFILTER.search(message))


def looks_like_list(message: str) -> bool:
    return bool(LIST_PREFILTER.search(message))


def looks_like_commitment(message: str) -> bool:
    return bool(COMMITMENT_PREFILTER.search(message))


def looks_like_resolution(message: str) -> bool:
    return bool(RESOLUTION_PREFILTER.search(message))


# =============================================================================
# PROMPTS
# =============================================================================

IDENTITY_SYSTEM_PROMPT = """Analyze this message and determine if the user is telling you their own name.

A self-introduction is when the user states what they are called:
- "I'm Brian"
- "My name is Brian"
- "Call me Bri"
- "Name's Brian, nice to meet you"

These are NOT self-introductions:
- Feelings or states: "I'm confident", "I'm tired", "I am so done with this"
- Ages or numbers: "I'm 56"
- Roles, places, relations: "I'm a teacher", "I'm in Boston", "I'm Sarah's husband"
- Other people's names: "My wife's name is Sarah"

Return JSON with:
- is_self_introduction: boolean - true only if the user is naming themselves
- name: string | null - the name exactly as the user gave it
- confidence: number - 0.0 to 1.0
- reasoning: string - one short sentence

Examples:
Input: "I'm Brian"
Output: {"is_self_introduction": true, "name": "Brian", "confidence": 0.97, "reasoning": "User states their name directly"}

Input: "I'm confident this will work"
Output: {"is_self_introduction": false, "name": null, "confidence": 0.98, "reasoning": "Describes a feeling, not a name"}

Input: "I'm 56 and still learning"
Output: {"is_self_introduction": false, "name": null, "confidence": 0.99, "reasoning": "States an age"}

IMPORTANT: Return ONLY valid JSON object, no markdown, no explanation."""

REMINDER_SYSTEM_PROMPT = """Analyze this message and detect if the user is requesting a reminder.

Look for patterns like:
- "remind me in X minutes/hours/days"
- "remind me to X"
- "set a reminder for X"
- "don't let me forget to X"
- "ping me about X in Y"
- "remind me tomorrow/tonight/this evening"

{date_table}

Return JSON with:
- is_reminder: boolean - true if this is a reminder request
- title: string | null - what to remind about (short, imperative, capitalized)
- delay_minutes: number | null - for relative times ("in 2 hours", "in 30 minutes")
- scheduled_at: string | null - ISO datetime for named times ("tomorrow", "Friday at 3pm")
- confidence: number - 0.0 to 1.0

Fill EXACTLY ONE of delay_minutes or scheduled_at, never both.

Time rules:
- "in 2 hours" = delay_minutes 120
- "tomorrow" or "tomorrow morning" = 9am on tomorrow's date
- "tomorrow afternoon" = 2pm on tomorrow's date
- "tonight" = 8pm today (tomorrow if it is already past 8pm)
- "this evening" = 6pm today
- "next week" = delay_minutes 10080
- weekday names = the date in the table above

Examples:
Input: "remind me in 2 hours to call mom"
Output: {{"is_reminder": true, "title": "Call mom", "delay_minutes": 120, "scheduled_at": null, "confidence": 0.97}}

Input: "set a reminder for 30 minutes to take a break"
Output: {{"is_reminder": true, "title": "Take a break", "delay_minutes": 30, "scheduled_at": null, "confidence": 0.95}}

Input: "remind me tomorrow to pick up groceries"
Output: {{"is_reminder": true, "title": "Pick up groceries", "delay_minutes": null, "scheduled_at": "{tomorrow}T09:00:00", "confidence": 0.95}}

Input: "I need to remember my dentist appointment"
Output: {{"is_reminder": false, "title": null, "delay_minutes": null, "scheduled_at": null, "confidence": 0.9}}

IMPORTANT: Return ONLY valid JSON object, no markdown, no explanation."""

NOTE_SYSTEM_PROMPT = """Analyze this message and determine if the user wants to save a note.

A note request is when the user asks you to write something down for later:
- "Note that the wifi password is hunter2"
- "Jot this down: Sarah's shoe size is 7"
- "Save this: the plumber's number is 555-0134"
- "Remember that Tom likes dark roast"

Do NOT treat these as notes:
- Reminders with a time ("remind me at 5")
- List items ("add eggs to my grocery list")
- Casual statements that merely mention the word "note"

Return JSON with:
- is_note: boolean
- content: string | null - the information to save, cleaned up
- title: string | null - a short title (3-6 words)
- category: string | null - one of: general, idea, reference, personal, work, health, recipe
- entity_name: string | null - a person, place or project the note is about, if named
- confidence: number - 0.0 to 1.0

Examples:
Input: "note that Tom likes dark roast coffee"
Output: {"is_note": true, "content": "Tom likes dark roast coffee", "title": "Tom's coffee preference", "category": "personal", "entity_name": "Tom", "confidence": 0.93}

Input: "that's worth noting I guess"
Output: {"is_note": false, "content": null, "title": null, "category": null, "entity_name": null, "confidence": 0.9}

IMPORTANT: Return ONLY valid JSON object, no markdown, no explanation."""

LIST_SYSTEM_PROMPT = """Analyze this message and determine if the user wants to create a list or add to one.

Actions:
- create: start a new list ("make a packing list with socks and chargers")
- add_item: put one item on a list ("add eggs to my grocery list")

Return JSON with:
- is_list_action: boolean
- action: "create" | "add_item" | null
- list_name: string | null - the list's name, without the word "list" ("Grocery", "Packing")
- item_content: string | null - the item for add_item
- initial_items: string[] - items to seed a new list with (may be empty)
- list_type: string - one of: checklist, shopping, todo, reference
- entity_name: string | null - a person, place or project the list is for, if named
- confidence: number - 0.0 to 1.0

Examples:
Input: "add eggs to my grocery list"
Output: {"is_list_action": true, "action": "add_item", "list_name": "Grocery", "item_content": "Eggs", "initial_items": [], "list_type": "shopping", "entity_name": null, "confidence": 0.96}

Input: "make a packing list for the Denver trip: socks, chargers, rain jacket"
Output: {"is_list_action": true, "action": "create", "list_name": "Denver trip packing", "item_content": null, "initial_items": ["Socks", "Chargers", "Rain jacket"], "list_type": "checklist", "entity_name": "Denver", "confidence": 0.94}

Input: "I have a long list of complaints about this phone"
Output: {"is_list_action": false, "action": null, "list_name": null, "item_content": null, "initial_items": [], "list_type": "checklist", "entity_name": null, "confidence": 0.9}

IMPORTANT: Return ONLY valid JSON object, no markdown, no explanation."""

COMMITMENT_SYSTEM_PROMPT = """Analyze this content and determine if it represents an actionable commitment.

A commitment is something the user:
- Needs to do, should do, wants to do, or has promised to do
- Has a deadline or timeframe (explicit or implied)
- Is actionable (not just a wish or abstract goal)

Return JSON with:
- is_commitment: boolean - true if this is an actionable commitment
- title: string - short actionable title (imperative form, e.g., "Finish report", "Call mom")
- description: string | null - additional context if any
- due_at: string | null - ISO date if deadline mentioned (use the dates below)
- all_day: boolean - true if no specific time mentioned
- confidence: number - 0.0 to 1.0

{date_table}

For relative dates, use the table above:
- "tomorrow" = {tomorrow}
- "next week" = 7 days from today
- "next Monday" = the coming Monday
- "in 3 days" = add 3 days to today
- "by Friday" = this coming Friday (or next if today is Friday)

Examples:
Input: "I need to finish the report by Friday"
Output: {{"is_commitment": true, "title": "Finish the report", "description": null, "due_at": "{friday}T23:59:59", "all_day": true, "confidence": 0.93}}

Input: "Call mom tomorrow at 3pm"
Output: {{"is_commitment": true, "title": "Call mom", "description": null, "due_at": "{tomorrow}T15:00:00", "all_day": false, "confidence": 0.95}}

Input: "My wife's name is Sarah"
Output: {{"is_commitment": false, "title": null, "description": null, "due_at": null, "all_day": false, "confidence": 0.98}}

IMPORTANT: Return ONLY valid JSON object, no markdown, no explanation."""

EXTRACTION_SYSTEM_PROMPT = """You are analyzing a conversation to extract memorable information about the user.

Your job is to identify information worth remembering long-term:
- Facts about the user (name, job, relationships, interests, location)
- Decisions or commitments they've made
- Goals or aspirations they've mentioned
- Important events they've discussed
- Preferences they've expressed

Skip:
- Greetings and small talk ("hello", "thanks", "bye")
- Meta-conversation about the AI/chat itself
- Questions without meaningful context
- Repeated information (only extract once)

Return a JSON array of memories to extract. Each memory should be a clear, standalone statement.
Each entry has "content", "type" (fact, decision, goal, event or preference) and "salience_hint" (1-10).

Example input:
User: I've been working on this AI memory project called Squire for about 2 months now
User: My wife Sarah thinks I spend too much time coding
User: I really want to ship this by January

Example output:
[
  {"content": "Brian has been working on an AI memory project called Squire for approximately 2 months", "type": "fact", "salience_hint": 7},
  {"content": "Brian's wife is named Sarah", "type": "fact", "salience_hint": 6},
  {"content": "Sarah thinks Brian spends too much time coding", "type": "fact", "salience_hint": 5},
  {"content": "Brian wants to ship Squire by January", "type": "goal", "salience_hint": 8}
]

If there's nothing worth remembering, return: []

IMPORTANT: Return ONLY valid JSON array, no markdown, no explanation."""

RESOLUTION_SYSTEM_PROMPT = """Analyze this message and decide whether it reports that one of the user's open commitments is finished or no longer needed.

You will be given the message and a numbered list of open commitments.

Return JSON with:
- is_resolution: boolean - true only if the message clearly closes one listed commitment
- commitment_number: number | null - the number from the list
- resolution: "completed" | "canceled" | null
- confidence: number - 0.0 to 1.0

Examples:
Commitments:
1. Finish the report
2. Call mom
Message: "finally sent the report off to my boss"
Output: {"is_resolution": true, "commitment_number": 1, "resolution": "completed", "confidence": 0.92}

Message: "the report is going slowly"
Output: {"is_resolution": false, "commitment_number": null, "resolution": null, "confidence": 0.9}

IMPORTANT: Return ONLY valid JSON object, no markdown, no explanation."""


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class IdentityDetection:
    name: str
    confidence: float
    reasoning: str = ""


@dataclass
class ReminderDetection:
    """Exactly one of ``delay_minutes`` and ``scheduled_at`` is set."""
    title: str
    delay_minutes: Optional[int]
    scheduled_at: Optional[datetime]
    confidence: float


@dataclass
class NoteDetection:
    content: str
    title: Optional[str]
    category: Optional[str]
    entity_name: Optional[str]
    confidence: float


@dataclass
class ListDetection:
    action: str
    list_name: str
    item_content: Optional[str]
    initial_items: List[str] = field(default_factory=list)
    list_type: str = "checklist"
    entity_name: Optional[str] = None
    confidence: float = 1.0


@dataclass
class CommitmentDetection:
    title: str
    description: Optional[str]
    due_at: Optional[datetime]
    all_day: bool
    confidence: float


@dataclass
class ExtractedMemory:
    """One candidate memory from bulk extraction."""
    content: str
    memory_type: str
    salience_hint: float


@dataclass
class ResolutionDetection:
    commitment_id: int
    resolution: str
    confidence: float


# =============================================================================
# CLASSIFIER
# =============================================================================

class IntentClassifier:
    """
    Runs the structured classification calls.

    Every ``classify_*`` method returns a detection or None. None covers
    "no match", low confidence, unparseable output, and a cancelled,
    timed-out or failed call; nothing is fabricated from a missing answer.
    ``extract_memories`` is the exception: the batch path needs to tell a
    failed transcript call apart from an empty one, so it raises.
    """

    def __init__(
        self,
        ctx: EngineContext,
        confidence_threshold: float = config.CLASSIFIER_CONFIDENCE_THRESHOLD,
        temperature: float = config.CLASSIFIER_TEMPERATURE,
        timeout: Optional[float] = None
    ):
        self.ctx = ctx
        self.confidence_threshold = confidence_threshold
        self.temperature = temperature
        self.timeout = timeout

    def _ask(
        self,
        label: str,
        system_prompt: str,
        content: str,
        cancel_event: Optional[threading.Event] = None,
        max_tokens: int = 300
    ) -> Optional[Dict[str, Any]]:
        response = self.ctx.llm.complete(
            messages=[{"role": "user", "content": content}],
            system_prompt=system_prompt,
            task_type=TaskType.CLASSIFICATION,
            temperature=self.temperature,
            max_tokens=max_tokens,
            cancel_event=cancel_event,
            timeout=self.timeout
        )

        if not response.success:
            if response.error_type in ("cancelled", "timeout"):
                log_info(f"{label} check abandoned ({response.error_type})", prefix="⏹")
            else:
                log_warning(f"{label} check failed: {response.error}")
            return None

        parsed = repair_json(response.text, expect="object")
        if not isinstance(parsed, dict):
            log_warning(f"Failed to parse {label} JSON: {response.text[:200]!r}")
            return None
        return parsed

    def _confident(self, label: str, data: Dict[str, Any], required: bool = False) -> Optional[float]:
        """Confidence if it clears the threshold, else None."""
        confidence = as_float(data.get("confidence"), None if required else 1.0)
        if confidence is None or confidence < self.confidence_threshold:
            log_info(f"{label} below confidence threshold ({confidence})", prefix="🤔")
            return None
        return min(1.0, confidence)

    # -------------------------------------------------------------------------
    # Real-time intents
    # -------------------------------------------------------------------------

    def classify_identity(
        self,
        message: str,
        cancel_event: Optional[threading.Event] = None
    ) -> Optional[IdentityDetection]:
        """Self-introduction check. Confidence is mandatory here."""
        if not looks_like_identity(message):
            return None

        data = self._ask("identity", IDENTITY_SYSTEM_PROMPT, message, cancel_event, max_tokens=200)
        if not data or not as_bool(data.get("is_self_introduction")):
            return None

        confidence = self._confident("identity", data, required=True)
        name = as_str(data.get("name"))
        if confidence is None or not name:
            return None
        if not _NAME_SHAPE.match(name):
            log_warning(f"Rejected implausible name from identity check: {name!r}")
            return None

        return IdentityDetection(name=name, confidence=confidence, reasoning=as_str(data.get("reasoning")) or "")

    def classify_reminder(
        self,
        message: str,
        cancel_event: Optional[threading.Event] = None
    ) -> Optional[ReminderDetection]:
        if not looks_like_reminder(message):
            return None

        now = self.ctx.now()
        prompt = REMINDER_SYSTEM_PROMPT.format(
            date_table=build_date_table(now),
            tomorrow=(now.date() + timedelta(days=1)).isoformat()
        )
        data = self._ask("reminder", prompt, message, cancel_event)
        if not data or not as_bool(data.get("is_reminder")):
            return None

        confidence = self._confident("reminder", data)
        title = as_str(data.get("title"))
        if confidence is None or not title:
            return None

        delay = as_int(data.get("delay_minutes"))
        scheduled_at = parse_iso_datetime(as_str(data.get("scheduled_at")))

        if delay is not None and delay > 0:
            scheduled_at = None
        elif scheduled_at is not None and scheduled_at > now:
            delay = None
        else:
            # Model found the intent but not the time
            fallback = parse_time_expression(message, now)
            if fallback is None or fallback <= now:
                log_warning(f"Reminder \"{title}\" has no usable time, skipping")
                return None
            delay, scheduled_at = max(1, minutes_until(fallback, now)), None

        return ReminderDetection(
            title=_capitalize(title),
            delay_minutes=delay,
            scheduled_at=scheduled_at,
            confidence=confidence
        )

    def classify_note(
        self,
        message: str,
        cancel_event: Optional[threading.Event] = None
    ) -> Optional[NoteDetection]:
        if not looks_like_note(message):
            return None

        data = self._ask("note", NOTE_SYSTEM_PROMPT, message, cancel_event)
        if not data or not as_bool(data.get("is_note")):
            return None

        confidence = self._confident("note", data)
        content = as_str(data.get("content"))
        if confidence is None or not content:
            return None

        return NoteDetection(
            content=content,
            title=as_str(data.get("title")),
            category=as_str(data.get("category")),
            entity_name=as_str(data.get("entity_name")),
            confidence=confidence
        )

    def classify_list(
        self,
        message: str,
        cancel_event: Optional[threading.Event] = None
    ) -> Optional[ListDetection]:
        if not looks_like_list(message):
            return None

        data = self._ask("list", LIST_SYSTEM_PROMPT, message, cancel_event)
        if not data or not as_bool(data.get("is_list_action")):
            return None

        confidence = self._confident("list", data)
        action = as_str(data.get("action"))
        list_name = as_str(data.get("list_name"))
        item = as_str(data.get("item_content"))
        if confidence is None or action not in LIST_ACTIONS or not list_name:
            return None
        if action == "add_item" and not item:
            log_warning(f"List add without an item for \"{list_name}\", skipping")
            return None

        raw_items = data.get("initial_items")
        initial_items = [s for s in (as_str(i) for i in raw_items) if s] if isinstance(raw_items, list) else []

        return ListDetection(
            action=action,
            list_name=list_name,
            item_content=item,
            initial_items=initial_items,
            list_type=as_str(data.get("list_type")) or "checklist",
            entity_name=as_str(data.get("entity_name")),
            confidence=confidence
        )

    def classify_commitment(
        self,
        text: str,
        cancel_event: Optional[threading.Event] = None,
        prefilter: bool = True
    ) -> Optional[CommitmentDetection]:
        """
        Commitment check.

        The batch path runs it on goal/decision memories without the
        keyword pre-filter.
        """
        if prefilter and not looks_like_commitment(text):
            return None

        now = self.ctx.now()
        today = now.date()
        prompt = COMMITMENT_SYSTEM_PROMPT.format(
            date_table=build_date_table(now),
            tomorrow=(today + timedelta(days=1)).isoformat(),
            friday=coming_weekday(4, today).isoformat()
        )
        data = self._ask("commitment", prompt, text, cancel_event, max_tokens=500)
        if not data or not as_bool(data.get("is_commitment")):
            return None

        confidence = self._confident("commitment", data)
        title = as_str(data.get("title"))
        if confidence is None or not title:
            return None

        all_day = as_bool(data.get("all_day"))
        due_at = normalize_due_at(as_str(data.get("due_at")), all_day)

        return CommitmentDetection(
            title=_capitalize(title),
            description=as_str(data.get("description")),
            due_at=due_at,
            all_day=all_day if due_at else False,
            confidence=confidence
        )

    # -------------------------------------------------------------------------
    # Batch-only
    # -------------------------------------------------------------------------

    def extract_memories(self, transcript: str) -> List[ExtractedMemory]:
        """
        Bulk memory extraction over a transcript.

        Entries with short content, an out-of-range hint or an unknown
        type are dropped silently. Unparseable output counts as nothing
        extracted.

        Raises:
            ProviderUnavailableError: The provider could not be reached
            EngineError: The call failed for any other reason
        """
        if not transcript.strip():
            return []

        response = self.ctx.llm.complete(
            messages=[{"role": "user", "content": transcript}],
            system_prompt=EXTRACTION_SYSTEM_PROMPT,
            task_type=TaskType.EXTRACTION,
            temperature=config.EXTRACTION_TEMPERATURE,
            max_tokens=config.EXTRACTION_MAX_TOKENS
        )

        if not response.success:
            if response.error_type in config.PROVIDER_UNAVAILABLE_ERRORS:
                raise ProviderUnavailableError(
                    f"Extraction provider unavailable: {response.error}",
                    error_type=response.error_type
                )
            raise EngineError(f"Extraction call failed: {response.error}")

        if response.text.strip() in ("", "[]"):
            return []

        parsed = repair_json(response.text, expect="array")
        if not isinstance(parsed, list):
            log_warning(f"Failed to parse extraction response: {response.text[:200]!r}")
            return []

        memories = []
        for item in parsed:
            if not isinstance(item, dict):
                continue
            content = as_str(item.get("content"))
            memory_type = as_str(item.get("type"))
            hint = as_float(item.get("salience_hint"))
            if not content or len(content) <= config.EXTRACTION_MIN_CONTENT_LENGTH:
                continue
            if hint is None or not 1 <= hint <= 10:
                continue
            if memory_type not in config.MEMORY_TYPES:
                continue
            memories.append(ExtractedMemory(content=content, memory_type=memory_type, salience_hint=hint))

        dropped = len(parsed) - len(memories)
        if dropped:
            log_info(f"Dropped {dropped} invalid extraction entr{'y' if dropped == 1 else 'ies'}", prefix="🧠")
        return memories

    def detect_resolution(
        self,
        message: str,
        open_commitments: Sequence[Any]
    ) -> Optional[ResolutionDetection]:
        """
        Does this message close one of the open commitments?

        Args:
            message: A user message
            open_commitments: Objects with ``id`` and ``title``
        """
        if not open_commitments or not looks_like_resolution(message):
            return None

        numbered = "\n".join(f"{i}. {c.title}" for i, c in enumerate(open_commitments, start=1))
        data = self._ask(
            "resolution",
            RESOLUTION_SYSTEM_PROMPT,
            f"Commitments:\n{numbered}\n\nMessage: \"{message}\""
        )
        if not data or not as_bool(data.get("is_resolution")):
            return None

        confidence = self._confident("resolution", data)
        number = as_int(data.get("commitment_number"))
        if confidence is None or number is None or not 1 <= number <= len(open_commitments):
            return None

        resolution = as_str(data.get("resolution")) or "completed"
        if resolution not in ("completed", "canceled"):
            resolution = "completed"

        return ResolutionDetection(
            commitment_id=open_commitments[number - 1].id,
            resolution=resolution,
            confidence=confidence
        )


def _capitalize(text: str) -> str:
    return text[:1].upper() + text[1:]
