"""
Keepsake - Real-Time Dispatcher
Classifies one incoming message and performs the winning side effect before the reply
"""

import re
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Callable, Dict, Any

import config
from core.context import EngineContext
from core.logger import log_info, log_success, log_error
from memory.vector_store import MemoryStore, DuplicatePolicy
from memory.categories import CategoryService, CategoryClassification
from agency.reminders import ReminderService
from agency.commitments import CommitmentService, CommitmentStatus
from agency.notes import NoteService
from agency.lists import ListService
from agency.entities import EntityService
from extraction.classifiers import (
    IntentClassifier,
    looks_like_identity,
    looks_like_reminder,
    looks_like_note,
    looks_like_list,
    looks_like_commitment
)
from extraction.relationships import extract_relationship_facts


def _mentions_word(text: str, word: str) -> bool:
    return bool(re.search(rf"\b{re.escape(word)}\b", text, re.IGNORECASE))


@dataclass
class DispatchResult:
    """
    What a real-time dispatch created.

    ``matched`` lists the cascade steps that produced something, in order.
    """
    matched: List[str] = field(default_factory=list)
    identity_name: Optional[str] = None
    memory_ids: List[int] = field(default_factory=list)
    reminder_id: Optional[int] = None
    reminder_title: Optional[str] = None
    remind_at: Optional[datetime] = None
    note_id: Optional[int] = None
    list_id: Optional[int] = None
    list_item_id: Optional[int] = None
    list_created: bool = False
    commitment_id: Optional[int] = None
    commitment_title: Optional[str] = None
    cancelled: bool = False

    @property
    def created_anything(self) -> bool:
        return bool(self.matched)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "matched": list(self.matched),
            "identity_name": self.identity_name,
            "memory_ids": list(self.memory_ids),
            "reminder": {
                "id": self.reminder_id,
                "title": self.reminder_title,
                "remind_at": self.remind_at.isoformat() if self.remind_at else None,
            } if self.reminder_id else None,
            "note_id": self.note_id,
            "list": {
                "id": self.list_id,
                "item_id": self.list_item_id,
                "created": self.list_created,
            } if self.list_id else None,
            "commitment": {
                "id": self.commitment_id,
                "title": self.commitment_title,
            } if self.commitment_id else None,
            "cancelled": self.cancelled,
        }


@dataclass
class DispatchState:
    """Per-message inputs and the result the handlers fill in."""
    message: str
    conversation_id: Optional[int] = None
    message_id: Optional[int] = None
    cancel_event: Optional[threading.Event] = None
    result: DispatchResult = field(default_factory=DispatchResult)


@dataclass
class CascadeStep:
    """
    One entry in the priority order.

    ``predicate`` is the cheap gate; ``handler`` does the work and returns
    True when it created something. Steps sharing a ``group`` are not
    mutually exclusive.
    """
    name: str
    group: str
    predicate: Callable[[DispatchState], bool]
    handler: Callable[[DispatchState], bool]


def run_cascade(steps: List[CascadeStep], state: DispatchState) -> List[str]:
    """
    Evaluate steps in order.

    Once a step matches, only later steps of the same group still run.
    A handler that raises counts as no match. A set cancel event stops
    the cascade before the next step.

    Returns:
        Names of the steps that matched
    """
    matched: List[str] = []
    winning_group: Optional[str] = None

    for step in steps:
        if state.cancel_event is not None and state.cancel_event.is_set():
            state.result.cancelled = True
            log_info(f"Dispatch cancelled before '{step.name}'", prefix="⏹")
            break
        if winning_group is not None and step.group != winning_group:
            continue
        if not step.predicate(state):
            continue

        try:
            hit = step.handler(state)
        except Exception as e:
            log_error(f"Real-time {step.name} step failed: {e}")
            hit = False

        if hit:
            matched.append(step.name)
            if winning_group is None:
                winning_group = step.group

    return matched


class RealTimeDispatcher:
    """
    Synchronous intent dispatch for a single message.

    Priority: identity, relationship facts, reminder, note, list,
    commitment. Never touches message extraction status; that belongs to
    the batch path.
    """

    def __init__(
        self,
        ctx: EngineContext,
        classifier: Optional[IntentClassifier] = None,
        duplicate_policy: Optional[DuplicatePolicy] = None
    ):
        self.ctx = ctx
        self.classifier = classifier or IntentClassifier(ctx, timeout=config.REALTIME_CALL_TIMEOUT)
        self.duplicate_policy = duplicate_policy or DuplicatePolicy()

        self.memories = MemoryStore(ctx)
        self.categories = CategoryService(ctx)
        self.reminders = ReminderService(ctx)
        self.commitments = CommitmentService(ctx)
        self.notes = NoteService(ctx)
        self.lists = ListService(ctx)
        self.entities = EntityService(ctx)

        self.steps = self.build_steps()

    def build_steps(self) -> List[CascadeStep]:
        return [
            CascadeStep("identity", "profile", self._identity_gate, self._handle_identity),
            CascadeStep("relationship", "profile", lambda s: True, self._handle_relationships),
            CascadeStep("reminder", "reminder", lambda s: looks_like_reminder(s.message), self._handle_reminder),
            CascadeStep("note", "note", lambda s: looks_like_note(s.message), self._handle_note),
            CascadeStep("list", "list", lambda s: looks_like_list(s.message), self._handle_list),
            CascadeStep("commitment", "commitment", lambda s: looks_like_commitment(s.message), self._handle_commitment),
        ]

    def process_message_realtime(
        self,
        message: str,
        conversation_id: Optional[int] = None,
        message_id: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> DispatchResult:
        """
        Classify a message and perform at most one intent's side effect.

        Args:
            message: The user's message text
            conversation_id: Conversation the message belongs to
            message_id: Stored message id, recorded on reminders and commitments
            cancel_event: Set by the caller to abandon in-flight checks

        Returns:
            DispatchResult describing what was created
        """
        state = DispatchState(
            message=message,
            conversation_id=conversation_id,
            message_id=message_id,
            cancel_event=cancel_event
        )
        if not message or not message.strip():
            return state.result

        state.result.matched = run_cascade(self.steps, state)

        if state.result.matched:
            log_info(f"Real-time dispatch: {', '.join(state.result.matched)}", prefix="⚡")
        return state.result

    # =========================================================================
    # HANDLERS
    # =========================================================================

    def _identity_gate(self, state: DispatchState) -> bool:
        return looks_like_identity(state.message) and not self.ctx.identity.is_locked()

    def _handle_identity(self, state: DispatchState) -> bool:
        detection = self.classifier.classify_identity(state.message, state.cancel_event)
        if detection is None:
            return False

        # The lock statement re-checks atomically; a concurrent lock wins
        if not self.ctx.identity.lock_identity(detection.name, source="auto_detection"):
            return False

        try:
            memory_id = self.memories.add_memory(
                f"The user's name is {detection.name}",
                memory_type="identity",
                source="realtime_identity",
                source_metadata={
                    "conversation_id": state.conversation_id,
                    "message_id": state.message_id,
                    "confidence": detection.confidence,
                },
                salience=config.IDENTITY_MEMORY_SALIENCE
            )
            self.categories.link_memory_to_categories(
                memory_id,
                [CategoryClassification("personality", 1.0, "User introduced themselves")]
            )

            summary = self.categories.get_summary("personality")
            if summary is None or not _mentions_word(summary.content, detection.name):
                self.categories.append_to_summary("personality", f"Your name is {detection.name}.")
        except Exception as e:
            # The lock is already committed; the rest needs manual repair
            state.result.identity_name = detection.name
            log_error(f"Identity locked as {detection.name} but identity memory was not recorded: {e}")
            raise

        state.result.identity_name = detection.name
        state.result.memory_ids.append(memory_id)
        log_success(f"Identity detected: {detection.name} ({detection.confidence:.2f})")
        return True

    def _handle_relationships(self, state: DispatchState) -> bool:
        created = 0
        for fact in extract_relationship_facts(state.message):
            duplicate = self.memories.find_duplicate(fact.content, self.duplicate_policy)
            if duplicate is not None:
                log_info(f"Skipping {fact.kind} fact, matches memory [{duplicate}]", prefix="👥")
                continue

            memory_id = self.memories.add_memory(
                fact.content,
                memory_type="fact",
                source="realtime_relationship",
                source_metadata={
                    "conversation_id": state.conversation_id,
                    "message_id": state.message_id,
                    "template": fact.kind,
                },
                salience=fact.salience
            )
            self.categories.link_memory_to_categories(memory_id, fact.classifications)
            state.result.memory_ids.append(memory_id)
            created += 1
            log_info(f"Stored {fact.kind} fact: {fact.content}", prefix="👥")

        return created > 0

    def _handle_reminder(self, state: DispatchState) -> bool:
        detection = self.classifier.classify_reminder(state.message, state.cancel_event)
        if detection is None:
            return False

        reminder_id = self.reminders.create_reminder(
            detection.title,
            delay_minutes=detection.delay_minutes,
            scheduled_at=detection.scheduled_at,
            source_message_id=state.message_id
        )
        reminder = self.reminders.get_reminder(reminder_id)
        state.result.reminder_id = reminder_id
        state.result.reminder_title = detection.title
        state.result.remind_at = reminder.remind_at if reminder else None
        return True

    def _handle_note(self, state: DispatchState) -> bool:
        detection = self.classifier.classify_note(state.message, state.cancel_event)
        if detection is None:
            return False

        state.result.note_id = self.notes.create_note(
            detection.content,
            title=detection.title,
            category=detection.category,
            entity_id=self.entities.resolve(detection.entity_name),
            source_type="chat"
        )
        return True

    def _handle_list(self, state: DispatchState) -> bool:
        detection = self.classifier.classify_list(state.message, state.cancel_event)
        if detection is None:
            return False

        if detection.action == "create":
            existing = self.lists.find_list_by_name(detection.list_name)
            if existing is not None:
                # "Make a grocery list with eggs" when one already exists
                list_id = existing.id
                for item in detection.initial_items:
                    self.lists.add_item(detection.list_name, item, detection.list_type)
            else:
                list_id = self.lists.create_list(
                    detection.list_name,
                    list_type=detection.list_type,
                    entity_id=self.entities.resolve(detection.entity_name),
                    initial_items=detection.initial_items
                )
                state.result.list_created = True
            state.result.list_id = list_id
            return True

        list_id, item_id, created = self.lists.add_item(
            detection.list_name,
            detection.item_content,
            detection.list_type
        )
        state.result.list_id = list_id
        state.result.list_item_id = item_id
        state.result.list_created = created
        return True

    def _handle_commitment(self, state: DispatchState) -> bool:
        detection = self.classifier.classify_commitment(state.message, state.cancel_event)
        if detection is None:
            return False

        state.result.commitment_id = self.commitments.create_commitment(
            detection.title,
            description=detection.description,
            due_at=detection.due_at,
            all_day=detection.all_day,
            source_type="chat",
            status=CommitmentStatus.CONFIRMED,
            source_message_id=state.message_id
        )
        state.result.commitment_title = detection.title
        return True
