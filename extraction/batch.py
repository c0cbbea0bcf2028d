"""
Keepsake - Batch Extraction Coordinator
Turns pending chat messages into long-term memories, one conversation at a time

Each conversation's pending user messages are read in sequence order,
joined into a transcript and sent through bulk extraction. Every extracted
candidate becomes a memory and then goes through category linking, salience
calibration, event dating, belief derivation and commitment detection.
Those follow-up steps are best-effort: one failing never aborts the rest.

Messages leave ``pending`` exactly once. They are marked ``extracted`` (or
``skipped`` when nothing was worth keeping) only after the conversation's
transcript call succeeded; if that call or the marking fails the
conversation is reported as errored and retried next run.
"""

from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any

from core.context import EngineContext
from core.exceptions import EngineError, ConversationExtractionError, ProviderUnavailableError
from core.logger import log_info, log_success, log_warning, log_error
from concurrency.db_retry import execute_with_retry
from memory.conversation import ConversationStore, Message
from memory.vector_store import MemoryStore
from memory.categories import CategoryService
from memory.salience import calibrate_with_reason
from memory.event_dates import extract_event_date
from memory.beliefs import BeliefService
from agency.reminders import ReminderService
from agency.commitments import CommitmentService, CommitmentStatus
from extraction.classifiers import IntentClassifier, ExtractedMemory

BELIEF_TYPES = ("decision", "preference", "goal")
COMMITMENT_TYPES = ("goal", "decision")


@dataclass
class ConversationOutcome:
    """Counts for one conversation."""
    conversation_id: int
    messages_processed: int = 0
    memories_created: int = 0
    commitments_created: int = 0
    commitments_resolved: int = 0
    reminders_created: int = 0
    beliefs_created: int = 0
    beliefs_reinforced: int = 0
    belief_conflicts: int = 0
    skipped: bool = False


@dataclass
class ExtractionResult:
    """Totals for one coordinator run."""
    conversations_processed: int = 0
    messages_processed: int = 0
    memories_created: int = 0
    commitments_created: int = 0
    commitments_resolved: int = 0
    reminders_created: int = 0
    beliefs_created: int = 0
    beliefs_reinforced: int = 0
    belief_conflicts: int = 0
    skipped_empty: int = 0
    errors: List[str] = field(default_factory=list)

    def add(self, outcome: ConversationOutcome) -> None:
        self.conversations_processed += 1
        self.messages_processed += outcome.messages_processed
        self.memories_created += outcome.memories_created
        self.commitments_created += outcome.commitments_created
        self.commitments_resolved += outcome.commitments_resolved
        self.reminders_created += outcome.reminders_created
        self.beliefs_created += outcome.beliefs_created
        self.beliefs_reinforced += outcome.beliefs_reinforced
        self.belief_conflicts += outcome.belief_conflicts
        if outcome.skipped:
            self.skipped_empty += 1


class BatchExtractionCoordinator:
    """Processes every conversation that has pending user messages."""

    def __init__(self, ctx: EngineContext, classifier: Optional[IntentClassifier] = None):
        self.ctx = ctx
        self.classifier = classifier or IntentClassifier(ctx)
        self.conversations = ConversationStore(ctx)
        self.memories = MemoryStore(ctx)
        self.categories = CategoryService(ctx)
        self.beliefs = BeliefService(ctx)
        self.reminders = ReminderService(ctx)
        self.commitments = CommitmentService(ctx)

    def extract_pending(self) -> ExtractionResult:
        """
        Run extraction over all pending conversations, oldest first.

        Conversations are processed sequentially; a failing conversation
        is recorded in ``errors`` and the run moves on.

        Raises:
            ProviderUnavailableError: The generation provider is down
        """
        result = ExtractionResult()

        with self.ctx.locks.acquire("memory_extraction"):
            conversation_ids = self.conversations.get_pending_conversations()
            if not conversation_ids:
                log_info("No pending conversations to process", prefix="🧠")
                return result

            log_info(f"Processing {len(conversation_ids)} conversation(s)...", prefix="🧠")

            for conversation_id in conversation_ids:
                try:
                    outcome = self.extract_conversation(conversation_id)
                except ConversationExtractionError as e:
                    log_error(str(e))
                    result.errors.append(str(e))
                    continue
                result.add(outcome)

        log_success(
            f"Extraction complete: {result.memories_created} memories, "
            f"{result.commitments_created} commitments created, {result.commitments_resolved} resolved, "
            f"{result.reminders_created} reminders, {result.beliefs_created} beliefs, "
            f"{result.skipped_empty} skipped"
        )
        return result

    def extract_conversation(self, conversation_id: int) -> ConversationOutcome:
        """
        Extract memories from one conversation's pending messages.

        Raises:
            ConversationExtractionError: Transcript call or status marking failed
            ProviderUnavailableError: The generation provider is down
        """
        outcome = ConversationOutcome(conversation_id=conversation_id)
        messages = self.conversations.get_pending_messages(conversation_id)
        if not messages:
            outcome.skipped = True
            return outcome

        message_ids = [m.id for m in messages]
        transcript = build_transcript(messages)

        try:
            extracted = self.classifier.extract_memories(transcript)
        except ProviderUnavailableError:
            raise
        except EngineError as e:
            raise ConversationExtractionError(conversation_id, str(e)) from e

        outcome.reminders_created = self._detect_reminders(messages)
        outcome.commitments_resolved = self._detect_resolutions(messages)

        if not extracted:
            self._mark(conversation_id, message_ids, "skipped")
            outcome.messages_processed = len(messages)
            outcome.skipped = outcome.reminders_created == 0 and outcome.commitments_resolved == 0
            return outcome

        # A reminder or commitment already made for these messages outranks a
        # commitment inferred from the transcript
        allow_commitments = not self._has_intent_artifacts(messages)
        for candidate in extracted:
            self._process_candidate(candidate, conversation_id, outcome, allow_commitments)

        self._mark(conversation_id, message_ids, "extracted")
        outcome.messages_processed = len(messages)
        return outcome

    def _has_intent_artifacts(self, messages: List[Message]) -> bool:
        for message in messages:
            try:
                if (self.reminders.has_reminder_for_message(message.id)
                        or self.commitments.has_commitment_for_message(message.id)):
                    return True
            except Exception as e:
                log_error(f"Could not check intents for message {message.id}: {e}")
        return False

    def _mark(self, conversation_id: int, message_ids: List[int], status: str) -> None:
        try:
            changed = execute_with_retry(lambda: self.conversations.mark_messages(message_ids, status))
        except Exception as e:
            raise ConversationExtractionError(conversation_id, f"Failed to mark messages {status}: {e}") from e
        if changed != len(message_ids):
            log_warning(f"Conversation {conversation_id}: {len(message_ids) - changed} message(s) were no longer pending")

    # =========================================================================
    # AUXILIARY CHECKS
    # =========================================================================

    def _detect_reminders(self, messages: List[Message]) -> int:
        """Reminder requests the real-time path missed."""
        created = 0
        for message in messages:
            try:
                if self.reminders.has_reminder_for_message(message.id):
                    continue
                detection = self.classifier.classify_reminder(message.content)
                if detection is None:
                    continue
                self.reminders.create_reminder(
                    detection.title,
                    delay_minutes=detection.delay_minutes,
                    scheduled_at=detection.scheduled_at,
                    body=f"Reminder from chat: \"{message.content}\"",
                    source_message_id=message.id
                )
                created += 1
            except Exception as e:
                log_error(f"Reminder creation failed for message {message.id}: {e}")
        return created

    def _detect_resolutions(self, messages: List[Message]) -> int:
        """Close open commitments that a message reports as done."""
        resolved = 0
        try:
            open_commitments = self.commitments.list_open_commitments()
        except Exception as e:
            log_error(f"Could not load open commitments: {e}")
            return 0

        for message in messages:
            if not open_commitments:
                break
            try:
                detection = self.classifier.detect_resolution(message.content, open_commitments)
                if detection is None:
                    continue
                if self.commitments.resolve_commitment(
                    detection.commitment_id,
                    notes=f"{detection.resolution}: {message.content}"
                ):
                    resolved += 1
                open_commitments = [c for c in open_commitments if c.id != detection.commitment_id]
            except Exception as e:
                log_error(f"Resolution detection failed for message {message.id}: {e}")

        if resolved:
            log_info(f"Auto-resolved {resolved} commitment(s)", prefix="✓")
        return resolved

    # =========================================================================
    # PER-MEMORY PIPELINE
    # =========================================================================

    def _process_candidate(
        self,
        candidate: ExtractedMemory,
        conversation_id: int,
        outcome: ConversationOutcome,
        allow_commitments: bool = True
    ) -> None:
        try:
            memory_id = self.memories.add_memory(
                candidate.content,
                memory_type=candidate.memory_type,
                source="chat",
                source_metadata={
                    "conversation_id": conversation_id,
                    "extraction_type": candidate.memory_type,
                    "salience_hint": candidate.salience_hint,
                },
                salience=candidate.salience_hint
            )
        except Exception as e:
            log_error(f"Failed to create memory: {e}")
            return
        outcome.memories_created += 1

        classifications = []
        try:
            classifications = self.categories.classify(candidate.content)
            self.categories.link_memory_to_categories(memory_id, classifications)
        except Exception as e:
            log_error(f"Category classification failed for memory {memory_id}: {e}")

        try:
            score, reason = calibrate_with_reason(
                candidate.content,
                candidate.memory_type,
                candidate.salience_hint,
                classifications,
                self.ctx.identity.get_user_name()
            )
            if score > candidate.salience_hint:
                self.memories.update_salience(memory_id, score)
                log_info(
                    f"Salience {candidate.salience_hint:g} -> {score:g} ({reason}): {candidate.content[:50]}",
                    prefix="⚖️"
                )
        except Exception as e:
            log_error(f"Salience calibration failed for memory {memory_id}: {e}")

        if candidate.memory_type == "event":
            try:
                event_date = extract_event_date(candidate.content, self.ctx.now().date())
                if event_date is not None:
                    self.memories.set_event_date(memory_id, event_date)
            except Exception as e:
                log_error(f"Event date extraction failed for memory {memory_id}: {e}")

        if candidate.memory_type in BELIEF_TYPES:
            try:
                beliefs = self.beliefs.process_memory(memory_id, candidate.content)
                outcome.beliefs_created += len(beliefs.created)
                outcome.beliefs_reinforced += len(beliefs.reinforced)
                outcome.belief_conflicts += len(beliefs.conflicts)
                for conflict in beliefs.conflicts:
                    log_warning(
                        f"Belief conflict ({conflict.conflict_type}) between "
                        f"[{conflict.belief_a_id}] and [{conflict.belief_b_id}]: {conflict.explanation or ''}"
                    )
            except Exception as e:
                log_error(f"Belief extraction failed for memory {memory_id}: {e}")

        if candidate.memory_type in COMMITMENT_TYPES and allow_commitments:
            try:
                detection = self.classifier.classify_commitment(candidate.content, prefilter=False)
                existing = self.commitments.find_open_by_title(detection.title) if detection else None
                if existing is not None:
                    log_info(f"Commitment \"{detection.title}\" already open as [{existing.id}]", prefix="📌")
                elif detection is not None:
                    self.commitments.create_commitment(
                        detection.title,
                        description=detection.description or candidate.content,
                        due_at=detection.due_at,
                        all_day=detection.all_day,
                        memory_id=memory_id,
                        source_type="chat",
                        status=CommitmentStatus.CANDIDATE
                    )
                    outcome.commitments_created += 1
            except Exception as e:
                log_error(f"Commitment creation failed for memory {memory_id}: {e}")

    def get_extraction_stats(self) -> Dict[str, Any]:
        return self.conversations.get_extraction_stats()


def build_transcript(messages: List[Message]) -> str:
    return "\n".join(f"User: {m.content}" for m in messages)
