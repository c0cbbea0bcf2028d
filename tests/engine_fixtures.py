"""
Shared helpers for engine tests: a throwaway store, a scripted model and a fixed clock.
"""

import json
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, List, Optional, Union

from core.context import EngineContext
from core.database import Database
from concurrency.locks import LockManager
from llm.router import LLMResponse, LLMProvider, TaskType

# Wednesday; the coming Friday is 2025-03-14
DEFAULT_NOW = datetime(2025, 3, 12, 10, 0, 0)

# Distinctive phrases from each system prompt
IDENTITY = "telling you their own name"
REMINDER = "requesting a reminder"
NOTE = "wants to save a note"
LIST = "create a list or add to one"
COMMITMENT = "actionable commitment"
EXTRACTION = "extract memorable information"
RESOLUTION = "open commitments is finished"
CATEGORIES = "You are a memory classifier"
SUMMARY = "personal memory summarizer"
BELIEFS = "You are a belief extractor"
BELIEF_CONFLICTS = "belief conflict detector"
PATTERNS = "You are a pattern detector"
INSIGHTS = "You are an insight generator"
GAPS = "knowledge gap detector"
QUESTIONS = "You write gentle, natural questions"

Reply = Union[str, dict, list, LLMResponse, Callable[[str], Any]]


@dataclass
class FakeCall:
    system_prompt: str
    content: str
    task_type: TaskType
    timeout: Optional[float]


class FakeLLM:
    """
    Stands in for LLMRouter.

    Replies are keyed on a substring of the system prompt; the most
    recently registered match wins. Unmatched prompts get an empty JSON
    array. A reply may be text, a dict/list (sent as JSON), a ready-made
    LLMResponse, or a callable taking the user content.
    """

    def __init__(self):
        self._replies: List[tuple] = []
        self.calls: List[FakeCall] = []
        self._lock = threading.Lock()

    def on(self, marker: str, reply: Reply) -> "FakeLLM":
        self._replies.insert(0, (marker, reply))
        return self

    def fail(self, marker: str, error_type: str, error: str = "boom") -> "FakeLLM":
        return self.on(marker, failure(error_type, error))

    def calls_for(self, marker: str) -> List[FakeCall]:
        return [c for c in self.calls if marker in c.system_prompt]

    def complete(
        self,
        messages,
        system_prompt=None,
        task_type=TaskType.CLASSIFICATION,
        temperature=0.1,
        max_tokens=None,
        cancel_event=None,
        timeout=None
    ) -> LLMResponse:
        content = messages[-1]["content"]
        with self._lock:
            self.calls.append(FakeCall(system_prompt or "", content, task_type, timeout))

        if cancel_event is not None and cancel_event.is_set():
            return failure("cancelled", "Cancelled by caller")

        for marker, reply in self._replies:
            if marker in (system_prompt or ""):
                if callable(reply):
                    reply = reply(content)
                if isinstance(reply, LLMResponse):
                    return reply
                if not isinstance(reply, str):
                    reply = json.dumps(reply)
                return LLMResponse(text=reply, success=True, provider=LLMProvider.ANTHROPIC)

        return LLMResponse(text="[]", success=True, provider=LLMProvider.ANTHROPIC)


def failure(error_type: str, error: str = "boom") -> LLMResponse:
    return LLMResponse(
        text="",
        success=False,
        provider=LLMProvider.ANTHROPIC,
        error=error,
        error_type=error_type
    )


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = DEFAULT_NOW):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


def make_database(test_case) -> Database:
    """Fresh on-disk store, removed when the test finishes."""
    tmpdir = tempfile.TemporaryDirectory()
    test_case.addCleanup(tmpdir.cleanup)
    db = Database(Path(tmpdir.name) / "keepsake.db")
    if not db.initialize():
        raise RuntimeError("test database failed to initialize")
    return db


def make_context(test_case, llm: Optional[FakeLLM] = None, now: datetime = DEFAULT_NOW) -> EngineContext:
    return EngineContext(
        db=make_database(test_case),
        llm=llm or FakeLLM(),
        locks=LockManager(),
        clock=FixedClock(now)
    )


def add_user_messages(ctx: EngineContext, *texts: str, conversation_id: Optional[int] = None):
    """Store user messages in one conversation; returns (conversation id, message ids)."""
    from memory.conversation import ConversationStore

    store = ConversationStore(ctx)
    if conversation_id is None:
        conversation_id = store.create_conversation()
    ids = [store.add_message(conversation_id, "user", text) for text in texts]
    return conversation_id, ids


def count(ctx: EngineContext, table: str, where: str = "1 = 1", params: tuple = ()) -> int:
    return ctx.db.execute(f"SELECT COUNT(*) AS n FROM {table} WHERE {where}", params, fetch=True)[0]["n"]
