"""
Keepsake - Engine Context
Explicit handles shared by every engine component
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional, TYPE_CHECKING

from concurrency.locks import LockManager
from core.database import Database

if TYPE_CHECKING:
    from llm.router import LLMRouter
    from memory.identity import IdentityService


@dataclass
class EngineContext:
    """
    Store handle, model router, clock, locks and identity cache.

    Passed explicitly to the dispatcher, the batch coordinator and the
    consolidation coordinator so tests can swap any of them.
    """
    db: Database
    llm: "LLMRouter"
    locks: LockManager = field(default_factory=LockManager)
    clock: Callable[[], datetime] = datetime.now
    identity: Optional["IdentityService"] = None

    def __post_init__(self):
        if self.identity is None:
            from memory.identity import IdentityService
            self.identity = IdentityService(self.db, locks=self.locks, clock=self.clock)

    def now(self) -> datetime:
        return self.clock()

    def now_iso(self) -> str:
        return self.clock().isoformat()
