"""
Keepsake - Engine Exceptions
Error taxonomy shared by the extraction and consolidation pipeline
"""

from typing import Optional


class EngineError(Exception):
    """Base class for extraction/consolidation engine errors."""
    pass


class ProviderUnavailableError(EngineError):
    """
    The text-generation provider could not be reached.

    Raised out of a consolidation run so the caller can decide when to
    re-invoke. Nothing partially written by the run is assumed safe to
    replay automatically.
    """

    def __init__(self, message: str, error_type: Optional[str] = None):
        super().__init__(message)
        self.error_type = error_type


class ConversationExtractionError(EngineError):
    """A single conversation's batch failed; its messages stay pending."""

    def __init__(self, conversation_id: int, message: str):
        super().__init__(f"Conversation {conversation_id}: {message}")
        self.conversation_id = conversation_id


class IdentityExistsError(EngineError):
    """An identity record already exists."""
    pass


class IdentityNotFoundError(EngineError):
    """No identity record has been established yet."""
    pass
