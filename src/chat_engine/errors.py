"""Exception types raised by the chat engine and its collaborators."""
from __future__ import annotations


class ChatEngineError(Exception):
    """Base class for every error raised by this package."""


class StorageError(ChatEngineError):
    """A storage collaborator could not read or write a blob.

    Never fatal: :class:`~chat_engine.storage.ConversationStore` logs it and
    the in-memory conversation stays authoritative.
    """


class TierError(ChatEngineError):
    """A response tier failed or produced an unusable result."""


class TierTimeoutError(TierError):
    """A response tier ran past its deadline."""


class AllTiersFailedError(ChatEngineError):
    """Every response tier failed for a turn. The only error callers see."""

    def __init__(self, message: str = "All AI services failed. Please try again later.") -> None:
        super().__init__(message)
