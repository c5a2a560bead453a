"""Chat-response engine: tiered reply generation with a persisted conversation.

Typical usage
-------------
from chat_engine import ChatEngine, load_config
engine = ChatEngine.from_config(load_config(), rag=my_rag, local_model=my_model)
await engine.load()
result = await engine.send_message("Hello", rag_enabled=False)

or serve it over HTTP with the provided launcher:

python scripts/run_server.py --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

from .config import load_config
from .context import ConversationContext, PendingFollowUp
from .errors import AllTiersFailedError, ChatEngineError, StorageError, TierError, TierTimeoutError
from .messages import Message, MessageFactory, Role
from .orchestrator import ChatEngine
from .storage import ConversationStore, InMemoryStorage, JsonFileStorage
from .tiers import FollowUpRequest, Reply, TierFailure, TierTimeout

__all__ = [
    "AllTiersFailedError",
    "ChatEngine",
    "ChatEngineError",
    "ConversationContext",
    "ConversationStore",
    "FollowUpRequest",
    "InMemoryStorage",
    "JsonFileStorage",
    "Message",
    "MessageFactory",
    "PendingFollowUp",
    "Reply",
    "Role",
    "StorageError",
    "TierError",
    "TierFailure",
    "TierTimeout",
    "TierTimeoutError",
    "__version__",
    "create_app",
    "get_version",
    "load_config",
]

__version__ = "0.1.0"


def get_version() -> str:
    """Return the package version."""
    return __version__


def create_app(*args, **kwargs):
    """Return a configured FastAPI application.

    Imported lazily so ``import chat_engine`` works without FastAPI.
    """
    from .server import create_app as _create_app

    return _create_app(*args, **kwargs)
