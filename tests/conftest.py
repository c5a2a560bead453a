"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from chat_engine.orchestrator import ChatEngine  # noqa: E402
from chat_engine.storage import ConversationStore, InMemoryStorage  # noqa: E402
from chat_engine.tiers import LocalGenerationTier, RemoteAgentTier, RetrievalTier  # noqa: E402


class SpyRag:
    """Retrieval service that replays canned results and records calls."""

    def __init__(self, *results: Any, raises: Optional[Exception] = None):
        self.results = list(results)
        self.raises = raises
        self.queries: List[str] = []
        self.follow_ups: List[Dict[str, Any]] = []

    def _next(self) -> Any:
        if self.raises is not None:
            raise self.raises
        return self.results.pop(0) if self.results else None

    async def process_query(self, text, profile):
        self.queries.append(text)
        return self._next()

    async def process_follow_up_response(self, text, context):
        pending = context.pending_follow_up
        self.follow_ups.append({"text": text, "intent": pending.intent if pending else None})
        return self._next()


class SpyModel:
    """Local model that records the history it was prompted with."""

    def __init__(self, reply: str = "ok", raises: Optional[Exception] = None):
        self.reply = reply
        self.raises = raises
        self.calls: List[List[Dict[str, str]]] = []

    def generate(self, history):
        self.calls.append(list(history))
        if self.raises is not None:
            raise self.raises
        return self.reply


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for stored conversations during tests."""
    d = tmp_path / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    import os

    for var in list(os.environ):
        if var == "CHAT_ENGINE_CONFIG" or var.startswith("CHAT_ENGINE__"):
            monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def make_engine(storage: InMemoryStorage):
    """Build an engine over in-memory storage with the default tier order."""

    def _make(rag=None, model=None, agent_base_url=None, agent_client=None, max_history=0):
        tiers = [
            RetrievalTier(rag),
            RemoteAgentTier(agent_base_url, client=agent_client, timeout=1.0),
            LocalGenerationTier(model, max_history=max_history),
        ]
        return ChatEngine(ConversationStore(storage), tiers)

    return _make
