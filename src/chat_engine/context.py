"""Session-scoped dialogue memory and the pending follow-up state machine.

The session context is separate from the persisted message
log: it is hydrated from storage at startup, grows with every turn, and is
what the local generation tier is prompted with.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Protocol

from .messages import Role

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingFollowUp:
    """A multi-turn intent waiting for more input from the user."""

    intent: str
    partial_data: Dict[str, Any] = field(default_factory=dict)
    missing_fields: FrozenSet[str] = frozenset()


class RetrievalService(Protocol):
    """Retrieval-augmented collaborator consumed by the first tier.

    Both methods return a result mapping (``message``, ``intent``,
    ``action``, ``requiresFollowUp``, ``partialData``, ``missingFields``),
    ``None``, or raise.
    """

    async def process_query(self, text: str, profile: Mapping[str, Any]) -> Any: ...

    async def process_follow_up_response(self, text: str, context: "ConversationContext") -> Any: ...


class ConversationContext:
    """Dialogue turns, user profile and at most one pending follow-up.

    One instance is owned by each :class:`~chat_engine.orchestrator.ChatEngine`
    and handed to collaborators that need it.
    """

    def __init__(self) -> None:
        self._history: List[Dict[str, str]] = []
        self._profile: Dict[str, Any] = {}
        self._pending: Optional[PendingFollowUp] = None

    # --------- dialogue ----------
    def add_message(self, role: Role, content: str) -> None:
        self._history.append({"role": Role(role).value, "content": content})

    def hydrate(self, turns: Iterable[Mapping[str, Any]]) -> int:
        """Append stored turns, skipping any without a role and content."""
        added = 0
        for turn in turns:
            role, content = turn.get("role"), turn.get("content")
            if not role or not content:
                continue
            self.add_message(role, content)
            added += 1
        return added

    @property
    def history(self) -> List[Dict[str, str]]:
        """Copy of the session dialogue, oldest first."""
        return [dict(t) for t in self._history]

    def __len__(self) -> int:
        return len(self._history)

    # --------- profile ----------
    def set_user_context(self, profile: Optional[Mapping[str, Any]]) -> None:
        self._profile = dict(profile or {})

    @property
    def user_context(self) -> Dict[str, Any]:
        return dict(self._profile)

    # --------- follow-up ----------
    def has_pending_follow_up(self) -> bool:
        return self._pending is not None

    @property
    def pending_follow_up(self) -> Optional[PendingFollowUp]:
        return self._pending

    def set_pending_follow_up(
        self,
        intent: str,
        partial_data: Mapping[str, Any],
        missing_fields: Iterable[str],
    ) -> None:
        self._pending = PendingFollowUp(
            intent=intent,
            partial_data=dict(partial_data),
            missing_fields=frozenset(missing_fields),
        )
        logger.debug("Pending follow-up set: %s (missing %s)", intent, sorted(self._pending.missing_fields))

    def clear_pending_follow_up(self) -> None:
        self._pending = None

    async def process_follow_up_response(self, text: str, rag: RetrievalService) -> Any:
        """Resolve the pending intent with the user's new utterance.

        The pending follow-up is cleared whether the collaborator succeeds
        or raises. With nothing pending the text goes out as a fresh query.
        """
        pending = self._pending
        if pending is None:
            return await rag.process_query(text, self.user_context)
        try:
            return await rag.process_follow_up_response(text, self)
        finally:
            if self._pending is pending:
                self._pending = None

    # --------- reset ----------
    def clear_conversation_history(self) -> None:
        self._history = []
        self._pending = None
