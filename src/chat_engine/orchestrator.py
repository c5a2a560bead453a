"""Turn-level orchestration: tier fallback, cancellation and persistence.

``ChatEngine.send_message`` runs one turn:

1. record the user message (log, storage, session context);
2. try each tier in order until one yields a non-empty message;
3. drop the reply if the conversation was cleared meanwhile;
4. update the pending follow-up and record the assistant message.

Only :class:`~chat_engine.errors.AllTiersFailedError` ever reaches the
caller; every earlier tier failure is logged and falls through.

Concurrent ``send_message`` calls are not serialised. Each appends its own
messages to the latest conversation, so interleaved turns can finish in any
order.
"""
from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import httpx

from .context import ConversationContext, RetrievalService
from .errors import AllTiersFailedError
from .messages import Message, MessageFactory
from .state import EpochToken, GenerationEpoch, GenerationTracker
from .storage import DEFAULT_KEY, ConversationStore, JsonFileStorage, KeyValueStorage
from .tiers import (
    DEFAULT_AGENT_TIMEOUT,
    FollowUpRequest,
    LocalGenerationTier,
    LocalGenerator,
    RemoteAgentTier,
    Reply,
    RetrievalTier,
    Tier,
    TierFailure,
    TierResult,
    Turn,
)

logger = logging.getLogger(__name__)

Initializer = Callable[[], Union[Any, Awaitable[Any]]]


class ChatEngine:
    """Produces one reply per user utterance and keeps the conversation.

    Observable state for the UI: :attr:`conversation` and
    :attr:`is_generating`.
    """

    def __init__(
        self,
        store: ConversationStore,
        tiers: Sequence[Tier],
        *,
        context: Optional[ConversationContext] = None,
        factory: Optional[MessageFactory] = None,
        on_generating_change: Optional[Callable[[bool], None]] = None,
    ) -> None:
        self.store = store
        self.tiers: List[Tier] = list(tiers)
        self.context = context or ConversationContext()
        self.factory = factory or MessageFactory()
        self._epoch = GenerationEpoch()
        self._tracker = GenerationTracker(on_generating_change)
        self._conversation: List[Message] = []
        self._loaded = False
        self._initialized = False

    @classmethod
    def from_config(
        cls,
        cfg: Dict[str, Any],
        *,
        storage: Optional[KeyValueStorage] = None,
        rag: Optional[RetrievalService] = None,
        local_model: Optional[LocalGenerator] = None,
        agent_client: Optional[httpx.AsyncClient] = None,
    ) -> "ChatEngine":
        """Wire the default tier order (retrieval, remote agent, local)."""
        st_cfg = cfg.get("storage", {}) or {}
        agent_cfg = cfg.get("agent", {}) or {}
        local_cfg = cfg.get("local", {}) or {}

        storage = storage or JsonFileStorage(st_cfg.get("data_dir") or "data")
        store = ConversationStore(storage, key=st_cfg.get("key") or DEFAULT_KEY)
        tiers: List[Tier] = [
            RetrievalTier(rag),
            RemoteAgentTier(
                agent_cfg.get("base_url"),
                user_id=str(agent_cfg.get("user_id") or "default"),
                timeout=float(agent_cfg.get("timeout_s") or DEFAULT_AGENT_TIMEOUT),
                client=agent_client,
            ),
            LocalGenerationTier(local_model, max_history=int(local_cfg.get("max_history_messages") or 0)),
        ]
        return cls(store, tiers)

    # --------- observable state ----------
    @property
    def conversation(self) -> Tuple[Message, ...]:
        return tuple(self._conversation)

    @property
    def is_generating(self) -> bool:
        return self._tracker.is_generating

    @property
    def epoch(self) -> int:
        return self._epoch.current

    @property
    def initialized(self) -> bool:
        return self._initialized

    # --------- lifecycle ----------
    async def load(self) -> None:
        """Restore the stored conversation into memory. Runs once."""
        if self._loaded:
            return
        self._loaded = True
        token = self._epoch.token()
        messages = await self.store.load()
        if not token.valid:
            logger.info("Conversation was cleared while loading; dropping %d stored message(s)", len(messages))
            return
        self._conversation = messages + self._conversation
        self.context.hydrate(m.to_dict() for m in messages)

    def set_user_profile(self, profile: Optional[Mapping[str, Any]]) -> None:
        self.context.set_user_context(profile)
        self._initialized = True

    async def clear_conversation(self) -> None:
        """Reset everything and invalidate any generation still in flight."""
        epoch = self._epoch.advance()
        self._loaded = True
        self._conversation = []
        self.context.clear_conversation_history()
        await self.store.save([])
        logger.info("Conversation cleared (epoch %d)", epoch)

    # --------- turns ----------
    async def send_message(
        self,
        text: str,
        rag_enabled: bool = True,
        initializer: Optional[Initializer] = None,
    ) -> Optional[TierResult]:
        """Answer ``text`` and return the winning tier result.

        Returns ``None`` for blank input and when the conversation was
        cleared before the reply landed. Raises
        :class:`AllTiersFailedError` when no tier produced a reply.
        """
        if not text or not text.strip():
            return None

        token = self._epoch.token()
        await self.load()
        await self._ensure_initialized(initializer)
        if not token.valid:
            logger.info("Conversation was cleared before the turn started; dropping it")
            return None

        with self._tracker.track():
            await self._commit(self.factory.user(text), token)

            result = await self._run_tiers(Turn(text=text, rag_enabled=rag_enabled))

            if not token.valid:
                logger.info("Conversation was cleared while generating; discarding reply")
                return None

            if isinstance(result, FollowUpRequest):
                self.context.set_pending_follow_up(result.intent, result.partial_data, result.missing_fields)
            else:
                self.context.clear_pending_follow_up()

            await self._commit(self.factory.assistant(result.message), token)
            return result

    # --------- internals ----------
    async def _ensure_initialized(self, initializer: Optional[Initializer]) -> None:
        if self._initialized or initializer is None:
            return
        try:
            profile = initializer()
            if inspect.isawaitable(profile):
                profile = await profile
        except Exception as e:
            logger.warning("Failed to initialize context: %s", e)
            return
        self._initialized = True
        if isinstance(profile, Mapping):
            self.context.set_user_context(profile)

    async def _commit(self, message: Message, token: EpochToken) -> None:
        # Read the latest list at append time so a clear that just ran is kept.
        self._conversation = [*self._conversation, message]
        await self.store.save(self._conversation)
        if token.valid:
            self.context.add_message(message.role, message.content)

    async def _run_tiers(self, turn: Turn) -> TierResult:
        last: Optional[TierFailure] = None
        for tier in self.tiers:
            try:
                outcome = await tier.attempt(turn, self.context)
            except Exception as e:
                outcome = TierFailure(f"{type(e).__name__}: {e}", e)

            if isinstance(outcome, (Reply, FollowUpRequest)):
                if outcome.message and outcome.message.strip():
                    logger.info("Reply from %s tier (intent=%s)", tier.name, outcome.intent)
                    return outcome
                outcome = TierFailure("empty message")

            last = outcome
            if outcome.skipped:
                logger.debug("%s tier skipped: %s", tier.name, outcome.reason)
            else:
                logger.warning("%s tier failed, falling through: %s", tier.name, outcome.reason)

        logger.error("All %d tier(s) failed; last: %s", len(self.tiers), last.reason if last else "no tiers")
        raise AllTiersFailedError() from (last.error if last else None)
