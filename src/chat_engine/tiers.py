"""Response tiers and the results they hand back to the orchestrator.

Each tier answers ``attempt(turn, context)`` with one of three outcomes:

* :class:`Reply` - a message to show, optionally tagged with an intent/action;
* :class:`FollowUpRequest` - a message plus the partial state of an intent
  that still needs more user input;
* :class:`TierFailure` (or :class:`TierTimeout`) - nothing usable, try the
  next tier.

The orchestrator walks its tier list in order and stops at the first reply
or follow-up request carrying a non-empty message.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Protocol, Union

import httpx

from .context import ConversationContext, RetrievalService
from .errors import TierError, TierTimeoutError

logger = logging.getLogger(__name__)

BACKEND_INTENT = "backend_fallback"
LOCAL_INTENT = "local_llm"
DEFAULT_AGENT_TIMEOUT = 10.0


# -----------------------------
# Outcomes
# -----------------------------
@dataclass(frozen=True)
class Reply:
    message: str
    intent: Optional[str] = None
    action: Any = None

    @property
    def requires_follow_up(self) -> bool:
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "intent": self.intent,
            "action": self.action,
            "requires_follow_up": False,
        }


@dataclass(frozen=True)
class FollowUpRequest:
    message: str
    intent: str
    partial_data: Dict[str, Any] = field(default_factory=dict)
    missing_fields: FrozenSet[str] = frozenset()
    action: Any = None

    @property
    def requires_follow_up(self) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "intent": self.intent,
            "action": self.action,
            "requires_follow_up": True,
            "partial_data": dict(self.partial_data),
            "missing_fields": sorted(self.missing_fields),
        }


@dataclass(frozen=True)
class TierFailure:
    reason: str
    error: Optional[BaseException] = None
    skipped: bool = False


@dataclass(frozen=True)
class TierTimeout(TierFailure):
    pass


TierResult = Union[Reply, FollowUpRequest]
TierOutcome = Union[Reply, FollowUpRequest, TierFailure]


def _pick(raw: Mapping[str, Any], *keys: str) -> Any:
    for k in keys:
        if k in raw and raw[k] is not None:
            return raw[k]
    return None


def parse_tier_result(raw: Any) -> TierOutcome:
    """Normalise whatever a collaborator returned into a tier outcome.

    Mappings may use the camelCase keys of the retrieval service
    (``requiresFollowUp``, ``partialData``, ``missingFields``) or their
    snake_case equivalents.
    """
    if isinstance(raw, TierFailure):
        return raw
    if isinstance(raw, (Reply, FollowUpRequest)):
        if raw.message and raw.message.strip():
            return raw
        return TierFailure("empty message")
    if raw is None:
        return TierFailure("no result")
    if not isinstance(raw, Mapping):
        return TierFailure(f"malformed result of type {type(raw).__name__}")

    message = raw.get("message")
    if not isinstance(message, str) or not message.strip():
        return TierFailure("empty or malformed result", TierError(f"unusable result: {raw!r}"))

    intent = _pick(raw, "intent")
    action = _pick(raw, "action")
    requires = _pick(raw, "requiresFollowUp", "requires_follow_up")
    partial = _pick(raw, "partialData", "partial_data")
    missing = _pick(raw, "missingFields", "missing_fields")

    if (
        requires
        and intent
        and isinstance(partial, Mapping)
        and missing is not None
        and not isinstance(missing, str)
    ):
        return FollowUpRequest(
            message=message,
            intent=str(intent),
            partial_data=dict(partial),
            missing_fields=frozenset(missing),
            action=action,
        )
    return Reply(message=message, intent=intent, action=action)


# -----------------------------
# Tier contract
# -----------------------------
@dataclass(frozen=True)
class Turn:
    """One user utterance as seen by the tiers."""

    text: str
    rag_enabled: bool = True


class Tier(Protocol):
    name: str

    async def attempt(self, turn: Turn, context: ConversationContext) -> TierOutcome: ...


class LocalGenerator(Protocol):
    """Local generation runtime: ``generate(history) -> str``, may raise."""

    def generate(self, history: List[Dict[str, str]]) -> Any: ...


# -----------------------------
# Tier A: retrieval-augmented
# -----------------------------
class RetrievalTier:
    name = "retrieval"

    def __init__(self, service: Optional[RetrievalService] = None) -> None:
        self.service = service

    async def attempt(self, turn: Turn, context: ConversationContext) -> TierOutcome:
        if not turn.rag_enabled:
            return TierFailure("disabled for this turn", skipped=True)
        if self.service is None:
            return TierFailure("no retrieval service configured", skipped=True)

        if context.has_pending_follow_up():
            logger.debug("Routing follow-up answer for %r to retrieval service", context.pending_follow_up.intent)
            raw = await context.process_follow_up_response(turn.text, self.service)
        else:
            logger.debug("Sending new query to retrieval service")
            raw = await self.service.process_query(turn.text, context.user_context)
        return parse_tier_result(raw)


# -----------------------------
# Tier B: remote agent
# -----------------------------
class RemoteAgentTier:
    """POSTs ``{query, user_id}`` to ``<base_url>/agent`` under a hard deadline.

    Pass ``client`` to reuse a long-lived :class:`httpx.AsyncClient` (or a
    mock transport in tests); otherwise a client is opened per request.
    """

    name = "remote_agent"

    def __init__(
        self,
        base_url: Optional[str],
        *,
        user_id: str = "default",
        timeout: float = DEFAULT_AGENT_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.user_id = user_id
        self.timeout = float(timeout)
        self.client = client

    async def attempt(self, turn: Turn, context: ConversationContext) -> TierOutcome:
        if not self.base_url:
            return TierFailure("remote agent not configured", skipped=True)

        url = f"{self.base_url}/agent"
        payload = {"query": turn.text, "user_id": self.user_id}
        try:
            resp = await asyncio.wait_for(self._post(url, payload), timeout=self.timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return TierTimeout(
                f"no answer within {self.timeout:g}s",
                TierTimeoutError(f"POST {url} timed out after {self.timeout:g}s"),
            )
        except httpx.HTTPError as e:
            return TierFailure(f"request failed: {e}", e)

        if not resp.is_success:
            return TierFailure(
                f"agent answered HTTP {resp.status_code}",
                TierError(f"Backend agent failed with {resp.status_code}"),
            )
        try:
            data = resp.json()
        except ValueError as e:
            return TierFailure("agent answered with non-JSON body", e)

        text = data.get("response") if isinstance(data, dict) else None
        if not isinstance(text, str) or not text.strip():
            return TierFailure("agent answered without a response")
        return Reply(message=text, intent=BACKEND_INTENT, action=None)

    async def _post(self, url: str, payload: Dict[str, str]) -> httpx.Response:
        if self.client is not None:
            return await self.client.post(url, json=payload)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(url, json=payload)


# -----------------------------
# Tier C: local generation
# -----------------------------
class LocalGenerationTier:
    """Prompts the on-device model with the session dialogue.

    ``max_history`` keeps only the newest N turns (0 means everything).
    Synchronous generators run in a worker thread.
    """

    name = "local_generation"

    def __init__(self, model: Optional[LocalGenerator], *, max_history: int = 0) -> None:
        self.model = model
        self.max_history = max(0, int(max_history or 0))

    async def attempt(self, turn: Turn, context: ConversationContext) -> TierOutcome:
        if self.model is None:
            return TierFailure("no local model loaded")

        history = context.history
        if self.max_history:
            history = history[-self.max_history:]

        generate = self.model.generate
        if inspect.iscoroutinefunction(generate):
            text = await generate(history)
        else:
            text = await asyncio.to_thread(generate, history)
            if inspect.isawaitable(text):
                text = await text

        if not isinstance(text, str) or not text.strip():
            return TierFailure("local model returned no text")
        return Reply(message=text, intent=LOCAL_INTENT, action=None)
