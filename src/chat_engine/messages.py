"""Conversation messages: ids, display timestamps and the stored record shape."""
from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


def new_message_id() -> str:
    """Return ``<epoch millis>-<9 random hex chars>``."""
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


def format_timestamp(now: Optional[datetime] = None) -> str:
    """Display time for a message, e.g. ``"09:41"``."""
    return (now or datetime.now()).strftime("%H:%M")


@dataclass(frozen=True)
class Message:
    """A single entry of the durable conversation log."""

    id: str
    role: Role
    content: str
    timestamp: str

    def to_dict(self) -> Dict[str, str]:
        d = asdict(self)
        d["role"] = self.role.value
        return d

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Message":
        """Rebuild a message from its stored record.

        Raises ``ValueError`` if ``role`` or ``content`` is missing or the
        role is unknown. ``id`` and ``timestamp`` are regenerated when
        absent so older records still load.
        """
        role = raw.get("role")
        content = raw.get("content")
        if not role or not isinstance(content, str) or not content:
            raise ValueError(f"message record lacks role/content: {raw!r}")
        return cls(
            id=str(raw.get("id") or new_message_id()),
            role=Role(role),
            content=content,
            timestamp=str(raw.get("timestamp") or ""),
        )


@dataclass
class MessageFactory:
    """Builds messages with fresh ids and display timestamps.

    ``id_factory`` and ``clock`` are swappable so tests can pin both.
    """

    id_factory: Callable[[], str] = new_message_id
    clock: Callable[[], datetime] = field(default=datetime.now)

    def create(self, role: Role, content: str) -> Message:
        return Message(
            id=self.id_factory(),
            role=Role(role),
            content=content,
            timestamp=format_timestamp(self.clock()),
        )

    def user(self, content: str) -> Message:
        return self.create(Role.USER, content)

    def assistant(self, content: str) -> Message:
        return self.create(Role.ASSISTANT, content)
