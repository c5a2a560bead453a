"""Durable conversation log on top of an opaque key-value store."""
from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence

from .errors import StorageError
from .messages import Message

logger = logging.getLogger(__name__)

DEFAULT_KEY = "chat_history"


# -----------------------------
# Helpers
# -----------------------------
def _safe_key(key: str) -> str:
    s = re.sub(r"[^\w.\-@]+", "_", key.strip() or DEFAULT_KEY)
    return s[:128]


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(path.parent)) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)


# -----------------------------
# Storage collaborators
# -----------------------------
class KeyValueStorage(Protocol):
    """Platform storage primitive: string blobs under string keys.

    ``get`` returns ``None`` for an absent key. Both methods raise
    :class:`StorageError` on failure.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str) -> None: ...


class InMemoryStorage:
    """Dict-backed storage, handy for tests and embedding hosts."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self.data: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value


class JsonFileStorage:
    """One file per key under ``data_dir``, replaced atomically on write.

    Layout:
        data_dir/
          <key>.json
          <key>.corrupt.json   # previous file, if it could not be decoded
    """

    def __init__(self, data_dir: str) -> None:
        self.root = Path(data_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    def path_for(self, key: str) -> Path:
        return self.root / f"{_safe_key(key)}.json"

    async def get(self, key: str) -> Optional[str]:
        return await asyncio.to_thread(self._read, key)

    async def set(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._write, key, value)

    def _read(self, key: str) -> Optional[str]:
        path = self.path_for(key)
        with self._lock:
            if not path.exists():
                return None
            try:
                return path.read_text(encoding="utf-8")
            except OSError as e:
                raise StorageError(f"Failed to read {path}: {e}") from e

    def _write(self, key: str, value: str) -> None:
        path = self.path_for(key)
        with self._lock:
            try:
                _atomic_write_text(path, value)
            except OSError as e:
                raise StorageError(f"Failed to write {path}: {e}") from e

    def quarantine(self, key: str) -> Optional[Path]:
        """Move an undecodable file aside so the next save starts fresh."""
        path = self.path_for(key)
        bad = path.with_suffix(".corrupt.json")
        with self._lock:
            try:
                path.replace(bad)
            except OSError as e:
                logger.warning("Could not quarantine %s: %s", path, e)
                return None
        return bad


# -----------------------------
# ConversationStore
# -----------------------------
class ConversationStore:
    """Persists the message log as a JSON array under a single key.

    ``load`` never raises: unreadable or undecodable data is logged and
    treated as an empty conversation. ``save`` returns ``False`` instead of
    raising; the caller's in-memory conversation stays authoritative.
    Saves are applied one at a time in call order.
    """

    def __init__(self, storage: KeyValueStorage, key: str = DEFAULT_KEY) -> None:
        self.storage = storage
        self.key = key
        self._write_lock = asyncio.Lock()

    async def load(self) -> List[Message]:
        try:
            blob = await self.storage.get(self.key)
        except Exception:
            logger.exception("Failed to load conversation from key %r", self.key)
            return []
        if not blob:
            return []

        try:
            records = json.loads(blob)
        except json.JSONDecodeError as e:
            logger.error("Stored conversation under %r is not valid JSON: %s", self.key, e)
            quarantine = getattr(self.storage, "quarantine", None)
            if quarantine is not None:
                quarantine(self.key)
            return []
        if not isinstance(records, list):
            logger.error("Stored conversation under %r is not a list; ignoring it", self.key)
            return []

        messages: List[Message] = []
        for raw in records:
            if not isinstance(raw, dict):
                logger.warning("Skipping non-object message record: %r", raw)
                continue
            try:
                messages.append(Message.from_dict(raw))
            except ValueError as e:
                logger.warning("Skipping malformed message record: %s", e)
        logger.info("Loaded %d message(s) from %r", len(messages), self.key)
        return messages

    async def save(self, conversation: Sequence[Message]) -> bool:
        blob = json.dumps([m.to_dict() for m in conversation], ensure_ascii=False)
        async with self._write_lock:
            try:
                await self.storage.set(self.key, blob)
            except Exception:
                logger.exception("Failed to save conversation (%d message(s))", len(conversation))
                return False
        return True
