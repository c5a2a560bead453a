from __future__ import annotations

import asyncio
import json
from pathlib import Path

from chat_engine.errors import StorageError
from chat_engine.messages import Message, Role
from chat_engine.storage import ConversationStore, InMemoryStorage, JsonFileStorage


def _msgs():
    return [
        Message(id="1-a", role=Role.USER, content="Hello", timestamp="09:00"),
        Message(id="2-b", role=Role.ASSISTANT, content="Hi there", timestamp="09:01"),
    ]


def test_file_store_roundtrip(tmp_data_dir: Path):
    store = ConversationStore(JsonFileStorage(str(tmp_data_dir)))
    assert asyncio.run(store.save(_msgs())) is True

    reloaded = ConversationStore(JsonFileStorage(str(tmp_data_dir)))
    assert asyncio.run(reloaded.load()) == _msgs()

    raw = json.loads((tmp_data_dir / "chat_history.json").read_text(encoding="utf-8"))
    assert raw[0] == {"id": "1-a", "role": "user", "content": "Hello", "timestamp": "09:00"}


def test_load_missing_key_is_empty(tmp_data_dir: Path):
    store = ConversationStore(JsonFileStorage(str(tmp_data_dir)), key="nope")
    assert asyncio.run(store.load()) == []


def test_corrupt_file_loads_empty_and_is_quarantined(tmp_data_dir: Path):
    (tmp_data_dir / "chat_history.json").write_text("{not json", encoding="utf-8")
    store = ConversationStore(JsonFileStorage(str(tmp_data_dir)))

    assert asyncio.run(store.load()) == []
    assert (tmp_data_dir / "chat_history.corrupt.json").exists()
    assert not (tmp_data_dir / "chat_history.json").exists()


def test_non_list_blob_and_bad_records_are_skipped():
    storage = InMemoryStorage({"chat_history": json.dumps({"role": "user"})})
    assert asyncio.run(ConversationStore(storage).load()) == []

    storage.data["chat_history"] = json.dumps(
        [
            {"id": "1", "role": "user", "content": "kept", "timestamp": "08:00"},
            {"id": "2", "role": "user"},
            "garbage",
            {"id": "3", "role": "robot", "content": "x"},
        ]
    )
    loaded = asyncio.run(ConversationStore(storage).load())
    assert [m.content for m in loaded] == ["kept"]


class BrokenStorage:
    async def get(self, key):
        raise StorageError("disk gone")

    async def set(self, key, value):
        raise StorageError("disk gone")


def test_storage_failures_are_not_raised():
    store = ConversationStore(BrokenStorage())
    assert asyncio.run(store.load()) == []
    assert asyncio.run(store.save(_msgs())) is False


def test_saves_land_in_call_order():
    storage = InMemoryStorage()
    store = ConversationStore(storage)

    async def main():
        first = store.save(_msgs())
        second = store.save([])
        await asyncio.gather(first, second)

    asyncio.run(main())
    assert json.loads(storage.data["chat_history"]) == []


def test_unsafe_key_is_sanitised(tmp_data_dir: Path):
    fs = JsonFileStorage(str(tmp_data_dir))
    assert fs.path_for("../../etc/passwd").parent == tmp_data_dir
