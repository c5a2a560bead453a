from __future__ import annotations

import json
from pathlib import Path

from fastapi.testclient import TestClient

from chat_engine.server import create_app
from chat_engine.storage import InMemoryStorage

from conftest import SpyModel, SpyRag


def _client(tmp_path: Path, **kwargs) -> TestClient:
    # Missing config file -> built-in defaults (no remote agent configured).
    app = create_app(str(tmp_path / "missing.yaml"), **kwargs)
    return TestClient(app)


def test_chat_roundtrip_persists_conversation(tmp_path: Path, clean_env):
    """/chat answers from the local model and the exchange lands in storage."""
    storage = InMemoryStorage()
    with _client(tmp_path, storage=storage, local_model=SpyModel(reply="Hi")) as client:
        r = client.post("/chat", json={"message": "Hello", "rag_enabled": False})
        assert r.status_code == 200
        body = r.json()
        assert body["message"] == "Hi"
        assert body["intent"] == "local_llm"
        assert body["requires_follow_up"] is False

        conv = client.get("/conversation").json()
        assert [(m["role"], m["content"]) for m in conv["conversation"]] == [("user", "Hello"), ("assistant", "Hi")]
        assert conv["is_generating"] is False

    stored = json.loads(storage.data["chat_history"])
    assert [m["content"] for m in stored] == ["Hello", "Hi"]


def test_lifespan_loads_stored_history(tmp_path: Path, clean_env):
    storage = InMemoryStorage(
        {"chat_history": json.dumps([{"id": "1", "role": "user", "content": "from last time", "timestamp": "07:30"}])}
    )
    with _client(tmp_path, storage=storage, local_model=SpyModel()) as client:
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["messages"] == 1
        assert r.json()["tiers"] == ["retrieval", "remote_agent", "local_generation"]


def test_follow_up_fields_are_returned(tmp_path: Path, clean_env):
    rag = SpyRag(
        {
            "message": "When did it end?",
            "intent": "log_period",
            "requiresFollowUp": True,
            "partialData": {"start": "2024-05-01"},
            "missingFields": ["end"],
        }
    )
    with _client(tmp_path, storage=InMemoryStorage(), rag=rag, local_model=SpyModel()) as client:
        body = client.post("/chat", json={"message": "log my period"}).json()

    assert body["requires_follow_up"] is True
    assert body["partial_data"] == {"start": "2024-05-01"}
    assert body["missing_fields"] == ["end"]


def test_blank_message_is_rejected(tmp_path: Path, clean_env):
    with _client(tmp_path, storage=InMemoryStorage(), local_model=SpyModel()) as client:
        assert client.post("/chat", json={"message": "   "}).status_code == 400
        assert client.post("/chat", json={"message": ""}).status_code == 422
        assert client.get("/conversation").json()["conversation"] == []


def test_all_tiers_failing_returns_503(tmp_path: Path, clean_env):
    model = SpyModel(raises=RuntimeError("out of memory"))
    with _client(tmp_path, storage=InMemoryStorage(), local_model=model) as client:
        r = client.post("/chat", json={"message": "Hello", "rag_enabled": False})
        assert r.status_code == 503
        assert "All AI services failed" in r.json()["detail"]

        conv = client.get("/conversation").json()["conversation"]
        assert [m["role"] for m in conv] == ["user"]


def test_clear_empties_conversation(tmp_path: Path, clean_env):
    storage = InMemoryStorage()
    with _client(tmp_path, storage=storage, local_model=SpyModel()) as client:
        client.post("/chat", json={"message": "Hello", "rag_enabled": False})
        r = client.post("/clear")
        assert r.status_code == 200 and r.json() == {"ok": True}
        assert client.get("/conversation").json()["conversation"] == []

    assert json.loads(storage.data["chat_history"]) == []


def test_profile_is_used_for_retrieval(tmp_path: Path, clean_env):
    seen = []

    class ProfileRag(SpyRag):
        async def process_query(self, text, profile):
            seen.append(dict(profile))
            return {"message": "tailored"}

    with _client(tmp_path, storage=InMemoryStorage(), rag=ProfileRag(), local_model=SpyModel()) as client:
        r = client.put("/profile", json={"attributes": {"cycle_length": 28}})
        assert r.json() == {"ok": True, "attributes": {"cycle_length": 28}}
        client.post("/chat", json={"message": "When is my next period?"})

    assert seen == [{"cycle_length": 28}]


def test_rag_default_comes_from_config(tmp_path: Path, clean_env):
    cfg = tmp_path / "cfg.yaml"
    cfg.write_text("rag:\n  enabled: false\n", encoding="utf-8")
    rag = SpyRag({"message": "never"})

    app = create_app(str(cfg), storage=InMemoryStorage(), rag=rag, local_model=SpyModel(reply="local"))
    with TestClient(app) as client:
        assert client.post("/chat", json={"message": "hi"}).json()["message"] == "local"
    assert rag.queries == []
