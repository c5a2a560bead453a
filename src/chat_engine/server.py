"""FastAPI application exposing the chat engine to a UI client."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import httpx
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from .config import load_config
from .context import RetrievalService
from .errors import AllTiersFailedError
from .llm import create_from_config
from .orchestrator import ChatEngine
from .storage import KeyValueStorage
from .tiers import LocalGenerator

logger = logging.getLogger(__name__)


# -----------------------------
# Pydantic request/response
# -----------------------------
class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1)
    rag_enabled: Optional[bool] = Field(default=None, description="Defaults to rag.enabled from config.")


class ChatResponse(BaseModel):
    message: str
    intent: Optional[str] = None
    action: Any = None
    requires_follow_up: bool = False
    partial_data: Optional[Dict[str, Any]] = None
    missing_fields: Optional[List[str]] = None


class MessageOut(BaseModel):
    id: str
    role: str
    content: str
    timestamp: str


class ConversationOut(BaseModel):
    conversation: List[MessageOut]
    is_generating: bool


class ProfileIn(BaseModel):
    attributes: Dict[str, Any] = Field(default_factory=dict)


# -----------------------------
# Utilities
# -----------------------------
def _make_local_model(cfg: Dict[str, Any]) -> Optional[LocalGenerator]:
    try:
        return create_from_config(cfg)
    except Exception as e:  # pragma: no cover - depends on external model files
        logger.exception("Failed to initialize local model: %s", e)
        return None


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    engine: Optional[ChatEngine] = None,
    *,
    storage: Optional[KeyValueStorage] = None,
    rag: Optional[RetrievalService] = None,
    local_model: Optional[LocalGenerator] = None,
    agent_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    cfg = load_config(config_path)

    if engine is None:
        engine = ChatEngine.from_config(
            cfg,
            storage=storage,
            rag=rag,
            local_model=local_model or _make_local_model(cfg),
            agent_client=agent_client,
        )
    rag_default = bool(cfg.get("rag", {}).get("enabled", True))
    cors_origins = cfg.get("server", {}).get("cors_origins", ["*"])

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await engine.load()
        yield

    app = FastAPI(title="Chat Engine", version="0.1.0", lifespan=lifespan)
    app.state.engine = engine
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "tiers": [t.name for t in engine.tiers],
            "messages": len(engine.conversation),
        }

    @app.get("/conversation", response_model=ConversationOut)
    def conversation() -> ConversationOut:
        return ConversationOut(
            conversation=[MessageOut(**m.to_dict()) for m in engine.conversation],
            is_generating=engine.is_generating,
        )

    @app.post("/chat", response_model=ChatResponse)
    async def chat(req: ChatRequest):
        msg = req.message.strip()
        if not msg:
            raise HTTPException(status_code=400, detail="Message cannot be empty.")

        rag_enabled = rag_default if req.rag_enabled is None else req.rag_enabled
        try:
            result = await engine.send_message(req.message, rag_enabled=rag_enabled)
        except AllTiersFailedError as e:
            logger.error("chat turn failed: %s", e)
            raise HTTPException(status_code=503, detail=str(e))

        if result is None:
            # Cleared while this turn was generating; nothing to show.
            raise HTTPException(status_code=409, detail="Conversation was cleared.")
        return ChatResponse(**result.to_dict())

    @app.post("/clear")
    async def clear() -> Dict[str, Any]:
        await engine.clear_conversation()
        return {"ok": True}

    @app.put("/profile")
    def set_profile(inp: ProfileIn) -> Dict[str, Any]:
        engine.set_user_profile(inp.attributes)
        return {"ok": True, "attributes": engine.context.user_context}

    return app
