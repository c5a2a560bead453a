"""On-device generation via llama.cpp (GGUF), used by the local tier."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful, concise assistant."


# -----------------------------
# Types & defaults
# -----------------------------

@dataclass
class GenerationConfig:
    max_new_tokens: int = 256
    temperature: float = 0.7
    top_p: float = 0.95
    top_k: int = 50
    repeat_penalty: float = 1.1
    stop: Optional[List[str]] = None


def _bool(v: Any, default: bool) -> bool:
    if v is None:
        return default
    if isinstance(v, bool):
        return v
    if isinstance(v, str):
        return v.strip().lower() in {"1", "true", "yes", "y", "on"}
    return bool(v)


# -----------------------------
# LocalModel
# -----------------------------

class LocalModel:
    """Turns a dialogue history into a reply with a llama.cpp model.

    ``llama`` is any object exposing ``create_completion(prompt=..., ...)``
    or the callable ``llama(prompt, ...)`` interface, plus optionally
    ``apply_chat_template``. Use :func:`create_from_config` to load one
    from disk.
    """

    def __init__(
        self,
        llama: Any,
        *,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        generation: Optional[GenerationConfig] = None,
    ) -> None:
        self._llama = llama
        self.system_prompt = (system_prompt or "").strip()
        self.generation = generation or GenerationConfig()
        self._default_stops = ["</s>", "###", "User:", "Assistant:"]
        self._supports_chat_template = hasattr(llama, "apply_chat_template")

    def generate(self, history: Sequence[Dict[str, str]]) -> str:
        """Reply to the last user turn in ``history`` (oldest turn first)."""
        messages = self._build_messages(history)
        prompt = self._render_chat(messages)
        cfg = self.generation
        args = dict(
            max_tokens=int(cfg.max_new_tokens),
            temperature=float(cfg.temperature),
            top_p=float(cfg.top_p),
            top_k=int(cfg.top_k),
            repeat_penalty=float(cfg.repeat_penalty),
            stop=cfg.stop or self._default_stops,
        )
        if hasattr(self._llama, "create_completion"):
            out = self._llama.create_completion(prompt=prompt, **args)
        else:
            out = self._llama(prompt, **args)
        return (out["choices"][0]["text"] or "").strip()

    # -------------------------
    # Internals
    # -------------------------
    def _build_messages(self, history: Sequence[Dict[str, str]]) -> List[Dict[str, str]]:
        msgs: List[Dict[str, str]] = []
        if self.system_prompt:
            msgs.append({"role": "system", "content": self.system_prompt})
        for turn in history:
            role, content = turn.get("role"), (turn.get("content") or "").strip()
            if role in ("user", "assistant", "system") and content:
                msgs.append({"role": role, "content": content})
        return msgs

    def _render_chat(self, messages: List[Dict[str, str]]) -> str:
        """Render chat messages to a prompt string.

        Uses the model's chat template if available; otherwise falls back
        to a plain instruction-style format.
        """
        if self._supports_chat_template:
            try:
                tpl = self._llama.apply_chat_template(messages, add_generation_prompt=True)
                if isinstance(tpl, (bytes, bytearray)):
                    return tpl.decode("utf-8", errors="ignore")
                return str(tpl)
            except Exception as e:
                logger.debug("chat template failed, using fallback: %s", e)

        lines: List[str] = []
        sys_lines = [m["content"] for m in messages if m["role"] == "system"]
        if sys_lines:
            lines.append("### System\n" + "\n".join(sys_lines).strip() + "\n")
        for m in messages:
            if m["role"] == "user":
                lines.append("### User\n" + m["content"] + "\n")
            elif m["role"] == "assistant":
                lines.append("### Assistant\n" + m["content"] + "\n")
        lines.append("### Assistant\n")
        return "\n".join(lines)


# -----------------------------
# Convenience factory
# -----------------------------

def create_from_config(cfg: Dict[str, Any]) -> LocalModel:
    """Load the GGUF model named in ``cfg["model"]``.

    Raises ``FileNotFoundError`` when the model file is missing and
    ``ImportError`` when llama-cpp-python is not installed.
    """
    model_cfg = (cfg or {}).get("model", {}) if isinstance(cfg, dict) else {}
    model_dir = model_cfg.get("model_dir")
    model_path = model_cfg.get("model_path")
    if model_dir and model_path and not os.path.isabs(model_path):
        model_path = os.path.join(model_dir, model_path)

    if not model_path or not os.path.exists(model_path):
        raise FileNotFoundError(f"Model not found at: {model_path!r}")

    # Lazy import so the engine runs without the dependency.
    from llama_cpp import Llama, llama_supports_gpu_offload  # type: ignore

    threads = model_cfg.get("n_threads")
    gpu_layers = model_cfg.get("n_gpu_layers")
    kwargs: Dict[str, Any] = {
        "model_path": model_path,
        "n_ctx": model_cfg.get("n_ctx", 4096),
        "n_threads": int(threads) if threads and int(threads) > 0 else (os.cpu_count() or 1),
        "n_gpu_layers": int(gpu_layers) if gpu_layers is not None else (-1 if llama_supports_gpu_offload() else 0),
        "use_mmap": _bool(model_cfg.get("use_mmap"), True),
        "verbose": False,
    }
    try:
        llama = Llama(**kwargs)
    except OSError as e:
        if not kwargs["use_mmap"]:
            raise
        # Retry without mmap on network filesystems / Windows oddities.
        logger.warning("mmap load failed, retrying without mmap: %s", e)
        kwargs["use_mmap"] = False
        llama = Llama(**kwargs)

    generation = GenerationConfig(
        max_new_tokens=int(model_cfg.get("max_new_tokens", 256)),
        temperature=float(model_cfg.get("temperature", 0.7)),
        top_p=float(model_cfg.get("top_p", 0.95)),
        top_k=int(model_cfg.get("top_k", 50)),
        repeat_penalty=float(model_cfg.get("repeat_penalty", 1.1)),
        stop=model_cfg.get("stop"),
    )
    return LocalModel(
        llama,
        system_prompt=model_cfg.get("system_prompt") or DEFAULT_SYSTEM_PROMPT,
        generation=generation,
    )
