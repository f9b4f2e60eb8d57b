from __future__ import annotations

import enum
import logging
import os
import threading
import time
from collections import deque
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional

import httpx
from openai import OpenAI
from pydantic import BaseModel

from config import ConfigError, LLMConfig

__all__ = [
    "ChatMessage",
    "ChatRequest",
    "SchedulerState",
    "load_openai_api_key",
    "load_system_prompt",
    "strip_reasoning",
    "extract_content",
    "OpenAIChatClient",
    "RefineQueue",
    "RefineSummarizeScheduler",
]

LLM_LOG = logging.getLogger("echonote.llm")

REASONING_END = "</think>"
PLACEHOLDER_API_KEY = "sk-no-key-required"


# ---------------------------------------------------------------------------
# Resources


def _default_key_file() -> Path:
    script_dir = Path(__file__).resolve().parent
    candidates = [
        script_dir / "openai_api_key.txt",
        script_dir.parent / "openai_api_key.txt",
    ]
    for path in candidates:
        if path.exists():
            return path
    return candidates[0]


def load_openai_api_key() -> Optional[str]:
    """Load the API key from env or a local text file."""
    key = os.environ.get("OPENAI_API_KEY")
    if key:
        key = key.strip()
        if key:
            return key

    key_file = os.environ.get("OPENAI_API_KEY_FILE")
    path = Path(key_file).expanduser() if key_file else _default_key_file()
    if not path.exists():
        return None

    try:
        text = path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return text or None


def load_system_prompt(path: str) -> str:
    p = Path(path)
    if not p.is_absolute() and not p.exists():
        p = Path(__file__).resolve().parent / path
    try:
        return p.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError([f"system prompt file not found: {path}"]) from exc


# ---------------------------------------------------------------------------
# Request / response shape


class ChatMessage(BaseModel):
    role: str
    content: str


class ChatRequest(BaseModel):
    model: str
    temperature: float
    top_p: float
    top_k: int
    presence_penalty: float
    messages: List[ChatMessage]

    @classmethod
    def build(cls, cfg: LLMConfig, system_prompt: str, text: str) -> "ChatRequest":
        return cls(
            model=cfg.model,
            temperature=cfg.temperature,
            top_p=cfg.top_p,
            top_k=cfg.top_k,
            presence_penalty=cfg.presence_penalty,
            messages=[
                ChatMessage(role="system", content=system_prompt),
                ChatMessage(role="user", content=text),
            ],
        )


def strip_reasoning(content: str) -> str:
    """Drop a ``<think>...</think>`` preamble if the model emitted one."""
    pos = content.find(REASONING_END)
    if pos < 0:
        return content
    return content[pos + len(REASONING_END) :].lstrip("\n")


def extract_content(response: Any) -> str:
    if not isinstance(response, dict):
        return ""
    choices = response.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first = choices[0]
    message = first.get("message") if isinstance(first, dict) else None
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, str):
        return ""
    return strip_reasoning(content)


class OpenAIChatClient:
    """Chat-completions collaborator for an OpenAI-compatible server."""

    def __init__(self, cfg: LLMConfig, api_key: Optional[str] = None):
        self.cfg = cfg
        self._http = httpx.Client(timeout=httpx.Timeout(connect=cfg.connect_timeout, read=None, write=None, pool=None))
        self._client = OpenAI(
            api_key=api_key or load_openai_api_key() or PLACEHOLDER_API_KEY,
            base_url=cfg.base_url,
            http_client=self._http,
            max_retries=0,
        )

    def create(self, request: Dict[str, Any]) -> Dict[str, Any]:
        body = dict(request)
        top_k = body.pop("top_k", None)
        extra_body = {"top_k": top_k} if top_k is not None else None
        response = self._client.chat.completions.create(**body, extra_body=extra_body)
        return response.model_dump()

    def close(self) -> None:
        self._http.close()


# ---------------------------------------------------------------------------
# Scheduler


def _utf8_len(text: str) -> int:
    return len(text.encode("utf-8"))


class RefineQueue:
    """Unbounded FIFO of raw transcript fragments; sizes are UTF-8 bytes."""

    def __init__(self) -> None:
        self._items: Deque[str] = deque()
        self._lock = threading.Lock()
        self.cur_size = 0

    def push(self, text: str) -> None:
        with self._lock:
            self._items.append(text)
            self.cur_size += _utf8_len(text)

    def fetch(self, chunk_size: int) -> str:
        """Concatenate fragments in order until ``chunk_size`` UTF-8 bytes are reached."""
        parts: List[str] = []
        size = 0
        with self._lock:
            while self._items:
                item = self._items.popleft()
                n_bytes = _utf8_len(item)
                self.cur_size -= n_bytes
                parts.append(item)
                size += n_bytes
                if size >= chunk_size:
                    break
        return "".join(parts)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class SchedulerState(enum.Enum):
    IDLE = "idle"
    REFINING = "refining"
    SUMMARIZING = "summarizing"


class RefineSummarizeScheduler(threading.Thread):
    """Batches raw transcript text through refine and summarize calls.

    ``chat`` takes the request dict and returns the response dict; it may
    block. ``on_text(source, text)`` receives ``"refine"`` and ``"summarize"``
    results from this thread.
    """

    def __init__(
        self,
        cfg: LLMConfig,
        chat: Callable[[Dict[str, Any]], Dict[str, Any]],
        on_text: Optional[Callable[[str, str], None]] = None,
        *,
        refine_prompt: Optional[str] = None,
        summarize_prompt: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(daemon=True, name="llm")
        self.cfg = cfg
        self.chat = chat
        self.on_text = on_text
        self.refine_prompt = refine_prompt if refine_prompt is not None else load_system_prompt(cfg.refine.system_prompt)
        self.summarize_prompt = (
            summarize_prompt if summarize_prompt is not None else load_system_prompt(cfg.summarize.system_prompt)
        )
        self._clock = clock
        self._last_refine = clock()
        self._pending = RefineQueue()
        self._force_refine = threading.Event()
        self._force_summarize = threading.Event()
        self._stop_event = threading.Event()
        self._text_lock = threading.Lock()
        self._refined_text = ""
        self._summary = ""
        self.state = SchedulerState.IDLE
        self.calls = 0

        self._refine_out = None
        if cfg.refine.save:
            self._refine_out = self._open(cfg.refine.output)
        self._summary_path: Optional[Path] = None
        if cfg.summarize.save:
            self._summary_path = Path(cfg.summarize.output)
            self._open(cfg.summarize.output).close()

    @staticmethod
    def _open(path: str):
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        return p.open("w", encoding="utf-8")

    # ---- inputs --------------------------------------------------------

    def refine(self, text: str) -> None:
        """Queue a fragment; an empty string asks for a refine cycle now."""
        if text:
            self._pending.push(text)
        else:
            self._force_refine.set()

    def summarize(self) -> None:
        self._force_summarize.set()

    # ---- observers -----------------------------------------------------

    @property
    def refined_text(self) -> str:
        with self._text_lock:
            return self._refined_text

    @property
    def summary(self) -> str:
        with self._text_lock:
            return self._summary

    @property
    def pending(self) -> RefineQueue:
        return self._pending

    @property
    def is_refining(self) -> bool:
        return self.state is SchedulerState.REFINING

    @property
    def is_summarizing(self) -> bool:
        return self.state is SchedulerState.SUMMARIZING

    @property
    def refine_output_path(self) -> str:
        return self.cfg.refine.output

    @property
    def summarize_output_path(self) -> str:
        return self.cfg.summarize.output

    # ---- loop ----------------------------------------------------------

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:
        while not self._stop_event.is_set():
            try:
                worked = self.step()
            except Exception as exc:
                LLM_LOG.error("scheduler cycle failed: %s", exc)
                worked = False
            if not worked:
                self._stop_event.wait(self.cfg.poll_interval)
        self.state = SchedulerState.IDLE

    def step(self) -> bool:
        """Run at most one summarize or refine cycle; False when idle."""
        self.state = SchedulerState.IDLE
        refined = self.refined_text
        if self._force_summarize.is_set() and refined:
            self.state = SchedulerState.SUMMARIZING
            self._force_summarize.clear()
            summary = self.predict(refined, self.summarize_prompt)
            if summary:
                with self._text_lock:
                    self._summary = summary
                self._write_summary(summary)
                self._emit("summarize", summary)
            self.state = SchedulerState.IDLE
            return True

        now = self._clock()
        if now - self._last_refine < self.cfg.refine.refine_span and not self._force_refine.is_set():
            return False

        self._last_refine = now
        self._force_refine.clear()
        text = self._pending.fetch(self.cfg.refine.chunk_size)
        if not text:
            return False

        self.state = SchedulerState.REFINING
        refined_chunk = self.predict(text, self.refine_prompt)
        if refined_chunk:
            if self._refine_out is not None:
                try:
                    self._refine_out.write(refined_chunk)
                    self._refine_out.flush()
                except OSError as exc:
                    LLM_LOG.error("writing %s failed: %s", self.cfg.refine.output, exc)
            with self._text_lock:
                self._refined_text += refined_chunk
            self._emit("refine", refined_chunk)
        self.state = SchedulerState.IDLE
        return True

    def predict(self, text: str, system_prompt: str) -> str:
        request = ChatRequest.build(self.cfg, system_prompt, text).model_dump()
        LLM_LOG.debug("request: %s", request)
        self.calls += 1
        try:
            response = self.chat(request)
        except Exception as exc:
            LLM_LOG.error("chat request failed: %s", exc)
            return ""
        LLM_LOG.debug("response: %s", response)
        content = extract_content(response)
        if not content:
            LLM_LOG.warning("chat response carried no content")
        return content

    def _emit(self, source: str, text: str) -> None:
        if self.on_text is None:
            return
        try:
            self.on_text(source, text)
        except Exception as exc:
            LLM_LOG.error("%s callback failed: %s", source, exc)

    def _write_summary(self, summary: str) -> None:
        if self._summary_path is None:
            return
        try:
            self._summary_path.write_text(summary, encoding="utf-8")
        except OSError as exc:
            LLM_LOG.error("writing %s failed: %s", self._summary_path, exc)

    def close(self) -> None:
        if self._refine_out is not None:
            self._refine_out.close()
            self._refine_out = None
        summary = self.summary
        if summary:
            self._write_summary(summary)
