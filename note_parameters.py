from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

__all__ = [
    "ConfigError",
    "AudioConfig",
    "ASRConfig",
    "RefineConfig",
    "SummarizeConfig",
    "LLMConfig",
    "PipelineConfig",
    "load_pipeline_config",
]


class ConfigError(ValueError):
    """Raised once with every problem found while validating a configuration."""

    def __init__(self, problems: List[str]):
        self.problems = list(problems)
        super().__init__("invalid configuration: " + "; ".join(self.problems))


def _env_int(name: str, default: int) -> int:
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return float(val)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    val = os.environ.get(name)
    if val is None:
        return default
    return val.strip().lower() not in {"0", "false", "no", "off"}


def _section(data: Dict[str, Any], key: str, problems: List[str]) -> Dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        problems.append(f"'{key}' must be an object")
        return {}
    return value


def _pick(section: Dict[str, Any], key: str, default, kind, problems: List[str], where: str):
    if key not in section:
        return default
    value = section[key]
    try:
        if kind is bool:
            if isinstance(value, str):
                return value.strip().lower() not in {"0", "false", "no", "off"}
            return bool(value)
        return kind(value)
    except (TypeError, ValueError):
        problems.append(f"{where}.{key} must be {kind.__name__}, got {value!r}")
        return default


DEFAULT_WORKING_RATE = 16000


@dataclass
class AudioConfig:
    """Capture device, frame queue, ring buffer and archive file."""

    device: str = "default"
    sample_rate: int = 44100
    frames_per_buffer: int = 256
    # Ring capacity in milliseconds of audio at the working rate
    max_n_samples: int = 30000
    working_rate: int = DEFAULT_WORKING_RATE
    queue_size: int = 100000
    save: bool = False
    output: str = "output/output.wav"

    @property
    def ring_capacity(self) -> int:
        return self.max_n_samples * self.working_rate // 1000

    @classmethod
    def from_env(cls) -> "AudioConfig":
        d = cls()
        return cls(
            device=os.environ.get("ECHONOTE_AUDIO_DEVICE", d.device),
            sample_rate=_env_int("ECHONOTE_AUDIO_SAMPLE_RATE", d.sample_rate),
            frames_per_buffer=_env_int("ECHONOTE_AUDIO_FRAMES_PER_BUFFER", d.frames_per_buffer),
            max_n_samples=_env_int("ECHONOTE_AUDIO_MAX_MS", d.max_n_samples),
            working_rate=_env_int("ECHONOTE_WORKING_RATE", d.working_rate),
            queue_size=_env_int("ECHONOTE_AUDIO_QUEUE_SIZE", d.queue_size),
            save=_env_bool("ECHONOTE_AUDIO_SAVE", d.save),
            output=os.environ.get("ECHONOTE_AUDIO_OUTPUT", d.output),
        )

    def validate(self, problems: List[str]) -> None:
        if self.sample_rate <= 0:
            problems.append("audio.sample_rate must be positive")
        if self.working_rate <= 0:
            problems.append("audio.working_rate must be positive")
        if self.frames_per_buffer <= 0:
            problems.append("audio.frames_per_buffer must be positive")
        if self.max_n_samples <= 0:
            problems.append("audio.max_n_samples must be positive")
        if self.queue_size <= 0:
            problems.append("audio.queue_size must be positive")


@dataclass
class ASRConfig:
    """Streaming recognizer: model directory, chunking and output file."""

    model_path: str = "models/SenseVoiceSmall"
    chunk_time: int = 2000
    overlap_time: int = 800
    intra_op_threads: int = 4
    # Fixed selectors fed to the model on every call
    language: int = 0
    textnorm: int = 14
    idle_wait: float = 0.1
    save: bool = False
    output: str = "output/asr.txt"

    def __post_init__(self) -> None:
        if self.overlap_time > self.chunk_time:
            self.overlap_time = self.chunk_time

    @property
    def config_file(self) -> Path:
        return Path(self.model_path) / "config.yaml"

    @property
    def mvn_file(self) -> Path:
        return Path(self.model_path) / "am.mvn"

    @property
    def tokens_file(self) -> Path:
        return Path(self.model_path) / "tokens.json"

    @property
    def model_file(self) -> Path:
        return Path(self.model_path) / "model_quant.onnx"

    @classmethod
    def from_env(cls) -> "ASRConfig":
        d = cls()
        return cls(
            model_path=os.environ.get("ECHONOTE_ASR_MODEL_PATH", d.model_path),
            chunk_time=_env_int("ECHONOTE_ASR_CHUNK_MS", d.chunk_time),
            overlap_time=_env_int("ECHONOTE_ASR_OVERLAP_MS", d.overlap_time),
            intra_op_threads=_env_int("ECHONOTE_ASR_THREADS", d.intra_op_threads),
            save=_env_bool("ECHONOTE_ASR_SAVE", d.save),
            output=os.environ.get("ECHONOTE_ASR_OUTPUT", d.output),
        )

    def validate(self, problems: List[str]) -> None:
        if self.chunk_time <= 0:
            problems.append("asr.chunk_time must be positive")
        if self.overlap_time < 0:
            problems.append("asr.overlap_time must not be negative")
        if self.intra_op_threads <= 0:
            problems.append("asr.intra_op_threads must be positive")
        if self.idle_wait <= 0:
            problems.append("asr.idle_wait must be positive")


@dataclass
class RefineConfig:
    system_prompt: str = "prompts/refine.txt"
    chunk_size: int = 1024
    refine_span: float = 120.0  # seconds
    save: bool = False
    output: str = "output/refine.txt"


@dataclass
class SummarizeConfig:
    system_prompt: str = "prompts/summarize.txt"
    save: bool = False
    output: str = "output/summarize.txt"


@dataclass
class LLMConfig:
    """Chat endpoint, sampling parameters and the refine/summarize stages."""

    schema_host_port: str = "http://localhost:8080"
    model: str = "Qwen3-8b"
    temperature: float = 0.6
    top_p: float = 0.95
    top_k: int = 20
    presence_penalty: float = 1.5
    poll_interval: float = 0.1
    connect_timeout: float = 10.0
    refine: RefineConfig = field(default_factory=RefineConfig)
    summarize: SummarizeConfig = field(default_factory=SummarizeConfig)

    @property
    def base_url(self) -> str:
        return self.schema_host_port.rstrip("/") + "/v1"

    @classmethod
    def from_env(cls) -> "LLMConfig":
        d = cls()
        return cls(
            schema_host_port=os.environ.get("ECHONOTE_LLM_HOST", d.schema_host_port),
            model=os.environ.get("ECHONOTE_LLM_MODEL", d.model),
            temperature=_env_float("ECHONOTE_LLM_TEMPERATURE", d.temperature),
            top_p=_env_float("ECHONOTE_LLM_TOP_P", d.top_p),
            top_k=_env_int("ECHONOTE_LLM_TOP_K", d.top_k),
            presence_penalty=_env_float("ECHONOTE_LLM_PRESENCE_PENALTY", d.presence_penalty),
            refine=RefineConfig(
                chunk_size=_env_int("ECHONOTE_REFINE_CHUNK_SIZE", d.refine.chunk_size),
                refine_span=_env_float("ECHONOTE_REFINE_SPAN", d.refine.refine_span),
                save=_env_bool("ECHONOTE_REFINE_SAVE", d.refine.save),
            ),
            summarize=SummarizeConfig(
                save=_env_bool("ECHONOTE_SUMMARIZE_SAVE", d.summarize.save),
            ),
        )

    def validate(self, problems: List[str]) -> None:
        if not self.model:
            problems.append("llm.model must not be empty")
        if not 0.0 < self.top_p <= 1.0:
            problems.append("llm.top_p must be in (0, 1]")
        if self.temperature < 0:
            problems.append("llm.temperature must not be negative")
        if self.top_k < 0:
            problems.append("llm.top_k must not be negative")
        if self.poll_interval <= 0:
            problems.append("llm.poll_interval must be positive")
        if self.refine.chunk_size <= 0:
            problems.append("llm.refine.chunk_size must be positive")
        if self.refine.refine_span < 0:
            problems.append("llm.refine.refine_span must not be negative")


@dataclass
class PipelineConfig:
    audio: AudioConfig = field(default_factory=AudioConfig)
    asr: ASRConfig = field(default_factory=ASRConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        return cls(audio=AudioConfig.from_env(), asr=ASRConfig.from_env(), llm=LLMConfig.from_env()).validated()

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base: Optional["PipelineConfig"] = None) -> "PipelineConfig":
        """Build from the JSON layout (``audio``, ``asr``, ``llm`` sections).

        Missing keys keep the values of ``base`` (env-derived by default).
        Every problem is collected and raised as one ``ConfigError``.
        """
        problems: List[str] = []
        if not isinstance(data, dict):
            raise ConfigError(["configuration root must be an object"])
        b = base or cls(audio=AudioConfig.from_env(), asr=ASRConfig.from_env(), llm=LLMConfig.from_env())

        a = _section(data, "audio", problems)
        audio = AudioConfig(
            device=_pick(a, "device", b.audio.device, str, problems, "audio"),
            sample_rate=_pick(a, "sampleRate", b.audio.sample_rate, int, problems, "audio"),
            frames_per_buffer=_pick(a, "framesPerBuffer", b.audio.frames_per_buffer, int, problems, "audio"),
            max_n_samples=_pick(a, "max_n_samples", b.audio.max_n_samples, int, problems, "audio"),
            working_rate=_pick(a, "working_rate", b.audio.working_rate, int, problems, "audio"),
            queue_size=_pick(a, "queue_size", b.audio.queue_size, int, problems, "audio"),
            save=_pick(a, "save", b.audio.save, bool, problems, "audio"),
            output=_pick(a, "output", b.audio.output, str, problems, "audio"),
        )

        s = _section(data, "asr", problems)
        asr = ASRConfig(
            model_path=_pick(s, "model_path", b.asr.model_path, str, problems, "asr"),
            chunk_time=_pick(s, "chunk_time", b.asr.chunk_time, int, problems, "asr"),
            overlap_time=_pick(s, "overlap_time", b.asr.overlap_time, int, problems, "asr"),
            intra_op_threads=_pick(s, "intra_op_threads", b.asr.intra_op_threads, int, problems, "asr"),
            language=_pick(s, "language", b.asr.language, int, problems, "asr"),
            textnorm=_pick(s, "textnorm", b.asr.textnorm, int, problems, "asr"),
            idle_wait=_pick(s, "idle_wait", b.asr.idle_wait, float, problems, "asr"),
            save=_pick(s, "save", b.asr.save, bool, problems, "asr"),
            output=_pick(s, "output", b.asr.output, str, problems, "asr"),
        )

        m = _section(data, "llm", problems)
        r = _section(m, "refine", problems)
        z = _section(m, "summarize", problems)
        llm = LLMConfig(
            schema_host_port=_pick(m, "schema_host_port", b.llm.schema_host_port, str, problems, "llm"),
            model=_pick(m, "model", b.llm.model, str, problems, "llm"),
            temperature=_pick(m, "temperature", b.llm.temperature, float, problems, "llm"),
            top_p=_pick(m, "top_p", b.llm.top_p, float, problems, "llm"),
            top_k=_pick(m, "top_k", b.llm.top_k, int, problems, "llm"),
            presence_penalty=_pick(m, "presence_penalty", b.llm.presence_penalty, float, problems, "llm"),
            poll_interval=_pick(m, "poll_interval", b.llm.poll_interval, float, problems, "llm"),
            connect_timeout=_pick(m, "connect_timeout", b.llm.connect_timeout, float, problems, "llm"),
            refine=RefineConfig(
                system_prompt=_pick(r, "system_prompt", b.llm.refine.system_prompt, str, problems, "llm.refine"),
                chunk_size=_pick(r, "chunk_size", b.llm.refine.chunk_size, int, problems, "llm.refine"),
                refine_span=_pick(r, "refine_span", b.llm.refine.refine_span, float, problems, "llm.refine"),
                save=_pick(r, "save", b.llm.refine.save, bool, problems, "llm.refine"),
                output=_pick(r, "output", b.llm.refine.output, str, problems, "llm.refine"),
            ),
            summarize=SummarizeConfig(
                system_prompt=_pick(z, "system_prompt", b.llm.summarize.system_prompt, str, problems, "llm.summarize"),
                save=_pick(z, "save", b.llm.summarize.save, bool, problems, "llm.summarize"),
                output=_pick(z, "output", b.llm.summarize.output, str, problems, "llm.summarize"),
            ),
        )

        return cls(audio=audio, asr=asr, llm=llm).validated(problems)

    def validated(self, problems: Optional[List[str]] = None) -> "PipelineConfig":
        problems = list(problems or [])
        self.audio.validate(problems)
        self.asr.validate(problems)
        self.llm.validate(problems)
        if problems:
            raise ConfigError(problems)
        return self


def load_pipeline_config(path: str) -> PipelineConfig:
    p = Path(path).expanduser()
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError([f"cannot read configuration file {p}: {exc}"]) from exc
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigError([f"{p} is not valid JSON: {exc}"]) from exc
    return PipelineConfig.from_dict(data)
