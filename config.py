from __future__ import annotations
import os

# === Simple knobs (edit these numbers if you dislike envs) ===
MODEL_PATH = os.environ.get("ECHONOTE_ASR_MODEL_PATH", "models/SenseVoiceSmall")
LLM_HOST = os.environ.get("ECHONOTE_LLM_HOST", "http://localhost:8080")
LLM_MODEL = os.environ.get("ECHONOTE_LLM_MODEL", "Qwen3-8b")

# Chunking + scheduling (milliseconds / seconds / bytes)
PIPELINE = {
    "CHUNK_MS": int(os.environ.get("ECHONOTE_ASR_CHUNK_MS", "2000")),
    "OVERLAP_MS": int(os.environ.get("ECHONOTE_ASR_OVERLAP_MS", "800")),
    "REFINE_CHUNK_SIZE": int(os.environ.get("ECHONOTE_REFINE_CHUNK_SIZE", "1024")),
    "REFINE_SPAN": float(os.environ.get("ECHONOTE_REFINE_SPAN", "120")),
}

DEFAULT_CONFIG_FILE = os.environ.get("ECHONOTE_CONFIG", "config/config.json")

# Write env once so downstream .from_env() picks them up predictably.
os.environ.setdefault("ECHONOTE_ASR_MODEL_PATH", MODEL_PATH)
os.environ.setdefault("ECHONOTE_LLM_HOST", LLM_HOST)
os.environ.setdefault("ECHONOTE_LLM_MODEL", LLM_MODEL)

os.environ.setdefault("ECHONOTE_ASR_CHUNK_MS", str(PIPELINE["CHUNK_MS"]))
os.environ.setdefault("ECHONOTE_ASR_OVERLAP_MS", str(PIPELINE["OVERLAP_MS"]))
os.environ.setdefault("ECHONOTE_REFINE_CHUNK_SIZE", str(PIPELINE["REFINE_CHUNK_SIZE"]))
os.environ.setdefault("ECHONOTE_REFINE_SPAN", str(PIPELINE["REFINE_SPAN"]))

# Re-export existing dataclasses and helper so rest of code imports from `config`.
from note_parameters import (  # noqa: E402
    ASRConfig,
    AudioConfig,
    ConfigError,
    LLMConfig,
    PipelineConfig,
    RefineConfig,
    SummarizeConfig,
    load_pipeline_config,
)
