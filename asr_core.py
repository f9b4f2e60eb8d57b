from __future__ import annotations

import enum
import json
import logging
import math
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import kaldi_native_fbank as knf
import numpy as np
import yaml

from config import ASRConfig

try:
    import onnxruntime as ort
except ImportError:  # pragma: no cover - optional dependency
    ort = None  # type: ignore[assignment]


ASR_LOG = logging.getLogger("echonote.asr")

BLANK_ID = 0
WORD_MARKER = "▁"  # sentencepiece word-boundary prefix
WITH_ITN_TAG = "<|withitn|>"
NO_PERIOD_LANGUAGE_TAG = "<|zh|>"
INPUT_SCALE = 32768.0


class ModelLoadError(RuntimeError):
    """A model asset is missing, unreadable or inconsistent."""


# ---------------------------------------------------------------------------
# Model assets


@dataclass
class FrontendConfig:
    window_type: str = "hamming"
    frame_length: int = 25
    frame_shift: int = 10
    n_mels: int = 80
    lfr_m: int = 7
    lfr_n: int = 6
    fs: int = 16000
    encoder_size: int = 512

    @property
    def feature_dim(self) -> int:
        return self.lfr_m * self.n_mels


def load_model_config(path) -> FrontendConfig:
    p = Path(path)
    try:
        with p.open("r", encoding="utf-8") as fh:
            doc = yaml.safe_load(fh)
    except OSError as exc:
        raise ModelLoadError(f"cannot read model config {p}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ModelLoadError(f"malformed model config {p}: {exc}") from exc

    if not isinstance(doc, dict) or not isinstance(doc.get("frontend_conf"), dict):
        raise ModelLoadError(f"{p}: missing 'frontend_conf' section")
    frontend = doc["frontend_conf"]
    encoder = doc.get("encoder_conf") or {}
    try:
        return FrontendConfig(
            window_type=str(frontend["window"]),
            frame_length=int(frontend["frame_length"]),
            frame_shift=int(frontend["frame_shift"]),
            n_mels=int(frontend["n_mels"]),
            lfr_m=int(frontend["lfr_m"]),
            lfr_n=int(frontend["lfr_n"]),
            fs=int(frontend["fs"]),
            encoder_size=int(encoder.get("output_size", FrontendConfig.encoder_size)),
        )
    except KeyError as exc:
        raise ModelLoadError(f"{p}: frontend_conf is missing {exc}") from exc
    except (TypeError, ValueError) as exc:
        raise ModelLoadError(f"{p}: bad frontend_conf value: {exc}") from exc


def _learn_rate_values(line: str) -> List[float]:
    # "<LearnRateCoef> 0 [ v1 v2 ... vn ]"
    items = line.split()
    if not items or items[0] != "<LearnRateCoef>":
        return []
    return [float(v) for v in items[3:-1]]


def load_cmvn(path) -> Tuple[np.ndarray, np.ndarray]:
    """Parse a Kaldi nnet ``am.mvn`` into (shift, scale) vectors."""
    p = Path(path)
    try:
        lines = p.read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        raise ModelLoadError(f"cannot read normalization statistics {p}: {exc}") from exc

    means: List[float] = []
    scales: List[float] = []
    try:
        for i, line in enumerate(lines):
            items = line.split()
            if not items or i + 1 >= len(lines):
                continue
            if items[0] == "<AddShift>":
                means = _learn_rate_values(lines[i + 1])
            elif items[0] == "<Rescale>":
                scales = _learn_rate_values(lines[i + 1])
    except ValueError as exc:
        raise ModelLoadError(f"{p}: non-numeric statistics value: {exc}") from exc

    if not means or not scales:
        raise ModelLoadError(f"{p}: missing <AddShift> or <Rescale> statistics")
    if len(means) != len(scales):
        raise ModelLoadError(f"{p}: shift has {len(means)} values but scale has {len(scales)}")
    return np.asarray(means, dtype=np.float32), np.asarray(scales, dtype=np.float32)


def load_tokens(path) -> List[str]:
    p = Path(path)
    try:
        with p.open("r", encoding="utf-8") as fh:
            tokens = json.load(fh)
    except OSError as exc:
        raise ModelLoadError(f"cannot read vocabulary {p}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ModelLoadError(f"malformed vocabulary {p}: {exc}") from exc

    if not isinstance(tokens, list):
        raise ModelLoadError(f"{p}: vocabulary must be a JSON array")
    if not all(isinstance(t, str) for t in tokens):
        raise ModelLoadError(f"{p}: every vocabulary entry must be a string")
    if not tokens:
        raise ModelLoadError(f"{p}: vocabulary is empty")
    return tokens


class OnnxRuntime:
    """Thin wrapper so the engine only sees ``run(inputs) -> outputs``."""

    OUTPUT_NAMES = ("ctc_logits", "encoder_out_lens")

    def __init__(self, model_file, intra_op_threads: int = 4):
        if ort is None:
            raise ModelLoadError("onnxruntime is not installed")
        path = Path(model_file)
        if not path.is_file():
            raise ModelLoadError(f"model file not found: {path}")
        so = ort.SessionOptions()
        so.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        so.intra_op_num_threads = intra_op_threads
        try:
            self._session = ort.InferenceSession(str(path), sess_options=so, providers=["CPUExecutionProvider"])
        except Exception as exc:
            raise ModelLoadError(f"cannot load model {path}: {exc}") from exc

    def run(self, inputs: Dict[str, np.ndarray]) -> Dict[str, np.ndarray]:
        outputs = self._session.run(list(self.OUTPUT_NAMES), inputs)
        return dict(zip(self.OUTPUT_NAMES, outputs))


# ---------------------------------------------------------------------------
# Features


def apply_lfr(features: np.ndarray, lfr_m: int, lfr_n: int) -> np.ndarray:
    """Stack ``lfr_m`` frames every ``lfr_n`` frames.

    The head is padded with ``(lfr_m - 1) // 2`` copies of the first frame and
    the last window is padded with copies of the last frame.
    """
    feats = np.asarray(features, dtype=np.float32)
    n_frames = feats.shape[0]
    dim = feats.shape[1] if feats.ndim == 2 else 0
    if n_frames == 0:
        return np.zeros((0, lfr_m * dim), dtype=np.float32)

    n_out = int(math.ceil(n_frames / lfr_n))
    left_pad = (lfr_m - 1) // 2
    padded = np.vstack([np.repeat(feats[:1], left_pad, axis=0), feats])
    total = padded.shape[0]

    out = np.empty((n_out, lfr_m * dim), dtype=np.float32)
    for i in range(n_out):
        start = i * lfr_n
        if lfr_m <= total - start:
            window = padded[start : start + lfr_m]
        else:
            tail = padded[start:]
            fill = np.repeat(padded[-1:], lfr_m - tail.shape[0], axis=0)
            window = np.vstack([tail, fill])
        out[i] = window.reshape(-1)
    return out


class FeatureExtractor:
    def __init__(self, frontend: FrontendConfig, means: np.ndarray, scales: np.ndarray):
        self.frontend = frontend
        self.means = np.asarray(means, dtype=np.float32)
        self.scales = np.asarray(scales, dtype=np.float32)
        expected = frontend.feature_dim
        if self.means.size != expected or self.scales.size != expected:
            raise ModelLoadError(
                f"normalization statistics have {self.means.size}/{self.scales.size} values, "
                f"expected lfr_m*n_mels = {expected}"
            )
        opts = knf.FbankOptions()
        opts.frame_opts.dither = 0
        opts.frame_opts.window_type = frontend.window_type
        opts.frame_opts.frame_length_ms = float(frontend.frame_length)
        opts.frame_opts.frame_shift_ms = float(frontend.frame_shift)
        opts.frame_opts.samp_freq = float(frontend.fs)
        opts.frame_opts.snip_edges = True
        opts.mel_opts.num_bins = frontend.n_mels
        opts.energy_floor = 0
        self._opts = opts

    def fbank(self, samples: np.ndarray) -> np.ndarray:
        wave = np.asarray(samples, dtype=np.float32).reshape(-1) * INPUT_SCALE
        fbank = knf.OnlineFbank(self._opts)
        fbank.accept_waveform(float(self.frontend.fs), wave.tolist())
        fbank.input_finished()
        n_frames = fbank.num_frames_ready
        mat = np.empty((n_frames, self.frontend.n_mels), dtype=np.float32)
        for i in range(n_frames):
            mat[i, :] = fbank.get_frame(i)
        return mat

    def normalize(self, features: np.ndarray) -> np.ndarray:
        stacked = apply_lfr(features, self.frontend.lfr_m, self.frontend.lfr_n)
        return (stacked + self.means) * self.scales

    def __call__(self, samples: np.ndarray) -> np.ndarray:
        return self.normalize(self.fbank(samples))


# ---------------------------------------------------------------------------
# Decoding


def ctc_greedy_search(logits: np.ndarray, length: Optional[int] = None, blank_id: int = BLANK_ID) -> List[int]:
    """Arg-max per frame, drop blanks and immediate repeats."""
    scores = np.asarray(logits)
    if scores.ndim == 3:
        scores = scores[0]
    if length is not None:
        scores = scores[: max(0, int(length))]
    if scores.shape[0] == 0:
        return []

    tokens: List[int] = []
    prev = -1
    for y in np.argmax(scores, axis=-1).tolist():
        if y != blank_id and y != prev:
            tokens.append(int(y))
        prev = y
    return tokens


def decode_tokens(tokens: Sequence[int], vocab: Sequence[str]) -> str:
    """Turn collapsed token ids into ``<lang><emo><event> text``.

    The first four ids carry language, emotion, event and punctuation tags.
    """
    lang = emo = event = itn = ""
    if len(tokens) >= 4:
        lang, emo, event, itn = (vocab[t] for t in tokens[:4])

    text = ""
    for t in tokens[4:]:
        word = vocab[t]
        if WORD_MARKER in word:
            text += " " + word.replace(WORD_MARKER, "")
        else:
            text += word

    if itn == WITH_ITN_TAG and lang != NO_PERIOD_LANGUAGE_TAG:
        text += "."
    return lang + emo + event + " " + text


# ---------------------------------------------------------------------------
# Streaming engine


class EngineState(enum.Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    INFERRING = "inferring"


def load_asr_assets(cfg: ASRConfig) -> Tuple[FeatureExtractor, List[str]]:
    frontend = load_model_config(cfg.config_file)
    means, scales = load_cmvn(cfg.mvn_file)
    vocab = load_tokens(cfg.tokens_file)
    return FeatureExtractor(frontend, means, scales), vocab


class StreamingASREngine(threading.Thread):
    """Pulls working-rate audio, transcribes it in overlapping chunks.

    ``read_audio(ms)`` must return up to ``ms`` milliseconds of samples
    without blocking. ``on_text`` is called from this thread.
    """

    def __init__(
        self,
        cfg: ASRConfig,
        extractor: FeatureExtractor,
        vocab: Sequence[str],
        runtime,
        read_audio: Callable[[int], np.ndarray],
        on_text: Optional[Callable[[str], None]] = None,
    ):
        super().__init__(daemon=True, name="asr")
        self.cfg = cfg
        self.extractor = extractor
        self.vocab = list(vocab)
        self.runtime = runtime
        self.read_audio = read_audio
        self.on_text = on_text
        rate = extractor.frontend.fs
        self.min_chunk_samples = cfg.chunk_time * rate // 1000
        self.overlap_samples = min(cfg.overlap_time, cfg.chunk_time) * rate // 1000
        self.state = EngineState.IDLE
        self.cycles = 0
        self.samples_received = 0
        self._accum = np.zeros(0, dtype=np.float32)
        self._fresh = 0
        self._stop_event = threading.Event()
        self._out = None
        if cfg.save:
            path = Path(cfg.output)
            path.parent.mkdir(parents=True, exist_ok=True)
            self._out = path.open("w", encoding="utf-8")

    @property
    def output_path(self) -> str:
        return self.cfg.output

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:
        while not self._stop_event.is_set():
            chunk = self.read_audio(self.cfg.chunk_time)
            if chunk is None or len(chunk) == 0:
                self._stop_event.wait(self.cfg.idle_wait)
                continue
            self.accept(chunk)

        # Drain the ring, then transcribe whatever arrived after the last cycle.
        while True:
            chunk = self.read_audio(self.cfg.chunk_time)
            if chunk is None or len(chunk) == 0:
                break
            self.accept(chunk)
        if self._fresh > 0:
            self._run_cycle()
        self.state = EngineState.IDLE

    def accept(self, chunk: np.ndarray) -> None:
        chunk = np.asarray(chunk, dtype=np.float32).reshape(-1)
        self._accum = np.concatenate([self._accum, chunk])
        self._fresh += chunk.size
        self.samples_received += chunk.size
        self.state = EngineState.ACCUMULATING
        if self._accum.size >= self.min_chunk_samples:
            self._run_cycle()

    def transcribe(self, samples: np.ndarray) -> str:
        feats = self.extractor(samples)
        n_frames = feats.shape[0]
        if n_frames == 0:
            return ""

        inputs = {
            "speech": feats[np.newaxis, :, :].astype(np.float32),
            "speech_lengths": np.array([n_frames], dtype=np.int32),
            "language": np.array([self.cfg.language], dtype=np.int32),
            "textnorm": np.array([self.cfg.textnorm], dtype=np.int32),
        }
        outputs = self.runtime.run(inputs)
        logits = np.asarray(outputs["ctc_logits"])
        if logits.ndim == 3:
            logits = logits[0]
        length = logits.shape[0]
        lens = outputs.get("encoder_out_lens")
        if lens is not None:
            length = min(length, int(np.asarray(lens).reshape(-1)[0]))
        return decode_tokens(ctc_greedy_search(logits, length), self.vocab)

    def _run_cycle(self) -> None:
        self.state = EngineState.INFERRING
        samples = self._accum
        try:
            result = self.transcribe(samples)
        except Exception as exc:
            ASR_LOG.error("inference on %d samples failed: %s", samples.size, exc)
            result = ""
        self.cycles += 1

        if result.strip():
            self._emit(result)

        keep = min(self.overlap_samples, samples.size)
        self._accum = samples[samples.size - keep :].copy() if keep else np.zeros(0, dtype=np.float32)
        self._fresh = 0
        self.state = EngineState.ACCUMULATING if self._accum.size else EngineState.IDLE

    def _emit(self, result: str) -> None:
        if self._out is not None:
            try:
                self._out.write(result)
                self._out.flush()
            except OSError as exc:
                ASR_LOG.error("writing %s failed: %s", self.cfg.output, exc)
        if self.on_text is not None:
            try:
                self.on_text(result)
            except Exception as exc:
                ASR_LOG.error("asr result callback failed: %s", exc)

    def close(self) -> None:
        if self._out is not None:
            self._out.close()
            self._out = None


__all__ = [
    "ModelLoadError",
    "FrontendConfig",
    "load_model_config",
    "load_cmvn",
    "load_tokens",
    "load_asr_assets",
    "OnnxRuntime",
    "apply_lfr",
    "FeatureExtractor",
    "ctc_greedy_search",
    "decode_tokens",
    "EngineState",
    "StreamingASREngine",
]
