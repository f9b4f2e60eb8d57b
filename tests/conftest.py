import json
import threading
import time

import numpy as np
import pytest

from config import ASRConfig, AudioConfig, LLMConfig, PipelineConfig

N_MELS = 80
LFR_M = 7
LFR_N = 6
FEATURE_DIM = N_MELS * LFR_M

VOCAB = [
    "<blank>",
    "<|en|>",
    "<|NEUTRAL|>",
    "<|Speech|>",
    "<|withitn|>",
    "<|woitn|>",
    "▁hello",
    "▁wor",
    "ld",
    "<|zh|>",
]

MODEL_YAML = """\
encoder_conf:
  output_size: 512
frontend_conf:
  fs: 16000
  window: hamming
  n_mels: 80
  frame_length: 25
  frame_shift: 10
  lfr_m: 7
  lfr_n: 6
"""


def write_mvn(path, means, scales):
    lines = [
        "<Nnet>",
        f"<Splice> {len(means)} {len(means)}",
        "[ 0 ]",
        f"<AddShift> {len(means)} {len(means)}",
        "<LearnRateCoef> 0 [ " + " ".join(f"{v:g}" for v in means) + " ]",
        f"<Rescale> {len(scales)} {len(scales)}",
        "<LearnRateCoef> 0 [ " + " ".join(f"{v:g}" for v in scales) + " ]",
        "</Nnet>",
    ]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


@pytest.fixture
def model_dir(tmp_path):
    d = tmp_path / "model"
    d.mkdir()
    (d / "config.yaml").write_text(MODEL_YAML, encoding="utf-8")
    write_mvn(d / "am.mvn", [0.0] * FEATURE_DIM, [1.0] * FEATURE_DIM)
    (d / "tokens.json").write_text(json.dumps(VOCAB), encoding="utf-8")
    return d


@pytest.fixture
def asr_cfg(model_dir, tmp_path):
    return ASRConfig(model_path=str(model_dir), idle_wait=0.01, output=str(tmp_path / "out" / "asr.txt"))


class FakeRuntime:
    """Returns logits that decode to ``tokens`` (blank between each id)."""

    def __init__(self, tokens=(1, 2, 3, 4, 6, 7, 8), vocab_size=len(VOCAB), fail=False):
        self.tokens = list(tokens)
        self.vocab_size = vocab_size
        self.fail = fail
        self.calls = []

    def run(self, inputs):
        self.calls.append(inputs)
        if self.fail:
            raise RuntimeError("bad tensor")
        n_frames = int(inputs["speech_lengths"][0])
        total = max(n_frames, 2 * len(self.tokens))
        logits = np.zeros((1, total, self.vocab_size), dtype=np.float32)
        logits[0, :, 0] = 1.0
        for i, tok in enumerate(self.tokens):
            logits[0, 2 * i, 0] = 0.0
            logits[0, 2 * i, tok] = 1.0
        return {"ctc_logits": logits, "encoder_out_lens": np.array([total], dtype=np.int32)}


@pytest.fixture
def fake_runtime():
    return FakeRuntime()


class FakeChat:
    def __init__(self, reply="refined.", fail=False):
        self.reply = reply
        self.fail = fail
        self.requests = []
        self._lock = threading.Lock()

    def __call__(self, request):
        with self._lock:
            self.requests.append(request)
        if self.fail:
            raise ConnectionError("endpoint down")
        return {"choices": [{"message": {"role": "assistant", "content": self.reply}}]}


@pytest.fixture
def fake_chat():
    return FakeChat()


class FakeCapture:
    def __init__(self, cfg, on_frames):
        self.cfg = cfg
        self.on_frames = on_frames
        self.recording = False
        self.closed = False

    @property
    def is_recording(self):
        return self.recording

    def start(self):
        self.recording = True

    def stop(self):
        self.recording = False

    def toggle(self):
        self.recording = not self.recording
        return self.recording

    def close(self):
        self.recording = False
        self.closed = True


@pytest.fixture
def pipeline_cfg(asr_cfg, tmp_path):
    audio = AudioConfig(sample_rate=16000, working_rate=16000, output=str(tmp_path / "out" / "output.wav"))
    llm = LLMConfig(poll_interval=0.01)
    llm.refine.output = str(tmp_path / "out" / "refine.txt")
    llm.summarize.output = str(tmp_path / "out" / "summarize.txt")
    return PipelineConfig(audio=audio, asr=asr_cfg, llm=llm)


def wait_for(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def sine(seconds, rate=16000, freq=440.0):
    t = np.arange(int(seconds * rate), dtype=np.float32) / rate
    return (0.3 * np.sin(2 * np.pi * freq * t)).astype(np.float32)
