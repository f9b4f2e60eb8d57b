#!/usr/bin/env python3
"""EchoNote: live microphone transcription with LLM refine/summarize stages."""

from __future__ import annotations

import argparse
import logging
import shutil
import sys
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Sequence, TextIO

import config
from asr_core import ModelLoadError, OnnxRuntime, StreamingASREngine, load_asr_assets
from audio_core import CaptureError, ResamplePipeline
from config import AudioConfig, ConfigError, PipelineConfig, load_pipeline_config
from llm_workflow import OpenAIChatClient, RefineSummarizeScheduler

LOG = logging.getLogger("echonote")

Sink = Callable[[str, str], None]

SESSION_ROOT = Path("data")


def _default_capture_factory(cfg: AudioConfig, on_frames):
    # Imported here so the pipeline can be built without PortAudio present.
    from capture import AudioCapture

    return AudioCapture(cfg, on_frames)


# ---------------------------------------------------------------------------
# Orchestrator


class EchoNote:
    """Owns one instance of every pipeline component and wires them together.

    capture -> resample -> ring buffer -> ASR -> sink("asr") + refine queue
    -> scheduler -> sink("refine" | "summarize")

    Construction loads every model asset and opens every output file; any
    failure raises before a thread is started.
    """

    def __init__(
        self,
        cfg: PipelineConfig,
        sink: Sink,
        *,
        capture_factory=None,
        runtime=None,
        chat=None,
        refine_prompt: Optional[str] = None,
        summarize_prompt: Optional[str] = None,
    ):
        self.cfg = cfg
        self.sink = sink
        self._started = False
        self._chat_client: Optional[OpenAIChatClient] = None
        self.pipeline: Optional[ResamplePipeline] = None
        self.engine: Optional[StreamingASREngine] = None
        self.scheduler: Optional[RefineSummarizeScheduler] = None
        self.capture = None

        extractor, vocab = load_asr_assets(cfg.asr)
        if extractor.frontend.fs != cfg.audio.working_rate:
            raise ConfigError(
                [f"audio.working_rate ({cfg.audio.working_rate}) differs from the model rate ({extractor.frontend.fs})"]
            )
        self.runtime = runtime if runtime is not None else OnnxRuntime(cfg.asr.model_file, cfg.asr.intra_op_threads)

        if chat is None:
            self._chat_client = OpenAIChatClient(cfg.llm)
            chat = self._chat_client.create

        try:
            self.scheduler = RefineSummarizeScheduler(
                cfg.llm,
                chat,
                self._on_llm_text,
                refine_prompt=refine_prompt,
                summarize_prompt=summarize_prompt,
            )
            self.pipeline = ResamplePipeline(cfg.audio)
            self.engine = StreamingASREngine(
                cfg.asr,
                extractor,
                vocab,
                self.runtime,
                self.pipeline.read_audio,
                self._on_asr_text,
            )
            factory = capture_factory or _default_capture_factory
            self.capture = factory(cfg.audio, self.pipeline.on_frames)
        except Exception:
            self._close_outputs()
            raise

    # ---- callbacks -----------------------------------------------------

    def _on_asr_text(self, text: str) -> None:
        self.sink("asr", text)
        self.scheduler.refine(text)

    def _on_llm_text(self, source: str, text: str) -> None:
        self.sink(source, text)

    # ---- lifecycle -----------------------------------------------------

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self.pipeline.start()
        self.engine.start()
        self.scheduler.start()
        self.capture.start()
        LOG.info("pipeline running")

    def stop(self) -> None:
        """Stop upstream first so the ASR flush still reaches the sink."""
        if self.capture is not None:
            self.capture.close()
        if self._started:
            for worker in (self.pipeline, self.engine, self.scheduler):
                worker.stop()
                worker.join()
            self._started = False
        self._close_outputs()
        LOG.info("pipeline stopped")

    def _close_outputs(self) -> None:
        for part in (self.pipeline, self.engine, self.scheduler):
            if part is not None:
                part.close()
        if self._chat_client is not None:
            self._chat_client.close()
            self._chat_client = None

    # ---- operator controls ---------------------------------------------

    def refine_now(self) -> None:
        self.scheduler.refine("")

    def summarize_now(self) -> None:
        self.scheduler.summarize()

    def toggle_capture(self) -> bool:
        return self.capture.toggle()

    @property
    def is_recording(self) -> bool:
        return bool(self.capture is not None and self.capture.is_recording)

    def output_files(self) -> List[str]:
        return [
            self.pipeline.output_path,
            self.engine.output_path,
            self.scheduler.refine_output_path,
            self.scheduler.summarize_output_path,
        ]


# ---------------------------------------------------------------------------
# Sessions


def archive_session(files: Sequence[str], root: Path = SESSION_ROOT, now: Optional[datetime] = None) -> Path:
    """Move existing output files into ``root/<YYYYmmddHHMM>/``."""
    stamp = (now or datetime.now()).strftime("%Y%m%d%H%M")
    dest = Path(root) / stamp
    dest.mkdir(parents=True, exist_ok=True)
    for name in files:
        src = Path(name)
        if not src.is_file():
            continue
        shutil.move(str(src), str(dest / src.name))
    return dest


def load_session(directory: Path, sink: Sink) -> int:
    """Replay an archived session's refine lines and summary into ``sink``."""
    directory = Path(directory)
    count = 0
    refine_file = directory / "refine.txt"
    if refine_file.is_file():
        for line in refine_file.read_text(encoding="utf-8").splitlines():
            if line.strip():
                sink("refine", line)
                count += 1
    summary_file = directory / "summarize.txt"
    if summary_file.is_file():
        summary = summary_file.read_text(encoding="utf-8")
        if summary.strip():
            sink("summarize", summary)
            count += 1
    return count


def make_console_sink(stream: Optional[TextIO] = None) -> Sink:
    lock = threading.Lock()

    def _sink(source: str, text: str) -> None:
        out = stream or sys.stdout
        stamp = time.strftime("%H:%M:%S")
        with lock:
            print(f"[{stamp}] ({source}) {text.strip()}", file=out, flush=True)

    return _sink


# ---------------------------------------------------------------------------
# Entry point

HELP_TEXT = "Commands: r = refine now, s = summarize, p = pause/resume capture, q = quit"


def _run_commands(app: EchoNote, lines) -> None:
    for raw in lines:
        cmd = raw.strip().lower()
        if cmd in {"q", "quit", "exit"}:
            return
        if cmd in {"r", "refine"}:
            app.refine_now()
        elif cmd in {"s", "summarize"}:
            app.summarize_now()
        elif cmd in {"p", "pause"}:
            state = "recording" if app.toggle_capture() else "paused"
            print(f"capture {state}")
        elif cmd:
            print(HELP_TEXT)


def _load_config(path: str) -> PipelineConfig:
    if not Path(path).exists() and path == config.DEFAULT_CONFIG_FILE:
        LOG.warning("%s not found; using environment defaults", path)
        return PipelineConfig.from_env()
    return load_pipeline_config(path)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Live transcription with refine/summarize")
    parser.add_argument("--config", "-c", default=config.DEFAULT_CONFIG_FILE, help="Pipeline configuration JSON")
    parser.add_argument("--replay", default=None, help="Print an archived session directory and exit")
    parser.add_argument("--no-archive", action="store_true", help="Leave output files in place on exit")
    parser.add_argument("--quiet", action="store_true", help="Reduce console logs")
    args = parser.parse_args(list(argv) if argv is not None else None)

    logging.basicConfig(
        level=logging.WARNING if args.quiet else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    sink = make_console_sink()

    if args.replay:
        if load_session(Path(args.replay), sink) == 0:
            print(f"No session output found in {args.replay}", file=sys.stderr)
            return 1
        return 0

    try:
        cfg = _load_config(args.config)
        app = EchoNote(cfg, sink)
    except (ConfigError, ModelLoadError, CaptureError, OSError) as exc:
        print(f"Initialization failed: {exc}", file=sys.stderr)
        return 1

    app.start()
    if not args.quiet:
        print("Listening… " + HELP_TEXT)
    try:
        _run_commands(app, sys.stdin)
    except KeyboardInterrupt:
        pass
    finally:
        app.stop()

    audio_out = Path(cfg.audio.output)
    if not args.no_archive and audio_out.is_file() and audio_out.stat().st_size > 0:
        dest = archive_session(app.output_files())
        LOG.info("session saved to %s", dest)
    return 0


__all__ = [
    "EchoNote",
    "archive_session",
    "load_session",
    "make_console_sink",
    "main",
]


if __name__ == "__main__":
    raise SystemExit(main())
