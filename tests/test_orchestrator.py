import dataclasses
import threading
from datetime import datetime

import pytest

import main
from asr_core import ModelLoadError
from config import ConfigError
from conftest import FakeCapture, FakeChat, FakeRuntime, sine, wait_for
from main import EchoNote, archive_session, load_session, make_console_sink


class RecordingSink:
    def __init__(self):
        self.items = []
        self._lock = threading.Lock()

    def __call__(self, source, text):
        with self._lock:
            self.items.append((source, text))

    def sources(self):
        with self._lock:
            return [s for s, _ in self.items]


def _app(cfg, sink, chat=None):
    return EchoNote(
        cfg,
        sink,
        capture_factory=FakeCapture,
        runtime=FakeRuntime(),
        chat=chat or FakeChat(),
        refine_prompt="REFINE",
        summarize_prompt="SUMMARIZE",
    )


def test_pipeline_flows_from_capture_to_summary(pipeline_cfg):
    sink = RecordingSink()
    chat = FakeChat(reply="clean")
    app = _app(pipeline_cfg, sink, chat)
    app.start()
    try:
        assert app.is_recording
        audio = sine(2.0)
        for i in range(0, audio.size, 256):
            app.capture.on_frames(audio[i : i + 256])
        assert wait_for(lambda: "asr" in sink.sources())

        app.refine_now()
        assert wait_for(lambda: "refine" in sink.sources())
        assert chat.requests[0]["messages"][1]["content"].endswith("hello world.")

        app.summarize_now()
        assert wait_for(lambda: "summarize" in sink.sources())
        assert ("summarize", "clean") in sink.items

        assert app.toggle_capture() is False
        assert not app.is_recording
    finally:
        app.stop()

    for worker in (app.pipeline, app.engine, app.scheduler):
        assert not worker.is_alive()
    assert app.capture.closed


def test_stop_without_start(pipeline_cfg):
    app = _app(pipeline_cfg, RecordingSink())
    app.stop()
    assert not app.engine.is_alive()


def test_output_files_in_fixed_order(pipeline_cfg):
    app = _app(pipeline_cfg, RecordingSink())
    try:
        assert app.output_files() == [
            pipeline_cfg.audio.output,
            pipeline_cfg.asr.output,
            pipeline_cfg.llm.refine.output,
            pipeline_cfg.llm.summarize.output,
        ]
    finally:
        app.stop()


def test_missing_model_fails_before_any_thread(pipeline_cfg, tmp_path):
    cfg = dataclasses.replace(
        pipeline_cfg, asr=dataclasses.replace(pipeline_cfg.asr, model_path=str(tmp_path / "nowhere"))
    )
    before = {t.name for t in threading.enumerate()}
    with pytest.raises(ModelLoadError):
        _app(cfg, RecordingSink())
    after = {t.name for t in threading.enumerate()}
    assert not ({"asr", "llm", "resample"} & (after - before))


def test_working_rate_must_match_model(pipeline_cfg):
    cfg = dataclasses.replace(pipeline_cfg, audio=dataclasses.replace(pipeline_cfg.audio, working_rate=8000))
    with pytest.raises(ConfigError, match="working_rate"):
        _app(cfg, RecordingSink())


class TestSessions:
    def test_archive_moves_existing_files(self, tmp_path):
        out = tmp_path / "out"
        out.mkdir()
        (out / "asr.txt").write_text("raw", encoding="utf-8")
        (out / "refine.txt").write_text("clean", encoding="utf-8")

        dest = archive_session(
            [str(out / "asr.txt"), str(out / "refine.txt"), str(out / "summarize.txt")],
            root=tmp_path / "data",
            now=datetime(2024, 5, 1, 9, 30),
        )

        assert dest == tmp_path / "data" / "202405010930"
        assert sorted(p.name for p in dest.iterdir()) == ["asr.txt", "refine.txt"]
        assert not (out / "asr.txt").exists()

    def test_load_session_replays_refine_and_summary(self, tmp_path):
        (tmp_path / "refine.txt").write_text("first\n\nsecond\n", encoding="utf-8")
        (tmp_path / "summarize.txt").write_text("overall", encoding="utf-8")
        sink = RecordingSink()

        assert load_session(tmp_path, sink) == 3
        assert sink.items == [("refine", "first"), ("refine", "second"), ("summarize", "overall")]

    def test_load_empty_session(self, tmp_path):
        assert load_session(tmp_path, RecordingSink()) == 0


def test_console_sink_format(capsys):
    sink = make_console_sink()
    sink("asr", "  hello  \n")
    line = capsys.readouterr().out.strip()
    assert line.endswith("(asr) hello")
    assert line.startswith("[")


class StubApp:
    def __init__(self):
        self.calls = []
        self.recording = True

    def refine_now(self):
        self.calls.append("refine")

    def summarize_now(self):
        self.calls.append("summarize")

    def toggle_capture(self):
        self.recording = not self.recording
        self.calls.append("toggle")
        return self.recording


def test_command_loop_dispatches_until_quit(capsys):
    app = StubApp()
    main._run_commands(app, ["r\n", "S\n", "p\n", "help\n", "\n", "q\n", "r\n"])
    assert app.calls == ["refine", "summarize", "toggle"]
    out = capsys.readouterr().out
    assert "capture paused" in out
    assert main.HELP_TEXT in out


def test_main_replays_archived_session(tmp_path, capsys):
    (tmp_path / "summarize.txt").write_text("the gist", encoding="utf-8")
    assert main.main(["--replay", str(tmp_path)]) == 0
    assert "(summarize) the gist" in capsys.readouterr().out


def test_main_replay_of_empty_directory_fails(tmp_path):
    assert main.main(["--replay", str(tmp_path)]) == 1


def test_main_reports_bad_config(tmp_path, capsys):
    path = tmp_path / "config.json"
    path.write_text('{"audio": {"sampleRate": -1}}', encoding="utf-8")
    assert main.main(["--config", str(path), "--quiet"]) == 1
    assert "Initialization failed" in capsys.readouterr().err


def test_main_reports_unwritable_output(tmp_path, monkeypatch, capsys):
    path = tmp_path / "config.json"
    path.write_text("{}", encoding="utf-8")

    def cannot_open(cfg, sink):
        raise PermissionError("output/asr.txt: permission denied")

    monkeypatch.setattr(main, "EchoNote", cannot_open)
    assert main.main(["--config", str(path), "--quiet"]) == 1
    assert "permission denied" in capsys.readouterr().err
