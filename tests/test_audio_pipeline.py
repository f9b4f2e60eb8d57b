import time

import numpy as np
import pytest
import soundfile as sf

from audio_core import (
    FrameQueue,
    ResampleError,
    ResamplePipeline,
    RingAudioBuffer,
    StreamingResampler,
    ms_to_samples,
    samples_to_ms,
)
from config import AudioConfig
from conftest import sine, wait_for


def test_ms_sample_conversions():
    assert ms_to_samples(2000) == 32000
    assert ms_to_samples(800, 16000) == 12800
    assert ms_to_samples(0) == 0
    assert samples_to_ms(8000, 16000) == 500.0
    assert samples_to_ms(-1) == 0.0


class TestFrameQueue:
    def test_full_queue_drops_oldest(self):
        q = FrameQueue(maxsize=2)
        for value in (1.0, 2.0, 3.0):
            q.push(np.full(4, value, dtype=np.float32))

        assert q.dropped == 1
        assert q.pop(0.01)[0] == 2.0
        assert q.pop(0.01)[0] == 3.0
        assert q.pop(0.01) is None

    def test_pop_times_out(self):
        q = FrameQueue(maxsize=4)
        started = time.monotonic()
        assert q.pop(0.05) is None
        assert time.monotonic() - started < 1.0


class TestStreamingResampler:
    def test_passthrough_when_rates_match(self):
        r = StreamingResampler(16000, 16000)
        frame = sine(0.01)
        np.testing.assert_array_equal(r.process(frame), frame)
        assert r.flush().size == 0

    def test_streaming_conversion_preserves_length(self):
        r = StreamingResampler(48000, 16000)
        audio = sine(0.5, rate=48000)
        out = [r.process(audio[i : i + 480]) for i in range(0, audio.size, 480)]
        out.append(r.flush())
        total = sum(chunk.size for chunk in out)
        assert abs(total - 8000) <= 1


class TestResamplePipeline:
    def _cfg(self, tmp_path, **kw):
        defaults = dict(sample_rate=16000, working_rate=16000, output=str(tmp_path / "output.wav"))
        defaults.update(kw)
        return AudioConfig(**defaults)

    def test_passthrough_frames_land_in_ring(self, tmp_path):
        pipeline = ResamplePipeline(self._cfg(tmp_path))
        frame = sine(0.016)
        assert pipeline.process(frame)
        np.testing.assert_allclose(pipeline.ring.read(1000), frame)

    def test_read_audio_uses_milliseconds(self, tmp_path):
        pipeline = ResamplePipeline(self._cfg(tmp_path))
        pipeline.process(sine(1.0))
        assert pipeline.read_audio(250).size == 4000
        assert pipeline.read_audio(0).size == 0

    def test_resample_failure_skips_frame_and_continues(self, tmp_path, monkeypatch):
        pipeline = ResamplePipeline(self._cfg(tmp_path, sample_rate=44100))

        def boom(frame, last=False):
            raise ResampleError("conversion failed")

        monkeypatch.setattr(pipeline.resampler, "process", boom)
        assert pipeline.process(sine(0.01, rate=44100)) is False
        assert pipeline.failed_frames == 1
        assert pipeline.ring.available() == 0

        monkeypatch.undo()
        pipeline.process(sine(0.1, rate=44100))
        assert pipeline.ring.available() > 0

    def test_thread_drains_frames_and_stops(self, tmp_path):
        ring = RingAudioBuffer(48000)
        pipeline = ResamplePipeline(self._cfg(tmp_path), ring)
        pipeline.start()
        audio = sine(1.0)
        for i in range(0, audio.size, 256):
            pipeline.on_frames(audio[i : i + 256])

        assert wait_for(lambda: ring.total_written == audio.size)
        pipeline.stop()
        pipeline.join(timeout=1.0)
        assert not pipeline.is_alive()
        np.testing.assert_allclose(ring.read(audio.size), audio)

    def test_on_frames_copies_the_callback_buffer(self, tmp_path):
        pipeline = ResamplePipeline(self._cfg(tmp_path))
        buf = np.ones(8, dtype=np.float32)
        pipeline.on_frames(buf)
        buf[:] = 0.0
        assert pipeline.frames.pop(0.01)[0] == 1.0

    def test_archive_file_written_at_working_rate(self, tmp_path):
        cfg = self._cfg(tmp_path, sample_rate=32000, save=True)
        pipeline = ResamplePipeline(cfg)
        audio = sine(0.5, rate=32000)
        for i in range(0, audio.size, 320):
            pipeline.process(audio[i : i + 320])
        tail = pipeline.resampler.flush()
        pipeline._commit(tail)
        pipeline.close()

        info = sf.info(cfg.output)
        assert info.samplerate == 16000
        assert info.channels == 1
        assert abs(info.frames - 8000) <= 1
        assert pipeline.output_path == cfg.output


def test_ring_capacity_from_config():
    cfg = AudioConfig(max_n_samples=1500, working_rate=16000)
    assert cfg.ring_capacity == 24000


@pytest.mark.parametrize("rate", [44100, 48000])
def test_pipeline_stop_flushes_resampler_tail(tmp_path, rate):
    cfg = AudioConfig(sample_rate=rate, working_rate=16000, output=str(tmp_path / "o.wav"))
    pipeline = ResamplePipeline(cfg)
    pipeline.start()
    audio = sine(0.25, rate=rate)
    for i in range(0, audio.size, 256):
        pipeline.on_frames(audio[i : i + 256])
    pipeline.stop()
    pipeline.join(timeout=1.0)
    assert abs(pipeline.ring.total_written - 4000) <= 1


def test_stop_processes_frames_still_queued(tmp_path):
    cfg = AudioConfig(sample_rate=16000, working_rate=16000, output=str(tmp_path / "o.wav"))
    pipeline = ResamplePipeline(cfg)
    audio = sine(200 * 256 / 16000)
    for i in range(0, audio.size, 256):
        pipeline.on_frames(audio[i : i + 256])

    pipeline.stop()
    pipeline.start()
    pipeline.join(timeout=2.0)

    assert not pipeline.is_alive()
    assert pipeline.frames.qsize() == 0
    assert pipeline.ring.total_written == 200 * 256
    np.testing.assert_array_equal(pipeline.ring.read(audio.size), audio)
