from __future__ import annotations

import logging
import queue
import threading
from pathlib import Path
from typing import Optional

import numpy as np
import soundfile as sf
import soxr

from config import AudioConfig


AUDIO_LOG = logging.getLogger("echonote.audio")

WORKING_RATE = 16000
POP_TIMEOUT_S = 0.1


class CaptureError(RuntimeError):
    """No usable input device, or the input stream could not be opened."""


class ResampleError(RuntimeError):
    """A single frame could not be converted to the working rate."""


def ms_to_samples(ms: float, sample_rate: int = WORKING_RATE) -> int:
    if ms <= 0:
        return 0
    return int(ms * sample_rate // 1000)


def samples_to_ms(n_samples: int, sample_rate: int = WORKING_RATE) -> float:
    if n_samples <= 0:
        return 0.0
    return n_samples * 1000.0 / sample_rate


# ---------------------------------------------------------------------------
# Ring buffer


class RingAudioBuffer:
    """Fixed-capacity circular store of mono float32 samples.

    Writing past capacity silently discards the oldest unread samples, so at
    most ``capacity`` unread samples are ever retained. Reads never block and
    return only what is available.
    """

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = int(capacity)
        self._data = np.zeros(self.capacity, dtype=np.float32)
        self._lock = threading.Lock()
        self._write_idx = 0
        self._read_idx = 0
        self._size = 0
        self._dropped = 0
        self._total_written = 0

    def write(self, samples) -> None:
        incoming = np.asarray(samples, dtype=np.float32).reshape(-1)
        n_in = incoming.size
        if n_in == 0:
            return
        if n_in > self.capacity:
            incoming = incoming[-self.capacity:]
        n = incoming.size

        with self._lock:
            first = min(n, self.capacity - self._write_idx)
            self._data[self._write_idx : self._write_idx + first] = incoming[:first]
            if first < n:
                self._data[: n - first] = incoming[first:]
            self._write_idx = (self._write_idx + n) % self.capacity

            unread = min(self._size + n_in, self.capacity)
            self._dropped += self._size + n_in - unread
            self._size = unread
            self._read_idx = (self._write_idx - self._size) % self.capacity
            self._total_written += n_in

    def read(self, n: int) -> np.ndarray:
        if n <= 0:
            return np.zeros(0, dtype=np.float32)
        with self._lock:
            take = min(int(n), self._size)
            if take == 0:
                return np.zeros(0, dtype=np.float32)
            first = min(take, self.capacity - self._read_idx)
            out = np.empty(take, dtype=np.float32)
            out[:first] = self._data[self._read_idx : self._read_idx + first]
            if first < take:
                out[first:] = self._data[: take - first]
            self._read_idx = (self._read_idx + take) % self.capacity
            self._size -= take
        return out

    def available(self) -> int:
        with self._lock:
            return self._size

    def __len__(self) -> int:
        return self.available()

    @property
    def dropped(self) -> int:
        """Unread samples overwritten so far."""
        return self._dropped

    @property
    def total_written(self) -> int:
        return self._total_written

    def clear(self) -> None:
        with self._lock:
            self._read_idx = self._write_idx
            self._size = 0


# ---------------------------------------------------------------------------
# Frame queue


class FrameQueue:
    """Bounded FIFO between the capture callback and the resample thread.

    ``push`` never blocks: when the queue is full the oldest frame is dropped.
    """

    def __init__(self, maxsize: int = 100000):
        self._q: "queue.Queue[np.ndarray]" = queue.Queue(maxsize=max(1, maxsize))
        self.dropped = 0

    def push(self, frame: np.ndarray) -> None:
        try:
            self._q.put_nowait(frame)
            return
        except queue.Full:
            pass
        try:
            _ = self._q.get_nowait()
            self.dropped += 1
        except queue.Empty:
            pass
        try:
            self._q.put_nowait(frame)
        except queue.Full:
            self.dropped += 1

    def pop(self, timeout: float = POP_TIMEOUT_S) -> Optional[np.ndarray]:
        try:
            return self._q.get(timeout=timeout)
        except queue.Empty:
            return None

    def pop_nowait(self) -> Optional[np.ndarray]:
        try:
            return self._q.get_nowait()
        except queue.Empty:
            return None

    def qsize(self) -> int:
        return self._q.qsize()

    def clear(self) -> None:
        try:
            while True:
                self._q.get_nowait()
        except queue.Empty:
            pass


# ---------------------------------------------------------------------------
# Resampling


class StreamingResampler:
    """Stateful rate converter; keeps filter history between frames."""

    def __init__(self, in_rate: int, out_rate: int):
        self.in_rate = in_rate
        self.out_rate = out_rate
        self._stream = None if in_rate == out_rate else soxr.ResampleStream(in_rate, out_rate, 1, dtype="float32")

    @property
    def passthrough(self) -> bool:
        return self.in_rate == self.out_rate

    def process(self, frame: np.ndarray, last: bool = False) -> np.ndarray:
        data = np.ascontiguousarray(frame, dtype=np.float32).reshape(-1)
        if self.passthrough:
            return data
        try:
            return self._stream.resample_chunk(data, last=last)
        except Exception as exc:
            raise ResampleError(f"{self.in_rate}->{self.out_rate} Hz conversion failed: {exc}") from exc

    def flush(self) -> np.ndarray:
        if self.passthrough:
            return np.zeros(0, dtype=np.float32)
        return self.process(np.zeros(0, dtype=np.float32), last=True)


class ResamplePipeline(threading.Thread):
    """Pops captured frames, converts them to the working rate, fills the ring.

    ``on_frames`` is the only entry point used from the capture callback; it
    copies the frame and pushes it without blocking.
    """

    def __init__(
        self,
        cfg: AudioConfig,
        ring: Optional[RingAudioBuffer] = None,
        *,
        frame_queue: Optional[FrameQueue] = None,
    ):
        super().__init__(daemon=True, name="resample")
        self.cfg = cfg
        self.ring = ring if ring is not None else RingAudioBuffer(cfg.ring_capacity)
        self.frames = frame_queue if frame_queue is not None else FrameQueue(cfg.queue_size)
        self.resampler = StreamingResampler(cfg.sample_rate, cfg.working_rate)
        self._stop_event = threading.Event()
        self._file_lock = threading.Lock()
        self._sound_file: Optional[sf.SoundFile] = None
        self.failed_frames = 0
        if cfg.save:
            self._open_output()

    @property
    def output_path(self) -> str:
        return self.cfg.output

    def _open_output(self) -> None:
        path = Path(self.cfg.output)
        path.parent.mkdir(parents=True, exist_ok=True)
        self._sound_file = sf.SoundFile(str(path), mode="w", samplerate=self.cfg.working_rate, channels=1)

    # ---- capture side --------------------------------------------------

    def on_frames(self, samples: np.ndarray) -> None:
        self.frames.push(np.array(samples, dtype=np.float32, copy=True).reshape(-1))

    # ---- consumer side -------------------------------------------------

    def stop(self) -> None:
        self._stop_event.set()

    def read_audio(self, ms: int) -> np.ndarray:
        """Read up to ``ms`` milliseconds of working-rate audio from the ring."""
        return self.ring.read(ms_to_samples(ms, self.cfg.working_rate))

    def run(self) -> None:
        while not self._stop_event.is_set():
            frame = self.frames.pop(POP_TIMEOUT_S)
            if frame is None or frame.size == 0:
                continue
            self.process(frame)

        # Frames queued before stop still belong to the session.
        while True:
            frame = self.frames.pop_nowait()
            if frame is None:
                break
            if frame.size:
                self.process(frame)

        try:
            tail = self.resampler.flush()
        except ResampleError as exc:
            AUDIO_LOG.error("resampler flush failed: %s", exc)
            tail = None
        if tail is not None and tail.size:
            self._commit(tail)

    def process(self, frame: np.ndarray) -> bool:
        try:
            converted = self.resampler.process(frame)
        except ResampleError as exc:
            self.failed_frames += 1
            AUDIO_LOG.error("dropping frame of %d samples: %s", frame.size, exc)
            return False
        if converted.size:
            self._commit(converted)
        return True

    def _commit(self, samples: np.ndarray) -> None:
        self.ring.write(samples)
        with self._file_lock:
            if self._sound_file is None:
                return
            try:
                self._sound_file.write(samples)
            except Exception as exc:
                AUDIO_LOG.error("audio archive write failed: %s", exc)

    def close(self) -> None:
        with self._file_lock:
            if self._sound_file is not None:
                try:
                    self._sound_file.close()
                except Exception as exc:
                    AUDIO_LOG.warning("closing %s failed: %s", self.cfg.output, exc)
                self._sound_file = None


__all__ = [
    "WORKING_RATE",
    "CaptureError",
    "ResampleError",
    "ms_to_samples",
    "samples_to_ms",
    "RingAudioBuffer",
    "FrameQueue",
    "StreamingResampler",
    "ResamplePipeline",
]
