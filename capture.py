from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional

import numpy as np
import sounddevice as sd

from audio_core import CaptureError
from config import AudioConfig


CAPTURE_LOG = logging.getLogger("echonote.capture")


# ---------------------------------------------------------------------------
# Device helpers


def list_input_devices() -> List[Dict[str, object]]:
    devices: List[Dict[str, object]] = []
    for i, dev in enumerate(sd.query_devices()):
        if dev["max_input_channels"] > 0:
            devices.append({"index": i, "name": dev["name"], "channels": dev["max_input_channels"]})
    return devices


def _match_device(want: str, name: str) -> bool:
    return want.lower() in name.lower()


def find_input_device(name: Optional[str]) -> Optional[int]:
    """Resolve a device by (partial) name; fall back to the default input."""
    devices = list_input_devices()
    if name and name.lower() != "default":
        for dev in devices:
            if _match_device(name, dev["name"]):
                return int(dev["index"])
        CAPTURE_LOG.warning("input device %r not found; using default input", name)
    default_in = sd.default.device[0] if isinstance(sd.default.device, (list, tuple)) else None
    if default_in is not None and default_in >= 0:
        return int(default_in)
    return int(devices[0]["index"]) if devices else None


# ---------------------------------------------------------------------------
# Capture driver


class AudioCapture:
    """Mono float32 input stream at the device rate.

    The callback hands each frame to ``on_frames`` and returns; it does not
    log, resample or wait on locks beyond the frame queue push.
    """

    def __init__(self, cfg: AudioConfig, on_frames: Callable[[np.ndarray], None]):
        self.cfg = cfg
        self.on_frames = on_frames
        self.device_idx = find_input_device(cfg.device)
        if self.device_idx is None:
            raise CaptureError("no audio input device available")
        self.status_flags = 0
        try:
            self._stream: Optional[sd.InputStream] = sd.InputStream(
                samplerate=cfg.sample_rate,
                channels=1,
                dtype="float32",
                blocksize=cfg.frames_per_buffer,
                latency="low",
                device=self.device_idx,
                callback=self._callback,
            )
        except Exception as exc:
            raise CaptureError(f"cannot open input device {self.device_idx}: {exc}") from exc

    def _callback(self, indata, _frames, _time_info, status) -> None:
        if status:
            self.status_flags += 1
        self.on_frames(indata[:, 0])

    @property
    def is_recording(self) -> bool:
        return bool(self._stream is not None and self._stream.active)

    def start(self) -> None:
        if self._stream is None or self._stream.active:
            return
        self._stream.start()
        CAPTURE_LOG.info("capture started on device %s at %d Hz", self.device_idx, self.cfg.sample_rate)

    def stop(self) -> None:
        if self._stream is None or self._stream.stopped:
            return
        self._stream.stop()
        CAPTURE_LOG.info("capture paused")

    def toggle(self) -> bool:
        if self.is_recording:
            self.stop()
        else:
            self.start()
        return self.is_recording

    def close(self) -> None:
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except Exception as exc:
                CAPTURE_LOG.warning("closing input stream failed: %s", exc)
            self._stream = None


__all__ = [
    "CaptureError",
    "list_input_devices",
    "find_input_device",
    "AudioCapture",
]
