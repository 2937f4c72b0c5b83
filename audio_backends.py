"""
puttsync - Audio Backends
The platform side of the detector: permission, opening an input that pushes
frames to a callback, and closing it. The microphone backend uses
sounddevice; the simulated backend is fed by the caller.
"""

import threading
import time
from typing import Callable, Iterable, Optional

import numpy as np

from config import Config, DetectorBackend
from errors import PermissionDenied, ResourceUnavailable
from logging_utils import RateLimiter, log_event

FrameCallback = Callable[[np.ndarray], None]


class AudioBackend:
    """Interface the lifecycle drives; subclasses own the actual stream."""

    name = "base"

    def request_permission(self) -> bool:
        return True

    def open(self, sample_rate: int, frame_length: int, on_frame: FrameCallback) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    @property
    def is_open(self) -> bool:
        return False


class MicrophoneBackend(AudioBackend):
    """Live input through a sounddevice InputStream (float32, one block per frame)."""

    name = "microphone"

    def __init__(self, device_index: Optional[int] = None, channels: int = 1,
                 permission_callback: Optional[Callable[[], bool]] = None):
        self.device_index = device_index
        self.channels = channels
        self.permission_callback = permission_callback
        self.stream = None
        self._on_frame: Optional[FrameCallback] = None
        self._status_limiter = RateLimiter(every=50)

    def request_permission(self) -> bool:
        # Desktop platforms grant access at the OS level; callers can inject a prompt
        if self.permission_callback is None:
            return True
        return bool(self.permission_callback())

    @property
    def is_open(self) -> bool:
        return self.stream is not None

    def open(self, sample_rate: int, frame_length: int, on_frame: FrameCallback) -> None:
        if self.stream is not None:
            return
        try:
            import sounddevice as sd
        except OSError as e:
            # Raised when the PortAudio shared library is missing
            raise ResourceUnavailable(f"PortAudio not available: {e}") from e

        self._on_frame = on_frame
        try:
            stream = sd.InputStream(
                device=self.device_index,
                channels=self.channels,
                samplerate=sample_rate,
                blocksize=frame_length,
                dtype="float32",
                callback=self._callback,
            )
            stream.start()
        except (sd.PortAudioError, OSError, ValueError) as e:
            self._on_frame = None
            raise ResourceUnavailable(f"Could not open input device {self.device_index!r}: {e}") from e

        self.stream = stream
        log_event("INFO", "Audio", "Input capture started", device=self.device_index,
                  sample_rate=sample_rate, frame_length=frame_length, channels=self.channels)

    def _callback(self, indata, frames, time_info, status):
        """sounddevice callback - runs on the PortAudio thread"""
        if status and self._status_limiter.should_log("status"):
            log_event("WARN", "Audio", "Input stream status", status=status)
        on_frame = self._on_frame
        if on_frame is not None:
            on_frame(indata.copy())

    def close(self) -> None:
        stream, self.stream = self.stream, None
        self._on_frame = None
        if stream is None:
            return
        import sounddevice as sd
        try:
            stream.stop()
            stream.close()
        except sd.PortAudioError as e:
            log_event("WARN", "Audio", "Error while closing input stream", error=e)
        log_event("INFO", "Audio", "Input capture stopped")


class SimulatedBackend(AudioBackend):
    """Frames come from the caller instead of hardware.

    Use ``push`` to deliver frames synchronously, or pass ``frames`` to have
    a background thread replay them at frame cadence once opened.
    """

    name = "simulated"

    def __init__(self, frames: Optional[Iterable[np.ndarray]] = None, realtime: bool = True,
                 permission_granted: bool = True, available: bool = True):
        self.frames = frames
        self.realtime = realtime
        self.permission_granted = permission_granted
        self.available = available
        self.sample_rate = 0
        self.frame_length = 0
        self.frames_delivered = 0
        self._on_frame: Optional[FrameCallback] = None
        self._feeder: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def request_permission(self) -> bool:
        return self.permission_granted

    @property
    def is_open(self) -> bool:
        return self._on_frame is not None

    def open(self, sample_rate: int, frame_length: int, on_frame: FrameCallback) -> None:
        if not self.available:
            raise ResourceUnavailable("Simulated input marked unavailable")
        self.sample_rate = sample_rate
        self.frame_length = frame_length
        self._on_frame = on_frame
        self._stop_event.clear()
        if self.frames is not None:
            self._feeder = threading.Thread(target=self._feed_loop, daemon=True)
            self._feeder.start()
        log_event("INFO", "Audio", "Simulated input opened", sample_rate=sample_rate,
                  frame_length=frame_length, replay=self.frames is not None)

    def push(self, frame) -> bool:
        """Deliver one frame now; False when the backend is closed."""
        on_frame = self._on_frame
        if on_frame is None:
            return False
        on_frame(frame)
        self.frames_delivered += 1
        return True

    def _feed_loop(self) -> None:
        period_s = self.frame_length / self.sample_rate if self.sample_rate else 0.0
        next_due = time.monotonic()
        for frame in self.frames:
            if self._stop_event.is_set() or not self.push(frame):
                break
            if self.realtime and period_s > 0:
                next_due += period_s
                self._stop_event.wait(max(0.0, next_due - time.monotonic()))
        log_event("DEBUG", "Audio", "Simulated replay finished", frames=self.frames_delivered)

    def close(self) -> None:
        self._stop_event.set()
        self._on_frame = None
        feeder, self._feeder = self._feeder, None
        if feeder is not None and feeder is not threading.current_thread():
            feeder.join(timeout=1.0)


def create_audio_backend(config: Config, permission_callback: Optional[Callable[[], bool]] = None,
                         frames: Optional[Iterable[np.ndarray]] = None) -> AudioBackend:
    """Resolve ``config.audio.backend`` to a concrete backend instance."""
    backend = config.audio.backend
    if backend == DetectorBackend.MICROPHONE:
        return MicrophoneBackend(config.audio.device_index, config.audio.channels, permission_callback)
    if backend == DetectorBackend.SIMULATED:
        return SimulatedBackend(frames=frames)
    raise ValueError(f"Unknown detector backend: {backend!r}")


def list_input_devices() -> list[dict]:
    """Input-capable devices as reported by PortAudio."""
    import sounddevice as sd
    devices = []
    for index, dev in enumerate(sd.query_devices()):
        if dev['max_input_channels'] > 0:
            devices.append({
                'index': index,
                'name': dev['name'],
                'inputs': dev['max_input_channels'],
                'default_samplerate': dev['default_samplerate'],
            })
    return devices


def ensure_permission(backend: AudioBackend) -> None:
    """Raise PermissionDenied unless the backend grants microphone access."""
    if not backend.request_permission():
        raise PermissionDenied(f"Microphone access refused ({backend.name})")
