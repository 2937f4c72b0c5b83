"""
puttsync - Audio Simulator
Synthetic putter impacts, metronome ticks and background noise for tests,
replays and the simulated backend.
"""

from dataclasses import dataclass, field
from typing import Iterator, Optional, Sequence

import numpy as np


@dataclass
class SimulatedScenario:
    """Rendered buffer plus where things were placed in it"""
    buffer: np.ndarray
    sample_rate: int
    tick_times_ms: list[float] = field(default_factory=list)
    impact_times_ms: list[float] = field(default_factory=list)

    @property
    def duration_s(self) -> float:
        return self.buffer.size / self.sample_rate


class AudioSimulator:
    """Generates float32 sample buffers at a fixed sample rate.

    Random components draw from a seeded numpy Generator so test audio is
    reproducible.
    """

    def __init__(self, sample_rate: int = 16000, seed: Optional[int] = 0):
        self.sample_rate = int(sample_rate)
        self.rng = np.random.default_rng(seed)

    def _time_axis(self, duration_s: float) -> np.ndarray:
        num_samples = int(self.sample_rate * duration_s)
        return np.arange(num_samples) / self.sample_rate

    def silence(self, duration_s: float) -> np.ndarray:
        return np.zeros(int(self.sample_rate * duration_s), dtype=np.float32)

    def sine(self, frequency: float, duration_s: float, amplitude: float = 0.5) -> np.ndarray:
        t = self._time_axis(duration_s)
        return (amplitude * np.sin(2 * np.pi * frequency * t)).astype(np.float32)

    def white_noise(self, duration_s: float, amplitude: float = 0.1) -> np.ndarray:
        num_samples = int(self.sample_rate * duration_s)
        return (amplitude * self.rng.uniform(-1.0, 1.0, num_samples)).astype(np.float32)

    def putter_impact(self, duration_s: float = 0.05, frequency: float = 3000.0,
                      amplitude: float = 0.8, noise_amount: float = 0.3) -> np.ndarray:
        """Decaying metallic burst: tone, 2nd/3rd harmonics, noise and an initial click."""
        t = self._time_axis(duration_s)
        envelope = amplitude * np.exp(-t * 20)
        tone = np.sin(2 * np.pi * frequency * t)
        harmonic2 = 0.3 * np.sin(2 * np.pi * frequency * 2 * t)
        harmonic3 = 0.1 * np.sin(2 * np.pi * frequency * 3 * t)
        noise = self.rng.uniform(-1.0, 1.0, t.size) * noise_amount
        samples = envelope * (tone + harmonic2 + harmonic3 + noise)

        click_len = min(10, t.size)
        ramp = (10 - np.arange(click_len)) / 10
        samples[:click_len] += ramp * amplitude * self.rng.uniform(-1.0, 1.0, click_len)
        return np.clip(samples, -1.0, 1.0).astype(np.float32)

    def metronome_tick(self, duration_s: float = 0.01, frequency: float = 1000.0,
                       amplitude: float = 0.5) -> np.ndarray:
        t = self._time_axis(duration_s)
        return (amplitude * np.exp(-t * 100) * np.sin(2 * np.pi * frequency * t)).astype(np.float32)

    def add_at(self, buffer: np.ndarray, samples: np.ndarray, time_ms: float) -> np.ndarray:
        """Mix ``samples`` into ``buffer`` starting at ``time_ms``; overflow is cut."""
        start = int(time_ms / 1000 * self.sample_rate)
        if start >= buffer.size or start < 0:
            return buffer
        end = min(buffer.size, start + samples.size)
        buffer[start:end] += samples[: end - start]
        return buffer

    def test_scenario(self, duration_s: float = 10.0, bpm: float = 80.0,
                      impacts_ms: Sequence[float] = (), add_noise: bool = True,
                      noise_level: float = 0.02, add_ticks: bool = True) -> SimulatedScenario:
        """Background noise, a metronome tick on every beat and impacts at the given times."""
        num_samples = int(self.sample_rate * duration_s)
        if add_noise:
            buffer = self.white_noise(duration_s, noise_level)
        else:
            buffer = np.zeros(num_samples, dtype=np.float32)

        tick_times = []
        if add_ticks and bpm > 0:
            interval_ms = 60000.0 / bpm
            t = 0.0
            while t < duration_s * 1000:
                self.add_at(buffer, self.metronome_tick(), t)
                tick_times.append(t)
                t += interval_ms

        impact_times = []
        for impact_ms in impacts_ms:
            self.add_at(buffer, self.putter_impact(amplitude=0.6 + self.rng.random() * 0.4), impact_ms)
            impact_times.append(float(impact_ms))

        return SimulatedScenario(buffer=buffer, sample_rate=self.sample_rate,
                                 tick_times_ms=tick_times, impact_times_ms=impact_times)


def iter_frames(buffer: np.ndarray, frame_length: int) -> Iterator[np.ndarray]:
    """Slice a buffer into consecutive frames; a short tail is zero-padded."""
    for start in range(0, buffer.size, frame_length):
        frame = buffer[start:start + frame_length]
        if frame.size < frame_length:
            frame = np.pad(frame, (0, frame_length - frame.size))
        yield frame
