"""
puttsync - Feature Extractor
Turns one audio frame into the scalar features the strike detector votes on:
mean-absolute energy, zero-crossing rate, energy flux and crest factor.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy.signal import butter, sosfilt, sosfilt_zi

from config import FeatureConfig
from errors import InvalidFrame
from logging_utils import log_event

EPSILON = 1e-10
INT16_SCALE = 32768.0


@dataclass(frozen=True)
class FeatureSet:
    """Features of a single frame"""
    energy: float          # mean(|x|)
    zcr: float             # sign changes / frame length
    flux: float            # rise of energy over the circular history
    crest_factor: float    # peak / rms
    max_amplitude: float
    rms: float


def to_mono_float(frame) -> np.ndarray:
    """Normalise a raw frame to mono float64 in [-1, 1] with DC removed.

    Integer PCM is scaled by 1/32768, (samples, channels) arrays are averaged
    across channels.
    """
    try:
        data = np.asarray(frame)
    except (TypeError, ValueError) as e:
        raise InvalidFrame(f"Unreadable frame: {e}") from e

    if data.ndim == 2:
        data = data.mean(axis=1) if data.shape[1] > 1 else data[:, 0]
    elif data.ndim != 1:
        raise InvalidFrame(f"Frame must be 1-D or (samples, channels), got shape {data.shape}")

    if data.size == 0:
        raise InvalidFrame("Zero-length frame")

    if np.issubdtype(data.dtype, np.integer):
        samples = data.astype(np.float64) / INT16_SCALE
    elif np.issubdtype(data.dtype, np.floating):
        samples = data.astype(np.float64)
    else:
        raise InvalidFrame(f"Unsupported sample type {data.dtype}")

    if not np.all(np.isfinite(samples)):
        raise InvalidFrame("Frame holds non-finite samples")

    return samples - samples.mean()


class FeatureExtractor:
    """Stateful per-frame feature extraction.

    State is the circular energy history used for flux and the band-pass
    filter's z-state; both carry across frames, so frames must arrive in order.
    """

    def __init__(self, config: FeatureConfig, sample_rate: int, gain: float = 1.0):
        self.config = config
        self.sample_rate = int(sample_rate)
        self.gain = float(gain)

        self._history = np.zeros(max(10, int(config.history_size)), dtype=np.float64)
        self._history_index = 0
        self._sos: Optional[np.ndarray] = None
        self._zi: Optional[np.ndarray] = None
        self._init_band_filter()

    def _init_band_filter(self) -> None:
        """Initialize the Butterworth band-pass that emphasises impact energy"""
        self._sos = None
        self._zi = None
        if not self.config.use_band_filter:
            return

        nyquist = self.sample_rate / 2
        low_freq = self.config.band_low_hz
        high_freq = min(self.config.band_high_hz, nyquist * 0.95)   # Stay below Nyquist

        low_norm = max(0.001, min(0.99, low_freq / nyquist))
        high_norm = max(low_norm + 0.01, min(0.999, high_freq / nyquist))

        self._sos = butter(self.config.filter_order, [low_norm, high_norm], btype='band', output='sos')
        log_event("DEBUG", "Features", "Band-pass initialized",
                  low=f"{low_freq:.0f}", high=f"{high_freq:.0f}", order=self.config.filter_order)

    @property
    def filter_enabled(self) -> bool:
        return self._sos is not None

    def configure(self, config: FeatureConfig, sample_rate: int, gain: float) -> None:
        """Swap in new settings; filter coefficients and history are re-derived."""
        self.config = config
        self.sample_rate = int(sample_rate)
        self.gain = float(gain)
        self._history = np.zeros(max(10, int(config.history_size)), dtype=np.float64)
        self._history_index = 0
        self._init_band_filter()

    def reset(self) -> None:
        """Clear the energy history and filter state (detector restart)."""
        self._history[:] = 0.0
        self._history_index = 0
        self._zi = None

    def extract(self, frame) -> FeatureSet:
        samples = to_mono_float(frame)
        if self.gain != 1.0:
            samples = np.clip(samples * self.gain, -1.0, 1.0)

        zi_out = self._zi
        if self._sos is not None:
            zi_in = self._zi
            if zi_in is None:
                zi_in = sosfilt_zi(self._sos) * samples[0]
            samples, zi_out = sosfilt(self._sos, samples, zi=zi_in)
            if not np.all(np.isfinite(samples)):
                raise InvalidFrame("Band-pass output became non-finite")

        abs_samples = np.abs(samples)
        energy = float(abs_samples.mean())
        max_amplitude = float(abs_samples.max())
        rms = float(np.sqrt(np.mean(samples * samples)))
        crest_factor = max_amplitude / (rms + EPSILON)

        prev, curr = samples[:-1], samples[1:]
        crossings = np.count_nonzero(((prev <= 0) & (curr > 0)) | ((prev >= 0) & (curr < 0)))
        zcr = crossings / samples.size

        flux = max(0.0, energy - float(self._history[self._history_index]))

        # Commit state only once the whole frame went through
        self._zi = zi_out
        self._history[self._history_index] = energy
        self._history_index = (self._history_index + 1) % self._history.size

        return FeatureSet(
            energy=energy,
            zcr=float(zcr),
            flux=flux,
            crest_factor=float(crest_factor),
            max_amplitude=max_amplitude,
            rms=rms,
        )
