# puttsync Configuration
# All default values and constants

from dataclasses import dataclass, field, fields, is_dataclass
from enum import IntEnum
from typing import Optional

from errors import ConfigurationError
from logging_utils import log_event


CURRENT_CONFIG_VERSION = 1


class DetectorBackend(IntEnum):
    """Where audio frames come from - resolved once when the detector is built"""
    MICROPHONE = 1     # Live input via sounddevice
    SIMULATED = 2      # Frames pushed by the caller (tests, replays, demo)


@dataclass
class AudioConfig:
    """Audio capture settings"""
    backend: DetectorBackend = DetectorBackend.MICROPHONE
    sample_rate: int = 16000
    frame_length: int = 256           # Samples per frame (16 ms at 16 kHz)
    channels: int = 1
    # Device index - None means use system default
    device_index: Optional[int] = None
    # Software gain applied after DC removal
    gain: float = 1.0


@dataclass
class CycleConfig:
    """Rhythmic cycle the phase fraction is measured against"""
    cycles_per_minute: float = 70.0   # Metronome rate (beats per minute)
    subdivisions_per_cycle: int = 4   # Beats in one loop of the reference


@dataclass
class PhaseConfig:
    """Named points inside the cycle"""
    listen_subdivision: int = 2       # 0-based: beat 3 of 4
    listen_delay_ms: float = 500.0    # Fixed guard after the listen beat
    target_subdivision: int = 3       # 0-based: beat 4 of 4
    target_fraction: Optional[float] = None  # Explicit override of target_subdivision
    safety_buffer_ms: float = 10.0    # Window must open this long before the next beat


@dataclass
class FeatureConfig:
    """Per-frame feature extraction"""
    use_band_filter: bool = True      # Butterworth band-pass before features
    band_low_hz: float = 1000.0
    band_high_hz: float = 6000.0      # Clamped below Nyquist at runtime
    filter_order: int = 2
    history_size: int = 10            # Circular energy history used for flux


@dataclass
class BaselineConfig:
    """Noise-floor tracking"""
    alpha: float = 0.995              # Smoothing factor, (0.99, 0.999]
    floor: float = 0.005              # Baseline never drops below this
    settle_ms: float = 100.0          # Detections suppressed this long after a reset


@dataclass
class DetectionConfig:
    """Multi-criteria strike detection"""
    sensitivity: float = 2.5          # Threshold = baseline * sensitivity
    threshold_floor: float = 0.01     # Absolute minimum threshold
    threshold_ceiling: float = 0.5    # Absolute maximum threshold
    zcr_threshold: float = 0.22
    flux_factor: float = 0.3          # Flux must exceed threshold * flux_factor
    crest_threshold: float = 1.5
    min_criteria: int = 3             # How many of the 4 criteria must pass
    refractory_ms: float = 250.0      # Minimum gap between accepted strikes
    hold_frames: int = 1              # Consecutive qualifying frames required
    fast_strike_ratio: float = 4.0    # Ratio that bypasses hold_frames
    min_energy_ratio: float = 2.0     # Energy must also exceed baseline * this
    listen_entry_guard_ms: float = 0.0  # Ignore strikes this long after the window opens


@dataclass
class CorrelatorConfig:
    """Pending-event buffering and tick cadence"""
    processing_delay_ms: float = 50.0
    tick_interval_ms: float = 100.0


@dataclass
class ScoringConfig:
    """Timing error to accuracy mapping"""
    inner_tolerance_ms: float = 50.0  # Perfect inside this
    outer_tolerance_ms: float = 200.0 # Zero accuracy beyond this
    audio_latency_ms: float = 0.0     # Input latency subtracted before scoring


@dataclass
class Config:
    """Master configuration"""
    version: int = 1                  # Schema version for persisted configs
    audio: AudioConfig = field(default_factory=AudioConfig)
    cycle: CycleConfig = field(default_factory=CycleConfig)
    phase: PhaseConfig = field(default_factory=PhaseConfig)
    features: FeatureConfig = field(default_factory=FeatureConfig)
    baseline: BaselineConfig = field(default_factory=BaselineConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    correlator: CorrelatorConfig = field(default_factory=CorrelatorConfig)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)

    # Global
    log_level: str = "INFO"           # Logging level (DEBUG/INFO/WARNING/ERROR)
    report_generation_enabled: bool = True    # Write session reports on stop


def apply_dict_to_dataclass(target, data, strict: bool = False) -> None:
    """Recursively apply values from a dict onto a dataclass instance.
    Unknown keys are ignored (or rejected when strict); IntEnum fields are
    coerced when possible."""
    if not isinstance(data, dict):
        if strict:
            raise ConfigurationError(f"Expected a mapping for {type(target).__name__}, got {type(data).__name__}")
        return

    known = {f.name for f in fields(target)}
    for key, value in data.items():
        if key not in known:
            if strict:
                raise ConfigurationError(f"Unknown setting {type(target).__name__}.{key}")
            continue

        current = getattr(target, key)

        if is_dataclass(current):
            if isinstance(value, dict):
                apply_dict_to_dataclass(current, value, strict=strict)
            elif strict:
                raise ConfigurationError(f"Section {key} must be a mapping")
            continue

        if isinstance(current, IntEnum):
            try:
                setattr(target, key, current.__class__(value))
            except ValueError:
                if strict:
                    raise ConfigurationError(f"Invalid {current.__class__.__name__} value: {value!r}")
                log_event("WARN", "Config", "Could not convert value, keeping default",
                          key=key, type=current.__class__.__name__, value=value)
            continue

        setattr(target, key, value)


def migrate_config(config: Config, loaded_version) -> None:
    """Upgrade older config structures to the current schema.
    Adds defaults for newly introduced fields, clamps ranges and bumps version."""
    try:
        version = int(loaded_version) if loaded_version is not None else 0
    except (TypeError, ValueError):
        version = 0

    if version < 1:
        # Pre-versioned files could carry nulls for later-added fields
        if getattr(config.detection, 'min_criteria', None) is None:
            config.detection.min_criteria = 3
        if getattr(config.detection, 'hold_frames', None) is None:
            config.detection.hold_frames = 1
        if getattr(config.detection, 'fast_strike_ratio', None) is None:
            config.detection.fast_strike_ratio = 4.0
        if getattr(config.detection, 'min_energy_ratio', None) is None:
            config.detection.min_energy_ratio = 2.0
        if getattr(config.detection, 'listen_entry_guard_ms', None) is None:
            config.detection.listen_entry_guard_ms = 0.0
        if getattr(config.baseline, 'settle_ms', None) is None:
            config.baseline.settle_ms = 100.0
        if getattr(config.phase, 'safety_buffer_ms', None) is None:
            config.phase.safety_buffer_ms = 10.0
        if getattr(config.scoring, 'audio_latency_ms', None) is None:
            config.scoring.audio_latency_ms = 0.0

    if getattr(config, 'report_generation_enabled', True) is None:
        config.report_generation_enabled = True
    if not getattr(config, 'log_level', None):
        config.log_level = "INFO"

    # Always clamp ranges that would otherwise fail validation on load
    try:
        alpha = float(getattr(config.baseline, 'alpha', 0.995))
    except (TypeError, ValueError):
        alpha = 0.995
    config.baseline.alpha = max(0.9901, min(0.999, alpha))

    try:
        min_criteria = int(getattr(config.detection, 'min_criteria', 3))
    except (TypeError, ValueError):
        min_criteria = 3
    config.detection.min_criteria = max(1, min(4, min_criteria))

    try:
        history = int(getattr(config.features, 'history_size', 10))
    except (TypeError, ValueError):
        history = 10
    config.features.history_size = max(10, history)

    config.version = CURRENT_CONFIG_VERSION


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise ConfigurationError(message)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_cycle_config(cycle: CycleConfig) -> None:
    """Raise ConfigurationError unless the cycle can drive a PhaseClock."""
    _require(_is_number(cycle.cycles_per_minute) and cycle.cycles_per_minute > 0,
             f"cycles_per_minute must be > 0 (got {cycle.cycles_per_minute!r})")
    _require(isinstance(cycle.subdivisions_per_cycle, int) and not isinstance(cycle.subdivisions_per_cycle, bool)
             and cycle.subdivisions_per_cycle >= 2,
             f"subdivisions_per_cycle must be an int >= 2 (got {cycle.subdivisions_per_cycle!r})")


def validate_config(config: Config) -> None:
    """Raise ConfigurationError on the first out-of-range value."""
    audio = config.audio
    _require(isinstance(audio.backend, DetectorBackend), f"Unknown backend {audio.backend!r}")
    _require(isinstance(audio.sample_rate, int) and audio.sample_rate > 0, "sample_rate must be a positive int")
    _require(isinstance(audio.frame_length, int) and audio.frame_length > 1, "frame_length must be an int > 1")
    _require(isinstance(audio.channels, int) and audio.channels >= 1, "channels must be >= 1")
    _require(_is_number(audio.gain) and audio.gain > 0, "gain must be > 0")

    validate_cycle_config(config.cycle)

    phase = config.phase
    subdivisions = config.cycle.subdivisions_per_cycle
    _require(isinstance(phase.listen_subdivision, int) and 0 <= phase.listen_subdivision < subdivisions,
             f"listen_subdivision must be in [0, {subdivisions})")
    _require(isinstance(phase.target_subdivision, int) and 0 <= phase.target_subdivision < subdivisions,
             f"target_subdivision must be in [0, {subdivisions})")
    _require(_is_number(phase.listen_delay_ms) and phase.listen_delay_ms >= 0, "listen_delay_ms must be >= 0")
    _require(_is_number(phase.safety_buffer_ms) and phase.safety_buffer_ms >= 0, "safety_buffer_ms must be >= 0")
    if phase.target_fraction is not None:
        _require(_is_number(phase.target_fraction) and 0.0 <= phase.target_fraction <= 1.0,
                 "target_fraction must be in [0, 1]")

    feat = config.features
    _require(isinstance(feat.history_size, int) and feat.history_size >= 10, "history_size must be >= 10")
    _require(isinstance(feat.filter_order, int) and 1 <= feat.filter_order <= 8, "filter_order must be in [1, 8]")
    _require(_is_number(feat.band_low_hz) and _is_number(feat.band_high_hz)
             and 0 < feat.band_low_hz < feat.band_high_hz,
             "band edges must satisfy 0 < band_low_hz < band_high_hz")
    if feat.use_band_filter:
        _require(feat.band_low_hz < audio.sample_rate / 2 * 0.95,
                 "band_low_hz must sit below the Nyquist frequency")

    base = config.baseline
    _require(_is_number(base.alpha) and 0.99 < base.alpha <= 0.999, "alpha must be in (0.99, 0.999]")
    _require(_is_number(base.floor) and base.floor > 0, "baseline floor must be > 0")
    _require(_is_number(base.settle_ms) and base.settle_ms >= 0, "settle_ms must be >= 0")

    det = config.detection
    _require(_is_number(det.sensitivity) and det.sensitivity > 0, "sensitivity must be > 0")
    _require(_is_number(det.threshold_floor) and det.threshold_floor > 0, "threshold_floor must be > 0")
    _require(_is_number(det.threshold_ceiling) and det.threshold_ceiling >= det.threshold_floor,
             "threshold_ceiling must be >= threshold_floor")
    _require(isinstance(det.min_criteria, int) and 1 <= det.min_criteria <= 4, "min_criteria must be in [1, 4]")
    _require(_is_number(det.refractory_ms) and det.refractory_ms >= 0, "refractory_ms must be >= 0")
    _require(isinstance(det.hold_frames, int) and det.hold_frames >= 1, "hold_frames must be >= 1")
    _require(_is_number(det.fast_strike_ratio) and det.fast_strike_ratio > 0, "fast_strike_ratio must be > 0")
    _require(_is_number(det.min_energy_ratio) and det.min_energy_ratio >= 0, "min_energy_ratio must be >= 0")
    _require(_is_number(det.listen_entry_guard_ms) and det.listen_entry_guard_ms >= 0,
             "listen_entry_guard_ms must be >= 0")
    _require(_is_number(det.zcr_threshold) and 0 <= det.zcr_threshold <= 1, "zcr_threshold must be in [0, 1]")
    _require(_is_number(det.flux_factor) and det.flux_factor >= 0, "flux_factor must be >= 0")
    _require(_is_number(det.crest_threshold) and det.crest_threshold >= 0, "crest_threshold must be >= 0")

    corr = config.correlator
    _require(_is_number(corr.processing_delay_ms) and corr.processing_delay_ms >= 0,
             "processing_delay_ms must be >= 0")
    _require(_is_number(corr.tick_interval_ms) and 0 < corr.tick_interval_ms <= 100,
             "tick_interval_ms must be in (0, 100]")

    score = config.scoring
    _require(_is_number(score.inner_tolerance_ms) and score.inner_tolerance_ms >= 0,
             "inner_tolerance_ms must be >= 0")
    _require(_is_number(score.outer_tolerance_ms) and score.outer_tolerance_ms > score.inner_tolerance_ms,
             "outer_tolerance_ms must be > inner_tolerance_ms")
    _require(_is_number(score.audio_latency_ms), "audio_latency_ms must be a number")
