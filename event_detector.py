"""
puttsync - Event Detector
Per-frame strike decision: multi-criteria voting on the frame features,
phase gating through the PhaseClock, a refractory period and one accepted
strike per cycle.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from config import DetectionConfig
from feature_extractor import FeatureSet
from logging_utils import log_event
from phase_clock import PhaseClock

RATIO_EPSILON = 1e-4


class DetectorState(Enum):
    IDLE = "idle"                # Outside the listening window
    LISTENING = "listening"      # Window open, no strike yet this cycle
    SUPPRESSED = "suppressed"    # Strike accepted; quiet until the next boundary


class RejectReason:
    NONE = ""
    QUIET = "quiet"
    NOT_LISTENING = "not_listening"
    SUPPRESSED = "suppressed"
    SETTLING = "settling"
    REFRACTORY = "refractory"
    HOLDING = "holding"
    ENTRY_GUARD = "entry_guard"


@dataclass(frozen=True)
class Detection:
    """Outcome of one evaluate() call"""
    accepted: bool
    reason: str
    threshold: float
    ratio: float
    criteria_met: int
    state: DetectorState
    quality: str = ""
    confidence: float = 0.0


class EventDetector:
    """Decides whether a frame is a putter strike.

    A frame qualifies when at least ``min_criteria`` of

        energy > threshold, zcr > zcr_threshold,
        flux > threshold * flux_factor, crest > crest_threshold

    pass and its energy clears ``baseline * min_energy_ratio``. A qualifying
    frame is accepted only inside the listening window, outside the
    refractory period, after the baseline settled, and if nothing was
    accepted yet this cycle. Frames in the first ``listen_entry_guard_ms``
    after the window opens are ignored as well. ``hold_frames`` > 1
    additionally requires that many consecutive qualifying frames unless the
    ratio reaches ``fast_strike_ratio``.
    """

    def __init__(self, config: DetectionConfig, phase_clock: PhaseClock):
        self.config = config
        self.phase_clock = phase_clock
        self.state = DetectorState.IDLE
        self.last_accepted_at: Optional[float] = None
        self.listening_started_at: Optional[float] = None
        self.consecutive_frames = 0
        self.accepted_count = 0
        self.rejected_counts: dict[str, int] = {}

    def configure(self, config: DetectionConfig, phase_clock: PhaseClock) -> None:
        self.config = config
        self.phase_clock = phase_clock
        self.consecutive_frames = 0

    def compute_threshold(self, baseline: float) -> float:
        cfg = self.config
        threshold = max(cfg.threshold_floor, baseline * cfg.sensitivity)
        return min(max(threshold, cfg.threshold_floor), cfg.threshold_ceiling)

    @staticmethod
    def compute_ratio(level: float, baseline: float) -> float:
        return level / (baseline + RATIO_EPSILON)

    def count_criteria(self, features: FeatureSet, threshold: float) -> int:
        cfg = self.config
        checks = (
            features.energy > threshold,
            features.zcr > cfg.zcr_threshold,
            features.flux > threshold * cfg.flux_factor,
            features.crest_factor > cfg.crest_threshold,
        )
        return sum(1 for passed in checks if passed)

    def assess_quality(self, features: FeatureSet, baseline: float) -> str:
        if features.crest_factor > 4 and features.energy > baseline * 10:
            return "strong"
        if features.crest_factor > 2.5 and features.energy > baseline * 7:
            return "medium"
        return "weak"

    def compute_confidence(self, features: FeatureSet, threshold: float) -> float:
        zcr_thresh = self.config.zcr_threshold
        energy_score = min(1.0, (features.energy - threshold) / threshold)
        zcr_score = min(1.0, (features.zcr - zcr_thresh) / zcr_thresh) if zcr_thresh > 0 else 1.0
        flux_score = min(1.0, features.flux / threshold)
        crest_score = min(1.0, features.crest_factor / 5.0)
        confidence = energy_score * 0.3 + zcr_score * 0.2 + flux_score * 0.3 + crest_score * 0.2
        return max(0.0, min(1.0, confidence))

    def _reject(self, reason: str, threshold: float, ratio: float, criteria: int) -> Detection:
        self.rejected_counts[reason] = self.rejected_counts.get(reason, 0) + 1
        return Detection(False, reason, threshold, ratio, criteria, self.state)

    def evaluate(self, features: FeatureSet, baseline: float, fraction: float,
                 now: float, settling: bool = False, in_gap: bool = False) -> Detection:
        """Judge one frame. ``now`` is monotonic seconds; never raises.

        ``in_gap`` closes the window regardless of position: the reference is
        parked at the end of the cycle and nobody is putting.
        """
        cfg = self.config
        threshold = self.compute_threshold(baseline)
        ratio = self.compute_ratio(features.energy, baseline)
        criteria = self.count_criteria(features, threshold)
        listening = not in_gap and self.phase_clock.is_listening(fraction)
        if listening and self.listening_started_at is None:
            self.listening_started_at = now
        elif not listening:
            self.listening_started_at = None
        guarded = (listening and cfg.listen_entry_guard_ms > 0
                   and (now - self.listening_started_at) * 1000.0 < cfg.listen_entry_guard_ms)

        if self.state is not DetectorState.SUPPRESSED:
            self.state = DetectorState.LISTENING if listening else DetectorState.IDLE

        qualifies = criteria >= cfg.min_criteria and features.energy > baseline * cfg.min_energy_ratio
        window_active = (listening and self.state is not DetectorState.SUPPRESSED
                         and not settling and not guarded)

        if window_active and qualifies:
            self.consecutive_frames += 1
            if ratio >= cfg.fast_strike_ratio:
                self.consecutive_frames = max(self.consecutive_frames, cfg.hold_frames)
        else:
            self.consecutive_frames = 0

        if not qualifies:
            return self._reject(RejectReason.QUIET, threshold, ratio, criteria)
        if not listening:
            return self._reject(RejectReason.NOT_LISTENING, threshold, ratio, criteria)
        if self.state is DetectorState.SUPPRESSED:
            return self._reject(RejectReason.SUPPRESSED, threshold, ratio, criteria)
        if settling:
            return self._reject(RejectReason.SETTLING, threshold, ratio, criteria)
        if guarded:
            return self._reject(RejectReason.ENTRY_GUARD, threshold, ratio, criteria)
        if self.last_accepted_at is not None and (now - self.last_accepted_at) * 1000.0 < cfg.refractory_ms:
            return self._reject(RejectReason.REFRACTORY, threshold, ratio, criteria)
        if self.consecutive_frames < cfg.hold_frames:
            return self._reject(RejectReason.HOLDING, threshold, ratio, criteria)

        self.state = DetectorState.SUPPRESSED
        self.last_accepted_at = now
        self.consecutive_frames = 0
        self.accepted_count += 1

        quality = self.assess_quality(features, baseline)
        confidence = self.compute_confidence(features, threshold)
        log_event(
            "INFO",
            "Detector",
            "Strike accepted",
            position=f"{fraction:.4f}",
            energy=f"{features.energy:.6f}",
            threshold=f"{threshold:.6f}",
            ratio=f"{ratio:.2f}",
            criteria=f"{criteria}/4",
            quality=quality,
        )
        return Detection(True, RejectReason.NONE, threshold, ratio, criteria, self.state,
                         quality=quality, confidence=confidence)

    def reset_cycle(self) -> None:
        """Cycle boundary: allow one new strike."""
        self.state = DetectorState.IDLE
        self.consecutive_frames = 0

    def reset(self) -> None:
        """Detector restart: also forget the refractory timer and counters."""
        self.reset_cycle()
        self.last_accepted_at = None
        self.listening_started_at = None
        self.accepted_count = 0
        self.rejected_counts = {}
