"""
puttsync - Timestamp Correlator
Freezes the cycle position at the instant a strike is accepted, holds the
candidate for a short processing delay, then scores it. The stored position
is never re-read, so scoring is independent of when the tick gets to it.
"""

import threading
from dataclasses import dataclass
from typing import Any

from config import CorrelatorConfig
from logging_utils import log_event
from timing_scorer import TimingScorer


@dataclass(frozen=True)
class CandidateEvent:
    """A strike waiting for finalization"""
    capture_timestamp: float      # monotonic seconds
    phase_fraction: float
    raw_phase_signal: Any
    audio_level: float
    baseline_at_capture: float
    ratio: float
    sequence_number: int
    cycle_duration_ms: float      # Scoring context at capture time
    target_fraction: float
    quality: str = ""
    confidence: float = 0.0


@dataclass(frozen=True)
class FinalizedEvent:
    """Scored strike handed to the consumer"""
    phase_fraction: float
    error_ms: float
    accuracy: float
    is_early: bool
    is_late: bool
    is_perfect: bool
    sequence_number: int
    capture_timestamp: float
    audio_level: float
    ratio: float
    processing_lag_ms: float
    quality: str = ""
    confidence: float = 0.0


class TimestampCorrelator:
    def __init__(self, config: CorrelatorConfig, scorer: TimingScorer):
        self.config = config
        self.scorer = scorer
        self._pending: dict[tuple[float, int], CandidateEvent] = {}
        self._lock = threading.Lock()
        self._sequence = 0

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def sequence_counter(self) -> int:
        return self._sequence

    def configure(self, config: CorrelatorConfig) -> None:
        self.config = config

    def reset(self) -> None:
        """Drop pending candidates and restart sequence numbering."""
        with self._lock:
            self._pending.clear()
            self._sequence = 0

    def capture(self, phase_fraction: float, audio_level: float, baseline: float, ratio: float,
                now: float, cycle_duration_ms: float, target_fraction: float,
                raw_phase_signal: Any = None, quality: str = "", confidence: float = 0.0) -> CandidateEvent:
        with self._lock:
            self._sequence += 1
            candidate = CandidateEvent(
                capture_timestamp=now,
                phase_fraction=phase_fraction,
                raw_phase_signal=raw_phase_signal,
                audio_level=audio_level,
                baseline_at_capture=baseline,
                ratio=ratio,
                sequence_number=self._sequence,
                cycle_duration_ms=cycle_duration_ms,
                target_fraction=target_fraction,
                quality=quality,
                confidence=confidence,
            )
            self._pending[(now, self._sequence)] = candidate
            pending = len(self._pending)
        log_event("DEBUG", "Correlator", "Candidate captured",
                  seq=candidate.sequence_number, position=f"{phase_fraction:.4f}",
                  pending=pending)
        return candidate

    def finalize_due(self, now: float) -> list[FinalizedEvent]:
        """Score and remove every candidate at least ``processing_delay_ms`` old."""
        delay_s = self.config.processing_delay_ms / 1000.0
        with self._lock:
            due_keys = sorted(k for k, c in self._pending.items() if now - c.capture_timestamp >= delay_s)
            due = [self._pending.pop(k) for k in due_keys]

        return [self._finalize(candidate, now) for candidate in due]

    def _finalize(self, candidate: CandidateEvent, now: float) -> FinalizedEvent:
        timing = self.scorer.score(candidate.phase_fraction, candidate.target_fraction,
                                   candidate.cycle_duration_ms)
        return FinalizedEvent(
            phase_fraction=candidate.phase_fraction,
            error_ms=timing.error_ms,
            accuracy=timing.accuracy,
            is_early=timing.is_early,
            is_late=timing.is_late,
            is_perfect=timing.is_perfect,
            sequence_number=candidate.sequence_number,
            capture_timestamp=candidate.capture_timestamp,
            audio_level=candidate.audio_level,
            ratio=candidate.ratio,
            processing_lag_ms=max(0.0, (now - candidate.capture_timestamp) * 1000.0),
            quality=candidate.quality,
            confidence=candidate.confidence,
        )

    def discard_pending(self) -> int:
        """Drop every pending candidate without scoring; returns how many."""
        with self._lock:
            dropped = len(self._pending)
            self._pending.clear()
        if dropped:
            log_event("INFO", "Correlator", "Pending candidates discarded", count=dropped)
        return dropped
