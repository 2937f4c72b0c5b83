"""
puttsync - Timing Scorer
Signed timing error against the target point of the cycle, and a 0..1
accuracy that is flat inside the inner tolerance and falls off linearly to
zero at the outer tolerance.
"""

from dataclasses import dataclass

from config import ScoringConfig


@dataclass(frozen=True)
class TimingScore:
    error_ms: float        # negative = early, positive = late
    accuracy: float
    is_early: bool
    is_late: bool
    is_perfect: bool


class TimingScorer:
    def __init__(self, config: ScoringConfig):
        self.config = config

    def configure(self, config: ScoringConfig) -> None:
        self.config = config

    def accuracy_for_error(self, error_ms: float) -> float:
        inner = self.config.inner_tolerance_ms
        outer = self.config.outer_tolerance_ms
        abs_error = abs(error_ms)
        if abs_error <= inner:
            return 1.0
        if abs_error > outer:
            return 0.0
        return max(0.0, min(1.0, 1.0 - (abs_error - inner) / (outer - inner)))

    def score(self, phase_fraction: float, target_fraction: float, cycle_duration_ms: float) -> TimingScore:
        position = phase_fraction
        if self.config.audio_latency_ms and cycle_duration_ms > 0:
            # Sound reaches us late; the strike happened earlier than captured
            position -= self.config.audio_latency_ms / cycle_duration_ms
        position = max(0.0, min(1.0, position))

        error_ms = (position - target_fraction) * cycle_duration_ms
        accuracy = self.accuracy_for_error(error_ms)
        return TimingScore(
            error_ms=error_ms,
            accuracy=accuracy,
            is_early=error_ms < 0,
            is_late=error_ms > 0,
            is_perfect=abs(error_ms) <= self.config.inner_tolerance_ms,
        )
