"""
puttsync - Phase Clock
Pure mapping from a 0..1 position in the repeating cycle to named points:
beats, the listening window and the scoring target.
"""

from config import CycleConfig, PhaseConfig
from errors import ConfigurationError

BOUNDARY_HIGH = 0.9
BOUNDARY_LOW = 0.2


def clamp_fraction(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


class PhaseClock:
    """Derived timing for one CycleConfig.

    The listen window opens a fixed number of milliseconds after the listen
    beat, so its fraction is recomputed from the cycle duration whenever the
    tempo changes.
    """

    def __init__(self, cycle: CycleConfig, phase: PhaseConfig):
        self.cycle = cycle
        self.phase = phase

    @property
    def subdivisions(self) -> int:
        return int(self.cycle.subdivisions_per_cycle)

    @property
    def subdivision_duration_ms(self) -> float:
        return 60000.0 / float(self.cycle.cycles_per_minute)

    @property
    def cycle_duration_ms(self) -> float:
        return self.subdivision_duration_ms * self.subdivisions

    def subdivision_fraction(self, k: int) -> float:
        if not 0 <= k < self.subdivisions:
            raise ConfigurationError(f"Subdivision {k} outside [0, {self.subdivisions})")
        return k / self.subdivisions

    def epoch_name(self, fraction: float) -> str:
        """1-based beat label for a position, e.g. 'beat 3'."""
        index = min(self.subdivisions - 1, int(clamp_fraction(fraction) * self.subdivisions))
        return f"beat {index + 1}"

    @property
    def effective_listen_delay_ms(self) -> float:
        """Configured delay, capped so the window opens before the next beat."""
        room = self.subdivision_duration_ms - self.phase.safety_buffer_ms
        return max(0.0, min(float(self.phase.listen_delay_ms), room))

    @property
    def listen_start_fraction(self) -> float:
        start = self.subdivision_fraction(self.phase.listen_subdivision)
        return min(1.0, start + self.effective_listen_delay_ms / self.cycle_duration_ms)

    @property
    def target_fraction(self) -> float:
        if self.phase.target_fraction is not None:
            return clamp_fraction(self.phase.target_fraction)
        return self.subdivision_fraction(self.phase.target_subdivision)

    @property
    def target_time_ms(self) -> float:
        return self.target_fraction * self.cycle_duration_ms

    def is_listening(self, fraction: float) -> bool:
        return self.listen_start_fraction <= fraction <= 1.0

    @staticmethod
    def is_cycle_boundary(prev_fraction: float, curr_fraction: float) -> bool:
        """Wraparound of a sampled position: high to low between two readings."""
        return prev_fraction > BOUNDARY_HIGH and curr_fraction < BOUNDARY_LOW

    def describe(self) -> dict:
        """Timing summary used for listen-window log lines."""
        return {
            "cycle_ms": f"{self.cycle_duration_ms:.1f}",
            "listen_start": f"{self.listen_start_fraction:.4f}",
            "listen_start_ms": f"{self.listen_start_fraction * self.cycle_duration_ms:.0f}",
            "delay_ms": f"{self.effective_listen_delay_ms:.0f}",
            "target": f"{self.target_fraction:.4f}",
            "target_ms": f"{self.target_time_ms:.0f}",
        }
