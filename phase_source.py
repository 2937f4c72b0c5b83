"""
puttsync - Looping Phase Source
Wall-clock stand-in for a looping video: plays one cycle, holds at the end
for a gap, then starts over.
"""

import time
from typing import Callable

from config import CycleConfig


class LoopingPhaseSource:
    """Phase provider driven by a monotonic clock.

    Position runs 0 -> 1 over one cycle, then sits at 1.0 with
    ``is_in_gap()`` true for ``gap_ms`` before wrapping back to 0.
    """

    def __init__(self, cycle: CycleConfig, gap_ms: float = 2000.0,
                 clock: Callable[[], float] = time.monotonic):
        self.cycle = cycle
        self.gap_ms = max(0.0, float(gap_ms))
        self.clock = clock
        self.started_at = clock()

    def get_cycle_duration_ms(self) -> float:
        return 60000.0 / self.cycle.cycles_per_minute * self.cycle.subdivisions_per_cycle

    def set_cycle(self, cycle: CycleConfig) -> None:
        self.cycle = cycle
        self.restart()

    def restart(self) -> None:
        self.started_at = self.clock()

    def _elapsed_in_loop_ms(self) -> float:
        period_ms = self.get_cycle_duration_ms() + self.gap_ms
        elapsed_ms = (self.clock() - self.started_at) * 1000.0
        return elapsed_ms % period_ms

    def get_current_phase_fraction(self) -> float:
        elapsed = self._elapsed_in_loop_ms()
        return min(1.0, elapsed / self.get_cycle_duration_ms())

    def is_in_gap(self) -> bool:
        return self._elapsed_in_loop_ms() >= self.get_cycle_duration_ms()

    def get_raw_position(self) -> dict:
        elapsed = self._elapsed_in_loop_ms()
        return {"position_ms": elapsed, "duration_ms": self.get_cycle_duration_ms()}
