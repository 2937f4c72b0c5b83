"""
puttsync - Baseline Tracker
Slow exponential noise-floor estimate, fed only by frames the caller marks
eligible (gap periods, or the bootstrap stretch after a reset).
"""

import math
from typing import Optional

from config import BaselineConfig
from logging_utils import log_event


class BaselineTracker:
    """Noise floor that never drops below ``config.floor``.

    ``update`` mixes in ``min(energy, 2 * baseline)`` so a single impact
    cannot drag the floor up. ``reset`` returns to the floor, re-arms the
    bootstrap period and opens a short settle window during which the
    detector stays quiet.
    """

    def __init__(self, config: BaselineConfig):
        self.config = config
        self.value = float(config.floor)
        self.bootstrap = True
        self._settle_until: Optional[float] = None
        self.update_count = 0

    @property
    def floor(self) -> float:
        return float(self.config.floor)

    def configure(self, config: BaselineConfig) -> None:
        self.config = config
        self.value = max(self.floor, self.value)

    def update(self, energy: float, eligible: bool) -> float:
        """Blend one frame's energy into the floor; no-op unless eligible."""
        if not eligible:
            return self.value
        if energy is None or not math.isfinite(energy):
            return self.value

        alpha = self.config.alpha
        clamped = min(max(0.0, float(energy)), 2.0 * self.value)
        self.value = max(self.floor, alpha * self.value + (1.0 - alpha) * clamped)
        self.update_count += 1
        return self.value

    def reset(self, now: Optional[float] = None, reason: str = "reset") -> None:
        """Return to the floor; ``now`` (seconds) starts the settle window."""
        previous = self.value
        self.value = self.floor
        self.update_count = 0
        self.bootstrap = True
        settle_s = max(0.0, self.config.settle_ms) / 1000.0
        self._settle_until = (now + settle_s) if (now is not None and settle_s > 0) else None
        log_event("DEBUG", "Baseline", "Baseline reset", reason=reason,
                  previous=f"{previous:.6f}", floor=f"{self.value:.6f}")

    def enter_gap(self) -> None:
        """The reference went quiet; from here on only gap frames feed the floor."""
        self.bootstrap = False

    def is_eligible(self, in_gap: bool, listening: bool) -> bool:
        if in_gap:
            return True
        return self.bootstrap and not listening

    def is_settling(self, now: float) -> bool:
        return self._settle_until is not None and now < self._settle_until
