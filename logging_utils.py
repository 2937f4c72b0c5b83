"""Tagged console logging for the putt detector.

Every message carries a level and a component tag, with optional key=value
fields appended, e.g. ``[INFO][Detector] Hit accepted | ratio=4.20``.
"""
from __future__ import annotations

import logging
import threading
from typing import Any

_logger = logging.getLogger("puttsync")
if not _logger.handlers:
    handler = logging.StreamHandler()
    formatter = logging.Formatter("[%(levelname)s][%(tag)s] %(message)s")
    handler.setFormatter(formatter)
    _logger.addHandler(handler)
    _logger.setLevel(logging.INFO)


class _TagAdapter(logging.LoggerAdapter):
    def process(self, msg: Any, kwargs: dict[str, Any]):
        tag = kwargs.pop("tag", "Detector")
        kwargs.setdefault("extra", {})["tag"] = tag
        return msg, kwargs


_logger_adapter = _TagAdapter(_logger, {})

# Accept the short spelling used throughout the code base
_LEVEL_ALIASES = {"WARN": "WARNING"}


def _resolve_level(level: str | None) -> int:
    level_name = (level or "INFO").upper()
    level_name = _LEVEL_ALIASES.get(level_name, level_name)
    value = getattr(logging, level_name, logging.INFO)
    return value if isinstance(value, int) else logging.INFO


def log_event(level: str, tag: str, message: str, **fields: Any) -> None:
    """Log a message with level+tag, appending key=value fields when provided."""
    level_val = _resolve_level(level)
    if not _logger.isEnabledFor(level_val):
        return
    if fields:
        extras = " ".join(f"{k}={v}" for k, v in fields.items())
        message = f"{message} | {extras}"
    _logger_adapter.log(level_val, message, tag=tag)


def set_log_level(level: str) -> None:
    """Set global log level (DEBUG/INFO/WARNING/ERROR)."""
    _logger.setLevel(_resolve_level(level))


def get_log_level() -> str:
    """Return current global log level name."""
    return logging.getLevelName(_logger.level)


class RateLimiter:
    """Lets one message through every ``every`` calls per key.

    The audio callback runs dozens of times per second; per-frame diagnostics
    go through this so the console stays readable.
    """

    def __init__(self, every: int = 50):
        self.every = max(1, int(every))
        self._counts: dict[str, int] = {}
        self._lock = threading.Lock()

    def should_log(self, key: str) -> bool:
        with self._lock:
            count = self._counts.get(key, 0)
            self._counts[key] = count + 1
        return count % self.every == 0

    def suppressed(self, key: str) -> int:
        """Number of calls for ``key`` that were swallowed so far."""
        with self._lock:
            count = self._counts.get(key, 0)
        return max(0, count - (count + self.every - 1) // self.every)

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()
