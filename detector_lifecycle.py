"""
puttsync - Detector Lifecycle
Owns one detection session: acquires the audio input, runs every frame
through features -> baseline -> detector -> correlator on the audio thread,
and drives finalization, cycle-boundary resets and level updates from a
periodic tick.
"""

import copy
import math
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from audio_backends import AudioBackend, create_audio_backend, ensure_permission
from baseline_tracker import BaselineTracker
from config import (
    Config,
    CycleConfig,
    PhaseConfig,
    apply_dict_to_dataclass,
    validate_config,
)
from errors import ConfigurationError, InvalidFrame, PermissionDenied, ResourceUnavailable
from event_detector import EventDetector
from feature_extractor import FeatureExtractor
from logging_utils import RateLimiter, log_event
from phase_clock import PhaseClock, clamp_fraction
from session_reporter import PuttSessionReporter
from timestamp_correlator import FinalizedEvent, TimestampCorrelator
from timing_scorer import TimingScorer


class LifecycleState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"


@dataclass(frozen=True)
class LevelUpdate:
    """Snapshot for live meters; purely observational"""
    level: float
    baseline: float
    threshold: float
    ratio: float
    is_listening: bool
    phase_fraction: float
    in_gap: bool = False
    is_settling: bool = False


@dataclass
class DetectorSession:
    """State of one start()..stop() run"""
    started_at: float
    started_wall: float = field(default_factory=time.time)
    running: bool = True
    paused: bool = False
    listening: bool = False
    in_gap: bool = False
    gap_seen: bool = False
    hit_this_cycle: bool = False
    last_event_at: Optional[float] = None
    frames: int = 0
    dropped_frames: int = 0
    events: int = 0
    cycles: int = 0
    last_level: float = 0.0
    last_threshold: float = 0.0
    last_ratio: float = 0.0
    last_fraction: float = 0.0
    # Running totals for the shutdown summary
    level_min: Optional[float] = None
    level_max: Optional[float] = None
    level_sum: float = 0.0
    baseline_min: Optional[float] = None
    baseline_max: Optional[float] = None
    error_sum: float = 0.0
    abs_error_sum: float = 0.0
    accuracy_sum: float = 0.0
    best_accuracy: float = 0.0
    perfect_count: int = 0
    early_count: int = 0
    late_count: int = 0

    def record_frame(self, level: float, baseline: float) -> None:
        self.frames += 1
        self.level_sum += level
        if self.level_min is None or level < self.level_min:
            self.level_min = level
        if self.level_max is None or level > self.level_max:
            self.level_max = level
        if self.baseline_min is None or baseline < self.baseline_min:
            self.baseline_min = baseline
        if self.baseline_max is None or baseline > self.baseline_max:
            self.baseline_max = baseline

    def record_event(self, event: FinalizedEvent) -> None:
        self.events += 1
        self.error_sum += event.error_ms
        self.abs_error_sum += abs(event.error_ms)
        self.accuracy_sum += event.accuracy
        self.best_accuracy = max(self.best_accuracy, event.accuracy)
        if event.is_perfect:
            self.perfect_count += 1
        if event.is_early:
            self.early_count += 1
        if event.is_late:
            self.late_count += 1


class DetectorLifecycle:
    """Start/pause/resume/stop orchestration around the detection pipeline.

    Args:
        config: Full configuration; validated and copied.
        phase_provider: Object exposing ``get_current_phase_fraction()``,
            ``get_cycle_duration_ms()`` and ``is_in_gap()``; an optional
            ``get_raw_position()`` is stored on each captured candidate.
        backend: Audio backend; built from ``config.audio.backend`` when None.
        on_event_detected: Called with each FinalizedEvent.
        on_level_update: Called with a LevelUpdate on every tick.
        clock: Monotonic seconds source.
        tick_thread: Run ``tick()`` on a background thread while running.
            Tests pass False and call ``tick()`` themselves.
        report_dir: Where session reports go; None disables them.
    """

    def __init__(self, config: Config, phase_provider,
                 backend: Optional[AudioBackend] = None,
                 on_event_detected: Optional[Callable[[FinalizedEvent], None]] = None,
                 on_level_update: Optional[Callable[[LevelUpdate], None]] = None,
                 clock: Callable[[], float] = time.monotonic,
                 tick_thread: bool = True,
                 report_dir: Optional[Path] = None):
        validate_config(config)
        self.config = copy.deepcopy(config)
        self.phase_provider = phase_provider
        self.backend = backend if backend is not None else create_audio_backend(self.config)
        self.on_event_detected = on_event_detected
        self.on_level_update = on_level_update
        self.clock = clock
        self.use_tick_thread = tick_thread
        self.report_dir = Path(report_dir) if report_dir is not None else None

        cfg = self.config
        self.phase_clock = PhaseClock(cfg.cycle, cfg.phase)
        self.extractor = FeatureExtractor(cfg.features, cfg.audio.sample_rate, cfg.audio.gain)
        self.baseline = BaselineTracker(cfg.baseline)
        self.detector = EventDetector(cfg.detection, self.phase_clock)
        self.scorer = TimingScorer(cfg.scoring)
        self.correlator = TimestampCorrelator(cfg.correlator, self.scorer)

        self.state = LifecycleState.STOPPED
        self.session: Optional[DetectorSession] = None
        self.last_error: Optional[Exception] = None

        self._lock = threading.Lock()
        self._staged_timing: Optional[tuple[CycleConfig, PhaseConfig]] = None
        self._tick_listening = False
        self._tick_thread: Optional[threading.Thread] = None
        self._tick_stop = threading.Event()
        self._diag = RateLimiter(every=50)

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------
    @property
    def running(self) -> bool:
        return self.state is LifecycleState.RUNNING

    def start(self) -> None:
        """Acquire audio and begin detecting.

        Raises PermissionDenied or ResourceUnavailable; the detector is back
        in STOPPED with ``last_error`` set when it does.
        """
        with self._lock:
            if self.state is not LifecycleState.STOPPED:
                return
            self.state = LifecycleState.STARTING
            self.last_error = None
            self._reset_for_start()

        try:
            ensure_permission(self.backend)
            self.backend.open(self.config.audio.sample_rate, self.config.audio.frame_length, self.handle_frame)
        except (PermissionDenied, ResourceUnavailable) as e:
            with self._lock:
                self.state = LifecycleState.STOPPED
                self.session = None
                self.last_error = e
            log_event("ERROR", "Lifecycle", "Failed to start", error_type=type(e).__name__, error=e)
            raise
        except Exception:
            with self._lock:
                self.state = LifecycleState.STOPPED
                self.session = None
            raise

        with self._lock:
            # stop() may have run while the input was opening
            stopped_meanwhile = self.state is not LifecycleState.STARTING
            if not stopped_meanwhile:
                self.state = LifecycleState.RUNNING
                if self.use_tick_thread:
                    self._tick_stop.clear()
                    self._tick_thread = threading.Thread(target=self._tick_loop, name="puttsync-tick", daemon=True)
                    self._tick_thread.start()
        if stopped_meanwhile:
            self.backend.close()
            log_event("INFO", "Lifecycle", "Start abandoned, stopped while opening input")
            return

        log_event("INFO", "Lifecycle", "Started", backend=self.backend.name,
                  bpm=f"{self.config.cycle.cycles_per_minute:.1f}",
                  subdivisions=self.config.cycle.subdivisions_per_cycle,
                  **self.phase_clock.describe())

    def _reset_for_start(self) -> None:
        now = self.clock()
        self._apply_staged_timing()
        self.extractor.reset()
        self.baseline.reset(now, reason="start")
        self.detector.reset()
        self.correlator.reset()
        self.session = DetectorSession(started_at=now)
        self._tick_listening = False

    def pause(self) -> None:
        """Stop acting on frames; the audio input stays open."""
        with self._lock:
            if self.session is None or self.state is not LifecycleState.RUNNING or self.session.paused:
                return
            self.session.paused = True
        log_event("INFO", "Lifecycle", "Paused")

    def resume(self) -> None:
        """Act on frames again, starting from a fresh baseline."""
        with self._lock:
            if self.session is None or not self.session.paused:
                return
            self.session.paused = False
            self.baseline.reset(self.clock(), reason="resume")
            self.detector.consecutive_frames = 0
        log_event("INFO", "Lifecycle", "Resumed")

    def stop(self) -> None:
        """Release audio and end the session; pending candidates are dropped."""
        with self._lock:
            if self.state is LifecycleState.STOPPED:
                return
            self.state = LifecycleState.STOPPED
            session = self.session
            if session is not None:
                session.running = False

        self._tick_stop.set()
        tick_thread, self._tick_thread = self._tick_thread, None
        if tick_thread is not None and tick_thread is not threading.current_thread():
            tick_thread.join(timeout=1.0)

        self.backend.close()
        dropped = self.correlator.discard_pending()

        if session is not None:
            self._log_shutdown_summary(session, dropped)
        with self._lock:
            self.session = None
        log_event("INFO", "Lifecycle", "Stopped", dropped_candidates=dropped)

    def set_cycle_config(self, cycle: CycleConfig) -> None:
        """Validate now; apply immediately when stopped, at the next boundary when running."""
        self.set_config({"cycle": {
            "cycles_per_minute": cycle.cycles_per_minute,
            "subdivisions_per_cycle": cycle.subdivisions_per_cycle,
        }})

    def set_config(self, partial: dict) -> None:
        """Apply a partial settings dict, e.g. ``{"detection": {"min_criteria": 2}}``.

        Raises ConfigurationError (nothing changes) on unknown keys or
        out-of-range values. Timing sections (cycle, phase) are staged until
        the next cycle boundary while running; audio format settings other
        than gain cannot change while running.
        """
        with self._lock:
            candidate = copy.deepcopy(self.config)
            if self._staged_timing is not None:
                candidate.cycle, candidate.phase = copy.deepcopy(self._staged_timing)
            apply_dict_to_dataclass(candidate, partial, strict=True)
            validate_config(candidate)

            running = self.state is not LifecycleState.STOPPED
            if running:
                live_audio = copy.deepcopy(self.config.audio)
                live_audio.gain = candidate.audio.gain
                if candidate.audio != live_audio:
                    raise ConfigurationError("Audio format settings can only change while stopped")

            timing_changed = (candidate.cycle, candidate.phase) != (self.config.cycle, self.config.phase)
            new_timing = (candidate.cycle, candidate.phase)
            if running:
                candidate.cycle = self.config.cycle
                candidate.phase = self.config.phase
            self._apply_config(candidate)

            if running and timing_changed:
                self._staged_timing = new_timing
                log_event("INFO", "Config", "Timing change staged for next cycle",
                          bpm=f"{new_timing[0].cycles_per_minute:.1f}",
                          subdivisions=new_timing[0].subdivisions_per_cycle)
            else:
                self._staged_timing = None
                if timing_changed:
                    self._set_timing(*new_timing)

    def _apply_config(self, candidate: Config) -> None:
        old = self.config
        self.config = candidate
        if (candidate.features != old.features or candidate.audio.sample_rate != old.audio.sample_rate):
            self.extractor.configure(candidate.features, candidate.audio.sample_rate, candidate.audio.gain)
        else:
            self.extractor.gain = float(candidate.audio.gain)
        self.baseline.configure(candidate.baseline)
        self.detector.configure(candidate.detection, self.phase_clock)
        self.scorer.configure(candidate.scoring)
        self.correlator.configure(candidate.correlator)
        self.phase_clock.cycle = candidate.cycle
        self.phase_clock.phase = candidate.phase

    def _set_timing(self, cycle: CycleConfig, phase: PhaseConfig) -> None:
        self.config.cycle = cycle
        self.config.phase = phase
        self.phase_clock.cycle = cycle
        self.phase_clock.phase = phase
        log_event("INFO", "Phase", "Cycle timing applied", bpm=f"{cycle.cycles_per_minute:.1f}",
                  subdivisions=cycle.subdivisions_per_cycle, **self.phase_clock.describe())

    def _apply_staged_timing(self) -> None:
        staged, self._staged_timing = self._staged_timing, None
        if staged is not None:
            self._set_timing(*staged)

    def get_stats(self) -> dict:
        with self._lock:
            session = self.session
            now = self.clock()
            return {
                "state": self.state.value,
                "running": self.state is LifecycleState.RUNNING,
                "paused": bool(session and session.paused),
                "listening": bool(session and session.listening),
                "event_count": session.events if session else 0,
                "baseline": self.baseline.value,
                "uptime": (now - session.started_at) if session else 0.0,
                "frames": session.frames if session else 0,
                "dropped_frames": session.dropped_frames if session else 0,
                "cycles": session.cycles if session else 0,
                "pending": self.correlator.pending_count,
                "sequence": self.correlator.sequence_counter,
                "last_error": repr(self.last_error) if self.last_error else None,
            }

    # ------------------------------------------------------------------
    # Audio thread
    # ------------------------------------------------------------------
    def _read_phase(self) -> float:
        fraction = float(self.phase_provider.get_current_phase_fraction())
        if not math.isfinite(fraction):
            return 0.0
        return clamp_fraction(fraction)

    def _read_gap(self) -> bool:
        is_in_gap = getattr(self.phase_provider, "is_in_gap", None)
        return bool(is_in_gap()) if callable(is_in_gap) else False

    def _read_raw_position(self) -> Any:
        get_raw = getattr(self.phase_provider, "get_raw_position", None)
        return get_raw() if callable(get_raw) else None

    def _cycle_duration_ms(self) -> float:
        duration = self.phase_provider.get_cycle_duration_ms()
        if duration is None or not duration > 0:
            return self.phase_clock.cycle_duration_ms
        return float(duration)

    def handle_frame(self, frame) -> None:
        """Audio callback: process one frame. Never raises."""
        if self.state is not LifecycleState.RUNNING:
            return
        try:
            self._process_frame(frame)
        except InvalidFrame as e:
            with self._lock:
                if self.session is not None:
                    self.session.dropped_frames += 1
            if self._diag.should_log("invalid"):
                log_event("DEBUG", "Audio", "Invalid frame skipped", error=e,
                          suppressed=self._diag.suppressed("invalid"))
        except Exception as e:
            with self._lock:
                if self.session is not None:
                    self.session.dropped_frames += 1
            if self._diag.should_log("frame-error"):
                log_event("WARN", "Audio", "Frame dropped after processing error",
                          error_type=type(e).__name__, error=e)

    def _process_frame(self, frame) -> None:
        with self._lock:
            session = self.session
            if session is None or self.state is not LifecycleState.RUNNING or session.paused:
                return

            now = self.clock()
            features = self.extractor.extract(frame)
            # One reading per frame: gating and capture see the same position
            fraction = self._read_phase()
            in_gap = self._read_gap()
            listening = not in_gap and self.phase_clock.is_listening(fraction)

            eligible = self.baseline.is_eligible(in_gap, listening)
            baseline = self.baseline.update(features.energy, eligible)
            settling = self.baseline.is_settling(now)
            detection = self.detector.evaluate(features, baseline, fraction, now,
                                               settling=settling, in_gap=in_gap)

            session.record_frame(features.energy, baseline)
            session.listening = listening
            session.last_level = features.energy
            session.last_threshold = detection.threshold
            session.last_ratio = detection.ratio

            if detection.accepted:
                self.correlator.capture(
                    phase_fraction=fraction,
                    audio_level=features.energy,
                    baseline=baseline,
                    ratio=detection.ratio,
                    now=now,
                    cycle_duration_ms=self._cycle_duration_ms(),
                    target_fraction=self.phase_clock.target_fraction,
                    raw_phase_signal=self._read_raw_position(),
                    quality=detection.quality,
                    confidence=detection.confidence,
                )
                session.hit_this_cycle = True
                session.last_event_at = now

        if self._diag.should_log("levels"):
            log_event("DEBUG", "Audio", "Levels", energy=f"{features.energy:.6f}",
                      baseline=f"{baseline:.6f}", threshold=f"{detection.threshold:.6f}",
                      ratio=f"{detection.ratio:.2f}", zcr=f"{features.zcr:.3f}",
                      crest=f"{features.crest_factor:.2f}", position=f"{fraction:.4f}",
                      reason=detection.reason or "accepted")

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------
    def _tick_loop(self) -> None:
        interval_s = self.config.correlator.tick_interval_ms / 1000.0
        while not self._tick_stop.wait(interval_s):
            try:
                self.tick()
            except Exception as e:
                log_event("ERROR", "Lifecycle", "Tick failed", error_type=type(e).__name__, error=e)

    def tick(self) -> list[FinalizedEvent]:
        """Finalize due candidates, track gap/boundary/listening transitions,
        then publish a level update. Returns the events finalized this tick."""
        with self._lock:
            session = self.session
            if session is None or self.state is not LifecycleState.RUNNING:
                return []

            now = self.clock()
            finalized = self.correlator.finalize_due(now)
            for event in finalized:
                session.record_event(event)

            fraction = self._read_phase()
            in_gap = self._read_gap()

            # Gap and boundary tracking run while paused too
            if in_gap and not session.in_gap:
                self.baseline.enter_gap()
                session.gap_seen = True
                log_event("DEBUG", "Phase", "Gap started", position=f"{fraction:.4f}")
            elif session.in_gap and not in_gap:
                log_event("DEBUG", "Phase", "Gap ended", position=f"{fraction:.4f}")
            session.in_gap = in_gap

            if self.phase_clock.is_cycle_boundary(session.last_fraction, fraction):
                self._on_cycle_boundary(session, now, session.last_fraction, fraction)

            if not session.paused:
                listening = not in_gap and self.phase_clock.is_listening(fraction)
                if listening != self._tick_listening:
                    self._tick_listening = listening
                    log_event("INFO", "Phase",
                              "LISTENING WINDOW OPEN" if listening else "LISTENING WINDOW CLOSED",
                              position=f"{fraction:.4f}",
                              epoch=self.phase_clock.epoch_name(fraction),
                              **self.phase_clock.describe())
                session.listening = listening

            session.last_fraction = fraction
            level_update = LevelUpdate(
                level=session.last_level,
                baseline=self.baseline.value,
                threshold=self.detector.compute_threshold(self.baseline.value),
                ratio=session.last_ratio,
                is_listening=session.listening,
                phase_fraction=fraction,
                in_gap=in_gap,
                is_settling=self.baseline.is_settling(now),
            )

        for event in finalized:
            log_event("INFO", "Lifecycle", "Strike finalized", seq=event.sequence_number,
                      position=f"{event.phase_fraction:.4f}", error_ms=f"{event.error_ms:+.1f}",
                      accuracy=f"{event.accuracy:.2f}", quality=event.quality,
                      lag_ms=f"{event.processing_lag_ms:.0f}")
            self._notify(self.on_event_detected, event)
        self._notify(self.on_level_update, level_update)
        return finalized

    def _on_cycle_boundary(self, session: DetectorSession, now: float, prev: float, curr: float) -> None:
        session.cycles += 1
        self._apply_staged_timing()
        self.baseline.reset(now, reason="cycle-boundary")
        self.detector.reset_cycle()
        session.hit_this_cycle = False
        log_event("INFO", "Phase", "Cycle boundary", cycle=session.cycles,
                  prev=f"{prev:.3f}", curr=f"{curr:.3f}")

    def _notify(self, callback: Optional[Callable], payload) -> None:
        if callback is None:
            return
        try:
            callback(payload)
        except Exception as e:
            log_event("WARN", "Lifecycle", "Consumer callback failed",
                      callback=getattr(callback, "__name__", repr(callback)), error=e)

    # ------------------------------------------------------------------
    # Session summary
    # ------------------------------------------------------------------
    def _build_session_summary(self, session: DetectorSession) -> dict:
        ended_wall = time.time()
        events = max(1, session.events)
        frames = max(1, session.frames)
        return {
            "session_started_at": session.started_wall,
            "session_ended_at": ended_wall,
            "seconds": round(max(0.0, ended_wall - session.started_wall), 3),
            "backend": self.backend.name,
            "bpm": self.config.cycle.cycles_per_minute,
            "subdivisions": self.config.cycle.subdivisions_per_cycle,
            "frames": session.frames,
            "dropped_frames": session.dropped_frames,
            "cycles": session.cycles,
            "events": session.events,
            "perfect_count": session.perfect_count,
            "early_count": session.early_count,
            "late_count": session.late_count,
            "mean_error_ms": round(session.error_sum / events, 3) if session.events else None,
            "mean_abs_error_ms": round(session.abs_error_sum / events, 3) if session.events else None,
            "mean_accuracy": round(session.accuracy_sum / events, 4) if session.events else None,
            "best_accuracy": round(session.best_accuracy, 4),
            "level_low": session.level_min or 0.0,
            "level_high": session.level_max or 0.0,
            "level_mean": session.level_sum / frames,
            "baseline_low": session.baseline_min or 0.0,
            "baseline_high": session.baseline_max or 0.0,
        }

    def _log_shutdown_summary(self, session: DetectorSession, dropped_candidates: int = 0) -> None:
        if session.frames <= 0:
            return

        summary = self._build_session_summary(session)
        log_event(
            "INFO",
            "Lifecycle",
            "Shutdown session summary",
            frames=session.frames,
            dropped_frames=session.dropped_frames,
            seconds=f"{summary['seconds']:.1f}",
            cycles=session.cycles,
            events=session.events,
            perfect=session.perfect_count,
            early=session.early_count,
            late=session.late_count,
            mean_error_ms=f"{summary['mean_error_ms']:+.1f}" if session.events else "n/a",
            mean_accuracy=f"{summary['mean_accuracy']:.2f}" if session.events else "n/a",
            level_min=f"{summary['level_low']:.6f}",
            level_max=f"{summary['level_high']:.6f}",
            level_mean=f"{summary['level_mean']:.6f}",
            baseline_min=f"{summary['baseline_low']:.6f}",
            baseline_max=f"{summary['baseline_high']:.6f}",
            discarded=dropped_candidates,
        )

        if self.report_dir is None or not self.config.report_generation_enabled:
            return
        try:
            PuttSessionReporter(self.report_dir).save_session(summary)
        except OSError as e:
            log_event("WARN", "Report", "Could not write session report", error=e)
