#!/usr/bin/env python3
"""
puttsync - Putter strike timing against a looping rhythm

Listens for putter impacts and scores each one against the target beat of a
looping metronome/video cycle.
"""

import argparse
import cProfile
import sys
import time
from pathlib import Path

from audio_backends import SimulatedBackend, create_audio_backend, list_input_devices
from audio_simulator import AudioSimulator, iter_frames
from config import Config, DetectorBackend
from config_persistence import get_report_dir, load_config
from detector_lifecycle import DetectorLifecycle
from errors import ConfigurationError, DetectorError
from logging_utils import log_event, set_log_level
from phase_clock import PhaseClock
from phase_source import LoopingPhaseSource


def build_simulated_backend(config: Config, gap_ms: float, loops: int, seed: int) -> SimulatedBackend:
    """Render ``loops`` cycles with a tick on every beat and one impact near the target."""
    clock = PhaseClock(config.cycle, config.phase)
    sim = AudioSimulator(config.audio.sample_rate, seed=seed)
    period_ms = clock.cycle_duration_ms + gap_ms
    scenario = sim.test_scenario(duration_s=loops * period_ms / 1000.0, bpm=0, add_ticks=False,
                                 noise_level=0.003)
    beat_ms = clock.subdivision_duration_ms
    for loop in range(loops):
        loop_start = loop * period_ms
        for beat in range(clock.subdivisions):
            sim.add_at(scenario.buffer, sim.metronome_tick(amplitude=0.02), loop_start + beat * beat_ms)
        # Vary the strike around the target so scores differ per loop
        offset_ms = float(sim.rng.normal(0.0, 60.0))
        sim.add_at(scenario.buffer, sim.putter_impact(), loop_start + clock.target_time_ms + offset_ms)
    frames = list(iter_frames(scenario.buffer, config.audio.frame_length))
    return SimulatedBackend(frames=frames, realtime=True)


def run_detector(args: argparse.Namespace) -> int:
    config = load_config()
    if args.backend:
        config.audio.backend = DetectorBackend[args.backend.upper()]
    if args.bpm is not None:
        config.cycle.cycles_per_minute = args.bpm
    if args.subdivisions is not None:
        config.cycle.subdivisions_per_cycle = args.subdivisions
    if args.device is not None:
        config.audio.device_index = args.device
    set_log_level(args.log_level or config.log_level)

    phase_source = LoopingPhaseSource(config.cycle, gap_ms=args.gap_ms)
    if config.audio.backend == DetectorBackend.SIMULATED:
        loops = max(1, int(args.duration * 1000 // (phase_source.get_cycle_duration_ms() + args.gap_ms)) + 1)
        backend = build_simulated_backend(config, args.gap_ms, loops, args.seed)
    else:
        backend = create_audio_backend(config)

    report_dir = None
    if config.report_generation_enabled:
        report_dir = Path(args.report_dir) if args.report_dir else get_report_dir()

    def on_event(event):
        verdict = "PERFECT" if event.is_perfect else ("EARLY" if event.is_early else "LATE")
        log_event("INFO", "Result", verdict, error_ms=f"{event.error_ms:+.0f}",
                  accuracy=f"{event.accuracy * 100:.0f}%", quality=event.quality)

    try:
        detector = DetectorLifecycle(config, phase_source, backend=backend,
                                     on_event_detected=on_event, report_dir=report_dir)
    except ConfigurationError as e:
        log_event("ERROR", "Config", "Invalid configuration", error=e)
        return 2

    try:
        phase_source.restart()
        detector.start()
    except DetectorError as e:
        log_event("ERROR", "Lifecycle", "Could not start detector", error=e)
        return 1

    log_event("INFO", "Lifecycle", "Listening (Ctrl+C to stop)...", duration_s=args.duration or "unbounded")
    deadline = time.monotonic() + args.duration if args.duration else None
    try:
        while deadline is None or time.monotonic() < deadline:
            time.sleep(0.1)
    except KeyboardInterrupt:
        pass
    finally:
        stats = detector.get_stats()
        detector.stop()
        log_event("INFO", "Lifecycle", "Final stats", events=stats["event_count"],
                  frames=stats["frames"], cycles=stats["cycles"])
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the puttsync strike timing detector")
    parser.add_argument("--backend", choices=["microphone", "simulated"],
                        help="Audio source (default: from saved config)")
    parser.add_argument("--bpm", type=float, help="Metronome rate in beats per minute")
    parser.add_argument("--subdivisions", type=int, help="Beats per loop")
    parser.add_argument("--gap-ms", type=float, default=2000.0,
                        help="Pause between loops in milliseconds (default: 2000)")
    parser.add_argument("--duration", type=float, default=0.0,
                        help="Seconds to run; 0 runs until Ctrl+C (simulated: 20)")
    parser.add_argument("--device", type=int, help="Input device index")
    parser.add_argument("--list-devices", action="store_true", help="List input devices and exit")
    parser.add_argument("--report-dir", help="Directory for session reports")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--seed", type=int, default=0, help="Random seed for simulated audio")
    parser.add_argument(
        "--profile",
        action="store_true",
        help="Enable cProfile and save stats to --profile-out",
    )
    parser.add_argument(
        "--profile-out",
        default="profile.prof",
        help="Path to save cProfile stats (default: profile.prof)",
    )
    args = parser.parse_args()

    if args.list_devices:
        for dev in list_input_devices():
            log_event("INFO", "Audio", "Device", index=dev['index'], name=dev['name'], inputs=dev['inputs'])
        sys.exit(0)

    if args.backend == "simulated" and not args.duration:
        args.duration = 20.0

    if args.profile:
        profiler = cProfile.Profile()
        profiler.enable()
        exit_code = run_detector(args)
        profiler.disable()
        profiler.dump_stats(args.profile_out)
    else:
        exit_code = run_detector(args)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
