import unittest

from config import CorrelatorConfig, ScoringConfig
from timestamp_correlator import TimestampCorrelator
from timing_scorer import TimingScorer


def make_correlator(delay_ms: float = 50.0) -> TimestampCorrelator:
    return TimestampCorrelator(CorrelatorConfig(processing_delay_ms=delay_ms), TimingScorer(ScoringConfig()))


def capture(correlator, fraction, now, cycle_ms=3000.0, target=0.75, **kwargs):
    return correlator.capture(phase_fraction=fraction, audio_level=0.3, baseline=0.005, ratio=58.0,
                              now=now, cycle_duration_ms=cycle_ms, target_fraction=target, **kwargs)


class TestTimestampCorrelator(unittest.TestCase):
    def test_candidate_waits_for_processing_delay(self):
        correlator = make_correlator()
        capture(correlator, 0.8, now=1.0)
        self.assertEqual(correlator.finalize_due(1.02), [])
        self.assertEqual(correlator.pending_count, 1)

        events = correlator.finalize_due(1.06)
        self.assertEqual(len(events), 1)
        self.assertEqual(correlator.pending_count, 0)
        self.assertAlmostEqual(events[0].processing_lag_ms, 60.0, delta=1e-6)

    def test_scores_captured_position(self):
        correlator = make_correlator()
        capture(correlator, 0.8, now=1.0, quality="strong", confidence=0.9,
                raw_phase_signal={"position_ms": 2400.0})
        event = correlator.finalize_due(2.0)[0]
        self.assertAlmostEqual(event.phase_fraction, 0.8)
        self.assertAlmostEqual(event.error_ms, 150.0, delta=1e-6)
        self.assertTrue(event.is_late)
        self.assertAlmostEqual(event.accuracy, 1.0 - 100.0 / 150.0)
        self.assertEqual(event.quality, "strong")
        self.assertEqual(event.confidence, 0.9)
        self.assertEqual(event.capture_timestamp, 1.0)

    def test_cycle_duration_is_frozen_at_capture(self):
        correlator = make_correlator()
        capture(correlator, 0.7, now=1.0, cycle_ms=2000.0)
        capture(correlator, 0.7, now=5.0, cycle_ms=4000.0)
        first, second = correlator.finalize_due(10.0)
        self.assertAlmostEqual(first.error_ms, -100.0, delta=1e-6)
        self.assertAlmostEqual(second.error_ms, -200.0, delta=1e-6)

    def test_finalizes_in_capture_order(self):
        correlator = make_correlator()
        capture(correlator, 0.9, now=3.0)
        capture(correlator, 0.8, now=1.0)
        capture(correlator, 0.85, now=2.0)
        events = correlator.finalize_due(4.0)
        self.assertEqual([e.capture_timestamp for e in events], [1.0, 2.0, 3.0])

    def test_only_due_candidates_leave(self):
        correlator = make_correlator()
        capture(correlator, 0.8, now=1.0)
        capture(correlator, 0.8, now=1.04)
        events = correlator.finalize_due(1.06)
        self.assertEqual(len(events), 1)
        self.assertEqual(correlator.pending_count, 1)

    def test_sequence_numbers_increase(self):
        correlator = make_correlator()
        first = capture(correlator, 0.8, now=1.0)
        second = capture(correlator, 0.8, now=1.0)
        self.assertEqual((first.sequence_number, second.sequence_number), (1, 2))
        self.assertEqual(correlator.sequence_counter, 2)
        self.assertEqual(correlator.pending_count, 2)

    def test_discard_pending(self):
        correlator = make_correlator()
        capture(correlator, 0.8, now=1.0)
        capture(correlator, 0.8, now=1.1)
        self.assertEqual(correlator.discard_pending(), 2)
        self.assertEqual(correlator.finalize_due(10.0), [])
        self.assertEqual(correlator.discard_pending(), 0)

    def test_reset_restarts_numbering(self):
        correlator = make_correlator()
        capture(correlator, 0.8, now=1.0)
        correlator.reset()
        self.assertEqual(correlator.pending_count, 0)
        self.assertEqual(capture(correlator, 0.8, now=2.0).sequence_number, 1)


if __name__ == "__main__":
    unittest.main()
