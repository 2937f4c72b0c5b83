import unittest

from config import ScoringConfig
from timing_scorer import TimingScorer

CYCLE_MS = 4 * 60000.0 / 70.0


class TestTimingScorer(unittest.TestCase):
    def setUp(self):
        self.scorer = TimingScorer(ScoringConfig())

    def test_on_target_is_perfect(self):
        score = self.scorer.score(0.75, 0.75, CYCLE_MS)
        self.assertEqual(score.error_ms, 0.0)
        self.assertEqual(score.accuracy, 1.0)
        self.assertTrue(score.is_perfect)
        self.assertFalse(score.is_early)
        self.assertFalse(score.is_late)

    def test_error_is_signed(self):
        for offset_ms in (-400.0, -120.0, -30.0, 30.0, 120.0, 200.0):
            with self.subTest(offset_ms=offset_ms):
                fraction = 0.75 + offset_ms / CYCLE_MS
                score = self.scorer.score(fraction, 0.75, CYCLE_MS)
                self.assertAlmostEqual(score.error_ms, offset_ms, delta=1e-6)
                self.assertEqual(score.is_early, offset_ms < 0)
                self.assertEqual(score.is_late, offset_ms > 0)

    def test_accuracy_is_symmetric_around_target(self):
        for offset_ms in (10.0, 60.0, 125.0, 199.0, 350.0):
            with self.subTest(offset_ms=offset_ms):
                early = self.scorer.score(0.75 - offset_ms / CYCLE_MS, 0.75, CYCLE_MS)
                late = self.scorer.score(0.75 + offset_ms / CYCLE_MS, 0.75, CYCLE_MS)
                self.assertAlmostEqual(early.accuracy, late.accuracy, places=6)
                self.assertAlmostEqual(early.error_ms, -late.error_ms, places=6)

    def test_accuracy_in_unit_range(self):
        for i in range(101):
            score = self.scorer.score(i / 100, 0.75, CYCLE_MS)
            self.assertGreaterEqual(score.accuracy, 0.0)
            self.assertLessEqual(score.accuracy, 1.0)

    def test_accuracy_falls_off_linearly(self):
        self.assertEqual(self.scorer.accuracy_for_error(0.0), 1.0)
        self.assertEqual(self.scorer.accuracy_for_error(50.0), 1.0)
        self.assertAlmostEqual(self.scorer.accuracy_for_error(125.0), 0.5)
        self.assertAlmostEqual(self.scorer.accuracy_for_error(-125.0), 0.5)
        self.assertAlmostEqual(self.scorer.accuracy_for_error(200.0), 0.0)
        self.assertEqual(self.scorer.accuracy_for_error(1000.0), 0.0)

    def test_latency_is_subtracted(self):
        scorer = TimingScorer(ScoringConfig(audio_latency_ms=100.0))
        score = scorer.score(0.75 + 100.0 / CYCLE_MS, 0.75, CYCLE_MS)
        self.assertAlmostEqual(score.error_ms, 0.0, delta=1e-6)
        self.assertTrue(score.is_perfect)

    def test_position_is_clamped(self):
        scorer = TimingScorer(ScoringConfig(audio_latency_ms=500.0))
        score = scorer.score(0.05, 0.0, CYCLE_MS)
        self.assertEqual(score.error_ms, 0.0)

    def test_configure(self):
        self.scorer.configure(ScoringConfig(inner_tolerance_ms=10.0, outer_tolerance_ms=20.0))
        self.assertEqual(self.scorer.accuracy_for_error(25.0), 0.0)


if __name__ == "__main__":
    unittest.main()
