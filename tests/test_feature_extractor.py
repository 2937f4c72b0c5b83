import unittest

import numpy as np

from audio_simulator import AudioSimulator
from config import FeatureConfig
from errors import InvalidFrame
from feature_extractor import FeatureExtractor, to_mono_float

SAMPLE_RATE = 16000
FRAME = 256


def alternating(amplitude: float, n: int = FRAME) -> np.ndarray:
    frame = np.full(n, amplitude, dtype=np.float64)
    frame[1::2] *= -1.0
    return frame


def unfiltered(**kwargs) -> FeatureExtractor:
    return FeatureExtractor(FeatureConfig(use_band_filter=False), SAMPLE_RATE, **kwargs)


class TestToMonoFloat(unittest.TestCase):
    def test_int16_is_scaled(self):
        frame = (alternating(0.5) * 32768).astype(np.int16)
        samples = to_mono_float(frame)
        self.assertAlmostEqual(float(np.abs(samples).max()), 0.5, places=4)

    def test_stereo_is_averaged(self):
        left = alternating(0.4)
        stereo = np.stack([left, np.zeros(FRAME)], axis=1)
        samples = to_mono_float(stereo)
        self.assertEqual(samples.shape, (FRAME,))
        self.assertAlmostEqual(float(np.abs(samples).max()), 0.2, places=6)

    def test_dc_is_removed(self):
        samples = to_mono_float(np.full(FRAME, 0.3))
        self.assertAlmostEqual(float(np.abs(samples).max()), 0.0, places=9)

    def test_rejects_bad_frames(self):
        bad = [
            np.array([], dtype=np.float32),
            np.array([0.1, np.nan, 0.2]),
            np.array([0.1, np.inf]),
            np.zeros((2, 2, 2)),
            np.array(["a", "b"]),
        ]
        for frame in bad:
            with self.subTest(frame=repr(frame)):
                with self.assertRaises(InvalidFrame):
                    to_mono_float(frame)


class TestFeatureExtractor(unittest.TestCase):
    def test_silence_has_zero_features(self):
        features = unfiltered().extract(np.zeros(FRAME, dtype=np.float32))
        self.assertEqual(features.energy, 0.0)
        self.assertEqual(features.zcr, 0.0)
        self.assertEqual(features.flux, 0.0)
        self.assertLess(features.crest_factor, 1e-6)

    def test_alternating_signal_features(self):
        features = unfiltered().extract(alternating(0.5))
        self.assertAlmostEqual(features.energy, 0.5, places=6)
        self.assertAlmostEqual(features.rms, 0.5, places=6)
        self.assertAlmostEqual(features.crest_factor, 1.0, places=6)
        self.assertAlmostEqual(features.zcr, (FRAME - 1) / FRAME, places=6)
        # Empty history: flux equals the full energy
        self.assertAlmostEqual(features.flux, 0.5, places=6)

    def test_gain_scales_and_clips(self):
        features = unfiltered(gain=2.0).extract(alternating(0.25))
        self.assertAlmostEqual(features.energy, 0.5, places=6)
        clipped = unfiltered(gain=10.0).extract(alternating(0.25))
        self.assertAlmostEqual(clipped.max_amplitude, 1.0, places=6)

    def test_flux_compares_against_circular_history(self):
        extractor = unfiltered()
        extractor.extract(alternating(0.2))
        for _ in range(9):
            extractor.extract(alternating(0.1))
        # Slot of the first frame comes round again after history_size frames
        features = extractor.extract(alternating(0.3))
        self.assertAlmostEqual(features.flux, 0.1, places=6)
        # A quieter frame never yields negative flux
        features = extractor.extract(alternating(0.05))
        self.assertEqual(features.flux, 0.0)

    def test_invalid_frame_leaves_state_untouched(self):
        extractor = unfiltered()
        with self.assertRaises(InvalidFrame):
            extractor.extract(np.array([], dtype=np.float32))
        features = extractor.extract(alternating(0.2))
        self.assertAlmostEqual(features.flux, 0.2, places=6)

    def test_reset_clears_history(self):
        extractor = unfiltered()
        for _ in range(10):
            extractor.extract(alternating(0.3))
        extractor.reset()
        features = extractor.extract(alternating(0.3))
        self.assertAlmostEqual(features.flux, 0.3, places=6)

    def test_band_filter_rejects_low_rumble(self):
        sim = AudioSimulator(SAMPLE_RATE)
        rumble = sim.sine(100.0, FRAME * 12 / SAMPLE_RATE, amplitude=0.5)
        filtered = FeatureExtractor(FeatureConfig(), SAMPLE_RATE)
        plain = unfiltered()
        self.assertTrue(filtered.filter_enabled)
        for i in range(12):
            frame = rumble[i * FRAME:(i + 1) * FRAME]
            f_feat = filtered.extract(frame)
            p_feat = plain.extract(frame)
        self.assertLess(f_feat.energy, p_feat.energy * 0.2)

    def test_band_filter_keeps_impact_energy(self):
        sim = AudioSimulator(SAMPLE_RATE, seed=1)
        impact = sim.putter_impact()[:FRAME]
        extractor = FeatureExtractor(FeatureConfig(), SAMPLE_RATE)
        extractor.extract(np.zeros(FRAME, dtype=np.float32))
        features = extractor.extract(impact)
        self.assertGreater(features.energy, 0.1)
        self.assertGreater(features.zcr, 0.22)
        self.assertGreater(features.flux, 0.1)

    def test_configure_clamps_band_to_nyquist(self):
        extractor = FeatureExtractor(FeatureConfig(), SAMPLE_RATE)
        extractor.configure(FeatureConfig(band_high_hz=6000.0), 8000, 1.0)
        self.assertTrue(extractor.filter_enabled)
        features = extractor.extract(alternating(0.1))
        self.assertTrue(np.isfinite(features.energy))

        extractor.configure(FeatureConfig(use_band_filter=False), SAMPLE_RATE, 1.0)
        self.assertFalse(extractor.filter_enabled)


if __name__ == "__main__":
    unittest.main()
