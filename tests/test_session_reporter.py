import csv
import json
import tempfile
import unittest
from pathlib import Path

import numpy as np

from session_reporter import PuttSessionReporter


def summary(events: int) -> dict:
    return {
        "session_started_at": 1000.0,
        "session_ended_at": 1060.0,
        "seconds": 60.0,
        "backend": "simulated",
        "bpm": 70.0,
        "subdivisions": 4,
        "frames": 3750,
        "events": events,
        "mean_error_ms": np.float64(-12.5),
        "level_high": np.float32(0.5),
    }


class TestPuttSessionReporter(unittest.TestCase):
    def test_writes_json_and_csv(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            reporter = PuttSessionReporter(Path(tmpdir) / "reports")
            reporter.save_session(summary(3))
            reporter.save_session(summary(5))

            with open(reporter.json_path, "r", encoding="utf-8") as f:
                payload = json.load(f)
            self.assertEqual(payload["session_count"], 2)
            self.assertEqual(payload["latest"]["events"], 5)
            self.assertEqual(payload["latest"]["mean_error_ms"], -12.5)

            with open(reporter.csv_path, "r", newline="", encoding="utf-8") as f:
                rows = list(csv.DictReader(f))
            self.assertEqual(len(rows), 2)
            self.assertEqual(rows[0]["events"], "3")
            self.assertEqual(rows[0]["dropped_frames"], "")

    def test_keeps_most_recent_sessions(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            reporter = PuttSessionReporter(Path(tmpdir), max_sessions=2)
            for events in (1, 2, 3):
                reporter.save_session(summary(events))
            with open(reporter.json_path, "r", encoding="utf-8") as f:
                payload = json.load(f)
            self.assertEqual([s["events"] for s in payload["sessions"]], [2, 3])

    def test_accuracy_trend_is_event_weighted(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            reporter = PuttSessionReporter(Path(tmpdir))
            for events, accuracy in ((1, 0.4), (0, None), (3, 0.8)):
                session = summary(events)
                session["mean_accuracy"] = accuracy
                session["mean_abs_error_ms"] = 100.0 if events else None
                reporter.save_session(session)
            with open(reporter.json_path, "r", encoding="utf-8") as f:
                trend = json.load(f)["trend"]
            self.assertEqual(trend["scored_sessions"], 2)
            self.assertEqual(trend["total_events"], 4)
            self.assertAlmostEqual(trend["recent_mean_accuracy"], 0.7)
            self.assertAlmostEqual(trend["recent_mean_abs_error_ms"], 100.0)
            self.assertAlmostEqual(trend["best_session_accuracy"], 0.8)
            self.assertNotIn("accuracy_change", trend)

    def test_accuracy_change_against_earlier_window(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            reporter = PuttSessionReporter(Path(tmpdir))
            reporter.TREND_WINDOW = 1
            for accuracy in (0.5, 0.7):
                session = summary(2)
                session["mean_accuracy"] = accuracy
                reporter.save_session(session)
            with open(reporter.json_path, "r", encoding="utf-8") as f:
                trend = json.load(f)["trend"]
            self.assertAlmostEqual(trend["recent_mean_accuracy"], 0.7)
            self.assertAlmostEqual(trend["accuracy_change"], 0.2)

    def test_no_trend_without_scored_sessions(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            reporter = PuttSessionReporter(Path(tmpdir))
            reporter.save_session(summary(0))
            with open(reporter.json_path, "r", encoding="utf-8") as f:
                self.assertEqual(json.load(f)["trend"], {"scored_sessions": 0})

    def test_unreadable_report_starts_fresh(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            reporter = PuttSessionReporter(Path(tmpdir))
            reporter.json_path.write_text("{broken", encoding="utf-8")
            reporter.save_session(summary(1))
            with open(reporter.json_path, "r", encoding="utf-8") as f:
                self.assertEqual(json.load(f)["session_count"], 1)


if __name__ == "__main__":
    unittest.main()
