import csv
import json
import time
from pathlib import Path
from typing import Optional

from logging_utils import log_event


class PuttSessionReporter:
    """Persists per-session putting summaries to JSON and CSV reports."""

    FIELDNAMES = [
        "session_started_at",
        "session_ended_at",
        "seconds",
        "backend",
        "bpm",
        "subdivisions",
        "frames",
        "dropped_frames",
        "cycles",
        "events",
        "perfect_count",
        "early_count",
        "late_count",
        "mean_error_ms",
        "mean_abs_error_ms",
        "mean_accuracy",
        "best_accuracy",
        "level_low",
        "level_high",
        "level_mean",
        "baseline_low",
        "baseline_high",
    ]

    TREND_WINDOW = 5

    def __init__(self, report_dir: Path, max_sessions: int = 200):
        self.report_dir = Path(report_dir)
        self.report_dir.mkdir(parents=True, exist_ok=True)
        self.json_path = self.report_dir / "putt_session_report.json"
        self.csv_path = self.report_dir / "putt_session_report.csv"
        self.max_sessions = max(1, int(max_sessions))

    def _load_existing_sessions(self) -> list[dict]:
        if not self.json_path.exists():
            return []
        try:
            with open(self.json_path, "r", encoding="utf-8") as f:
                payload = json.load(f)
        except (OSError, ValueError) as e:
            log_event("WARN", "Report", "Existing report unreadable, starting fresh", path=self.json_path, error=e)
            return []
        sessions = payload.get("sessions", []) if isinstance(payload, dict) else []
        if not isinstance(sessions, list):
            return []
        return [s for s in sessions if isinstance(s, dict)]

    def _to_builtin(self, value):
        if isinstance(value, dict):
            return {str(k): self._to_builtin(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._to_builtin(v) for v in value]

        # numpy scalars and arrays
        tolist = getattr(value, "tolist", None)
        if callable(tolist):
            return self._to_builtin(tolist())

        return value

    @staticmethod
    def _weighted_mean(sessions: list[dict], key: str) -> Optional[float]:
        """Event-weighted mean of a per-session average."""
        pairs = [(s[key], s["events"]) for s in sessions if s.get(key) is not None]
        total = sum(events for _, events in pairs)
        if total <= 0:
            return None
        return sum(value * events for value, events in pairs) / total

    def _accuracy_trend(self, sessions: list[dict]) -> dict:
        """Accuracy over the last TREND_WINDOW scored sessions vs the window before."""
        scored = [s for s in sessions if (s.get("events") or 0) > 0]
        if not scored:
            return {"scored_sessions": 0}

        recent = scored[-self.TREND_WINDOW:]
        earlier = scored[-2 * self.TREND_WINDOW:-self.TREND_WINDOW]
        recent_accuracy = self._weighted_mean(recent, "mean_accuracy")
        recent_abs_error = self._weighted_mean(recent, "mean_abs_error_ms")
        trend = {
            "scored_sessions": len(scored),
            "total_events": sum(int(s["events"]) for s in scored),
            "recent_mean_accuracy": round(recent_accuracy, 4) if recent_accuracy is not None else None,
            "recent_mean_abs_error_ms": round(recent_abs_error, 1) if recent_abs_error is not None else None,
            "best_session_accuracy": max((s.get("mean_accuracy") or 0.0) for s in scored),
        }
        earlier_accuracy = self._weighted_mean(earlier, "mean_accuracy")
        if recent_accuracy is not None and earlier_accuracy is not None:
            trend["accuracy_change"] = round(recent_accuracy - earlier_accuracy, 4)
        return trend

    def save_session(self, session_summary: dict) -> None:
        sessions = self._load_existing_sessions()
        sessions.append(self._to_builtin(session_summary))
        if len(sessions) > self.max_sessions:
            sessions = sessions[-self.max_sessions :]
        trend = self._accuracy_trend(sessions)

        payload = {
            "generated_at": time.time(),
            "session_count": len(sessions),
            "latest": sessions[-1],
            "trend": trend,
            "sessions": sessions,
        }

        with open(self.json_path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)

        with open(self.csv_path, "w", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=self.FIELDNAMES)
            writer.writeheader()
            for row in sessions:
                writer.writerow({key: row.get(key, "") for key in self.FIELDNAMES})

        log_event("INFO", "Report", "Session report written", path=self.json_path, sessions=len(sessions),
                  recent_accuracy=trend.get("recent_mean_accuracy"), change=trend.get("accuracy_change", "n/a"))
