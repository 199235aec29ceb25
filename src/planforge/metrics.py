"""Per-session counters and phase timings, appended to ``metrics.jsonl``."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
import json
import time
from typing import Iterator

METRICS_FILE = "metrics.jsonl"


@dataclass
class MetricsCollector:
    session_dir: Path | None = None
    counters: dict[str, int] = field(default_factory=dict)
    timers: dict[str, list[float]] = field(default_factory=dict)

    def inc(self, name: str, n: int = 1) -> None:
        self.counters[name] = self.counters.get(name, 0) + n

    @contextmanager
    def measure(self, name: str) -> Iterator[None]:
        """Time the block under ``name``; failed calls are timed too."""
        started = time.perf_counter()
        try:
            yield
        finally:
            self.timers.setdefault(name, []).append(time.perf_counter() - started)

    def timing_summary(self) -> dict[str, dict[str, float]]:
        summary: dict[str, dict[str, float]] = {}
        for name, samples in self.timers.items():
            total = sum(samples)
            summary[name] = {
                "count": len(samples),
                "total_secs": round(total, 6),
                "max_secs": round(max(samples), 6),
            }
        return summary

    def export_json(self) -> dict[str, object]:
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "counters": dict(self.counters),
            "timings": self.timing_summary(),
        }

    def write_run_summary(self, payload: dict[str, object]) -> Path | None:
        """Append one line per run: the run outcome merged with counters and timings."""
        if self.session_dir is None:
            return None
        self.session_dir.mkdir(parents=True, exist_ok=True)
        path = self.session_dir / METRICS_FILE
        line = json.dumps({**self.export_json(), **payload}, ensure_ascii=False)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")
        return path
