from dataclasses import dataclass


@dataclass
class MetricBucket:
    total: int = 0
    errors: int = 0
    latency_total_ms: float = 0.0

    def record(self, duration_ms: float, error: bool) -> None:
        self.total += 1
        if error:
            self.errors += 1
        self.latency_total_ms += duration_ms

    def snapshot(self) -> dict[str, float | int]:
        avg = self.latency_total_ms / self.total if self.total else 0.0
        return {
            "total": self.total,
            "errors": self.errors,
            "avg_latency_ms": round(avg, 2),
        }


class SweepMetrics:
    def __init__(self) -> None:
        self.runs = MetricBucket()
        self.events = MetricBucket()
        self.skipped = 0

    def record_run(self, duration_ms: float, error: bool) -> None:
        self.runs.record(duration_ms, error)

    def record_event(self, duration_ms: float, error: bool) -> None:
        self.events.record(duration_ms, error)

    def record_skip(self) -> None:
        self.skipped += 1

    def snapshot(self) -> dict[str, object]:
        return {
            "sweep_runs": self.runs.snapshot(),
            "sweep_events": self.events.snapshot(),
            "sweep_skipped": self.skipped,
        }


sweep_metrics = SweepMetrics()
