"""Run statistics for the poll worker, exposed read-only to the status surface."""

import threading
from datetime import datetime
from typing import Any, Dict, Optional


class ExecutionStats:
    """Thread-safe counters. The worker thread writes, the HTTP handlers read snapshots."""

    COUNTERS = (
        "total_ticks",
        "total_executions",
        "follow_ups_sent",
        "reminders_sent",
        "reminders_created",
        "orphans_created",
        "stale_reaped",
        "deferred",
        "cancelled",
        "skipped",
        "failed",
        "errors",
    )

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {name: 0 for name in self.COUNTERS}
        self._started_at = datetime.utcnow()
        self._last_execution: Optional[datetime] = None
        self._last_tick_duration_ms: Optional[int] = None

    def increment(self, name: str, amount: int = 1):
        if name not in self._counters:
            raise KeyError(f"Unknown stats counter: {name}")
        with self._lock:
            self._counters[name] += amount

    def record_tick(self, finished_at: datetime, duration_ms: int):
        with self._lock:
            self._counters["total_ticks"] += 1
            self._last_execution = finished_at
            self._last_tick_duration_ms = duration_ms

    def record_result(self, result):
        """Fold one ExecutionResult into the totals."""
        with self._lock:
            self._counters["total_executions"] += 1
            if result.success:
                key = "reminders_sent" if result.kind == "reminder" else "follow_ups_sent"
                self._counters[key] += 1
            elif result.deferred:
                self._counters["deferred"] += 1
            elif result.cancelled:
                self._counters["cancelled"] += 1
            elif result.skipped:
                self._counters["skipped"] += 1
            elif result.error:
                self._counters["failed"] += 1

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            data: Dict[str, Any] = dict(self._counters)
            last_execution = self._last_execution
            last_duration = self._last_tick_duration_ms

        sent = data["follow_ups_sent"] + data["reminders_sent"]
        attempted = sent + data["failed"]
        now = datetime.utcnow()

        data["success_rate"] = round(sent / attempted * 100, 2) if attempted else None
        data["last_execution"] = last_execution.isoformat() + "Z" if last_execution else None
        data["last_tick_duration_ms"] = last_duration
        data["started_at"] = self._started_at.isoformat() + "Z"
        data["uptime_seconds"] = int((now - self._started_at).total_seconds())
        return data
