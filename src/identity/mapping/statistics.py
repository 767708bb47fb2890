"""Process-wide running counters for identity resolution."""

from __future__ import annotations

import threading

from src.identity.mapping.schemas import ProcessingStatus, StatisticsSnapshot


class ProcessingStatistics:
    """Thread-safe processed/successful/failed counters plus cumulative time.

    A COMPLETED request counts as successful; PARTIAL and FAILED count as
    failed.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._processed = 0
        self._successful = 0
        self._failed = 0
        self._cumulative_time = 0.0

    def record(self, status: ProcessingStatus, elapsed: float) -> None:
        with self._lock:
            self._processed += 1
            if status == ProcessingStatus.COMPLETED:
                self._successful += 1
            else:
                self._failed += 1
            self._cumulative_time += elapsed

    def snapshot(self) -> StatisticsSnapshot:
        with self._lock:
            processed = self._processed
            return StatisticsSnapshot(
                total_processed=processed,
                successful=self._successful,
                failed=self._failed,
                success_rate=round(self._successful / processed * 100, 2) if processed else 0.0,
                average_processing_time=round(self._cumulative_time / processed, 3) if processed else 0.0,
                cumulative_time=self._cumulative_time,
            )

    def reset(self) -> None:
        with self._lock:
            self._processed = 0
            self._successful = 0
            self._failed = 0
            self._cumulative_time = 0.0
