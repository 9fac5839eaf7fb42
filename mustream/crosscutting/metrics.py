import json
import threading
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Dict, Any, Optional


@dataclass
class IteratorMetrics:
    """Counters for a single browse/search iterator."""
    kind: str
    pages_fetched: int = 0
    items_fetched: int = 0
    items_filtered_out: int = 0
    items_returned: int = 0
    fetch_errors: int = 0
    retries: int = 0
    prefetches_dispatched: int = 0
    prefetch_failures: int = 0
    phase_switched: bool = False
    exhausted: bool = False
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @property
    def filter_rate(self) -> float:
        """Share of fetched items removed by client-side filtering."""
        if self.items_fetched == 0:
            return 0.0
        return self.items_filtered_out / self.items_fetched

    @property
    def average_page_size(self) -> float:
        """Average number of items per fetched page."""
        if self.pages_fetched == 0:
            return 0.0
        return self.items_fetched / self.pages_fetched

    @property
    def duration_ms(self) -> int:
        if not self.start_time or not self.end_time:
            return 0
        return int((self.end_time - self.start_time).total_seconds() * 1000)


class MetricsCollector:
    """Collects iterator counters.

    Prefetch results are recorded from worker threads, so every update takes the lock.
    """

    def __init__(self, kind: str):
        """Initialize metrics collector."""
        self.metrics = IteratorMetrics(kind=kind, start_time=datetime.now())
        self._lock = threading.Lock()

    def record_page(self, fetched: int, kept: int) -> None:
        """Record a fetched page and how many of its items survived filtering."""
        with self._lock:
            self.metrics.pages_fetched += 1
            self.metrics.items_fetched += fetched
            self.metrics.items_filtered_out += fetched - kept

    def record_item_returned(self) -> None:
        with self._lock:
            self.metrics.items_returned += 1

    def record_fetch_error(self) -> None:
        with self._lock:
            self.metrics.fetch_errors += 1

    def record_retry(self) -> None:
        with self._lock:
            self.metrics.retries += 1

    def record_prefetch_dispatched(self) -> None:
        with self._lock:
            self.metrics.prefetches_dispatched += 1

    def record_prefetch_failure(self) -> None:
        with self._lock:
            self.metrics.prefetch_failures += 1

    def record_phase_switch(self) -> None:
        with self._lock:
            self.metrics.phase_switched = True

    def record_exhausted(self) -> None:
        """Mark the iterator as done."""
        with self._lock:
            self.metrics.exhausted = True
            self.metrics.end_time = datetime.now()

    def get_metrics(self) -> IteratorMetrics:
        with self._lock:
            return self.metrics

    def to_dict(self) -> Dict[str, Any]:
        """Convert metrics to dictionary for JSON serialization."""
        with self._lock:
            data = asdict(self.metrics)
            if data['start_time']:
                data['start_time'] = data['start_time'].isoformat()
            if data['end_time']:
                data['end_time'] = data['end_time'].isoformat()
            data['filter_rate'] = self.metrics.filter_rate
            data['duration_ms'] = self.metrics.duration_ms
            return data

    def save_to_file(self, file_path: str) -> None:
        """Save metrics to JSON file."""
        with open(file_path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)

    def print_summary(self) -> None:
        """Print metrics summary to stdout."""
        m = self.get_metrics()

        print(f"\n=== Iterator Metrics ({m.kind}) ===")
        print(f"Pages Fetched: {m.pages_fetched}")
        print(f"Items Fetched: {m.items_fetched}")
        print(f"Average Page Size: {m.average_page_size:.1f}")
        print(f"Filtered Out: {m.items_filtered_out} ({m.filter_rate:.2%})")
        print(f"Items Returned: {m.items_returned}")
        print(f"Fetch Errors: {m.fetch_errors}")
        print(f"Retries: {m.retries}")
        print(f"Prefetches: {m.prefetches_dispatched} (failed: {m.prefetch_failures})")
        if m.phase_switched:
            print("Random iteration fell back to deterministic order")
        print(f"Exhausted: {m.exhausted}")
