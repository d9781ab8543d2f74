# src/spark_redshift/common/monitoring/metrics_collector.py
from collections import defaultdict, deque
from datetime import datetime
from typing import Any, Dict, List

import structlog

logger = structlog.get_logger(__name__)


class MetricsCollector:
    """
    Collects and aggregates metrics of Redshift reads and writes.

    Features:
    - Counters and histograms keyed by metric name
    - Per-table load and unload metrics
    - Summary with histogram statistics
    """

    def __init__(self, max_history: int = 1000):
        self.logger = logger.bind(component="MetricsCollector")
        self.max_history = max_history

        # Metrics storage
        self.metrics: Dict[str, deque] = defaultdict(lambda: deque(maxlen=self.max_history))
        self.counters: Dict[str, int] = defaultdict(int)
        self.histograms: Dict[str, List[float]] = defaultdict(list)

    def record_load_metrics(self, load_result: Dict[str, Any]) -> None:
        """Record metrics from a write (see RedshiftWriter.save_to_redshift)"""
        table = load_result.get('table', 'unknown')

        self.record_counter('load.files_staged', load_result.get('files_staged', 0))
        self.record_histogram('load.duration_seconds', load_result.get('duration_seconds', 0))
        self.record_counter(f"load.mode.{load_result.get('save_mode', 'unknown')}", 1)

        status = load_result.get('status', 'unknown')
        self.record_counter(f'load.status.{status}', 1)
        self.record_counter(f'load.table.{table}.{status}', 1)

    def record_unload_metrics(self, unload_result: Dict[str, Any]) -> None:
        """Record metrics from a scan"""
        self.record_counter('unload.scans', 1)
        self.record_counter('unload.files', unload_result.get('files', 0))
        self.record_counter('unload.filters_pushed', unload_result.get('filters_pushed', 0))
        self.record_histogram('unload.duration_seconds', unload_result.get('duration_seconds', 0))

    def record_counter(self, metric_name: str, value: int = 1) -> None:
        """Record counter metric"""
        self.counters[metric_name] += value
        self._record_time_series(metric_name, value, 'counter')

    def record_histogram(self, metric_name: str, value: float) -> None:
        """Record histogram metric"""
        self.histograms[metric_name].append(value)
        self._record_time_series(metric_name, value, 'histogram')

        if len(self.histograms[metric_name]) > self.max_history:
            self.histograms[metric_name] = self.histograms[metric_name][-self.max_history:]

    def _record_time_series(self, metric_name: str, value: float, metric_type: str) -> None:
        self.metrics[metric_name].append({
            'timestamp': datetime.now(),
            'value': value,
            'type': metric_type
        })

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Get current metrics summary"""
        summary = {
            'timestamp': datetime.now().isoformat(),
            'counters': dict(self.counters),
            'histograms': {}
        }

        for metric_name, values in self.histograms.items():
            if values:
                summary['histograms'][metric_name] = {
                    'count': len(values),
                    'min': min(values),
                    'max': max(values),
                    'mean': sum(values) / len(values),
                    'p95': self._percentile(values, 95),
                    'p99': self._percentile(values, 99)
                }

        return summary

    def _percentile(self, values: List[float], percentile: int) -> float:
        if not values:
            return 0.0

        sorted_values = sorted(values)
        index = int(percentile / 100.0 * len(sorted_values))
        return sorted_values[min(index, len(sorted_values) - 1)]
