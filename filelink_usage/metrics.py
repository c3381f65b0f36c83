"""In-process metrics collector with Prometheus text exposition."""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import Any, Dict, Tuple

USAGE_ACTIONS = ("added", "removed", "repaired")


class MetricsCollector:
    """Thread-safe counters for scan passes, usage changes and API requests."""

    REQUEST_DURATION_BUCKETS = (
        0.005,
        0.01,
        0.025,
        0.05,
        0.1,
        0.25,
        0.5,
        1.0,
        2.5,
        5.0,
        10.0,
        30.0,
    )

    def __init__(self) -> None:
        self._lock = threading.Lock()

        # Counters
        self._requests_total: Dict[Tuple[str, str, str], int] = defaultdict(int)
        self._scans_total: Dict[str, int] = defaultdict(int)
        self._owners_scanned_total: int = 0
        self._links_detected_total: int = 0
        self._usage_changes_total: Dict[str, int] = defaultdict(int)
        self._invalidations_total: int = 0

        # Histogram (cumulative bucket counts)
        self._request_duration_bucket_counts: Dict[str, list[int]] = {}
        self._request_duration_sum: Dict[str, float] = defaultdict(float)
        self._request_duration_count: Dict[str, int] = defaultdict(int)

        # Gauges
        self._match_rows: int = 0
        self._unresolved_matches: int = 0
        self._last_scan_timestamp: float = 0.0

    def reset(self) -> None:
        """Reset all metrics (used by tests)."""
        with self._lock:
            self._requests_total.clear()
            self._scans_total.clear()
            self._owners_scanned_total = 0
            self._links_detected_total = 0
            self._usage_changes_total.clear()
            self._invalidations_total = 0
            self._request_duration_bucket_counts.clear()
            self._request_duration_sum.clear()
            self._request_duration_count.clear()
            self._match_rows = 0
            self._unresolved_matches = 0
            self._last_scan_timestamp = 0.0

    def record_request(self, method: str, path: str, status: int, duration_seconds: float) -> None:
        """Record request counter and latency histogram observation."""
        method_norm = (method or "GET").upper()
        path_norm = path or "/"
        status_norm = str(status)
        duration = max(0.0, float(duration_seconds))

        with self._lock:
            self._requests_total[(method_norm, path_norm, status_norm)] += 1

            buckets = self._request_duration_bucket_counts.get(path_norm)
            if buckets is None:
                buckets = [0 for _ in self.REQUEST_DURATION_BUCKETS]
                self._request_duration_bucket_counts[path_norm] = buckets

            for idx, upper_bound in enumerate(self.REQUEST_DURATION_BUCKETS):
                if duration <= upper_bound:
                    buckets[idx] += 1

            self._request_duration_sum[path_norm] += duration
            self._request_duration_count[path_norm] += 1

    def record_scan(self, status: str, owners_scanned: int, links_detected: int) -> None:
        with self._lock:
            self._scans_total[status] += 1
            self._owners_scanned_total += max(0, int(owners_scanned))
            self._links_detected_total += max(0, int(links_detected))

    def record_usage_changes(self, *, added: int = 0, removed: int = 0, repaired: int = 0) -> None:
        with self._lock:
            self._usage_changes_total["added"] += max(0, int(added))
            self._usage_changes_total["removed"] += max(0, int(removed))
            self._usage_changes_total["repaired"] += max(0, int(repaired))

    def inc_invalidations(self, count: int = 1) -> None:
        with self._lock:
            self._invalidations_total += max(0, int(count))

    def set_runtime_gauges(
        self,
        *,
        match_rows: int,
        unresolved_matches: int,
        last_scan_timestamp: float,
    ) -> None:
        """Update runtime gauges shown in Prometheus output."""
        with self._lock:
            self._match_rows = max(0, int(match_rows))
            self._unresolved_matches = max(0, int(unresolved_matches))
            self._last_scan_timestamp = max(0.0, float(last_scan_timestamp))

    def snapshot(self) -> Dict[str, Any]:
        """Take an immutable snapshot for exposition."""
        with self._lock:
            return {
                "requests_total": dict(self._requests_total),
                "request_duration_bucket_counts": {
                    path: list(counts)
                    for path, counts in self._request_duration_bucket_counts.items()
                },
                "request_duration_sum": dict(self._request_duration_sum),
                "request_duration_count": dict(self._request_duration_count),
                "scans_total": dict(self._scans_total),
                "owners_scanned_total": int(self._owners_scanned_total),
                "links_detected_total": int(self._links_detected_total),
                "usage_changes_total": {a: int(self._usage_changes_total.get(a, 0)) for a in USAGE_ACTIONS},
                "invalidations_total": int(self._invalidations_total),
                "match_rows": int(self._match_rows),
                "unresolved_matches": int(self._unresolved_matches),
                "last_scan_timestamp": float(self._last_scan_timestamp),
            }

    def render_prometheus(self) -> str:
        """Render snapshot in Prometheus exposition format (text/plain)."""
        snap = self.snapshot()
        lines: list[str] = []

        lines.append("# HELP filelink_usage_requests_total Total HTTP requests processed.")
        lines.append("# TYPE filelink_usage_requests_total counter")
        for (method, path, status), count in sorted(snap["requests_total"].items()):
            lines.append(
                "filelink_usage_requests_total"
                f'{{method="{_label_escape(method)}",path="{_label_escape(path)}",status="{_label_escape(status)}"}} '
                f"{int(count)}"
            )

        lines.append("# HELP filelink_usage_request_duration_seconds HTTP request latency in seconds.")
        lines.append("# TYPE filelink_usage_request_duration_seconds histogram")
        duration_buckets: Dict[str, list[int]] = snap["request_duration_bucket_counts"]
        duration_sum: Dict[str, float] = snap["request_duration_sum"]
        duration_count: Dict[str, int] = snap["request_duration_count"]
        for path in sorted(duration_buckets.keys()):
            path_label = _label_escape(path)
            for upper_bound, bucket_value in zip(self.REQUEST_DURATION_BUCKETS, duration_buckets[path]):
                lines.append(
                    "filelink_usage_request_duration_seconds_bucket"
                    f'{{path="{path_label}",le="{_format_bucket(upper_bound)}"}} '
                    f"{int(bucket_value)}"
                )
            lines.append(
                "filelink_usage_request_duration_seconds_bucket"
                f'{{path="{path_label}",le="+Inf"}} '
                f"{int(duration_count.get(path, 0))}"
            )
            lines.append(
                "filelink_usage_request_duration_seconds_sum"
                f'{{path="{path_label}"}} '
                f"{_format_float(float(duration_sum.get(path, 0.0)))}"
            )
            lines.append(
                "filelink_usage_request_duration_seconds_count"
                f'{{path="{path_label}"}} '
                f"{int(duration_count.get(path, 0))}"
            )

        lines.append("# HELP filelink_usage_scans_total Scan passes, by outcome.")
        lines.append("# TYPE filelink_usage_scans_total counter")
        for status, count in sorted(snap["scans_total"].items()):
            lines.append(f'filelink_usage_scans_total{{status="{_label_escape(status)}"}} {int(count)}')

        lines.append("# HELP filelink_usage_owners_scanned_total Owners reconciled by scan passes.")
        lines.append("# TYPE filelink_usage_owners_scanned_total counter")
        lines.append(f"filelink_usage_owners_scanned_total {snap['owners_scanned_total']}")

        lines.append("# HELP filelink_usage_links_detected_total Links detected by scan passes.")
        lines.append("# TYPE filelink_usage_links_detected_total counter")
        lines.append(f"filelink_usage_links_detected_total {snap['links_detected_total']}")

        lines.append("# HELP filelink_usage_usage_changes_total Usage ledger changes, by action.")
        lines.append("# TYPE filelink_usage_usage_changes_total counter")
        for action in USAGE_ACTIONS:
            lines.append(
                f'filelink_usage_usage_changes_total{{action="{action}"}} '
                f"{snap['usage_changes_total'][action]}"
            )

        lines.append("# HELP filelink_usage_invalidations_total File ids sent for cache invalidation.")
        lines.append("# TYPE filelink_usage_invalidations_total counter")
        lines.append(f"filelink_usage_invalidations_total {snap['invalidations_total']}")

        lines.append("# HELP filelink_usage_match_rows Match rows currently stored.")
        lines.append("# TYPE filelink_usage_match_rows gauge")
        lines.append(f"filelink_usage_match_rows {snap['match_rows']}")

        lines.append("# HELP filelink_usage_unresolved_matches Match rows without a managed file.")
        lines.append("# TYPE filelink_usage_unresolved_matches gauge")
        lines.append(f"filelink_usage_unresolved_matches {snap['unresolved_matches']}")

        lines.append("# HELP filelink_usage_last_scan_timestamp_seconds Time of the last completed scan pass.")
        lines.append("# TYPE filelink_usage_last_scan_timestamp_seconds gauge")
        lines.append(
            f"filelink_usage_last_scan_timestamp_seconds {_format_float(snap['last_scan_timestamp'])}"
        )

        return "\n".join(lines) + "\n"


collector = MetricsCollector()


def record_request_metric(*, method: str, path: str, status: int, duration_seconds: float) -> None:
    collector.record_request(method=method, path=path, status=status, duration_seconds=duration_seconds)


def render_prometheus_metrics() -> str:
    return collector.render_prometheus()


def reset_metrics() -> None:
    collector.reset()


def _label_escape(value: str) -> str:
    return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _format_bucket(value: float) -> str:
    return f"{value:g}"


def _format_float(value: float) -> str:
    text = f"{value:.6f}".rstrip("0").rstrip(".")
    return text or "0"
