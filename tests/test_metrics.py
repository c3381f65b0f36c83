"""Tests for the metrics collector and Prometheus rendering."""

from filelink_usage.metrics import MetricsCollector, _format_float, _label_escape


def test_scan_and_usage_counters():
    m = MetricsCollector()
    m.record_scan("ok", 10, 4)
    m.record_scan("failed", 3, 1)
    m.record_usage_changes(added=2, removed=1)
    m.inc_invalidations(3)

    snap = m.snapshot()
    assert snap["scans_total"] == {"ok": 1, "failed": 1}
    assert snap["owners_scanned_total"] == 13
    assert snap["links_detected_total"] == 5
    assert snap["usage_changes_total"] == {"added": 2, "removed": 1, "repaired": 0}
    assert snap["invalidations_total"] == 3


def test_request_histogram_is_cumulative():
    m = MetricsCollector()
    m.record_request("get", "/v1/stats", 200, 0.02)
    m.record_request("GET", "/v1/stats", 200, 3.0)

    snap = m.snapshot()
    assert snap["requests_total"] == {("GET", "/v1/stats", "200"): 2}
    buckets = dict(zip(MetricsCollector.REQUEST_DURATION_BUCKETS, snap["request_duration_bucket_counts"]["/v1/stats"]))
    assert buckets[0.01] == 0
    assert buckets[0.025] == 1
    assert buckets[5.0] == 2
    assert snap["request_duration_count"]["/v1/stats"] == 2


def test_render_prometheus():
    m = MetricsCollector()
    m.record_scan("ok", 2, 1)
    m.record_request("POST", "/v1/scan", 200, 0.1)
    m.set_runtime_gauges(match_rows=5, unresolved_matches=2, last_scan_timestamp=1700000000.5)

    text = m.render_prometheus()
    assert text.endswith("\n")
    assert "# TYPE filelink_usage_scans_total counter" in text
    assert 'filelink_usage_scans_total{status="ok"} 1' in text
    assert 'filelink_usage_usage_changes_total{action="repaired"} 0' in text
    assert 'filelink_usage_request_duration_seconds_bucket{path="/v1/scan",le="+Inf"} 1' in text
    assert "filelink_usage_match_rows 5" in text
    assert "filelink_usage_unresolved_matches 2" in text
    assert "filelink_usage_last_scan_timestamp_seconds 1700000000.5" in text


def test_reset():
    m = MetricsCollector()
    m.record_scan("ok", 1, 1)
    m.reset()
    assert m.snapshot()["scans_total"] == {}


def test_helpers():
    assert _label_escape('a"b\\c\n') == 'a\\"b\\\\c\\n'
    assert _format_float(0.0) == "0"
    assert _format_float(1.25) == "1.25"
