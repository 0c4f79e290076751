"""Tests for result and monitoring computations."""

from datetime import datetime, timedelta, timezone

import pytest

from loadtester import aggregation
from loadtester.schema import DRMConfiguration, NetworkMetric, StreamingError


def _metric(url="https://site.test/", status=200, response_time=100.0, seconds_ago=0, **kwargs):
    return NetworkMetric(
        url=url,
        method="GET",
        response_time=response_time,
        status_code=status,
        timestamp=datetime.now(tz=timezone.utc) - timedelta(seconds=seconds_ago),
        **kwargs,
    )


class TestSummary:
    def test_counts_and_average(self):
        summary = aggregation.summarize(
            [_metric(status=200), _metric(status=302, response_time=300), _metric(status=0, response_time=0)],
            peak_users=2,
            duration=10,
        )
        assert summary.total_requests == 3
        assert summary.successful_requests == 2
        assert summary.failed_requests == 1
        assert summary.average_response_time == pytest.approx(400 / 3)
        assert summary.peak_concurrent_users == 2

    def test_empty(self):
        summary = aggregation.summarize([], peak_users=0, duration=0)
        assert summary.total_requests == 0
        assert summary.average_response_time == 0


class TestDrm:
    def test_no_config_no_metrics(self):
        assert aggregation.compute_drm_metrics(None, [_metric(url="https://x/license")], []) == []

    def test_license_requests_grouped_by_type(self):
        config = DRMConfiguration(type="playready", license_url="https://drm.test/rightsmanager")
        metrics = [
            _metric(url="https://drm.test/license", response_time=200),
            _metric(url="https://drm.test/license", status=403, response_time=100),
            _metric(url="https://cdn.test/seg.ts"),
        ]
        errors = [StreamingError(error_type="license", error_message="HTTP 403", error_code="403")]

        (drm,) = aggregation.compute_drm_metrics(config, metrics, errors)

        assert drm.drm_type == "playready"
        assert drm.license_request_count == 2
        assert drm.average_license_time == pytest.approx(150)
        assert drm.license_success_rate == pytest.approx(50)
        assert drm.errors[0].license_url == "https://drm.test/rightsmanager"
        assert drm.errors[0].error_code == "403"


class TestRates:
    def test_requests_per_second_window(self):
        metrics = [_metric(seconds_ago=1), _metric(seconds_ago=5), _metric(seconds_ago=30)]
        assert aggregation.requests_per_second(metrics) == pytest.approx(0.2)

    def test_streaming_metrics(self):
        metrics = [
            _metric(url="https://c/a.m3u8", is_streaming_related=True, streaming_type="manifest",
                    request_size=100, response_size=900),
            _metric(url="https://c/b.ts", status=500, is_streaming_related=True, streaming_type="segment"),
            _metric(url="https://c/page"),
        ]
        streaming = aggregation.compute_streaming_metrics(metrics, [], elapsed_seconds=2)
        assert streaming.total_streaming_requests == 2
        assert streaming.streaming_success_rate == pytest.approx(50)
        assert streaming.bandwidth_usage == pytest.approx(500)


class TestAlerts:
    def _stats(self, memory=0.0, cpu=0.0, instances=1):
        return {"memory_utilization": memory, "cpu_utilization": cpu, "total_instances": instances}

    def test_quiet(self):
        assert aggregation.resource_alerts(self._stats(), 10, []) == []

    def test_memory_and_cpu_thresholds(self):
        alerts = aggregation.resource_alerts(self._stats(memory=85, cpu=95), 10, [])
        by_type = {a.type: a.severity for a in alerts}
        assert by_type == {"memory": "warning", "cpu": "critical"}

    def test_instance_ceiling(self):
        (alert,) = aggregation.resource_alerts(self._stats(instances=10), 10, [])
        assert alert.type == "instance_limit"
        assert alert.severity == "critical"

    def test_slow_responses_in_last_30s(self):
        metrics = [_metric(response_time=2500), _metric(response_time=9000, seconds_ago=60)]
        (alert,) = aggregation.resource_alerts(self._stats(), 10, metrics)
        assert alert.type == "performance"
        assert alert.severity == "warning"
