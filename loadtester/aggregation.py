"""Pure computations over collected records: summaries, DRM, streaming, alerts."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping, Sequence

from loadtester.schema import (
    DRMConfiguration,
    DRMError,
    DRMMetrics,
    NetworkMetric,
    ResourceAlert,
    StreamingError,
    StreamingMetrics,
    TestSummary,
)


def average_response_time(metrics: Sequence[NetworkMetric]) -> float:
    if not metrics:
        return 0.0
    return sum(m.response_time for m in metrics) / len(metrics)


def compute_streaming_metrics(
    metrics: Sequence[NetworkMetric],
    errors: Sequence[StreamingError],
    elapsed_seconds: float,
) -> StreamingMetrics:
    streaming = [m for m in metrics if m.is_streaming_related]
    by_type: dict[str, list[NetworkMetric]] = {"manifest": [], "segment": [], "license": [], "api": []}
    for m in streaming:
        by_type.setdefault(m.streaming_type or "other", []).append(m)

    ok = sum(1 for m in streaming if m.succeeded)
    total_bytes = sum(m.request_size + m.response_size for m in streaming)

    return StreamingMetrics(
        manifest_requests=len(by_type["manifest"]),
        segment_requests=len(by_type["segment"]),
        license_requests=len(by_type["license"]),
        api_requests=len(by_type["api"]),
        total_streaming_requests=len(streaming),
        average_manifest_time=average_response_time(by_type["manifest"]),
        average_segment_time=average_response_time(by_type["segment"]),
        average_license_time=average_response_time(by_type["license"]),
        streaming_success_rate=(ok / len(streaming) * 100) if streaming else 0.0,
        bandwidth_usage=total_bytes / max(elapsed_seconds, 1e-3),
        errors=list(errors),
    )


def summarize(metrics: Sequence[NetworkMetric], peak_users: int, duration: float) -> TestSummary:
    successful = sum(1 for m in metrics if m.succeeded)
    return TestSummary(
        total_requests=len(metrics),
        successful_requests=successful,
        failed_requests=len(metrics) - successful,
        average_response_time=average_response_time(metrics),
        peak_concurrent_users=peak_users,
        test_duration=duration,
    )


def is_license_request(metric: NetworkMetric) -> bool:
    url = metric.url.lower()
    return metric.streaming_type == "license" or "license" in url or "drm" in url


def compute_drm_metrics(
    drm_config: DRMConfiguration | None,
    metrics: Sequence[NetworkMetric],
    streaming_errors: Iterable[StreamingError],
) -> list[DRMMetrics]:
    """License-acquisition figures, one entry per configured DRM system."""
    if drm_config is None:
        return []

    licenses = [m for m in metrics if is_license_request(m)]
    ok = sum(1 for m in licenses if m.succeeded)
    errors = [
        DRMError(
            timestamp=err.timestamp,
            error_code=err.error_code or "unknown",
            error_message=err.error_message,
            license_url=err.url or drm_config.license_url,
            drm_type=drm_config.type,
        )
        for err in streaming_errors
        if err.error_type == "license" or (err.url and "license" in err.url.lower())
    ]
    return [DRMMetrics(
        license_request_count=len(licenses),
        average_license_time=average_response_time(licenses),
        license_success_rate=(ok / len(licenses) * 100) if licenses else 0.0,
        drm_type=drm_config.type,
        errors=errors,
    )]


def requests_per_second(metrics: Iterable[NetworkMetric], window: float = 10.0, now: datetime | None = None) -> float:
    cutoff = (now or datetime.now(tz=timezone.utc)) - timedelta(seconds=window)
    return sum(1 for m in metrics if m.timestamp > cutoff) / window


def _threshold_alert(kind: str, label: str, value: float, warn: float, crit: float, unit: str = "%") -> ResourceAlert | None:
    if value > crit:
        return ResourceAlert(type=kind, severity="critical", message=f"Critical {label}: {value:.1f}{unit}", value=value, limit=crit)
    if value > warn:
        return ResourceAlert(type=kind, severity="warning", message=f"High {label}: {value:.1f}{unit}", value=value, limit=warn)
    return None


def resource_alerts(
    stats: Mapping[str, Any],
    max_instances: int,
    metrics: Sequence[NetworkMetric],
    now: datetime | None = None,
) -> list[ResourceAlert]:
    now = now or datetime.now(tz=timezone.utc)
    alerts = [
        _threshold_alert("memory", "memory utilization", stats["memory_utilization"], 80, 90),
        _threshold_alert("cpu", "CPU utilization", stats["cpu_utilization"], 80, 90),
    ]

    total = stats["total_instances"]
    usage = total / max_instances * 100 if max_instances else 0.0
    if usage > 90:
        alerts.append(ResourceAlert(
            type="instance_limit", severity="critical",
            message=f"Near maximum instance limit: {total}/{max_instances}",
            value=total, limit=max_instances,
        ))
    elif usage > 80:
        alerts.append(ResourceAlert(
            type="instance_limit", severity="warning",
            message=f"High instance usage: {total}/{max_instances}",
            value=total, limit=max_instances,
        ))

    recent = [m for m in metrics if m.timestamp > now - timedelta(seconds=30)]
    if recent:
        avg = average_response_time(recent)
        if avg > 5000:
            alerts.append(ResourceAlert(
                type="performance", severity="critical",
                message=f"Very slow response times: {avg:.0f}ms average", value=avg, limit=5000,
            ))
        elif avg > 2000:
            alerts.append(ResourceAlert(
                type="performance", severity="warning",
                message=f"Slow response times: {avg:.0f}ms average", value=avg, limit=2000,
            ))

    return [a for a in alerts if a is not None]
