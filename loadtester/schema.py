# loadtester/schema.py
"""
Wire-level models: the test configuration handed to the runner and every
structure that ends up in ``TestResults``.

Python code uses snake_case attributes; JSON uses camelCase aliases so that
``results.model_dump(by_alias=True, mode="json")`` is what reports consume.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,   # keep camel⇆snake flexibility
    )


class FrozenCamelModel(CamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


# --------------------------------------------------------------------------- #
# Configuration
# --------------------------------------------------------------------------- #

class TemplateTarget(str, enum.Enum):
    HEADER = "header"
    QUERY = "query"
    BODY = "body"


class TemplateScope(str, enum.Enum):
    GLOBAL = "global"
    PER_SESSION = "per-session"


class ParameterTemplate(FrozenCamelModel):
    target: TemplateTarget
    name: str = Field(..., min_length=1)
    value_template: str
    scope: TemplateScope = TemplateScope.PER_SESSION
    url_pattern: str | None = None
    method: str | None = None


class ResourceLimits(FrozenCamelModel):
    max_memory_per_instance: float = Field(512, gt=0)     # MB
    max_cpu_percentage: float = Field(80, gt=0)
    max_concurrent_instances: int = Field(10, ge=1)


class DRMConfiguration(FrozenCamelModel):
    type: Literal["widevine", "playready", "fairplay"]
    license_url: str
    certificate_url: str | None = None
    custom_headers: dict[str, str] = Field(default_factory=dict)


class LocalStorageEntry(FrozenCamelModel):
    domain: str
    data: dict[str, str] = Field(default_factory=dict)


class TestConfiguration(FrozenCamelModel):
    __test__ = False   # keep pytest from collecting this

    concurrent_users: int = Field(..., ge=1)
    test_duration: float = Field(..., ge=0)   # seconds, 0 = until stopped
    ramp_up_time: float = Field(0, ge=0)
    streaming_url: str
    streaming_only: bool = False
    allowed_urls: list[str] = Field(default_factory=list)
    blocked_urls: list[str] = Field(default_factory=list)
    drm_config: DRMConfiguration | None = None
    request_parameters: list[ParameterTemplate] = Field(default_factory=list)
    # named scalars / arrays merged into every session's template context
    variables: dict[str, str | int | float | list[str]] = Field(default_factory=dict)
    local_storage: list[LocalStorageEntry] = Field(default_factory=list)
    resource_limits: ResourceLimits = Field(default_factory=ResourceLimits)


# --------------------------------------------------------------------------- #
# Records produced while the test runs
# --------------------------------------------------------------------------- #

StreamingType = Literal["manifest", "segment", "license", "api", "other"]


class NetworkMetric(FrozenCamelModel):
    url: str
    method: str
    response_time: float            # ms
    status_code: int
    timestamp: datetime = Field(default_factory=utcnow)
    request_size: int = 0
    response_size: int = 0
    is_streaming_related: bool = False
    streaming_type: StreamingType | None = None

    @property
    def succeeded(self) -> bool:
        return 200 <= self.status_code < 400


class ErrorLog(FrozenCamelModel):
    timestamp: datetime = Field(default_factory=utcnow)
    level: Literal["error", "warning", "info"] = "error"
    message: str
    stack: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)


class StreamingError(FrozenCamelModel):
    timestamp: datetime = Field(default_factory=utcnow)
    error_type: Literal["manifest", "segment", "license", "playback", "network"]
    error_code: str | None = None
    error_message: str
    url: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)


class BrowserMetrics(CamelModel):
    instance_id: str
    memory_usage: float = 0.0       # MB
    cpu_usage: float = 0.0          # percent
    request_count: int = 0
    error_count: int = 0
    uptime: float = 0.0             # seconds


class StreamingMetrics(CamelModel):
    manifest_requests: int = 0
    segment_requests: int = 0
    license_requests: int = 0
    api_requests: int = 0
    total_streaming_requests: int = 0
    average_manifest_time: float = 0.0
    average_segment_time: float = 0.0
    average_license_time: float = 0.0
    streaming_success_rate: float = 0.0
    bandwidth_usage: float = 0.0    # bytes per second
    errors: list[StreamingError] = Field(default_factory=list)


class DRMError(CamelModel):
    timestamp: datetime
    error_code: str
    error_message: str
    license_url: str
    drm_type: str


class DRMMetrics(CamelModel):
    license_request_count: int
    average_license_time: float
    license_success_rate: float
    drm_type: str
    errors: list[DRMError] = Field(default_factory=list)


class TestSummary(CamelModel):
    __test__ = False

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    average_response_time: float = 0.0
    peak_concurrent_users: int = 0
    test_duration: float = 0.0


class TestResults(CamelModel):
    __test__ = False

    test_id: str
    summary: TestSummary
    browser_metrics: list[BrowserMetrics] = Field(default_factory=list)
    drm_metrics: list[DRMMetrics] = Field(default_factory=list)
    network_metrics: list[NetworkMetric] = Field(default_factory=list)
    streaming_metrics: StreamingMetrics = Field(default_factory=StreamingMetrics)
    errors: list[ErrorLog] = Field(default_factory=list)


# --------------------------------------------------------------------------- #
# Live monitoring
# --------------------------------------------------------------------------- #

class ResourceAlert(CamelModel):
    type: Literal["memory", "cpu", "instance_limit", "performance"]
    severity: Literal["warning", "critical"]
    message: str
    timestamp: datetime = Field(default_factory=utcnow)
    instance_id: str | None = None
    value: float | None = None
    limit: float | None = None


class ResourceUtilization(CamelModel):
    memory_utilization: float = 0.0
    cpu_utilization: float = 0.0
    instances_near_memory_limit: int = 0
    instances_near_cpu_limit: int = 0
    total_instances: int = 0
    active_instances: int = 0
    resource_alerts: list[ResourceAlert] = Field(default_factory=list)


class MonitoringData(CamelModel):
    active_sessions: int = 0
    completed_sessions: int = 0
    failed_sessions: int = 0
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    average_response_time: float = 0.0
    current_rps: float = 0.0
    elapsed_time: float = 0.0
    remaining_time: float = 0.0
    memory_usage: float = 0.0
    cpu_usage: float = 0.0
    resource_utilization: ResourceUtilization = Field(default_factory=ResourceUtilization)
