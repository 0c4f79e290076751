"""
Per-session network interceptor
===============================

* One ``NetworkInterceptor`` per session, bound to that session's page.
* Every request goes through ``UrlFilter`` first (block > allow >
  streaming-only); survivors get the parameter templates applied by
  ``RequestModifier``.
* Responses and failures become ``NetworkMetric`` / ``ErrorLog`` /
  ``StreamingError`` records. Nothing raised while handling a single request
  escapes: the request is continued with whatever modifications succeeded.
"""

from __future__ import annotations

import json
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, MutableMapping, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from loadtester.aggregation import compute_streaming_metrics
from loadtester.exceptions import InterceptorError
from loadtester.randomization import TemplateEngine
from loadtester.schema import (
    BrowserMetrics,
    ErrorLog,
    NetworkMetric,
    ParameterTemplate,
    StreamingError,
    StreamingMetrics,
    TemplateScope,
    TemplateTarget,
)
from loadtester.url_rules import FilterDecision, StreamingType, UrlFilter, matches_url_pattern, streaming_type

logger = logging.getLogger(__name__)

_FORM_RE = re.compile(r"^[^=&\s]+=[^&\s]*(?:&[^=&\s]+=[^&\s]*)*$")

ErrorSink = Callable[..., None]


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class InterceptedRequest:
    url: str
    method: str
    headers: dict[str, str] = field(default_factory=dict)
    post_data: Optional[str] = None


@dataclass
class InterceptionResult:
    modified: bool
    url: str
    headers: dict[str, str]
    post_data: Optional[str]
    applied: list[str] = field(default_factory=list)


class GlobalValues:
    """Values of ``global`` scope templates, resolved once per test run."""

    def __init__(self) -> None:
        self._values: dict[tuple[str, str, str], str] = {}

    def get_or_resolve(self, template: ParameterTemplate, resolve: Callable[[], str]) -> str:
        key = (template.target.value, template.name, template.value_template)
        if key not in self._values:
            self._values[key] = resolve()
        return self._values[key]

    def __len__(self) -> int:
        return len(self._values)


# --------------------------------------------------------------------------- #
# Request modification (pure, no browser involved)
# --------------------------------------------------------------------------- #

def set_query_parameter(url: str, name: str, value: str) -> str:
    parts = urlsplit(url)
    params = _set_pair(parse_qsl(parts.query, keep_blank_values=True), name, value)
    return urlunsplit(parts._replace(query=urlencode(params)))


def is_form_encoded(body: str) -> bool:
    return bool(_FORM_RE.match(body.strip()))


def modify_body(body: str, name: str, value: str) -> Optional[str]:
    """*body* with field *name* set, ``None`` when the format is unsupported."""
    if not body or not body.strip():
        return None

    try:
        data = json.loads(body)
    except ValueError:
        data = None
    else:
        if not isinstance(data, dict):
            return None
        try:
            data[name] = json.loads(value, parse_constant=_reject_constant)
        except ValueError:
            data[name] = value
        return json.dumps(data, separators=(",", ":"))

    if is_form_encoded(body):
        pairs = _set_pair(parse_qsl(body, keep_blank_values=True), name, value)
        return urlencode(pairs)
    return None


def _reject_constant(token: str) -> Any:
    # NaN and Infinity have no JSON encoding
    raise ValueError(f"not a JSON value: {token}")


def _set_pair(pairs: list[tuple[str, str]], name: str, value: str) -> list[tuple[str, str]]:
    out: list[tuple[str, str]] = []
    replaced = False
    for key, old in pairs:
        if key == name:
            if not replaced:
                out.append((key, value))
                replaced = True
            continue
        out.append((key, old))
    if not replaced:
        out.append((name, value))
    return out


def _set_header(headers: dict[str, str], name: str, value: str) -> None:
    for key in [k for k in headers if k.lower() == name.lower()]:
        del headers[key]
    headers[name] = value


def template_applies(template: ParameterTemplate, url: str, method: str) -> bool:
    if template.url_pattern and not matches_url_pattern(url, template.url_pattern):
        return False
    if template.method and template.method.lower() != method.lower():
        return False
    return True


class RequestModifier:
    def __init__(
        self,
        templates: Iterable[ParameterTemplate],
        engine: TemplateEngine,
        global_values: Optional[GlobalValues] = None,
        on_error: Optional[ErrorSink] = None,
    ) -> None:
        self.templates = list(templates)
        self.engine = engine
        self.global_values = global_values if global_values is not None else GlobalValues()
        self._on_error = on_error or (lambda *a, **k: None)

    def resolve(self, template: ParameterTemplate, context: Mapping[str, Any]) -> str:
        if template.scope is TemplateScope.GLOBAL:
            return self.global_values.get_or_resolve(
                template, lambda: self._substitute(template.value_template, context)
            )
        return self._substitute(template.value_template, context)

    def apply(self, request: InterceptedRequest, context: Mapping[str, Any]) -> InterceptionResult:
        url = request.url
        headers = dict(request.headers)
        post_data = request.post_data
        applied: list[str] = []

        for template in self.templates:
            try:
                if not template_applies(template, request.url, request.method):
                    continue
                value = self.resolve(template, context)

                if template.target is TemplateTarget.HEADER:
                    _set_header(headers, template.name, value)
                elif template.target is TemplateTarget.QUERY:
                    url = set_query_parameter(url, template.name, value)
                elif template.target is TemplateTarget.BODY:
                    if not post_data:
                        continue
                    new_body = modify_body(post_data, template.name, value)
                    if new_body is None:
                        self._on_error(
                            "Unable to modify request body - unsupported format",
                            level="warning",
                            template=template.name,
                            url=request.url,
                            postData=post_data[:100],
                        )
                        continue
                    post_data = new_body
                applied.append(template.name)
            except Exception as exc:
                logger.warning("template %s failed on %s", template.name, request.url, exc_info=True)
                self._on_error(
                    "Failed to apply parameter template",
                    error=exc,
                    template=template.name,
                    target=template.target.value,
                    url=request.url,
                    method=request.method,
                )

        return InterceptionResult(
            modified=bool(applied),
            url=url,
            headers=headers,
            post_data=post_data,
            applied=applied,
        )

    def _substitute(self, template: str, context: Mapping[str, Any]) -> str:
        result = self.engine.substitute(template, context)
        if self.engine.has_expressions(result):
            self._on_error(
                "Template contains unresolved expressions",
                level="warning",
                template=template,
                result=result,
            )
        return result


# --------------------------------------------------------------------------- #
# Browser wiring
# --------------------------------------------------------------------------- #

def _headers_size(headers: Mapping[str, str]) -> int:
    return sum(len(k) + len(v) + 4 for k, v in headers.items())   # ": " and CRLF


_FAILURE_TYPES = {
    StreamingType.MANIFEST: "manifest",
    StreamingType.SEGMENT: "segment",
    StreamingType.LICENSE: "license",
    StreamingType.API: "network",
}


class NetworkInterceptor:
    def __init__(
        self,
        page,
        parameter_templates: Iterable[ParameterTemplate] = (),
        initial_context: Optional[Mapping[str, Any]] = None,
        streaming_only: bool = False,
        allowed_urls: Iterable[str] = (),
        blocked_urls: Iterable[str] = (),
        engine: Optional[TemplateEngine] = None,
        global_values: Optional[GlobalValues] = None,
        instance_metrics: Optional[BrowserMetrics] = None,
    ) -> None:
        self.page = page
        self.url_filter = UrlFilter(streaming_only, allowed_urls, blocked_urls)
        self.context: MutableMapping[str, Any] = {
            "sessionId": f"session_{uuid.uuid4().hex[:12]}",
            "timestamp": _now_ms(),
            "requestCount": 0,
            **(initial_context or {}),
        }
        self.modifier = RequestModifier(
            parameter_templates,
            engine or TemplateEngine(),
            global_values,
            on_error=self._log_error,
        )
        self.instance_metrics = instance_metrics

        self._network_metrics: list[NetworkMetric] = []
        self._errors: list[ErrorLog] = []
        self._streaming_errors: list[StreamingError] = []
        self._request_count = 0
        self._blocked_count = 0
        self._started: dict[Any, float] = {}      # request -> monotonic start
        self._aborted: set[Any] = set()
        self._streaming_started: float = 0.0
        self._installed = False

    @property
    def session_id(self) -> str:
        return self.context["sessionId"]

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #
    async def start_interception(self) -> None:
        if self._installed:
            return
        try:
            await self.page.route("**/*", self._handle_route)
            self.page.on("response", self._on_response)
            self.page.on("requestfailed", self._on_request_failed)
        except Exception as exc:
            self._log_error("Failed to start request interception", error=exc)
            raise InterceptorError(f"cannot intercept requests: {exc}") from exc
        self._installed = True

    async def stop_interception(self) -> None:
        if not self._installed:
            return
        self._installed = False
        try:
            self.page.remove_listener("response", self._on_response)
            self.page.remove_listener("requestfailed", self._on_request_failed)
            await self.page.unroute("**/*", self._handle_route)
        except Exception as exc:
            # page may already be gone with its browser
            self._log_error("Failed to stop request interception", error=exc, level="warning")

    def start_streaming_monitoring(self) -> None:
        self._streaming_started = time.monotonic()

    def update_context(self, **updates: Any) -> None:
        self.context.update(updates)
        self.context["timestamp"] = _now_ms()

    # ------------------------------------------------------------------ #
    # Accessors
    # ------------------------------------------------------------------ #
    def get_network_metrics(self) -> list[NetworkMetric]:
        return list(self._network_metrics)

    def get_errors(self) -> list[ErrorLog]:
        return list(self._errors)

    def get_streaming_errors(self) -> list[StreamingError]:
        return list(self._streaming_errors)

    def get_blocked_request_count(self) -> int:
        return self._blocked_count

    def get_request_count(self) -> int:
        return self._request_count

    def get_streaming_metrics(self) -> StreamingMetrics:
        elapsed = time.monotonic() - self._streaming_started if self._streaming_started else 1.0
        return compute_streaming_metrics(self._network_metrics, self._streaming_errors, elapsed)

    def clear_metrics(self) -> None:
        self._network_metrics.clear()
        self._errors.clear()
        self._streaming_errors.clear()
        self._request_count = 0
        self._blocked_count = 0
        self._streaming_started = 0.0

    # ------------------------------------------------------------------ #
    # Handlers
    # ------------------------------------------------------------------ #
    async def _handle_route(self, route, request) -> None:
        try:
            self._request_count += 1
            self.context["requestCount"] = self._request_count
            self.context["timestamp"] = _now_ms()
            if self.instance_metrics is not None:
                self.instance_metrics.request_count += 1

            url = request.url
            if self.url_filter.decide(url) is not FilterDecision.CONTINUE:
                self._blocked_count += 1
                self._aborted.add(request)
                await route.abort("blockedbyclient")
                return

            self._started[request] = time.monotonic()
            result = self.modifier.apply(
                InterceptedRequest(
                    url=url,
                    method=request.method,
                    headers=dict(request.headers),
                    post_data=request.post_data,
                ),
                self.context,
            )
            if not result.modified:
                await route.continue_()
                return

            overrides: dict[str, Any] = {"headers": result.headers}
            if result.url != url:
                overrides["url"] = result.url
            if result.post_data is not None and result.post_data != request.post_data:
                overrides["post_data"] = result.post_data
            await route.continue_(**overrides)

        except Exception as exc:
            self._log_error("Failed to handle intercepted request", error=exc, url=request.url)
            try:
                await route.continue_()
            except Exception as continue_exc:
                self._log_error("Failed to continue request after error", error=continue_exc)

    def _on_response(self, response) -> None:
        try:
            request = response.request
            url = request.url
            started = self._started.pop(request, None)
            if started is not None:
                response_time = (time.monotonic() - started) * 1000
            else:
                response_time = self._engine_timing(request)

            content_length = response.headers.get("content-length")
            try:
                response_size = int(content_length) if content_length else _headers_size(response.headers)
            except ValueError:
                response_size = _headers_size(response.headers)

            kind = streaming_type(url)
            metric = NetworkMetric(
                url=url,
                method=request.method,
                response_time=response_time,
                status_code=response.status,
                request_size=self._request_size(request),
                response_size=response_size,
                is_streaming_related=kind is not None,
                streaming_type=kind.value if kind else None,
            )
            self._network_metrics.append(metric)

            if kind is not None and (response.status >= 400 or response.status == 0):
                self._log_streaming_error(
                    url, _FAILURE_TYPES[kind], f"HTTP {response.status}", error_code=str(response.status)
                )
        except Exception as exc:
            self._log_error("Failed to collect network metrics", error=exc)

    def _on_request_failed(self, request) -> None:
        if request in self._aborted:
            self._aborted.discard(request)
            return
        try:
            url = request.url
            started = self._started.pop(request, None)
            failure = request.failure or "Unknown error"
            kind = streaming_type(url)

            self._network_metrics.append(NetworkMetric(
                url=url,
                method=request.method,
                response_time=(time.monotonic() - started) * 1000 if started is not None else 0.0,
                status_code=0,
                request_size=self._request_size(request),
                is_streaming_related=kind is not None,
                streaming_type=kind.value if kind else None,
            ))
            self._log_error("Request failed", url=url, method=request.method, failure=failure)
            if kind is not None:
                self._log_streaming_error(url, _FAILURE_TYPES[kind], failure)
        except Exception as exc:
            self._log_error("Failed to record request failure", error=exc)

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #
    @staticmethod
    def _request_size(request) -> int:
        try:
            size = len(request.url) + _headers_size(request.headers)
            if request.post_data:
                size += len(request.post_data)
            return size
        except Exception:
            return 0

    @staticmethod
    def _engine_timing(request) -> float:
        # fallback only
        try:
            timing = request.timing
            if timing["requestStart"] >= 0 and timing["responseStart"] >= 0:
                return float(timing["responseStart"] - timing["requestStart"])
        except Exception:
            pass
        return 0.0

    def _log_streaming_error(self, url: str, error_type: str, message: str, error_code: str | None = None) -> None:
        self._streaming_errors.append(StreamingError(
            error_type=error_type,
            error_code=error_code,
            error_message=message,
            url=url,
            context={"sessionId": self.session_id, "requestCount": self._request_count},
        ))

    def _log_error(self, message: str, error: BaseException | None = None, level: str = "error", **context: Any) -> None:
        if level == "error" and self.instance_metrics is not None:
            self.instance_metrics.error_count += 1
        self._errors.append(ErrorLog(
            level=level,
            message=message,
            stack=repr(error) if error else None,
            context={"sessionId": self.session_id, "requestCount": self._request_count, **context},
        ))
        log = logger.warning if level == "warning" else logger.debug if level == "info" else logger.error
        log("[%s] %s %s", self.session_id, message, context or "")
