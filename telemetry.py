#!/usr/bin/env python3
"""
Telemetry setup using OpenTelemetry.

One trace per CLI run: the run span parents a span per feed unit, which in turn
parents the feed fetch and one classifier span per analyzed post. aiohttp client
requests are instrumented underneath. Spans are exported to Azure Monitor when
an Application Insights connection string is provided; otherwise they stay
in-process.

Environment variables:
  - APPLICATIONINSIGHTS_CONNECTION_STRING or AZURE_MONITOR_CONNECTION_STRING
  - OTEL_SERVICE_NAME (default: blog-relevance-analyzer)
  - OTEL_ENVIRONMENT (maps to deployment.environment)
  - DISABLE_TELEMETRY=true to fully disable
"""

from __future__ import annotations

import atexit
import functools
import inspect
import logging
import os
import threading
from typing import Any, Callable, Dict, Optional, Tuple

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SpanExporter
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.trace import Span, Status, StatusCode

from errors import OperationCancelledError

try:
    # Azure Monitor exporter is optional; only used when a connection string is present
    from azure.monitor.opentelemetry.exporter import AzureMonitorTraceExporter  # type: ignore
    _AZURE_AVAILABLE = True
except ImportError:
    AzureMonitorTraceExporter = None  # type: ignore
    _AZURE_AVAILABLE = False

DEFAULT_SERVICE_NAME = "blog-relevance-analyzer"

_init_lock = threading.Lock()
_provider: Optional[TracerProvider] = None

_logger = logging.getLogger("BlogAnalyzer.telemetry")

AttrFn = Callable[..., Optional[Dict[str, Any]]]


def _telemetry_disabled() -> bool:
    return os.environ.get("DISABLE_TELEMETRY", "false").lower() == "true"


def _resource_attributes(service_name: Optional[str]) -> Dict[str, str]:
    attrs = {"service.name": service_name or os.environ.get("OTEL_SERVICE_NAME", DEFAULT_SERVICE_NAME)}
    env = os.environ.get("OTEL_ENVIRONMENT")
    if env:
        attrs["deployment.environment"] = env
    return attrs


def _build_exporter() -> Tuple[Optional[SpanExporter], str]:
    """Return the configured span exporter, if any, and a short label for the log line."""
    conn = os.environ.get("APPLICATIONINSIGHTS_CONNECTION_STRING") or os.environ.get(
        "AZURE_MONITOR_CONNECTION_STRING"
    )
    if not conn:
        return None, "none"
    if not _AZURE_AVAILABLE:
        _logger.warning("Connection string configured but 'azure-monitor-opentelemetry-exporter' is not installed")
        return None, "exporter package missing"
    try:
        return AzureMonitorTraceExporter.from_connection_string(conn), "azure monitor"  # type: ignore
    except ValueError as e:
        _logger.warning("Failed to enable Azure exporter (%s); spans will not be exported", e)
        return None, "invalid connection string"


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Install the tracer provider and instrument aiohttp and logging.

    Idempotent. If DISABLE_TELEMETRY=true, it's a no-op and every span the
    pipeline opens is a non-recording one.
    """
    global _provider
    if _telemetry_disabled() or _provider is not None:
        return
    with _init_lock:
        if _provider is not None:
            return

        attrs = _resource_attributes(service_name)
        # Reuse a provider installed by external auto-instrumentation
        existing = trace.get_tracer_provider()
        if isinstance(existing, TracerProvider):
            provider = existing
        else:
            provider = TracerProvider(resource=Resource.create(attrs))

        exporter, label = _build_exporter()
        if exporter is not None:
            provider.add_span_processor(BatchSpanProcessor(exporter))
        _logger.debug("Telemetry initialized (service=%s, export=%s)", attrs["service.name"], label)

        if provider is not existing:
            trace.set_tracer_provider(provider)
        _provider = provider

        AioHttpClientInstrumentor().instrument()
        # Inject trace/span ids into log records without changing the log format
        LoggingInstrumentor().instrument(set_logging_format=False)

        atexit.register(shutdown_telemetry)


def shutdown_telemetry() -> None:
    """Flush pending spans. Safe to call more than once."""
    global _provider
    provider, _provider = _provider, None
    if provider is not None:
        provider.shutdown()


def get_tracer(name: str = DEFAULT_SERVICE_NAME):
    """Get the OpenTelemetry tracer for a named subsystem."""
    return trace.get_tracer(name)


def _apply_attrs(span: Span, attrs: Optional[Dict[str, Any]]) -> None:
    for key, value in (attrs or {}).items():
        if value is not None:
            span.set_attribute(key, value)


def _record_failure(span: Span, exc: BaseException) -> None:
    # Cancellation closes every open span and is not that span's failure
    if isinstance(exc, OperationCancelledError):
        span.add_event("cancelled", {"reason": str(exc)})
        return
    span.record_exception(exc)
    span.set_status(Status(StatusCode.ERROR, str(exc) or exc.__class__.__name__))


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    static_attrs: dict | None = None,
    attr_from_args: Optional[AttrFn] = None,
    attr_from_result: Optional[AttrFn] = None,
):
    """Decorator to wrap a function call in an OpenTelemetry span.

    Args:
        span_name: Name of the span (defaults to module.funcname)
        tracer_name: Tracer name (defaults to the first dotted part of span_name)
        static_attrs: Attributes set on every span
        attr_from_args: Called with the function's (*args, **kwargs); returns attributes
        attr_from_result: Called with the return value; returns attributes

    Works with sync and async functions. Exceptions are recorded on the span
    and re-raised unchanged.
    """

    def _decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tname = tracer_name or name.split(".")[0] or DEFAULT_SERVICE_NAME

        def _open_span():
            return get_tracer(tname).start_as_current_span(
                name, record_exception=False, set_status_on_exception=False
            )

        def _on_enter(span, args, kwargs):
            _apply_attrs(span, static_attrs)
            if attr_from_args is not None:
                _apply_attrs(span, attr_from_args(*args, **kwargs))

        def _on_result(span, result):
            if attr_from_result is not None:
                _apply_attrs(span, attr_from_result(result))
            return result

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def _aw(*args, **kwargs):
                with _open_span() as span:
                    _on_enter(span, args, kwargs)
                    try:
                        return _on_result(span, await func(*args, **kwargs))
                    except Exception as e:
                        _record_failure(span, e)
                        raise

            return _aw

        @functools.wraps(func)
        def _w(*args, **kwargs):
            with _open_span() as span:
                _on_enter(span, args, kwargs)
                try:
                    return _on_result(span, func(*args, **kwargs))
                except Exception as e:
                    _record_failure(span, e)
                    raise

        return _w

    return _decorator


__all__ = ["init_telemetry", "shutdown_telemetry", "get_tracer", "trace_span"]
