"""
Correlation-ID tracing for the points service
Spans are emitted as structured log lines and carried across calls via X-Trace-ID / X-Span-ID
"""
import uuid
import time
import json
from typing import Dict, Optional
from contextvars import ContextVar
from fastapi import Request
import logging

logger = logging.getLogger(__name__)

trace_id_var: ContextVar[Optional[str]] = ContextVar('trace_id', default=None)
span_id_var: ContextVar[Optional[str]] = ContextVar('span_id', default=None)

class TraceSpan:

    def __init__(self, name: str, trace_id: str = None, parent_span_id: str = None):
        self.span_id = uuid.uuid4().hex[:8]
        self.trace_id = trace_id or uuid.uuid4().hex[:16]
        self.parent_span_id = parent_span_id
        self.name = name
        self.start_time = time.time()
        self.end_time = None
        self.tags = {}
        self.status = "ok"

        trace_id_var.set(self.trace_id)
        span_id_var.set(self.span_id)

    def add_tag(self, key: str, value):
        self.tags[key] = value
        return self

    def set_error(self, error: Exception):
        self.status = "error"
        self.add_tag("error", True)
        self.add_tag("error.type", type(error).__name__)
        self.add_tag("error.message", str(error))
        return self

    def finish(self):
        self.end_time = time.time()
        duration_ms = (self.end_time - self.start_time) * 1000

        trace_data = {
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "operation": self.name,
            "duration_ms": round(duration_ms, 2),
            "status": self.status,
            "tags": self.tags,
            "timestamp": self.start_time
        }

        logger.info(f"TRACE: {json.dumps(trace_data, default=str)}")
        return self

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type:
            self.set_error(exc_val)
        self.finish()

class Tracer:

    def __init__(self, service_name: str):
        self.service_name = service_name

    def start_span(self, name: str, trace_id: str = None, parent_span_id: str = None) -> TraceSpan:
        """Start a new span, inheriting the current trace when none is given"""
        span = TraceSpan(name, trace_id or get_current_trace_id(), parent_span_id or get_current_span_id())
        span.add_tag("service.name", self.service_name)
        return span

    def start_span_from_request(self, request: Request, operation_name: str) -> TraceSpan:
        """Start span from HTTP request headers"""
        trace_id = request.headers.get("X-Trace-ID")
        parent_span_id = request.headers.get("X-Span-ID")

        span = TraceSpan(operation_name, trace_id, parent_span_id)
        span.add_tag("service.name", self.service_name)
        span.add_tag("http.method", request.method)
        span.add_tag("http.path", request.url.path)

        if request.headers.get("authorization", "").startswith("Bearer "):
            span.add_tag("caller.internal", True)
        if request.cookies.get("uid"):
            span.add_tag("caller.user", True)

        return span

points_tracer = Tracer("points-service")
reconciliation_tracer = Tracer("recharge-reconciliation")

def get_current_trace_id() -> Optional[str]:
    return trace_id_var.get()

def get_current_span_id() -> Optional[str]:
    return span_id_var.get()

def get_trace_headers() -> Dict[str, str]:
    """Get headers for propagating trace context to outbound calls"""
    headers = {}
    trace_id = get_current_trace_id()
    span_id = get_current_span_id()

    if trace_id:
        headers["X-Trace-ID"] = trace_id
    if span_id:
        headers["X-Span-ID"] = span_id

    return headers

async def tracing_middleware(request: Request, call_next, tracer: Tracer):
    """FastAPI middleware for automatic request tracing"""
    operation_name = f"{request.method} {request.url.path}"

    with tracer.start_span_from_request(request, operation_name) as span:
        request.state.trace_id = span.trace_id
        response = await call_next(request)
        span.add_tag("http.status_code", response.status_code)

        if response.status_code >= 400:
            span.status = "error"

        response.headers["X-Trace-ID"] = span.trace_id
        response.headers["X-Span-ID"] = span.span_id

        return response
