"""
Structured request logging with trace correlation
"""
import time

import structlog
from fastapi import Request
from opentelemetry import trace

logger = structlog.get_logger(__name__)


def current_trace_id() -> str:
    span = trace.get_current_span()
    if span and span.get_span_context().is_valid:
        return format(span.get_span_context().trace_id, '032x')
    return ""


async def logging_middleware(request: Request, call_next):
    """Log all HTTP requests with trace correlation"""
    start_time = time.time()
    trace_id = current_trace_id()

    logger.info(
        "Request started",
        trace_id=trace_id,
        method=request.method,
        path=request.url.path,
        query=str(request.query_params) if request.query_params else "",
        client_ip=request.client.host if request.client else "",
        user_agent=request.headers.get("user-agent", "")
    )

    response = await call_next(request)

    latency = time.time() - start_time
    log = logger.warning if response.status_code >= 500 else logger.info
    log(
        "Request completed",
        trace_id=trace_id,
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        latency_seconds=round(latency, 3)
    )

    return response
