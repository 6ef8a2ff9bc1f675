"""
Structured JSON logging and the per-request access log.

Every record carries ts and level, plus request_id while a request is in
flight. The access log line for a request also carries whatever the route
attached through log_route_data, such as the resolution outcome or the
webhook result.
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from smscrm.metrics import record_http_request

REQUEST_ID_HEADER = "X-Request-ID"

# Endpoints left out of the HTTP metrics
UNMETERED_PATHS = frozenset({"/metrics"})

request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

access_logger = logging.getLogger("smscrm.requests")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON records with a millisecond UTC ts, the level name and the current request_id."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            log_record["ts"] = _utc_timestamp()
        log_record["level"] = record.levelname

        request_id = request_id_ctx.get()
        if request_id and "request_id" not in log_record:
            log_record["request_id"] = request_id


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def setup_logging(log_level: str = "INFO"):
    """
    Route the root and uvicorn loggers through one JSON stdout handler.

    uvicorn's own access log is switched off since RequestLoggingMiddleware
    writes one line per request, and the Twilio HTTP client is held at
    WARNING so request bodies stay out of the log.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False

    logging.getLogger("uvicorn.access").disabled = True
    logging.getLogger("twilio.http_client").setLevel(logging.WARNING)

    return root


def level_for_status(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Assigns a request id, records HTTP metrics and writes the access log line.

    An inbound X-Request-ID is kept so ids can be followed across services;
    otherwise a fresh one is generated. Either way it is echoed back.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            elapsed = time.perf_counter() - started
            response.headers[REQUEST_ID_HEADER] = request_id

            path = request.url.path
            if path not in UNMETERED_PATHS:
                record_http_request(
                    method=request.method,
                    path=path,
                    status=response.status_code,
                    latency_seconds=elapsed,
                )

            fields = {
                "request_id": request_id,
                "method": request.method,
                "path": path,
                "status": response.status_code,
                "latency_ms": round(elapsed * 1000, 2),
            }
            fields.update(getattr(request.state, "route_log_data", {}))
            access_logger.log(level_for_status(response.status_code), "Request completed", extra=fields)
            return response
        finally:
            request_id_ctx.reset(token)


def log_route_data(request: Request, **fields) -> None:
    """Add fields to this request's access log line; None values are dropped."""
    route_data = getattr(request.state, "route_log_data", {})
    route_data.update({k: v for k, v in fields.items() if v is not None})
    request.state.route_log_data = route_data
