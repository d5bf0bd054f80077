"""Request logging and log output formatting for the ReviewPilot API.

:class:`RequestLoggingMiddleware` emits one ``api.access`` record per
request; :func:`configure_logging` installs the root handler, optionally
with :class:`JSONFormatter` (``API_STRUCTURED_LOGGING=true``) for log
aggregation.
"""

from __future__ import annotations

import json
import logging
import time
import traceback
import uuid
from datetime import UTC, datetime
from typing import Any

from starlette.datastructures import Headers, QueryParams
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("api.access")

REDACTED = "***"
CORRELATION_HEADER = "X-Correlation-ID"

# Lower-case header names carrying credentials.
_REDACTED_HEADERS = frozenset({"authorization", "cookie", "x-cron-secret", "x-signature"})
# OAuth callback parameters.
_REDACTED_PARAMS = frozenset({"code", "state"})


def _redact_headers(headers: Headers) -> dict[str, str]:
    return {name: REDACTED if name.lower() in _REDACTED_HEADERS else value for name, value in headers.items()}


def _redact_query(params: QueryParams) -> str | None:
    pairs = [f"{name}={REDACTED if name in _REDACTED_PARAMS else value}" for name, value in params.multi_items()]
    return "&".join(pairs) or None


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Access log with timing and a correlation ID.

    The ID is taken from an incoming ``X-Correlation-ID`` header when the
    caller sends one and is echoed back on the response.  Credentials in
    headers and OAuth parameters in the query string are redacted.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or uuid.uuid4().hex
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[CORRELATION_HEADER] = correlation_id
            return response
        finally:
            elapsed_ms = (time.perf_counter() - started) * 1000
            entry: dict[str, Any] = {
                "correlation_id": correlation_id,
                "method": request.method,
                "path": request.url.path,
                "query": _redact_query(request.query_params),
                "status_code": status_code,
                "duration_ms": round(elapsed_ms, 2),
                "client": getattr(request.client, "host", None),
                "tenant_id": getattr(request.state, "tenant_id", "anonymous"),
                "user_id": getattr(request.state, "sub", None),
                "headers": _redact_headers(request.headers),
            }
            logger.log(_level_for(status_code), "request completed", extra={"request": entry})


# ---------------------------------------------------------------------------
# JSON output
# ---------------------------------------------------------------------------

# ``extra=`` keys promoted to top-level fields so log search can filter on them.
_CONTEXT_FIELDS: tuple[str, ...] = ("organization_id", "location_id", "review_id")


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON.

    Output schema per line::

        {
            "timestamp": "2026-10-01T12:34:56.789012+00:00",
            "level": "INFO",
            "logger": "api.services.review_sync",
            "message": "Synced org=... location=...",
            "organization_id": "...",   // when passed via extra=
            "request": { ... },         // RequestLoggingMiddleware only
            "exc_info": "Traceback ..." // exceptions only
        }
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in _CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        request_data = getattr(record, "request", None)
        if request_data is not None:
            payload["request"] = request_data

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)


def configure_logging(*, structured: bool, level: int = logging.INFO) -> None:
    """Install a single root handler, JSON-formatted when *structured*."""
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    if structured:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
