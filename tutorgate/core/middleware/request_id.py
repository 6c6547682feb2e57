"""Request correlation: one request_id per inbound call, echoed back and bound to logs."""

import re
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from tutorgate.core.logging import latency_bucket_ms, log_event, request_id_ctx_var

REQUEST_ID_HEADER = "x-request-id"

# Relayed ids end up in response headers and log lines
_INCOMING_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def request_id_from(request: Request) -> str:
    incoming = request.headers.get(REQUEST_ID_HEADER)
    if incoming and _INCOMING_ID_RE.match(incoming):
        return incoming
    return str(uuid4())


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        rid = request_id_from(request)
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)
        started = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = rid
            log_event(
                "info",
                "request.complete",
                path=request.url.path,
                method=request.method,
                status=response.status_code,
                latency_bucket=latency_bucket_ms((time.perf_counter() - started) * 1000),
            )
        finally:
            request_id_ctx_var.reset(token)
        return response
