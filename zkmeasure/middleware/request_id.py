from __future__ import annotations

"""
Request ID & access-log middleware.

- Generates or propagates **X-Request-Id** for every request (inbound values
  are accepted only if they look like an id; anything else is replaced).
- Exposes it as ``request.state.request_id`` and binds it into structlog's
  contextvars, so every log line of the request carries it. Pipeline tasks
  scheduled by the request inherit it as well.
- Echoes the id in the response and emits one ``http.access`` event.

Usage
-----
    from zkmeasure.middleware.request_id import install_request_id_middleware

    install_request_id_middleware(app)
"""

import re
import time
import uuid

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from structlog.contextvars import bind_contextvars, unbind_contextvars

from zkmeasure.logging import get_logger

REQUEST_ID_HEADER = "X-Request-Id"

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

log = get_logger("zkmeasure.access")


class RequestIdMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, header: str = REQUEST_ID_HEADER, access_log: bool = True):
        super().__init__(app)
        self.header = header
        self.access_log = access_log

    async def dispatch(self, request: Request, call_next):
        inbound = request.headers.get(self.header)
        req_id = inbound if inbound and _REQUEST_ID_RE.match(inbound) else uuid.uuid4().hex
        request.state.request_id = req_id

        bind_contextvars(request_id=req_id)
        start = time.perf_counter()
        status = 500
        try:
            response: Response = await call_next(request)
            status = response.status_code
        finally:
            if self.access_log:
                log.info(
                    "http.access",
                    method=request.method,
                    path=request.url.path,
                    status=status,
                    duration_ms=round((time.perf_counter() - start) * 1000, 2),
                )
            unbind_contextvars("request_id")

        response.headers[self.header] = req_id
        return response


def install_request_id_middleware(app: FastAPI, *, header: str = REQUEST_ID_HEADER, access_log: bool = True) -> None:
    app.add_middleware(RequestIdMiddleware, header=header, access_log=access_log)


__all__ = ["RequestIdMiddleware", "install_request_id_middleware", "REQUEST_ID_HEADER"]
