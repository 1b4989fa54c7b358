from __future__ import annotations

"""
Exception -> RFC 7807 "problem+json" mappers for FastAPI.

- Produces `application/problem+json` for:
    * ApiError subclasses (zkmeasure.errors)
    * Starlette/FastAPI HTTPException
    * RequestValidationError, reported as 400: a malformed submission is a
      bad request, not an unprocessable entity
    * Unhandled exceptions (500)
- Attaches ``request_id`` from request.state when the request-id middleware ran.
- Never leaks stack traces in responses; logs them instead.
"""

from http import HTTPStatus
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from zkmeasure.errors import ApiError
from zkmeasure.logging import get_logger

PROBLEM_CT = "application/problem+json"

log = get_logger(__name__)


def _title(status: int) -> str:
    try:
        return HTTPStatus(status).phrase
    except ValueError:
        return "Error"


def _base_problem(
    request: Request,
    *,
    status: int,
    title: str,
    detail: Optional[str] = None,
    type_uri: str = "about:blank",
    code: Optional[str] = None,
    extras: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    prob: Dict[str, Any] = {
        "type": type_uri,
        "title": title,
        "status": status,
        "detail": detail or "",
        "instance": str(request.url.path),
    }
    rid = getattr(request.state, "request_id", None)
    if rid:
        prob["request_id"] = rid
    if code:
        prob["code"] = code
    if extras:
        for k, v in extras.items():
            if k not in prob:
                prob[k] = v
    return prob


# --------------------------- Handlers ---------------------------


async def _handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    problem = exc.to_problem()
    body = _base_problem(
        request,
        status=exc.status_code,
        title=problem["title"],
        detail=problem["detail"],
        type_uri=problem["type"],
        code=exc.code,
        extras={"details": problem["details"]} if "details" in problem else None,
    )
    if exc.status_code >= 500:
        log.error("api_error", status=exc.status_code, code=exc.code, detail=exc.message, cause=repr(exc.__cause__))
    else:
        log.info("api_error", status=exc.status_code, code=exc.code, detail=exc.message)
    return JSONResponse(status_code=exc.status_code, content=body, media_type=PROBLEM_CT)


async def _handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    status = int(exc.status_code)
    detail = str(exc.detail) if getattr(exc, "detail", None) else ""
    body = _base_problem(request, status=status, title=_title(status), detail=detail)
    (log.info if 400 <= status < 500 else log.error)("http_exception", status=status, detail=detail)
    return JSONResponse(status_code=status, content=body, media_type=PROBLEM_CT, headers=getattr(exc, "headers", None))


async def _handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = jsonable_encoder(exc.errors(), exclude={"input", "ctx"})
    body = _base_problem(
        request,
        status=400,
        title=_title(400),
        detail="Request validation failed.",
        code="bad_request",
        extras={"errors": errors},
    )
    log.info("validation_error", errors=errors)
    return JSONResponse(status_code=400, content=body, media_type=PROBLEM_CT)


async def _handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    body = _base_problem(
        request,
        status=500,
        title=_title(500),
        detail="An unexpected error occurred. Please retry or report the request_id.",
        code="server_error",
    )
    log.exception("unhandled_exception", path=str(request.url.path))
    return JSONResponse(status_code=500, content=body, media_type=PROBLEM_CT)


# --------------------------- Installer ---------------------------


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApiError, _handle_api_error)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, _handle_http_exception)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _handle_validation_error)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _handle_unexpected_error)


__all__ = ["install_error_handlers", "PROBLEM_CT"]
