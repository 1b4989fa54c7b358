"""
HTTP middleware for zkmeasure.

- errors.py     : RFC 7807 problem+json exception handlers
- request_id.py : X-Request-Id propagation, structlog binding, access log
"""

from __future__ import annotations

from .errors import PROBLEM_CT, install_error_handlers
from .request_id import RequestIdMiddleware, install_request_id_middleware

__all__ = ["PROBLEM_CT", "install_error_handlers", "RequestIdMiddleware", "install_request_id_middleware"]
