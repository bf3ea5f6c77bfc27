"""Tracing helpers for FastAPI.

Adds a request-level trace middleware that injects/propagates `X-Request-ID`.
"""

from .logging import set_request_id
from fastapi import Request, Response
from typing import Callable, Awaitable
import uuid


async def trace_middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
    """ASGI middleware to attach a correlation id and echo it in the response.

    - Reads `X-Request-ID` from the incoming request or generates a UUIDv4.
    - Stores it in a ContextVar so logs include the same id.
    - Sets the same header on the outgoing response.

    Args:
        request: Incoming FastAPI request.
        call_next: The next ASGI callable that returns a `Response`.

    Returns:
        The downstream response with `X-Request-ID` header set.
    """
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    set_request_id(rid)
    try:
        response = await call_next(request)
    finally:
        set_request_id(None)
    response.headers["X-Request-ID"] = rid
    return response
