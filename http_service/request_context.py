"""
Per-request context captured once at ingress.

The outermost middleware builds a ``RequestContext`` from the ASGI scope
and stores it in ``scope["state"]``; every inner middleware reads the
same instance back, so the arrival time and client address logged for a
request are identical across log records.
"""

import dataclasses
import time

import starlette.types

REQUEST_CONTEXT_STATE_KEY = "request_context"


@dataclasses.dataclass(frozen=True)
class RequestContext:
    """
    Immutable description of an inbound HTTP request.

    Attributes:
        method: The HTTP method (``GET``, ``POST``, ...).
        path: The decoded URL path without the query string.
        query: The raw query string, without the leading ``?``.
        ip: The remote address as ``host:port``, or an empty string when
            the transport does not report one.
        arrived_at: ``time.monotonic()`` reading taken at ingress.
    """

    method: str
    path: str
    query: str
    ip: str
    arrived_at: float

    @classmethod
    def from_scope(cls, scope: starlette.types.Scope) -> "RequestContext":
        return cls(
            method=scope.get("method", ""),
            path=scope.get("path", ""),
            query=scope.get("query_string", b"").decode("latin-1"),
            ip=_format_client_address(scope.get("client")),
            arrived_at=time.monotonic(),
        )


def _format_client_address(client: tuple[str, int] | None) -> str:
    if not client:
        return ""
    host, port = client
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def bind_request_context(scope: starlette.types.Scope) -> RequestContext:
    """
    Return the context stored for this request, creating it on first use.
    """
    state = scope.setdefault("state", {})
    request_context = state.get(REQUEST_CONTEXT_STATE_KEY)
    if request_context is None:
        request_context = RequestContext.from_scope(scope)
        state[REQUEST_CONTEXT_STATE_KEY] = request_context
    return request_context
