"""
HTTP middleware for the FastAPI application.

Both middleware are pure ASGI classes rather than ``BaseHTTPMiddleware``
subclasses: ``BaseHTTPMiddleware`` runs the downstream app in a separate
task and wraps its exceptions in ``ExceptionGroup``, which would hide
handler faults from the recovery boundary and break the shared response
accounting.

- **RecoveryMiddleware** (outermost): the terminal fault boundary.  It
  converts an exception escaping the handler chain into a tagged
  ``HandlerResult``, logs non-sentinel faults with their stack trace, and
  sends a plain-text 500 response when nothing has been written yet.

- **AccessLogMiddleware**: emits exactly one ``http_request_completed``
  record per request with latency, request line, client address, final
  status and body byte count.

Middleware registration order
-----------------------------
ASGI middleware executes in reverse registration order (last registered =
outermost).  ``server_factory.create_application`` registers the access
log first and recovery second, so the execution order is::

    Request → Recovery → AccessLog → Router → Handler

Both middleware read the same ``RequestContext`` and
``ResponseInterceptor`` from ``scope["state"]``.  Recovery creates them;
the access log reuses them, so "was anything written" observed by
recovery at the moment of a fault is exactly what the handler sent.

Known limitation
----------------
Exceptions raised inside tasks that a handler spawns with
``asyncio.create_task`` are not on the handler's call stack and never
reach this boundary.  A handler that forks concurrent work must
establish its own ``try``/``except`` around it.
"""

import dataclasses
import enum
import threading
import time
import traceback

import starlette.types
import structlog

import http_service.exceptions
import http_service.request_context
import http_service.response_interceptor


INTERNAL_SERVER_ERROR_STATUS_CODE = 500


class InFlightRequestCounter:
    """
    Thread-safe counter tracking the number of HTTP requests currently
    being processed by the service.

    Incremented when a request enters ``RecoveryMiddleware`` and
    decremented when it leaves, whether it completed, aborted or
    faulted.  The lifecycle manager reads the value when draining starts
    and includes it in the ``graceful_shutdown_initiated`` log record.

    A ``threading.Lock`` rather than an ``asyncio.Lock`` guards the count
    because the value may be read from synchronous contexts such as
    signal handlers.
    """

    def __init__(self) -> None:
        self._count: int = 0
        self._lock = threading.Lock()

    def increment(self) -> None:
        with self._lock:
            self._count += 1

    def decrement(self) -> None:
        with self._lock:
            self._count -= 1

    @property
    def count(self) -> int:
        return self._count


class HandlerOutcome(enum.Enum):
    """How the downstream handler chain finished."""

    COMPLETED = "completed"
    ABORTED = "aborted"
    FAULTED = "faulted"


@dataclasses.dataclass(frozen=True)
class HandlerResult:
    """
    Tagged result produced by the recovery fault boundary.

    ``error`` and ``stack`` are only populated for ``FAULTED`` results;
    ``stack`` is the formatted traceback captured where the exception was
    caught.
    """

    outcome: HandlerOutcome
    error: Exception | None = None
    stack: str = ""


class AccessLogMiddleware:
    """
    Log one structured record per HTTP request once the handler returns.

    Record fields:

    - ``latency``: milliseconds since the request entered the pipeline.
    - ``method``, ``path``, ``query``, ``ip``: from the request context.
    - ``status``: the first status code the handler sent, or
      ``UNSET_STATUS_CODE`` (``0``) when none was sent.  The transport's
      implicit default is deliberately not substituted.
    - ``bytes``: total response body bytes sent.

    The record is emitted from a ``finally`` block: a handler that raises
    still produces exactly one record, describing whatever had been sent
    when the exception left the handler.
    """

    def __init__(
        self,
        app: starlette.types.ASGIApp,
        logger: structlog.types.BindableLogger | None = None,
    ) -> None:
        self.app = app
        self._logger = logger if logger is not None else structlog.get_logger()

    async def __call__(
        self,
        scope: starlette.types.Scope,
        receive: starlette.types.Receive,
        send: starlette.types.Send,
    ) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_context = http_service.request_context.bind_request_context(scope)
        response_interceptor = http_service.response_interceptor.bind_response_interceptor(scope, send)

        try:
            await self.app(scope, receive, response_interceptor.send)
        finally:
            latency_milliseconds = (time.monotonic() - request_context.arrived_at) * 1000
            self._logger.info(
                "http_request_completed",
                latency=round(latency_milliseconds, 3),
                method=request_context.method,
                path=request_context.path,
                query=request_context.query,
                ip=request_context.ip,
                status=response_interceptor.status_code,
                bytes=response_interceptor.bytes_written,
            )


class RecoveryMiddleware:
    """
    Terminal fault boundary for request handling.

    Must be the outermost middleware so that it observes faults from
    every inner layer.  Exceptions are handled as follows:

    - ``HandlerAbortedError``: the handler ended the exchange on purpose.
      Nothing is logged and nothing is written.
    - Any other ``Exception``: an error-level
      ``handler_exception_recovered`` record is logged with the error
      message and stack trace.  If no status has been sent yet, a 500
      ``text/plain`` response carrying the error message is sent;
      otherwise the half-written response is left alone because the
      stream is in an indeterminate state.

    Exceptions are never re-raised.  ``BaseException`` subclasses that
    are not ``Exception`` (``asyncio.CancelledError``,
    ``KeyboardInterrupt``) are not handler faults and propagate.
    """

    def __init__(
        self,
        app: starlette.types.ASGIApp,
        logger: structlog.types.BindableLogger | None = None,
        in_flight_request_counter: InFlightRequestCounter | None = None,
    ) -> None:
        self.app = app
        self._logger = logger if logger is not None else structlog.get_logger()
        self._in_flight_request_counter = in_flight_request_counter

    async def __call__(
        self,
        scope: starlette.types.Scope,
        receive: starlette.types.Receive,
        send: starlette.types.Send,
    ) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_context = http_service.request_context.bind_request_context(scope)
        response_interceptor = http_service.response_interceptor.bind_response_interceptor(scope, send)

        if self._in_flight_request_counter is not None:
            self._in_flight_request_counter.increment()
        try:
            handler_result = await self._call_within_fault_boundary(
                scope,
                receive,
                response_interceptor,
            )
            if handler_result.outcome is HandlerOutcome.FAULTED:
                await self._recover_from_fault(
                    handler_result,
                    request_context,
                    response_interceptor,
                )
        finally:
            if self._in_flight_request_counter is not None:
                self._in_flight_request_counter.decrement()

    async def _call_within_fault_boundary(
        self,
        scope: starlette.types.Scope,
        receive: starlette.types.Receive,
        response_interceptor: http_service.response_interceptor.ResponseInterceptor,
    ) -> HandlerResult:
        try:
            await self.app(scope, receive, response_interceptor.send)
        except http_service.exceptions.HandlerAbortedError:
            return HandlerResult(outcome=HandlerOutcome.ABORTED)
        except Exception as handler_error:
            return HandlerResult(
                outcome=HandlerOutcome.FAULTED,
                error=handler_error,
                stack=traceback.format_exc(),
            )
        return HandlerResult(outcome=HandlerOutcome.COMPLETED)

    async def _recover_from_fault(
        self,
        handler_result: HandlerResult,
        request_context: http_service.request_context.RequestContext,
        response_interceptor: http_service.response_interceptor.ResponseInterceptor,
    ) -> None:
        error_message = str(handler_result.error)

        self._logger.error(
            "handler_exception_recovered",
            error=error_message,
            stack=handler_result.stack,
            method=request_context.method,
            path=request_context.path,
            query=request_context.query,
            ip=request_context.ip,
        )

        if response_interceptor.written:
            return

        response_body = f"{error_message}\n".encode("utf-8")
        await response_interceptor.set_status(
            INTERNAL_SERVER_ERROR_STATUS_CODE,
            headers=[
                (b"content-type", b"text/plain; charset=utf-8"),
                (b"x-content-type-options", b"nosniff"),
                (b"content-length", str(len(response_body)).encode()),
            ],
        )
        await response_interceptor.write(response_body)
