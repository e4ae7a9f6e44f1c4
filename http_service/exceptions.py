"""
Custom exception classes for the HTTP service.

Exception hierarchy
-------------------
::

    Exception (Python built-in)
    ├── ServiceError (base class for lifecycle failures)
    │   ├── StartupError               → process exits 1 before serving
    │   ├── ShutdownError              → process exits 1 after draining
    │   └── LifecycleTransitionError   → illegal server state change
    └── HandlerAbortedError            → silent request abort

``ServiceError`` subclasses carry a ``detail`` attribute with a
human-readable message and a ``default_detail`` fallback, so the command
line entry point can report any of them without inspecting the subclass.

``HandlerAbortedError`` deliberately sits outside the ``ServiceError``
tree: it is not a failure.  A request handler raises it to end an
exchange early (for example when it detects that the client went away
mid-response), and the recovery middleware swallows it without logging
or writing anything.
"""


class ServiceError(Exception):
    """
    Base exception for service lifecycle errors.

    Attributes:
        detail: A human-readable description of the failure, printed on
            stderr by the command line entry point.
    """

    default_detail: str = "A service error occurred."

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class StartupError(ServiceError):
    """
    Raised when the service cannot reach the listening state.

    Common causes:
        - The command line arguments could not be parsed (for example a
          non-numeric ``--port``).
        - An ``HTTP_SERVICE_*`` environment variable failed validation.
        - The listening socket could not be bound (port in use,
          permission denied).
        - The serve loop terminated before reporting that it had started.
    """

    default_detail = "The server failed to start."


class ShutdownError(ServiceError):
    """
    Raised when graceful shutdown did not complete cleanly.

    Common causes:
        - In-flight requests were still running when the drain timeout
          elapsed and had to be force-terminated.
        - The serve loop itself failed with an exception.
    """

    default_detail = "The server did not shut down cleanly."


class LifecycleTransitionError(ServiceError):
    """Raised on a server state change outside IDLE → LISTENING → DRAINING → STOPPED."""

    default_detail = "Illegal server lifecycle transition."


class HandlerAbortedError(Exception):
    """
    Raised by a request handler to abort the current exchange.

    The recovery middleware treats this exception as an expected early
    termination: no error is logged and nothing further is written to
    the response.
    """
