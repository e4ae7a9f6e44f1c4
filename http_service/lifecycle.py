"""
Server lifecycle management.

``ServerLifecycleManager`` owns the listening socket and the Uvicorn
serve loop and moves through exactly one path of states::

    IDLE ──start()──▶ LISTENING ──drain()──▶ DRAINING ──▶ STOPPED

Any other transition raises ``LifecycleTransitionError``.

Startup
-------
The manager binds the TCP socket itself instead of letting Uvicorn do
it.  A bind failure therefore surfaces synchronously as ``StartupError``
before any task is spawned, and binding port 0 yields an ephemeral port
whose real value is reported as ``bound_address``.  The serve loop runs
on its own asyncio task via ``uvicorn.Server._serve``, which unlike
``serve()`` does not install Uvicorn's signal handlers: signals belong
to the manager.  ``start()`` only returns once Uvicorn reports that it
is accepting connections.

Waiting
-------
``wait_for_shutdown_trigger`` is the only blocking point of the
controlling task.  It wakes on SIGINT/SIGTERM, on an externally supplied
``asyncio.Event`` (the programmatic cancellation used by tests and
embedders), or when the serve loop ends on its own.

Draining
--------
``drain()`` asks Uvicorn to exit: it stops accepting, closes idle
keep-alive connections and waits for in-flight requests.  Uvicorn's own
graceful-shutdown timeout is left unset; the manager enforces a single
fixed bound (``drain_timeout_seconds``, default 10 s) measured from the
moment draining starts.  When the bound elapses, the remaining
connections are closed, their request tasks cancelled and
``ShutdownError`` is raised after the serve loop has unwound.
"""

import asyncio
import contextlib
import enum
import signal
import socket
import time

import starlette.types
import structlog
import uvicorn

import http_service.exceptions
import http_service.middleware

logger = structlog.get_logger()

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8080
DEFAULT_DRAIN_TIMEOUT_SECONDS = 10.0
DEFAULT_STARTUP_TIMEOUT_SECONDS = 5.0

# Time the serve loop gets to unwind after connections were
# force-terminated, before its task is cancelled outright.
FORCED_TERMINATION_GRACE_SECONDS = 1.0

STARTUP_POLL_INTERVAL_SECONDS = 0.01

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ServerLifecycleState(enum.Enum):
    IDLE = "idle"
    LISTENING = "listening"
    DRAINING = "draining"
    STOPPED = "stopped"


_ALLOWED_TRANSITIONS: dict[ServerLifecycleState, ServerLifecycleState] = {
    ServerLifecycleState.IDLE: ServerLifecycleState.LISTENING,
    ServerLifecycleState.LISTENING: ServerLifecycleState.DRAINING,
    ServerLifecycleState.DRAINING: ServerLifecycleState.STOPPED,
}


class ShutdownTrigger(enum.Enum):
    """What ended the LISTENING state."""

    SIGNAL = "signal"
    CANCELLATION = "cancellation"
    SERVER_EXITED = "server_exited"


def _format_address(host: str, port: int) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def _task_exception(task: asyncio.Task) -> BaseException | None:
    """Return the task's exception, treating cancellation as no exception."""
    if task.cancelled():
        return None
    return task.exception()


async def _serve_on_sockets(uvicorn_server: uvicorn.Server, sockets: list[socket.socket]) -> None:
    """
    Run Uvicorn's serve loop on already-bound sockets.

    Uvicorn reports a failed application startup with ``sys.exit``.  A
    ``SystemExit`` leaving a task is re-raised out of the event loop, so
    it is converted to ``StartupError`` here, inside the task.
    """
    try:
        await uvicorn_server._serve(sockets=sockets)
    except SystemExit as exit_error:
        raise http_service.exceptions.StartupError(
            f"The serve loop exited with status {exit_error.code} before startup completed.",
        ) from exit_error


class ServerLifecycleManager:
    """
    Run an ASGI application on a listening socket until told to stop.

    Args:
        asgi_application: The application to serve (normally the result of
            ``server_factory.create_application``).
        host: Interface to bind.
        port: TCP port to bind; 0 selects a free port.
        drain_timeout_seconds: Bound on the graceful drain.
        startup_timeout_seconds: Bound on waiting for Uvicorn to report
            that it has started.
        in_flight_request_counter: Optional counter maintained by the
            recovery middleware; its value is logged when draining starts.
    """

    def __init__(
        self,
        asgi_application: starlette.types.ASGIApp,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        drain_timeout_seconds: float = DEFAULT_DRAIN_TIMEOUT_SECONDS,
        startup_timeout_seconds: float = DEFAULT_STARTUP_TIMEOUT_SECONDS,
        in_flight_request_counter: http_service.middleware.InFlightRequestCounter | None = None,
    ) -> None:
        self._asgi_application = asgi_application
        self._host = host
        self._port = port
        self._drain_timeout_seconds = drain_timeout_seconds
        self._startup_timeout_seconds = startup_timeout_seconds
        self._in_flight_request_counter = in_flight_request_counter

        self._state = ServerLifecycleState.IDLE
        self._listening_socket: socket.socket | None = None
        self._uvicorn_server: uvicorn.Server | None = None
        self._serve_task: asyncio.Task | None = None

    @property
    def state(self) -> ServerLifecycleState:
        return self._state

    @property
    def bound_address(self) -> str | None:
        """``host:port`` of the listening socket, or ``None`` before ``start()``."""
        if self._listening_socket is None or self._listening_socket.fileno() == -1:
            return None
        host, port = self._listening_socket.getsockname()[:2]
        return _format_address(host, port)

    @property
    def bound_port(self) -> int | None:
        if self._listening_socket is None or self._listening_socket.fileno() == -1:
            return None
        return self._listening_socket.getsockname()[1]

    def _transition_to(self, next_state: ServerLifecycleState) -> None:
        if _ALLOWED_TRANSITIONS.get(self._state) is not next_state:
            raise http_service.exceptions.LifecycleTransitionError(
                f"Cannot move the server from {self._state.value} to {next_state.value}.",
            )
        logger.debug(
            "server_lifecycle_transition",
            from_state=self._state.value,
            to_state=next_state.value,
        )
        self._state = next_state

    # ── IDLE → LISTENING ──────────────────────────────────────────────

    async def start(self) -> None:
        """
        Bind the socket, start the serve loop and wait until it accepts.

        Raises:
            StartupError: the socket could not be bound, or the serve loop
                exited or stalled before reporting that it had started.
                The manager stays IDLE in that case.
        """
        if self._state is not ServerLifecycleState.IDLE:
            raise http_service.exceptions.LifecycleTransitionError(
                f"Cannot start a server that is {self._state.value}.",
            )

        try:
            listening_socket = socket.create_server((self._host, self._port))
        except OSError as bind_error:
            raise http_service.exceptions.StartupError(
                f"Cannot listen on {_format_address(self._host, self._port)}: {bind_error}",
            ) from bind_error

        uvicorn_config = uvicorn.Config(
            self._asgi_application,
            host=self._host,
            port=listening_socket.getsockname()[1],
            log_config=None,
            access_log=False,
            lifespan="auto",
            timeout_graceful_shutdown=None,
        )
        uvicorn_server = uvicorn.Server(uvicorn_config)
        serve_task = asyncio.create_task(
            _serve_on_sockets(uvicorn_server, [listening_socket]),
            name="http-serve-loop",
        )

        try:
            await self._wait_until_started(uvicorn_server, serve_task)
        except http_service.exceptions.StartupError:
            listening_socket.close()
            raise

        self._listening_socket = listening_socket
        self._uvicorn_server = uvicorn_server
        self._serve_task = serve_task
        self._transition_to(ServerLifecycleState.LISTENING)
        logger.info("server_started", addr=self.bound_address)

    async def _wait_until_started(
        self,
        uvicorn_server: uvicorn.Server,
        serve_task: asyncio.Task,
    ) -> None:
        deadline = time.monotonic() + self._startup_timeout_seconds
        while not uvicorn_server.started:
            if serve_task.done():
                serve_error = _task_exception(serve_task)
                if isinstance(serve_error, http_service.exceptions.StartupError):
                    raise serve_error
                raise http_service.exceptions.StartupError(
                    f"The serve loop exited before startup completed: {serve_error}",
                ) from serve_error
            if time.monotonic() >= deadline:
                serve_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await serve_task
                raise http_service.exceptions.StartupError(
                    f"The serve loop did not start within {self._startup_timeout_seconds} seconds.",
                )
            await asyncio.sleep(STARTUP_POLL_INTERVAL_SECONDS)

    # ── LISTENING ─────────────────────────────────────────────────────

    async def wait_for_shutdown_trigger(
        self,
        shutdown_event: asyncio.Event | None = None,
    ) -> ShutdownTrigger:
        """
        Block until SIGINT/SIGTERM, ``shutdown_event`` or the serve loop ends.

        Signal handlers are installed on the running loop for the duration
        of the wait and removed afterwards.  Platforms without
        ``loop.add_signal_handler`` (Windows, non-main threads) log a
        warning and rely on ``shutdown_event`` alone.
        """
        if self._state is not ServerLifecycleState.LISTENING:
            raise http_service.exceptions.LifecycleTransitionError(
                f"Cannot wait for shutdown while the server is {self._state.value}.",
            )

        loop = asyncio.get_running_loop()
        signal_received = asyncio.Event()
        installed_signals: list[signal.Signals] = []
        for shutdown_signal in SHUTDOWN_SIGNALS:
            try:
                loop.add_signal_handler(shutdown_signal, signal_received.set)
            except (NotImplementedError, RuntimeError, ValueError):
                logger.warning("shutdown_signal_handler_unavailable", signal=shutdown_signal.name)
            else:
                installed_signals.append(shutdown_signal)

        waiters: dict[asyncio.Future, ShutdownTrigger] = {
            asyncio.ensure_future(signal_received.wait()): ShutdownTrigger.SIGNAL,
            self._serve_task: ShutdownTrigger.SERVER_EXITED,
        }
        if shutdown_event is not None:
            waiters[asyncio.ensure_future(shutdown_event.wait())] = ShutdownTrigger.CANCELLATION

        try:
            completed, _ = await asyncio.wait(list(waiters), return_when=asyncio.FIRST_COMPLETED)
        finally:
            for shutdown_signal in installed_signals:
                loop.remove_signal_handler(shutdown_signal)
            for waiter in waiters:
                if waiter is not self._serve_task:
                    waiter.cancel()

        completed_triggers = {waiters[waiter] for waiter in completed}
        shutdown_trigger = next(trigger for trigger in ShutdownTrigger if trigger in completed_triggers)
        if shutdown_trigger is ShutdownTrigger.SERVER_EXITED:
            logger.error(
                "server_exited_unexpectedly",
                error=str(_task_exception(self._serve_task)),
            )
        else:
            logger.info("shutdown_triggered", trigger=shutdown_trigger.value)
        return shutdown_trigger

    # ── LISTENING → DRAINING → STOPPED ────────────────────────────────

    async def drain(self) -> None:
        """
        Stop accepting and wait, within the drain bound, for in-flight requests.

        Raises:
            ShutdownError: the bound elapsed and connections were
                force-terminated, or the serve loop failed.  The manager is
                STOPPED either way.
        """
        self._transition_to(ServerLifecycleState.DRAINING)
        logger.info(
            "graceful_shutdown_initiated",
            in_flight_requests=(
                self._in_flight_request_counter.count if self._in_flight_request_counter is not None else None
            ),
            drain_timeout_seconds=self._drain_timeout_seconds,
        )

        self._uvicorn_server.should_exit = True
        completed, _ = await asyncio.wait({self._serve_task}, timeout=self._drain_timeout_seconds)

        if not completed:
            terminated_connection_count = self._force_terminate()
            await self._wait_for_forced_exit()
            self._listening_socket.close()
            self._transition_to(ServerLifecycleState.STOPPED)
            logger.error(
                "graceful_shutdown_timed_out",
                drain_timeout_seconds=self._drain_timeout_seconds,
                terminated_connections=terminated_connection_count,
            )
            raise http_service.exceptions.ShutdownError(
                f"In-flight requests did not finish within {self._drain_timeout_seconds} seconds; "
                f"force-terminated {terminated_connection_count} connection(s).",
            )

        self._listening_socket.close()
        self._transition_to(ServerLifecycleState.STOPPED)

        serve_error = _task_exception(self._serve_task)
        if serve_error is not None:
            raise http_service.exceptions.ShutdownError(
                f"The serve loop failed: {serve_error}",
            ) from serve_error

        logger.info("graceful_shutdown_complete")

    def _force_terminate(self) -> int:
        """
        Close every open connection and cancel its request task.

        Returns the number of connections that were still open.
        """
        server_state = self._uvicorn_server.server_state
        self._uvicorn_server.force_exit = True

        open_connections = list(server_state.connections)
        for connection in open_connections:
            transport = getattr(connection, "transport", None)
            if transport is not None:
                transport.close()
        for request_task in list(server_state.tasks):
            request_task.cancel()
        return len(open_connections)

    async def _wait_for_forced_exit(self) -> None:
        completed, _ = await asyncio.wait({self._serve_task}, timeout=FORCED_TERMINATION_GRACE_SECONDS)
        if completed:
            _task_exception(self._serve_task)
            return
        self._serve_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._serve_task

    # ── Full lifecycle ────────────────────────────────────────────────

    async def serve_until_shutdown(self, shutdown_event: asyncio.Event | None = None) -> None:
        """
        Start, block until a shutdown trigger, then drain.

        Raises:
            StartupError: see ``start``.
            ShutdownError: see ``drain``.
        """
        await self.start()
        try:
            await self.wait_for_shutdown_trigger(shutdown_event)
        except asyncio.CancelledError:
            await self.drain()
            raise
        await self.drain()
