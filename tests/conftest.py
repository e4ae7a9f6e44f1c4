"""Root test configuration — environment isolation and ASGI helpers."""

import logging
import socket

import pytest
import structlog

ALL_CONFIGURATION_ENVIRONMENT_VARIABLE_NAMES: list[str] = [
    "HTTP_SERVICE_APPLICATION_HOST",
    "HTTP_SERVICE_APPLICATION_PORT",
    "HTTP_SERVICE_LOG_LEVEL",
    "HTTP_SERVICE_STARTUP_TIMEOUT_SECONDS",
    "HTTP_SERVICE_DRAIN_TIMEOUT_SECONDS",
    "HTTP_SERVICE_SERVICE_VERSION",
    "HTTP_SERVICE_BUILD_REVISION",
    "HTTP_SERVICE_BUILD_TIME",
    "HTTP_SERVICE_BUILD_DIRTY",
]


@pytest.fixture(autouse=True)
def _clear_configuration_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove every HTTP_SERVICE_* variable so each test starts from defaults."""
    for variable_name in ALL_CONFIGURATION_ENVIRONMENT_VARIABLE_NAMES:
        monkeypatch.delenv(variable_name, raising=False)


@pytest.fixture(autouse=True)
def _restore_logging_configuration():
    """
    Undo ``configure_logging`` after each test.

    The root handler may point at a stream owned by the test (a
    ``StringIO`` or pytest's capture buffer) that is gone afterwards.
    """
    root_logger = logging.getLogger()
    original_level = root_logger.level
    yield
    for handler in list(root_logger.handlers):
        if isinstance(handler.formatter, structlog.stdlib.ProcessorFormatter):
            root_logger.removeHandler(handler)
    root_logger.setLevel(original_level)
    structlog.reset_defaults()


@pytest.fixture
def sent_messages() -> list[dict]:
    return []


@pytest.fixture
def recording_send(sent_messages):
    """ASGI ``send`` callable that records every message it receives."""

    async def send(message):
        sent_messages.append(message)

    return send


@pytest.fixture
def empty_receive():
    async def receive():
        return {"type": "http.request", "body": b"", "more_body": False}

    return receive


@pytest.fixture
def build_http_scope():
    """Factory for minimal HTTP connection scopes."""

    def _build(
        method: str = "GET",
        path: str = "/",
        query_string: bytes = b"",
        client: tuple[str, int] | None = ("127.0.0.1", 54321),
    ) -> dict:
        return {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": method,
            "scheme": "http",
            "path": path,
            "raw_path": path.encode("latin-1"),
            "query_string": query_string,
            "root_path": "",
            "headers": [(b"host", b"testserver")],
            "client": client,
            "server": ("testserver", 80),
        }

    return _build


@pytest.fixture
def unused_tcp_port_number() -> int:
    """A port that was free a moment ago on the loopback interface."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe_socket:
        probe_socket.bind(("127.0.0.1", 0))
        return probe_socket.getsockname()[1]
