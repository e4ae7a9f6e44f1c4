"""
Command line entry point for the HTTP service.

``main`` is installed as the ``http-service`` console script and is also
what ``python main.py`` calls.  It wires the components together in a
fixed order:

1. Parse ``--port``.
2. Load ``ApplicationConfiguration`` from the environment, with the
   parsed port taking precedence over ``HTTP_SERVICE_APPLICATION_PORT``.
3. Configure structured logging.
4. Resolve the build metadata.
5. Create the FastAPI application and hand it to a
   ``ServerLifecycleManager``, which serves until SIGINT/SIGTERM and
   then drains.

Failures are reported on stderr and mapped to exit codes:

- ``0``: the server shut down cleanly.
- ``1``: ``StartupError`` (bad arguments, invalid environment, bind
  failure) or ``ShutdownError`` (drain bound exceeded).
"""

import argparse
import asyncio
import collections.abc
import sys
import typing

import pydantic
import structlog

import configuration
import http_service.exceptions
import http_service.lifecycle
import http_service.logging_config
import http_service.middleware
import http_service.models
import http_service.server_factory

logger = structlog.get_logger()

PROGRAM_NAME = "http-service"

MINIMUM_PORT = 0
MAXIMUM_PORT = 65535


class _ArgumentParser(argparse.ArgumentParser):
    """``ArgumentParser`` that raises ``StartupError`` instead of exiting."""

    def error(self, message: str) -> typing.NoReturn:
        raise http_service.exceptions.StartupError(f"Invalid command line: {message}")


def _port_number(value: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port number: {value!r}") from None
    if not MINIMUM_PORT <= port <= MAXIMUM_PORT:
        raise argparse.ArgumentTypeError(
            f"port must be between {MINIMUM_PORT} and {MAXIMUM_PORT}, got {port}",
        )
    return port


def parse_arguments(arguments: collections.abc.Sequence[str] | None = None) -> argparse.Namespace:
    """
    Parse the command line.

    Raises:
        StartupError: the arguments could not be parsed.
    """
    argument_parser = _ArgumentParser(
        prog=PROGRAM_NAME,
        description="Serve the health, OpenAPI and debug endpoints over HTTP.",
    )
    argument_parser.add_argument(
        "--port",
        type=_port_number,
        default=None,
        help="TCP port to listen on (default: 8080, or HTTP_SERVICE_APPLICATION_PORT).",
    )
    return argument_parser.parse_args(arguments)


def load_configuration(parsed_arguments: argparse.Namespace) -> configuration.ApplicationConfiguration:
    """
    Load the environment configuration with command line overrides applied.

    Raises:
        StartupError: an environment value failed validation.
    """
    configuration_overrides: dict[str, typing.Any] = {}
    if parsed_arguments.port is not None:
        configuration_overrides["application_port"] = parsed_arguments.port

    try:
        return configuration.ApplicationConfiguration(**configuration_overrides)
    except pydantic.ValidationError as validation_error:
        raise http_service.exceptions.StartupError(
            f"Invalid configuration: {validation_error}",
        ) from validation_error


async def run(
    arguments: collections.abc.Sequence[str] | None = None,
    *,
    output: typing.TextIO | None = None,
    shutdown_event: asyncio.Event | None = None,
    version: str | None = None,
) -> None:
    """
    Run the service until a shutdown trigger, then drain it.

    Args:
        arguments: Command line arguments, excluding the program name.
            ``None`` reads ``sys.argv``.
        output: Stream receiving the JSON log lines (stdout by default).
        shutdown_event: Setting this event shuts the server down exactly
            like SIGTERM does.
        version: Overrides the resolved service version.

    Raises:
        StartupError: see ``parse_arguments``, ``load_configuration`` and
            ``ServerLifecycleManager.start``.
        ShutdownError: see ``ServerLifecycleManager.drain``.
    """
    parsed_arguments = parse_arguments(arguments)
    application_configuration = load_configuration(parsed_arguments)

    http_service.logging_config.configure_logging(
        log_level=application_configuration.log_level,
        output_stream=output,
    )

    build_information = http_service.models.BuildInformation.from_configuration(
        application_configuration,
        version=version,
    )
    logger.info(
        "service_starting",
        version=build_information.version,
        revision=build_information.revision,
        dirty=build_information.dirty,
    )

    in_flight_request_counter = http_service.middleware.InFlightRequestCounter()
    fastapi_application = http_service.server_factory.create_application(
        build_information,
        in_flight_request_counter=in_flight_request_counter,
    )

    server_lifecycle_manager = http_service.lifecycle.ServerLifecycleManager(
        fastapi_application,
        host=application_configuration.application_host,
        port=application_configuration.application_port,
        drain_timeout_seconds=application_configuration.drain_timeout_seconds,
        startup_timeout_seconds=application_configuration.startup_timeout_seconds,
        in_flight_request_counter=in_flight_request_counter,
    )
    await server_lifecycle_manager.serve_until_shutdown(shutdown_event)


def main(argv: collections.abc.Sequence[str] | None = None) -> int:
    """Console script entry point.  Returns the process exit status."""
    try:
        asyncio.run(run(argv))
    except (
        http_service.exceptions.StartupError,
        http_service.exceptions.ShutdownError,
    ) as service_error:
        print(f"{PROGRAM_NAME}: {service_error.detail}", file=sys.stderr)
        return 1
    return 0
