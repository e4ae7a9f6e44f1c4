"""
Structured logging for the HTTP service.

Every log line is a single JSON object carrying ``timestamp`` (ISO 8601
UTC), ``level``, ``event`` and ``service_name`` plus the key/value pairs
of the call site.  Access records and fault records are ordinary events
on this pipeline (``http_request_completed`` and
``handler_exception_recovered``).

There is exactly one sink: a ``logging.StreamHandler`` on the root
logger.  structlog events reach it through
``structlog.stdlib.ProcessorFormatter.wrap_for_formatter`` and standard
library records (Uvicorn's) reach it directly, so both render through
the same ``JSONRenderer``.  The handler's own lock serialises emits from
concurrent requests, so two records never interleave on one line.

Uvicorn is started with ``log_config=None`` and would otherwise keep
whatever handlers a previous ``dictConfig`` left on its loggers;
``configure_logging`` strips them so its records propagate to the root
sink, and silences ``uvicorn.access`` because ``AccessLogMiddleware``
already writes one record per request.
"""

import logging
import sys
import typing

import structlog

SERVICE_NAME = "http-service"

_PROPAGATED_UVICORN_LOGGER_NAMES = ("uvicorn", "uvicorn.error")
_SILENCED_UVICORN_LOGGER_NAMES = ("uvicorn.access",)


def _stamp_service_name(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    event_dict["service_name"] = SERVICE_NAME
    return event_dict


def _uppercase_level(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    """INFO, not info."""
    if "level" in event_dict:
        event_dict["level"] = event_dict["level"].upper()
    return event_dict


def build_shared_processors() -> list[structlog.types.Processor]:
    """
    Processors applied to structlog events and to foreign stdlib records alike.
    """
    return [
        structlog.contextvars.merge_contextvars,
        _stamp_service_name,
        structlog.stdlib.add_log_level,
        _uppercase_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]


def build_json_formatter(
    shared_processors: list[structlog.types.Processor],
) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=shared_processors,
    )


def _route_uvicorn_loggers() -> None:
    for logger_name in _PROPAGATED_UVICORN_LOGGER_NAMES:
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True
    for logger_name in _SILENCED_UVICORN_LOGGER_NAMES:
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = False


def configure_logging(
    log_level: str = "INFO",
    output_stream: typing.TextIO | None = None,
) -> None:
    """
    Install the JSON pipeline on the root logger.

    Args:
        log_level: Name of the minimum level; unknown names mean INFO.
        output_stream: Destination of the JSON lines.  Defaults to the
            ``sys.stdout`` current at call time.

    Calling it again replaces the previous root handler.

    Bound loggers are not cached on first use, so module-level
    ``structlog.get_logger()`` proxies follow later reconfiguration,
    including ``structlog.testing.capture_logs``.
    """
    shared_processors = build_shared_processors()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    json_handler = logging.StreamHandler(output_stream if output_stream is not None else sys.stdout)
    json_handler.setFormatter(build_json_formatter(shared_processors))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(json_handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    _route_uvicorn_loggers()
