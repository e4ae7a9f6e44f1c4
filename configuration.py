"""
Runtime settings of the HTTP service.

Values are read from ``HTTP_SERVICE_*`` environment variables, then from
a ``.env`` file in the working directory, then fall back to the defaults
below.  The ``--port`` command line flag is passed in as a keyword
argument and therefore beats all of them.  A value that fails validation
stops the process before anything is bound.
"""

import datetime

import pydantic
import pydantic_settings


class ApplicationConfiguration(pydantic_settings.BaseSettings):
    """
    Centralised configuration for the HTTP service.

    Every field maps to an environment variable prefixed with HTTP_SERVICE_.
    For example, the field ``drain_timeout_seconds`` is populated from the
    environment variable HTTP_SERVICE_DRAIN_TIMEOUT_SECONDS.

    Configuration categories
    ------------------------
    - **Server**: host, port, log level
    - **Lifecycle**: startup timeout, drain timeout
    - **Build information**: version, revision, build time, dirty flag.
      These are normally injected by the build pipeline; they surface
      unchanged on ``GET /health``.
    """

    # ── Server settings ──────────────────────────────────────────────────

    application_host: str = pydantic.Field(
        default="0.0.0.0",
        description="Interface the listening socket binds to. 0.0.0.0 listens on every IPv4 interface.",
    )

    application_port: int = pydantic.Field(
        default=8080,
        ge=0,
        le=65535,
        description="TCP port of the HTTP API. 0 asks the operating system for a free port.",
    )

    log_level: str = pydantic.Field(
        default="INFO",
        description=(
            "Minimum log level for structured JSON logging. "
            "Accepted values: DEBUG, INFO, WARNING, ERROR, CRITICAL."
        ),
    )

    # ── Lifecycle settings ───────────────────────────────────────────────

    startup_timeout_seconds: float = pydantic.Field(
        default=5.0,
        gt=0,
        description="Maximum time to wait for the serve loop to report that it has started.",
    )

    drain_timeout_seconds: float = pydantic.Field(
        default=10.0,
        gt=0,
        description=(
            "Maximum time in seconds in-flight requests may take to finish "
            "after a shutdown signal. Requests still running when it elapses "
            "are force-terminated and the process exits non-zero."
        ),
    )

    # ── Build information ────────────────────────────────────────────────

    service_version: str = pydantic.Field(
        default="",
        description=(
            "Service version reported by GET /health and substituted into "
            "the OpenAPI document. Empty falls back to the installed package "
            "version."
        ),
    )

    build_revision: str = pydantic.Field(
        default="",
        description="Source-control revision the service was built from.",
    )

    build_time: datetime.datetime | None = pydantic.Field(
        default=None,
        description="Timestamp of the source-control revision (ISO 8601).",
    )

    build_dirty: bool = pydantic.Field(
        default=False,
        description="True when the build contained uncommitted changes.",
    )

    model_config = pydantic_settings.SettingsConfigDict(
        env_file=".env",
        env_prefix="HTTP_SERVICE_",
    )
