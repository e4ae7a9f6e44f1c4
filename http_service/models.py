"""
Pydantic models for build metadata and response serialisation.

``BuildInformation`` is constructed exactly once at startup and passed
explicitly to the components that need it (the health router and the
OpenAPI router).  It is frozen, so concurrent requests read it without
any locking.
"""

import datetime
import importlib.metadata

import pydantic

import configuration

DISTRIBUTION_NAME = "http-service"

# Version reported when neither the configuration nor the installed
# package metadata provides one (for example when running from a source
# checkout that was never installed).
DEVELOPMENT_VERSION = "(devel)"


class BuildInformation(pydantic.BaseModel):
    """
    Immutable, process-wide build metadata.

    Attributes:
        version: The service version string.
        revision: Source-control revision the build was made from.
        time: Timestamp of that revision, when known.
        dirty: Whether the build contained uncommitted changes.
    """

    model_config = pydantic.ConfigDict(frozen=True)

    version: str
    revision: str = ""
    time: datetime.datetime | None = None
    dirty: bool = False

    @classmethod
    def from_configuration(
        cls,
        application_configuration: configuration.ApplicationConfiguration,
        version: str | None = None,
    ) -> "BuildInformation":
        """
        Build the metadata from configuration.

        The version is resolved in order: the explicit ``version``
        argument, ``service_version`` from the configuration, the
        installed distribution's version, then ``DEVELOPMENT_VERSION``.
        """
        resolved_version = version or application_configuration.service_version or _installed_version()
        return cls(
            version=resolved_version,
            revision=application_configuration.build_revision,
            time=application_configuration.build_time,
            dirty=application_configuration.build_dirty,
        )


def _installed_version() -> str:
    try:
        return importlib.metadata.version(DISTRIBUTION_NAME)
    except importlib.metadata.PackageNotFoundError:
        return DEVELOPMENT_VERSION


class HealthResponse(pydantic.BaseModel):
    """
    Response body for the GET /health endpoint.
    """

    version: str = pydantic.Field(..., description="Service version.", examples=["v1.2.0"])
    uptime: str = pydantic.Field(
        ...,
        description="Time since the service started, formatted as H:MM:SS.ffffff.",
        examples=["0:12:03.500012"],
    )
    revision: str = pydantic.Field(..., description="Source-control revision of the build.")
    time: datetime.datetime | None = pydantic.Field(
        ...,
        description="Timestamp of the source-control revision, or null when unknown.",
    )
    dirty: bool = pydantic.Field(..., description="True when the build had uncommitted changes.")
