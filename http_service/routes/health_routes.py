"""
Route definition for the health endpoint.

``GET /health`` is a liveness probe: it returns HTTP 200 whenever the
process is serving requests, along with the build metadata and the time
elapsed since the router was created.

The router is produced by a factory rather than declared at module level
so the build metadata can be injected explicitly.  Tests construct it
with synthetic ``BuildInformation`` values.

Cache suppression policy
------------------------
The response carries ``Cache-Control: no-store, no-cache`` and
``Pragma: no-cache`` so that intermediate proxies never serve a stale
uptime to orchestrators.
"""

import datetime
import time

import fastapi

import http_service.models

_INFRASTRUCTURE_CACHE_SUPPRESSION_HEADERS: dict[str, str] = {
    "Cache-Control": "no-store, no-cache",
    "Pragma": "no-cache",
}


def create_health_router(
    build_information: http_service.models.BuildInformation,
) -> fastapi.APIRouter:
    """
    Create the router serving ``GET /health`` for the given build.

    Uptime is measured from the moment this function is called, which
    coincides with application startup.
    """
    health_router = fastapi.APIRouter(tags=["Health"])
    started_at = time.monotonic()

    @health_router.get(
        "/health",
        summary="Liveness check",
        description="Returns the build metadata and uptime of the running service.",
        status_code=200,
        response_model=http_service.models.HealthResponse,
    )
    async def health_check() -> fastapi.responses.JSONResponse:
        uptime = datetime.timedelta(seconds=time.monotonic() - started_at)
        health_response = http_service.models.HealthResponse(
            version=build_information.version,
            uptime=str(uptime),
            revision=build_information.revision,
            time=build_information.time,
            dirty=build_information.dirty,
        )
        return fastapi.responses.JSONResponse(
            content=health_response.model_dump(mode="json"),
            headers=_INFRASTRUCTURE_CACHE_SUPPRESSION_HEADERS,
        )

    return health_router
