"""
Assembly of the HTTP application served by ``ServerLifecycleManager``.

``create_application`` wires the three routers (health, OpenAPI
document, debug introspection) behind the fixed middleware chain.  The
build metadata and the in-flight request counter are arguments, so the
command line entry point and the tests each build their own instance.
"""

import fastapi
import structlog

import http_service.middleware
import http_service.models
import http_service.routes.debug_routes
import http_service.routes.health_routes
import http_service.routes.openapi_routes

APPLICATION_TITLE = "http-service"


def create_application(
    build_information: http_service.models.BuildInformation,
    in_flight_request_counter: http_service.middleware.InFlightRequestCounter | None = None,
    logger: structlog.types.BindableLogger | None = None,
) -> fastapi.FastAPI:
    """
    Build the FastAPI application for one service run.

    FastAPI's generated ``/openapi.json``, ``/docs`` and ``/redoc`` are
    disabled; the hand-written document is served at ``/openapi.yaml``.
    ``logger`` replaces the structlog logger of both middleware.
    """
    fastapi_application = fastapi.FastAPI(
        title=APPLICATION_TITLE,
        version=build_information.version,
        openapi_url=None,
        docs_url=None,
        redoc_url=None,
    )

    fastapi_application.include_router(
        http_service.routes.health_routes.create_health_router(build_information),
    )
    fastapi_application.include_router(
        http_service.routes.openapi_routes.create_openapi_router(build_information.version),
    )
    fastapi_application.include_router(
        http_service.routes.debug_routes.debug_router,
    )

    # Starlette wraps the app in reverse order of add_middleware calls,
    # so the layer added last sees the request first:
    #
    #   Request → Recovery → AccessLog → Router
    #
    # Recovery must stay outermost: it is the terminal boundary for
    # exceptions from every layer below it, the access log included.

    fastapi_application.add_middleware(
        http_service.middleware.AccessLogMiddleware,
        logger=logger,
    )

    fastapi_application.add_middleware(
        http_service.middleware.RecoveryMiddleware,
        logger=logger,
        in_flight_request_counter=in_flight_request_counter,
    )

    return fastapi_application
