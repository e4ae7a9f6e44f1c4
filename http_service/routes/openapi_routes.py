"""
Route serving the hand-written OpenAPI document.

The document ships inside the package as ``openapi.yaml``.  Its first
``${{ VERSION }}`` placeholder is replaced with the service version once,
when the router is created, and the resulting bytes are served verbatim
on every request.
"""

import pathlib

import fastapi

OPENAPI_DOCUMENT_PATH = pathlib.Path(__file__).resolve().parent.parent / "openapi.yaml"

VERSION_PLACEHOLDER = b"${{ VERSION }}"


def load_openapi_document(version: str) -> bytes:
    """Read the packaged document and substitute the version placeholder."""
    document = OPENAPI_DOCUMENT_PATH.read_bytes()
    return document.replace(VERSION_PLACEHOLDER, version.encode("utf-8"), 1)


def create_openapi_router(version: str) -> fastapi.APIRouter:
    """
    Create the router serving ``GET /openapi.yaml``.

    The response uses ``Content-Type: text/plain`` exactly (no charset
    parameter) and allows any origin, so browser-based API explorers can
    fetch it cross-site.
    """
    openapi_router = fastapi.APIRouter(tags=["OpenAPI"])
    document = load_openapi_document(version)

    @openapi_router.get(
        "/openapi.yaml",
        summary="OpenAPI document",
        description="Returns the OpenAPI 3.1 description of this service as YAML.",
        status_code=200,
    )
    async def get_openapi_document() -> fastapi.Response:
        return fastapi.Response(
            content=document,
            status_code=200,
            headers={
                "Content-Type": "text/plain",
                "Access-Control-Allow-Origin": "*",
            },
        )

    return openapi_router
