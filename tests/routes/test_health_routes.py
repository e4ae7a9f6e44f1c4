"""Tests for the GET /health endpoint."""

import re

import fastapi
import httpx
import pytest

import http_service.models
import http_service.routes.health_routes


class TestHealthRoutes:
    @pytest.mark.asyncio
    async def test_health_returns_build_information(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["version"] == "v1.2.0"
        assert body["revision"] == "4f2c1d9"
        assert body["time"] == "2024-05-01T12:30:00Z"
        assert body["dirty"] is True

    @pytest.mark.asyncio
    async def test_health_body_has_exactly_the_documented_fields(self, client):
        response = await client.get("/health")

        assert set(response.json()) == {"version", "uptime", "revision", "time", "dirty"}

    @pytest.mark.asyncio
    async def test_uptime_is_a_duration_string(self, client):
        response = await client.get("/health")

        assert re.fullmatch(r"\d+:\d{2}:\d{2}(\.\d{6})?", response.json()["uptime"])

    @pytest.mark.asyncio
    async def test_health_has_cache_control_header(self, client):
        """Infrastructure endpoints must not be cached by intermediate proxies."""
        response = await client.get("/health")

        assert response.headers.get("cache-control") == "no-store, no-cache"

    @pytest.mark.asyncio
    async def test_health_has_pragma_no_cache_header(self, client):
        response = await client.get("/health")

        assert response.headers.get("pragma") == "no-cache"

    @pytest.mark.asyncio
    async def test_unknown_build_time_is_null(self):
        app = fastapi.FastAPI()
        app.include_router(
            http_service.routes.health_routes.create_health_router(
                http_service.models.BuildInformation(version="(devel)"),
            )
        )
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            response = await client.get("/health")

        assert response.json()["time"] is None
        assert response.json()["revision"] == ""

    @pytest.mark.asyncio
    async def test_uptime_is_measured_from_router_creation(self, client):
        response = await client.get("/health")

        assert response.json()["uptime"].startswith("0:00:")
