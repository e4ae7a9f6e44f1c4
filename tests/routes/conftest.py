"""Shared fixtures for route integration tests."""

import datetime

import httpx
import pytest
import pytest_asyncio

import http_service.models
import http_service.server_factory


@pytest.fixture
def build_information():
    return http_service.models.BuildInformation(
        version="v1.2.0",
        revision="4f2c1d9",
        time=datetime.datetime(2024, 5, 1, 12, 30, tzinfo=datetime.timezone.utc),
        dirty=True,
    )


@pytest.fixture
def test_app(build_information):
    return http_service.server_factory.create_application(build_information)


@pytest_asyncio.fixture
async def client(test_app):
    transport = httpx.ASGITransport(app=test_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
