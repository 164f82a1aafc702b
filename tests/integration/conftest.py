"""Integration test configuration: the FastAPI app over an in-process transport.

The lifespan is not run; the test container is set directly, so requests go
through the real routes, middleware and exception handlers against a
temporary SQLite file and in-memory vector/graph doubles.
"""

import httpx
import pytest

from mnemo.api.dependencies import reset_dependencies, set_container
from mnemo.api.main import create_app


@pytest.fixture
def app():
    return create_app()


@pytest.fixture
async def client(app, container):
    """HTTP client bound to the app with the wired test container."""
    set_container(container)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://mnemo.test") as client:
        yield client
    reset_dependencies()
