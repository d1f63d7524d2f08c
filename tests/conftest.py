"""Pytest fixtures shared across the test suite."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from helpers import Harness, make_config
from relay.main import app
from relay.utils.config import Config


@pytest.fixture()
def cfg() -> Config:
    return make_config()


@pytest.fixture()
def harness() -> Harness:
    return Harness()


@pytest.fixture()
def app_client(harness):
    """TestClient with a harness-backed run manager injected into app state."""
    # Injected manager bypasses the lifespan's own wiring and scheduler
    app.state.run_manager = harness.manager

    with TestClient(app, raise_server_exceptions=False) as client:
        yield client

    app.state.run_manager = None
