from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from daytona_relay.api.context import AppContext
from daytona_relay.api.main import create_app
from daytona_relay.config import RelaySettings

SUCCESS_WORKER = """
import sys
print("Generating: " + sys.argv[1])
print("Sandbox created: abc-123")
print("Preview URL: https://x.y")
"""


@pytest.fixture()
def settings(make_settings) -> RelaySettings:
    return make_settings(SUCCESS_WORKER)


@pytest.fixture()
def app(settings: RelaySettings):
    return create_app(AppContext(settings=settings))


@pytest.fixture()
def client(app):
    with TestClient(app) as test_client:
        yield test_client
