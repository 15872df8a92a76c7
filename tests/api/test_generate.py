from __future__ import annotations

from dataclasses import replace

from fastapi.testclient import TestClient

from daytona_relay.api.context import AppContext
from daytona_relay.api.main import create_app
from daytona_relay.config import RelaySettings
from tests.helpers import SettingsFactory, parse_stream

ENDPOINT = "/api/generate-daytona"


def test_missing_prompt_is_rejected(client: TestClient) -> None:
    response = client.post(ENDPOINT, json={})
    assert response.status_code == 400
    assert response.json() == {"error": "Prompt is required"}


def test_empty_prompt_is_rejected(client: TestClient) -> None:
    response = client.post(ENDPOINT, json={"prompt": ""})
    assert response.status_code == 400
    assert response.json() == {"error": "Prompt is required"}


def test_malformed_body_is_rejected(client: TestClient) -> None:
    response = client.post(
        ENDPOINT, content=b"{not json", headers={"Content-Type": "application/json"}
    )
    assert response.status_code == 400
    assert response.json() == {"error": "Invalid JSON body"}


def test_missing_credentials_fail_before_streaming(settings: RelaySettings) -> None:
    app = create_app(AppContext(settings=replace(settings, anthropic_api_key=None)))
    with TestClient(app) as client:
        response = client.post(ENDPOINT, json={"prompt": "landing page"})
        assert response.status_code == 500
        assert response.json() == {"error": "Missing API keys"}
        assert not app.state.context.tasks


def test_successful_stream(client: TestClient) -> None:
    response = client.post(ENDPOINT, json={"prompt": "landing page"})
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    assert response.headers["connection"] == "keep-alive"
    assert response.text.endswith("data: [DONE]\n\n")
    events = parse_stream(response.text)
    assert events == [
        {"type": "progress", "message": "Generating: landing page"},
        {"type": "progress", "message": "Sandbox created: abc-123"},
        {"type": "progress", "message": "Preview URL: https://x.y"},
        {"type": "complete", "sandboxId": "abc-123", "previewUrl": "https://x.y"},
        "[DONE]",
    ]


def test_failed_worker_streams_error(make_settings: SettingsFactory) -> None:
    settings = make_settings("import sys; sys.exit(1)")
    with TestClient(create_app(AppContext(settings=settings))) as client:
        response = client.post(ENDPOINT, json={"prompt": "landing page"})
    assert response.status_code == 200
    assert parse_stream(response.text) == [
        {"type": "error", "message": "Process exited with code 1"},
        "[DONE]",
    ]


def test_healthz(client: TestClient) -> None:
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"message": "ok"}
