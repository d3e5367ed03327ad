from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

import shopassist.main as main
from shopassist.settings import Settings


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch):
    """App client with two Gemini keys and no Redis."""
    settings = Settings(_env_file=None, gemini_api_keys="k1,k2", redis_url=None)
    monkeypatch.setattr(main, "get_settings", lambda: settings)
    monkeypatch.setattr(main, "get_context_service_async", AsyncMock(return_value=None))
    monkeypatch.setattr(main, "close_context_service", AsyncMock(return_value=None))
    with TestClient(main.app) as c:
        yield c


def test_health(client: TestClient) -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_grounding_stats(client: TestClient) -> None:
    """Percentages and confidence are formatted for display."""
    client.app.state.core.grounding.decide("iphone 15 pro")
    client.app.state.core.grounding.decide("hello")
    data = client.get("/stats/grounding").json()
    assert data["total_decisions"] == 2
    assert data["grounding_percentage"] == "50.0%"
    assert data["average_confidence"] == "0.95"
    assert data["mode"] == "balanced"
    assert data["config"] == {"enabled": True, "min_words": 2}


def test_key_stats(client: TestClient) -> None:
    client.app.state.core.rotators["gemini"].record_usage(1, True, 200)
    data = client.get("/stats/keys").json()
    assert list(data) == ["gemini"]
    assert [s["total_usage"] for s in data["gemini"]] == [0, 1]
    assert data["gemini"][1]["avg_response_time_ms"] == 200.0


def test_all_stats(client: TestClient) -> None:
    client.app.state.core.token_stats.record(10, 15, with_grounding=False)
    data = client.get("/stats/all").json()
    assert data["token_usage"]["total_output_tokens"] == 5
    assert data["prompt"]["prompt_id"] == "UniversalPrompt v1.0.1"
    assert len(data["prompt"]["prompt_hash"]) == 12
    assert "timestamp" in data
    assert "gemini" in data["api_keys"]


def test_stats_without_core() -> None:
    """Without the lifespan the endpoints report the core as unavailable."""
    if hasattr(main.app.state, "core"):
        del main.app.state.core
    resp = TestClient(main.app).get("/stats/tokens")
    assert resp.status_code == 503
