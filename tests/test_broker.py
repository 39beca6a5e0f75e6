import httpx
import pytest
from fastapi.testclient import TestClient
from unittest.mock import patch, AsyncMock, MagicMock
from openai import APIConnectionError, APIStatusError


@pytest.fixture
def mock_settings():
    """Mock settings."""
    settings = MagicMock()
    settings.openai_api_key = "sk-test-key"
    settings.realtime_model = "gpt-4o-realtime-preview-2025-06-03"
    settings.voice = "shimmer"
    return settings


@pytest.fixture
def client(mock_settings):
    """Create test client with mocked settings."""
    with patch("voice_roleplay.broker.get_settings", return_value=mock_settings):
        from voice_roleplay.broker import app
        yield TestClient(app)


@pytest.fixture
def mock_openai_client():
    """Patch AsyncOpenAI inside the broker; the client is used as an async context manager."""
    with patch("voice_roleplay.broker.AsyncOpenAI") as mock_cls:
        mock_client = MagicMock()
        mock_client.beta.realtime.sessions.create = AsyncMock()
        mock_client.__aenter__.return_value = mock_client
        mock_client.__aexit__.return_value = False
        mock_cls.return_value = mock_client
        yield mock_client


@pytest.fixture
def mock_openai(mock_openai_client):
    """Expose sessions.create."""
    return mock_openai_client.beta.realtime.sessions.create


def make_session(value="ek_123", expires_at=1893456000):
    session = MagicMock()
    session.client_secret.value = value
    session.client_secret.expires_at = expires_at
    return session


def test_health_endpoint(client):
    """GET /health should return ok status."""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_create_session_returns_client_secret(client, mock_openai):
    """POST /session should return the ephemeral client secret."""
    mock_openai.return_value = make_session()

    response = client.post("/session")

    assert response.status_code == 200
    assert response.json() == {"client_secret": {"value": "ek_123", "expires_at": 1893456000}}
    mock_openai.assert_awaited_once_with(
        model="gpt-4o-realtime-preview-2025-06-03",
        voice="shimmer",
    )


def test_create_session_uses_template(client, mock_openai):
    mock_openai.return_value = make_session()

    response = client.post("/session", json={"model": "gpt-realtime", "voice": "alloy"})

    assert response.status_code == 200
    mock_openai.assert_awaited_once_with(model="gpt-realtime", voice="alloy")


def test_missing_api_key(client, mock_settings, mock_openai):
    mock_settings.openai_api_key = None

    response = client.post("/session", json={})

    assert response.status_code == 500
    assert response.json()["detail"] == "OpenAI API key not configured"
    mock_openai.assert_not_awaited()


def test_upstream_status_is_propagated(client, mock_openai):
    request = httpx.Request("POST", "https://api.openai.com/v1/realtime/sessions")
    mock_openai.side_effect = APIStatusError(
        "Unauthorized",
        response=httpx.Response(401, request=request),
        body=None,
    )

    response = client.post("/session", json={})

    assert response.status_code == 401
    assert response.json()["detail"] == "Failed to create session"


def test_upstream_unreachable(client, mock_openai):
    request = httpx.Request("POST", "https://api.openai.com/v1/realtime/sessions")
    mock_openai.side_effect = APIConnectionError(request=request)

    response = client.post("/session", json={})

    assert response.status_code == 502


@pytest.mark.parametrize("value,expires_at", [("", 1893456000), ("ek_123", 0), (None, None)])
def test_invalid_upstream_structure(client, mock_openai, value, expires_at):
    mock_openai.return_value = make_session(value=value, expires_at=expires_at)

    response = client.post("/session", json={})

    assert response.status_code == 500
    assert response.json()["detail"] == "Invalid session response"


@pytest.mark.parametrize("failure", [None, "status"])
def test_openai_client_is_closed_after_request(client, mock_openai_client, mock_openai, failure):
    if failure is None:
        mock_openai.return_value = make_session()
    else:
        request = httpx.Request("POST", "https://api.openai.com/v1/realtime/sessions")
        mock_openai.side_effect = APIStatusError(
            "Rate limited",
            response=httpx.Response(429, request=request),
            body=None,
        )

    response = client.post("/session", json={})

    assert response.status_code == (200 if failure is None else 429)
    mock_openai_client.__aenter__.assert_awaited_once()
    mock_openai_client.__aexit__.assert_awaited_once()
