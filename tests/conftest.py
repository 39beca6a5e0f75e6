import os
import pytest
from unittest.mock import patch

from fakes import FakeBroker, FakeMediaSource, FakeTransport, Recorder
from voice_roleplay.models import Scenario
from voice_roleplay.session import SessionController


# Set test environment variables before any imports
@pytest.fixture(autouse=True)
def mock_env():
    """Mock environment variables for all tests."""
    with patch.dict(os.environ, {
        "OPENAI_API_KEY": "sk-test-key-123",
        "CREDENTIAL_BROKER_URL": "http://broker.test/session",
    }):
        yield


@pytest.fixture
def restaurant():
    return Scenario(
        id="restaurant",
        title="Restaurant",
        description="Order food",
        icon="🍜",
        level="beginner",
        instructions="Practice ordering at a restaurant",
    )


@pytest.fixture
def hotel():
    return Scenario(
        id="hotel",
        title="Hotel",
        description="Check in",
        icon="🏨",
        level="intermediate",
        instructions="Practice checking in at a hotel",
    )


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def media_sources():
    """Every media source the controller created, in order."""
    return []


@pytest.fixture
def transports():
    """Every transport the controller created, in order."""
    return []


@pytest.fixture
def next_transports():
    """Preconfigured transports handed out before falling back to defaults."""
    return []


@pytest.fixture
def controller(broker, recorder, media_sources, transports, next_transports):
    def media_factory():
        source = FakeMediaSource()
        media_sources.append(source)
        return source

    def transport_factory():
        transport = next_transports.pop(0) if next_transports else FakeTransport()
        transports.append(transport)
        return transport

    return SessionController(
        broker=broker,
        media_factory=media_factory,
        transport_factory=transport_factory,
        on_transcript=recorder.on_transcript,
        on_connection_state_change=recorder.on_connection_state_change,
        on_error=recorder.on_error,
        response_settle_delay=0,
    )
