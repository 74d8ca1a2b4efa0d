import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


@pytest.fixture(autouse=True)
def _isolate_side_channels(monkeypatch):
    """Keep event publishing off and the telemetry buffer empty between tests."""
    from src.assistant_stream.services import telemetry_sink

    monkeypatch.delenv("REDIS_URL", raising=False)
    telemetry_sink.clear_events()
    yield
    telemetry_sink.clear_events()


@pytest.fixture
def scheduler():
    from tests.utils import ManualScheduler

    return ManualScheduler()


@pytest.fixture
def opener():
    from tests.utils import FakeOpener

    return FakeOpener()


@pytest.fixture
def assistant(scheduler, opener):
    from src.assistant_stream.core.config import StreamSettings
    from src.assistant_stream.services.assistant_session import AssistantSession

    session = AssistantSession(
        StreamSettings(base_url="http://stream.test"),
        scheduler=scheduler,
        opener=opener,
        uid_provider=lambda: "u1",
        session_id="s1",
    )
    yield session
    session.close()
