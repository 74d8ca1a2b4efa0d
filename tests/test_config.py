from src.assistant_stream.core.config import DEFAULT_MODE_TIMEOUTS, StreamSettings


def test_defaults():
    settings = StreamSettings()
    assert settings.inactivity_timeout_s == 120.0
    assert settings.max_retries == 3
    assert settings.max_fragment_chars == 1000
    assert settings.max_buffer_chars == 8000
    assert settings.mode_timeouts == DEFAULT_MODE_TIMEOUTS


def test_retry_delay_doubles_and_caps():
    settings = StreamSettings()
    assert [settings.retry_delay(n) for n in range(6)] == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]


def test_from_env_overrides_and_falls_back():
    env = {
        "ASSISTANT_STREAM_BASE_URL": "https://api.example.com/",
        "ASSISTANT_STREAM_MAX_RETRIES": "5",
        "ASSISTANT_STREAM_INACTIVITY_TIMEOUT_S": "45.5",
        "ASSISTANT_STREAM_MAX_BUFFER_CHARS": "-1",
        "ASSISTANT_STREAM_RETRY_BASE_DELAY_S": "soon",
        "ASSISTANT_STREAM_THINKING_TIMEOUT_S": "4",
    }
    settings = StreamSettings.from_env(env)
    assert settings.base_url == "https://api.example.com"
    assert settings.max_retries == 5
    assert settings.inactivity_timeout_s == 45.5
    assert settings.max_buffer_chars == 8000
    assert settings.retry_base_delay_s == 1.0
    assert settings.mode_timeouts["thinking"] == 4.0
    assert settings.mode_timeouts["streaming"] == 30.0


def test_from_env_reads_process_environment(monkeypatch):
    monkeypatch.setenv("ASSISTANT_STREAM_HEALTH_INTERVAL_S", "2")
    assert StreamSettings.from_env().health_check_interval_s == 2.0
