import pytest

from assistant_session.config import DEFAULT_WS_URL, SessionSettings


def test_defaults_without_environment() -> None:
    settings = SessionSettings.from_env({})
    assert settings.url == DEFAULT_WS_URL
    assert settings.request_timeout == 30.0
    assert settings.command_timeout is None


def test_environment_overrides() -> None:
    settings = SessionSettings.from_env(
        {
            "ASSISTANT_SESSION_WS_URL": "ws://10.0.0.5:8765",
            "ASSISTANT_SESSION_CMD": "backend --stdio --log-level 'very verbose'",
            "ASSISTANT_SESSION_REQUEST_TIMEOUT": "12.5",
            "ASSISTANT_SESSION_COMMAND_TIMEOUT": "600",
            "ASSISTANT_SESSION_CONNECT_TIMEOUT": "2",
        }
    )
    assert settings.url == "ws://10.0.0.5:8765"
    assert settings.command == ["backend", "--stdio", "--log-level", "very verbose"]
    assert settings.request_timeout == 12.5
    assert settings.command_timeout == 600.0
    assert settings.connect_timeout == 2.0


def test_command_timeout_can_be_disabled() -> None:
    settings = SessionSettings.from_env({"ASSISTANT_SESSION_COMMAND_TIMEOUT": "none"})
    assert settings.command_timeout is None


@pytest.mark.parametrize("value", ["soon", "-1"])
def test_invalid_timeouts_are_rejected(value: str) -> None:
    with pytest.raises(ValueError):
        SessionSettings.from_env({"ASSISTANT_SESSION_REQUEST_TIMEOUT": value})
