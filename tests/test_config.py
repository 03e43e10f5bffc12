import pytest

from wsshell.config import MAX_READ_TIMEOUT, ClientConfig, SessionConfig, parse_newline, template_names
from wsshell.errors import ConfigurationError


@pytest.mark.parametrize(
    "overrides",
    [
        {"url": "http://example.com"},
        {"url": ""},
        {"newline": "\r\n"},
        {"max_frame_size": 0},
        {"prompt": ""},
        {"prompt": "x" * 20, "buffer_limit": 10},
        {"upstream_template": '{"data":"$payload"}'},
        {"upstream_template": '{"operation":"stdin"}'},
        {"upstream_template": "$"},
        {"resize_template": '{"rows":$rows}'},
    ],
)
def test_validate_rejects(overrides):
    values = {"url": "ws://localhost/ws"}
    values.update(overrides)
    with pytest.raises(ConfigurationError):
        SessionConfig(**values).validate()


def test_validate_accepts_defaults():
    config = SessionConfig(url="wss://example.com/ws").validate()
    assert config.prompt == "> "
    assert config.newline == "\r"
    assert config.json_escape


def test_downstream_template_accepts_any_field():
    SessionConfig(url="ws://h/ws", downstream_template="$stdout$stderr").validate()


def test_with_prompt_returns_copy():
    config = SessionConfig(url="ws://h/ws")
    changed = config.with_prompt("$ ")
    assert changed.prompt == "$ "
    assert config.prompt == "> "


def test_template_names():
    assert template_names('{"rows":$rows,"cols":${cols},"x":$rows}') == ["rows", "cols"]


def test_parse_newline():
    assert parse_newline("\\n") == "\n"
    assert parse_newline("CR") == "\r"
    assert parse_newline("\r") == "\r"


def test_client_config_from_env(monkeypatch):
    monkeypatch.setenv("WSSHELL_URL", "ws://env/ws")
    monkeypatch.setenv("WSSHELL_NEWLINE", "\\n")
    monkeypatch.setenv("WSSHELL_MAX", "2048")
    monkeypatch.setenv("WSSHELL_DEBUG", "yes")
    config = ClientConfig()
    config.load_from_env()
    frozen = config.freeze()
    assert frozen.url == "ws://env/ws"
    assert frozen.newline == "\n"
    assert frozen.max_frame_size == 2048
    assert frozen.debug


def test_freeze_read_timeout():
    config = ClientConfig()
    config.URL = "ws://h/ws"
    config.READ_TIMEOUT = 0
    assert config.freeze().read_timeout is None
    config.READ_TIMEOUT = 10 * MAX_READ_TIMEOUT
    assert config.freeze().read_timeout == MAX_READ_TIMEOUT


def test_echo_and_buffer_limit_from_env(monkeypatch):
    monkeypatch.setenv("WSSHELL_URL", "ws://env/ws")
    monkeypatch.setenv("WSSHELL_ECHO", "0")
    monkeypatch.setenv("WSSHELL_BUFFER_LIMIT", "2048")
    config = ClientConfig()
    config.load_from_env()
    frozen = config.freeze()
    assert not frozen.echo
    assert frozen.buffer_limit == 2048
