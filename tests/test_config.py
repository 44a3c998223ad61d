import json
import logging

import pytest

from config import DEFAULT_PORT, Config, load_config
from logging_config import JSONFormatter


def test_defaults() -> None:
    config = Config({})

    assert config.npm_url == "http://localhost:81"
    assert config.port == DEFAULT_PORT
    assert config.transport == "streamable-http"
    assert config.max_sessions == 0
    assert config.sweep_interval == 60
    assert config.server_url is None
    assert config.is_open()


def test_values_are_normalized() -> None:
    config = Config({
        "NPM_URL": "https://npm.example.com/",
        "SERVER_URL": "https://mcp.example.com/",
        "MCP_TRANSPORT": "STDIO",
        "PORT": "8080",
        "LOG_LEVEL": "debug",
        "MCP_API_KEY": "key",
    })

    assert config.npm_url == "https://npm.example.com"
    assert config.server_url == "https://mcp.example.com"
    assert config.transport == "stdio"
    assert config.port == 8080
    assert config.log_level == "DEBUG"
    assert not config.is_open()


@pytest.mark.parametrize("name", ["PORT", "MCP_MAX_SESSIONS", "OAUTH_SWEEP_INTERVAL"])
def test_bad_integers_name_the_variable(name: str) -> None:
    with pytest.raises(ValueError, match=name):
        Config({name: "lots"}).validate()
    with pytest.raises(ValueError, match=name):
        Config({name: "-1"}).validate()


def test_unknown_transport_is_rejected() -> None:
    with pytest.raises(ValueError, match="MCP_TRANSPORT"):
        Config({"MCP_TRANSPORT": "sse"}).validate()


def test_load_config_reads_given_mapping() -> None:
    assert load_config({"OAUTH_CLIENT_ID": "abc"}).oauth_enabled


def test_json_formatter_splits_tag() -> None:
    record = logging.LogRecord("sessions", logging.INFO, __file__, 1, "[SESSION] Created %s", ("abc",), None)

    entry = json.loads(JSONFormatter().format(record))

    assert entry["tag"] == "SESSION"
    assert entry["message"] == "Created abc"
    assert entry["level"] == "INFO"
    assert entry["service"] == "npm-mcp-server"
