"""
Tests for session and client configuration validation.
"""

import pytest

from resmqtt.config import MQTTConfig, Session
from resmqtt.core.constants import ReconnectMode
from resmqtt.core.exceptions import ConfigError


def test_defaults_are_valid():
    MQTTConfig().validate()
    Session("client").validate()


@pytest.mark.parametrize("keep_alive", [0, 10, 30, 65535])
def test_accepted_keep_alive_values(keep_alive):
    Session("client", keep_alive=keep_alive).validate()


@pytest.mark.parametrize("keep_alive", [1, 9, 65536, -1])
def test_rejected_keep_alive_values(keep_alive):
    with pytest.raises(ConfigError):
        Session("client", keep_alive=keep_alive).validate()


@pytest.mark.parametrize("client_id", ["", " starts-with-space", "x" * 24])
def test_rejected_client_ids(client_id):
    with pytest.raises(ConfigError):
        Session(client_id).validate()


def test_client_id_limit_counts_utf8_bytes():
    # 8 characters, 24 bytes
    client_id = "あ" * 8
    with pytest.raises(ConfigError):
        Session(client_id).validate()
    Session(client_id).validate(allow_long_client_id=True)


@pytest.mark.parametrize(
    "field, value",
    [
        ("offline_buffer_capacity", 0),
        ("reconnect_min", 0),
        ("reconnect_factor", 0.5),
        ("reconnect_mode", "always"),
        ("connect_timeout", 0),
        ("retry_interval", -1),
        ("max_inflight", 0),
        ("max_inflight", 70000),
        ("event_capacity", -1),
        ("tick_interval", 0),
        ("outgoing_ratelimit", 0),
    ],
)
def test_rejected_config_values(field, value):
    config = MQTTConfig(**{field: value})
    with pytest.raises(ConfigError) as excinfo:
        config.validate()
    assert field in str(excinfo.value)


def test_reconnect_max_must_not_be_below_min():
    with pytest.raises(ConfigError):
        MQTTConfig(reconnect_min=5.0, reconnect_max=2.0).validate()


def test_reconnect_mode_enum_is_accepted():
    MQTTConfig(reconnect_mode=ReconnectMode.NEVER).validate()
