"""
Tests for event models.
"""

import pytest

from resmqtt.core.exceptions import (
    CapacityError,
    ConfigError,
    HandshakeTimeout,
    PacketError,
    TransportError,
)
from resmqtt.events import (
    Disconnected,
    ErrorEvent,
    ErrorKind,
    SubscriptionResult,
)
from resmqtt.packet import QoS


@pytest.mark.parametrize(
    "error, kind",
    [
        (TransportError("x"), ErrorKind.TRANSPORT),
        (PacketError("x"), ErrorKind.PROTOCOL),
        (HandshakeTimeout("x"), ErrorKind.PROTOCOL),
        (CapacityError("x"), ErrorKind.CAPACITY),
        (ConfigError("x"), ErrorKind.CONFIGURATION),
    ],
)
def test_error_kind_follows_exception_type(error, kind):
    event = ErrorEvent.from_error(error)
    assert event.kind is kind
    assert event.error is error


def test_subscription_result_maps_failure_code_to_none():
    result = SubscriptionResult.from_codes(
        3, (("a", QoS.AT_MOST_ONCE), ("b", QoS.EXACTLY_ONCE)), (0, 0x80)
    )
    assert result.granted == (QoS.AT_MOST_ONCE, None)


def test_disconnected_without_cause_was_requested():
    assert Disconnected().requested
    assert not Disconnected(cause=TransportError("gone"), reconnect_in=1.0).requested
