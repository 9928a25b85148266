"""
Tests for the bounded offline buffer.
"""

import pytest

from resmqtt.packet import QoS
from resmqtt.state import (
    OfflineBuffer,
    PendingPublish,
    PendingSubscribe,
    PendingUnsubscribe,
)


def _publish(n: int) -> PendingPublish:
    return PendingPublish(topic="t", payload=str(n).encode(), qos=QoS(1))


def test_drain_returns_entries_in_insertion_order():
    buffer = OfflineBuffer(capacity=10)
    entries = [
        _publish(1),
        PendingSubscribe(topics=(("a/#", QoS.AT_LEAST_ONCE),)),
        _publish(2),
        PendingUnsubscribe(topics=("a/#",)),
    ]
    for entry in entries:
        assert buffer.enqueue(entry) is True

    assert len(buffer) == 4
    assert buffer.drain() == entries
    assert len(buffer) == 0


def test_drain_on_empty_buffer_is_empty():
    buffer = OfflineBuffer(capacity=3)
    assert buffer.drain() == []
    buffer.enqueue(_publish(1))
    buffer.drain()
    assert buffer.drain() == []


def test_overflow_evicts_exactly_the_oldest_entry():
    evicted = []
    buffer = OfflineBuffer(capacity=3, on_evict=evicted.append)
    for n in range(3):
        buffer.enqueue(_publish(n))

    assert buffer.enqueue(_publish(3)) is False
    assert evicted == [_publish(0)]
    assert buffer.evicted == 1
    assert buffer.drain() == [_publish(1), _publish(2), _publish(3)]


def test_each_eviction_is_reported_once():
    evicted = []
    buffer = OfflineBuffer(capacity=2, on_evict=evicted.append)
    for n in range(6):
        buffer.enqueue(_publish(n))

    assert evicted == [_publish(n) for n in range(4)]
    assert buffer.evicted == 4
    assert len(buffer) == 2


def test_pop_and_peek():
    buffer = OfflineBuffer(capacity=2)
    assert buffer.peek() is None
    assert buffer.pop() is None
    buffer.enqueue(_publish(1))
    buffer.enqueue(_publish(2))
    assert buffer.peek() == _publish(1)
    assert buffer.pop() == _publish(1)
    assert len(buffer) == 1


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        OfflineBuffer(capacity=0)
