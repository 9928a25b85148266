"""
Tests for the client engine: buffering, reconnect, QoS flows and events.

The engine runs on the test's event loop against in-memory transports.
Time-based behavior is driven by a fake clock, so the loop tick is kept
short and tests advance the clock explicitly.
"""

import asyncio

import pytest

from resmqtt import (
    ConfigError,
    Connected,
    Disconnected,
    ErrorEvent,
    ErrorKind,
    MessageArrived,
    MessageError,
    MQTTClient,
    MQTTConfig,
    PublishCompleted,
    ReconnectBackoff,
    ReconnectMode,
    Session,
    SubscriptionResult,
    UnsubscribeResult,
)
from resmqtt.core.constants import ConnectionState
from resmqtt.core.exceptions import KeepAliveTimeout, TransportError
from resmqtt.packet import (
    ConnAck,
    Connect,
    Disconnect,
    PingReq,
    PingResp,
    PubAck,
    PubComp,
    Publish,
    PubRec,
    PubRel,
    QoS,
    SubAck,
    Subscribe,
    UnsubAck,
    Unsubscribe,
)
from resmqtt.state import OutgoingStage

from conftest import TransportPool, until


def make_client(clock, **options) -> MQTTClient:
    return MQTTClient(MQTTConfig(tick_interval=0.01, **options), clock=clock)


async def next_of(client: MQTTClient, kind: type, timeout: float = 2.0):
    """Skip events until one of ``kind`` arrives."""
    while True:
        event = await client.next_event(timeout)
        assert event is not None, "event stream ended"
        if isinstance(event, kind):
            return event


async def wait_for_connect(pool: TransportPool, attempt: int = 1) -> None:
    await until(
        lambda: len(pool.transports) >= attempt
        and bool(pool.current.sent_of(Connect))
    )


async def start(client, pool, session=None, session_present=False):
    await client.connect(
        None, session or Session("client-1"), transport_factory=pool
    )
    await wait_for_connect(pool)
    pool.current.feed(ConnAck(session_present=session_present))
    return await next_of(client, Connected)


async def stop(client):
    client.disconnect()
    await client.wait_closed()


async def reconnect(client, pool, clock, delay, attempt):
    clock.advance(delay)
    await wait_for_connect(pool, attempt=attempt)
    pool.current.feed(ConnAck())
    await next_of(client, Connected)


def test_reconnect_backoff_doubles_up_to_the_cap():
    backoff = ReconnectBackoff(1.0, 64.0, 2.0)
    delays = [backoff.next_delay() for _ in range(9)]
    assert delays == [1, 2, 4, 8, 16, 32, 64, 64, 64]
    backoff.reset()
    assert backoff.next_delay() == 1


@pytest.mark.asyncio
async def test_messages_published_offline_are_sent_in_order_on_reconnect(
    clock, pool
):
    client = make_client(clock)
    await start(client, pool)

    pool.current.drop()
    lost = await next_of(client, Disconnected)
    assert lost.reconnect_in == 1.0
    assert client.state is ConnectionState.DISCONNECTED

    for n in range(3):
        client.publish("sensors/temp", f"m{n}", qos=QoS.AT_LEAST_ONCE)
    await until(lambda: len(client.offline_buffer) == 3)

    clock.advance(1.0)
    await wait_for_connect(pool, attempt=2)
    pool.current.feed(ConnAck())
    await next_of(client, Connected)
    await until(lambda: len(pool.current.sent_of(Publish)) == 3)

    publishes = pool.current.sent_of(Publish)
    assert [p.payload for p in publishes] == [b"m0", b"m1", b"m2"]
    assert all(p.dup is False for p in publishes)
    assert len({p.packet_id for p in publishes}) == 3

    pool.current.feed(*[PubAck(p.packet_id) for p in publishes])
    for publish in publishes:
        completed = await next_of(client, PublishCompleted)
        assert completed.packet_id == publish.packet_id
        assert completed.qos == QoS.AT_LEAST_ONCE

    assert len(client.offline_buffer) == 0
    assert client.tracker.outgoing == []
    await stop(client)


@pytest.mark.asyncio
async def test_pubrel_is_resent_after_reconnect_with_persistent_session(
    clock, pool
):
    client = make_client(clock)
    await start(client, pool, Session("client-2", clean_session=False))

    client.publish("t", b"payload", qos=QoS.EXACTLY_ONCE)
    await until(lambda: bool(pool.current.sent_of(Publish)))
    (publish,) = pool.current.sent_of(Publish)
    pool.current.feed(PubRec(publish.packet_id))
    await until(lambda: bool(pool.current.sent_of(PubRel)))

    pool.current.drop()
    await next_of(client, Disconnected)
    clock.advance(1.0)
    await wait_for_connect(pool, attempt=2)
    pool.current.feed(ConnAck(session_present=True))
    connected = await next_of(client, Connected)
    assert connected.session_present is True

    await until(lambda: bool(pool.current.sent_of(PubRel)))
    assert pool.current.sent_of(PubRel) == [PubRel(publish.packet_id)]
    assert pool.current.sent_of(Publish) == []
    record = client.tracker.get(publish.packet_id)
    assert record.stage is OutgoingStage.AWAITING_PUBCOMP

    pool.current.feed(PubComp(publish.packet_id))
    completed = await next_of(client, PublishCompleted)
    assert completed.qos == QoS.EXACTLY_ONCE
    assert client.tracker.outgoing == []
    await stop(client)


@pytest.mark.asyncio
async def test_unacked_publish_is_resent_with_dup_on_reconnect(clock, pool):
    client = make_client(clock)
    await start(client, pool, Session("client-3", clean_session=False))

    client.publish("t", b"once", qos=QoS.AT_LEAST_ONCE)
    await until(lambda: bool(pool.current.sent_of(Publish)))
    pool.current.drop()
    await next_of(client, Disconnected)

    clock.advance(1.0)
    await wait_for_connect(pool, attempt=2)
    pool.current.feed(ConnAck(session_present=True))
    await until(lambda: bool(pool.current.sent_of(Publish)))
    (resent,) = pool.current.sent_of(Publish)
    assert resent.dup is True
    assert resent.payload == b"once"
    await stop(client)


@pytest.mark.asyncio
async def test_clean_session_discards_in_flight_state(clock, pool):
    client = make_client(clock)
    await start(client, pool)

    client.publish("t", b"lost", qos=QoS.AT_LEAST_ONCE)
    await until(lambda: bool(pool.current.sent_of(Publish)))
    pool.current.drop()
    await next_of(client, Disconnected)

    clock.advance(1.0)
    await wait_for_connect(pool, attempt=2)
    assert client.tracker.outgoing == []
    await stop(client)


@pytest.mark.parametrize(
    "session, options, address",
    [
        (Session(""), {}, "localhost"),
        (Session(" leading"), {}, "localhost"),
        (Session("x" * 24), {}, "localhost"),
        (Session("ok", keep_alive=5), {}, "localhost"),
        (Session("ok"), {"offline_buffer_capacity": 0}, "localhost"),
        (Session("ok"), {"reconnect_max": 0.5}, "localhost"),
        (Session("ok"), {}, "ftp://localhost"),
        (Session("ok"), {}, None),
    ],
)
@pytest.mark.asyncio
async def test_invalid_configuration_fails_at_connect(
    clock, session, options, address
):
    client = make_client(clock, **options)
    with pytest.raises(ConfigError):
        await client.connect(address, session)
    assert not client.is_running


@pytest.mark.asyncio
async def test_long_client_id_can_be_allowed(clock, pool):
    client = make_client(clock, allow_long_client_id=True)
    await start(client, pool, Session("x" * 40))
    assert pool.current.sent_of(Connect)[0].client_id == "x" * 40
    await stop(client)


@pytest.mark.asyncio
async def test_reconnect_delay_grows_while_attempts_fail(clock):
    pool = TransportPool(failures=3)
    client = make_client(clock)
    await client.connect(None, Session("client-4"), transport_factory=pool)

    error = await next_of(client, ErrorEvent)
    assert error.kind is ErrorKind.TRANSPORT
    for expected in (1.0, 2.0, 4.0):
        lost = await next_of(client, Disconnected)
        assert lost.reconnect_in == expected
        clock.advance(expected)

    await wait_for_connect(pool, attempt=4)
    pool.current.feed(ConnAck())
    await next_of(client, Connected)
    await stop(client)


@pytest.mark.asyncio
async def test_backoff_resets_after_a_stable_connection(clock, pool):
    client = make_client(clock)
    await start(client, pool)

    pool.current.drop()
    assert (await next_of(client, Disconnected)).reconnect_in == 1.0
    clock.advance(1.0)
    await wait_for_connect(pool, attempt=2)
    pool.current.feed(ConnAck())
    await next_of(client, Connected)

    pool.current.drop()
    assert (await next_of(client, Disconnected)).reconnect_in == 2.0
    clock.advance(2.0)
    await wait_for_connect(pool, attempt=3)
    pool.current.feed(ConnAck())
    await next_of(client, Connected)

    clock.advance(15.0)
    pool.current.drop()
    assert (await next_of(client, Disconnected)).reconnect_in == 1.0
    await stop(client)


@pytest.mark.parametrize(
    "mode", [ReconnectMode.NEVER, ReconnectMode.AFTER_FIRST_SUCCESS]
)
@pytest.mark.asyncio
async def test_no_reconnect_after_failed_first_attempt(clock, mode):
    pool = TransportPool(failures=1)
    client = make_client(clock, reconnect_mode=mode)
    await client.connect(None, Session("client-5"), transport_factory=pool)

    events = [event async for event in client.events()]
    assert isinstance(events[0], ErrorEvent)
    assert events[-1] == Disconnected(
        cause=events[0].error, reconnect_in=None
    )
    await client.wait_closed()
    assert not client.is_running
    assert len(pool.transports) == 1


@pytest.mark.asyncio
async def test_after_first_success_reconnects_once_connected(clock, pool):
    client = make_client(
        clock, reconnect_mode=ReconnectMode.AFTER_FIRST_SUCCESS
    )
    await start(client, pool)
    pool.current.drop()
    lost = await next_of(client, Disconnected)
    assert lost.reconnect_in == 1.0
    await stop(client)


@pytest.mark.asyncio
async def test_buffer_overflow_reports_each_eviction(clock, pool):
    client = make_client(clock, offline_buffer_capacity=2)
    for n in range(3):
        client.publish("t", f"m{n}")
    await client.connect(None, Session("client-6"), transport_factory=pool)

    error = await next_of(client, ErrorEvent)
    assert error.kind is ErrorKind.CAPACITY
    await until(lambda: len(client.offline_buffer) == 2)

    await wait_for_connect(pool)
    pool.current.feed(ConnAck())
    await until(lambda: len(pool.current.sent_of(Publish)) == 2)
    assert [p.payload for p in pool.current.sent_of(Publish)] == [b"m1", b"m2"]
    await stop(client)


@pytest.mark.asyncio
async def test_inflight_window_holds_back_extra_requests(clock, pool):
    client = make_client(clock, max_inflight=1)
    await start(client, pool)

    for n in range(3):
        client.publish("t", f"m{n}", qos=QoS.AT_LEAST_ONCE)
    await until(lambda: len(client.offline_buffer) == 2)
    assert len(pool.current.sent_of(Publish)) == 1

    for n in range(3):
        sent = pool.current.sent_of(Publish)
        assert sent[-1].payload == f"m{n}".encode()
        pool.current.feed(PubAck(sent[-1].packet_id))
        await next_of(client, PublishCompleted)
        await until(
            lambda: len(pool.current.sent_of(Publish)) == min(n + 2, 3)
        )

    assert len(client.offline_buffer) == 0
    await stop(client)


@pytest.mark.asyncio
async def test_subscribe_and_receive_messages(clock, pool):
    client = make_client(clock)
    await start(client, pool)

    client.subscribe([("a/+", 1), ("b/#", 2)])
    await until(lambda: bool(pool.current.sent_of(Subscribe)))
    (request,) = pool.current.sent_of(Subscribe)
    pool.current.feed(SubAck(request.packet_id, (1, 0x80)))
    result = await next_of(client, SubscriptionResult)
    assert result.granted == (QoS.AT_LEAST_ONCE, None)

    pool.current.feed(Publish(topic="a/x", payload=b"hi", qos=1, packet_id=9))
    message = await next_of(client, MessageArrived)
    assert (message.topic, message.payload, message.qos) == (
        "a/x",
        b"hi",
        QoS.AT_LEAST_ONCE,
    )
    await until(lambda: PubAck(9) in pool.current.sent())

    client.unsubscribe("a/+")
    await until(lambda: bool(pool.current.sent_of(Unsubscribe)))
    (unsubscribe,) = pool.current.sent_of(Unsubscribe)
    pool.current.feed(UnsubAck(unsubscribe.packet_id))
    done = await next_of(client, UnsubscribeResult)
    assert done.topics == ("a/+",)
    await stop(client)


@pytest.mark.asyncio
async def test_incoming_qos2_is_delivered_once(clock, pool):
    client = make_client(clock)
    await start(client, pool)

    message = Publish(topic="t", payload=b"x", qos=2, packet_id=4)
    pool.current.feed(message, message.as_duplicate(), PubRel(4))
    arrived = await next_of(client, MessageArrived)
    assert arrived.payload == b"x"
    await until(lambda: PubComp(4) in pool.current.sent())

    assert pool.current.sent_of(PubRec) == [PubRec(4), PubRec(4)]
    await stop(client)
    remaining = [event async for event in client.events()]
    assert not any(isinstance(e, MessageArrived) for e in remaining)


@pytest.mark.asyncio
async def test_requests_can_come_from_another_thread(clock, pool):
    client = make_client(clock)
    await start(client, pool)

    await asyncio.to_thread(client.publish, "t", b"threaded")
    await until(lambda: bool(pool.current.sent_of(Publish)))
    assert pool.current.sent_of(Publish)[0].payload == b"threaded"
    await stop(client)


@pytest.mark.asyncio
async def test_mismatched_ack_drops_the_connection(clock, pool):
    client = make_client(clock)
    await start(client, pool)

    client.publish("t", b"x", qos=QoS.AT_LEAST_ONCE)
    await until(lambda: bool(pool.current.sent_of(Publish)))
    (publish,) = pool.current.sent_of(Publish)
    pool.current.feed(PubRec(publish.packet_id))

    error = await next_of(client, ErrorEvent)
    assert error.kind is ErrorKind.PROTOCOL
    lost = await next_of(client, Disconnected)
    assert lost.reconnect_in == 1.0
    assert pool.current.closed
    await stop(client)


@pytest.mark.asyncio
async def test_missing_connack_times_out(clock, pool):
    client = make_client(clock)
    await client.connect(None, Session("client-7"), transport_factory=pool)
    await wait_for_connect(pool)

    clock.advance(30.0)
    error = await next_of(client, ErrorEvent)
    assert error.kind is ErrorKind.PROTOCOL
    await next_of(client, Disconnected)
    await stop(client)


@pytest.mark.asyncio
async def test_disconnect_is_idempotent(clock, pool):
    client = make_client(clock)
    await start(client, pool)
    transport = pool.current

    client.disconnect()
    client.disconnect()
    await client.wait_closed()

    remaining = [event async for event in client.events()]
    assert remaining == [Disconnected()]
    assert remaining[0].requested
    assert transport.sent_of(Disconnect) == [Disconnect()]
    assert transport.closed
    assert client.state is ConnectionState.DISCONNECTED
    assert await client.next_event() is None

    with pytest.raises(MessageError):
        client.publish("t", b"late")


@pytest.mark.asyncio
async def test_disconnect_before_connect_ends_the_stream(clock):
    client = make_client(clock)
    client.disconnect()
    assert [event async for event in client.events()] == []
    with pytest.raises(RuntimeError):
        await client.connect("localhost", Session("client-8"))


@pytest.mark.parametrize(
    "call",
    [
        lambda c: c.publish("a/+", b""),
        lambda c: c.publish("", b""),
        lambda c: c.publish("t", b"", qos=3),
        lambda c: c.publish("t", 12),
        lambda c: c.publish("t", b"x" * 100),
        lambda c: c.subscribe("a/#/b"),
        lambda c: c.subscribe("a/b+"),
        lambda c: c.subscribe([]),
        lambda c: c.unsubscribe([]),
        lambda c: c.subscribe(["a/b"]),
        lambda c: c.subscribe([("a/b", 1, 2)]),
        lambda c: c.subscribe(42),
        lambda c: c.subscribe(("a/b", 5)),
    ],
)
def test_invalid_requests_are_rejected_synchronously(clock, call):
    client = make_client(clock, max_packet_size=64)
    with pytest.raises(MessageError):
        call(client)


@pytest.mark.asyncio
async def test_missing_pingresp_drops_the_connection_and_reconnects(
    clock, pool
):
    client = make_client(clock)
    await start(client, pool, Session("client-9", keep_alive=10))
    first = pool.current

    clock.advance(10.0)
    await until(lambda: first.sent_of(PingReq) == [PingReq()])
    clock.advance(10.0)

    error = await next_of(client, ErrorEvent)
    assert error.kind is ErrorKind.PROTOCOL
    assert isinstance(error.error, KeepAliveTimeout)
    lost = await next_of(client, Disconnected)
    assert lost.cause is error.error
    assert lost.reconnect_in == 1.0
    assert first.closed

    await reconnect(client, pool, clock, 1.0, attempt=2)
    assert client.state is ConnectionState.CONNECTED
    await stop(client)


@pytest.mark.asyncio
async def test_pingresp_keeps_the_connection_alive(clock, pool):
    client = make_client(clock)
    await start(client, pool, Session("client-10", keep_alive=10))

    clock.advance(10.0)
    await until(lambda: len(pool.current.sent_of(PingReq)) == 1)
    pool.current.feed(PingResp(), Publish(topic="t", payload=b"alive"))
    await next_of(client, MessageArrived)

    clock.advance(10.0)
    await until(lambda: len(pool.current.sent_of(PingReq)) == 2)
    assert client.state is ConnectionState.CONNECTED
    assert len(pool.transports) == 1
    await stop(client)


@pytest.mark.asyncio
async def test_backoff_resets_after_stable_connection_lost_to_keep_alive(
    clock, pool
):
    client = make_client(clock)
    await start(client, pool, Session("client-11", keep_alive=10))

    pool.current.drop()
    assert (await next_of(client, Disconnected)).reconnect_in == 1.0
    await reconnect(client, pool, clock, 1.0, attempt=2)

    clock.advance(10.0)
    await until(lambda: bool(pool.current.sent_of(PingReq)))
    clock.advance(100.0)
    lost = await next_of(client, Disconnected)
    assert isinstance(lost.cause, KeepAliveTimeout)
    assert lost.reconnect_in == 1.0
    await stop(client)


@pytest.mark.asyncio
async def test_backoff_resets_after_stable_connection_lost_to_write_error(
    clock, pool
):
    client = make_client(clock)
    await start(client, pool)

    pool.current.drop()
    assert (await next_of(client, Disconnected)).reconnect_in == 1.0
    await reconnect(client, pool, clock, 1.0, attempt=2)

    clock.advance(15.0)
    pool.current.fail_write = True
    client.publish("t", b"x")

    error = await next_of(client, ErrorEvent)
    assert error.kind is ErrorKind.TRANSPORT
    assert isinstance(error.error, TransportError)
    lost = await next_of(client, Disconnected)
    assert lost.reconnect_in == 1.0
    await stop(client)


@pytest.mark.asyncio
async def test_disconnect_before_first_attempt_never_opens_a_transport(
    clock, pool
):
    client = make_client(clock)
    await client.connect(None, Session("client-12"), transport_factory=pool)
    client.disconnect()
    await client.wait_closed()

    assert pool.transports == []
    assert [event async for event in client.events()] == [Disconnected()]


@pytest.mark.asyncio
async def test_subscribe_accepts_a_single_filter_and_qos_pair(clock, pool):
    client = make_client(clock)
    await start(client, pool)

    client.subscribe(("a/b", 1))
    await until(lambda: bool(pool.current.sent_of(Subscribe)))
    (request,) = pool.current.sent_of(Subscribe)
    assert request.topics == (("a/b", QoS.AT_LEAST_ONCE),)
    await stop(client)


@pytest.mark.asyncio
async def test_outgoing_ratelimit_spaces_out_requests(clock, pool):
    client = make_client(clock, outgoing_ratelimit=2.0)
    await start(client, pool)

    for n in range(3):
        client.publish("t", f"m{n}")
    await until(lambda: len(client.offline_buffer) == 2)
    assert len(pool.current.sent_of(Publish)) == 1

    clock.advance(0.5)
    await until(lambda: len(pool.current.sent_of(Publish)) == 2)
    assert len(client.offline_buffer) == 1

    clock.advance(0.5)
    await until(lambda: len(pool.current.sent_of(Publish)) == 3)
    assert [p.payload for p in pool.current.sent_of(Publish)] == [
        b"m0",
        b"m1",
        b"m2",
    ]
    assert len(client.offline_buffer) == 0
    await stop(client)
