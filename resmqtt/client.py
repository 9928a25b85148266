"""MQTT client engine.

アプリケーション要求、受信パケット、タイマーを1つのイベントループで処理する
MQTTクライアントです。以下の機能を提供します:

- スレッドセーフな publish / subscribe / unsubscribe / disconnect
- 未接続時のオフラインバッファリングと接続時の順序通りの送信
- QoS 1/2 の確認応答管理と再送
- キープアライブと指数バックオフによる自動再接続
- 非同期イテレーターによるイベント通知

エンジンのループは ``connect()`` が起動するasyncioタスク上で動作します。
要求メソッドは任意のスレッドから呼び出せ、要求をキューに積んでループを
起こすだけで、結果はイベントとして通知されます。
"""

import asyncio
import queue
import ssl
import time
from typing import (
    AsyncIterator,
    Callable,
    Iterable,
    List,
    Optional,
    Sequence,
    Set,
    Tuple,
    Union,
)

from .config import MQTTConfig, Session
from .connection import ConnectionManager
from .core.constants import (
    MQTT_MAX_REMAINING_LENGTH,
    ConnectionState,
    ReconnectMode,
)
from .core.exceptions import (
    CapacityError,
    ConfigError,
    MessageError,
    MQTTError,
    ProtocolError,
    error_message,
)
from .core.logging import log_error, logger
from .events import (
    Connected,
    Disconnected,
    ErrorEvent,
    ErrorKind,
    Event,
    MessageArrived,
    PublishCompleted,
    SubscriptionResult,
    UnsubscribeResult,
)
from .packet import (
    ConnAck,
    ControlPacket,
    PubAck,
    PubComp,
    Publish,
    PubRec,
    PubRel,
    QoS,
    SubAck,
    UnsubAck,
    encode_remaining_length,
)
from .state import (
    OfflineBuffer,
    OfflineEntry,
    PendingPublish,
    PendingSubscribe,
    PendingUnsubscribe,
    QoSTracker,
)
from .topic import validate_topic_filter, validate_topic_name
from .transport import BrokerAddress, TransportFactory, transport_for

Payload = Union[bytes, bytearray, memoryview, str]

# disconnect() 要求を表す番兵
_SHUTDOWN = object()


class ReconnectBackoff:
    """再接続待機時間の指数バックオフ.

    Attributes:
        minimum: 最初の待機時間(秒)
        maximum: 待機時間の上限(秒)
        factor: 失敗ごとの倍率
    """

    def __init__(self, minimum: float, maximum: float, factor: float) -> None:
        self.minimum = minimum
        self.maximum = maximum
        self.factor = factor
        self._next = minimum

    def next_delay(self) -> float:
        """次の待機時間を返し、その次の値を伸ばします."""
        delay = self._next
        self._next = min(self._next * self.factor, self.maximum)
        return delay

    def reset(self) -> None:
        self._next = self.minimum


def _coerce_qos(value: Union[int, QoS]) -> QoS:
    try:
        return QoS(value)
    except ValueError as err:
        raise MessageError(error_message("INVALID_QOS", value=value)) from err


def _coerce_payload(payload: Payload) -> bytes:
    if isinstance(payload, str):
        return payload.encode("utf-8")
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload)
    raise MessageError(
        error_message(
            "INVALID_PACKET_FORMAT",
            detail=f"payload must be bytes or str, not {type(payload).__name__}",
        )
    )


def _subscription_pairs(topic, qos) -> List[Tuple[str, object]]:
    """subscribe() の引数を(フィルター, QoS)のリストに揃えて検証します."""
    if isinstance(topic, str):
        pairs = [(topic, qos)]
    elif (
        isinstance(topic, tuple)
        and len(topic) == 2
        and isinstance(topic[0], str)
    ):
        pairs = [topic]
    else:
        try:
            pairs = list(topic)
        except TypeError as err:
            raise MessageError(
                error_message("INVALID_TOPIC", detail=repr(topic))
            ) from err
    if not pairs:
        raise MessageError(
            error_message("INVALID_TOPIC", detail="no topic filters")
        )

    for item in pairs:
        if not (
            isinstance(item, (tuple, list))
            and len(item) == 2
            and isinstance(item[0], str)
        ):
            raise MessageError(
                error_message(
                    "INVALID_TOPIC",
                    detail=f"expected (filter, qos), got {item!r}",
                )
            )
        validate_topic_filter(item[0])
    return pairs


def _publish_size(topic: str, payload: bytes, qos: QoS) -> int:
    """PUBLISHパケット全体のバイト数を計算します."""
    remaining = 2 + len(topic.encode("utf-8")) + len(payload)
    if qos != QoS.AT_MOST_ONCE:
        remaining += 2
    if remaining > MQTT_MAX_REMAINING_LENGTH:
        return remaining
    return 1 + len(encode_remaining_length(remaining)) + remaining


class MQTTClient:
    """MQTT 3.1.1 クライアントエンジン.

    Example:
        >>> client = MQTTClient()
        >>> await client.connect("mqtt://localhost", Session("sensor-1"))
        >>> client.subscribe("sensors/#", QoS.AT_LEAST_ONCE)
        >>> async for event in client.events():
        ...     print(event)

    Attributes:
        config: クライアントの動作設定
    """

    def __init__(
        self,
        config: Optional[MQTTConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """MQTTClientを初期化します.

        設定の検証は ``connect()`` で行います。

        Args:
            config: 動作設定。省略時はデフォルト値。
            clock: モノトニック時刻を返す関数
        """
        self.config = config or MQTTConfig()
        self._clock = clock
        self._session: Optional[Session] = None
        self._transport_factory: Optional[TransportFactory] = None

        self._connection = ConnectionManager(clock=clock)
        self._tracker: Optional[QoSTracker] = None
        self._offline: Optional[OfflineBuffer] = None
        self._backoff: Optional[ReconnectBackoff] = None

        self._requests: "queue.SimpleQueue[object]" = queue.SimpleQueue()
        self._events: "asyncio.Queue[Optional[Event]]" = asyncio.Queue()
        self._wakeup = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None
        self._read_task: Optional[asyncio.Task] = None

        self._reconnect_at: Optional[float] = None
        self._next_send_at: Optional[float] = None
        self._has_connected = False
        self._link_active = False
        self._stopping = False
        self._disconnect_requested = False
        self._stream_ended = False

    # ------------------------------------------------------------------
    # 状態参照
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        """現在の接続状態."""
        return self._connection.state

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def tracker(self) -> Optional[QoSTracker]:
        """QoSトラッカー。``connect()`` 前はNone."""
        return self._tracker

    @property
    def offline_buffer(self) -> Optional[OfflineBuffer]:
        """オフラインバッファ。``connect()`` 前はNone."""
        return self._offline

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # ライフサイクル
    # ------------------------------------------------------------------

    async def connect(
        self,
        address: Optional[BrokerAddress],
        session: Session,
        *,
        transport_factory: Optional[TransportFactory] = None,
        ssl_context: Optional[ssl.SSLContext] = None,
    ) -> None:
        """エンジンを起動してブローカーへの接続を開始します.

        接続の確立を待たずに戻ります。結果は ``Connected`` または
        ``ErrorEvent`` / ``Disconnected`` イベントで通知されます。

        Args:
            address: ブローカーアドレス。``transport_factory`` 指定時は省略可。
            session: セッション設定
            transport_factory: トランスポートを生成する関数
            ssl_context: TLSに使うSSLコンテキスト

        Raises:
            ConfigError: 設定またはアドレスが不正な場合
            RuntimeError: 既に起動済みの場合
        """
        if self._task is not None or self._disconnect_requested:
            raise RuntimeError("MQTTClient.connect() can only be called once")

        self.config.validate()
        session.validate(self.config.allow_long_client_id)
        if transport_factory is None:
            if address is None:
                raise ConfigError(
                    error_message("INVALID_ADDRESS", address=address)
                )
            transport_factory = transport_for(address, ssl_context)

        config = self.config
        self._session = session
        self._transport_factory = transport_factory
        self._connection = ConnectionManager(
            connect_timeout=config.connect_timeout,
            max_packet_size=config.max_packet_size,
            clock=self._clock,
        )
        self._tracker = QoSTracker(
            retry_interval=config.retry_interval,
            max_retry_interval=config.max_retry_interval,
            max_inflight=config.max_inflight,
            clock=self._clock,
        )
        self._offline = OfflineBuffer(
            config.offline_buffer_capacity, on_evict=self._on_evict
        )
        self._backoff = ReconnectBackoff(
            config.reconnect_min, config.reconnect_max, config.reconnect_factor
        )

        self._loop = asyncio.get_running_loop()
        self._reconnect_at = self._clock()
        self._task = asyncio.create_task(
            self._run(), name=f"resmqtt-{session.client_id}"
        )
        logger.info(f"MQTTクライアントを起動しました: {session.client_id}")

    def disconnect(self) -> None:
        """DISCONNECTを送信してエンジンを停止します.

        任意のスレッドから呼び出せます。2回目以降の呼び出しは何もしません。
        """
        if self._disconnect_requested:
            return
        self._disconnect_requested = True
        if self._task is None:
            self._events.put_nowait(None)
            return
        self._put_request(_SHUTDOWN)

    async def wait_closed(self) -> None:
        """エンジンのループが終了するまで待機します."""
        if self._task is not None:
            await asyncio.wait({self._task})

    async def __aenter__(self) -> "MQTTClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.disconnect()
        await self.wait_closed()

    # ------------------------------------------------------------------
    # アプリケーション要求
    # ------------------------------------------------------------------

    def publish(
        self,
        topic: str,
        payload: Payload = b"",
        qos: Union[int, QoS] = QoS.AT_MOST_ONCE,
        retain: bool = False,
    ) -> None:
        """メッセージを発行します.

        未接続の場合はオフラインバッファに保持され、接続後に送信されます。

        Args:
            topic: トピック名(ワイルドカード不可)
            payload: ペイロード。strはUTF-8で符号化します。
            qos: QoSレベル
            retain: 保持フラグ

        Raises:
            MessageError: 引数が不正、またはパケットが大きすぎる場合
        """
        qos = _coerce_qos(qos)
        validate_topic_name(topic)
        data = _coerce_payload(payload)
        size = _publish_size(topic, data, qos)
        if size > self.config.max_packet_size:
            raise MessageError(
                error_message(
                    "PAYLOAD_TOO_LARGE",
                    size=size,
                    limit=self.config.max_packet_size,
                )
            )
        self._put_request(
            PendingPublish(topic=topic, payload=data, qos=qos, retain=retain)
        )

    def subscribe(
        self,
        topic: Union[str, Sequence[Tuple[str, Union[int, QoS]]]],
        qos: Union[int, QoS] = QoS.AT_MOST_ONCE,
    ) -> None:
        """トピックフィルターを購読します.

        Args:
            topic: トピックフィルター、(フィルター, QoS)のタプル、
                またはそのシーケンス
            qos: ``topic`` が文字列の場合の要求QoS

        Raises:
            MessageError: フィルターまたはQoSが不正な場合
        """
        topics = tuple(
            (topic_filter, _coerce_qos(requested))
            for topic_filter, requested in _subscription_pairs(topic, qos)
        )
        self._put_request(PendingSubscribe(topics=topics))

    def unsubscribe(self, topic: Union[str, Iterable[str]]) -> None:
        """トピックフィルターの購読を解除します.

        Args:
            topic: トピックフィルター、またはそのイテラブル

        Raises:
            MessageError: フィルターが不正な場合
        """
        topics = (topic,) if isinstance(topic, str) else tuple(topic)
        if not topics:
            raise MessageError(
                error_message("INVALID_TOPIC", detail="no topic filters")
            )
        for topic_filter in topics:
            validate_topic_filter(topic_filter)
        self._put_request(PendingUnsubscribe(topics=topics))

    # ------------------------------------------------------------------
    # イベント
    # ------------------------------------------------------------------

    async def next_event(self, timeout: Optional[float] = None) -> Optional[Event]:
        """次のイベントを返します.

        Args:
            timeout: 待機する最大秒数。Noneで無制限。

        Returns:
            Optional[Event]: 次のイベント。エンジンが停止済みの場合はNone。

        Raises:
            asyncio.TimeoutError: タイムアウトした場合
        """
        if self._stream_ended and self._events.empty():
            return None
        event = await asyncio.wait_for(self._events.get(), timeout)
        if event is None:
            self._stream_ended = True
        return event

    async def events(self) -> AsyncIterator[Event]:
        """イベントを順に返す非同期イテレーター.

        ``disconnect()`` 後、または再接続が行われない切断の後に終了します。
        """
        while True:
            event = await self.next_event()
            if event is None:
                return
            yield event

    # ------------------------------------------------------------------
    # イベントループ
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        try:
            while not self._stopping:
                await self._step()
        except Exception as err:
            logger.exception("イベントループで予期しないエラーが発生しました")
            self._emit(
                ErrorEvent.from_error(
                    MQTTError(error_message("UNEXPECTED_ERROR", detail=err))
                )
            )
        finally:
            self._cancel_read()
            await self._connection.abort()
            self._stopping = True
            self._events.put_nowait(None)
            logger.info("MQTTクライアントを停止しました")

    async def _step(self) -> None:
        now = self._clock()
        if (
            self._reconnect_at is not None
            and now >= self._reconnect_at
            and self.state is ConnectionState.DISCONNECTED
            and not self._disconnect_requested
        ):
            await self._open_connection()

        await self._process_requests()
        if self._stopping:
            return
        await self._process_timers()
        if self._stopping:
            return
        await self._wait_for_activity()

    async def _open_connection(self) -> None:
        self._reconnect_at = None
        self._link_active = True
        if self._session.clean_session:
            dropped = self._tracker.reset()
            if dropped:
                logger.warning(
                    f"クリーンセッションのため送信中の{dropped}件を破棄しました"
                )
        try:
            await self._connection.connect(
                self._transport_factory(), self._session
            )
        except MQTTError as err:
            await self._connection_lost(err)

    async def _process_requests(self) -> None:
        # 取り出す前にクリアして、処理中に届いた要求の通知を失わない
        self._wakeup.clear()
        while not self._stopping:
            try:
                request = self._requests.get_nowait()
            except queue.Empty:
                return
            if request is _SHUTDOWN:
                await self._shutdown()
                return
            try:
                await self._submit(request)
            except MQTTError as err:
                await self._fail(err)

    async def _process_timers(self) -> None:
        now = self._clock()
        try:
            await self._connection.tick(now)
            if self._connection.is_connected and self._tracker.tick(now):
                await self._flush()
            await self._release_offline()
        except MQTTError as err:
            await self._fail(err)

    async def _wait_for_activity(self) -> None:
        waiters: Set[asyncio.Future] = set()
        if self._connection.is_active:
            if self._read_task is None:
                self._read_task = asyncio.create_task(
                    self._connection.receive()
                )
            waiters.add(self._read_task)

        wakeup = asyncio.ensure_future(self._wakeup.wait())
        waiters.add(wakeup)
        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self.config.tick_interval,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            wakeup.cancel()

        task = self._read_task
        if task is not None and task in done:
            self._read_task = None
            await self._handle_read(task)

    async def _handle_read(self, task: asyncio.Task) -> None:
        try:
            packets = task.result()
        except asyncio.CancelledError:
            return
        except MQTTError as err:
            await self._connection_lost(err)
            return

        try:
            for packet in packets:
                await self._route(packet)
        except MQTTError as err:
            await self._fail(err)

    # ------------------------------------------------------------------
    # 受信パケット処理
    # ------------------------------------------------------------------

    async def _route(self, packet: ControlPacket) -> None:
        tracker = self._tracker
        if isinstance(packet, ConnAck):
            await self._on_connected(packet)
        elif isinstance(packet, Publish):
            if tracker.on_publish(packet):
                self._emit(
                    MessageArrived(
                        topic=packet.topic,
                        payload=packet.payload,
                        qos=packet.qos,
                        retain=packet.retain,
                    )
                )
            await self._flush()
        elif isinstance(packet, (PubAck, PubRec, PubComp)):
            record = tracker.on_ack(packet)
            if record is not None:
                self._emit(
                    PublishCompleted(
                        packet_id=record.packet_id,
                        topic=record.publish.topic,
                        qos=record.qos,
                    )
                )
            await self._flush()
            await self._release_offline()
        elif isinstance(packet, PubRel):
            tracker.on_pubrel(packet.packet_id)
            await self._flush()
        elif isinstance(packet, SubAck):
            request = tracker.on_suback(packet)
            if request is not None:
                self._emit(
                    SubscriptionResult.from_codes(
                        request.packet_id, request.topics, packet.return_codes
                    )
                )
                await self._release_offline()
        elif isinstance(packet, UnsubAck):
            request = tracker.on_unsuback(packet)
            if request is not None:
                self._emit(
                    UnsubscribeResult(
                        packet_id=request.packet_id, topics=request.topics
                    )
                )
                await self._release_offline()
        else:
            # CONNECT / SUBSCRIBE / UNSUBSCRIBE / PINGREQ / DISCONNECT
            raise ProtocolError(
                error_message(
                    "UNEXPECTED_PACKET",
                    packet=packet.packet_type.name,
                    state=self.state.name,
                )
            )

    async def _on_connected(self, packet: ConnAck) -> None:
        self._has_connected = True
        if not self._session.clean_session:
            resent = self._tracker.resume(self._clock())
            if resent:
                logger.info(f"前回のセッションから{resent}件を再送します")
        self._emit(Connected(session_present=packet.session_present))
        await self._flush()
        await self._release_offline()

    # ------------------------------------------------------------------
    # 送信処理
    # ------------------------------------------------------------------

    async def _submit(self, entry: OfflineEntry) -> None:
        if (
            self._connection.is_connected
            and not self._offline
            and self._can_send(entry)
        ):
            self._start_request(entry)
            await self._flush()
        else:
            self._offline.enqueue(entry)

    async def _release_offline(self) -> None:
        """送信ウィンドウと送信レートが許す限りバッファの要求を順に送信します."""
        released = 0
        while self._connection.is_connected and self._offline:
            entry = self._offline.peek()
            if not self._can_send(entry):
                break
            self._offline.pop()
            self._start_request(entry)
            released += 1
        if released:
            logger.debug(f"オフラインバッファから{released}件を送信します")
            await self._flush()

    def _can_send(self, entry: OfflineEntry) -> bool:
        if (
            self._next_send_at is not None
            and self._clock() < self._next_send_at
        ):
            return False
        if isinstance(entry, PendingPublish) and entry.qos == QoS.AT_MOST_ONCE:
            return True
        return self._tracker.has_capacity()

    def _start_request(self, entry: OfflineEntry) -> None:
        tracker = self._tracker
        if isinstance(entry, PendingPublish):
            tracker.submit(entry.topic, entry.payload, entry.qos, entry.retain)
        elif isinstance(entry, PendingSubscribe):
            tracker.submit_subscribe(entry.topics)
        else:
            tracker.submit_unsubscribe(entry.topics)

        rate = self.config.outgoing_ratelimit
        if rate is not None:
            self._next_send_at = self._clock() + 1.0 / rate

    async def _flush(self) -> None:
        for packet in self._tracker.take_outgoing():
            await self._connection.send(packet)

    # ------------------------------------------------------------------
    # 切断と再接続
    # ------------------------------------------------------------------

    async def _fail(self, error: MQTTError) -> None:
        await self._connection.abort()
        await self._connection_lost(error)

    async def _connection_lost(self, error: MQTTError) -> None:
        if not self._link_active:
            return
        self._link_active = False
        self._cancel_read()
        self._tracker.take_outgoing()
        log_error("CONNECTION_LOST", error=error)

        self._emit(ErrorEvent.from_error(error))
        delay = self._schedule_reconnect()
        self._emit(Disconnected(cause=error, reconnect_in=delay))
        if delay is None:
            logger.info("再接続は行いません")
            self._stopping = True

    def _schedule_reconnect(self) -> Optional[float]:
        mode = self.config.reconnect_mode
        if mode is ReconnectMode.NEVER:
            return None
        if mode is ReconnectMode.AFTER_FIRST_SUCCESS and not self._has_connected:
            return None

        if self._connection.last_uptime >= self.config.stable_after > 0:
            self._backoff.reset()
        delay = self._backoff.next_delay()
        self._reconnect_at = self._clock() + delay
        logger.info(f"{delay:.1f}秒後に再接続します")
        return delay

    async def _shutdown(self) -> None:
        self._stopping = True
        self._reconnect_at = None
        self._link_active = False
        self._cancel_read()
        await self._connection.disconnect()
        if self._offline:
            logger.warning(
                f"未送信の要求が{len(self._offline)}件残っています"
            )
        self._emit(Disconnected())

    def _cancel_read(self) -> None:
        task, self._read_task = self._read_task, None
        if task is None:
            return
        if not task.done():
            task.cancel()
        elif not task.cancelled():
            # 接続を閉じた後の読み込みエラーは破棄する
            task.exception()

    # ------------------------------------------------------------------
    # 内部ユーティリティ
    # ------------------------------------------------------------------

    def _put_request(self, request: object) -> None:
        if self._disconnect_requested and request is not _SHUTDOWN:
            raise MessageError(error_message("CLIENT_CLOSED"))
        self._requests.put(request)
        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self._wakeup.set)

    def _emit(self, event: Event) -> None:
        capacity = self.config.event_capacity
        if capacity and self._events.qsize() >= capacity:
            logger.warning(
                f"イベントキューが満杯のため破棄しました: {type(event).__name__}"
            )
            return
        self._events.put_nowait(event)

    def _on_evict(self, entry: OfflineEntry) -> None:
        self._emit(
            ErrorEvent(
                kind=ErrorKind.CAPACITY,
                error=CapacityError(
                    error_message(
                        "BUFFER_EVICTED",
                        capacity=self._offline.capacity,
                        entry=type(entry).__name__,
                    )
                ),
            )
        )
