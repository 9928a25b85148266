"""Connection manager.

1本の物理接続をハンドシェイク、キープアライブ、切断まで管理するモジュール。

状態遷移:
    DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTING -> DISCONNECTED

失敗した操作はトランスポートを閉じて DISCONNECTED に遷移してから、
原因を表す例外を送出します。
"""

import asyncio
import time
from typing import Callable, List, Optional

from .config import Session
from .core.constants import (
    MQTT_CONNECT_TIMEOUT,
    MQTT_MAX_PACKET_SIZE,
    READ_CHUNK_SIZE,
    ConnectionState,
)
from .core.exceptions import (
    ConnectError,
    HandshakeTimeout,
    KeepAliveTimeout,
    MQTTError,
    ProtocolError,
    TransportError,
    error_message,
)
from .core.logging import log_packet, logger
from .packet import (
    ConnAck,
    Connect,
    ControlPacket,
    Disconnect,
    PacketReader,
    PingReq,
    PingResp,
    encode,
    get_connack_reason,
)
from .transport.base import Transport


class ConnectionManager:
    """1本の接続の状態機械.

    Attributes:
        state: 現在の接続状態
        session_present: 直近のCONNACKのセッション存在フラグ
        connected_at: 直近にCONNECTEDへ遷移した時刻
        last_uptime: 直近の接続がCONNECTEDだった時間(秒)
    """

    def __init__(
        self,
        connect_timeout: float = MQTT_CONNECT_TIMEOUT,
        max_packet_size: int = MQTT_MAX_PACKET_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """ConnectionManagerを初期化します.

        Args:
            connect_timeout: トランスポート接続とCONNACK待ちのタイムアウト(秒)
            max_packet_size: 受信を許可する最大パケットサイズ(バイト)
            clock: モノトニック時刻を返す関数
        """
        self.connect_timeout = connect_timeout
        self.state = ConnectionState.DISCONNECTED
        self.session_present = False
        self.connected_at: Optional[float] = None
        self.last_uptime = 0.0
        self._clock = clock
        self._reader = PacketReader(max_packet_size)
        self._transport: Optional[Transport] = None
        self._session: Optional[Session] = None
        self._handshake_deadline: Optional[float] = None
        self._ping_deadline: Optional[float] = None
        self._last_sent = 0.0

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def is_active(self) -> bool:
        """トランスポートが開いていて受信を待てる状態かどうか."""
        return self.state in (
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
        )

    @property
    def ping_outstanding(self) -> bool:
        """PINGREQを送信して応答を待っているかどうか."""
        return self._ping_deadline is not None

    async def connect(self, transport: Transport, session: Session) -> None:
        """トランスポートを開いてCONNECTを送信します.

        CONNACKは ``receive()`` で処理され、受理されるとCONNECTEDに遷移します。

        Args:
            transport: 使用するトランスポート
            session: セッション設定

        Raises:
            ProtocolError: 既に接続中の場合
            HandshakeTimeout: トランスポートが期限内に開かなかった場合
            TransportError: トランスポートの接続や書き込みに失敗した場合
        """
        if self.state is not ConnectionState.DISCONNECTED:
            raise ProtocolError(
                error_message(
                    "UNEXPECTED_PACKET", packet="CONNECT", state=self.state.name
                )
            )

        self._transport = transport
        self._session = session
        self._reader.reset()
        self.connected_at = None
        self.session_present = False
        self.state = ConnectionState.CONNECTING
        self._handshake_deadline = self._clock() + self.connect_timeout
        logger.info(f"接続を開始します: {transport!r}")

        try:
            await asyncio.wait_for(transport.open(), self.connect_timeout)
        except asyncio.TimeoutError as err:
            await self._teardown()
            raise HandshakeTimeout(
                error_message("HANDSHAKE_TIMEOUT", timeout=self.connect_timeout)
            ) from err
        except TransportError:
            await self._teardown()
            raise

        await self.send(
            Connect(
                client_id=session.client_id,
                clean_session=session.clean_session,
                keep_alive=session.keep_alive,
            )
        )
        logger.debug(
            f"CONNECT送信 (クライアントID: {session.client_id}, "
            f"クリーンセッション: {session.clean_session})"
        )

    async def receive(self) -> List[ControlPacket]:
        """トランスポートから読み込み、完成したパケットを返します.

        CONNACKは状態遷移に使われた上で返され、PINGRESPは内部で消費されます。

        Returns:
            List[ControlPacket]: エンジンに転送するパケット(到着順)

        Raises:
            TransportError: 読み込み失敗または相手側による切断
            PacketError: 不正なパケットを受信した場合
            ConnectError: ブローカーが接続を拒否した場合
            ProtocolError: 状態に合わないパケットを受信した場合
        """
        transport = self._transport
        if transport is None or not self.is_active:
            raise TransportError(error_message("NOT_CONNECTED"))

        try:
            data = await transport.read(READ_CHUNK_SIZE)
            if not data:
                raise TransportError(error_message("CONNECTION_CLOSED"))
            log_packet("RECV", data, "<<")
            return self._dispatch(self._reader.feed(data))
        except MQTTError:
            await self._teardown()
            raise

    async def send(self, packet: ControlPacket) -> None:
        """パケットをエンコードして書き込みます.

        Args:
            packet: 送信するパケット

        Raises:
            TransportError: 未接続または書き込みに失敗した場合
        """
        transport = self._transport
        if transport is None or not self.is_active:
            raise TransportError(error_message("NOT_CONNECTED"))

        data = encode(packet)
        try:
            await transport.write(data)
        except TransportError:
            await self._teardown()
            raise
        self._last_sent = self._clock()
        log_packet(packet.packet_type.name, data, ">>")

    async def tick(self, now: float) -> None:
        """ハンドシェイクとキープアライブの期限を確認します.

        キープアライブ間隔の間に送信がなければPINGREQを送り、
        その後さらにキープアライブ間隔の間に何も受信しなければ切断します。

        Args:
            now: 現在のモノトニック時刻

        Raises:
            HandshakeTimeout: CONNACKが期限内に届かなかった場合
            KeepAliveTimeout: PINGREQへの応答がなかった場合
            TransportError: PINGREQの送信に失敗した場合
        """
        if self.state is ConnectionState.CONNECTING:
            deadline = self._handshake_deadline
            if deadline is not None and now >= deadline:
                await self._teardown()
                raise HandshakeTimeout(
                    error_message(
                        "HANDSHAKE_TIMEOUT", timeout=self.connect_timeout
                    )
                )
            return

        if not self.is_connected or self._session is None:
            return
        keep_alive = self._session.keep_alive
        if keep_alive <= 0:
            return

        if self._ping_deadline is not None:
            if now >= self._ping_deadline:
                logger.warning("PING応答がありません")
                await self._teardown()
                raise KeepAliveTimeout(
                    error_message("KEEP_ALIVE_TIMEOUT", timeout=keep_alive)
                )
        elif now - self._last_sent >= keep_alive:
            logger.debug("PING送信")
            await self.send(PingReq())
            self._ping_deadline = now + keep_alive

    async def disconnect(self) -> None:
        """DISCONNECTを送信してトランスポートを閉じます.

        DISCONNECTの送信は失敗しても無視し、トランスポートは必ず閉じます。
        """
        if self.state is ConnectionState.DISCONNECTED:
            return

        transport = self._transport
        self.state = ConnectionState.DISCONNECTING
        if transport is not None:
            data = encode(Disconnect())
            try:
                await transport.write(data)
                log_packet("DISCONNECT", data, ">>")
            except TransportError as err:
                logger.debug(f"DISCONNECT送信エラー: {err}")
        await self._teardown()

    async def abort(self) -> None:
        """DISCONNECTを送らずにトランスポートを閉じます."""
        await self._teardown()

    def _dispatch(self, packets: List[ControlPacket]) -> List[ControlPacket]:
        forwarded: List[ControlPacket] = []
        for packet in packets:
            logger.debug(f"受信: {packet.packet_type.name}")
            # 何かを受信すれば接続は生きている
            self._ping_deadline = None

            if self.state is ConnectionState.CONNECTING:
                if not isinstance(packet, ConnAck):
                    raise ProtocolError(
                        error_message(
                            "UNEXPECTED_PACKET",
                            packet=packet.packet_type.name,
                            state=self.state.name,
                        )
                    )
                self._on_connack(packet)
                forwarded.append(packet)
            elif isinstance(packet, PingResp):
                logger.debug("PING応答受信")
            elif isinstance(packet, ConnAck):
                raise ProtocolError(
                    error_message(
                        "UNEXPECTED_PACKET",
                        packet="CONNACK",
                        state=self.state.name,
                    )
                )
            else:
                forwarded.append(packet)
        return forwarded

    def _on_connack(self, packet: ConnAck) -> None:
        if not packet.accepted:
            reason = get_connack_reason(packet.return_code)
            logger.error(f"接続が拒否されました: {reason}")
            raise ConnectError(
                error_message(
                    "CONNECTION_REFUSED",
                    reason=reason,
                    code=packet.return_code,
                ),
                return_code=packet.return_code,
            )

        now = self._clock()
        self.state = ConnectionState.CONNECTED
        self.session_present = packet.session_present
        self.connected_at = now
        self._handshake_deadline = None
        self._ping_deadline = None
        self._last_sent = now
        logger.info(
            f"MQTT接続完了 (セッション継続: {packet.session_present})"
        )

    async def _teardown(self) -> None:
        # 切断済みなら直近の接続時間を保持する
        if (
            self.state is ConnectionState.DISCONNECTED
            and self._transport is None
        ):
            return
        transport, self._transport = self._transport, None
        if self.connected_at is not None and self.state in (
            ConnectionState.CONNECTED,
            ConnectionState.DISCONNECTING,
        ):
            self.last_uptime = self._clock() - self.connected_at
        else:
            self.last_uptime = 0.0
        self.state = ConnectionState.DISCONNECTED
        self._handshake_deadline = None
        self._ping_deadline = None
        self._reader.reset()
        if transport is not None:
            await transport.close()
            logger.info(f"接続状態: {self.state.name}")
