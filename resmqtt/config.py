"""Client configuration.

セッションとクライアント動作の設定を管理するモジュール。

設定値は ``validate()`` で検証され、不正な場合は ``ConfigError`` を送出します。
検証は ``connect()`` 呼び出し時に同期的に行われます。
"""

from dataclasses import dataclass
from typing import Optional

from .core.constants import (
    EVENT_QUEUE_CAPACITY,
    LOOP_TICK_INTERVAL,
    MQTT_CLEAN_SESSION,
    MQTT_CONNECT_TIMEOUT,
    MQTT_KEEP_ALIVE,
    MQTT_MAX_CLIENT_ID_LENGTH,
    MQTT_MAX_INFLIGHT,
    MQTT_MAX_PACKET_ID,
    MQTT_MAX_PACKET_SIZE,
    MQTT_MAX_RETRY_INTERVAL,
    MQTT_MIN_KEEP_ALIVE,
    MQTT_RETRY_INTERVAL,
    OFFLINE_BUFFER_CAPACITY,
    RECONNECT_FACTOR,
    RECONNECT_MAX_DELAY,
    RECONNECT_MIN_DELAY,
    RECONNECT_STABLE_AFTER,
    ReconnectMode,
)
from .core.exceptions import ConfigError, error_message


@dataclass(frozen=True)
class Session:
    """MQTTセッションの設定.

    エンジンの生存期間中は不変です。

    Attributes:
        client_id: クライアントID
        clean_session: Trueの場合、再接続時に送信中の状態を破棄する
        keep_alive: キープアライブ間隔(秒)。0で無効。
    """

    client_id: str
    clean_session: bool = MQTT_CLEAN_SESSION
    keep_alive: int = MQTT_KEEP_ALIVE

    def validate(self, allow_long_client_id: bool = False) -> None:
        """セッション設定を検証します.

        Args:
            allow_long_client_id: 23バイトを超えるクライアントIDを許可するか

        Raises:
            ConfigError: 設定が不正な場合
        """
        if not isinstance(self.client_id, str) or not self.client_id:
            raise ConfigError(
                error_message("INVALID_CLIENT_ID", detail="empty client id")
            )
        if self.client_id.startswith(" "):
            raise ConfigError(
                error_message(
                    "INVALID_CLIENT_ID", detail="starts with a space"
                )
            )

        size = len(self.client_id.encode("utf-8"))
        limit = (
            MQTT_MAX_PACKET_ID
            if allow_long_client_id
            else MQTT_MAX_CLIENT_ID_LENGTH
        )
        if size > limit:
            raise ConfigError(
                error_message(
                    "INVALID_CLIENT_ID",
                    detail=f"{size} bytes exceeds limit of {limit}",
                )
            )

        keep_alive = self.keep_alive
        if keep_alive != 0 and not (
            MQTT_MIN_KEEP_ALIVE <= keep_alive <= MQTT_MAX_PACKET_ID
        ):
            raise ConfigError(
                error_message("INVALID_KEEP_ALIVE", value=keep_alive)
            )


@dataclass
class MQTTConfig:
    """MQTTクライアントの動作設定.

    Attributes:
        offline_buffer_capacity: オフラインバッファの最大エントリ数
        reconnect_min: 再接続待機の初期値(秒)
        reconnect_max: 再接続待機の上限(秒)
        reconnect_factor: 再接続待機の増加倍率
        reconnect_mode: 再接続ポリシー
        stable_after: 待機時間をリセットする接続継続時間(秒)
        connect_timeout: CONNACKまでのタイムアウト(秒)
        retry_interval: QoS再送の初期間隔(秒)
        max_retry_interval: QoS再送間隔の上限(秒)
        max_inflight: 同時に送信中にできる操作数
        max_packet_size: 送受信できる最大パケットサイズ(バイト)
        event_capacity: イベントキューの容量(0で無制限)
        tick_interval: イベントループのタイマー確認間隔(秒)
        allow_long_client_id: 23バイトを超えるクライアントIDを許可するか
        outgoing_ratelimit: 1秒あたりに送信を開始する要求数の上限(Noneで無制限)
    """

    offline_buffer_capacity: int = OFFLINE_BUFFER_CAPACITY
    reconnect_min: float = RECONNECT_MIN_DELAY
    reconnect_max: float = RECONNECT_MAX_DELAY
    reconnect_factor: float = RECONNECT_FACTOR
    reconnect_mode: ReconnectMode = ReconnectMode.ALWAYS
    stable_after: float = RECONNECT_STABLE_AFTER
    connect_timeout: float = MQTT_CONNECT_TIMEOUT
    retry_interval: float = MQTT_RETRY_INTERVAL
    max_retry_interval: float = MQTT_MAX_RETRY_INTERVAL
    max_inflight: int = MQTT_MAX_INFLIGHT
    max_packet_size: int = MQTT_MAX_PACKET_SIZE
    event_capacity: int = EVENT_QUEUE_CAPACITY
    tick_interval: float = LOOP_TICK_INTERVAL
    allow_long_client_id: bool = False
    outgoing_ratelimit: Optional[float] = None

    def validate(self) -> None:
        """設定値を検証します.

        Raises:
            ConfigError: 設定が不正な場合
        """
        self._require(
            "offline_buffer_capacity", self.offline_buffer_capacity >= 1
        )
        self._require("reconnect_min", self.reconnect_min > 0)
        self._require(
            "reconnect_max", self.reconnect_max >= self.reconnect_min
        )
        self._require("reconnect_factor", self.reconnect_factor >= 1)
        self._require(
            "reconnect_mode", isinstance(self.reconnect_mode, ReconnectMode)
        )
        self._require("stable_after", self.stable_after >= 0)
        self._require("connect_timeout", self.connect_timeout > 0)
        self._require("retry_interval", self.retry_interval > 0)
        self._require(
            "max_retry_interval",
            self.max_retry_interval >= self.retry_interval,
        )
        self._require(
            "max_inflight", 1 <= self.max_inflight <= MQTT_MAX_PACKET_ID
        )
        self._require("max_packet_size", self.max_packet_size >= 2)
        self._require("event_capacity", self.event_capacity >= 0)
        self._require("tick_interval", self.tick_interval > 0)
        self._require(
            "outgoing_ratelimit",
            self.outgoing_ratelimit is None or self.outgoing_ratelimit > 0,
        )

    def _require(self, field: str, condition: bool) -> None:
        if not condition:
            raise ConfigError(
                error_message(
                    "INVALID_CONFIG", field=field, value=getattr(self, field)
                )
            )
