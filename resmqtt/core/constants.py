"""Constants definitions.

定数定義を提供するモジュール。

設定値のデフォルトとMQTT 3.1.1プロトコル上の固定値をまとめています。
"""

from enum import Enum, IntEnum, unique
from typing import Dict, Final


@unique
class ConnectionState(IntEnum):
    """接続状態を表す列挙型.

    Attributes:
        DISCONNECTED (0): 未接続
        CONNECTING (1): 接続中(CONNACK待ち)
        CONNECTED (2): 接続済み
        DISCONNECTING (3): 切断処理中
    """

    DISCONNECTED = 0
    CONNECTING = 1
    CONNECTED = 2
    DISCONNECTING = 3


@unique
class ReconnectMode(Enum):
    """再接続ポリシー.

    Attributes:
        NEVER: 自動再接続しない
        AFTER_FIRST_SUCCESS: 最初の接続が成功した後のみ再接続する
        ALWAYS: 常に再接続する
    """

    NEVER = "never"
    AFTER_FIRST_SUCCESS = "after_first_success"
    ALWAYS = "always"


# MQTTプロトコル
MQTT_PROTOCOL_NAME: Final[str] = "MQTT"
MQTT_PROTOCOL_VERSION: Final[int] = 4
MQTT_MAX_REMAINING_LENGTH: Final[int] = 268_435_455
MQTT_MAX_PACKET_ID: Final[int] = 65535
MQTT_MAX_CLIENT_ID_LENGTH: Final[int] = 23
MQTT_MIN_KEEP_ALIVE: Final[int] = 10

# セッションのデフォルト
MQTT_KEEP_ALIVE: Final[int] = 30
MQTT_CLEAN_SESSION: Final[bool] = True

# 接続・再送設定
MQTT_CONNECT_TIMEOUT: Final[float] = 30.0
MQTT_RETRY_INTERVAL: Final[float] = 5.0
MQTT_MAX_RETRY_INTERVAL: Final[float] = 60.0
MQTT_MAX_INFLIGHT: Final[int] = 100
MQTT_MAX_PACKET_SIZE: Final[int] = 256 * 1024

# 再接続バックオフ
RECONNECT_MIN_DELAY: Final[float] = 1.0
RECONNECT_MAX_DELAY: Final[float] = 64.0
RECONNECT_FACTOR: Final[float] = 2.0
RECONNECT_STABLE_AFTER: Final[float] = 10.0

# バッファとイベントループ
OFFLINE_BUFFER_CAPACITY: Final[int] = 1000
EVENT_QUEUE_CAPACITY: Final[int] = 0
LOOP_TICK_INTERVAL: Final[float] = 0.5
READ_CHUNK_SIZE: Final[int] = 4096

# WebSocket設定
WS_SUBPROTOCOL: Final[str] = "mqtt"

# ログ設定
LOGGER_NAME: Final[str] = "resmqtt"
LOG_FORMAT: Final[str] = "%(message)s"
LOG_FILE_FORMAT: Final[str] = (
    "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

CONSOLE_THEME: Final[Dict[str, str]] = {
    "info": "blue",
    "warning": "yellow",
    "error": "red",
    "debug": "dim white",
}
