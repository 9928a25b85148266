"""Core functionality.

コアとなる機能を提供するパッケージ。

以下の機能を提供します:
- ロギング機能
- 定数定義
- 例外クラス
"""

from .constants import (
    LOGGER_NAME,
    MQTT_KEEP_ALIVE,
    MQTT_MAX_PACKET_ID,
    MQTT_MAX_PACKET_SIZE,
    MQTT_PROTOCOL_NAME,
    MQTT_PROTOCOL_VERSION,
    ConnectionState,
    ReconnectMode,
)
from .exceptions import (
    ERROR_MESSAGES,
    CapacityError,
    ConfigError,
    ConnectError,
    HandshakeTimeout,
    KeepAliveTimeout,
    MessageError,
    MQTTError,
    PacketError,
    ProtocolError,
    TransportError,
    error_message,
)
from .logging import log_error, log_packet, logger, setup_logging

__all__ = [
    # ロギング関連
    "logger",
    "log_packet",
    "log_error",
    "setup_logging",
    # 定数関連
    "ConnectionState",
    "ReconnectMode",
    "LOGGER_NAME",
    "MQTT_PROTOCOL_NAME",
    "MQTT_PROTOCOL_VERSION",
    "MQTT_KEEP_ALIVE",
    "MQTT_MAX_PACKET_ID",
    "MQTT_MAX_PACKET_SIZE",
    # 例外クラス
    "MQTTError",
    "ConfigError",
    "MessageError",
    "TransportError",
    "ProtocolError",
    "PacketError",
    "ConnectError",
    "HandshakeTimeout",
    "KeepAliveTimeout",
    "CapacityError",
    "ERROR_MESSAGES",
    "error_message",
]
