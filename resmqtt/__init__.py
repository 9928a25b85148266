"""resmqtt - asyncio MQTT 3.1.1 client.

再接続とオフラインバッファリングを備えたMQTT 3.1.1クライアントです。
TCP/TLSとWebSocketのトランスポートに対応します。
"""

from .client import MQTTClient, ReconnectBackoff
from .config import MQTTConfig, Session
from .connection import ConnectionManager
from .core import (
    CapacityError,
    ConfigError,
    ConnectError,
    ConnectionState,
    HandshakeTimeout,
    KeepAliveTimeout,
    MessageError,
    MQTTError,
    PacketError,
    ProtocolError,
    ReconnectMode,
    TransportError,
    setup_logging,
)
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
from .packet import QoS
from .topic import topic_matches, validate_topic_filter, validate_topic_name
from .transport import TCPTransport, Transport, WebSocketTransport, transport_for

__version__ = "0.1.0"

__all__ = [
    # クライアント
    "MQTTClient",
    "MQTTConfig",
    "Session",
    "ReconnectBackoff",
    "ConnectionManager",
    "ConnectionState",
    "ReconnectMode",
    "QoS",
    # イベント
    "Event",
    "Connected",
    "Disconnected",
    "MessageArrived",
    "SubscriptionResult",
    "UnsubscribeResult",
    "PublishCompleted",
    "ErrorEvent",
    "ErrorKind",
    # 例外
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
    # トランスポート
    "Transport",
    "TCPTransport",
    "WebSocketTransport",
    "transport_for",
    # ユーティリティ
    "topic_matches",
    "validate_topic_name",
    "validate_topic_filter",
    "setup_logging",
    "__version__",
]
