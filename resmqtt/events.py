"""Client events.

エンジンがアプリケーションに通知するイベントのデータモデルを提供するモジュール。
"""

from dataclasses import dataclass, field
from enum import Enum, unique
from typing import Optional, Tuple, Union

from .core.exceptions import (
    CapacityError,
    ConfigError,
    MQTTError,
    ProtocolError,
)
from .packet.types import SUBACK_FAILURE, QoS


@unique
class ErrorKind(Enum):
    """エラーイベントの分類.

    Attributes:
        TRANSPORT: 接続・読み書きの失敗
        PROTOCOL: 不正なパケットや矛盾した確認応答
        CAPACITY: オフラインバッファからの破棄
        CONFIGURATION: 設定の不備
    """

    TRANSPORT = "transport"
    PROTOCOL = "protocol"
    CAPACITY = "capacity"
    CONFIGURATION = "configuration"

    @classmethod
    def from_error(cls, error: BaseException) -> "ErrorKind":
        """例外から分類を決定します."""
        if isinstance(error, ProtocolError):
            return cls.PROTOCOL
        if isinstance(error, CapacityError):
            return cls.CAPACITY
        if isinstance(error, ConfigError):
            return cls.CONFIGURATION
        return cls.TRANSPORT


@dataclass(frozen=True)
class Connected:
    """接続が確立されたことを示すイベント.

    Attributes:
        session_present: ブローカーにセッションが残っていたかどうか
    """

    session_present: bool = False


@dataclass(frozen=True)
class Disconnected:
    """接続が失われたことを示すイベント.

    Attributes:
        cause: 切断の原因。アプリケーションからの切断の場合はNone。
        reconnect_in: 次の再接続までの秒数。再接続しない場合はNone。
    """

    cause: Optional[MQTTError] = None
    reconnect_in: Optional[float] = None

    @property
    def requested(self) -> bool:
        """アプリケーションが要求した切断かどうか."""
        return self.cause is None


@dataclass(frozen=True)
class MessageArrived:
    """購読したトピックにメッセージが届いたことを示すイベント.

    Attributes:
        topic: トピック名
        payload: ペイロード
        qos: 配信QoS
        retain: 保持メッセージかどうか
    """

    topic: str
    payload: bytes
    qos: QoS = QoS.AT_MOST_ONCE
    retain: bool = False


@dataclass(frozen=True)
class SubscriptionResult:
    """SUBSCRIBEの結果を示すイベント.

    Attributes:
        packet_id: パケットID
        topics: 要求した(トピックフィルター, QoS)
        granted: 各フィルターの許可QoS。拒否された場合はNone。
    """

    packet_id: int
    topics: Tuple[Tuple[str, QoS], ...] = field(default_factory=tuple)
    granted: Tuple[Optional[QoS], ...] = field(default_factory=tuple)

    @classmethod
    def from_codes(
        cls,
        packet_id: int,
        topics: Tuple[Tuple[str, QoS], ...],
        return_codes: Tuple[int, ...],
    ) -> "SubscriptionResult":
        """SUBACKのリターンコードから結果を生成します."""
        granted = tuple(
            None if code == SUBACK_FAILURE else QoS(code)
            for code in return_codes
        )
        return cls(packet_id=packet_id, topics=topics, granted=granted)


@dataclass(frozen=True)
class UnsubscribeResult:
    """UNSUBSCRIBEが完了したことを示すイベント.

    Attributes:
        packet_id: パケットID
        topics: 購読解除したトピックフィルター
    """

    packet_id: int
    topics: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class PublishCompleted:
    """QoS 1/2 PUBLISHのハンドシェイクが完了したことを示すイベント.

    Attributes:
        packet_id: パケットID
        topic: トピック名
        qos: QoSレベル
    """

    packet_id: int
    topic: str
    qos: QoS


@dataclass(frozen=True)
class ErrorEvent:
    """非同期に発生したエラーを示すイベント.

    Attributes:
        kind: エラーの分類
        error: 発生した例外
    """

    kind: ErrorKind
    error: MQTTError

    @classmethod
    def from_error(cls, error: MQTTError) -> "ErrorEvent":
        return cls(kind=ErrorKind.from_error(error), error=error)


Event = Union[
    Connected,
    Disconnected,
    MessageArrived,
    SubscriptionResult,
    UnsubscribeResult,
    PublishCompleted,
    ErrorEvent,
]

__all__ = [
    "ErrorKind",
    "Connected",
    "Disconnected",
    "MessageArrived",
    "SubscriptionResult",
    "UnsubscribeResult",
    "PublishCompleted",
    "ErrorEvent",
    "Event",
]
