"""MQTT control packet models.

MQTTコントロールパケットの構造を表現するデータモデルを提供するモジュール。

各パケットは不変のデータクラスとして表現され、``packet_type`` クラス属性で
種別を識別します。パケットIDはQoS/確認応答の意味論が必要とする場合にのみ
保持されます。
"""

from dataclasses import dataclass, field, replace
from typing import ClassVar, Optional, Tuple, Union

from ..core.constants import (
    MQTT_KEEP_ALIVE,
    MQTT_MAX_PACKET_ID,
    MQTT_PROTOCOL_VERSION,
)
from ..core.exceptions import PacketError, error_message
from .types import ConnectReturnCode, PacketType, QoS


def _check_packet_id(packet_id: Optional[int], packet: str) -> None:
    if packet_id is None or not 1 <= packet_id <= MQTT_MAX_PACKET_ID:
        raise PacketError(
            error_message(
                "INVALID_PACKET_FORMAT",
                detail=f"{packet} requires a packet id in 1..65535, "
                f"got {packet_id}",
            )
        )


@dataclass(frozen=True)
class Connect:
    """CONNECTパケット.

    Attributes:
        client_id: クライアントID
        clean_session: クリーンセッションフラグ
        keep_alive: キープアライブ間隔(秒)
        protocol_level: プロトコルレベル(3.1.1は4)
    """

    packet_type: ClassVar[PacketType] = PacketType.CONNECT

    client_id: str
    clean_session: bool = True
    keep_alive: int = MQTT_KEEP_ALIVE
    protocol_level: int = MQTT_PROTOCOL_VERSION


@dataclass(frozen=True)
class ConnAck:
    """CONNACKパケット.

    Attributes:
        return_code: 接続結果のリターンコード
        session_present: ブローカーにセッションが残っていたかどうか
    """

    packet_type: ClassVar[PacketType] = PacketType.CONNACK

    return_code: int = ConnectReturnCode.ACCEPTED
    session_present: bool = False

    @property
    def accepted(self) -> bool:
        """接続が受け入れられたかどうか."""
        return self.return_code == ConnectReturnCode.ACCEPTED


@dataclass(frozen=True)
class Publish:
    """PUBLISHパケット.

    Attributes:
        topic: トピック名
        payload: メッセージのペイロード
        qos: QoSレベル
        retain: 保持フラグ
        dup: 再送フラグ
        packet_id: パケットID(QoS 1/2のみ)
    """

    packet_type: ClassVar[PacketType] = PacketType.PUBLISH

    topic: str
    payload: bytes = b""
    qos: QoS = QoS.AT_MOST_ONCE
    retain: bool = False
    dup: bool = False
    packet_id: Optional[int] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "qos", QoS(self.qos))
        object.__setattr__(self, "payload", bytes(self.payload))
        if self.qos == QoS.AT_MOST_ONCE:
            if self.packet_id is not None:
                raise PacketError(
                    error_message(
                        "INVALID_PACKET_FORMAT",
                        detail="QoS 0 PUBLISH must not carry a packet id",
                    )
                )
            if self.dup:
                raise PacketError(
                    error_message(
                        "INVALID_PACKET_FORMAT",
                        detail="QoS 0 PUBLISH must not set DUP",
                    )
                )
        else:
            _check_packet_id(self.packet_id, "PUBLISH")

    def as_duplicate(self) -> "Publish":
        """DUPフラグを立てた再送用のコピーを返します."""
        return replace(self, dup=True)


@dataclass(frozen=True)
class _Acknowledgement:
    packet_id: int

    def __post_init__(self) -> None:
        _check_packet_id(self.packet_id, self.packet_type.name)


@dataclass(frozen=True)
class PubAck(_Acknowledgement):
    """PUBACKパケット(QoS 1の完了)."""

    packet_type: ClassVar[PacketType] = PacketType.PUBACK


@dataclass(frozen=True)
class PubRec(_Acknowledgement):
    """PUBRECパケット(QoS 2の第1段階)."""

    packet_type: ClassVar[PacketType] = PacketType.PUBREC


@dataclass(frozen=True)
class PubRel(_Acknowledgement):
    """PUBRELパケット(QoS 2の第2段階)."""

    packet_type: ClassVar[PacketType] = PacketType.PUBREL


@dataclass(frozen=True)
class PubComp(_Acknowledgement):
    """PUBCOMPパケット(QoS 2の完了)."""

    packet_type: ClassVar[PacketType] = PacketType.PUBCOMP


@dataclass(frozen=True)
class UnsubAck(_Acknowledgement):
    """UNSUBACKパケット."""

    packet_type: ClassVar[PacketType] = PacketType.UNSUBACK


@dataclass(frozen=True)
class Subscribe:
    """SUBSCRIBEパケット.

    Attributes:
        packet_id: パケットID
        topics: (トピックフィルター, 要求QoS)のタプル
    """

    packet_type: ClassVar[PacketType] = PacketType.SUBSCRIBE

    packet_id: int
    topics: Tuple[Tuple[str, QoS], ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        _check_packet_id(self.packet_id, "SUBSCRIBE")
        topics = tuple((topic, QoS(qos)) for topic, qos in self.topics)
        if not topics:
            raise PacketError(
                error_message(
                    "INVALID_PACKET_FORMAT",
                    detail="SUBSCRIBE requires at least one topic filter",
                )
            )
        object.__setattr__(self, "topics", topics)


@dataclass(frozen=True)
class SubAck:
    """SUBACKパケット.

    Attributes:
        packet_id: パケットID
        return_codes: 各フィルターの許可QoS(失敗は0x80)
    """

    packet_type: ClassVar[PacketType] = PacketType.SUBACK

    packet_id: int
    return_codes: Tuple[int, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        _check_packet_id(self.packet_id, "SUBACK")
        object.__setattr__(self, "return_codes", tuple(self.return_codes))


@dataclass(frozen=True)
class Unsubscribe:
    """UNSUBSCRIBEパケット.

    Attributes:
        packet_id: パケットID
        topics: 購読解除するトピックフィルター
    """

    packet_type: ClassVar[PacketType] = PacketType.UNSUBSCRIBE

    packet_id: int
    topics: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        _check_packet_id(self.packet_id, "UNSUBSCRIBE")
        topics = tuple(self.topics)
        if not topics:
            raise PacketError(
                error_message(
                    "INVALID_PACKET_FORMAT",
                    detail="UNSUBSCRIBE requires at least one topic filter",
                )
            )
        object.__setattr__(self, "topics", topics)


@dataclass(frozen=True)
class PingReq:
    """PINGREQパケット."""

    packet_type: ClassVar[PacketType] = PacketType.PINGREQ


@dataclass(frozen=True)
class PingResp:
    """PINGRESPパケット."""

    packet_type: ClassVar[PacketType] = PacketType.PINGRESP


@dataclass(frozen=True)
class Disconnect:
    """DISCONNECTパケット."""

    packet_type: ClassVar[PacketType] = PacketType.DISCONNECT


ControlPacket = Union[
    Connect,
    ConnAck,
    Publish,
    PubAck,
    PubRec,
    PubRel,
    PubComp,
    Subscribe,
    SubAck,
    Unsubscribe,
    UnsubAck,
    PingReq,
    PingResp,
    Disconnect,
]
