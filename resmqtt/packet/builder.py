"""MQTT packet builder.

MQTTパケットビルダーを提供するモジュール。

主な機能:
- 各コントロールパケットのフレーム(MQTTPacket)の生成
- ``encode()`` によるパケットモデルからバイト列への変換
"""

import struct
from typing import Callable, Dict, Iterable, Optional, Tuple

from ..core.constants import MQTT_MAX_PACKET_ID, MQTT_PROTOCOL_NAME
from ..core.exceptions import PacketError, error_message
from .base import MQTTPacket
from .models import (
    ConnAck,
    Connect,
    ControlPacket,
    Disconnect,
    PingReq,
    PingResp,
    PubAck,
    PubComp,
    Publish,
    PubRec,
    PubRel,
    SubAck,
    Subscribe,
    UnsubAck,
    Unsubscribe,
)
from .types import FIXED_FLAGS, PacketType, QoS


def build_connect_packet(
    client_id: str,
    keep_alive: int = 60,
    clean_session: bool = True,
    protocol_level: int = 4,
) -> MQTTPacket:
    """CONNECTパケットを生成する.

    Args:
        client_id (str): クライアントID
        keep_alive (int): キープアライブ時間(秒)。デフォルト60秒。
        clean_session (bool): セッションをクリーンに保つかどうか:デフォルトTrue
        protocol_level (int): プロトコルレベル。デフォルト4(3.1.1)。

    Returns:
        MQTTPacket: 生成されたCONNECTパケット
    """
    flags = 0x02 if clean_session else 0x00
    # レベル3は3.1仕様のプロトコル名を使う
    protocol_name = "MQIsdp" if protocol_level == 3 else MQTT_PROTOCOL_NAME

    # 可変ヘッダーの構築
    var_header = (
        _encode_string(protocol_name)
        + bytes([protocol_level, flags])
        + _encode_uint16(keep_alive, "keep alive")
    )

    # ペイロードの構築
    payload = _encode_string(client_id)

    return _frame(
        PacketType.CONNECT,
        FIXED_FLAGS[PacketType.CONNECT],
        var_header + payload,
    )


def build_connack_packet(
    return_code: int = 0, session_present: bool = False
) -> MQTTPacket:
    """CONNACKパケットを生成する.

    Args:
        return_code (int): リターンコード
        session_present (bool): セッション存在フラグ

    Returns:
        MQTTPacket: 生成されたCONNACKパケット
    """
    body = bytes([0x01 if session_present else 0x00, return_code & 0xFF])
    return _frame(PacketType.CONNACK, FIXED_FLAGS[PacketType.CONNACK], body)


def build_publish_packet(
    topic: str,
    payload: bytes,
    qos: int = 0,
    retain: bool = False,
    dup: bool = False,
    packet_id: Optional[int] = None,
) -> MQTTPacket:
    """PUBLISHパケットを生成する.

    Args:
        topic (str): 発行するトピック
        payload (bytes): メッセージのペイロード
        qos (int): QoSレベル(0-2)。デフォルト0。
        retain (bool): 保持フラグ。デフォルトFalse。
        dup (bool): 再送フラグ。デフォルトFalse。
        packet_id (Optional[int]): パケットID。QoS > 0で必須。

    Returns:
        MQTTPacket: 生成されたPUBLISHパケット

    Raises:
        PacketError: QoS > 0でパケットIDがない場合
    """
    # フラグの設定
    flags = (int(dup) << 3) | (int(qos) << 1) | int(retain)

    # 可変ヘッダーの構築
    var_header = _encode_string(topic)

    # QoS > 0の場合はメッセージIDを追加
    if qos > 0:
        if packet_id is None:
            raise PacketError(
                error_message(
                    "INVALID_PACKET_FORMAT",
                    detail="Packet id required for QoS > 0",
                )
            )
        var_header += _encode_uint16(packet_id, "packet id")

    return _frame(PacketType.PUBLISH, flags, var_header + payload)


def build_ack_packet(packet_type: PacketType, packet_id: int) -> MQTTPacket:
    """パケットIDのみを持つ確認応答パケットを生成する.

    PUBACK/PUBREC/PUBREL/PUBCOMP/UNSUBACKが対象です。

    Args:
        packet_type (PacketType): パケットタイプ
        packet_id (int): パケットID

    Returns:
        MQTTPacket: 生成された確認応答パケット
    """
    return _frame(
        packet_type,
        FIXED_FLAGS[packet_type],
        _encode_uint16(packet_id, "packet id"),
    )


def build_subscribe_packet(
    packet_id: int, topics: Iterable[Tuple[str, int]]
) -> MQTTPacket:
    """SUBSCRIBEパケットを生成する.

    Args:
        packet_id (int): パケットID
        topics (Iterable[Tuple[str, int]]): (トピックフィルター, QoS)の組

    Returns:
        MQTTPacket: 生成されたSUBSCRIBEパケット
    """
    var_header = _encode_uint16(packet_id, "packet id")

    # ペイロードの構築(トピックとQoSのペア)
    payload = b"".join(
        _encode_string(topic) + bytes([int(qos)]) for topic, qos in topics
    )

    return _frame(
        PacketType.SUBSCRIBE,
        FIXED_FLAGS[PacketType.SUBSCRIBE],
        var_header + payload,
    )


def build_suback_packet(
    packet_id: int, return_codes: Iterable[int]
) -> MQTTPacket:
    """SUBACKパケットを生成する.

    Args:
        packet_id (int): パケットID
        return_codes (Iterable[int]): 各フィルターのリターンコード

    Returns:
        MQTTPacket: 生成されたSUBACKパケット
    """
    body = _encode_uint16(packet_id, "packet id") + bytes(return_codes)
    return _frame(PacketType.SUBACK, FIXED_FLAGS[PacketType.SUBACK], body)


def build_unsubscribe_packet(
    packet_id: int, topics: Iterable[str]
) -> MQTTPacket:
    """UNSUBSCRIBEパケットを生成する.

    Args:
        packet_id (int): パケットID
        topics (Iterable[str]): 購読解除するトピックフィルター

    Returns:
        MQTTPacket: 生成されたUNSUBSCRIBEパケット
    """
    body = _encode_uint16(packet_id, "packet id") + b"".join(
        _encode_string(topic) for topic in topics
    )
    return _frame(
        PacketType.UNSUBSCRIBE, FIXED_FLAGS[PacketType.UNSUBSCRIBE], body
    )


def build_empty_packet(packet_type: PacketType) -> MQTTPacket:
    """本体を持たないパケットを生成する.

    PINGREQ/PINGRESP/DISCONNECTが対象です。

    Args:
        packet_type (PacketType): パケットタイプ

    Returns:
        MQTTPacket: 生成されたパケット
    """
    return MQTTPacket(
        packet_type=packet_type,
        flags=FIXED_FLAGS[packet_type],
        remaining_length=0,
    )


def build_packet(packet: ControlPacket) -> MQTTPacket:
    """パケットモデルからフレームを生成する.

    Args:
        packet (ControlPacket): パケットモデル

    Returns:
        MQTTPacket: 生成されたフレーム

    Raises:
        PacketError: 未対応のパケットが渡された場合
    """
    builder = _BUILDERS.get(type(packet))
    if builder is None:
        raise PacketError(
            error_message("UNKNOWN_PACKET_TYPE", value=type(packet).__name__)
        )
    return builder(packet)


def encode(packet: ControlPacket) -> bytes:
    """パケットモデルをバイト列にエンコードする.

    Args:
        packet (ControlPacket): パケットモデル

    Returns:
        bytes: 送信用のバイト列
    """
    return build_packet(packet).packet


_BUILDERS: Dict[type, Callable[..., MQTTPacket]] = {
    Connect: lambda p: build_connect_packet(
        client_id=p.client_id,
        keep_alive=p.keep_alive,
        clean_session=p.clean_session,
        protocol_level=p.protocol_level,
    ),
    ConnAck: lambda p: build_connack_packet(p.return_code, p.session_present),
    Publish: lambda p: build_publish_packet(
        topic=p.topic,
        payload=p.payload,
        qos=QoS(p.qos),
        retain=p.retain,
        dup=p.dup,
        packet_id=p.packet_id,
    ),
    PubAck: lambda p: build_ack_packet(PacketType.PUBACK, p.packet_id),
    PubRec: lambda p: build_ack_packet(PacketType.PUBREC, p.packet_id),
    PubRel: lambda p: build_ack_packet(PacketType.PUBREL, p.packet_id),
    PubComp: lambda p: build_ack_packet(PacketType.PUBCOMP, p.packet_id),
    Subscribe: lambda p: build_subscribe_packet(p.packet_id, p.topics),
    SubAck: lambda p: build_suback_packet(p.packet_id, p.return_codes),
    Unsubscribe: lambda p: build_unsubscribe_packet(p.packet_id, p.topics),
    UnsubAck: lambda p: build_ack_packet(PacketType.UNSUBACK, p.packet_id),
    PingReq: lambda p: build_empty_packet(PacketType.PINGREQ),
    PingResp: lambda p: build_empty_packet(PacketType.PINGRESP),
    Disconnect: lambda p: build_empty_packet(PacketType.DISCONNECT),
}


def _frame(packet_type: PacketType, flags: int, body: bytes) -> MQTTPacket:
    return MQTTPacket(
        packet_type=packet_type,
        flags=flags,
        remaining_length=len(body),
        payload=body,
    )


def _encode_uint16(value: int, name: str) -> bytes:
    if not 0 <= value <= MQTT_MAX_PACKET_ID:
        raise PacketError(
            error_message(
                "INVALID_PACKET_FORMAT",
                detail=f"{name} {value} does not fit in 16 bits",
            )
        )
    return struct.pack("!H", value)


def _encode_string(s: str) -> bytes:
    """文字列をMQTT形式でエンコードする.

    Args:
        s (str): エンコードする文字列

    Returns:
        bytes: エンコードされたバイト列
    """
    encoded = s.encode("utf-8")
    if len(encoded) > MQTT_MAX_PACKET_ID:
        raise PacketError(
            error_message(
                "INVALID_PACKET_FORMAT",
                detail=f"string of {len(encoded)} bytes is too long",
            )
        )
    return struct.pack("!H", len(encoded)) + encoded
