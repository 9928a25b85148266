"""MQTT packet handling.

MQTTパケット処理を提供するパッケージ。

主な機能:
- コントロールパケットのデータモデル
- パケットの符号化(encode)と解析(decode)
- 部分的な読み込みに対応したストリーム解析
- パケットタイプとQoSの定義
"""

from .base import MQTTPacket, decode_remaining_length, encode_remaining_length
from .builder import build_packet, encode
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
from .parser import PacketReader, decode, parse_frame, parse_packet
from .types import (
    SUBACK_FAILURE,
    ConnectReturnCode,
    PacketType,
    QoS,
    get_connack_reason,
)

__all__ = [
    # 基本型
    "MQTTPacket",
    "PacketType",
    "QoS",
    "ConnectReturnCode",
    "SUBACK_FAILURE",
    "get_connack_reason",
    # パケットモデル
    "ControlPacket",
    "Connect",
    "ConnAck",
    "Publish",
    "PubAck",
    "PubRec",
    "PubRel",
    "PubComp",
    "Subscribe",
    "SubAck",
    "Unsubscribe",
    "UnsubAck",
    "PingReq",
    "PingResp",
    "Disconnect",
    # 符号化
    "encode",
    "build_packet",
    "encode_remaining_length",
    # 解析
    "decode",
    "parse_packet",
    "parse_frame",
    "decode_remaining_length",
    "PacketReader",
]
