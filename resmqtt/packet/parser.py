"""MQTTパケット解析モジュール.

このモジュールはMQTTパケットの解析機能を提供します。
固定ヘッダーの切り出し、各パケットタイプに応じた本体の検証と解析、
および部分的な読み込みを跨いだストリーム解析を実装しています。

``decode()`` はブロックせず、バッファにパケット全体が揃っていない場合は
``None`` を返します。不正な形式を検出した場合は ``PacketError`` を送出します。
"""

import struct
from typing import Callable, Dict, List, Optional, Tuple

from ..core.constants import MQTT_PROTOCOL_NAME, MQTT_PROTOCOL_VERSION
from ..core.exceptions import PacketError, error_message
from .base import MQTTPacket, decode_remaining_length
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
from .types import FIXED_FLAGS, SUBACK_FAILURE, PacketType, QoS

# 3.1仕様のプロトコル名とレベル
_LEGACY_PROTOCOL: Tuple[str, int] = ("MQIsdp", 3)


class _Cursor:
    """パケット本体を先頭から読み進めるためのカーソル."""

    def __init__(self, data: bytes, packet: str) -> None:
        self.data = data
        self.packet = packet
        self.pos = 0

    @property
    def remaining(self) -> int:
        return len(self.data) - self.pos

    def malformed(self, detail: str) -> PacketError:
        return PacketError(
            error_message(
                "INVALID_PACKET_FORMAT", detail=f"{self.packet}: {detail}"
            )
        )

    def read_byte(self) -> int:
        if self.remaining < 1:
            raise self.malformed("truncated byte field")
        value = self.data[self.pos]
        self.pos += 1
        return value

    def read_uint16(self) -> int:
        if self.remaining < 2:
            raise self.malformed("truncated 16-bit field")
        (value,) = struct.unpack("!H", self.data[self.pos : self.pos + 2])
        self.pos += 2
        return value

    def read_packet_id(self) -> int:
        packet_id = self.read_uint16()
        if packet_id == 0:
            raise self.malformed("packet id must be non-zero")
        return packet_id

    def read_string(self) -> str:
        length = self.read_uint16()
        if length > self.remaining:
            raise self.malformed(
                f"string length {length} exceeds remaining {self.remaining}"
            )
        raw = self.data[self.pos : self.pos + length]
        self.pos += length
        try:
            value = raw.decode("utf-8")
        except UnicodeDecodeError as err:
            raise self.malformed(f"invalid UTF-8: {err}") from err
        if "\x00" in value:
            raise self.malformed("string contains U+0000")
        return value

    def read_rest(self) -> bytes:
        value = self.data[self.pos :]
        self.pos = len(self.data)
        return value

    def expect_end(self) -> None:
        if self.remaining:
            raise self.malformed(f"{self.remaining} unexpected trailing bytes")


def parse_packet(
    data: bytes, max_packet_size: Optional[int] = None
) -> Optional[Tuple[MQTTPacket, int]]:
    """バイナリデータの先頭からMQTTパケットのフレームを切り出します.

    Args:
        data: 解析対象のバイナリデータ
        max_packet_size: 許容する最大パケットサイズ(バイト)。Noneで無制限。

    Returns:
        Optional[Tuple[MQTTPacket, int]]: (フレーム, 消費したバイト数)。
            パケット全体が揃っていない場合はNone

    Raises:
        PacketError: 不明なパケットタイプ、不正な長さ、サイズ超過の場合
    """
    if len(data) < 2:
        return None

    type_value = (data[0] & 0xF0) >> 4
    flags = data[0] & 0x0F
    try:
        packet_type = PacketType(type_value)
    except ValueError as err:
        raise PacketError(
            error_message("UNKNOWN_PACKET_TYPE", value=type_value)
        ) from err

    # 可変長の残りの長さを解析
    decoded = decode_remaining_length(data, 1)
    if decoded is None:
        return None
    remaining_length, pos = decoded

    total = pos + remaining_length
    if max_packet_size is not None and total > max_packet_size:
        raise PacketError(
            error_message(
                "PACKET_TOO_LARGE", size=total, limit=max_packet_size
            )
        )
    if len(data) < total:
        return None

    frame = MQTTPacket(
        packet_type=packet_type,
        flags=flags,
        remaining_length=remaining_length,
        payload=bytes(data[pos:total]),
        raw_packet=bytes(data[:total]),
    )
    return frame, total


def parse_frame(frame: MQTTPacket) -> ControlPacket:
    """フレームをパケットモデルに変換します.

    Args:
        frame: 切り出されたフレーム

    Returns:
        ControlPacket: 解析されたパケット

    Raises:
        PacketError: フラグや本体が仕様に反する場合
    """
    packet_type = frame.packet_type
    if packet_type != PacketType.PUBLISH:
        expected = FIXED_FLAGS[packet_type]
        if frame.flags != expected:
            raise PacketError(
                error_message(
                    "INVALID_FLAGS", flags=frame.flags, packet=packet_type.name
                )
            )

    cursor = _Cursor(frame.body, packet_type.name)
    return _PARSERS[packet_type](frame.flags, cursor)


def decode(
    data: bytes, max_packet_size: Optional[int] = None
) -> Optional[Tuple[ControlPacket, int]]:
    """バイナリデータの先頭から1つのパケットをデコードします.

    Args:
        data: 解析対象のバイナリデータ
        max_packet_size: 許容する最大パケットサイズ(バイト)

    Returns:
        Optional[Tuple[ControlPacket, int]]: (パケット, 消費したバイト数)。
            データが不足している場合はNone

    Raises:
        PacketError: 不正な形式の場合
    """
    parsed = parse_packet(data, max_packet_size)
    if parsed is None:
        return None
    frame, consumed = parsed
    return parse_frame(frame), consumed


class PacketReader:
    """部分的な読み込みを跨いでパケットを組み立てるストリームデコーダー.

    受信したバイト列を ``feed()`` に渡すと、揃ったパケットから順に返します。
    残りのバイトは次回の ``feed()`` まで保持されます。
    """

    def __init__(self, max_packet_size: Optional[int] = None) -> None:
        self.max_packet_size = max_packet_size
        self._buffer = bytearray()

    def feed(self, data: bytes) -> List[ControlPacket]:
        """受信データを追加し、完成したパケットを返します.

        Args:
            data: 受信したバイト列

        Returns:
            List[ControlPacket]: 完成したパケットのリスト(到着順)

        Raises:
            PacketError: 不正なパケットを検出した場合
        """
        self._buffer.extend(data)
        packets: List[ControlPacket] = []
        while True:
            decoded = decode(self._buffer, self.max_packet_size)
            if decoded is None:
                break
            packet, consumed = decoded
            del self._buffer[:consumed]
            packets.append(packet)
        return packets

    @property
    def pending(self) -> int:
        """未完成のまま保持しているバイト数."""
        return len(self._buffer)

    def reset(self) -> None:
        """保持しているバイトを破棄します."""
        self._buffer.clear()


def _parse_connect(flags: int, cursor: _Cursor) -> Connect:
    protocol_name = cursor.read_string()
    protocol_level = cursor.read_byte()
    if (protocol_name, protocol_level) not in (
        (MQTT_PROTOCOL_NAME, MQTT_PROTOCOL_VERSION),
        _LEGACY_PROTOCOL,
    ):
        raise cursor.malformed(
            f"unsupported protocol {protocol_name!r} level {protocol_level}"
        )

    connect_flags = cursor.read_byte()
    if connect_flags & 0x01:
        raise cursor.malformed("reserved connect flag is set")
    if connect_flags & 0xFC:
        raise cursor.malformed(
            f"unsupported connect flags {connect_flags:#x}"
        )

    keep_alive = cursor.read_uint16()
    client_id = cursor.read_string()
    cursor.expect_end()
    return Connect(
        client_id=client_id,
        clean_session=bool(connect_flags & 0x02),
        keep_alive=keep_alive,
        protocol_level=protocol_level,
    )


def _parse_connack(flags: int, cursor: _Cursor) -> ConnAck:
    ack_flags = cursor.read_byte()
    if ack_flags & 0xFE:
        raise cursor.malformed(f"reserved ack flags {ack_flags:#x}")
    return_code = cursor.read_byte()
    cursor.expect_end()
    return ConnAck(return_code=return_code, session_present=bool(ack_flags))


def _parse_publish(flags: int, cursor: _Cursor) -> Publish:
    dup = bool(flags & 0x08)
    qos_value = (flags & 0x06) >> 1
    retain = bool(flags & 0x01)
    if qos_value > QoS.EXACTLY_ONCE:
        raise PacketError(error_message("INVALID_QOS", value=qos_value))
    if dup and qos_value == QoS.AT_MOST_ONCE:
        raise cursor.malformed("DUP set on QoS 0 message")

    topic = cursor.read_string()
    if not topic:
        raise cursor.malformed("empty topic name")
    if "+" in topic or "#" in topic:
        raise cursor.malformed("wildcard in topic name")

    packet_id = None
    if qos_value > QoS.AT_MOST_ONCE:
        packet_id = cursor.read_packet_id()

    return Publish(
        topic=topic,
        payload=cursor.read_rest(),
        qos=QoS(qos_value),
        retain=retain,
        dup=dup,
        packet_id=packet_id,
    )


def _ack_parser(
    packet_class: Callable[[int], ControlPacket],
) -> Callable[[int, _Cursor], ControlPacket]:
    def parse(flags: int, cursor: _Cursor) -> ControlPacket:
        packet_id = cursor.read_packet_id()
        cursor.expect_end()
        return packet_class(packet_id)

    return parse


def _parse_subscribe(flags: int, cursor: _Cursor) -> Subscribe:
    packet_id = cursor.read_packet_id()
    topics = []
    while cursor.remaining:
        topic = cursor.read_string()
        requested = cursor.read_byte()
        if requested & 0xFC:
            raise cursor.malformed(f"reserved QoS bits {requested:#x}")
        if requested > QoS.EXACTLY_ONCE:
            raise PacketError(error_message("INVALID_QOS", value=requested))
        topics.append((topic, QoS(requested)))
    if not topics:
        raise cursor.malformed("no topic filters")
    return Subscribe(packet_id=packet_id, topics=tuple(topics))


def _parse_suback(flags: int, cursor: _Cursor) -> SubAck:
    packet_id = cursor.read_packet_id()
    return_codes = tuple(cursor.read_rest())
    for code in return_codes:
        if code > QoS.EXACTLY_ONCE and code != SUBACK_FAILURE:
            raise cursor.malformed(f"invalid return code {code:#x}")
    return SubAck(packet_id=packet_id, return_codes=return_codes)


def _parse_unsubscribe(flags: int, cursor: _Cursor) -> Unsubscribe:
    packet_id = cursor.read_packet_id()
    topics = []
    while cursor.remaining:
        topics.append(cursor.read_string())
    if not topics:
        raise cursor.malformed("no topic filters")
    return Unsubscribe(packet_id=packet_id, topics=tuple(topics))


def _empty_parser(
    packet_class: Callable[[], ControlPacket],
) -> Callable[[int, _Cursor], ControlPacket]:
    def parse(flags: int, cursor: _Cursor) -> ControlPacket:
        cursor.expect_end()
        return packet_class()

    return parse


_PARSERS: Dict[PacketType, Callable[[int, _Cursor], ControlPacket]] = {
    PacketType.CONNECT: _parse_connect,
    PacketType.CONNACK: _parse_connack,
    PacketType.PUBLISH: _parse_publish,
    PacketType.PUBACK: _ack_parser(PubAck),
    PacketType.PUBREC: _ack_parser(PubRec),
    PacketType.PUBREL: _ack_parser(PubRel),
    PacketType.PUBCOMP: _ack_parser(PubComp),
    PacketType.SUBSCRIBE: _parse_subscribe,
    PacketType.SUBACK: _parse_suback,
    PacketType.UNSUBSCRIBE: _parse_unsubscribe,
    PacketType.UNSUBACK: _ack_parser(UnsubAck),
    PacketType.PINGREQ: _empty_parser(PingReq),
    PacketType.PINGRESP: _empty_parser(PingResp),
    PacketType.DISCONNECT: _empty_parser(Disconnect),
}
