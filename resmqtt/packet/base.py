"""MQTT packet base.

MQTTパケットの基本クラスと可変長「残りの長さ」フィールドの符号化を
提供するモジュール。
"""

from typing import Optional, Tuple

from ..core.constants import MQTT_MAX_REMAINING_LENGTH
from ..core.exceptions import PacketError, error_message
from .types import PacketType


def encode_remaining_length(length: int) -> bytes:
    """残りの長さを可変長エンコードする.

    1バイトあたり7ビット、最上位ビットを継続フラグとして1〜4バイトで表現します。

    Args:
        length (int): 残りの長さ

    Returns:
        bytes: エンコードされた長さ

    Raises:
        PacketError: 長さが0未満または最大値を超える場合
    """
    if not 0 <= length <= MQTT_MAX_REMAINING_LENGTH:
        raise PacketError(
            error_message(
                "PACKET_TOO_LARGE",
                size=length,
                limit=MQTT_MAX_REMAINING_LENGTH,
            )
        )

    remaining_bytes = bytearray()
    while True:
        byte = length % 128
        length = length // 128
        if length > 0:
            byte |= 0x80
        remaining_bytes.append(byte)
        if length == 0:
            break

    return bytes(remaining_bytes)


def decode_remaining_length(
    data: bytes, start: int = 1
) -> Optional[Tuple[int, int]]:
    """可変長の残りの長さをデコードする.

    Args:
        data (bytes): パケットデータ
        start (int, optional): デコードを開始する位置。デフォルトは1。

    Returns:
        Optional[Tuple[int, int]]: (残りの長さ, 次の位置)のタプル。
            データが途中で途切れている場合はNone。

    Raises:
        PacketError: 5バイト目まで継続ビットが立っている場合
    """
    multiplier = 1
    value = 0
    index = start

    while True:
        if index >= len(data):
            return None

        byte = data[index]
        value += (byte & 0x7F) * multiplier
        index += 1

        if not byte & 0x80:
            break

        multiplier *= 128
        if multiplier > 128**3:
            raise PacketError(error_message("MALFORMED_LENGTH"))

    return value, index


class MQTTPacket:
    """固定ヘッダーと本体からなる生のMQTTパケット(フレーム)を表すクラス."""

    def __init__(
        self,
        packet_type: PacketType,
        flags: int,
        remaining_length: int,
        payload: Optional[bytes] = None,
        raw_packet: Optional[bytes] = None,
    ) -> None:
        """MQTTパケットを初期化します.

        Args:
            packet_type: パケットタイプ
            flags: 固定ヘッダー下位4ビットのフラグ
            remaining_length: 残りの長さ
            payload: 可変ヘッダーとペイロードを合わせた本体
            raw_packet: 生のパケットデータ
        """
        self.packet_type = packet_type
        self.flags = flags
        self.remaining_length = remaining_length
        self.payload = payload
        self._raw_packet = raw_packet

    @property
    def packet(self) -> bytes:
        """パケットのバイナリデータを取得します."""
        if self._raw_packet is not None:
            return self._raw_packet
        # 生のパケットデータがない場合は、ヘッダーとペイロードを結合
        if self.payload is None:
            return self.header
        return self.header + self.payload

    @property
    def header(self) -> bytes:
        """パケットヘッダーを生成する.

        Returns:
            bytes: パケットヘッダーのバイト列
        """
        first_byte = (self.packet_type.value << 4) | self.flags
        return bytes([first_byte]) + encode_remaining_length(
            self.remaining_length
        )

    @property
    def body(self) -> bytes:
        """固定ヘッダーを除いた本体を取得します."""
        return self.payload or b""

    def __repr__(self) -> str:
        return (
            f"MQTTPacket(type={self.packet_type.name}, flags={self.flags:#x}, "
            f"length={self.remaining_length})"
        )
