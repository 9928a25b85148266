"""MQTT packet types.

MQTTパケットタイプの定義を提供するモジュール。

このモジュールはMQTTプロトコルで使用される各種パケットタイプ、QoSレベル、
CONNACK/SUBACKのリターンコードを定義します。値はMQTT 3.1.1仕様に準拠しています。
"""

from enum import IntEnum, unique
from typing import Dict, Final


@unique
class PacketType(IntEnum):
    """MQTTパケットタイプを定義する列挙型.

    MQTT v3.1.1仕様に基づくパケットタイプの列挙です。
    固定ヘッダー先頭バイトの上位4ビットに格納されます。

    Attributes:
        CONNECT (int): クライアントからサーバーへの接続要求パケット
        CONNACK (int): サーバーからクライアントへの接続応答パケット
        PUBLISH (int): メッセージの配信パケット
        PUBACK (int): QoS 1での PUBLISH パケットの受信確認
        PUBREC (int): QoS 2での PUBLISH パケットの受信通知(第1段階)
        PUBREL (int): QoS 2での解放通知(第2段階)
        PUBCOMP (int): QoS 2での完了通知(第3段階)
        SUBSCRIBE (int): トピックの購読要求パケット
        SUBACK (int): サーバーからの購読要求応答パケット
        UNSUBSCRIBE (int): 購読解除要求パケット
        UNSUBACK (int): 購読解除応答パケット
        PINGREQ (int): クライアントからのping要求パケット
        PINGRESP (int): サーバーからのping応答パケット
        DISCONNECT (int): クライアントからの正常切断要求パケット
    """

    CONNECT = 1
    CONNACK = 2
    PUBLISH = 3
    PUBACK = 4
    PUBREC = 5
    PUBREL = 6
    PUBCOMP = 7
    SUBSCRIBE = 8
    SUBACK = 9
    UNSUBSCRIBE = 10
    UNSUBACK = 11
    PINGREQ = 12
    PINGRESP = 13
    DISCONNECT = 14


@unique
class QoS(IntEnum):
    """配信保証レベル.

    大小比較は実効QoS(送信側要求と購読側許可の小さい方)の選択にのみ使用します。

    Attributes:
        AT_MOST_ONCE (0): 最大1回(ベストエフォート)
        AT_LEAST_ONCE (1): 最低1回
        EXACTLY_ONCE (2): ちょうど1回
    """

    AT_MOST_ONCE = 0
    AT_LEAST_ONCE = 1
    EXACTLY_ONCE = 2


@unique
class ConnectReturnCode(IntEnum):
    """CONNACKのリターンコード."""

    ACCEPTED = 0
    UNACCEPTABLE_PROTOCOL_VERSION = 1
    IDENTIFIER_REJECTED = 2
    SERVER_UNAVAILABLE = 3
    BAD_USERNAME_OR_PASSWORD = 4
    NOT_AUTHORIZED = 5


# SUBACKで購読失敗を示すリターンコード
SUBACK_FAILURE: Final[int] = 0x80

# 固定ヘッダーの下位4ビットが固定値であるパケットのフラグ
FIXED_FLAGS: Final[Dict[PacketType, int]] = {
    PacketType.CONNECT: 0x00,
    PacketType.CONNACK: 0x00,
    PacketType.PUBACK: 0x00,
    PacketType.PUBREC: 0x00,
    PacketType.PUBREL: 0x02,
    PacketType.PUBCOMP: 0x00,
    PacketType.SUBSCRIBE: 0x02,
    PacketType.SUBACK: 0x00,
    PacketType.UNSUBSCRIBE: 0x02,
    PacketType.UNSUBACK: 0x00,
    PacketType.PINGREQ: 0x00,
    PacketType.PINGRESP: 0x00,
    PacketType.DISCONNECT: 0x00,
}

CONNACK_REASONS: Final[Dict[int, str]] = {
    ConnectReturnCode.ACCEPTED: "Connection accepted",
    ConnectReturnCode.UNACCEPTABLE_PROTOCOL_VERSION: (
        "Unacceptable protocol version"
    ),
    ConnectReturnCode.IDENTIFIER_REJECTED: "Identifier rejected",
    ConnectReturnCode.SERVER_UNAVAILABLE: "Server unavailable",
    ConnectReturnCode.BAD_USERNAME_OR_PASSWORD: "Bad user name or password",
    ConnectReturnCode.NOT_AUTHORIZED: "Not authorized",
}


def get_connack_reason(return_code: int) -> str:
    """CONNACKリターンコードの説明を取得します.

    Args:
        return_code: CONNACKのリターンコード

    Returns:
        str: 人が読める説明
    """
    return CONNACK_REASONS.get(return_code, f"Unknown({return_code})")
