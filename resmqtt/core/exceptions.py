"""Exception definitions.

例外定義を提供するモジュール。

このモジュールはクライアントで使用される例外クラスと
エラーメッセージの定義を提供します。
"""

from typing import Dict, Optional


class MQTTError(Exception):
    """MQTTクライアントの基本例外クラス.

    全てのクライアント関連の例外の基底クラスとして機能します。
    """


class ConfigError(MQTTError):
    """設定関連のエラー.

    セッションやクライアント設定が不正な場合に ``connect()`` 呼び出し時点で
    同期的に送出されます。再試行は行われません。
    """


class MessageError(MQTTError):
    """アプリケーション要求のエラー.

    トピックやQoSなど、publish/subscribe/unsubscribe の引数が不正な場合に
    送出されます。
    """


class TransportError(MQTTError):
    """トランスポート関連のエラー.

    接続・読み込み・書き込みの失敗を表します。接続は切断されますが、
    再接続がスケジュールされます。
    """


class ProtocolError(MQTTError):
    """プロトコル違反のエラー.

    不正なパケットや、追跡中のどのレコードとも整合しない確認応答を
    受信した場合に発生します。接続は閉じられ再接続されます。
    """


class PacketError(ProtocolError):
    """パケット処理のエラー.

    パケットの符号化・解析で不正な形式を検出した場合に発生します。
    """


class ConnectError(ProtocolError):
    """ブローカーが接続を拒否したことを表すエラー.

    Attributes:
        return_code: CONNACKのリターンコード
    """

    def __init__(self, message: str, return_code: Optional[int] = None):
        super().__init__(message)
        self.return_code = return_code


class HandshakeTimeout(ProtocolError):
    """CONNACKが期限内に届かなかった場合のエラー."""


class KeepAliveTimeout(ProtocolError):
    """キープアライブ期限内に応答がなかった場合のエラー."""


class CapacityError(MQTTError):
    """オフラインバッファ容量超過.

    最も古いエントリが破棄されたことを示します。イベントとして通知され、
    きっかけとなった要求自体は成功します。
    """


# エラーメッセージの定義
ERROR_MESSAGES: Dict[str, str] = {
    # 設定関連
    "INVALID_CLIENT_ID": "Invalid client id: {detail}",
    "INVALID_KEEP_ALIVE": "Invalid keep alive: {value}",
    "INVALID_CONFIG": "Invalid config value for {field}: {value}",
    "INVALID_ADDRESS": "Invalid broker address: {address}",
    # 接続関連
    "CONNECTION_FAILED": "Connection failed: {reason}",
    "CONNECTION_CLOSED": "Connection closed by peer",
    "CONNECTION_LOST": "Connection lost: {error}",
    "CONNECTION_REFUSED": "Connection refused: {reason} (code={code})",
    "NOT_CONNECTED": "Transport is not open",
    "HANDSHAKE_TIMEOUT": "No CONNACK within {timeout}s",
    "KEEP_ALIVE_TIMEOUT": "No response within keep alive of {timeout}s",
    "WRITE_FAILED": "Write failed: {reason}",
    "READ_FAILED": "Read failed: {reason}",
    # プロトコル関連
    "UNEXPECTED_PACKET": "Unexpected {packet} in state {state}",
    "ACK_MISMATCH": "{packet} for packet id {packet_id} does not match a "
    "QoS {qos} publish",
    "SUBACK_MISMATCH": "SUBACK for packet id {packet_id} carries {count} "
    "return codes, expected {expected}",
    # パケット関連
    "INVALID_PACKET_FORMAT": "Invalid packet format: {detail}",
    "MALFORMED_LENGTH": "Malformed remaining length",
    "PACKET_TOO_LARGE": "Packet of {size} bytes exceeds limit of {limit}",
    "UNKNOWN_PACKET_TYPE": "Unknown packet type: {value}",
    "INVALID_FLAGS": "Invalid flags {flags:#x} for {packet}",
    "INVALID_QOS": "Invalid QoS: {value}",
    # 要求関連
    "INVALID_TOPIC": "Invalid topic: {detail}",
    "PAYLOAD_TOO_LARGE": "Payload of {size} bytes exceeds limit of {limit}",
    "CLIENT_CLOSED": "Client has been disconnected",
    # バッファ関連
    "BUFFER_EVICTED": "Offline buffer full ({capacity}), dropped {entry}",
    # その他
    "UNEXPECTED_ERROR": "Unexpected error: {detail}",
}


def error_message(error_code: str, **detail: object) -> str:
    """エラーコードからメッセージを生成する.

    Args:
        error_code: ``ERROR_MESSAGES`` のキー
        **detail: メッセージに埋め込む値

    Returns:
        str: 整形済みのエラーメッセージ
    """
    template = ERROR_MESSAGES.get(error_code, "Unknown error: {detail}")
    return template.format(**detail)
