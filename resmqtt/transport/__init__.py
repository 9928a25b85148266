"""Transport adapters.

ブローカーとのバイトストリームを提供するパッケージ。

- ``Transport``: 抽象インターフェース
- ``TCPTransport``: asyncioストリームによるTCP/TLS
- ``WebSocketTransport``: websocketsによるWebSocket
"""

import ssl
from typing import Optional, Tuple, Union
from urllib.parse import urlsplit

from ..core.exceptions import ConfigError, error_message
from .base import Transport, TransportFactory
from .tcp import TCPTransport
from .websocket import WebSocketTransport

BrokerAddress = Union[str, Tuple[str, int]]

_DEFAULT_PORTS = {"mqtt": 1883, "tcp": 1883, "mqtts": 8883, "ssl": 8883}


def transport_for(
    address: BrokerAddress, ssl_context: Optional[ssl.SSLContext] = None
) -> TransportFactory:
    """ブローカーアドレスからトランスポートのファクトリーを生成します.

    対応する形式:
        - ``("host", 1883)``
        - ``"host"`` / ``"host:1883"``
        - ``"mqtt://host:1883"`` / ``"mqtts://host:8883"``
        - ``"ws://host/mqtt"`` / ``"wss://host/mqtt"``

    Args:
        address: ブローカーアドレス
        ssl_context: TLSに使うSSLコンテキスト

    Returns:
        TransportFactory: 接続のたびに新しいトランスポートを返す関数

    Raises:
        ConfigError: アドレスを解釈できない場合
    """
    if isinstance(address, tuple):
        host, port = address
        return lambda: TCPTransport(host, int(port), ssl_context)

    if not isinstance(address, str) or not address:
        raise ConfigError(error_message("INVALID_ADDRESS", address=address))

    if address.startswith(("ws://", "wss://")):
        return lambda: WebSocketTransport(address, ssl_context=ssl_context)

    if "://" not in address:
        address = f"{'mqtts' if ssl_context else 'mqtt'}://{address}"

    try:
        parts = urlsplit(address)
        port = parts.port
    except ValueError as err:
        raise ConfigError(
            error_message("INVALID_ADDRESS", address=address)
        ) from err
    if parts.scheme not in _DEFAULT_PORTS or not parts.hostname:
        raise ConfigError(error_message("INVALID_ADDRESS", address=address))

    host = parts.hostname
    port = port or _DEFAULT_PORTS[parts.scheme]
    if parts.scheme in ("mqtts", "ssl") and ssl_context is None:
        ssl_context = ssl.create_default_context()
    return lambda: TCPTransport(host, port, ssl_context)


__all__ = [
    "Transport",
    "TransportFactory",
    "TCPTransport",
    "WebSocketTransport",
    "BrokerAddress",
    "transport_for",
]
