"""WebSocket transport.

WebSocket経由でMQTTを運ぶトランスポートを提供するモジュール。

``mqtt`` サブプロトコルでバイナリフレームを送受信します。フレーム境界と
MQTTパケット境界は一致しないことがあるため、受信したフレームは内部バッファに
貯めて ``read()`` で切り出します。
"""

import ssl
from typing import Dict, Optional

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import (
    ConnectionClosed,
    InvalidHandshake,
    WebSocketException,
)
from websockets.typing import Subprotocol

from ..core.constants import READ_CHUNK_SIZE, WS_SUBPROTOCOL
from ..core.exceptions import TransportError, error_message
from ..core.logging import logger
from .base import Transport


class WebSocketTransport(Transport):
    """WebSocket上のMQTTトランスポート.

    Attributes:
        url: WebSocketエンドポイントURL(ws:// または wss://)
        headers: 追加のHTTPヘッダー
        subprotocol: WebSocketサブプロトコル
        ssl_context: wss:// で使うSSLコンテキスト
    """

    def __init__(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        subprotocol: str = WS_SUBPROTOCOL,
        ssl_context: Optional[ssl.SSLContext] = None,
    ) -> None:
        self.url = url
        self.headers = headers or {}
        self.subprotocol = Subprotocol(subprotocol)
        self.ssl_context = ssl_context
        self._ws: Optional[ClientConnection] = None
        self._pending = bytearray()

    @property
    def is_open(self) -> bool:
        return self._ws is not None

    async def open(self) -> None:
        logger.debug(f"WebSocket接続を開始します: {self.url}")
        options = {
            "additional_headers": self.headers,
            "subprotocols": [self.subprotocol],
            "ping_interval": None,
        }
        if self.url.startswith("wss://"):
            options["ssl"] = self.ssl_context or ssl.create_default_context()

        try:
            self._ws = await connect(self.url, **options)
        except InvalidHandshake as err:
            raise TransportError(
                error_message("CONNECTION_FAILED", reason=f"handshake: {err}")
            ) from err
        except (WebSocketException, OSError) as err:
            raise TransportError(
                error_message("CONNECTION_FAILED", reason=str(err))
            ) from err
        self._pending.clear()
        logger.debug("WebSocket接続が確立されました")

    async def read(self, max_bytes: int = READ_CHUNK_SIZE) -> bytes:
        if self._ws is None:
            raise TransportError(error_message("NOT_CONNECTED"))

        while not self._pending:
            try:
                message = await self._ws.recv()
            except ConnectionClosed as err:
                logger.debug(f"WebSocket接続が切断されました: {err}")
                return b""
            except (WebSocketException, OSError) as err:
                raise TransportError(
                    error_message("READ_FAILED", reason=str(err))
                ) from err

            if isinstance(message, bytes):
                self._pending.extend(message)
            else:
                logger.warning(f"バイナリ以外のメッセージを受信: {message}")

        data = bytes(self._pending[:max_bytes])
        del self._pending[:max_bytes]
        return data

    async def write(self, data: bytes) -> int:
        if self._ws is None:
            raise TransportError(error_message("NOT_CONNECTED"))
        try:
            await self._ws.send(data)
        except (WebSocketException, OSError) as err:
            raise TransportError(
                error_message("WRITE_FAILED", reason=str(err))
            ) from err
        return len(data)

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        self._pending.clear()
        if ws is None:
            return
        try:
            await ws.close()
        except (WebSocketException, OSError) as err:
            logger.debug(f"WebSocket切断時のエラー: {err}")

    def __repr__(self) -> str:
        return f"WebSocketTransport({self.url})"
