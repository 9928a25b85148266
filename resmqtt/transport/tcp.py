"""TCP transport.

asyncioのストリームを使ったTCP/TLSトランスポートを提供するモジュール。
"""

import asyncio
import ssl
from typing import Optional

from ..core.constants import READ_CHUNK_SIZE
from ..core.exceptions import TransportError, error_message
from ..core.logging import logger
from .base import Transport


class TCPTransport(Transport):
    """asyncioストリーム上のTCP(任意でTLS)トランスポート.

    Attributes:
        host: ブローカーのホスト名
        port: ブローカーのポート番号
        ssl_context: TLSを使う場合のSSLコンテキスト
    """

    def __init__(
        self,
        host: str,
        port: int = 1883,
        ssl_context: Optional[ssl.SSLContext] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.ssl_context = ssl_context
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None

    @property
    def is_open(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def open(self) -> None:
        logger.debug(f"TCP接続を開始します: {self.host}:{self.port}")
        try:
            self._reader, self._writer = await asyncio.open_connection(
                self.host, self.port, ssl=self.ssl_context
            )
        except (OSError, ssl.SSLError) as err:
            raise TransportError(
                error_message("CONNECTION_FAILED", reason=str(err))
            ) from err

    async def read(self, max_bytes: int = READ_CHUNK_SIZE) -> bytes:
        if self._reader is None:
            raise TransportError(error_message("NOT_CONNECTED"))
        try:
            return await self._reader.read(max_bytes)
        except (OSError, ssl.SSLError) as err:
            raise TransportError(
                error_message("READ_FAILED", reason=str(err))
            ) from err

    async def write(self, data: bytes) -> int:
        if self._writer is None or self._writer.is_closing():
            raise TransportError(error_message("NOT_CONNECTED"))
        try:
            self._writer.write(data)
            await self._writer.drain()
        except (OSError, ssl.SSLError) as err:
            raise TransportError(
                error_message("WRITE_FAILED", reason=str(err))
            ) from err
        return len(data)

    async def close(self) -> None:
        writer, self._writer = self._writer, None
        self._reader = None
        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except (OSError, ssl.SSLError) as err:
            logger.debug(f"TCP切断時のエラー: {err}")

    def __repr__(self) -> str:
        scheme = "tls" if self.ssl_context is not None else "tcp"
        return f"TCPTransport({scheme}://{self.host}:{self.port})"
