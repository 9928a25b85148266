"""Transport port.

双方向バイトストリームの抽象インターフェースを提供するモジュール。

TLSのネゴシエーションや証明書検証は実装側の責務で、コアは結果を
不透明なバイトストリームとして扱います。
"""

from abc import ABC, abstractmethod
from typing import Callable

from ..core.constants import READ_CHUNK_SIZE


class Transport(ABC):
    """ブローカーとの双方向バイトストリーム.

    実装は失敗時に ``TransportError`` を送出し、相手側に閉じられた場合は
    ``read()`` で空のバイト列を返します。``read()`` は ``close()`` によって
    解除されなければなりません。
    """

    @abstractmethod
    async def open(self) -> None:
        """ストリームを開きます.

        Raises:
            TransportError: 接続に失敗した場合
        """

    @abstractmethod
    async def read(self, max_bytes: int = READ_CHUNK_SIZE) -> bytes:
        """届いているバイト列を最大 ``max_bytes`` まで読み込みます.

        Returns:
            bytes: 受信データ。ストリームが閉じられた場合は空。

        Raises:
            TransportError: 読み込みに失敗した場合
        """

    @abstractmethod
    async def write(self, data: bytes) -> int:
        """バイト列を書き込みます.

        Returns:
            int: 書き込んだバイト数

        Raises:
            TransportError: 書き込みに失敗した場合
        """

    @abstractmethod
    async def close(self) -> None:
        """ストリームを閉じます. 既に閉じている場合は何もしません."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """ストリームが開いているかどうか."""


TransportFactory = Callable[[], Transport]
